"""Wallet ledger: balances plus an append-only transaction log.

``balance`` is what the owner can spend right now. Opening an escrow hold
moves money out of it (an ``escrow_hold`` transaction), so the committed
escrow never has to be subtracted again at debit time.
"""

import logging
import sqlite3
import uuid
from datetime import datetime

from connekt_fulfillment.db.engine import transaction
from connekt_fulfillment.db.models import Wallet, WalletStats, WalletTransaction
from connekt_fulfillment.errors import InsufficientFunds, NotFound, ValidationError
from connekt_fulfillment.money import check_currency, format_amount, require_positive

logger = logging.getLogger(__name__)

OWNER_TYPES = ("user", "agency")


def create_wallet(
    db: sqlite3.Connection,
    owner_id: str,
    currency: str,
    owner_type: str = "user",
) -> Wallet:
    if owner_type not in OWNER_TYPES:
        raise ValidationError(f"Unknown owner type: {owner_type}", allowed=list(OWNER_TYPES))
    wallet_id = f"wal_{uuid.uuid4().hex[:12]}"
    with transaction(db):
        db.execute(
            "INSERT INTO wallets (id, owner_id, owner_type, currency) VALUES (?, ?, ?, ?)",
            (wallet_id, owner_id, owner_type, currency.upper()),
        )
    return get_wallet(db, wallet_id)


def get_or_create_wallet(
    db: sqlite3.Connection,
    owner_id: str,
    currency: str,
    owner_type: str = "user",
) -> Wallet:
    """Wallets are created on first use per owner."""
    wallet = get_wallet_for_owner(db, owner_id, owner_type)
    if wallet:
        return wallet
    return create_wallet(db, owner_id, currency, owner_type)


def get_wallet(db: sqlite3.Connection, wallet_id: str) -> Wallet | None:
    row = db.execute("SELECT * FROM wallets WHERE id = ?", (wallet_id,)).fetchone()
    if not row:
        return None
    return _row_to_wallet(row)


def require_wallet(db: sqlite3.Connection, wallet_id: str) -> Wallet:
    wallet = get_wallet(db, wallet_id)
    if not wallet:
        raise NotFound(f"Wallet not found: {wallet_id}")
    return wallet


def get_wallet_for_owner(
    db: sqlite3.Connection,
    owner_id: str,
    owner_type: str = "user",
) -> Wallet | None:
    row = db.execute(
        "SELECT * FROM wallets WHERE owner_id = ? AND owner_type = ?",
        (owner_id, owner_type),
    ).fetchone()
    if not row:
        return None
    return _row_to_wallet(row)


def list_wallets(db: sqlite3.Connection) -> list[Wallet]:
    rows = db.execute("SELECT * FROM wallets ORDER BY created_at").fetchall()
    return [_row_to_wallet(r) for r in rows]


# ── Mutations ─────────────────────────────────────────────────────────────────


def deposit_wallet(
    db: sqlite3.Connection,
    wallet_id: str,
    amount: int,
    currency: str | None = None,
    description: str = "Deposit",
) -> Wallet:
    """Add external funds to a wallet."""
    require_positive(amount)
    with transaction(db):
        wallet = require_wallet(db, wallet_id)
        if currency:
            check_currency(wallet.currency, currency)
        _apply(db, wallet, "deposit", amount, description)
    logger.info("Deposited %s into %s", format_amount(amount, wallet.currency), wallet_id)
    return get_wallet(db, wallet_id)


def debit_wallet(
    db: sqlite3.Connection,
    wallet_id: str,
    amount: int,
    currency: str | None = None,
    description: str = "Withdrawal",
) -> Wallet:
    """Withdraw funds. Fails without any partial debit if the balance is short."""
    require_positive(amount)
    with transaction(db):
        wallet = require_wallet(db, wallet_id)
        if currency:
            check_currency(wallet.currency, currency)
        _apply(db, wallet, "withdrawal", -amount, description)
    logger.info("Debited %s from %s", format_amount(amount, wallet.currency), wallet_id)
    return get_wallet(db, wallet_id)


def credit_wallet(
    db: sqlite3.Connection,
    wallet_id: str,
    amount: int,
    txn_type: str = "escrow_release",
    currency: str | None = None,
    description: str = "",
    counterparty_id: str | None = None,
    hold_id: str | None = None,
) -> Wallet:
    """Credit funds coming from inside the engine (escrow release or refund)."""
    require_positive(amount)
    with transaction(db):
        wallet = require_wallet(db, wallet_id)
        if currency:
            check_currency(wallet.currency, currency)
        _apply(db, wallet, txn_type, amount, description, counterparty_id, hold_id)
    return get_wallet(db, wallet_id)


def hold_funds(
    db: sqlite3.Connection,
    wallet_id: str,
    amount: int,
    hold_id: str,
    currency: str,
    description: str = "",
    counterparty_id: str | None = None,
) -> Wallet:
    """Move funds out of the available balance into an escrow hold."""
    require_positive(amount)
    with transaction(db):
        wallet = require_wallet(db, wallet_id)
        check_currency(wallet.currency, currency)
        _apply(db, wallet, "escrow_hold", -amount, description, counterparty_id, hold_id)
    return get_wallet(db, wallet_id)


def _apply(
    db: sqlite3.Connection,
    wallet: Wallet,
    txn_type: str,
    signed_amount: int,
    description: str,
    counterparty_id: str | None = None,
    hold_id: str | None = None,
):
    """Change the balance and append the matching transaction. Caller holds the lock."""
    current = db.execute("SELECT balance FROM wallets WHERE id = ?", (wallet.id,)).fetchone()["balance"]
    new_balance = current + signed_amount
    if new_balance < 0:
        raise InsufficientFunds(
            f"Insufficient funds in {wallet.id}: available "
            f"{format_amount(current, wallet.currency)}, requested "
            f"{format_amount(-signed_amount, wallet.currency)}",
            current_state=str(current),
        )
    db.execute(
        "UPDATE wallets SET balance = ?, updated_at = datetime('now') WHERE id = ?",
        (new_balance, wallet.id),
    )
    db.execute(
        """INSERT INTO wallet_transactions
           (wallet_id, type, amount, currency, description, counterparty_id, hold_id)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (wallet.id, txn_type, signed_amount, wallet.currency, description, counterparty_id, hold_id),
    )


# ── Queries ───────────────────────────────────────────────────────────────────


def get_transactions(
    db: sqlite3.Connection,
    wallet_id: str,
    limit: int | None = None,
    txn_type: str | None = None,
) -> list[WalletTransaction]:
    """Transaction history, oldest first."""
    query = "SELECT * FROM wallet_transactions WHERE wallet_id = ?"
    params: list = [wallet_id]
    if txn_type:
        query += " AND type = ?"
        params.append(txn_type)
    query += " ORDER BY id ASC"
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_transaction(r) for r in rows]


def recompute_balance(db: sqlite3.Connection, wallet_id: str) -> int:
    """Balance as implied by the transaction log alone."""
    row = db.execute(
        "SELECT COALESCE(SUM(amount), 0) AS total FROM wallet_transactions WHERE wallet_id = ?",
        (wallet_id,),
    ).fetchone()
    return row["total"]


def committed_escrow(db: sqlite3.Connection, wallet_id: str) -> int:
    row = db.execute(
        "SELECT COALESCE(SUM(amount), 0) AS total FROM escrow_holds WHERE source_wallet_id = ? AND status = 'held'",
        (wallet_id,),
    ).fetchone()
    return row["total"]


def get_wallet_stats(db: sqlite3.Connection, wallet_id: str) -> WalletStats:
    wallet = require_wallet(db, wallet_id)
    stats = WalletStats(wallet_id=wallet_id, balance=wallet.balance)
    for txn in get_transactions(db, wallet_id):
        stats.transaction_count += 1
        if txn.type == "deposit":
            stats.total_deposits += txn.amount
        elif txn.type == "withdrawal":
            stats.total_withdrawals += -txn.amount
        elif txn.type == "escrow_release":
            stats.total_released_in += txn.amount
        elif txn.type == "refund":
            stats.total_refunds += txn.amount
    row = db.execute(
        "SELECT COALESCE(SUM(amount), 0) AS total FROM escrow_holds WHERE source_wallet_id = ? AND status = 'released'",
        (wallet_id,),
    ).fetchone()
    stats.total_released_out = row["total"]
    stats.escrow_holdings = committed_escrow(db, wallet_id)
    return stats


def _row_to_wallet(row: sqlite3.Row) -> Wallet:
    return Wallet(
        id=row["id"],
        owner_id=row["owner_id"],
        owner_type=row["owner_type"],
        balance=row["balance"],
        currency=row["currency"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_transaction(row: sqlite3.Row) -> WalletTransaction:
    return WalletTransaction(
        id=row["id"],
        wallet_id=row["wallet_id"],
        type=row["type"],
        amount=row["amount"],
        currency=row["currency"],
        description=row["description"],
        counterparty_id=row["counterparty_id"],
        hold_id=row["hold_id"],
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
