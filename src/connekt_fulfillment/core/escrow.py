"""Escrow holder: holds against a wallet, released or refunded exactly once."""

import logging
import sqlite3
import uuid
from datetime import datetime, timezone

from connekt_fulfillment.core import wallets as wallets_mod
from connekt_fulfillment.db.engine import transaction
from connekt_fulfillment.db.models import EscrowHold
from connekt_fulfillment.errors import HoldNotActive, NotFound, ValidationError
from connekt_fulfillment.money import check_currency, format_amount, require_positive

logger = logging.getLogger(__name__)

HOLD_KINDS = ("assignee", "task_admin", "project")


def open_escrow(
    db: sqlite3.Connection,
    wallet_id: str,
    amount: int,
    task_id: str | None = None,
    project_id: str | None = None,
    destination_party_id: str | None = None,
    contract_id: str | None = None,
    kind: str = "assignee",
    currency: str | None = None,
) -> EscrowHold:
    """Earmark ``amount`` of a wallet's available balance for a task or project.

    Fails with InsufficientFunds, leaving nothing behind, if the wallet
    cannot cover it. The balance check and the hold are one transaction.
    """
    require_positive(amount)
    if (task_id is None) == (project_id is None):
        raise ValidationError("An escrow hold references exactly one task or project")
    if kind not in HOLD_KINDS:
        raise ValidationError(f"Unknown hold kind: {kind}", allowed=list(HOLD_KINDS))

    hold_id = f"hold_{uuid.uuid4().hex[:12]}"
    with transaction(db):
        wallet = wallets_mod.require_wallet(db, wallet_id)
        if currency:
            check_currency(currency, wallet.currency)
        db.execute(
            """INSERT INTO escrow_holds
               (id, amount, currency, source_wallet_id, destination_party_id,
                task_id, project_id, contract_id, kind)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (hold_id, amount, wallet.currency, wallet_id, destination_party_id,
             task_id, project_id, contract_id, kind),
        )
        wallets_mod.hold_funds(
            db, wallet_id, amount, hold_id, wallet.currency,
            description=f"Escrow hold for {task_id or project_id}",
            counterparty_id=destination_party_id,
        )
    logger.info(
        "Opened %s for %s from %s (%s)",
        hold_id, task_id or project_id, wallet_id, format_amount(amount, wallet.currency),
    )
    return get_hold(db, hold_id)


def release_escrow(
    db: sqlite3.Connection,
    hold_id: str,
    destination_wallet_id: str,
) -> EscrowHold:
    """Pay a held amount into the destination wallet. The source was debited at open."""
    with transaction(db):
        hold = _require_active(db, hold_id)
        destination = wallets_mod.require_wallet(db, destination_wallet_id)
        wallets_mod.credit_wallet(
            db, destination.id, hold.amount,
            txn_type="escrow_release",
            currency=hold.currency,
            description=f"Payment received for {hold.task_id or hold.project_id}",
            counterparty_id=hold.source_wallet_id,
            hold_id=hold_id,
        )
        db.execute(
            """UPDATE escrow_holds
               SET status = 'released', destination_wallet_id = ?, resolved_at = ?
               WHERE id = ? AND status = 'held'""",
            (destination.id, _now(), hold_id),
        )
    logger.info("Released %s to %s", hold_id, destination_wallet_id)
    return get_hold(db, hold_id)


def refund_escrow(db: sqlite3.Connection, hold_id: str, reason: str | None = None) -> EscrowHold:
    """Return a held amount to the wallet it came from."""
    with transaction(db):
        hold = _require_active(db, hold_id)
        wallets_mod.credit_wallet(
            db, hold.source_wallet_id, hold.amount,
            txn_type="refund",
            currency=hold.currency,
            description=f"Refund for {hold.task_id or hold.project_id}" + (f": {reason}" if reason else ""),
            hold_id=hold_id,
        )
        db.execute(
            """UPDATE escrow_holds
               SET status = 'refunded', reason = ?, resolved_at = ?
               WHERE id = ? AND status = 'held'""",
            (reason, _now(), hold_id),
        )
    logger.info("Refunded %s to %s", hold_id, hold.source_wallet_id)
    return get_hold(db, hold_id)


def rebind_escrow(db: sqlite3.Connection, hold_id: str, destination_party_id: str) -> EscrowHold:
    """Point a still-held hold at a different payee."""
    with transaction(db):
        hold = _require_active(db, hold_id)
        db.execute(
            "UPDATE escrow_holds SET destination_party_id = ? WHERE id = ?",
            (destination_party_id, hold_id),
        )
    logger.info(
        "Rebound %s from %s to %s", hold_id, hold.destination_party_id, destination_party_id
    )
    return get_hold(db, hold_id)


# ── Queries ───────────────────────────────────────────────────────────────────


def get_hold(db: sqlite3.Connection, hold_id: str) -> EscrowHold | None:
    row = db.execute("SELECT * FROM escrow_holds WHERE id = ?", (hold_id,)).fetchone()
    if not row:
        return None
    return _row_to_hold(row)


def require_hold(db: sqlite3.Connection, hold_id: str) -> EscrowHold:
    hold = get_hold(db, hold_id)
    if not hold:
        raise NotFound(f"Escrow hold not found: {hold_id}")
    return hold


def list_holds(
    db: sqlite3.Connection,
    task_id: str | None = None,
    project_id: str | None = None,
    wallet_id: str | None = None,
    status: str | None = None,
    kind: str | None = None,
) -> list[EscrowHold]:
    query = "SELECT * FROM escrow_holds WHERE 1=1"
    params: list = []
    if task_id:
        query += " AND task_id = ?"
        params.append(task_id)
    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)
    if wallet_id:
        query += " AND source_wallet_id = ?"
        params.append(wallet_id)
    if status:
        query += " AND status = ?"
        params.append(status)
    if kind:
        query += " AND kind = ?"
        params.append(kind)
    query += " ORDER BY created_at ASC, id ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_hold(r) for r in rows]


def _require_active(db: sqlite3.Connection, hold_id: str) -> EscrowHold:
    hold = require_hold(db, hold_id)
    if hold.status != "held":
        raise HoldNotActive(
            f"Escrow hold {hold_id} is already {hold.status}",
            current_state=hold.status,
        )
    return hold


def _row_to_hold(row: sqlite3.Row) -> EscrowHold:
    return EscrowHold(
        id=row["id"],
        amount=row["amount"],
        currency=row["currency"],
        source_wallet_id=row["source_wallet_id"],
        destination_party_id=row["destination_party_id"],
        destination_wallet_id=row["destination_wallet_id"],
        task_id=row["task_id"],
        project_id=row["project_id"],
        contract_id=row["contract_id"],
        kind=row["kind"],
        status=row["status"],
        reason=row["reason"],
        created_at=_parse_dt(row["created_at"]),
        resolved_at=_parse_dt(row["resolved_at"]),
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
