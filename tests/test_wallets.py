"""Tests for the wallet ledger and money helpers."""

import tempfile
from decimal import Decimal
from pathlib import Path

import pytest

from connekt_fulfillment.core import wallets as wallets_mod
from connekt_fulfillment.db.engine import init_db
from connekt_fulfillment.errors import CurrencyMismatch, InsufficientFunds, InvalidAmount, ValidationError
from connekt_fulfillment.money import format_amount, to_major, to_minor


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


class TestMoney:
    def test_to_minor_from_string(self):
        assert to_minor("150.00") == 15000

    def test_to_minor_rounds_half_up(self):
        assert to_minor("0.005") == 1
        assert to_minor("10.004") == 1000

    def test_to_minor_from_float_has_no_binary_drift(self):
        assert to_minor(0.1) + to_minor(0.2) == to_minor("0.3")

    def test_to_minor_rejects_garbage(self):
        with pytest.raises(InvalidAmount):
            to_minor("ten")
        with pytest.raises(InvalidAmount):
            to_minor(True)
        with pytest.raises(InvalidAmount):
            to_minor("NaN")

    def test_to_major(self):
        assert to_major(12345) == Decimal("123.45")

    def test_format_amount(self):
        assert format_amount(123456, "GMD") == "GMD 1,234.56"


class TestWalletCreation:
    def test_get_or_create_is_idempotent(self, db):
        w1 = wallets_mod.get_or_create_wallet(db, "alice", "GMD")
        w2 = wallets_mod.get_or_create_wallet(db, "alice", "GMD")
        assert w1.id == w2.id
        assert w1.balance == 0
        assert w1.currency == "GMD"

    def test_user_and_agency_wallets_are_separate(self, db):
        user = wallets_mod.get_or_create_wallet(db, "acme", "GMD")
        agency = wallets_mod.get_or_create_wallet(db, "acme", "GMD", owner_type="agency")
        assert user.id != agency.id

    def test_unknown_owner_type(self, db):
        with pytest.raises(ValidationError):
            wallets_mod.create_wallet(db, "alice", "GMD", owner_type="bank")


class TestDepositAndDebit:
    def test_deposit(self, db):
        wallet = wallets_mod.get_or_create_wallet(db, "alice", "GMD")
        wallet = wallets_mod.deposit_wallet(db, wallet.id, 50000)
        assert wallet.balance == 50000
        txns = wallets_mod.get_transactions(db, wallet.id)
        assert len(txns) == 1
        assert txns[0].type == "deposit"
        assert txns[0].amount == 50000

    def test_debit(self, db):
        wallet = wallets_mod.get_or_create_wallet(db, "alice", "GMD")
        wallets_mod.deposit_wallet(db, wallet.id, 50000)
        wallet = wallets_mod.debit_wallet(db, wallet.id, 20000)
        assert wallet.balance == 30000
        assert wallets_mod.get_transactions(db, wallet.id, txn_type="withdrawal")[0].amount == -20000

    def test_debit_beyond_balance_changes_nothing(self, db):
        wallet = wallets_mod.get_or_create_wallet(db, "alice", "GMD")
        wallets_mod.deposit_wallet(db, wallet.id, 10000)
        with pytest.raises(InsufficientFunds) as exc:
            wallets_mod.debit_wallet(db, wallet.id, 10001)
        assert exc.value.current_state == "10000"
        assert wallets_mod.get_wallet(db, wallet.id).balance == 10000
        assert len(wallets_mod.get_transactions(db, wallet.id)) == 1

    def test_debit_entire_balance(self, db):
        wallet = wallets_mod.get_or_create_wallet(db, "alice", "GMD")
        wallets_mod.deposit_wallet(db, wallet.id, 10000)
        assert wallets_mod.debit_wallet(db, wallet.id, 10000).balance == 0

    @pytest.mark.parametrize("amount", [0, -5, 1.5, True])
    def test_amounts_must_be_positive_integers(self, db, amount):
        wallet = wallets_mod.get_or_create_wallet(db, "alice", "GMD")
        with pytest.raises(InvalidAmount):
            wallets_mod.deposit_wallet(db, wallet.id, amount)

    def test_currency_mismatch(self, db):
        wallet = wallets_mod.get_or_create_wallet(db, "alice", "GMD")
        with pytest.raises(CurrencyMismatch):
            wallets_mod.deposit_wallet(db, wallet.id, 100, currency="USD")

    def test_history_limit(self, db):
        wallet = wallets_mod.get_or_create_wallet(db, "alice", "GMD")
        for _ in range(5):
            wallets_mod.deposit_wallet(db, wallet.id, 100)
        assert len(wallets_mod.get_transactions(db, wallet.id, limit=3)) == 3


class TestLedgerConsistency:
    def test_recompute_matches_stored_balance(self, db):
        wallet = wallets_mod.get_or_create_wallet(db, "alice", "GMD")
        wallets_mod.deposit_wallet(db, wallet.id, 30000)
        wallets_mod.debit_wallet(db, wallet.id, 1234)
        wallets_mod.deposit_wallet(db, wallet.id, 99)
        assert wallets_mod.recompute_balance(db, wallet.id) == wallets_mod.get_wallet(db, wallet.id).balance == 28865

    def test_stats(self, db):
        wallet = wallets_mod.get_or_create_wallet(db, "alice", "GMD")
        wallets_mod.deposit_wallet(db, wallet.id, 30000)
        wallets_mod.debit_wallet(db, wallet.id, 5000)
        stats = wallets_mod.get_wallet_stats(db, wallet.id)
        assert stats.balance == 25000
        assert stats.total_deposits == 30000
        assert stats.total_withdrawals == 5000
        assert stats.escrow_holdings == 0
        assert stats.transaction_count == 2
