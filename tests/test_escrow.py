"""Tests for escrow holds against wallets."""

import tempfile
from pathlib import Path

import pytest

from connekt_fulfillment.core import escrow as escrow_mod
from connekt_fulfillment.core import projects as projects_mod
from connekt_fulfillment.core import tasks as tasks_mod
from connekt_fulfillment.core import wallets as wallets_mod
from connekt_fulfillment.db.engine import init_db
from connekt_fulfillment.errors import (
    CurrencyMismatch,
    HoldNotActive,
    InsufficientFunds,
    NotFound,
    ValidationError,
)


@pytest.fixture
def db():
    """Create a temporary SQLite database with a project, a task and a funded wallet."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "site", "olivia", "Website", 500000, "GMD")
        tasks_mod.create_task(conn, "site", "Landing page", "olivia", price_amount=70000)
        yield conn
        conn.close()


def _funded(db, owner="olivia", amount=100000):
    wallet = wallets_mod.get_or_create_wallet(db, owner, "GMD")
    return wallets_mod.deposit_wallet(db, wallet.id, amount)


class TestOpenEscrow:
    def test_open_debits_available_balance(self, db):
        wallet = _funded(db)
        hold = escrow_mod.open_escrow(db, wallet.id, 70000, task_id="landing-page", destination_party_id="wendy")
        assert hold.status == "held"
        assert hold.amount == 70000
        assert hold.currency == "GMD"
        assert hold.destination_party_id == "wendy"
        assert wallets_mod.get_wallet(db, wallet.id).balance == 30000
        assert wallets_mod.get_transactions(db, wallet.id, txn_type="escrow_hold")[0].hold_id == hold.id

    def test_second_hold_beyond_balance_fails(self, db):
        wallet = _funded(db)
        escrow_mod.open_escrow(db, wallet.id, 70000, task_id="landing-page")
        with pytest.raises(InsufficientFunds):
            escrow_mod.open_escrow(db, wallet.id, 40000, task_id="landing-page")
        assert len(escrow_mod.list_holds(db, wallet_id=wallet.id)) == 1
        assert wallets_mod.get_wallet(db, wallet.id).balance == 30000

    def test_requires_exactly_one_target(self, db):
        wallet = _funded(db)
        with pytest.raises(ValidationError):
            escrow_mod.open_escrow(db, wallet.id, 100)
        with pytest.raises(ValidationError):
            escrow_mod.open_escrow(db, wallet.id, 100, task_id="landing-page", project_id="site")

    def test_project_hold(self, db):
        wallet = _funded(db)
        hold = escrow_mod.open_escrow(db, wallet.id, 5000, project_id="site", kind="project")
        assert hold.project_id == "site"
        assert hold.task_id is None
        assert hold.kind == "project"

    def test_currency_must_match_wallet(self, db):
        wallet = _funded(db)
        with pytest.raises(CurrencyMismatch):
            escrow_mod.open_escrow(db, wallet.id, 100, task_id="landing-page", currency="USD")

    def test_unknown_wallet(self, db):
        with pytest.raises(NotFound):
            escrow_mod.open_escrow(db, "wal_missing", 100, task_id="landing-page")

    def test_unknown_kind(self, db):
        wallet = _funded(db)
        with pytest.raises(ValidationError):
            escrow_mod.open_escrow(db, wallet.id, 100, task_id="landing-page", kind="bonus")


class TestResolveEscrow:
    def test_release_credits_destination(self, db):
        source = _funded(db)
        dest = wallets_mod.get_or_create_wallet(db, "wendy", "GMD")
        hold = escrow_mod.open_escrow(db, source.id, 70000, task_id="landing-page", destination_party_id="wendy")

        hold = escrow_mod.release_escrow(db, hold.id, dest.id)
        assert hold.status == "released"
        assert hold.destination_wallet_id == dest.id
        assert hold.resolved_at is not None
        assert wallets_mod.get_wallet(db, dest.id).balance == 70000
        assert wallets_mod.get_wallet(db, source.id).balance == 30000

    def test_refund_restores_source(self, db):
        source = _funded(db)
        hold = escrow_mod.open_escrow(db, source.id, 70000, task_id="landing-page")
        hold = escrow_mod.refund_escrow(db, hold.id, "Task cancelled")
        assert hold.status == "refunded"
        assert hold.reason == "Task cancelled"
        assert wallets_mod.get_wallet(db, source.id).balance == 100000

    def test_hold_resolves_only_once(self, db):
        source = _funded(db)
        dest = wallets_mod.get_or_create_wallet(db, "wendy", "GMD")
        hold = escrow_mod.open_escrow(db, source.id, 70000, task_id="landing-page")
        escrow_mod.release_escrow(db, hold.id, dest.id)

        with pytest.raises(HoldNotActive) as exc:
            escrow_mod.refund_escrow(db, hold.id)
        assert exc.value.current_state == "released"
        with pytest.raises(HoldNotActive):
            escrow_mod.release_escrow(db, hold.id, dest.id)
        assert wallets_mod.get_wallet(db, dest.id).balance == 70000
        assert wallets_mod.get_wallet(db, source.id).balance == 30000

    def test_release_to_unknown_wallet_keeps_hold(self, db):
        source = _funded(db)
        hold = escrow_mod.open_escrow(db, source.id, 70000, task_id="landing-page")
        with pytest.raises(NotFound):
            escrow_mod.release_escrow(db, hold.id, "wal_missing")
        assert escrow_mod.get_hold(db, hold.id).status == "held"

    def test_rebind(self, db):
        source = _funded(db)
        hold = escrow_mod.open_escrow(db, source.id, 70000, task_id="landing-page", destination_party_id="wendy")
        hold = escrow_mod.rebind_escrow(db, hold.id, "ravi")
        assert hold.destination_party_id == "ravi"
        assert hold.status == "held"

    def test_rebind_resolved_hold(self, db):
        source = _funded(db)
        hold = escrow_mod.open_escrow(db, source.id, 70000, task_id="landing-page")
        escrow_mod.refund_escrow(db, hold.id)
        with pytest.raises(HoldNotActive):
            escrow_mod.rebind_escrow(db, hold.id, "ravi")


class TestConservation:
    def test_money_is_conserved_across_holds(self, db):
        source = _funded(db, amount=100000)
        dest = wallets_mod.get_or_create_wallet(db, "wendy", "GMD")
        h1 = escrow_mod.open_escrow(db, source.id, 30000, task_id="landing-page")
        h2 = escrow_mod.open_escrow(db, source.id, 20000, task_id="landing-page")
        h3 = escrow_mod.open_escrow(db, source.id, 10000, project_id="site", kind="project")
        escrow_mod.release_escrow(db, h1.id, dest.id)
        escrow_mod.refund_escrow(db, h2.id)

        stats = wallets_mod.get_wallet_stats(db, source.id)
        assert stats.escrow_holdings == h3.amount
        assert stats.total_released_out == 30000
        assert stats.total_refunds == 20000
        # deposits - withdrawals - released out - still held
        assert stats.balance == 100000 - 30000 - 10000
        total = sum(w.balance for w in wallets_mod.list_wallets(db)) + wallets_mod.committed_escrow(db, source.id)
        assert total == 100000
        for wallet in wallets_mod.list_wallets(db):
            assert wallets_mod.recompute_balance(db, wallet.id) == wallet.balance

    def test_list_holds_filters(self, db):
        source = _funded(db)
        escrow_mod.open_escrow(db, source.id, 1000, task_id="landing-page")
        h2 = escrow_mod.open_escrow(db, source.id, 2000, project_id="site", kind="project")
        escrow_mod.refund_escrow(db, h2.id)
        assert len(escrow_mod.list_holds(db, task_id="landing-page")) == 1
        assert [h.id for h in escrow_mod.list_holds(db, status="refunded")] == [h2.id]
        assert len(escrow_mod.list_holds(db, kind="project")) == 1
