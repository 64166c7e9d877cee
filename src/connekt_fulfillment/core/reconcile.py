"""Reconciliation: repair what a partial failure left behind, report the rest.

Money is never moved here. The sweep only finishes settlements whose escrow
was already released, and reports anything it cannot explain.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from connekt_fulfillment.core import contracts as contracts_mod
from connekt_fulfillment.core import escrow as escrow_mod
from connekt_fulfillment.core import tasks as tasks_mod
from connekt_fulfillment.core import wallets as wallets_mod
from connekt_fulfillment.db.engine import transaction
from connekt_fulfillment.errors import EngineError

logger = logging.getLogger(__name__)

RECONCILER = "reconciler"


@dataclass
class ReconciliationReport:
    completed_settlements: list[int] = field(default_factory=list)
    repaired_tasks: list[str] = field(default_factory=list)
    anomalies: list[str] = field(default_factory=list)
    balance_mismatches: list[dict] = field(default_factory=list)
    expired_contracts: list[str] = field(default_factory=list)
    retried_notifications: int = 0

    @property
    def clean(self) -> bool:
        return not (self.repaired_tasks or self.anomalies or self.balance_mismatches)

    def summary(self) -> dict:
        return {
            "repaired": len(self.repaired_tasks),
            "anomalies": len(self.anomalies),
            "balance_mismatches": len(self.balance_mismatches),
            "expired_contracts": len(self.expired_contracts),
            "retried_notifications": self.retried_notifications,
        }


def reconcile(db: sqlite3.Connection, now: datetime | None = None, notifier=None) -> ReconciliationReport:
    """Run one sweep over settlements, tasks, wallets, contracts and pushes."""
    now = now or datetime.now(timezone.utc)
    report = ReconciliationReport()

    _finish_released_settlements(db, report)
    _repair_unpaid_tasks(db, report)
    _find_unfunded_paid_tasks(db, report)
    _check_wallet_balances(db, report)
    report.expired_contracts = contracts_mod.expire_overdue_contracts(db, now)
    if notifier is not None:
        report.retried_notifications = len(notifier.retry_pending())

    if not report.clean:
        logger.warning("Reconciliation found issues: %s", report.summary())
    return report


def _finish_released_settlements(db: sqlite3.Connection, report: ReconciliationReport):
    rows = db.execute("SELECT id, task_id FROM settlements WHERE status = 'released'").fetchall()
    for row in rows:
        task = tasks_mod.require_task(db, row["task_id"])
        try:
            if task.status == "done":
                tasks_mod.mark_paid(db, task.id, RECONCILER)
                report.repaired_tasks.append(task.id)
        except EngineError as e:
            logger.error("Settlement %s for %s still cannot be completed: %s", row["id"], task.id, e)
            continue
        with transaction(db):
            db.execute(
                "UPDATE settlements SET status = 'completed', updated_at = datetime('now') WHERE id = ?",
                (row["id"],),
            )
        report.completed_settlements.append(row["id"])


def _repair_unpaid_tasks(db: sqlite3.Connection, report: ReconciliationReport):
    rows = db.execute(
        """SELECT DISTINCT t.id, t.status FROM tasks t
           JOIN escrow_holds h ON h.task_id = t.id AND h.status = 'released'
           WHERE t.status != 'paid'"""
    ).fetchall()
    for row in rows:
        task_id = row["id"]
        if row["status"] != "done":
            logger.error("Task %s has released escrow while %s", task_id, row["status"])
            report.anomalies.append(task_id)
            continue
        if escrow_mod.list_holds(db, task_id=task_id, status="held"):
            # Partially released; the settlement is retried, not guessed at.
            continue
        try:
            tasks_mod.mark_paid(db, task_id, RECONCILER)
        except EngineError as e:
            logger.error("Could not mark %s paid: %s", task_id, e)
            continue
        logger.info("Reconciled %s to paid", task_id)
        report.repaired_tasks.append(task_id)


def _find_unfunded_paid_tasks(db: sqlite3.Connection, report: ReconciliationReport):
    rows = db.execute(
        """SELECT t.id FROM tasks t
           WHERE t.status = 'paid' AND NOT EXISTS (
               SELECT 1 FROM escrow_holds h WHERE h.task_id = t.id AND h.status = 'released'
           )"""
    ).fetchall()
    for row in rows:
        logger.error("Task %s is paid without any released escrow", row["id"])
        report.anomalies.append(row["id"])


def _check_wallet_balances(db: sqlite3.Connection, report: ReconciliationReport):
    for wallet in wallets_mod.list_wallets(db):
        computed = wallets_mod.recompute_balance(db, wallet.id)
        if computed != wallet.balance:
            logger.error(
                "Wallet %s balance %d does not match its transaction log (%d)",
                wallet.id, wallet.balance, computed,
            )
            report.balance_mismatches.append(
                {"wallet_id": wallet.id, "stored": wallet.balance, "computed": computed}
            )


class ReconciliationSweeper:
    """Background thread that runs reconciliation periodically."""

    def __init__(self, db_path: Path, interval: float = 60.0, config=None):
        self.db_path = db_path
        self.interval = interval
        self.config = config
        self.last_report: ReconciliationReport | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the sweeper thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="reconciliation-sweeper", daemon=True
        )
        self._thread.start()
        logger.info("Reconciliation sweeper started")

    def stop(self):
        """Signal the sweeper thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Reconciliation sweeper stopped")

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.sweep()
            except Exception:
                logger.exception("Error in reconciliation sweep")
            self._stop_event.wait(self.interval)

    def sweep(self) -> ReconciliationReport:
        """Run one sweep on a connection of its own."""
        from connekt_fulfillment.db.engine import init_db
        from connekt_fulfillment.integrations.notify import Notifier

        timeout = self.config.lock_timeout if self.config else 5.0
        db = init_db(self.db_path, timeout=timeout)
        try:
            notifier = Notifier(db, self.config) if self.config else None
            report = reconcile(db, notifier=notifier)
            if notifier is not None and not report.clean:
                notifier.notify(RECONCILER, "reconciliation_report", report.summary())
            self.last_report = report
            return report
        finally:
            db.close()
