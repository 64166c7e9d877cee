"""Notification service: persisted outbox plus best-effort Slack push.

Every notification is first stored in the ``notifications`` table, which
doubles as the in-app inbox. Pushing to Slack happens afterwards and never
raises: a failed push is logged and left in ``retry`` for the reconciliation
sweep, until ``notify_max_attempts`` is reached and it becomes ``failed``.
"""

import json
import logging
import sqlite3
from datetime import datetime

from connekt_fulfillment.config import Config, get_config
from connekt_fulfillment.db.engine import transaction
from connekt_fulfillment.db.models import Notification
from connekt_fulfillment.integrations import slack as slack_mod

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(self, db: sqlite3.Connection, config: Config | None = None, sender=None):
        self.db = db
        self.config = config or get_config()
        # Same call shape as slack.send_message; tests pass a fake.
        self._send = sender or slack_mod.send_message

    @property
    def push_enabled(self) -> bool:
        return bool(self.config.slack_bot_token and self.config.slack_channel)

    def notify(self, recipient_id: str, event_type: str, payload: dict | None = None) -> Notification | None:
        """Store a notification and try to push it. Never raises."""
        payload = payload or {}
        try:
            with transaction(self.db):
                cur = self.db.execute(
                    "INSERT INTO notifications (recipient_id, event_type, payload) VALUES (?, ?, ?)",
                    (recipient_id, event_type, json.dumps(payload, default=str)),
                )
            notification = self.get(cur.lastrowid)
        except sqlite3.Error:
            logger.exception("Could not store %s notification for %s", event_type, recipient_id)
            return None

        if self.push_enabled:
            notification = self._safe_push(notification)
        return notification

    def retry_pending(self) -> list[Notification]:
        """Re-attempt every push left in ``retry``."""
        if not self.push_enabled:
            return []
        rows = self.db.execute(
            "SELECT * FROM notifications WHERE push_status = 'retry' ORDER BY id"
        ).fetchall()
        return [self._safe_push(_row_to_notification(r)) for r in rows]

    def _safe_push(self, notification: Notification) -> Notification:
        try:
            return self._push(notification)
        except Exception:
            logger.exception("Failed to push notification %s", notification.id)
            return notification

    def _push(self, notification: Notification) -> Notification:
        if notification.event_type == "reconciliation_report":
            blocks = slack_mod.format_reconciliation_report(notification.payload)
        elif {"task_id", "title", "status", "project_id"} <= set(notification.payload):
            p = notification.payload
            blocks = slack_mod.format_task_notification(p["task_id"], p["title"], p["status"], p["project_id"])
        else:
            blocks = slack_mod.format_event_notification(
                notification.recipient_id, notification.event_type, notification.payload
            )
        text = slack_mod.format_event_text(
            notification.recipient_id, notification.event_type, notification.payload
        )

        attempts = notification.attempts + 1
        status = "failed" if attempts >= self.config.notify_max_attempts else "retry"
        try:
            self._send(
                self.config.slack_bot_token,
                self.config.slack_channel,
                text,
                blocks=blocks,
                timeout=self.config.notify_timeout,
            )
        except slack_mod.SlackError as e:
            logger.warning(
                "Push of notification %s failed (attempt %d, now %s): %s",
                notification.id, attempts, status, e,
            )
            self._record(notification.id, status, attempts, str(e))
        except Exception as e:
            logger.exception(
                "Push of notification %s failed unexpectedly (attempt %d, now %s)",
                notification.id, attempts, status,
            )
            self._record(notification.id, status, attempts, f"{type(e).__name__}: {e}")
        else:
            self._record(notification.id, "sent", attempts, None)
        return self.get(notification.id)

    def _record(self, notification_id: int, status: str, attempts: int, error: str | None):
        with transaction(self.db):
            self.db.execute(
                "UPDATE notifications SET push_status = ?, attempts = ?, last_error = ? WHERE id = ?",
                (status, attempts, error, notification_id),
            )

    # ── Inbox ─────────────────────────────────────────────────────────────────

    def get(self, notification_id: int) -> Notification | None:
        row = self.db.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
        if not row:
            return None
        return _row_to_notification(row)

    def list_notifications(
        self,
        recipient_id: str | None = None,
        unread_only: bool = False,
        push_status: str | None = None,
    ) -> list[Notification]:
        query = "SELECT * FROM notifications WHERE 1=1"
        params: list = []
        if recipient_id:
            query += " AND recipient_id = ?"
            params.append(recipient_id)
        if unread_only:
            query += " AND read = 0"
        if push_status:
            query += " AND push_status = ?"
            params.append(push_status)
        query += " ORDER BY id DESC"
        return [_row_to_notification(r) for r in self.db.execute(query, params).fetchall()]

    def mark_read(self, notification_id: int, recipient_id: str) -> bool:
        with transaction(self.db):
            cur = self.db.execute(
                "UPDATE notifications SET read = 1 WHERE id = ? AND recipient_id = ?",
                (notification_id, recipient_id),
            )
        return cur.rowcount > 0


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        recipient_id=row["recipient_id"],
        event_type=row["event_type"],
        payload=json.loads(row["payload"] or "{}"),
        push_status=row["push_status"],
        attempts=row["attempts"],
        last_error=row["last_error"],
        read=bool(row["read"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
