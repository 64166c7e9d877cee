"""Contract negotiation state machine.

    pending -> accepted | rejected | expired | cancelled   (all terminal)

Expiry is lazy: every read and every transition attempt first checks the
deadline and persists ``expired`` when it has passed, so no background job
is needed for correctness. This module records negotiation outcomes only;
binding tasks and moving money on acceptance is the orchestrator's job.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone

from connekt_fulfillment.core import projects as projects_mod
from connekt_fulfillment.core import tasks as tasks_mod
from connekt_fulfillment.core.terms import ContractTerms, parse_terms
from connekt_fulfillment.db.engine import transaction
from connekt_fulfillment.db.models import Contract, ContractEvent
from connekt_fulfillment.errors import (
    AlreadyResolved,
    ContractExpired,
    InvalidTerms,
    NotFound,
    NotRecipient,
    NotSender,
)
from connekt_fulfillment.money import format_amount

logger = logging.getLogger(__name__)

# Contract types that hand the task itself to the worker party.
ASSIGNING_TYPES = ("task_assignment", "proposal")


def offer_contract(
    db: sqlite3.Connection,
    sender_id: str,
    recipient_id: str,
    terms: ContractTerms | dict,
    now: datetime | None = None,
    default_expiry_days: int = 7,
) -> Contract:
    """Create a ``pending`` contract after checking its terms against the referenced work."""
    now = now or _utcnow()
    if isinstance(terms, dict):
        terms = parse_terms(terms, default_expiry_days)
    if sender_id == recipient_id:
        raise InvalidTerms("A contract needs two different parties")

    contract_id = f"ctr_{uuid.uuid4().hex[:12]}"
    expires_at = now + timedelta(days=terms.expires_in_days)
    with transaction(db):
        validate_terms(db, terms, now)
        db.execute(
            """INSERT INTO contracts
               (id, sender_id, recipient_id, type, terms, task_id, project_id, expires_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (contract_id, sender_id, recipient_id, terms.type, json.dumps(terms.to_wire()),
             terms.task_id, terms.project_id, expires_at.isoformat(), now.isoformat()),
        )
        _log_event(db, contract_id, "offered", None, "pending", sender_id)
    logger.info("Contract %s (%s) offered by %s to %s", contract_id, terms.type, sender_id, recipient_id)
    return get_contract(db, contract_id, now=now)


def validate_terms(db: sqlite3.Connection, terms: ContractTerms, now: datetime):
    """Check terms against the current task/project. Raises InvalidTerms."""
    if terms.task_id:
        task = tasks_mod.get_task(db, terms.task_id)
        if task is None:
            raise InvalidTerms(f"Unknown task: {terms.task_id}")
        if task.archived or task.status in tasks_mod.TERMINAL:
            raise InvalidTerms(f"Task {task.id} is {task.status} and cannot be contracted", current_state=task.status)
        if terms.type in ASSIGNING_TYPES and task.status != "todo":
            raise InvalidTerms(f"Task {task.id} is already {task.status}", current_state=task.status)
        project = projects_mod.require_project(db, task.project_id)
        # The task's own price is already part of the committed total.
        headroom = projects_mod.budget_status(db, project.id).remaining
        if terms.type in ASSIGNING_TYPES:
            headroom += task.price_amount
    else:
        project = projects_mod.get_project(db, terms.project_id)
        if project is None:
            raise InvalidTerms(f"Unknown project: {terms.project_id}")
        if project.status == "completed":
            raise InvalidTerms(f"Project {project.id} is completed", current_state=project.status)
        headroom = projects_mod.budget_status(db, project.id).remaining

    if terms.currency != project.currency:
        raise InvalidTerms(f"Terms currency {terms.currency} does not match project currency {project.currency}")
    if terms.amount > headroom:
        raise InvalidTerms(
            f"Budget {format_amount(terms.amount, terms.currency)} exceeds remaining project budget "
            f"{format_amount(headroom, project.currency)}",
            current_state=str(headroom),
        )
    if terms.deadline:
        if terms.deadline < now.date():
            raise InvalidTerms(f"Deadline {terms.deadline.isoformat()} is in the past")
        if project.deadline and terms.deadline.isoformat() > project.deadline[:10]:
            raise InvalidTerms(
                f"Deadline {terms.deadline.isoformat()} is after the project deadline {project.deadline[:10]}"
            )


def accept_contract(db: sqlite3.Connection, contract_id: str, actor_id: str, now: datetime | None = None) -> Contract:
    """Recipient accepts a pending offer."""
    return _resolve(db, contract_id, actor_id, "accepted", now)


def reject_contract(db: sqlite3.Connection, contract_id: str, actor_id: str, now: datetime | None = None) -> Contract:
    """Recipient turns down a pending offer."""
    return _resolve(db, contract_id, actor_id, "rejected", now)


def cancel_contract(db: sqlite3.Connection, contract_id: str, actor_id: str, now: datetime | None = None) -> Contract:
    """Sender withdraws a pending offer before it is answered."""
    return _resolve(db, contract_id, actor_id, "cancelled", now)


def _resolve(db: sqlite3.Connection, contract_id: str, actor_id: str, target: str, now: datetime | None) -> Contract:
    now = now or _utcnow()
    _expire_if_due(db, contract_id, now)
    with transaction(db):
        contract = require_contract(db, contract_id)
        if contract.status == "pending" and now > contract.expires_at:
            raise ContractExpired(
                f"Contract {contract_id} expired at {contract.expires_at.isoformat()}",
                current_state="expired",
            )
        if contract.status == "expired":
            raise ContractExpired(
                f"Contract {contract_id} expired at {contract.expires_at.isoformat()}",
                current_state="expired",
            )
        if contract.status != "pending":
            raise AlreadyResolved(
                f"Contract {contract_id} is already {contract.status}",
                current_state=contract.status,
            )
        if target == "cancelled":
            if actor_id != contract.sender_id:
                raise NotSender(
                    f"Only the sender can cancel contract {contract_id}",
                    current_state=contract.status,
                    allowed=["accepted", "rejected"],
                )
        elif actor_id != contract.recipient_id:
            raise NotRecipient(
                f"Only the recipient can respond to contract {contract_id}",
                current_state=contract.status,
                allowed=["cancelled"],
            )
        db.execute(
            """UPDATE contracts SET status = ?, resolved_at = ?, resolved_by = ?
               WHERE id = ? AND status = 'pending'""",
            (target, now.isoformat(), actor_id, contract_id),
        )
        _log_event(db, contract_id, "status_changed", "pending", target, actor_id)
    logger.info("Contract %s %s by %s", contract_id, target, actor_id)
    return require_contract(db, contract_id)


def _expire_if_due(db: sqlite3.Connection, contract_id: str, now: datetime) -> bool:
    with transaction(db):
        contract = require_contract(db, contract_id)
        if contract.status != "pending" or now <= contract.expires_at:
            return False
        db.execute(
            "UPDATE contracts SET status = 'expired', resolved_at = ? WHERE id = ? AND status = 'pending'",
            (now.isoformat(), contract_id),
        )
        _log_event(db, contract_id, "status_changed", "pending", "expired", None)
    logger.info("Contract %s expired", contract_id)
    return True


def expire_overdue_contracts(db: sqlite3.Connection, now: datetime | None = None) -> list[str]:
    """Persist ``expired`` for every pending contract past its deadline."""
    now = now or _utcnow()
    rows = db.execute("SELECT id, expires_at FROM contracts WHERE status = 'pending'").fetchall()
    expired = []
    for row in rows:
        if now > datetime.fromisoformat(row["expires_at"]) and _expire_if_due(db, row["id"], now):
            expired.append(row["id"])
    return expired


# ── Queries ───────────────────────────────────────────────────────────────────


def get_contract(db: sqlite3.Connection, contract_id: str, now: datetime | None = None) -> Contract | None:
    """Read a contract, applying lazy expiry first."""
    if not db.execute("SELECT 1 FROM contracts WHERE id = ?", (contract_id,)).fetchone():
        return None
    _expire_if_due(db, contract_id, now or _utcnow())
    return require_contract(db, contract_id)


def require_contract(db: sqlite3.Connection, contract_id: str) -> Contract:
    row = db.execute("SELECT * FROM contracts WHERE id = ?", (contract_id,)).fetchone()
    if not row:
        raise NotFound(f"Contract not found: {contract_id}")
    return _row_to_contract(row)


def list_contracts(
    db: sqlite3.Connection,
    party_id: str | None = None,
    status: str | None = None,
    task_id: str | None = None,
    now: datetime | None = None,
) -> list[Contract]:
    expire_overdue_contracts(db, now)
    query = "SELECT * FROM contracts WHERE 1=1"
    params: list = []
    if party_id:
        query += " AND (sender_id = ? OR recipient_id = ?)"
        params.extend([party_id, party_id])
    if status:
        query += " AND status = ?"
        params.append(status)
    if task_id:
        query += " AND task_id = ?"
        params.append(task_id)
    query += " ORDER BY created_at DESC"
    return [_row_to_contract(r) for r in db.execute(query, params).fetchall()]


def get_contract_events(db: sqlite3.Connection, contract_id: str) -> list[ContractEvent]:
    rows = db.execute(
        "SELECT * FROM contract_events WHERE contract_id = ? ORDER BY id",
        (contract_id,),
    ).fetchall()
    return [
        ContractEvent(
            id=r["id"],
            contract_id=r["contract_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            actor_id=r["actor_id"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _log_event(
    db: sqlite3.Connection,
    contract_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
    actor_id: str | None,
):
    db.execute(
        "INSERT INTO contract_events (contract_id, event_type, old_value, new_value, actor_id) VALUES (?, ?, ?, ?, ?)",
        (contract_id, event_type, old_value, new_value, actor_id),
    )


def _row_to_contract(row: sqlite3.Row) -> Contract:
    return Contract(
        id=row["id"],
        sender_id=row["sender_id"],
        recipient_id=row["recipient_id"],
        type=row["type"],
        terms=parse_terms(json.loads(row["terms"])),
        task_id=row["task_id"],
        project_id=row["project_id"],
        status=row["status"],
        expires_at=datetime.fromisoformat(row["expires_at"]),
        resolved_at=_parse_dt(row["resolved_at"]),
        resolved_by=row["resolved_by"],
        created_at=_parse_dt(row["created_at"]),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
