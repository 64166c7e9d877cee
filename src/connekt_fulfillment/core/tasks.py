"""Task lifecycle state machine.

    todo -> in-progress -> pending-validation -> done -> paid
    pending-validation -> in-progress   (proof rejected or reassigned)
    todo | in-progress -> todo          (unassigned)

``done`` means the work was approved and payment is pending; ``paid`` is the
only settled state and requires a released escrow hold for the task.

Every transition is a read-modify-write inside one immediate transaction and
bumps ``version``. Callers that read a task earlier can pass
``expected_version`` to fail with ConcurrentModification instead of acting
on stale state.
"""

import sqlite3
from datetime import datetime, timezone

from connekt_fulfillment.core import escrow as escrow_mod
from connekt_fulfillment.core import projects as projects_mod
from connekt_fulfillment.db.engine import transaction
from connekt_fulfillment.db.models import TASK_PRIORITIES, TASK_STATUSES, Task, TaskEvent
from connekt_fulfillment.errors import (
    BudgetExceeded,
    ConcurrentModification,
    CurrencyMismatch,
    InvalidTransition,
    NotFound,
    TaskAlreadyAssigned,
    ValidationError,
)
from connekt_fulfillment.money import format_amount

TRANSITIONS = {
    "todo": ("in-progress", "todo"),
    "in-progress": ("pending-validation", "todo"),
    "pending-validation": ("done", "in-progress"),
    "done": ("paid",),
    "paid": (),
}
TERMINAL = ("done", "paid")
VISIBILITIES = ("private", "public")


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    base_slug = base_slug or "task"
    existing = db.execute("SELECT id FROM tasks WHERE id = ?", (base_slug,)).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute("SELECT id FROM tasks WHERE id = ?", (candidate,)).fetchone()
        if not existing:
            return candidate
        i += 1


def create_task(
    db: sqlite3.Connection,
    project_id: str,
    title: str,
    created_by: str,
    price_amount: int = 0,
    currency: str | None = None,
    description: str = "",
    priority: str = "medium",
    due_date: str | None = None,
    estimated_hours: float | None = None,
    visibility: str = "private",
    is_reassignable: bool = True,
) -> Task:
    """Create a task; its price must fit in what is left of the project budget."""
    with transaction(db):
        task_id = _insert_task(
            db, project_id, title, created_by, price_amount, currency, description,
            priority, due_date, estimated_hours, visibility, is_reassignable,
        )
    return get_task(db, task_id)


def create_tasks_bulk(
    db: sqlite3.Connection,
    project_id: str,
    specs: list[dict],
    created_by: str,
) -> list[Task]:
    """Create several tasks at once. Either all of them fit the budget or none is created."""
    with transaction(db):
        ids = [
            _insert_task(
                db,
                project_id,
                spec["title"],
                created_by,
                spec.get("price_amount", 0),
                spec.get("currency"),
                spec.get("description", ""),
                spec.get("priority", "medium"),
                spec.get("due_date"),
                spec.get("estimated_hours"),
                spec.get("visibility", "private"),
                spec.get("is_reassignable", True),
            )
            for spec in specs
        ]
    return [get_task(db, task_id) for task_id in ids]


def _insert_task(
    db, project_id, title, created_by, price_amount, currency, description,
    priority, due_date, estimated_hours, visibility, is_reassignable,
) -> str:
    if not title or not title.strip():
        raise ValidationError("Task title is required")
    if priority not in TASK_PRIORITIES:
        raise ValidationError(f"Unknown priority: {priority}", allowed=list(TASK_PRIORITIES))
    if visibility not in VISIBILITIES:
        raise ValidationError(f"Unknown visibility: {visibility}", allowed=list(VISIBILITIES))
    if isinstance(price_amount, bool) or not isinstance(price_amount, int) or price_amount < 0:
        raise ValidationError(f"Task price must be a non-negative number of minor units: {price_amount!r}")

    status = projects_mod.budget_status(db, project_id)
    currency = (currency or status.currency).upper()
    if currency != status.currency:
        raise CurrencyMismatch(
            f"Task currency {currency} does not match project currency {status.currency}"
        )
    _check_budget(status, price_amount)

    task_id = _unique_id(db, projects_mod.slugify(title))
    db.execute(
        """INSERT INTO tasks
           (id, project_id, title, description, priority, price_amount, currency,
            due_date, estimated_hours, visibility, is_reassignable, created_by)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (task_id, project_id, title.strip(), description, priority, price_amount, currency,
         due_date, estimated_hours, visibility, int(is_reassignable), created_by),
    )
    _log_event(db, task_id, "created", None, "todo", created_by)
    return task_id


def _check_budget(status, additional: int):
    if additional > status.remaining:
        raise BudgetExceeded(
            f"Task budget {format_amount(additional, status.currency)} exceeds remaining project budget "
            f"{format_amount(status.remaining, status.currency)} "
            f"(total {format_amount(status.total, status.currency)}, "
            f"already allocated {format_amount(status.committed, status.currency)})",
            current_state=str(status.remaining),
        )


# ── Queries ───────────────────────────────────────────────────────────────────


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def require_task(db: sqlite3.Connection, task_id: str) -> Task:
    task = get_task(db, task_id)
    if not task:
        raise NotFound(f"Task not found: {task_id}")
    return task


def list_tasks(
    db: sqlite3.Connection,
    project_id: str | None = None,
    status: str | None = None,
    assignee_id: str | None = None,
    include_archived: bool = True,
) -> list[Task]:
    """List tasks with optional filters."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)
    if status:
        query += " AND status = ?"
        params.append(status)
    if assignee_id:
        query += " AND assignee_id = ?"
        params.append(assignee_id)
    if not include_archived:
        query += " AND archived = 0"

    query += " ORDER BY created_at ASC, id ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def get_task_stats(db: sqlite3.Connection, project_id: str | None = None) -> dict:
    """Task counts per status."""
    counts = {s: 0 for s in TASK_STATUSES}
    for task in list_tasks(db, project_id):
        counts[task.status] += 1
    return {"counts": counts, "total": sum(counts.values())}


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            actor_id=r["actor_id"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def allowed_transitions(status: str) -> list[str]:
    return list(TRANSITIONS.get(status, ()))


# ── Transitions ───────────────────────────────────────────────────────────────


def assign_task(
    db: sqlite3.Connection,
    task_id: str,
    assignee_id: str,
    actor_id: str,
    expected_version: int | None = None,
) -> Task:
    """Bind a ``todo`` task to an assignee and start it."""
    with transaction(db):
        task = _load(db, task_id, expected_version)
        if task.status != "todo":
            raise TaskAlreadyAssigned(
                f"Task {task_id} is {task.status}"
                + (f" and assigned to {task.assignee_id}" if task.assignee_id else ""),
                current_state=task.status,
                allowed=allowed_transitions(task.status),
            )
        _write(db, task, {"status": "in-progress", "assignee_id": assignee_id})
        _log_event(db, task_id, "assigned", task.assignee_id, assignee_id, actor_id)
        _log_event(db, task_id, "status_changed", task.status, "in-progress", actor_id)
    return get_task(db, task_id)


def unassign_task(
    db: sqlite3.Connection,
    task_id: str,
    actor_id: str,
    expected_version: int | None = None,
) -> Task:
    """Return a ``todo``/``in-progress`` task to the pool."""
    with transaction(db):
        task = _load(db, task_id, expected_version)
        if task.status not in ("todo", "in-progress"):
            raise InvalidTransition(
                f"Task {task_id} cannot be unassigned while {task.status}",
                current_state=task.status,
                allowed=allowed_transitions(task.status),
            )
        _write(db, task, {"status": "todo", "assignee_id": None})
        _log_event(db, task_id, "unassigned", task.assignee_id, None, actor_id)
        if task.status != "todo":
            _log_event(db, task_id, "status_changed", task.status, "todo", actor_id)
    return get_task(db, task_id)


def reassign_task(
    db: sqlite3.Connection,
    task_id: str,
    new_assignee_id: str,
    actor_id: str,
    expected_version: int | None = None,
) -> Task:
    """Hand a non-terminal task to someone else.

    A proof awaiting review is archived as rejected and the task goes back
    to ``in-progress`` for the new assignee. Escrow is left alone.
    """
    with transaction(db):
        task = _load(db, task_id, expected_version)
        if task.status in TERMINAL:
            raise InvalidTransition(
                f"Task {task_id} is {task.status} and can no longer be reassigned",
                current_state=task.status,
                allowed=allowed_transitions(task.status),
            )
        if not task.is_reassignable:
            raise InvalidTransition(
                f"Task {task_id} is not reassignable", current_state=task.status
            )
        updates = {"assignee_id": new_assignee_id}
        if task.status == "pending-validation":
            db.execute(
                """UPDATE proofs SET decision = 'rejected', reviewer_id = ?, reviewed_at = ?,
                          review_notes = 'Superseded by reassignment'
                   WHERE task_id = ? AND decision IS NULL""",
                (actor_id, _now(), task_id),
            )
            updates["status"] = "in-progress"
        _write(db, task, updates)
        _log_event(db, task_id, "reassigned", task.assignee_id, new_assignee_id, actor_id)
        if "status" in updates:
            _log_event(db, task_id, "status_changed", task.status, updates["status"], actor_id)
    return get_task(db, task_id)


def set_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
    actor_id: str,
    expected_version: int | None = None,
) -> Task:
    """Move a task along one edge of the lifecycle graph."""
    with transaction(db):
        task = _load(db, task_id, expected_version)
        _check_edge(task, status)
        updates: dict = {"status": status}
        if status == "done":
            updates["completed_at"] = _now()
        if status == "paid":
            released = escrow_mod.list_holds(db, task_id=task_id, status="released")
            if not released:
                raise InvalidTransition(
                    f"Task {task_id} has no released escrow hold and cannot be marked paid",
                    current_state=task.status,
                    allowed=allowed_transitions(task.status),
                )
            updates["payment_status"] = "paid"
            updates["archived"] = 1
        _write(db, task, updates)
        _log_event(db, task_id, "status_changed", task.status, status, actor_id)
    return get_task(db, task_id)


def mark_done(db: sqlite3.Connection, task_id: str, actor_id: str) -> Task:
    return set_status(db, task_id, "done", actor_id)


def mark_paid(db: sqlite3.Connection, task_id: str, actor_id: str) -> Task:
    return set_status(db, task_id, "paid", actor_id)


def set_payment_status(db: sqlite3.Connection, task_id: str, payment_status: str, actor_id: str) -> Task:
    if payment_status not in ("unpaid", "pending"):
        raise ValidationError(
            f"Payment status {payment_status} is set by settlement only",
            allowed=["unpaid", "pending"],
        )
    with transaction(db):
        task = _load(db, task_id)
        if task.payment_status == "paid":
            raise InvalidTransition(f"Task {task_id} is already paid", current_state=task.status)
        _write(db, task, {"payment_status": payment_status})
        _log_event(db, task_id, "payment_status_changed", task.payment_status, payment_status, actor_id)
    return get_task(db, task_id)


def set_task_admin(db: sqlite3.Connection, task_id: str, admin_id: str | None, actor_id: str) -> Task:
    with transaction(db):
        task = _load(db, task_id)
        if task.status in TERMINAL:
            raise InvalidTransition(
                f"Task {task_id} is {task.status}", current_state=task.status
            )
        _write(db, task, {"task_admin_id": admin_id})
        _log_event(db, task_id, "task_admin_changed", task.task_admin_id, admin_id, actor_id)
    return get_task(db, task_id)


# ── Metadata ──────────────────────────────────────────────────────────────────


def update_task_details(db: sqlite3.Connection, task_id: str, actor_id: str, **kwargs) -> Task:
    """Update descriptive fields. These carry no financial meaning and skip version checks."""
    allowed = {"title", "description", "priority", "due_date", "estimated_hours"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if "priority" in updates and updates["priority"] not in TASK_PRIORITIES:
        raise ValidationError(f"Unknown priority: {updates['priority']}", allowed=list(TASK_PRIORITIES))
    require_task(db, task_id)
    if not updates:
        return get_task(db, task_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    with transaction(db):
        db.execute(
            f"UPDATE tasks SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
            list(updates.values()) + [task_id],
        )
        _log_event(db, task_id, "details_changed", None, ", ".join(sorted(updates)), actor_id)
    return get_task(db, task_id)


def update_task_pricing(db: sqlite3.Connection, task_id: str, price_amount: int, actor_id: str) -> Task:
    """Re-price an unassigned task, re-checking the project budget."""
    if isinstance(price_amount, bool) or not isinstance(price_amount, int) or price_amount < 0:
        raise ValidationError(f"Task price must be a non-negative number of minor units: {price_amount!r}")
    with transaction(db):
        task = _load(db, task_id)
        if task.status != "todo" or escrow_mod.list_holds(db, task_id=task_id, status="held"):
            raise InvalidTransition(
                f"Task {task_id} can only be re-priced while todo and unfunded",
                current_state=task.status,
            )
        status = projects_mod.budget_status(db, task.project_id)
        _check_budget(status, price_amount - task.price_amount)
        _write(db, task, {"price_amount": price_amount})
        _log_event(db, task_id, "price_changed", str(task.price_amount), str(price_amount), actor_id)
    return get_task(db, task_id)


def set_visibility(db: sqlite3.Connection, task_id: str, visibility: str, actor_id: str) -> Task:
    """Publish a task to the explore listing or take it private again."""
    if visibility not in VISIBILITIES:
        raise ValidationError(f"Unknown visibility: {visibility}", allowed=list(VISIBILITIES))
    task = require_task(db, task_id)
    with transaction(db):
        db.execute(
            "UPDATE tasks SET visibility = ?, updated_at = datetime('now') WHERE id = ?",
            (visibility, task_id),
        )
        _log_event(db, task_id, "visibility_changed", task.visibility, visibility, actor_id)
    return get_task(db, task_id)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _load(db: sqlite3.Connection, task_id: str, expected_version: int | None = None) -> Task:
    task = require_task(db, task_id)
    if expected_version is not None and task.version != expected_version:
        raise ConcurrentModification(
            f"Task {task_id} changed since it was read (version {expected_version}, now {task.version})",
            current_state=task.status,
            allowed=allowed_transitions(task.status),
        )
    return task


def _check_edge(task: Task, target: str):
    if target not in TASK_STATUSES:
        raise ValidationError(f"Unknown task status: {target}", allowed=list(TASK_STATUSES))
    if target not in TRANSITIONS[task.status]:
        raise InvalidTransition(
            f"Task {task.id} cannot move from {task.status} to {target}",
            current_state=task.status,
            allowed=allowed_transitions(task.status),
        )


def _write(db: sqlite3.Connection, task: Task, updates: dict):
    """Apply updates if nobody else has written the row since it was read."""
    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("version = version + 1")
    set_parts.append("updated_at = datetime('now')")
    values = list(updates.values()) + [task.id, task.version]
    result = db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ? AND version = ?",
        values,
    )
    if result.rowcount == 0:
        current = get_task(db, task.id)
        raise ConcurrentModification(
            f"Task {task.id} was modified concurrently",
            current_state=current.status if current else None,
            allowed=allowed_transitions(current.status) if current else [],
        )


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
    actor_id: str | None = None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value, actor_id) VALUES (?, ?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value, actor_id),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"],
        status=row["status"],
        priority=row["priority"],
        assignee_id=row["assignee_id"],
        task_admin_id=row["task_admin_id"],
        price_amount=row["price_amount"],
        currency=row["currency"],
        payment_status=row["payment_status"],
        due_date=row["due_date"],
        estimated_hours=row["estimated_hours"],
        visibility=row["visibility"],
        is_reassignable=bool(row["is_reassignable"]),
        archived=bool(row["archived"]),
        version=row["version"],
        created_by=row["created_by"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
