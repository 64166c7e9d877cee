"""Project, membership and budget operations."""

import re
import sqlite3
from datetime import datetime

from connekt_fulfillment.db.engine import transaction
from connekt_fulfillment.db.models import PROJECT_ROLES, BudgetStatus, Project, ProjectMember
from connekt_fulfillment.errors import InvalidTransition, NotFound, ValidationError
from connekt_fulfillment.money import require_positive

PROJECT_STATUSES = ("planning", "active", "on-hold", "completed")


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    owner_id: str,
    title: str,
    budget: int,
    currency: str,
    workspace_id: str = "default",
    description: str = "",
    deadline: str | None = None,
) -> Project:
    """Create a new project; the owner becomes its first member."""
    if budget != 0:
        require_positive(budget)
    if get_project(db, project_id):
        raise ValidationError(f"Project already exists: {project_id}")
    with transaction(db):
        db.execute(
            """INSERT INTO projects (id, workspace_id, owner_id, title, description, budget, currency, deadline)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (project_id, workspace_id, owner_id, title, description, budget, currency.upper(), deadline),
        )
        db.execute(
            "INSERT INTO project_members (project_id, user_id, role) VALUES (?, ?, 'owner')",
            (project_id, owner_id),
        )
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID with its members."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    project = _row_to_project(row)
    project.members = list_members(db, project_id)
    return project


def require_project(db: sqlite3.Connection, project_id: str) -> Project:
    project = get_project(db, project_id)
    if not project:
        raise NotFound(f"Project not found: {project_id}")
    return project


def list_projects(db: sqlite3.Connection, member_id: str | None = None) -> list[Project]:
    """List projects, optionally only those a user belongs to."""
    if member_id:
        rows = db.execute(
            """SELECT p.* FROM projects p
               JOIN project_members m ON m.project_id = p.id
               WHERE m.user_id = ? ORDER BY p.created_at DESC""",
            (member_id,),
        ).fetchall()
    else:
        rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC").fetchall()
    return [_row_to_project(r) for r in rows]


def update_project_status(db: sqlite3.Connection, project_id: str, status: str) -> Project:
    if status not in PROJECT_STATUSES:
        raise ValidationError(f"Unknown project status: {status}", allowed=list(PROJECT_STATUSES))
    project = require_project(db, project_id)
    if project.status == "completed" and status != "completed":
        raise InvalidTransition(
            f"Project {project_id} is completed", current_state=project.status
        )
    with transaction(db):
        db.execute(
            "UPDATE projects SET status = ?, updated_at = datetime('now') WHERE id = ?",
            (status, project_id),
        )
    return get_project(db, project_id)


def update_project_budget(db: sqlite3.Connection, project_id: str, budget: int) -> Project:
    """Change the budget; it may never drop below what tasks already commit."""
    with transaction(db):
        status = budget_status(db, project_id)
        if budget < status.committed:
            raise ValidationError(
                f"Budget {budget} is below the {status.committed} already committed",
                current_state=str(status.total),
            )
        db.execute(
            "UPDATE projects SET budget = ?, updated_at = datetime('now') WHERE id = ?",
            (budget, project_id),
        )
    return get_project(db, project_id)


# ── Members ───────────────────────────────────────────────────────────────────


def add_member(db: sqlite3.Connection, project_id: str, user_id: str, role: str = "member") -> ProjectMember:
    """Add a member or change an existing member's role."""
    if role not in PROJECT_ROLES:
        raise ValidationError(f"Unknown role: {role}", allowed=list(PROJECT_ROLES))
    require_project(db, project_id)
    with transaction(db):
        db.execute(
            """INSERT INTO project_members (project_id, user_id, role) VALUES (?, ?, ?)
               ON CONFLICT(project_id, user_id) DO UPDATE SET role = excluded.role""",
            (project_id, user_id, role),
        )
    return get_member(db, project_id, user_id)


def remove_member(db: sqlite3.Connection, project_id: str, user_id: str) -> bool:
    project = require_project(db, project_id)
    if user_id == project.owner_id:
        raise ValidationError("The project owner cannot be removed", current_state="owner")
    with transaction(db):
        result = db.execute(
            "DELETE FROM project_members WHERE project_id = ? AND user_id = ?",
            (project_id, user_id),
        )
    return result.rowcount > 0


def get_member(db: sqlite3.Connection, project_id: str, user_id: str) -> ProjectMember | None:
    row = db.execute(
        "SELECT * FROM project_members WHERE project_id = ? AND user_id = ?",
        (project_id, user_id),
    ).fetchone()
    if not row:
        return None
    return ProjectMember(user_id=row["user_id"], role=row["role"], assigned_at=_parse_dt(row["assigned_at"]))


def list_members(db: sqlite3.Connection, project_id: str) -> list[ProjectMember]:
    rows = db.execute(
        "SELECT * FROM project_members WHERE project_id = ? ORDER BY assigned_at",
        (project_id,),
    ).fetchall()
    return [
        ProjectMember(user_id=r["user_id"], role=r["role"], assigned_at=_parse_dt(r["assigned_at"]))
        for r in rows
    ]


# ── Budget ────────────────────────────────────────────────────────────────────


def budget_status(db: sqlite3.Connection, project_id: str) -> BudgetStatus:
    """Total budget versus what is already committed.

    Committed is the task pricing plus every role or task-admin fee that is
    held or already paid out. Assignee holds are covered by the task price.
    """
    project = require_project(db, project_id)
    row = db.execute(
        """SELECT
               (SELECT COALESCE(SUM(price_amount), 0) FROM tasks WHERE project_id = :p)
             + (SELECT COALESCE(SUM(h.amount), 0)
                  FROM escrow_holds h
                  LEFT JOIN tasks t ON t.id = h.task_id
                 WHERE h.kind IN ('project', 'task_admin')
                   AND h.status IN ('held', 'released')
                   AND COALESCE(h.project_id, t.project_id) = :p) AS committed""",
        {"p": project_id},
    ).fetchone()
    return BudgetStatus(
        project_id=project_id,
        currency=project.currency,
        total=project.budget,
        committed=row["committed"],
    )


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        workspace_id=row["workspace_id"],
        owner_id=row["owner_id"],
        title=row["title"],
        description=row["description"],
        budget=row["budget"],
        currency=row["currency"],
        deadline=row["deadline"],
        status=row["status"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
