"""Identity/role service adapter.

The engine only ever asks one question of identity: what role does a user
hold on a project. Anything answering ``has_role(user_id, project_id)`` with
``owner``, ``supervisor``, ``member`` or ``none`` can stand in for the
default, which reads project membership from the engine's own database.
"""

import sqlite3

from connekt_fulfillment.errors import NotAuthorized

MANAGER_ROLES = ("owner", "supervisor")


class ProjectRoleResolver:
    def __init__(self, db: sqlite3.Connection):
        self.db = db

    def has_role(self, user_id: str, project_id: str) -> str:
        row = self.db.execute(
            "SELECT role FROM project_members WHERE project_id = ? AND user_id = ?",
            (project_id, user_id),
        ).fetchone()
        return row["role"] if row else "none"


def require_manager(roles, user_id: str, project_id: str, action: str) -> str:
    """Raise NotAuthorized unless the user is an owner or supervisor of the project."""
    role = roles.has_role(user_id, project_id)
    if role not in MANAGER_ROLES:
        raise NotAuthorized(
            f"{user_id} cannot {action}: requires owner or supervisor on {project_id}",
            current_state=role,
            allowed=list(MANAGER_ROLES),
        )
    return role
