"""Proof-of-task submission and review.

A task has at most one proof awaiting review. Rejected proofs stay in the
table as history; a unique partial index on ``proofs(task_id) WHERE decision
IS NULL`` backs the single-active rule at the storage level.
"""

import json
import sqlite3
import uuid
from datetime import datetime, timezone

from connekt_fulfillment.core import tasks as tasks_mod
from connekt_fulfillment.db.engine import transaction
from connekt_fulfillment.db.models import EvidenceItem, ProofOfTask
from connekt_fulfillment.errors import (
    AlreadyResolved,
    InvalidEvidence,
    InvalidTransition,
    NotAuthorized,
    NotAuthorizedSubmitter,
    NotFound,
    ValidationError,
)

EVIDENCE_TYPES = ("image", "video", "link")
DECISIONS = ("approved", "rejected")


def validate_evidence(evidence: list) -> list[EvidenceItem]:
    """Normalize evidence references supplied by the upload service."""
    if not evidence:
        raise InvalidEvidence("At least one evidence item is required")
    items = []
    for raw in evidence:
        if isinstance(raw, EvidenceItem):
            item = raw
        elif isinstance(raw, dict):
            item = EvidenceItem(type=raw.get("type", ""), url=raw.get("url", ""), size=raw.get("size", 0))
        else:
            raise InvalidEvidence(f"Evidence items must be objects: {raw!r}")
        if item.type not in EVIDENCE_TYPES:
            raise InvalidEvidence(f"Unknown evidence type: {item.type!r}", allowed=list(EVIDENCE_TYPES))
        if not isinstance(item.url, str) or not item.url.strip():
            raise InvalidEvidence("Evidence url is required")
        if isinstance(item.size, bool) or not isinstance(item.size, int) or item.size < 0:
            raise InvalidEvidence(f"Evidence size must be a non-negative integer: {item.size!r}")
        items.append(item)
    return items


def submit_proof(
    db: sqlite3.Connection,
    task_id: str,
    submitter_id: str,
    evidence: list,
    notes: str = "",
    expected_version: int | None = None,
    now: datetime | None = None,
) -> ProofOfTask:
    """Record a proof of work and move the task to ``pending-validation``."""
    items = validate_evidence(evidence)
    proof_id = f"pot_{uuid.uuid4().hex[:12]}"
    submitted_at = (now or datetime.now(timezone.utc)).isoformat()

    with transaction(db):
        task = tasks_mod._load(db, task_id, expected_version)
        if task.status != "in-progress":
            raise InvalidTransition(
                f"Proof can only be submitted for an in-progress task; {task_id} is {task.status}",
                current_state=task.status,
                allowed=tasks_mod.allowed_transitions(task.status),
            )
        if submitter_id not in (task.assignee_id, task.task_admin_id):
            raise NotAuthorizedSubmitter(
                f"{submitter_id} is neither the assignee nor the admin of {task_id}",
                current_state=task.status,
            )
        db.execute(
            """INSERT INTO proofs (id, task_id, submitter_id, evidence, notes, submitted_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (proof_id, task_id, submitter_id, _dump_evidence(items), notes, submitted_at),
        )
        tasks_mod.set_status(db, task_id, "pending-validation", submitter_id, expected_version=task.version)
    return get_proof(db, proof_id)


def review_proof(
    db: sqlite3.Connection,
    task_id: str,
    decision: str,
    reviewer_id: str,
    notes: str | None = None,
    proof_id: str | None = None,
    now: datetime | None = None,
) -> ProofOfTask:
    """Decide the active proof: ``approved`` -> task done, ``rejected`` -> back to in-progress.

    Reviewer authorization (owner/supervisor) is checked by the orchestrator;
    here the reviewer only has to be someone other than the person paid.
    """
    if decision not in DECISIONS:
        raise ValidationError(f"Unknown decision: {decision!r}", allowed=list(DECISIONS))
    reviewed_at = (now or datetime.now(timezone.utc)).isoformat()

    with transaction(db):
        task = tasks_mod.require_task(db, task_id)
        proof = get_active_proof(db, task_id)
        if proof_id is not None and (proof is None or proof.id != proof_id):
            decided = get_proof(db, proof_id)
            if decided is None or decided.task_id != task_id:
                raise NotFound(f"Proof not found for {task_id}: {proof_id}")
            raise AlreadyResolved(
                f"Proof {proof_id} was already {decided.decision}",
                current_state=task.status,
                allowed=tasks_mod.allowed_transitions(task.status),
            )
        if proof is None:
            history = list_proofs(db, task_id)
            error = AlreadyResolved if history else InvalidTransition
            raise error(
                f"Task {task_id} has no proof awaiting review",
                current_state=task.status,
                allowed=tasks_mod.allowed_transitions(task.status),
            )
        if reviewer_id in (task.assignee_id, proof.submitter_id):
            raise NotAuthorized(
                f"{reviewer_id} cannot review their own proof", current_state=task.status
            )

        db.execute(
            """UPDATE proofs SET decision = ?, reviewer_id = ?, reviewed_at = ?, review_notes = ?
               WHERE id = ? AND decision IS NULL""",
            (decision, reviewer_id, reviewed_at, notes, proof.id),
        )
        target = "done" if decision == "approved" else "in-progress"
        tasks_mod.set_status(db, task_id, target, reviewer_id)
        tasks_mod._log_event(db, task_id, "proof_reviewed", proof.id, decision, reviewer_id)
    return get_proof(db, proof.id)


# ── Queries ───────────────────────────────────────────────────────────────────


def get_proof(db: sqlite3.Connection, proof_id: str) -> ProofOfTask | None:
    row = db.execute("SELECT * FROM proofs WHERE id = ?", (proof_id,)).fetchone()
    if not row:
        return None
    return _row_to_proof(row)


def get_active_proof(db: sqlite3.Connection, task_id: str) -> ProofOfTask | None:
    row = db.execute(
        "SELECT * FROM proofs WHERE task_id = ? AND decision IS NULL",
        (task_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_proof(row)


def list_proofs(db: sqlite3.Connection, task_id: str) -> list[ProofOfTask]:
    """All proofs for a task, oldest first, including rejected history."""
    rows = db.execute(
        "SELECT * FROM proofs WHERE task_id = ? ORDER BY submitted_at ASC, rowid ASC",
        (task_id,),
    ).fetchall()
    return [_row_to_proof(r) for r in rows]


def list_pending_reviews(db: sqlite3.Connection, project_id: str | None = None) -> list[ProofOfTask]:
    """Proofs waiting for a reviewer, optionally within one project."""
    query = """SELECT p.* FROM proofs p JOIN tasks t ON t.id = p.task_id
               WHERE p.decision IS NULL"""
    params: list = []
    if project_id:
        query += " AND t.project_id = ?"
        params.append(project_id)
    query += " ORDER BY p.submitted_at ASC"
    return [_row_to_proof(r) for r in db.execute(query, params).fetchall()]


def _dump_evidence(items: list[EvidenceItem]) -> str:
    return json.dumps([{"type": i.type, "url": i.url, "size": i.size} for i in items])


def _row_to_proof(row: sqlite3.Row) -> ProofOfTask:
    return ProofOfTask(
        id=row["id"],
        task_id=row["task_id"],
        submitter_id=row["submitter_id"],
        evidence=[EvidenceItem(**e) for e in json.loads(row["evidence"])],
        notes=row["notes"],
        submitted_at=_parse_dt(row["submitted_at"]),
        decision=row["decision"],
        reviewer_id=row["reviewer_id"],
        reviewed_at=_parse_dt(row["reviewed_at"]),
        review_notes=row["review_notes"],
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
