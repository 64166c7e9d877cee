"""Tests for proof-of-task submission and review."""

import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from connekt_fulfillment.core import projects as projects_mod
from connekt_fulfillment.core import proofs as proofs_mod
from connekt_fulfillment.core import tasks as tasks_mod
from connekt_fulfillment.db.engine import init_db
from connekt_fulfillment.db.models import EvidenceItem
from connekt_fulfillment.errors import (
    AlreadyResolved,
    ConcurrentModification,
    InvalidEvidence,
    InvalidTransition,
    NotAuthorized,
    NotAuthorizedSubmitter,
    NotFound,
    ValidationError,
)

EVIDENCE = [
    {"type": "image", "url": "https://cdn.example.com/shot.png", "size": 2048},
    {"type": "link", "url": "https://staging.example.com"},
]


@pytest.fixture
def db():
    """A project with one in-progress task assigned to wendy."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "site", "olivia", "Website", 0, "GMD")
        tasks_mod.create_task(conn, "site", "Landing page", "olivia")
        tasks_mod.assign_task(conn, "landing-page", "wendy", "olivia")
        yield conn
        conn.close()


class TestEvidence:
    def test_normalizes_items(self):
        items = proofs_mod.validate_evidence(EVIDENCE)
        assert items == [
            EvidenceItem(type="image", url="https://cdn.example.com/shot.png", size=2048),
            EvidenceItem(type="link", url="https://staging.example.com", size=0),
        ]

    def test_empty(self):
        with pytest.raises(InvalidEvidence):
            proofs_mod.validate_evidence([])

    @pytest.mark.parametrize("item", [
        {"type": "pdf", "url": "https://x"},
        {"type": "image", "url": ""},
        {"type": "image", "url": "https://x", "size": -1},
        "https://x",
    ])
    def test_bad_items(self, item):
        with pytest.raises(InvalidEvidence):
            proofs_mod.validate_evidence([item])


class TestSubmitProof:
    def test_submit_moves_task_to_review(self, db):
        proof = proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE, notes="Ready")
        assert proof.id.startswith("pot_")
        assert proof.decision is None
        assert proof.notes == "Ready"
        assert len(proof.evidence) == 2
        assert tasks_mod.get_task(db, "landing-page").status == "pending-validation"
        assert proofs_mod.get_active_proof(db, "landing-page").id == proof.id

    def test_task_admin_may_submit(self, db):
        tasks_mod.set_task_admin(db, "landing-page", "sam", "olivia")
        proof = proofs_mod.submit_proof(db, "landing-page", "sam", EVIDENCE)
        assert proof.submitter_id == "sam"

    def test_outsider_cannot_submit(self, db):
        with pytest.raises(NotAuthorizedSubmitter):
            proofs_mod.submit_proof(db, "landing-page", "mallory", EVIDENCE)
        assert tasks_mod.get_task(db, "landing-page").status == "in-progress"

    def test_only_one_active_proof(self, db):
        proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE)
        with pytest.raises(InvalidTransition) as exc:
            proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE)
        assert exc.value.current_state == "pending-validation"

    def test_storage_enforces_one_active_proof(self, db):
        proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE)
        with pytest.raises(sqlite3.IntegrityError):
            db.execute(
                "INSERT INTO proofs (id, task_id, submitter_id, evidence, submitted_at) VALUES (?, ?, ?, ?, ?)",
                ("pot_dup", "landing-page", "wendy", "[]", datetime.now(timezone.utc).isoformat()),
            )
        db.rollback()

    def test_todo_task(self, db):
        tasks_mod.create_task(db, "site", "Later", "olivia")
        with pytest.raises(InvalidTransition):
            proofs_mod.submit_proof(db, "later", "wendy", EVIDENCE)

    def test_stale_version(self, db):
        with pytest.raises(ConcurrentModification):
            proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE, expected_version=1)


class TestReviewProof:
    def test_approve(self, db):
        proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE)
        proof = proofs_mod.review_proof(db, "landing-page", "approved", "olivia", notes="Looks good")
        assert proof.decision == "approved"
        assert proof.reviewer_id == "olivia"
        assert proof.review_notes == "Looks good"
        task = tasks_mod.get_task(db, "landing-page")
        assert task.status == "done"
        assert task.completed_at is not None

    def test_reject_then_resubmit(self, db):
        t0 = datetime(2026, 10, 1, tzinfo=timezone.utc)
        first = proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE, now=t0)
        proofs_mod.review_proof(db, "landing-page", "rejected", "olivia", notes="Blurry", now=t0)
        assert tasks_mod.get_task(db, "landing-page").status == "in-progress"

        second = proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE, now=t0 + timedelta(hours=1))
        assert second.id != first.id
        history = proofs_mod.list_proofs(db, "landing-page")
        assert [p.id for p in history] == [first.id, second.id]
        assert history[0].decision == "rejected"
        assert history[0].review_notes == "Blurry"
        assert history[1].decision is None

    def test_review_twice(self, db):
        proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE)
        proofs_mod.review_proof(db, "landing-page", "approved", "olivia")
        with pytest.raises(AlreadyResolved) as exc:
            proofs_mod.review_proof(db, "landing-page", "rejected", "olivia")
        assert exc.value.current_state == "done"

    def test_review_decided_proof_by_id(self, db):
        first = proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE)
        proofs_mod.review_proof(db, "landing-page", "rejected", "olivia")
        proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE)
        with pytest.raises(AlreadyResolved):
            proofs_mod.review_proof(db, "landing-page", "approved", "olivia", proof_id=first.id)
        assert tasks_mod.get_task(db, "landing-page").status == "pending-validation"

    def test_review_unknown_proof_id(self, db):
        proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE)
        with pytest.raises(NotFound):
            proofs_mod.review_proof(db, "landing-page", "approved", "olivia", proof_id="pot_missing")

    def test_nothing_to_review(self, db):
        with pytest.raises(InvalidTransition):
            proofs_mod.review_proof(db, "landing-page", "approved", "olivia")

    def test_no_self_review(self, db):
        proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE)
        with pytest.raises(NotAuthorized):
            proofs_mod.review_proof(db, "landing-page", "approved", "wendy")

    def test_unknown_decision(self, db):
        proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE)
        with pytest.raises(ValidationError):
            proofs_mod.review_proof(db, "landing-page", "maybe", "olivia")

    def test_pending_reviews(self, db):
        proof = proofs_mod.submit_proof(db, "landing-page", "wendy", EVIDENCE)
        assert [p.id for p in proofs_mod.list_pending_reviews(db, "site")] == [proof.id]
        proofs_mod.review_proof(db, "landing-page", "approved", "olivia")
        assert proofs_mod.list_pending_reviews(db) == []
