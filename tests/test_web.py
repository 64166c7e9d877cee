"""Tests for the JSON web API."""

import os
import tempfile
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from connekt_fulfillment.core import projects as projects_mod
from connekt_fulfillment.core import tasks as tasks_mod
from connekt_fulfillment.db.engine import init_db
from connekt_fulfillment.web.app import create_app

EVIDENCE = [{"type": "image", "url": "https://cdn.example.com/landing.png", "size": 4096}]


@pytest.fixture
def web_env():
    """Set up a temp environment for web API testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        env = {"CF_DB_PATH": str(db_path), "SLACK_BOT_TOKEN": None, "CF_SLACK_CHANNEL": None}
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v

        # Seed data
        db = init_db(db_path)
        projects_mod.create_project(db, "site", "olivia", "Website", 100000, "GMD")
        tasks_mod.create_task(db, "site", "Landing page", "olivia", price_amount=15000)
        db.close()

        app = create_app()
        client = TestClient(app)
        yield client

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def as_(actor):
    return {"X-Actor-Id": actor}


def _hire(client, budget=150):
    client.post("/api/wallet/deposit", json={"amount": 500}, headers=as_("olivia"))
    resp = client.post(
        "/api/contracts",
        json={"recipient_id": "wendy", "terms": {
            "type": "task_assignment", "taskId": "landing-page", "budget": budget, "currency": "GMD",
        }},
        headers=as_("olivia"),
    )
    assert resp.status_code == 201, resp.text
    contract_id = resp.json()["id"]
    resp = client.post(f"/api/contracts/{contract_id}/accept", headers=as_("wendy"))
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestProjectsAPI:
    def test_list_projects(self, web_env):
        resp = web_env.get("/api/projects")
        assert resp.status_code == 200
        assert [p["id"] for p in resp.json()] == ["site"]

    def test_create_project(self, web_env):
        resp = web_env.post(
            "/api/projects", json={"id": "app", "title": "Mobile app", "budget": 250.5}, headers=as_("ravi")
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["owner_id"] == "ravi"
        assert data["budget"] == 25050
        assert data["currency"] == "GMD"

    def test_get_nonexistent_project(self, web_env):
        resp = web_env.get("/api/projects/nope")
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    def test_budget(self, web_env):
        resp = web_env.get("/api/projects/site/budget")
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 100000
        assert data["remaining"] == 85000

    def test_add_member_requires_owner(self, web_env):
        resp = web_env.post("/api/projects/site/members", json={"user_id": "sam"}, headers=as_("mallory"))
        assert resp.status_code == 403

        resp = web_env.post(
            "/api/projects/site/members", json={"user_id": "sam", "role": "supervisor"}, headers=as_("olivia")
        )
        assert resp.status_code == 201
        assert resp.json()["role"] == "supervisor"


class TestTasksAPI:
    def test_create_task(self, web_env):
        resp = web_env.post(
            "/api/projects/site/tasks", json={"title": "Contact form", "price": 80}, headers=as_("olivia")
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["id"] == "contact-form"
        assert data["price_amount"] == 8000
        assert data["status"] == "todo"

    def test_create_task_over_budget(self, web_env):
        resp = web_env.post(
            "/api/projects/site/tasks", json={"title": "Huge", "price": 900}, headers=as_("olivia")
        )
        assert resp.status_code == 400
        assert resp.json()["current_state"] == "85000"

    def test_missing_title(self, web_env):
        resp = web_env.post("/api/projects/site/tasks", json={"price": 10}, headers=as_("olivia"))
        assert resp.status_code == 400
        assert "title" in resp.json()["message"]

    def test_project_tasks(self, web_env):
        resp = web_env.get("/api/projects/site/tasks")
        assert resp.status_code == 200
        assert [t["id"] for t in resp.json()] == ["landing-page"]

    def test_get_single_task(self, web_env):
        resp = web_env.get("/api/tasks/landing-page")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "todo"
        assert "in-progress" in data["allowed_transitions"]
        assert data["escrow"] == []
        assert data["proofs"] == []

    def test_get_nonexistent_task(self, web_env):
        resp = web_env.get("/api/tasks/nope")
        assert resp.status_code == 404

    def test_assign_with_stale_version(self, web_env):
        resp = web_env.post(
            "/api/tasks/landing-page/assign",
            json={"assignee_id": "wendy", "expected_version": 7},
            headers=as_("olivia"),
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "concurrent_modification"

        web_env.post("/api/wallet/deposit", json={"amount": 150}, headers=as_("olivia"))
        resp = web_env.post(
            "/api/tasks/landing-page/assign",
            json={"assignee_id": "wendy", "expected_version": 1},
            headers=as_("olivia"),
        )
        assert resp.status_code == 200
        assert resp.json()["assignee_id"] == "wendy"


class TestRequests:
    def test_missing_actor(self, web_env):
        resp = web_env.post("/api/wallet/deposit", json={"amount": 10})
        assert resp.status_code == 401
        assert resp.json()["error"] == "missing_actor"

    def test_invalid_json(self, web_env):
        resp = web_env.post(
            "/api/wallet/deposit", content=b"{not json", headers={**as_("olivia"), "Content-Type": "application/json"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_json"

    def test_invalid_amount(self, web_env):
        resp = web_env.post("/api/wallet/deposit", json={"amount": -5}, headers=as_("olivia"))
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_amount"


class TestWalletAPI:
    def test_deposit_withdraw(self, web_env):
        resp = web_env.post("/api/wallet/deposit", json={"amount": 100}, headers=as_("olivia"))
        assert resp.status_code == 200
        assert resp.json()["balance"] == 10000

        resp = web_env.post("/api/wallet/withdraw", json={"amount": 25.25}, headers=as_("olivia"))
        assert resp.json()["balance"] == 7475

        resp = web_env.get("/api/wallet", headers=as_("olivia"))
        data = resp.json()
        assert data["wallet"]["owner_id"] == "olivia"
        assert data["stats"]["total_deposits"] == 10000
        assert data["stats"]["total_withdrawals"] == 2525

        resp = web_env.get("/api/wallet/transactions", headers=as_("olivia"))
        assert [t["type"] for t in resp.json()] == ["deposit", "withdrawal"]

    def test_transactions_limit(self, web_env):
        web_env.post("/api/wallet/deposit", json={"amount": 100}, headers=as_("olivia"))
        web_env.post("/api/wallet/deposit", json={"amount": 50}, headers=as_("olivia"))
        resp = web_env.get("/api/wallet/transactions", params={"limit": "1"}, headers=as_("olivia"))
        assert resp.status_code == 200
        assert len(resp.json()) == 1

        resp = web_env.get("/api/wallet/transactions", params={"limit": "ten"}, headers=as_("olivia"))
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_error"
        assert "limit" in resp.json()["message"]

    def test_overdraw(self, web_env):
        resp = web_env.post("/api/wallet/withdraw", json={"amount": 1}, headers=as_("olivia"))
        assert resp.status_code == 402
        assert resp.json()["error"] == "insufficient_funds"


class TestContractFlowAPI:
    def test_hire_prove_and_pay(self, web_env):
        result = _hire(web_env)
        assert result["contract"]["status"] == "accepted"
        assert result["task"]["assignee_id"] == "wendy"
        assert result["hold"]["amount"] == 15000

        resp = web_env.post(
            "/api/tasks/landing-page/proofs", json={"evidence": EVIDENCE, "notes": "Done"}, headers=as_("wendy")
        )
        assert resp.status_code == 201
        assert resp.json()["id"].startswith("pot_")

        resp = web_env.post(
            "/api/tasks/landing-page/review", json={"decision": "approved"}, headers=as_("olivia")
        )
        assert resp.status_code == 200, resp.text
        outcome = resp.json()
        assert outcome["proof"]["decision"] == "approved"
        assert outcome["task"]["status"] == "paid"

        resp = web_env.get("/api/wallet", headers=as_("wendy"))
        assert resp.json()["wallet"]["balance"] == 15000

        resp = web_env.post(
            "/api/tasks/landing-page/review", json={"decision": "rejected"}, headers=as_("olivia")
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "already_resolved"

        resp = web_env.post("/api/reconcile")
        assert resp.json()["summary"]["anomalies"] == 0

    def test_self_review_forbidden(self, web_env):
        _hire(web_env)
        web_env.post("/api/tasks/landing-page/proofs", json={"evidence": EVIDENCE}, headers=as_("wendy"))
        resp = web_env.post(
            "/api/tasks/landing-page/review", json={"decision": "approved"}, headers=as_("wendy")
        )
        assert resp.status_code == 403

    def test_empty_evidence(self, web_env):
        _hire(web_env)
        resp = web_env.post("/api/tasks/landing-page/proofs", json={"evidence": []}, headers=as_("wendy"))
        assert resp.status_code == 400

    def test_only_recipient_accepts(self, web_env):
        resp = web_env.post(
            "/api/contracts",
            json={"recipient_id": "wendy", "terms": {"type": "task_assignment", "taskId": "landing-page",
                                                     "budget": 150, "currency": "GMD"}},
            headers=as_("olivia"),
        )
        contract_id = resp.json()["id"]
        resp = web_env.post(f"/api/contracts/{contract_id}/accept", headers=as_("mallory"))
        assert resp.status_code == 403

        resp = web_env.get(f"/api/contracts/{contract_id}")
        assert resp.json()["status"] == "pending"
        assert resp.json()["terms"]["budget"] == 150.0

    def test_invalid_terms(self, web_env):
        resp = web_env.post(
            "/api/contracts",
            json={"recipient_id": "wendy", "terms": {"type": "task_assignment", "currency": "GMD"}},
            headers=as_("olivia"),
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_terms"

    def test_list_contracts_for_actor(self, web_env):
        _hire(web_env)
        resp = web_env.get("/api/contracts", headers=as_("wendy"))
        assert [c["status"] for c in resp.json()] == ["accepted"]
        resp = web_env.get("/api/contracts", headers=as_("ravi"))
        assert resp.json() == []

    def test_escrow_listing_and_refund(self, web_env):
        result = _hire(web_env)
        hold_id = result["hold"]["id"]

        resp = web_env.get("/api/escrow", params={"task_id": "landing-page", "status": "held"})
        assert [h["id"] for h in resp.json()] == [hold_id]

        resp = web_env.post(f"/api/escrow/{hold_id}/refund", json={"reason": "scope cut"}, headers=as_("olivia"))
        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == "refunded"

        resp = web_env.get("/api/wallet", headers=as_("olivia"))
        assert resp.json()["wallet"]["balance"] == 50000


class TestNotificationsAPI:
    def test_inbox(self, web_env):
        _hire(web_env)
        resp = web_env.get("/api/notifications", params={"unread": "1"}, headers=as_("wendy"))
        notes = resp.json()
        assert "contract_offered" in [n["event_type"] for n in notes]

        note_id = notes[0]["id"]
        resp = web_env.post(f"/api/notifications/{note_id}/read", headers=as_("wendy"))
        assert resp.json() == {"id": note_id, "read": True}

        resp = web_env.post(f"/api/notifications/{note_id}/read", headers=as_("mallory"))
        assert resp.status_code == 404
