"""JSON web API for the fulfillment engine.

The acting user is passed explicitly in the ``X-Actor-Id`` header;
authentication happens in front of this service. Amounts in request bodies
are major units, amounts in responses are integer minor units.
"""

import json

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from connekt_fulfillment.config import get_config
from connekt_fulfillment.core import contracts as contracts_mod
from connekt_fulfillment.core import escrow as escrow_mod
from connekt_fulfillment.core import projects as projects_mod
from connekt_fulfillment.core import proofs as proofs_mod
from connekt_fulfillment.core import tasks as tasks_mod
from connekt_fulfillment.core import wallets as wallets_mod
from connekt_fulfillment.core.orchestrator import Orchestrator
from connekt_fulfillment.core.reconcile import reconcile
from connekt_fulfillment.db.engine import init_db
from connekt_fulfillment.errors import EngineError, NotAuthorized, NotFound, ValidationError
from connekt_fulfillment.money import to_minor
from connekt_fulfillment.serialize import to_dict


class MissingActor(NotAuthorized):
    code = "missing_actor"
    http_status = 401


def _get_db():
    config = get_config()
    return init_db(config.db_path, timeout=config.lock_timeout)


def _actor(request: Request) -> str:
    actor = request.headers.get("x-actor-id")
    if not actor:
        raise MissingActor("X-Actor-Id header is required")
    return actor


def _field(body: dict, name: str):
    if body.get(name) in (None, ""):
        raise ValidationError(f"Missing field: {name}")
    return body[name]


def _int_param(request: Request, name: str) -> int | None:
    value = request.query_params.get(name)
    if value in (None, ""):
        return None
    try:
        number = int(value)
    except ValueError:
        raise ValidationError(f"Query parameter {name} must be an integer, got {value!r}") from None
    if number < 0:
        raise ValidationError(f"Query parameter {name} must not be negative")
    return number


def endpoint(fn=None, *, status_code: int = 200):
    """Wrap ``fn(orch, request, body)`` with a DB connection and error mapping."""

    def decorate(fn):
        async def handler(request: Request):
            body = {}
            if request.method == "POST":
                raw = await request.body()
                try:
                    body = json.loads(raw) if raw else {}
                except ValueError:
                    return JSONResponse(
                        {"error": "invalid_json", "message": "Request body must be JSON"},
                        status_code=400,
                    )
                if not isinstance(body, dict):
                    return JSONResponse(
                        {"error": "invalid_json", "message": "Request body must be an object"},
                        status_code=400,
                    )
            db = _get_db()
            try:
                orch = Orchestrator(db, config=get_config())
                return JSONResponse(to_dict(fn(orch, request, body)), status_code=status_code)
            except EngineError as e:
                return JSONResponse(e.to_dict(), status_code=e.http_status)
            finally:
                db.close()

        handler.__name__ = fn.__name__
        return handler

    if fn is not None:
        return decorate(fn)
    return decorate


# ── Projects ──────────────────────────────────────────────────────────────────


@endpoint
def api_list_projects(orch, request, body):
    return projects_mod.list_projects(orch.db, member_id=request.query_params.get("member"))


@endpoint(status_code=201)
def api_create_project(orch, request, body):
    return orch.create_project(
        _actor(request),
        _field(body, "id"),
        _field(body, "title"),
        to_minor(body.get("budget", 0)),
        currency=body.get("currency"),
        deadline=body.get("deadline"),
        description=body.get("description", ""),
    )


@endpoint
def api_get_project(orch, request, body):
    return projects_mod.require_project(orch.db, request.path_params["project_id"])


@endpoint
def api_project_budget(orch, request, body):
    status = projects_mod.budget_status(orch.db, request.path_params["project_id"])
    return {**to_dict(status), "remaining": status.remaining}


@endpoint(status_code=201)
def api_add_member(orch, request, body):
    return orch.add_member(
        _actor(request), request.path_params["project_id"], _field(body, "user_id"), body.get("role", "member")
    )


@endpoint
def api_project_tasks(orch, request, body):
    return tasks_mod.list_tasks(
        orch.db,
        request.path_params["project_id"],
        status=request.query_params.get("status"),
        assignee_id=request.query_params.get("assignee"),
    )


@endpoint(status_code=201)
def api_create_task(orch, request, body):
    return orch.create_task(
        _actor(request),
        request.path_params["project_id"],
        _field(body, "title"),
        to_minor(body.get("price", 0)),
        description=body.get("description", ""),
        priority=body.get("priority", "medium"),
        due_date=body.get("due_date"),
        estimated_hours=body.get("estimated_hours"),
        visibility=body.get("visibility", "private"),
        is_reassignable=body.get("is_reassignable", True),
    )


# ── Tasks ─────────────────────────────────────────────────────────────────────


@endpoint
def api_get_task(orch, request, body):
    task_id = request.path_params["task_id"]
    task = tasks_mod.require_task(orch.db, task_id)
    return {
        **to_dict(task),
        "allowed_transitions": tasks_mod.allowed_transitions(task.status),
        "events": tasks_mod.get_task_events(orch.db, task_id),
        "escrow": escrow_mod.list_holds(orch.db, task_id=task_id),
        "proofs": proofs_mod.list_proofs(orch.db, task_id),
    }


@endpoint
def api_assign_task(orch, request, body):
    return orch.assign_task(
        _actor(request), request.path_params["task_id"], _field(body, "assignee_id"),
        expected_version=body.get("expected_version"),
    )


@endpoint
def api_unassign_task(orch, request, body):
    return orch.unassign_task(
        _actor(request), request.path_params["task_id"],
        refund=body.get("refund", True), reason=body.get("reason"),
    )


@endpoint
def api_reassign_task(orch, request, body):
    return orch.reassign_task(
        _actor(request), request.path_params["task_id"], _field(body, "assignee_id"),
        rebind=body.get("rebind", False), expected_version=body.get("expected_version"),
    )


@endpoint(status_code=201)
def api_submit_proof(orch, request, body):
    return orch.submit_proof(
        _actor(request), request.path_params["task_id"], body.get("evidence") or [],
        notes=body.get("notes", ""), expected_version=body.get("expected_version"),
    )


@endpoint
def api_review_proof(orch, request, body):
    return orch.review_proof(
        _actor(request), request.path_params["task_id"], _field(body, "decision"),
        notes=body.get("notes"), proof_id=body.get("proof_id"),
    )


@endpoint
def api_settle_task(orch, request, body):
    return orch.settle_task(_actor(request), request.path_params["task_id"])


@endpoint
def api_cancel_funding(orch, request, body):
    return orch.cancel_task_funding(_actor(request), request.path_params["task_id"], body.get("reason"))


# ── Wallets & escrow ──────────────────────────────────────────────────────────


@endpoint
def api_my_wallet(orch, request, body):
    wallet = orch.wallet_for(_actor(request))
    return {"wallet": wallet, "stats": wallets_mod.get_wallet_stats(orch.db, wallet.id)}


@endpoint
def api_my_transactions(orch, request, body):
    wallet = orch.wallet_for(_actor(request))
    return wallets_mod.get_transactions(orch.db, wallet.id, limit=_int_param(request, "limit"))


@endpoint
def api_deposit(orch, request, body):
    actor = _actor(request)
    wallet = orch.wallet_for(actor)
    return orch.deposit_wallet(actor, wallet.id, to_minor(_field(body, "amount")), body.get("description", "Deposit"))


@endpoint
def api_withdraw(orch, request, body):
    actor = _actor(request)
    wallet = orch.wallet_for(actor)
    return orch.debit_wallet(actor, wallet.id, to_minor(_field(body, "amount")), body.get("description", "Withdrawal"))


@endpoint
def api_list_holds(orch, request, body):
    q = request.query_params
    return escrow_mod.list_holds(
        orch.db, task_id=q.get("task_id"), project_id=q.get("project_id"), status=q.get("status")
    )


@endpoint(status_code=201)
def api_open_escrow(orch, request, body):
    return orch.open_escrow(
        _actor(request), to_minor(_field(body, "amount")),
        task_id=body.get("task_id"), project_id=body.get("project_id"),
        destination_party_id=body.get("destination_party_id"),
    )


@endpoint
def api_release_escrow(orch, request, body):
    return orch.release_escrow(_actor(request), request.path_params["hold_id"])


@endpoint
def api_refund_escrow(orch, request, body):
    return orch.refund_escrow(_actor(request), request.path_params["hold_id"], body.get("reason"))


@endpoint
def api_rebind_escrow(orch, request, body):
    return orch.rebind_escrow(
        _actor(request), request.path_params["hold_id"], _field(body, "destination_party_id")
    )


# ── Contracts ─────────────────────────────────────────────────────────────────


@endpoint
def api_list_contracts(orch, request, body):
    return contracts_mod.list_contracts(
        orch.db, party_id=_actor(request), status=request.query_params.get("status")
    )


@endpoint(status_code=201)
def api_offer_contract(orch, request, body):
    return orch.offer_contract(_actor(request), _field(body, "recipient_id"), _field(body, "terms"))


@endpoint
def api_get_contract(orch, request, body):
    return orch.get_contract(request.path_params["contract_id"])


@endpoint
def api_accept_contract(orch, request, body):
    return orch.accept_contract(_actor(request), request.path_params["contract_id"])


@endpoint
def api_fulfill_contract(orch, request, body):
    return orch.fulfill_contract(_actor(request), request.path_params["contract_id"])


@endpoint
def api_reject_contract(orch, request, body):
    return orch.reject_contract(_actor(request), request.path_params["contract_id"])


@endpoint
def api_cancel_contract(orch, request, body):
    return orch.cancel_contract(_actor(request), request.path_params["contract_id"])


# ── Operations ────────────────────────────────────────────────────────────────


@endpoint
def api_reconcile(orch, request, body):
    report = reconcile(orch.db, notifier=orch.notifier)
    return {**to_dict(report), "summary": report.summary()}


@endpoint
def api_notifications(orch, request, body):
    unread = request.query_params.get("unread") in ("1", "true")
    return orch.notifier.list_notifications(_actor(request), unread_only=unread)


@endpoint
def api_mark_read(orch, request, body):
    notification_id = int(request.path_params["notification_id"])
    if not orch.notifier.mark_read(notification_id, _actor(request)):
        raise NotFound(f"Notification not found: {notification_id}")
    return {"id": notification_id, "read": True}


def create_app() -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects, methods=["GET"]),
        Route("/api/projects", api_create_project, methods=["POST"]),
        Route("/api/projects/{project_id}", api_get_project),
        Route("/api/projects/{project_id}/budget", api_project_budget),
        Route("/api/projects/{project_id}/members", api_add_member, methods=["POST"]),
        Route("/api/projects/{project_id}/tasks", api_project_tasks, methods=["GET"]),
        Route("/api/projects/{project_id}/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/tasks/{task_id}/assign", api_assign_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/unassign", api_unassign_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/reassign", api_reassign_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/proofs", api_submit_proof, methods=["POST"]),
        Route("/api/tasks/{task_id}/review", api_review_proof, methods=["POST"]),
        Route("/api/tasks/{task_id}/settle", api_settle_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/cancel-funding", api_cancel_funding, methods=["POST"]),
        Route("/api/wallet", api_my_wallet),
        Route("/api/wallet/transactions", api_my_transactions),
        Route("/api/wallet/deposit", api_deposit, methods=["POST"]),
        Route("/api/wallet/withdraw", api_withdraw, methods=["POST"]),
        Route("/api/escrow", api_list_holds, methods=["GET"]),
        Route("/api/escrow", api_open_escrow, methods=["POST"]),
        Route("/api/escrow/{hold_id}/release", api_release_escrow, methods=["POST"]),
        Route("/api/escrow/{hold_id}/refund", api_refund_escrow, methods=["POST"]),
        Route("/api/escrow/{hold_id}/rebind", api_rebind_escrow, methods=["POST"]),
        Route("/api/contracts", api_list_contracts, methods=["GET"]),
        Route("/api/contracts", api_offer_contract, methods=["POST"]),
        Route("/api/contracts/{contract_id}", api_get_contract),
        Route("/api/contracts/{contract_id}/accept", api_accept_contract, methods=["POST"]),
        Route("/api/contracts/{contract_id}/fulfill", api_fulfill_contract, methods=["POST"]),
        Route("/api/contracts/{contract_id}/reject", api_reject_contract, methods=["POST"]),
        Route("/api/contracts/{contract_id}/cancel", api_cancel_contract, methods=["POST"]),
        Route("/api/reconcile", api_reconcile, methods=["POST"]),
        Route("/api/notifications", api_notifications),
        Route("/api/notifications/{notification_id:int}/read", api_mark_read, methods=["POST"]),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
