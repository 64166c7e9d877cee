"""MCP server exposing the fulfillment engine's public operations."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from connekt_fulfillment.config import Config, get_config
from connekt_fulfillment.core import contracts as contracts_mod
from connekt_fulfillment.core import escrow as escrow_mod
from connekt_fulfillment.core import proofs as proofs_mod
from connekt_fulfillment.core import tasks as tasks_mod
from connekt_fulfillment.core import wallets as wallets_mod
from connekt_fulfillment.core.orchestrator import Orchestrator
from connekt_fulfillment.core.reconcile import ReconciliationSweeper, reconcile
from connekt_fulfillment.db.engine import init_db
from connekt_fulfillment.errors import EngineError
from connekt_fulfillment.money import to_minor
from connekt_fulfillment.serialize import to_dict


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    orchestrator: Orchestrator
    sweeper: ReconciliationSweeper | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the database and start the reconciliation sweeper; stop both on shutdown."""
    config = get_config()
    db = init_db(config.db_path, timeout=config.lock_timeout)

    sweeper = ReconciliationSweeper(config.db_path, interval=config.sweep_interval, config=config)
    sweeper.start()

    try:
        yield AppContext(db=db, config=config, orchestrator=Orchestrator(db, config=config), sweeper=sweeper)
    finally:
        sweeper.stop()
        db.close()


mcp = FastMCP("connekt-fulfillment", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _call(fn, *args, **kwargs):
    """Run an engine call, returning the result or the error as a dict."""
    try:
        return to_dict(fn(*args, **kwargs))
    except EngineError as e:
        return e.to_dict()


# ── Wallets ───────────────────────────────────────────────────────────────────


@mcp.tool()
def get_wallet(ctx: Context, actor_id: str) -> dict:
    """Get the acting user's wallet (created on first use) with balance totals. Amounts are minor units."""
    orch = _ctx(ctx).orchestrator

    def show():
        wallet = orch.wallet_for(actor_id)
        return {"wallet": wallet, "stats": wallets_mod.get_wallet_stats(orch.db, wallet.id)}

    return _call(show)


@mcp.tool()
def deposit_wallet(ctx: Context, actor_id: str, amount: str, description: str = "Deposit") -> dict:
    """Deposit an amount (major units, e.g. "150.00") into the acting user's wallet."""
    orch = _ctx(ctx).orchestrator
    return _call(lambda: orch.deposit_wallet(actor_id, orch.wallet_for(actor_id).id, to_minor(amount), description))


@mcp.tool()
def debit_wallet(ctx: Context, actor_id: str, amount: str, description: str = "Withdrawal") -> dict:
    """Withdraw an amount (major units) from the acting user's wallet. Fails if it exceeds the available balance."""
    orch = _ctx(ctx).orchestrator
    return _call(lambda: orch.debit_wallet(actor_id, orch.wallet_for(actor_id).id, to_minor(amount), description))


# ── Escrow ────────────────────────────────────────────────────────────────────


@mcp.tool()
def open_escrow(
    ctx: Context,
    actor_id: str,
    amount: str,
    task_id: str | None = None,
    project_id: str | None = None,
    destination_party_id: str | None = None,
) -> dict:
    """Hold an amount (major units) from the actor's wallet for exactly one task or project."""
    orch = _ctx(ctx).orchestrator
    return _call(lambda: orch.open_escrow(actor_id, to_minor(amount), task_id, project_id, destination_party_id))


@mcp.tool()
def release_escrow(ctx: Context, actor_id: str, hold_id: str) -> dict:
    """Pay a held escrow to its destination party. Task holds require the task to be done."""
    return _call(_ctx(ctx).orchestrator.release_escrow, actor_id, hold_id)


@mcp.tool()
def refund_escrow(ctx: Context, actor_id: str, hold_id: str, reason: str | None = None) -> dict:
    """Return a held escrow to the wallet it came from."""
    return _call(_ctx(ctx).orchestrator.refund_escrow, actor_id, hold_id, reason)


@mcp.tool()
def rebind_escrow(ctx: Context, actor_id: str, hold_id: str, destination_party_id: str) -> dict:
    """Point a held escrow at a different payee, e.g. after reassigning the task."""
    return _call(_ctx(ctx).orchestrator.rebind_escrow, actor_id, hold_id, destination_party_id)


@mcp.tool()
def list_escrow(
    ctx: Context,
    task_id: str | None = None,
    project_id: str | None = None,
    status: str | None = None,
) -> list[dict]:
    """List escrow holds, optionally filtered by task, project and status (held, released, refunded)."""
    db = _ctx(ctx).db
    return to_dict(escrow_mod.list_holds(db, task_id=task_id, project_id=project_id, status=status))


# ── Contracts ─────────────────────────────────────────────────────────────────


@mcp.tool()
def offer_contract(ctx: Context, actor_id: str, recipient_id: str, terms: dict) -> dict:
    """Offer a contract.

    terms: {"type": "task_assignment" | "task_admin" | "project_role" | "proposal",
    "taskId" or "projectId", "role" (project_role), "budget" (major units),
    "currency", "deadline" (ISO date), "expiresInDays"}.
    """
    return _call(_ctx(ctx).orchestrator.offer_contract, actor_id, recipient_id, terms)


@mcp.tool()
def accept_contract(ctx: Context, actor_id: str, contract_id: str) -> dict:
    """Accept a contract as its recipient. Binds the task or role and funds escrow from the payer."""
    return _call(_ctx(ctx).orchestrator.accept_contract, actor_id, contract_id)


@mcp.tool()
def fulfill_contract(ctx: Context, actor_id: str, contract_id: str) -> dict:
    """Retry binding and funding an accepted contract, e.g. after the payer topped up."""
    return _call(_ctx(ctx).orchestrator.fulfill_contract, actor_id, contract_id)


@mcp.tool()
def reject_contract(ctx: Context, actor_id: str, contract_id: str) -> dict:
    """Reject a contract as its recipient."""
    return _call(_ctx(ctx).orchestrator.reject_contract, actor_id, contract_id)


@mcp.tool()
def cancel_contract(ctx: Context, actor_id: str, contract_id: str) -> dict:
    """Withdraw a pending contract as its sender."""
    return _call(_ctx(ctx).orchestrator.cancel_contract, actor_id, contract_id)


@mcp.tool()
def list_contracts(ctx: Context, party_id: str | None = None, status: str | None = None) -> list[dict]:
    """List contracts, optionally for one party and status."""
    return to_dict(contracts_mod.list_contracts(_ctx(ctx).db, party_id=party_id, status=status))


# ── Tasks ─────────────────────────────────────────────────────────────────────


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its history, escrow and proofs."""
    db = _ctx(ctx).db
    task = tasks_mod.get_task(db, task_id)
    if not task:
        return {"error": "not_found", "message": f"Task not found: {task_id}"}
    return {
        **to_dict(task),
        "allowed_transitions": tasks_mod.allowed_transitions(task.status),
        "events": to_dict(tasks_mod.get_task_events(db, task_id)),
        "escrow": to_dict(escrow_mod.list_holds(db, task_id=task_id)),
        "proofs": to_dict(proofs_mod.list_proofs(db, task_id)),
    }


@mcp.tool()
def list_tasks(
    ctx: Context,
    project_id: str | None = None,
    status: str | None = None,
    assignee_id: str | None = None,
) -> list[dict]:
    """List tasks. Statuses: todo, in-progress, pending-validation, done, paid."""
    return to_dict(tasks_mod.list_tasks(_ctx(ctx).db, project_id, status=status, assignee_id=assignee_id))


@mcp.tool()
def assign_task(ctx: Context, actor_id: str, task_id: str, assignee_id: str) -> dict:
    """Assign a todo task and fund its price from the actor's wallet."""
    return _call(_ctx(ctx).orchestrator.assign_task, actor_id, task_id, assignee_id)


@mcp.tool()
def unassign_task(ctx: Context, actor_id: str, task_id: str, refund: bool = True) -> dict:
    """Return a task to todo. With refund=false its escrow stays held for the next assignee."""
    return _call(_ctx(ctx).orchestrator.unassign_task, actor_id, task_id, refund)


@mcp.tool()
def reassign_task(ctx: Context, actor_id: str, task_id: str, assignee_id: str, rebind: bool = False) -> dict:
    """Hand a task to someone else; rebind=true also points its escrow at them."""
    return _call(_ctx(ctx).orchestrator.reassign_task, actor_id, task_id, assignee_id, rebind)


@mcp.tool()
def submit_proof(ctx: Context, actor_id: str, task_id: str, evidence: list[dict], notes: str = "") -> dict:
    """Submit proof of work. evidence: [{"type": "image" | "video" | "link", "url": ..., "size": bytes}]."""
    return _call(_ctx(ctx).orchestrator.submit_proof, actor_id, task_id, evidence, notes)


@mcp.tool()
def review_proof(ctx: Context, actor_id: str, task_id: str, decision: str, notes: str | None = None) -> dict:
    """Approve or reject the proof awaiting review. Approval releases escrow and marks the task paid."""
    return _call(_ctx(ctx).orchestrator.review_proof, actor_id, task_id, decision, notes)


@mcp.tool()
def settle_task(ctx: Context, actor_id: str, task_id: str) -> dict:
    """Retry settlement of a done task: release its escrow and mark it paid."""
    return _call(_ctx(ctx).orchestrator.settle_task, actor_id, task_id)


# ── Operations ────────────────────────────────────────────────────────────────


@mcp.tool()
def run_reconciliation(ctx: Context) -> dict:
    """Finish interrupted settlements and report inconsistencies."""
    app = _ctx(ctx)
    report = reconcile(app.db, notifier=app.orchestrator.notifier)
    return {**to_dict(report), "summary": report.summary()}


@mcp.tool()
def list_notifications(ctx: Context, actor_id: str, unread_only: bool = False) -> list[dict]:
    """List the acting user's notifications."""
    return to_dict(_ctx(ctx).orchestrator.notifier.list_notifications(actor_id, unread_only=unread_only))
