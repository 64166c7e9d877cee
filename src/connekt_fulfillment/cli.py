"""CLI entry point for the fulfillment engine."""

import json
import logging
import sys
from contextlib import contextmanager

import click

from connekt_fulfillment.config import get_config
from connekt_fulfillment.core import contracts as contracts_mod
from connekt_fulfillment.core import escrow as escrow_mod
from connekt_fulfillment.core import projects as projects_mod
from connekt_fulfillment.core import proofs as proofs_mod
from connekt_fulfillment.core import tasks as tasks_mod
from connekt_fulfillment.core import wallets as wallets_mod
from connekt_fulfillment.core.orchestrator import Orchestrator
from connekt_fulfillment.core.reconcile import reconcile
from connekt_fulfillment.db.engine import get_db
from connekt_fulfillment.errors import EngineError
from connekt_fulfillment.integrations.notify import Notifier
from connekt_fulfillment.money import format_amount, to_minor
from connekt_fulfillment.serialize import to_dict


@contextmanager
def _engine():
    """Open the database and turn engine errors into ``Error:`` lines and exit 1."""
    config = get_config()
    with get_db(config.db_path, timeout=config.lock_timeout) as db:
        try:
            yield Orchestrator(db, config=config)
        except EngineError as e:
            click.echo(f"Error: {e.message}", err=True)
            if e.current_state:
                click.echo(f"  Current state: {e.current_state}", err=True)
            if e.allowed:
                click.echo(f"  Allowed: {', '.join(e.allowed)}", err=True)
            sys.exit(1)


def _actor(ctx: click.Context) -> str:
    actor = ctx.obj.get("actor") if ctx.obj else None
    if not actor:
        raise click.UsageError("This command needs an acting user: pass --as USER or set CF_ACTOR")
    return actor


def _echo_json(obj):
    click.echo(json.dumps(to_dict(obj), indent=2))


@click.group()
@click.option("--as", "actor", envvar="CF_ACTOR", default=None, help="Acting user ID")
@click.option("--log-level", default=None, help="Logging level (default from CF_LOG_LEVEL)")
@click.pass_context
def main(ctx, actor, log_level):
    """cf - Connekt fulfillment engine CLI"""
    level = (log_level or get_config().log_level).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.obj = {"actor": actor}


# ── Wallet Commands ───────────────────────────────────────────────────────────


@main.group("wallet")
def wallet_group():
    """Wallets and balances."""
    pass


@wallet_group.command("show")
@click.argument("owner_id", required=False)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@click.pass_context
def wallet_show(ctx, owner_id, json_output):
    """Show a wallet (the acting user's by default)."""
    with _engine() as orch:
        wallet = orch.wallet_for(owner_id or _actor(ctx))
        stats = wallets_mod.get_wallet_stats(orch.db, wallet.id)
        if json_output:
            _echo_json({"wallet": wallet, "stats": stats})
            return
        click.echo(f"Wallet: {wallet.id} ({wallet.owner_id})")
        click.echo(f"  Available: {format_amount(wallet.balance, wallet.currency)}")
        click.echo(f"  In escrow: {format_amount(stats.escrow_holdings, wallet.currency)}")
        click.echo(f"  Deposits: {format_amount(stats.total_deposits, wallet.currency)}")
        click.echo(f"  Received: {format_amount(stats.total_released_in, wallet.currency)}")


@wallet_group.command("deposit")
@click.argument("amount")
@click.option("--description", "-d", default="Deposit")
@click.pass_context
def wallet_deposit(ctx, amount, description):
    """Deposit AMOUNT (major units) into your wallet."""
    with _engine() as orch:
        actor = _actor(ctx)
        wallet = orch.wallet_for(actor)
        wallet = orch.deposit_wallet(actor, wallet.id, to_minor(amount), description)
        click.echo(f"Balance: {format_amount(wallet.balance, wallet.currency)}")


@wallet_group.command("withdraw")
@click.argument("amount")
@click.option("--description", "-d", default="Withdrawal")
@click.pass_context
def wallet_withdraw(ctx, amount, description):
    """Withdraw AMOUNT (major units) from your wallet."""
    with _engine() as orch:
        actor = _actor(ctx)
        wallet = orch.wallet_for(actor)
        wallet = orch.debit_wallet(actor, wallet.id, to_minor(amount), description)
        click.echo(f"Balance: {format_amount(wallet.balance, wallet.currency)}")


@wallet_group.command("history")
@click.option("--limit", type=int, default=None)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@click.pass_context
def wallet_history(ctx, limit, json_output):
    """List your wallet transactions."""
    with _engine() as orch:
        wallet = orch.wallet_for(_actor(ctx))
        txns = wallets_mod.get_transactions(orch.db, wallet.id, limit=limit)
        if json_output:
            _echo_json(txns)
            return
        if not txns:
            click.echo("No transactions.")
            return
        for t in txns:
            click.echo(f"  {t.id:>5} {t.type:<15} {format_amount(t.amount, t.currency):>16}  {t.description}")


# ── Escrow Commands ───────────────────────────────────────────────────────────


@main.group("escrow")
def escrow_group():
    """Escrow holds."""
    pass


@escrow_group.command("open")
@click.argument("amount")
@click.option("--task", "task_id", default=None, help="Task to fund")
@click.option("--project", "project_id", default=None, help="Project to fund")
@click.option("--to", "destination", default=None, help="Party to pay on release")
@click.pass_context
def escrow_open(ctx, amount, task_id, project_id, destination):
    """Hold AMOUNT (major units) from your wallet for a task or project."""
    with _engine() as orch:
        hold = orch.open_escrow(_actor(ctx), to_minor(amount), task_id, project_id, destination)
        click.echo(f"Opened {hold.id}: {format_amount(hold.amount, hold.currency)}")


@escrow_group.command("release")
@click.argument("hold_id")
@click.pass_context
def escrow_release(ctx, hold_id):
    """Pay a hold to its destination party."""
    with _engine() as orch:
        hold = orch.release_escrow(_actor(ctx), hold_id)
        click.echo(f"Released {hold.id} to {hold.destination_wallet_id}")


@escrow_group.command("refund")
@click.argument("hold_id")
@click.option("--reason", default=None)
@click.pass_context
def escrow_refund(ctx, hold_id, reason):
    """Return a hold to the wallet it came from."""
    with _engine() as orch:
        hold = orch.refund_escrow(_actor(ctx), hold_id, reason)
        click.echo(f"Refunded {hold.id} to {hold.source_wallet_id}")


@escrow_group.command("rebind")
@click.argument("hold_id")
@click.argument("party_id")
@click.pass_context
def escrow_rebind(ctx, hold_id, party_id):
    """Point a held hold at a different payee."""
    with _engine() as orch:
        hold = orch.rebind_escrow(_actor(ctx), hold_id, party_id)
        click.echo(f"{hold.id} now pays {hold.destination_party_id}")


@escrow_group.command("list")
@click.option("--task", "task_id", default=None)
@click.option("--project", "project_id", default=None)
@click.option("--status", default=None, help="held, released or refunded")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def escrow_list(task_id, project_id, status, json_output):
    """List escrow holds."""
    with _engine() as orch:
        holds = escrow_mod.list_holds(orch.db, task_id=task_id, project_id=project_id, status=status)
        if json_output:
            _echo_json(holds)
            return
        if not holds:
            click.echo("No escrow holds.")
            return
        for h in holds:
            target = h.task_id or h.project_id
            click.echo(
                f"  {h.id} {h.status:<9} {format_amount(h.amount, h.currency):>16} "
                f"{target} -> {h.destination_party_id or '-'}"
            )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.group("project")
def project_group():
    """Projects, members and budgets."""
    pass


@project_group.command("create")
@click.argument("project_id")
@click.argument("title")
@click.option("--budget", default="0", help="Budget in major units")
@click.option("--currency", default=None, help="Currency code (default from CF_DEFAULT_CURRENCY)")
@click.option("--deadline", default=None, help="ISO date")
@click.option("--description", "-d", default="")
@click.pass_context
def project_create(ctx, project_id, title, budget, currency, deadline, description):
    """Create a project owned by the acting user."""
    with _engine() as orch:
        project = orch.create_project(
            _actor(ctx), project_id, title, to_minor(budget),
            currency=currency, deadline=deadline, description=description,
        )
        click.echo(f"Project created: {project.id} ({project.title})")
        click.echo(f"  Budget: {format_amount(project.budget, project.currency)}")


@project_group.command("list")
@click.option("--member", default=None, help="Only projects this user belongs to")
def project_list(member):
    """List projects."""
    with _engine() as orch:
        projects = projects_mod.list_projects(orch.db, member_id=member)
        if not projects:
            click.echo("No projects found.")
            return
        for p in projects:
            click.echo(f"  {p.id}: {p.title} ({p.status}) {format_amount(p.budget, p.currency)}")


@project_group.command("show")
@click.argument("project_id")
def project_show(project_id):
    """Show a project with its members and budget."""
    with _engine() as orch:
        project = projects_mod.require_project(orch.db, project_id)
        budget = projects_mod.budget_status(orch.db, project_id)
        click.echo(f"Project: {project.id}")
        click.echo(f"  Title: {project.title}")
        click.echo(f"  Status: {project.status}")
        click.echo(f"  Owner: {project.owner_id}")
        click.echo(
            f"  Budget: {format_amount(budget.total, budget.currency)} "
            f"(committed {format_amount(budget.committed, budget.currency)}, "
            f"remaining {format_amount(budget.remaining, budget.currency)})"
        )
        if project.deadline:
            click.echo(f"  Deadline: {project.deadline}")
        for m in project.members:
            click.echo(f"    {m.role:<10} {m.user_id}")


@project_group.command("add-member")
@click.argument("project_id")
@click.argument("user_id")
@click.option("--role", default="member", type=click.Choice(["supervisor", "member"]))
@click.pass_context
def project_add_member(ctx, project_id, user_id, role):
    """Add a member to a project."""
    with _engine() as orch:
        member = orch.add_member(_actor(ctx), project_id, user_id, role)
        click.echo(f"{member.user_id} is now {member.role} on {project_id}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("project_id")
@click.argument("title")
@click.option("--price", default="0", help="Price in major units")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--priority", "-p", default="medium", type=click.Choice(["low", "medium", "high", "urgent"]))
@click.option("--due", "due_date", default=None, help="Due date (ISO)")
@click.pass_context
def task_add(ctx, project_id, title, price, description, priority, due_date):
    """Create a new task."""
    with _engine() as orch:
        task = orch.create_task(
            _actor(ctx), project_id, title, to_minor(price),
            description=description, priority=priority, due_date=due_date,
        )
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Price: {format_amount(task.price_amount, task.currency)}")
        click.echo(f"  Status: {task.status}")


@task_group.command("list")
@click.option("--project", default=None, help="Project ID")
@click.option("--status", default=None, help="Filter by status")
@click.option("--assignee", default=None, help="Filter by assignee")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, assignee, json_output):
    """List tasks."""
    with _engine() as orch:
        tasks = tasks_mod.list_tasks(orch.db, project, status=status, assignee_id=assignee)

        if json_output:
            _echo_json(tasks)
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "todo": "○",
            "in-progress": "●",
            "pending-validation": "◐",
            "done": "✓",
            "paid": "$",
        }

        for task in tasks:
            icon = status_icons.get(task.status, "?")
            who = f" [{task.assignee_id}]" if task.assignee_id else ""
            click.echo(
                f"  {icon} {task.id}: {task.title} ({task.status}) "
                f"{format_amount(task.price_amount, task.currency)}{who}"
            )


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _engine() as orch:
        task = tasks_mod.require_task(orch.db, task_id)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status} (version {task.version})")
        click.echo(f"  Project: {task.project_id}")
        click.echo(f"  Price: {format_amount(task.price_amount, task.currency)} ({task.payment_status})")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.assignee_id:
            click.echo(f"  Assignee: {task.assignee_id}")
        if task.task_admin_id:
            click.echo(f"  Admin: {task.task_admin_id}")
        for h in escrow_mod.list_holds(orch.db, task_id=task_id):
            click.echo(f"  Escrow: {h.id} {h.status} {format_amount(h.amount, h.currency)}")

        events = tasks_mod.get_task_events(orch.db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    {e.created_at} {e.event_type}: {e.old_value} -> {e.new_value} ({e.actor_id})")


@task_group.command("assign")
@click.argument("task_id")
@click.argument("assignee_id")
@click.pass_context
def task_assign(ctx, task_id, assignee_id):
    """Assign a task and fund it from your wallet."""
    with _engine() as orch:
        task = orch.assign_task(_actor(ctx), task_id, assignee_id)
        click.echo(f"Task {task.id} assigned to {task.assignee_id} ({task.status})")


@task_group.command("unassign")
@click.argument("task_id")
@click.option("--keep-escrow", is_flag=True, help="Leave the escrow held for the next assignee")
@click.option("--reason", default=None)
@click.pass_context
def task_unassign(ctx, task_id, keep_escrow, reason):
    """Return a task to todo, refunding its escrow unless told otherwise."""
    with _engine() as orch:
        task = orch.unassign_task(_actor(ctx), task_id, refund=not keep_escrow, reason=reason)
        click.echo(f"Task {task.id} is {task.status}")


@task_group.command("reassign")
@click.argument("task_id")
@click.argument("assignee_id")
@click.option("--rebind", is_flag=True, help="Also point the escrow at the new assignee")
@click.pass_context
def task_reassign(ctx, task_id, assignee_id, rebind):
    """Hand a task to someone else."""
    with _engine() as orch:
        task = orch.reassign_task(_actor(ctx), task_id, assignee_id, rebind=rebind)
        click.echo(f"Task {task.id} reassigned to {task.assignee_id} ({task.status})")


@task_group.command("settle")
@click.argument("task_id")
@click.pass_context
def task_settle(ctx, task_id):
    """Release a done task's escrow and mark it paid."""
    with _engine() as orch:
        task = orch.settle_task(_actor(ctx), task_id)
        click.echo(f"Task {task.id} is {task.status} ({task.payment_status})")


@task_group.command("cancel-funding")
@click.argument("task_id")
@click.option("--reason", default=None)
@click.pass_context
def task_cancel_funding(ctx, task_id, reason):
    """Refund every held escrow of a task."""
    with _engine() as orch:
        holds = orch.cancel_task_funding(_actor(ctx), task_id, reason)
        click.echo(f"Refunded {len(holds)} hold(s) for {task_id}")


# ── Contract Commands ─────────────────────────────────────────────────────────


@main.group("contract")
def contract_group():
    """Offer and answer contracts."""
    pass


@contract_group.command("offer")
@click.argument("recipient_id")
@click.option("--type", "contract_type", required=True,
              type=click.Choice(["task_assignment", "task_admin", "project_role", "proposal"]))
@click.option("--task", "task_id", default=None)
@click.option("--project", "project_id", default=None)
@click.option("--role", default=None, type=click.Choice(["supervisor", "member"]))
@click.option("--budget", default=None, help="Budget in major units")
@click.option("--currency", default=None)
@click.option("--deadline", default=None, help="ISO date")
@click.option("--expires-in", "expires_in", type=int, default=None, help="Days until the offer expires")
@click.pass_context
def contract_offer(ctx, recipient_id, contract_type, task_id, project_id, role, budget, currency, deadline, expires_in):
    """Offer a contract to RECIPIENT_ID."""
    terms = {"type": contract_type, "currency": currency or get_config().default_currency}
    for key, value in (("taskId", task_id), ("projectId", project_id), ("role", role),
                       ("budget", budget), ("deadline", deadline), ("expiresInDays", expires_in)):
        if value is not None:
            terms[key] = value
    with _engine() as orch:
        contract = orch.offer_contract(_actor(ctx), recipient_id, terms)
        click.echo(f"Offered {contract.id} ({contract.type}) to {contract.recipient_id}")
        click.echo(f"  Expires: {contract.expires_at.isoformat()}")


@contract_group.command("accept")
@click.argument("contract_id")
@click.pass_context
def contract_accept(ctx, contract_id):
    """Accept a contract offered to you."""
    with _engine() as orch:
        result = orch.accept_contract(_actor(ctx), contract_id)
        click.echo(f"Contract {result.contract.id} is {result.contract.status}")
        if result.task:
            click.echo(f"  Task: {result.task.id} ({result.task.status}, {result.task.assignee_id})")
        if result.hold:
            click.echo(f"  Escrow: {result.hold.id} {format_amount(result.hold.amount, result.hold.currency)}")


@contract_group.command("fulfill")
@click.argument("contract_id")
@click.pass_context
def contract_fulfill(ctx, contract_id):
    """Retry binding and funding an accepted contract."""
    with _engine() as orch:
        result = orch.fulfill_contract(_actor(ctx), contract_id)
        state = "already fulfilled" if result.already_fulfilled else "fulfilled"
        click.echo(f"Contract {result.contract.id} {state}")


@contract_group.command("reject")
@click.argument("contract_id")
@click.pass_context
def contract_reject(ctx, contract_id):
    """Reject a contract offered to you."""
    with _engine() as orch:
        contract = orch.reject_contract(_actor(ctx), contract_id)
        click.echo(f"Contract {contract.id} is {contract.status}")


@contract_group.command("cancel")
@click.argument("contract_id")
@click.pass_context
def contract_cancel(ctx, contract_id):
    """Withdraw a contract you offered."""
    with _engine() as orch:
        contract = orch.cancel_contract(_actor(ctx), contract_id)
        click.echo(f"Contract {contract.id} is {contract.status}")


@contract_group.command("show")
@click.argument("contract_id")
def contract_show(contract_id):
    """Show a contract and its terms."""
    with _engine() as orch:
        contract = orch.get_contract(contract_id)
        _echo_json(contract)


@contract_group.command("list")
@click.option("--status", default=None)
@click.option("--all", "show_all", is_flag=True, help="Every contract, not just your own")
@click.pass_context
def contract_list(ctx, status, show_all):
    """List contracts you sent or received."""
    with _engine() as orch:
        party = None if show_all else _actor(ctx)
        contracts = contracts_mod.list_contracts(orch.db, party_id=party, status=status)
        if not contracts:
            click.echo("No contracts found.")
            return
        for c in contracts:
            click.echo(f"  {c.id} {c.type:<16} {c.status:<10} {c.sender_id} -> {c.recipient_id}")


# ── Proof Commands ────────────────────────────────────────────────────────────


@main.group("proof")
def proof_group():
    """Submit and review proofs of work."""
    pass


def _parse_evidence(values) -> list[dict]:
    items = []
    for value in values:
        kind, _, rest = value.partition(":")
        url, size = rest, 0
        head, sep, tail = rest.rpartition("#")
        if sep and tail.isdigit():
            url, size = head, int(tail)
        items.append({"type": kind, "url": url, "size": size})
    return items


@proof_group.command("submit")
@click.argument("task_id")
@click.option("--evidence", "-e", multiple=True, required=True,
              help="TYPE:URL[#SIZE], e.g. image:https://cdn/x.png#2048")
@click.option("--notes", default="")
@click.pass_context
def proof_submit(ctx, task_id, evidence, notes):
    """Submit proof of work for a task."""
    with _engine() as orch:
        proof = orch.submit_proof(_actor(ctx), task_id, _parse_evidence(evidence), notes)
        click.echo(f"Submitted {proof.id} for {task_id} ({len(proof.evidence)} item(s))")


@proof_group.command("review")
@click.argument("task_id")
@click.argument("decision", type=click.Choice(["approved", "rejected"]))
@click.option("--notes", default=None)
@click.pass_context
def proof_review(ctx, task_id, decision, notes):
    """Approve or reject the proof awaiting review."""
    with _engine() as orch:
        outcome = orch.review_proof(_actor(ctx), task_id, decision, notes)
        click.echo(f"Proof {outcome.proof.id} {outcome.proof.decision}; task is {outcome.task.status}")


@proof_group.command("list")
@click.argument("task_id")
def proof_list(task_id):
    """Show the proof history of a task."""
    with _engine() as orch:
        proofs = proofs_mod.list_proofs(orch.db, task_id)
        if not proofs:
            click.echo("No proofs submitted.")
            return
        for p in proofs:
            click.echo(f"  {p.id} by {p.submitter_id} at {p.submitted_at}: {p.decision or 'pending'}")


@proof_group.command("pending")
@click.option("--project", default=None)
def proof_pending(project):
    """List proofs waiting for review."""
    with _engine() as orch:
        proofs = proofs_mod.list_pending_reviews(orch.db, project)
        if not proofs:
            click.echo("Nothing to review.")
            return
        for p in proofs:
            click.echo(f"  {p.task_id}: {p.id} by {p.submitter_id}")


# ── Reconciliation ────────────────────────────────────────────────────────────


@main.command("reconcile")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def reconcile_command(json_output):
    """Finish interrupted settlements and report inconsistencies."""
    with _engine() as orch:
        report = reconcile(orch.db, notifier=orch.notifier)
        if json_output:
            _echo_json(report)
            return
        summary = report.summary()
        for key, value in summary.items():
            click.echo(f"  {key.replace('_', ' ')}: {value}")
        for task_id in report.anomalies:
            click.echo(f"  anomaly: {task_id}")
        for m in report.balance_mismatches:
            click.echo(f"  balance mismatch: {m['wallet_id']} stored {m['stored']} computed {m['computed']}")


# ── Notifications ─────────────────────────────────────────────────────────────


@main.group("notifications")
def notifications_group():
    """In-app notifications."""
    pass


@notifications_group.command("list")
@click.option("--unread", is_flag=True)
@click.pass_context
def notifications_list(ctx, unread):
    """List your notifications."""
    with _engine() as orch:
        items = orch.notifier.list_notifications(_actor(ctx), unread_only=unread)
        if not items:
            click.echo("No notifications.")
            return
        for n in items:
            mark = " " if n.read else "*"
            click.echo(f" {mark}{n.id:>4} {n.event_type:<20} {json.dumps(n.payload)}")


@notifications_group.command("read")
@click.argument("notification_id", type=int)
@click.pass_context
def notifications_read(ctx, notification_id):
    """Mark a notification as read."""
    with _engine() as orch:
        if not orch.notifier.mark_read(notification_id, _actor(ctx)):
            click.echo(f"Notification not found: {notification_id}", err=True)
            sys.exit(1)
        click.echo(f"Marked {notification_id} as read")


@notifications_group.command("retry")
def notifications_retry():
    """Re-attempt failed Slack pushes."""
    config = get_config()
    with get_db(config.db_path, timeout=config.lock_timeout) as db:
        retried = Notifier(db, config).retry_pending()
        click.echo(f"Retried {len(retried)} notification(s)")


# ── Servers ───────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the JSON web API."""
    from connekt_fulfillment.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from connekt_fulfillment.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
