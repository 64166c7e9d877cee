"""Fulfillment orchestrator.

The one place that moves task state and money in the same logical step.
Contract acceptance binds work and opens escrow; proof approval releases
escrow and settles the task. Every public method takes the acting user
explicitly, checks their project role, and returns the state as committed.

Notifications are sent after the state change commits and never fail the
operation that triggered them.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone

from connekt_fulfillment.config import Config, get_config
from connekt_fulfillment.core import contracts as contracts_mod
from connekt_fulfillment.core import escrow as escrow_mod
from connekt_fulfillment.core import projects as projects_mod
from connekt_fulfillment.core import proofs as proofs_mod
from connekt_fulfillment.core import tasks as tasks_mod
from connekt_fulfillment.core import wallets as wallets_mod
from connekt_fulfillment.core.terms import ContractTerms, parse_terms
from connekt_fulfillment.db.engine import transaction
from connekt_fulfillment.db.models import (
    Contract,
    EscrowHold,
    Project,
    ProofOfTask,
    Settlement,
    Task,
    Wallet,
)
from connekt_fulfillment.errors import (
    EngineError,
    EscrowDestinationMismatch,
    InvalidTerms,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    NotRecipient,
    SettlementFailed,
    ValidationError,
)
from connekt_fulfillment.integrations.identity import ProjectRoleResolver, require_manager
from connekt_fulfillment.integrations.notify import Notifier
from connekt_fulfillment.money import format_amount

logger = logging.getLogger(__name__)


@dataclass
class Fulfillment:
    """What an accepted contract bound: the task or project, and its escrow."""

    contract: Contract
    hold: EscrowHold | None = None
    task: Task | None = None
    project: Project | None = None
    already_fulfilled: bool = False


@dataclass
class ReviewOutcome:
    proof: ProofOfTask
    task: Task


class Orchestrator:
    def __init__(
        self,
        db: sqlite3.Connection,
        roles=None,
        notifier: Notifier | None = None,
        config: Config | None = None,
    ):
        self.db = db
        self.config = config or get_config()
        self.roles = roles or ProjectRoleResolver(db)
        self.notifier = notifier or Notifier(db, self.config)

    # ── Wallets ───────────────────────────────────────────────────────────────

    def wallet_for(self, owner_id: str, owner_type: str = "user") -> Wallet:
        return wallets_mod.get_or_create_wallet(self.db, owner_id, self.config.default_currency, owner_type)

    def deposit_wallet(self, actor_id: str, wallet_id: str, amount: int, description: str = "Deposit") -> Wallet:
        self._require_wallet_owner(actor_id, wallet_id, "deposit into")
        return wallets_mod.deposit_wallet(self.db, wallet_id, amount, description=description)

    def debit_wallet(self, actor_id: str, wallet_id: str, amount: int, description: str = "Withdrawal") -> Wallet:
        self._require_wallet_owner(actor_id, wallet_id, "withdraw from")
        return wallets_mod.debit_wallet(self.db, wallet_id, amount, description=description)

    def _require_wallet_owner(self, actor_id: str, wallet_id: str, action: str) -> Wallet:
        wallet = wallets_mod.require_wallet(self.db, wallet_id)
        if wallet.owner_id != actor_id:
            raise NotAuthorized(f"{actor_id} cannot {action} wallet {wallet_id}")
        return wallet

    # ── Projects & tasks ──────────────────────────────────────────────────────

    def create_project(self, actor_id: str, project_id: str, title: str, budget: int, **kwargs) -> Project:
        currency = kwargs.pop("currency", None) or self.config.default_currency
        return projects_mod.create_project(self.db, project_id, actor_id, title, budget, currency, **kwargs)

    def add_member(self, actor_id: str, project_id: str, user_id: str, role: str = "member"):
        require_manager(self.roles, actor_id, project_id, "add members")
        return projects_mod.add_member(self.db, project_id, user_id, role)

    def create_task(self, actor_id: str, project_id: str, title: str, price_amount: int = 0, **kwargs) -> Task:
        require_manager(self.roles, actor_id, project_id, "create tasks")
        return tasks_mod.create_task(self.db, project_id, title, actor_id, price_amount, **kwargs)

    def create_tasks_bulk(self, actor_id: str, project_id: str, specs: list[dict]) -> list[Task]:
        require_manager(self.roles, actor_id, project_id, "create tasks")
        return tasks_mod.create_tasks_bulk(self.db, project_id, specs, actor_id)

    def assign_task(
        self,
        actor_id: str,
        task_id: str,
        assignee_id: str,
        expected_version: int | None = None,
    ) -> Task:
        """Assign a task directly and fund it from the actor's wallet.

        A hold left over from an earlier assignee is re-pointed instead of
        funding twice. If funding fails the assignment is not kept.
        """
        task = tasks_mod.require_task(self.db, task_id)
        require_manager(self.roles, actor_id, task.project_id, "assign tasks")
        with transaction(self.db):
            task = tasks_mod.assign_task(self.db, task_id, assignee_id, actor_id, expected_version)
            held = escrow_mod.list_holds(self.db, task_id=task_id, status="held", kind="assignee")
            if held:
                for hold in held:
                    escrow_mod.rebind_escrow(self.db, hold.id, assignee_id)
            elif task.price_amount > 0:
                payer = wallets_mod.get_or_create_wallet(self.db, actor_id, task.currency)
                escrow_mod.open_escrow(
                    self.db, payer.id, task.price_amount,
                    task_id=task_id, destination_party_id=assignee_id, kind="assignee", currency=task.currency,
                )
        self._notify(assignee_id, "task_assigned", task_id=task_id, title=task.title,
                     status=task.status, project_id=task.project_id)
        return tasks_mod.require_task(self.db, task_id)

    def unassign_task(self, actor_id: str, task_id: str, refund: bool = True, reason: str | None = None) -> Task:
        """Return a task to ``todo``; ``refund`` decides what happens to its assignee escrow."""
        task = tasks_mod.require_task(self.db, task_id)
        require_manager(self.roles, actor_id, task.project_id, "unassign tasks")
        with transaction(self.db):
            task = tasks_mod.unassign_task(self.db, task_id, actor_id)
            if refund:
                for hold in escrow_mod.list_holds(self.db, task_id=task_id, status="held", kind="assignee"):
                    escrow_mod.refund_escrow(self.db, hold.id, reason or "Task unassigned")
        return tasks_mod.require_task(self.db, task_id)

    def reassign_task(
        self,
        actor_id: str,
        task_id: str,
        new_assignee_id: str,
        rebind: bool = False,
        expected_version: int | None = None,
    ) -> Task:
        """Hand the task to someone else. Escrow moves only when ``rebind`` is set."""
        task = tasks_mod.require_task(self.db, task_id)
        require_manager(self.roles, actor_id, task.project_id, "reassign tasks")
        with transaction(self.db):
            task = tasks_mod.reassign_task(self.db, task_id, new_assignee_id, actor_id, expected_version)
            if rebind:
                for hold in escrow_mod.list_holds(self.db, task_id=task_id, status="held", kind="assignee"):
                    escrow_mod.rebind_escrow(self.db, hold.id, new_assignee_id)
        self._notify(new_assignee_id, "task_assigned", task_id=task_id, title=task.title,
                     status=task.status, project_id=task.project_id)
        return task

    # ── Escrow ────────────────────────────────────────────────────────────────

    def open_escrow(
        self,
        actor_id: str,
        amount: int,
        task_id: str | None = None,
        project_id: str | None = None,
        destination_party_id: str | None = None,
    ) -> EscrowHold:
        """Fund a task or project from the actor's own wallet."""
        owning_project = self._project_id_for(task_id, project_id)
        require_manager(self.roles, actor_id, owning_project, "open escrow")
        currency = projects_mod.require_project(self.db, owning_project).currency
        kind = "assignee" if task_id else "project"
        if task_id and destination_party_id is None:
            destination_party_id = tasks_mod.require_task(self.db, task_id).assignee_id
        with transaction(self.db):
            wallet = wallets_mod.get_or_create_wallet(self.db, actor_id, currency)
            return escrow_mod.open_escrow(
                self.db, wallet.id, amount,
                task_id=task_id, project_id=project_id,
                destination_party_id=destination_party_id, kind=kind, currency=currency,
            )

    def release_escrow(self, actor_id: str, hold_id: str) -> EscrowHold:
        """Pay one hold to its destination party.

        Task holds can only be paid once the task is ``done``; when the last
        one is released the task is marked ``paid``.
        """
        hold = escrow_mod.require_hold(self.db, hold_id)
        require_manager(self.roles, actor_id, self._project_id_for(hold.task_id, hold.project_id), "release escrow")
        if hold.task_id:
            task = tasks_mod.require_task(self.db, hold.task_id)
            if task.status != "done":
                raise InvalidTransition(
                    f"Escrow for {task.id} can only be released once the work is approved",
                    current_state=task.status,
                    allowed=tasks_mod.allowed_transitions(task.status),
                )
            self._check_destination(task, [hold])
            destination = self._destination(task, hold)
        else:
            destination = hold.destination_party_id
        if not destination:
            raise ValidationError(f"Escrow hold {hold_id} has no destination party")

        with transaction(self.db):
            wallet = wallets_mod.get_or_create_wallet(self.db, destination, hold.currency)
            hold = escrow_mod.release_escrow(self.db, hold_id, wallet.id)
        if hold.task_id and not escrow_mod.list_holds(self.db, task_id=hold.task_id, status="held"):
            self._finish_payment(hold.task_id, actor_id, None)
        return hold

    def refund_escrow(self, actor_id: str, hold_id: str, reason: str | None = None) -> EscrowHold:
        hold = escrow_mod.require_hold(self.db, hold_id)
        require_manager(self.roles, actor_id, self._project_id_for(hold.task_id, hold.project_id), "refund escrow")
        return escrow_mod.refund_escrow(self.db, hold_id, reason)

    def rebind_escrow(self, actor_id: str, hold_id: str, destination_party_id: str) -> EscrowHold:
        hold = escrow_mod.require_hold(self.db, hold_id)
        require_manager(self.roles, actor_id, self._project_id_for(hold.task_id, hold.project_id), "rebind escrow")
        return escrow_mod.rebind_escrow(self.db, hold_id, destination_party_id)

    def cancel_task_funding(self, actor_id: str, task_id: str, reason: str | None = None) -> list[EscrowHold]:
        """Refund every held hold of a task whose work has not been approved."""
        task = tasks_mod.require_task(self.db, task_id)
        require_manager(self.roles, actor_id, task.project_id, "cancel task funding")
        if task.status in tasks_mod.TERMINAL:
            raise InvalidTransition(
                f"Task {task_id} is {task.status}; approved work cannot be defunded",
                current_state=task.status,
            )
        with transaction(self.db):
            holds = escrow_mod.list_holds(self.db, task_id=task_id, status="held")
            return [escrow_mod.refund_escrow(self.db, h.id, reason or "Funding cancelled") for h in holds]

    # ── Contracts ─────────────────────────────────────────────────────────────

    def offer_contract(
        self,
        sender_id: str,
        recipient_id: str,
        terms: ContractTerms | dict,
        now: datetime | None = None,
    ) -> Contract:
        """Offer a contract. The project side of it must be an owner or supervisor."""
        if isinstance(terms, dict):
            terms = parse_terms(terms, self.config.contract_expiry_days)
        project_id = terms.project_id
        if terms.task_id:
            task = tasks_mod.get_task(self.db, terms.task_id)
            project_id = task.project_id if task else None
        if project_id and projects_mod.get_project(self.db, project_id):
            manager = terms.payer(sender_id, recipient_id)
            role = self.roles.has_role(manager, project_id)
            if role not in ("owner", "supervisor"):
                raise NotAuthorized(
                    f"{manager} cannot fund a {terms.type} contract on {project_id}",
                    current_state=role,
                    allowed=["owner", "supervisor"],
                )
        contract = contracts_mod.offer_contract(self.db, sender_id, recipient_id, terms, now)
        self._notify(recipient_id, "contract_offered", contract_id=contract.id, type=contract.type,
                     sender_id=sender_id, amount=terms.amount, currency=terms.currency)
        return contract

    def accept_contract(self, actor_id: str, contract_id: str, now: datetime | None = None) -> Fulfillment:
        """Accept, bind the work to the worker party and fund escrow from the payer.

        Accepting an already accepted contract again is a no-op returning the
        existing fulfillment. If the payer cannot cover the escrow the contract
        stays accepted, nothing is bound, and InsufficientFunds propagates;
        ``fulfill_contract`` retries once the wallet is funded.
        """
        contract = self.get_contract(contract_id, now)
        if contract.status == "accepted" and actor_id == contract.recipient_id:
            return self._fulfill(contract, actor_id)

        if contract.status == "pending":
            if actor_id != contract.recipient_id:
                raise NotRecipient(
                    f"Only the recipient can respond to contract {contract_id}",
                    current_state=contract.status,
                    allowed=["cancelled"],
                )
            self._check_bindable(contract, now or datetime.now(timezone.utc))
        contract = contracts_mod.accept_contract(self.db, contract_id, actor_id, now)
        self._notify(contract.sender_id, "contract_accepted", contract_id=contract.id, type=contract.type)
        return self._fulfill(contract, actor_id)

    def fulfill_contract(self, actor_id: str, contract_id: str) -> Fulfillment:
        """Bind and fund an accepted contract that has not been fulfilled yet."""
        contract = self.get_contract(contract_id)
        if actor_id not in (contract.sender_id, contract.recipient_id):
            raise NotAuthorized(f"{actor_id} is not a party to contract {contract_id}", current_state=contract.status)
        if contract.status != "accepted":
            raise InvalidTransition(
                f"Contract {contract_id} is {contract.status}; only accepted contracts are fulfilled",
                current_state=contract.status,
            )
        return self._fulfill(contract, actor_id)

    def reject_contract(self, actor_id: str, contract_id: str, now: datetime | None = None) -> Contract:
        contract = contracts_mod.reject_contract(self.db, contract_id, actor_id, now)
        self._notify(contract.sender_id, "contract_rejected", contract_id=contract.id, type=contract.type)
        return contract

    def cancel_contract(self, actor_id: str, contract_id: str, now: datetime | None = None) -> Contract:
        contract = contracts_mod.cancel_contract(self.db, contract_id, actor_id, now)
        self._notify(contract.recipient_id, "contract_cancelled", contract_id=contract.id, type=contract.type)
        return contract

    def get_contract(self, contract_id: str, now: datetime | None = None) -> Contract:
        contract = contracts_mod.get_contract(self.db, contract_id, now=now)
        if contract is None:
            raise NotFound(f"Contract not found: {contract_id}")
        return contract

    def _check_bindable(self, contract: Contract, now: datetime):
        terms = contract.terms
        try:
            contracts_mod.validate_terms(self.db, terms, now)
        except InvalidTerms as e:
            raise InvalidTerms(f"Contract {contract.id} can no longer be fulfilled: {e.message}",
                               current_state=e.current_state) from None
        if terms.type == "project_role":
            project = projects_mod.require_project(self.db, terms.project_id)
            if terms.worker(contract.sender_id, contract.recipient_id) == project.owner_id:
                raise InvalidTerms(f"The owner of {project.id} cannot take another role on it")

    def _fulfill(self, contract: Contract, actor_id: str) -> Fulfillment:
        terms = contract.terms
        worker = terms.worker(contract.sender_id, contract.recipient_id)
        payer = terms.payer(contract.sender_id, contract.recipient_id)

        with transaction(self.db):
            row = self.db.execute(
                "SELECT hold_id FROM fulfillments WHERE contract_id = ?", (contract.id,)
            ).fetchone()
            if row:
                return self._fulfillment(contract, row["hold_id"], already=True)

            if terms.type not in contracts_mod.ASSIGNING_TYPES and terms.amount > 0:
                project_id = self._project_id_for(terms.task_id, terms.project_id)
                remaining = projects_mod.budget_status(self.db, project_id).remaining
                if terms.amount > remaining:
                    raise InvalidTerms(
                        f"Contract {contract.id} can no longer be fulfilled: "
                        f"{format_amount(terms.amount, terms.currency)} exceeds remaining project budget "
                        f"{format_amount(remaining, terms.currency)}",
                        current_state=str(remaining),
                    )

            if terms.type in contracts_mod.ASSIGNING_TYPES:
                task = tasks_mod.require_task(self.db, terms.task_id)
                if task.price_amount != terms.amount:
                    tasks_mod.update_task_pricing(self.db, task.id, terms.amount, actor_id)
                tasks_mod.assign_task(self.db, task.id, worker, actor_id)
                kind = "assignee"
            elif terms.type == "task_admin":
                tasks_mod.set_task_admin(self.db, terms.task_id, worker, actor_id)
                kind = "task_admin"
            else:
                projects_mod.add_member(self.db, terms.project_id, worker, terms.role)
                kind = "project"

            hold_id = None
            if terms.amount > 0:
                wallet = wallets_mod.get_or_create_wallet(self.db, payer, terms.currency)
                try:
                    hold = escrow_mod.open_escrow(
                        self.db, wallet.id, terms.amount,
                        task_id=terms.task_id, project_id=terms.project_id,
                        destination_party_id=worker, contract_id=contract.id, kind=kind,
                        currency=terms.currency,
                    )
                except EngineError:
                    logger.warning(
                        "Contract %s accepted but %s could not fund %s; binding rolled back",
                        contract.id, payer, format_amount(terms.amount, terms.currency),
                    )
                    raise
                hold_id = hold.id
            self.db.execute(
                "INSERT INTO fulfillments (contract_id, hold_id) VALUES (?, ?)",
                (contract.id, hold_id),
            )
        logger.info("Contract %s fulfilled: %s bound to %s", contract.id, terms.task_id or terms.project_id, worker)
        if terms.task_id:
            task = tasks_mod.require_task(self.db, terms.task_id)
            self._notify(worker, "task_assigned", task_id=task.id, title=task.title,
                         status=task.status, project_id=task.project_id)
        return self._fulfillment(contract, hold_id)

    def _fulfillment(self, contract: Contract, hold_id: str | None, already: bool = False) -> Fulfillment:
        terms = contract.terms
        return Fulfillment(
            contract=contract,
            hold=escrow_mod.get_hold(self.db, hold_id) if hold_id else None,
            task=tasks_mod.get_task(self.db, terms.task_id) if terms.task_id else None,
            project=projects_mod.get_project(self.db, terms.project_id) if terms.project_id else None,
            already_fulfilled=already,
        )

    # ── Proofs & settlement ───────────────────────────────────────────────────

    def submit_proof(
        self,
        actor_id: str,
        task_id: str,
        evidence: list,
        notes: str = "",
        expected_version: int | None = None,
    ) -> ProofOfTask:
        proof = proofs_mod.submit_proof(self.db, task_id, actor_id, evidence, notes, expected_version)
        task = tasks_mod.require_task(self.db, task_id)
        project = projects_mod.require_project(self.db, task.project_id)
        self._notify(project.owner_id, "proof_submitted", task_id=task_id, proof_id=proof.id, submitter_id=actor_id)
        return proof

    def review_proof(
        self,
        actor_id: str,
        task_id: str,
        decision: str,
        notes: str | None = None,
        proof_id: str | None = None,
    ) -> ReviewOutcome:
        """Decide the active proof. Approval settles the task right away.

        If settlement fails the approval still stands: the task stays
        ``done`` and SettlementFailed propagates so it can be retried with
        ``settle_task``.
        """
        task = tasks_mod.require_task(self.db, task_id)
        require_manager(self.roles, actor_id, task.project_id, "review proofs")
        proof = proofs_mod.review_proof(self.db, task_id, decision, actor_id, notes, proof_id)
        self._notify(proof.submitter_id, "proof_reviewed", task_id=task_id, proof_id=proof.id, decision=decision)
        if decision == "approved":
            task = self.settle_task(actor_id, task_id)
        else:
            task = tasks_mod.require_task(self.db, task_id)
        return ReviewOutcome(proof=proof, task=task)

    def settle_task(self, actor_id: str, task_id: str) -> Task:
        """Release a ``done`` task's escrow and mark it ``paid``.

        Safe to call again: a paid task is returned as is, and a task whose
        holds were already released is only marked paid. A task with no
        escrow at all stays ``done``.
        """
        task = tasks_mod.require_task(self.db, task_id)
        require_manager(self.roles, actor_id, task.project_id, "settle tasks")
        if task.status == "paid":
            return task
        if task.status != "done":
            raise InvalidTransition(
                f"Task {task_id} is {task.status}; only approved work is settled",
                current_state=task.status,
                allowed=tasks_mod.allowed_transitions(task.status),
            )

        holds = escrow_mod.list_holds(self.db, task_id=task_id, status="held")
        if not holds:
            if escrow_mod.list_holds(self.db, task_id=task_id, status="released"):
                return self._finish_payment(task_id, actor_id, None)
            return task
        self._check_destination(task, holds)

        settlement_id = self._journal_start(task_id, [h.id for h in holds])
        try:
            with transaction(self.db):
                for hold in holds:
                    wallet = wallets_mod.get_or_create_wallet(self.db, self._destination(task, hold), hold.currency)
                    escrow_mod.release_escrow(self.db, hold.id, wallet.id)
                self._journal(settlement_id, "released")
        except (EngineError, sqlite3.Error) as e:
            logger.error("Settlement %s for %s failed: %s", settlement_id, task_id, e)
            self._journal(settlement_id, "failed", str(e))
            self._notify(actor_id, "settlement_failed", task_id=task_id, error=str(e))
            raise SettlementFailed(
                f"Escrow release for {task_id} failed: {e}",
                current_state=task.status,
                allowed=["paid"],
            ) from e
        return self._finish_payment(task_id, actor_id, settlement_id)

    def _finish_payment(self, task_id: str, actor_id: str, settlement_id: int | None) -> Task:
        try:
            task = tasks_mod.mark_paid(self.db, task_id, actor_id)
        except (EngineError, sqlite3.Error):
            logger.exception(
                "Escrow for %s was released but the task could not be marked paid; reconciliation required",
                task_id,
            )
            return tasks_mod.require_task(self.db, task_id)
        if settlement_id is not None:
            self._journal(settlement_id, "completed")
        for hold in escrow_mod.list_holds(self.db, task_id=task_id, status="released"):
            self._notify(hold.destination_party_id or task.assignee_id, "task_paid", task_id=task_id,
                         amount=hold.amount, currency=hold.currency)
        logger.info("Task %s settled", task_id)
        return task

    def _check_destination(self, task: Task, holds: list[EscrowHold]):
        for hold in holds:
            expected = task.task_admin_id if hold.kind == "task_admin" else task.assignee_id
            if hold.destination_party_id and hold.destination_party_id != expected:
                raise EscrowDestinationMismatch(
                    f"Escrow hold {hold.id} pays {hold.destination_party_id} but {task.id} "
                    f"is held by {expected}; rebind the escrow first",
                    current_state=task.status,
                )

    def _destination(self, task: Task, hold: EscrowHold) -> str:
        party = hold.destination_party_id
        if not party:
            party = task.task_admin_id if hold.kind == "task_admin" else task.assignee_id
        if not party:
            raise ValidationError(f"Escrow hold {hold.id} has no one to pay", current_state=task.status)
        return party

    def _journal_start(self, task_id: str, hold_ids: list[str]) -> int:
        with transaction(self.db):
            cur = self.db.execute(
                "INSERT INTO settlements (task_id, hold_ids) VALUES (?, ?)",
                (task_id, json.dumps(hold_ids)),
            )
        return cur.lastrowid

    def _journal(self, settlement_id: int, status: str, error: str | None = None):
        with transaction(self.db):
            self.db.execute(
                "UPDATE settlements SET status = ?, error = ?, updated_at = datetime('now') WHERE id = ?",
                (status, error, settlement_id),
            )

    def list_settlements(self, task_id: str | None = None, status: str | None = None) -> list[Settlement]:
        return list_settlements(self.db, task_id, status)

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _project_id_for(self, task_id: str | None, project_id: str | None) -> str:
        if task_id:
            return tasks_mod.require_task(self.db, task_id).project_id
        if project_id:
            return projects_mod.require_project(self.db, project_id).id
        raise ValidationError("Either a task or a project is required")

    def _notify(self, recipient_id: str | None, event_type: str, **payload):
        if recipient_id:
            self.notifier.notify(recipient_id, event_type, payload)


def list_settlements(
    db: sqlite3.Connection,
    task_id: str | None = None,
    status: str | None = None,
) -> list[Settlement]:
    query = "SELECT * FROM settlements WHERE 1=1"
    params: list = []
    if task_id:
        query += " AND task_id = ?"
        params.append(task_id)
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY id"
    return [_row_to_settlement(r) for r in db.execute(query, params).fetchall()]


def _row_to_settlement(row: sqlite3.Row) -> Settlement:
    return Settlement(
        id=row["id"],
        task_id=row["task_id"],
        status=row["status"],
        hold_ids=json.loads(row["hold_ids"] or "[]"),
        error=row["error"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
