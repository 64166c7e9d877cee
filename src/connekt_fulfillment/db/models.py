"""Data models and stable status identifiers for the fulfillment engine."""

from dataclasses import dataclass, field
from datetime import datetime

# Stable identifiers shared by the API, the CLI and persisted records.
TASK_STATUSES = ("todo", "in-progress", "pending-validation", "done", "paid")
CONTRACT_STATUSES = ("pending", "accepted", "rejected", "expired", "cancelled")
HOLD_STATUSES = ("held", "released", "refunded")
POT_DECISIONS = (None, "approved", "rejected")
PAYMENT_STATUSES = ("unpaid", "pending", "paid")
PROJECT_ROLES = ("owner", "supervisor", "member")
TASK_PRIORITIES = ("low", "medium", "high", "urgent")


@dataclass
class ProjectMember:
    user_id: str
    role: str
    assigned_at: datetime | None = None


@dataclass
class Project:
    id: str
    owner_id: str
    title: str
    currency: str
    workspace_id: str = "default"
    description: str = ""
    budget: int = 0
    deadline: str | None = None
    status: str = "planning"
    created_at: datetime | None = None
    updated_at: datetime | None = None
    members: list[ProjectMember] = field(default_factory=list)


@dataclass
class BudgetStatus:
    project_id: str
    currency: str
    total: int
    committed: int

    @property
    def remaining(self) -> int:
        return self.total - self.committed


@dataclass
class Wallet:
    id: str
    owner_id: str
    currency: str
    owner_type: str = "user"
    balance: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class WalletTransaction:
    id: int | None = None
    wallet_id: str = ""
    type: str = ""
    amount: int = 0
    currency: str = ""
    description: str = ""
    counterparty_id: str | None = None
    hold_id: str | None = None
    created_at: datetime | None = None


@dataclass
class WalletStats:
    wallet_id: str
    balance: int
    total_deposits: int = 0
    total_withdrawals: int = 0
    total_released_in: int = 0
    total_released_out: int = 0
    total_refunds: int = 0
    escrow_holdings: int = 0
    transaction_count: int = 0


@dataclass
class EscrowHold:
    id: str
    amount: int
    currency: str
    source_wallet_id: str
    status: str = "held"
    kind: str = "assignee"
    destination_party_id: str | None = None
    destination_wallet_id: str | None = None
    task_id: str | None = None
    project_id: str | None = None
    contract_id: str | None = None
    reason: str | None = None
    created_at: datetime | None = None
    resolved_at: datetime | None = None


@dataclass
class Contract:
    id: str
    sender_id: str
    recipient_id: str
    type: str
    terms: object
    expires_at: datetime
    status: str = "pending"
    task_id: str | None = None
    project_id: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    created_at: datetime | None = None


@dataclass
class ContractEvent:
    id: int | None = None
    contract_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    actor_id: str | None = None
    created_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    currency: str
    created_by: str
    description: str = ""
    status: str = "todo"
    priority: str = "medium"
    assignee_id: str | None = None
    task_admin_id: str | None = None
    price_amount: int = 0
    payment_status: str = "unpaid"
    due_date: str | None = None
    estimated_hours: float | None = None
    visibility: str = "private"
    is_reassignable: bool = True
    archived: bool = False
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    actor_id: str | None = None
    created_at: datetime | None = None


@dataclass
class EvidenceItem:
    type: str
    url: str
    size: int = 0


@dataclass
class ProofOfTask:
    id: str
    task_id: str
    submitter_id: str
    submitted_at: datetime
    evidence: list[EvidenceItem] = field(default_factory=list)
    notes: str = ""
    decision: str | None = None
    reviewer_id: str | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None


@dataclass
class Settlement:
    id: int | None = None
    task_id: str = ""
    status: str = "started"
    hold_ids: list[str] = field(default_factory=list)
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Notification:
    id: int | None = None
    recipient_id: str = ""
    event_type: str = ""
    payload: dict = field(default_factory=dict)
    push_status: str = "stored"
    attempts: int = 0
    last_error: str | None = None
    read: bool = False
    created_at: datetime | None = None
