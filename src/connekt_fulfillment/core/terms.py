"""Contract terms: a tagged union keyed by contract type.

Terms travel as JSON in the wire format::

    {"type": "task_assignment", "taskId": "...", "budget": 150.0,
     "currency": "GMD", "deadline": "2026-12-01", "expiresInDays": 7}

``parse_terms`` turns that into one of the variants below. Each variant
carries only the fields its type needs and rejects everything else, so a
constructed terms object is always well-formed.
"""

from dataclasses import dataclass
from datetime import date
from typing import ClassVar

from connekt_fulfillment.errors import InvalidAmount, InvalidTerms
from connekt_fulfillment.money import to_major, to_minor

MAX_EXPIRY_DAYS = 365
COMMON_FIELDS = {"type", "currency", "deadline", "expiresInDays"}


@dataclass(frozen=True, kw_only=True)
class ContractTerms:
    type: ClassVar[str] = ""
    # Which party does the work; the other one funds the escrow.
    worker_is_sender: ClassVar[bool] = False
    allowed_fields: ClassVar[set[str]] = set()
    required_fields: ClassVar[set[str]] = set()

    currency: str
    expires_in_days: int = 7
    deadline: date | None = None

    @property
    def task_id(self) -> str | None:
        return None

    @property
    def project_id(self) -> str | None:
        return None

    @property
    def amount(self) -> int:
        return 0

    def worker(self, sender_id: str, recipient_id: str) -> str:
        return sender_id if self.worker_is_sender else recipient_id

    def payer(self, sender_id: str, recipient_id: str) -> str:
        return recipient_id if self.worker_is_sender else sender_id

    def to_wire(self) -> dict:
        data = {"type": self.type, "currency": self.currency, "expiresInDays": self.expires_in_days}
        if self.deadline:
            data["deadline"] = self.deadline.isoformat()
        return data


@dataclass(frozen=True, kw_only=True)
class TaskAssignmentTerms(ContractTerms):
    """Hire the recipient to perform a task for ``budget``."""

    type: ClassVar[str] = "task_assignment"
    allowed_fields: ClassVar[set[str]] = {"taskId", "budget"}
    required_fields: ClassVar[set[str]] = {"taskId", "budget"}

    task: str
    budget: int

    @property
    def task_id(self) -> str | None:
        return self.task

    @property
    def amount(self) -> int:
        return self.budget

    def to_wire(self) -> dict:
        data = super().to_wire()
        data.update(taskId=self.task, budget=float(to_major(self.budget)))
        return data


@dataclass(frozen=True, kw_only=True)
class TaskAdminTerms(ContractTerms):
    """Make the recipient the task's admin, a manager distinct from the assignee."""

    type: ClassVar[str] = "task_admin"
    allowed_fields: ClassVar[set[str]] = {"taskId", "budget"}
    required_fields: ClassVar[set[str]] = {"taskId"}

    task: str
    budget: int = 0

    @property
    def task_id(self) -> str | None:
        return self.task

    @property
    def amount(self) -> int:
        return self.budget

    def to_wire(self) -> dict:
        data = super().to_wire()
        data["taskId"] = self.task
        if self.budget:
            data["budget"] = float(to_major(self.budget))
        return data


@dataclass(frozen=True, kw_only=True)
class ProjectRoleTerms(ContractTerms):
    """Give the recipient a role on a project, optionally with a funded fee."""

    type: ClassVar[str] = "project_role"
    allowed_fields: ClassVar[set[str]] = {"projectId", "role", "budget"}
    required_fields: ClassVar[set[str]] = {"projectId", "role"}
    roles: ClassVar[tuple[str, ...]] = ("supervisor", "member")

    project: str
    role: str
    budget: int = 0

    @property
    def project_id(self) -> str | None:
        return self.project

    @property
    def amount(self) -> int:
        return self.budget

    def to_wire(self) -> dict:
        data = super().to_wire()
        data.update(projectId=self.project, role=self.role)
        if self.budget:
            data["budget"] = float(to_major(self.budget))
        return data


@dataclass(frozen=True, kw_only=True)
class ProposalTerms(ContractTerms):
    """A worker's bid on a task; the project side accepts and funds it."""

    type: ClassVar[str] = "proposal"
    worker_is_sender: ClassVar[bool] = True
    allowed_fields: ClassVar[set[str]] = {"taskId", "budget"}
    required_fields: ClassVar[set[str]] = {"taskId", "budget"}

    task: str
    budget: int

    @property
    def task_id(self) -> str | None:
        return self.task

    @property
    def amount(self) -> int:
        return self.budget

    def to_wire(self) -> dict:
        data = super().to_wire()
        data.update(taskId=self.task, budget=float(to_major(self.budget)))
        return data


TERM_TYPES: dict[str, type[ContractTerms]] = {
    cls.type: cls
    for cls in (TaskAssignmentTerms, TaskAdminTerms, ProjectRoleTerms, ProposalTerms)
}


def parse_terms(data: dict, default_expiry_days: int = 7) -> ContractTerms:
    """Validate wire-format terms and build the matching variant."""
    if not isinstance(data, dict):
        raise InvalidTerms("Contract terms must be an object")

    term_type = data.get("type")
    cls = TERM_TYPES.get(term_type)
    if cls is None:
        raise InvalidTerms(f"Unknown contract type: {term_type!r}", allowed=sorted(TERM_TYPES))

    unknown = set(data) - COMMON_FIELDS - cls.allowed_fields
    if unknown:
        raise InvalidTerms(f"Fields not allowed for {term_type}: {', '.join(sorted(unknown))}")
    missing = {f for f in cls.required_fields if data.get(f) in (None, "")}
    if missing:
        raise InvalidTerms(f"Missing fields for {term_type}: {', '.join(sorted(missing))}")

    currency = data.get("currency")
    if not isinstance(currency, str) or len(currency.strip()) != 3:
        raise InvalidTerms(f"Currency must be a 3-letter code: {currency!r}")

    kwargs = {
        "currency": currency.strip().upper(),
        "expires_in_days": _parse_expiry(data.get("expiresInDays", default_expiry_days)),
        "deadline": _parse_deadline(data.get("deadline")),
    }

    if "taskId" in cls.allowed_fields:
        kwargs["task"] = str(data["taskId"])
    if "projectId" in cls.allowed_fields:
        kwargs["project"] = str(data["projectId"])
    if "role" in cls.allowed_fields:
        role = data["role"]
        if role not in ProjectRoleTerms.roles:
            raise InvalidTerms(f"Unknown role: {role!r}", allowed=list(ProjectRoleTerms.roles))
        kwargs["role"] = role
    if data.get("budget") is not None:
        kwargs["budget"] = _parse_budget(data["budget"])

    return cls(**kwargs)


def _parse_budget(value) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise InvalidTerms(f"Budget must be a number: {value!r}")
    try:
        amount = to_minor(value)
    except InvalidAmount as e:
        raise InvalidTerms(str(e)) from None
    if amount <= 0:
        raise InvalidTerms(f"Budget must be positive: {value!r}")
    return amount


def _parse_expiry(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidTerms(f"expiresInDays must be a whole number of days: {value!r}")
    if not 1 <= value <= MAX_EXPIRY_DAYS:
        raise InvalidTerms(f"expiresInDays must be between 1 and {MAX_EXPIRY_DAYS}: {value}")
    return value


def _parse_deadline(value) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise InvalidTerms(f"Deadline must be an ISO date: {value!r}") from None
