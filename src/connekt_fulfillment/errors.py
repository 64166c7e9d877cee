"""Error taxonomy for the fulfillment engine.

Every error carries the current state of the entity it concerns and the
transitions that are valid from there, so callers can re-fetch and retry
without guessing. Outer surfaces (CLI, web, MCP) render ``to_dict()``.
"""


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "engine_error"
    http_status = 400

    def __init__(
        self,
        message: str,
        current_state: str | None = None,
        allowed: list[str] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.current_state = current_state
        self.allowed = allowed or []

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "current_state": self.current_state,
            "allowed": self.allowed,
        }


# ── Validation ────────────────────────────────────────────────────────────────


class ValidationError(EngineError):
    code = "validation_error"


class InvalidTerms(ValidationError):
    code = "invalid_terms"


class BudgetExceeded(ValidationError):
    code = "budget_exceeded"


class InvalidEvidence(ValidationError):
    code = "invalid_evidence"


class InvalidAmount(ValidationError):
    code = "invalid_amount"


class CurrencyMismatch(ValidationError):
    code = "currency_mismatch"


class NotFound(EngineError):
    code = "not_found"
    http_status = 404


# ── State conflicts ───────────────────────────────────────────────────────────


class StateConflict(EngineError):
    code = "state_conflict"
    http_status = 409


class AlreadyResolved(StateConflict):
    code = "already_resolved"


class ContractExpired(AlreadyResolved):
    code = "contract_expired"


class TaskAlreadyAssigned(StateConflict):
    code = "task_already_assigned"


class InvalidTransition(StateConflict):
    code = "invalid_transition"


class ConcurrentModification(StateConflict):
    code = "concurrent_modification"


class HoldNotActive(StateConflict):
    code = "hold_not_active"


class EscrowDestinationMismatch(StateConflict):
    code = "escrow_destination_mismatch"


class NotRecipient(StateConflict):
    code = "not_recipient"
    http_status = 403


class NotSender(StateConflict):
    code = "not_sender"
    http_status = 403


class NotAuthorizedSubmitter(StateConflict):
    code = "not_authorized_submitter"
    http_status = 403


class NotAuthorized(StateConflict):
    code = "not_authorized"
    http_status = 403


# ── Resources ─────────────────────────────────────────────────────────────────


class ResourceError(EngineError):
    code = "resource_error"
    http_status = 402


class InsufficientFunds(ResourceError):
    code = "insufficient_funds"


# ── Settlement ────────────────────────────────────────────────────────────────


class SettlementFailed(EngineError):
    """Escrow release failed after approval; the task stays ``done``."""

    code = "settlement_failed"
    http_status = 409
