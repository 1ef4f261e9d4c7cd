"""
Ledger Error Taxonomy

DESIGN DECISION: Every failure the engine surfaces to a caller belongs to
a closed set of error kinds. Callers branch on `error.kind` instead of
sniffing messages or error shapes.

Retry guidance per kind:
- insufficient_funds: never retried automatically
- concurrent_update_exhausted: caller may retry the whole operation
- goal_already_resolved: never retried
- store_unavailable: retry with the same idempotency key
- partial_collaborator_settlement: retry only the listed collaborators
"""

from enum import Enum
from typing import Optional
from uuid import UUID


class ErrorKind(str, Enum):
    """Closed enumeration of ledger error kinds."""
    INSUFFICIENT_FUNDS = "insufficient_funds"
    CONCURRENT_UPDATE_EXHAUSTED = "concurrent_update_exhausted"
    GOAL_ALREADY_RESOLVED = "goal_already_resolved"
    STORE_UNAVAILABLE = "store_unavailable"
    PARTIAL_COLLABORATOR_SETTLEMENT = "partial_collaborator_settlement"
    IDEMPOTENCY_KEY_CONFLICT = "idempotency_key_conflict"
    INVALID_AMOUNT = "invalid_amount"
    NOT_FOUND = "not_found"
    VERIFICATION_REQUIRED = "verification_required"
    CANCELLATION_NOT_ALLOWED = "cancellation_not_allowed"
    DUPLICATE_COLLABORATION = "duplicate_collaboration"
    TASK_ALREADY_COMPLETED = "task_already_completed"
    VALIDATION_FAILED = "validation_failed"


class LedgerError(Exception):
    """Base exception for every error the engine raises."""

    kind: ErrorKind

    @property
    def retryable(self) -> bool:
        return self.kind in (
            ErrorKind.CONCURRENT_UPDATE_EXHAUSTED,
            ErrorKind.STORE_UNAVAILABLE,
            ErrorKind.PARTIAL_COLLABORATOR_SETTLEMENT,
        )


class InsufficientFunds(LedgerError):
    """A debit would take the account balance below zero."""

    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, account_id: UUID, balance, amount):
        self.account_id = account_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Account {account_id} has {balance}, cannot apply {amount}"
        )


class ConcurrentUpdateExhausted(LedgerError):
    """Compare-and-commit kept losing to concurrent settlements."""

    kind = ErrorKind.CONCURRENT_UPDATE_EXHAUSTED

    def __init__(self, account_id: UUID, attempts: int):
        self.account_id = account_id
        self.attempts = attempts
        super().__init__(
            f"Gave up settling account {account_id} after {attempts} attempts"
        )


class GoalAlreadyResolved(LedgerError):
    """The goal is already in a terminal state."""

    kind = ErrorKind.GOAL_ALREADY_RESOLVED

    def __init__(
        self,
        goal_id: UUID,
        status: str,
        same_request: bool = False,
    ):
        self.goal_id = goal_id
        self.status = status
        # True when the rejected call repeated the key that resolved the goal
        self.same_request = same_request
        super().__init__(f"Goal {goal_id} is already {status}")


class StoreUnavailable(LedgerError):
    """The persistence layer failed; the write may not have happened."""

    kind = ErrorKind.STORE_UNAVAILABLE


class PartialCollaboratorSettlement(LedgerError):
    """Some collaborator settlements failed and must be retried."""

    kind = ErrorKind.PARTIAL_COLLABORATOR_SETTLEMENT

    def __init__(self, goal_id: UUID, pending_ids: list[UUID], resolution=None):
        self.goal_id = goal_id
        self.pending_ids = pending_ids
        self.resolution = resolution
        super().__init__(
            f"Goal {goal_id}: {len(pending_ids)} collaborator settlement(s) pending"
        )


class IdempotencyKeyConflict(LedgerError):
    """An idempotency key was reused for a different settlement."""

    kind = ErrorKind.IDEMPOTENCY_KEY_CONFLICT

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(
            f"Idempotency key {idempotency_key!r} already used for another settlement"
        )


class InvalidAmount(LedgerError):
    """Amount is not acceptable for this operation."""

    kind = ErrorKind.INVALID_AMOUNT


class NotFound(LedgerError):
    """Base for missing entities."""

    kind = ErrorKind.NOT_FOUND
    entity_type = "entity"

    def __init__(self, entity_id: UUID):
        self.entity_id = entity_id
        super().__init__(f"{self.entity_type.capitalize()} not found: {entity_id}")


class AccountNotFound(NotFound):
    entity_type = "account"


class GoalNotFound(NotFound):
    entity_type = "goal"


class AlarmNotFound(NotFound):
    entity_type = "alarm"


class TaskNotFound(NotFound):
    entity_type = "task"


class VerificationNotFound(NotFound):
    entity_type = "verification"


class VerificationRequired(LedgerError):
    """Goal cannot complete without an approved verification."""

    kind = ErrorKind.VERIFICATION_REQUIRED


class CancellationNotAllowed(LedgerError):
    """Goal can no longer be cancelled."""

    kind = ErrorKind.CANCELLATION_NOT_ALLOWED


class DuplicateCollaboration(LedgerError):
    """Collaborator already has a position on this goal."""

    kind = ErrorKind.DUPLICATE_COLLABORATION


class TaskAlreadyCompleted(LedgerError):
    """Task reward was already claimed."""

    kind = ErrorKind.TASK_ALREADY_COMPLETED

    def __init__(self, task_id: UUID):
        self.task_id = task_id
        super().__init__(f"Task {task_id} is already completed")


class GoalValidationFailed(LedgerError):
    """Goal draft failed validation."""

    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, result, message: Optional[str] = None):
        self.result = result
        super().__init__(message or "Goal draft failed validation")
