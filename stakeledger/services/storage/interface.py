"""
Abstract Storage Interface

DESIGN DECISION: We define abstract interfaces for storage operations.
This allows us to:
1. Run the engine against a relational database in production
2. Use in-memory storage for testing
3. Mirror audit events somewhere humans can read them (Google Sheets)
4. Keep settlement logic decoupled from storage implementation

The interfaces are intentionally small - just the primitives the
settlement engine needs. The one non-trivial primitive is
`commit_settlement`, which must apply a compare-and-commit account
update and a ledger entry append as one atomic unit.

Backends raise `StoreUnavailable` (from stakeledger.errors) when the
persistence layer itself fails. The errors defined at the bottom of
this module describe outcomes the engine handles internally.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from uuid import UUID

from stakeledger.models.audit import AuditEvent
from stakeledger.models.goal import (
    AlarmClock,
    AlarmLog,
    Goal,
    GoalCollaboration,
    GoalStatus,
    Task,
    Verification,
)
from stakeledger.models.ledger import Account, LedgerEntry, LedgerEntryDraft


class LedgerStorageInterface(ABC):
    """
    Abstract interface for accounts and ledger entries.

    Any storage implementation (SQL, in-memory, etc.)
    must implement these methods.
    """

    @abstractmethod
    async def create_account(self, account: Account) -> Account:
        """
        Persist a new account.

        Raises:
            DuplicateError: If an account with this ID exists
        """
        pass

    @abstractmethod
    async def get_account(self, account_id: UUID) -> Optional[Account]:
        """
        Read an account with its current version.

        Returns:
            The account if found, None otherwise
        """
        pass

    @abstractmethod
    async def commit_settlement(
        self,
        account: Account,
        expected_version: int,
        draft: LedgerEntryDraft,
    ) -> LedgerEntry:
        """
        Atomically store the next account version and its ledger entry.

        The account row is replaced only if its stored version still equals
        `expected_version`. Either both writes happen or neither does.

        Args:
            account: The account as it should look after the settlement
            expected_version: Version the caller read before computing `account`
            draft: The ledger entry explaining the change

        Returns:
            The persisted ledger entry (with id and sequence assigned)

        Raises:
            VersionConflict: Another settlement committed first
            DuplicateError: The draft's idempotency key is already used
            StoreUnavailable: The backend failed
        """
        pass

    @abstractmethod
    async def append_entry(self, draft: LedgerEntryDraft) -> LedgerEntry:
        """
        Persist one immutable ledger entry and nothing else.

        Raises:
            DuplicateError: The draft's idempotency key is already used
            StoreUnavailable: The backend failed
        """
        pass

    @abstractmethod
    async def get_entry_by_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        """Find the entry recorded under an idempotency key."""
        pass

    @abstractmethod
    async def list_entries(
        self,
        account_id: UUID,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> list[LedgerEntry]:
        """
        List an account's entries ordered by sequence.

        Args:
            account_id: Account to list
            limit: Maximum number of entries (None for all)
            newest_first: Most recent entry first when True
        """
        pass


class GoalStorageInterface(ABC):
    """
    Abstract interface for goals and everything that settles against them.

    Status changes that end a lifecycle (goal resolution, task completion)
    are compare-and-commit writes so concurrent callers cannot both win.
    """

    # Goals

    @abstractmethod
    async def save_goal(self, goal: Goal) -> Goal:
        """
        Insert a new goal.

        Raises:
            DuplicateError: If the goal ID exists
        """
        pass

    @abstractmethod
    async def get_goal(self, goal_id: UUID) -> Optional[Goal]:
        pass

    @abstractmethod
    async def list_goals(
        self,
        owner_id: Optional[UUID] = None,
        status: Optional[GoalStatus] = None,
    ) -> list[Goal]:
        """List goals, newest first."""
        pass

    @abstractmethod
    async def transition_goal(
        self,
        goal: Goal,
        expected_status: GoalStatus,
        expected_verification_count: Optional[int] = None,
    ) -> Goal:
        """
        Replace a goal only if its stored status equals `expected_status`.

        When `expected_verification_count` is given the stored
        verification_count must match too. The stored count is never
        overwritten by this call.

        Raises:
            NotFoundError: If the goal doesn't exist
            VersionConflict: If the stored status or count differs
        """
        pass

    # Collaborations

    @abstractmethod
    async def add_collaboration(self, collaboration: GoalCollaboration) -> GoalCollaboration:
        """
        Raises:
            DuplicateError: The collaborator already has a row for this goal
        """
        pass

    @abstractmethod
    async def list_collaborations(self, goal_id: UUID) -> list[GoalCollaboration]:
        """Collaborations for a goal in creation order."""
        pass

    # Verifications

    @abstractmethod
    async def add_verification(self, verification: Verification) -> Verification:
        """
        Insert a verification while its goal is still active and bump the
        goal's verification_count in the same unit of work.

        Raises:
            NotFoundError: If the goal doesn't exist
            VersionConflict: If the goal is no longer active
        """
        pass

    @abstractmethod
    async def get_verification(self, verification_id: UUID) -> Optional[Verification]:
        pass

    @abstractmethod
    async def update_verification(self, verification: Verification) -> Verification:
        """
        Raises:
            NotFoundError: If the verification doesn't exist
        """
        pass

    @abstractmethod
    async def list_verifications(self, goal_id: UUID) -> list[Verification]:
        pass

    # Alarms

    @abstractmethod
    async def save_alarm(self, alarm: AlarmClock) -> AlarmClock:
        """Insert or replace an alarm."""
        pass

    @abstractmethod
    async def get_alarm(self, alarm_id: UUID) -> Optional[AlarmClock]:
        pass

    @abstractmethod
    async def append_alarm_log(self, log: AlarmLog) -> AlarmLog:
        """
        Raises:
            DuplicateError: A log with this ID exists
        """
        pass

    @abstractmethod
    async def list_alarm_logs(
        self,
        alarm_id: UUID,
        since: Optional[datetime] = None,
    ) -> list[AlarmLog]:
        """Logs for an alarm created at or after `since`, oldest first."""
        pass

    # Tasks

    @abstractmethod
    async def save_task(self, task: Task) -> Task:
        pass

    @abstractmethod
    async def get_task(self, task_id: UUID) -> Optional[Task]:
        pass

    @abstractmethod
    async def mark_task_completed(self, task_id: UUID, completed_at: datetime) -> Task:
        """
        Flip is_completed from False to True.

        Raises:
            NotFoundError: If the task doesn't exist
            VersionConflict: If it was already completed
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Events for a correlation ID in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """Events for one entity in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Most recent events, newest first."""
        pass


class StorageError(Exception):
    """Base exception for storage outcomes handled by the engine."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity or reuse a unique key."""
    pass


class VersionConflict(StorageError):
    """A compare-and-commit write lost to a concurrent writer."""

    def __init__(self, entity_id: UUID, expected, actual=None):
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Conflict on {entity_id}: expected {expected}, found {actual}"
        )
