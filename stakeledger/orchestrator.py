"""
Main Orchestrator for Stake Ledger

This module ties together all the components and exposes the service
operations callers use:
1. Money in and out of goals (create, stake, resolve, resume, expire)
2. Alarm evaluation
3. Task rewards
4. Balance, history and reconciliation

DESIGN DECISION: The orchestrator enforces the boundaries:
- Balances only change through the balance guard
- Every operation carries a correlation id through its audit events
- Storage failures surface as StoreUnavailable and are audited

This is the "glue"; the rules live in the components.
"""

from datetime import date, datetime, time
from decimal import Decimal
from typing import Callable, Optional, Union
from uuid import UUID

import structlog

from stakeledger.alarms import AlarmPenaltyTrigger
from stakeledger.audit import AuditLogger, create_correlation_id
from stakeledger.config import Settings, get_settings
from stakeledger.errors import StoreUnavailable
from stakeledger.goals import CollaborationSettlement, GoalStateMachine, TaskRewards
from stakeledger.ledger import BalanceGuard, LedgerReconciler, LedgerStore
from stakeledger.models.goal import (
    AlarmClock,
    Goal,
    GoalCollaboration,
    GoalDraft,
    GoalResolution,
    GoalStatus,
    Task,
    Verification,
)
from stakeledger.models.ledger import Account, LedgerEntry, ReconciliationReport, utc_now
from stakeledger.services.storage import (
    AuditStorageInterface,
    GoalStorageInterface,
    InMemoryAuditStorage,
    InMemoryGoalStorage,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
    SqlDatabase,
    SqlGoalStorage,
    SqlLedgerStorage,
)
from stakeledger.validation import GoalValidator


logger = structlog.get_logger(__name__)


class AccountabilityService:
    """
    The engine's public surface.

    Every method is async and accepts an optional correlation_id; one is
    created when the caller doesn't supply it.
    """

    def __init__(
        self,
        ledger_storage: LedgerStorageInterface,
        goal_storage: GoalStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        settings = settings or get_settings()
        self._settings = settings
        self._audit_logger = audit_logger or AuditLogger()
        self._clock = clock

        goal_settings = settings.goals
        self._store = LedgerStore(ledger_storage)
        self._guard = BalanceGuard(self._store, settings.ledger, self._audit_logger)
        self._reconciler = LedgerReconciler(self._store, self._audit_logger)
        self._collaboration = CollaborationSettlement(
            goal_storage, self._guard, goal_settings, self._audit_logger
        )
        self._goals = GoalStateMachine(
            goal_storage,
            self._guard,
            self._collaboration,
            validator=GoalValidator(goal_storage, goal_settings),
            settings=goal_settings,
            audit_logger=self._audit_logger,
            clock=clock,
        )
        self._alarms = AlarmPenaltyTrigger(
            goal_storage, self._guard, settings.alarms, self._audit_logger, clock
        )
        self._tasks = TaskRewards(goal_storage, self._guard, self._audit_logger, clock)
        self._history_default_limit = settings.ledger.history_default_limit

    @property
    def guard(self) -> BalanceGuard:
        return self._guard

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def open_account(
        self,
        account_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> Account:
        return await self._guard.open_account(account_id, correlation_id or create_correlation_id())

    async def fund_account(
        self,
        account_id: UUID,
        amount,
        reference: str,
        correlation_id: Optional[UUID] = None,
    ) -> LedgerEntry:
        """Credit a deposit confirmed by the payment layer."""
        return await self._guard.fund(
            account_id, amount, reference, correlation_id or create_correlation_id()
        )

    async def get_balance(self, account_id: UUID) -> Decimal:
        return await self._guard.get_balance(account_id)

    async def get_history(
        self,
        account_id: UUID,
        limit: Optional[int] = None,
    ) -> list[LedgerEntry]:
        """Most recent entries first."""
        # Raises AccountNotFound for unknown accounts rather than an empty list
        await self._store.get_account(account_id)
        if limit is None:
            limit = self._history_default_limit
        return await self._store.history(account_id, limit)

    async def reconcile_account(
        self,
        account_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> ReconciliationReport:
        return await self._reconciler.reconcile(account_id, correlation_id or create_correlation_id())

    # =========================================================================
    # GOALS
    # =========================================================================

    async def create_goal(
        self,
        draft: GoalDraft,
        correlation_id: Optional[UUID] = None,
    ) -> Goal:
        return await self._goals.create_goal(draft, correlation_id or create_correlation_id())

    async def stake(
        self,
        owner_account_id: UUID,
        goal_id: UUID,
        amount,
        correlation_id: Optional[UUID] = None,
    ) -> LedgerEntry:
        return await self._goals.stake(
            owner_account_id, goal_id, amount, correlation_id or create_correlation_id()
        )

    async def add_collaborator(
        self,
        goal_id: UUID,
        collaborator_id: UUID,
        stake_amount,
        will_earn_if_fails: bool = True,
        correlation_id: Optional[UUID] = None,
    ) -> GoalCollaboration:
        return await self._collaboration.add_collaborator(
            goal_id,
            collaborator_id,
            stake_amount,
            will_earn_if_fails,
            correlation_id or create_correlation_id(),
        )

    async def submit_verification(
        self,
        goal_id: UUID,
        user_id: UUID,
        evidence,
        verified_value: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Verification:
        return await self._goals.submit_verification(
            goal_id, user_id, evidence, verified_value, correlation_id or create_correlation_id()
        )

    async def review_verification(
        self,
        verification_id: UUID,
        reviewer_id: UUID,
        approved: bool,
        correlation_id: Optional[UUID] = None,
    ) -> Verification:
        return await self._goals.review_verification(
            verification_id,
            reviewer_id,
            approved,
            correlation_id=correlation_id or create_correlation_id(),
        )

    async def resolve_goal(
        self,
        goal_id: UUID,
        outcome: Union[GoalStatus, str],
        idempotency_key: str,
        correlation_id: Optional[UUID] = None,
    ) -> GoalResolution:
        """
        Resolve a goal and settle its owner and collaborators.

        Check `resolution.failed_collaborator_ids` (or call
        `raise_for_partial()`) and retry them with resume_goal_settlement.
        """
        correlation_id = correlation_id or create_correlation_id()
        try:
            return await self._goals.resolve_goal(
                goal_id, outcome, idempotency_key, correlation_id=correlation_id
            )
        except StoreUnavailable as e:
            logger.error("resolve_goal_store_unavailable", goal_id=str(goal_id), error=str(e))
            raise

    async def resume_goal_settlement(
        self,
        goal_id: UUID,
        collaborator_ids: Optional[list[UUID]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> GoalResolution:
        return await self._goals.resume_settlement(
            goal_id, collaborator_ids, correlation_id or create_correlation_id()
        )

    async def expire_overdue_goals(
        self,
        now: Optional[datetime] = None,
        correlation_id: Optional[UUID] = None,
    ) -> list[GoalResolution]:
        return await self._goals.expire_overdue(now, correlation_id or create_correlation_id())

    # =========================================================================
    # ALARMS & TASKS
    # =========================================================================

    async def create_alarm(
        self,
        user_id: UUID,
        title: str,
        alarm_time: time,
        stake_amount,
        timezone: str = "UTC",
        code: Optional[str] = None,
        goal_id: Optional[UUID] = None,
        window_minutes: Optional[int] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AlarmClock:
        return await self._alarms.create_alarm(
            user_id=user_id,
            title=title,
            alarm_time=alarm_time,
            stake_amount=stake_amount,
            timezone=timezone,
            code=code,
            goal_id=goal_id,
            window_minutes=window_minutes,
            correlation_id=correlation_id or create_correlation_id(),
        )

    async def evaluate_alarm(
        self,
        alarm_id: UUID,
        now: Optional[datetime] = None,
        code_entered: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Optional[LedgerEntry]:
        return await self._alarms.evaluate(
            alarm_id, now, code_entered, correlation_id or create_correlation_id()
        )

    async def create_task(
        self,
        user_id: UUID,
        title: str,
        reward_amount=0,
        description: Optional[str] = None,
        goal_id: Optional[UUID] = None,
        due_date: Optional[date] = None,
    ) -> Task:
        return await self._tasks.create_task(
            user_id, title, reward_amount, description, goal_id, due_date
        )

    async def complete_task(
        self,
        task_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> Optional[LedgerEntry]:
        return await self._tasks.complete_task(
            task_id, correlation_id=correlation_id or create_correlation_id()
        )

    async def settle_task_reward(
        self,
        task_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> Optional[LedgerEntry]:
        """Re-issue a completed task's reward after a failed payout."""
        return await self._tasks.settle_reward(
            task_id, correlation_id or create_correlation_id()
        )


def create_audit_storage(settings: Settings) -> Optional[AuditStorageInterface]:
    """Audit sink for the configured backend (None means structlog only)."""
    backend = settings.app.audit_backend
    if backend == "memory":
        return InMemoryAuditStorage()
    if backend == "sheets":
        from stakeledger.services.storage.google_sheets import (
            GoogleSheetsAuditStorage,
            GoogleSheetsClient,
        )
        return GoogleSheetsAuditStorage(GoogleSheetsClient(settings.google_sheets))
    return None


async def create_app_components(
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utc_now,
) -> tuple[AccountabilityService, Optional[SqlDatabase]]:
    """
    Factory function to create the service from configuration.

    Returns:
        (service, database). The database is None for the memory backend;
        otherwise the caller owns it and should `await database.dispose()`.
    """
    settings = settings or get_settings()
    ledger_settings = settings.ledger

    database = None
    if ledger_settings.storage_backend == "sql":
        database = SqlDatabase(ledger_settings.database_url, echo=settings.app.debug_mode)
        await database.create_all()
        ledger_storage = SqlLedgerStorage(database)
        goal_storage = SqlGoalStorage(database)
    else:
        ledger_storage = InMemoryLedgerStorage()
        goal_storage = InMemoryGoalStorage()

    audit_logger = AuditLogger(create_audit_storage(settings))

    logger.info(
        "stakeledger_started",
        storage_backend=ledger_settings.storage_backend,
        audit_backend=settings.app.audit_backend,
        environment=settings.app.app_environment,
    )

    service = AccountabilityService(
        ledger_storage,
        goal_storage,
        audit_logger=audit_logger,
        settings=settings,
        clock=clock,
    )
    return service, database
