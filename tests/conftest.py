"""
Shared fixtures.

Everything runs against in-memory storage unless a test asks for the
SQL backend explicitly. Time is controlled through a FrozenClock so
deadline and alarm-window behaviour is deterministic.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest

from stakeledger.alarms import AlarmPenaltyTrigger
from stakeledger.audit import AuditLogger
from stakeledger.config import AlarmSettings, AppSettings, GoalSettings, LedgerSettings
from stakeledger.goals import CollaborationSettlement, GoalStateMachine, TaskRewards
from stakeledger.ledger import BalanceGuard, LedgerReconciler, LedgerStore
from stakeledger.models.goal import GoalDraft, PoolPolicy
from stakeledger.orchestrator import AccountabilityService
from stakeledger.services.storage import (
    InMemoryAuditStorage,
    InMemoryGoalStorage,
    InMemoryLedgerStorage,
)


START = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def ledger_settings():
    # Enough attempts for every concurrency test to linearize
    return LedgerSettings(
        max_settle_attempts=25,
        retry_wait_min_seconds=0.0,
        retry_wait_max_seconds=0.0,
    )


@pytest.fixture
def goal_settings():
    return GoalSettings(
        min_stake_amount=Decimal("1.00"),
        max_stake_amount=Decimal("10000.00"),
        require_verification_default=True,
        collaboration_pool_policy=PoolPolicy.UNCAPPED,
    )


@pytest.fixture
def alarm_settings():
    return AlarmSettings(window_minutes=5, code_length=6)


@pytest.fixture
def ledger_storage():
    return InMemoryLedgerStorage()


@pytest.fixture
def goal_storage():
    return InMemoryGoalStorage()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def store(ledger_storage):
    return LedgerStore(ledger_storage)


@pytest.fixture
def guard(store, ledger_settings, audit_logger):
    return BalanceGuard(store, ledger_settings, audit_logger)


@pytest.fixture
def reconciler(store, audit_logger):
    return LedgerReconciler(store, audit_logger)


@pytest.fixture
def collaboration(goal_storage, guard, goal_settings, audit_logger):
    return CollaborationSettlement(goal_storage, guard, goal_settings, audit_logger)


@pytest.fixture
def machine(goal_storage, guard, collaboration, goal_settings, audit_logger, clock):
    return GoalStateMachine(
        goal_storage,
        guard,
        collaboration,
        settings=goal_settings,
        audit_logger=audit_logger,
        clock=clock,
    )


@pytest.fixture
def alarms(goal_storage, guard, alarm_settings, audit_logger, clock):
    return AlarmPenaltyTrigger(goal_storage, guard, alarm_settings, audit_logger, clock)


@pytest.fixture
def tasks(goal_storage, guard, audit_logger, clock):
    return TaskRewards(goal_storage, guard, audit_logger, clock)


@pytest.fixture
def service(ledger_storage, goal_storage, audit_logger, ledger_settings, goal_settings, alarm_settings, clock):
    settings = SimpleNamespace(
        ledger=ledger_settings,
        goals=goal_settings,
        alarms=alarm_settings,
        app=AppSettings(audit_backend="memory"),
    )
    return AccountabilityService(
        ledger_storage,
        goal_storage,
        audit_logger=audit_logger,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def open_funded(guard):
    """Open an account and deposit `amount` into it."""
    async def _open(amount="100.00", account_id=None):
        account_id = account_id or uuid4()
        await guard.open_account(account_id)
        if Decimal(str(amount)) > 0:
            await guard.fund(account_id, amount, reference="initial")
        return account_id
    return _open


@pytest.fixture
def make_draft(clock):
    """GoalDraft factory with a deadline a week ahead of the clock."""
    def _make(owner_id, stake="40.00", **overrides):
        fields = dict(
            owner_id=owner_id,
            title="Get an A in Organic Chemistry",
            description="Final grade on Canvas",
            target_value="A",
            deadline=clock() + timedelta(days=7),
            stake_amount=Decimal(stake),
        )
        fields.update(overrides)
        return GoalDraft(**fields)
    return _make
