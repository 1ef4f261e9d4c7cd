"""
Tests for the SQLAlchemy backend, run against a SQLite file through aiosqlite.

The engine code paths are exercised with the same flows as the in-memory
tests; the storage-level tests check the SQL mapping of the
compare-and-commit and uniqueness rules directly.
"""

import asyncio
from datetime import time, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from stakeledger.alarms import AlarmPenaltyTrigger
from stakeledger.errors import (
    CancellationNotAllowed,
    GoalAlreadyResolved,
    InsufficientFunds,
    StoreUnavailable,
)
from stakeledger.goals import CollaborationSettlement, GoalStateMachine, TaskRewards
from stakeledger.ledger import BalanceGuard, LedgerReconciler, LedgerStore
from stakeledger.models.goal import AlarmLog, GoalCollaboration, GoalStatus, Verification
from stakeledger.models.ledger import (
    Account,
    EntityType,
    LedgerEntryDraft,
    RelatedEntity,
    TransactionKind,
)
from stakeledger.services.storage import (
    DuplicateError,
    NotFoundError,
    SqlDatabase,
    SqlGoalStorage,
    SqlLedgerStorage,
    VersionConflict,
)


@pytest.fixture
async def db(tmp_path):
    database = SqlDatabase(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def sql_ledger(db):
    return SqlLedgerStorage(db)


@pytest.fixture
def sql_goals(db):
    return SqlGoalStorage(db)


@pytest.fixture
def sql_guard(sql_ledger, ledger_settings, audit_logger):
    return BalanceGuard(LedgerStore(sql_ledger), ledger_settings, audit_logger)


@pytest.fixture
def sql_machine(sql_goals, sql_guard, goal_settings, audit_logger, clock):
    collaboration = CollaborationSettlement(sql_goals, sql_guard, goal_settings, audit_logger)
    return GoalStateMachine(
        sql_goals, sql_guard, collaboration, settings=goal_settings, audit_logger=audit_logger, clock=clock
    )


def reward_draft(account_id, before, amount, key=None):
    return LedgerEntryDraft(
        account_id=account_id,
        amount=Decimal(amount),
        kind=TransactionKind.REWARD,
        related_entity=RelatedEntity(entity_type=EntityType.TASK, entity_id=uuid4()),
        idempotency_key=key,
        balance_before=Decimal(before),
        balance_after=Decimal(before) + Decimal(amount),
    )


MANUAL_PROOF = {"verification_type": "manual", "note": "Signed off by advisor"}

class TestSqlLedgerStorage:
    """Tests for accounts and entries in SQL."""

    async def test_account_round_trip(self, sql_ledger):
        account = await sql_ledger.create_account(Account(id=uuid4()))
        loaded = await sql_ledger.get_account(account.id)
        assert loaded.balance == Decimal("0.00")
        assert loaded.version == 0
        assert loaded.created_at.tzinfo is not None

    async def test_duplicate_account(self, sql_ledger):
        account_id = uuid4()
        await sql_ledger.create_account(Account(id=account_id))
        with pytest.raises(DuplicateError):
            await sql_ledger.create_account(Account(id=account_id))

    async def test_commit_checks_version(self, sql_ledger):
        account = await sql_ledger.create_account(Account(id=uuid4()))
        draft = reward_draft(account.id, "0.00", "5.00")
        updated = account.apply(draft.amount, draft.kind)

        entry = await sql_ledger.commit_settlement(updated, 0, draft)
        assert entry.sequence >= 1
        assert entry.amount == Decimal("5.00")

        stale = reward_draft(account.id, "0.00", "1.00")
        with pytest.raises(VersionConflict):
            await sql_ledger.commit_settlement(account.apply(stale.amount, stale.kind), 0, stale)

        stored = await sql_ledger.get_account(account.id)
        assert stored.balance == Decimal("5.00")
        assert stored.version == 1
        assert len(await sql_ledger.list_entries(account.id)) == 1

    async def test_duplicate_key_rolls_back_account_update(self, sql_ledger):
        account = await sql_ledger.create_account(Account(id=uuid4()))
        first = reward_draft(account.id, "0.00", "5.00", key="once")
        await sql_ledger.commit_settlement(account.apply(first.amount, first.kind), 0, first)

        current = await sql_ledger.get_account(account.id)
        second = reward_draft(account.id, "5.00", "5.00", key="once")
        with pytest.raises(DuplicateError):
            await sql_ledger.commit_settlement(current.apply(second.amount, second.kind), current.version, second)

        stored = await sql_ledger.get_account(account.id)
        assert stored.balance == Decimal("5.00")
        assert stored.version == current.version

    async def test_cents_survive_storage(self, sql_ledger):
        account = await sql_ledger.create_account(Account(id=uuid4()))
        draft = reward_draft(account.id, "0.00", "0.07", key="cents")
        await sql_ledger.commit_settlement(account.apply(draft.amount, draft.kind), 0, draft)
        entry = await sql_ledger.get_entry_by_key("cents")
        assert entry.amount == Decimal("0.07")
        assert entry.balance_after == Decimal("0.07")

    async def test_commit_unknown_account(self, sql_ledger):
        account = Account(id=uuid4())
        draft = reward_draft(account.id, "0.00", "1.00")
        with pytest.raises(NotFoundError):
            await sql_ledger.commit_settlement(account.apply(draft.amount, draft.kind), 0, draft)

    async def test_unreachable_database(self, tmp_path):
        database = SqlDatabase(f"sqlite+aiosqlite:///{tmp_path}/missing/dir/test.db")
        with pytest.raises(StoreUnavailable):
            await database.create_all()
        await database.dispose()


class TestSqlGoalStorage:
    """Tests for goal-side tables in SQL."""

    async def test_transition_is_compare_and_commit(self, sql_goals, sql_machine, sql_guard, make_draft):
        owner = uuid4()
        await sql_guard.open_account(owner)
        await sql_guard.fund(owner, "100.00", reference="initial")
        goal = await sql_machine.create_goal(make_draft(owner))

        failed = goal.model_copy(update={"status": GoalStatus.FAILED, "resolution_key": "a"})
        await sql_goals.transition_goal(failed, expected_status=GoalStatus.ACTIVE)

        cancelled = goal.model_copy(update={"status": GoalStatus.CANCELLED, "resolution_key": "b"})
        with pytest.raises(VersionConflict):
            await sql_goals.transition_goal(cancelled, expected_status=GoalStatus.ACTIVE)

        stored = await sql_goals.get_goal(goal.id)
        assert stored.status == GoalStatus.FAILED
        assert stored.resolution_key == "a"

    async def test_collaboration_unique_per_goal(self, sql_goals):
        goal_id, friend = uuid4(), uuid4()
        await sql_goals.add_collaboration(GoalCollaboration(
            goal_id=goal_id, collaborator_id=friend, stake_amount=Decimal("5.00")
        ))
        with pytest.raises(DuplicateError):
            await sql_goals.add_collaboration(GoalCollaboration(
                goal_id=goal_id, collaborator_id=friend, stake_amount=Decimal("6.00")
            ))

    async def test_alarm_log_ids_unique(self, sql_goals, clock):
        log = AlarmLog(alarm_id=uuid4(), user_id=uuid4(), window_date=clock().date(), created_at=clock())
        await sql_goals.append_alarm_log(log)
        with pytest.raises(DuplicateError):
            await sql_goals.append_alarm_log(log)
        assert len(await sql_goals.list_alarm_logs(log.alarm_id)) == 1

    async def test_cancel_conditioned_on_verification_count(
        self, sql_goals, sql_machine, sql_guard, make_draft
    ):
        owner = uuid4()
        await sql_guard.open_account(owner)
        await sql_guard.fund(owner, "100.00", reference="initial")
        goal = await sql_machine.create_goal(make_draft(owner))
        await sql_machine.submit_verification(goal.id, owner, MANUAL_PROOF)

        cancelled = goal.model_copy(update={"status": GoalStatus.CANCELLED, "resolution_key": "c"})
        with pytest.raises(VersionConflict):
            await sql_goals.transition_goal(cancelled, GoalStatus.ACTIVE, expected_verification_count=0)
        with pytest.raises(CancellationNotAllowed):
            await sql_machine.resolve_goal(goal.id, GoalStatus.CANCELLED, "req-1")

        await sql_machine.resolve_goal(goal.id, GoalStatus.FAILED, "req-2")
        stored = await sql_goals.get_goal(goal.id)
        assert stored.status == GoalStatus.FAILED
        assert stored.verification_count == 1

        with pytest.raises(VersionConflict):
            await sql_goals.add_verification(Verification(goal_id=goal.id, user_id=owner, evidence=MANUAL_PROOF))
        assert len(await sql_goals.list_verifications(goal.id)) == 1


class TestSqlEndToEnd:
    """The engine flows over the SQL backend."""

    async def test_goal_lifecycle(self, sql_machine, sql_guard, sql_ledger, make_draft, audit_logger):
        owner = uuid4()
        await sql_guard.open_account(owner)
        await sql_guard.fund(owner, "100.00", reference="initial")
        goal = await sql_machine.create_goal(make_draft(owner, stake="40.00"))
        assert await sql_guard.get_balance(owner) == Decimal("60.00")

        await sql_machine.resolve_goal(goal.id, GoalStatus.CANCELLED, "req-1")
        with pytest.raises(GoalAlreadyResolved):
            await sql_machine.resolve_goal(goal.id, GoalStatus.FAILED, "req-2")

        assert await sql_guard.get_balance(owner) == Decimal("100.00")
        report = await LedgerReconciler(LedgerStore(sql_ledger), audit_logger).reconcile(owner)
        assert report.is_consistent
        assert report.entry_count == 3

    async def test_idempotent_settle(self, sql_guard):
        account_id = uuid4()
        await sql_guard.open_account(account_id)
        related = RelatedEntity(entity_type=EntityType.TASK, entity_id=uuid4())
        first = await sql_guard.settle(account_id, Decimal("2.00"), TransactionKind.REWARD, related, "k1")
        second = await sql_guard.settle(account_id, Decimal("2.00"), TransactionKind.REWARD, related, "k1")
        assert first.id == second.id
        assert await sql_guard.get_balance(account_id) == Decimal("2.00")

    async def test_insufficient_funds(self, sql_guard):
        account_id = uuid4()
        await sql_guard.open_account(account_id)
        related = RelatedEntity(entity_type=EntityType.GOAL, entity_id=uuid4())
        with pytest.raises(InsufficientFunds):
            await sql_guard.settle(account_id, Decimal("-1.00"), TransactionKind.PENALTY, related)

    async def test_missed_alarm_and_task(self, sql_goals, sql_guard, alarm_settings, audit_logger, clock):
        user = uuid4()
        await sql_guard.open_account(user)
        await sql_guard.fund(user, "50.00", reference="initial")

        alarms = AlarmPenaltyTrigger(sql_goals, sql_guard, alarm_settings, audit_logger, clock)
        alarm = await alarms.create_alarm(user, "Gym", time(13, 0), "10.00", code="1234")
        clock.advance(hours=2)
        entry = await alarms.evaluate(alarm.id)
        assert entry is not None
        assert await alarms.evaluate(alarm.id) is None

        tasks = TaskRewards(sql_goals, sql_guard, audit_logger, clock)
        task = await tasks.create_task(user, "Stretch", reward_amount="1.50", due_date=clock().date() + timedelta(days=1))
        await tasks.complete_task(task.id)

        assert await sql_guard.get_balance(user) == Decimal("41.50")
        stored = await sql_goals.get_alarm(alarm.id)
        assert stored.last_triggered is not None


class TestSqlConcurrency:
    """Concurrent settlements against the SQL compare-and-commit."""

    async def test_same_key_settles_once(self, sql_guard, sql_ledger):
        account_id = uuid4()
        await sql_guard.open_account(account_id)
        related = RelatedEntity(entity_type=EntityType.TASK, entity_id=uuid4())

        entries = await asyncio.gather(*[
            sql_guard.settle(account_id, Decimal("2.00"), TransactionKind.REWARD, related, "task-bonus")
            for _ in range(5)
        ])

        assert len({e.id for e in entries}) == 1
        assert len(await sql_ledger.list_entries(account_id)) == 1
        assert await sql_guard.get_balance(account_id) == Decimal("2.00")

    async def test_contended_debits_all_land(self, sql_guard, sql_ledger, audit_logger):
        account_id = uuid4()
        await sql_guard.open_account(account_id)
        await sql_guard.fund(account_id, "20.00", reference="initial")
        related = RelatedEntity(entity_type=EntityType.GOAL, entity_id=uuid4())

        await asyncio.gather(*[
            sql_guard.settle(account_id, Decimal("-1.00"), TransactionKind.PENALTY, related)
            for _ in range(10)
        ])

        assert await sql_guard.get_balance(account_id) == Decimal("10.00")
        report = await LedgerReconciler(LedgerStore(sql_ledger), audit_logger).reconcile(account_id)
        assert report.is_consistent
        assert report.entry_count == 11
