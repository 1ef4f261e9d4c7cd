"""
In-Memory Storage Implementation

Used by tests and local experiments. It honours the same contracts as
the SQL backend:
- commit_settlement checks the version and the idempotency key, then
  applies both writes with no await in between, so the unit is atomic
  with respect to other coroutines
- every read and write yields to the event loop once first, so concurrent
  callers interleave the way they would against a real database

Objects are copied on the way in and out; callers can never mutate
stored state by holding on to a returned model.
"""

import asyncio
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
from stakeledger.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    GoalStorageInterface,
    LedgerStorageInterface,
    NotFoundError,
    VersionConflict,
)


async def _round_trip() -> None:
    await asyncio.sleep(0)


class InMemoryLedgerStorage(LedgerStorageInterface):
    """Accounts and ledger entries held in process memory."""

    def __init__(self):
        self._accounts: dict[UUID, Account] = {}
        self._entries: list[LedgerEntry] = []
        self._entries_by_key: dict[str, LedgerEntry] = {}

    def _next_entry(self, draft: LedgerEntryDraft) -> LedgerEntry:
        if draft.idempotency_key and draft.idempotency_key in self._entries_by_key:
            raise DuplicateError(f"Idempotency key already used: {draft.idempotency_key}")
        return LedgerEntry.from_draft(draft, sequence=len(self._entries) + 1)

    def _store_entry(self, entry: LedgerEntry) -> None:
        self._entries.append(entry)
        if entry.idempotency_key:
            self._entries_by_key[entry.idempotency_key] = entry

    async def create_account(self, account: Account) -> Account:
        await _round_trip()
        if account.id in self._accounts:
            raise DuplicateError(f"Account already exists: {account.id}")
        self._accounts[account.id] = account.model_copy()
        return account.model_copy()

    async def get_account(self, account_id: UUID) -> Optional[Account]:
        await _round_trip()
        account = self._accounts.get(account_id)
        return account.model_copy() if account else None

    async def commit_settlement(
        self,
        account: Account,
        expected_version: int,
        draft: LedgerEntryDraft,
    ) -> LedgerEntry:
        await _round_trip()

        # Everything below runs without yielding: check, then apply both
        stored = self._accounts.get(account.id)
        if stored is None:
            raise NotFoundError(f"Account not found: {account.id}")
        if stored.version != expected_version:
            raise VersionConflict(account.id, expected_version, stored.version)

        entry = self._next_entry(draft)
        self._accounts[account.id] = account.model_copy()
        self._store_entry(entry)
        return entry

    async def append_entry(self, draft: LedgerEntryDraft) -> LedgerEntry:
        await _round_trip()
        entry = self._next_entry(draft)
        self._store_entry(entry)
        return entry

    async def get_entry_by_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        await _round_trip()
        return self._entries_by_key.get(idempotency_key)

    async def list_entries(
        self,
        account_id: UUID,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> list[LedgerEntry]:
        await _round_trip()
        entries = [e for e in self._entries if e.account_id == account_id]
        if newest_first:
            entries.reverse()
        return entries[:limit] if limit is not None else entries


class InMemoryGoalStorage(GoalStorageInterface):
    """Goals, collaborations, verifications, alarms and tasks in memory."""

    def __init__(self):
        self._goals: dict[UUID, Goal] = {}
        self._collaborations: list[GoalCollaboration] = []
        self._verifications: dict[UUID, Verification] = {}
        self._alarms: dict[UUID, AlarmClock] = {}
        self._alarm_logs: list[AlarmLog] = []
        self._tasks: dict[UUID, Task] = {}

    async def save_goal(self, goal: Goal) -> Goal:
        await _round_trip()
        if goal.id in self._goals:
            raise DuplicateError(f"Goal already exists: {goal.id}")
        self._goals[goal.id] = goal.model_copy()
        return goal.model_copy()

    async def get_goal(self, goal_id: UUID) -> Optional[Goal]:
        await _round_trip()
        goal = self._goals.get(goal_id)
        return goal.model_copy() if goal else None

    async def list_goals(
        self,
        owner_id: Optional[UUID] = None,
        status: Optional[GoalStatus] = None,
    ) -> list[Goal]:
        await _round_trip()
        goals = []
        for goal in self._goals.values():
            if owner_id and goal.owner_id != owner_id:
                continue
            if status and goal.status != status:
                continue
            goals.append(goal.model_copy())

        goals.sort(key=lambda g: g.created_at, reverse=True)
        return goals

    async def transition_goal(
        self,
        goal: Goal,
        expected_status: GoalStatus,
        expected_verification_count: Optional[int] = None,
    ) -> Goal:
        await _round_trip()
        stored = self._goals.get(goal.id)
        if stored is None:
            raise NotFoundError(f"Goal not found: {goal.id}")
        if stored.status != expected_status:
            raise VersionConflict(goal.id, expected_status.value, stored.status.value)
        if (
            expected_verification_count is not None
            and stored.verification_count != expected_verification_count
        ):
            raise VersionConflict(goal.id, expected_verification_count, stored.verification_count)
        updated = goal.model_copy(update={"verification_count": stored.verification_count})
        self._goals[goal.id] = updated
        return updated.model_copy()

    async def add_collaboration(self, collaboration: GoalCollaboration) -> GoalCollaboration:
        await _round_trip()
        for existing in self._collaborations:
            if (
                existing.goal_id == collaboration.goal_id
                and existing.collaborator_id == collaboration.collaborator_id
            ):
                raise DuplicateError(
                    f"Collaborator {collaboration.collaborator_id} already on goal {collaboration.goal_id}"
                )
        self._collaborations.append(collaboration.model_copy())
        return collaboration.model_copy()

    async def list_collaborations(self, goal_id: UUID) -> list[GoalCollaboration]:
        await _round_trip()
        return [c.model_copy() for c in self._collaborations if c.goal_id == goal_id]

    async def add_verification(self, verification: Verification) -> Verification:
        await _round_trip()
        goal = self._goals.get(verification.goal_id)
        if goal is None:
            raise NotFoundError(f"Goal not found: {verification.goal_id}")
        if goal.status != GoalStatus.ACTIVE:
            raise VersionConflict(goal.id, GoalStatus.ACTIVE.value, goal.status.value)
        if verification.id in self._verifications:
            raise DuplicateError(f"Verification already exists: {verification.id}")
        self._goals[goal.id] = goal.model_copy(update={"verification_count": goal.verification_count + 1})
        self._verifications[verification.id] = verification.model_copy()
        return verification.model_copy()

    async def get_verification(self, verification_id: UUID) -> Optional[Verification]:
        await _round_trip()
        verification = self._verifications.get(verification_id)
        return verification.model_copy() if verification else None

    async def update_verification(self, verification: Verification) -> Verification:
        await _round_trip()
        if verification.id not in self._verifications:
            raise NotFoundError(f"Verification not found: {verification.id}")
        self._verifications[verification.id] = verification.model_copy()
        return verification.model_copy()

    async def list_verifications(self, goal_id: UUID) -> list[Verification]:
        await _round_trip()
        verifications = [
            v.model_copy() for v in self._verifications.values() if v.goal_id == goal_id
        ]
        verifications.sort(key=lambda v: v.created_at)
        return verifications

    async def save_alarm(self, alarm: AlarmClock) -> AlarmClock:
        await _round_trip()
        self._alarms[alarm.id] = alarm.model_copy()
        return alarm.model_copy()

    async def get_alarm(self, alarm_id: UUID) -> Optional[AlarmClock]:
        await _round_trip()
        alarm = self._alarms.get(alarm_id)
        return alarm.model_copy() if alarm else None

    async def append_alarm_log(self, log: AlarmLog) -> AlarmLog:
        await _round_trip()
        if any(existing.id == log.id for existing in self._alarm_logs):
            raise DuplicateError(f"Alarm log already exists: {log.id}")
        self._alarm_logs.append(log.model_copy())
        return log.model_copy()

    async def list_alarm_logs(
        self,
        alarm_id: UUID,
        since: Optional[datetime] = None,
    ) -> list[AlarmLog]:
        await _round_trip()
        return [
            log.model_copy()
            for log in self._alarm_logs
            if log.alarm_id == alarm_id and (since is None or log.created_at >= since)
        ]

    async def save_task(self, task: Task) -> Task:
        await _round_trip()
        self._tasks[task.id] = task.model_copy()
        return task.model_copy()

    async def get_task(self, task_id: UUID) -> Optional[Task]:
        await _round_trip()
        task = self._tasks.get(task_id)
        return task.model_copy() if task else None

    async def mark_task_completed(self, task_id: UUID, completed_at: datetime) -> Task:
        await _round_trip()
        stored = self._tasks.get(task_id)
        if stored is None:
            raise NotFoundError(f"Task not found: {task_id}")
        if stored.is_completed:
            raise VersionConflict(task_id, "open", "completed")
        updated = stored.model_copy(
            update={"is_completed": True, "completed_at": completed_at, "updated_at": completed_at}
        )
        self._tasks[task_id] = updated
        return updated.model_copy()


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit events kept in process memory."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_events_by_entity(self, entity_type: str, entity_id: UUID) -> list[AuditEvent]:
        events = [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
