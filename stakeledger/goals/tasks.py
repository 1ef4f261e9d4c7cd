"""
Task Rewards

Small to-dos that pay out when completed. Completion is a
compare-and-commit on is_completed, so a reward can only be claimed once
even when two completions race.
"""

from datetime import date, datetime
from typing import Callable, Optional
from uuid import UUID

from stakeledger.audit import AuditLogger
from stakeledger.errors import InvalidAmount, TaskAlreadyCompleted, TaskNotFound
from stakeledger.ledger.guard import BalanceGuard, coerce_amount
from stakeledger.models.audit import AuditEventBuilder
from stakeledger.models.goal import Task
from stakeledger.models.ledger import (
    EntityType,
    LedgerEntry,
    RelatedEntity,
    TransactionKind,
    utc_now,
)
from stakeledger.services.storage import GoalStorageInterface, NotFoundError, VersionConflict


def reward_key(task_id: UUID) -> str:
    return f"task:{task_id}:reward"


class TaskRewards:
    """Creates tasks and pays their rewards."""

    def __init__(
        self,
        goal_storage: GoalStorageInterface,
        guard: BalanceGuard,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._goals = goal_storage
        self._guard = guard
        self._audit_logger = audit_logger
        self._clock = clock

    async def create_task(
        self,
        user_id: UUID,
        title: str,
        reward_amount=0,
        description: Optional[str] = None,
        goal_id: Optional[UUID] = None,
        due_date: Optional[date] = None,
    ) -> Task:
        reward_amount = coerce_amount(reward_amount)
        if reward_amount < 0:
            raise InvalidAmount("Task reward cannot be negative")

        now = self._clock()
        return await self._goals.save_task(Task(
            user_id=user_id,
            goal_id=goal_id,
            title=title,
            description=description,
            reward_amount=reward_amount,
            due_date=due_date,
            created_at=now,
            updated_at=now,
        ))

    async def complete_task(
        self,
        task_id: UUID,
        now: Optional[datetime] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Optional[LedgerEntry]:
        """
        Mark a task done and pay its reward.

        Returns the reward entry, or None for tasks without a reward.

        Raises:
            TaskNotFound, TaskAlreadyCompleted
        """
        now = now or self._clock()
        try:
            task = await self._goals.mark_task_completed(task_id, now)
        except NotFoundError as e:
            raise TaskNotFound(task_id) from e
        except VersionConflict as e:
            raise TaskAlreadyCompleted(task_id) from e

        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.task_completed(
                task_id, str(task.reward_amount), correlation_id
            ))
        return await self._pay(task, correlation_id)

    async def settle_reward(
        self,
        task_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> Optional[LedgerEntry]:
        """
        Re-issue the reward of a completed task.

        For use after complete_task failed with StoreUnavailable once the
        task was already marked done; paid rewards are not paid twice.
        """
        task = await self._goals.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        if not task.is_completed:
            raise ValueError(f"Task {task_id} is not completed")
        return await self._pay(task, correlation_id)

    async def _pay(self, task: Task, correlation_id: Optional[UUID]) -> Optional[LedgerEntry]:
        if task.reward_amount <= 0:
            return None
        return await self._guard.settle(
            account_id=task.user_id,
            amount=task.reward_amount,
            kind=TransactionKind.REWARD,
            related_entity=RelatedEntity(entity_type=EntityType.TASK, entity_id=task.id),
            idempotency_key=reward_key(task.id),
            description=f"Task '{task.title}' completed",
            correlation_id=correlation_id,
        )
