"""
Alarm Penalty Trigger

Each day an alarm opens a window at `alarm_time` (local to the alarm's
timezone) lasting `window_minutes`. Per window:

    scheduled ──► entered_on_time   correct code inside the window
              └─► missed            window closed with no correct code:
                                    the stake is forfeited as a penalty

`evaluate` may be called any number of times, by any number of workers.
Every window that ended since `last_triggered` is settled, so a late
tick still charges the days it skipped. The penalty is keyed by alarm
and window date, and the missed-window log has a deterministic id, so a
window is penalized at most once.
"""

import secrets
import string
from datetime import date, datetime, time
from typing import Callable, Optional
from uuid import NAMESPACE_URL, UUID, uuid5

import structlog

from stakeledger.audit import AuditLogger
from stakeledger.config import AlarmSettings, get_settings
from stakeledger.errors import AlarmNotFound, InvalidAmount
from stakeledger.ledger.guard import BalanceGuard, coerce_amount
from stakeledger.models.audit import AuditEventBuilder, AuditEventType
from stakeledger.models.goal import AlarmClock, AlarmLog
from stakeledger.models.ledger import (
    EntityType,
    LedgerEntry,
    RelatedEntity,
    TransactionKind,
    utc_now,
)
from stakeledger.services.storage import DuplicateError, GoalStorageInterface


logger = structlog.get_logger(__name__)


def penalty_key(alarm_id: UUID, window_date: date) -> str:
    return f"alarm:{alarm_id}:{window_date.isoformat()}"


def generate_code(length: int) -> str:
    """Random numeric entry code."""
    return "".join(secrets.choice(string.digits) for _ in range(length))


class AlarmPenaltyTrigger:
    """Schedules alarms and charges the stake for missed windows."""

    def __init__(
        self,
        goal_storage: GoalStorageInterface,
        guard: BalanceGuard,
        settings: Optional[AlarmSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._goals = goal_storage
        self._guard = guard
        self._settings = settings or get_settings().alarms
        self._audit_logger = audit_logger
        self._clock = clock

    async def get_alarm(self, alarm_id: UUID) -> AlarmClock:
        alarm = await self._goals.get_alarm(alarm_id)
        if alarm is None:
            raise AlarmNotFound(alarm_id)
        return alarm

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
        stake_amount = coerce_amount(stake_amount)
        if stake_amount <= 0:
            raise InvalidAmount("Alarm stake must be positive")

        now = self._clock()
        alarm = AlarmClock(
            user_id=user_id,
            goal_id=goal_id,
            title=title,
            alarm_time=alarm_time,
            timezone=timezone,
            code=code or generate_code(self._settings.code_length),
            stake_amount=stake_amount,
            window_minutes=window_minutes or self._settings.window_minutes,
            created_at=now,
            updated_at=now,
        )
        alarm = await self._goals.save_alarm(alarm)

        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.alarm_created(alarm.id, user_id, correlation_id))
        return alarm

    async def _audit(
        self,
        alarm: AlarmClock,
        window_date: date,
        event_type: AuditEventType,
        correlation_id: Optional[UUID],
        details: Optional[dict] = None,
    ) -> None:
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.alarm_evaluated(
                alarm.id, window_date.isoformat(), event_type, correlation_id, details
            ))

    async def _close_window(self, alarm: AlarmClock, window_end: datetime, now: datetime) -> AlarmClock:
        return await self._goals.save_alarm(alarm.model_copy(update={
            "last_triggered": window_end,
            "updated_at": now,
        }))

    async def _charge_missed(
        self,
        alarm: AlarmClock,
        window_date: date,
        now: datetime,
        correlation_id: Optional[UUID],
    ) -> LedgerEntry:
        entry = await self._guard.settle(
            account_id=alarm.user_id,
            amount=-alarm.stake_amount,
            kind=TransactionKind.PENALTY,
            related_entity=RelatedEntity(entity_type=EntityType.ALARM, entity_id=alarm.id),
            idempotency_key=penalty_key(alarm.id, window_date),
            description=f"Missed alarm '{alarm.title}' on {window_date.isoformat()}",
            correlation_id=correlation_id,
        )

        try:
            await self._goals.append_alarm_log(AlarmLog(
                id=uuid5(NAMESPACE_URL, f"{penalty_key(alarm.id, window_date)}:missed"),
                alarm_id=alarm.id,
                user_id=alarm.user_id,
                window_date=window_date,
                was_successful=False,
                penalty_applied=alarm.stake_amount,
                created_at=now,
            ))
        except DuplicateError:
            logger.debug("alarm_miss_already_logged", alarm_id=str(alarm.id), window_date=str(window_date))
        return entry

    async def evaluate(
        self,
        alarm_id: UUID,
        now: Optional[datetime] = None,
        code_entered: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Optional[LedgerEntry]:
        """
        Record a code attempt and settle every window that has ended.

        Windows are settled oldest first, so a tick that lands in today's
        window still charges yesterday's miss.

        Returns:
            The most recent penalty entry if any window was missed, else None.

        Raises:
            AlarmNotFound
            InsufficientFunds: The user cannot cover a penalty; that window
                and every later one stay open so they can be charged later
        """
        now = now or self._clock()
        alarm = await self.get_alarm(alarm_id)
        if not alarm.is_active:
            return None

        window_date, start, end = alarm.latest_window(now)
        on_time = False

        if code_entered is not None:
            # Windows that ended before the alarm existed are never open
            already_closed = end <= alarm.created_at or (
                alarm.last_triggered is not None and alarm.last_triggered >= end
            )
            on_time = (
                not already_closed
                and start <= now < end
                and secrets.compare_digest(code_entered.encode(), alarm.code.encode())
            )
            await self._goals.append_alarm_log(AlarmLog(
                alarm_id=alarm.id,
                user_id=alarm.user_id,
                window_date=window_date,
                entered_at=now,
                code_entered=code_entered,
                was_successful=on_time,
                created_at=now,
            ))
            if not on_time:
                await self._audit(alarm, window_date, AuditEventType.ALARM_CODE_REJECTED, correlation_id)

        entry = None
        pending = alarm.pending_windows(now)
        if pending:
            # A successful entry may be logged without its window having been closed
            logs = await self._goals.list_alarm_logs(alarm.id, since=alarm.last_triggered)
            entered = {log.window_date for log in logs if log.was_successful}

            for pending_date, pending_end in pending:
                if pending_date in entered:
                    alarm = await self._close_window(alarm, pending_end, now)
                    continue
                entry = await self._charge_missed(alarm, pending_date, now, correlation_id)
                alarm = await self._close_window(alarm, pending_end, now)
                await self._audit(
                    alarm,
                    pending_date,
                    AuditEventType.ALARM_MISSED,
                    correlation_id,
                    {"penalty": str(alarm.stake_amount), "entry_id": str(entry.id)},
                )

        if on_time:
            await self._close_window(alarm, end, now)
            await self._audit(alarm, window_date, AuditEventType.ALARM_ENTERED_ON_TIME, correlation_id)
        return entry
