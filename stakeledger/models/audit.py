"""
Audit Models for Stake Ledger

Every settlement decision is logged for audit purposes.
This provides:
1. Traceability from a balance change back to the goal/alarm that caused it
2. Debugging information when a settlement is rejected or retried
3. A record of attempts that never reached the ledger (rejections, conflicts)

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
The ledger itself is the financial record; the audit log explains it.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from stakeledger.models.ledger import LedgerEntry, utc_now


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every step of a settlement flow has its own event type.
    """
    # Accounts
    ACCOUNT_OPENED = "account_opened"

    # Balance guard
    SETTLEMENT_COMMITTED = "settlement_committed"
    SETTLEMENT_REPLAYED = "settlement_replayed"
    SETTLEMENT_REJECTED = "settlement_rejected"
    SETTLEMENT_CONFLICT = "settlement_conflict"
    SETTLEMENT_EXHAUSTED = "settlement_exhausted"

    # Goals
    GOAL_CREATED = "goal_created"
    GOAL_RESOLVED = "goal_resolved"
    GOAL_RESOLUTION_REJECTED = "goal_resolution_rejected"
    VERIFICATION_SUBMITTED = "verification_submitted"
    VERIFICATION_REVIEWED = "verification_reviewed"

    # Collaboration
    COLLABORATION_JOINED = "collaboration_joined"
    COLLABORATION_SETTLED = "collaboration_settled"
    COLLABORATION_PARTIAL = "collaboration_partial"

    # Alarms
    ALARM_CREATED = "alarm_created"
    ALARM_ENTERED_ON_TIME = "alarm_entered_on_time"
    ALARM_CODE_REJECTED = "alarm_code_rejected"
    ALARM_MISSED = "alarm_missed"

    # Tasks
    TASK_COMPLETED = "task_completed"

    # Reconciliation
    RECONCILIATION_FAILED = "reconciliation_failed"

    # System events
    SYSTEM_ERROR = "system_error"
    STORE_UNAVAILABLE = "store_unavailable"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'account', 'goal', 'alarm')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all settlements of one goal resolution)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_code, error_message]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_code or "",
            self.error_message or "",
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.settlement_committed(entry, correlation_id)
        event = AuditEventBuilder.goal_resolved(goal_id, "failed", correlation_id)
    """

    @staticmethod
    def account_opened(account_id: UUID, correlation_id: Optional[UUID] = None) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCOUNT_OPENED,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description="Account opened",
        )

    @staticmethod
    def settlement_committed(
        entry: LedgerEntry,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_COMMITTED,
            entity_type="account",
            entity_id=entry.account_id,
            correlation_id=correlation_id,
            description=f"{entry.kind.value.capitalize()} of {entry.amount} settled",
            details=entry.to_log_dict(),
        )

    @staticmethod
    def settlement_replayed(
        entry: LedgerEntry,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_REPLAYED,
            entity_type="account",
            entity_id=entry.account_id,
            correlation_id=correlation_id,
            description=f"Settlement already recorded for key {entry.idempotency_key}",
            details=entry.to_log_dict(),
        )

    @staticmethod
    def settlement_rejected(
        account_id: UUID,
        amount: str,
        kind: str,
        error_code: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"{kind.capitalize()} of {amount} rejected",
            details={
                "amount": amount,
                "kind": kind,
            },
            error_code=error_code,
            error_message=error_message,
        )

    @staticmethod
    def settlement_conflict(
        account_id: UUID,
        attempt: int,
        expected_version: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_CONFLICT,
            severity=AuditSeverity.DEBUG,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Version conflict on attempt {attempt}",
            details={
                "attempt": attempt,
                "expected_version": expected_version,
            },
        )

    @staticmethod
    def settlement_exhausted(
        account_id: UUID,
        attempts: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_EXHAUSTED,
            severity=AuditSeverity.ERROR,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Settlement abandoned after {attempts} conflicting attempts",
            details={"attempts": attempts},
            error_code="concurrent_update_exhausted",
        )

    @staticmethod
    def goal_created(
        goal_id: UUID,
        owner_id: UUID,
        stake_amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GOAL_CREATED,
            entity_type="goal",
            entity_id=goal_id,
            correlation_id=correlation_id,
            description=f"Goal created with stake {stake_amount}",
            details={
                "owner_id": str(owner_id),
                "stake_amount": stake_amount,
            },
        )

    @staticmethod
    def goal_resolved(
        goal_id: UUID,
        outcome: str,
        collaborator_count: int,
        failed_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GOAL_RESOLVED,
            severity=AuditSeverity.WARNING if failed_count else AuditSeverity.INFO,
            entity_type="goal",
            entity_id=goal_id,
            correlation_id=correlation_id,
            description=f"Goal resolved as {outcome}",
            details={
                "outcome": outcome,
                "collaborators": collaborator_count,
                "failed_collaborators": failed_count,
            },
        )

    @staticmethod
    def goal_resolution_rejected(
        goal_id: UUID,
        requested: str,
        error_code: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GOAL_RESOLUTION_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="goal",
            entity_id=goal_id,
            correlation_id=correlation_id,
            description=f"Transition to {requested} rejected",
            details={"requested": requested},
            error_code=error_code,
            error_message=error_message,
        )

    @staticmethod
    def verification_submitted(
        verification_id: UUID,
        goal_id: UUID,
        verification_type: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VERIFICATION_SUBMITTED,
            entity_type="verification",
            entity_id=verification_id,
            correlation_id=correlation_id,
            description=f"{verification_type.capitalize()} verification submitted",
            details={
                "goal_id": str(goal_id),
                "verification_type": verification_type,
            },
        )

    @staticmethod
    def verification_reviewed(
        verification_id: UUID,
        reviewer_id: UUID,
        approved: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VERIFICATION_REVIEWED,
            entity_type="verification",
            entity_id=verification_id,
            correlation_id=correlation_id,
            description="Verification approved" if approved else "Verification rejected",
            details={
                "reviewer_id": str(reviewer_id),
                "approved": approved,
            },
        )

    @staticmethod
    def collaboration_joined(
        collaboration_id: UUID,
        goal_id: UUID,
        will_earn_if_fails: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COLLABORATION_JOINED,
            entity_type="collaboration",
            entity_id=collaboration_id,
            correlation_id=correlation_id,
            description="Collaborator joined goal",
            details={
                "goal_id": str(goal_id),
                "will_earn_if_fails": will_earn_if_fails,
            },
        )

    @staticmethod
    def collaboration_settled(
        goal_id: UUID,
        outcome: str,
        settled: int,
        failed_ids: list[UUID],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        partial = bool(failed_ids)
        return AuditEvent(
            event_type=(
                AuditEventType.COLLABORATION_PARTIAL
                if partial
                else AuditEventType.COLLABORATION_SETTLED
            ),
            severity=AuditSeverity.WARNING if partial else AuditSeverity.INFO,
            entity_type="goal",
            entity_id=goal_id,
            correlation_id=correlation_id,
            description=f"Collaborators settled on {outcome}: {settled} ok, {len(failed_ids)} pending",
            details={
                "outcome": outcome,
                "settled": settled,
                "pending": [str(i) for i in failed_ids],
            },
        )

    @staticmethod
    def alarm_created(alarm_id: UUID, user_id: UUID, correlation_id: Optional[UUID] = None) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ALARM_CREATED,
            entity_type="alarm",
            entity_id=alarm_id,
            correlation_id=correlation_id,
            description="Alarm scheduled",
            details={"user_id": str(user_id)},
        )

    @staticmethod
    def alarm_evaluated(
        alarm_id: UUID,
        window_date: str,
        event_type: AuditEventType,
        correlation_id: Optional[UUID] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        severity = (
            AuditSeverity.WARNING
            if event_type in (AuditEventType.ALARM_MISSED, AuditEventType.ALARM_CODE_REJECTED)
            else AuditSeverity.INFO
        )
        return AuditEvent(
            event_type=event_type,
            severity=severity,
            entity_type="alarm",
            entity_id=alarm_id,
            correlation_id=correlation_id,
            description=f"Alarm window {window_date}: {event_type.value.replace('alarm_', '').replace('_', ' ')}",
            details={"window_date": window_date, **(details or {})},
        )

    @staticmethod
    def task_completed(
        task_id: UUID,
        reward_amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TASK_COMPLETED,
            entity_type="task",
            entity_id=task_id,
            correlation_id=correlation_id,
            description=f"Task completed, reward {reward_amount}",
            details={"reward_amount": reward_amount},
        )

    @staticmethod
    def reconciliation_failed(
        account_id: UUID,
        issues: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECONCILIATION_FAILED,
            severity=AuditSeverity.CRITICAL,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Ledger replay found {len(issues)} issue(s)",
            details={"issues": issues},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def store_unavailable(
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STORE_UNAVAILABLE,
            severity=AuditSeverity.ERROR,
            description=f"Storage unavailable during {operation}",
            error_code="store_unavailable",
            error_message=error_message,
            details={"operation": operation},
            correlation_id=correlation_id,
        )
