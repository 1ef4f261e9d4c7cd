"""
Audit Logger

DESIGN DECISION: Every settlement decision in the system is logged.
This provides:
1. Traceability from any balance change to its cause
2. A record of rejected and conflicting attempts the ledger never sees
3. Debugging capability for retries and partial settlements

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (a broken audit sink never fails a settlement)
- Supports correlation IDs to trace related events
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from stakeledger.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from stakeledger.models.ledger import LedgerEntry
from stakeledger.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An audit store, if one is configured (memory or Google Sheets)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("stakeledger.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity == AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_settlement_committed(
        self,
        entry: LedgerEntry,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a ledger entry that was just written."""
        await self.log(AuditEventBuilder.settlement_committed(entry, correlation_id))

    async def log_settlement_replayed(
        self,
        entry: LedgerEntry,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a retried settlement answered from an existing entry."""
        await self.log(AuditEventBuilder.settlement_replayed(entry, correlation_id))

    async def log_settlement_rejected(
        self,
        account_id: UUID,
        amount: str,
        kind: str,
        error_code: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.settlement_rejected(
            account_id=account_id,
            amount=amount,
            kind=kind,
            error_code=error_code,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_settlement_conflict(
        self,
        account_id: UUID,
        attempt: int,
        expected_version: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.settlement_conflict(
            account_id=account_id,
            attempt=attempt,
            expected_version=expected_version,
            correlation_id=correlation_id,
        ))

    async def log_settlement_exhausted(
        self,
        account_id: UUID,
        attempts: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.settlement_exhausted(
            account_id=account_id,
            attempts=attempts,
            correlation_id=correlation_id,
        ))

    async def log_goal_resolved(
        self,
        goal_id: UUID,
        outcome: str,
        collaborator_count: int,
        failed_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a goal's terminal transition and how its settlements went."""
        await self.log(AuditEventBuilder.goal_resolved(
            goal_id=goal_id,
            outcome=outcome,
            collaborator_count=collaborator_count,
            failed_count=failed_count,
            correlation_id=correlation_id,
        ))

    async def log_store_unavailable(
        self,
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.store_unavailable(
            operation=operation,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., resolving a goal).
    Pass it through all subsequent settlements.
    """
    return uuid4()
