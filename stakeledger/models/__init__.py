"""
Data Models Package

This package contains all Pydantic models used by the Stake Ledger.
All data flowing through the engine must conform to these schemas.
"""

from stakeledger.models.ledger import (
    Account,
    EntityType,
    LedgerEntry,
    LedgerEntryDraft,
    ReconciliationIssue,
    ReconciliationReport,
    RelatedEntity,
    TransactionKind,
    from_minor_units,
    to_minor_units,
    to_money,
    utc_now,
)
from stakeledger.models.goal import (
    AlarmClock,
    AlarmLog,
    ApiEvidence,
    CollaborationOutcome,
    CollaborationSettlementResult,
    DocumentEvidence,
    Goal,
    GoalCollaboration,
    GoalDraft,
    GoalResolution,
    GoalStatus,
    GoalType,
    ManualEvidence,
    PhotoEvidence,
    PoolPolicy,
    Task,
    ValidationIssue,
    ValidationResult,
    Verification,
    VerificationType,
)
from stakeledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "Account",
    "EntityType",
    "LedgerEntry",
    "LedgerEntryDraft",
    "ReconciliationIssue",
    "ReconciliationReport",
    "RelatedEntity",
    "TransactionKind",
    "from_minor_units",
    "to_minor_units",
    "to_money",
    "utc_now",
    # Goal models
    "AlarmClock",
    "AlarmLog",
    "ApiEvidence",
    "CollaborationOutcome",
    "CollaborationSettlementResult",
    "DocumentEvidence",
    "Goal",
    "GoalCollaboration",
    "GoalDraft",
    "GoalResolution",
    "GoalStatus",
    "GoalType",
    "ManualEvidence",
    "PhotoEvidence",
    "PoolPolicy",
    "Task",
    "ValidationIssue",
    "ValidationResult",
    "Verification",
    "VerificationType",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
