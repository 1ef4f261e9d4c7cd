"""Services package."""

from stakeledger.services.storage import (
    AuditStorageInterface,
    DuplicateError,
    GoalStorageInterface,
    InMemoryAuditStorage,
    InMemoryGoalStorage,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
    NotFoundError,
    SqlDatabase,
    SqlGoalStorage,
    SqlLedgerStorage,
    StorageError,
    VersionConflict,
)

__all__ = [
    "AuditStorageInterface",
    "DuplicateError",
    "GoalStorageInterface",
    "InMemoryAuditStorage",
    "InMemoryGoalStorage",
    "InMemoryLedgerStorage",
    "LedgerStorageInterface",
    "NotFoundError",
    "SqlDatabase",
    "SqlGoalStorage",
    "SqlLedgerStorage",
    "StorageError",
    "VersionConflict",
]
