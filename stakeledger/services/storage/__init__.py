"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
The ledger and goal stores run on SQL (or in memory for tests); the audit
trail can additionally be mirrored to Google Sheets.
"""

from stakeledger.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    GoalStorageInterface,
    LedgerStorageInterface,
    NotFoundError,
    StorageError,
    VersionConflict,
)
from stakeledger.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryGoalStorage,
    InMemoryLedgerStorage,
)
from stakeledger.services.storage.sql import (
    SqlDatabase,
    SqlGoalStorage,
    SqlLedgerStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "GoalStorageInterface",
    "LedgerStorageInterface",
    # Exceptions
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    "VersionConflict",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryGoalStorage",
    "InMemoryLedgerStorage",
    # SQL implementation
    "SqlDatabase",
    "SqlGoalStorage",
    "SqlLedgerStorage",
]
