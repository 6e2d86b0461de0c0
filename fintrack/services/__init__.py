"""Services package."""

from fintrack.services.storage import (
    AuditStorageInterface,
    ChartOfAccountsLookup,
    DuplicateError,
    IdempotencyStorageInterface,
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
    NotFoundError,
    PeriodLockChecker,
    StorageError,
    StorageUnavailableError,
)

__all__ = [
    "AuditStorageInterface",
    "ChartOfAccountsLookup",
    "DuplicateError",
    "IdempotencyStorageInterface",
    "InMemoryAuditStorage",
    "InMemoryLedgerStorage",
    "LedgerStorageInterface",
    "NotFoundError",
    "PeriodLockChecker",
    "StorageError",
    "StorageUnavailableError",
]
