"""
Storage Services Package

Provides abstract interfaces and concrete implementations for ledger
storage: an in-memory backend and Google Sheets.
"""

from fintrack.services.storage.interface import (
    AuditStorageInterface,
    ChartOfAccountsLookup,
    DuplicateError,
    IdempotencyStorageInterface,
    LedgerStorageInterface,
    NotFoundError,
    PeriodLockChecker,
    StorageError,
    StorageUnavailableError,
)
from fintrack.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
)
from fintrack.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "ChartOfAccountsLookup",
    "IdempotencyStorageInterface",
    "LedgerStorageInterface",
    "PeriodLockChecker",
    # Exceptions
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    "StorageUnavailableError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryLedgerStorage",
    # Google Sheets implementation
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsLedgerStorage",
]
