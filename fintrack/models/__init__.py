"""
Data Models Package

This package contains all Pydantic models used by the ledger engine.
All data flowing through the system must conform to these schemas.
"""

from fintrack.models.ledger import (
    Account,
    AccountBalance,
    AccountType,
    EditScope,
    EntryType,
    IdempotencyRecord,
    IdempotencyStatus,
    JournalEntry,
    LedgerAccount,
    LedgerCategory,
    LedgerValidationResult,
    PeriodLock,
    RecurrenceType,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from fintrack.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from fintrack.models.mutations import (
    MutationKind,
    MutationState,
    PendingMutation,
    build_mutation,
)

__all__ = [
    # Ledger models
    "Account",
    "AccountBalance",
    "AccountType",
    "EditScope",
    "EntryType",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "JournalEntry",
    "LedgerAccount",
    "LedgerCategory",
    "LedgerValidationResult",
    "PeriodLock",
    "RecurrenceType",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    # Offline mutations
    "MutationKind",
    "MutationState",
    "PendingMutation",
    "build_mutation",
]
