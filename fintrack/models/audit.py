"""
Audit Models for fintrack

Every orchestrated write, every compensation and every replay outcome
is recorded as an AuditEvent. Together with the correlation id this is
enough to reconstruct what was and wasn't committed when a multi-step
operation fails halfway.

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from fintrack.models.ledger import utcnow


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Orchestrated writes
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTIONS_DELETED = "transactions_deleted"
    PAIRED_TRANSACTION_CREATED = "paired_transaction_created"
    INSTALLMENTS_CREATED = "installments_created"
    RECURRING_SERIES_CREATED = "recurring_series_created"
    ACCOUNT_UPDATED = "account_updated"
    ACCOUNT_DELETED = "account_deleted"
    ACCOUNTS_IMPORTED = "accounts_imported"

    # Failure handling
    OPERATION_REJECTED = "operation_rejected"
    STEP_FAILED = "step_failed"
    COMPENSATION_COMPLETED = "compensation_completed"
    COMPENSATION_FAILED = "compensation_failed"

    # Ledger checks
    UNBALANCED_ENTRIES_DETECTED = "unbalanced_entries_detected"

    # Offline replay
    MUTATION_ENQUEUED = "mutation_enqueued"
    MUTATION_SYNCED = "mutation_synced"
    MUTATION_RETRY_SCHEDULED = "mutation_retry_scheduled"
    MUTATION_FAILED = "mutation_failed"
    DUPLICATE_MUTATION_IGNORED = "duplicate_mutation_ignored"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    One line of the ledger's audit trail.

    Events of a single orchestrated operation share a correlation id;
    ``operation`` names the ledger operation (``pay_bill``, ``transfer``,
    ...) when the event belongs to one.
    """

    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="UTC time the event was recorded"
    )
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    operation: Optional[str] = Field(
        default=None,
        description="Ledger operation the event belongs to"
    )
    # 'transaction', 'account' or 'mutation'
    entity_type: Optional[str] = None
    entity_id: Optional[UUID] = None
    correlation_id: Optional[UUID] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="True for writes a user asked for, False for repairs and replay bookkeeping"
    )

    def to_log_dict(self) -> dict:
        """Flat JSON-safe dict for structlog; unset optionals are dropped."""
        return self.model_dump(mode="json", exclude_none=True)


def _ids(values: list[UUID]) -> list[str]:
    return [str(v) for v in values]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transaction_created(tx_id, account_id, amount, cid)
        event = AuditEventBuilder.compensation_completed("pay_bill", ids, cid)
    """

    @staticmethod
    def transaction_created(
        transaction_id: UUID,
        account_id: UUID,
        amount: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_CREATED,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Transaction created on account {account_id}",
            details={
                "account_id": str(account_id),
                "amount": amount,
            },
            is_user_action=True,
        )

    @staticmethod
    def transaction_updated(
        transaction_ids: list[UUID],
        scope: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_UPDATED,
            entity_type="transaction",
            entity_id=transaction_ids[0] if transaction_ids else None,
            correlation_id=correlation_id,
            description=f"{len(transaction_ids)} transaction(s) updated (scope: {scope})",
            details={
                "transaction_ids": _ids(transaction_ids),
                "scope": scope,
            },
            is_user_action=True,
        )

    @staticmethod
    def transactions_deleted(
        transaction_ids: list[UUID],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTIONS_DELETED,
            entity_type="transaction",
            entity_id=transaction_ids[0] if transaction_ids else None,
            correlation_id=correlation_id,
            description=f"{len(transaction_ids)} transaction(s) deleted",
            details={"transaction_ids": _ids(transaction_ids)},
            is_user_action=True,
        )

    @staticmethod
    def paired_transaction_created(
        operation: str,
        outflow_id: UUID,
        inflow_id: UUID,
        amount: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAIRED_TRANSACTION_CREATED,
            entity_type="transaction",
            entity_id=outflow_id,
            correlation_id=correlation_id,
            description=f"{operation}: linked pair created for {amount}",
            operation=operation,
            details={
                "outflow_id": str(outflow_id),
                "inflow_id": str(inflow_id),
                "amount": amount,
            },
            is_user_action=True,
        )

    @staticmethod
    def series_created(
        event_type: AuditEventType,
        parent_id: UUID,
        created_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            entity_type="transaction",
            entity_id=parent_id,
            correlation_id=correlation_id,
            description=f"Series created with {created_count} transaction(s)",
            details={"created_count": created_count},
            is_user_action=True,
        )

    @staticmethod
    def account_changed(
        event_type: AuditEventType,
        account_ids: list[UUID],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            entity_type="account",
            entity_id=account_ids[0] if account_ids else None,
            correlation_id=correlation_id,
            description=f"{event_type.value.replace('_', ' ').capitalize()}: {len(account_ids)} account(s)",
            details={"account_ids": _ids(account_ids)},
            is_user_action=True,
        )

    @staticmethod
    def operation_rejected(
        operation: str,
        reason: Optional[str],
        message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OPERATION_REJECTED,
            severity=AuditSeverity.WARNING,
            correlation_id=correlation_id,
            description=f"{operation} rejected: {reason or 'invalid'}",
            operation=operation,
            error_message=message,
            details={"reason": reason},
        )

    @staticmethod
    def step_failed(
        operation: str,
        step: str,
        error_message: str,
        committed_ids: list[UUID],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STEP_FAILED,
            severity=AuditSeverity.ERROR,
            correlation_id=correlation_id,
            description=f"{operation}: step '{step}' failed",
            error_message=error_message,
            operation=operation,
            details={
                "step": step,
                "committed_ids": _ids(committed_ids),
            },
        )

    @staticmethod
    def compensation_completed(
        operation: str,
        undone_steps: list[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COMPENSATION_COMPLETED,
            severity=AuditSeverity.WARNING,
            correlation_id=correlation_id,
            description=f"{operation}: {len(undone_steps)} step(s) compensated",
            operation=operation,
            details={"undone_steps": undone_steps},
        )

    @staticmethod
    def compensation_failed(
        operation: str,
        step: str,
        error_message: str,
        committed_ids: list[UUID],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COMPENSATION_FAILED,
            severity=AuditSeverity.CRITICAL,
            correlation_id=correlation_id,
            description=f"{operation}: compensation of '{step}' failed, state is inconsistent",
            error_message=error_message,
            operation=operation,
            details={
                "step": step,
                "committed_ids": _ids(committed_ids),
            },
        )

    @staticmethod
    def unbalanced_entries(
        transaction_id: Optional[UUID],
        total_debits: int,
        total_credits: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.UNBALANCED_ENTRIES_DETECTED,
            severity=AuditSeverity.WARNING,
            entity_type="transaction",
            entity_id=transaction_id,
            description="Unbalanced journal entries detected",
            details={
                "total_debits": total_debits,
                "total_credits": total_credits,
                "difference": abs(total_debits - total_credits),
            },
        )

    @staticmethod
    def mutation_event(
        event_type: AuditEventType,
        mutation_id: str,
        kind: str,
        attempts: int,
        error_message: Optional[str] = None,
    ) -> AuditEvent:
        severity = {
            AuditEventType.MUTATION_FAILED: AuditSeverity.ERROR,
            AuditEventType.MUTATION_RETRY_SCHEDULED: AuditSeverity.WARNING,
        }.get(event_type, AuditSeverity.INFO)
        return AuditEvent(
            event_type=event_type,
            severity=severity,
            entity_type="mutation",
            description=f"Offline mutation {kind} ({mutation_id}): {event_type.value}",
            operation=kind,
            error_message=error_message,
            details={
                "mutation_id": mutation_id,
                "kind": kind,
                "attempts": attempts,
            },
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
