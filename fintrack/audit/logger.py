"""
Audit Logger

DESIGN DECISION: Every orchestrated write, compensation and replay
outcome is logged. When a multi-step operation fails halfway the audit
trail is what tells an operator which identities were committed and
whether compensation restored a clean state.

The audit logger:
- Is async so Sheets-backed persistence can be awaited in line
- Gracefully handles failures (a failed audit write never fails the
  ledger operation that produced it)
- Supports correlation IDs to trace every step of one operation
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from fintrack.models.audit import AuditEvent, AuditEventBuilder, AuditEventType, AuditSeverity
from fintrack.services.storage.interface import AuditStorageInterface


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
    Writes ledger audit events to the structlog stream and, optionally,
    to an AuditStorageInterface backend.

    One helper per event keeps call sites in the orchestrator and the
    offline queue to a single line.
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        self._storage = storage
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Record an event locally and, when storage is configured, persist it.

        Returns False only when the storage append failed. A failed
        append is logged and swallowed so the ledger write that produced
        the event is not reported as failed.
        """
        emit = {
            AuditSeverity.CRITICAL: self._logger.critical,
            AuditSeverity.ERROR: self._logger.error,
            AuditSeverity.WARNING: self._logger.warning,
            AuditSeverity.DEBUG: self._logger.debug,
        }.get(event.severity, self._logger.info)
        emit("audit_event", **event.to_log_dict())

        if self._storage is None:
            return True
        try:
            return await self._storage.append_event(event)
        except Exception as e:
            self._logger.error(
                "audit_storage_failed",
                error=str(e),
                event_id=str(event.event_id),
                event_type=event.event_type.value,
            )
            return False

    async def log_transaction_created(
        self,
        transaction_id: UUID,
        account_id: UUID,
        amount: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_created(
            transaction_id=transaction_id,
            account_id=account_id,
            amount=amount,
            correlation_id=correlation_id,
        ))

    async def log_transactions_updated(
        self,
        transaction_ids: list[UUID],
        scope: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_updated(
            transaction_ids=transaction_ids,
            scope=scope,
            correlation_id=correlation_id,
        ))

    async def log_transactions_deleted(
        self,
        transaction_ids: list[UUID],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.transactions_deleted(
            transaction_ids=transaction_ids,
            correlation_id=correlation_id,
        ))

    async def log_paired_transaction(
        self,
        operation: str,
        outflow_id: UUID,
        inflow_id: UUID,
        amount: int,
        correlation_id: UUID,
    ) -> None:
        """Log a transfer or bill payment."""
        await self.log(AuditEventBuilder.paired_transaction_created(
            operation=operation,
            outflow_id=outflow_id,
            inflow_id=inflow_id,
            amount=amount,
            correlation_id=correlation_id,
        ))

    async def log_series_created(
        self,
        recurring: bool,
        parent_id: UUID,
        created_count: int,
        correlation_id: UUID,
    ) -> None:
        """Log an installment or recurring series."""
        event_type = (
            AuditEventType.RECURRING_SERIES_CREATED if recurring
            else AuditEventType.INSTALLMENTS_CREATED
        )
        await self.log(AuditEventBuilder.series_created(
            event_type=event_type,
            parent_id=parent_id,
            created_count=created_count,
            correlation_id=correlation_id,
        ))

    async def log_account_change(
        self,
        event_type: AuditEventType,
        account_ids: list[UUID],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.account_changed(
            event_type=event_type,
            account_ids=account_ids,
            correlation_id=correlation_id,
        ))

    async def log_rejected(
        self,
        operation: str,
        reason: Optional[str],
        message: str,
        correlation_id: UUID,
    ) -> None:
        """Log a request refused before any write."""
        await self.log(AuditEventBuilder.operation_rejected(
            operation=operation,
            reason=reason,
            message=message,
            correlation_id=correlation_id,
        ))

    async def log_step_failed(
        self,
        operation: str,
        step: str,
        error_message: str,
        committed_ids: list[UUID],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.step_failed(
            operation=operation,
            step=step,
            error_message=error_message,
            committed_ids=committed_ids,
            correlation_id=correlation_id,
        ))

    async def log_compensated(
        self,
        operation: str,
        undone_steps: list[str],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.compensation_completed(
            operation=operation,
            undone_steps=undone_steps,
            correlation_id=correlation_id,
        ))

    async def log_compensation_failed(
        self,
        operation: str,
        step: str,
        error_message: str,
        committed_ids: list[UUID],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.compensation_failed(
            operation=operation,
            step=step,
            error_message=error_message,
            committed_ids=committed_ids,
            correlation_id=correlation_id,
        ))

    async def log_unbalanced_entries(
        self,
        transaction_id: Optional[UUID],
        total_debits: int,
        total_credits: int,
    ) -> None:
        await self.log(AuditEventBuilder.unbalanced_entries(
            transaction_id=transaction_id,
            total_debits=total_debits,
            total_credits=total_credits,
        ))

    async def log_mutation(
        self,
        event_type: AuditEventType,
        mutation_id: str,
        kind: str,
        attempts: int,
        error_message: Optional[str] = None,
    ) -> None:
        """Log an offline queue transition."""
        await self.log(AuditEventBuilder.mutation_event(
            event_type=event_type,
            mutation_id=mutation_id,
            kind=kind,
            attempts=attempts,
            error_message=error_message,
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

    Use this at the start of an orchestrated operation and pass it
    through every step and compensation of that operation.
    """
    return uuid4()
