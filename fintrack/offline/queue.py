"""
Offline Mutation Queue

Holds the writes a client issued while offline and replays them, in
order, once the client is back online.

Guarantees:
- FIFO: entries replay strictly in enqueue order. A transient failure
  halts replay, so nothing queued later overtakes it.
- Idempotency: every entry carries a client-generated key that the
  server deduplicates on. Enqueueing an existing key is a no-op.
- Single writer: one replay at a time; a concurrent call returns an
  empty report instead of waiting.
- Durability: the queue is persisted after every state change.

DESIGN DECISION: The queue is an explicit object with injected store,
transport and local state. There is no module-level singleton.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from fintrack.audit import AuditLogger
from fintrack.config import OfflineQueueSettings, get_settings
from fintrack.errors import ConstraintError, LedgerError, to_ledger_error
from fintrack.models.audit import AuditEventType
from fintrack.models.ledger import utcnow
from fintrack.models.mutations import MutationState, PendingMutation
from fintrack.offline.state import LocalLedgerState
from fintrack.offline.store import MutationStore
from fintrack.offline.transport import MutationTransport

logger = structlog.get_logger(__name__)


class ReplayReport(BaseModel):
    """What one replay pass did."""

    synced: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    responses: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Server response of every synced entry, by mutation id"
    )
    errors: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Error body of every entry failed in this pass, by mutation id"
    )
    halted_on: Optional[str] = Field(
        default=None,
        description="Entry that stopped the pass (transient failure or backoff)"
    )
    already_running: bool = False

    @property
    def remaining_blocked(self) -> bool:
        return self.halted_on is not None


class OfflineMutationQueue:
    """Durable FIFO of pending mutations with idempotent replay."""

    def __init__(
        self,
        store: MutationStore,
        transport: MutationTransport,
        state: Optional[LocalLedgerState] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[OfflineQueueSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._transport = transport
        self.state = state or LocalLedgerState()
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().offline_queue
        self._clock = clock or utcnow
        self._lock = asyncio.Lock()
        self._in_flight: Optional[str] = None
        self._entries: list[PendingMutation] = store.load()

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def entries(self) -> list[PendingMutation]:
        """Every queued entry, failed ones included, in replay order."""
        return [m.model_copy(deep=True) for m in self._ordered()]

    def get(self, mutation_id: str) -> Optional[PendingMutation]:
        entry = self._find(mutation_id)
        return entry.model_copy(deep=True) if entry else None

    @property
    def pending_count(self) -> int:
        return sum(1 for m in self._entries if m.state == MutationState.PENDING)

    @property
    def in_flight(self) -> Optional[str]:
        return self._in_flight

    def _ordered(self) -> list[PendingMutation]:
        # Enqueue order; created_at is build time, not enqueue time
        return list(self._entries)

    def _find(self, mutation_id: str) -> Optional[PendingMutation]:
        return next((m for m in self._entries if m.id == mutation_id), None)

    def _persist(self) -> None:
        self._store.save(self._entries)

    # -------------------------------------------------------------------------
    # Enqueue / cancel / retry
    # -------------------------------------------------------------------------

    async def enqueue(self, mutation: PendingMutation) -> PendingMutation:
        """
        Queue a mutation and persist the queue. Never touches the network.

        Returns:
            The queued entry. If an entry with the same key is already
            queued, that entry is returned unchanged.
        """
        existing = self._find(mutation.id)
        if existing is not None:
            logger.info("duplicate_mutation_ignored", mutation_id=mutation.id, operation=mutation.type)
            await self._audit.log_mutation(
                AuditEventType.DUPLICATE_MUTATION_IGNORED, mutation.id, mutation.type, existing.attempts
            )
            return existing.model_copy(deep=True)

        entry = mutation.model_copy(deep=True)
        self._entries.append(entry)
        self._persist()
        logger.info("mutation_enqueued", mutation_id=entry.id, operation=entry.type)
        await self._audit.log_mutation(
            AuditEventType.MUTATION_ENQUEUED, entry.id, entry.type, entry.attempts
        )
        return entry.model_copy(deep=True)

    async def cancel(self, mutation_id: str) -> PendingMutation:
        """
        Remove a pending entry that has not started replay.

        Raises:
            ConstraintError: If the entry is unknown, in flight or not pending
        """
        entry = self._find(mutation_id)
        if entry is None:
            raise ConstraintError(
                f"Queued mutation not found: {mutation_id}",
                reason="not_found",
                details={"mutation_id": mutation_id},
            )
        if mutation_id == self._in_flight:
            raise ConstraintError(
                "Mutation is being replayed and can no longer be cancelled",
                reason="mutation_in_flight",
                details={"mutation_id": mutation_id},
            )
        if entry.state != MutationState.PENDING:
            raise ConstraintError(
                f"Only pending mutations can be cancelled (state: {entry.state.value})",
                reason="mutation_not_pending",
                details={"mutation_id": mutation_id, "state": entry.state.value},
            )
        self._entries.remove(entry)
        self._persist()
        logger.info("mutation_cancelled", mutation_id=mutation_id, operation=entry.type)
        return entry

    async def retry_failed(self, mutation_id: str) -> PendingMutation:
        """
        Put a failed entry back in line under the same key.

        Raises:
            ConstraintError: If the entry is unknown or not failed
        """
        entry = self._find(mutation_id)
        if entry is None or entry.state != MutationState.FAILED:
            raise ConstraintError(
                f"No failed mutation with id {mutation_id}",
                reason="not_found" if entry is None else "mutation_not_failed",
                details={"mutation_id": mutation_id},
            )
        entry.state = MutationState.PENDING
        entry.attempts = 0
        entry.last_error = None
        entry.next_attempt_at = None
        self._persist()
        logger.info("mutation_retry_requested", mutation_id=mutation_id)
        return entry.model_copy(deep=True)

    async def discard(self, mutation_id: str) -> PendingMutation:
        """
        Drop a failed entry the user gave up on.

        Raises:
            ConstraintError: If the entry is unknown or not failed
        """
        entry = self._find(mutation_id)
        if entry is None or entry.state != MutationState.FAILED:
            raise ConstraintError(
                f"No failed mutation with id {mutation_id}",
                reason="not_found" if entry is None else "mutation_not_failed",
                details={"mutation_id": mutation_id},
            )
        self._entries.remove(entry)
        self._persist()
        logger.info("mutation_discarded", mutation_id=mutation_id, operation=entry.type)
        return entry

    # -------------------------------------------------------------------------
    # Replay
    # -------------------------------------------------------------------------

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait after the ``attempts``-th transient failure."""
        delay = self._settings.backoff_base_seconds * (2 ** max(attempts - 1, 0))
        return min(delay, self._settings.backoff_max_seconds)

    async def replay(self) -> ReplayReport:
        """
        Send every pending entry to the server, oldest first.

        Success removes the entry and folds the server response into the
        local state. A transient failure schedules a retry and halts the
        pass, unless attempts are exhausted, in which case the entry is
        failed and the pass continues. Any other rejection fails the
        entry and the pass continues.
        """
        if self._lock.locked():
            return ReplayReport(already_running=True)

        async with self._lock:
            report = ReplayReport()
            for entry in self._ordered():
                if entry.state != MutationState.PENDING:
                    continue
                if entry.next_attempt_at and entry.next_attempt_at > self._clock():
                    report.halted_on = entry.id
                    break
                if not await self._replay_entry(entry, report):
                    report.halted_on = entry.id
                    break

        logger.info(
            "replay_finished",
            synced=len(report.synced),
            failed=len(report.failed),
            halted_on=report.halted_on,
        )
        return report

    async def _replay_entry(self, entry: PendingMutation, report: ReplayReport) -> bool:
        """Run one entry to a terminal state. Returns False to halt replay."""
        self._in_flight = entry.id
        try:
            entry.remap_ids(self.state.id_map)
            entry.attempts += 1
            self._persist()

            try:
                response = await self._transport.send(entry)
            except Exception as error:
                return await self._handle_failure(entry, to_ledger_error(error), report)

            self._entries.remove(entry)
            self._persist()
            entry.state = MutationState.SYNCED
            report.synced.append(entry.id)
            report.responses[entry.id] = response
            logger.info(
                "mutation_synced",
                mutation_id=entry.id,
                operation=entry.type,
                attempts=entry.attempts,
            )
            await self._audit.log_mutation(
                AuditEventType.MUTATION_SYNCED, entry.id, entry.type, entry.attempts
            )
            self.state.apply_response(entry, response)
            return True
        finally:
            self._in_flight = None

    async def _handle_failure(
        self,
        entry: PendingMutation,
        error: Exception,
        report: ReplayReport,
    ) -> bool:
        retryable = isinstance(error, LedgerError) and error.retryable
        entry.last_error = str(error)

        if retryable and entry.attempts < self._settings.max_attempts:
            delay = self.backoff_delay(entry.attempts)
            entry.next_attempt_at = self._clock() + timedelta(seconds=delay)
            self._persist()
            logger.warning(
                "mutation_retry_scheduled",
                mutation_id=entry.id,
                operation=entry.type,
                attempts=entry.attempts,
                delay_seconds=delay,
                error=entry.last_error,
            )
            await self._audit.log_mutation(
                AuditEventType.MUTATION_RETRY_SCHEDULED,
                entry.id,
                entry.type,
                entry.attempts,
                entry.last_error,
            )
            return False

        if not isinstance(error, LedgerError):
            logger.error("mutation_replay_crashed", mutation_id=entry.id, error=str(error))
            await self._audit.log_error(
                "mutation_replay_crashed",
                str(error),
                details={"mutation_id": entry.id, "operation": entry.type},
            )
        entry.state = MutationState.FAILED
        entry.next_attempt_at = None
        self._persist()
        report.failed.append(entry.id)
        if isinstance(error, LedgerError):
            report.errors[entry.id] = error.to_dict()
        else:
            report.errors[entry.id] = LedgerError(entry.last_error, reason="internal_error").to_dict()
        logger.error(
            "mutation_failed",
            mutation_id=entry.id,
            operation=entry.type,
            attempts=entry.attempts,
            error=entry.last_error,
        )
        await self._audit.log_mutation(
            AuditEventType.MUTATION_FAILED,
            entry.id,
            entry.type,
            entry.attempts,
            entry.last_error,
        )
        return True
