"""
Online/Offline Routing

The client-side entry point for every write. Online, a write goes
straight to the server; offline, or when the server turns out to be
unreachable, it is queued and the caller gets a "will sync later"
receipt instead of an error. Rejections (validation, limits, locked
periods) are never queued: they propagate so the user sees them at once.
"""

from typing import Any, Optional

import structlog
from pydantic import BaseModel

from fintrack.errors import LedgerError, error_from_dict
from fintrack.models.mutations import MutationKind, PendingMutation, build_mutation
from fintrack.offline.queue import OfflineMutationQueue, ReplayReport
from fintrack.offline.transport import MutationTransport

logger = structlog.get_logger(__name__)

SYNC_LATER_MESSAGE = "Saved offline. It will sync when you are back online."


class SubmitReceipt(BaseModel):
    """Outcome of one submitted write."""

    mutation_id: str
    operation: str
    queued: bool
    response: Optional[dict[str, Any]] = None
    message: Optional[str] = None


class OfflineAwareClient:
    """Sends writes directly when online and queues them otherwise."""

    def __init__(
        self,
        queue: OfflineMutationQueue,
        transport: MutationTransport,
        online: bool = True,
    ):
        self._queue = queue
        self._transport = transport
        self._online = online

    @property
    def online(self) -> bool:
        return self._online

    @property
    def queue(self) -> OfflineMutationQueue:
        return self._queue

    def go_offline(self) -> None:
        if self._online:
            logger.info("client_offline")
        self._online = False

    async def go_online(self) -> ReplayReport:
        """Mark the client online and replay whatever was queued."""
        self._online = True
        logger.info("client_online", pending=self._queue.pending_count)
        return await self._queue.replay()

    async def submit(
        self,
        kind: MutationKind,
        data: Any,
        idempotency_key: Optional[str] = None,
    ) -> SubmitReceipt:
        """
        Submit one write.

        Args:
            kind: Operation to run
            data: Request payload (model or dict)
            idempotency_key: Reuse a key to make a user retry a no-op

        Raises:
            pydantic.ValidationError: If ``data`` does not match ``kind``
            LedgerError: If the server rejected the write
        """
        mutation = build_mutation(kind, data, idempotency_key)

        if not self._online:
            return await self._enqueue(mutation)

        if self._queue.pending_count:
            # Earlier offline writes must reach the server first
            await self._queue.enqueue(mutation)
            report = await self._queue.replay()
            if mutation.id in report.synced:
                return SubmitReceipt(
                    mutation_id=mutation.id,
                    operation=mutation.type,
                    queued=False,
                    response=report.responses[mutation.id],
                )
            rejection = report.errors.get(mutation.id)
            if rejection is not None and not rejection.get("retryable"):
                # Rejected on its first send: report it, do not keep it queued
                await self._queue.discard(mutation.id)
                raise error_from_dict(rejection)
            if report.halted_on is not None:
                self.go_offline()
            return SubmitReceipt(
                mutation_id=mutation.id,
                operation=mutation.type,
                queued=True,
                message=SYNC_LATER_MESSAGE,
            )

        try:
            response = await self._transport.send(mutation)
        except LedgerError as e:
            if not e.retryable:
                raise
            logger.warning("send_failed_queueing", mutation_id=mutation.id, error=e.message)
            self.go_offline()
            return await self._enqueue(mutation)

        self._queue.state.apply_response(mutation, response)
        return SubmitReceipt(
            mutation_id=mutation.id,
            operation=mutation.type,
            queued=False,
            response=response,
        )

    async def _enqueue(self, mutation: PendingMutation) -> SubmitReceipt:
        entry = await self._queue.enqueue(mutation)
        return SubmitReceipt(
            mutation_id=entry.id,
            operation=entry.type,
            queued=True,
            message=SYNC_LATER_MESSAGE,
        )
