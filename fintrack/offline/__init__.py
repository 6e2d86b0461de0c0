"""Client-side offline queue and replay."""

from fintrack.offline.client import OfflineAwareClient, SubmitReceipt
from fintrack.offline.queue import OfflineMutationQueue, ReplayReport
from fintrack.offline.state import LocalLedgerState
from fintrack.offline.store import InMemoryMutationStore, JsonFileMutationStore, MutationStore
from fintrack.offline.transport import (
    HttpMutationTransport,
    InProcessTransport,
    MutationTransport,
)

__all__ = [
    "HttpMutationTransport",
    "InMemoryMutationStore",
    "InProcessTransport",
    "JsonFileMutationStore",
    "LocalLedgerState",
    "MutationStore",
    "MutationTransport",
    "OfflineAwareClient",
    "OfflineMutationQueue",
    "ReplayReport",
    "SubmitReceipt",
]
