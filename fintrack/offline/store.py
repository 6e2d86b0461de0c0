"""
Durable Queue Persistence

The offline queue is written to a single JSON file after every change,
so a queue survives process restarts and crashes between mutations.

DESIGN DECISION: Writes go to a temp file in the same directory which
is then moved over the old file with ``os.replace``. A crash mid-write
leaves either the old queue or the new queue on disk, never a torn file.

Records are written with ``exclude_unset``: a partial edit reloaded
after a restart still carries only the fields the user changed.
"""

import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from fintrack.models.mutations import PendingMutation, PendingMutationListAdapter
from fintrack.services.storage.interface import StorageError

logger = structlog.get_logger(__name__)


class MutationStore(ABC):
    """Persistence for the ordered list of queued mutations."""

    @abstractmethod
    def load(self) -> list[PendingMutation]:
        pass

    @abstractmethod
    def save(self, mutations: list[PendingMutation]) -> None:
        """Replace the persisted queue with ``mutations``."""
        pass


class InMemoryMutationStore(MutationStore):
    """Keeps the serialized queue in memory. Used by tests."""

    def __init__(self):
        self.raw: Optional[bytes] = None

    def load(self) -> list[PendingMutation]:
        if self.raw is None:
            return []
        return PendingMutationListAdapter.validate_json(self.raw)

    def save(self, mutations: list[PendingMutation]) -> None:
        self.raw = PendingMutationListAdapter.dump_json(mutations, exclude_unset=True)


class JsonFileMutationStore(MutationStore):
    """Queue persisted as a JSON array of mutation records."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> list[PendingMutation]:
        """
        Read the queue from disk.

        Returns:
            The queued mutations, or an empty list if no file exists yet

        Raises:
            StorageError: If the file exists but cannot be parsed
        """
        if not self.path.exists():
            return []
        raw = self.path.read_bytes()
        if not raw.strip():
            return []
        try:
            return PendingMutationListAdapter.validate_json(raw)
        except PydanticValidationError as e:
            logger.error("offline_queue_unreadable", path=str(self.path), error=str(e))
            raise StorageError(f"Offline queue file is corrupt: {self.path}") from e

    def save(self, mutations: list[PendingMutation]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = PendingMutationListAdapter.dump_json(mutations, indent=2, exclude_unset=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=".offline_queue_",
            suffix=".json",
            dir=self.path.parent,
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
