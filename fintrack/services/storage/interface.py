"""
Abstract Storage Interface

DESIGN DECISION: The orchestrator only sees these ABCs. The Google
Sheets backend and the in-memory backend used by tests and offline
development both implement every one of them.

The interface is intentionally row-level: every method is a single
read or a single write. There are no multi-row transactions here, so
atomicity of multi-step operations is the orchestrator's job.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Optional
from uuid import UUID

from fintrack.models.audit import AuditEvent
from fintrack.models.ledger import (
    Account,
    IdempotencyRecord,
    JournalEntry,
    LedgerAccount,
    Transaction,
)


class LedgerStorageInterface(ABC):
    """
    Abstract interface for accounts, transactions and journal entries.

    Reads by id are unscoped; the orchestrator checks ownership. Listing
    methods filter by owner.
    """

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_account(self, account_id: UUID) -> Optional[Account]:
        """
        Retrieve an account by its ID.

        Returns:
            The account if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_accounts(self, user_id: UUID) -> list[Account]:
        pass

    @abstractmethod
    async def insert_account(self, account: Account) -> Account:
        """
        Insert a new account.

        Raises:
            DuplicateError: If an account with this ID exists
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def update_account(self, account: Account) -> Account:
        """
        Replace an existing account row.

        Raises:
            NotFoundError: If the account doesn't exist
        """
        pass

    @abstractmethod
    async def delete_account(self, account_id: UUID) -> bool:
        """Delete an account. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def set_account_balance(self, account_id: UUID, balance: int) -> None:
        """
        Persist a recomputed balance.

        Only the balance recalculator calls this.

        Raises:
            NotFoundError: If the account doesn't exist
        """
        pass

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def list_transactions(
        self,
        user_id: Optional[UUID] = None,
        account_id: Optional[UUID] = None,
        parent_transaction_id: Optional[UUID] = None,
    ) -> list[Transaction]:
        """
        List transactions matching every given filter.

        Args:
            user_id: Owner filter
            account_id: Owning account filter
            parent_transaction_id: Rows pointing at this parent. Installment
                parents point at themselves, recurring parents do not

        Returns:
            Matching transactions ordered by date, then creation time
        """
        pass

    @abstractmethod
    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        """
        Insert a new transaction.

        Raises:
            DuplicateError: If a transaction with this ID exists
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def update_transaction(self, transaction: Transaction) -> Transaction:
        """
        Replace an existing transaction row.

        Raises:
            NotFoundError: If the transaction doesn't exist
        """
        pass

    @abstractmethod
    async def delete_transaction(self, transaction_id: UUID) -> bool:
        """Delete a transaction. Returns False if it did not exist."""
        pass

    # -------------------------------------------------------------------------
    # Journal entries
    # -------------------------------------------------------------------------

    @abstractmethod
    async def insert_journal_entries(
        self,
        entries: list[JournalEntry],
    ) -> list[JournalEntry]:
        """Insert a batch of journal entries."""
        pass

    @abstractmethod
    async def list_journal_entries(
        self,
        user_id: Optional[UUID] = None,
        transaction_id: Optional[UUID] = None,
    ) -> list[JournalEntry]:
        pass

    @abstractmethod
    async def delete_journal_entries(
        self,
        transaction_id: UUID,
    ) -> list[JournalEntry]:
        """
        Delete every entry attached to a transaction.

        Returns:
            The deleted entries, so a caller can restore them
        """
        pass


class IdempotencyStorageInterface(ABC):
    """Key reservations and stored responses, keyed by (user, key)."""

    @abstractmethod
    async def get_idempotency_record(
        self,
        user_id: UUID,
        key: str,
    ) -> Optional[IdempotencyRecord]:
        pass

    @abstractmethod
    async def save_idempotency_record(self, record: IdempotencyRecord) -> None:
        """Insert the record, or overwrite the one with the same (user, key)."""
        pass

    @abstractmethod
    async def delete_idempotency_record(self, user_id: UUID, key: str) -> bool:
        """Release a reservation. Returns False if there was none."""
        pass


class PeriodLockChecker(ABC):
    """Answers whether a date falls inside a closed accounting period."""

    @abstractmethod
    async def is_locked(self, user_id: UUID, day: date) -> bool:
        pass


class ChartOfAccountsLookup(ABC):
    """Read access to a user's chart of accounts."""

    @abstractmethod
    async def list_ledger_accounts(self, user_id: UUID) -> list[LedgerAccount]:
        pass


class AuditStorageInterface(ABC):
    """
    Persistent sink for AuditEvents. Append-only: events are never
    updated or removed.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Store one event.

        Returns:
            True once the event is durable
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events of one orchestrated operation.

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Newest events first, at most ``limit`` of them.
        """
        pass


class StorageError(Exception):
    """Raised by a storage backend for any failed read or write."""
    pass


class NotFoundError(StorageError):
    """No row with that id for that owner."""
    pass


class DuplicateError(StorageError):
    """A row with that id already exists."""
    pass


class StorageUnavailableError(StorageError):
    """Could not reach the storage backend. Safe to retry."""
    pass
