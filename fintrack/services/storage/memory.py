"""
In-Memory Storage Implementation

Dict-backed implementation of every storage interface. Used by the test
suite and for local development without a spreadsheet.

Rows are copied on the way in and on the way out, so callers never hold
a reference to stored state and a mutated model must be written back
explicitly, exactly as with a remote backend.
"""

from datetime import date
from typing import Optional
from uuid import UUID

from fintrack.models.audit import AuditEvent
from fintrack.models.ledger import (
    Account,
    IdempotencyRecord,
    JournalEntry,
    LedgerAccount,
    PeriodLock,
    Transaction,
    utcnow,
)
from fintrack.services.storage.interface import (
    AuditStorageInterface,
    ChartOfAccountsLookup,
    DuplicateError,
    IdempotencyStorageInterface,
    LedgerStorageInterface,
    NotFoundError,
    PeriodLockChecker,
)


class InMemoryLedgerStorage(
    LedgerStorageInterface,
    IdempotencyStorageInterface,
    PeriodLockChecker,
    ChartOfAccountsLookup,
):
    """Single-process ledger storage."""

    def __init__(self):
        self.accounts: dict[UUID, Account] = {}
        self.transactions: dict[UUID, Transaction] = {}
        self.journal_entries: dict[UUID, JournalEntry] = {}
        self.ledger_accounts: dict[UUID, LedgerAccount] = {}
        self.period_locks: list[PeriodLock] = []
        self.idempotency: dict[tuple[UUID, str], IdempotencyRecord] = {}

    # -------------------------------------------------------------------------
    # Seeding helpers
    # -------------------------------------------------------------------------

    def add_ledger_account(self, ledger_account: LedgerAccount) -> LedgerAccount:
        self.ledger_accounts[ledger_account.id] = ledger_account.model_copy(deep=True)
        return ledger_account

    def add_period_lock(self, lock: PeriodLock) -> PeriodLock:
        self.period_locks.append(lock.model_copy(deep=True))
        return lock

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    async def get_account(self, account_id: UUID) -> Optional[Account]:
        account = self.accounts.get(account_id)
        return account.model_copy(deep=True) if account else None

    async def list_accounts(self, user_id: UUID) -> list[Account]:
        return [
            a.model_copy(deep=True)
            for a in self.accounts.values()
            if a.user_id == user_id
        ]

    async def insert_account(self, account: Account) -> Account:
        if account.id in self.accounts:
            raise DuplicateError(f"Account already exists: {account.id}")
        self.accounts[account.id] = account.model_copy(deep=True)
        return account.model_copy(deep=True)

    async def update_account(self, account: Account) -> Account:
        if account.id not in self.accounts:
            raise NotFoundError(f"Account not found: {account.id}")
        stored = account.model_copy(update={"updated_at": utcnow()}, deep=True)
        self.accounts[account.id] = stored
        return stored.model_copy(deep=True)

    async def delete_account(self, account_id: UUID) -> bool:
        return self.accounts.pop(account_id, None) is not None

    async def set_account_balance(self, account_id: UUID, balance: int) -> None:
        account = self.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        self.accounts[account_id] = account.model_copy(
            update={"balance": balance, "updated_at": utcnow()}
        )

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        tx = self.transactions.get(transaction_id)
        return tx.model_copy(deep=True) if tx else None

    async def list_transactions(
        self,
        user_id: Optional[UUID] = None,
        account_id: Optional[UUID] = None,
        parent_transaction_id: Optional[UUID] = None,
    ) -> list[Transaction]:
        rows = []
        for tx in self.transactions.values():
            if user_id and tx.user_id != user_id:
                continue
            if account_id and tx.account_id != account_id:
                continue
            if parent_transaction_id and tx.parent_transaction_id != parent_transaction_id:
                continue
            rows.append(tx.model_copy(deep=True))
        rows.sort(key=lambda t: (t.date, t.created_at))
        return rows

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        if transaction.id in self.transactions:
            raise DuplicateError(f"Transaction already exists: {transaction.id}")
        self.transactions[transaction.id] = transaction.model_copy(deep=True)
        return transaction.model_copy(deep=True)

    async def update_transaction(self, transaction: Transaction) -> Transaction:
        if transaction.id not in self.transactions:
            raise NotFoundError(f"Transaction not found: {transaction.id}")
        stored = transaction.model_copy(update={"updated_at": utcnow()}, deep=True)
        self.transactions[transaction.id] = stored
        return stored.model_copy(deep=True)

    async def delete_transaction(self, transaction_id: UUID) -> bool:
        return self.transactions.pop(transaction_id, None) is not None

    # -------------------------------------------------------------------------
    # Journal entries
    # -------------------------------------------------------------------------

    async def insert_journal_entries(
        self,
        entries: list[JournalEntry],
    ) -> list[JournalEntry]:
        for entry in entries:
            if entry.id in self.journal_entries:
                raise DuplicateError(f"Journal entry already exists: {entry.id}")
        for entry in entries:
            self.journal_entries[entry.id] = entry.model_copy(deep=True)
        return [e.model_copy(deep=True) for e in entries]

    async def list_journal_entries(
        self,
        user_id: Optional[UUID] = None,
        transaction_id: Optional[UUID] = None,
    ) -> list[JournalEntry]:
        return [
            e.model_copy(deep=True)
            for e in self.journal_entries.values()
            if (user_id is None or e.user_id == user_id)
            and (transaction_id is None or e.transaction_id == transaction_id)
        ]

    async def delete_journal_entries(
        self,
        transaction_id: UUID,
    ) -> list[JournalEntry]:
        deleted = [
            e for e in self.journal_entries.values()
            if e.transaction_id == transaction_id
        ]
        for entry in deleted:
            del self.journal_entries[entry.id]
        return deleted

    # -------------------------------------------------------------------------
    # Idempotency
    # -------------------------------------------------------------------------

    async def get_idempotency_record(
        self,
        user_id: UUID,
        key: str,
    ) -> Optional[IdempotencyRecord]:
        record = self.idempotency.get((user_id, key))
        return record.model_copy(deep=True) if record else None

    async def save_idempotency_record(self, record: IdempotencyRecord) -> None:
        self.idempotency[(record.user_id, record.key)] = record.model_copy(deep=True)

    async def delete_idempotency_record(self, user_id: UUID, key: str) -> bool:
        return self.idempotency.pop((user_id, key), None) is not None

    # -------------------------------------------------------------------------
    # Collaborators
    # -------------------------------------------------------------------------

    async def is_locked(self, user_id: UUID, day: date) -> bool:
        return any(
            lock.user_id == user_id and lock.covers(day)
            for lock in self.period_locks
        )

    async def list_ledger_accounts(self, user_id: UUID) -> list[LedgerAccount]:
        return [
            la.model_copy(deep=True)
            for la in self.ledger_accounts.values()
            if la.user_id == user_id
        ]


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self.events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return sorted(self.events, key=lambda e: e.timestamp, reverse=True)[:limit]
