"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets can back the ledger because:
1. Users can inspect accounts and journal entries directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)

TRADEOFFS:
- Not suitable for high-volume data (we're fine for personal use)
- No multi-row transactions (the orchestrator compensates instead)
- Limited query capabilities (we filter in Python)

Each model is stored as one row per entity in its own worksheet. Rows
are read by header name, so a column appended later does not break
older sheets. Quota and 5xx responses from the Sheets API surface as
StorageUnavailableError, which the ledger treats as retryable.
"""

import json
from datetime import date
from typing import Any, Optional, TypeVar
from uuid import UUID

import gspread
import structlog
from google.oauth2.service_account import Credentials
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fintrack.config import get_settings
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
    StorageError,
    StorageUnavailableError,
)


logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

ACCOUNT_COLUMNS = [
    "id", "user_id", "name", "type", "balance", "limit_amount",
    "closing_day", "due_day", "created_at", "updated_at",
]

TRANSACTION_COLUMNS = [
    "id", "user_id", "description", "amount", "date", "type", "status",
    "account_id", "category_id", "invoice_month", "invoice_month_overridden",
    "parent_transaction_id", "installments", "current_installment",
    "linked_transaction_id", "to_account_id", "is_recurring",
    "recurrence_type", "recurrence_end_date", "created_at", "updated_at",
]

JOURNAL_COLUMNS = [
    "id", "user_id", "transaction_id", "ledger_account_id", "entry_type",
    "amount", "description", "entry_date", "created_at",
]

CHART_COLUMNS = ["id", "user_id", "code", "name", "category"]

PERIOD_LOCK_COLUMNS = ["id", "user_id", "period_start", "period_end", "is_locked"]

IDEMPOTENCY_COLUMNS = ["key", "user_id", "operation", "status", "response", "created_at"]

# Audit rows follow the event model field order
AUDIT_COLUMNS = list(AuditEvent.model_fields)

# Status codes the Sheets API uses for quota and server-side trouble
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

sheets_retry = retry(
    retry=retry_if_exception_type(StorageUnavailableError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


def _translate_api_error(action: str, error: Exception) -> StorageError:
    status = getattr(getattr(error, "response", None), "status_code", None)
    if status in RETRYABLE_STATUS_CODES:
        return StorageUnavailableError(f"Google Sheets unavailable while trying to {action}: {error}")
    return StorageError(f"Failed to {action}: {error}")


def model_to_row(model: BaseModel, columns: list[str]) -> list[str]:
    """Serialize a model into cells, in column order."""
    data = model.model_dump(mode="json")
    row = []
    for column in columns:
        value = data.get(column)
        if value is None:
            row.append("")
        elif isinstance(value, (dict, list)):
            row.append(json.dumps(value))
        else:
            row.append(str(value))
    return row


def row_to_model(
    model_cls: type[ModelT],
    header: list[str],
    row: list[str],
    json_columns: tuple[str, ...] = (),
) -> ModelT:
    """Parse a row read by header name. Empty cells become None."""
    data: dict[str, Any] = {}
    for idx, column in enumerate(header):
        value = row[idx] if idx < len(row) else ""
        if value == "":
            continue
        data[column] = json.loads(value) if column in json_columns else value
    return model_cls.model_validate(data)


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and creates missing worksheets with their
    header row on first access.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._sheets: dict[str, gspread.Worksheet] = {}
        self._settings = get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise StorageError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise StorageUnavailableError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise StorageError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_sheet(self, title: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        """Get or create a worksheet."""
        if title in self._sheets:
            return self._sheets[title]
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            # Create the sheet with headers
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        self._sheets[title] = sheet
        return sheet


class _SheetTable:
    """One worksheet holding one model type, addressed by a key column."""

    def __init__(
        self,
        client: GoogleSheetsClient,
        title: str,
        columns: list[str],
        model_cls: type[BaseModel],
        key_column: str = "id",
        json_columns: tuple[str, ...] = (),
    ):
        self._client = client
        self.title = title
        self.columns = columns
        self.model_cls = model_cls
        self.key_column = key_column
        self.json_columns = json_columns

    def _sheet(self) -> gspread.Worksheet:
        return self._client.get_sheet(self.title, self.columns)

    def read(self) -> list[tuple[int, BaseModel]]:
        """All parsable rows with their 1-based sheet row numbers."""
        try:
            values = self._sheet().get_all_values()
        except gspread.exceptions.APIError as e:
            raise _translate_api_error(f"read {self.title}", e)
        if not values:
            return []
        header, body = values[0], values[1:]
        parsed = []
        for idx, row in enumerate(body, start=2):
            if not row or not row[0]:
                continue
            try:
                parsed.append((idx, row_to_model(self.model_cls, header, row, self.json_columns)))
            except (ValueError, TypeError) as e:
                logger.warning("sheet_row_skipped", sheet=self.title, row=idx, error=str(e))
        return parsed

    def find(self, key: str) -> Optional[tuple[int, BaseModel]]:
        for idx, model in self.read():
            if str(getattr(model, self.key_column)) == key:
                return idx, model
        return None

    def append(self, models: list[BaseModel]) -> None:
        rows = [model_to_row(m, self.columns) for m in models]
        try:
            self._sheet().append_rows(rows, value_input_option="RAW")
        except gspread.exceptions.APIError as e:
            raise _translate_api_error(f"append to {self.title}", e)

    def replace(self, row_number: int, model: BaseModel) -> None:
        try:
            self._sheet().update(
                values=[model_to_row(model, self.columns)],
                range_name=f"A{row_number}",
                value_input_option="RAW",
            )
        except gspread.exceptions.APIError as e:
            raise _translate_api_error(f"update {self.title}", e)

    def delete(self, row_numbers: list[int]) -> None:
        sheet = self._sheet()
        try:
            # Bottom-up so earlier deletions don't shift later row numbers
            for row_number in sorted(row_numbers, reverse=True):
                sheet.delete_rows(row_number)
        except gspread.exceptions.APIError as e:
            raise _translate_api_error(f"delete from {self.title}", e)


class GoogleSheetsLedgerStorage(
    LedgerStorageInterface,
    IdempotencyStorageInterface,
    PeriodLockChecker,
    ChartOfAccountsLookup,
):
    """
    Google Sheets implementation of the ledger storage.

    Accounts, transactions, journal entries, the chart of accounts,
    period locks and idempotency records each live in their own worksheet.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        names = get_settings().google_sheets
        self._accounts = _SheetTable(self._client, names.accounts_sheet_name, ACCOUNT_COLUMNS, Account)
        self._transactions = _SheetTable(
            self._client, names.transactions_sheet_name, TRANSACTION_COLUMNS, Transaction
        )
        self._journal = _SheetTable(self._client, names.journal_sheet_name, JOURNAL_COLUMNS, JournalEntry)
        self._chart = _SheetTable(self._client, names.chart_sheet_name, CHART_COLUMNS, LedgerAccount)
        self._locks = _SheetTable(
            self._client, names.period_locks_sheet_name, PERIOD_LOCK_COLUMNS, PeriodLock
        )
        self._idempotency = _SheetTable(
            self._client,
            names.idempotency_sheet_name,
            IDEMPOTENCY_COLUMNS,
            IdempotencyRecord,
            key_column="key",
            json_columns=("response",),
        )

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    @sheets_retry
    async def get_account(self, account_id: UUID) -> Optional[Account]:
        found = self._accounts.find(str(account_id))
        return found[1] if found else None

    @sheets_retry
    async def list_accounts(self, user_id: UUID) -> list[Account]:
        return [a for _, a in self._accounts.read() if a.user_id == user_id]

    @sheets_retry
    async def insert_account(self, account: Account) -> Account:
        if self._accounts.find(str(account.id)):
            raise DuplicateError(f"Account already exists: {account.id}")
        self._accounts.append([account])
        return account

    @sheets_retry
    async def update_account(self, account: Account) -> Account:
        found = self._accounts.find(str(account.id))
        if not found:
            raise NotFoundError(f"Account not found: {account.id}")
        account = account.model_copy(update={"updated_at": utcnow()})
        self._accounts.replace(found[0], account)
        return account

    @sheets_retry
    async def delete_account(self, account_id: UUID) -> bool:
        found = self._accounts.find(str(account_id))
        if not found:
            return False
        self._accounts.delete([found[0]])
        return True

    @sheets_retry
    async def set_account_balance(self, account_id: UUID, balance: int) -> None:
        found = self._accounts.find(str(account_id))
        if not found:
            raise NotFoundError(f"Account not found: {account_id}")
        row_number, account = found
        self._accounts.replace(
            row_number,
            account.model_copy(update={"balance": balance, "updated_at": utcnow()}),
        )

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @sheets_retry
    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        found = self._transactions.find(str(transaction_id))
        return found[1] if found else None

    @sheets_retry
    async def list_transactions(
        self,
        user_id: Optional[UUID] = None,
        account_id: Optional[UUID] = None,
        parent_transaction_id: Optional[UUID] = None,
    ) -> list[Transaction]:
        rows = [
            tx for _, tx in self._transactions.read()
            if (not user_id or tx.user_id == user_id)
            and (not account_id or tx.account_id == account_id)
            and (not parent_transaction_id or tx.parent_transaction_id == parent_transaction_id)
        ]
        rows.sort(key=lambda t: (t.date, t.created_at))
        return rows

    @sheets_retry
    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        if self._transactions.find(str(transaction.id)):
            raise DuplicateError(f"Transaction already exists: {transaction.id}")
        self._transactions.append([transaction])
        return transaction

    @sheets_retry
    async def update_transaction(self, transaction: Transaction) -> Transaction:
        found = self._transactions.find(str(transaction.id))
        if not found:
            raise NotFoundError(f"Transaction not found: {transaction.id}")
        transaction = transaction.model_copy(update={"updated_at": utcnow()})
        self._transactions.replace(found[0], transaction)
        return transaction

    @sheets_retry
    async def delete_transaction(self, transaction_id: UUID) -> bool:
        found = self._transactions.find(str(transaction_id))
        if not found:
            return False
        self._transactions.delete([found[0]])
        return True

    # -------------------------------------------------------------------------
    # Journal entries
    # -------------------------------------------------------------------------

    @sheets_retry
    async def insert_journal_entries(
        self,
        entries: list[JournalEntry],
    ) -> list[JournalEntry]:
        if entries:
            self._journal.append(list(entries))
        return entries

    @sheets_retry
    async def list_journal_entries(
        self,
        user_id: Optional[UUID] = None,
        transaction_id: Optional[UUID] = None,
    ) -> list[JournalEntry]:
        return [
            e for _, e in self._journal.read()
            if (user_id is None or e.user_id == user_id)
            and (transaction_id is None or e.transaction_id == transaction_id)
        ]

    @sheets_retry
    async def delete_journal_entries(
        self,
        transaction_id: UUID,
    ) -> list[JournalEntry]:
        matches = [
            (idx, e) for idx, e in self._journal.read()
            if e.transaction_id == transaction_id
        ]
        self._journal.delete([idx for idx, _ in matches])
        return [e for _, e in matches]

    # -------------------------------------------------------------------------
    # Idempotency
    # -------------------------------------------------------------------------

    def _find_idempotency_row(self, user_id: UUID, key: str) -> Optional[tuple[int, IdempotencyRecord]]:
        for idx, record in self._idempotency.read():
            if record.key == key and record.user_id == user_id:
                return idx, record
        return None

    @sheets_retry
    async def get_idempotency_record(
        self,
        user_id: UUID,
        key: str,
    ) -> Optional[IdempotencyRecord]:
        found = self._find_idempotency_row(user_id, key)
        return found[1] if found else None

    @sheets_retry
    async def save_idempotency_record(self, record: IdempotencyRecord) -> None:
        found = self._find_idempotency_row(record.user_id, record.key)
        if found is None:
            self._idempotency.append([record])
        else:
            self._idempotency.replace(found[0], record)

    @sheets_retry
    async def delete_idempotency_record(self, user_id: UUID, key: str) -> bool:
        found = self._find_idempotency_row(user_id, key)
        if found is None:
            return False
        self._idempotency.delete([found[0]])
        return True

    # -------------------------------------------------------------------------
    # Collaborators
    # -------------------------------------------------------------------------

    @sheets_retry
    async def is_locked(self, user_id: UUID, day: date) -> bool:
        return any(
            lock.user_id == user_id and lock.covers(day)
            for _, lock in self._locks.read()
        )

    @sheets_retry
    async def list_ledger_accounts(self, user_id: UUID) -> list[LedgerAccount]:
        return [la for _, la in self._chart.read() if la.user_id == user_id]


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only. The sheet shares the header-keyed row
    format of the ledger tables, with ``details`` kept as a JSON cell.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        client = client or GoogleSheetsClient()
        self._events = _SheetTable(
            client,
            get_settings().google_sheets.audit_sheet_name,
            AUDIT_COLUMNS,
            AuditEvent,
            key_column="event_id",
            json_columns=("details",),
        )

    def _read_events(self) -> list[AuditEvent]:
        return [event for _, event in self._events.read()]

    @sheets_retry
    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append([event])
        return True

    @sheets_retry
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._read_events() if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    @sheets_retry
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = self._read_events()
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
