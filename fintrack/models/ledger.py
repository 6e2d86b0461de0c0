"""
Core Ledger Models for fintrack

These models define the strict schemas for the rows the ledger engine
reads and writes: accounts, transactions, journal entries and the
chart of accounts they map to.

DESIGN DECISION: All amounts are integers in minor currency units
(cents). Sign convention on transactions: positive = inflow to the
owning account, negative = outflow. Journal entry amounts are never
negative; direction is carried by ``entry_type``.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)


INVOICE_MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class AccountType(str, Enum):
    """Kinds of money accounts a user can hold."""
    CHECKING = "checking"
    SAVINGS = "savings"
    CREDIT = "credit"
    INVESTMENT = "investment"


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class TransactionStatus(str, Enum):
    """
    Transaction settlement status.

    Only COMPLETED transactions are counted toward an account balance.
    """
    PENDING = "pending"
    COMPLETED = "completed"


class EntryType(str, Enum):
    """Side of a double-entry journal line."""
    DEBIT = "debit"
    CREDIT = "credit"


class RecurrenceType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class LedgerCategory(str, Enum):
    """Top-level class of a chart-of-accounts row."""
    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    REVENUE = "revenue"
    EXPENSE = "expense"


class EditScope(str, Enum):
    """
    Which members of an installment group an edit or delete touches.

    CURRENT               - only the addressed transaction
    CURRENT_AND_REMAINING - the addressed installment and every later one
    ALL                   - the whole group, parent included
    """
    CURRENT = "current"
    CURRENT_AND_REMAINING = "current-and-remaining"
    ALL = "all"


class IdempotencyStatus(str, Enum):
    """
    IN_PROGRESS - key reserved, the operation may or may not have committed
    COMPLETED   - operation committed, ``response`` holds its reply
    """
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


# =============================================================================
# ACCOUNTS
# =============================================================================

class Account(BaseModel):
    """
    A money account owned by one user.

    ``balance`` is derived state. It is written only by the balance
    recalculator and can always be recomputed from the account's
    completed transactions.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    balance: int = Field(default=0, description="Derived balance in minor units")
    limit_amount: Optional[int] = Field(
        default=None,
        ge=0,
        description="Credit limit (credit) or overdraft limit (checking/savings)"
    )
    closing_day: Optional[int] = Field(
        default=None,
        ge=1,
        le=31,
        description="Statement closing day-of-month (credit cards)"
    )
    due_day: Optional[int] = Field(
        default=None,
        ge=1,
        le=31,
        description="Statement due day-of-month (credit cards)"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode='after')
    def validate_billing_cycle(self) -> 'Account':
        """Closing and due day are configured together or not at all."""
        if (self.closing_day is None) != (self.due_day is None):
            raise ValueError("closing_day and due_day must be set together")
        return self

    @property
    def has_billing_cycle(self) -> bool:
        """True for credit cards with a statement configuration."""
        return (
            self.type == AccountType.CREDIT
            and self.closing_day is not None
            and self.due_day is not None
        )


# =============================================================================
# TRANSACTIONS
# =============================================================================

class Transaction(BaseModel):
    """
    A single signed movement on one account.

    Linkage fields:
    - parent_transaction_id: groups installments / recurring children
      under their origin row
    - installments / current_installment: total count and 1-based index
    - linked_transaction_id: the other half of a paired event
      (transfer, bill payment)
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    description: str = Field(..., min_length=1, max_length=200)
    amount: int = Field(..., description="Signed amount in minor units")
    date: date
    type: TransactionType
    status: TransactionStatus = TransactionStatus.COMPLETED
    account_id: UUID
    category_id: Optional[UUID] = None

    invoice_month: Optional[str] = Field(default=None, pattern=INVOICE_MONTH_PATTERN)
    invoice_month_overridden: bool = False

    parent_transaction_id: Optional[UUID] = None
    installments: Optional[int] = Field(default=None, ge=1)
    current_installment: Optional[int] = Field(default=None, ge=1)
    linked_transaction_id: Optional[UUID] = None
    to_account_id: Optional[UUID] = None

    is_recurring: bool = False
    recurrence_type: Optional[RecurrenceType] = None
    recurrence_end_date: Optional[date] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode='after')
    def validate_installments(self) -> 'Transaction':
        if (
            self.installments is not None
            and self.current_installment is not None
            and self.current_installment > self.installments
        ):
            raise ValueError("current_installment cannot exceed installments")
        return self

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED


# =============================================================================
# DOUBLE ENTRY
# =============================================================================

class LedgerAccount(BaseModel):
    """A chart-of-accounts row, e.g. ``1.01.02 Checking Accounts``."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    code: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=200)
    category: LedgerCategory


class JournalEntry(BaseModel):
    """
    One leg of a double-entry record.

    An entry with ``transaction_id = None`` is unattached and always
    fails ledger validation.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    transaction_id: Optional[UUID] = None
    ledger_account_id: Optional[UUID] = None
    entry_type: EntryType
    amount: int = Field(..., ge=0)
    description: str = Field(default="", max_length=200)
    entry_date: date
    created_at: datetime = Field(default_factory=utcnow)


class PeriodLock(BaseModel):
    """A closed accounting period. Writes dated inside it are refused."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    period_start: date
    period_end: date
    is_locked: bool = True

    @model_validator(mode='after')
    def validate_range(self) -> 'PeriodLock':
        if self.period_end < self.period_start:
            raise ValueError("Period end cannot be before start")
        return self

    def covers(self, day: date) -> bool:
        return self.is_locked and self.period_start <= day <= self.period_end


# =============================================================================
# DERIVED / RESULT MODELS
# =============================================================================

class AccountBalance(BaseModel):
    """Result of one authoritative balance recomputation."""

    account_id: UUID
    balance: int


class LedgerValidationResult(BaseModel):
    """Debit/credit totals of one transaction's journal entries."""

    transaction_id: Optional[UUID]
    is_valid: bool
    total_debits: int
    total_credits: int
    difference: int
    description: str = "No description"
    entry_date: Optional[date] = None


class IdempotencyRecord(BaseModel):
    """Reservation, then stored response, of one keyed mutation."""

    key: str = Field(..., min_length=1, max_length=200)
    user_id: UUID
    operation: str
    status: IdempotencyStatus = IdempotencyStatus.IN_PROGRESS
    response: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
