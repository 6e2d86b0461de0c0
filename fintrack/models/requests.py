"""
Request and Result Models for the Orchestrator

Inputs are validated by pydantic before any write happens; a model
that fails to construct is a ValidationError and never reaches storage.
Amounts on inputs are always POSITIVE; the orchestrator applies the sign
from the transaction type.
"""

import datetime as dt
from datetime import date
from typing import Optional
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from fintrack.models.ledger import (
    INVOICE_MONTH_PATTERN,
    Account,
    AccountBalance,
    AccountType,
    EditScope,
    RecurrenceType,
    Transaction,
    TransactionStatus,
    TransactionType,
)


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TransactionInput(BaseModel):
    """Single transaction creation request."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    description: str = Field(..., min_length=1, max_length=200)
    amount: int = Field(..., gt=0, description="Positive amount in minor units")
    date: date
    type: TransactionType
    status: TransactionStatus = TransactionStatus.COMPLETED
    account_id: UUID
    category_id: Optional[UUID] = None
    invoice_month: Optional[str] = Field(default=None, pattern=INVOICE_MONTH_PATTERN)
    invoice_month_overridden: bool = False

    @field_validator('type')
    @classmethod
    def reject_transfer_type(cls, v: TransactionType) -> TransactionType:
        if v == TransactionType.TRANSFER:
            raise ValueError("Type must be either income or expense")
        return v

    @model_validator(mode='after')
    def explicit_invoice_month_is_override(self) -> 'TransactionInput':
        """A caller-supplied invoice month always wins over the computed one."""
        if self.invoice_month:
            self.invoice_month_overridden = True
        return self


class TransactionUpdate(BaseModel):
    """
    Partial update of a transaction.

    Only fields present in the request are applied; use
    ``model_fields_set`` to tell "not sent" from "sent as null".
    """
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount: Optional[int] = Field(default=None, gt=0)
    # dt.date: the field name shadows the date type once it has a default
    date: Optional[dt.date] = None
    type: Optional[TransactionType] = None
    category_id: Optional[UUID] = None
    account_id: Optional[UUID] = None
    status: Optional[TransactionStatus] = None
    invoice_month: Optional[str] = Field(default=None, pattern=INVOICE_MONTH_PATTERN)

    @field_validator('type')
    @classmethod
    def reject_transfer_type(cls, v: Optional[TransactionType]) -> Optional[TransactionType]:
        if v == TransactionType.TRANSFER:
            raise ValueError("Transfers are created with the transfer operation")
        return v


class EditTransactionInput(BaseModel):
    transaction_id: UUID
    updates: TransactionUpdate
    scope: EditScope = EditScope.CURRENT


class DeleteTransactionInput(BaseModel):
    transaction_id: UUID
    scope: EditScope = EditScope.ALL


class TransferInput(BaseModel):
    """Move money between two of the user's accounts."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    from_account_id: UUID
    to_account_id: UUID
    amount: int = Field(..., gt=0)
    date: date
    description: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode='after')
    def validate_distinct_accounts(self) -> 'TransferInput':
        if self.from_account_id == self.to_account_id:
            raise ValueError("Cannot transfer to the same account")
        return self


class PayBillInput(BaseModel):
    """
    Credit card bill payment.

    credit_account_id is the card (liability) receiving the payment,
    debit_account_id is the bank account the money leaves.
    """
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    credit_account_id: UUID
    debit_account_id: UUID
    amount: int = Field(..., gt=0)
    payment_date: date
    description: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode='after')
    def validate_distinct_accounts(self) -> 'PayBillInput':
        if self.credit_account_id == self.debit_account_id:
            raise ValueError("Credit and debit accounts must be different")
        return self


class InstallmentInput(BaseModel):
    """One installment of a series, as entered by the user."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    description: str = Field(..., min_length=1, max_length=200)
    amount: int = Field(..., gt=0)
    date: date
    type: TransactionType = TransactionType.EXPENSE
    status: TransactionStatus = TransactionStatus.COMPLETED
    account_id: UUID
    category_id: Optional[UUID] = None
    invoice_month: Optional[str] = Field(default=None, pattern=INVOICE_MONTH_PATTERN)

    def to_transaction_input(self) -> TransactionInput:
        return TransactionInput(**self.model_dump())


class RecurringInput(BaseModel):
    """
    Recurring series creation request.

    Accepts the camelCase keys used by the ``generateRecurring`` endpoint.
    """
    model_config = ConfigDict(
        str_strip_whitespace=True,
        populate_by_name=True,
        extra="ignore",
    )

    account_id: UUID = Field(..., alias="accountId")
    amount: int = Field(..., gt=0)
    category_id: Optional[UUID] = Field(default=None, alias="categoryId")
    date: date
    description: str = Field(..., min_length=1, max_length=200)
    recurrence_type: RecurrenceType = Field(..., alias="recurrenceType")
    recurrence_end_date: Optional[date] = Field(default=None, alias="recurrenceEndDate")
    status: TransactionStatus = TransactionStatus.COMPLETED
    type: TransactionType

    @field_validator('type')
    @classmethod
    def reject_transfer_type(cls, v: TransactionType) -> TransactionType:
        if v == TransactionType.TRANSFER:
            raise ValueError("Recurring transactions must be income or expense")
        return v

    @model_validator(mode='after')
    def validate_end_date(self) -> 'RecurringInput':
        if self.recurrence_end_date and self.recurrence_end_date < self.date:
            raise ValueError("Recurrence end date cannot be before the start date")
        return self


# =============================================================================
# ACCOUNTS
# =============================================================================

class AccountUpdate(BaseModel):
    """
    Editable account fields.

    ``balance`` is deliberately absent: it is derived state and any value
    sent by a client is ignored.
    """
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    limit_amount: Optional[int] = Field(default=None, ge=0)
    closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)


class EditAccountInput(BaseModel):
    account_id: UUID
    updates: AccountUpdate


class DeleteAccountInput(BaseModel):
    account_id: UUID


class AccountImport(BaseModel):
    """An account row from an import file."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    initial_balance: int = Field(
        default=0,
        description="Booked as an opening-balance transaction, never written to balance"
    )
    limit_amount: Optional[int] = Field(default=None, ge=0)
    closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)


class ImportAccountsInput(BaseModel):
    accounts: list[AccountImport] = Field(..., min_length=1)
    replace_ids: list[UUID] = Field(default_factory=list)


# =============================================================================
# RESULTS
# =============================================================================

class TransactionResult(BaseModel):
    transaction: Transaction
    balance: Optional[AccountBalance] = None


class PairedTransactionResult(BaseModel):
    """Both halves of a transfer or bill payment and the resulting balances."""

    outflow: Transaction
    inflow: Transaction
    outflow_balance: AccountBalance
    inflow_balance: AccountBalance


class InstallmentSeriesResult(BaseModel):
    parent_id: UUID
    transactions: list[Transaction]
    balances: list[AccountBalance] = Field(default_factory=list)


class RecurringSeriesResult(BaseModel):
    parent_id: UUID
    created_count: int
    skipped_dates: list[date] = Field(default_factory=list)
    balance: Optional[AccountBalance] = None


class MutationResult(BaseModel):
    """Outcome of an edit or delete touching one or more rows."""

    transactions: list[Transaction] = Field(default_factory=list)
    deleted_ids: list[UUID] = Field(default_factory=list)
    balances: list[AccountBalance] = Field(default_factory=list)


class AccountResult(BaseModel):
    account: Account
    recomputed_transactions: list[UUID] = Field(
        default_factory=list,
        description="Rows whose invoice month changed with the billing configuration"
    )


class AccountImportResult(BaseModel):
    accounts: list[Account]
    replaced_ids: list[UUID] = Field(default_factory=list)
    balances: list[AccountBalance] = Field(default_factory=list)
