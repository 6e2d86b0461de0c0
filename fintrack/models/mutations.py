"""
Offline Mutation Models

A PendingMutation is one write the client issued while offline. The
queue stores heterogeneous operations, so each kind is its own pydantic
model with a typed ``data`` payload, and the union is discriminated on
``type``. Replay dispatches on the same tag.

Persisted record shape:
    {id, type, data, attempts, created_at, state, last_error, next_attempt_at}
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, TypeAdapter, model_validator

from fintrack.models.ledger import utcnow
from fintrack.models.requests import (
    DeleteAccountInput,
    DeleteTransactionInput,
    EditAccountInput,
    EditTransactionInput,
    ImportAccountsInput,
    InstallmentInput,
    PayBillInput,
    RecurringInput,
    TransactionInput,
    TransferInput,
)


class MutationKind(str, Enum):
    """Operation names; identical to the server RPC operation names."""
    CREATE_TRANSACTION = "create_transaction"
    EDIT_TRANSACTION = "edit_transaction"
    DELETE_TRANSACTION = "delete_transaction"
    TRANSFER = "transfer"
    PAY_BILL = "pay_bill"
    CREATE_INSTALLMENTS = "create_installments"
    GENERATE_RECURRING = "generate_recurring"
    EDIT_ACCOUNT = "edit_account"
    DELETE_ACCOUNT = "delete_account"
    IMPORT_ACCOUNTS = "import_accounts"


class MutationState(str, Enum):
    """
    Terminal state of a queue entry.

    PENDING -> SYNCED  (server accepted; entry is then removed)
    PENDING -> PENDING (transient failure; attempts incremented)
    PENDING -> FAILED  (attempts exhausted or non-retryable rejection)
    """
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


# =============================================================================
# PAYLOADS THAT CARRY CLIENT REFERENCES
# =============================================================================

class CreateTransactionData(TransactionInput):
    """
    Transaction creation issued offline.

    ``client_ref`` is the temporary id the client showed in its local
    cache; it is replaced by the server id once the create syncs.
    """
    client_ref: Optional[UUID] = None


class InstallmentsData(BaseModel):
    installments: list[InstallmentInput] = Field(..., min_length=1)


class ImportAccountsData(ImportAccountsInput):
    client_refs: list[UUID] = Field(default_factory=list)


# =============================================================================
# TAGGED UNION
# =============================================================================

class _MutationBase(BaseModel):
    id: str = Field(
        default_factory=lambda: str(uuid4()),
        min_length=1,
        max_length=200,
        description="Client-generated idempotency key, stable across retries"
    )
    attempts: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    state: MutationState = MutationState.PENDING
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def stamp_identity(cls, values: Any) -> Any:
        """
        Make id, tag and enqueue time explicit on every record.

        Records are persisted with ``exclude_unset`` so partial updates keep
        their sent/not-sent distinction; these three must survive reloads.
        """
        if isinstance(values, dict):
            values = dict(values)
            values.setdefault("id", str(uuid4()))
            if "type" in cls.model_fields:
                values.setdefault("type", cls.model_fields["type"].default)
            values.setdefault("created_at", utcnow())
        return values

    def payload(self) -> dict[str, Any]:
        """The JSON body sent to the server operation."""
        return self.data.model_dump(mode="json", by_alias=True, exclude_unset=True)

    def remap_ids(self, id_map: dict[UUID, UUID]) -> None:
        """Replace client temp ids in ``data`` with their server ids."""
        if not id_map:
            return
        raw = self.data.model_dump(mode="python", exclude_unset=True)
        self.data = type(self.data).model_validate(_remap(raw, id_map))


def _remap(value: Any, id_map: dict[UUID, UUID]) -> Any:
    if isinstance(value, UUID):
        return id_map.get(value, value)
    if isinstance(value, dict):
        return {k: _remap(v, id_map) for k, v in value.items()}
    if isinstance(value, list):
        return [_remap(v, id_map) for v in value]
    return value


class CreateTransactionMutation(_MutationBase):
    type: Literal["create_transaction"] = "create_transaction"
    data: CreateTransactionData


class EditTransactionMutation(_MutationBase):
    type: Literal["edit_transaction"] = "edit_transaction"
    data: EditTransactionInput


class DeleteTransactionMutation(_MutationBase):
    type: Literal["delete_transaction"] = "delete_transaction"
    data: DeleteTransactionInput


class TransferMutation(_MutationBase):
    type: Literal["transfer"] = "transfer"
    data: TransferInput


class PayBillMutation(_MutationBase):
    type: Literal["pay_bill"] = "pay_bill"
    data: PayBillInput


class CreateInstallmentsMutation(_MutationBase):
    type: Literal["create_installments"] = "create_installments"
    data: InstallmentsData


class GenerateRecurringMutation(_MutationBase):
    type: Literal["generate_recurring"] = "generate_recurring"
    data: RecurringInput


class EditAccountMutation(_MutationBase):
    type: Literal["edit_account"] = "edit_account"
    data: EditAccountInput


class DeleteAccountMutation(_MutationBase):
    type: Literal["delete_account"] = "delete_account"
    data: DeleteAccountInput


class ImportAccountsMutation(_MutationBase):
    type: Literal["import_accounts"] = "import_accounts"
    data: ImportAccountsData


PendingMutation = Annotated[
    Union[
        CreateTransactionMutation,
        EditTransactionMutation,
        DeleteTransactionMutation,
        TransferMutation,
        PayBillMutation,
        CreateInstallmentsMutation,
        GenerateRecurringMutation,
        EditAccountMutation,
        DeleteAccountMutation,
        ImportAccountsMutation,
    ],
    Field(discriminator="type"),
]

PendingMutationAdapter: TypeAdapter[PendingMutation] = TypeAdapter(PendingMutation)
PendingMutationListAdapter: TypeAdapter[list[PendingMutation]] = TypeAdapter(list[PendingMutation])


def build_mutation(
    kind: MutationKind,
    data: Any,
    idempotency_key: Optional[str] = None,
) -> PendingMutation:
    """
    Build a queue entry for ``kind`` from a payload model or dict.

    Raises pydantic.ValidationError if the payload does not match the kind.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="python", by_alias=True, exclude_unset=True)
    record: dict[str, Any] = {"type": kind.value, "data": data}
    if idempotency_key:
        record["id"] = idempotency_key
    return PendingMutationAdapter.validate_python(record)
