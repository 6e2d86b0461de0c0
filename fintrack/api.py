"""
Ledger RPC Surface

Framework-free request handlers for the ledger operations. Each handler
takes a JSON-like body, the authenticated principal (a user id) and an
optional idempotency key, and returns a JSON-ready dict. Any web
framework (or the in-process replay transport) can sit in front of it.

DESIGN DECISION: Idempotency is enforced here, not in the orchestrator.
A key is reserved under (principal, key) before the operation runs and
the reservation is filled with the response on success. A repeated key
gets the stored response back without running the operation again. A
failed operation releases its reservation, so a retry with the same key
is a genuine second attempt. A reservation that could not be completed
or released answers retries with a retryable in-progress error and never
runs the operation twice.
"""

from typing import Any, Awaitable, Callable, Optional, Union
from uuid import UUID

import structlog

from fintrack.audit import AuditLogger
from fintrack.errors import (
    ConstraintError,
    LedgerError,
    TransientError,
    ValidationError,
    to_ledger_error,
)
from fintrack.models.ledger import IdempotencyRecord, IdempotencyStatus
from fintrack.models.mutations import InstallmentsData, MutationKind
from fintrack.models.requests import (
    DeleteAccountInput,
    DeleteTransactionInput,
    EditAccountInput,
    EditTransactionInput,
    ImportAccountsInput,
    PayBillInput,
    RecurringInput,
    TransactionInput,
    TransferInput,
)
from fintrack.orchestrator import TransactionOrchestrator
from fintrack.services.storage import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    IdempotencyStorageInterface,
    InMemoryLedgerStorage,
)

logger = structlog.get_logger(__name__)

Body = dict[str, Any]
Handler = Callable[[UUID, Body], Awaitable[Body]]


def _dump(model) -> Any:
    return model.model_dump(mode="json") if model is not None else None


def error_body(error: LedgerError) -> Body:
    """Error response for a rejected or failed operation."""
    return {**error.to_dict(), "success": False}


class LedgerApi:
    """Routes RPC calls to the orchestrator and deduplicates by key."""

    def __init__(
        self,
        orchestrator: TransactionOrchestrator,
        idempotency_storage: Optional[IdempotencyStorageInterface] = None,
    ):
        self._orchestrator = orchestrator
        self._idempotency = idempotency_storage
        self._handlers: dict[str, Handler] = {
            MutationKind.CREATE_TRANSACTION.value: self._create_transaction,
            MutationKind.EDIT_TRANSACTION.value: self._edit_transaction,
            MutationKind.DELETE_TRANSACTION.value: self._delete_transaction,
            MutationKind.TRANSFER.value: self._transfer,
            MutationKind.PAY_BILL.value: self._pay_bill,
            MutationKind.CREATE_INSTALLMENTS.value: self._create_installments,
            MutationKind.GENERATE_RECURRING.value: self._generate_recurring,
            MutationKind.EDIT_ACCOUNT.value: self._edit_account,
            MutationKind.DELETE_ACCOUNT.value: self._delete_account,
            MutationKind.IMPORT_ACCOUNTS.value: self._import_accounts,
        }

    @property
    def operations(self) -> list[str]:
        return list(self._handlers)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def dispatch(
        self,
        operation: str,
        body: Body,
        principal: Union[UUID, str],
        idempotency_key: Optional[str] = None,
    ) -> Body:
        """
        Run ``operation`` for ``principal``.

        Args:
            operation: One of ``operations``
            body: JSON request body
            principal: Authenticated user id
            idempotency_key: Client key of this logical operation. A key
                            that already produced a success replays the
                            stored response.

        Returns:
            The operation's response, or an error body with
            ``success: False``
        """
        handler = self._handlers.get(operation)
        if handler is None:
            return error_body(ValidationError(
                f"Unknown operation: {operation}",
                field="operation",
            ))
        user_id = UUID(str(principal))

        if idempotency_key and self._idempotency is not None:
            try:
                replay = await self._reserve(user_id, operation, idempotency_key)
            except Exception as error:
                return self._error_response(operation, error)
            if replay is not None:
                return replay

        try:
            response = await handler(user_id, body or {})
        except Exception as error:
            if idempotency_key and self._idempotency is not None:
                await self._release(user_id, operation, idempotency_key)
            return self._error_response(operation, error)

        if idempotency_key and self._idempotency is not None:
            await self._complete(user_id, operation, idempotency_key, response)
        return response

    def _error_response(self, operation: str, error: Exception) -> Body:
        translated = to_ledger_error(error)
        if not isinstance(translated, LedgerError):
            logger.exception("unhandled_operation_error", operation=operation)
            translated = LedgerError(str(error) or type(error).__name__, reason="internal_error")
        response = error_body(translated)
        if operation == MutationKind.GENERATE_RECURRING.value:
            response["error_message"] = translated.message
        return response

    # -------------------------------------------------------------------------
    # Idempotency records
    # -------------------------------------------------------------------------

    async def _reserve(self, user_id: UUID, operation: str, key: str) -> Optional[Body]:
        """
        Claim ``key`` before the operation runs.

        Returns the body to answer with when the key is already known:
        the stored response, a conflict, or a retryable in-progress error.
        Returns None once the key is reserved for this call.
        """
        record = await self._idempotency.get_idempotency_record(user_id, key)
        if record is None:
            await self._idempotency.save_idempotency_record(IdempotencyRecord(
                key=key,
                user_id=user_id,
                operation=operation,
            ))
            return None

        if record.operation != operation:
            return error_body(ConstraintError(
                "Idempotency key already used for another operation",
                reason="idempotency_key_conflict",
                details={"key": key, "operation": record.operation},
            ))
        if record.status == IdempotencyStatus.IN_PROGRESS:
            logger.warning("idempotency_key_in_progress", operation=operation, idempotency_key=key)
            return error_body(TransientError(
                "An earlier request with this key has not completed",
                reason="idempotency_key_in_progress",
                details={"key": key},
            ))
        logger.info("duplicate_request_replayed", operation=operation, idempotency_key=key)
        return record.response

    async def _complete(self, user_id: UUID, operation: str, key: str, response: Body) -> None:
        # The writes are committed: a failure here leaves the key reserved,
        # so a retry is refused instead of applied twice.
        try:
            await self._idempotency.save_idempotency_record(IdempotencyRecord(
                key=key,
                user_id=user_id,
                operation=operation,
                status=IdempotencyStatus.COMPLETED,
                response=response,
            ))
        except Exception as error:
            logger.error(
                "idempotency_record_not_completed",
                operation=operation,
                idempotency_key=key,
                error=str(error),
            )

    async def _release(self, user_id: UUID, operation: str, key: str) -> None:
        try:
            await self._idempotency.delete_idempotency_record(user_id, key)
        except Exception as error:
            logger.error(
                "idempotency_reservation_not_released",
                operation=operation,
                idempotency_key=key,
                error=str(error),
            )

    # -------------------------------------------------------------------------
    # Named endpoints
    # -------------------------------------------------------------------------

    async def create_transaction(self, body: Body, principal, idempotency_key: Optional[str] = None) -> Body:
        return await self.dispatch(MutationKind.CREATE_TRANSACTION.value, body, principal, idempotency_key)

    async def pay_bill(self, body: Body, principal, idempotency_key: Optional[str] = None) -> Body:
        return await self.dispatch(MutationKind.PAY_BILL.value, body, principal, idempotency_key)

    async def generate_recurring(self, body: Body, principal, idempotency_key: Optional[str] = None) -> Body:
        return await self.dispatch(MutationKind.GENERATE_RECURRING.value, body, principal, idempotency_key)

    async def transfer(self, body: Body, principal, idempotency_key: Optional[str] = None) -> Body:
        return await self.dispatch(MutationKind.TRANSFER.value, body, principal, idempotency_key)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _create_transaction(self, user_id: UUID, body: Body) -> Body:
        data = TransactionInput.model_validate(body.get("transaction", body))
        result = await self._orchestrator.create_transaction(user_id, data)
        return {
            "transaction": _dump(result.transaction),
            "balance": result.balance.balance if result.balance else None,
            "success": True,
        }

    async def _edit_transaction(self, user_id: UUID, body: Body) -> Body:
        result = await self._orchestrator.edit_transaction(
            user_id, EditTransactionInput.model_validate(body)
        )
        return {
            "transactions": [_dump(tx) for tx in result.transactions],
            "balances": [_dump(b) for b in result.balances],
            "success": True,
        }

    async def _delete_transaction(self, user_id: UUID, body: Body) -> Body:
        result = await self._orchestrator.delete_transaction(
            user_id, DeleteTransactionInput.model_validate(body)
        )
        return {
            "deleted_ids": [str(i) for i in result.deleted_ids],
            "balances": [_dump(b) for b in result.balances],
            "success": True,
        }

    async def _transfer(self, user_id: UUID, body: Body) -> Body:
        result = await self._orchestrator.transfer(user_id, TransferInput.model_validate(body))
        return {
            "outflow": _dump(result.outflow),
            "inflow": _dump(result.inflow),
            "outflow_balance": result.outflow_balance.balance,
            "inflow_balance": result.inflow_balance.balance,
            "success": True,
        }

    async def _pay_bill(self, user_id: UUID, body: Body) -> Body:
        result = await self._orchestrator.pay_bill(user_id, PayBillInput.model_validate(body))
        return {
            "debit_tx": _dump(result.outflow),
            "credit_tx": _dump(result.inflow),
            "debit_balance": result.outflow_balance.balance,
            "credit_balance": result.inflow_balance.balance,
            "success": True,
        }

    async def _create_installments(self, user_id: UUID, body: Body) -> Body:
        data = InstallmentsData.model_validate(body)
        result = await self._orchestrator.create_installments(user_id, data.installments)
        return {
            "parent_id": str(result.parent_id),
            "transactions": [_dump(tx) for tx in result.transactions],
            "balances": [_dump(b) for b in result.balances],
            "success": True,
        }

    async def _generate_recurring(self, user_id: UUID, body: Body) -> Body:
        result = await self._orchestrator.generate_recurring(
            user_id, RecurringInput.model_validate(body)
        )
        return {
            "success": True,
            "created_count": result.created_count,
            "parent_id": str(result.parent_id),
            "skipped_dates": [d.isoformat() for d in result.skipped_dates],
        }

    async def _edit_account(self, user_id: UUID, body: Body) -> Body:
        result = await self._orchestrator.edit_account(user_id, EditAccountInput.model_validate(body))
        return {
            "account": _dump(result.account),
            "recomputed_transactions": [str(i) for i in result.recomputed_transactions],
            "success": True,
        }

    async def _delete_account(self, user_id: UUID, body: Body) -> Body:
        result = await self._orchestrator.delete_account(
            user_id, DeleteAccountInput.model_validate(body)
        )
        return {"deleted_ids": [str(i) for i in result.deleted_ids], "success": True}

    async def _import_accounts(self, user_id: UUID, body: Body) -> Body:
        result = await self._orchestrator.import_accounts(
            user_id, ImportAccountsInput.model_validate(body)
        )
        return {
            "accounts": [_dump(a) for a in result.accounts],
            "replaced_ids": [str(i) for i in result.replaced_ids],
            "balances": [_dump(b) for b in result.balances],
            "success": True,
        }


# =============================================================================
# FACTORY
# =============================================================================

def create_ledger_api(
    use_storage: bool = True,
) -> tuple[LedgerApi, Optional[GoogleSheetsClient]]:
    """
    Factory function to wire the ledger engine.

    Args:
        use_storage: Whether to back the ledger with Google Sheets.
                    Set to False (or leave Sheets unconfigured) to run
                    on in-memory storage.

    Returns:
        (ledger_api, sheets_client)
    """
    sheets_client = None
    audit_logger = AuditLogger()  # Local-only logging
    storage = None

    if use_storage:
        try:
            sheets_client = GoogleSheetsClient()
            sheets_client.get_spreadsheet()
            storage = GoogleSheetsLedgerStorage(sheets_client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Storage not configured - continue in memory
            logger.warning("sheets_storage_unavailable", error=str(e))
            sheets_client = None
            storage = None

    if storage is None:
        storage = InMemoryLedgerStorage()

    orchestrator = TransactionOrchestrator(
        storage=storage,
        period_locks=storage,
        chart_lookup=storage,
        audit_logger=audit_logger,
    )
    return LedgerApi(orchestrator, idempotency_storage=storage), sheets_client
