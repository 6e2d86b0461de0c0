"""
Local Client State

The client's cached view of accounts and transactions. It is updated
only from the server's authoritative responses, never from the payload
the client guessed while offline, so balances and invoice months shown
after a sync are the server's.

Temporary ids the client handed out while offline are recorded in
``id_map`` once the server assigns the real ones.
"""

from typing import Any, Callable, Optional
from uuid import UUID

import structlog

from fintrack.models.ledger import Account, Transaction
from fintrack.models.mutations import MutationKind, PendingMutation

logger = structlog.get_logger(__name__)

Response = dict[str, Any]


class LocalLedgerState:
    """In-memory cache reconciled from server responses."""

    def __init__(self):
        self.accounts: dict[UUID, Account] = {}
        self.transactions: dict[UUID, Transaction] = {}
        self.balances: dict[UUID, int] = {}
        self.id_map: dict[UUID, UUID] = {}
        # Accounts whose full row set should be refetched
        self.stale_accounts: set[UUID] = set()
        self._appliers: dict[str, Callable[[PendingMutation, Response], None]] = {
            MutationKind.CREATE_TRANSACTION.value: self._apply_create,
            MutationKind.EDIT_TRANSACTION.value: self._apply_edit,
            MutationKind.DELETE_TRANSACTION.value: self._apply_delete,
            MutationKind.TRANSFER.value: self._apply_transfer,
            MutationKind.PAY_BILL.value: self._apply_pay_bill,
            MutationKind.CREATE_INSTALLMENTS.value: self._apply_installments,
            MutationKind.GENERATE_RECURRING.value: self._apply_recurring,
            MutationKind.EDIT_ACCOUNT.value: self._apply_account,
            MutationKind.DELETE_ACCOUNT.value: self._apply_delete_account,
            MutationKind.IMPORT_ACCOUNTS.value: self._apply_import,
        }

    def apply_response(self, mutation: PendingMutation, response: Response) -> None:
        """Fold the server's response to ``mutation`` into the cache."""
        self._appliers[mutation.type](mutation, response)
        logger.debug("local_state_updated", mutation_id=mutation.id, operation=mutation.type)

    def resolve(self, value: UUID) -> UUID:
        """Server id for a client temp id (or the id itself)."""
        return self.id_map.get(value, value)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _store_transaction(self, raw: Optional[dict[str, Any]]) -> Optional[Transaction]:
        if not raw:
            return None
        tx = Transaction.model_validate(raw)
        self.transactions[tx.id] = tx
        return tx

    def _set_balance(self, account_id: UUID, balance: Optional[int]) -> None:
        if balance is None:
            return
        self.balances[account_id] = balance
        account = self.accounts.get(account_id)
        if account is not None:
            self.accounts[account_id] = account.model_copy(update={"balance": balance})

    def _store_balances(self, raw_balances: list[dict[str, Any]]) -> None:
        for raw in raw_balances:
            self._set_balance(UUID(str(raw["account_id"])), raw["balance"])

    def _store_account(self, raw: dict[str, Any]) -> Account:
        account = Account.model_validate(raw)
        self.accounts[account.id] = account
        self.balances[account.id] = account.balance
        return account

    # -------------------------------------------------------------------------
    # Per-operation appliers
    # -------------------------------------------------------------------------

    def _apply_create(self, mutation: PendingMutation, response: Response) -> None:
        tx = self._store_transaction(response.get("transaction"))
        if tx is None:
            return
        client_ref = mutation.data.client_ref
        if client_ref and client_ref != tx.id:
            self.id_map[client_ref] = tx.id
            self.transactions.pop(client_ref, None)
        self._set_balance(tx.account_id, response.get("balance"))

    def _apply_edit(self, mutation: PendingMutation, response: Response) -> None:
        for raw in response.get("transactions", []):
            self._store_transaction(raw)
        self._store_balances(response.get("balances", []))

    def _apply_delete(self, mutation: PendingMutation, response: Response) -> None:
        for raw_id in response.get("deleted_ids", []):
            self.transactions.pop(UUID(str(raw_id)), None)
        self._store_balances(response.get("balances", []))

    def _apply_paired(
        self,
        response: Response,
        outflow_key: str,
        inflow_key: str,
        outflow_balance_key: str,
        inflow_balance_key: str,
    ) -> None:
        outflow = self._store_transaction(response.get(outflow_key))
        inflow = self._store_transaction(response.get(inflow_key))
        if outflow is not None:
            self._set_balance(outflow.account_id, response.get(outflow_balance_key))
        if inflow is not None:
            self._set_balance(inflow.account_id, response.get(inflow_balance_key))

    def _apply_transfer(self, mutation: PendingMutation, response: Response) -> None:
        self._apply_paired(response, "outflow", "inflow", "outflow_balance", "inflow_balance")

    def _apply_pay_bill(self, mutation: PendingMutation, response: Response) -> None:
        self._apply_paired(response, "debit_tx", "credit_tx", "debit_balance", "credit_balance")

    def _apply_installments(self, mutation: PendingMutation, response: Response) -> None:
        for raw in response.get("transactions", []):
            self._store_transaction(raw)
        self._store_balances(response.get("balances", []))

    def _apply_recurring(self, mutation: PendingMutation, response: Response) -> None:
        # The response carries counts only
        self.stale_accounts.add(mutation.data.account_id)

    def _apply_account(self, mutation: PendingMutation, response: Response) -> None:
        account = self._store_account(response["account"])
        if response.get("recomputed_transactions"):
            self.stale_accounts.add(account.id)

    def _apply_delete_account(self, mutation: PendingMutation, response: Response) -> None:
        for raw_id in response.get("deleted_ids", []):
            account_id = UUID(str(raw_id))
            self.accounts.pop(account_id, None)
            self.balances.pop(account_id, None)

    def _apply_import(self, mutation: PendingMutation, response: Response) -> None:
        for raw_id in response.get("replaced_ids", []):
            account_id = UUID(str(raw_id))
            self.accounts.pop(account_id, None)
            self.balances.pop(account_id, None)
        accounts = [self._store_account(raw) for raw in response.get("accounts", [])]
        self._store_balances(response.get("balances", []))
        for client_ref, account in zip(mutation.data.client_refs, accounts):
            self.id_map[client_ref] = account.id
