"""
Atomic Transaction Orchestrator

Every multi-row financial mutation (single transactions, transfers,
bill payments, installment and recurring series, account changes) is
run here as an all-or-nothing operation, followed by an authoritative
balance recalculation of every account it touched.

DESIGN DECISION: Storage offers single-row writes only, so atomicity is
built from compensations. Each write step registers how to undo itself
on the operation's CompensationLog. If any later step fails:
1. the recorded compensations run newest first
2. the affected balances are recomputed
3. the original error is raised again

If a compensation itself fails the operation ends with a
PartialWriteError listing the identities that may still exist. It is
never reported as a success and never silently swallowed.

Read-side checks (ownership, locked periods, credit and overdraft
limits) run before the first write whenever they can, so most
rejections leave nothing to undo.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional
from uuid import UUID

import structlog

from fintrack.audit import AuditLogger, create_correlation_id
from fintrack.config import LedgerSettings, get_settings
from fintrack.errors import (
    ConstraintError,
    LedgerError,
    PartialWriteError,
    ValidationError,
    to_ledger_error,
)
from fintrack.ledger.balance import BalanceRecalculator
from fintrack.ledger.billing_cycle import (
    invoice_month_for_account,
    recalculate_invoice_months,
)
from fintrack.ledger.journal import (
    ChartOfAccounts,
    build_paired_entries,
    build_transaction_entries,
)
from fintrack.ledger.recurrence import occurrences_after
from fintrack.ledger.validator import is_balanced
from fintrack.models.audit import AuditEventType
from fintrack.models.ledger import (
    Account,
    AccountBalance,
    AccountType,
    EditScope,
    JournalEntry,
    Transaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from fintrack.models.requests import (
    AccountImportResult,
    AccountResult,
    DeleteAccountInput,
    DeleteTransactionInput,
    EditAccountInput,
    EditTransactionInput,
    ImportAccountsInput,
    InstallmentInput,
    InstallmentSeriesResult,
    MutationResult,
    PairedTransactionResult,
    PayBillInput,
    RecurringInput,
    RecurringSeriesResult,
    TransactionInput,
    TransactionResult,
    TransactionUpdate,
    TransferInput,
)
from fintrack.services.storage.interface import (
    ChartOfAccountsLookup,
    LedgerStorageInterface,
    PeriodLockChecker,
)

logger = structlog.get_logger(__name__)

Undo = Callable[[], Awaitable[Any]]


# =============================================================================
# COMPENSATION LOG
# =============================================================================

@dataclass
class CompensationStep:
    name: str
    undo: Undo
    ids: list[UUID] = field(default_factory=list)


class CompensationLog:
    """
    Undo actions registered by the write steps of one operation.

    A write step announces itself with ``step()`` and, once the write has
    committed, registers how to undo it with ``record()``. Compensation
    runs the recorded actions newest first.
    """

    def __init__(self, operation: str, correlation_id: UUID):
        self.operation = operation
        self.correlation_id = correlation_id
        self.current_step = "validate"
        self.steps: list[CompensationStep] = []
        self.affected_accounts: list[UUID] = []

    def step(self, name: str) -> None:
        self.current_step = name

    def record(
        self,
        undo: Undo,
        ids: Iterable[UUID] = (),
        accounts: Iterable[UUID] = (),
    ) -> None:
        self.steps.append(CompensationStep(self.current_step, undo, list(ids)))
        self.touch(*accounts)

    def touch(self, *account_ids: UUID) -> None:
        for account_id in account_ids:
            if account_id not in self.affected_accounts:
                self.affected_accounts.append(account_id)

    @property
    def has_writes(self) -> bool:
        return bool(self.steps)

    @property
    def committed_ids(self) -> list[UUID]:
        return list(dict.fromkeys(i for step in self.steps for i in step.ids))


def _group_root(tx: Transaction) -> Optional[UUID]:
    """Parent id of the installment or recurring series ``tx`` belongs to."""
    if tx.parent_transaction_id:
        return tx.parent_transaction_id
    if (tx.installments or 0) > 1 or tx.is_recurring:
        return tx.id
    return None


def _series_position(tx: Transaction) -> tuple[int, date]:
    return (tx.current_installment or 0, tx.date)


def _signed(amount: int, tx_type: TransactionType) -> int:
    return -abs(amount) if tx_type == TransactionType.EXPENSE else abs(amount)


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class TransactionOrchestrator:
    """
    Runs ledger operations for an authenticated user.

    Every public method takes the principal's ``user_id`` first and a
    validated request model second, and either returns a result model
    or raises a LedgerError subclass.
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        period_locks: Optional[PeriodLockChecker] = None,
        chart_lookup: Optional[ChartOfAccountsLookup] = None,
        audit_logger: Optional[AuditLogger] = None,
        balance_recalculator: Optional[BalanceRecalculator] = None,
        settings: Optional[LedgerSettings] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            storage: Row-level ledger storage
            period_locks: Locked-period collaborator. If None, no period
                         is ever locked.
            chart_lookup: Chart-of-accounts collaborator. If None, no
                         journal entries are written.
            audit_logger: Audit trail. Defaults to local-only logging.
            today: Clock used to decide which recurring children are
                   still in the future
        """
        self._storage = storage
        self._period_locks = period_locks
        self._chart_lookup = chart_lookup
        self._audit = audit_logger or AuditLogger()
        self._balances = balance_recalculator or BalanceRecalculator(storage)
        self._settings = settings or get_settings().ledger
        self._today = today or (lambda: utcnow().date())

    # -------------------------------------------------------------------------
    # Atomic scope
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def _atomic(self, operation: str) -> AsyncIterator[CompensationLog]:
        log = CompensationLog(operation, create_correlation_id())
        try:
            yield log
        except Exception as error:
            if not log.has_writes:
                translated = to_ledger_error(error)
                if isinstance(translated, LedgerError):
                    logger.info(
                        "operation_rejected",
                        operation=operation,
                        reason=translated.reason,
                        error=translated.message,
                    )
                    await self._audit.log_rejected(
                        operation, translated.reason, translated.message, log.correlation_id
                    )
                if translated is error:
                    raise
                raise translated from error

            outcome = await self._compensate(log, error)
            if outcome is error:
                raise
            raise outcome from error

    async def _compensate(self, log: CompensationLog, error: Exception) -> Exception:
        """Undo every recorded step; return the exception the caller should see."""
        failed_step = log.current_step
        committed = log.committed_ids
        logger.error(
            "operation_step_failed",
            operation=log.operation,
            step=failed_step,
            error=str(error),
            committed_ids=[str(i) for i in committed],
            account_ids=[str(a) for a in log.affected_accounts],
        )
        await self._audit.log_step_failed(
            log.operation, failed_step, str(error), committed, log.correlation_id
        )

        undone: list[str] = []
        for index in range(len(log.steps) - 1, -1, -1):
            entry = log.steps[index]
            try:
                await entry.undo()
            except Exception as undo_error:
                remaining = list(dict.fromkeys(
                    i for step in log.steps[: index + 1] for i in step.ids
                ))
                logger.critical(
                    "compensation_failed",
                    operation=log.operation,
                    step=entry.name,
                    error=str(undo_error),
                    committed_ids=[str(i) for i in remaining],
                )
                await self._audit.log_compensation_failed(
                    log.operation, entry.name, str(undo_error), remaining, log.correlation_id
                )
                return PartialWriteError(
                    f"{log.operation} failed at '{failed_step}' and could not be rolled back",
                    operation=log.operation,
                    committed_ids=remaining,
                    inconsistent=True,
                    details={
                        "failed_step": failed_step,
                        "compensation_step": entry.name,
                        "error": str(error),
                    },
                )
            undone.append(entry.name)

        try:
            existing = [
                account_id for account_id in log.affected_accounts
                if await self._storage.get_account(account_id) is not None
            ]
            await self._balances.recalculate_many(existing)
        except Exception as recalc_error:
            logger.critical(
                "compensation_recalculation_failed",
                operation=log.operation,
                error=str(recalc_error),
            )
            await self._audit.log_compensation_failed(
                log.operation, "recalculate_balances", str(recalc_error), [], log.correlation_id
            )
            return PartialWriteError(
                f"{log.operation} was rolled back but balances could not be recomputed",
                operation=log.operation,
                inconsistent=True,
                details={
                    "account_ids": [str(a) for a in log.affected_accounts],
                    "error": str(error),
                },
            )

        logger.warning("operation_compensated", operation=log.operation, undone_steps=undone)
        await self._audit.log_compensated(log.operation, undone, log.correlation_id)
        return to_ledger_error(error)

    # -------------------------------------------------------------------------
    # Read-side checks
    # -------------------------------------------------------------------------

    async def _require_account(self, user_id: UUID, account_id: UUID) -> Account:
        account = await self._storage.get_account(account_id)
        if account is None or account.user_id != user_id:
            raise ConstraintError(
                f"Account not found: {account_id}",
                reason="not_found",
                details={"account_id": str(account_id)},
            )
        return account

    async def _require_transaction(self, user_id: UUID, transaction_id: UUID) -> Transaction:
        tx = await self._storage.get_transaction(transaction_id)
        if tx is None or tx.user_id != user_id:
            raise ConstraintError(
                f"Transaction not found: {transaction_id}",
                reason="not_found",
                details={"transaction_id": str(transaction_id)},
            )
        return tx

    async def _check_unlocked(self, user_id: UUID, *days: date) -> None:
        if self._period_locks is None:
            return
        for day in dict.fromkeys(days):
            if await self._period_locks.is_locked(user_id, day):
                raise ConstraintError(
                    f"The period containing {day.isoformat()} is locked",
                    reason="period_locked",
                    details={"date": day.isoformat()},
                )

    def _check_limits(self, amount: Optional[int], description: Optional[str] = None) -> None:
        if amount is not None and abs(amount) > self._settings.max_transaction_amount:
            raise ValidationError(
                f"Amount exceeds the maximum of {self._settings.max_transaction_amount}",
                field="amount",
                details={
                    "max": self._settings.max_transaction_amount,
                    "requested": amount,
                },
            )
        if description and len(description) > self._settings.max_description_length:
            raise ValidationError(
                f"Description longer than {self._settings.max_description_length} characters",
                field="description",
            )

    @staticmethod
    def _check_available_credit(account: Account, amount: int) -> None:
        current_debt = abs(min(account.balance, 0))
        limit = account.limit_amount or 0
        available = limit - current_debt
        if amount > available:
            raise ConstraintError(
                f"Credit limit exceeded on {account.name}",
                reason="credit_limit_exceeded",
                details={
                    "available": available,
                    "requested": amount,
                    "limit": limit,
                    "current_debt": current_debt,
                },
            )

    @staticmethod
    def _check_overdraft(account: Account, amount: int) -> None:
        limit = account.limit_amount or 0
        future_balance = account.balance - amount
        if future_balance < 0 and abs(future_balance) > limit:
            raise ConstraintError(
                f"Transfer exceeds the overdraft limit of {account.name}",
                reason="overdraft_limit_exceeded",
                details={
                    "available": account.balance + limit,
                    "requested": amount,
                    "limit": limit,
                    "future_balance": future_balance,
                },
            )

    # -------------------------------------------------------------------------
    # Write steps
    # -------------------------------------------------------------------------

    async def _chart(self, user_id: UUID) -> ChartOfAccounts:
        if self._chart_lookup is None:
            return ChartOfAccounts([])
        return ChartOfAccounts(await self._chart_lookup.list_ledger_accounts(user_id))

    async def _insert_transaction(
        self,
        log: CompensationLog,
        tx: Transaction,
        step: str,
    ) -> Transaction:
        log.step(step)
        stored = await self._storage.insert_transaction(tx)
        log.record(
            lambda: self._storage.delete_transaction(stored.id),
            ids=[stored.id],
            accounts=[stored.account_id],
        )
        return stored

    async def _write_entries(self, log: CompensationLog, entries: list[JournalEntry]) -> None:
        if not entries:
            return
        if not is_balanced(entries):
            raise LedgerError(
                "Refusing to write unbalanced journal entries",
                reason="unbalanced_entries",
            )
        log.step("insert_journal_entries")
        await self._storage.insert_journal_entries(entries)
        transaction_ids = list(dict.fromkeys(e.transaction_id for e in entries))
        log.record(
            lambda: self._delete_entries(transaction_ids),
            ids=[e.id for e in entries],
        )

    async def _delete_entries(self, transaction_ids: list[UUID]) -> None:
        for transaction_id in transaction_ids:
            await self._storage.delete_journal_entries(transaction_id)

    async def _remove_entries(self, log: CompensationLog, transaction_id: UUID) -> None:
        log.step("delete_journal_entries")
        removed = await self._storage.delete_journal_entries(transaction_id)
        if removed:
            log.record(
                lambda: self._storage.insert_journal_entries(removed),
                ids=[e.id for e in removed],
            )

    async def _recalculate(self, log: CompensationLog, *account_ids: UUID) -> list[AccountBalance]:
        log.step("recalculate_balances")
        return await self._balances.recalculate_many(list(account_ids))

    async def _create(
        self,
        log: CompensationLog,
        user_id: UUID,
        data: TransactionInput,
        chart: ChartOfAccounts,
    ) -> tuple[Transaction, Account]:
        """Checks, insert and journal for one income or expense."""
        self._check_limits(data.amount, data.description)
        await self._check_unlocked(user_id, data.date)
        account = await self._require_account(user_id, data.account_id)
        if (
            account.type == AccountType.CREDIT
            and data.type == TransactionType.EXPENSE
            and data.status == TransactionStatus.COMPLETED
        ):
            self._check_available_credit(account, data.amount)

        if data.invoice_month_overridden:
            invoice_month = data.invoice_month
        else:
            invoice_month = invoice_month_for_account(account, data.date)

        tx = Transaction(
            user_id=user_id,
            description=data.description,
            amount=_signed(data.amount, data.type),
            date=data.date,
            type=data.type,
            status=data.status,
            account_id=account.id,
            category_id=data.category_id,
            invoice_month=invoice_month,
            invoice_month_overridden=data.invoice_month_overridden,
        )
        tx = await self._insert_transaction(log, tx, "insert_transaction")
        await self._write_entries(log, build_transaction_entries(chart, tx, account))
        return tx, account

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def create_transaction(self, user_id: UUID, data: TransactionInput) -> TransactionResult:
        """
        Create one income or expense.

        Card expenses get their invoice month from the billing cycle unless
        the request overrides it. Completed rows get a journal pair when
        the user's chart of accounts maps, and the account balance is
        recalculated before returning.
        """
        async with self._atomic("create_transaction") as log:
            chart = await self._chart(user_id)
            tx, account = await self._create(log, user_id, data, chart)
            balance = None
            if tx.is_completed:
                [balance] = await self._recalculate(log, account.id)

        logger.info(
            "transaction_created",
            transaction_id=str(tx.id),
            account_id=str(account.id),
            amount=tx.amount,
            invoice_month=tx.invoice_month,
        )
        await self._audit.log_transaction_created(tx.id, account.id, tx.amount, log.correlation_id)
        return TransactionResult(transaction=tx, balance=balance)

    async def _select_scope(
        self,
        user_id: UUID,
        target: Transaction,
        scope: EditScope,
    ) -> list[Transaction]:
        root = _group_root(target)
        if root is None or scope == EditScope.CURRENT:
            return [target]

        members = {
            tx.id: tx
            for tx in await self._storage.list_transactions(
                user_id=user_id, parent_transaction_id=root
            )
        }
        parent = await self._storage.get_transaction(root)
        if parent is not None and parent.user_id == user_id:
            members[parent.id] = parent
        members.setdefault(target.id, target)

        rows = sorted(members.values(), key=_series_position)
        if scope == EditScope.ALL:
            return rows
        position = _series_position(target)
        return [tx for tx in rows if _series_position(tx) >= position]

    def _apply_update(
        self,
        row: Transaction,
        updates: TransactionUpdate,
        day_shift: timedelta,
        accounts: dict[UUID, Account],
    ) -> Transaction:
        fields = updates.model_fields_set
        changes: dict[str, Any] = {}

        for name in ("description", "status", "account_id"):
            if name in fields and getattr(updates, name) is not None:
                changes[name] = getattr(updates, name)
        if "category_id" in fields:
            changes["category_id"] = updates.category_id

        new_type = row.type
        if "type" in fields and updates.type is not None:
            if row.type == TransactionType.TRANSFER:
                raise ValidationError("Transfers cannot change type", field="type")
            new_type = updates.type
        magnitude = updates.amount if "amount" in fields and updates.amount else abs(row.amount)
        if new_type == TransactionType.TRANSFER:
            changes["amount"] = -magnitude if row.amount < 0 else magnitude
        else:
            changes["amount"] = _signed(magnitude, new_type)
        changes["type"] = new_type

        new_date = row.date + day_shift
        changes["date"] = new_date

        if "invoice_month" in fields:
            changes["invoice_month"] = updates.invoice_month
            changes["invoice_month_overridden"] = bool(updates.invoice_month)
        elif not row.invoice_month_overridden:
            account = accounts[changes.get("account_id", row.account_id)]
            changes["invoice_month"] = invoice_month_for_account(account, new_date)

        return row.model_copy(update=changes)

    async def edit_transaction(self, user_id: UUID, data: EditTransactionInput) -> MutationResult:
        """
        Edit a transaction, or several members of its series.

        With a multi-row scope a date change shifts every selected row by
        the same number of days, keeping the series spacing.
        """
        updates = data.updates
        fields = updates.model_fields_set

        async with self._atomic("edit_transaction") as log:
            self._check_limits(updates.amount, updates.description)
            target = await self._require_transaction(user_id, data.transaction_id)
            rows = await self._select_scope(user_id, target, data.scope)

            day_shift = timedelta(0)
            if "date" in fields and updates.date is not None:
                day_shift = updates.date - target.date

            accounts: dict[UUID, Account] = {}
            account_ids = {row.account_id for row in rows}
            if "account_id" in fields and updates.account_id is not None:
                account_ids.add(updates.account_id)
            for account_id in account_ids:
                accounts[account_id] = await self._require_account(user_id, account_id)

            edited = [self._apply_update(row, updates, day_shift, accounts) for row in rows]
            await self._check_unlocked(
                user_id,
                *(row.date for row in rows),
                *(tx.date for tx in edited),
            )

            chart = await self._chart(user_id)
            saved = []
            for old, new in zip(rows, edited):
                log.step("update_transaction")
                stored = await self._storage.update_transaction(new)
                log.record(
                    lambda old=old: self._storage.update_transaction(old),
                    ids=[old.id],
                    accounts=[old.account_id, new.account_id],
                )
                if old.linked_transaction_id is None and old.type != TransactionType.TRANSFER:
                    await self._remove_entries(log, stored.id)
                    await self._write_entries(
                        log,
                        build_transaction_entries(chart, stored, accounts[stored.account_id]),
                    )
                saved.append(stored)

            balances = await self._recalculate(log, *log.affected_accounts)

        logger.info(
            "transactions_updated",
            transaction_ids=[str(tx.id) for tx in saved],
            scope=data.scope.value,
        )
        await self._audit.log_transactions_updated(
            [tx.id for tx in saved], data.scope.value, log.correlation_id
        )
        return MutationResult(transactions=saved, balances=balances)

    async def delete_transaction(self, user_id: UUID, data: DeleteTransactionInput) -> MutationResult:
        """
        Delete a transaction, its series members per scope, and the linked
        half of any transfer or bill payment, with their journal entries.
        """
        async with self._atomic("delete_transaction") as log:
            target = await self._require_transaction(user_id, data.transaction_id)
            selected = {tx.id: tx for tx in await self._select_scope(user_id, target, data.scope)}

            for tx in list(selected.values()):
                partner_id = tx.linked_transaction_id
                if partner_id and partner_id not in selected:
                    partner = await self._storage.get_transaction(partner_id)
                    if partner is not None and partner.user_id == user_id:
                        selected[partner.id] = partner

            await self._check_unlocked(user_id, *(tx.date for tx in selected.values()))

            for tx in selected.values():
                await self._remove_entries(log, tx.id)
                log.step("delete_transaction")
                await self._storage.delete_transaction(tx.id)
                log.record(
                    lambda tx=tx: self._storage.insert_transaction(tx),
                    ids=[tx.id],
                    accounts=[tx.account_id],
                )

            balances = await self._recalculate(log, *log.affected_accounts)

        deleted_ids = list(selected)
        logger.info("transactions_deleted", transaction_ids=[str(i) for i in deleted_ids])
        await self._audit.log_transactions_deleted(deleted_ids, log.correlation_id)
        return MutationResult(deleted_ids=deleted_ids, balances=balances)

    # -------------------------------------------------------------------------
    # Paired operations
    # -------------------------------------------------------------------------

    async def _write_pair(
        self,
        log: CompensationLog,
        user_id: UUID,
        outflow: Transaction,
        inflow: Transaction,
        source: Account,
        destination: Account,
    ) -> PairedTransactionResult:
        """Insert, cross-link, journal and recalculate a linked pair."""
        outflow = await self._insert_transaction(log, outflow, "insert_outflow")
        inflow = await self._insert_transaction(
            log,
            inflow.model_copy(update={"linked_transaction_id": outflow.id}),
            "insert_inflow",
        )
        log.step("link_outflow")
        outflow = await self._storage.update_transaction(
            outflow.model_copy(update={"linked_transaction_id": inflow.id})
        )

        chart = await self._chart(user_id)
        await self._write_entries(log, build_paired_entries(chart, outflow, source, destination))

        outflow_balance, inflow_balance = await self._recalculate(log, source.id, destination.id)
        return PairedTransactionResult(
            outflow=outflow,
            inflow=inflow,
            outflow_balance=outflow_balance,
            inflow_balance=inflow_balance,
        )

    async def transfer(self, user_id: UUID, data: TransferInput) -> PairedTransactionResult:
        """
        Move money between two accounts as a linked pair.

        Checking and savings sources may go negative only within their
        overdraft limit; credit sources only within available credit.
        """
        async with self._atomic("transfer") as log:
            self._check_limits(data.amount, data.description)
            await self._check_unlocked(user_id, data.date)
            source = await self._require_account(user_id, data.from_account_id)
            destination = await self._require_account(user_id, data.to_account_id)

            if source.type == AccountType.CREDIT:
                self._check_available_credit(source, data.amount)
            elif source.type in (AccountType.CHECKING, AccountType.SAVINGS):
                self._check_overdraft(source, data.amount)

            outflow = Transaction(
                user_id=user_id,
                description=data.description or f"Transfer to {destination.name}",
                amount=-data.amount,
                date=data.date,
                type=TransactionType.TRANSFER,
                account_id=source.id,
                to_account_id=destination.id,
                invoice_month=invoice_month_for_account(source, data.date),
            )
            inflow = Transaction(
                user_id=user_id,
                description=data.description or f"Transfer from {source.name}",
                amount=data.amount,
                date=data.date,
                type=TransactionType.TRANSFER,
                account_id=destination.id,
                invoice_month=invoice_month_for_account(destination, data.date),
            )
            result = await self._write_pair(log, user_id, outflow, inflow, source, destination)

        logger.info(
            "transfer_completed",
            outflow_id=str(result.outflow.id),
            inflow_id=str(result.inflow.id),
            amount=data.amount,
        )
        await self._audit.log_paired_transaction(
            "transfer", result.outflow.id, result.inflow.id, data.amount, log.correlation_id
        )
        return result

    async def pay_bill(self, user_id: UUID, data: PayBillInput) -> PairedTransactionResult:
        """
        Pay a credit card bill from a bank account.

        Writes an expense on the bank account and an income on the card,
        cross-linked, plus one journal pair (debit the card liability,
        credit the bank asset) when the chart of accounts maps. A failure
        at any step, journal and balance steps included, undoes the
        whole payment.
        """
        async with self._atomic("pay_bill") as log:
            self._check_limits(data.amount, data.description)
            await self._check_unlocked(user_id, data.payment_date)
            card = await self._require_account(user_id, data.credit_account_id)
            bank = await self._require_account(user_id, data.debit_account_id)
            if card.type != AccountType.CREDIT:
                raise ConstraintError(
                    f"{card.name} is not a credit card",
                    reason="not_a_credit_account",
                    details={"account_id": str(card.id)},
                )

            outflow = Transaction(
                user_id=user_id,
                description=data.description or f"Bill payment {card.name}",
                amount=-data.amount,
                date=data.payment_date,
                type=TransactionType.EXPENSE,
                account_id=bank.id,
                to_account_id=card.id,
                invoice_month=invoice_month_for_account(bank, data.payment_date),
            )
            inflow = Transaction(
                user_id=user_id,
                description=data.description or f"Payment received from {bank.name}",
                amount=data.amount,
                date=data.payment_date,
                type=TransactionType.INCOME,
                account_id=card.id,
                invoice_month=invoice_month_for_account(card, data.payment_date),
            )
            result = await self._write_pair(log, user_id, outflow, inflow, bank, card)

        logger.info(
            "bill_paid",
            debit_tx=str(result.outflow.id),
            credit_tx=str(result.inflow.id),
            amount=data.amount,
        )
        await self._audit.log_paired_transaction(
            "pay_bill", result.outflow.id, result.inflow.id, data.amount, log.correlation_id
        )
        return result

    # -------------------------------------------------------------------------
    # Series
    # -------------------------------------------------------------------------

    async def create_installments(
        self,
        user_id: UUID,
        installments: list[InstallmentInput],
    ) -> InstallmentSeriesResult:
        """
        Create an installment series.

        Each installment goes through the same checks as a single
        transaction, so a card purchase split in N parts is checked
        against the credit left after the parts before it. The first row
        becomes the parent and every row, parent included, is stamped with
        ``installments``, ``current_installment`` and
        ``parent_transaction_id``. Any failure deletes every row created.
        """
        if not installments:
            raise ValidationError("At least one installment is required", field="installments")

        async with self._atomic("create_installments") as log:
            chart = await self._chart(user_id)
            created: list[Transaction] = []
            for item in installments:
                tx, account = await self._create(log, user_id, item.to_transaction_input(), chart)
                if tx.is_completed:
                    await self._recalculate(log, account.id)
                created.append(tx)

            parent_id = created[0].id
            total = len(created)
            linked = []
            for index, tx in enumerate(created):
                log.step("link_installment")
                linked.append(await self._storage.update_transaction(tx.model_copy(update={
                    "installments": total,
                    "current_installment": index + 1,
                    "parent_transaction_id": parent_id,
                })))

            balances = await self._recalculate(log, *log.affected_accounts)

        logger.info("installments_created", parent_id=str(parent_id), count=total)
        await self._audit.log_series_created(False, parent_id, total, log.correlation_id)
        return InstallmentSeriesResult(parent_id=parent_id, transactions=linked, balances=balances)

    async def generate_recurring(self, user_id: UUID, data: RecurringInput) -> RecurringSeriesResult:
        """
        Create a recurring parent and its future occurrences.

        Children run up to the end date (inclusive) or the configured
        horizon (exclusive). Occurrences inside a locked period are
        skipped and reported; a locked start date rejects the request.
        Children dated after today are created as pending. On a card,
        the parent and every settled child are checked against the
        available credit together.
        """
        async with self._atomic("generate_recurring") as log:
            self._check_limits(data.amount, data.description)
            await self._check_unlocked(user_id, data.date)
            account = await self._require_account(user_id, data.account_id)

            amount = _signed(data.amount, data.type)
            today = self._today()
            parent = Transaction(
                user_id=user_id,
                description=data.description,
                amount=amount,
                date=data.date,
                type=data.type,
                status=data.status,
                account_id=account.id,
                category_id=data.category_id,
                invoice_month=invoice_month_for_account(account, data.date),
                is_recurring=True,
                recurrence_type=data.recurrence_type,
                recurrence_end_date=data.recurrence_end_date,
            )

            children: list[Transaction] = []
            skipped: list[date] = []
            for day in occurrences_after(
                data.date,
                data.recurrence_type,
                data.recurrence_end_date,
                self._settings.recurring_horizon_months,
            ):
                if self._period_locks and await self._period_locks.is_locked(user_id, day):
                    skipped.append(day)
                    continue
                children.append(Transaction(
                    user_id=user_id,
                    description=data.description,
                    amount=amount,
                    date=day,
                    type=data.type,
                    status=TransactionStatus.PENDING if day > today else data.status,
                    account_id=account.id,
                    category_id=data.category_id,
                    invoice_month=invoice_month_for_account(account, day),
                    parent_transaction_id=parent.id,
                    recurrence_type=data.recurrence_type,
                ))

            if account.type == AccountType.CREDIT and data.type == TransactionType.EXPENSE:
                # Every occurrence settled today or earlier draws on the limit
                settled = sum(1 for tx in [parent, *children] if tx.is_completed)
                if settled:
                    self._check_available_credit(account, data.amount * settled)

            chart = await self._chart(user_id)
            for tx in [parent, *children]:
                stored = await self._insert_transaction(log, tx, "insert_occurrence")
                await self._write_entries(log, build_transaction_entries(chart, stored, account))

            [balance] = await self._recalculate(log, account.id)

        created_count = 1 + len(children)
        logger.info(
            "recurring_series_created",
            parent_id=str(parent.id),
            created_count=created_count,
            skipped_dates=[d.isoformat() for d in skipped],
        )
        await self._audit.log_series_created(True, parent.id, created_count, log.correlation_id)
        return RecurringSeriesResult(
            parent_id=parent.id,
            created_count=created_count,
            skipped_dates=skipped,
            balance=balance,
        )

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    async def edit_account(self, user_id: UUID, data: EditAccountInput) -> AccountResult:
        """
        Update account settings. The balance is never writable here.

        A change of closing or due day re-derives the invoice month of
        every row on the account that was not overridden by hand.
        """
        async with self._atomic("edit_account") as log:
            account = await self._require_account(user_id, data.account_id)
            changes = {
                name: getattr(data.updates, name)
                for name in data.updates.model_fields_set
            }
            if changes.get("name") is None:
                changes.pop("name", None)
            updated = Account.model_validate({**account.model_dump(), **changes})
            billing_changed = (
                (updated.closing_day, updated.due_day) != (account.closing_day, account.due_day)
            )

            log.step("update_account")
            updated = await self._storage.update_account(updated)
            log.record(lambda: self._storage.update_account(account), ids=[account.id])

            recomputed: list[UUID] = []
            if billing_changed:
                rows = await self._storage.list_transactions(account_id=account.id)
                previous = {tx.id: tx for tx in rows}
                for tx in recalculate_invoice_months(updated, rows):
                    log.step("recompute_invoice_month")
                    await self._storage.update_transaction(tx)
                    log.record(
                        lambda old=previous[tx.id]: self._storage.update_transaction(old),
                        ids=[tx.id],
                    )
                    recomputed.append(tx.id)

        logger.info(
            "account_updated",
            account_id=str(account.id),
            recomputed_invoice_months=len(recomputed),
        )
        await self._audit.log_account_change(
            AuditEventType.ACCOUNT_UPDATED, [account.id], log.correlation_id
        )
        return AccountResult(account=updated, recomputed_transactions=recomputed)

    async def delete_account(self, user_id: UUID, data: DeleteAccountInput) -> MutationResult:
        """Delete an account that has no transactions."""
        async with self._atomic("delete_account") as log:
            account = await self._require_account(user_id, data.account_id)
            rows = await self._storage.list_transactions(account_id=account.id)
            if rows:
                raise ConstraintError(
                    f"{account.name} still has transactions",
                    reason="account_has_transactions",
                    details={
                        "account_id": str(account.id),
                        "transaction_count": len(rows),
                    },
                )
            log.step("delete_account")
            await self._storage.delete_account(account.id)
            log.record(lambda: self._storage.insert_account(account), ids=[account.id])

        logger.info("account_deleted", account_id=str(account.id))
        await self._audit.log_account_change(
            AuditEventType.ACCOUNT_DELETED, [account.id], log.correlation_id
        )
        return MutationResult(deleted_ids=[account.id])

    async def import_accounts(self, user_id: UUID, data: ImportAccountsInput) -> AccountImportResult:
        """
        Insert a batch of accounts, optionally replacing existing ones.

        A non-zero ``initial_balance`` is booked as a completed
        "Opening balance" transaction dated today, so the balance stays
        derivable from transactions.
        """
        async with self._atomic("import_accounts") as log:
            replaced: list[Account] = []
            for account_id in data.replace_ids:
                existing = await self._require_account(user_id, account_id)
                if await self._storage.list_transactions(account_id=account_id):
                    raise ConstraintError(
                        f"{existing.name} still has transactions",
                        reason="account_has_transactions",
                        details={"account_id": str(account_id)},
                    )
                replaced.append(existing)

            today = self._today()
            planned = []
            for item in data.accounts:
                self._check_limits(item.initial_balance)
                planned.append((item, Account(
                    user_id=user_id,
                    name=item.name,
                    type=item.type,
                    limit_amount=item.limit_amount,
                    closing_day=item.closing_day,
                    due_day=item.due_day,
                )))
            if any(item.initial_balance for item, _ in planned):
                await self._check_unlocked(user_id, today)

            for existing in replaced:
                log.step("delete_replaced_account")
                await self._storage.delete_account(existing.id)
                log.record(
                    lambda existing=existing: self._storage.insert_account(existing),
                    ids=[existing.id],
                )

            created: list[Account] = []
            for item, account in planned:
                log.step("insert_account")
                account = await self._storage.insert_account(account)
                log.record(
                    lambda account=account: self._storage.delete_account(account.id),
                    ids=[account.id],
                    accounts=[account.id],
                )
                if item.initial_balance:
                    tx_type = TransactionType.INCOME if item.initial_balance > 0 else TransactionType.EXPENSE
                    await self._insert_transaction(log, Transaction(
                        user_id=user_id,
                        description="Opening balance",
                        amount=item.initial_balance,
                        date=today,
                        type=tx_type,
                        account_id=account.id,
                        invoice_month=invoice_month_for_account(account, today),
                    ), "insert_opening_balance")
                created.append(account)

            balances = await self._recalculate(log, *(a.id for a in created))

        accounts = [
            account.model_copy(update={"balance": balance.balance})
            for account, balance in zip(created, balances)
        ]
        logger.info(
            "accounts_imported",
            account_ids=[str(a.id) for a in accounts],
            replaced_ids=[str(a.id) for a in replaced],
        )
        await self._audit.log_account_change(
            AuditEventType.ACCOUNTS_IMPORTED, [a.id for a in accounts], log.correlation_id
        )
        return AccountImportResult(
            accounts=accounts,
            replaced_ids=[a.id for a in replaced],
            balances=balances,
        )
