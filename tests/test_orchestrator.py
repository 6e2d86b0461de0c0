"""
Tests for the Atomic Transaction Orchestrator

Failure injection wraps single storage methods so a chosen call raises,
then checks that compensation left no partial rows behind.
"""

from datetime import date
from uuid import uuid4

import pytest

from fintrack.errors import (
    ConstraintError,
    LedgerError,
    PartialWriteError,
    TransientError,
    ValidationError,
)
from fintrack.models.audit import AuditEventType
from fintrack.models.ledger import (
    AccountType,
    EditScope,
    PeriodLock,
    RecurrenceType,
    TransactionStatus,
    TransactionType,
)
from fintrack.models.requests import (
    AccountImport,
    AccountUpdate,
    DeleteAccountInput,
    DeleteTransactionInput,
    EditAccountInput,
    EditTransactionInput,
    ImportAccountsInput,
    InstallmentInput,
    PayBillInput,
    RecurringInput,
    TransactionInput,
    TransactionUpdate,
    TransferInput,
)
from fintrack.services.storage import StorageError, StorageUnavailableError


def fail_nth(monkeypatch, storage, method, n=1, error=None):
    """Make the n-th call to ``storage.method`` raise."""
    original = getattr(storage, method)
    calls = {"count": 0}

    async def wrapper(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == n:
            raise error or StorageUnavailableError(f"{method} unavailable")
        return await original(*args, **kwargs)

    monkeypatch.setattr(storage, method, wrapper)


def expense(account, amount=5_000, day=date(2024, 3, 15), **overrides):
    fields = dict(
        description="Groceries",
        amount=amount,
        date=day,
        type=TransactionType.EXPENSE,
        account_id=account.id,
    )
    fields.update(overrides)
    return TransactionInput(**fields)


def lock(storage, user_id, start, end):
    storage.add_period_lock(PeriodLock(user_id=user_id, period_start=start, period_end=end))


def installment_series(account, count=3, amount=10_000):
    return [
        InstallmentInput(
            description=f"Laptop {i + 1}/{count}",
            amount=amount,
            date=date(2024, 1 + i, 10),
            account_id=account.id,
        )
        for i in range(count)
    ]


def event_types(audit_storage):
    return [e.event_type for e in audit_storage.events]


class TestCreateTransaction:
    """Tests for single income/expense creation."""

    @pytest.mark.asyncio
    async def test_expense_is_signed_and_balanced(self, orchestrator, storage, user_id, checking, chart):
        """An expense is stored negative, journaled and reflected in the balance."""
        result = await orchestrator.create_transaction(user_id, expense(checking))

        assert result.transaction.amount == -5_000
        assert result.balance.balance == -5_000
        assert storage.accounts[checking.id].balance == -5_000
        entries = await storage.list_journal_entries(transaction_id=result.transaction.id)
        assert len(entries) == 2
        assert {e.amount for e in entries} == {5_000}

    @pytest.mark.asyncio
    async def test_income_is_positive(self, orchestrator, user_id, checking):
        """An income is stored positive."""
        result = await orchestrator.create_transaction(
            user_id, expense(checking, amount=12_000, type=TransactionType.INCOME)
        )
        assert result.transaction.amount == 12_000
        assert result.balance.balance == 12_000

    @pytest.mark.asyncio
    async def test_card_expense_gets_invoice_month(self, orchestrator, user_id, card):
        """Card expenses are assigned to their statement."""
        after_close = await orchestrator.create_transaction(
            user_id, expense(card, day=date(2024, 3, 25))
        )
        before_close = await orchestrator.create_transaction(
            user_id, expense(card, day=date(2024, 3, 15))
        )

        assert after_close.transaction.invoice_month == "2024-05"
        assert before_close.transaction.invoice_month == "2024-04"
        assert after_close.transaction.invoice_month_overridden is False

    @pytest.mark.asyncio
    async def test_explicit_invoice_month_is_an_override(self, orchestrator, user_id, card):
        """A caller-supplied invoice month is kept and flagged."""
        result = await orchestrator.create_transaction(
            user_id, expense(card, invoice_month="2024-07")
        )
        assert result.transaction.invoice_month == "2024-07"
        assert result.transaction.invoice_month_overridden is True

    @pytest.mark.asyncio
    async def test_pending_transaction_does_not_touch_balance(self, orchestrator, storage, user_id, checking, chart):
        """Pending rows get no journal entries and no balance."""
        result = await orchestrator.create_transaction(
            user_id, expense(checking, status=TransactionStatus.PENDING)
        )

        assert result.balance is None
        assert storage.accounts[checking.id].balance == 0
        assert storage.journal_entries == {}

    @pytest.mark.asyncio
    async def test_credit_limit_exceeded(self, orchestrator, storage, audit_storage, user_id, card):
        """A card expense above available credit is refused with details."""
        await orchestrator.create_transaction(user_id, expense(card, amount=450_000))

        with pytest.raises(ConstraintError) as exc_info:
            await orchestrator.create_transaction(user_id, expense(card, amount=60_000))

        error = exc_info.value
        assert error.reason == "credit_limit_exceeded"
        assert error.details["available"] == 50_000
        assert error.details["requested"] == 60_000
        assert error.details["limit"] == 500_000
        assert error.details["current_debt"] == 450_000
        assert len(storage.transactions) == 1
        assert AuditEventType.OPERATION_REJECTED in event_types(audit_storage)

    @pytest.mark.asyncio
    async def test_locked_period_is_refused(self, orchestrator, storage, user_id, checking):
        """Writes dated inside a closed period are rejected before any write."""
        lock(storage, user_id, date(2024, 3, 1), date(2024, 3, 31))

        with pytest.raises(ConstraintError) as exc_info:
            await orchestrator.create_transaction(user_id, expense(checking))

        assert exc_info.value.reason == "period_locked"
        assert exc_info.value.details == {"date": "2024-03-15"}
        assert storage.transactions == {}

    @pytest.mark.asyncio
    async def test_other_users_account_is_not_found(self, orchestrator, checking):
        """An account owned by someone else looks like a missing one."""
        with pytest.raises(ConstraintError) as exc_info:
            await orchestrator.create_transaction(uuid4(), expense(checking))
        assert exc_info.value.reason == "not_found"

    @pytest.mark.asyncio
    async def test_amount_above_configured_maximum(self, orchestrator, user_id, checking, ledger_settings):
        """Amounts above the configured maximum are a validation error."""
        too_much = ledger_settings.max_transaction_amount + 1
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.create_transaction(user_id, expense(checking, amount=too_much))
        assert exc_info.value.field == "amount"

    @pytest.mark.asyncio
    async def test_journal_failure_rolls_back_the_row(self, monkeypatch, orchestrator, storage, user_id, checking, chart):
        """If the journal write fails the transaction row is removed again."""
        fail_nth(monkeypatch, storage, "insert_journal_entries")

        with pytest.raises(TransientError):
            await orchestrator.create_transaction(user_id, expense(checking))

        assert storage.transactions == {}
        assert storage.accounts[checking.id].balance == 0


class TestPayBill:
    """Tests for credit card bill payments."""

    @pytest.mark.asyncio
    async def test_payment_creates_linked_pair(self, orchestrator, storage, user_id, checking, card, chart):
        """10000 moves from checking to the card as two linked rows."""
        result = await orchestrator.pay_bill(user_id, PayBillInput(
            credit_account_id=card.id,
            debit_account_id=checking.id,
            amount=10_000,
            payment_date=date(2024, 3, 10),
        ))

        outflow, inflow = result.outflow, result.inflow
        assert outflow.amount == -10_000
        assert inflow.amount == 10_000
        assert outflow.account_id == checking.id
        assert inflow.account_id == card.id
        assert outflow.linked_transaction_id == inflow.id
        assert inflow.linked_transaction_id == outflow.id
        assert outflow.description == "Bill payment Visa"
        assert inflow.description == "Payment received from Checking"
        assert inflow.invoice_month == "2024-04"
        assert result.outflow_balance.balance == -10_000
        assert result.inflow_balance.balance == 10_000

        entries = await storage.list_journal_entries(transaction_id=outflow.id)
        by_side = {e.entry_type.value: e.ledger_account_id for e in entries}
        assert by_side == {"debit": chart["2.01.01"].id, "credit": chart["1.01.02"].id}

    @pytest.mark.asyncio
    async def test_paying_into_a_non_card_is_refused(self, orchestrator, user_id, checking, savings):
        """The credited account must be a credit card."""
        with pytest.raises(ConstraintError) as exc_info:
            await orchestrator.pay_bill(user_id, PayBillInput(
                credit_account_id=savings.id,
                debit_account_id=checking.id,
                amount=100,
                payment_date=date(2024, 3, 10),
            ))
        assert exc_info.value.reason == "not_a_credit_account"

    @pytest.mark.asyncio
    async def test_second_insert_failure_removes_first_row(
        self, monkeypatch, orchestrator, storage, audit_storage, user_id, checking, card
    ):
        """When the card-side insert fails, the bank-side row is deleted."""
        fail_nth(monkeypatch, storage, "insert_transaction", n=2)

        with pytest.raises(TransientError):
            await orchestrator.pay_bill(user_id, PayBillInput(
                credit_account_id=card.id,
                debit_account_id=checking.id,
                amount=10_000,
                payment_date=date(2024, 3, 10),
            ))

        assert await storage.list_transactions(account_id=checking.id) == []
        assert storage.accounts[checking.id].balance == 0
        types = event_types(audit_storage)
        assert AuditEventType.STEP_FAILED in types
        assert AuditEventType.COMPENSATION_COMPLETED in types

    @pytest.mark.asyncio
    async def test_journal_failure_undoes_the_whole_payment(
        self, monkeypatch, orchestrator, storage, user_id, checking, card, chart
    ):
        """Journal entries are part of the payment: failing them removes both rows."""
        fail_nth(monkeypatch, storage, "insert_journal_entries", error=StorageError("quota"))

        with pytest.raises(LedgerError) as exc_info:
            await orchestrator.pay_bill(user_id, PayBillInput(
                credit_account_id=card.id,
                debit_account_id=checking.id,
                amount=10_000,
                payment_date=date(2024, 3, 10),
            ))

        assert exc_info.value.reason == "storage_error"
        assert storage.transactions == {}
        assert storage.journal_entries == {}

    @pytest.mark.asyncio
    async def test_failed_compensation_reports_inconsistent_state(
        self, monkeypatch, orchestrator, storage, audit_storage, user_id, checking, card
    ):
        """If the undo itself fails, the committed ids are reported."""
        fail_nth(monkeypatch, storage, "insert_transaction", n=2)
        fail_nth(monkeypatch, storage, "delete_transaction", n=1)

        with pytest.raises(PartialWriteError) as exc_info:
            await orchestrator.pay_bill(user_id, PayBillInput(
                credit_account_id=card.id,
                debit_account_id=checking.id,
                amount=10_000,
                payment_date=date(2024, 3, 10),
            ))

        error = exc_info.value
        [leftover] = list(storage.transactions)
        assert error.inconsistent is True
        assert error.committed_ids == [leftover]
        assert error.details["failed_step"] == "insert_inflow"
        assert AuditEventType.COMPENSATION_FAILED in event_types(audit_storage)


class TestTransfer:
    """Tests for transfers between accounts."""

    @pytest.mark.asyncio
    async def test_transfer_within_overdraft(self, orchestrator, account_factory, user_id, savings):
        """A checking account may go negative up to its overdraft limit."""
        checking = account_factory(name="Checking", limit_amount=10_000)

        result = await orchestrator.transfer(user_id, TransferInput(
            from_account_id=checking.id,
            to_account_id=savings.id,
            amount=5_000,
            date=date(2024, 3, 1),
        ))

        assert result.outflow.type == TransactionType.TRANSFER
        assert result.outflow.description == "Transfer to Savings"
        assert result.inflow.description == "Transfer from Checking"
        assert result.outflow.to_account_id == savings.id
        assert result.outflow_balance.balance == -5_000
        assert result.inflow_balance.balance == 5_000

    @pytest.mark.asyncio
    async def test_overdraft_limit_exceeded(self, orchestrator, storage, user_id, checking, savings):
        """Without an overdraft limit the source cannot go negative."""
        with pytest.raises(ConstraintError) as exc_info:
            await orchestrator.transfer(user_id, TransferInput(
                from_account_id=checking.id,
                to_account_id=savings.id,
                amount=1,
                date=date(2024, 3, 1),
            ))
        assert exc_info.value.reason == "overdraft_limit_exceeded"
        assert storage.transactions == {}

    @pytest.mark.asyncio
    async def test_transfer_from_card_checks_available_credit(self, orchestrator, user_id, card, savings):
        """Card sources are limited by available credit."""
        with pytest.raises(ConstraintError) as exc_info:
            await orchestrator.transfer(user_id, TransferInput(
                from_account_id=card.id,
                to_account_id=savings.id,
                amount=500_001,
                date=date(2024, 3, 1),
            ))
        assert exc_info.value.reason == "credit_limit_exceeded"


class TestInstallments:
    """Tests for installment series."""

    @pytest.mark.asyncio
    async def test_series_shares_one_parent(self, orchestrator, storage, user_id, card):
        """N installments share a parent and number 1..N without gaps."""
        result = await orchestrator.create_installments(user_id, installment_series(card))

        rows = await storage.list_transactions(account_id=card.id)
        assert len(rows) == 3
        assert {r.parent_transaction_id for r in rows} == {result.parent_id}
        assert sorted(r.current_installment for r in rows) == [1, 2, 3]
        assert {r.installments for r in rows} == {3}
        assert [r.invoice_month for r in rows] == ["2024-02", "2024-03", "2024-04"]
        assert storage.accounts[card.id].balance == -30_000

    @pytest.mark.asyncio
    async def test_limit_failure_removes_every_installment(self, orchestrator, storage, account_factory, user_id):
        """A later installment over the limit deletes the earlier ones."""
        card = account_factory(
            name="Small Card", type=AccountType.CREDIT,
            limit_amount=25_000, closing_day=20, due_day=10,
        )

        with pytest.raises(ConstraintError) as exc_info:
            await orchestrator.create_installments(user_id, installment_series(card))

        assert exc_info.value.reason == "credit_limit_exceeded"
        assert storage.transactions == {}
        assert storage.accounts[card.id].balance == 0

    @pytest.mark.asyncio
    async def test_empty_series_is_invalid(self, orchestrator, user_id):
        """At least one installment is required."""
        with pytest.raises(ValidationError):
            await orchestrator.create_installments(user_id, [])


class TestEditTransaction:
    """Tests for transaction edits."""

    @pytest.mark.asyncio
    async def test_amount_edit_updates_balance_and_journal(self, orchestrator, storage, user_id, checking, chart):
        """Editing the amount re-signs it and replaces its journal entries."""
        created = await orchestrator.create_transaction(user_id, expense(checking))

        result = await orchestrator.edit_transaction(user_id, EditTransactionInput(
            transaction_id=created.transaction.id,
            updates=TransactionUpdate(amount=7_000),
        ))

        assert result.transactions[0].amount == -7_000
        assert storage.accounts[checking.id].balance == -7_000
        entries = await storage.list_journal_entries(transaction_id=created.transaction.id)
        assert len(entries) == 2
        assert {e.amount for e in entries} == {7_000}

    @pytest.mark.asyncio
    async def test_type_change_flips_sign(self, orchestrator, storage, user_id, checking):
        """Turning an expense into an income makes it positive."""
        created = await orchestrator.create_transaction(user_id, expense(checking))

        await orchestrator.edit_transaction(user_id, EditTransactionInput(
            transaction_id=created.transaction.id,
            updates=TransactionUpdate(type=TransactionType.INCOME),
        ))

        assert storage.transactions[created.transaction.id].amount == 5_000
        assert storage.accounts[checking.id].balance == 5_000

    @pytest.mark.asyncio
    async def test_date_edit_rederives_invoice_month(self, orchestrator, storage, user_id, card):
        """Moving a card expense past the closing day moves it to the next statement."""
        created = await orchestrator.create_transaction(user_id, expense(card))

        await orchestrator.edit_transaction(user_id, EditTransactionInput(
            transaction_id=created.transaction.id,
            updates=TransactionUpdate(date=date(2024, 3, 25)),
        ))

        assert storage.transactions[created.transaction.id].invoice_month == "2024-05"

    @pytest.mark.asyncio
    async def test_explicit_invoice_month_sets_override(self, orchestrator, storage, user_id, card):
        """An invoice month in the edit is kept and flagged as overridden."""
        created = await orchestrator.create_transaction(user_id, expense(card))

        await orchestrator.edit_transaction(user_id, EditTransactionInput(
            transaction_id=created.transaction.id,
            updates=TransactionUpdate(invoice_month="2024-09"),
        ))

        stored = storage.transactions[created.transaction.id]
        assert stored.invoice_month == "2024-09"
        assert stored.invoice_month_overridden is True

    @pytest.mark.asyncio
    async def test_current_and_remaining_scope(self, orchestrator, storage, user_id, card):
        """The addressed installment and later ones change; earlier ones do not."""
        series = await orchestrator.create_installments(user_id, installment_series(card))
        first, second, third = series.transactions

        result = await orchestrator.edit_transaction(user_id, EditTransactionInput(
            transaction_id=second.id,
            updates=TransactionUpdate(amount=12_000),
            scope=EditScope.CURRENT_AND_REMAINING,
        ))

        assert [t.id for t in result.transactions] == [second.id, third.id]
        assert storage.transactions[first.id].amount == -10_000
        assert storage.transactions[second.id].amount == -12_000
        assert storage.transactions[third.id].amount == -12_000
        assert storage.accounts[card.id].balance == -34_000

    @pytest.mark.asyncio
    async def test_all_scope_shifts_dates_together(self, orchestrator, storage, user_id, card):
        """A date change over the whole series keeps the spacing."""
        series = await orchestrator.create_installments(user_id, installment_series(card))

        await orchestrator.edit_transaction(user_id, EditTransactionInput(
            transaction_id=series.transactions[0].id,
            updates=TransactionUpdate(date=date(2024, 1, 12)),
            scope=EditScope.ALL,
        ))

        dates = [storage.transactions[t.id].date for t in series.transactions]
        assert dates == [date(2024, 1, 12), date(2024, 2, 12), date(2024, 3, 12)]

    @pytest.mark.asyncio
    async def test_edit_in_locked_period_is_refused(self, orchestrator, storage, user_id, checking):
        """Rows dated inside a closed period cannot be edited."""
        created = await orchestrator.create_transaction(user_id, expense(checking))
        lock(storage, user_id, date(2024, 3, 1), date(2024, 3, 31))

        with pytest.raises(ConstraintError) as exc_info:
            await orchestrator.edit_transaction(user_id, EditTransactionInput(
                transaction_id=created.transaction.id,
                updates=TransactionUpdate(amount=1),
            ))
        assert exc_info.value.reason == "period_locked"

    @pytest.mark.asyncio
    async def test_moving_into_locked_period_is_refused(self, orchestrator, storage, user_id, checking):
        """The new date is checked as well as the old one."""
        created = await orchestrator.create_transaction(user_id, expense(checking))
        lock(storage, user_id, date(2024, 2, 1), date(2024, 2, 29))

        with pytest.raises(ConstraintError):
            await orchestrator.edit_transaction(user_id, EditTransactionInput(
                transaction_id=created.transaction.id,
                updates=TransactionUpdate(date=date(2024, 2, 10)),
            ))
        assert storage.transactions[created.transaction.id].date == date(2024, 3, 15)

    @pytest.mark.asyncio
    async def test_transfer_rows_keep_their_type(self, orchestrator, account_factory, user_id, savings):
        """A transfer half cannot be turned into an expense."""
        checking = account_factory(name="Checking", limit_amount=10_000)
        pair = await orchestrator.transfer(user_id, TransferInput(
            from_account_id=checking.id,
            to_account_id=savings.id,
            amount=1_000,
            date=date(2024, 3, 1),
        ))

        with pytest.raises(ValidationError):
            await orchestrator.edit_transaction(user_id, EditTransactionInput(
                transaction_id=pair.outflow.id,
                updates=TransactionUpdate(type=TransactionType.EXPENSE),
            ))

    @pytest.mark.asyncio
    async def test_failed_update_restores_snapshots(self, monkeypatch, orchestrator, storage, user_id, card, chart):
        """A failure halfway through a series edit restores every row and entry."""
        series = await orchestrator.create_installments(user_id, installment_series(card))
        entries_before = {e.id for e in await storage.list_journal_entries()}
        fail_nth(monkeypatch, storage, "update_transaction", n=2)

        with pytest.raises(TransientError):
            await orchestrator.edit_transaction(user_id, EditTransactionInput(
                transaction_id=series.transactions[0].id,
                updates=TransactionUpdate(amount=99),
                scope=EditScope.ALL,
            ))

        assert {t.amount for t in storage.transactions.values()} == {-10_000}
        assert {e.id for e in await storage.list_journal_entries()} == entries_before
        assert storage.accounts[card.id].balance == -30_000


class TestDeleteTransaction:
    """Tests for deletes."""

    @pytest.mark.asyncio
    async def test_deleting_one_half_removes_the_pair(self, orchestrator, storage, account_factory, user_id, savings, chart):
        """The linked partner and the journal entries go too."""
        checking = account_factory(name="Checking", limit_amount=10_000)
        pair = await orchestrator.transfer(user_id, TransferInput(
            from_account_id=checking.id,
            to_account_id=savings.id,
            amount=1_000,
            date=date(2024, 3, 1),
        ))
        assert len(storage.journal_entries) == 2

        result = await orchestrator.delete_transaction(
            user_id, DeleteTransactionInput(transaction_id=pair.inflow.id)
        )

        assert set(result.deleted_ids) == {pair.outflow.id, pair.inflow.id}
        assert storage.transactions == {}
        assert storage.journal_entries == {}
        assert storage.accounts[checking.id].balance == 0
        assert storage.accounts[savings.id].balance == 0

    @pytest.mark.asyncio
    async def test_delete_whole_series(self, orchestrator, storage, user_id, card):
        """Scope ALL deletes every installment."""
        series = await orchestrator.create_installments(user_id, installment_series(card))

        await orchestrator.delete_transaction(user_id, DeleteTransactionInput(
            transaction_id=series.transactions[1].id,
            scope=EditScope.ALL,
        ))

        assert storage.transactions == {}
        assert storage.accounts[card.id].balance == 0

    @pytest.mark.asyncio
    async def test_delete_current_only(self, orchestrator, storage, user_id, card):
        """Scope CURRENT deletes just the addressed installment."""
        series = await orchestrator.create_installments(user_id, installment_series(card))

        await orchestrator.delete_transaction(user_id, DeleteTransactionInput(
            transaction_id=series.transactions[1].id,
            scope=EditScope.CURRENT,
        ))

        assert set(storage.transactions) == {series.transactions[0].id, series.transactions[2].id}
        assert storage.accounts[card.id].balance == -20_000

    @pytest.mark.asyncio
    async def test_delete_in_locked_period_is_refused(self, orchestrator, storage, user_id, checking):
        """Closed periods are read-only."""
        created = await orchestrator.create_transaction(user_id, expense(checking))
        lock(storage, user_id, date(2024, 3, 1), date(2024, 3, 31))

        with pytest.raises(ConstraintError):
            await orchestrator.delete_transaction(
                user_id, DeleteTransactionInput(transaction_id=created.transaction.id)
            )
        assert created.transaction.id in storage.transactions

    @pytest.mark.asyncio
    async def test_failed_delete_reinserts_rows(self, monkeypatch, orchestrator, storage, user_id, card, chart):
        """A failure midway re-inserts what was already deleted."""
        series = await orchestrator.create_installments(user_id, installment_series(card))
        fail_nth(monkeypatch, storage, "delete_transaction", n=2)

        with pytest.raises(TransientError):
            await orchestrator.delete_transaction(user_id, DeleteTransactionInput(
                transaction_id=series.transactions[0].id,
                scope=EditScope.ALL,
            ))

        assert len(storage.transactions) == 3
        assert len(storage.journal_entries) == 6
        assert storage.accounts[card.id].balance == -30_000


class TestGenerateRecurring:
    """Tests for recurring series."""

    def _monthly(self, account, **overrides):
        fields = dict(
            account_id=account.id,
            amount=1_000,
            date=date(2024, 1, 1),
            description="Gym",
            recurrence_type=RecurrenceType.MONTHLY,
            recurrence_end_date=date(2024, 12, 31),
            type=TransactionType.EXPENSE,
        )
        fields.update(overrides)
        return RecurringInput(**fields)

    @pytest.mark.asyncio
    async def test_monthly_until_year_end_creates_twelve(self, orchestrator, storage, user_id, checking):
        """Parent plus eleven children; future children are pending."""
        result = await orchestrator.generate_recurring(user_id, self._monthly(checking))

        assert result.created_count == 12
        rows = await storage.list_transactions(account_id=checking.id)
        parent = storage.transactions[result.parent_id]
        children = [r for r in rows if r.id != parent.id]
        assert parent.is_recurring is True
        assert {c.parent_transaction_id for c in children} == {parent.id}
        pending = [c.date.month for c in children if c.status == TransactionStatus.PENDING]
        assert pending == [7, 8, 9, 10, 11, 12]
        assert result.balance.balance == -6_000

    @pytest.mark.asyncio
    async def test_weekly_for_four_weeks_creates_five(self, orchestrator, user_id, checking):
        """Weekly with an end date four weeks out gives five rows."""
        result = await orchestrator.generate_recurring(user_id, self._monthly(
            checking,
            recurrence_type=RecurrenceType.WEEKLY,
            recurrence_end_date=date(2024, 1, 29),
        ))
        assert result.created_count == 5

    @pytest.mark.asyncio
    async def test_open_ended_series_stops_at_horizon(self, orchestrator, user_id, checking):
        """Without an end date the configured horizon applies."""
        result = await orchestrator.generate_recurring(
            user_id, self._monthly(checking, recurrence_end_date=None)
        )
        assert result.created_count == 12

    @pytest.mark.asyncio
    async def test_distant_end_date_stops_at_horizon(self, orchestrator, user_id, checking):
        """A far end date cannot push a daily series past the horizon."""
        result = await orchestrator.generate_recurring(user_id, self._monthly(
            checking,
            recurrence_type=RecurrenceType.DAILY,
            recurrence_end_date=date(2054, 1, 1),
        ))
        # 2024-01-01 plus every day of 2024 before 2025-01-01
        assert result.created_count == 366

    @pytest.mark.asyncio
    async def test_children_in_locked_period_are_skipped(self, orchestrator, storage, user_id, checking):
        """Occurrences inside a closed period are reported, not created."""
        lock(storage, user_id, date(2024, 3, 1), date(2024, 3, 31))

        result = await orchestrator.generate_recurring(user_id, self._monthly(checking))

        assert result.created_count == 11
        assert result.skipped_dates == [date(2024, 3, 1)]

    @pytest.mark.asyncio
    async def test_locked_start_date_is_refused(self, orchestrator, storage, user_id, checking):
        """The parent date itself must be open."""
        lock(storage, user_id, date(2024, 1, 1), date(2024, 1, 31))

        with pytest.raises(ConstraintError) as exc_info:
            await orchestrator.generate_recurring(user_id, self._monthly(checking))
        assert exc_info.value.reason == "period_locked"
        assert storage.transactions == {}

    @pytest.mark.asyncio
    async def test_card_children_get_invoice_months(self, orchestrator, storage, user_id, card):
        """Recurring card expenses are assigned to statements too."""
        result = await orchestrator.generate_recurring(user_id, self._monthly(
            card, date=date(2024, 1, 25), recurrence_end_date=date(2024, 3, 31)
        ))
        rows = await storage.list_transactions(account_id=card.id)
        assert result.created_count == 3
        assert [r.invoice_month for r in rows] == ["2024-03", "2024-04", "2024-05"]

    @pytest.mark.asyncio
    async def test_settled_children_count_against_card_limit(self, orchestrator, storage, user_id, card):
        """Each occurrence up to today draws on the credit limit, not only the parent."""
        # 2024-01-01 through 2024-06-01 are settled by 2024-06-15: six rows
        with pytest.raises(ConstraintError) as exc_info:
            await orchestrator.generate_recurring(user_id, self._monthly(card, amount=100_000))

        assert exc_info.value.reason == "credit_limit_exceeded"
        assert exc_info.value.details["requested"] == 600_000
        assert storage.transactions == {}


class TestAccountOperations:
    """Tests for account edits, deletes and imports."""

    @pytest.mark.asyncio
    async def test_billing_change_recomputes_invoice_months(self, orchestrator, storage, user_id, card):
        """Changing the closing day moves non-overridden rows; overrides stay."""
        automatic = await orchestrator.create_transaction(user_id, expense(card, day=date(2024, 3, 10)))
        manual = await orchestrator.create_transaction(
            user_id, expense(card, day=date(2024, 3, 10), invoice_month="2024-04")
        )
        assert automatic.transaction.invoice_month == "2024-04"

        result = await orchestrator.edit_account(user_id, EditAccountInput(
            account_id=card.id,
            updates=AccountUpdate(closing_day=5),
        ))

        assert result.account.closing_day == 5
        assert result.recomputed_transactions == [automatic.transaction.id]
        assert storage.transactions[automatic.transaction.id].invoice_month == "2024-05"
        assert storage.transactions[manual.transaction.id].invoice_month == "2024-04"

    @pytest.mark.asyncio
    async def test_balance_is_not_editable(self, orchestrator, storage, user_id, checking):
        """A balance sent with an edit is ignored."""
        updates = AccountUpdate.model_validate({"name": "Main", "balance": 1_000_000})

        result = await orchestrator.edit_account(
            user_id, EditAccountInput(account_id=checking.id, updates=updates)
        )

        assert result.account.name == "Main"
        assert storage.accounts[checking.id].balance == 0

    @pytest.mark.asyncio
    async def test_delete_account_with_transactions_is_refused(self, orchestrator, storage, user_id, checking):
        """Accounts with transactions cannot be deleted."""
        await orchestrator.create_transaction(user_id, expense(checking))

        with pytest.raises(ConstraintError) as exc_info:
            await orchestrator.delete_account(user_id, DeleteAccountInput(account_id=checking.id))

        assert exc_info.value.reason == "account_has_transactions"
        assert exc_info.value.details["transaction_count"] == 1
        assert checking.id in storage.accounts

    @pytest.mark.asyncio
    async def test_delete_empty_account(self, orchestrator, storage, user_id, checking):
        """An empty account is deleted."""
        result = await orchestrator.delete_account(user_id, DeleteAccountInput(account_id=checking.id))
        assert result.deleted_ids == [checking.id]
        assert checking.id not in storage.accounts

    @pytest.mark.asyncio
    async def test_import_books_opening_balances(self, orchestrator, storage, user_id, account_factory):
        """Initial balances become opening-balance transactions; replaced accounts go."""
        old = account_factory(name="Old Wallet")

        result = await orchestrator.import_accounts(user_id, ImportAccountsInput(
            accounts=[
                AccountImport(name="Wallet", type=AccountType.CHECKING, initial_balance=25_000),
                AccountImport(
                    name="Gold", type=AccountType.CREDIT, initial_balance=-5_000,
                    limit_amount=100_000, closing_day=5, due_day=15,
                ),
            ],
            replace_ids=[old.id],
        ))

        wallet, gold = result.accounts
        assert result.replaced_ids == [old.id]
        assert old.id not in storage.accounts
        assert wallet.balance == 25_000
        assert gold.balance == -5_000
        [opening] = await storage.list_transactions(account_id=gold.id)
        assert opening.description == "Opening balance"
        assert opening.type == TransactionType.EXPENSE
        assert opening.invoice_month == "2024-08"

    @pytest.mark.asyncio
    async def test_import_refuses_replacing_used_account(self, orchestrator, storage, user_id, checking):
        """Only empty accounts can be replaced."""
        await orchestrator.create_transaction(user_id, expense(checking))

        with pytest.raises(ConstraintError):
            await orchestrator.import_accounts(user_id, ImportAccountsInput(
                accounts=[AccountImport(name="New", type=AccountType.SAVINGS)],
                replace_ids=[checking.id],
            ))
        assert len(storage.accounts) == 1

    @pytest.mark.asyncio
    async def test_failed_import_restores_previous_accounts(self, monkeypatch, orchestrator, storage, user_id, account_factory):
        """A failed insert removes the new accounts and restores replaced ones."""
        old = account_factory(name="Old Wallet")
        fail_nth(monkeypatch, storage, "insert_account", n=2)

        with pytest.raises(TransientError):
            await orchestrator.import_accounts(user_id, ImportAccountsInput(
                accounts=[
                    AccountImport(name="A", type=AccountType.CHECKING, initial_balance=100),
                    AccountImport(name="B", type=AccountType.SAVINGS),
                ],
                replace_ids=[old.id],
            ))

        assert list(storage.accounts) == [old.id]
        assert storage.transactions == {}
