"""
Journal Entry Builder

Maps money accounts onto the user's chart of accounts and builds the
balanced debit/credit pair for a transaction.

Chart-of-accounts codes:
    1.01.02  Checking accounts      (asset)
    1.01.03  Savings accounts       (asset)
    1.01.04  Investments            (asset)
    2.01.01  Credit cards           (liability)
    4.01.99  Other revenue          (revenue fallback)
    5.01.99  Other expenses         (expense fallback)

When the specific code is missing, money accounts fall back to the
first ``1.01.*`` row. When nothing maps, no entries are built: a user
without a chart of accounts simply has no journal.

Every builder returns either an empty list or a pair that passes
``is_balanced``; both legs carry the same transaction id.
"""

from datetime import date
from typing import Optional
from uuid import UUID

from fintrack.models.ledger import (
    Account,
    AccountType,
    EntryType,
    JournalEntry,
    LedgerAccount,
    LedgerCategory,
    Transaction,
    TransactionType,
)

ACCOUNT_TYPE_CODES = {
    AccountType.CHECKING: "1.01.02",
    AccountType.SAVINGS: "1.01.03",
    AccountType.INVESTMENT: "1.01.04",
    AccountType.CREDIT: "2.01.01",
}
ASSET_FALLBACK_PREFIX = "1.01."
REVENUE_FALLBACK_CODE = "4.01.99"
EXPENSE_FALLBACK_CODE = "5.01.99"


class ChartOfAccounts:
    """Lookup helpers over one user's chart-of-accounts rows."""

    def __init__(self, rows: list[LedgerAccount]):
        self._rows = list(rows)
        self._by_code = {row.code: row for row in self._rows}

    def __bool__(self) -> bool:
        return bool(self._rows)

    def by_code(self, code: str) -> Optional[LedgerAccount]:
        return self._by_code.get(code)

    def for_account(self, account: Account) -> Optional[LedgerAccount]:
        """Ledger row a money account posts to."""
        code = ACCOUNT_TYPE_CODES.get(account.type)
        row = self.by_code(code) if code else None
        if row is None:
            row = next(
                (r for r in self._rows if r.code.startswith(ASSET_FALLBACK_PREFIX)),
                None,
            )
        return row

    def _nominal(self, category: LedgerCategory, fallback_code: str) -> Optional[LedgerAccount]:
        row = self.by_code(fallback_code)
        if row is not None and row.category == category:
            return row
        return next((r for r in self._rows if r.category == category), None)

    def revenue(self) -> Optional[LedgerAccount]:
        return self._nominal(LedgerCategory.REVENUE, REVENUE_FALLBACK_CODE)

    def expense(self) -> Optional[LedgerAccount]:
        return self._nominal(LedgerCategory.EXPENSE, EXPENSE_FALLBACK_CODE)


def _pair(
    user_id: UUID,
    transaction_id: UUID,
    debit: LedgerAccount,
    credit: LedgerAccount,
    amount: int,
    description: str,
    entry_date: date,
) -> list[JournalEntry]:
    amount = abs(amount)
    return [
        JournalEntry(
            user_id=user_id,
            transaction_id=transaction_id,
            ledger_account_id=debit.id,
            entry_type=EntryType.DEBIT,
            amount=amount,
            description=description,
            entry_date=entry_date,
        ),
        JournalEntry(
            user_id=user_id,
            transaction_id=transaction_id,
            ledger_account_id=credit.id,
            entry_type=EntryType.CREDIT,
            amount=amount,
            description=description,
            entry_date=entry_date,
        ),
    ]


def build_transaction_entries(
    chart: ChartOfAccounts,
    transaction: Transaction,
    account: Account,
) -> list[JournalEntry]:
    """
    Entries for a single income or expense.

    Income:  debit the money account, credit revenue.
    Expense: debit expense, credit the money account (asset decreases
             or card liability increases).
    """
    if not chart or not transaction.is_completed:
        return []
    money = chart.for_account(account)
    if money is None:
        return []

    if transaction.type == TransactionType.INCOME:
        revenue = chart.revenue()
        if revenue is None:
            return []
        debit, credit = money, revenue
    else:
        expense = chart.expense()
        if expense is None:
            return []
        debit, credit = expense, money

    return _pair(
        transaction.user_id,
        transaction.id,
        debit,
        credit,
        transaction.amount,
        transaction.description,
        transaction.date,
    )


def build_paired_entries(
    chart: ChartOfAccounts,
    outflow: Transaction,
    source: Account,
    destination: Account,
) -> list[JournalEntry]:
    """
    Entries for a transfer or bill payment.

    Debit the destination (asset up, or card liability down), credit the
    source. Both legs are attached to the outflow row so the pair
    validates as one group.
    """
    if not chart or not outflow.is_completed:
        return []
    debit = chart.for_account(destination)
    credit = chart.for_account(source)
    if debit is None or credit is None:
        return []
    return _pair(
        outflow.user_id,
        outflow.id,
        debit,
        credit,
        outflow.amount,
        outflow.description,
        outflow.date,
    )
