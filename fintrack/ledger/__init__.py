"""Ledger core: billing cycles, double-entry checks and balances."""

from fintrack.ledger.balance import BalanceRecalculator
from fintrack.ledger.billing_cycle import (
    assign_invoice_month,
    due_date_for,
    invoice_month_for_account,
    recalculate_invoice_months,
    statement_period,
)
from fintrack.ledger.journal import (
    ChartOfAccounts,
    build_paired_entries,
    build_transaction_entries,
)
from fintrack.ledger.validator import LedgerValidator, is_balanced

__all__ = [
    "BalanceRecalculator",
    "ChartOfAccounts",
    "LedgerValidator",
    "assign_invoice_month",
    "build_paired_entries",
    "build_transaction_entries",
    "due_date_for",
    "invoice_month_for_account",
    "is_balanced",
    "recalculate_invoice_months",
    "statement_period",
]
