"""Shared fixtures: in-memory storage, seeded accounts and a chart of accounts."""

from datetime import date
from uuid import uuid4

import pytest

from fintrack.audit import AuditLogger
from fintrack.config import LedgerSettings, OfflineQueueSettings
from fintrack.models.ledger import (
    Account,
    AccountType,
    LedgerAccount,
    LedgerCategory,
)
from fintrack.orchestrator import TransactionOrchestrator
from fintrack.services.storage import InMemoryAuditStorage, InMemoryLedgerStorage

TODAY = date(2024, 6, 15)

CHART = [
    ("1.01.02", "Checking Accounts", LedgerCategory.ASSET),
    ("1.01.03", "Savings Accounts", LedgerCategory.ASSET),
    ("2.01.01", "Credit Cards", LedgerCategory.LIABILITY),
    ("4.01.99", "Other Revenue", LedgerCategory.REVENUE),
    ("5.01.99", "Other Expenses", LedgerCategory.EXPENSE),
]


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def storage():
    return InMemoryLedgerStorage()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def ledger_settings():
    return LedgerSettings(
        max_transaction_amount=1_000_000_000,
        max_description_length=200,
        recurring_horizon_months=12,
    )


@pytest.fixture
def queue_settings(tmp_path):
    return OfflineQueueSettings(
        storage_path=tmp_path / "queue.json",
        max_attempts=3,
        backoff_base_seconds=2.0,
        backoff_max_seconds=300.0,
    )


@pytest.fixture
def chart(storage, user_id):
    """Seed the user's chart of accounts; returns rows by code."""
    rows = {}
    for code, name, category in CHART:
        row = LedgerAccount(user_id=user_id, code=code, name=name, category=category)
        storage.add_ledger_account(row)
        rows[code] = row
    return rows


def make_account(storage, user_id, **overrides) -> Account:
    fields = {"user_id": user_id, "name": "Checking", "type": AccountType.CHECKING}
    fields.update(overrides)
    account = Account(**fields)
    storage.accounts[account.id] = account
    return account


@pytest.fixture
def account_factory(storage, user_id):
    """Create and store an account for the test user."""
    def factory(**overrides) -> Account:
        return make_account(storage, user_id, **overrides)
    return factory


@pytest.fixture
def checking(storage, user_id):
    return make_account(storage, user_id, name="Checking", limit_amount=0)


@pytest.fixture
def savings(storage, user_id):
    return make_account(storage, user_id, name="Savings", type=AccountType.SAVINGS)


@pytest.fixture
def card(storage, user_id):
    return make_account(
        storage,
        user_id,
        name="Visa",
        type=AccountType.CREDIT,
        limit_amount=500_000,
        closing_day=20,
        due_day=10,
    )


@pytest.fixture
def orchestrator(storage, audit_storage, ledger_settings):
    return TransactionOrchestrator(
        storage=storage,
        period_locks=storage,
        chart_lookup=storage,
        audit_logger=AuditLogger(audit_storage),
        settings=ledger_settings,
        today=lambda: TODAY,
    )
