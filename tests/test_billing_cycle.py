"""Tests for invoice-month assignment."""

from datetime import date, datetime, timedelta, timezone

import pytest

from fintrack.errors import ValidationError
from fintrack.ledger.billing_cycle import (
    assign_invoice_month,
    closing_month,
    due_date_for,
    invoice_month_for_account,
    normalize_to_midday,
    recalculate_invoice_months,
    statement_period,
)
from fintrack.models.ledger import Account, AccountType, Transaction, TransactionType


class TestAssignInvoiceMonth:
    """Tests for the statement a card expense lands in."""

    def test_after_closing_day_goes_to_next_statement(self):
        """25 March with closing 20 / due 10 closes 20 April, due 10 May."""
        assert assign_invoice_month(date(2024, 3, 25), 20, 10) == "2024-05"

    def test_before_closing_day_stays_in_current_statement(self):
        """15 March with closing 20 / due 10 closes 20 March, due 10 April."""
        assert assign_invoice_month(date(2024, 3, 15), 20, 10) == "2024-04"

    def test_closing_day_itself_is_inclusive(self):
        """A purchase on the closing day belongs to the statement closing that day."""
        assert assign_invoice_month(date(2024, 3, 20), 20, 10) == "2024-04"
        assert assign_invoice_month(date(2024, 3, 21), 20, 10) == "2024-05"

    def test_year_rollover(self):
        """Late December purchases are due in the following year."""
        assert assign_invoice_month(date(2024, 12, 25), 20, 10) == "2025-02"
        assert assign_invoice_month(date(2024, 12, 5), 20, 10) == "2025-01"

    def test_closing_day_clamped_to_short_month(self):
        """Closing day 31 closes on 29 February in a leap year."""
        assert closing_month(date(2024, 2, 29), 31) == (2024, 2)
        assert closing_month(date(2024, 3, 1), 31) == (2024, 3)

    def test_due_day_clamped_to_short_month(self):
        """Due day 31 falls on the last day of a 30-day month."""
        assert due_date_for(date(2024, 3, 10), 20, 31) == date(2024, 4, 30)

    def test_accepts_iso_strings(self):
        """ISO date strings are accepted."""
        assert assign_invoice_month("2024-03-25", 20, 10) == "2024-05"

    def test_aware_datetime_uses_utc_day(self):
        """An aware datetime is judged by its UTC calendar day."""
        late_evening = datetime(2024, 3, 20, 23, 30, tzinfo=timezone(timedelta(hours=-3)))
        assert normalize_to_midday(late_evening) == datetime(2024, 3, 21, 12, 0)
        assert assign_invoice_month(late_evening, 20, 10) == "2024-05"

    def test_naive_midnight_and_midday_agree(self):
        """Local midnight and midday of the same day give the same label."""
        for day in range(1, 29):
            midnight = datetime(2024, 5, day, 0, 0)
            midday = datetime(2024, 5, day, 12, 0)
            assert assign_invoice_month(midnight, 15, 5) == assign_invoice_month(midday, 15, 5)

    def test_deterministic_for_every_day_of_year(self):
        """Every day of a year maps to a due month one or two months later."""
        day = date(2024, 1, 1)
        while day.year == 2024:
            label = assign_invoice_month(day, 20, 10)
            year, month = map(int, label.split("-"))
            months_ahead = (year * 12 + month) - (day.year * 12 + day.month)
            assert months_ahead in (1, 2)
            assert assign_invoice_month(day, 20, 10) == label
            day += timedelta(days=1)

    @pytest.mark.parametrize("closing_day,due_day", [(0, 10), (32, 10), (20, 0)])
    def test_rejects_out_of_range_days(self, closing_day, due_day):
        """Days outside 1..31 are a validation error."""
        with pytest.raises(ValidationError):
            assign_invoice_month(date(2024, 3, 1), closing_day, due_day)

    def test_rejects_unparseable_string(self):
        """Garbage strings are a validation error."""
        with pytest.raises(ValidationError):
            assign_invoice_month("not-a-date", 20, 10)


class TestStatementPeriod:
    """Tests for statement boundaries."""

    def test_period_runs_from_day_after_previous_close(self):
        """The statement closing 20 March starts 21 February."""
        assert statement_period(2025, 3, 20) == (date(2025, 2, 21), date(2025, 3, 20))

    def test_period_across_year_boundary(self):
        """The January statement starts in December of the previous year."""
        assert statement_period(2025, 1, 10) == (date(2024, 12, 11), date(2025, 1, 10))


class TestAccountHelpers:
    """Tests for account-level invoice month helpers."""

    def test_non_card_account_has_no_invoice_month(self, user_id):
        """Checking accounts never get an invoice month."""
        account = Account(user_id=user_id, name="Checking", type=AccountType.CHECKING)
        assert invoice_month_for_account(account, date(2024, 3, 25)) is None

    def test_card_without_billing_cycle_has_no_invoice_month(self, user_id):
        """A credit account without closing/due days has nothing to assign."""
        account = Account(user_id=user_id, name="Card", type=AccountType.CREDIT)
        assert invoice_month_for_account(account, date(2024, 3, 25)) is None

    def test_recalculate_skips_overridden_and_unchanged_rows(self, user_id):
        """Only non-overridden rows with a different label are returned."""
        card = Account(
            user_id=user_id, name="Visa", type=AccountType.CREDIT,
            closing_day=5, due_day=15,
        )

        def tx(day, invoice_month, overridden=False):
            return Transaction(
                user_id=user_id,
                description="Purchase",
                amount=-1000,
                date=day,
                type=TransactionType.EXPENSE,
                account_id=card.id,
                invoice_month=invoice_month,
                invoice_month_overridden=overridden,
            )

        stale = tx(date(2024, 3, 10), "2024-02")
        current = tx(date(2024, 3, 1), "2024-04")
        manual = tx(date(2024, 3, 10), "2024-09", overridden=True)

        changed = recalculate_invoice_months(card, [stale, current, manual])

        assert [t.id for t in changed] == [stale.id]
        assert changed[0].invoice_month == "2024-05"
