"""
Billing-Cycle Assignor

Maps a credit card expense to the statement ("invoice") it belongs to.

A card with closing day C and due day D has statements that cover the
day after one month's closing day through the next month's closing
day, inclusive. The statement closing in month M is due on day D of
month M+1, and is labelled with that due date's year-month.

DESIGN DECISION: Every input date is normalised to midday before any
comparison. A transaction stored as midnight UTC would otherwise land
on the previous calendar day in a negative-offset timezone and could
jump to the previous statement. Timezone-aware datetimes are converted
to UTC first, so the label never depends on the server's local zone.

Days that do not exist in a month (closing day 31 in February) are
clamped to that month's last day.
"""

import calendar
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union

from fintrack.errors import ValidationError
from fintrack.models.ledger import Account, Transaction

DateLike = Union[date, datetime, str]

MIDDAY = time(12, 0)


def _clamp_day(year: int, month: int, day: int) -> date:
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last))


def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _check_day(name: str, value: int) -> None:
    if not 1 <= value <= 31:
        raise ValidationError(f"{name} must be between 1 and 31", field=name)


def normalize_to_midday(value: DateLike) -> datetime:
    """
    Return the calendar day of ``value`` as a naive datetime at 12:00.

    Accepts dates, datetimes (aware ones are converted to UTC) and ISO
    strings of either.
    """
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            raise ValidationError(f"Invalid date: {value!r}", field="date")
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        value = value.date()
    return datetime.combine(value, MIDDAY)


def closing_month(transaction_date: DateLike, closing_day: int) -> tuple[int, int]:
    """(year, month) in which the statement holding this date closes."""
    _check_day("closing_day", closing_day)
    day = normalize_to_midday(transaction_date).date()
    if day <= _clamp_day(day.year, day.month, closing_day):
        return day.year, day.month
    return _shift_month(day.year, day.month, 1)


def statement_period(year: int, month: int, closing_day: int) -> tuple[date, date]:
    """
    First and last day of the statement closing in ``year``-``month``.

    >>> statement_period(2025, 3, 20)
    (datetime.date(2025, 2, 21), datetime.date(2025, 3, 20))
    """
    _check_day("closing_day", closing_day)
    end = _clamp_day(year, month, closing_day)
    prev_year, prev_month = _shift_month(year, month, -1)
    start = _clamp_day(prev_year, prev_month, closing_day) + timedelta(days=1)
    return start, end


def due_date_for(transaction_date: DateLike, closing_day: int, due_day: int) -> date:
    """Due date of the statement that ``transaction_date`` falls into."""
    _check_day("due_day", due_day)
    year, month = closing_month(transaction_date, closing_day)
    due_year, due_month = _shift_month(year, month, 1)
    return _clamp_day(due_year, due_month, due_day)


def assign_invoice_month(
    transaction_date: DateLike,
    closing_day: int,
    due_day: int,
) -> str:
    """
    Label (``YYYY-MM``) of the statement a card expense belongs to.

    With closing day 20 and due day 10, an expense on 25 March lands in
    the statement closing 20 April, due 10 May: ``"YYYY-05"``. One on
    15 March is due 10 April: ``"YYYY-04"``.
    """
    due = due_date_for(transaction_date, closing_day, due_day)
    return f"{due.year:04d}-{due.month:02d}"


def invoice_month_for_account(account: Account, transaction_date: DateLike) -> Optional[str]:
    """Invoice month for a row on ``account``, or None if it is not a card."""
    if not account.has_billing_cycle:
        return None
    return assign_invoice_month(transaction_date, account.closing_day, account.due_day)


def recalculate_invoice_months(
    account: Account,
    transactions: list[Transaction],
) -> list[Transaction]:
    """
    Re-derive invoice months after a billing configuration change.

    Rows with an overridden invoice month are left alone. Returns copies
    of only the rows whose label changed; the caller persists them.
    """
    changed = []
    for tx in transactions:
        if tx.account_id != account.id or tx.invoice_month_overridden:
            continue
        expected = invoice_month_for_account(account, tx.date)
        if tx.invoice_month != expected:
            changed.append(tx.model_copy(update={"invoice_month": expected}))
    return changed
