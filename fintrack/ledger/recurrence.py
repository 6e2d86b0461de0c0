"""
Recurrence date stepping for recurring series.

Monthly and yearly steps are computed from the series anchor, not from
the previous occurrence, so a series starting on the 31st returns to
the 31st after passing through shorter months (31 Jan, 28 Feb, 31 Mar).
"""

import calendar
from datetime import date, timedelta
from typing import Iterator, Optional

from fintrack.models.ledger import RecurrenceType


def add_months(anchor: date, months: int) -> date:
    """``anchor`` shifted by whole months, day clamped to the month's end."""
    index = anchor.year * 12 + (anchor.month - 1) + months
    year, month = index // 12, index % 12 + 1
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor.day, last))


def nth_occurrence(anchor: date, recurrence: RecurrenceType, n: int) -> date:
    """The n-th occurrence after ``anchor`` (n=0 is the anchor itself)."""
    if recurrence == RecurrenceType.DAILY:
        return anchor + timedelta(days=n)
    if recurrence == RecurrenceType.WEEKLY:
        return anchor + timedelta(weeks=n)
    if recurrence == RecurrenceType.MONTHLY:
        return add_months(anchor, n)
    if recurrence == RecurrenceType.YEARLY:
        return add_months(anchor, 12 * n)
    raise ValueError(f"Unknown recurrence type: {recurrence}")


def occurrences_after(
    anchor: date,
    recurrence: RecurrenceType,
    end_date: Optional[date] = None,
    horizon_months: int = 12,
) -> Iterator[date]:
    """
    Yield every occurrence strictly after ``anchor``.

    The series never reaches ``anchor + horizon_months`` (exclusive). An
    ``end_date`` stops it earlier, inclusive of the end date itself.
    """
    horizon = add_months(anchor, horizon_months)
    n = 1
    while True:
        current = nth_occurrence(anchor, recurrence, n)
        if current >= horizon or (end_date is not None and current > end_date):
            return
        yield current
        n += 1
