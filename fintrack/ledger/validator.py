"""
Ledger Validator

Checks the double-entry invariant over a set of journal entries: for
every transaction, total debits equal total credits within one minor
unit.

IMPORTANT: Validation is detective only. It NEVER repairs entries; it
reports the groups that are off so a human can look at them.
"""

from collections import OrderedDict
from typing import Optional
from uuid import UUID

import structlog

from fintrack.audit import AuditLogger
from fintrack.models.ledger import EntryType, JournalEntry, LedgerValidationResult

logger = structlog.get_logger(__name__)

# Differences strictly below this many minor units are treated as balanced
BALANCE_TOLERANCE = 1


def _totals(entries: list[JournalEntry]) -> tuple[int, int]:
    debits = sum(e.amount for e in entries if e.entry_type == EntryType.DEBIT)
    credits = sum(e.amount for e in entries if e.entry_type == EntryType.CREDIT)
    return debits, credits


def is_balanced(entries: list[JournalEntry]) -> bool:
    """True if the entries, taken as one group, balance."""
    debits, credits = _totals(entries)
    return abs(debits - credits) < BALANCE_TOLERANCE


class LedgerValidator:
    """Groups journal entries by transaction and reports unbalanced groups."""

    def __init__(self, audit_logger: Optional[AuditLogger] = None):
        self._audit = audit_logger

    def validate(self, entries: list[JournalEntry]) -> list[LedgerValidationResult]:
        """
        Return one result per unbalanced transaction.

        Entries without a transaction form their own group, which is
        always reported, whatever its totals.
        """
        groups: "OrderedDict[Optional[UUID], list[JournalEntry]]" = OrderedDict()
        for entry in entries:
            groups.setdefault(entry.transaction_id, []).append(entry)

        invalid = []
        for transaction_id, group in groups.items():
            debits, credits = _totals(group)
            difference = abs(debits - credits)
            is_valid = transaction_id is not None and difference < BALANCE_TOLERANCE
            if is_valid:
                continue

            first = group[0]
            result = LedgerValidationResult(
                transaction_id=transaction_id,
                is_valid=False,
                total_debits=debits,
                total_credits=credits,
                difference=difference,
                description=first.description or "No description",
                entry_date=first.entry_date,
            )
            logger.warning(
                "unbalanced_journal_entries",
                transaction_id=str(transaction_id) if transaction_id else None,
                total_debits=debits,
                total_credits=credits,
                difference=difference,
            )
            invalid.append(result)

        return invalid

    async def audit(self, entries: list[JournalEntry]) -> list[LedgerValidationResult]:
        """Validate and record every unbalanced group in the audit trail."""
        invalid = self.validate(entries)
        if self._audit is not None:
            for result in invalid:
                await self._audit.log_unbalanced_entries(
                    result.transaction_id, result.total_debits, result.total_credits
                )
        return invalid

    def summary(self, entries: list[JournalEntry]) -> dict:
        """Counts for a dashboard banner."""
        invalid = self.validate(entries)
        return {
            "total_entries": len(entries),
            "unbalanced_count": len(invalid),
            "has_unbalanced": bool(invalid),
        }
