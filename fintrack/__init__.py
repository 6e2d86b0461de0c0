"""
fintrack - Ledger Consistency & Offline Replay Engine

The transaction core of a personal finance tracker: billing-cycle
assignment for credit cards, double-entry validation, all-or-nothing
multi-row mutations and an offline mutation queue.

DESIGN PRINCIPLES:
1. Balances are derived, never incremented
2. Fail early, fail visibly
3. A failed operation leaves no partial rows behind, or says so
4. Every write is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
