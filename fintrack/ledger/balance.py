"""
Balance Recalculator

An account's balance is the sum of the signed amounts of its completed
transactions. It is always recomputed from scratch and written back,
never adjusted by a delta, so running it twice gives the same result
and a crash between a write and its recalculation is repaired by the
next recalculation.

Recalculations of the same account are serialised with a per-account
lock so each run observes every write committed before it started.
Different accounts are independent and may run concurrently.
"""

import asyncio
from uuid import UUID

import structlog

from fintrack.errors import ConstraintError
from fintrack.models.ledger import AccountBalance
from fintrack.services.storage.interface import LedgerStorageInterface

logger = structlog.get_logger(__name__)


class BalanceRecalculator:
    """Authoritative balance computation for one storage backend."""

    def __init__(self, storage: LedgerStorageInterface):
        self._storage = storage
        self._locks: dict[UUID, asyncio.Lock] = {}

    def _lock_for(self, account_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    async def recalculate(self, account_id: UUID) -> AccountBalance:
        """
        Recompute and persist the balance of one account.

        Raises:
            ConstraintError: If the account does not exist
        """
        async with self._lock_for(account_id):
            account = await self._storage.get_account(account_id)
            if account is None:
                raise ConstraintError(
                    f"Account not found: {account_id}",
                    reason="not_found",
                    details={"account_id": str(account_id)},
                )

            transactions = await self._storage.list_transactions(account_id=account_id)
            balance = sum(tx.amount for tx in transactions if tx.is_completed)
            await self._storage.set_account_balance(account_id, balance)

        logger.debug(
            "balance_recalculated",
            account_id=str(account_id),
            balance=balance,
            previous=account.balance,
        )
        return AccountBalance(account_id=account_id, balance=balance)

    async def recalculate_many(self, account_ids: list[UUID]) -> list[AccountBalance]:
        """Recalculate several distinct accounts concurrently, in input order."""
        unique = list(dict.fromkeys(account_ids))
        return list(await asyncio.gather(*(self.recalculate(a) for a in unique)))
