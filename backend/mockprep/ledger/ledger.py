from __future__ import annotations

import logging

from mockprep.core.logger import log_event
from mockprep.ledger.models import UserBalance
from mockprep.ledger.store import BalanceStore
from mockprep.session.errors import InsufficientBalance, PersistenceFailure
from mockprep.system_metrics import increment_metric

logger = logging.getLogger("mockprep.ledger")


class BalanceLedger:
    """Debit-only view over a user's prep credits.

    The ledger never reads-then-writes on the caller's behalf: each debit is
    a compare-and-decrement against the stored value, re-read on contention.
    """

    def __init__(self, store: BalanceStore, max_contention_retries: int = 16):
        self._store = store
        self._max_contention_retries = max(1, int(max_contention_retries))

    @property
    def store(self) -> BalanceStore:
        return self._store

    async def get_balance(self, user_id: str) -> UserBalance:
        return await self._store.get_balance(user_id)

    async def debit(self, user_id: str) -> int:
        for attempt in range(self._max_contention_retries):
            balance = await self._store.get_balance(user_id)
            if balance.remaining <= 0:
                increment_metric("debits_insufficient_total")
                log_event("ledger", "debit_rejected", "", level=logging.WARNING, user_id=user_id, remaining=balance.remaining)
                raise InsufficientBalance(user_id, balance.remaining)

            try:
                remaining = await self._store.compare_and_decrement(user_id, balance.remaining)
            except PersistenceFailure:
                increment_metric("debit_persistence_failures_total")
                logger.warning("debit persistence failed | user_id=%s attempt=%s", user_id, attempt + 1)
                raise

            if remaining is not None:
                increment_metric("debits_total")
                log_event("ledger", "debit", "", user_id=user_id, remaining=remaining)
                return remaining

            logger.info("debit contention, re-reading | user_id=%s attempt=%s", user_id, attempt + 1)

        increment_metric("debit_persistence_failures_total")
        raise PersistenceFailure("debit", RuntimeError("balance contention did not settle"))

    async def refund(self, user_id: str) -> int:
        balance = await self._store.credit(user_id, 1, purchased=False)
        increment_metric("debits_refunded_total")
        log_event("ledger", "refund", "", user_id=user_id, remaining=balance.remaining)
        return balance.remaining

    async def grant(self, user_id: str, preps: int, purchased: bool = True) -> UserBalance:
        balance = await self._store.credit(user_id, preps, purchased=purchased)
        log_event("ledger", "grant", "", user_id=user_id, preps=int(preps), purchased=bool(purchased), remaining=balance.remaining)
        return balance
