from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Protocol

from mockprep.core.config import DATA_DIR, FREE_PREP_GRANT, REDIS_URL, USE_REDIS_LEDGER
from mockprep.ledger.models import UserBalance
from mockprep.session.errors import PersistenceFailure

logger = logging.getLogger("mockprep.ledger.store")


class BalanceStore(Protocol):
    async def get_balance(self, user_id: str) -> UserBalance:
        ...

    async def compare_and_decrement(self, user_id: str, expected: int) -> int | None:
        """Decrement by one iff the persisted value still equals ``expected``.

        Returns the new remaining value, or None when the compare lost.
        """
        ...

    async def credit(self, user_id: str, amount: int, purchased: bool = False) -> UserBalance:
        ...


class LocalBalanceStore:
    """In-process balances, optionally mirrored to a JSON file.

    Every mutation is written before the lock is released; a failed write
    restores the previous in-memory value.
    """

    def __init__(self, path: Path | None = None, free_grant: int = FREE_PREP_GRANT):
        self._lock = asyncio.Lock()
        self._path = path
        self._free_grant = max(0, int(free_grant))
        self._balances: dict[str, UserBalance] = {}
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except Exception as exc:
            logger.warning("balance store unreadable, starting empty | path=%s err=%s", self._path, exc)
            return
        if not isinstance(payload, dict):
            return
        for user_id, row in payload.items():
            if not isinstance(row, dict):
                continue
            self._balances[str(user_id)] = UserBalance(
                user_id=str(user_id),
                remaining=max(0, int(row.get("remaining") or 0)),
                total_purchased=max(0, int(row.get("total_purchased") or 0)),
            )

    def _write_snapshot(self, snapshot: dict) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(snapshot, ensure_ascii=False), encoding="utf-8")
        temp_path.replace(self._path)

    async def _persist(self, operation: str) -> None:
        snapshot = {user_id: balance.to_dict() for user_id, balance in self._balances.items()}
        try:
            await asyncio.to_thread(self._write_snapshot, snapshot)
        except Exception as exc:
            raise PersistenceFailure(operation, exc) from exc

    def _copy(self, balance: UserBalance) -> UserBalance:
        return UserBalance(
            user_id=balance.user_id,
            remaining=balance.remaining,
            total_purchased=balance.total_purchased,
        )

    async def _provision(self, user_id: str) -> UserBalance:
        current = self._balances.get(user_id)
        if current is not None:
            return current
        current = UserBalance(user_id=user_id, remaining=self._free_grant, total_purchased=0)
        self._balances[user_id] = current
        try:
            await self._persist("provision")
        except PersistenceFailure:
            self._balances.pop(user_id, None)
            raise
        logger.info("provisioned balance | user_id=%s free_grant=%s", user_id, self._free_grant)
        return current

    async def get_balance(self, user_id: str) -> UserBalance:
        async with self._lock:
            return self._copy(await self._provision(user_id))

    async def compare_and_decrement(self, user_id: str, expected: int) -> int | None:
        async with self._lock:
            current = await self._provision(user_id)
            if current.remaining != int(expected) or current.remaining <= 0:
                return None
            current.remaining -= 1
            try:
                await self._persist("debit")
            except PersistenceFailure:
                current.remaining += 1
                raise
            return current.remaining

    async def credit(self, user_id: str, amount: int, purchased: bool = False) -> UserBalance:
        units = max(0, int(amount))
        async with self._lock:
            current = await self._provision(user_id)
            previous = self._copy(current)
            current.remaining += units
            if purchased:
                current.total_purchased += units
            try:
                await self._persist("credit")
            except PersistenceFailure:
                current.remaining = previous.remaining
                current.total_purchased = previous.total_purchased
                raise
            return self._copy(current)


_COMPARE_AND_DECREMENT_LUA = """
local current = redis.call('HGET', KEYS[1], 'remaining')
if not current then
  return -1
end
current = tonumber(current)
if current ~= tonumber(ARGV[1]) or current <= 0 then
  return -1
end
return redis.call('HINCRBY', KEYS[1], 'remaining', -1)
"""


class RedisBalanceStore:
    """Redis-backed balances.

    Keys:
    - preps:{user_id} (hash: remaining, total_purchased)
    """

    def __init__(self, redis_url: str, free_grant: int = FREE_PREP_GRANT):
        try:
            import redis.asyncio as redis_async  # type: ignore
        except Exception as exc:
            raise RuntimeError("redis package not installed; install 'redis' to enable the distributed ledger") from exc

        self._redis = redis_async.from_url(redis_url, decode_responses=True)
        self._free_grant = max(0, int(free_grant))
        self._compare_and_decrement = self._redis.register_script(_COMPARE_AND_DECREMENT_LUA)

    @staticmethod
    def _key(user_id: str) -> str:
        return f"preps:{user_id}"

    async def _provision(self, user_id: str) -> None:
        key = self._key(user_id)
        await self._redis.hsetnx(key, "remaining", self._free_grant)
        await self._redis.hsetnx(key, "total_purchased", 0)

    async def get_balance(self, user_id: str) -> UserBalance:
        try:
            await self._provision(user_id)
            data = await self._redis.hgetall(self._key(user_id))
        except Exception as exc:
            raise PersistenceFailure("get_balance", exc) from exc
        return UserBalance(
            user_id=user_id,
            remaining=max(0, int(data.get("remaining") or 0)),
            total_purchased=max(0, int(data.get("total_purchased") or 0)),
        )

    async def compare_and_decrement(self, user_id: str, expected: int) -> int | None:
        try:
            result = await self._compare_and_decrement(keys=[self._key(user_id)], args=[int(expected)])
        except Exception as exc:
            raise PersistenceFailure("debit", exc) from exc
        value = int(result)
        return None if value < 0 else value

    async def credit(self, user_id: str, amount: int, purchased: bool = False) -> UserBalance:
        units = max(0, int(amount))
        key = self._key(user_id)
        try:
            await self._provision(user_id)
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hincrby(key, "remaining", units)
                if purchased:
                    pipe.hincrby(key, "total_purchased", units)
                await pipe.execute()
        except Exception as exc:
            raise PersistenceFailure("credit", exc) from exc
        return await self.get_balance(user_id)


def build_balance_store() -> BalanceStore:
    if not USE_REDIS_LEDGER:
        return LocalBalanceStore(path=DATA_DIR / "prep_balances.json")

    if not REDIS_URL:
        raise RuntimeError("USE_REDIS_LEDGER=true requires REDIS_URL")
    return RedisBalanceStore(REDIS_URL)
