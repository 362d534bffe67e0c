from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from threading import Lock
import time
from typing import Any

from mockprep.core.config import DATA_DIR, REDIS_URL, USE_REDIS_COMPLETIONS
from mockprep.session.collaborators import CompletionSink
from mockprep.session.models import Answer

logger = logging.getLogger("mockprep.session.completion_store")


def _build_record(session_id: str, answers: list[Answer], metadata: dict) -> dict[str, Any]:
    record = dict(metadata or {})
    record["session_id"] = session_id
    record["answers"] = [answer.to_dict() for answer in answers]
    record.setdefault("persisted_at", time.time())
    return record


class LocalCompletionStore:
    """Completion records keyed by session_id, mirrored to a JSON file."""

    def __init__(self, path: Path | None = None):
        self._lock = Lock()
        self._path = path
        self._records: dict[str, dict[str, Any]] = {}
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except Exception as exc:
            logger.warning("completion store unreadable, starting empty | path=%s err=%s", self._path, exc)
            return
        if isinstance(payload, dict):
            self._records = {
                str(key): value
                for key, value in payload.items()
                if isinstance(key, str) and isinstance(value, dict)
            }

    def _persist(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(self._records, ensure_ascii=False), encoding="utf-8")
        temp_path.replace(self._path)

    def _save(self, session_id: str, record: dict[str, Any]) -> str:
        with self._lock:
            if session_id in self._records:
                return session_id
            self._records[session_id] = record
            try:
                self._persist()
            except Exception:
                self._records.pop(session_id, None)
                raise
        return session_id

    async def persist_session_completion(self, session_id: str, answers: list[Answer], metadata: dict) -> str:
        sid = str(session_id or "").strip()
        if not sid:
            raise ValueError("session_id is required")
        record = _build_record(sid, answers, metadata)
        return await asyncio.to_thread(self._save, sid, record)

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def get_completion(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            data = self._records.get(str(session_id or "").strip())
            return dict(data) if isinstance(data, dict) else None

    async def list_user_completions(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        uid = str(user_id or "").strip()
        if not uid:
            return []
        capped = max(1, min(int(limit or 50), 200))
        with self._lock:
            rows = [dict(item) for item in self._records.values() if str(item.get("user_id") or "") == uid]
        rows.sort(key=lambda item: float(item.get("ended_at") or item.get("persisted_at") or 0.0))
        return rows[-capped:]


class RedisCompletionStore:
    """Redis-backed completion records.

    Keys:
    - completion:{session_id} (string, JSON record, written with NX)
    - completions:{user_id} (sorted set of session ids by end time)
    """

    def __init__(self, redis_url: str):
        try:
            import redis.asyncio as redis_async  # type: ignore
        except Exception as exc:
            raise RuntimeError("redis package not installed; install 'redis' to enable distributed completions") from exc

        self._redis = redis_async.from_url(redis_url, decode_responses=True)

    @staticmethod
    def _record_key(session_id: str) -> str:
        return f"completion:{session_id}"

    @staticmethod
    def _user_key(user_id: str) -> str:
        return f"completions:{user_id}"

    async def persist_session_completion(self, session_id: str, answers: list[Answer], metadata: dict) -> str:
        sid = str(session_id or "").strip()
        if not sid:
            raise ValueError("session_id is required")
        record = _build_record(sid, answers, metadata)
        created = await self._redis.set(self._record_key(sid), json.dumps(record, ensure_ascii=False), nx=True)
        user_id = str(record.get("user_id") or "").strip()
        if user_id:
            # ZADD is idempotent on the member, so a retried delivery is harmless
            score = float(record.get("ended_at") or record.get("persisted_at") or time.time())
            await self._redis.zadd(self._user_key(user_id), {sid: score})
        if not created:
            logger.info("completion already stored | session_id=%s", sid)
        return sid

    async def list_user_completions(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        uid = str(user_id or "").strip()
        if not uid:
            return []
        capped = max(1, min(int(limit or 50), 200))
        session_ids = await self._redis.zrange(self._user_key(uid), -capped, -1)
        if not session_ids:
            return []
        raw_rows = await self._redis.mget([self._record_key(sid) for sid in session_ids])
        rows = []
        for raw in raw_rows:
            if not raw:
                continue
            try:
                rows.append(json.loads(raw))
            except Exception:
                logger.warning("skipping unreadable completion record | user_id=%s", uid)
        return rows


def summarize_history(rows: list[dict[str, Any]]) -> dict[str, Any]:
    by_kind: dict[str, int] = {}
    completed = 0
    abandoned = 0
    total_seconds = 0
    for row in rows:
        kind = str(row.get("session_kind") or "mixed")
        by_kind[kind] = by_kind.get(kind, 0) + 1
        if str(row.get("status") or "") == "abandoned":
            abandoned += 1
        else:
            completed += 1
        total_seconds += max(0, int(row.get("elapsed_budget_seconds") or 0))

    return {
        "total_interviews": len(rows),
        "completed": completed,
        "abandoned": abandoned,
        "preps_used": sum(int(row.get("preps_used") or 1) for row in rows),
        "total_minutes": round(total_seconds / 60.0, 1),
        "by_kind": by_kind,
    }


def build_completion_store() -> CompletionSink:
    if not USE_REDIS_COMPLETIONS:
        return LocalCompletionStore(path=DATA_DIR / "session_completions.json")

    if not REDIS_URL:
        raise RuntimeError("USE_REDIS_COMPLETIONS=true requires REDIS_URL")
    return RedisCompletionStore(REDIS_URL)
