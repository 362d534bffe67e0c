from __future__ import annotations

import time
from threading import Lock

from mockprep.session.errors import SessionAlreadyActive


class SessionRegistry:
    """Holds live session machines; at most one live slot per user."""

    def __init__(self):
        self._lock = Lock()
        self._sessions: dict[str, dict] = {}
        self._live_by_user: dict[str, str] = {}

    def live_session_id(self, user_id: str) -> str | None:
        with self._lock:
            return self._live_by_user.get(user_id)

    def claim(self, user_id: str, session_id: str, machine) -> None:
        with self._lock:
            holder = self._live_by_user.get(user_id)
            if holder is not None and holder != session_id:
                raise SessionAlreadyActive(user_id, holder)
            self._live_by_user[user_id] = session_id
            self._sessions[session_id] = {
                "user_id": user_id,
                "machine": machine,
                "created_at": time.time(),
                "updated_at": time.time(),
                "active": True,
            }

    def touch(self, session_id: str) -> None:
        with self._lock:
            if session_id in self._sessions:
                self._sessions[session_id]["updated_at"] = time.time()

    def release(self, session_id: str) -> None:
        with self._lock:
            item = self._sessions.get(session_id)
            if not item:
                return
            item["active"] = False
            item["updated_at"] = time.time()
            user_id = item.get("user_id")
            if self._live_by_user.get(user_id) == session_id:
                self._live_by_user.pop(user_id, None)

    def get(self, session_id: str) -> dict | None:
        with self._lock:
            item = self._sessions.get(session_id)
            return dict(item) if item else None

    def get_machine(self, session_id: str):
        item = self.get(session_id)
        return item.get("machine") if item else None

    def get_for_user(self, user_id: str) -> dict | None:
        with self._lock:
            session_id = self._live_by_user.get(user_id)
            item = self._sessions.get(session_id) if session_id else None
            return dict(item) if item else None

    def count_live(self) -> int:
        with self._lock:
            return len(self._live_by_user)

    def cleanup_inactive(self, ttl_sec: float) -> int:
        now_ts = time.time()
        cutoff = now_ts - max(30.0, float(ttl_sec or 900.0))
        removed = 0
        with self._lock:
            for session_id, data in list(self._sessions.items()):
                if bool((data or {}).get("active", False)):
                    continue
                updated_at = float((data or {}).get("updated_at") or 0.0)
                if updated_at <= cutoff:
                    self._sessions.pop(session_id, None)
                    removed += 1
        return removed
