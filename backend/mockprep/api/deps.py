from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
import logging
from typing import Awaitable, Callable

from fastapi import HTTPException, Request

from mockprep.core.config import (
    ANSWER_POLICY,
    COMPLETION_RETRY_BASE_SEC,
    COMPLETION_RETRY_MAX_SEC,
    LEAVE_POLICY,
    SESSION_DURATION_SEC,
    TIMER_TICK_SEC,
)
from mockprep.interview.questions import build_question_set
from mockprep.ledger.ledger import BalanceLedger
from mockprep.ledger.store import BalanceStore, LocalBalanceStore, build_balance_store
from mockprep.session.collaborators import CatalogPurchaseFlow, ClientPushTranscription, CompletionSink, PurchaseFlow
from mockprep.session.completion_store import LocalCompletionStore, build_completion_store
from mockprep.session.machine import SessionStateMachine
from mockprep.session.models import SessionView
from mockprep.session.recorder import CaptureRecorder
from mockprep.session.registry import SessionRegistry
from mockprep.session.sequencer import QuestionSequencer

logger = logging.getLogger("mockprep.api.deps")

SendFn = Callable[[dict], Awaitable[None]]


class ViewBroadcaster:
    """Fans machine view updates out to the sockets watching a session."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._listeners: dict[str, dict[str, SendFn]] = defaultdict(dict)

    async def subscribe(self, session_id: str, connection_id: str, send_fn: SendFn) -> None:
        async with self._lock:
            self._listeners[session_id][connection_id] = send_fn

    async def unsubscribe(self, session_id: str, connection_id: str) -> int:
        async with self._lock:
            listeners = self._listeners.get(session_id)
            if not listeners:
                return 0
            listeners.pop(connection_id, None)
            if not listeners:
                self._listeners.pop(session_id, None)
                return 0
            return len(listeners)

    async def publish(self, view: SessionView) -> None:
        if not view.session_id:
            return
        async with self._lock:
            targets = list((self._listeners.get(view.session_id) or {}).items())
        payload = {"type": "session_view", **view.to_dict()}
        for connection_id, send_fn in targets:
            try:
                await send_fn(payload)
            except Exception as exc:
                logger.warning("view push failed | session_id=%s connection_id=%s err=%s", view.session_id, connection_id, exc)


@dataclass
class EngineContext:
    ledger: BalanceLedger
    registry: SessionRegistry
    completion_store: CompletionSink
    purchase_flow: PurchaseFlow
    transcription: ClientPushTranscription = field(default_factory=ClientPushTranscription)
    broadcaster: ViewBroadcaster = field(default_factory=ViewBroadcaster)
    duration_seconds: int = SESSION_DURATION_SEC
    tick_interval: float = TIMER_TICK_SEC
    leave_policy: str = LEAVE_POLICY
    answer_policy: str = ANSWER_POLICY
    retry_base_sec: float = COMPLETION_RETRY_BASE_SEC
    retry_max_sec: float = COMPLETION_RETRY_MAX_SEC

    def new_machine(self, user_id: str, kind: str = "mixed", question_count: int = 4) -> SessionStateMachine:
        return SessionStateMachine(
            user_id=user_id,
            ledger=self.ledger,
            sequencer=QuestionSequencer(build_question_set(kind, question_count)),
            recorder=CaptureRecorder(transcription=self.transcription),
            registry=self.registry,
            completion_sink=self.completion_store,
            purchase_flow=self.purchase_flow,
            duration_seconds=self.duration_seconds,
            tick_interval=self.tick_interval,
            leave_policy=self.leave_policy,
            answer_policy=self.answer_policy,
            retry_base_sec=self.retry_base_sec,
            retry_max_sec=self.retry_max_sec,
            on_view=self.broadcaster.publish,
        )

    def machine_for(self, session_id: str, user_id: str) -> SessionStateMachine:
        item = self.registry.get(session_id)
        if not item:
            raise HTTPException(status_code=404, detail="Interview session not found")
        if str(item.get("user_id") or "") != user_id:
            raise HTTPException(status_code=403, detail="Forbidden")
        return item["machine"]


def build_engine_context(balance_store: BalanceStore | None = None, completion_store: CompletionSink | None = None) -> EngineContext:
    if balance_store is None:
        try:
            balance_store = build_balance_store()
        except Exception as exc:
            balance_store = LocalBalanceStore()
            logger.warning("balance store fallback to in-memory LocalBalanceStore due to init error: %s", exc)
    if completion_store is None:
        try:
            completion_store = build_completion_store()
        except Exception as exc:
            completion_store = LocalCompletionStore()
            logger.warning("completion store fallback to in-memory LocalCompletionStore due to init error: %s", exc)

    return EngineContext(
        ledger=BalanceLedger(balance_store),
        registry=SessionRegistry(),
        completion_store=completion_store,
        purchase_flow=CatalogPurchaseFlow(),
    )


def get_engine(request: Request) -> EngineContext:
    return request.app.state.engine
