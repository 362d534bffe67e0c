from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from mockprep.api.deps import EngineContext
from mockprep.auth import resolve_user_id_from_token_async
from mockprep.core.config import LEAVE_ON_DISCONNECT
from mockprep.core.logger import log_event
from mockprep.session.errors import GENERIC_RETRY_MESSAGE, SessionError
from mockprep.session.models import EndReason, MachineState

logger = logging.getLogger("mockprep.api.ws_interview")

MAX_WS_TEXT_BYTES = max(1024, int(os.getenv("WS_MAX_TEXT_BYTES", "65536")))

router = APIRouter()


def _token_from_websocket(websocket: WebSocket) -> str:
    auth_header = str(websocket.headers.get("authorization") or "").strip()
    token_from_header = auth_header.replace("Bearer ", "", 1).strip() if auth_header.lower().startswith("bearer ") else ""
    return (
        token_from_header
        or str(websocket.query_params.get("token") or "").strip()
        or str(websocket.query_params.get("access_token") or "").strip()
    )


@router.websocket("/ws/interview/{session_id}")
async def interview_ws(websocket: WebSocket, session_id: str):
    engine: EngineContext = websocket.app.state.engine
    token = _token_from_websocket(websocket)
    if not token:
        await websocket.close(code=1008, reason="Unauthorized")
        return
    try:
        user_id = await resolve_user_id_from_token_async(token)
        machine = engine.machine_for(session_id, user_id)
    except HTTPException as exc:
        await websocket.close(code=1008, reason=str(exc.detail))
        return

    connection_id = str(uuid.uuid4())
    send_lock = asyncio.Lock()

    await websocket.accept()

    def _log_event(event: str, **fields):
        log_event("ws_interview", event, session_id, connection_id=connection_id, **fields)

    async def _safe_send(payload: dict):
        if websocket.client_state != WebSocketState.CONNECTED:
            return
        encoded = json.dumps(payload, default=str)
        async with send_lock:
            await websocket.send_text(encoded)

    await engine.broadcaster.subscribe(session_id, connection_id, _safe_send)
    _log_event("connect", user_id=user_id)
    await _safe_send({"type": "session_view", **machine.view().to_dict()})

    async def _handle(message: dict) -> None:
        kind = str(message.get("type") or "").strip().lower()
        if kind == "ping":
            await _safe_send({"type": "pong"})
        elif kind == "transcript":
            accepted = await machine.append_transcript(str(message.get("token") or ""), str(message.get("text") or ""))
            await _safe_send({"type": "transcript_ack", "accepted": accepted, "answer_buffer": machine.view().answer_buffer})
        elif kind == "code":
            await machine.write_code(str(message.get("code") or ""))
        elif kind == "toggle_recording":
            await machine.toggle_recording()
        elif kind == "advance":
            await machine.advance()
        elif kind == "end":
            await machine.end(EndReason.MANUAL, wait=0)
        else:
            await _safe_send({"type": "error", "message": GENERIC_RETRY_MESSAGE})

    disconnect_reason = "client_disconnect"
    try:
        while True:
            raw = await websocket.receive_text()
            if len(raw.encode("utf-8")) > MAX_WS_TEXT_BYTES:
                await _safe_send({"type": "error", "message": "Message too large"})
                continue
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await _safe_send({"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(message, dict):
                await _safe_send({"type": "error", "message": "Invalid message"})
                continue
            try:
                await _handle(message)
            except SessionError as exc:
                await _safe_send({"type": "error", "message": exc.user_message})
    except WebSocketDisconnect:
        pass
    finally:
        remaining = await engine.broadcaster.unsubscribe(session_id, connection_id)
        if remaining == 0 and LEAVE_ON_DISCONNECT and machine.state == MachineState.ACTIVE:
            disconnect_reason = "left_interview_screen"
            await machine.leave(wait=0)
        _log_event("disconnect", reason=disconnect_reason, state=machine.state.value)
