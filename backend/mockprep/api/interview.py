from __future__ import annotations

import logging
import os

from fastapi import APIRouter, Depends, HTTPException, Request

from mockprep.api.deps import EngineContext, get_engine
from mockprep.auth import get_user_id_async
from mockprep.core.config import COMPLETION_WAIT_SEC
from mockprep.ledger.models import PREP_PACKAGES, find_package
from mockprep.schemas import (
    BalanceResponse,
    CodeBufferRequest,
    GrantPrepsRequest,
    HistoryResponse,
    PrepPackageResponse,
    SessionViewResponse,
    StartInterviewRequest,
    TranscriptAcceptedResponse,
    TranscriptChunkRequest,
)
from mockprep.session.completion_store import summarize_history
from mockprep.session.errors import (
    GENERIC_RETRY_MESSAGE,
    ContractViolation,
    InsufficientBalance,
    PersistenceFailure,
    SessionError,
)
from mockprep.session.machine import SessionStateMachine
from mockprep.session.models import EndReason

logger = logging.getLogger("mockprep.api.interview")

router = APIRouter()


def _http_error(exc: SessionError, machine: SessionStateMachine | None = None) -> HTTPException:
    if isinstance(exc, InsufficientBalance):
        offer = dict((machine.purchase_offer if machine else None) or {})
        offer.setdefault("needs_purchase", True)
        offer.setdefault("current_preps", exc.remaining)
        offer.setdefault("packages", [package.to_dict() for package in PREP_PACKAGES])
        return HTTPException(status_code=402, detail={"message": exc.user_message, **offer})
    if isinstance(exc, PersistenceFailure):
        return HTTPException(status_code=503, detail={"message": exc.user_message, "retryable": True})
    if isinstance(exc, ContractViolation):
        return HTTPException(status_code=409, detail={"message": GENERIC_RETRY_MESSAGE})
    logger.error("unmapped session error | err=%s", exc)
    return HTTPException(status_code=500, detail={"message": GENERIC_RETRY_MESSAGE})


def _view_response(machine: SessionStateMachine) -> SessionViewResponse:
    return SessionViewResponse(**machine.view().to_dict())


@router.get("/api/preps/balance", response_model=BalanceResponse)
async def get_balance(request: Request, engine: EngineContext = Depends(get_engine)):
    user_id = await get_user_id_async(request)
    try:
        balance = await engine.ledger.get_balance(user_id)
    except PersistenceFailure as exc:
        raise _http_error(exc)
    return BalanceResponse(**balance.to_dict())


@router.get("/api/preps/packages", response_model=list[PrepPackageResponse])
async def list_packages():
    return [PrepPackageResponse(**package.to_dict()) for package in PREP_PACKAGES]


@router.post("/api/dev/preps/grant", response_model=BalanceResponse)
async def dev_grant_preps(payload: GrantPrepsRequest, request: Request, engine: EngineContext = Depends(get_engine)):
    # Payment processing lives elsewhere; this only credits in dev/QA.
    env = str(os.getenv("ENV", "")).lower()
    qa_mode = str(os.getenv("QA_MODE", "false")).strip().lower() in {"1", "true", "yes", "on"}
    if env not in {"development", "dev"} and not qa_mode:
        raise HTTPException(status_code=404, detail="Not Found")

    user_id = await get_user_id_async(request)
    purchased = False
    preps = payload.preps or 0
    if payload.package_id:
        package = find_package(payload.package_id)
        if package is None:
            raise HTTPException(status_code=400, detail="Unknown package")
        preps = package.preps
        purchased = True
    if preps <= 0:
        raise HTTPException(status_code=400, detail="preps or package_id is required")

    try:
        balance = await engine.ledger.grant(user_id, preps, purchased=purchased)
    except PersistenceFailure as exc:
        raise _http_error(exc)
    return BalanceResponse(**balance.to_dict())


@router.post("/api/interview/start", response_model=SessionViewResponse)
async def start_interview(payload: StartInterviewRequest, request: Request, engine: EngineContext = Depends(get_engine)):
    user_id = await get_user_id_async(request)
    try:
        machine = engine.new_machine(user_id, kind=payload.kind, question_count=payload.question_count)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        await machine.start()
    except SessionError as exc:
        raise _http_error(exc, machine)
    return _view_response(machine)


@router.get("/api/interview/current", response_model=SessionViewResponse)
async def current_interview(request: Request, engine: EngineContext = Depends(get_engine)):
    user_id = await get_user_id_async(request)
    item = engine.registry.get_for_user(user_id)
    if not item:
        raise HTTPException(status_code=404, detail="No live interview session")
    return _view_response(item["machine"])


@router.get("/api/interview/{session_id}/state", response_model=SessionViewResponse)
async def interview_state(session_id: str, request: Request, engine: EngineContext = Depends(get_engine)):
    user_id = await get_user_id_async(request)
    machine = engine.machine_for(session_id, user_id)
    if machine.remaining_balance is None:
        await machine.refresh_balance()
    return _view_response(machine)


@router.post("/api/interview/{session_id}/recording", response_model=SessionViewResponse)
async def toggle_recording(session_id: str, request: Request, engine: EngineContext = Depends(get_engine)):
    user_id = await get_user_id_async(request)
    machine = engine.machine_for(session_id, user_id)
    try:
        await machine.toggle_recording()
    except SessionError as exc:
        raise _http_error(exc, machine)
    return _view_response(machine)


@router.post("/api/interview/{session_id}/transcript", response_model=TranscriptAcceptedResponse)
async def push_transcript(
    session_id: str,
    payload: TranscriptChunkRequest,
    request: Request,
    engine: EngineContext = Depends(get_engine),
):
    user_id = await get_user_id_async(request)
    machine = engine.machine_for(session_id, user_id)
    accepted = await machine.append_transcript(payload.token, payload.text)
    return TranscriptAcceptedResponse(accepted=accepted, answer_buffer=machine.view().answer_buffer)


@router.post("/api/interview/{session_id}/code", response_model=SessionViewResponse)
async def write_code(session_id: str, payload: CodeBufferRequest, request: Request, engine: EngineContext = Depends(get_engine)):
    user_id = await get_user_id_async(request)
    machine = engine.machine_for(session_id, user_id)
    try:
        await machine.write_code(payload.code)
    except SessionError as exc:
        raise _http_error(exc, machine)
    return _view_response(machine)


@router.post("/api/interview/{session_id}/advance", response_model=SessionViewResponse)
async def advance_question(session_id: str, request: Request, engine: EngineContext = Depends(get_engine)):
    user_id = await get_user_id_async(request)
    machine = engine.machine_for(session_id, user_id)
    try:
        await machine.advance()
    except SessionError as exc:
        raise _http_error(exc, machine)
    return _view_response(machine)


@router.post("/api/interview/{session_id}/end", response_model=SessionViewResponse)
async def end_interview(session_id: str, request: Request, engine: EngineContext = Depends(get_engine)):
    user_id = await get_user_id_async(request)
    machine = engine.machine_for(session_id, user_id)
    try:
        await machine.end(EndReason.MANUAL, wait=COMPLETION_WAIT_SEC)
    except SessionError as exc:
        raise _http_error(exc, machine)
    return _view_response(machine)


@router.post("/api/interview/{session_id}/leave", response_model=SessionViewResponse)
async def leave_interview(session_id: str, request: Request, engine: EngineContext = Depends(get_engine)):
    user_id = await get_user_id_async(request)
    machine = engine.machine_for(session_id, user_id)
    await machine.leave(wait=COMPLETION_WAIT_SEC)
    return _view_response(machine)


@router.post("/api/interview/{session_id}/resume", response_model=SessionViewResponse)
async def resume_interview(session_id: str, request: Request, engine: EngineContext = Depends(get_engine)):
    user_id = await get_user_id_async(request)
    machine = engine.machine_for(session_id, user_id)
    try:
        await machine.resume()
    except SessionError as exc:
        raise _http_error(exc, machine)
    return _view_response(machine)


@router.get("/api/history/interviews", response_model=HistoryResponse)
async def interview_history(request: Request, limit: int = 20, engine: EngineContext = Depends(get_engine)):
    user_id = await get_user_id_async(request)
    rows = await engine.completion_store.list_user_completions(user_id, limit=limit)
    return HistoryResponse(items=list(reversed(rows)), summary=summarize_history(rows))
