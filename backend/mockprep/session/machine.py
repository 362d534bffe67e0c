from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable
import uuid

from mockprep.core.config import (
    ANSWER_POLICY,
    COMPLETION_RETRY_BASE_SEC,
    COMPLETION_RETRY_MAX_SEC,
    LEAVE_POLICY,
    SESSION_DURATION_SEC,
    TIMER_TICK_SEC,
)
from mockprep.core.logger import log_event
from mockprep.ledger.ledger import BalanceLedger
from mockprep.session.collaborators import CompletionSink, PurchaseFlow
from mockprep.session.errors import (
    ContractViolation,
    IllegalAction,
    InsufficientBalance,
    PersistenceFailure,
    SessionAlreadyActive,
)
from mockprep.session.models import (
    Action,
    Answer,
    AnswerPolicy,
    EndReason,
    InterviewSession,
    LeavePolicy,
    MachineState,
    QuestionKind,
    SessionStatus,
    SessionView,
)
from mockprep.session.recorder import CaptureRecorder
from mockprep.session.registry import SessionRegistry
from mockprep.session.sequencer import QuestionSequencer
from mockprep.session.timer import CountdownTimer
from mockprep.system_metrics import decrement_metric, increment_metric, observe_completion_latency_ms

logger = logging.getLogger("mockprep.session.machine")

ViewFn = Callable[[SessionView], Awaitable[None]]
CompletedFn = Callable[[InterviewSession], Awaitable[None]]
TimerFactory = Callable[..., CountdownTimer]

_LEGAL_ACTIONS: dict[MachineState, tuple[Action, ...]] = {
    MachineState.IDLE: (Action.START,),
    MachineState.STARTING: (),
    MachineState.ACTIVE: (Action.TOGGLE_RECORDING, Action.ADVANCE, Action.END, Action.LEAVE),
    MachineState.SUSPENDED: (Action.RESUME, Action.END),
    MachineState.ENDING: (),
    MachineState.ENDED: (),
}


class SessionStateMachine:
    """Lifecycle of one interview attempt: debit, timed questions, completion.

    Idle -> Starting -> Active -> Ending -> Ended, with Suspended reachable
    from Active when leaving under the preserve policy. The machine owns the
    timer task and the completion delivery task; both are cancelled or
    awaited here, never by the UI.
    """

    def __init__(
        self,
        user_id: str,
        ledger: BalanceLedger,
        sequencer: QuestionSequencer,
        recorder: CaptureRecorder,
        registry: SessionRegistry,
        completion_sink: CompletionSink,
        purchase_flow: PurchaseFlow | None = None,
        timer_factory: TimerFactory = CountdownTimer,
        duration_seconds: int = SESSION_DURATION_SEC,
        tick_interval: float = TIMER_TICK_SEC,
        leave_policy: LeavePolicy | str = LEAVE_POLICY,
        answer_policy: AnswerPolicy | str = ANSWER_POLICY,
        retry_base_sec: float = COMPLETION_RETRY_BASE_SEC,
        retry_max_sec: float = COMPLETION_RETRY_MAX_SEC,
        on_view: ViewFn | None = None,
        on_completed: CompletedFn | None = None,
    ):
        self.user_id = str(user_id)
        self.ledger = ledger
        self.sequencer = sequencer
        self.recorder = recorder
        self.registry = registry
        self.completion_sink = completion_sink
        self.purchase_flow = purchase_flow
        self.timer_factory = timer_factory
        self.duration_seconds = max(1, int(duration_seconds))
        self.tick_interval = float(tick_interval)
        self.leave_policy = LeavePolicy(leave_policy)
        self.answer_policy = AnswerPolicy(answer_policy)
        self.retry_base_sec = max(0.0, float(retry_base_sec))
        self.retry_max_sec = max(0.0, float(retry_max_sec))
        self.on_view = on_view
        self.on_completed = on_completed

        self.state = MachineState.IDLE
        self.session: InterviewSession | None = None
        self.remaining_seconds = self.duration_seconds
        self.remaining_balance: int | None = None
        self.banner: str | None = None
        self.needs_purchase = False
        self.purchase_offer: dict | None = None
        self.completion_attempts = 0

        self._lock = asyncio.Lock()
        self._timer: CountdownTimer | None = None
        self._completion_task: asyncio.Task | None = None
        self._completed_emitted = False

    @property
    def session_id(self) -> str | None:
        return self.session.session_id if self.session else None

    def legal_actions(self) -> list[str]:
        return [action.value for action in _LEGAL_ACTIONS.get(self.state, ())]

    def _violation(self, exc: ContractViolation) -> ContractViolation:
        increment_metric("contract_violations_total")
        logger.warning("contract violation | user_id=%s state=%s err=%s", self.user_id, self.state.value, exc)
        self.banner = exc.user_message
        return exc

    def _require(self, action: Action) -> None:
        if action not in _LEGAL_ACTIONS.get(self.state, ()):
            raise self._violation(IllegalAction(action.value, self.state.value))

    # -- start ---------------------------------------------------------------

    async def start(self) -> SessionView:
        async with self._lock:
            self._require(Action.START)
            holder = self.registry.live_session_id(self.user_id)
            if holder is not None:
                raise self._violation(SessionAlreadyActive(self.user_id, holder))

            self.state = MachineState.STARTING
            self.banner = None
            self.needs_purchase = False
            self.purchase_offer = None

            try:
                remaining = await self.ledger.debit(self.user_id)
            except InsufficientBalance as exc:
                self.state = MachineState.IDLE
                self.remaining_balance = exc.remaining
                self.needs_purchase = True
                self.banner = exc.user_message
                await self._prompt_purchase()
                raise
            except PersistenceFailure as exc:
                self.state = MachineState.IDLE
                self.banner = exc.user_message
                raise

            session = InterviewSession(session_id=str(uuid.uuid4()), user_id=self.user_id)
            try:
                self.registry.claim(self.user_id, session.session_id, self)
            except SessionAlreadyActive as exc:
                await self._refund_after_failed_start(session.session_id)
                self.state = MachineState.IDLE
                raise self._violation(exc)

            session.status = SessionStatus.ACTIVE
            self.session = session
            self.remaining_balance = remaining
            self.remaining_seconds = self.duration_seconds
            self._start_timer(self.remaining_seconds)
            self.state = MachineState.ACTIVE

            increment_metric("sessions_started_total")
            increment_metric("sessions_live")
            log_event(
                "session",
                "started",
                session.session_id,
                user_id=self.user_id,
                remaining_balance=remaining,
                question_total=self.sequencer.total,
                duration_seconds=self.duration_seconds,
            )

        await self._emit_view()
        return self.view()

    async def _prompt_purchase(self) -> None:
        if self.purchase_flow is None:
            return
        try:
            balance = await self.ledger.get_balance(self.user_id)
        except PersistenceFailure:
            balance = None
        try:
            self.purchase_offer = await self.purchase_flow.request_purchase(self.user_id, balance)
        except Exception as exc:
            logger.warning("purchase flow unavailable | user_id=%s err=%s", self.user_id, exc)

    async def _refund_after_failed_start(self, session_id: str) -> None:
        # a debited credit with no session behind it must never be left behind
        attempt = 0
        while True:
            attempt += 1
            try:
                self.remaining_balance = await self.ledger.refund(self.user_id)
                return
            except PersistenceFailure as exc:
                self.banner = exc.user_message
                logger.warning(
                    "refund after lost session slot failed, retrying | user_id=%s session_id=%s attempt=%s err=%s",
                    self.user_id,
                    session_id,
                    attempt,
                    exc,
                )
                await asyncio.sleep(self._backoff_delay(attempt))

    def _backoff_delay(self, attempt: int) -> float:
        return min(self.retry_max_sec, self.retry_base_sec * (2 ** (attempt - 1)))

    # -- timer ---------------------------------------------------------------

    def _start_timer(self, seconds: int) -> None:
        self._timer = self.timer_factory(
            total_seconds=seconds,
            on_tick=self._on_tick,
            on_expired=self._on_time_expired,
            tick_interval=self.tick_interval,
        )
        self._timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def timer(self) -> CountdownTimer | None:
        return self._timer

    async def _on_tick(self, remaining: int) -> None:
        if self.state != MachineState.ACTIVE:
            return
        self.remaining_seconds = max(0, int(remaining))
        await self._emit_view()

    async def _on_time_expired(self) -> None:
        if self.state != MachineState.ACTIVE:
            return
        increment_metric("sessions_time_expired_total")
        await self.end(EndReason.TIME_EXPIRED)

    # -- active actions ------------------------------------------------------

    def _store_answer(self, answer: Answer | None, spoken: bool = True) -> None:
        if answer is None or self.session is None:
            return
        self.session.record_answer(answer, self.answer_policy, spoken=spoken)

    async def _drain_recorder(self) -> None:
        spoken = self.recorder.is_recording
        self._store_answer(await self.recorder.drain(), spoken=spoken)

    async def toggle_recording(self) -> SessionView:
        async with self._lock:
            self._require(Action.TOGGLE_RECORDING)
            try:
                if self.recorder.is_recording:
                    self._store_answer(await self.recorder.stop())
                else:
                    await self.recorder.start(self.sequencer.index())
            except ContractViolation as exc:
                raise self._violation(exc)
        await self._emit_view()
        return self.view()

    async def append_transcript(self, token: str, text: str) -> bool:
        if self.state != MachineState.ACTIVE:
            increment_metric("transcript_chunks_dropped_total")
            return False
        accepted = await self.recorder.append_transcript(token, text)
        if self.session is not None:
            self.registry.touch(self.session.session_id)
        return accepted

    async def write_code(self, text: str) -> SessionView:
        async with self._lock:
            if self.state != MachineState.ACTIVE:
                raise self._violation(IllegalAction("write_code", self.state.value))
            try:
                self.recorder.write_code(self.sequencer.index(), text)
            except ContractViolation as exc:
                raise self._violation(exc)
        return self.view()

    async def advance(self) -> SessionView:
        finishing = False
        async with self._lock:
            self._require(Action.ADVANCE)
            await self._drain_recorder()
            if self.sequencer.is_last():
                finishing = True
                await self._begin_ending(EndReason.FINISHED)
            else:
                self.sequencer.advance()
                if self.session is not None:
                    self.session.question_index = self.sequencer.index()

        if finishing:
            await self._await_completion(None)
        await self._emit_view()
        return self.view()

    # -- leaving / resuming --------------------------------------------------

    async def leave(self, wait: float | None = None) -> SessionView:
        forfeited = False
        async with self._lock:
            if self.state != MachineState.ACTIVE:
                return self.view()
            if self.leave_policy == LeavePolicy.FORFEIT:
                forfeited = True
                await self._begin_ending(EndReason.ABANDONED)
            else:
                self._cancel_timer()
                await self._drain_recorder()
                self.state = MachineState.SUSPENDED
                if self.session is not None:
                    self.session.status = SessionStatus.SUSPENDED
                    self.registry.touch(self.session.session_id)
                increment_metric("sessions_suspended_total")
                log_event("session", "suspended", self.session_id, remaining_seconds=self.remaining_seconds)

        if forfeited:
            await self._await_completion(wait)
        await self._emit_view()
        return self.view()

    async def resume(self) -> SessionView:
        async with self._lock:
            self._require(Action.RESUME)
            if self.session is not None:
                self.session.status = SessionStatus.ACTIVE
                self.registry.touch(self.session.session_id)
            self._start_timer(self.remaining_seconds)
            self.state = MachineState.ACTIVE
            log_event("session", "resumed", self.session_id, remaining_seconds=self.remaining_seconds)
        await self._emit_view()
        return self.view()

    # -- ending --------------------------------------------------------------

    async def end(self, reason: EndReason = EndReason.MANUAL, wait: float | None = None) -> SessionView:
        async with self._lock:
            if self.state in {MachineState.ENDING, MachineState.ENDED}:
                logger.info("end ignored, already %s | session_id=%s reason=%s", self.state.value, self.session_id, reason.value)
            elif self.state in {MachineState.ACTIVE, MachineState.SUSPENDED}:
                await self._begin_ending(reason)
            else:
                raise self._violation(IllegalAction(Action.END.value, self.state.value))

        await self._await_completion(wait)
        await self._emit_view()
        return self.view()

    def _session_kind(self) -> str:
        kinds = {question.kind for question in self.sequencer.questions}
        if kinds == {QuestionKind.BEHAVIORAL}:
            return QuestionKind.BEHAVIORAL.value
        if kinds == {QuestionKind.TECHNICAL}:
            return QuestionKind.TECHNICAL.value
        return "mixed"

    async def _begin_ending(self, reason: EndReason) -> None:
        # caller holds self._lock
        session = self.session
        if session is None:
            raise self._violation(IllegalAction(Action.END.value, self.state.value))

        self._cancel_timer()
        self.state = MachineState.ENDING
        await self._drain_recorder()

        status = SessionStatus.ABANDONED if reason == EndReason.ABANDONED else SessionStatus.ENDED
        ended_at = time.time()
        elapsed = self.duration_seconds - self.remaining_seconds
        answers = [
            Answer(
                question_index=answer.question_index,
                transcript=answer.transcript,
                code_buffer=answer.code_buffer,
                recorded_duration_seconds=answer.recorded_duration_seconds,
            )
            for answer in session.answers
        ]
        metadata = {
            "user_id": session.user_id,
            "status": status.value,
            "end_reason": reason.value,
            "started_at": session.started_at,
            "ended_at": ended_at,
            "elapsed_budget_seconds": elapsed,
            "question_total": self.sequencer.total,
            "question_reached": self.sequencer.index() + 1,
            "answered_count": len(answers),
            "session_kind": self._session_kind(),
            "questions": [
                {"index": question.index, "prompt": question.prompt, "kind": question.kind.value}
                for question in self.sequencer.questions
            ],
            "preps_used": 1,
        }
        log_event("session", "ending", session.session_id, reason=reason.value, answered_count=len(answers))
        self._completion_task = asyncio.create_task(
            self._deliver_completion(session, answers, metadata, status, reason, elapsed, ended_at)
        )

    async def _deliver_completion(
        self,
        session: InterviewSession,
        answers: list[Answer],
        metadata: dict,
        status: SessionStatus,
        reason: EndReason,
        elapsed: int,
        ended_at: float,
    ) -> None:
        started = time.perf_counter()
        attempt = 0
        while True:
            attempt += 1
            self.completion_attempts = attempt
            increment_metric("completion_persist_attempts_total")
            try:
                summary_ref = await self.completion_sink.persist_session_completion(session.session_id, answers, metadata)
                break
            except Exception as exc:
                increment_metric("completion_persist_failures_total")
                self.banner = PersistenceFailure.user_message
                logger.warning(
                    "completion persist failed, retrying | session_id=%s attempt=%s err=%s",
                    session.session_id,
                    attempt,
                    exc,
                )
                await self._emit_view()
                await asyncio.sleep(self._backoff_delay(attempt))

        observe_completion_latency_ms((time.perf_counter() - started) * 1000.0)
        session.close(status, reason, elapsed, ended_at=ended_at)
        session.summary_ref = str(summary_ref or session.session_id)
        self.banner = None
        self.state = MachineState.ENDED
        self.registry.release(session.session_id)
        decrement_metric("sessions_live")
        increment_metric("sessions_abandoned_total" if status == SessionStatus.ABANDONED else "sessions_completed_total")
        log_event(
            "session",
            "ended",
            session.session_id,
            status=status.value,
            reason=reason.value,
            attempts=attempt,
            elapsed_budget_seconds=elapsed,
        )
        await self._emit_view()

        if self.on_completed is not None and not self._completed_emitted:
            self._completed_emitted = True
            try:
                await self.on_completed(session)
            except Exception as exc:
                logger.warning("on_completed callback failed | session_id=%s err=%s", session.session_id, exc)

    async def _await_completion(self, wait: float | None) -> None:
        task = self._completion_task
        if task is None or task.done():
            return
        if wait is None:
            await asyncio.shield(task)
            return
        await asyncio.wait({task}, timeout=max(0.0, float(wait)))

    async def wait_ended(self) -> None:
        await self._await_completion(None)

    # -- view ----------------------------------------------------------------

    async def refresh_balance(self) -> int | None:
        try:
            balance = await self.ledger.get_balance(self.user_id)
        except PersistenceFailure as exc:
            logger.warning("balance refresh failed | user_id=%s err=%s", self.user_id, exc)
            return self.remaining_balance
        self.remaining_balance = balance.remaining
        return self.remaining_balance

    def view(self) -> SessionView:
        question = None
        index = self.sequencer.index()
        answer_buffer = ""
        code_buffer = None
        if self.session is not None:
            current = self.sequencer.current()
            question = {"index": current.index, "prompt": current.prompt, "kind": current.kind.value}
            stored = next((item for item in self.session.answers if item.question_index == index), None)
            if self.recorder.is_recording:
                answer_buffer = self.recorder.transcript
            elif stored is not None:
                answer_buffer = stored.transcript
            code_buffer = self.recorder.code_for(index)
            if code_buffer is None and stored is not None:
                code_buffer = stored.code_buffer

        return SessionView(
            state=self.state.value,
            session_id=self.session_id,
            remaining_seconds=int(self.remaining_seconds),
            current_question=question,
            question_position=index + 1,
            question_total=self.sequencer.total,
            answer_buffer=answer_buffer,
            code_buffer=code_buffer,
            is_recording=self.recorder.is_recording,
            recording_token=self.recorder.active_token,
            remaining_balance=self.remaining_balance,
            legal_actions=self.legal_actions(),
            banner=self.banner,
            needs_purchase=self.needs_purchase,
        )

    async def _emit_view(self) -> None:
        if self.on_view is None:
            return
        try:
            await self.on_view(self.view())
        except Exception as exc:
            logger.warning("view listener failed | session_id=%s err=%s", self.session_id, exc)
