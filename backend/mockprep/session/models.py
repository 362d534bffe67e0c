from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
import time


class QuestionKind(str, Enum):
    BEHAVIORAL = "behavioral"
    TECHNICAL = "technical"


class SessionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    ENDED = "ended"
    ABANDONED = "abandoned"


class MachineState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    ENDING = "ending"
    ENDED = "ended"


class Action(str, Enum):
    START = "start"
    TOGGLE_RECORDING = "toggle_recording"
    ADVANCE = "advance"
    END = "end"
    LEAVE = "leave"
    RESUME = "resume"


class EndReason(str, Enum):
    MANUAL = "manual"
    FINISHED = "finished"
    TIME_EXPIRED = "time_expired"
    ABANDONED = "abandoned"


class LeavePolicy(str, Enum):
    FORFEIT = "forfeit"
    PRESERVE = "preserve"


class AnswerPolicy(str, Enum):
    OVERWRITE = "overwrite"
    MERGE = "merge"


@dataclass(frozen=True)
class Question:
    index: int
    prompt: str
    kind: QuestionKind = QuestionKind.BEHAVIORAL


@dataclass
class Answer:
    question_index: int
    transcript: str = ""
    code_buffer: str | None = None
    recorded_duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class InterviewSession:
    session_id: str
    user_id: str
    started_at: float = field(default_factory=time.time)
    status: SessionStatus = SessionStatus.PENDING
    question_index: int = 0
    answers: list[Answer] = field(default_factory=list)
    elapsed_budget_seconds: int = 0
    ended_at: float | None = None
    end_reason: EndReason | None = None
    summary_ref: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in {SessionStatus.ENDED, SessionStatus.ABANDONED}

    def record_answer(self, answer: Answer, policy: AnswerPolicy = AnswerPolicy.OVERWRITE, spoken: bool = True) -> Answer:
        """Store ``answer`` for its question index.

        Transcript and code are kept apart: a code-only capture (``spoken``
        False) never touches the stored transcript, and a recording without
        a code pad keeps the stored code. The policy only decides what a
        re-recording does to the transcript.
        """
        if self.is_terminal:
            raise RuntimeError(f"session {self.session_id} is closed")
        for position, existing in enumerate(self.answers):
            if existing.question_index != answer.question_index:
                continue
            code_buffer = answer.code_buffer if answer.code_buffer is not None else existing.code_buffer
            if not spoken:
                transcript = existing.transcript
                duration = existing.recorded_duration_seconds
            elif policy == AnswerPolicy.MERGE:
                transcript = " ".join(part for part in (existing.transcript, answer.transcript) if part)
                duration = existing.recorded_duration_seconds + answer.recorded_duration_seconds
            else:
                transcript = answer.transcript
                duration = answer.recorded_duration_seconds
            stored = Answer(
                question_index=answer.question_index,
                transcript=transcript,
                code_buffer=code_buffer,
                recorded_duration_seconds=duration,
            )
            self.answers[position] = stored
            return stored
        self.answers.append(answer)
        self.answers.sort(key=lambda item: item.question_index)
        return answer

    def close(self, status: SessionStatus, reason: EndReason, elapsed_seconds: int, ended_at: float | None = None) -> None:
        if self.is_terminal:
            return
        self.status = status
        self.end_reason = reason
        self.elapsed_budget_seconds = max(0, int(elapsed_seconds))
        self.ended_at = float(ended_at) if ended_at is not None else time.time()

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "started_at": self.started_at,
            "status": self.status.value,
            "question_index": self.question_index,
            "answers": [answer.to_dict() for answer in self.answers],
            "elapsed_budget_seconds": self.elapsed_budget_seconds,
            "ended_at": self.ended_at,
            "end_reason": self.end_reason.value if self.end_reason else None,
            "summary_ref": self.summary_ref,
        }


@dataclass
class SessionView:
    state: str
    session_id: str | None
    remaining_seconds: int
    current_question: dict | None
    question_position: int
    question_total: int
    answer_buffer: str
    code_buffer: str | None
    is_recording: bool
    recording_token: str | None
    remaining_balance: int | None
    legal_actions: list[str]
    banner: str | None = None
    needs_purchase: bool = False

    def to_dict(self) -> dict:
        return asdict(self)
