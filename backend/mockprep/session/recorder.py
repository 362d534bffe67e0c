from __future__ import annotations

from enum import Enum
import logging
import time
from typing import Callable
import uuid

from mockprep.session.collaborators import TranscriptionSource
from mockprep.session.errors import RecordingAlreadyActive, RecordingNotActive
from mockprep.session.models import Answer
from mockprep.system_metrics import increment_metric

logger = logging.getLogger("mockprep.session.recorder")


class RecorderState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"


class CaptureRecorder:
    """Buffers the candidate's answer to one question at a time."""

    def __init__(self, transcription: TranscriptionSource | None = None, clock: Callable[[], float] = time.monotonic):
        self._transcription = transcription
        self._clock = clock
        self.state = RecorderState.IDLE
        self.active_index: int | None = None
        self.active_token: str | None = None
        self._started_at = 0.0
        self._transcript = ""
        self._code: str | None = None
        self._code_index: int | None = None

    @property
    def is_recording(self) -> bool:
        return self.state == RecorderState.RECORDING

    @property
    def transcript(self) -> str:
        return self._transcript

    def code_for(self, question_index: int) -> str | None:
        return self._code if self._code_index == question_index else None

    async def start(self, question_index: int) -> str:
        if self.is_recording:
            if self.active_index == question_index:
                return str(self.active_token)
            raise RecordingAlreadyActive(int(self.active_index or 0), question_index)

        self.state = RecorderState.RECORDING
        self.active_index = question_index
        self.active_token = uuid.uuid4().hex
        self._started_at = self._clock()
        self._transcript = ""

        if self._transcription is not None:
            try:
                await self._transcription.start_stream(self.active_token, self.append_transcript)
            except Exception as exc:
                logger.warning("transcription start failed | index=%s err=%s", question_index, exc)
        return self.active_token

    async def append_transcript(self, token: str, text: str) -> bool:
        if not self.is_recording or token != self.active_token:
            increment_metric("transcript_chunks_dropped_total")
            logger.info("dropped transcript chunk for inactive token | index=%s", self.active_index)
            return False
        chunk = str(text or "").strip()
        if not chunk:
            return True
        self._transcript = f"{self._transcript} {chunk}" if self._transcript else chunk
        return True

    def write_code(self, question_index: int, text: str) -> None:
        if self.is_recording and self.active_index != question_index:
            raise RecordingAlreadyActive(int(self.active_index or 0), question_index)
        self._code = str(text or "")
        self._code_index = question_index

    async def stop(self) -> Answer:
        if not self.is_recording:
            raise RecordingNotActive("stop() called while idle")

        index = int(self.active_index or 0)
        token = str(self.active_token)
        answer = Answer(
            question_index=index,
            transcript=self._transcript,
            code_buffer=self.code_for(index),
            recorded_duration_seconds=round(max(0.0, self._clock() - self._started_at), 3),
        )

        self.state = RecorderState.IDLE
        self.active_index = None
        self.active_token = None
        self._transcript = ""

        if self._transcription is not None:
            try:
                await self._transcription.stop_stream(token)
            except Exception as exc:
                logger.warning("transcription stop failed | index=%s err=%s", index, exc)
        return answer

    async def drain(self) -> Answer | None:
        """Finalize the question being left.

        A live recording is stopped and carries the code pad with it;
        otherwise a pending code pad comes back as a code-only answer. The
        code pad is cleared either way.
        """
        if self.is_recording:
            answer = await self.stop()
        elif self._code_index is not None and self._code:
            answer = Answer(question_index=self._code_index, transcript="", code_buffer=self._code)
        else:
            answer = None
        self._code = None
        self._code_index = None
        return answer
