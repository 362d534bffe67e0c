from __future__ import annotations

from collections import deque
import logging
from typing import Awaitable, Callable, Protocol

from mockprep.ledger.models import PREP_PACKAGES, UserBalance
from mockprep.session.models import Answer
from mockprep.system_metrics import increment_metric

logger = logging.getLogger("mockprep.session.collaborators")

ChunkFn = Callable[[str, str], Awaitable[bool]]


class TranscriptionSource(Protocol):
    async def start_stream(self, token: str, on_chunk: ChunkFn) -> None:
        ...

    async def stop_stream(self, token: str) -> None:
        ...


class CompletionSink(Protocol):
    async def persist_session_completion(self, session_id: str, answers: list[Answer], metadata: dict) -> str:
        """Store the finished session under ``session_id``; returns a summary reference.

        Delivering the same session_id twice must not create a second record.
        """
        ...


class PurchaseFlow(Protocol):
    async def request_purchase(self, user_id: str, balance: UserBalance | None) -> dict:
        ...


class ClientPushTranscription:
    """Speech capture happens in the browser; chunks come back over the API.

    The stream here only tracks which tokens are open so late chunks from a
    closed recording can be told apart.
    """

    def __init__(self):
        self._open: dict[str, ChunkFn] = {}

    async def start_stream(self, token: str, on_chunk: ChunkFn) -> None:
        self._open[token] = on_chunk

    async def stop_stream(self, token: str) -> None:
        self._open.pop(token, None)

    def is_open(self, token: str) -> bool:
        return token in self._open

    async def push(self, token: str, text: str) -> bool:
        on_chunk = self._open.get(token)
        if on_chunk is None:
            return False
        return await on_chunk(token, text)


class CatalogPurchaseFlow:
    def __init__(self, history_size: int = 200):
        # recent prompts only; the running total lives in purchase_prompts_total
        self.prompts: deque[str] = deque(maxlen=max(1, int(history_size)))

    async def request_purchase(self, user_id: str, balance: UserBalance | None) -> dict:
        increment_metric("purchase_prompts_total")
        self.prompts.append(user_id)
        logger.info("needs purchase | user_id=%s remaining=%s", user_id, balance.remaining if balance else None)
        return {
            "needs_purchase": True,
            "current_preps": balance.remaining if balance else 0,
            "packages": [package.to_dict() for package in PREP_PACKAGES],
        }
