from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger("mockprep.session.timer")

TickFn = Callable[[int], Awaitable[None]]
ExpiredFn = Callable[[], Awaitable[None]]


class CountdownTimer:
    """Single wall-clock countdown for one session.

    Runs as one cooperative asyncio task. Once cancelled or expired it never
    delivers another tick; a resumed session gets a fresh timer.
    """

    def __init__(
        self,
        total_seconds: int,
        on_tick: TickFn | None = None,
        on_expired: ExpiredFn | None = None,
        tick_interval: float = 1.0,
    ):
        self.total_seconds = max(0, int(total_seconds))
        self._remaining = self.total_seconds
        self._on_tick = on_tick
        self._on_expired = on_expired
        self._tick_interval = max(0.0, float(tick_interval))
        self._task: asyncio.Task | None = None
        self._started = False
        self._cancelled = False
        self._expired = False

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def elapsed(self) -> int:
        return self.total_seconds - self._remaining

    @property
    def running(self) -> bool:
        return self._started and not self._cancelled and not self._expired

    @property
    def expired(self) -> bool:
        return self._expired

    def start(self) -> None:
        if self._started:
            raise RuntimeError("CountdownTimer cannot be restarted")
        self._started = True
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        try:
            while self.running:
                await asyncio.sleep(self._tick_interval)
                await self.tick()
        except asyncio.CancelledError:
            pass

    async def tick(self) -> None:
        if not self._started:
            self._started = True
        if self._cancelled or self._expired:
            return

        self._remaining = max(0, self._remaining - 1)
        if self._on_tick is not None:
            await self._on_tick(self._remaining)

        if self._remaining == 0 and not self._cancelled and not self._expired:
            self._expired = True
            logger.info("countdown expired | total_seconds=%s", self.total_seconds)
            if self._on_expired is not None:
                await self._on_expired()

    def cancel(self) -> None:
        self._cancelled = True
        task = self._task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # the expiry callback runs inside the task and may end the session
        if task is not current:
            task.cancel()
