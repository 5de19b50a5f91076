"""Fixed-window, per-client request limiter shared by the API routes."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Window:
    count: int
    reset_at: float


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    """Outcome of a rate-limit check for one request."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


class RateLimiter:
    """Counts requests per client key inside a rolling fixed window.

    Expired windows are evicted by ``sweep``, which runs periodically once
    ``start`` has been awaited.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        *,
        sweep_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self._limit = limit
        self._window_seconds = window_seconds
        self._sweep_seconds = sweep_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    def check(self, client_key: str) -> RateLimitDecision:
        now = self._clock()
        window = self._windows.get(client_key)
        if window is None or now > window.reset_at:
            window = _Window(count=1, reset_at=now + self._window_seconds)
            self._windows[client_key] = window
            return RateLimitDecision(True, self._limit, self._limit - 1, window.reset_at)
        if window.count >= self._limit:
            return RateLimitDecision(False, self._limit, 0, window.reset_at)
        window.count += 1
        return RateLimitDecision(
            True, self._limit, self._limit - window.count, window.reset_at
        )

    def sweep(self) -> int:
        """Drop expired windows and return how many were evicted."""

        now = self._clock()
        expired = [key for key, window in self._windows.items() if now > window.reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)

    async def start(self) -> None:
        """Launch the periodic sweep loop."""

        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._sweep_task
        self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_seconds)
            evicted = self.sweep()
            if evicted:
                logger.debug("Evicted %s expired rate-limit windows", evicted)
