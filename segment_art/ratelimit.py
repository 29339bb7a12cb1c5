"""Rolling-window limiter for outbound collaborator calls."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque

logger = logging.getLogger(__name__)


class RateLimiter:
    """At most ``max_requests`` acquisitions per rolling ``window`` seconds.

    ``acquire`` waits for a slot instead of failing. The clock and sleep are
    injectable so tests can drive time by hand.
    """

    def __init__(
        self,
        max_requests: int = 20,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        self.max_requests = int(max_requests)
        self.window = float(window)
        self._clock = clock
        self._sleep = sleep
        self._stamps: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self.window:
            self._stamps.popleft()

    @property
    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._stamps)

    def try_acquire(self) -> bool:
        now = self._clock()
        self._prune(now)
        if len(self._stamps) >= self.max_requests:
            return False
        self._stamps.append(now)
        return True

    def release(self) -> None:
        """Give back the most recent slot, for a request that was never sent."""
        if self._stamps:
            self._stamps.pop()

    def wait_time(self) -> float:
        now = self._clock()
        self._prune(now)
        if len(self._stamps) < self.max_requests:
            return 0.0
        return max(0.0, self._stamps[0] + self.window - now)

    async def acquire(self) -> None:
        while not self.try_acquire():
            wait = self.wait_time()
            logger.debug("Rate limit reached, waiting %.2fs", wait)
            await self._sleep(max(wait, 0.01))
