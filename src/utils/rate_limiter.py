"""Shared outbound-call limiter: bounded concurrency plus an optional sliding window."""

import asyncio
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)


class LookupLimiter:
    """Bound concurrent rank lookups and, optionally, requests per minute.

    One instance is created per process and injected into every scanner so
    concurrent scans draw from the same external API budget.

    Usage::

        limiter = LookupLimiter(max_concurrent=10, requests_per_minute=600)

        async with limiter:
            await client.lookup(...)
    """

    def __init__(
        self,
        max_concurrent: int = 10,
        requests_per_minute: Optional[int] = None,
        name: str = "lookups",
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._max_concurrent = max_concurrent
        self._rpm = requests_per_minute
        self._name = name
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._window: list[float] = []
        self._window_lock = asyncio.Lock()
        self._in_flight = 0

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def in_flight(self) -> int:
        """Number of calls currently holding a slot."""
        return self._in_flight

    def _wait_time(self, now: float) -> float:
        """Seconds until the sliding window admits another request."""
        self._window = [t for t in self._window if now - t < 60.0]
        if self._rpm and len(self._window) >= self._rpm:
            return 60.0 - (now - self._window[0])
        return 0.0

    async def _throttle(self) -> None:
        if not self._rpm:
            return
        async with self._window_lock:
            while True:
                wait = self._wait_time(time.monotonic())
                if wait <= 0:
                    break
                logger.debug("LookupLimiter(%s) sleeping %.2fs", self._name, wait)
                await asyncio.sleep(wait)
            self._window.append(time.monotonic())

    async def acquire(self) -> None:
        await self._semaphore.acquire()
        try:
            await self._throttle()
        except BaseException:
            self._semaphore.release()
            raise
        self._in_flight += 1

    def release(self) -> None:
        self._in_flight -= 1
        self._semaphore.release()

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, *args):
        self.release()

    @property
    def requests_in_last_minute(self) -> int:
        now = time.monotonic()
        return sum(1 for t in self._window if now - t < 60.0)
