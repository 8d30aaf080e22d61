"""Cancellable fixed-interval ticker for polling loops."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator


class Ticker:
    """Fixed-interval ticks that can be stopped from outside.

    Waits on an asyncio.Event with a timeout instead of sleeping, so stop()
    (or task cancellation) ends a wait immediately rather than after the
    current interval.

    Usage:
        ticker = Ticker(2.0)
        async for elapsed in ticker:
            if done():
                break
    """

    def __init__(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError(f"Ticker interval must be positive, got {interval}")
        self.interval = interval
        self._stopped = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._started_at: float | None = None

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def elapsed(self) -> float:
        """Seconds since the first tick was requested (0 before that)."""
        if self._started_at is None or self._loop is None:
            return 0.0
        return self._loop.time() - self._started_at

    def stop(self) -> None:
        self._stopped.set()

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait one interval (or `timeout`, if shorter).

        Returns:
            False if the ticker was stopped, True otherwise
        """
        if self._started_at is None:
            self._loop = asyncio.get_running_loop()
            self._started_at = self._loop.time()
        delay = self.interval if timeout is None else max(0.0, min(self.interval, timeout))
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stopped.wait(), timeout=delay)
        return not self._stopped.is_set()

    async def __aiter__(self) -> AsyncIterator[float]:
        """Yield elapsed seconds immediately, then after every interval until stopped."""
        if self._started_at is None:
            self._loop = asyncio.get_running_loop()
            self._started_at = self._loop.time()
        while not self._stopped.is_set():
            yield self.elapsed()
            if not await self.wait():
                return
