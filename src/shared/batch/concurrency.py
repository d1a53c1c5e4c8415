"""Adjustable FIFO concurrency limiter for asyncio work."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque, Set

logger = logging.getLogger(__name__)


class ConcurrencyLimiter:
    """Counting semaphore with a FIFO wait queue and a mutable ceiling.

    ``set_limit`` affects work that has not been admitted yet; in-flight work
    is never preempted. Lowering the limit below the current in-flight count
    simply holds new work back until enough slots are released.

    Example:
        limiter = ConcurrencyLimiter(limit=2)

        async with limiter.slot():
            await call_upstream()
    """

    def __init__(self, limit: int = 2):
        self._limit = self._validate(limit)
        self._in_flight = 0
        self._peak = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self._active: Set[int] = set()
        self._tokens = itertools.count(1)

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def peak_in_flight(self) -> int:
        return self._peak

    def in_flight(self) -> int:
        return self._in_flight

    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    def set_limit(self, limit: int) -> None:
        self._limit = self._validate(limit)
        logger.debug("Concurrency limit set to %d", self._limit)
        self._wake_waiters()

    async def acquire(self) -> int:
        """Wait for a free slot and return its token."""
        if self._in_flight < self._limit and not self.waiting():
            return self._grant()

        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        self._waiters.append(fut)
        try:
            return await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # The slot was handed over just before cancellation
                self.release(fut.result())
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def release(self, token: int) -> None:
        """Return a slot. Unknown or already released tokens are ignored."""
        if token not in self._active:
            logger.debug("Ignoring release of unknown concurrency token %s", token)
            return
        self._active.discard(token)
        self._in_flight -= 1
        self._wake_waiters()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[int]:
        token = await self.acquire()
        try:
            yield token
        finally:
            self.release(token)

    def _grant(self) -> int:
        token = next(self._tokens)
        self._active.add(token)
        self._in_flight += 1
        self._peak = max(self._peak, self._in_flight)
        return token

    def _wake_waiters(self) -> None:
        while self._waiters and self._in_flight < self._limit:
            fut = self._waiters.popleft()
            if fut.done():
                continue
            fut.set_result(self._grant())

    @staticmethod
    def _validate(limit: int) -> int:
        if not isinstance(limit, int) or limit < 1:
            raise ValueError("concurrency limit must be a positive integer")
        return limit
