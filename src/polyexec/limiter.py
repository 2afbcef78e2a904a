"""
Concurrency limiter with a bounded FIFO admission queue.

At most ``limit`` slots are outstanding at any time.  Callers that find no
free slot wait in strict submission order; once ``max_queue_depth`` callers
are waiting, further callers are rejected with :class:`QueueFull` instead of
growing the queue.

A freed slot is handed directly to the oldest waiter, so a newcomer can
never overtake a queued caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from typing import AsyncIterator, Deque

from .errors import QueueFull

logger = logging.getLogger(__name__)


class Slot:
    """A permit to run one execution.

    :meth:`release` may be called any number of times; only the first call
    has an effect.
    """

    __slots__ = ("_limiter", "_released")

    def __init__(self, limiter: "ConcurrencyLimiter") -> None:
        self._limiter = limiter
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._limiter._release()


class ConcurrencyLimiter:
    def __init__(self, limit: int, max_queue_depth: int) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if max_queue_depth < 0:
            raise ValueError("max_queue_depth must not be negative")
        self._limit = limit
        self._max_queue_depth = max_queue_depth
        self._active = 0
        self._waiters: Deque[asyncio.Future[None]] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def max_queue_depth(self) -> int:
        return self._max_queue_depth

    @property
    def active(self) -> int:
        """Number of slots currently held."""
        return self._active

    @property
    def queued(self) -> int:
        """Number of callers waiting for a slot."""
        return sum(1 for fut in self._waiters if not fut.done())

    async def acquire(self) -> Slot:
        """Wait for a free slot in FIFO order and return it.

        Raises :class:`QueueFull` immediately if no slot is free and the
        queue is already at capacity.
        """
        if self._active < self._limit and not self.queued:
            self._active += 1
            return Slot(self)

        if self.queued >= self._max_queue_depth:
            raise QueueFull(
                f"Execution queue is full ({self._max_queue_depth} waiting, "
                f"{self._active} running)"
            )

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        logger.debug("Queued for a slot (%d waiting)", self.queued)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # The slot was handed over just before the cancellation.
                self._release()
            raise
        finally:
            with contextlib.suppress(ValueError):
                self._waiters.remove(fut)
        return Slot(self)

    def _release(self) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._active -= 1

    @contextlib.asynccontextmanager
    async def slot(self) -> AsyncIterator[Slot]:
        """Hold a slot for the duration of the ``async with`` block."""
        acquired = await self.acquire()
        try:
            yield acquired
        finally:
            acquired.release()
