"""Tests for the FIFO concurrency limiter."""

from __future__ import annotations

import asyncio

import pytest

from polyexec.errors import QueueFull
from polyexec.limiter import ConcurrencyLimiter


def test_never_exceeds_limit_and_admits_in_order():
    limiter = ConcurrencyLimiter(limit=3, max_queue_depth=10)
    started = []
    peak = 0

    async def job(i):
        nonlocal peak
        async with limiter.slot():
            started.append(i)
            peak = max(peak, limiter.active)
            await asyncio.sleep(0.05)

    async def scenario():
        tasks = []
        for i in range(5):
            tasks.append(asyncio.ensure_future(job(i)))
            await asyncio.sleep(0)
        await asyncio.sleep(0.01)
        assert limiter.active == 3
        assert limiter.queued == 2
        await asyncio.gather(*tasks)

    asyncio.run(scenario())
    assert peak == 3
    assert started == [0, 1, 2, 3, 4]
    assert limiter.active == 0


def test_queue_full_is_rejected_immediately():
    limiter = ConcurrencyLimiter(limit=1, max_queue_depth=1)

    async def scenario():
        held = await limiter.acquire()
        waiter = asyncio.ensure_future(limiter.acquire())
        await asyncio.sleep(0)
        with pytest.raises(QueueFull):
            await limiter.acquire()
        held.release()
        second = await waiter
        second.release()

    asyncio.run(scenario())
    assert limiter.active == 0


def test_cancelled_waiter_does_not_leak_slot():
    limiter = ConcurrencyLimiter(limit=1, max_queue_depth=5)

    async def scenario():
        held = await limiter.acquire()
        cancelled = asyncio.ensure_future(limiter.acquire())
        behind = asyncio.ensure_future(limiter.acquire())
        await asyncio.sleep(0)
        cancelled.cancel()
        await asyncio.sleep(0)
        held.release()
        slot = await asyncio.wait_for(behind, 1)
        assert limiter.active == 1
        slot.release()

    asyncio.run(scenario())
    assert limiter.active == 0
    assert limiter.queued == 0


def test_slot_granted_then_cancelled_is_passed_on():
    limiter = ConcurrencyLimiter(limit=1, max_queue_depth=5)

    async def scenario():
        held = await limiter.acquire()
        first = asyncio.ensure_future(limiter.acquire())
        second = asyncio.ensure_future(limiter.acquire())
        await asyncio.sleep(0)
        # Hand the slot to ``first`` and cancel it before it resumes.
        held.release()
        first.cancel()
        slot = await asyncio.wait_for(second, 1)
        slot.release()

    asyncio.run(scenario())
    assert limiter.active == 0


def test_release_is_idempotent():
    limiter = ConcurrencyLimiter(limit=2, max_queue_depth=0)

    async def scenario():
        slot = await limiter.acquire()
        slot.release()
        slot.release()
        assert slot.released

    asyncio.run(scenario())
    assert limiter.active == 0


def test_invalid_arguments():
    with pytest.raises(ValueError):
        ConcurrencyLimiter(limit=0, max_queue_depth=1)
    with pytest.raises(ValueError):
        ConcurrencyLimiter(limit=1, max_queue_depth=-1)
