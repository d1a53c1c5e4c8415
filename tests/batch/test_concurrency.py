import asyncio

import pytest

from src.shared.batch.concurrency import ConcurrencyLimiter


def test_limit_is_never_exceeded():
    limiter = ConcurrencyLimiter(limit=2)
    active = []

    async def worker():
        async with limiter.slot():
            active.append(limiter.in_flight())
            await asyncio.sleep(0.01)

    async def scenario():
        await asyncio.gather(*(worker() for _ in range(6)))

    asyncio.run(scenario())

    assert max(active) <= 2
    assert limiter.peak_in_flight == 2
    assert limiter.in_flight() == 0


def test_waiters_are_served_in_fifo_order():
    limiter = ConcurrencyLimiter(limit=1)
    order = []

    async def worker(name):
        async with limiter.slot():
            order.append(name)
            await asyncio.sleep(0)

    async def scenario():
        token = await limiter.acquire()
        tasks = [asyncio.create_task(worker(name)) for name in "abc"]
        await asyncio.sleep(0)
        assert limiter.waiting() == 3
        limiter.release(token)
        await asyncio.gather(*tasks)

    asyncio.run(scenario())

    assert order == ["a", "b", "c"]


def test_raising_the_limit_admits_waiters():
    limiter = ConcurrencyLimiter(limit=1)

    async def scenario():
        await limiter.acquire()
        waiter = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0)
        assert not waiter.done()
        limiter.set_limit(2)
        await asyncio.wait_for(waiter, timeout=1)
        return limiter.in_flight()

    assert asyncio.run(scenario()) == 2


def test_cancelled_waiter_does_not_leak_a_slot():
    limiter = ConcurrencyLimiter(limit=1)

    async def scenario():
        token = await limiter.acquire()
        waiter = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        limiter.release(token)
        return limiter.in_flight(), limiter.waiting()

    assert asyncio.run(scenario()) == (0, 0)


def test_release_of_unknown_token_is_ignored():
    limiter = ConcurrencyLimiter(limit=1)

    async def scenario():
        token = await limiter.acquire()
        limiter.release(token)
        limiter.release(token)
        limiter.release(999)
        return limiter.in_flight()

    assert asyncio.run(scenario()) == 0


def test_invalid_limits_are_rejected():
    with pytest.raises(ValueError):
        ConcurrencyLimiter(limit=0)
    with pytest.raises(ValueError):
        ConcurrencyLimiter().set_limit(-1)
