"""
Tests for `app/core/concurrency.py`.

Covers:
- Never more than `permits` holders at once.
- FIFO hand-off to the oldest waiter.
- Bounded queue fails fast; bounded wait times out and leaves the queue.
"""

import asyncio

import pytest

from app.core.concurrency import ConcurrencyLimiter, LimiterRegistry
from app.core.exceptions import LimiterQueueFullError, LimiterTimeoutError


@pytest.mark.asyncio
async def test_in_flight_work_never_exceeds_permits():
    limiter = ConcurrencyLimiter("stripe", permits=3, max_waiting=100, acquire_timeout=5)
    active = 0
    peak = 0

    async def work():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1

    await asyncio.gather(*(limiter.run(work) for _ in range(20)))

    assert peak == 3
    assert limiter.available == 3
    assert limiter.in_use == 0


@pytest.mark.asyncio
async def test_waiters_are_served_in_arrival_order():
    limiter = ConcurrencyLimiter("paypal", permits=1, acquire_timeout=5)
    order = []
    await limiter.acquire()

    async def waiter(n):
        async with limiter.permit():
            order.append(n)

    tasks = [asyncio.create_task(waiter(n)) for n in range(4)]
    await asyncio.sleep(0)
    assert limiter.waiting == 4

    limiter.release()
    await asyncio.gather(*tasks)
    assert order == [0, 1, 2, 3]
    assert limiter.available == 1


@pytest.mark.asyncio
async def test_full_queue_rejects_immediately():
    limiter = ConcurrencyLimiter("pagarme", permits=1, max_waiting=1, acquire_timeout=5)
    await limiter.acquire()
    queued = asyncio.create_task(limiter.acquire())
    await asyncio.sleep(0)

    with pytest.raises(LimiterQueueFullError):
        await limiter.acquire()

    limiter.release()
    await queued
    limiter.release()
    assert limiter.available == 1


@pytest.mark.asyncio
async def test_acquire_times_out_and_leaves_the_queue():
    limiter = ConcurrencyLimiter("stripe", permits=1, max_waiting=5, acquire_timeout=0.05)
    await limiter.acquire()

    with pytest.raises(LimiterTimeoutError) as exc_info:
        await limiter.acquire()

    assert exc_info.value.retry_after_seconds > 0
    assert limiter.waiting == 0
    limiter.release()
    assert limiter.available == 1


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_a_permit():
    limiter = ConcurrencyLimiter("stripe", permits=1, acquire_timeout=5)
    await limiter.acquire()
    task = asyncio.create_task(limiter.acquire())
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    limiter.release()
    assert limiter.available == 1
    assert limiter.waiting == 0


def test_over_release_is_an_error():
    limiter = ConcurrencyLimiter("stripe", permits=2)
    with pytest.raises(RuntimeError):
        limiter.release()


def test_registry_builds_one_limiter_per_channel():
    registry = LimiterRegistry.for_channels(["stripe", "paypal"], permits=10, max_waiting=100, acquire_timeout=25)

    assert registry.get("stripe") is not registry.get("paypal")
    assert registry.snapshot()["paypal"] == {"capacity": 10, "in_use": 0, "waiting": 0}
    with pytest.raises(KeyError):
        registry.get("unknown")
