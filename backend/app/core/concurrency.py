# app/core/concurrency.py
# Counting permit pool that keeps webhook-triggered work under the
# data-store connection pool capacity.

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Deque, Dict, Iterable, TypeVar

from app.core.exceptions import LimiterQueueFullError, LimiterTimeoutError
from app.core.logging_setup import logger

T = TypeVar("T")


class ConcurrencyLimiter:
    """
    FIFO semaphore with a bounded wait and a bounded queue.

    acquire() takes a free permit immediately, otherwise waits in line for at
    most `acquire_timeout` seconds. When `max_waiting` callers are already in
    line it fails fast instead of growing the backlog. release() hands the
    permit straight to the oldest waiter, so a newcomer can never overtake
    someone already queued.
    """

    def __init__(self, name: str, permits: int, max_waiting: int = 100, acquire_timeout: float = 25.0):
        if permits < 1:
            raise ValueError("permits must be >= 1")
        self.name = name
        self.capacity = permits
        self.max_waiting = max_waiting
        self.acquire_timeout = acquire_timeout
        self._permits = permits
        self._waiters: Deque[asyncio.Future] = deque()
        self.log = logger.bind(limiter=name)

    @property
    def available(self) -> int:
        return self._permits

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    @property
    def in_use(self) -> int:
        return self.capacity - self._permits

    async def acquire(self) -> None:
        if self._permits > 0 and not self.waiting:
            self._permits -= 1
            return

        if self.waiting >= self.max_waiting:
            self.log.warning(f"Queue full ({self.max_waiting} waiting). Shedding load.")
            raise LimiterQueueFullError(self.name, self.max_waiting)

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await asyncio.wait_for(fut, timeout=self.acquire_timeout)
        except asyncio.TimeoutError:
            if fut.done() and not fut.cancelled():
                # Permit was handed over just as the timer fired; keep it
                return
            self._discard(fut)
            self.log.warning(f"Timed out after {self.acquire_timeout}s waiting for a permit.")
            raise LimiterTimeoutError(self.name, self.acquire_timeout)
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                self.release()
            else:
                self._discard(fut)
            raise

    def release(self) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        if self._permits >= self.capacity:
            raise RuntimeError(f"Limiter '{self.name}' released more times than acquired.")
        self._permits += 1

    def _discard(self, fut: asyncio.Future) -> None:
        try:
            self._waiters.remove(fut)
        except ValueError:
            pass

    @asynccontextmanager
    async def permit(self):
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Runs `fn` while holding a permit."""
        async with self.permit():
            return await fn()

    def snapshot(self) -> Dict[str, int]:
        return {"capacity": self.capacity, "in_use": self.in_use, "waiting": self.waiting}


class LimiterRegistry:
    """One limiter per provider channel, built once at process start."""

    def __init__(self, limiters: Iterable[ConcurrencyLimiter]):
        self._limiters: Dict[str, ConcurrencyLimiter] = {l.name: l for l in limiters}

    @classmethod
    def for_channels(cls, channels: Iterable[str], permits: int, max_waiting: int, acquire_timeout: float) -> "LimiterRegistry":
        return cls(ConcurrencyLimiter(c, permits, max_waiting, acquire_timeout) for c in channels)

    def get(self, channel: str) -> ConcurrencyLimiter:
        try:
            return self._limiters[channel]
        except KeyError:
            raise KeyError(f"No limiter configured for channel '{channel}'.") from None

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        return {name: l.snapshot() for name, l in self._limiters.items()}
