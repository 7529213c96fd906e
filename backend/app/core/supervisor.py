# app/core/supervisor.py
# Process-level failure supervision: cascade detection and bounded shutdown.

import asyncio
import os
import time
from collections import deque
from typing import Any, Awaitable, Callable, Coroutine, Deque, List, Optional, Set, Tuple

from app.core.logging_setup import logger

ShutdownStep = Tuple[str, Callable[[], Awaitable[None]]]


class FailureCascadeMonitor:
    """
    Counts unexpected failures inside a rolling window.

    Isolated failures are only logged. Reaching `threshold` failures within
    `window_seconds` means something systemic is wrong and the process should
    exit and let the supervisor restart it clean.
    """

    def __init__(self, threshold: int = 10, window_seconds: float = 60.0,
                 on_cascade: Optional[Callable[[str], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.on_cascade = on_cascade
        self._clock = clock
        self._failures: Deque[float] = deque()
        self.tripped = False

    def _prune(self, now: float) -> None:
        while self._failures and now - self._failures[0] > self.window_seconds:
            self._failures.popleft()

    @property
    def recent_failures(self) -> int:
        self._prune(self._clock())
        return len(self._failures)

    def record(self, source: str, error: BaseException | None = None) -> bool:
        """Records one failure. Returns True when the cascade threshold is reached."""
        now = self._clock()
        self._failures.append(now)
        self._prune(now)
        count = len(self._failures)
        log = logger.bind(failure_source=source, recent_failures=count)
        if error is not None:
            log.opt(exception=error).warning(f"Unexpected failure recorded from {source}: {error}")
        else:
            log.warning(f"Unexpected failure recorded from {source}.")

        if count >= self.threshold and not self.tripped:
            self.tripped = True
            log.critical(f"{count} failures within {self.window_seconds:.0f}s. Requesting process restart.")
            if self.on_cascade:
                self.on_cascade(f"failure_cascade:{source}")
            return True
        return False

    def loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        """asyncio exception handler for errors in detached tasks and callbacks."""
        exc = context.get("exception")
        message = context.get("message", "Unhandled error in event loop")
        logger.error(f"Event loop error: {message}")
        self.record("event_loop", exc)


class BackgroundTaskRunner:
    """
    Detached fire-and-forget work. Errors are logged where they happen and
    never reach a response that was already sent.
    """

    def __init__(self, monitor: Optional[FailureCascadeMonitor] = None):
        self.monitor = monitor
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Background task '{task.get_name()}' failed: {exc}")
            if self.monitor:
                self.monitor.record(f"background:{task.get_name()}", exc)

    async def drain(self, timeout: float) -> None:
        """Waits for in-flight tasks, cancelling whatever is left after `timeout`."""
        if not self._tasks:
            return
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} background task(s) at shutdown.")


class ShutdownCoordinator:
    """Runs graceful shutdown steps under a hard deadline, then exits."""

    def __init__(self, timeout_seconds: float = 30.0, exit_fn: Callable[[int], None] = os._exit):
        self.timeout_seconds = timeout_seconds
        self._exit = exit_fn
        self._steps: List[ShutdownStep] = []
        self._started = False
        self._exit_task: Optional[asyncio.Task] = None

    @property
    def shutting_down(self) -> bool:
        return self._started

    def add_step(self, name: str, step: Callable[[], Awaitable[None]]) -> None:
        self._steps.append((name, step))

    async def run_steps(self) -> bool:
        """Runs every step once, in registration order. Returns False if the deadline expired."""
        if self._started:
            return True
        self._started = True
        try:
            await asyncio.wait_for(self._run_all(), timeout=self.timeout_seconds)
            return True
        except asyncio.TimeoutError:
            logger.error(f"Graceful shutdown exceeded {self.timeout_seconds:.0f}s.")
            return False

    async def _run_all(self) -> None:
        for name, step in self._steps:
            logger.info(f"Shutdown step: {name}")
            try:
                await step()
            except Exception:
                logger.exception(f"Shutdown step '{name}' failed. Continuing.")

    def request_exit(self, reason: str, code: int = 1) -> None:
        """Schedules a bounded graceful shutdown followed by a hard exit."""
        if self._started:
            return
        logger.critical(f"Process exit requested: {reason}")
        self._exit_task = asyncio.get_running_loop().create_task(self._shutdown_and_exit(code))

    async def _shutdown_and_exit(self, code: int) -> None:
        finished = await self.run_steps()
        self._exit(code if finished else 1)
