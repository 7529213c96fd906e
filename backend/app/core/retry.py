# app/core/retry.py
import asyncio
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from app.core.logging_setup import logger

T = TypeVar("T")


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    attempts: int,
    base_delay: float,
    retry_on: Tuple[Type[BaseException], ...],
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Calls `fn` up to `attempts` times, doubling the delay between tries. Re-raises the last error."""
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except retry_on as e:
            if attempt == attempts:
                logger.error(f"{label} failed after {attempts} attempt(s): {e}")
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(f"{label} failed (attempt {attempt}/{attempts}): {e}. Retrying in {delay:.2f}s")
            await sleep(delay)
    raise RuntimeError("unreachable")
