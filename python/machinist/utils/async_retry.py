"""
machinist/utils/async_retry.py

Retry helpers for async callables:
  - async_retry: decorator retrying on any exception with a fixed delay.
  - retry_on_conflict: runs a read-modify-write coroutine factory, retrying
    only on ConflictError with bounded exponential backoff.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

from machinist.errors import ConflictError

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times, with a delay
    of `delay` seconds between each attempt. Only exceptions matching `retry_on`
    trigger another attempt; anything else propagates immediately.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Delay in seconds between attempts. Defaults to 1.0.
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
            Defaults to False.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that are considered transient. Defaults to (Exception,).

    Returns:
        A decorator that, when applied to an async function, returns a wrapped
        version that retries on the selected exceptions.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(remaining: int, attempt_number: int) -> R:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d for function %r failed. Error: %s",
                            attempt_number,
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    if remaining > 1:
                        await asyncio.sleep(delay)
                        return await attempt(remaining - 1, attempt_number + 1)

                    if noisy:
                        logger.error(
                            "All %d attempts failed for function %r",
                            retries,
                            func.__qualname__,
                        )
                    raise

            return await attempt(retries, 1)

        return wrapper

    return decorator


async def retry_on_conflict(
    operation: Callable[[], Awaitable[R]],
    *,
    steps: int = 5,
    initial_delay: float = 0.01,
    factor: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> R:
    """
    Run `operation` until it succeeds or fails with something other than a
    ConflictError. Each conflict backs off `initial_delay * factor**n` seconds.

    `operation` must redo its read on every call; it is a fresh read-modify-write
    each time, never a replay of a stale object.

    Args:
        operation: Zero-argument coroutine factory performing one read-modify-write.
        steps: Maximum number of attempts. Defaults to 5.
        initial_delay: Backoff before the second attempt, in seconds.
        factor: Multiplier applied to the delay after each conflict.
        sleep: Awaitable sleep function, injectable for tests.

    Returns:
        Whatever `operation` returns on its first non-conflicting attempt.

    Raises:
        ConflictError: If every attempt conflicted.
    """
    delay = initial_delay
    for attempt_number in range(1, steps + 1):
        try:
            return await operation()
        except ConflictError as exc:
            if attempt_number == steps:
                logger.error(
                    "Giving up after %d conflicting attempts: %s", steps, exc
                )
                raise
            logger.debug(
                "Conflict on attempt %d/%d, retrying in %.3fs: %s",
                attempt_number,
                steps,
                delay,
                exc,
            )
            await sleep(delay)
            delay *= factor
    raise ConflictError("retry_on_conflict called with steps < 1")
