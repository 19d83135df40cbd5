"""Internal retry decorator for idempotent async calls. Not part of the public API."""

from __future__ import annotations

import asyncio
import enum
import functools
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger("kvprobe.retry")


class Backoff(enum.Enum):
    fixed = enum.auto()
    exponential = enum.auto()


def backoff_delay(attempt: int, *, delay: float, max_delay: float, backoff: Backoff) -> float:
    match backoff:
        case Backoff.fixed:
            wait = delay
        case Backoff.exponential:
            wait = delay * (2**attempt)
    return min(wait, max_delay)


def retry[**P, R](
    *,
    max_retries: int = 2,
    delay: float = 0.2,
    max_delay: float = 2.0,
    backoff: Backoff = Backoff.exponential,
    on: tuple[type[BaseException], ...] = (Exception,),
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Retry the wrapped coroutine function on the exception types in *on*.

    Only for idempotent calls (leadership queries, reads).  The last error is
    re-raised once ``max_retries`` extra attempts are exhausted.
    """

    def decorator(fn: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @functools.wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            attempt = 0
            while True:
                try:
                    return await fn(*args, **kwargs)
                except on as exc:
                    if attempt >= max_retries:
                        raise
                    wait = backoff_delay(
                        attempt, delay=delay, max_delay=max_delay, backoff=backoff
                    )
                    logger.debug(
                        "RETRY: %s attempt %d/%d failed (%s), retrying in %.2fs",
                        fn.__qualname__,
                        attempt + 1,
                        max_retries + 1,
                        exc,
                        wait,
                    )
                    attempt += 1
                    await asyncio.sleep(wait)

        return wrapper

    return decorator
