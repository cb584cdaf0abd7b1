"""Bounded exponential backoff for startup dependencies.

Used only while the service boots (Docker daemon, bucket creation), where
the dependency may still be coming up.  Runtime paths never retry in-line.
"""

from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import anyio
from loguru import logger

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number *attempt* (0-based), with up to 10% jitter."""
    base = min(max_delay, base_delay * (2**attempt))
    return base + random.uniform(0.0, base * 0.1)  # noqa: S311


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    what: str = "operation",
) -> T:
    """Call *fn* until it succeeds or *attempts* calls have failed.

    The last exception is re-raised unchanged.
    """
    for attempt in range(attempts):
        try:
            return await fn()
        except retry_on as exc:
            if attempt >= attempts - 1:
                logger.error("{} failed after {} attempts: {}", what, attempts, exc)
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning("{} attempt {}/{} failed: {}. Retrying in {:.1f}s", what, attempt + 1, attempts, exc, delay)
            await anyio.sleep(delay)
    msg = "attempts must be at least 1"
    raise ValueError(msg)
