"""Bounded exponential backoff for transient upstream failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    is_transient: Callable[[BaseException], bool],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await operation(), retrying transient failures.

    The operation runs once plus up to max_retries more times. The delay
    before retry n is base_delay * 2**(n-1). Errors rejected by is_transient
    propagate at once; the last error propagates once retries run out.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            if not is_transient(e) or attempt >= max_retries:
                raise
            delay = base_delay * (2 ** attempt)
            attempt += 1
            logger.warning(
                "Transient failure (%s); retry %d/%d in %.1fs",
                e, attempt, max_retries, delay,
            )
            await sleep(delay)
