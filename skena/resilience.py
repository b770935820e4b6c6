"""Timeout race and bounded retry for provider calls.

    with_timeout(awaitable, seconds)   the call races a fixed timer
    with_retry(fn, retries, base_delay) exponential backoff on transient failures

Only ``RateLimited`` and ``GenerationTimeout`` are transient. Everything else,
``MissingCredential`` included, propagates on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from skena.errors import GenerationTimeout, RateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

RETRYABLE: tuple[type[Exception], ...] = (RateLimited, GenerationTimeout)


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, RETRYABLE)


async def with_timeout(awaitable: Awaitable[T], seconds: float, stage: str = "call") -> T:
    """Await ``awaitable``, raising GenerationTimeout if ``seconds`` pass first."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise GenerationTimeout(f"{stage} timed out after {seconds}s") from e


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = 1,
    base_delay: float = 1.0,
    sleep: Sleep = asyncio.sleep,
    stage: str = "call",
) -> T:
    """Call ``fn`` until it succeeds, retrying transient failures up to ``retries`` times.

    The wait before retry N is ``base_delay * 2 ** (N - 1)``. When the budget
    is exhausted the last transient error is raised unchanged.
    """
    delay = base_delay
    attempt = 0
    while True:
        try:
            return await fn()
        except RETRYABLE as e:
            if attempt >= retries:
                raise
            attempt += 1
            logger.warning(
                "%s failed (%s); retry %d/%d in %.1fs", stage, e, attempt, retries, delay,
            )
            await sleep(delay)
            delay *= 2
