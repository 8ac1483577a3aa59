"""Exponential backoff with optional jitter for carrier and platform calls.

Only RETRYABLE failures (see errors.classify_error) are retried; a TERMINAL
failure is re-raised on the spot. Respects Retry-After hints and logs each
retry attempt. Stateless: concurrent callers each get their own schedule.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar

from shipsync.errors import (
    ErrorClass,
    RetryExhausted,
    TransientBackendFailure,
    classify_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def execute(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: float = 0.0,
    classify: Callable[[BaseException], ErrorClass] = classify_error,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "",
) -> T:
    """Await ``operation()`` up to ``max_retries + 1`` times.

    Args:
        operation: Zero-arg callable returning a fresh awaitable per attempt.
        max_retries: Retries after the first attempt.
        base_delay: Delay before the first retry, doubled each retry.
        max_delay: Cap on any single delay.
        jitter: Fraction (0.0-1.0) of random spread applied to each delay.
        classify: Error classifier deciding retryable vs terminal.
        sleep: Awaitable sleep, injectable for tests.
        label: Name used in log lines.

    Raises:
        The original exception for terminal failures, or RetryExhausted
        (chained from the last error) once the schedule is spent.
    """
    name = label or getattr(operation, "__name__", "operation")
    for attempt in range(max_retries + 1):
        try:
            return await operation()
        except Exception as exc:
            if classify(exc) is ErrorClass.TERMINAL:
                raise
            if attempt == max_retries:
                logger.warning(
                    "Retries exhausted for %s after %d attempts: %s",
                    name,
                    attempt + 1,
                    exc,
                )
                raise RetryExhausted(attempts=attempt + 1, last_error=exc) from exc
            delay = compute_delay(attempt, base_delay, max_delay, jitter, exc)
            logger.warning(
                "Retry %d/%d for %s (%s), waiting %.1fs",
                attempt + 1,
                max_retries,
                name,
                type(exc).__name__,
                delay,
            )
            await sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    error: BaseException | None = None,
) -> float:
    """Delay before retry ``attempt + 1``: base * 2^attempt, capped, jittered.

    A Retry-After hint from the backend wins over the computed value.
    """
    if isinstance(error, TransientBackendFailure) and error.retry_after is not None:
        return min(max(error.retry_after, 0.0), max_delay)

    delay = min(base_delay * (2**attempt), max_delay)
    if jitter:
        spread = delay * jitter
        delay += random.uniform(-spread, spread)
    return max(0.0, delay)
