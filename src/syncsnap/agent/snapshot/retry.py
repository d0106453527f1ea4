"""Retry logic with exponential backoff for snapshot uploads.

This module provides:
- retry_async: Run a coroutine with classified errors and exponential backoff
- default_is_retryable: Classifier based on APIError.retryable
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from syncsnap.agent.api import APIError
from syncsnap.agent.snapshot.types import (
    RetryAttempt,
    RetryCallback,
    RetryExhaustedError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


def default_is_retryable(error: BaseException) -> bool:
    """Classify an error using the tag set where the call failed.

    Anything that is not an APIError is treated as fatal.
    """
    return isinstance(error, APIError) and error.retryable


def backoff_delay(
    attempt: int,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
) -> float:
    """Delay after the given zero-based attempt (1s, 2s, 4s, ...)."""
    return initial_backoff * multiplier**attempt


async def retry_async(
    action: Callable[[], Awaitable[T]],
    is_retryable: Callable[[BaseException], bool] = default_is_retryable,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    on_retry: RetryCallback | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Execute a coroutine function with exponential backoff retry.

    Args:
        action: Coroutine function performing one attempt.
        is_retryable: Classifier deciding whether an error is worth retrying.
        max_attempts: Maximum number of attempts (including the first).
        initial_backoff: Delay before the second attempt, in seconds.
        backoff_multiplier: Multiplier for each further delay.
        on_retry: Optional callback for every failed attempt.
        sleep: Sleep function (overridable in tests).

    Returns:
        Result of the first successful attempt.

    Raises:
        RetryExhaustedError: If every attempt failed with a retryable error.
        Exception: The error of the first fatal attempt, unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Exception | None = None
    for attempt in range(max_attempts):
        try:
            return await action()
        except Exception as e:
            last_error = e
            retryable = is_retryable(e)
            is_last = attempt == max_attempts - 1
            delay = 0.0 if is_last or not retryable else backoff_delay(
                attempt, initial_backoff, backoff_multiplier
            )
            if on_retry:
                on_retry(RetryAttempt(index=attempt, error=e, retryable=retryable, backoff=delay))

            if not retryable:
                logger.error("Non-retryable error, failing immediately: %s", e)
                raise
            if is_last:
                break

            logger.warning(
                "Attempt %d/%d failed: %s. Retrying in %.1fs...",
                attempt + 1, max_attempts, e, delay,
            )
            await sleep(delay)

    assert last_error is not None
    logger.error("All %d attempts failed: %s", max_attempts, last_error)
    raise RetryExhaustedError(max_attempts, last_error) from last_error
