"""
Retry helper for individual scrape/DB operations inside a sync batch.

Permanent failures are surfaced on the first attempt; anything else is
retried with pure exponential backoff (base_delay_ms * 2**attempt, no jitter).
"""
import asyncio
import logging
import re
from typing import Awaitable, Callable, TypeVar

from mafia_insight.gomafia.errors import PermanentError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fallback for exceptions raised outside our error taxonomy
PERMANENT_ERROR_PATTERNS = [
    re.compile(r"not found", re.IGNORECASE),
    re.compile(r"invalid", re.IGNORECASE),
    re.compile(r"unauthorized", re.IGNORECASE),
    re.compile(r"forbidden", re.IGNORECASE),
]


def is_permanent_error(exc: BaseException) -> bool:
    """Classify an error as permanent (never retried) or transient."""
    if isinstance(exc, PermanentError):
        return True
    if isinstance(exc, TransientError):
        return False
    if isinstance(exc, (ValueError, TypeError)):
        # Bad record shape, including pydantic.ValidationError
        return True
    message = str(exc)
    return any(pattern.search(message) for pattern in PERMANENT_ERROR_PATTERNS)


async def retry_operation(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay_ms: int = 100,
) -> T:
    """
    Await operation() up to max_retries times.

    Args:
        operation: Zero-argument coroutine function.
        max_retries: Total number of attempts (not extra retries).
        base_delay_ms: Delay before the second attempt; doubled after each failure.

    Returns:
        Whatever the first successful attempt returns.

    Raises:
        The permanent error immediately, or the last error once attempts run out.
    """
    last_error: Exception = RuntimeError("retry_operation called with max_retries < 1")

    for attempt in range(max_retries):
        try:
            return await operation()
        except Exception as exc:
            last_error = exc

            if is_permanent_error(exc):
                raise

            if attempt < max_retries - 1:
                delay_ms = base_delay_ms * 2 ** attempt
                logger.debug(
                    "Attempt %d/%d failed (%s), retrying in %dms",
                    attempt + 1, max_retries, exc, delay_ms,
                )
                await asyncio.sleep(delay_ms / 1000)

    raise last_error
