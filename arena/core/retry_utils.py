"""
Retry helpers for calls into flaky external systems.

Key Components:
- ErrorType: Classifies errors as transient or permanent
- classify_error: Determines error type from an exception
- calculate_backoff_delay: Exponential backoff with full jitter
- retry_async: Await a call, retrying transient failures
"""

import asyncio
import logging
import random
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """Classification of error types for retry decisions."""

    TRANSIENT = "transient"  # Temporary errors - should retry
    PERMANENT = "permanent"  # Permanent errors - should stop immediately
    UNKNOWN = "unknown"  # Unknown errors - treat as transient


_TRANSIENT_PATTERNS = (
    # Network
    "connection",
    "timeout",
    "timed out",
    "network",
    "reset",
    "unreachable",
    # Rate limiting
    "rate limit",
    "too many requests",
    "429",
    # Upstream health
    "service unavailable",
    "bad gateway",
    "502",
    "503",
    "504",
    # Chain RPC hiccups
    "header not found",
    "nonce too low",
    "replacement transaction underpriced",
)

_PERMANENT_PATTERNS = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "401",
    "403",
    "insufficient funds",
    "insufficient balance",
    "execution reverted",
    "invalid",
)


def classify_error(error: BaseException) -> ErrorType:
    """
    Classify an exception as transient or permanent.

    Permanent patterns win over transient ones, so "invalid nonce timeout"
    style messages are not retried forever.
    """
    error_str = str(error).lower()
    error_type = type(error).__name__.lower()

    if isinstance(error, asyncio.TimeoutError):
        return ErrorType.TRANSIENT

    for pattern in _PERMANENT_PATTERNS:
        if pattern in error_str or pattern in error_type:
            return ErrorType.PERMANENT

    for pattern in _TRANSIENT_PATTERNS:
        if pattern in error_str or pattern in error_type:
            return ErrorType.TRANSIENT

    return ErrorType.UNKNOWN


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
) -> float:
    """
    Calculate exponential backoff delay with optional jitter.

    Uses full jitter strategy: delay = random(0, min(max, base * 2^attempt))
    """
    delay = min(base_delay * (2**attempt), max_delay)
    if jitter:
        delay = random.uniform(0, delay)
    return delay


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    **kwargs,
) -> Any:
    """
    Await ``func`` and return its result, retrying transient failures.

    Permanent errors and the final failed attempt are re-raised unchanged.
    """
    for attempt in range(max_attempts):
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            if classify_error(e) == ErrorType.PERMANENT or attempt == max_attempts - 1:
                raise
            delay = calculate_backoff_delay(attempt, base_delay, max_delay, jitter)
            logger.info(
                f"Retry attempt {attempt + 1}/{max_attempts} for "
                f"{getattr(func, '__name__', 'call')} after {delay:.1f}s: {e}"
            )
            await asyncio.sleep(delay)
    raise RuntimeError("retry_async called with max_attempts < 1")
