"""Retry logic with exponential backoff for transient remote failures.

Design Philosophy:
- Ruthless simplicity: one function wraps every remote call
- Bounded: an attempt ceiling always applies; exhausting it re-raises
- Throttling-aware: a TransientError's retry_after is honoured (capped)
- Observable: every retry is logged with a sanitized error message

Usage:
    result = call_with_retry(lambda: adapter.create(kind, attrs), config)
"""

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from strata.errors import TransientError
from strata.retry_config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Safety cap on server-requested waits
MAX_RETRY_AFTER_SECONDS = 300.0

SENSITIVE_PATTERNS = (
    "secret=",
    "password=",
    "token=",
    "key=",
    "authorization:",
)


def backoff_delay(attempt: int, config: RetryConfig, retry_after: float | None = None) -> float:
    """Delay before the attempt following ``attempt`` (1-based).

    Doubles from initial_delay, ±25% jitter when enabled, capped at
    max_delay. A server-provided retry_after raises the floor.
    """
    delay = config.initial_delay * (2 ** (attempt - 1))
    if config.jitter_enabled:
        jitter_amount = delay * 0.25
        delay += random.uniform(-jitter_amount, jitter_amount)
    delay = min(delay, config.max_delay)
    if retry_after is not None and retry_after > 0:
        delay = max(delay, min(retry_after, MAX_RETRY_AFTER_SECONDS))
    return max(delay, 0.0)


def call_with_retry(
    operation: Callable[[], T],
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[Exception], ...] = (TransientError,),
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: Callable[[int], None] | None = None,
    description: str = "operation",
) -> T:
    """Run operation, retrying retryable failures up to config.max_attempts.

    Args:
        operation: Zero-argument callable
        config: Attempt ceiling and delays
        retryable_exceptions: Exception types that trigger a retry
        sleep: Sleep function (injected by tests)
        on_attempt: Called with the attempt number before each attempt
        description: Name used in log messages

    Raises:
        The last retryable exception once the ceiling is reached, or any
        non-retryable exception immediately.
    """
    for attempt in range(1, config.max_attempts + 1):
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            result = operation()
        except retryable_exceptions as e:
            if attempt >= config.max_attempts:
                logger.error(
                    f"{description} failed after {config.max_attempts} attempts: "
                    f"{safe_error_message(e)}"
                )
                raise
            delay = backoff_delay(attempt, config, getattr(e, "retry_after", None))
            logger.warning(
                f"{description} failed on attempt {attempt}/{config.max_attempts}, "
                f"retrying in {delay:.2f}s: {safe_error_message(e)}"
            )
            sleep(delay)
            continue

        if attempt > 1:
            logger.info(f"{description} succeeded on attempt {attempt}/{config.max_attempts}")
        return result

    raise RuntimeError(f"{description} made no attempts")


def safe_error_message(exception: BaseException) -> str:
    """Error text safe for logs and reports.

    Truncates long messages and masks anything after a credential-looking
    marker.
    """
    error_str = str(exception) or type(exception).__name__

    if len(error_str) > 200:
        error_str = error_str[:200] + "..."

    lowered = error_str.lower()
    for pattern in SENSITIVE_PATTERNS:
        index = lowered.find(pattern)
        if index != -1:
            error_str = error_str[:index] + f"{pattern}***"
            lowered = error_str.lower()

    return error_str


__all__ = [
    "MAX_RETRY_AFTER_SECONDS",
    "backoff_delay",
    "call_with_retry",
    "safe_error_message",
]
