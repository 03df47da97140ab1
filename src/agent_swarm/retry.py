"""Retry with exponential backoff and jitter."""

import random
import time
from typing import Callable, Optional, TypeVar

from .errors import RetryError
from .event_log import EventLogger
from .models import RetryConfig

T = TypeVar("T")


def calculate_retry_delay(attempt: int, retry_config: RetryConfig) -> float:
    """Calculate delay for exponential backoff with jitter.

    Args:
        attempt: Current retry attempt (0-indexed)
        retry_config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = retry_config.base_delay_seconds * (
        retry_config.exponential_base ** attempt
    )
    delay = min(delay, retry_config.max_delay_seconds)

    # Add jitter (+/- jitter_factor)
    jitter = delay * retry_config.jitter_factor
    delay += random.uniform(-jitter, jitter)

    return max(0.0, delay)


def with_retry(
    fn: Callable[[], Optional[T]],
    retry_config: RetryConfig,
    retryable: tuple[type[BaseException], ...] = (Exception,),
    logger: Optional[EventLogger] = None,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn until it returns a truthy value or attempts run out.

    A falsey return counts as a failed attempt, the same as a retryable
    exception; other exceptions propagate immediately.

    Args:
        fn: Zero-argument callable
        retry_config: Attempt count and backoff settings
        retryable: Exception types that trigger another attempt
        logger: Event logger for retry notices
        description: Name used in log messages
        sleep: Sleep function (tests pass a no-op)

    Returns:
        The first truthy result

    Raises:
        RetryError: After max_retries + 1 failed attempts
    """
    attempts = retry_config.max_retries + 1
    last_error: Optional[BaseException] = None

    for attempt in range(attempts):
        if attempt > 0:
            delay = calculate_retry_delay(attempt - 1, retry_config)
            if logger:
                logger.warn(
                    f"Retry {attempt}/{retry_config.max_retries} for {description} in {delay:.1f}s"
                )
            sleep(delay)

        try:
            result = fn()
        except retryable as e:
            last_error = e
            continue

        if result:
            return result
        last_error = None

    raise RetryError(attempts, last_error or RuntimeError(f"{description} returned no result"))
