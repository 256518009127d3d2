"""
Backoff retries for relational point lookups.

Only the reference resolver retries: a missing partner or mission is looked
up once more against the analytics store, and a dropped connection there
should not turn a resolvable event into a FAILURE marker. Every other
component lets infrastructure errors abort the run; the cursor makes the
restart cheap.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError

from statmigrate.exceptions import ErrorRecoverability, StatMigrateError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
    OperationalError,
)


@dataclass(frozen=True)
class RetryConfig:
    """
    Backoff policy of a retried lookup.

    Attributes:
        max_retries: Attempts after the first one (0 disables retrying)
        initial_delay: Seconds to wait before the first retry
        max_delay: Upper bound of any single wait
        exponential_base: Growth factor of the wait between retries
        jitter: Relative spread applied to each wait, between 0 and 1
    """

    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries cannot be negative (got {self.max_retries})")
        if self.initial_delay <= 0:
            raise ValueError(f"initial_delay must be positive (got {self.initial_delay})")
        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay {self.max_delay} is below initial_delay {self.initial_delay}"
            )
        if self.exponential_base <= 1.0:
            raise ValueError(f"exponential_base must exceed 1 (got {self.exponential_base})")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must lie in [0, 1] (got {self.jitter})")


class RetryError(StatMigrateError):
    """
    Raised once a lookup has failed on every allowed attempt.

    Attributes:
        attempts: Attempts made, the first one included
        last_error: Error of the final attempt
    """

    recoverability = ErrorRecoverability.TRANSIENT

    def __init__(self, message: str, attempts: int, last_error: Exception) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """
    Wait before retry number ``attempt + 1``.

    Grows geometrically from ``initial_delay``, is capped at ``max_delay``
    and then spread by up to ``jitter`` in either direction.

    Example:
        >>> calculate_backoff(2, RetryConfig(initial_delay=1.0, jitter=0.0))
        4.0
    """
    base = min(config.initial_delay * config.exponential_base**attempt, config.max_delay)
    spread = base * config.jitter
    return max(0.0, base + random.uniform(-spread, spread))  # nosec B311 - not crypto


def is_retryable_exception(
    exception: Exception,
    retryable_exceptions: tuple[type[Exception], ...] = TRANSIENT_EXCEPTIONS,
) -> bool:
    """Whether ``exception`` is worth another attempt."""
    if isinstance(exception, retryable_exceptions):
        return True
    # asyncpg surfaces a dropped connection as an invalidated DBAPI error
    return isinstance(exception, DBAPIError) and exception.connection_invalidated


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    retryable_exceptions: tuple[type[Exception], ...] = TRANSIENT_EXCEPTIONS,
    operation_name: str = "operation",
) -> T:
    """
    Await ``operation``, retrying transient failures with backoff.

    Args:
        operation: Zero-argument coroutine function
        config: Backoff policy (defaults to ``RetryConfig()``)
        retryable_exceptions: Exception types considered transient
        operation_name: Label used in log records

    Returns:
        The operation's result

    Raises:
        RetryError: When the last allowed attempt fails too
        Exception: Any non-transient error, on the attempt that raised it

    Example:
        >>> partner_id = await retry_async(fetch_partner, operation_name="lookup_partner")
    """
    config = config or RetryConfig()
    attempts = 0
    waited = 0.0

    while True:
        attempts += 1
        try:
            result = await operation()
        except Exception as e:
            if not is_retryable_exception(e, retryable_exceptions):
                raise
            if attempts > config.max_retries:
                logger.error(
                    "%s gave up after %d attempts: %s",
                    operation_name,
                    attempts,
                    e,
                    extra={
                        "operation": operation_name,
                        "attempts": attempts,
                        "waited_seconds": waited,
                        "error_type": type(e).__name__,
                    },
                )
                raise RetryError(
                    f"Operation {operation_name} failed after {attempts} attempts: {e}",
                    attempts=attempts,
                    last_error=e,
                ) from e

            delay = calculate_backoff(attempts - 1, config)
            waited += delay
            logger.warning(
                "%s failed (attempt %d of %d), retrying in %.2fs: %s",
                operation_name,
                attempts,
                config.max_retries + 1,
                delay,
                e,
                extra={"operation": operation_name, "error_type": type(e).__name__},
            )
            await asyncio.sleep(delay)
            continue

        if attempts > 1:
            logger.info(
                "%s succeeded on attempt %d",
                operation_name,
                attempts,
                extra={"operation": operation_name, "waited_seconds": waited},
            )
        return result


__all__ = [
    "TRANSIENT_EXCEPTIONS",
    "RetryConfig",
    "RetryError",
    "calculate_backoff",
    "is_retryable_exception",
    "retry_async",
]
