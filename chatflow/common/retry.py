"""
Retry With Exponential Backoff

Wraps an asynchronous operation so that transient infrastructure errors
(connection refused/reset, timeouts, DNS failures, lost database
connections) are retried with a capped exponential delay. Every other
error propagates on the first attempt.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx
from sqlalchemy.exc import DBAPIError

from chatflow.common.config import settings

logger = logging.getLogger("retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Retry parameters; delays are in seconds, max_retries counts total attempts."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        return cls(
            max_retries=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )


DEFAULT_RETRY_CONFIG = RetryConfig()

# Substrings of error messages that indicate a transient failure
RETRYABLE_MESSAGES = (
    "ECONNREFUSED",
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "EAI_AGAIN",
    "Connection refused",
    "Connection reset",
    "timed out",
    "Name or service not known",
    "Temporary failure in name resolution",
    "Can't reach database server",
    "could not connect to server",
    "Connection terminated",
    "Connection lost",
    "server closed the connection unexpectedly",
)

# PostgreSQL SQLSTATE codes for lost connections, shutdowns and timeouts
RETRYABLE_PG_CODES = ("57P01", "57P02", "57P03", "57014")
RETRYABLE_PG_CLASSES = ("08",)


def _pg_code(error: BaseException) -> str | None:
    orig = getattr(error, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return code if isinstance(code, str) else None


def is_retryable_error(error: BaseException) -> bool:
    """
    Decide whether an error is a transient infrastructure failure.

    Args:
        error: The exception raised by the wrapped operation

    Returns:
        bool: True if the operation is worth retrying
    """
    if isinstance(error, (httpx.TimeoutException, httpx.ConnectError, httpx.RemoteProtocolError)):
        return True

    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True

    if isinstance(error, DBAPIError):
        if error.connection_invalidated:
            return True
        code = _pg_code(error)
        if code and (code in RETRYABLE_PG_CODES or code[:2] in RETRYABLE_PG_CLASSES):
            return True

    message = str(error)
    return any(fragment in message for fragment in RETRYABLE_MESSAGES)


def calculate_delay(attempt: int, config: RetryConfig = DEFAULT_RETRY_CONFIG) -> float:
    """Delay before the attempt following `attempt` (1-based), capped at max_delay."""
    delay = config.initial_delay * (config.backoff_multiplier ** (attempt - 1))
    return min(delay, config.max_delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    context: str = "database operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run an operation, retrying transient failures with exponential backoff.

    Args:
        operation: Zero-argument callable returning an awaitable
        config: Retry parameters
        context: Label used in log messages
        sleep: Awaitable sleep function (replaced in tests)

    Returns:
        The operation's result

    Raises:
        The last error, unchanged, once retries are exhausted, or the
        first non-retryable error immediately.
    """
    last_error: BaseException | None = None

    attempts = max(config.max_retries, 1)

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as ex:
            last_error = ex

            if not is_retryable_error(ex):
                logger.error(f"[{context}] Non-retryable error on attempt {attempt}: {ex}")
                raise

            if attempt == attempts:
                logger.error(f"[{context}] Max retries ({config.max_retries}) exceeded: {ex}")
                break

            delay = calculate_delay(attempt, config)
            logger.warning(
                f"[{context}] Attempt {attempt}/{config.max_retries} failed, "
                f"retrying in {delay:.2f}s: {ex}"
            )
            await sleep(delay)

    raise last_error


async def check_database_health_with_retry(
    check: Callable[[], Awaitable[bool]],
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """
    Run a health probe under the retry policy.

    Returns:
        bool: True if the probe eventually reported healthy, False otherwise
    """
    async def probe() -> bool:
        if not await check():
            raise ConnectionError("Database health check failed")
        return True

    try:
        return await with_retry(probe, config, "database health check", sleep)
    except Exception as ex:
        logger.error(f"Database health check failed after retries: {ex}")
        return False
