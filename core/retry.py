"""
Timeout and retry primitives shared by every stage.

- with_timeout: converts a hang into a typed, retryable OperationTimeoutError
- retry_with_backoff: exponential backoff driven by is_retryable_error
- process_in_groups: bounded concurrency with a pause between groups
"""

import asyncio
import logging
from typing import (
    Any, Awaitable, Callable, Iterator, List, Optional, Sequence, TypeVar
)

import httpx
from sqlalchemy.exc import DBAPIError, OperationalError

from core.exceptions import (
    NonRetryableError,
    OperationTimeoutError,
    RateLimitError,
    RetryableError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fallback markers for exceptions raised by drivers without a useful type
_RETRYABLE_MARKERS = (
    "timeout",
    "timed out",
    "econnreset",
    "connection reset",
    "temporarily unavailable",
    "database is locked",
)


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    operation: str = "operation"
) -> T:
    """Await `awaitable`, raising OperationTimeoutError after `timeout` seconds."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(
            f"{operation} timed out after {timeout}s",
            context={"operation": operation, "timeout_seconds": timeout},
            original_exception=e
        )


def calculate_backoff_delay(
    attempt: int,
    initial_delay: float = 1.0,
    max_delay: float = 30.0
) -> float:
    """Delay before retry number `attempt` (0-based): initial * 2^attempt, capped."""
    return min(initial_delay * (2 ** max(attempt, 0)), max_delay)


def is_retryable_error(error: BaseException) -> bool:
    """
    Classify an exception as transient (retry) or permanent (fail fast).

    Transient: timeouts, connection resets, HTTP 5xx/429 and storage-layer
    connection errors. Everything else is permanent.
    """
    if isinstance(error, RetryableError):
        return True
    if isinstance(error, NonRetryableError):
        return False
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return True
    if isinstance(error, (httpx.NetworkError, httpx.RemoteProtocolError, ConnectionError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    if isinstance(error, OperationalError):
        return True
    if isinstance(error, DBAPIError):
        return bool(error.connection_invalidated)

    message = str(error).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    should_retry: Callable[[BaseException], bool] = is_retryable_error,
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Call `operation` up to `max_retries` times.

    Non-retryable errors are re-raised immediately; the last retryable
    error is re-raised once attempts are exhausted.
    """
    for attempt in range(max_retries):
        try:
            return await operation()
        except Exception as e:
            if not should_retry(e):
                logger.debug(f"{operation_name} failed with non-retryable error: {e}")
                raise
            if attempt >= max_retries - 1:
                logger.error(
                    f"{operation_name} failed after {max_retries} attempts: {e}"
                )
                raise

            delay = calculate_backoff_delay(attempt, initial_delay, max_delay)
            if isinstance(e, RateLimitError) and e.retry_after:
                delay = min(float(e.retry_after), max_delay)

            logger.warning(
                f"{operation_name} attempt {attempt + 1}/{max_retries} failed: {e}. "
                f"Retrying in {delay:.1f}s"
            )
            await sleep(delay)

    raise ValueError("max_retries must be at least 1")


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of at most `size` items."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


async def process_in_groups(
    items: Sequence[T],
    processor: Callable[[T], Awaitable[Any]],
    group_size: int = 5,
    delay: float = 0.0,
    should_stop: Optional[Callable[[], bool]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> List[Any]:
    """
    Run `processor` over `items`, at most `group_size` at a time.

    Results (or raised exceptions) are returned in input order. When
    `should_stop` returns True before a group starts, processing ends and
    the result list is shorter than `items`.
    """
    results: List[Any] = []
    groups = list(chunked(items, group_size))

    for index, group in enumerate(groups):
        if should_stop is not None and should_stop():
            logger.info(
                f"Stopping before group {index + 1}/{len(groups)}; "
                f"{len(items) - len(results)} items left unprocessed"
            )
            break

        results.extend(
            await asyncio.gather(*(processor(item) for item in group), return_exceptions=True)
        )

        if delay and index < len(groups) - 1:
            await sleep(delay)

    return results
