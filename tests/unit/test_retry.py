"""
Unit tests for timeout, backoff and bounded concurrency helpers
"""

import asyncio
import pytest
import httpx
from unittest.mock import AsyncMock
from core.exceptions import (
    AuthenticationError,
    NetworkError,
    OperationTimeoutError,
    RateLimitError,
    UpstreamServerError,
)
from core.retry import (
    calculate_backoff_delay,
    chunked,
    is_retryable_error,
    process_in_groups,
    retry_with_backoff,
    with_timeout,
)


def test_backoff_delay_doubles_and_caps():
    assert calculate_backoff_delay(0, 1.0, 30.0) == 1.0
    assert calculate_backoff_delay(1, 1.0, 30.0) == 2.0
    assert calculate_backoff_delay(3, 1.0, 30.0) == 8.0
    assert calculate_backoff_delay(10, 1.0, 30.0) == 30.0


@pytest.mark.parametrize("error,expected", [
    (NetworkError("reset"), True),
    (UpstreamServerError("503"), True),
    (RateLimitError("429"), True),
    (OperationTimeoutError("slow"), True),
    (asyncio.TimeoutError(), True),
    (ConnectionResetError("peer"), True),
    (AuthenticationError("401"), False),
    (ValueError("bad record"), False),
])
def test_error_classification(error, expected):
    assert is_retryable_error(error) is expected


def test_http_status_errors_classified_by_code():
    request = httpx.Request("GET", "https://example.com")

    def status_error(code):
        return httpx.HTTPStatusError("x", request=request, response=httpx.Response(code, request=request))

    assert is_retryable_error(status_error(429)) is True
    assert is_retryable_error(status_error(502)) is True
    assert is_retryable_error(status_error(400)) is False


@pytest.mark.asyncio
async def test_with_timeout_raises_typed_error():
    with pytest.raises(OperationTimeoutError) as exc_info:
        await with_timeout(asyncio.sleep(1), 0.01, "slow call")
    assert exc_info.value.context["operation"] == "slow call"


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failures():
    sleep = AsyncMock()
    operation = AsyncMock(side_effect=[NetworkError("reset"), NetworkError("reset"), "ok"])

    result = await retry_with_backoff(operation, max_retries=3, initial_delay=1.0, sleep=sleep)

    assert result == "ok"
    assert operation.await_count == 3
    assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_gives_up_after_max_attempts():
    sleep = AsyncMock()
    operation = AsyncMock(side_effect=NetworkError("reset"))

    with pytest.raises(NetworkError):
        await retry_with_backoff(operation, max_retries=3, sleep=sleep)

    assert operation.await_count == 3
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_retry_fails_fast_on_permanent_error():
    sleep = AsyncMock()
    operation = AsyncMock(side_effect=AuthenticationError("401"))

    with pytest.raises(AuthenticationError):
        await retry_with_backoff(operation, max_retries=3, sleep=sleep)

    assert operation.await_count == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_retry_honours_retry_after():
    sleep = AsyncMock()
    operation = AsyncMock(side_effect=[RateLimitError("429", retry_after=5), "ok"])

    await retry_with_backoff(operation, max_retries=2, initial_delay=1.0, max_delay=10.0, sleep=sleep)

    sleep.assert_awaited_once_with(5.0)


def test_chunked():
    assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    with pytest.raises(ValueError):
        list(chunked([1], 0))


@pytest.mark.asyncio
async def test_process_in_groups_bounds_concurrency_and_isolates_errors():
    running = 0
    peak = 0

    async def processor(n):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0)
        running -= 1
        if n == 3:
            raise ValueError("bad item")
        return n * 10

    sleep = AsyncMock()
    results = await process_in_groups(list(range(7)), processor, group_size=3, delay=0.1, sleep=sleep)

    assert peak <= 3
    assert results[:3] == [0, 10, 20]
    assert isinstance(results[3], ValueError)
    assert results[4:] == [40, 50, 60]
    # Pause between groups, not after the last one
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_process_in_groups_stops_when_asked():
    checks = iter([False, True])
    processor = AsyncMock(return_value="done")

    results = await process_in_groups(
        list(range(10)), processor, group_size=5, should_stop=lambda: next(checks), sleep=AsyncMock()
    )

    assert len(results) == 5
    assert processor.await_count == 5
