from __future__ import annotations

from urllib.error import HTTPError, URLError

import pytest

from narrator.errors import DependencyError, InvalidLocation, RetryExhausted, ServiceRequestError
from narrator.resilience.retry import RetryPolicy, is_retryable_error, retry_async


def _http_error(code: int) -> HTTPError:
    return HTTPError("http://svc", code, "status", hdrs=None, fp=None)


def test_delay_grows_exponentially_and_is_capped() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0, multiplier=2.0, jitter_ratio=0.1)

    assert policy.delay_for(1, rng=lambda: 0.0) == pytest.approx(1.0)
    assert policy.delay_for(2, rng=lambda: 0.0) == pytest.approx(2.0)
    assert policy.delay_for(3, rng=lambda: 0.0) == pytest.approx(4.0)
    assert policy.delay_for(4, rng=lambda: 0.0) == pytest.approx(5.0)
    assert policy.delay_for(2, rng=lambda: 1.0) == pytest.approx(2.2)


def test_is_retryable_error_classification() -> None:
    assert is_retryable_error(DependencyError("down"))
    assert is_retryable_error(TimeoutError())
    assert is_retryable_error(URLError("refused"))
    assert is_retryable_error(_http_error(429))
    assert is_retryable_error(_http_error(503))

    assert not is_retryable_error(_http_error(400))
    assert not is_retryable_error(ServiceRequestError("bad request"))
    assert not is_retryable_error(InvalidLocation("ftp://x", "unsupported scheme"))
    assert not is_retryable_error(KeyError("x"))


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failures() -> None:
    attempts: list[int] = []
    delays: list[float] = []

    async def operation() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise DependencyError("throttled", status_code=429)
        return "ok"

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    result = await retry_async(
        operation,
        policy=RetryPolicy(max_attempts=3, base_delay_seconds=2.0, jitter_ratio=0.0),
        sleep=fake_sleep,
    )

    assert result == "ok"
    assert len(attempts) == 3
    assert delays == [pytest.approx(2.0), pytest.approx(4.0)]


@pytest.mark.asyncio
async def test_retry_raises_non_retryable_error_immediately() -> None:
    calls: list[int] = []

    async def operation() -> None:
        calls.append(1)
        raise InvalidLocation("nope", "location is empty")

    async def fake_sleep(_seconds: float) -> None:
        raise AssertionError("should not sleep")

    with pytest.raises(InvalidLocation):
        await retry_async(operation, policy=RetryPolicy(max_attempts=5), sleep=fake_sleep)

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_retry_exhaustion_reports_attempts_and_last_error() -> None:
    async def operation() -> None:
        raise TimeoutError("slow")

    async def fake_sleep(_seconds: float) -> None:
        return None

    with pytest.raises(RetryExhausted) as exc_info:
        await retry_async(operation, policy=RetryPolicy(max_attempts=2), label="vision call", sleep=fake_sleep)

    error = exc_info.value
    assert error.attempts == 2
    assert isinstance(error.last_error, TimeoutError)
    assert not error.retryable
    assert error.to_payload()["code"] == "RETRY_EXHAUSTED"
    assert "vision call failed after 2 attempts" in error.message
