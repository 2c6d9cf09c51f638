from __future__ import annotations

import pytest

from narrator.errors import CircuitOpenError, DependencyError
from narrator.resilience.circuit_breaker import BreakerState, CircuitBreaker
from tests.fakes import FakeClock


def test_breaker_opens_after_threshold_failures() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("vision", failure_threshold=3, reset_timeout_seconds=30, clock=clock)

    for _ in range(2):
        breaker.before_call()
        breaker.record_failure()
    assert breaker.state is BreakerState.CLOSED

    breaker.before_call()
    breaker.record_failure()
    assert breaker.state is BreakerState.OPEN

    with pytest.raises(CircuitOpenError) as exc_info:
        breaker.before_call()
    assert exc_info.value.retry_after_seconds == pytest.approx(30.0)
    assert not exc_info.value.retryable


def test_breaker_success_resets_failure_count() -> None:
    breaker = CircuitBreaker("speech", failure_threshold=2, clock=FakeClock())

    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()

    assert breaker.state is BreakerState.CLOSED
    assert breaker.failure_count == 1


def test_breaker_half_open_trial_call_closes_on_success() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("vision", failure_threshold=1, reset_timeout_seconds=10, clock=clock)
    breaker.record_failure()

    clock.advance(9.9)
    assert breaker.state is BreakerState.OPEN

    clock.advance(0.1)
    assert breaker.state is BreakerState.HALF_OPEN

    breaker.before_call()
    with pytest.raises(CircuitOpenError):
        breaker.before_call()

    breaker.record_success()
    assert breaker.state is BreakerState.CLOSED
    breaker.before_call()


def test_breaker_half_open_failure_reopens() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("vision", failure_threshold=1, reset_timeout_seconds=10, clock=clock)
    breaker.record_failure()
    clock.advance(10)

    breaker.before_call()
    breaker.record_failure()

    assert breaker.state is BreakerState.OPEN
    clock.advance(5)
    assert breaker.state is BreakerState.OPEN


@pytest.mark.asyncio
async def test_breaker_call_records_outcomes() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("scene-detection", failure_threshold=2, clock=clock)

    async def failing() -> None:
        raise DependencyError("503")

    async def succeeding() -> str:
        return "ok"

    assert await breaker.call(succeeding) == "ok"
    for _ in range(2):
        with pytest.raises(DependencyError):
            await breaker.call(failing)

    with pytest.raises(CircuitOpenError):
        await breaker.call(succeeding)
