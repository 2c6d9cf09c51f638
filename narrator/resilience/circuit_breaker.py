from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from narrator.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Per-dependency breaker: opens after consecutive failures, probes after a cool-down."""

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        reset_timeout_seconds: float = 30.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.reset_timeout_seconds = reset_timeout_seconds
        self.half_open_max_calls = max(1, half_open_max_calls)
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._half_open_calls = 0

    @property
    def state(self) -> BreakerState:
        if self._state is BreakerState.OPEN and self._clock() - self._opened_at >= self.reset_timeout_seconds:
            self._transition(BreakerState.HALF_OPEN)
            self._half_open_calls = 0
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def before_call(self) -> None:
        state = self.state
        if state is BreakerState.OPEN:
            remaining = self.reset_timeout_seconds - (self._clock() - self._opened_at)
            raise CircuitOpenError(self.name, max(0.0, remaining))
        if state is BreakerState.HALF_OPEN:
            if self._half_open_calls >= self.half_open_max_calls:
                raise CircuitOpenError(self.name, 0.0)
            self._half_open_calls += 1

    def record_success(self) -> None:
        if self._state is not BreakerState.CLOSED:
            self._transition(BreakerState.CLOSED)
        self._failures = 0
        self._half_open_calls = 0

    def record_failure(self) -> None:
        if self._state is BreakerState.HALF_OPEN:
            self._open()
            return
        self._failures += 1
        if self._state is BreakerState.CLOSED and self._failures >= self.failure_threshold:
            self._open()

    def reset(self) -> None:
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._half_open_calls = 0

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self.before_call()
        try:
            result = await operation()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._half_open_calls = 0
        self._transition(BreakerState.OPEN)

    def _transition(self, new_state: BreakerState) -> None:
        if new_state is self._state:
            return
        logger.warning("Circuit breaker '%s' %s -> %s", self.name, self._state.value, new_state.value)
        self._state = new_state
