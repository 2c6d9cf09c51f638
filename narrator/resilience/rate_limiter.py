from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from narrator.errors import RateLimitExceeded
from narrator.polling.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class TokenBucketRateLimiter:
    """Token bucket refilled continuously at `refill_per_second`."""

    def __init__(
        self,
        capacity: float,
        refill_per_second: float,
        *,
        name: str = "rate-limiter",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_per_second <= 0:
            raise ValueError("refill_per_second must be positive")
        self.capacity = float(capacity)
        self.refill_per_second = float(refill_per_second)
        self.name = name
        self._clock = clock
        self._tokens = float(capacity)
        self._updated_at = clock()

    @classmethod
    def per_minute(cls, requests_per_minute: float, *, burst: float = 1.0, **kwargs) -> TokenBucketRateLimiter:
        return cls(capacity=burst, refill_per_second=requests_per_minute / 60.0, **kwargs)

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def try_acquire(self, tokens: float = 1.0) -> bool:
        self._check_request(tokens)
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    def wait_time(self, tokens: float = 1.0) -> float:
        self._check_request(tokens)
        self._refill()
        missing = tokens - self._tokens
        return 0.0 if missing <= 0 else missing / self.refill_per_second

    async def acquire(
        self,
        tokens: float = 1.0,
        *,
        max_wait_seconds: float | None = None,
        cancel_token: CancellationToken | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        waited = 0.0
        while not self.try_acquire(tokens):
            delay = self.wait_time(tokens)
            if max_wait_seconds is not None and waited + delay > max_wait_seconds:
                raise RateLimitExceeded(
                    f"Rate limiter '{self.name}' could not grant {tokens:g} token(s) within {max_wait_seconds:g}s",
                    service=self.name,
                )
            logger.debug("Rate limiter '%s' waiting %.3fs", self.name, delay)
            if cancel_token is not None and sleep is None:
                await cancel_token.sleep(delay)
            else:
                await (sleep or asyncio.sleep)(delay)
            waited += delay

    def _check_request(self, tokens: float) -> None:
        if tokens <= 0 or tokens > self.capacity:
            raise ValueError(f"tokens must be in (0, {self.capacity:g}]")

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)
        self._updated_at = now
