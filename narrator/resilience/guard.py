from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from narrator.polling.cancellation import CancellationToken
from narrator.resilience.circuit_breaker import CircuitBreaker
from narrator.resilience.rate_limiter import TokenBucketRateLimiter
from narrator.resilience.retry import RetryPolicy, retry_async

T = TypeVar("T")


@dataclass(slots=True)
class DependencyGuard:
    """Retry policy, breaker and limiter shared by every caller of one dependency.

    Each attempt takes a limiter token before it passes through the breaker, so
    retries are rate limited like first calls. `sleep` replaces both the retry
    backoff wait and the limiter wait.
    """

    name: str
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    breaker: CircuitBreaker | None = None
    limiter: TokenBucketRateLimiter | None = None
    sleep: Callable[[float], Awaitable[None]] | None = None

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        label: str | None = None,
        cancel_token: CancellationToken | None = None,
        policy: RetryPolicy | None = None,
    ) -> T:
        async def attempt() -> T:
            if self.limiter is not None:
                await self.limiter.acquire(cancel_token=cancel_token, sleep=self.sleep)
            if self.breaker is not None:
                return await self.breaker.call(operation)
            return await operation()

        return await retry_async(
            attempt,
            policy=policy or self.policy,
            label=label or self.name,
            cancel_token=cancel_token,
            sleep=self.sleep,
        )
