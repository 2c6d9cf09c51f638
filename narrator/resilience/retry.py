from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar
from urllib.error import HTTPError, URLError

from narrator.errors import NarratorError, RetryExhausted
from narrator.polling.cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff: base * multiplier^(attempt-1), capped, plus jitter."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    multiplier: float = 2.0
    jitter_ratio: float = 0.1

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        exponential = self.base_delay_seconds * self.multiplier ** max(0, attempt - 1)
        capped = min(exponential, self.max_delay_seconds)
        return capped + rng() * self.jitter_ratio * capped


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, NarratorError):
        return exc.retryable
    if isinstance(exc, HTTPError):
        return exc.code in RETRYABLE_STATUS_CODES or exc.code >= 500
    if isinstance(exc, (URLError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    return False


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    label: str = "operation",
    cancel_token: CancellationToken | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    rng: Callable[[], float] = random.random,
) -> T:
    """Run `operation` until it succeeds, fails fatally, or the attempt budget runs out.

    Non-retryable errors propagate unchanged after the first attempt. When every
    attempt failed with a retryable error, `RetryExhausted` is raised with the
    last error chained.
    """

    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_attempts)

    for attempt in range(1, attempts + 1):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            result = await operation()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt == attempts:
                logger.error("%s failed after %d attempts: %s", label, attempts, exc)
                raise RetryExhausted(label, attempts, exc) from exc

            delay = policy.delay_for(attempt, rng)
            logger.warning(
                "%s attempt %d/%d failed (%s); retrying in %.2fs",
                label,
                attempt,
                attempts,
                exc,
                delay,
            )
            if cancel_token is not None and sleep is None:
                await cancel_token.sleep(delay)
            else:
                await (sleep or asyncio.sleep)(delay)
            continue

        if attempt > 1:
            logger.info("%s succeeded on attempt %d/%d", label, attempt, attempts)
        return result

    raise AssertionError("retry loop exited without a result")
