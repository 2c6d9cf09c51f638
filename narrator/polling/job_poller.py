from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from narrator.errors import (
    AlreadyPolling,
    Cancelled,
    PolledJobFailed,
    PollingCancelled,
    PollingTimeout,
)
from narrator.polling.cancellation import CancellationToken
from narrator.resilience.retry import RetryPolicy, is_retryable_error, retry_async

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "failed"})
DEFAULT_CHECK_TIMEOUT_SECONDS = 10.0
DEFAULT_CHECK_RETRY_POLICY = RetryPolicy(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=5.0)


@dataclass(slots=True)
class PollStatus:
    """One observation of a polled job."""

    status: str
    step: str | None = None
    progress: float | None = None
    message: str | None = None
    error: Any = None
    payload: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> PollStatus:
        return cls(
            status=str(raw.get("status", "")),
            step=raw.get("step"),
            progress=raw.get("progress"),
            message=raw.get("message"),
            error=raw.get("error"),
            payload=raw.get("payload", raw.get("result")),
        )


@dataclass(slots=True)
class PollResult:
    job_id: str
    final_status: PollStatus
    duration_seconds: float
    attempts: int


@dataclass(slots=True)
class _ActivePoll:
    token: CancellationToken
    started_at: float
    attempts: int = 0
    last_status: PollStatus | None = field(default=None)


CheckFn = Callable[[], Awaitable[PollStatus | Mapping[str, Any]]]
ProgressFn = Callable[[str, PollStatus], None]


class JobPoller:
    """Drives `check_fn` until a job completes, fails, times out or is cancelled."""

    def __init__(
        self,
        *,
        check_timeout_seconds: float = DEFAULT_CHECK_TIMEOUT_SECONDS,
        check_retry_policy: RetryPolicy | None = None,
        is_retryable: Callable[[BaseException], bool] = is_retryable_error,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.check_timeout_seconds = check_timeout_seconds
        self.check_retry_policy = check_retry_policy or DEFAULT_CHECK_RETRY_POLICY
        self._is_retryable = is_retryable
        self._clock = clock
        self._active: dict[str, _ActivePoll] = {}

    def active_polls(self) -> list[str]:
        return list(self._active)

    def is_polling(self, job_id: str) -> bool:
        return job_id in self._active

    def cancel(self, job_id: str, reason: str | None = None) -> bool:
        state = self._active.get(job_id)
        if state is None:
            return False
        logger.info("Cancelling poll for job %s", job_id)
        state.token.cancel(reason or "poll cancelled")
        return True

    def cancel_all(self, reason: str | None = None) -> int:
        job_ids = list(self._active)
        for job_id in job_ids:
            self.cancel(job_id, reason)
        return len(job_ids)

    async def poll(
        self,
        job_id: str,
        check_fn: CheckFn,
        *,
        interval_seconds: float = 5.0,
        timeout_seconds: float = 1800.0,
        on_progress: ProgressFn | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> PollResult:
        if job_id in self._active:
            raise AlreadyPolling(job_id)

        state = _ActivePoll(token=cancel_token or CancellationToken(), started_at=self._clock())
        self._active[job_id] = state
        logger.debug("Polling job %s every %.2fs (timeout %.1fs)", job_id, interval_seconds, timeout_seconds)

        try:
            final_status = await asyncio.wait_for(
                self._poll_loop(job_id, check_fn, state, interval_seconds, on_progress),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Polling job %s timed out after %d checks", job_id, state.attempts)
            raise PollingTimeout(job_id, timeout_seconds, state.attempts) from exc
        except PollingCancelled:
            raise
        except Cancelled as exc:
            raise PollingCancelled(job_id, state.token.reason) from exc
        finally:
            self._active.pop(job_id, None)

        return PollResult(
            job_id=job_id,
            final_status=final_status,
            duration_seconds=self._clock() - state.started_at,
            attempts=state.attempts,
        )

    async def _poll_loop(
        self,
        job_id: str,
        check_fn: CheckFn,
        state: _ActivePoll,
        interval_seconds: float,
        on_progress: ProgressFn | None,
    ) -> PollStatus:
        while True:
            state.attempts += 1
            status = await state.token.guard(self._check(job_id, check_fn, state.token))
            state.last_status = status
            self._notify(job_id, status, on_progress)

            if status.status == "completed":
                logger.info("Polled job %s completed after %d checks", job_id, state.attempts)
                return status
            if status.status == "failed":
                raise PolledJobFailed(job_id, status.error, message=status.message)

            await state.token.sleep(interval_seconds)

    async def _check(self, job_id: str, check_fn: CheckFn, token: CancellationToken) -> PollStatus:
        async def attempt() -> PollStatus:
            raw = await asyncio.wait_for(check_fn(), timeout=self.check_timeout_seconds)
            return raw if isinstance(raw, PollStatus) else PollStatus.from_mapping(raw)

        return await retry_async(
            attempt,
            policy=self.check_retry_policy,
            is_retryable=self._is_retryable,
            label=f"status check for {job_id}",
            cancel_token=token,
        )

    @staticmethod
    def _notify(job_id: str, status: PollStatus, on_progress: ProgressFn | None) -> None:
        if on_progress is None:
            return
        try:
            on_progress(job_id, status)
        except Exception as exc:
            logger.warning("Progress callback for job %s raised %s; continuing", job_id, exc)
