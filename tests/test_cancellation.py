from __future__ import annotations

import asyncio
import inspect

import pytest

from narrator.errors import Cancelled
from narrator.polling.cancellation import CancellationToken


@pytest.mark.asyncio
async def test_guard_returns_result_when_not_cancelled() -> None:
    token = CancellationToken()

    async def work() -> int:
        await asyncio.sleep(0)
        return 42

    assert await token.guard(work()) == 42
    assert not token.cancelled


@pytest.mark.asyncio
async def test_guard_aborts_pending_work_on_cancel() -> None:
    token = CancellationToken()
    finished: list[bool] = []

    async def slow() -> None:
        await asyncio.sleep(10)
        finished.append(True)

    asyncio.get_running_loop().call_later(0.05, token.cancel, "user request")

    with pytest.raises(Cancelled, match="user request"):
        await token.guard(slow())

    assert finished == []


@pytest.mark.asyncio
async def test_sleep_after_cancel_raises_immediately() -> None:
    token = CancellationToken()
    token.cancel()
    token.cancel("second reason is ignored")

    assert token.reason is None
    with pytest.raises(Cancelled, match="Operation cancelled"):
        await token.sleep(5)
    with pytest.raises(Cancelled):
        token.raise_if_cancelled()


@pytest.mark.asyncio
async def test_guard_closes_the_awaitable_when_already_cancelled() -> None:
    token = CancellationToken()
    token.cancel("shutdown")
    pending = asyncio.sleep(10)

    with pytest.raises(Cancelled):
        await token.guard(pending)

    assert inspect.getcoroutinestate(pending) == inspect.CORO_CLOSED
