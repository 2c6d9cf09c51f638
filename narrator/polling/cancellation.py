from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from narrator.errors import Cancelled

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation signal passed to every suspension point of a job."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self._message())

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, aborting it as soon as the token is cancelled."""

        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()
        raise Cancelled(self._message())

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        await self.guard(asyncio.sleep(seconds))

    def _message(self) -> str:
        return f"Operation cancelled: {self.reason}" if self.reason else "Operation cancelled"
