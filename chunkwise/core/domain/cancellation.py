"""
Cooperative cancellation for upload runs.

A token is created per run and passed down to every suspension point: the
init handshake, each chunk send, each backoff sleep and the finalize
handshake.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from ..exceptions import UploadCanceled

T = TypeVar('T')

SleepFunc = Callable[[float], Awaitable[None]]


class CancellationToken:
    """Explicit cancellation signal observed by an upload run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "Upload canceled") -> None:
        """Raise the signal. Calling it more than once has no further effect."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise UploadCanceled(self._reason or "Upload canceled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the token fires first.

        On cancellation the inner task is cancelled and UploadCanceled is
        raised; a result that completes after the signal is discarded.
        """
        self.raise_if_cancelled()

        task: asyncio.Future[T] = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if self._event.is_set():
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
            elif not task.cancelled():
                # Retrieve the outcome so a late failure is not reported as unhandled.
                task.exception()
            raise UploadCanceled(self._reason or "Upload canceled")

        return task.result()

    async def sleep(self, seconds: float, sleep_func: SleepFunc = asyncio.sleep) -> None:
        """Interruptible delay through an injectable sleep function."""
        await self.guard(sleep_func(seconds))
