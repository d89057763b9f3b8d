"""
Async stream primitives used between producers (transcription capability)
and consumers (adapter, controller).

- CancellationToken: a callable cancel signal shared by everything working
  on one capture, so a cancel reaches whichever await is outstanding.
- EventChannel: a producer pushes items, a consumer iterates with
  `async for`. Closing with an error re-raises it at the consumer after the
  already-queued items were delivered.
"""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, Generic, Optional, TypeVar

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancel signal."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class ChannelClosed(Exception):
    """Raised when pushing to a closed channel."""


_CLOSE = object()


class EventChannel(Generic[T]):
    """Single-consumer async channel."""

    def __init__(self, token: Optional[CancellationToken] = None) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._error: Optional[BaseException] = None
        self.token = token or CancellationToken()

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, item: T) -> None:
        if self._closed:
            raise ChannelClosed("channel is closed")
        self._queue.put_nowait(item)

    def close(self, error: Optional[BaseException] = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        self._queue.put_nowait(_CLOSE)

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            if self.token.cancelled:
                return
            get_task = asyncio.ensure_future(self._queue.get())
            cancel_task = asyncio.ensure_future(self.token.wait())
            try:
                done, _ = await asyncio.wait(
                    {get_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                cancel_task.cancel()
                if not get_task.done():
                    get_task.cancel()
            if get_task not in done:
                return
            item = get_task.result()
            if item is _CLOSE:
                if self._error is not None:
                    raise self._error
                return
            yield item
