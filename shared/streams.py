from __future__ import annotations

import asyncio
import logging
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):
    """
    Cancellable stream handle for change feeds.

    Producers call push() (or push_threadsafe() from a listener thread);
    consumers iterate with `async for`. cancel() unregisters the listener
    deterministically and ends iteration. A cancelled subscription cannot be
    restarted; subscribe again instead.

    With conflate=True only the newest undelivered value is kept, which is
    what snapshot feeds want (last writer wins).
    """

    def __init__(self, on_cancel: Optional[Callable[[], None]] = None, *, conflate: bool = True):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_cancel = on_cancel
        self._conflate = conflate
        self._closed = False
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, value: T) -> None:
        if self._closed:
            return
        if self._conflate:
            while not self._queue.empty():
                try:
                    self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
        self._queue.put_nowait(value)

    def push_threadsafe(self, value: T) -> None:
        if self._closed:
            return
        if self._loop is None:
            self.push(value)
            return
        self._loop.call_soon_threadsafe(self.push, value)

    def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        callback, self._on_cancel = self._on_cancel, None
        if callback is not None:
            try:
                callback()
            except Exception:
                logger.exception("[STREAM] unsubscribe callback failed")
        # wake a consumer blocked in __anext__
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        value = await self._queue.get()
        if value is _CLOSED:
            raise StopAsyncIteration
        return value

    async def next(self, timeout: Optional[float] = None) -> T:
        """Await the next value; raises asyncio.TimeoutError after `timeout` seconds."""
        return await asyncio.wait_for(self.__anext__(), timeout=timeout)

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, *exc) -> None:
        self.cancel()
