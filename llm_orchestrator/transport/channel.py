from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from typing import Generic, TypeVar

T = TypeVar("T")


class ChannelClosedError(RuntimeError):
    pass


class ChannelOverflowError(RuntimeError):
    """Raised to a consumer that was detached for falling behind its producer."""


class EventChannel(Generic[T]):
    """Bounded async channel between one producer and its consumers.

    ``send`` waits while the channel is full, so nothing is dropped; producers
    that must never stall use ``try_send`` and decide what to do with a full
    channel. ``close`` ends iteration; a terminal error passed to ``close`` is
    raised to the consumer after the buffered items have been delivered, unless
    ``discard_pending`` drops them first.
    """

    def __init__(self, maxsize: int = 1024) -> None:
        self._maxsize = max(1, int(maxsize))
        self._items: deque[T] = deque()
        self._changed = asyncio.Event()
        self._closed = False
        self._error: BaseException | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    async def send(self, item: T) -> None:
        while True:
            if self._closed:
                raise ChannelClosedError("channel is closed")
            if len(self._items) < self._maxsize:
                self._items.append(item)
                self._notify()
                return
            await self._changed.wait()

    def try_send(self, item: T) -> bool:
        if self._closed or len(self._items) >= self._maxsize:
            return False
        self._items.append(item)
        self._notify()
        return True

    def close(self, error: BaseException | None = None, *, discard_pending: bool = False) -> None:
        if discard_pending:
            self._items.clear()
        if self._closed:
            return
        self._closed = True
        self._error = error
        self._notify()

    async def receive(self) -> T:
        while True:
            if self._items:
                item = self._items.popleft()
                self._notify()
                return item
            if self._closed:
                if self._error is not None:
                    raise self._error
                raise StopAsyncIteration
            await self._changed.wait()

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        return await self.receive()

    def _notify(self) -> None:
        # Waiters hold the previous event; swapping wakes all of them at once.
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()
