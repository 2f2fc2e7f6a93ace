from __future__ import annotations

import asyncio
from collections.abc import Callable

CancelCallback = Callable[[str], None]


class CancelToken:
    """Caller-owned abort signal shared between the scheduler and transport.

    Callbacks run synchronously inside ``cancel()``, so whatever they settle is
    settled before ``cancel()`` returns.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[CancelCallback] = []

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "ABORTED") -> bool:
        if self._reason is not None:
            return False
        self._reason = reason or "ABORTED"
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self._reason)
        return True

    def add_callback(self, callback: CancelCallback) -> Callable[[], None]:
        if self._reason is not None:
            callback(self._reason)
            return _noop
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    async def wait(self) -> str:
        await self._event.wait()
        return self._reason or "ABORTED"


def _noop() -> None:
    return None
