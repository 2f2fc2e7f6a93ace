from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

from llm_orchestrator.config import RetryConfig
from llm_orchestrator.errors import AbortedError, OrchestratorError
from llm_orchestrator.events import EventLogger

T = TypeVar("T")

AttemptFn = Callable[[int], Awaitable[T]]
SleepFn = Callable[[float], Awaitable[None]]


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (AbortedError, asyncio.CancelledError)):
        return False
    if isinstance(exc, OrchestratorError):
        return bool(exc.retryable)
    if isinstance(exc, (ValueError, TypeError)):
        return False
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, Exception)


class RetryExecutor:
    """Runs one attempt function with bounded exponential backoff and jitter."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: SleepFn | None = None,
        rng: random.Random | None = None,
        monotonic: Callable[[], float] | None = None,
        events: EventLogger | None = None,
    ) -> None:
        self.config = config or RetryConfig()
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._monotonic = monotonic or time.monotonic
        self._events = events or EventLogger()

    def delay_for(self, attempt: int) -> float:
        base = self.config.base_delay_seconds * (self.config.multiplier ** max(0, attempt - 1))
        jitter = 0.0
        if self.config.jitter_seconds > 0:
            jitter = self._rng.uniform(0.0, self.config.jitter_seconds)
        return min(base, self.config.max_delay_seconds) + jitter

    async def run(self, attempt_fn: AttemptFn[T], *, label: str = "request") -> T:
        started = self._monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await attempt_fn(attempt)
            except BaseException as exc:
                elapsed = self._monotonic() - started
                if (
                    attempt >= self.config.max_attempts
                    or elapsed >= self.config.max_total_seconds
                    or not is_retryable(exc)
                ):
                    raise
                delay = self.delay_for(attempt)
                self._events.warn(
                    "retry",
                    "attempt_failed_retrying",
                    {
                        "label": label,
                        "attempt": attempt,
                        "max_attempts": self.config.max_attempts,
                        "delay_seconds": delay,
                        "error_type": exc.__class__.__name__,
                        "error": str(exc),
                        "code": getattr(exc, "code", None),
                        "status": getattr(exc, "status", None),
                        **_attempt_context(exc),
                    },
                )
                await self._sleep(delay)


def _attempt_context(exc: BaseException) -> dict[str, Any]:
    details = getattr(exc, "details", None)
    if not isinstance(details, dict):
        return {}
    keys = ("model_id", "request_id", "retry_after_seconds")
    return {key: details[key] for key in keys if key in details}
