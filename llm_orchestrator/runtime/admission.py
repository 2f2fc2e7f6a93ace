from __future__ import annotations

import asyncio
import math
from collections import deque
from dataclasses import dataclass
from typing import Any

from llm_orchestrator.config import AdmissionConfig
from llm_orchestrator.errors import AbortedError
from llm_orchestrator.events import EventLogger
from llm_orchestrator.runtime.cancellation import CancelToken
from llm_orchestrator.runtime.clock import Clock, SystemClock
from llm_orchestrator.utils.numeric_utils import positive_or_none

HIGH_PRIORITY = "high"
BENCH_KIND = "BENCH"
_LIMIT_LOG_INTERVAL_SECONDS = 5.0


@dataclass(slots=True)
class _Reservation:
    kind: str
    est_tokens: float
    est_rpm: float
    priority: str
    future: asyncio.Future[float]
    enqueued_at: float


class AdmissionScheduler:
    """Global admission gate in front of every upstream call.

    Work waits in two FIFO queues (``high`` and everything else) behind an
    optional RPM/TPM token bucket and a shared backoff window raised by any
    caller that observes a 429.
    """

    def __init__(
        self,
        config: AdmissionConfig | None = None,
        *,
        clock: Clock | None = None,
        events: EventLogger | None = None,
    ) -> None:
        self.config = config or AdmissionConfig()
        self._clock = clock or SystemClock()
        self._events = events or EventLogger()
        self._high: deque[_Reservation] = deque()
        self._low: deque[_Reservation] = deque()
        self._backoff_until = 0.0
        self._bench_freeze_until = 0.0
        self._rpm_tokens = self.config.rpm or 0.0
        self._tpm_tokens = self.config.tpm or 0.0
        self._last_refill = self._clock.monotonic()
        self._timer: asyncio.TimerHandle | None = None
        self._last_limit_log_at = -math.inf
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._high) + len(self._low)

    @property
    def backoff_remaining_seconds(self) -> float:
        return max(0.0, self._backoff_until - self._clock.monotonic())

    async def reserve_slot(
        self,
        kind: str,
        *,
        est_tokens: float = 0,
        est_rpm: float = 1,
        priority: str = "normal",
        cancel_token: CancelToken | None = None,
    ) -> float:
        """Wait until the call may proceed; returns the monotonic admit time."""
        if not kind:
            raise ValueError("admission reservation requires a kind")
        if self._closed:
            raise AbortedError("scheduler_closed")
        if cancel_token is not None and cancel_token.cancelled:
            raise AbortedError(cancel_token.reason)

        loop = asyncio.get_running_loop()
        entry = _Reservation(
            kind=kind,
            est_tokens=max(0.0, float(est_tokens or 0)),
            est_rpm=max(1.0, float(est_rpm or 1)),
            priority=HIGH_PRIORITY if priority == HIGH_PRIORITY else "normal",
            future=loop.create_future(),
            enqueued_at=self._clock.monotonic(),
        )
        queue = self._high if entry.priority == HIGH_PRIORITY else self._low
        queue.append(entry)

        remove_callback = None
        if cancel_token is not None:
            remove_callback = cancel_token.add_callback(
                lambda reason: self._abort(entry, reason)
            )
        self._process_queue()
        try:
            return await entry.future
        except asyncio.CancelledError:
            self._discard(entry)
            raise
        finally:
            if remove_callback is not None:
                remove_callback()

    def on_rate_limited(
        self,
        *,
        retry_after_seconds: float | None = None,
        kind: str | None = None,
    ) -> float:
        delay = positive_or_none(retry_after_seconds) or self.config.default_backoff_seconds
        now = self._clock.monotonic()
        self._backoff_until = max(self._backoff_until, now + delay)
        if kind == BENCH_KIND:
            self._bench_freeze_until = max(
                self._bench_freeze_until, now + self.config.bench_freeze_seconds
            )
        self._events.warn(
            "rate-limit",
            "admission_backoff_scheduled",
            {"kind": kind, "status": 429, "retry_after_seconds": delay},
        )
        self._process_queue()
        return self._backoff_until - now

    def availability(self) -> dict[str, Any]:
        self._refill(self._clock.monotonic())
        rpm = self.config.rpm
        tpm = self.config.tpm
        return {
            "rpm_remaining": self._rpm_tokens if rpm else None,
            "tpm_remaining": self._tpm_tokens if tpm else None,
            "rpm_fraction": (self._rpm_tokens / rpm) if rpm else 1.0,
            "tpm_fraction": (self._tpm_tokens / tpm) if tpm else 1.0,
            "backoff_remaining_seconds": round(self.backoff_remaining_seconds, 3),
            "pending_high": len(self._high),
            "pending_low": len(self._low),
        }

    def close(self) -> None:
        self._closed = True
        self._clear_timer()
        pending = [*self._high, *self._low]
        self._high.clear()
        self._low.clear()
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(AbortedError("scheduler_closed"))

    def _abort(self, entry: _Reservation, reason: str) -> None:
        self._discard(entry)
        if not entry.future.done():
            entry.future.set_exception(AbortedError(reason))
        self._process_queue()

    def _discard(self, entry: _Reservation) -> None:
        for queue in (self._high, self._low):
            try:
                queue.remove(entry)
            except ValueError:
                continue

    def _process_queue(self) -> None:
        self._clear_timer()
        if self._closed:
            return
        now = self._clock.monotonic()
        if now < self._backoff_until:
            self._schedule(self._backoff_until - now)
            return

        while self._high:
            entry = self._high[0]
            if entry.future.done():
                self._high.popleft()
                continue
            allowed, wait_seconds = self._try_consume(entry, now)
            if not allowed:
                self._log_limit(entry, wait_seconds)
                self._schedule(wait_seconds)
                return
            self._high.popleft()
            entry.future.set_result(now)

        while self._low:
            entry = self._low[0]
            if entry.future.done():
                self._low.popleft()
                continue
            if now < self._bench_freeze_until or not self._can_run_low(now):
                self._schedule(self.config.idle_poll_seconds)
                return
            allowed, wait_seconds = self._try_consume(entry, now)
            if not allowed:
                self._log_limit(entry, wait_seconds)
                self._schedule(wait_seconds)
                return
            self._low.popleft()
            entry.future.set_result(now)

    def _can_run_low(self, now: float) -> bool:
        if len(self._high) > self.config.high_backlog_limit:
            return False
        self._refill(now)
        rpm = self.config.rpm
        tpm = self.config.tpm
        if rpm and self._rpm_tokens / rpm < self.config.min_low_rpm_fraction:
            return False
        if tpm and self._tpm_tokens / tpm < self.config.min_low_tpm_fraction:
            return False
        return True

    def _try_consume(self, entry: _Reservation, now: float) -> tuple[bool, float]:
        self._refill(now)
        rpm = self.config.rpm
        tpm = self.config.tpm
        # A single request larger than the whole bucket is admitted at full capacity.
        need_requests = min(entry.est_rpm, rpm) if rpm else 0.0
        need_tokens = min(entry.est_tokens, tpm) if tpm else 0.0
        if self._rpm_tokens >= need_requests and self._tpm_tokens >= need_tokens:
            if rpm:
                self._rpm_tokens -= need_requests
            if tpm:
                self._tpm_tokens -= need_tokens
            return True, 0.0

        window = self.config.window_seconds
        rpm_wait = (
            (need_requests - self._rpm_tokens) / rpm * window
            if rpm and need_requests > self._rpm_tokens
            else 0.0
        )
        tpm_wait = (
            (need_tokens - self._tpm_tokens) / tpm * window
            if tpm and need_tokens > self._tpm_tokens
            else 0.0
        )
        return False, max(rpm_wait, tpm_wait, 0.001)

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last_refill)
        self._last_refill = now
        if not elapsed:
            return
        window = max(0.001, self.config.window_seconds)
        if self.config.rpm:
            self._rpm_tokens = min(
                self.config.rpm, self._rpm_tokens + elapsed / window * self.config.rpm
            )
        if self.config.tpm:
            self._tpm_tokens = min(
                self.config.tpm, self._tpm_tokens + elapsed / window * self.config.tpm
            )

    def _schedule(self, delay_seconds: float) -> None:
        self._clear_timer()
        if not self._high and not self._low:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.call_later(max(0.0, delay_seconds), self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._process_queue()

    def _clear_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _log_limit(self, entry: _Reservation, wait_seconds: float) -> None:
        now = self._clock.monotonic()
        if now - self._last_limit_log_at < _LIMIT_LOG_INTERVAL_SECONDS:
            return
        self._last_limit_log_at = now
        self._events.warn(
            "rate-limit",
            "admission_budget_unavailable",
            {
                "kind": entry.kind,
                "priority": entry.priority,
                "wait_seconds": round(wait_seconds, 3),
            },
        )
