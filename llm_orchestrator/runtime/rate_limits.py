from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from llm_orchestrator.config import LedgerConfig
from llm_orchestrator.routing.scoring import Availability
from llm_orchestrator.runtime.bounded_maps import BoundedLruMap
from llm_orchestrator.runtime.clock import Clock, SystemClock
from llm_orchestrator.utils.durations import parse_duration_seconds
from llm_orchestrator.utils.numeric_utils import coerce_optional_float, positive_or_none
from llm_orchestrator.utils.persistence import StateFile

_NUMERIC_HEADERS = {
    "x-ratelimit-limit-requests": "limit_requests",
    "x-ratelimit-limit-tokens": "limit_tokens",
    "x-ratelimit-remaining-requests": "remaining_requests",
    "x-ratelimit-remaining-tokens": "remaining_tokens",
}
_RESET_HEADERS = {
    "x-ratelimit-reset-requests": "reset_requests_at",
    "x-ratelimit-reset-tokens": "reset_tokens_at",
}
MAX_BATCH_PRESSURE = 12
MIN_LEASE_SECONDS = 10.0
MAX_LEASE_SECONDS = 180.0


@dataclass(slots=True)
class RateLimitSnapshot:
    remaining_requests: float | None = None
    remaining_tokens: float | None = None
    limit_requests: float | None = None
    limit_tokens: float | None = None
    reset_requests_at: float | None = None
    reset_tokens_at: float | None = None
    cooldown_until: float | None = None
    last_chosen_at: float | None = None
    chosen_window_start: float | None = None
    chosen_window_count: int = 0
    updated_at: float | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> RateLimitSnapshot:
        snapshot = cls()
        for item in fields(cls):
            if item.name not in raw:
                continue
            if item.name == "chosen_window_count":
                snapshot.chosen_window_count = int(coerce_optional_float(raw[item.name]) or 0)
                continue
            setattr(snapshot, item.name, coerce_optional_float(raw[item.name]))
        return snapshot


@dataclass(slots=True)
class BudgetReservation:
    tokens: float
    requests: int
    lease_until: float


def pressure_tokens(est_tokens: float, batch_size: float | None) -> float:
    batch = coerce_optional_float(batch_size)
    bounded = max(1, min(MAX_BATCH_PRESSURE, round(batch if batch is not None else 1)))
    return max(0.0, float(est_tokens)) * bounded


class RateLimitLedger:
    """Per-model view of upstream rate-limit budget, cooldowns and fairness."""

    def __init__(
        self,
        config: LedgerConfig | None = None,
        *,
        clock: Clock | None = None,
        state_path: str | Path | None = None,
    ) -> None:
        self.config = config or LedgerConfig()
        self._clock = clock or SystemClock()
        self._snapshots: BoundedLruMap[str, RateLimitSnapshot] = BoundedLruMap(
            max_keys=self.config.max_models
        )
        path = state_path if state_path is not None else self.config.state_path
        self._state_file = StateFile(path) if path else None
        self._reservations: dict[str, dict[str, BudgetReservation]] = {}

    def get(self, model_id: str) -> RateLimitSnapshot | None:
        return self._snapshots.get(model_id)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {key: value.as_dict() for key, value in self._snapshots.items()}

    def upsert_from_headers(
        self,
        model_id: str,
        headers: Mapping[str, str] | None,
        received_at: float | None = None,
    ) -> RateLimitSnapshot:
        now = self._now(received_at)
        snapshot = self._ensure(model_id)
        lowered = {str(key).lower(): value for key, value in (headers or {}).items()}
        for header, attr in _NUMERIC_HEADERS.items():
            value = coerce_optional_float(lowered.get(header))
            if value is not None:
                setattr(snapshot, attr, value)
        for header, attr in _RESET_HEADERS.items():
            duration = parse_duration_seconds(lowered.get(header))
            if duration is not None:
                setattr(snapshot, attr, now + duration)
        snapshot.updated_at = now
        return snapshot

    def apply_cooldown(
        self,
        model_id: str,
        *,
        now: float | None = None,
        retry_after_seconds: float | None = None,
    ) -> float:
        ts = self._now(now)
        delay = positive_or_none(retry_after_seconds)
        if delay is None:
            delay = self.config.default_cooldown_seconds
        delay = max(self.config.min_cooldown_seconds, min(self.config.max_cooldown_seconds, delay))
        snapshot = self._ensure(model_id)
        snapshot.cooldown_until = ts + delay
        return snapshot.cooldown_until

    def mark_chosen(self, model_id: str, now: float | None = None) -> None:
        ts = self._now(now)
        snapshot = self._ensure(model_id)
        window_start = snapshot.chosen_window_start
        if window_start is None or ts - window_start > self.config.fairness_window_seconds:
            snapshot.chosen_window_start = ts
            snapshot.chosen_window_count = 1
        else:
            snapshot.chosen_window_count += 1
        snapshot.last_chosen_at = ts

    def usage_penalty(self, model_id: str, now: float | None = None) -> float:
        snapshot = self._snapshots.get(model_id)
        if snapshot is None:
            return 0.0
        ts = self._now(now)
        penalty = 0.0
        window_start = snapshot.chosen_window_start
        if window_start is not None and ts - window_start <= self.config.fairness_window_seconds:
            penalty += snapshot.chosen_window_count * self.config.fairness_step_penalty
        last = snapshot.last_chosen_at
        if last is not None and ts - last < self.config.recent_choice_seconds:
            penalty += self.config.recent_choice_penalty
        return penalty

    def limit_risk_penalty(
        self,
        model_id: str,
        est_tokens: float,
        pressure: float | None = None,
    ) -> float:
        snapshot = self._snapshots.get(model_id)
        if snapshot is None:
            return 0.0
        pressure_value = float(pressure) if pressure is not None else float(est_tokens)
        penalty = 0.0
        if snapshot.remaining_requests is not None and snapshot.remaining_requests < 3:
            penalty += 2.0
        remaining = snapshot.remaining_tokens
        if remaining is not None:
            if remaining < pressure_value * 1.2:
                penalty += 3.5
            elif remaining < pressure_value * 2.0:
                penalty += 1.8
            elif remaining < est_tokens * 1.2:
                penalty += 3.0
        return penalty

    def reserve(
        self,
        model_id: str,
        reservation_id: str,
        *,
        tokens: float = 0,
        requests: int = 1,
        lease_seconds: float | None = None,
        now: float | None = None,
    ) -> BudgetReservation:
        """Hold budget for an in-flight call until ``release`` or the lease expires."""
        ts = self._now(now)
        lease = self.config.reservation_lease_seconds
        if lease_seconds is not None:
            lease = lease_seconds
        reservation = BudgetReservation(
            tokens=max(0.0, float(tokens or 0)),
            requests=max(1, int(requests)),
            lease_until=ts + max(MIN_LEASE_SECONDS, min(MAX_LEASE_SECONDS, float(lease))),
        )
        held = self._live_reservations(model_id, ts)
        held[reservation_id] = reservation
        self._reservations[model_id] = held
        return reservation

    def release(self, model_id: str, reservation_id: str) -> bool:
        held = self._reservations.get(model_id)
        if not held or held.pop(reservation_id, None) is None:
            return False
        if not held:
            self._reservations.pop(model_id, None)
        return True

    def reserved(self, model_id: str, now: float | None = None) -> tuple[float, int]:
        """Tokens and requests held by unexpired reservations for ``model_id``."""
        held = self._live_reservations(model_id, self._now(now))
        return (
            sum(item.tokens for item in held.values()),
            sum(item.requests for item in held.values()),
        )

    def compute_availability(
        self,
        model_id: str,
        *,
        est_tokens: float = 0,
        now: float | None = None,
    ) -> Availability:
        snapshot = self._snapshots.get(model_id)
        if snapshot is None:
            return Availability(ok=True, wait_seconds=0.0, reason="unknown_limits")
        ts = self._now(now)

        if snapshot.cooldown_until is not None and ts < snapshot.cooldown_until:
            return Availability(
                ok=False,
                wait_seconds=snapshot.cooldown_until - ts,
                reason="cooldown",
            )

        reserved_tokens, reserved_requests = self.reserved(model_id, ts)
        remaining_requests = _live_value(
            snapshot.remaining_requests, snapshot.reset_requests_at, ts
        )
        if remaining_requests is not None:
            remaining_requests -= reserved_requests
        if remaining_requests is not None and remaining_requests <= 0:
            return Availability(
                ok=False,
                wait_seconds=self._wait_until(ts, snapshot.reset_requests_at),
                reason="no_requests",
            )

        remaining_tokens = _live_value(snapshot.remaining_tokens, snapshot.reset_tokens_at, ts)
        if remaining_tokens is not None:
            remaining_tokens -= reserved_tokens
        need = max(0.0, float(est_tokens or 0))
        if remaining_tokens is not None and need > 0 and remaining_tokens < need:
            return Availability(
                ok=False,
                wait_seconds=self._wait_until(ts, snapshot.reset_tokens_at),
                reason="no_tokens",
            )

        if snapshot.remaining_requests is None and snapshot.remaining_tokens is None:
            return Availability(ok=True, wait_seconds=0.0, reason="unknown_limits")
        return Availability(ok=True, wait_seconds=0.0, reason="ok")

    def save(self) -> None:
        if self._state_file is None:
            return
        self._state_file.write({"models": self.snapshot()})

    def load(self) -> int:
        if self._state_file is None or not self._state_file.exists():
            return 0
        payload = self._state_file.load()
        models = payload.get("models")
        if not isinstance(models, dict):
            return 0
        loaded = 0
        for model_id, raw in models.items():
            if not isinstance(raw, Mapping):
                continue
            self._snapshots.set(str(model_id), RateLimitSnapshot.from_dict(raw))
            loaded += 1
        return loaded

    def _ensure(self, model_id: str) -> RateLimitSnapshot:
        snapshot = self._snapshots.get(model_id, touch=True)
        if snapshot is None:
            snapshot = RateLimitSnapshot()
            self._snapshots.set(model_id, snapshot)
        return snapshot

    def _live_reservations(self, model_id: str, now: float) -> dict[str, BudgetReservation]:
        held = self._reservations.get(model_id)
        if not held:
            return {}
        expired = [key for key, item in held.items() if item.lease_until <= now]
        for key in expired:
            held.pop(key, None)
        if not held:
            self._reservations.pop(model_id, None)
        return held

    def _wait_until(self, now: float, reset_at: float | None) -> float:
        if reset_at is None:
            return self.config.default_wait_seconds
        return max(0.0, reset_at - now)

    def _now(self, value: float | None) -> float:
        return self._clock.time() if value is None else float(value)


def _live_value(value: float | None, reset_at: float | None, now: float) -> float | None:
    # Once the reset instant has passed the provider has replenished the budget.
    if value is None:
        return None
    if reset_at is not None and now >= reset_at:
        return None
    return value
