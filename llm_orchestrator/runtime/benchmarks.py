from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from llm_orchestrator.config import BenchmarkConfig
from llm_orchestrator.runtime.bounded_maps import BoundedLruMap
from llm_orchestrator.runtime.clock import Clock, SystemClock
from llm_orchestrator.utils.numeric_utils import coerce_optional_float
from llm_orchestrator.utils.persistence import StateFile

MAX_BENCHMARKED_MODELS = 512


@dataclass(slots=True)
class BenchmarkEntry:
    median_ms: float | None = None
    p90_ms: float | None = None
    samples: int = 0
    updated_at: float | None = None
    last_attempt_at: float | None = None
    last_error: dict[str, Any] | None = None
    quick: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> BenchmarkEntry:
        last_error = raw.get("last_error")
        return cls(
            median_ms=coerce_optional_float(raw.get("median_ms")),
            p90_ms=coerce_optional_float(raw.get("p90_ms")),
            samples=int(coerce_optional_float(raw.get("samples")) or 0),
            updated_at=coerce_optional_float(raw.get("updated_at")),
            last_attempt_at=coerce_optional_float(raw.get("last_attempt_at")),
            last_error=dict(last_error) if isinstance(last_error, Mapping) else None,
            quick=bool(raw.get("quick", False)),
        )


def median_ms(samples: Iterable[float]) -> float | None:
    ordered = sorted(samples)
    if not ordered:
        return None
    middle = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return float(round((ordered[middle - 1] + ordered[middle]) / 2))
    return float(round(ordered[middle]))


def percentile_ms(samples: Iterable[float], percentile: float) -> float | None:
    ordered = sorted(samples)
    if not ordered:
        return None
    rank = max(0, math.ceil(percentile * len(ordered)) - 1)
    return float(round(ordered[min(rank, len(ordered) - 1)]))


class BenchmarkStore:
    """Latency benchmark results per model plus the status of the last run.

    Entries older than ``ttl_seconds`` are kept for diagnostics but no longer
    feed selection; ``min_interval_seconds`` spaces out attempts on one model.
    """

    def __init__(
        self,
        config: BenchmarkConfig | None = None,
        *,
        clock: Clock | None = None,
        state_path: str | Path | None = None,
    ) -> None:
        self.config = config or BenchmarkConfig()
        self._clock = clock or SystemClock()
        self._entries: BoundedLruMap[str, BenchmarkEntry] = BoundedLruMap(
            max_keys=MAX_BENCHMARKED_MODELS
        )
        self._status: dict[str, Any] | None = None
        path = state_path if state_path is not None else self.config.state_path
        self._state_file = StateFile(path) if path else None

    def get_entry(self, model_id: str) -> BenchmarkEntry | None:
        return self._entries.get(model_id)

    def get(self, model_id: str, now: float | None = None) -> BenchmarkEntry | None:
        entry = self._entries.get(model_id)
        return entry if self.is_fresh(entry, now) else None

    def upsert(self, model_id: str, **patch: Any) -> BenchmarkEntry:
        entry = self._entries.get(model_id, touch=True)
        if entry is None:
            entry = BenchmarkEntry()
            self._entries.set(model_id, entry)
        for key, value in patch.items():
            setattr(entry, key, value)
        return entry

    def is_fresh(self, entry: BenchmarkEntry | None, now: float | None = None) -> bool:
        # A failed run leaves no median; it is retried once the attempt interval passes.
        if entry is None or entry.updated_at is None or entry.median_ms is None:
            return False
        return self._now(now) - entry.updated_at <= self.config.ttl_seconds

    def can_attempt(self, entry: BenchmarkEntry | None, now: float | None = None) -> bool:
        if entry is None or entry.last_attempt_at is None:
            return True
        return self._now(now) - entry.last_attempt_at >= self.config.min_interval_seconds

    def latencies(self, now: float | None = None) -> dict[str, float]:
        """Fresh median latency (ms) per model, the shape candidate assembly expects."""
        ts = self._now(now)
        return {
            model_id: entry.median_ms
            for model_id, entry in self._entries.items()
            if entry.median_ms is not None and self.is_fresh(entry, ts)
        }

    @property
    def status(self) -> dict[str, Any] | None:
        return dict(self._status) if self._status is not None else None

    def set_status(self, status: Mapping[str, Any] | None) -> None:
        self._status = dict(status) if status is not None else None

    def snapshot(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "models": {key: value.as_dict() for key, value in self._entries.items()},
        }

    def save(self) -> None:
        if self._state_file is None:
            return
        self._state_file.write({"models": self.snapshot()["models"]})

    def load(self) -> int:
        if self._state_file is None or not self._state_file.exists():
            return 0
        models = self._state_file.load().get("models")
        if not isinstance(models, dict):
            return 0
        loaded = 0
        for model_id, raw in models.items():
            if not isinstance(raw, Mapping):
                continue
            self._entries.set(str(model_id), BenchmarkEntry.from_dict(raw))
            loaded += 1
        return loaded

    def _now(self, value: float | None) -> float:
        return self._clock.time() if value is None else float(value)
