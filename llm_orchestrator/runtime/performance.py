from __future__ import annotations

from dataclasses import dataclass

from llm_orchestrator.config import PerformanceConfig
from llm_orchestrator.runtime.bounded_maps import BoundedLruMap
from llm_orchestrator.runtime.clock import Clock, SystemClock


@dataclass(slots=True)
class PerformanceSnapshot:
    model_id: str
    samples: int = 0
    ewma_latency_ms: float | None = None
    ewma_tps: float | None = None
    updated_at: float | None = None


def _ewma(previous: float | None, value: float, alpha: float) -> float:
    if previous is None:
        return value
    return (alpha * value) + ((1.0 - alpha) * previous)


class PerformanceTracker:
    """Observed latency and output throughput per model, smoothed with EWMA."""

    def __init__(
        self,
        config: PerformanceConfig | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or PerformanceConfig()
        self._alpha = max(0.01, min(1.0, self.config.alpha))
        self._clock = clock or SystemClock()
        self._models: BoundedLruMap[str, PerformanceSnapshot] = BoundedLruMap(
            max_keys=self.config.max_models
        )

    def record(
        self,
        model_id: str,
        *,
        latency_ms: float,
        output_tokens: float | None = None,
        now: float | None = None,
    ) -> PerformanceSnapshot:
        ts = self._clock.time() if now is None else now
        state = self._models.get(model_id, touch=True)
        if state is None:
            state = PerformanceSnapshot(model_id=model_id)
            self._models.set(model_id, state)
        latency = max(0.0, float(latency_ms))
        state.samples += 1
        state.ewma_latency_ms = _ewma(state.ewma_latency_ms, latency, self._alpha)
        if output_tokens is not None and output_tokens > 0 and latency > 0:
            tps = float(output_tokens) / (latency / 1000.0)
            state.ewma_tps = _ewma(state.ewma_tps, tps, self._alpha)
        state.updated_at = ts
        return state

    def get(self, model_id: str, now: float | None = None) -> PerformanceSnapshot | None:
        state = self._models.get(model_id)
        if state is None or state.updated_at is None:
            return None
        ts = self._clock.time() if now is None else now
        if ts - state.updated_at > self.config.freshness_seconds:
            return None
        return state
