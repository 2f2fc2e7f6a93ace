from __future__ import annotations

import math
from collections.abc import Iterable, Mapping

from llm_orchestrator.config import ModelEntry
from llm_orchestrator.routing.scoring import Candidate
from llm_orchestrator.runtime.performance import PerformanceTracker
from llm_orchestrator.runtime.rate_limits import RateLimitLedger

_KNOWN_TIERS = {"standard", "flex", "priority"}


def parse_model_spec(spec: str) -> tuple[str, str]:
    """Split ``model[:tier]`` into the upstream model id and its tier."""
    normalized = spec.strip()
    model, sep, tier = normalized.rpartition(":")
    if sep and model and tier.lower() in _KNOWN_TIERS:
        return model, tier.lower()
    return normalized, "standard"


def map_service_tier(tier: str | None) -> str:
    normalized = (tier or "").strip().lower()
    if normalized in {"flex", "priority"}:
        return normalized
    return "default"


class ModelRegistry:
    def __init__(self, entries: Iterable[ModelEntry] = ()) -> None:
        self._entries: dict[str, ModelEntry] = {}
        for entry in entries:
            if entry.enabled:
                self._entries[entry.id] = entry

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._entries

    def get(self, model_id: str) -> ModelEntry | None:
        return self._entries.get(model_id)

    def ids(self) -> list[str]:
        return list(self._entries)

    def resolve(self, model_ids: Iterable[str] | None) -> list[ModelEntry]:
        """Known entries for ``model_ids`` in request order, without duplicates."""
        if model_ids is None:
            return list(self._entries.values())
        seen: set[str] = set()
        resolved = []
        for raw in model_ids:
            model_id = str(raw or "").strip()
            if not model_id or model_id in seen:
                continue
            entry = self._entries.get(model_id)
            if entry is None:
                continue
            seen.add(model_id)
            resolved.append(entry)
        return resolved


class CandidateBuilder:
    def __init__(
        self,
        *,
        registry: ModelRegistry,
        ledger: RateLimitLedger,
        performance: PerformanceTracker | None = None,
    ) -> None:
        self._registry = registry
        self._ledger = ledger
        self._performance = performance

    def build(
        self,
        model_ids: Iterable[str] | None,
        *,
        est_tokens: float,
        pressure: float,
        now: float,
        benchmarks: Mapping[str, float] | None = None,
    ) -> list[Candidate]:
        candidates = []
        for entry in self._registry.resolve(model_ids):
            model, parsed_tier = parse_model_spec(entry.id)
            tier = entry.tier or parsed_tier
            perf = self._performance.get(entry.id, now) if self._performance else None
            latency_ms = math.inf
            throughput = None
            if perf is not None:
                throughput = perf.ewma_tps
                if perf.ewma_latency_ms is not None:
                    latency_ms = perf.ewma_latency_ms
            # Observed latency beats benchmark pings, which beat the static hint.
            if not math.isfinite(latency_ms) and benchmarks and entry.id in benchmarks:
                latency_ms = float(benchmarks[entry.id])
            if not math.isfinite(latency_ms) and entry.latency_hint_ms is not None:
                latency_ms = float(entry.latency_hint_ms)
            candidates.append(
                Candidate(
                    id=entry.id,
                    model=entry.model or model,
                    service_tier=map_service_tier(tier),
                    capability_rank=entry.capability_rank,
                    cost=entry.cost_per_1m if entry.cost_per_1m is not None else math.inf,
                    latency_ms=latency_ms,
                    throughput_tps=throughput,
                    usage_penalty=self._ledger.usage_penalty(entry.id, now),
                    limit_risk_penalty=self._ledger.limit_risk_penalty(
                        entry.id, est_tokens, pressure
                    ),
                    availability=self._ledger.compute_availability(
                        entry.id, est_tokens=est_tokens, now=now
                    ),
                )
            )
        return candidates
