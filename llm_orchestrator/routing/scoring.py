from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from math import log
from typing import Any, Literal

from llm_orchestrator.config import SelectionConfig
from llm_orchestrator.utils.numeric_utils import clamp

Preference = Literal["smartest", "cheapest"]
_PREFERENCES = {"smartest", "cheapest"}


@dataclass(frozen=True, slots=True)
class Availability:
    ok: bool
    wait_seconds: float = 0.0
    reason: str = "ok"

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "wait_seconds": round(self.wait_seconds, 3),
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class SelectionPreference:
    speed: bool = True
    preference: Preference | None = None

    @classmethod
    def normalize(cls, raw: Any) -> SelectionPreference:
        if isinstance(raw, SelectionPreference):
            return raw
        if isinstance(raw, Mapping):
            preference = raw.get("preference")
            return cls(
                speed=raw.get("speed") is not False,
                preference=preference if preference in _PREFERENCES else None,
            )
        # Legacy single-string policies predate the speed toggle.
        if raw == "smartest":
            return cls(speed=False, preference="smartest")
        if raw == "cheapest":
            return cls(speed=False, preference="cheapest")
        return cls()

    def as_dict(self) -> dict[str, Any]:
        return {"speed": self.speed, "preference": self.preference}


@dataclass(slots=True)
class Candidate:
    id: str
    model: str = ""
    service_tier: str = "default"
    capability_rank: float = 0.0
    cost: float = math.inf
    latency_ms: float = math.inf
    throughput_tps: float | None = None
    usage_penalty: float = 0.0
    limit_risk_penalty: float = 0.0
    availability: Availability = field(default_factory=lambda: Availability(ok=True))

    @property
    def has_throughput(self) -> bool:
        tps = self.throughput_tps
        return tps is not None and math.isfinite(tps) and tps > 0


def score_candidate(
    candidate: Candidate,
    preference: SelectionPreference,
    config: SelectionConfig | None = None,
) -> float:
    cfg = config or SelectionConfig()
    latency_ms = clamp(candidate.latency_ms, cfg.latency_min_ms, cfg.latency_max_ms)
    cost = _finite_or(candidate.cost, cfg.unknown_cost)
    cost = max(0.0, min(cost, cfg.unknown_cost))

    score = 0.0
    if preference.speed:
        if candidate.has_throughput:
            score += log(1 + float(candidate.throughput_tps or 0.0)) * 12
        else:
            score += -log(1 + latency_ms / 200) * 9
        score -= log(1 + latency_ms / 300) * 2.2

    if preference.preference == "smartest":
        score += _finite_or(candidate.capability_rank, 0.0) / 10
    elif preference.preference == "cheapest":
        score += -log(1 + cost) * 4

    score -= _finite_or(candidate.limit_risk_penalty, 0.0)
    score -= _finite_or(candidate.usage_penalty, 0.0) * 6
    return score


def policy_label(preference: SelectionPreference) -> str:
    if preference.speed and preference.preference:
        return f"speed+{preference.preference}"
    if preference.speed:
        return "speed"
    return preference.preference or "speed"


def score_reason(preference: SelectionPreference) -> str:
    if preference.speed and preference.preference:
        return f"score_speed_{preference.preference}"
    if preference.speed:
        return "score_speed"
    if preference.preference:
        return f"score_{preference.preference}"
    return "score_speed"


def _finite_or(value: float | None, default: float) -> float:
    if value is None or not math.isfinite(value):
        return default
    return float(value)
