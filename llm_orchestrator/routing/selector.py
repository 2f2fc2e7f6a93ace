from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from llm_orchestrator.config import SelectionConfig
from llm_orchestrator.errors import NoCandidatesError
from llm_orchestrator.routing.scoring import (
    Candidate,
    SelectionPreference,
    policy_label,
    score_candidate,
    score_reason,
)

__all__ = [
    "Decision",
    "ModelSelector",
    "ScoredCandidate",
    "choose_model",
]


@dataclass(frozen=True, slots=True)
class ScoredCandidate:
    candidate: Candidate
    score: float

    def sort_key(self) -> tuple[float, float, float, float, str]:
        candidate = self.candidate
        latency = candidate.latency_ms if math.isfinite(candidate.latency_ms) else math.inf
        cost = candidate.cost if math.isfinite(candidate.cost) else math.inf
        return (-self.score, latency, -candidate.capability_rank, cost, candidate.id)


@dataclass(frozen=True, slots=True)
class Decision:
    chosen_id: str
    model: str
    service_tier: str
    reason: str
    policy: str
    wait_seconds: float = 0.0
    best_id: str | None = None
    candidates_snapshot: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    def as_dict(self) -> dict[str, Any]:
        return {
            "chosen_id": self.chosen_id,
            "model": self.model,
            "service_tier": self.service_tier,
            "reason": self.reason,
            "policy": self.policy,
            "wait_seconds": (
                round(self.wait_seconds, 3) if math.isfinite(self.wait_seconds) else None
            ),
            "best_id": self.best_id,
            "candidates": [dict(item) for item in self.candidates_snapshot],
        }


class ModelSelector:
    def __init__(self, config: SelectionConfig | None = None):
        self.config = config or SelectionConfig()

    def choose(
        self,
        candidates: Sequence[Candidate],
        preference: SelectionPreference | Any = None,
        hint_previous_id: str | None = None,
    ) -> Decision:
        if not candidates:
            raise NoCandidatesError()
        normalized = SelectionPreference.normalize(preference)
        policy = policy_label(normalized)

        available = [item for item in candidates if item.availability.ok]
        if not available:
            chosen = min(
                candidates,
                key=lambda item: (_finite_wait(item.availability.wait_seconds), item.id),
            )
            return Decision(
                chosen_id=chosen.id,
                model=chosen.model or chosen.id,
                service_tier=chosen.service_tier,
                reason="rate_limited_all",
                policy=policy,
                wait_seconds=_finite_wait(chosen.availability.wait_seconds),
                best_id=None,
                candidates_snapshot=self._snapshot(candidates, scores={}),
            )

        scored = self.rank(available, normalized)
        best = scored[0]
        kept = self._pick_by_hysteresis(scored, best, hint_previous_id, normalized)
        chosen_entry = kept or best
        chosen = chosen_entry.candidate
        return Decision(
            chosen_id=chosen.id,
            model=chosen.model or chosen.id,
            service_tier=chosen.service_tier,
            reason="hysteresis_keep_prev" if kept is not None else score_reason(normalized),
            policy=policy,
            wait_seconds=0.0,
            best_id=best.candidate.id,
            candidates_snapshot=self._snapshot(
                candidates,
                scores={entry.candidate.id: entry.score for entry in scored},
            ),
        )

    def rank(
        self,
        candidates: Sequence[Candidate],
        preference: SelectionPreference,
    ) -> list[ScoredCandidate]:
        scored = [
            ScoredCandidate(
                candidate=candidate,
                score=score_candidate(candidate, preference, self.config),
            )
            for candidate in candidates
        ]
        scored.sort(key=ScoredCandidate.sort_key)
        return scored

    def _pick_by_hysteresis(
        self,
        scored: list[ScoredCandidate],
        best: ScoredCandidate,
        hint_previous_id: str | None,
        preference: SelectionPreference,
    ) -> ScoredCandidate | None:
        if not preference.speed or not hint_previous_id:
            return None
        previous = next(
            (entry for entry in scored if entry.candidate.id == hint_previous_id),
            None,
        )
        if previous is None:
            return None

        margin = max(
            abs(best.score) * self.config.hysteresis_relative_margin,
            self.config.hysteresis_absolute_margin,
        )
        near_best = previous.score >= best.score - margin
        risk_close = (
            previous.candidate.limit_risk_penalty
            <= best.candidate.limit_risk_penalty + self.config.hysteresis_risk_slack
        )
        # A measured-throughput winner is only displaced by another measured one.
        throughput_consistent = (
            not best.candidate.has_throughput or previous.candidate.has_throughput
        )
        if near_best and risk_close and throughput_consistent:
            return previous
        return None

    def _snapshot(
        self,
        candidates: Sequence[Candidate],
        *,
        scores: dict[str, float],
    ) -> tuple[dict[str, Any], ...]:
        rows = []
        for item in list(candidates)[: max(0, self.config.snapshot_limit)]:
            score = scores.get(item.id)
            rows.append(
                {
                    "id": item.id,
                    "ok": item.availability.ok,
                    "wait_seconds": _rounded_wait(item.availability.wait_seconds),
                    "reason": item.availability.reason,
                    "tps": round(item.throughput_tps, 2) if item.has_throughput else None,
                    "latency_ms": (
                        round(item.latency_ms) if math.isfinite(item.latency_ms) else None
                    ),
                    "capability_rank": item.capability_rank,
                    "cost": item.cost if math.isfinite(item.cost) else None,
                    "score": round(score, 6) if score is not None else None,
                }
            )
        return tuple(rows)


def choose_model(
    candidates: Sequence[Candidate],
    preference: SelectionPreference | Any = None,
    hint_previous_id: str | None = None,
    *,
    config: SelectionConfig | None = None,
) -> Decision:
    return ModelSelector(config).choose(candidates, preference, hint_previous_id)


def _finite_wait(value: float) -> float:
    if value is None or not math.isfinite(value):
        return math.inf if value is not None and value > 0 else 0.0
    return max(0.0, float(value))


def _rounded_wait(value: float) -> float | None:
    wait = _finite_wait(value)
    return round(wait, 3) if math.isfinite(wait) else None
