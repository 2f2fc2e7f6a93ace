from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


class SelectionConfig(BaseModel):
    latency_min_ms: float = 80.0
    latency_max_ms: float = 50_000.0
    unknown_cost: float = 1e9
    # Hysteresis constants were tuned empirically; keep them configurable.
    hysteresis_relative_margin: float = 0.08
    hysteresis_absolute_margin: float = 0.25
    hysteresis_risk_slack: float = 1.5
    snapshot_limit: int = 12


class LedgerConfig(BaseModel):
    fairness_window_seconds: float = 60.0
    fairness_step_penalty: float = 0.15
    recent_choice_seconds: float = 1.5
    recent_choice_penalty: float = 1.0
    default_cooldown_seconds: float = 30.0
    min_cooldown_seconds: float = 0.25
    max_cooldown_seconds: float = 900.0
    default_wait_seconds: float = 60.0
    reservation_lease_seconds: float = 120.0
    max_models: int = 512
    state_path: str | None = None


class AdmissionConfig(BaseModel):
    rpm: float | None = None
    tpm: float | None = None
    window_seconds: float = 60.0
    default_backoff_seconds: float = 30.0
    min_low_rpm_fraction: float = 0.15
    min_low_tpm_fraction: float = 0.1
    high_backlog_limit: int = 2
    bench_freeze_seconds: float = 20 * 60.0
    idle_poll_seconds: float = 1.0

    @field_validator("rpm", "tpm")
    @classmethod
    def _positive_or_unlimited(cls, value: float | None) -> float | None:
        if value is None or value <= 0:
            return None
        return float(value)


class RetryConfig(BaseModel):
    max_attempts: int = 2
    max_total_seconds: float = 15.0
    base_delay_seconds: float = 0.8
    max_delay_seconds: float = 3.5
    multiplier: float = 2.0
    jitter_seconds: float = 0.25

    @field_validator("max_attempts")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(1, int(value))


class TransportConfig(BaseModel):
    default_timeout_seconds: float = 120.0
    min_timeout_seconds: float = 3.0
    max_timeout_seconds: float = 180.0
    connect_timeout_seconds: float = 5.0
    read_timeout_seconds: float = 60.0
    terminal_event_types: list[str] = Field(
        default_factory=lambda: ["response.completed"]
    )
    stream_channel_size: int = 1024
    dual_transport_enabled: bool = True
    http2_enabled: bool = True
    max_status_ids: int = 500

    def bounded_timeout(self, value: float | None) -> float:
        if value is None or value <= 0:
            return self.default_timeout_seconds
        return max(self.min_timeout_seconds, min(self.max_timeout_seconds, float(value)))


class ResultCacheConfig(BaseModel):
    ttl_seconds: float = 24 * 60 * 60.0
    path: str | None = None
    cleanup_interval_seconds: float = 20 * 60.0


class ProbeConfig(BaseModel):
    enabled: bool = True
    timeout_seconds: float = 10.0
    models_path: str = "/v1/models"


class PerformanceConfig(BaseModel):
    alpha: float = 0.3
    freshness_seconds: float = 60 * 60.0
    max_models: int = 512


class BenchmarkConfig(BaseModel):
    enabled: bool = True
    # Speed-preferring requests start background runs and a quick prebench.
    auto_run: bool = False
    ttl_seconds: float = 24 * 60 * 60.0
    min_interval_seconds: float = 45 * 60.0
    samples: int = 3
    timeout_seconds: float = 20.0
    quick_sample_timeout_seconds: float = 1.2
    slot_timeout_seconds: float = 60.0
    jitter_min_seconds: float = 0.15
    jitter_max_seconds: float = 0.35
    prompt: str = "Respond with a single '.'"
    max_output_tokens: int = 16
    calibration_prompt: str = "Count from 1 to 40, separated by spaces."
    calibration_max_output_tokens: int = 160
    calibration_slot_timeout_seconds: float = 1.6
    calibration_max_models: int = 2
    max_rate_limit_cooldown_seconds: float = 60.0
    retry: RetryConfig = Field(
        default_factory=lambda: RetryConfig(
            max_attempts=2,
            max_total_seconds=42.0,
            base_delay_seconds=0.2,
            max_delay_seconds=1.2,
            multiplier=1.5,
            jitter_seconds=0.2,
        )
    )
    state_path: str | None = None

    @field_validator("samples")
    @classmethod
    def _at_least_one_sample(cls, value: int) -> int:
        return max(1, int(value))


class ModelEntry(BaseModel):
    id: str
    model: str | None = None
    tier: str | None = None
    capability_rank: float = 0.0
    cost_per_1m: float | None = None
    latency_hint_ms: float | None = None
    enabled: bool = True

    @field_validator("id")
    @classmethod
    def _non_empty_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("model id must not be empty")
        return normalized


class OrchestratorConfig(BaseModel):
    endpoint_path: str = "/v1/responses"
    default_max_output_tokens: int = 512
    selection: SelectionConfig = Field(default_factory=SelectionConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    result_cache: ResultCacheConfig = Field(default_factory=ResultCacheConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    benchmarks: BenchmarkConfig = Field(default_factory=BenchmarkConfig)
    models: list[ModelEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_model_ids(self) -> OrchestratorConfig:
        seen: set[str] = set()
        for entry in self.models:
            if entry.id in seen:
                raise ValueError(f"Duplicate model id '{entry.id}' in models registry.")
            seen.add(entry.id)
        return self

    def model_map(self) -> dict[str, ModelEntry]:
        return {entry.id: entry for entry in self.models if entry.enabled}


def load_yaml_dict(path: str | Path) -> dict[str, Any]:
    resolved = Path(path)
    with resolved.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if not isinstance(payload, dict):
        raise ValueError(f"Expected YAML object in '{resolved}'.")
    return payload


def load_orchestrator_config(path: str | Path | None) -> OrchestratorConfig:
    if path is None:
        return OrchestratorConfig()
    resolved = Path(path)
    if not resolved.exists():
        return OrchestratorConfig()
    return OrchestratorConfig.model_validate(load_yaml_dict(resolved))
