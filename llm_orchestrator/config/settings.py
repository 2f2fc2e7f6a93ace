from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    backend_base_url: str = "https://api.openai.com"
    backend_api_key: str | None = None
    orchestrator_config_path: str = "orchestrator.yaml"
    event_log_enabled: bool = False
    event_log_path: str = "logs/orchestrator_events.jsonl"
    result_cache_path: str | None = None
    ledger_state_path: str | None = None
    benchmark_state_path: str | None = None
    redis_url: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def auth_header(self) -> str | None:
        if not self.backend_api_key:
            return None
        return f"Bearer {self.backend_api_key}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
