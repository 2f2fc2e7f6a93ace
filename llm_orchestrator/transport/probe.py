from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any
from urllib.parse import urlsplit

import httpx

from llm_orchestrator.config import ProbeConfig

DEFAULT_ORIGIN = "https://api.openai.com"
_MAX_ERROR_MESSAGE = 220


@dataclass(slots=True)
class ProbeStep:
    name: str
    ok: bool
    status: int | None = None
    error_type: str | None = None
    error_message: str | None = None
    elapsed_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ProbeReport:
    steps: list[ProbeStep] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return any(step.ok for step in self.steps)

    @property
    def classification(self) -> str:
        return classify(self.steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "classification": self.classification,
            "steps": [step.to_dict() for step in self.steps],
        }


def normalize_origin(base_url: str | None) -> str:
    raw = (base_url or "").strip()
    if not raw:
        return DEFAULT_ORIGIN
    parts = urlsplit(raw)
    if not parts.scheme or not parts.netloc:
        return DEFAULT_ORIGIN
    return f"{parts.scheme}://{parts.netloc}".rstrip("/")


def classify(steps: list[ProbeStep]) -> str:
    """Name the most likely failure domain from the probe outcome."""
    by_name = {step.name: step for step in steps}
    if not any(step.ok for step in steps):
        return "connectivity"
    if any(step.status is not None and step.status >= 500 for step in steps):
        return "server"
    with_auth = by_name.get("get.models.with_auth")
    unauthenticated_ok = any(
        step.ok for name, step in by_name.items() if name != "get.models.with_auth"
    )
    if (
        with_auth is not None
        and with_auth.status in {401, 403}
        and unauthenticated_ok
    ):
        return "auth"
    return "reachable"


def _sanitize_error_message(message: str) -> str:
    text = message.strip()
    if not text:
        return "request failed"
    return text[:_MAX_ERROR_MESSAGE]


class NetworkProbe:
    """Three-step reachability check run after a pre-response network failure.

    Header values are sent but never recorded in the report.
    """

    def __init__(
        self,
        config: ProbeConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or ProbeConfig()
        self._client = client

    async def run(self, base_url: str | None, auth_header: str | None = None) -> ProbeReport:
        origin = normalize_origin(base_url)
        models_url = f"{origin}{self.config.models_path}"
        auth_headers = {}
        if auth_header and auth_header.strip():
            auth_headers["Authorization"] = auth_header.strip()
        client = self._client or httpx.AsyncClient(timeout=self.config.timeout_seconds)
        try:
            report = ProbeReport()
            report.steps.append(await self._run_step(client, "head.base", "HEAD", origin))
            report.steps.append(
                await self._run_step(client, "get.models.no_auth", "GET", models_url)
            )
            report.steps.append(
                await self._run_step(
                    client,
                    "get.models.with_auth",
                    "GET",
                    models_url,
                    headers=auth_headers,
                )
            )
            return report
        finally:
            if self._client is None:
                await client.aclose()

    async def _run_step(
        self,
        client: httpx.AsyncClient,
        name: str,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
    ) -> ProbeStep:
        started = time.perf_counter()
        try:
            response = await client.request(
                method,
                url,
                headers=headers or {},
                timeout=self.config.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            return ProbeStep(
                name=name,
                ok=False,
                error_type=exc.__class__.__name__[:80],
                error_message=_sanitize_error_message(str(exc) or repr(exc)),
                elapsed_ms=_elapsed_ms(started),
            )
        return ProbeStep(
            name=name,
            ok=True,
            status=response.status_code,
            elapsed_ms=_elapsed_ms(started),
        )


def _elapsed_ms(started: float) -> int:
    return max(0, round((time.perf_counter() - started) * 1000.0))
