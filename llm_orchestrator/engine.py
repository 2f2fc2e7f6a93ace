from __future__ import annotations

import json
import math
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from llm_orchestrator.config import OrchestratorConfig
from llm_orchestrator.errors import (
    AbortedError,
    BadRequestIdError,
    NetworkFailureError,
    NoCandidatesError,
    OrchestratorError,
    RequestTimeoutError,
    UpstreamError,
)
from llm_orchestrator.events import EventLogger
from llm_orchestrator.routing.registry import (
    CandidateBuilder,
    ModelRegistry,
    map_service_tier,
    parse_model_spec,
)
from llm_orchestrator.routing.scoring import SelectionPreference, policy_label
from llm_orchestrator.routing.selector import Decision, ModelSelector
from llm_orchestrator.runtime.admission import AdmissionScheduler
from llm_orchestrator.runtime.benchmarks import BenchmarkStore
from llm_orchestrator.runtime.cancellation import CancelToken
from llm_orchestrator.runtime.clock import Clock, SystemClock
from llm_orchestrator.runtime.credentials import CredentialsProvider, join_url
from llm_orchestrator.runtime.performance import PerformanceTracker
from llm_orchestrator.runtime.rate_limits import RateLimitLedger, pressure_tokens
from llm_orchestrator.runtime.retry import RetryExecutor
from llm_orchestrator.transport.host import RequestDescriptor, TransportHost, TransportResult
from llm_orchestrator.utils.durations import parse_retry_after_seconds
from llm_orchestrator.utils.numeric_utils import coerce_optional_float

if TYPE_CHECKING:
    from llm_orchestrator.benchmarker import ModelBenchmarker

REQUEST_KIND = "LLM_REQUEST"
DEFAULT_MAX_OUTPUT_TOKENS = 512


@dataclass(slots=True)
class RequestParams:
    input: Any
    models: Sequence[str] | None = None
    preference: Any = None
    hint_previous_id: str | None = None
    max_output_tokens: int | None = None
    temperature: float | None = None
    batch_size: int | None = None
    priority: str = "high"
    cancel_token: CancelToken | None = None
    stream: bool = False
    timeout_seconds: float | None = None
    request_id: str | None = None
    job_id: str | None = None
    block_id: str | None = None
    task_type: str = "unknown"
    extra_body: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class EngineResponse:
    response: TransportResult
    decision: Decision

    @property
    def json(self) -> Any:
        return self.response.json

    def to_dict(self) -> dict[str, Any]:
        return {"response": self.response.to_dict(), "decision": self.decision.as_dict()}


def estimate_tokens(input_value: Any, max_output_tokens: int | None = None) -> int:
    if isinstance(input_value, str):
        prompt_length = len(input_value)
    else:
        try:
            prompt_length = len(json.dumps(input_value if input_value is not None else ""))
        except (TypeError, ValueError):
            prompt_length = 0
    max_output = (
        max_output_tokens
        if isinstance(max_output_tokens, int) and not isinstance(max_output_tokens, bool)
        else DEFAULT_MAX_OUTPUT_TOKENS
    )
    return math.ceil(prompt_length / 4) + max_output


def build_request_id(params: RequestParams, attempt: int, *, job_fallback: str) -> str:
    """Identity of one attempt: ``job:block:attempt:task``.

    Replaying the same attempt is idempotent while a retry gets a fresh id.
    """
    if params.request_id:
        if attempt <= 1:
            return params.request_id
        return f"{params.request_id}:retry{attempt}"
    job = params.job_id or job_fallback
    block = params.block_id or "block0"
    task = params.task_type or "unknown"
    return f"{job}:{block}:{attempt}:{task}"


class RequestBuilder:
    """Turns a decision into a Responses-style upstream request."""

    def __init__(
        self,
        credentials: CredentialsProvider,
        *,
        endpoint_path: str = "/v1/responses",
    ) -> None:
        self._credentials = credentials
        self._endpoint_path = endpoint_path

    async def build(
        self,
        *,
        request_id: str,
        decision: Decision,
        params: RequestParams,
        max_output_tokens: int,
        meta: Mapping[str, Any],
    ) -> RequestDescriptor:
        body: dict[str, Any] = {
            "model": decision.model,
            "input": params.input,
            "max_output_tokens": max_output_tokens,
        }
        if params.temperature is not None:
            body["temperature"] = params.temperature
        if decision.service_tier != "default":
            body["service_tier"] = decision.service_tier
        if params.stream:
            body["stream"] = True
        body.update(params.extra_body)

        headers = {"Content-Type": "application/json"}
        if params.stream:
            headers["Accept"] = "text/event-stream"
        auth_header = await self._credentials.auth_header()
        if auth_header:
            headers["Authorization"] = auth_header
        return RequestDescriptor(
            request_id=request_id,
            url=join_url(await self._credentials.base_url(), self._endpoint_path),
            body=body,
            headers=headers,
            stream=params.stream,
            timeout_seconds=params.timeout_seconds,
            meta=dict(meta),
        )


def error_from_result(result: TransportResult) -> OrchestratorError:
    """Map a failed transport outcome onto the error taxonomy."""
    error = result.error
    code = error.code if error is not None else None
    debug = (error.debug if error is not None else None) or {}
    if code == "ABORTED":
        return AbortedError(debug.get("reason"))
    if code == "TIMEOUT":
        return RequestTimeoutError(
            timeout_seconds=coerce_optional_float(debug.get("timeout_seconds"))
        )
    if code == "FETCH_FAILED":
        return NetworkFailureError(
            error.message if error is not None else "fetch failed",
            diagnostics=debug,
        )
    if code == "BAD_REQUEST_ID":
        return BadRequestIdError(error.message if error is not None else "requestId is required")
    return UpstreamError(
        status=result.status,
        message=_upstream_message(result),
        retry_after_seconds=parse_retry_after_seconds(result.headers),
        body=result.json if result.json is not None else result.text,
    )


def _upstream_message(result: TransportResult) -> str | None:
    payload = result.json
    if isinstance(payload, Mapping):
        error = payload.get("error")
        if isinstance(error, Mapping) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return None


def usage_output_tokens(payload: Any) -> float | None:
    if not isinstance(payload, Mapping):
        return None
    usage = payload.get("usage")
    if not isinstance(usage, Mapping):
        return None
    return coerce_optional_float(usage.get("output_tokens"))


class RequestEngine:
    """Admission, selection, transport and ledger feedback for one call."""

    def __init__(
        self,
        *,
        config: OrchestratorConfig,
        registry: ModelRegistry,
        ledger: RateLimitLedger,
        scheduler: AdmissionScheduler,
        transport: TransportHost,
        builder: RequestBuilder,
        performance: PerformanceTracker | None = None,
        retry: RetryExecutor | None = None,
        selector: ModelSelector | None = None,
        benchmarks: BenchmarkStore | None = None,
        clock: Clock | None = None,
        events: EventLogger | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.ledger = ledger
        self.scheduler = scheduler
        self.transport = transport
        self.performance = performance
        self.benchmarks = benchmarks
        # Attached by the context once built; it needs the engine itself.
        self.benchmarker: ModelBenchmarker | None = None
        self.builder = builder
        self._clock = clock or SystemClock()
        self._events = events or EventLogger()
        self._retry = retry or RetryExecutor(config.retry, events=self._events)
        self._selector = selector or ModelSelector(config.selection)
        self._candidates = CandidateBuilder(
            registry=registry,
            ledger=ledger,
            performance=performance,
        )

    def estimate_tokens(self, input_value: Any, max_output_tokens: int | None = None) -> int:
        if max_output_tokens is None:
            max_output_tokens = self.config.default_max_output_tokens
        return estimate_tokens(input_value, max_output_tokens)

    def choose(
        self,
        models: Sequence[str] | None = None,
        preference: Any = None,
        hint_previous_id: str | None = None,
        *,
        est_tokens: float = 0,
        pressure: float | None = None,
        now: float | None = None,
    ) -> Decision:
        ts = self._clock.time() if now is None else now
        requested = list(models) if models is not None else None
        candidates = self._candidates.build(
            requested,
            est_tokens=est_tokens,
            pressure=pressure if pressure is not None else est_tokens,
            now=ts,
            benchmarks=self.benchmarks.latencies(ts) if self.benchmarks is not None else None,
        )
        if not candidates:
            raise NoCandidatesError(requested)
        normalized = SelectionPreference.normalize(preference)
        decision = self._selector.choose(candidates, normalized, hint_previous_id)
        self.ledger.mark_chosen(decision.chosen_id, ts)
        self._events.info(
            "ai.choose",
            "model_selected",
            {
                "chosen": decision.chosen_id,
                "best": decision.best_id,
                "kept_previous": decision.reason == "hysteresis_keep_prev",
                "reason": decision.reason,
                "policy": decision.policy,
                "wait_seconds": decision.wait_seconds,
            },
        )
        return decision

    def pinned_decision(
        self,
        model_id: str,
        *,
        reason: str,
        preference: Any = None,
    ) -> Decision:
        """Decision for a model fixed in advance rather than chosen by score."""
        model, tier = parse_model_spec(model_id)
        entry = self.registry.get(model_id)
        if entry is not None:
            model = entry.model or model
            tier = entry.tier or tier
        return Decision(
            chosen_id=model_id,
            model=model,
            service_tier=map_service_tier(tier),
            reason=reason,
            policy=policy_label(SelectionPreference.normalize(preference)),
        )

    async def request(self, params: RequestParams) -> EngineResponse:
        token = params.cancel_token
        if token is not None and token.cancelled:
            raise AbortedError(token.reason)
        max_output = (
            params.max_output_tokens
            if params.max_output_tokens is not None
            else self.config.default_max_output_tokens
        )
        est = estimate_tokens(params.input, max_output)
        pressure = pressure_tokens(est, params.batch_size)
        job_fallback = f"job-{uuid.uuid4().hex[:12]}"
        started = self._clock.monotonic()
        await self._warm_benchmarks(params)

        async def attempt(number: int) -> EngineResponse:
            request_id = build_request_id(params, number, job_fallback=job_fallback)
            stored = await self.transport.lookup(request_id)
            if stored is not None:
                return self._replay(stored, params.preference)
            await self.scheduler.reserve_slot(
                REQUEST_KIND,
                est_tokens=est,
                est_rpm=1,
                priority=params.priority,
                cancel_token=token,
            )
            decision = self.choose(
                params.models,
                params.preference,
                params.hint_previous_id,
                est_tokens=est,
                pressure=pressure,
            )
            descriptor = await self.builder.build(
                request_id=request_id,
                decision=decision,
                params=params,
                max_output_tokens=max_output,
                meta={
                    "task_type": params.task_type,
                    "attempt": number,
                    "job_id": params.job_id,
                    "block_id": params.block_id,
                    "est_tokens": est,
                    "model_id": decision.chosen_id,
                },
            )
            self.ledger.reserve(decision.chosen_id, request_id, tokens=est)
            try:
                result = await self._execute(descriptor, token)
            finally:
                self.ledger.release(decision.chosen_id, request_id)
            # Joined another caller's call for this id; that call owns the feedback.
            if result.meta.replayed:
                return self._replay(result, params.preference)
            self._observe(decision, result)
            if result.ok:
                return EngineResponse(response=result, decision=decision)

            exc = error_from_result(result)
            if isinstance(exc, UpstreamError) and exc.status == 429:
                self._on_rate_limited(decision, exc)
            exc.details.update(model_id=decision.chosen_id, request_id=request_id)
            raise exc

        try:
            outcome = await self._retry.run(attempt, label=params.task_type)
        except Exception as exc:
            self._events.error(
                "ai.request",
                str(exc) or "request failed",
                {
                    "code": getattr(exc, "code", exc.__class__.__name__),
                    "status": getattr(exc, "status", None),
                    "model_id": getattr(exc, "details", {}).get("model_id"),
                    "retry_after_seconds": getattr(exc, "retry_after_seconds", None),
                    "stage": "terminal",
                },
            )
            raise
        self._events.info(
            "ai.response",
            "request_ok",
            {
                "model_id": outcome.decision.chosen_id,
                "status": outcome.response.status,
                "latency_ms": round((self._clock.monotonic() - started) * 1000.0, 3),
            },
        )
        return outcome

    async def _warm_benchmarks(self, params: RequestParams) -> None:
        if self.benchmarker is None or self.benchmarks is None:
            return
        if not SelectionPreference.normalize(params.preference).speed:
            return
        models = list(params.models) if params.models is not None else self.registry.ids()
        self.benchmarker.schedule(models, reason="auto")
        latencies = self.benchmarks.latencies()
        if not any(model_id in latencies for model_id in models):
            await self.benchmarker.quick_prebench(models, max_models=4, budget_seconds=1.2)

    async def _execute(
        self,
        descriptor: RequestDescriptor,
        token: CancelToken | None,
    ) -> TransportResult:
        if token is None:
            return await self.transport.execute(descriptor)
        if token.cancelled:
            raise AbortedError(token.reason)
        remove = token.add_callback(
            lambda reason: self.transport.cancel(descriptor.request_id, reason)
        )
        try:
            result = await self.transport.execute(descriptor)
        finally:
            remove()
        # A call whose token fired never resolves successfully.
        if token.cancelled:
            raise AbortedError(token.reason)
        return result

    def _replay(self, result: TransportResult, preference: Any) -> EngineResponse:
        """Settle an attempt from an outcome that was already observed once.

        The ledger, cooldowns and performance figures were fed when the call
        first settled, so a replay only rebuilds the decision it was made under.
        """
        model_id = str(result.meta.context.get("model_id") or "unknown")
        decision = self.pinned_decision(model_id, reason="replayed", preference=preference)
        self._events.info(
            "ai.request",
            "request_replayed",
            {"request_id": result.request_id, "model_id": model_id, "ok": result.ok},
        )
        if result.ok:
            return EngineResponse(response=result, decision=decision)
        exc = error_from_result(result)
        exc.details.update(model_id=model_id, request_id=result.request_id)
        raise exc

    def _observe(self, decision: Decision, result: TransportResult) -> None:
        if result.headers:
            self.ledger.upsert_from_headers(decision.chosen_id, result.headers)
        if result.ok and self.performance is not None and not result.meta.incomplete:
            self.performance.record(
                decision.chosen_id,
                latency_ms=result.meta.elapsed_ms,
                output_tokens=usage_output_tokens(result.json),
            )

    def _on_rate_limited(self, decision: Decision, exc: UpstreamError) -> None:
        until = self.ledger.apply_cooldown(
            decision.chosen_id,
            retry_after_seconds=exc.retry_after_seconds,
        )
        self.scheduler.on_rate_limited(
            retry_after_seconds=exc.retry_after_seconds,
            kind=REQUEST_KIND,
        )
        self._events.warn(
            "ai.cooldown",
            "cooldown_applied",
            {
                "model_id": decision.chosen_id,
                "retry_after_seconds": exc.retry_after_seconds,
                "cooldown_until": until,
            },
        )
