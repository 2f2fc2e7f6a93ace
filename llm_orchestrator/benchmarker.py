from __future__ import annotations

import asyncio
import random
import uuid
from collections.abc import Iterable
from typing import Any

from llm_orchestrator.config import BenchmarkConfig
from llm_orchestrator.engine import (
    RequestEngine,
    RequestParams,
    error_from_result,
    usage_output_tokens,
)
from llm_orchestrator.errors import (
    AbortedError,
    OrchestratorError,
    RequestTimeoutError,
    UpstreamError,
)
from llm_orchestrator.events import EventLogger
from llm_orchestrator.runtime.admission import BENCH_KIND
from llm_orchestrator.runtime.benchmarks import (
    BenchmarkEntry,
    BenchmarkStore,
    median_ms,
    percentile_ms,
)
from llm_orchestrator.runtime.clock import Clock, SystemClock
from llm_orchestrator.runtime.credentials import CredentialsProvider
from llm_orchestrator.runtime.retry import RetryExecutor
from llm_orchestrator.transport.host import TransportResult

DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS = 15.0


class ModelBenchmarker:
    """Measures round-trip latency per model with a tiny fixed prompt.

    Bench calls go through the same admission scheduler and transport as real
    requests, under their own ``BENCH`` kind, so their rate-limit headers feed
    the ledger and a 429 freezes further bench traffic. Medians land in the
    :class:`BenchmarkStore` that candidate assembly reads.
    """

    def __init__(
        self,
        engine: RequestEngine,
        store: BenchmarkStore,
        config: BenchmarkConfig | None = None,
        *,
        credentials: CredentialsProvider | None = None,
        clock: Clock | None = None,
        events: EventLogger | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.config = config or store.config
        self._credentials = credentials
        self._clock = clock or SystemClock()
        self._events = events or EventLogger()
        self._rng = rng or random.Random()
        self._retry = RetryExecutor(
            self.config.retry,
            sleep=self._clock.sleep,
            rng=self._rng,
            monotonic=self._clock.monotonic,
            events=self._events,
        )
        self._run_lock = asyncio.Lock()
        self._calibrating: set[str] = set()
        self._task: asyncio.Task[dict[str, Any]] | None = None

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    async def run(
        self,
        model_ids: Iterable[str] | None = None,
        *,
        force: bool = False,
        reason: str = "manual",
    ) -> dict[str, Any]:
        skipped = await self._skip_reason()
        if skipped is not None:
            return {"status": "skipped", "reason": skipped}
        if self._run_lock.locked():
            return {"status": "skipped", "reason": "already_running"}
        async with self._run_lock:
            return await self._run(self._ids(model_ids), force=force, reason=reason)

    def schedule(
        self,
        model_ids: Iterable[str] | None = None,
        *,
        force: bool = False,
        reason: str = "auto",
    ) -> asyncio.Task[dict[str, Any]] | None:
        """Start a background run unless one is already going."""
        if self._task is not None and not self._task.done():
            return None
        if self._run_lock.locked():
            return None
        self._task = asyncio.create_task(
            self.run(list(self._ids(model_ids)), force=force, reason=reason)
        )
        return self._task

    async def quick_prebench(
        self,
        model_ids: Iterable[str] | None = None,
        *,
        max_models: int = 5,
        budget_seconds: float = 3.0,
    ) -> dict[str, float]:
        """One short sample per unbenchmarked model, bounded by a time budget.

        Gives speed selection something to go on before a full run finishes.
        """
        if await self._skip_reason() is not None:
            return {}
        now = self._clock.time()
        targets = [
            model_id
            for model_id in self._ids(model_ids)
            if self.store.get(model_id, now) is None
        ][: max(0, max_models)]
        deadline = self._clock.monotonic() + budget_seconds
        measured: dict[str, float] = {}
        for model_id in targets:
            remaining = deadline - self._clock.monotonic()
            if remaining <= 0:
                break
            timeout = min(self.config.quick_sample_timeout_seconds, remaining)
            try:
                if not await self._reserve_slot("high", self.config.max_output_tokens, timeout):
                    break
                result = await self._measure(
                    model_id,
                    self.config.prompt,
                    self.config.max_output_tokens,
                    timeout,
                )
            except AbortedError:
                raise
            except OrchestratorError as exc:
                self._handle_rate_limit(model_id, exc)
                self._events.debug(
                    "benchmark",
                    "quick_sample_failed",
                    {"model_id": model_id, "code": exc.code},
                )
                continue
            elapsed = result.meta.elapsed_ms
            measured[model_id] = elapsed
            ts = self._clock.time()
            self.store.upsert(
                model_id,
                median_ms=float(round(elapsed)),
                p90_ms=float(round(elapsed)),
                samples=1,
                updated_at=ts,
                last_attempt_at=ts,
                last_error=None,
                quick=True,
            )
        if measured:
            self._events.info("benchmark", "quick_prebench_done", {"models": measured})
        return measured

    async def calibrate_throughput(self, model_ids: Iterable[str] | None = None) -> list[str]:
        """Seed throughput for models that have served no real traffic yet."""
        performance = self.engine.performance
        if performance is None or await self._skip_reason() is not None:
            return []
        targets = [
            model_id
            for model_id in self._ids(model_ids)
            if model_id not in self._calibrating and performance.get(model_id) is None
        ][: max(0, self.config.calibration_max_models)]
        calibrated: list[str] = []
        for model_id in targets:
            self._calibrating.add(model_id)
            try:
                admitted = await self._reserve_slot(
                    "normal",
                    self.config.calibration_max_output_tokens,
                    self.config.calibration_slot_timeout_seconds,
                )
                if not admitted:
                    break
                result = await self._measure(
                    model_id,
                    self.config.calibration_prompt,
                    self.config.calibration_max_output_tokens,
                    self.config.timeout_seconds,
                )
            except AbortedError:
                raise
            except OrchestratorError as exc:
                self._handle_rate_limit(model_id, exc)
                continue
            finally:
                self._calibrating.discard(model_id)
            performance.record(
                model_id,
                latency_ms=result.meta.elapsed_ms,
                output_tokens=usage_output_tokens(result.json),
            )
            self._events.info(
                "benchmark",
                "throughput_calibrated",
                {"model_id": model_id, "latency_ms": result.meta.elapsed_ms},
            )
            calibrated.append(model_id)
        return calibrated

    async def aclose(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _run(self, model_ids: list[str], *, force: bool, reason: str) -> dict[str, Any]:
        now = self._clock.time()
        targets = [
            model_id
            for model_id in model_ids
            if force
            or (
                not self.store.is_fresh(self.store.get_entry(model_id), now)
                and self.store.can_attempt(self.store.get_entry(model_id), now)
            )
        ]
        status: dict[str, Any] = {
            "status": "running" if targets else "idle",
            "reason": reason,
            "started_at": now,
            "total": len(targets),
            "completed": 0,
        }
        self.store.set_status(status)
        self._events.info(
            "benchmark",
            "benchmark_run_started",
            {"reason": reason, "models": targets, "force": force},
        )
        results: dict[str, Any] = {}
        try:
            for model_id in targets:
                entry = await self._bench_model(model_id)
                results[model_id] = entry.as_dict() if entry is not None else None
                status["completed"] += 1
                self.store.set_status(status)
        finally:
            status.update(status="done", finished_at=self._clock.time())
            self.store.set_status(status)
            self._save()
        return {"status": "done", "reason": reason, "results": results}

    async def _bench_model(self, model_id: str) -> BenchmarkEntry | None:
        self.store.upsert(model_id, last_attempt_at=self._clock.time())
        samples: list[float] = []
        error: dict[str, Any] | None = None
        for index in range(self.config.samples):
            if index:
                jitter = self._rng.uniform(
                    self.config.jitter_min_seconds, self.config.jitter_max_seconds
                )
                await self._clock.sleep(jitter)
            try:
                samples.append(await self._sample_with_retry(model_id))
            except AbortedError:
                raise
            except OrchestratorError as exc:
                error = exc.as_dict()
                break
        if not samples:
            self.store.upsert(model_id, last_error=error)
            self._events.warn(
                "benchmark",
                "benchmark_failed",
                {"model_id": model_id, "error": error},
            )
            return None
        entry = self.store.upsert(
            model_id,
            median_ms=median_ms(samples),
            p90_ms=percentile_ms(samples, 0.9),
            samples=len(samples),
            updated_at=self._clock.time(),
            last_error=error,
            quick=False,
        )
        self._events.info(
            "benchmark",
            "benchmark_recorded",
            {
                "model_id": model_id,
                "median_ms": entry.median_ms,
                "p90_ms": entry.p90_ms,
                "samples": entry.samples,
            },
        )
        return entry

    async def _sample_with_retry(self, model_id: str) -> float:
        async def attempt(_number: int) -> float:
            admitted = await self._reserve_slot(
                "normal", self.config.max_output_tokens, self.config.slot_timeout_seconds
            )
            if not admitted:
                raise RequestTimeoutError(
                    "benchmark slot unavailable",
                    timeout_seconds=self.config.slot_timeout_seconds,
                )
            try:
                result = await self._measure(
                    model_id,
                    self.config.prompt,
                    self.config.max_output_tokens,
                    self.config.timeout_seconds,
                )
            except OrchestratorError as exc:
                self._handle_rate_limit(model_id, exc)
                raise
            return result.meta.elapsed_ms

        return await self._retry.run(attempt, label="bench")

    async def _measure(
        self,
        model_id: str,
        prompt: str,
        max_output_tokens: int,
        timeout_seconds: float,
    ) -> TransportResult:
        engine = self.engine
        request_id = f"bench:{model_id}:{uuid.uuid4().hex[:12]}"
        descriptor = await engine.builder.build(
            request_id=request_id,
            decision=engine.pinned_decision(model_id, reason="benchmark"),
            params=RequestParams(
                input=prompt,
                max_output_tokens=max_output_tokens,
                timeout_seconds=timeout_seconds,
                task_type="bench",
            ),
            max_output_tokens=max_output_tokens,
            meta={"task_type": "bench", "model_id": model_id},
        )
        result = await engine.transport.execute(descriptor)
        if result.headers:
            engine.ledger.upsert_from_headers(model_id, result.headers)
        if not result.ok:
            exc = error_from_result(result)
            exc.details.update(model_id=model_id, request_id=request_id)
            raise exc
        return result

    async def _reserve_slot(self, priority: str, est_tokens: float, timeout: float) -> bool:
        try:
            await asyncio.wait_for(
                self.engine.scheduler.reserve_slot(
                    BENCH_KIND,
                    est_tokens=est_tokens,
                    est_rpm=1,
                    priority=priority,
                ),
                timeout=max(0.0, timeout),
            )
        except TimeoutError:
            self._events.debug("benchmark", "bench_slot_timeout", {"timeout_seconds": timeout})
            return False
        return True

    def _handle_rate_limit(self, model_id: str, exc: OrchestratorError) -> None:
        if not isinstance(exc, UpstreamError) or exc.status != 429:
            return
        self.engine.scheduler.on_rate_limited(
            retry_after_seconds=exc.retry_after_seconds,
            kind=BENCH_KIND,
        )
        cooldown = min(
            exc.retry_after_seconds or DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS,
            self.config.max_rate_limit_cooldown_seconds,
        )
        until = self.engine.ledger.apply_cooldown(model_id, retry_after_seconds=cooldown)
        self._events.warn(
            "ai.cooldown",
            "cooldown_applied",
            {"model_id": model_id, "kind": BENCH_KIND, "cooldown_until": until},
        )

    async def _skip_reason(self) -> str | None:
        if not self.config.enabled:
            return "disabled"
        if self._credentials is not None and not await self._credentials.auth_header():
            return "no_api_key"
        return None

    def _ids(self, model_ids: Iterable[str] | None) -> list[str]:
        ids = self.engine.registry.ids() if model_ids is None else model_ids
        return list(dict.fromkeys(str(item).strip() for item in ids if str(item).strip()))

    def _save(self) -> None:
        try:
            self.store.save()
        except OSError as exc:
            self._events.warn("benchmark", "benchmark_state_save_failed", {"error": str(exc)})
