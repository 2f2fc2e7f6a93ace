from __future__ import annotations

import logging
from dataclasses import dataclass, field

from llm_orchestrator.config import OrchestratorConfig, load_orchestrator_config
from llm_orchestrator.config.settings import Settings
from llm_orchestrator.benchmarker import ModelBenchmarker
from llm_orchestrator.engine import RequestBuilder, RequestEngine
from llm_orchestrator.events import EventLogger
from llm_orchestrator.audit import JsonlEventSink
from llm_orchestrator.routing.registry import ModelRegistry
from llm_orchestrator.routing.selector import ModelSelector
from llm_orchestrator.runtime.admission import AdmissionScheduler
from llm_orchestrator.runtime.benchmarks import BenchmarkStore
from llm_orchestrator.runtime.clock import Clock, SystemClock
from llm_orchestrator.runtime.credentials import CredentialsProvider, StaticCredentials
from llm_orchestrator.runtime.performance import PerformanceTracker
from llm_orchestrator.runtime.rate_limits import RateLimitLedger
from llm_orchestrator.runtime.retry import RetryExecutor
from llm_orchestrator.transport.host import TransportHost
from llm_orchestrator.transport.probe import NetworkProbe
from llm_orchestrator.transport.result_store import ResultStore, build_result_store

__all__ = [
    "Clock",
    "CredentialsProvider",
    "OrchestratorContext",
    "StaticCredentials",
    "SystemClock",
    "build_context",
]

logger = logging.getLogger("llm_orchestrator")


@dataclass(slots=True)
class OrchestratorContext:
    """Everything one process needs, built once at startup and closed once."""

    config: OrchestratorConfig
    clock: Clock
    events: EventLogger
    credentials: CredentialsProvider
    registry: ModelRegistry
    ledger: RateLimitLedger
    scheduler: AdmissionScheduler
    performance: PerformanceTracker
    store: ResultStore
    transport: TransportHost
    engine: RequestEngine
    benchmarks: BenchmarkStore
    benchmarker: ModelBenchmarker
    sink: JsonlEventSink | None = None
    closed: bool = field(default=False)

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.benchmarker.aclose()
        self.scheduler.close()
        await self.transport.aclose()
        await self.store.aclose()
        try:
            self.ledger.save()
        except OSError as exc:
            logger.warning("ledger_state_save_failed error=%s", exc)
        try:
            self.benchmarks.save()
        except OSError as exc:
            logger.warning("benchmark_state_save_failed error=%s", exc)
        if self.sink is not None:
            self.sink.close()


def build_context(
    settings: Settings,
    config: OrchestratorConfig | None = None,
    *,
    clock: Clock | None = None,
    credentials: CredentialsProvider | None = None,
    transport: TransportHost | None = None,
    store: ResultStore | None = None,
) -> OrchestratorContext:
    """Wire the runtime from settings; injected parts replace the defaults."""
    resolved_config = config or load_orchestrator_config(settings.orchestrator_config_path)
    resolved_clock = clock or SystemClock()

    sink = None
    if settings.event_log_enabled:
        sink = JsonlEventSink(path=settings.event_log_path, enabled=True)
    events = EventLogger(sink)

    ledger = RateLimitLedger(
        resolved_config.ledger,
        clock=resolved_clock,
        state_path=settings.ledger_state_path,
    )
    try:
        loaded = ledger.load()
    except (OSError, ValueError) as exc:
        logger.warning("ledger_state_load_failed error=%s", exc)
        loaded = 0

    benchmarks = BenchmarkStore(
        resolved_config.benchmarks,
        clock=resolved_clock,
        state_path=settings.benchmark_state_path,
    )
    try:
        benchmarks.load()
    except (OSError, ValueError) as exc:
        logger.warning("benchmark_state_load_failed error=%s", exc)

    registry = ModelRegistry(resolved_config.models)
    scheduler = AdmissionScheduler(resolved_config.admission, clock=resolved_clock, events=events)
    performance = PerformanceTracker(resolved_config.performance, clock=resolved_clock)
    resolved_store = store or build_result_store(
        resolved_config.result_cache,
        redis_url=settings.redis_url,
        file_path=settings.result_cache_path,
        clock=resolved_clock,
        logger=logger,
    )
    resolved_transport = transport or TransportHost(
        resolved_config.transport,
        store=resolved_store,
        probe=NetworkProbe(resolved_config.probe) if resolved_config.probe.enabled else None,
        probe_config=resolved_config.probe,
        clock=resolved_clock,
        events=events,
    )
    resolved_credentials = credentials or StaticCredentials(
        settings.backend_base_url, settings.backend_api_key
    )
    engine = RequestEngine(
        config=resolved_config,
        registry=registry,
        ledger=ledger,
        scheduler=scheduler,
        transport=resolved_transport,
        builder=RequestBuilder(
            resolved_credentials,
            endpoint_path=resolved_config.endpoint_path,
        ),
        performance=performance,
        retry=RetryExecutor(resolved_config.retry, sleep=resolved_clock.sleep, events=events),
        selector=ModelSelector(resolved_config.selection),
        benchmarks=benchmarks,
        clock=resolved_clock,
        events=events,
    )
    benchmarker = ModelBenchmarker(
        engine,
        benchmarks,
        resolved_config.benchmarks,
        credentials=resolved_credentials,
        clock=resolved_clock,
        events=events,
    )
    if resolved_config.benchmarks.auto_run:
        engine.benchmarker = benchmarker
    logger.info(
        "orchestrator_context_ready models=%d ledger_entries=%d result_store=%s",
        len(registry.ids()),
        loaded,
        type(resolved_store).__name__,
    )
    return OrchestratorContext(
        config=resolved_config,
        clock=resolved_clock,
        events=events,
        credentials=resolved_credentials,
        registry=registry,
        ledger=ledger,
        scheduler=scheduler,
        performance=performance,
        store=resolved_store,
        transport=resolved_transport,
        engine=engine,
        benchmarks=benchmarks,
        benchmarker=benchmarker,
        sink=sink,
    )
