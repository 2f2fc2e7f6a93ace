from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from llm_orchestrator.config.settings import get_settings
from llm_orchestrator.context import OrchestratorContext, build_context
from llm_orchestrator.engine import RequestParams
from llm_orchestrator.errors import (
    AbortedError,
    BadRequestIdError,
    NetworkFailureError,
    NoCandidatesError,
    OrchestratorError,
    RequestTimeoutError,
    UpstreamError,
)
from llm_orchestrator.runtime.rate_limits import pressure_tokens
from llm_orchestrator.transport.host import RequestDescriptor

app = FastAPI(
    title="LLM Orchestrator",
    description="Model selection, admission control and idempotent transport for LLM calls.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

_STATUS_BY_ERROR: dict[type[OrchestratorError], int] = {
    NoCandidatesError: 400,
    BadRequestIdError: 400,
    AbortedError: 499,
    RequestTimeoutError: 504,
    NetworkFailureError: 502,
}


class ChooseBody(BaseModel):
    models: list[str] | None = None
    preference: Any = None
    hint_previous_id: str | None = None
    input: Any = None
    max_output_tokens: int | None = None
    batch_size: int | None = None


class RequestBody(BaseModel):
    input: Any
    models: list[str] | None = None
    preference: Any = None
    hint_previous_id: str | None = None
    max_output_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = None
    batch_size: int | None = None
    priority: str = "high"
    stream: bool = False
    timeout_seconds: float | None = None
    request_id: str | None = None
    job_id: str | None = None
    block_id: str | None = None
    task_type: str = "unknown"
    extra_body: dict[str, Any] = Field(default_factory=dict)


class CancelBody(BaseModel):
    request_id: str | None = None
    reason: str = "ABORTED"


class StatusBody(BaseModel):
    request_ids: list[str] = Field(default_factory=list)


class BenchmarkBody(BaseModel):
    models: list[str] | None = None
    force: bool = False
    mode: Literal["full", "quick", "calibrate"] = "full"


def _context() -> OrchestratorContext:
    context: OrchestratorContext | None = getattr(app.state, "context", None)
    if context is None:
        raise HTTPException(status_code=503, detail="Orchestrator is not initialized.")
    return context


def _error_status(exc: OrchestratorError) -> int:
    if isinstance(exc, UpstreamError):
        return exc.status if 400 <= exc.status < 600 else 502
    for error_type, status_code in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    factory = getattr(app.state, "context_factory", None) or build_context
    context: OrchestratorContext = factory(settings)
    context.transport.start_maintenance(context.config.result_cache.cleanup_interval_seconds)
    app.state.settings = settings
    app.state.context = context
    logger.info(
        "startup complete config_path=%s models=%d event_log_enabled=%s",
        settings.orchestrator_config_path,
        len(context.registry.ids()),
        settings.event_log_enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    context: OrchestratorContext | None = getattr(app.state, "context", None)
    if context is not None:
        await context.aclose()
        app.state.context = None
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, Any]:
    context = getattr(app.state, "context", None)
    if context is None:
        return {"status": "starting"}
    return {
        "status": "ok",
        "models": context.registry.ids(),
        "admission": context.scheduler.availability(),
        "inflight": len(context.transport.inflight_ids),
    }


@app.post("/v1/models/choose")
async def choose_model(body: ChooseBody) -> dict[str, Any]:
    context = _context()
    engine = context.engine
    est = engine.estimate_tokens(body.input, body.max_output_tokens) if body.input else 0
    decision = engine.choose(
        body.models,
        body.preference,
        body.hint_previous_id,
        est_tokens=est,
        pressure=pressure_tokens(est, body.batch_size),
    )
    return decision.as_dict()


@app.post("/v1/requests")
async def create_request(body: RequestBody) -> dict[str, Any]:
    context = _context()
    params = RequestParams(**body.model_dump())
    outcome = await context.engine.request(params)
    return outcome.to_dict()


@app.post("/v1/transport/execute")
async def transport_execute(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object request body.")
    descriptor = RequestDescriptor.from_dict(payload)
    if not descriptor.url:
        raise HTTPException(status_code=400, detail="url is required")
    result = await _context().transport.execute_or_raise(descriptor)
    return result.to_dict()


@app.post("/v1/transport/cancel")
async def transport_cancel(body: CancelBody) -> dict[str, Any]:
    aborted = _context().transport.cancel(body.request_id, body.reason)
    return {
        "ok": True,
        "request_id": body.request_id,
        "aborted": aborted,
        "error": None if aborted else {"code": "NOT_FOUND", "message": "request not found"},
    }


@app.post("/v1/transport/status")
async def transport_status(body: StatusBody) -> dict[str, Any]:
    statuses = await _context().transport.query_status(body.request_ids)
    return {"ok": True, "statuses": statuses}


@app.get("/v1/benchmarks")
async def benchmark_snapshot() -> dict[str, Any]:
    return _context().benchmarks.snapshot()


@app.post("/v1/benchmarks")
async def run_benchmarks(body: BenchmarkBody) -> dict[str, Any]:
    benchmarker = _context().benchmarker
    if body.mode == "quick":
        measured = await benchmarker.quick_prebench(body.models)
        return {"status": "done", "mode": "quick", "results": measured}
    if body.mode == "calibrate":
        calibrated = await benchmarker.calibrate_throughput(body.models)
        return {"status": "done", "mode": "calibrate", "results": calibrated}
    outcome = await benchmarker.run(body.models, force=body.force, reason="manual")
    return {**outcome, "mode": "full"}


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(_: Request, exc: OrchestratorError) -> JSONResponse:
    return JSONResponse(status_code=_error_status(exc), content={"error": exc.as_dict()})


@app.exception_handler(FileNotFoundError)
async def config_missing_handler(_: Request, exc: FileNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run() -> None:
    import uvicorn

    uvicorn.run("llm_orchestrator.server:app", host="0.0.0.0", port=8000, reload=False)
