from __future__ import annotations

import asyncio
import json
import logging
import math
from typing import Any

import httpx
import pytest

from llm_orchestrator.config.settings import Settings
from llm_orchestrator.context import OrchestratorContext, build_context
from llm_orchestrator.engine import (
    RequestParams,
    build_request_id,
    error_from_result,
    estimate_tokens,
)
from llm_orchestrator.errors import AbortedError, NoCandidatesError, UpstreamError
from llm_orchestrator.runtime.cancellation import CancelToken
from llm_orchestrator.transport.host import TransportError, TransportResult
from tests.client_test_utils import build_host, orchestrator_config

RATE_HEADERS = {
    "x-ratelimit-remaining-requests": "99",
    "x-ratelimit-remaining-tokens": "15000",
    "x-ratelimit-reset-tokens": "6m0s",
}


def _settings() -> Settings:
    return Settings(
        backend_base_url="https://llm.example.test/v1",
        backend_api_key="sk-test",
        event_log_enabled=False,
        ledger_state_path=None,
        redis_url=None,
    )


def _context(handler: Any, **config_overrides: Any) -> OrchestratorContext:
    return build_context(
        _settings(),
        orchestrator_config(**config_overrides),
        transport=build_host(handler),
    )


def _ok_response(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={"id": "resp_1", "output_text": "done", "usage": {"output_tokens": 20}},
        headers=RATE_HEADERS,
    )


def test_request_builds_upstream_call_and_feeds_ledger() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _ok_response(request)

    context = _context(handler)
    params = RequestParams(
        input="Summarize this.",
        models=["gpt-fast"],
        temperature=0.2,
        job_id="job1",
        block_id="b2",
        task_type="summary",
    )

    async def _run() -> Any:
        try:
            return await context.engine.request(params)
        finally:
            await context.aclose()

    outcome = asyncio.run(_run())

    assert outcome.json["id"] == "resp_1"
    assert outcome.decision.chosen_id == "gpt-fast"
    assert outcome.response.request_id == "job1:b2:1:summary"
    request = seen[0]
    assert str(request.url) == "https://llm.example.test/v1/responses"
    assert request.headers["authorization"] == "Bearer sk-test"
    assert json.loads(request.content) == {
        "model": "gpt-fast",
        "input": "Summarize this.",
        "max_output_tokens": 512,
        "temperature": 0.2,
    }
    snapshot = context.ledger.get("gpt-fast")
    assert snapshot is not None and snapshot.remaining_tokens == 15000
    assert context.performance.get("gpt-fast") is not None
    assert context.ledger.usage_penalty("gpt-fast") > 0


def test_rate_limited_response_applies_cooldown_and_shared_backoff(caplog: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={"error": {"message": "Rate limit reached"}},
            headers={"retry-after": "2"},
        )

    context = _context(handler)

    async def _run() -> None:
        try:
            await context.engine.request(RequestParams(input="hi", models=["gpt-smart"]))
        finally:
            assert context.scheduler.backoff_remaining_seconds > 1
            await context.aclose()

    with caplog.at_level(logging.INFO, logger="llm_orchestrator"):
        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(_run())

    assert excinfo.value.status == 429
    assert excinfo.value.retry_after_seconds == 2
    assert str(excinfo.value) == "Rate limit reached"
    availability = context.ledger.compute_availability("gpt-smart")
    assert not availability.ok and availability.reason == "cooldown"
    assert "cooldown_applied" in caplog.text
    assert "stage=terminal" in caplog.text


def test_retryable_failure_retries_with_a_fresh_request_id() -> None:
    request_ids: list[str] = []
    statuses = iter([503, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        status = next(statuses)
        return httpx.Response(status, json={"id": f"resp_{status}"})

    context = _context(
        handler,
        retry={"max_attempts": 2, "base_delay_seconds": 0.01, "jitter_seconds": 0},
    )

    async def _run() -> Any:
        original_execute = context.transport.execute

        async def recording_execute(descriptor: Any) -> TransportResult:
            request_ids.append(descriptor.request_id)
            return await original_execute(descriptor)

        context.engine.transport.execute = recording_execute  # type: ignore[method-assign]
        try:
            return await context.engine.request(
                RequestParams(input="hi", models=["gpt-fast"], job_id="job1", task_type="t")
            )
        finally:
            await context.aclose()

    outcome = asyncio.run(_run())

    assert outcome.json == {"id": "resp_200"}
    assert request_ids == ["job1:block0:1:t", "job1:block0:2:t"]


def test_unknown_models_fail_fast_without_network() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return _ok_response(request)

    context = _context(handler)

    async def _run() -> None:
        try:
            await context.engine.request(RequestParams(input="hi", models=["nope"]))
        finally:
            await context.aclose()

    with pytest.raises(NoCandidatesError):
        asyncio.run(_run())
    assert calls["count"] == 0


def test_cancel_token_aborts_in_flight_request() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={})

    context = _context(handler)
    token = CancelToken()

    async def _run() -> dict[str, Any]:
        task = asyncio.create_task(
            context.engine.request(
                RequestParams(
                    input="hi",
                    models=["gpt-fast"],
                    cancel_token=token,
                    request_id="req-cancel",
                )
            )
        )
        await asyncio.sleep(0.05)
        token.cancel("user_cancelled")
        try:
            with pytest.raises(AbortedError) as excinfo:
                await asyncio.wait_for(task, timeout=1.0)
            assert excinfo.value.reason == "user_cancelled"
            return await context.transport.query_status(["req-cancel"])
        finally:
            await context.aclose()

    statuses = asyncio.run(_run())

    assert statuses["req-cancel"]["status"] == "cancelled"


def test_choose_reports_decision_and_marks_usage() -> None:
    context = _context(_ok_response)

    decision = context.engine.choose(["gpt-smart", "gpt-fast"], "smartest", est_tokens=100)

    assert decision.chosen_id == "gpt-smart"
    assert decision.policy == "smartest"
    assert context.ledger.usage_penalty("gpt-smart") > 0
    with pytest.raises(NoCandidatesError):
        context.engine.choose([], None)


def test_estimate_tokens_counts_prompt_and_output_budget() -> None:
    assert estimate_tokens("a" * 40) == 10 + 512
    assert estimate_tokens("a" * 41, 100) == 11 + 100
    messages = [{"role": "user", "content": "hi"}]
    assert estimate_tokens(messages, 0) == math.ceil(len(json.dumps(messages)) / 4)


def test_request_ids_are_stable_per_attempt() -> None:
    explicit = RequestParams(input="x", request_id="req-1")
    derived = RequestParams(input="x", job_id="job", block_id="b1", task_type="qa")

    assert build_request_id(explicit, 1, job_fallback="j") == "req-1"
    assert build_request_id(explicit, 2, job_fallback="j") == "req-1:retry2"
    assert build_request_id(derived, 3, job_fallback="j") == "job:b1:3:qa"
    assert build_request_id(RequestParams(input="x"), 1, job_fallback="job-abc") == (
        "job-abc:block0:1:unknown"
    )


def test_transport_failures_map_onto_error_taxonomy() -> None:
    def failed(code: str, debug: dict[str, Any] | None = None) -> TransportResult:
        return TransportResult(
            request_id="r",
            ok=False,
            status=0,
            error=TransportError(code=code, message=code.lower(), debug=debug),
        )

    assert error_from_result(failed("ABORTED", {"reason": "user"})).code == "ABORTED"
    assert error_from_result(failed("TIMEOUT", {"timeout_seconds": 3})).code == "TIMEOUT"
    assert error_from_result(failed("FETCH_FAILED", {"diagnostics": {}})).code == (
        "NETWORK_FAILURE"
    )
    upstream = error_from_result(
        TransportResult(
            request_id="r",
            ok=False,
            status=503,
            headers={"retry-after-ms": "1500"},
            json={"error": "overloaded"},
        )
    )
    assert isinstance(upstream, UpstreamError)
    assert upstream.retryable
    assert upstream.retry_after_seconds == 1.5
    assert str(upstream) == "overloaded"


def test_replayed_request_id_keeps_the_original_model_and_feedback() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return _ok_response(request)

    context = _context(handler)
    params = RequestParams(
        input="hi", models=["gpt-fast", "gpt-smart"], preference="smartest", request_id="req-1"
    )

    async def _run() -> tuple[Any, Any]:
        try:
            first = await context.engine.request(params)
            # A fresh choice would now avoid the cooled-down model.
            context.ledger.apply_cooldown("gpt-smart", retry_after_seconds=30)
            second = await context.engine.request(params)
            return first, second
        finally:
            await context.aclose()

    first, second = asyncio.run(_run())

    assert calls["count"] == 1
    assert first.decision.chosen_id == "gpt-smart"
    assert second.decision.chosen_id == "gpt-smart"
    assert second.decision.reason == "replayed"
    assert second.decision.policy == "smartest"
    assert second.json == first.json
    assert context.performance.get("gpt-fast") is None
    assert context.ledger.usage_penalty("gpt-fast") == 0
    snapshot = context.performance.get("gpt-smart")
    assert snapshot is not None and snapshot.samples == 1


def test_concurrent_requests_with_one_id_observe_the_call_once() -> None:
    calls = {"count": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        await asyncio.sleep(0.05)
        return _ok_response(request)

    context = _context(handler)
    params = RequestParams(input="hi", models=["gpt-fast"], request_id="req-shared")

    async def _run() -> list[Any]:
        try:
            return await asyncio.gather(
                context.engine.request(params), context.engine.request(params)
            )
        finally:
            await context.aclose()

    outcomes = asyncio.run(_run())

    assert calls["count"] == 1
    assert sorted(outcome.decision.reason == "replayed" for outcome in outcomes) == [False, True]
    assert {outcome.decision.chosen_id for outcome in outcomes} == {"gpt-fast"}
    snapshot = context.performance.get("gpt-fast")
    assert snapshot is not None and snapshot.samples == 1


def test_in_flight_budget_is_reserved_until_the_call_settles() -> None:
    held: list[tuple[float, int]] = []
    context: OrchestratorContext

    def handler(request: httpx.Request) -> httpx.Response:
        held.append(context.ledger.reserved("gpt-fast"))
        return _ok_response(request)

    context = _context(handler)

    async def _run() -> None:
        try:
            await context.engine.request(
                RequestParams(input="a" * 40, models=["gpt-fast"], max_output_tokens=90)
            )
        finally:
            await context.aclose()

    asyncio.run(_run())

    assert held == [(100.0, 1)]
    assert context.ledger.reserved("gpt-fast") == (0.0, 0)


def test_fresh_benchmarks_feed_speed_selection() -> None:
    models = ["gpt-fast", "gpt-smart"]

    assert _context(_ok_response).engine.choose(models, {"speed": True}).chosen_id == "gpt-fast"

    context = _context(_ok_response)
    context.benchmarks.upsert("gpt-smart", median_ms=60.0, updated_at=context.clock.time())

    assert context.engine.choose(models, {"speed": True}).chosen_id == "gpt-smart"


def test_absorbed_failure_is_logged_once_with_its_model(caplog: Any) -> None:
    statuses = iter([503, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), json={"id": "resp"})

    context = _context(
        handler,
        retry={"max_attempts": 2, "base_delay_seconds": 0.01, "jitter_seconds": 0},
    )

    async def _run() -> None:
        try:
            await context.engine.request(RequestParams(input="hi", models=["gpt-fast"]))
        finally:
            await context.aclose()

    with caplog.at_level(logging.INFO, logger="llm_orchestrator"):
        asyncio.run(_run())

    warnings = [record for record in caplog.records if record.levelno == logging.WARNING]
    assert len(warnings) == 1
    message = warnings[0].getMessage()
    assert message.startswith("attempt_failed_retrying")
    assert "model_id=gpt-fast" in message
    assert "status=503" in message
