from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import httpx
import pytest

from llm_orchestrator.config import TransportConfig
from llm_orchestrator.errors import BadRequestIdError
from llm_orchestrator.transport.host import RequestDescriptor, TransportResult
from llm_orchestrator.transport.probe import NetworkProbe
from llm_orchestrator.transport.channel import ChannelOverflowError
from llm_orchestrator.transport.result_store import FileResultStore, KeyValueResultStore
from tests.client_test_utils import build_host, mock_client, sse_body

URL = "https://llm.example.test/v1/responses"
COMPLETED = '{"type":"response.completed","response":{"id":"resp_1","usage":{"output_tokens":3}}}'


def _descriptor(request_id: str | None = "job:block0:1:summary", **kwargs: Any) -> RequestDescriptor:
    return RequestDescriptor(
        request_id=request_id,
        url=URL,
        body={"model": "gpt-fast", "input": "hi"},
        headers={"Authorization": "Bearer sk-secret"},
        **kwargs,
    )


def _slow_handler(calls: dict[str, int], delay: float = 0.05) -> Any:
    async def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        await asyncio.sleep(delay)
        return httpx.Response(200, json={"id": "resp_1", "n": calls["count"]})

    return handler


def test_concurrent_calls_with_one_request_id_share_one_upstream_call() -> None:
    calls = {"count": 0}
    host = build_host(_slow_handler(calls))

    async def _run() -> list[TransportResult]:
        results = await asyncio.gather(*(host.execute(_descriptor()) for _ in range(3)))
        replay = await host.execute(_descriptor())
        return [*results, replay]

    results = asyncio.run(_run())

    assert calls["count"] == 1
    assert {result.json["n"] for result in results} == {1}
    assert all(result.ok and result.status == 200 for result in results)


class SlowKeyValueStore:
    """Key-value backend whose reads and writes suspend like a network store."""

    def __init__(self, read_delay: float = 0.05, write_delay: float = 0.01) -> None:
        self.values: dict[str, str] = {}
        self.read_delay = read_delay
        self.write_delay = write_delay

    async def get(self, key: str) -> str | None:
        value = self.values.get(key)
        await asyncio.sleep(self.read_delay)
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await asyncio.sleep(self.write_delay)
        self.values[key] = value

    async def delete(self, key: str) -> None:
        self.values.pop(key, None)

    async def aclose(self) -> None:
        return None


def test_caller_arriving_while_result_is_stored_does_not_refetch() -> None:
    calls = {"count": 0}
    upstream_hit = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        upstream_hit.set()
        return httpx.Response(200, json={"n": calls["count"]})

    host = build_host(handler, store=KeyValueResultStore(SlowKeyValueStore()))

    async def _run() -> tuple[TransportResult, TransportResult]:
        first = asyncio.create_task(host.execute(_descriptor("r1")))
        await upstream_hit.wait()
        second = asyncio.create_task(host.execute(_descriptor("r1")))
        return await first, await second

    first, second = asyncio.run(_run())

    assert calls["count"] == 1
    assert first.json == second.json == {"n": 1}
    assert first.meta.replayed is False
    assert second.meta.replayed is True


def test_staggered_callers_on_a_slow_store_share_one_call() -> None:
    calls = {"count": 0}
    host = build_host(
        _slow_handler(calls, delay=0.01),
        store=KeyValueResultStore(SlowKeyValueStore(read_delay=0.05, write_delay=0.02)),
    )

    async def _run() -> list[TransportResult]:
        tasks = []
        for _ in range(6):
            tasks.append(asyncio.create_task(host.execute(_descriptor("r1"))))
            await asyncio.sleep(0.02)
        return list(await asyncio.gather(*tasks))

    results = asyncio.run(_run())

    assert calls["count"] == 1
    assert {result.json["n"] for result in results} == {1}


def test_settled_result_is_replayed_after_restart(tmp_path: Path) -> None:
    calls = {"count": 0}
    path = tmp_path / "results.json"

    async def _run() -> tuple[TransportResult, TransportResult]:
        first = await build_host(
            _slow_handler(calls, 0), store=FileResultStore(path)
        ).execute(_descriptor())
        second = await build_host(
            _slow_handler(calls, 0), store=FileResultStore(path)
        ).execute(_descriptor())
        return first, second

    first, second = asyncio.run(_run())

    assert calls["count"] == 1
    assert second.to_dict() == first.to_dict()
    assert "sk-secret" not in path.read_text(encoding="utf-8")


def test_missing_request_id_is_rejected_without_network() -> None:
    calls = {"count": 0}
    host = build_host(_slow_handler(calls))

    result = asyncio.run(host.execute(_descriptor(None)))

    assert not result.ok
    assert result.error is not None and result.error.code == "BAD_REQUEST_ID"
    assert calls["count"] == 0
    with pytest.raises(BadRequestIdError):
        asyncio.run(host.execute_or_raise(_descriptor(None)))


def test_cancel_settles_as_aborted_and_is_cached_as_cancelled() -> None:
    calls = {"count": 0}
    host = build_host(_slow_handler(calls, delay=5))

    async def _run() -> tuple[TransportResult, dict[str, Any], bool]:
        task = asyncio.create_task(host.execute(_descriptor()))
        await asyncio.sleep(0.02)
        assert host.cancel("job:block0:1:summary", "user_cancelled")
        result = await asyncio.wait_for(task, timeout=1.0)
        statuses = await host.query_status(["job:block0:1:summary"])
        return result, statuses, host.cancel("job:block0:1:summary")

    result, statuses, cancelled_again = asyncio.run(_run())

    assert not result.ok
    assert result.error is not None
    assert result.error.code == "ABORTED"
    assert result.error.debug == {"reason": "user_cancelled"}
    assert statuses["job:block0:1:summary"]["status"] == "cancelled"
    assert cancelled_again is False


def test_slow_upstream_times_out() -> None:
    calls = {"count": 0}
    host = build_host(
        _slow_handler(calls, delay=5),
        config=TransportConfig(min_timeout_seconds=0.05, dual_transport_enabled=False),
    )

    result = asyncio.run(host.execute(_descriptor(timeout_seconds=0.1)))

    assert not result.ok
    assert result.error is not None
    assert result.error.code == "TIMEOUT"
    assert result.error.debug == {"timeout_seconds": 0.1}


def test_connectivity_failure_falls_back_to_secondary_client() -> None:
    def primary(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection reset by peer", request=request)

    def secondary(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "resp_2"})

    host = build_host(primary, secondary=secondary)

    result = asyncio.run(host.execute(_descriptor()))

    assert result.ok
    assert result.json == {"id": "resp_2"}
    assert result.meta.transport_used == "secondary"


def test_network_failure_attaches_diagnostics_and_probe() -> None:
    secondary_calls = {"count": 0}

    def primary(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    def secondary(request: httpx.Request) -> httpx.Response:
        secondary_calls["count"] += 1
        return httpx.Response(200)

    probe = NetworkProbe(client=mock_client(lambda request: httpx.Response(200)))
    host = build_host(primary, secondary=secondary, probe=probe)

    result = asyncio.run(host.execute(_descriptor()))

    assert not result.ok
    assert result.status == 0
    assert result.error is not None and result.error.code == "FETCH_FAILED"
    debug = result.error.debug or {}
    assert debug["diagnostics"]["error_type"] == "ReadTimeout"
    assert debug["probe"]["classification"] == "reachable"
    assert "sk-secret" not in json.dumps(debug)
    assert secondary_calls["count"] == 0


def test_http_error_keeps_status_body_and_rate_limit_headers() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={"error": {"message": "slow down"}},
            headers={"Retry-After": "2", "x-ratelimit-remaining-tokens": "0", "set-cookie": "a=b"},
        )

    result = asyncio.run(build_host(handler).execute(_descriptor()))

    assert not result.ok
    assert result.status == 429
    assert result.error is not None and result.error.code == "HTTP_ERROR"
    assert result.json == {"error": {"message": "slow down"}}
    assert result.headers == {"x-ratelimit-remaining-tokens": "0", "retry-after": "2"}


def test_non_json_body_is_returned_as_text() -> None:
    result = asyncio.run(
        build_host(lambda request: httpx.Response(200, text="plain")).execute(_descriptor())
    )

    assert result.ok
    assert result.json is None
    assert result.text == "plain"


def test_stream_delivers_events_and_terminal_response() -> None:
    delta = '{"type":"response.output_text.delta","delta":"hi"}'

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["model"] == "gpt-fast"
        return httpx.Response(
            200,
            content=sse_body(delta, COMPLETED, "[DONE]"),
            headers={"content-type": "text/event-stream"},
        )

    host = build_host(handler)

    async def _run() -> tuple[list[dict[str, Any]], TransportResult]:
        subscription = await host.open_stream(_descriptor(stream=True))
        events = [event async for event in subscription]
        return events, await subscription.result()

    events, result = asyncio.run(_run())

    assert [event["type"] for event in events] == [
        "response.output_text.delta",
        "response.completed",
    ]
    assert result.ok
    assert result.json == {"id": "resp_1", "usage": {"output_tokens": 3}}
    assert result.meta.attempt_kind == "stream"
    assert result.meta.incomplete is False


def test_stream_without_terminal_event_is_marked_incomplete() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=sse_body('{"type":"response.output_text.delta"}'))

    result = asyncio.run(build_host(handler).execute(_descriptor(stream=True)))

    assert result.ok
    assert result.json is None
    assert result.meta.incomplete is True


def test_late_subscriber_receives_latest_event_then_live_events() -> None:
    first = '{"type":"response.output_text.delta","delta":"a"}'

    async def body() -> AsyncIterator[bytes]:
        yield sse_body(first)
        await asyncio.sleep(0.05)
        yield sse_body(COMPLETED)

    host = build_host(lambda request: httpx.Response(200, content=body()))

    async def _run() -> tuple[list[str], list[str]]:
        early = await host.open_stream(_descriptor(stream=True))
        first_event = await early.__anext__()
        late = await host.open_stream(_descriptor(stream=True))
        early_rest = [event["type"] async for event in early]
        late_events = [event["type"] async for event in late]
        return [first_event["type"], *early_rest], late_events

    early_events, late_events = asyncio.run(_run())

    assert early_events == ["response.output_text.delta", "response.completed"]
    assert late_events == ["response.output_text.delta", "response.completed"]


def test_stalled_subscriber_does_not_hold_up_the_stream() -> None:
    deltas = [f'{{"type":"response.output_text.delta","delta":"{index}"}}' for index in range(10)]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=sse_body(*deltas, COMPLETED))

    host = build_host(handler, config=TransportConfig(stream_channel_size=2))

    async def _run() -> tuple[TransportResult, TransportResult, list[dict[str, Any]]]:
        stalled = await host.open_stream(_descriptor(stream=True))
        result = await asyncio.wait_for(stalled.result(), timeout=2.0)
        again = await host.execute(_descriptor(stream=True))
        buffered: list[dict[str, Any]] = []
        with pytest.raises(ChannelOverflowError):
            async for event in stalled:
                buffered.append(event)
        return result, again, buffered

    result, again, buffered = asyncio.run(_run())

    assert result.ok
    assert result.json == {"id": "resp_1", "usage": {"output_tokens": 3}}
    assert again.json == result.json
    assert [event["delta"] for event in buffered] == ["0", "1"]


def test_cancelled_stream_stops_emitting_and_settles_as_aborted() -> None:
    release = asyncio.Event()

    async def body() -> AsyncIterator[bytes]:
        yield sse_body('{"type":"response.output_text.delta","delta":"a"}')
        await release.wait()
        yield sse_body('{"type":"response.output_text.delta","delta":"b"}', COMPLETED)

    host = build_host(lambda request: httpx.Response(200, content=body()))

    async def _run() -> tuple[dict[str, Any], list[dict[str, Any]], TransportResult]:
        subscription = await host.open_stream(_descriptor(stream=True))
        first = await asyncio.wait_for(subscription.__anext__(), timeout=1.0)
        assert host.cancel(subscription.request_id, "user_cancelled")
        release.set()
        rest = [event async for event in subscription]
        return first, rest, await asyncio.wait_for(subscription.result(), timeout=1.0)

    first, rest, result = asyncio.run(_run())

    assert first["delta"] == "a"
    assert rest == []
    assert not result.ok
    assert result.error is not None
    assert result.error.code == "ABORTED"
    assert result.error.debug == {"reason": "user_cancelled"}


def test_query_status_reports_pending_done_and_missing() -> None:
    calls = {"count": 0}
    host = build_host(_slow_handler(calls, delay=0.05))

    async def _run() -> tuple[dict[str, Any], dict[str, Any]]:
        task = asyncio.create_task(host.execute(_descriptor("r-1")))
        await asyncio.sleep(0.01)
        during = await host.query_status(["r-1", "r-unknown", ""])
        await task
        after = await host.query_status(["r-1"])
        return during, after

    during, after = asyncio.run(_run())

    assert during == {
        "r-1": {"status": "pending", "result": None},
        "r-unknown": {"status": "missing", "result": None},
    }
    assert after["r-1"]["status"] == "done"
    assert after["r-1"]["result"]["json"]["id"] == "resp_1"


def test_status_queries_are_capped() -> None:
    host = build_host(lambda request: httpx.Response(200), config=TransportConfig(max_status_ids=2))

    statuses = asyncio.run(host.query_status(["a", "b", "c"]))

    assert list(statuses) == ["a", "b"]


def test_descriptor_round_trips_through_wire_format() -> None:
    descriptor = RequestDescriptor.from_dict(
        {
            "request_id": "r-9",
            "url": URL,
            "body": {"input": "x"},
            "headers": {"Authorization": "Bearer k"},
            "stream": True,
            "timeout_seconds": 12,
            "method": "post",
        }
    )

    assert descriptor.method == "POST"
    assert descriptor.timeout_seconds == 12.0
    assert "headers" not in descriptor.to_dict()
    assert descriptor.to_dict(include_headers=True)["headers"] == {"Authorization": "Bearer k"}
