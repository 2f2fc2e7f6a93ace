from __future__ import annotations

import asyncio
import importlib.util
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

from llm_orchestrator.config import ProbeConfig, TransportConfig
from llm_orchestrator.errors import BadRequestIdError
from llm_orchestrator.events import EventLogger
from llm_orchestrator.runtime.clock import Clock, SystemClock
from llm_orchestrator.transport.channel import ChannelOverflowError, EventChannel
from llm_orchestrator.transport.probe import NetworkProbe
from llm_orchestrator.transport.result_store import InMemoryResultStore, ResultStore
from llm_orchestrator.transport.sse import SseDecoder

RETAINED_RESPONSE_HEADERS = (
    "x-request-id",
    "x-ratelimit-limit-requests",
    "x-ratelimit-limit-tokens",
    "x-ratelimit-remaining-requests",
    "x-ratelimit-remaining-tokens",
    "x-ratelimit-reset-requests",
    "x-ratelimit-reset-tokens",
    "retry-after",
    "retry-after-ms",
)
_CONNECTIVITY_ERRORS = (
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.ProxyError,
)
_CONNECTIVITY_MESSAGES = (
    "connection reset",
    "connection closed",
    "connection aborted",
    "server disconnected",
    "broken pipe",
)
TIMEOUT_REASON = "timeout"


def _can_enable_http2() -> bool:
    return importlib.util.find_spec("h2") is not None


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    details: dict[str, Any] = {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__ or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        request = exc.request
    except RuntimeError:
        request = None
    if isinstance(request, httpx.Request):
        details["request_method"] = request.method
        details["request_url"] = str(request.url.copy_with(query=None))
    return details


def is_connectivity_failure(exc: BaseException) -> bool:
    """True for pre-response transport breaks worth retrying on another client."""
    if isinstance(exc, _CONNECTIVITY_ERRORS):
        return True
    if not isinstance(exc, httpx.TransportError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _CONNECTIVITY_MESSAGES)


def retained_headers(headers: httpx.Headers | Mapping[str, str]) -> dict[str, str]:
    lowered = {str(key).lower(): str(value) for key, value in headers.items()}
    return {key: lowered[key] for key in RETAINED_RESPONSE_HEADERS if key in lowered}


@dataclass(slots=True)
class RequestDescriptor:
    request_id: str | None
    url: str
    body: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    stream: bool = False
    timeout_seconds: float | None = None
    method: str = "POST"
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self, *, include_headers: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "request_id": self.request_id,
            "url": self.url,
            "body": self.body,
            "stream": self.stream,
            "timeout_seconds": self.timeout_seconds,
            "method": self.method,
            "meta": dict(self.meta),
        }
        if include_headers:
            payload["headers"] = dict(self.headers)
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> RequestDescriptor:
        headers = raw.get("headers")
        meta = raw.get("meta")
        body = raw.get("body")
        timeout = raw.get("timeout_seconds")
        return cls(
            request_id=str(raw["request_id"]) if raw.get("request_id") else None,
            url=str(raw.get("url") or ""),
            body=body if isinstance(body, dict) else None,
            headers=(
                {str(key): str(value) for key, value in headers.items()}
                if isinstance(headers, Mapping)
                else {}
            ),
            stream=bool(raw.get("stream", False)),
            timeout_seconds=float(timeout) if isinstance(timeout, (int, float)) else None,
            method=str(raw.get("method") or "POST").upper(),
            meta=dict(meta) if isinstance(meta, Mapping) else {},
        )


@dataclass(slots=True)
class TransportError:
    code: str
    message: str
    debug: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.debug is not None:
            payload["debug"] = self.debug
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> TransportError:
        debug = raw.get("debug")
        return cls(
            code=str(raw.get("code") or "UNKNOWN"),
            message=str(raw.get("message") or ""),
            debug=dict(debug) if isinstance(debug, Mapping) else None,
        )


@dataclass(slots=True)
class TransportMeta:
    started_at: float
    elapsed_ms: float = 0.0
    transport_used: str | None = None
    attempt_kind: str = "nonstream"
    incomplete: bool = False
    context: dict[str, Any] = field(default_factory=dict)
    # Served from the cache or from a call another caller started; not persisted.
    replayed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "elapsed_ms": self.elapsed_ms,
            "transport_used": self.transport_used,
            "attempt_kind": self.attempt_kind,
            "incomplete": self.incomplete,
            "context": dict(self.context),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> TransportMeta:
        context = raw.get("context")
        return cls(
            started_at=float(raw.get("started_at") or 0.0),
            elapsed_ms=float(raw.get("elapsed_ms") or 0.0),
            transport_used=raw.get("transport_used"),
            attempt_kind=str(raw.get("attempt_kind") or "nonstream"),
            incomplete=bool(raw.get("incomplete", False)),
            context=dict(context) if isinstance(context, Mapping) else {},
        )


@dataclass(slots=True)
class TransportResult:
    request_id: str | None
    ok: bool
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    json: Any = None
    text: str | None = None
    error: TransportError | None = None
    meta: TransportMeta = field(default_factory=lambda: TransportMeta(started_at=0.0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "ok": self.ok,
            "status": self.status,
            "headers": dict(self.headers),
            "json": self.json,
            "text": self.text,
            "error": self.error.to_dict() if self.error is not None else None,
            "meta": self.meta.to_dict(),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> TransportResult:
        headers = raw.get("headers")
        error = raw.get("error")
        meta = raw.get("meta")
        return cls(
            request_id=raw.get("request_id"),
            ok=bool(raw.get("ok", False)),
            status=int(raw.get("status") or 0),
            headers=(
                {str(key): str(value) for key, value in headers.items()}
                if isinstance(headers, Mapping)
                else {}
            ),
            json=raw.get("json"),
            text=raw.get("text"),
            error=TransportError.from_dict(error) if isinstance(error, Mapping) else None,
            meta=(
                TransportMeta.from_dict(meta)
                if isinstance(meta, Mapping)
                else TransportMeta(started_at=0.0)
            ),
        )


@dataclass(slots=True)
class _Inflight:
    descriptor: RequestDescriptor
    started_at: float
    started_monotonic: float
    mode: str
    task: asyncio.Task[TransportResult] | None = None
    network: asyncio.Task[TransportResult] | None = None
    cancel_reason: str | None = None
    response_started: bool = False
    last_event_ts: float | None = None
    latest_event: dict[str, Any] | None = None
    subscribers: list[EventChannel[dict[str, Any]]] = field(default_factory=list)


class StreamSubscription:
    """Events of one in-flight streamed call plus its terminal result."""

    def __init__(
        self,
        request_id: str,
        channel: EventChannel[dict[str, Any]],
        result_source: asyncio.Future[TransportResult],
        on_close: Any = None,
    ) -> None:
        self.request_id = request_id
        self._channel = channel
        self._result_source = result_source
        self._on_close = on_close

    def __aiter__(self) -> StreamSubscription:
        return self

    async def __anext__(self) -> dict[str, Any]:
        return await self._channel.receive()

    async def result(self) -> TransportResult:
        return await asyncio.shield(self._result_source)

    def close(self) -> None:
        self._channel.close()
        if self._on_close is not None:
            self._on_close(self._channel)
            self._on_close = None


class TransportHost:
    """Executes upstream calls once per request id and replays cached outcomes."""

    def __init__(
        self,
        config: TransportConfig | None = None,
        *,
        store: ResultStore | None = None,
        primary_client: httpx.AsyncClient | None = None,
        secondary_client: httpx.AsyncClient | None = None,
        probe: NetworkProbe | None = None,
        probe_config: ProbeConfig | None = None,
        clock: Clock | None = None,
        events: EventLogger | None = None,
    ) -> None:
        self.config = config or TransportConfig()
        self._store: ResultStore = store or InMemoryResultStore()
        self._clock = clock or SystemClock()
        self._events = events or EventLogger()
        self._owned_clients: list[httpx.AsyncClient] = []
        self._primary = primary_client or self._own(self._build_primary_client())
        self._secondary: httpx.AsyncClient | None = None
        if self.config.dual_transport_enabled:
            self._secondary = secondary_client or self._own(self._build_secondary_client())
        probe_config = probe_config or ProbeConfig()
        self._probe = probe if probe is not None else (
            NetworkProbe(probe_config) if probe_config.enabled else None
        )
        self._inflight: dict[str, _Inflight] = {}
        self._cleanup_task: asyncio.Task[None] | None = None

    @property
    def inflight_ids(self) -> list[str]:
        return list(self._inflight)

    async def execute(self, descriptor: RequestDescriptor) -> TransportResult:
        request_id = descriptor.request_id
        if not request_id:
            return TransportResult(
                request_id=None,
                ok=False,
                status=0,
                error=TransportError(code="BAD_REQUEST_ID", message="requestId is required"),
                meta=TransportMeta(started_at=self._clock.time()),
            )
        # The entry is registered before any await, so the cache lookup itself
        # runs once per request id and concurrent callers always join it.
        entry = self._inflight.get(request_id)
        if entry is None:
            entry = self._start(descriptor)
            assert entry.task is not None
            return await asyncio.shield(entry.task)
        self._events.debug("transport", "transport_joined", {"request_id": request_id})
        assert entry.task is not None
        return _as_replayed(await asyncio.shield(entry.task))

    async def execute_or_raise(self, descriptor: RequestDescriptor) -> TransportResult:
        if not descriptor.request_id:
            raise BadRequestIdError()
        return await self.execute(descriptor)

    async def lookup(self, request_id: str | None) -> TransportResult | None:
        """Outcome already known for ``request_id`` without starting a call.

        A call still in flight is joined; a settled one is read from the store.
        Either way the result is marked as replayed.
        """
        if not request_id:
            return None
        entry = self._inflight.get(request_id)
        if entry is not None and entry.task is not None:
            self._events.debug("transport", "transport_joined", {"request_id": request_id})
            return _as_replayed(await asyncio.shield(entry.task))
        return await self._cached(request_id)

    async def open_stream(self, descriptor: RequestDescriptor) -> StreamSubscription:
        request_id = descriptor.request_id
        if not request_id:
            raise BadRequestIdError()
        channel: EventChannel[dict[str, Any]] = EventChannel(self.config.stream_channel_size)
        entry = self._inflight.get(request_id)
        if entry is None:
            entry = self._start(descriptor)
        # Late subscribers see the latest partial event, never the history.
        if entry.latest_event is not None:
            channel.try_send(entry.latest_event)
        entry.subscribers.append(channel)
        assert entry.task is not None
        return StreamSubscription(
            request_id,
            channel,
            entry.task,
            on_close=lambda item: _discard(entry.subscribers, item),
        )

    def cancel(self, request_id: str | None, reason: str = "ABORTED") -> bool:
        if not request_id:
            return False
        entry = self._inflight.get(request_id)
        if entry is None or entry.cancel_reason is not None:
            return False
        entry.cancel_reason = reason or "ABORTED"
        if entry.network is not None and not entry.network.done():
            entry.network.cancel()
        # Nothing buffered before the abort reaches a subscriber afterwards.
        for channel in entry.subscribers:
            channel.close(discard_pending=True)
        entry.subscribers.clear()
        self._events.info(
            "transport",
            "transport_cancel_requested",
            {"request_id": request_id, "reason": entry.cancel_reason},
        )
        return True

    async def query_status(self, request_ids: Iterable[str]) -> dict[str, dict[str, Any]]:
        ids = [str(item) for item in request_ids if item][: self.config.max_status_ids]
        statuses: dict[str, dict[str, Any]] = {}
        for request_id in ids:
            if request_id in self._inflight:
                statuses[request_id] = {"status": "pending", "result": None}
                continue
            row = await self._store_get(request_id)
            if row is None:
                statuses[request_id] = {"status": "missing", "result": None}
                continue
            statuses[request_id] = {"status": row.status, "result": row.result}
        return statuses

    def start_maintenance(self, interval_seconds: float) -> None:
        if self._cleanup_task is not None or interval_seconds <= 0:
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval_seconds))

    async def aclose(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None
        entries = list(self._inflight.values())
        for entry in entries:
            self.cancel(entry.descriptor.request_id, reason="host_closed")
        tasks = [entry.task for entry in entries if entry.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for client in self._owned_clients:
            await client.aclose()
        self._owned_clients.clear()

    def _start(self, descriptor: RequestDescriptor) -> _Inflight:
        assert descriptor.request_id
        entry = _Inflight(
            descriptor=descriptor,
            started_at=self._clock.time(),
            started_monotonic=self._clock.monotonic(),
            mode="stream" if descriptor.stream else "nonstream",
        )
        self._inflight[descriptor.request_id] = entry
        entry.task = asyncio.create_task(self._run(entry))
        return entry

    async def _run(self, entry: _Inflight) -> TransportResult:
        request_id = entry.descriptor.request_id
        assert request_id
        try:
            cached = await self._cached(request_id)
            if cached is not None:
                self._events.debug("transport", "transport_replayed", {"request_id": request_id})
                return cached
            result = await self._perform(entry)
            await self._store_put(request_id, result)
            self._events.info(
                "transport",
                "transport_settled",
                {
                    "request_id": request_id,
                    "ok": result.ok,
                    "status": result.status,
                    "code": result.error.code if result.error else None,
                    "elapsed_ms": result.meta.elapsed_ms,
                    "transport": result.meta.transport_used,
                },
            )
            return result
        finally:
            self._inflight.pop(request_id, None)
            for channel in entry.subscribers:
                channel.close()
            entry.subscribers.clear()

    async def _perform(self, entry: _Inflight) -> TransportResult:
        if entry.cancel_reason is not None:
            return self._aborted(entry)
        timeout = self.config.bounded_timeout(entry.descriptor.timeout_seconds)
        entry.network = asyncio.create_task(self._fetch(entry))
        done, _ = await asyncio.wait({entry.network}, timeout=timeout)
        if not done:
            if entry.cancel_reason is None:
                entry.cancel_reason = TIMEOUT_REASON
            entry.network.cancel()
            await asyncio.gather(entry.network, return_exceptions=True)
        if entry.network.cancelled():
            return self._aborted(entry, timeout_seconds=timeout)
        exc = entry.network.exception()
        if exc is None:
            return entry.network.result()
        if isinstance(exc, httpx.RequestError):
            return await self._network_failure(entry, exc)
        raise exc

    async def _fetch(self, entry: _Inflight) -> TransportResult:
        clients: list[tuple[str, httpx.AsyncClient]] = [("primary", self._primary)]
        if self._secondary is not None:
            clients.append(("secondary", self._secondary))
        for index, (name, client) in enumerate(clients):
            try:
                return await self._send(entry, client, name)
            except httpx.TransportError as exc:
                has_fallback = index + 1 < len(clients)
                if not has_fallback or entry.response_started or not is_connectivity_failure(exc):
                    raise
                self._events.warn(
                    "transport",
                    "transport_fallback",
                    {
                        "request_id": entry.descriptor.request_id,
                        "from": name,
                        "to": clients[index + 1][0],
                        "error_type": exc.__class__.__name__,
                        "error": str(exc),
                    },
                )
        raise AssertionError("unreachable")

    async def _send(
        self,
        entry: _Inflight,
        client: httpx.AsyncClient,
        transport_name: str,
    ) -> TransportResult:
        descriptor = entry.descriptor
        request = client.build_request(
            method=descriptor.method,
            url=descriptor.url,
            json=descriptor.body if descriptor.body is not None else None,
            headers=descriptor.headers,
        )
        response = await client.send(request, stream=True)
        entry.response_started = True
        try:
            headers = retained_headers(response.headers)
            if descriptor.stream and response.is_success:
                return await self._consume_stream(entry, response, headers, transport_name)
            body = await response.aread()
        finally:
            await response.aclose()

        text = body.decode("utf-8", errors="replace")
        parsed: Any = None
        if text.strip():
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
        error = None
        if not response.is_success:
            error = TransportError(
                code="HTTP_ERROR",
                message=f"upstream responded with HTTP {response.status_code}",
            )
        return TransportResult(
            request_id=descriptor.request_id,
            ok=response.is_success,
            status=response.status_code,
            headers=headers,
            json=parsed,
            text=None if parsed is not None else text,
            error=error,
            meta=self._meta(entry, transport_name),
        )

    async def _consume_stream(
        self,
        entry: _Inflight,
        response: httpx.Response,
        headers: dict[str, str],
        transport_name: str,
    ) -> TransportResult:
        decoder = SseDecoder()
        terminal: Any = None
        found_terminal = False
        async for chunk in response.aiter_bytes():
            for event in decoder.feed(chunk):
                if self._publish(entry, event):
                    terminal, found_terminal = _terminal_payload(event), True
        for event in decoder.flush():
            if self._publish(entry, event):
                terminal, found_terminal = _terminal_payload(event), True

        meta = self._meta(entry, transport_name)
        meta.incomplete = not found_terminal
        if not found_terminal:
            self._events.warn(
                "transport",
                "transport_stream_incomplete",
                {"request_id": entry.descriptor.request_id, "status": response.status_code},
            )
        return TransportResult(
            request_id=entry.descriptor.request_id,
            ok=True,
            status=response.status_code,
            headers=headers,
            json=terminal,
            text=None,
            meta=meta,
        )

    def _publish(self, entry: _Inflight, event: dict[str, Any]) -> bool:
        """Deliver ``event`` to every subscriber; True when it is terminal.

        The upstream read never waits on a consumer. A subscriber whose channel
        is full is detached and sees ``ChannelOverflowError`` once it has
        drained what was buffered; ``result()`` is unaffected.
        """
        if entry.cancel_reason is not None:
            return False
        entry.latest_event = event
        entry.last_event_ts = self._clock.time()
        for channel in list(entry.subscribers):
            if channel.try_send(event):
                continue
            _discard(entry.subscribers, channel)
            if channel.closed:
                continue
            channel.close(ChannelOverflowError("stream subscriber fell behind"))
            self._events.warn(
                "transport",
                "transport_subscriber_detached",
                {"request_id": entry.descriptor.request_id, "buffered": len(channel)},
            )
        return event.get("type") in self.config.terminal_event_types

    async def _network_failure(
        self,
        entry: _Inflight,
        exc: httpx.RequestError,
    ) -> TransportResult:
        details = _request_error_details(exc)
        debug: dict[str, Any] = {"diagnostics": details}
        if self._probe is not None:
            report = await self._probe.run(
                entry.descriptor.url,
                _authorization_header(entry.descriptor.headers),
            )
            debug["probe"] = report.to_dict()
        self._events.warn(
            "transport",
            "transport_network_failure",
            {
                "request_id": entry.descriptor.request_id,
                "error_type": details["error_type"],
                "error": details["error"],
                "classification": debug.get("probe", {}).get("classification"),
            },
        )
        return TransportResult(
            request_id=entry.descriptor.request_id,
            ok=False,
            status=0,
            error=TransportError(code="FETCH_FAILED", message=details["error"], debug=debug),
            meta=self._meta(entry, None),
        )

    def _aborted(self, entry: _Inflight, timeout_seconds: float | None = None) -> TransportResult:
        reason = entry.cancel_reason or "ABORTED"
        if reason == TIMEOUT_REASON:
            error = TransportError(
                code="TIMEOUT",
                message="request timeout",
                debug={"timeout_seconds": timeout_seconds},
            )
        else:
            error = TransportError(
                code="ABORTED",
                message="request aborted",
                debug={"reason": reason},
            )
        return TransportResult(
            request_id=entry.descriptor.request_id,
            ok=False,
            status=0,
            error=error,
            meta=self._meta(entry, None),
        )

    def _meta(self, entry: _Inflight, transport_name: str | None) -> TransportMeta:
        elapsed = max(0.0, self._clock.monotonic() - entry.started_monotonic) * 1000.0
        return TransportMeta(
            started_at=entry.started_at,
            elapsed_ms=round(elapsed, 3),
            transport_used=transport_name,
            attempt_kind=entry.mode,
            context=dict(entry.descriptor.meta),
        )

    async def _cached(self, request_id: str) -> TransportResult | None:
        row = await self._store_get(request_id)
        if row is None:
            return None
        result = TransportResult.from_dict(row.result)
        result.meta.replayed = True
        return result

    async def _store_get(self, request_id: str) -> Any:
        try:
            return await self._store.get(request_id)
        except (OSError, ValueError, ConnectionError) as exc:
            self._events.warn(
                "transport",
                "result_store_read_failed",
                {"request_id": request_id, "error_type": exc.__class__.__name__, "error": str(exc)},
            )
            return None

    async def _store_put(self, request_id: str, result: TransportResult) -> None:
        try:
            await self._store.put(request_id, result.to_dict())
        except (OSError, ValueError, TypeError, ConnectionError) as exc:
            self._events.warn(
                "transport",
                "result_store_write_failed",
                {"request_id": request_id, "error_type": exc.__class__.__name__, "error": str(exc)},
            )

    async def _cleanup_loop(self, interval_seconds: float) -> None:
        while True:
            await self._clock.sleep(interval_seconds)
            try:
                purged = await self._store.purge_expired()
            except (OSError, ValueError, ConnectionError) as exc:
                self._events.warn(
                    "transport",
                    "result_store_purge_failed",
                    {"error_type": exc.__class__.__name__, "error": str(exc)},
                )
                continue
            if purged:
                self._events.debug("transport", "result_store_purged", {"purged": purged})

    def _own(self, client: httpx.AsyncClient) -> httpx.AsyncClient:
        self._owned_clients.append(client)
        return client

    def _timeout(self) -> httpx.Timeout:
        connect = max(0.1, self.config.connect_timeout_seconds)
        read = max(0.1, self.config.read_timeout_seconds)
        return httpx.Timeout(timeout=None, connect=connect, read=read, write=read, pool=connect)

    def _build_primary_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout(),
            limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
            http2=self.config.http2_enabled and _can_enable_http2(),
        )

    def _build_secondary_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout(),
            limits=httpx.Limits(max_connections=64, max_keepalive_connections=0),
            headers={"Connection": "close"},
        )


def _terminal_payload(event: dict[str, Any]) -> Any:
    response = event.get("response")
    if isinstance(response, dict):
        return response
    return event


def _as_replayed(result: TransportResult) -> TransportResult:
    if result.meta.replayed:
        return result
    return replace(result, meta=replace(result.meta, replayed=True))


def _authorization_header(headers: Mapping[str, str]) -> str | None:
    for key, value in headers.items():
        if key.lower() == "authorization":
            return value
    return None


def _discard(items: list[Any], item: Any) -> None:
    if item in items:
        items.remove(item)
