from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from redis.asyncio import from_url as redis_from_url

from llm_orchestrator.config import ResultCacheConfig
from llm_orchestrator.runtime.clock import Clock, SystemClock
from llm_orchestrator.utils.numeric_utils import coerce_optional_float
from llm_orchestrator.utils.persistence import StateFile

STATUS_DONE = "done"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
_KEY_PREFIX = "llm_orchestrator:result:"


def result_status(result: Mapping[str, Any]) -> str:
    if result.get("ok") is not False:
        return STATUS_DONE
    error = result.get("error")
    if isinstance(error, Mapping) and error.get("code") == "ABORTED":
        return STATUS_CANCELLED
    return STATUS_FAILED


@dataclass(slots=True)
class CachedResult:
    request_id: str
    ts: float
    status: str
    result: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "ts": self.ts,
            "status": self.status,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> CachedResult | None:
        request_id = raw.get("request_id")
        ts = coerce_optional_float(raw.get("ts"))
        result = raw.get("result")
        if not isinstance(request_id, str) or ts is None or not isinstance(result, dict):
            return None
        status = raw.get("status")
        if status not in {STATUS_DONE, STATUS_FAILED, STATUS_CANCELLED}:
            status = result_status(result)
        return cls(request_id=request_id, ts=ts, status=status, result=result)


class ResultStore(Protocol):
    async def get(self, request_id: str) -> CachedResult | None: ...

    async def put(self, request_id: str, result: dict[str, Any]) -> CachedResult: ...

    async def delete(self, request_id: str) -> None: ...

    async def purge_expired(self) -> int: ...

    async def aclose(self) -> None: ...


class InMemoryResultStore:
    def __init__(
        self,
        *,
        ttl_seconds: float = 24 * 60 * 60.0,
        clock: Clock | None = None,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock or SystemClock()
        self._lock = asyncio.Lock()
        self._rows: dict[str, CachedResult] = {}

    async def get(self, request_id: str) -> CachedResult | None:
        if not request_id:
            return None
        async with self._lock:
            row = self._rows.get(request_id)
            if row is None:
                return None
            if not self._expired(row):
                return row
            self._rows.pop(request_id, None)
        await self._on_change()
        return None

    async def put(self, request_id: str, result: dict[str, Any]) -> CachedResult:
        row = CachedResult(
            request_id=request_id,
            ts=self._clock.time(),
            status=result_status(result),
            result=result,
        )
        async with self._lock:
            self._rows[request_id] = row
        await self._on_change()
        return row

    async def delete(self, request_id: str) -> None:
        async with self._lock:
            removed = self._rows.pop(request_id, None) is not None
        if removed:
            await self._on_change()

    async def purge_expired(self) -> int:
        async with self._lock:
            expired = [key for key, row in self._rows.items() if self._expired(row)]
            for key in expired:
                self._rows.pop(key, None)
        if expired:
            await self._on_change()
        return len(expired)

    async def aclose(self) -> None:
        return None

    def __len__(self) -> int:
        return len(self._rows)

    def _expired(self, row: CachedResult) -> bool:
        return self._clock.time() - row.ts > self._ttl_seconds

    async def _on_change(self) -> None:
        return None


class FileResultStore(InMemoryResultStore):
    """Result rows mirrored to a JSON file so replays survive a restart."""

    def __init__(
        self,
        path: str | Path,
        *,
        ttl_seconds: float = 24 * 60 * 60.0,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(ttl_seconds=ttl_seconds, clock=clock)
        self._file = StateFile(path, fmt="json")
        self._write_lock = asyncio.Lock()
        self._dirty = False
        self.writes = 0
        self._load()

    @property
    def path(self) -> Path:
        return self._file.path

    def _load(self) -> None:
        payload = self._file.load()
        rows = payload.get("results")
        if not isinstance(rows, dict):
            return
        for request_id, raw in rows.items():
            if not isinstance(raw, Mapping):
                continue
            row = CachedResult.from_dict(raw)
            if row is None or row.request_id != request_id:
                continue
            self._rows[request_id] = row

    async def _on_change(self) -> None:
        # Changes made while a write is in flight are folded into the next one.
        self._dirty = True
        async with self._write_lock:
            if not self._dirty:
                return
            self._dirty = False
            payload = {"results": {key: row.to_dict() for key, row in self._rows.items()}}
            await asyncio.to_thread(self._file.write, payload)
            self.writes += 1


class AsyncKeyValueStore(Protocol):
    async def get(self, key: str) -> bytes | str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def aclose(self) -> None: ...


class RedisAsyncKeyValueStore:
    def __init__(self, redis_client: Any) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> bytes | str | None:
        value = await self._redis.get(key)
        if isinstance(value, (bytes, str)):
            return value
        return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def aclose(self) -> None:
        await self._redis.aclose()


def build_redis_key_value_store(redis_url: str) -> AsyncKeyValueStore:
    client = redis_from_url(redis_url, decode_responses=False)
    return RedisAsyncKeyValueStore(redis_client=client)


class KeyValueResultStore:
    """Result rows in redis; expiry is delegated to the key TTL."""

    def __init__(
        self,
        kv_store: AsyncKeyValueStore,
        *,
        ttl_seconds: float = 24 * 60 * 60.0,
        clock: Clock | None = None,
    ) -> None:
        self._kv_store = kv_store
        self._ttl_seconds = ttl_seconds
        self._clock = clock or SystemClock()

    async def get(self, request_id: str) -> CachedResult | None:
        if not request_id:
            return None
        raw = await self._kv_store.get(_KEY_PREFIX + request_id)
        if not raw:
            return None
        row = _deserialize_row(raw)
        if row is None:
            return None
        if self._clock.time() - row.ts > self._ttl_seconds:
            await self._kv_store.delete(_KEY_PREFIX + request_id)
            return None
        return row

    async def put(self, request_id: str, result: dict[str, Any]) -> CachedResult:
        row = CachedResult(
            request_id=request_id,
            ts=self._clock.time(),
            status=result_status(result),
            result=result,
        )
        serialized = json.dumps(
            row.to_dict(), ensure_ascii=True, separators=(",", ":"), default=str
        )
        await self._kv_store.set(
            _KEY_PREFIX + request_id,
            serialized,
            ttl_seconds=max(1, int(self._ttl_seconds)),
        )
        return row

    async def delete(self, request_id: str) -> None:
        await self._kv_store.delete(_KEY_PREFIX + request_id)

    async def purge_expired(self) -> int:
        return 0

    async def aclose(self) -> None:
        await self._kv_store.aclose()


def _deserialize_row(raw: bytes | str) -> CachedResult | None:
    try:
        decoded = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        payload = json.loads(decoded)
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(payload, Mapping):
        return None
    return CachedResult.from_dict(payload)


def build_result_store(
    config: ResultCacheConfig,
    redis_url: str | None = None,
    file_path: str | Path | None = None,
    *,
    clock: Clock | None = None,
    logger: logging.Logger | None = None,
    create_key_value_store: Any | None = None,
) -> ResultStore:
    path = file_path or config.path
    if redis_url:
        factory = create_key_value_store or build_redis_key_value_store
        try:
            return KeyValueResultStore(
                factory(redis_url), ttl_seconds=config.ttl_seconds, clock=clock
            )
        except ValueError as exc:
            if logger is not None:
                logger.warning(
                    "result_store_redis_unavailable reason=%s fallback=%s",
                    str(exc),
                    "file" if path else "in_memory",
                )
    if path:
        return FileResultStore(path, ttl_seconds=config.ttl_seconds, clock=clock)
    return InMemoryResultStore(ttl_seconds=config.ttl_seconds, clock=clock)
