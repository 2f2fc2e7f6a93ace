from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any, Literal

logger = logging.getLogger("llm_orchestrator")

EventLevel = Literal["debug", "info", "warn", "error"]
EventSink = Callable[[dict[str, Any]], None]

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}
_SECRET_KEY_MARKERS = (
    "authorization",
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "cookie",
)
REDACTED = "[redacted]"


def is_secret_key(key: str) -> bool:
    lowered = key.strip().lower().replace("-", "_")
    # Token counts (est_tokens, remaining_tokens, ...) are budget figures.
    if lowered.endswith("tokens"):
        return False
    return any(marker in lowered for marker in _SECRET_KEY_MARKERS)


def redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            str(key): (REDACTED if is_secret_key(str(key)) else redact(item))
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


class EventLogger:
    """Structured ``{level, tag, message, meta}`` events.

    Every event is written to the stdlib logger in ``message key=value`` form
    and, when a sink is configured, forwarded as a redacted dict.
    """

    def __init__(
        self,
        sink: EventSink | None = None,
        *,
        log: logging.Logger | None = None,
    ) -> None:
        self._sink = sink
        self._log = log or logger

    def emit(
        self,
        level: EventLevel,
        tag: str,
        message: str,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        safe_meta = redact(dict(meta or {}))
        log_level = _LOG_LEVELS.get(level, logging.INFO)
        if self._log.isEnabledFor(log_level):
            self._log.log(log_level, "%s tag=%s %s", message, tag, _format_fields(safe_meta))
        if self._sink is None:
            return
        self._sink({"level": level, "tag": tag, "message": message, "meta": safe_meta})

    def debug(self, tag: str, message: str, meta: Mapping[str, Any] | None = None) -> None:
        self.emit("debug", tag, message, meta)

    def info(self, tag: str, message: str, meta: Mapping[str, Any] | None = None) -> None:
        self.emit("info", tag, message, meta)

    def warn(self, tag: str, message: str, meta: Mapping[str, Any] | None = None) -> None:
        self.emit("warn", tag, message, meta)

    def error(self, tag: str, message: str, meta: Mapping[str, Any] | None = None) -> None:
        self.emit("error", tag, message, meta)


def _format_fields(meta: Mapping[str, Any]) -> str:
    parts = []
    for key, value in meta.items():
        if isinstance(value, float):
            rendered = f"{value:.3f}"
        else:
            rendered = str(value)
        parts.append(f"{key}={rendered}")
    return " ".join(parts)
