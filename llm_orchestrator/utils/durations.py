from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from llm_orchestrator.utils.numeric_utils import coerce_optional_float

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration_seconds(raw: str | None) -> float | None:
    """Parse compact reset durations such as ``17ms``, ``1s``, ``6m0s`` or ``1h30m``.

    The whole string must be made of ``<number><unit>`` parts; anything else
    returns ``None`` so callers can keep their previous value.
    """
    if not isinstance(raw, str):
        return None
    value = raw.strip()
    if not value:
        return None

    total = 0.0
    consumed = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != consumed:
            return None
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        consumed = match.end()
    if consumed != len(value):
        return None
    return total


def parse_retry_after_seconds(
    headers: Mapping[str, str] | None,
    default_seconds: float | None = None,
) -> float | None:
    if not headers:
        return default_seconds

    retry_after_ms = coerce_optional_float(_header(headers, "retry-after-ms"))
    if retry_after_ms is not None and retry_after_ms > 0:
        return retry_after_ms / 1000.0

    raw = _header(headers, "retry-after")
    if not raw:
        return default_seconds

    value = raw.strip()
    if not value:
        return default_seconds

    seconds = coerce_optional_float(value)
    if seconds is not None:
        return seconds if seconds > 0 else default_seconds

    try:
        retry_dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default_seconds
    if retry_dt.tzinfo is None:
        retry_dt = retry_dt.replace(tzinfo=timezone.utc)
    delta = (retry_dt - datetime.now(timezone.utc)).total_seconds()
    if delta > 0:
        return float(delta)
    return default_seconds


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    if value is None:
        return None
    return str(value)
