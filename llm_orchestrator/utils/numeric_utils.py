from __future__ import annotations

import math
from typing import Any


def coerce_optional_float(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            value = float(value)
        except ValueError:
            return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return None


def clamp(value: float, low: float, high: float) -> float:
    if math.isnan(value):
        return high
    if math.isinf(value):
        return high if value > 0 else low
    return max(low, min(high, value))


def positive_or_none(value: Any) -> float | None:
    parsed = coerce_optional_float(value)
    if parsed is None or parsed <= 0:
        return None
    return parsed
