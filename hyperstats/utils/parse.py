from __future__ import annotations

import math
from typing import Any


def parse_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def parse_int(value: Any) -> int | None:
    result = parse_float(value)
    if result is None:
        return None
    return int(result)


def positive(value: float | None) -> bool:
    return value is not None and value > 0
