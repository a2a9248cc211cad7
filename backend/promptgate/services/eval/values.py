"""Narrow readers for loosely-typed JSON blobs (judge output, rule checks, summaries)."""
from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, List, Optional

MAX_MESSAGE_LENGTH = 400


def read_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() == "true"


def read_double(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if math.isnan(number):
        return None
    return number


def safe_value(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def to_string_list(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item) for item in value if item is not None]


def trim_to_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def limit_non_blank(items: List[str], limit: int) -> List[str]:
    result: List[str] = []
    if limit <= 0:
        return result
    for item in items or []:
        if item is None:
            continue
        text = str(item).strip()
        if not text:
            continue
        result.append(text)
        if len(result) >= limit:
            break
    return result


def round_half_up(value: float, places: int = 2) -> float:
    if value is None or math.isnan(value) or math.isinf(value):
        return 0.0
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def sanitize_message(message: Any) -> str:
    text = str(message).strip() if message is not None else ""
    if not text:
        return "unknown"
    return text[:MAX_MESSAGE_LENGTH]
