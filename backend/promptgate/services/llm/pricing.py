"""Per-model token pricing used for cost estimates in run metas and run estimates."""
from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional, Tuple

PRICING_VERSION = "v1.0.0"

# USD per 1k tokens: (input, output)
PRICING_TABLE: Dict[str, Tuple[Decimal, Decimal]] = {
    "gpt-4o": (Decimal("0.005"), Decimal("0.015")),
    "gpt-4o-mini": (Decimal("0.00015"), Decimal("0.0006")),
    "gpt-4.1": (Decimal("0.002"), Decimal("0.008")),
    "gpt-4.1-mini": (Decimal("0.0004"), Decimal("0.0016")),
    "gpt-4.1-nano": (Decimal("0.0001"), Decimal("0.0004")),
    "gpt-4": (Decimal("0.03"), Decimal("0.06")),
    "gpt-3.5-turbo": (Decimal("0.0005"), Decimal("0.0015")),
    "claude-3-5-sonnet": (Decimal("0.003"), Decimal("0.015")),
    "claude-3-5-haiku": (Decimal("0.001"), Decimal("0.005")),
    "claude-3-7-sonnet": (Decimal("0.003"), Decimal("0.015")),
    "claude-3-opus": (Decimal("0.015"), Decimal("0.075")),
    "claude-3-sonnet": (Decimal("0.003"), Decimal("0.015")),
    "claude-3-haiku": (Decimal("0.00025"), Decimal("0.00125")),
    "gemini-1.5-pro": (Decimal("0.00125"), Decimal("0.005")),
    "gemini-2.0-flash": (Decimal("0.0001"), Decimal("0.0004")),
    "gemini-2.5-flash-lite": (Decimal("0.00005"), Decimal("0.0002")),
}

MODEL_ALIASES: Dict[str, str] = {
    "gpt-4-turbo": "gpt-4",
    "gpt-4-turbo-preview": "gpt-4",
    "gemini-2.5-flash": "gemini-2.5-flash-lite",
    "claude-3-5-haiku-latest": "claude-3-5-haiku",
    "claude-3-7-sonnet-latest": "claude-3-7-sonnet",
}

_DATE_SUFFIX = re.compile(r"-(\d{4}-\d{2}-\d{2}|\d{8})$")
_VERSION_SUFFIX = re.compile(r"-v\d+$")


def normalize_model_name(model: Optional[str]) -> str:
    normalized = str(model or "").strip().lower()
    normalized = _DATE_SUFFIX.sub("", normalized)
    normalized = _VERSION_SUFFIX.sub("", normalized)
    return MODEL_ALIASES.get(normalized, normalized)


def is_known_model(model: Optional[str]) -> bool:
    if not model or not str(model).strip():
        return False
    return normalize_model_name(model) in PRICING_TABLE


def calculate_cost(model: Optional[str], input_tokens: Optional[int], output_tokens: Optional[int]) -> Decimal:
    if not model or input_tokens is None or output_tokens is None:
        return Decimal("0")
    prices = PRICING_TABLE.get(normalize_model_name(model))
    if prices is None:
        return Decimal("0")
    input_price, output_price = prices
    quantum = Decimal("0.00000001")
    input_cost = (input_price * Decimal(max(0, int(input_tokens))) / Decimal(1000)).quantize(quantum, ROUND_HALF_UP)
    output_cost = (output_price * Decimal(max(0, int(output_tokens))) / Decimal(1000)).quantize(quantum, ROUND_HALF_UP)
    return input_cost + output_cost


def calculate_cost_from_total_tokens(model: Optional[str], total_tokens: Optional[int]) -> Decimal:
    """Some providers only report a total; split it 70/30 between input and output."""
    if not model or total_tokens is None or total_tokens <= 0:
        return Decimal("0")
    input_tokens = min(max(0, int(round(total_tokens * 0.7))), total_tokens)
    return calculate_cost(model, input_tokens, total_tokens - input_tokens)
