"""Token / cost / latency aggregates for a run, candidate vs. baseline."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from promptgate.services.eval.values import read_double, round_half_up


@dataclass
class PerformanceSnapshot:
    avg_tokens_per_case: Optional[float]
    avg_cost_usd_per_case: Optional[float]
    avg_latency_ms: Optional[float]
    p95_latency_ms: Optional[float]
    sample_size: int
    token_sample_size: int
    cost_sample_size: int
    latency_sample_size: int

    @classmethod
    def from_metas(cls, metas: Optional[List[Optional[Dict[str, Any]]]]) -> "PerformanceSnapshot":
        tokens: List[float] = []
        costs: List[float] = []
        latencies: List[float] = []
        sample_size = 0
        for meta in metas or []:
            if not meta:
                continue
            token_value = read_double(meta.get("totalTokens"))
            cost_value = read_double(meta.get("estimatedCostUsd"))
            latency_value = read_double(meta.get("latencyMs"))
            if token_value is not None:
                tokens.append(token_value)
            if cost_value is not None:
                costs.append(cost_value)
            if latency_value is not None:
                latencies.append(latency_value)
            if token_value is not None or cost_value is not None or latency_value is not None:
                sample_size += 1
        return cls(
            avg_tokens_per_case=_average(tokens, 2),
            avg_cost_usd_per_case=_average(costs, 6),
            avg_latency_ms=_average(latencies, 2),
            p95_latency_ms=_percentile95(latencies, 2),
            sample_size=sample_size,
            token_sample_size=len(tokens),
            cost_sample_size=len(costs),
            latency_sample_size=len(latencies),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "avgTokensPerCase": self.avg_tokens_per_case,
            "avgCostUsdPerCase": self.avg_cost_usd_per_case,
            "avgLatencyMs": self.avg_latency_ms,
            "p95LatencyMs": self.p95_latency_ms,
            "sampleSize": self.sample_size,
            "tokenSampleSize": self.token_sample_size,
            "costSampleSize": self.cost_sample_size,
            "latencySampleSize": self.latency_sample_size,
        }


def build_summary(
    candidate_metas: Optional[List[Optional[Dict[str, Any]]]],
    baseline_metas: Optional[List[Optional[Dict[str, Any]]]],
    compare_mode: bool,
) -> Dict[str, Any]:
    candidate = PerformanceSnapshot.from_metas(candidate_metas)
    summary: Dict[str, Any] = {"candidate": candidate.as_dict()}
    if not compare_mode:
        return summary

    baseline = PerformanceSnapshot.from_metas(baseline_metas)
    summary["baseline"] = baseline.as_dict()
    summary["delta"] = {
        "avgTokensPerCase": _metric_delta(candidate.avg_tokens_per_case, baseline.avg_tokens_per_case, 2),
        "avgCostUsdPerCase": _metric_delta(candidate.avg_cost_usd_per_case, baseline.avg_cost_usd_per_case, 6),
        "avgLatencyMs": _metric_delta(candidate.avg_latency_ms, baseline.avg_latency_ms, 2),
        "p95LatencyMs": _metric_delta(candidate.p95_latency_ms, baseline.p95_latency_ms, 2),
    }
    return summary


def _metric_delta(candidate: Optional[float], baseline: Optional[float], places: int) -> Dict[str, Optional[float]]:
    if candidate is None or baseline is None:
        return {"value": None, "pct": None}
    diff = candidate - baseline
    pct = None if abs(baseline) < 1e-7 else round_half_up((diff / baseline) * 100.0, 2)
    return {"value": round_half_up(diff, places), "pct": pct}


def _average(values: List[float], places: int) -> Optional[float]:
    if not values:
        return None
    return round_half_up(sum(values) / len(values), places)


def _percentile95(values: List[float], places: int) -> Optional[float]:
    if not values:
        return None
    ordered = sorted(values)
    rank = math.ceil(len(ordered) * 0.95) - 1
    index = max(0, min(rank, len(ordered) - 1))
    return round_half_up(ordered[index], places)
