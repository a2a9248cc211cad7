"""Release gate: aggregate run metrics vs. workspace thresholds -> deploy or hold."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from promptgate.models.eval_run import EvalMode
from promptgate.services.eval.values import safe_value

SAFE_TO_DEPLOY = "SAFE_TO_DEPLOY"
HOLD = "HOLD"

RISK_LOW = "LOW"
RISK_MEDIUM = "MEDIUM"
RISK_HIGH = "HIGH"

BASIS_RUN_SNAPSHOT = "RUN_SNAPSHOT"

PASS_RATE_BELOW_THRESHOLD = "PASS_RATE_BELOW_THRESHOLD"
AVG_SCORE_BELOW_THRESHOLD = "AVG_SCORE_BELOW_THRESHOLD"
ERROR_RATE_ABOVE_THRESHOLD = "ERROR_RATE_ABOVE_THRESHOLD"
COMPARE_REGRESSION_DETECTED = "COMPARE_REGRESSION_DETECTED"
COMPARE_IMPROVEMENT_MINOR = "COMPARE_IMPROVEMENT_MINOR"
COMPARE_BASELINE_INCOMPLETE = "COMPARE_BASELINE_INCOMPLETE"

_HIGH_RISK_REASONS = {
    COMPARE_REGRESSION_DETECTED,
    COMPARE_BASELINE_INCOMPLETE,
    ERROR_RATE_ABOVE_THRESHOLD,
}

REASON_LABELS = {
    PASS_RATE_BELOW_THRESHOLD: "Pass rate below threshold",
    AVG_SCORE_BELOW_THRESHOLD: "Average score below threshold",
    ERROR_RATE_ABOVE_THRESHOLD: "Error rate above threshold",
    COMPARE_REGRESSION_DETECTED: "Regression against the deployed version",
    COMPARE_IMPROVEMENT_MINOR: "Improvement is marginal",
    COMPARE_BASELINE_INCOMPLETE: "Baseline comparison data incomplete",
}


@dataclass
class ReleaseDecision:
    release_decision: str
    risk_level: str
    reasons: List[str] = field(default_factory=list)
    decision_basis: str = BASIS_RUN_SNAPSHOT

    @property
    def is_hold(self) -> bool:
        return self.release_decision == HOLD

    def as_dict(self) -> Dict[str, Any]:
        return {
            "releaseDecision": self.release_decision,
            "riskLevel": self.risk_level,
            "reasons": list(self.reasons),
            "decisionBasis": self.decision_basis,
        }


def calculate(
    mode: Optional[EvalMode],
    criteria,
    pass_rate: float,
    avg_overall_score: float,
    error_rate: float,
    avg_score_delta: Optional[float],
    compare_baseline_complete: Optional[bool] = True,
) -> ReleaseDecision:
    """Map run aggregates onto a decision.

    ``criteria`` is anything exposing the four threshold attributes
    (an ``EvalReleaseCriteria`` row in practice). Blocking reasons come
    first in check order, then warnings.
    """
    blocking: List[str] = []
    warnings: List[str] = []

    if pass_rate < safe_value(criteria.min_pass_rate):
        blocking.append(PASS_RATE_BELOW_THRESHOLD)
    if avg_overall_score < safe_value(criteria.min_avg_overall_score):
        blocking.append(AVG_SCORE_BELOW_THRESHOLD)
    if error_rate > safe_value(criteria.max_error_rate):
        blocking.append(ERROR_RATE_ABOVE_THRESHOLD)

    compare_mode = mode == EvalMode.COMPARE_ACTIVE
    if compare_mode and avg_score_delta is not None:
        if avg_score_delta < 0:
            blocking.append(COMPARE_REGRESSION_DETECTED)
        elif avg_score_delta < safe_value(criteria.min_improvement_notice_delta):
            warnings.append(COMPARE_IMPROVEMENT_MINOR)
    if compare_mode and compare_baseline_complete is False:
        blocking.append(COMPARE_BASELINE_INCOMPLETE)

    return ReleaseDecision(
        release_decision=HOLD if blocking else SAFE_TO_DEPLOY,
        risk_level=_risk_level(blocking, warnings),
        reasons=blocking + warnings,
    )


def _risk_level(blocking: List[str], warnings: List[str]) -> str:
    if any(reason in _HIGH_RISK_REASONS for reason in blocking):
        return RISK_HIGH
    if blocking or warnings:
        return RISK_MEDIUM
    return RISK_LOW


def reason_label(reason: str) -> str:
    return REASON_LABELS.get(reason, reason)
