"""Per-workspace release-gate thresholds and their change history."""
import math
from typing import Optional

from sqlalchemy import Column, Integer, DateTime, ForeignKey, Float
from sqlalchemy.orm import relationship

from promptgate.models.base import Base, utcnow

DEFAULT_MIN_PASS_RATE = 90.0
DEFAULT_MIN_AVG_OVERALL_SCORE = 75.0
DEFAULT_MAX_ERROR_RATE = 10.0
DEFAULT_MIN_IMPROVEMENT_NOTICE_DELTA = 3.0


def _normalize(value: Optional[float], fallback: float) -> float:
    if value is None:
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if math.isnan(number) or math.isinf(number):
        return fallback
    return number


class EvalReleaseCriteria(Base):
    __tablename__ = "eval_release_criteria"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, unique=True)

    min_pass_rate = Column(Float, nullable=False, default=DEFAULT_MIN_PASS_RATE)
    min_avg_overall_score = Column(Float, nullable=False, default=DEFAULT_MIN_AVG_OVERALL_SCORE)
    max_error_rate = Column(Float, nullable=False, default=DEFAULT_MAX_ERROR_RATE)
    min_improvement_notice_delta = Column(Float, nullable=False, default=DEFAULT_MIN_IMPROVEMENT_NOTICE_DELTA)

    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @classmethod
    def create_default(cls, workspace_id: int) -> "EvalReleaseCriteria":
        return cls(
            workspace_id=workspace_id,
            min_pass_rate=DEFAULT_MIN_PASS_RATE,
            min_avg_overall_score=DEFAULT_MIN_AVG_OVERALL_SCORE,
            max_error_rate=DEFAULT_MAX_ERROR_RATE,
            min_improvement_notice_delta=DEFAULT_MIN_IMPROVEMENT_NOTICE_DELTA,
        )

    def update(
        self,
        min_pass_rate: Optional[float],
        min_avg_overall_score: Optional[float],
        max_error_rate: Optional[float],
        min_improvement_notice_delta: Optional[float],
        actor_user_id: Optional[int],
    ) -> None:
        self.min_pass_rate = _normalize(min_pass_rate, DEFAULT_MIN_PASS_RATE)
        self.min_avg_overall_score = _normalize(min_avg_overall_score, DEFAULT_MIN_AVG_OVERALL_SCORE)
        self.max_error_rate = _normalize(max_error_rate, DEFAULT_MAX_ERROR_RATE)
        self.min_improvement_notice_delta = _normalize(
            min_improvement_notice_delta, DEFAULT_MIN_IMPROVEMENT_NOTICE_DELTA
        )
        self.updated_by = actor_user_id
        if self.created_by is None:
            self.created_by = actor_user_id

    def as_dict(self):
        return {
            "workspaceId": self.workspace_id,
            "minPassRate": self.min_pass_rate,
            "minAvgOverallScore": self.min_avg_overall_score,
            "maxErrorRate": self.max_error_rate,
            "minImprovementNoticeDelta": self.min_improvement_notice_delta,
            "updatedBy": self.updated_by,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class EvalReleaseCriteriaAudit(Base):
    __tablename__ = "eval_release_criteria_audits"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    eval_release_criteria_id = Column(Integer, ForeignKey("eval_release_criteria.id"), nullable=True)

    min_pass_rate = Column(Float, nullable=False)
    min_avg_overall_score = Column(Float, nullable=False)
    max_error_rate = Column(Float, nullable=False)
    min_improvement_notice_delta = Column(Float, nullable=False)

    changed_by = Column(Integer, nullable=True)
    changed_at = Column(DateTime, default=utcnow, nullable=False)

    criteria = relationship("EvalReleaseCriteria")

    @classmethod
    def snapshot(cls, criteria: EvalReleaseCriteria, changed_by: Optional[int]) -> "EvalReleaseCriteriaAudit":
        return cls(
            workspace_id=criteria.workspace_id,
            criteria=criteria,
            min_pass_rate=criteria.min_pass_rate,
            min_avg_overall_score=criteria.min_avg_overall_score,
            max_error_rate=criteria.max_error_rate,
            min_improvement_notice_delta=criteria.min_improvement_notice_delta,
            changed_by=changed_by,
        )

    def as_dict(self):
        return {
            "id": self.id,
            "workspaceId": self.workspace_id,
            "minPassRate": self.min_pass_rate,
            "minAvgOverallScore": self.min_avg_overall_score,
            "maxErrorRate": self.max_error_rate,
            "minImprovementNoticeDelta": self.min_improvement_notice_delta,
            "changedBy": self.changed_by,
            "changedAt": self.changed_at.isoformat() if self.changed_at else None,
        }
