"""Append-only audit of human review changes on case results."""
from sqlalchemy import Boolean, Column, Integer, String, DateTime, Text, ForeignKey, Enum, UniqueConstraint

from promptgate.models.base import Base, utcnow
from promptgate.models.eval_run import EvalHumanReviewVerdict


class EvalCaseReviewAudit(Base):
    __tablename__ = "eval_case_result_review_audits"
    __table_args__ = (
        # request_id is the idempotency key for review submissions
        UniqueConstraint("eval_case_result_id", "request_id", name="uq_eval_case_review_audit_request"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    eval_run_id = Column(Integer, ForeignKey("eval_runs.id"), nullable=False, index=True)
    eval_case_result_id = Column(Integer, ForeignKey("eval_case_results.id"), nullable=False, index=True)

    review_verdict = Column(Enum(EvalHumanReviewVerdict), nullable=False)
    override_pass = Column(Boolean, nullable=True)
    comment = Column(Text, nullable=True)
    category = Column(String(50), nullable=True)
    request_id = Column(String(120), nullable=True)

    changed_by = Column(Integer, nullable=True)
    changed_at = Column(DateTime, default=utcnow, nullable=False)

    def as_dict(self):
        return {
            "id": self.id,
            "evalRunId": self.eval_run_id,
            "evalCaseResultId": self.eval_case_result_id,
            "reviewVerdict": self.review_verdict.value if self.review_verdict else None,
            "overridePass": self.override_pass,
            "comment": self.comment,
            "category": self.category,
            "requestId": self.request_id,
            "changedBy": self.changed_by,
            "changedAt": self.changed_at.isoformat() if self.changed_at else None,
        }
