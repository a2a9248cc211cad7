"""Evaluation run and per-case result models.

Both rows are state machines: status only moves through the guarded
transition methods below, never through direct assignment from services.
"""
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple
import enum

from sqlalchemy import Boolean, Column, Integer, String, DateTime, JSON, Text, ForeignKey, Enum, Float
from sqlalchemy.orm import relationship

from promptgate.models.base import Base, utcnow


class EvalMode(enum.Enum):
    CANDIDATE_ONLY = "CANDIDATE_ONLY"
    COMPARE_ACTIVE = "COMPARE_ACTIVE"


class EvalTriggerType(enum.Enum):
    MANUAL = "MANUAL"
    AUTO_VERSION_CREATE = "AUTO_VERSION_CREATE"


class EvalRunStatus(enum.Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_RUN_STATUSES = (EvalRunStatus.FINISHED, EvalRunStatus.FAILED, EvalRunStatus.CANCELLED)


class EvalCaseStatus(enum.Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    OK = "OK"
    ERROR = "ERROR"


class EvalHumanReviewVerdict(enum.Enum):
    UNREVIEWED = "UNREVIEWED"
    CORRECT = "CORRECT"
    INCORRECT = "INCORRECT"


class RubricTemplateCode(enum.Enum):
    GENERAL_TEXT = "GENERAL_TEXT"
    SUMMARY = "SUMMARY"
    JSON_EXTRACTION = "JSON_EXTRACTION"
    CLASSIFICATION = "CLASSIFICATION"
    CUSTOM = "CUSTOM"


class EvalRun(Base):
    """One evaluation of a prompt version against a dataset."""
    __tablename__ = "eval_runs"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    prompt_id = Column(Integer, ForeignKey("prompts.id"), nullable=False, index=True)
    prompt_version_id = Column(Integer, ForeignKey("prompt_versions.id"), nullable=False)
    dataset_id = Column(Integer, ForeignKey("eval_datasets.id"), nullable=False)

    mode = Column(Enum(EvalMode), nullable=False, default=EvalMode.CANDIDATE_ONLY)
    trigger_type = Column(Enum(EvalTriggerType), nullable=False, default=EvalTriggerType.MANUAL)
    rubric_template_code = Column(Enum(RubricTemplateCode), nullable=False, default=RubricTemplateCode.GENERAL_TEXT)
    rubric_overrides_json = Column(JSON, nullable=True)

    # Snapshots taken at enqueue time
    candidate_provider = Column(String(50), nullable=True)
    candidate_model = Column(String(120), nullable=True)
    judge_provider = Column(String(50), nullable=True)
    judge_model = Column(String(120), nullable=True)

    status = Column(Enum(EvalRunStatus), nullable=False, default=EvalRunStatus.QUEUED, index=True)
    total_cases = Column(Integer, nullable=False, default=0)
    processed_cases = Column(Integer, nullable=False, default=0)
    passed_cases = Column(Integer, nullable=False, default=0)
    failed_cases = Column(Integer, nullable=False, default=0)
    error_cases = Column(Integer, nullable=False, default=0)

    summary_json = Column(JSON, nullable=True)
    cost_json = Column(JSON, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    timeout_at = Column(DateTime, nullable=True)
    fail_reason_code = Column(String(50), nullable=True)
    fail_reason = Column(String(500), nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    case_results = relationship("EvalCaseResult", back_populates="eval_run", order_by="EvalCaseResult.id")
    prompt_version = relationship("PromptVersion")
    dataset = relationship("EvalDataset")

    def __init__(self, **kwargs):
        kwargs.setdefault("status", EvalRunStatus.QUEUED)
        for counter in ("total_cases", "processed_cases", "passed_cases", "failed_cases", "error_cases"):
            kwargs.setdefault(counter, 0)
        super().__init__(**kwargs)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def mark_running(self) -> bool:
        if self.status != EvalRunStatus.QUEUED:
            return False
        self.status = EvalRunStatus.RUNNING
        self.started_at = utcnow()
        return True

    def mark_running_with_timeout(self, max_duration: timedelta) -> bool:
        if not self.mark_running():
            return False
        self.timeout_at = self.started_at + max_duration
        return True

    def ensure_timeout_if_missing(self, max_duration: timedelta) -> bool:
        if self.status == EvalRunStatus.RUNNING and self.started_at is not None and self.timeout_at is None:
            self.timeout_at = self.started_at + max_duration
            return True
        return False

    def is_timed_out(self) -> bool:
        if self.timeout_at is None:
            return False
        return utcnow() > self.timeout_at

    def fail_with_reason(self, reason_code: str, reason_message: str) -> bool:
        if self.is_terminal():
            return False
        self.status = EvalRunStatus.FAILED
        self.fail_reason_code = reason_code
        self.fail_reason = (reason_message or "")[:500]
        self.completed_at = utcnow()
        return True

    def mark_cancelled(self) -> bool:
        if self.is_terminal():
            return False
        self.status = EvalRunStatus.CANCELLED
        self.completed_at = utcnow()
        return True

    def on_case_ok(self, passed: bool) -> None:
        self.processed_cases = (self.processed_cases or 0) + 1
        if passed:
            self.passed_cases = (self.passed_cases or 0) + 1
        else:
            self.failed_cases = (self.failed_cases or 0) + 1

    def on_case_error(self) -> None:
        self.processed_cases = (self.processed_cases or 0) + 1
        self.error_cases = (self.error_cases or 0) + 1

    def finish(
        self,
        summary: Dict[str, Any],
        cost: Optional[Dict[str, Any]],
        counts: Optional[Tuple[int, int, int, int]] = None,
    ) -> bool:
        """Persist the final summary; ``counts`` is (processed, passed, failed, error)."""
        if self.is_terminal():
            return False
        if counts is not None:
            self.processed_cases, self.passed_cases, self.failed_cases, self.error_cases = counts
        self.summary_json = summary
        self.cost_json = cost
        self.status = EvalRunStatus.FINISHED
        self.completed_at = utcnow()
        return True

    def fail(self, summary: Dict[str, Any], cost: Optional[Dict[str, Any]]) -> bool:
        if self.is_terminal():
            return False
        self.summary_json = summary
        self.cost_json = cost
        self.status = EvalRunStatus.FAILED
        self.completed_at = utcnow()
        return True

    def reset_to_queued(self) -> bool:
        if self.status != EvalRunStatus.RUNNING:
            return False
        self.status = EvalRunStatus.QUEUED
        self.started_at = None
        self.timeout_at = None
        return True

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "promptId": self.prompt_id,
            "promptVersionId": self.prompt_version_id,
            "workspaceId": self.workspace_id,
            "datasetId": self.dataset_id,
            "mode": self.mode.value if self.mode else None,
            "triggerType": self.trigger_type.value if self.trigger_type else None,
            "rubricTemplateCode": self.rubric_template_code.value if self.rubric_template_code else None,
            "rubricOverrides": self.rubric_overrides_json,
            "candidateProvider": self.candidate_provider,
            "candidateModel": self.candidate_model,
            "judgeProvider": self.judge_provider,
            "judgeModel": self.judge_model,
            "status": self.status.value,
            "totalCases": self.total_cases,
            "processedCases": self.processed_cases,
            "passedCases": self.passed_cases,
            "failedCases": self.failed_cases,
            "errorCases": self.error_cases,
            "summary": self.summary_json,
            "cost": self.cost_json,
            "failReasonCode": self.fail_reason_code,
            "failReason": self.fail_reason,
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "createdAt": _iso(self.created_at),
        }


class EvalCaseResult(Base):
    """Outcome of one test case inside one run, plus its human review."""
    __tablename__ = "eval_case_results"

    id = Column(Integer, primary_key=True, index=True)
    eval_run_id = Column(Integer, ForeignKey("eval_runs.id"), nullable=False, index=True)
    test_case_id = Column(Integer, ForeignKey("eval_test_cases.id"), nullable=False)

    status = Column(Enum(EvalCaseStatus), nullable=False, default=EvalCaseStatus.QUEUED)

    candidate_output_text = Column(Text, nullable=True)
    baseline_output_text = Column(Text, nullable=True)
    candidate_meta_json = Column(JSON, nullable=True)
    baseline_meta_json = Column(JSON, nullable=True)
    rule_checks_json = Column(JSON, nullable=True)
    judge_output_json = Column(JSON, nullable=True)
    overall_score = Column(Float, nullable=True)
    pass_ = Column("pass", Boolean, nullable=True)

    human_review_verdict = Column(
        Enum(EvalHumanReviewVerdict), nullable=False, default=EvalHumanReviewVerdict.UNREVIEWED
    )
    human_override_pass = Column(Boolean, nullable=True)
    human_review_comment = Column(Text, nullable=True)
    human_review_category = Column(String(50), nullable=True)
    human_reviewed_by = Column(Integer, nullable=True)
    human_reviewed_at = Column(DateTime, nullable=True)

    error_code = Column(String(120), nullable=True)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    eval_run = relationship("EvalRun", back_populates="case_results")
    test_case = relationship("EvalTestCase")

    def __init__(self, **kwargs):
        kwargs.setdefault("status", EvalCaseStatus.QUEUED)
        kwargs.setdefault("human_review_verdict", EvalHumanReviewVerdict.UNREVIEWED)
        super().__init__(**kwargs)

    @classmethod
    def queue(cls, run: EvalRun, test_case) -> "EvalCaseResult":
        return cls(eval_run=run, test_case=test_case, status=EvalCaseStatus.QUEUED)

    def is_terminal(self) -> bool:
        return self.status in (EvalCaseStatus.OK, EvalCaseStatus.ERROR)

    def mark_running(self) -> bool:
        if self.status != EvalCaseStatus.QUEUED:
            return False
        self.status = EvalCaseStatus.RUNNING
        self.started_at = utcnow()
        return True

    def mark_ok(
        self,
        *,
        candidate_output: Optional[str],
        baseline_output: Optional[str],
        candidate_meta: Optional[Dict[str, Any]],
        baseline_meta: Optional[Dict[str, Any]],
        rule_checks: Optional[Dict[str, Any]],
        judge_output: Optional[Dict[str, Any]],
        overall_score: Optional[float],
        passed: Optional[bool],
    ) -> bool:
        if self.is_terminal():
            return False
        self.status = EvalCaseStatus.OK
        self.candidate_output_text = candidate_output
        self.baseline_output_text = baseline_output
        self.candidate_meta_json = candidate_meta
        self.baseline_meta_json = baseline_meta
        self.rule_checks_json = rule_checks
        self.judge_output_json = judge_output
        self.overall_score = overall_score
        self.pass_ = passed
        self.error_code = None
        self.error_message = None
        self.completed_at = utcnow()
        return True

    def mark_error(self, error_code: str, error_message: str) -> bool:
        if self.is_terminal():
            return False
        self.status = EvalCaseStatus.ERROR
        self.error_code = error_code
        self.error_message = error_message
        self.completed_at = utcnow()
        return True

    def reset_to_queued_for_recovery(self) -> bool:
        if self.status != EvalCaseStatus.RUNNING:
            return False
        self.status = EvalCaseStatus.QUEUED
        self.candidate_output_text = None
        self.baseline_output_text = None
        self.candidate_meta_json = None
        self.baseline_meta_json = None
        self.rule_checks_json = None
        self.judge_output_json = None
        self.overall_score = None
        self.pass_ = None
        self.error_code = None
        self.error_message = None
        self.started_at = None
        self.completed_at = None
        return True

    def effective_pass(self) -> Optional[bool]:
        if self.human_review_verdict == EvalHumanReviewVerdict.INCORRECT and self.human_override_pass is not None:
            return self.human_override_pass
        return self.pass_

    def apply_human_review_update(
        self,
        verdict: Optional[EvalHumanReviewVerdict],
        override_pass: Optional[bool],
        comment: Optional[str],
        category: Optional[str],
        reviewed_by: Optional[int],
        reviewed_at,
    ) -> None:
        if self.status != EvalCaseStatus.OK:
            raise ValueError("human review is only allowed on OK cases")
        verdict = verdict or EvalHumanReviewVerdict.UNREVIEWED
        if verdict == EvalHumanReviewVerdict.INCORRECT and override_pass is None:
            raise ValueError("override_pass is required when verdict is INCORRECT")
        if verdict != EvalHumanReviewVerdict.INCORRECT and override_pass is not None:
            raise ValueError("override_pass is only allowed when verdict is INCORRECT")
        self.human_review_verdict = verdict
        self.human_override_pass = override_pass
        self.human_review_comment = comment
        self.human_review_category = category
        self.human_reviewed_by = reviewed_by
        self.human_reviewed_at = reviewed_at

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "evalRunId": self.eval_run_id,
            "testCaseId": self.test_case_id,
            "status": self.status.value,
            "candidateOutput": self.candidate_output_text,
            "baselineOutput": self.baseline_output_text,
            "candidateMeta": self.candidate_meta_json,
            "baselineMeta": self.baseline_meta_json,
            "ruleChecks": self.rule_checks_json,
            "judgeOutput": self.judge_output_json,
            "overallScore": self.overall_score,
            "pass": self.pass_,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "humanReviewVerdict": self.human_review_verdict.value if self.human_review_verdict else None,
            "humanOverridePass": self.human_override_pass,
            "humanReviewComment": self.human_review_comment,
            "humanReviewCategory": self.human_review_category,
            "humanReviewedBy": self.human_reviewed_by,
            "humanReviewedAt": _iso(self.human_reviewed_at),
            "effectivePass": self.effective_pass(),
        }


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None
