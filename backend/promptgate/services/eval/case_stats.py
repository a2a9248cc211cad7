"""Paginated case table and per-run case statistics."""
from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from promptgate.models.eval_run import EvalCaseResult, EvalCaseStatus, EvalHumanReviewVerdict
from promptgate.services.eval import scope
from promptgate.services.eval.values import to_string_list, trim_to_none

MAX_PAGE_SIZE = 100
TOP_LABELS = 10


def clamp_page(page: int, size: int):
    return max(page, 0), min(max(size, 1), MAX_PAGE_SIZE)


def get_case_table(
    db: Session,
    workspace_id: int,
    prompt_id: int,
    run_id: int,
    page: int = 0,
    size: int = 20,
    status: Optional[EvalCaseStatus] = None,
    pass_: Optional[bool] = None,
    review_verdict: Optional[EvalHumanReviewVerdict] = None,
    overridden: Optional[bool] = None,
) -> Dict[str, Any]:
    prompt = scope.require_prompt(db, workspace_id, prompt_id)
    run = scope.require_run(db, prompt, run_id)
    page, size = clamp_page(page, size)

    # Overridden rows are exactly the INCORRECT ones.
    verdict = EvalHumanReviewVerdict.INCORRECT if overridden else review_verdict

    query = db.query(EvalCaseResult).filter(EvalCaseResult.eval_run_id == run.id)
    if status is not None:
        query = query.filter(EvalCaseResult.status == status)
    if pass_ is not None:
        query = query.filter(EvalCaseResult.pass_ == pass_)
    if verdict == EvalHumanReviewVerdict.UNREVIEWED:
        query = query.filter(
            or_(
                EvalCaseResult.human_review_verdict == EvalHumanReviewVerdict.UNREVIEWED,
                EvalCaseResult.human_review_verdict.is_(None),
            )
        )
    elif verdict is not None:
        query = query.filter(EvalCaseResult.human_review_verdict == verdict)

    total = query.count()
    rows = query.order_by(EvalCaseResult.id.asc()).offset(page * size).limit(size).all()
    return {
        "content": [table_row(row) for row in rows],
        "page": page,
        "size": size,
        "totalElements": total,
        "totalPages": (total + size - 1) // size,
    }


def table_row(result: EvalCaseResult) -> Dict[str, Any]:
    judge_output = result.judge_output_json or {}
    verdict = result.human_review_verdict or EvalHumanReviewVerdict.UNREVIEWED
    return {
        "id": result.id,
        "testCaseId": result.test_case_id,
        "status": result.status.value if result.status else None,
        "overallScore": result.overall_score,
        "pass": result.pass_,
        "effectivePass": result.effective_pass(),
        "humanReviewVerdict": verdict.value,
        "labels": extract_labels(judge_output),
        "reason": trim_to_none(judge_output.get("reason")),
        "startedAt": result.started_at.isoformat() if result.started_at else None,
        "completedAt": result.completed_at.isoformat() if result.completed_at else None,
    }


def get_case_stats(db: Session, workspace_id: int, prompt_id: int, run_id: int) -> Dict[str, Any]:
    prompt = scope.require_prompt(db, workspace_id, prompt_id)
    run = scope.require_run(db, prompt, run_id)
    results = db.query(EvalCaseResult).filter(EvalCaseResult.eval_run_id == run.id).all()

    status_counts: Counter = Counter()
    verdict_counts: Counter = Counter()
    pass_counts: Counter = Counter()
    effective_counts: Counter = Counter()
    labels: Counter = Counter()

    for result in results:
        if result.status is not None:
            status_counts[result.status] += 1
        if result.pass_ is not None:
            pass_counts[result.pass_] += 1
        verdict_counts[result.human_review_verdict or EvalHumanReviewVerdict.UNREVIEWED] += 1
        effective = result.effective_pass()
        if effective is not None:
            effective_counts[effective] += 1
        if result.status == EvalCaseStatus.OK:
            labels.update(extract_labels(result.judge_output_json))

    top_labels = sorted(labels.items(), key=lambda item: (-item[1], item[0]))[:TOP_LABELS]
    return {
        "queuedCount": status_counts[EvalCaseStatus.QUEUED],
        "runningCount": status_counts[EvalCaseStatus.RUNNING],
        "okCount": status_counts[EvalCaseStatus.OK],
        "errorCount": status_counts[EvalCaseStatus.ERROR],
        "passTrueCount": pass_counts[True],
        "passFalseCount": pass_counts[False],
        "effectivePassTrueCount": effective_counts[True],
        "effectivePassFalseCount": effective_counts[False],
        "unreviewedCount": verdict_counts[EvalHumanReviewVerdict.UNREVIEWED],
        "correctCount": verdict_counts[EvalHumanReviewVerdict.CORRECT],
        "incorrectCount": verdict_counts[EvalHumanReviewVerdict.INCORRECT],
        "topLabelCounts": dict(top_labels),
    }


def extract_labels(judge_output: Optional[Dict[str, Any]]) -> List[str]:
    if not judge_output:
        return []
    raw = judge_output.get("labels")
    if raw is None:
        return []
    if not isinstance(raw, list):
        raw = [raw]
    return [label for label in (str(item).strip() for item in to_string_list(raw)) if label]
