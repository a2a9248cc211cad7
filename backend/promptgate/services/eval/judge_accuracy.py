"""Judge-vs-human agreement metrics over the reviewed subset of case results."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from promptgate.models.eval_run import EvalCaseResult, EvalHumanReviewVerdict, EvalRun
from promptgate.services.eval import scope

NOTE_REVIEWED_SUBSET = "metrics computed on reviewed subset"

# (machine pass, verdict, override pass)
AccuracyRow = Tuple[Optional[bool], Optional[EvalHumanReviewVerdict], Optional[bool]]


@dataclass
class ConfusionMatrix:
    tp: int = 0
    tn: int = 0
    fp: int = 0
    fn: int = 0

    @property
    def precision(self) -> Optional[float]:
        return _ratio(self.tp, self.tp + self.fp)

    @property
    def recall(self) -> Optional[float]:
        return _ratio(self.tp, self.tp + self.fn)

    @property
    def specificity(self) -> Optional[float]:
        return _ratio(self.tn, self.tn + self.fp)

    @property
    def f1(self) -> Optional[float]:
        precision, recall = self.precision, self.recall
        if precision is None or recall is None:
            return None
        if precision + recall == 0:
            return 0.0
        return 2 * precision * recall / (precision + recall)

    @property
    def balanced_accuracy(self) -> Optional[float]:
        recall, specificity = self.recall, self.specificity
        if recall is None or specificity is None:
            return None
        return (recall + specificity) / 2

    def as_dict(self) -> Dict[str, Any]:
        return {
            "tp": self.tp,
            "tn": self.tn,
            "fp": self.fp,
            "fn": self.fn,
            "precision": self.precision,
            "recall": self.recall,
            "f1": self.f1,
            "specificity": self.specificity,
            "balancedAccuracy": self.balanced_accuracy,
        }


def compute_metrics(rows: Iterable[AccuracyRow]) -> Dict[str, Any]:
    reviewed = 0
    correct = 0
    incorrect = 0
    matrix = ConfusionMatrix()

    for predicted, verdict, override_pass in rows:
        verdict = verdict or EvalHumanReviewVerdict.UNREVIEWED
        if verdict == EvalHumanReviewVerdict.UNREVIEWED:
            continue
        reviewed += 1
        if verdict == EvalHumanReviewVerdict.CORRECT:
            correct += 1
        elif verdict == EvalHumanReviewVerdict.INCORRECT:
            incorrect += 1

        truth = override_pass if verdict == EvalHumanReviewVerdict.INCORRECT else predicted
        if predicted is None or truth is None:
            continue
        if predicted and truth:
            matrix.tp += 1
        elif not predicted and not truth:
            matrix.tn += 1
        elif predicted:
            matrix.fp += 1
        else:
            matrix.fn += 1

    return {
        "reviewedCount": reviewed,
        "correctCount": correct,
        "incorrectCount": incorrect,
        "accuracy": _ratio(correct, reviewed),
        "overrideRate": _ratio(incorrect, reviewed),
        "confusionMatrix": matrix.as_dict(),
        "note": NOTE_REVIEWED_SUBSET,
    }


def get_run_metrics(db: Session, workspace_id: int, prompt_id: int, run_id: int) -> Dict[str, Any]:
    prompt = scope.require_prompt(db, workspace_id, prompt_id)
    run = scope.require_run(db, prompt, run_id)
    rows = (
        db.query(EvalCaseResult.pass_, EvalCaseResult.human_review_verdict, EvalCaseResult.human_override_pass)
        .filter(EvalCaseResult.eval_run_id == run.id)
        .all()
    )
    return compute_metrics(tuple(row) for row in rows)


def get_prompt_rollup(
    db: Session,
    workspace_id: int,
    prompt_id: int,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    prompt_version_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Same metrics across every run of a prompt created inside the window."""
    prompt = scope.require_prompt(db, workspace_id, prompt_id)
    if prompt_version_id is not None:
        scope.require_version(db, prompt, prompt_version_id)

    query = (
        db.query(EvalCaseResult.pass_, EvalCaseResult.human_review_verdict, EvalCaseResult.human_override_pass)
        .join(EvalRun, EvalCaseResult.eval_run_id == EvalRun.id)
        .filter(EvalRun.workspace_id == workspace_id, EvalRun.prompt_id == prompt.id)
    )
    if prompt_version_id is not None:
        query = query.filter(EvalRun.prompt_version_id == prompt_version_id)
    if date_from is not None:
        query = query.filter(EvalRun.created_at >= date_from)
    if date_to is not None:
        query = query.filter(EvalRun.created_at <= date_to)

    return {
        "promptId": prompt.id,
        "promptVersionId": prompt_version_id,
        "from": date_from.isoformat() if date_from else None,
        "to": date_to.isoformat() if date_to else None,
        "metrics": compute_metrics(tuple(row) for row in query.all()),
    }


def _ratio(numerator: int, denominator: int) -> Optional[float]:
    if denominator <= 0:
        return None
    return numerator / denominator
