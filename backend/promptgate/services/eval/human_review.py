"""Human review of judged cases: idempotent apply / clear with an append-only audit.

Every submission may carry a ``request_id``. A request id already recorded
for a case makes the call a no-op returning the current state, so client
retries never produce a second audit row.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from promptgate.models.base import utcnow
from promptgate.models.eval_run import EvalCaseResult, EvalCaseStatus, EvalHumanReviewVerdict, EvalRun
from promptgate.models.review import EvalCaseReviewAudit
from promptgate.services.eval import scope
from promptgate.services.eval.errors import invalid_input

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20
MAX_REQUEST_ID_LENGTH = 120
MAX_CATEGORY_LENGTH = 50


def upsert_review(
    db: Session,
    workspace_id: int,
    prompt_id: int,
    run_id: int,
    case_result_id: int,
    user_id: Optional[int],
    verdict: Any,
    override_pass: Optional[bool],
    comment: Optional[str],
    category: Optional[str],
    request_id: Optional[str],
) -> Dict[str, Any]:
    run, case = _require_ok_case(db, workspace_id, prompt_id, run_id, case_result_id)

    normalized_request_id = normalize_request_id(request_id)
    if normalized_request_id is not None and _audit_exists(db, case.id, normalized_request_id):
        return case.as_dict()

    parsed = parse_verdict(verdict)
    if parsed == EvalHumanReviewVerdict.UNREVIEWED:
        return _clear(db, workspace_id, run, case, user_id, normalized_request_id)

    normalized_category = normalize_category(category)
    validate_review(case.pass_, parsed, override_pass)

    case.apply_human_review_update(parsed, override_pass, comment, normalized_category, user_id, utcnow())
    db.flush()
    _save_audit(
        db,
        EvalCaseReviewAudit(
            workspace_id=workspace_id,
            eval_run_id=run.id,
            eval_case_result_id=case.id,
            review_verdict=parsed,
            override_pass=override_pass,
            comment=comment,
            category=normalized_category,
            request_id=normalized_request_id,
            changed_by=user_id,
        ),
    )
    db.commit()
    logger.info("Human review saved case_result_id=%s verdict=%s", case.id, parsed.value)
    return case.as_dict()


def clear_review(
    db: Session,
    workspace_id: int,
    prompt_id: int,
    run_id: int,
    case_result_id: int,
    user_id: Optional[int],
    request_id: Optional[str],
) -> Dict[str, Any]:
    run, case = _require_ok_case(db, workspace_id, prompt_id, run_id, case_result_id)

    normalized_request_id = normalize_request_id(request_id)
    if normalized_request_id is not None and _audit_exists(db, case.id, normalized_request_id):
        return case.as_dict()
    return _clear(db, workspace_id, run, case, user_id, normalized_request_id)


def list_history(
    db: Session,
    workspace_id: int,
    prompt_id: int,
    run_id: int,
    case_result_id: int,
) -> List[Dict[str, Any]]:
    prompt = scope.require_prompt(db, workspace_id, prompt_id)
    run = scope.require_run(db, prompt, run_id)
    case = scope.require_case_result(db, run, case_result_id)
    audits = (
        db.query(EvalCaseReviewAudit)
        .filter(EvalCaseReviewAudit.eval_case_result_id == case.id)
        .order_by(EvalCaseReviewAudit.changed_at.desc(), EvalCaseReviewAudit.id.desc())
        .limit(HISTORY_LIMIT)
        .all()
    )
    return [audit.as_dict() for audit in audits]


def parse_verdict(value: Any) -> EvalHumanReviewVerdict:
    if value is None:
        raise invalid_input("verdict is required")
    if isinstance(value, EvalHumanReviewVerdict):
        return value
    try:
        return EvalHumanReviewVerdict(str(value).strip().upper())
    except ValueError:
        raise invalid_input(f"unknown verdict: {value}")


def validate_review(
    stored_pass: Optional[bool],
    verdict: EvalHumanReviewVerdict,
    override_pass: Optional[bool],
) -> None:
    """Reject review combinations that would not change or contradict the machine verdict."""
    if stored_pass is None:
        raise invalid_input("case has no machine verdict")
    if verdict == EvalHumanReviewVerdict.CORRECT:
        if override_pass is not None:
            raise invalid_input("override_pass is not allowed for CORRECT")
        return
    if verdict == EvalHumanReviewVerdict.INCORRECT:
        if override_pass is None:
            raise invalid_input("override_pass is required for INCORRECT")
        if override_pass == stored_pass:
            raise invalid_input("override_pass must differ from the judged pass")
        return
    raise invalid_input(f"unsupported verdict: {verdict.value}")


def normalize_request_id(request_id: Optional[str]) -> Optional[str]:
    if request_id is None or not request_id.strip():
        return None
    normalized = request_id.strip()
    if len(normalized) > MAX_REQUEST_ID_LENGTH:
        raise invalid_input("request_id is too long")
    return normalized


def normalize_category(category: Optional[str]) -> Optional[str]:
    if category is None or not category.strip():
        return None
    normalized = category.strip()
    if len(normalized) > MAX_CATEGORY_LENGTH:
        raise invalid_input("category is too long")
    return normalized


def _require_ok_case(db: Session, workspace_id: int, prompt_id: int, run_id: int, case_result_id: int):
    prompt = scope.require_prompt(db, workspace_id, prompt_id)
    run = scope.require_run(db, prompt, run_id)
    case = scope.require_case_result(db, run, case_result_id)
    if case.status != EvalCaseStatus.OK:
        raise invalid_input("only OK cases can be reviewed")
    return run, case


def _clear(
    db: Session,
    workspace_id: int,
    run: EvalRun,
    case: EvalCaseResult,
    user_id: Optional[int],
    request_id: Optional[str],
) -> Dict[str, Any]:
    case.apply_human_review_update(EvalHumanReviewVerdict.UNREVIEWED, None, None, None, None, None)
    db.flush()
    _save_audit(
        db,
        EvalCaseReviewAudit(
            workspace_id=workspace_id,
            eval_run_id=run.id,
            eval_case_result_id=case.id,
            review_verdict=EvalHumanReviewVerdict.UNREVIEWED,
            request_id=request_id,
            changed_by=user_id,
        ),
    )
    db.commit()
    logger.info("Human review cleared case_result_id=%s", case.id)
    return case.as_dict()


def _audit_exists(db: Session, case_result_id: int, request_id: str) -> bool:
    return (
        db.query(EvalCaseReviewAudit.id)
        .filter(
            EvalCaseReviewAudit.eval_case_result_id == case_result_id,
            EvalCaseReviewAudit.request_id == request_id,
        )
        .first()
        is not None
    )


def _save_audit(db: Session, audit: EvalCaseReviewAudit) -> None:
    try:
        with db.begin_nested():
            db.add(audit)
    except IntegrityError:
        # A concurrent submission with the same request id won the insert.
        if audit.request_id is not None and _audit_exists(db, audit.eval_case_result_id, audit.request_id):
            logger.info(
                "Duplicate review audit ignored case_result_id=%s request_id=%s",
                audit.eval_case_result_id,
                audit.request_id,
            )
            return
        raise
