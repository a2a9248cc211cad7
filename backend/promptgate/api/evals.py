"""Eval API routes - runs, case results, human review, judge accuracy, release criteria."""
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel
from typing import Optional, List, Dict, Any
from datetime import datetime

from promptgate.models.base import get_db
from promptgate.models.eval_run import EvalCaseStatus, EvalHumanReviewVerdict, EvalMode, RubricTemplateCode
from promptgate.services.eval import case_stats, human_review, judge_accuracy, release_criteria, run_service
from promptgate.services.eval.errors import NOT_FOUND, EvalServiceError

router = APIRouter()
criteria_router = APIRouter()


# ============================================================================
# Pydantic Schemas
# ============================================================================

class EvalRunCreate(BaseModel):
    prompt_version_id: int
    dataset_id: int
    mode: EvalMode = EvalMode.CANDIDATE_ONLY
    rubric_template_code: RubricTemplateCode = RubricTemplateCode.GENERAL_TEXT
    rubric_overrides: Optional[Dict[str, Any]] = None


class EvalRunEstimate(BaseModel):
    prompt_version_id: int
    dataset_id: int
    mode: EvalMode = EvalMode.CANDIDATE_ONLY


class VersionCreated(BaseModel):
    prompt_version_id: int


class HumanReviewUpsert(BaseModel):
    verdict: EvalHumanReviewVerdict
    override_pass: Optional[bool] = None
    comment: Optional[str] = None
    category: Optional[str] = None
    request_id: Optional[str] = None


class HumanReviewClear(BaseModel):
    request_id: Optional[str] = None


class ReleaseCriteriaUpdate(BaseModel):
    min_pass_rate: Optional[float] = None
    min_avg_overall_score: Optional[float] = None
    max_error_rate: Optional[float] = None
    min_improvement_notice_delta: Optional[float] = None


async def _call(db: AsyncSession, fn, *args, **kwargs):
    """Run a sync eval service on the async session and map its errors to HTTP."""
    try:
        return await db.run_sync(lambda session: fn(session, *args, **kwargs))
    except EvalServiceError as exc:
        status = 404 if exc.code == NOT_FOUND else 400
        raise HTTPException(status_code=status, detail=str(exc))


# ============================================================================
# Runs
# ============================================================================

@router.post("/runs")
async def create_run(
    workspace_id: int,
    prompt_id: int,
    payload: EvalRunCreate,
    x_user_id: Optional[int] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    return await _call(
        db,
        run_service.create_run,
        workspace_id,
        prompt_id,
        x_user_id,
        payload.prompt_version_id,
        payload.dataset_id,
        payload.mode,
        payload.rubric_template_code,
        payload.rubric_overrides,
    )


@router.post("/runs:estimate")
async def estimate_run(
    workspace_id: int,
    prompt_id: int,
    payload: EvalRunEstimate,
    db: AsyncSession = Depends(get_db),
):
    return await _call(
        db,
        run_service.estimate_run,
        workspace_id,
        prompt_id,
        payload.prompt_version_id,
        payload.dataset_id,
        payload.mode,
    )


@router.get("/runs")
async def list_runs(workspace_id: int, prompt_id: int, db: AsyncSession = Depends(get_db)):
    return await _call(db, run_service.list_runs, workspace_id, prompt_id)


@router.get("/runs/{run_id}")
async def get_run(workspace_id: int, prompt_id: int, run_id: int, db: AsyncSession = Depends(get_db)):
    return await _call(db, run_service.get_run, workspace_id, prompt_id, run_id)


@router.post("/runs/{run_id}:cancel")
async def cancel_run(workspace_id: int, prompt_id: int, run_id: int, db: AsyncSession = Depends(get_db)):
    return await _call(db, run_service.cancel_run, workspace_id, prompt_id, run_id)


@router.post("/versions:created")
async def version_created(
    workspace_id: int,
    prompt_id: int,
    payload: VersionCreated,
    x_user_id: Optional[int] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Called by prompt authoring when a version is saved; queues the default eval if enabled."""
    return await _call(
        db, run_service.handle_version_created, workspace_id, prompt_id, payload.prompt_version_id, x_user_id
    )


# ============================================================================
# Case results
# ============================================================================

@router.get("/runs/{run_id}/cases")
async def list_run_cases(
    workspace_id: int,
    prompt_id: int,
    run_id: int,
    page: int = Query(0),
    size: int = Query(20),
    db: AsyncSession = Depends(get_db),
):
    return await _call(db, run_service.get_run_cases, workspace_id, prompt_id, run_id, page, size)


@router.get("/runs/{run_id}/cases:table")
async def get_case_table(
    workspace_id: int,
    prompt_id: int,
    run_id: int,
    page: int = Query(0),
    size: int = Query(20),
    status: Optional[EvalCaseStatus] = Query(None),
    pass_: Optional[bool] = Query(None, alias="pass"),
    review_verdict: Optional[EvalHumanReviewVerdict] = Query(None, alias="reviewVerdict"),
    overridden: Optional[bool] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await _call(
        db,
        case_stats.get_case_table,
        workspace_id,
        prompt_id,
        run_id,
        page,
        size,
        status,
        pass_,
        review_verdict,
        overridden,
    )


@router.get("/runs/{run_id}/cases:stats")
async def get_case_stats(workspace_id: int, prompt_id: int, run_id: int, db: AsyncSession = Depends(get_db)):
    return await _call(db, case_stats.get_case_stats, workspace_id, prompt_id, run_id)


@router.get("/runs/{run_id}/cases/{case_result_id}")
async def get_run_case(
    workspace_id: int,
    prompt_id: int,
    run_id: int,
    case_result_id: int,
    db: AsyncSession = Depends(get_db),
):
    return await _call(db, run_service.get_run_case, workspace_id, prompt_id, run_id, case_result_id)


# ============================================================================
# Human review
# ============================================================================

@router.put("/runs/{run_id}/cases/{case_result_id}/human-review")
async def upsert_human_review(
    workspace_id: int,
    prompt_id: int,
    run_id: int,
    case_result_id: int,
    payload: HumanReviewUpsert,
    x_user_id: Optional[int] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    return await _call(
        db,
        human_review.upsert_review,
        workspace_id,
        prompt_id,
        run_id,
        case_result_id,
        x_user_id,
        payload.verdict,
        payload.override_pass,
        payload.comment,
        payload.category,
        payload.request_id,
    )


@router.post("/runs/{run_id}/cases/{case_result_id}/human-review:clear")
async def clear_human_review(
    workspace_id: int,
    prompt_id: int,
    run_id: int,
    case_result_id: int,
    payload: Optional[HumanReviewClear] = None,
    x_user_id: Optional[int] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    return await _call(
        db,
        human_review.clear_review,
        workspace_id,
        prompt_id,
        run_id,
        case_result_id,
        x_user_id,
        payload.request_id if payload else None,
    )


@router.get("/runs/{run_id}/cases/{case_result_id}/human-review/history")
async def human_review_history(
    workspace_id: int,
    prompt_id: int,
    run_id: int,
    case_result_id: int,
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return await _call(db, human_review.list_history, workspace_id, prompt_id, run_id, case_result_id)


# ============================================================================
# Judge accuracy
# ============================================================================

@router.get("/runs/{run_id}/judge-accuracy")
async def run_judge_accuracy(workspace_id: int, prompt_id: int, run_id: int, db: AsyncSession = Depends(get_db)):
    return await _call(db, judge_accuracy.get_run_metrics, workspace_id, prompt_id, run_id)


@router.get("/judge-accuracy")
async def prompt_judge_accuracy(
    workspace_id: int,
    prompt_id: int,
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    prompt_version_id: Optional[int] = Query(None, alias="promptVersionId"),
    db: AsyncSession = Depends(get_db),
):
    return await _call(
        db,
        judge_accuracy.get_prompt_rollup,
        workspace_id,
        prompt_id,
        date_from,
        date_to,
        prompt_version_id,
    )


# ============================================================================
# Release criteria (workspace scoped)
# ============================================================================

@criteria_router.get("/release-criteria")
async def get_release_criteria(workspace_id: int, db: AsyncSession = Depends(get_db)):
    return await _call(db, release_criteria.get, workspace_id)


@criteria_router.put("/release-criteria")
async def update_release_criteria(
    workspace_id: int,
    payload: ReleaseCriteriaUpdate,
    x_user_id: Optional[int] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    values = {
        "minPassRate": payload.min_pass_rate,
        "minAvgOverallScore": payload.min_avg_overall_score,
        "maxErrorRate": payload.max_error_rate,
        "minImprovementNoticeDelta": payload.min_improvement_notice_delta,
    }
    return await _call(db, release_criteria.upsert, workspace_id, x_user_id, values)


@criteria_router.get("/release-criteria/history")
async def release_criteria_history(workspace_id: int, db: AsyncSession = Depends(get_db)):
    return await _call(db, release_criteria.list_history, workspace_id)
