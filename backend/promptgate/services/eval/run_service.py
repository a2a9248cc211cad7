"""Run lifecycle outside the worker: enqueue, estimate, browse, cancel, claim, recover."""
from __future__ import annotations

import json
import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from promptgate.config import get_settings
from promptgate.models.base import utcnow
from promptgate.models.dataset import EvalDataset, EvalTestCase, PromptEvalDefault
from promptgate.models.eval_run import (
    EvalCaseResult,
    EvalCaseStatus,
    EvalMode,
    EvalRun,
    EvalRunStatus,
    EvalTriggerType,
    RubricTemplateCode,
)
from promptgate.models.prompt import Prompt, PromptRelease, PromptStatus, PromptVersion
from promptgate.services.eval import scope
from promptgate.services.eval.case_stats import clamp_page
from promptgate.services.eval.errors import EvalServiceError, invalid_input
from promptgate.services.eval.prompt_render import build_final_prompt, estimate_max_output_tokens
from promptgate.services.eval.values import round_half_up
from promptgate.services.llm import pricing
from promptgate.services.llm.types import ProviderType

logger = logging.getLogger(__name__)

JUDGE_MAX_OUTPUT_TOKENS = 256
JUDGE_MIN_OUTPUT_TOKENS = 120
OVERALL_REVIEW_CALLS = 1
OVERALL_REVIEW_OUTPUT_MIN = 160
OVERALL_REVIEW_OUTPUT_MAX = 320
SECONDS_PER_CALL_MIN = 1.5
SECONDS_PER_CALL_MAX = 2.8

COST_TIER_HIGH = Decimal("0.20")
COST_TIER_MEDIUM = Decimal("0.05")


def create_run(
    db: Session,
    workspace_id: int,
    prompt_id: int,
    user_id: Optional[int],
    prompt_version_id: int,
    dataset_id: int,
    mode: EvalMode = EvalMode.CANDIDATE_ONLY,
    rubric_template_code: RubricTemplateCode = RubricTemplateCode.GENERAL_TEXT,
    rubric_overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    prompt = scope.require_prompt(db, workspace_id, prompt_id)
    version = scope.require_version(db, prompt, prompt_version_id)
    dataset = scope.require_dataset(db, workspace_id, dataset_id)

    test_cases = enabled_test_cases(db, dataset.id)
    if not test_cases:
        raise invalid_input("dataset has no enabled test cases")
    mode = mode or EvalMode.CANDIDATE_ONLY
    if mode == EvalMode.COMPARE_ACTIVE:
        resolve_baseline_version(db, prompt, version, mode)

    run = _enqueue(
        db,
        prompt,
        version,
        dataset,
        test_cases,
        mode,
        EvalTriggerType.MANUAL,
        rubric_template_code or RubricTemplateCode.GENERAL_TEXT,
        rubric_overrides,
        user_id,
    )
    db.commit()
    logger.info("Eval run queued run_id=%s prompt_id=%s cases=%s", run.id, prompt.id, run.total_cases)
    return run.as_dict()


def estimate_run(
    db: Session,
    workspace_id: int,
    prompt_id: int,
    prompt_version_id: int,
    dataset_id: int,
    mode: EvalMode = EvalMode.CANDIDATE_ONLY,
) -> Dict[str, Any]:
    """Rough call / token / cost / duration ranges for a run before it is queued."""
    settings = get_settings()
    prompt = scope.require_prompt(db, workspace_id, prompt_id)
    candidate = scope.require_version(db, prompt, prompt_version_id)
    dataset = scope.require_dataset(db, workspace_id, dataset_id)
    test_cases = enabled_test_cases(db, dataset.id)
    if not test_cases:
        raise invalid_input("dataset has no enabled test cases")
    mode = mode or EvalMode.CANDIDATE_ONLY
    baseline = resolve_baseline_version(db, prompt, candidate, mode)

    case_count = len(test_cases)
    judge_attempts_max = settings.judge_max_attempts() if settings.eval_judge_rejudge_on_fail else 1
    compare = mode == EvalMode.COMPARE_ACTIVE
    generation_calls = 2 if compare else 1
    judge_calls_min = 2 if compare else 1
    judge_calls_max = judge_calls_min * judge_attempts_max

    calls_min = case_count * (generation_calls + judge_calls_min) + OVERALL_REVIEW_CALLS
    calls_max = case_count * (generation_calls + judge_calls_max) + OVERALL_REVIEW_CALLS

    candidate_max_out = estimate_max_output_tokens(candidate)
    baseline_max_out = estimate_max_output_tokens(baseline) if baseline is not None else 0

    generation_input = sum(estimate_tokens(build_final_prompt(candidate, tc)) for tc in test_cases)
    baseline_input = 0
    if baseline is not None:
        baseline_input = sum(estimate_tokens(build_final_prompt(baseline, tc)) for tc in test_cases)
    judge_input = sum(estimate_judge_input_tokens(tc) for tc in test_cases)
    review_input = estimate_overall_review_input_tokens(case_count, mode)

    candidate_out_min = case_count * max(48, candidate_max_out // 4)
    candidate_out_max = case_count * candidate_max_out
    baseline_out_min = case_count * max(48, baseline_max_out // 4) if baseline is not None else 0
    baseline_out_max = case_count * baseline_max_out if baseline is not None else 0
    judge_out_min = case_count * judge_calls_min * JUDGE_MIN_OUTPUT_TOKENS
    judge_out_max = case_count * judge_calls_max * JUDGE_MAX_OUTPUT_TOKENS

    shared = generation_input + baseline_input + review_input
    tokens_min = (
        shared + judge_input * judge_calls_min + candidate_out_min + baseline_out_min + judge_out_min
        + OVERALL_REVIEW_OUTPUT_MIN
    )
    tokens_max = (
        shared + judge_input * judge_calls_max + candidate_out_max + baseline_out_max + judge_out_max
        + OVERALL_REVIEW_OUTPUT_MAX
    )

    judge_model = settings.eval_judge_model
    cost_min = (
        _estimate_cost(candidate.model, generation_input, candidate_out_min)
        + _estimate_cost(judge_model, judge_input * judge_calls_min, judge_out_min)
        + _estimate_cost(judge_model, review_input, OVERALL_REVIEW_OUTPUT_MIN)
    )
    cost_max = (
        _estimate_cost(candidate.model, generation_input, candidate_out_max)
        + _estimate_cost(judge_model, judge_input * judge_calls_max, judge_out_max)
        + _estimate_cost(judge_model, review_input, OVERALL_REVIEW_OUTPUT_MAX)
    )
    if baseline is not None:
        cost_min += _estimate_cost(baseline.model, baseline_input, baseline_out_min)
        cost_max += _estimate_cost(baseline.model, baseline_input, baseline_out_max)

    pricing_known = (
        pricing.is_known_model(candidate.model)
        and pricing.is_known_model(judge_model)
        and (baseline is None or pricing.is_known_model(baseline.model))
    )

    return {
        "caseCount": case_count,
        "estimatedCallsMin": calls_min,
        "estimatedCallsMax": calls_max,
        "estimatedTokensMin": tokens_min,
        "estimatedTokensMax": tokens_max,
        "estimatedCostUsdMin": _quantize_usd(cost_min),
        "estimatedCostUsdMax": _quantize_usd(cost_max),
        "estimatedCostTier": cost_tier(cost_max, pricing_known),
        "estimatedDurationSecMin": round_half_up(calls_min * SECONDS_PER_CALL_MIN, 2),
        "estimatedDurationSecMax": round_half_up(calls_max * SECONDS_PER_CALL_MAX, 2),
        "estimateNotice": "Estimates only; actual usage may differ.",
        "assumptions": {
            "candidateModel": candidate.model,
            "baselineModel": baseline.model if baseline is not None else None,
            "judgeModel": judge_model,
            "pricingKnown": pricing_known,
            "judgeAttemptsMin": 1,
            "judgeAttemptsMax": judge_attempts_max,
            "runOverallReviewCalls": OVERALL_REVIEW_CALLS,
            "candidateMaxOutputTokens": candidate_max_out,
            "baselineMaxOutputTokens": baseline_max_out,
            "judgeMaxOutputTokens": JUDGE_MAX_OUTPUT_TOKENS,
            "overallReviewInputTokens": review_input,
            "overallReviewOutputTokensMin": OVERALL_REVIEW_OUTPUT_MIN,
            "overallReviewOutputTokensMax": OVERALL_REVIEW_OUTPUT_MAX,
            "tokenEstimator": "chars/2 heuristic",
            "durationEstimator": "per-call fixed-range heuristic",
        },
    }


def list_runs(db: Session, workspace_id: int, prompt_id: int) -> List[Dict[str, Any]]:
    prompt = scope.require_prompt(db, workspace_id, prompt_id)
    runs = (
        db.query(EvalRun)
        .filter(EvalRun.prompt_id == prompt.id)
        .order_by(EvalRun.created_at.desc(), EvalRun.id.desc())
        .all()
    )
    return [run.as_dict() for run in runs]


def get_run(db: Session, workspace_id: int, prompt_id: int, run_id: int) -> Dict[str, Any]:
    prompt = scope.require_prompt(db, workspace_id, prompt_id)
    return scope.require_run(db, prompt, run_id).as_dict()


def cancel_run(db: Session, workspace_id: int, prompt_id: int, run_id: int) -> Dict[str, Any]:
    prompt = scope.require_prompt(db, workspace_id, prompt_id)
    run = scope.require_run(db, prompt, run_id)
    if run.mark_cancelled():
        db.commit()
        logger.info("Eval run cancelled run_id=%s", run.id)
    return {"id": run.id, "status": run.status.value}


def get_run_cases(
    db: Session,
    workspace_id: int,
    prompt_id: int,
    run_id: int,
    page: int = 0,
    size: int = 20,
) -> Dict[str, Any]:
    prompt = scope.require_prompt(db, workspace_id, prompt_id)
    run = scope.require_run(db, prompt, run_id)
    page, size = clamp_page(page, size)
    query = db.query(EvalCaseResult).filter(EvalCaseResult.eval_run_id == run.id)
    total = query.count()
    rows = query.order_by(EvalCaseResult.id.asc()).offset(page * size).limit(size).all()
    return {
        "content": [row.as_dict() for row in rows],
        "page": page,
        "size": size,
        "totalElements": total,
        "totalPages": (total + size - 1) // size,
    }


def get_run_case(db: Session, workspace_id: int, prompt_id: int, run_id: int, case_result_id: int) -> Dict[str, Any]:
    prompt = scope.require_prompt(db, workspace_id, prompt_id)
    run = scope.require_run(db, prompt, run_id)
    return scope.require_case_result(db, run, case_result_id).as_dict()


def enqueue_auto_run_if_enabled(
    db: Session,
    prompt_id: int,
    prompt_version_id: int,
    actor_user_id: Optional[int] = None,
) -> Optional[int]:
    """Queue the prompt's default evaluation for a freshly created version.

    Returns the new run id, or None when auto evaluation does not apply.
    """
    prompt = db.query(Prompt).filter(Prompt.id == prompt_id, Prompt.status == PromptStatus.ACTIVE).first()
    if prompt is None:
        return None
    version = db.get(PromptVersion, prompt_version_id)
    if version is None or version.prompt_id != prompt.id:
        return None

    defaults = db.query(PromptEvalDefault).filter(PromptEvalDefault.prompt_id == prompt.id).first()
    if defaults is None or not defaults.auto_eval_enabled or defaults.dataset is None:
        return None
    dataset = defaults.dataset
    if dataset.workspace_id != prompt.workspace_id:
        return None

    test_cases = enabled_test_cases(db, dataset.id)
    if not test_cases:
        logger.info("Skip auto eval run: no enabled test cases prompt_id=%s dataset_id=%s", prompt.id, dataset.id)
        return None

    mode = defaults.default_mode or EvalMode.CANDIDATE_ONLY
    if mode == EvalMode.COMPARE_ACTIVE:
        try:
            resolve_baseline_version(db, prompt, version, mode)
        except EvalServiceError as exc:
            logger.info("Skip auto eval compare run prompt_id=%s reason=%s", prompt.id, exc)
            return None

    run = _enqueue(
        db,
        prompt,
        version,
        dataset,
        test_cases,
        mode,
        EvalTriggerType.AUTO_VERSION_CREATE,
        defaults.rubric_template_code or RubricTemplateCode.GENERAL_TEXT,
        defaults.rubric_overrides_json,
        actor_user_id if actor_user_id is not None else version.created_by,
    )
    db.commit()
    logger.info("Auto eval run queued run_id=%s prompt_version_id=%s", run.id, version.id)
    return run.id


def handle_version_created(
    db: Session,
    workspace_id: int,
    prompt_id: int,
    prompt_version_id: int,
    actor_user_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Entry point for the prompt authoring service after it stores a new version."""
    prompt = scope.require_prompt(db, workspace_id, prompt_id)
    version = scope.require_version(db, prompt, prompt_version_id)
    run_id = enqueue_auto_run_if_enabled(db, prompt.id, version.id, actor_user_id)
    return {"queued": run_id is not None, "runId": run_id}


def count_queued_runs(db: Session) -> int:
    return db.query(EvalRun).filter(EvalRun.status == EvalRunStatus.QUEUED).count()


def pick_queued_runs(db: Session, batch_size: int) -> List[int]:
    """Claim the oldest QUEUED runs; concurrent pollers skip rows already locked."""
    settings = get_settings()
    timeout = timedelta(minutes=max(1, int(settings.eval_run_timeout_minutes)))
    runs = (
        db.query(EvalRun)
        .filter(EvalRun.status == EvalRunStatus.QUEUED)
        .order_by(EvalRun.created_at.asc(), EvalRun.id.asc())
        .limit(max(1, batch_size))
        .with_for_update(skip_locked=True)
        .all()
    )
    claimed = [run.id for run in runs if run.mark_running_with_timeout(timeout)]
    db.commit()
    if claimed:
        logger.info("Claimed eval runs %s", claimed)
    return claimed


def recover_stuck_runs(db: Session, max_duration: timedelta) -> int:
    """Requeue RUNNING runs started before ``now - max_duration`` and their in-flight cases."""
    cutoff = utcnow() - max_duration
    runs = (
        db.query(EvalRun)
        .filter(EvalRun.status == EvalRunStatus.RUNNING, EvalRun.started_at < cutoff)
        .order_by(EvalRun.created_at.asc())
        .with_for_update(skip_locked=True)
        .all()
    )
    recovered = 0
    for run in runs:
        cases = (
            db.query(EvalCaseResult)
            .filter(EvalCaseResult.eval_run_id == run.id, EvalCaseResult.status == EvalCaseStatus.RUNNING)
            .all()
        )
        for case in cases:
            case.reset_to_queued_for_recovery()
        if run.reset_to_queued():
            recovered += 1
            logger.warning("Recovered stuck eval run run_id=%s reset_cases=%s", run.id, len(cases))
    db.commit()
    return recovered


def resolve_baseline_version(
    db: Session,
    prompt: Prompt,
    candidate: PromptVersion,
    mode: Optional[EvalMode],
) -> Optional[PromptVersion]:
    if mode != EvalMode.COMPARE_ACTIVE:
        return None
    release = db.query(PromptRelease).filter(PromptRelease.prompt_id == prompt.id).first()
    if release is None or release.active_version is None:
        raise invalid_input("no active release version to compare against")
    if release.active_version.id == candidate.id:
        raise invalid_input("candidate is the active release version; choose a different version")
    return release.active_version


def enabled_test_cases(db: Session, dataset_id: int) -> List[EvalTestCase]:
    return (
        db.query(EvalTestCase)
        .filter(EvalTestCase.dataset_id == dataset_id, EvalTestCase.enabled.is_(True))
        .order_by(EvalTestCase.case_order.asc(), EvalTestCase.id.asc())
        .all()
    )


def estimate_tokens(text_or_chars) -> int:
    chars = text_or_chars if isinstance(text_or_chars, int) else len(text_or_chars or "")
    if chars <= 0:
        return 0
    return max(1, (chars + 1) // 2)


def estimate_judge_input_tokens(test_case: EvalTestCase) -> int:
    chars = (
        len(test_case.input_text or "")
        + len(_json_text(test_case.context_json))
        + len(_json_text(test_case.expected_json))
        + len(_json_text(test_case.constraints_json))
    )
    return max(180, estimate_tokens(chars + 300))


def estimate_overall_review_input_tokens(case_count: int, mode: Optional[EvalMode]) -> int:
    factor = 90 if mode == EvalMode.COMPARE_ACTIVE else 60
    return max(220, estimate_tokens(300 + max(case_count, 1) * factor))


def cost_tier(max_cost: Decimal, pricing_known: bool) -> str:
    if not pricing_known:
        return "UNKNOWN"
    if max_cost >= COST_TIER_HIGH:
        return "HIGH"
    if max_cost >= COST_TIER_MEDIUM:
        return "MEDIUM"
    return "LOW"


def _enqueue(
    db: Session,
    prompt: Prompt,
    version: PromptVersion,
    dataset: EvalDataset,
    test_cases: List[EvalTestCase],
    mode: EvalMode,
    trigger_type: EvalTriggerType,
    rubric_template_code: RubricTemplateCode,
    rubric_overrides: Optional[Dict[str, Any]],
    created_by: Optional[int],
) -> EvalRun:
    settings = get_settings()
    run = EvalRun(
        workspace_id=prompt.workspace_id,
        prompt_id=prompt.id,
        prompt_version_id=version.id,
        dataset_id=dataset.id,
        mode=mode,
        trigger_type=trigger_type,
        rubric_template_code=rubric_template_code,
        rubric_overrides_json=dict(rubric_overrides) if rubric_overrides else None,
        candidate_provider=ProviderType.parse(version.provider).value,
        candidate_model=version.model,
        judge_provider=ProviderType.parse(settings.eval_judge_provider).value,
        judge_model=settings.eval_judge_model,
        total_cases=len(test_cases),
        created_by=created_by,
    )
    db.add(run)
    db.flush()
    for test_case in test_cases:
        db.add(EvalCaseResult.queue(run, test_case))
    db.flush()
    return run


def _estimate_cost(model: Optional[str], input_tokens: int, output_tokens: int) -> Decimal:
    if model is None or not model.strip():
        return Decimal("0")
    return pricing.calculate_cost(model, max(0, input_tokens), max(0, output_tokens))


def _quantize_usd(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP))


def _json_text(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)
