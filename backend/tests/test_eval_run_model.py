from datetime import timedelta

import pytest

from promptgate.models.base import utcnow
from promptgate.models.eval_run import (
    EvalCaseResult,
    EvalCaseStatus,
    EvalHumanReviewVerdict,
    EvalRun,
    EvalRunStatus,
)


def _ok_case(passed=True):
    case = EvalCaseResult(id=1, eval_run_id=1, test_case_id=1)
    case.mark_running()
    case.mark_ok(
        candidate_output="out",
        baseline_output=None,
        candidate_meta={"totalTokens": 3},
        baseline_meta=None,
        rule_checks={"pass": True},
        judge_output={"pass": passed},
        overall_score=80.0,
        passed=passed,
    )
    return case


def test_run_defaults_to_queued_with_zero_counters():
    run = EvalRun()
    assert run.status == EvalRunStatus.QUEUED
    assert (run.total_cases, run.processed_cases, run.error_cases) == (0, 0, 0)


def test_run_claim_sets_timeout_only_from_queued():
    run = EvalRun()
    assert run.mark_running_with_timeout(timedelta(minutes=5))
    assert run.timeout_at == run.started_at + timedelta(minutes=5)
    assert not run.mark_running()
    assert not run.is_timed_out()

    run.timeout_at = utcnow() - timedelta(seconds=1)
    assert run.is_timed_out()


def test_ensure_timeout_backfills_running_run():
    run = EvalRun(status=EvalRunStatus.RUNNING, started_at=utcnow())
    assert run.ensure_timeout_if_missing(timedelta(minutes=1))
    assert not run.ensure_timeout_if_missing(timedelta(minutes=9))
    assert run.timeout_at == run.started_at + timedelta(minutes=1)


def test_terminal_run_ignores_further_transitions():
    run = EvalRun(status=EvalRunStatus.RUNNING)
    assert run.mark_cancelled()
    assert not run.finish({"passRate": 100.0}, None)
    assert not run.fail_with_reason("RUN_TIMEOUT", "late")
    assert not run.reset_to_queued()
    assert run.status == EvalRunStatus.CANCELLED
    assert run.summary_json is None


def test_fail_with_reason_truncates_message():
    run = EvalRun(status=EvalRunStatus.RUNNING)
    assert run.fail_with_reason("RUN_TIMEOUT", "x" * 600)
    assert run.status == EvalRunStatus.FAILED
    assert len(run.fail_reason) == 500
    assert run.completed_at is not None


def test_case_counters():
    run = EvalRun()
    run.on_case_ok(True)
    run.on_case_ok(False)
    run.on_case_error()
    assert (run.processed_cases, run.passed_cases, run.failed_cases, run.error_cases) == (3, 1, 1, 1)


def test_case_terminal_states_are_final():
    case = _ok_case()
    assert case.status == EvalCaseStatus.OK
    assert not case.mark_error("X", "late")
    assert not case.reset_to_queued_for_recovery()


def test_case_recovery_clears_partial_outputs():
    case = EvalCaseResult()
    case.mark_running()
    case.candidate_output_text = "partial"
    assert case.reset_to_queued_for_recovery()
    assert case.status == EvalCaseStatus.QUEUED
    assert case.candidate_output_text is None
    assert case.started_at is None


def test_effective_pass_follows_incorrect_override():
    case = _ok_case(passed=True)
    assert case.effective_pass() is True
    case.apply_human_review_update(EvalHumanReviewVerdict.INCORRECT, False, "wrong", "facts", 9, utcnow())
    assert case.effective_pass() is False
    assert case.as_dict()["effectivePass"] is False
    case.apply_human_review_update(EvalHumanReviewVerdict.CORRECT, None, None, None, 9, utcnow())
    assert case.effective_pass() is True


def test_review_update_guards():
    with pytest.raises(ValueError):
        EvalCaseResult().apply_human_review_update(EvalHumanReviewVerdict.CORRECT, None, None, None, 1, utcnow())
    case = _ok_case()
    with pytest.raises(ValueError):
        case.apply_human_review_update(EvalHumanReviewVerdict.INCORRECT, None, None, None, 1, utcnow())
    with pytest.raises(ValueError):
        case.apply_human_review_update(EvalHumanReviewVerdict.CORRECT, True, None, None, 1, utcnow())
