import json
from collections import Counter
from datetime import timedelta

from promptgate.models.eval_run import EvalCaseResult, EvalCaseStatus, EvalMode, EvalRun, EvalRunStatus
from promptgate.services.eval import execution, run_service
from promptgate.services.eval.execution import (
    CASE_ERROR_CODE,
    CostAccumulator,
    EvalExecutionService,
    build_compare_summary,
    _sorted_counts,
    build_top_issues,
)
from promptgate.services.eval.judge import JudgeResult
from promptgate.services.eval.release_decision import ReleaseDecision
from promptgate.services.eval.values import sanitize_message
from promptgate.services.llm.types import ModelExecution

JUDGE_MODEL = "gpt-4.1-mini"

_META = {"totalTokens": 10, "estimatedCostUsd": 0.001, "latencyMs": 100}


def _judge_json(score, passed=True, labels=None):
    return json.dumps(
        {
            "pass": passed,
            "reason": "Verdict reason: fine" if passed else "Fail reason: weak",
            "scores": {"relevance": score, "completeness": score, "clarity": score, "safety": score},
            "labels": labels or [],
            "evidence": [],
            "suggestions": [],
        }
    )


class _FakeRunner:
    """Answers generation calls with ``outputs`` and judge calls with ``judge``."""

    def __init__(self, outputs=None, judge=None, on_call=None):
        self.outputs = outputs or {}
        self.judge = judge or (lambda prompt: _judge_json(5))
        self.on_call = on_call
        self.calls = []

    def run(self, workspace_id, provider, model, prompt, temperature=None, max_output_tokens=None):
        self.calls.append((model, prompt))
        if self.on_call is not None:
            self.on_call(model, prompt)
        if model == JUDGE_MODEL:
            return ModelExecution(output_text=self.judge(prompt), meta=dict(_META))
        value = self.outputs.get((model, prompt), self.outputs.get(prompt, "generic answer"))
        if isinstance(value, Exception):
            raise value
        return ModelExecution(output_text=value, meta=dict(_META))


def _queue_run(db, seeded, mode=EvalMode.CANDIDATE_ONLY):
    created = run_service.create_run(
        db,
        seeded.prompt.workspace_id,
        seeded.prompt.id,
        3,
        seeded.candidate.id,
        seeded.dataset.id,
        mode,
    )
    return created["id"]


def _cases(db, run_id):
    return (
        db.query(EvalCaseResult)
        .filter(EvalCaseResult.eval_run_id == run_id)
        .order_by(EvalCaseResult.id.asc())
        .all()
    )


def test_process_run_finishes_candidate_only_run(db, settings, seed_prompt):
    seeded = seed_prompt()
    run_id = _queue_run(db, seeded)
    runner = _FakeRunner()

    EvalExecutionService(db, runner=runner, settings=settings).process_run(run_id)

    run = db.get(EvalRun, run_id)
    assert run.status == EvalRunStatus.FINISHED
    assert (run.processed_cases, run.passed_cases, run.failed_cases, run.error_cases) == (2, 2, 0, 0)
    assert run.timeout_at is not None
    summary = run.summary_json
    assert summary["passRate"] == 100.0
    assert summary["avgOverallScore"] == 100.0
    assert summary["releaseDecision"] == "SAFE_TO_DEPLOY"
    assert summary["riskLevel"] == "LOW"
    assert summary["plainSummary"].startswith("Decision: Safe to deploy")
    assert "avgScoreDelta" not in summary
    assert summary["performanceSummary"]["candidate"]["avgTokensPerCase"] == 10.0
    assert "baseline" not in summary["performanceSummary"]
    # 2 cases x (candidate call + judge call)
    assert run.cost_json == {"totalTokens": 40, "totalCostUsd": 0.004}
    assert all(case.status == EvalCaseStatus.OK and case.pass_ for case in _cases(db, run_id))


def test_case_error_is_isolated_and_run_still_finishes(db, settings, seed_prompt):
    seeded = seed_prompt(inputs=("boom", "fine"))
    run_id = _queue_run(db, seeded)
    runner = _FakeRunner(outputs={"boom": RuntimeError("provider exploded")})

    EvalExecutionService(db, runner=runner, settings=settings).process_run(run_id)

    run = db.get(EvalRun, run_id)
    assert run.status == EvalRunStatus.FINISHED
    assert run.error_cases == 1
    assert run.passed_cases == 1
    first, second = _cases(db, run_id)
    assert first.status == EvalCaseStatus.ERROR
    assert first.error_code == CASE_ERROR_CODE
    assert first.error_message == "provider exploded"
    assert second.status == EvalCaseStatus.OK

    summary = run.summary_json
    assert summary["errorRate"] == 50.0
    assert summary["releaseDecision"] == "HOLD"
    assert summary["riskLevel"] == "HIGH"
    assert summary["errorCodeCounts"] == {CASE_ERROR_CODE: 1}
    assert f"Execution error code: {CASE_ERROR_CODE}" in summary["topIssues"]


def test_timed_out_run_fails_without_touching_cases(db, settings, seed_prompt):
    seeded = seed_prompt()
    run_id = _queue_run(db, seeded)
    run = db.get(EvalRun, run_id)
    run.mark_running_with_timeout(timedelta(minutes=-1))
    db.commit()
    runner = _FakeRunner()

    EvalExecutionService(db, runner=runner, settings=settings).process_run(run_id)

    run = db.get(EvalRun, run_id)
    assert run.status == EvalRunStatus.FAILED
    assert run.fail_reason_code == "RUN_TIMEOUT"
    assert runner.calls == []
    assert all(case.status == EvalCaseStatus.QUEUED for case in _cases(db, run_id))


def test_cancellation_is_observed_at_the_next_case_boundary(db, settings, seed_prompt):
    seeded = seed_prompt(inputs=("first", "second", "third"))
    run_id = _queue_run(db, seeded)

    def _cancel_once(model, prompt):
        if prompt == "first":
            db.get(EvalRun, run_id).mark_cancelled()

    runner = _FakeRunner(on_call=_cancel_once)
    EvalExecutionService(db, runner=runner, settings=settings).process_run(run_id)

    run = db.get(EvalRun, run_id)
    assert run.status == EvalRunStatus.CANCELLED
    statuses = [case.status for case in _cases(db, run_id)]
    assert statuses == [EvalCaseStatus.OK, EvalCaseStatus.QUEUED, EvalCaseStatus.QUEUED]


def test_terminal_run_is_not_reprocessed(db, settings, seed_prompt):
    seeded = seed_prompt()
    run_id = _queue_run(db, seeded)
    db.get(EvalRun, run_id).mark_cancelled()
    db.commit()
    runner = _FakeRunner()

    EvalExecutionService(db, runner=runner, settings=settings).process_run(run_id)

    assert db.get(EvalRun, run_id).status == EvalRunStatus.CANCELLED
    assert runner.calls == []


def test_compare_run_records_baseline_and_score_delta(db, settings, seed_prompt):
    seeded = seed_prompt(inputs=("q1",), with_release=True)
    run_id = _queue_run(db, seeded, EvalMode.COMPARE_ACTIVE)
    runner = _FakeRunner(
        outputs={
            (seeded.candidate.model, "q1"): "cand-out",
            (seeded.baseline.model, "q1"): "base-out",
        },
        judge=lambda prompt: _judge_json(5) if '"candidateOutput": "cand-out"' in prompt else _judge_json(4),
    )

    EvalExecutionService(db, runner=runner, settings=settings).process_run(run_id)

    run = db.get(EvalRun, run_id)
    assert run.status == EvalRunStatus.FINISHED
    (case,) = _cases(db, run_id)
    assert case.baseline_output_text == "base-out"
    compare = case.judge_output_json["compare"]
    assert compare["candidateOverallScore"] == 100.0
    assert compare["baselineOverallScore"] == 80.0
    assert compare["scoreDelta"] == 20.0
    assert compare["winner"] == "CANDIDATE"
    assert case.rule_checks_json["baseline"]["pass"] is True

    summary = run.summary_json
    assert summary["avgScoreDelta"] == 20.0
    assert summary["compareBaselineComplete"] is True
    assert summary["compareOkCases"] == 1
    assert summary["releaseDecision"] == "SAFE_TO_DEPLOY"
    assert summary["performanceSummary"]["delta"]["avgTokensPerCase"] == {"value": 0.0, "pct": 0.0}
    # candidate + baseline generation, then one judge call each
    assert run.cost_json["totalTokens"] == 40


def test_baseline_failure_degrades_and_holds_for_incomplete_comparison(db, settings, seed_prompt):
    seeded = seed_prompt(inputs=("q1",), with_release=True)
    run_id = _queue_run(db, seeded, EvalMode.COMPARE_ACTIVE)
    runner = _FakeRunner(outputs={(seeded.baseline.model, "q1"): RuntimeError("baseline down")})

    EvalExecutionService(db, runner=runner, settings=settings).process_run(run_id)

    run = db.get(EvalRun, run_id)
    (case,) = _cases(db, run_id)
    assert case.status == EvalCaseStatus.OK
    assert case.baseline_meta_json["error"] == "BASELINE_EXECUTION_FAILED"
    assert "compare" not in case.judge_output_json
    summary = run.summary_json
    assert summary["compareBaselineComplete"] is False
    assert summary["compareMissingOkCases"] == 1
    assert summary["releaseDecision"] == "HOLD"
    assert "COMPARE_BASELINE_INCOMPLETE" in summary["decisionReasons"]


def test_overall_review_is_attached_and_costed(db, settings, seed_prompt):
    settings.eval_run_overall_review_enabled = True
    seeded = seed_prompt(inputs=("q1",))
    run_id = _queue_run(db, seeded)

    def _judge(prompt):
        if prompt.startswith("You are an operations reviewer"):
            return json.dumps(
                {
                    "overallComment": "All good.",
                    "verdictReason": "passRate 100",
                    "strengths": ["a", "b", "c", "d"],
                    "risks": [],
                    "nextActions": ["ship"],
                }
            )
        return _judge_json(5)

    EvalExecutionService(db, runner=_FakeRunner(judge=_judge), settings=settings).process_run(run_id)

    run = db.get(EvalRun, run_id)
    review = run.summary_json["overallReview"]
    assert review["overallComment"] == "All good."
    assert review["strengths"] == ["a", "b", "c"]
    assert run.cost_json["totalTokens"] == 30


def test_overall_review_failure_does_not_block_finish(db, settings, seed_prompt):
    settings.eval_run_overall_review_enabled = True
    seeded = seed_prompt(inputs=("q1",))
    run_id = _queue_run(db, seeded)

    def _judge(prompt):
        if prompt.startswith("You are an operations reviewer"):
            raise RuntimeError("review model down")
        return _judge_json(5)

    EvalExecutionService(db, runner=_FakeRunner(judge=_judge), settings=settings).process_run(run_id)

    run = db.get(EvalRun, run_id)
    assert run.status == EvalRunStatus.FINISHED
    assert "overallReview" not in run.summary_json


def test_finish_run_recomputes_aggregates_from_persisted_rows(db, settings, seed_prompt):
    seeded = seed_prompt(inputs=("a", "b", "c"))
    run_id = _queue_run(db, seeded)
    run = db.get(EvalRun, run_id)
    run.mark_running()
    run.passed_cases = 99
    run.processed_cases = 99
    first, second, third = _cases(db, run_id)
    for case, passed, score in ((first, True, 90.0), (second, False, 40.0)):
        case.mark_ok(
            candidate_output="x",
            baseline_output=None,
            candidate_meta=dict(_META),
            baseline_meta=None,
            rule_checks={"pass": passed, "failedChecks": [] if passed else ["max_chars"], "warningChecks": []},
            judge_output={"labels": [] if passed else ["TOO_LONG"], "reason": "r"},
            overall_score=score,
            passed=passed,
        )
    third.mark_error(CASE_ERROR_CODE, "boom")
    db.commit()

    EvalExecutionService(db, runner=_FakeRunner(), settings=settings).finish_run(run_id, CostAccumulator(), True)

    run = db.get(EvalRun, run_id)
    assert (run.processed_cases, run.passed_cases, run.failed_cases, run.error_cases) == (3, 1, 1, 1)
    summary = run.summary_json
    assert summary["passRate"] == 33.33
    assert summary["avgOverallScore"] == 65.0
    assert summary["ruleFailCounts"] == {"max_chars": 1}
    assert summary["labelCounts"] == {"TOO_LONG": 1}
    assert summary["topIssues"][0] == "Pass rate below threshold"
    assert "Top rule failure: max_chars" in summary["topIssues"]
    assert len(summary["topIssues"]) <= 5


def test_cost_accumulator_sums_tokens_and_cost():
    cost = CostAccumulator()
    cost.add({"totalTokens": 12, "estimatedCostUsd": 0.0000015})
    cost.add({"totalTokens": "8", "estimatedCostUsd": "0.000001"})
    cost.add(None)
    cost.add({"totalTokens": True})
    assert cost.as_dict() == {"totalTokens": 20, "totalCostUsd": 0.000003}


def test_compare_summary_prefers_pass_over_score():
    candidate = JudgeResult(judge_output={}, overall_score=60.0, passed=True)
    baseline = JudgeResult(judge_output={}, overall_score=90.0, passed=False)
    assert build_compare_summary(candidate, baseline)["winner"] == "CANDIDATE"
    tie = build_compare_summary(
        JudgeResult(judge_output={}, overall_score=80.0, passed=True),
        JudgeResult(judge_output={}, overall_score=80.0, passed=True),
    )
    assert tie["winner"] == "TIE"
    assert tie["scoreDelta"] == 0.0


def test_top_issues_are_deduplicated_and_capped():
    decision = ReleaseDecision(
        release_decision="HOLD",
        risk_level="HIGH",
        reasons=["PASS_RATE_BELOW_THRESHOLD", "AVG_SCORE_BELOW_THRESHOLD", "ERROR_RATE_ABOVE_THRESHOLD"],
    )
    issues = build_top_issues(decision, {"max_chars": 2}, {"must_include": 1}, {"X": 1}, {"LABEL": 3})
    assert len(issues) == 5
    assert issues[:3] == [
        "Pass rate below threshold",
        "Average score below threshold",
        "Error rate above threshold",
    ]
    assert issues[3] == "Top rule failure: max_chars"


def _review_json():
    return json.dumps({"overallComment": "ok", "verdictReason": "r", "strengths": [], "risks": [], "nextActions": []})


def test_cancel_during_overall_review_keeps_cancelled_row_untouched(db, settings, seed_prompt):
    settings.eval_run_overall_review_enabled = True
    seeded = seed_prompt(inputs=("only",))
    run_id = _queue_run(db, seeded)
    run = db.get(EvalRun, run_id)
    run.mark_running()
    run.processed_cases = 7
    run.passed_cases = 7
    (case,) = _cases(db, run_id)
    case.mark_ok(
        candidate_output="x",
        baseline_output=None,
        candidate_meta=dict(_META),
        baseline_meta=None,
        rule_checks={"pass": True, "failedChecks": [], "warningChecks": []},
        judge_output={"labels": []},
        overall_score=90.0,
        passed=True,
    )
    db.commit()

    def _judge(prompt):
        db.get(EvalRun, run_id).mark_cancelled()
        db.commit()
        return _review_json()

    EvalExecutionService(db, runner=_FakeRunner(judge=_judge), settings=settings).finish_run(
        run_id, CostAccumulator(), True
    )
    db.commit()
    db.expire_all()

    run = db.get(EvalRun, run_id)
    assert (run.status, run.processed_cases, run.passed_cases) == (EvalRunStatus.CANCELLED, 7, 7)
    assert run.summary_json is None


def test_run_cancelled_before_overall_review_skips_the_review_call(db, settings, seed_prompt, monkeypatch):
    settings.eval_run_overall_review_enabled = True
    seeded = seed_prompt(inputs=("only",))
    run_id = _queue_run(db, seeded)
    db.get(EvalRun, run_id).mark_running()
    db.commit()

    resolve_criteria = execution.release_criteria.resolve_or_default

    def _cancel_then_resolve(session, workspace_id):
        session.get(EvalRun, run_id).mark_cancelled()
        session.commit()
        return resolve_criteria(session, workspace_id)

    monkeypatch.setattr(execution.release_criteria, "resolve_or_default", _cancel_then_resolve)
    runner = _FakeRunner(judge=lambda prompt: _review_json())

    EvalExecutionService(db, runner=runner, settings=settings).finish_run(run_id, CostAccumulator(), True)

    assert runner.calls == []
    run = db.get(EvalRun, run_id)
    assert run.status == EvalRunStatus.CANCELLED
    assert run.summary_json is None


def test_case_error_message_is_capped_at_400_characters(db, settings, seed_prompt):
    seeded = seed_prompt(inputs=("boom",))
    run_id = _queue_run(db, seeded)
    runner = _FakeRunner(outputs={"boom": RuntimeError("x" * 450)})

    EvalExecutionService(db, runner=runner, settings=settings).process_run(run_id)

    (case,) = _cases(db, run_id)
    assert case.status == EvalCaseStatus.ERROR
    assert case.error_code == CASE_ERROR_CODE
    assert case.error_message == "x" * 400


def test_sanitize_message_defaults_and_truncates():
    assert sanitize_message(None) == "unknown"
    assert sanitize_message("   ") == "unknown"
    assert sanitize_message("  timeout  ") == "timeout"
    assert len(sanitize_message("y" * 401)) == 400


def test_frequency_tables_keep_first_seen_order_on_ties(db, settings, seed_prompt):
    assert list(_sorted_counts(Counter(["B", "A", "A", "C", "B"]))) == ["B", "A", "C"]

    seeded = seed_prompt(inputs=("a", "b"))
    run_id = _queue_run(db, seeded)
    db.get(EvalRun, run_id).mark_running()
    for case, labels in zip(_cases(db, run_id), (["TONE", "FACTS"], ["FACTS", "TONE"])):
        case.mark_ok(
            candidate_output="x",
            baseline_output=None,
            candidate_meta=dict(_META),
            baseline_meta=None,
            rule_checks={"pass": True, "failedChecks": [], "warningChecks": []},
            judge_output={"labels": labels},
            overall_score=90.0,
            passed=True,
        )
    db.commit()

    EvalExecutionService(db, runner=_FakeRunner(), settings=settings).finish_run(run_id, CostAccumulator(), True)

    assert list(db.get(EvalRun, run_id).summary_json["labelCounts"].items()) == [("TONE", 2), ("FACTS", 2)]
