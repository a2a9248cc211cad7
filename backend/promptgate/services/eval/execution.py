"""Run orchestration: claim, process cases sequentially, aggregate and gate."""
from __future__ import annotations

import logging
import time
from collections import Counter
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from promptgate.config import get_settings
from promptgate.models.eval_run import (
    EvalCaseResult,
    EvalCaseStatus,
    EvalMode,
    EvalRun,
    EvalRunStatus,
)
from promptgate.models.prompt import PromptRelease, PromptVersion
from promptgate.services.eval import performance_summary, release_criteria, release_decision, rule_checker
from promptgate.services.eval.judge import EvalJudge, JudgeResult
from promptgate.services.eval.metrics import EvalMetrics
from promptgate.services.eval.prompt_render import build_final_prompt, read_temperature, resolve_max_output_tokens
from promptgate.services.eval.rubric_registry import ResolvedRubricConfig, resolve as resolve_rubric
from promptgate.services.eval.values import read_double, round_half_up, sanitize_message, to_string_list
from promptgate.services.llm.model_runner import ModelRunner

logger = logging.getLogger(__name__)

CASE_ERROR_CODE = "EVAL_CASE_EXECUTION_ERROR"
BASELINE_ERROR_CODE = "BASELINE_EXECUTION_FAILED"
RUN_TIMEOUT = "RUN_TIMEOUT"

TOP_ISSUES_LIMIT = 5
HIGHLIGHT_LIMIT = 5


class CostAccumulator:
    """Sums token and USD usage across every model call of a run."""

    def __init__(self) -> None:
        self.total_tokens = 0
        self.total_cost_usd = Decimal("0")

    def add(self, meta: Optional[Dict[str, Any]]) -> None:
        if not meta:
            return
        tokens = meta.get("totalTokens")
        if tokens is not None and not isinstance(tokens, bool):
            try:
                self.total_tokens += int(str(tokens))
            except ValueError:
                pass
        cost = meta.get("estimatedCostUsd")
        if cost is not None and not isinstance(cost, bool):
            try:
                self.total_cost_usd += Decimal(str(cost))
            except InvalidOperation:
                pass

    def as_dict(self) -> Dict[str, Any]:
        return {
            "totalTokens": self.total_tokens,
            "totalCostUsd": float(self.total_cost_usd.quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)),
        }


class EvalExecutionService:
    """Processes one claimed run to a terminal state.

    Every state change is committed immediately so cancellation and
    progress are visible to other sessions while the run is in flight.
    """

    def __init__(
        self,
        db: Session,
        runner: Optional[ModelRunner] = None,
        judge: Optional[EvalJudge] = None,
        settings=None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.runner = runner or ModelRunner()
        self.judge = judge or EvalJudge(runner=self.runner, settings=self.settings)

    @property
    def run_timeout(self) -> timedelta:
        return timedelta(minutes=max(1, int(self.settings.eval_run_timeout_minutes)))

    def process_run(self, run_id: int) -> Optional[EvalRun]:
        """Drive one run to a terminal state; returns the run row, or None when it does not exist."""
        run = self.db.get(EvalRun, run_id)
        if run is None:
            return None
        if run.status not in (EvalRunStatus.QUEUED, EvalRunStatus.RUNNING):
            return run
        if run.status == EvalRunStatus.QUEUED:
            run.mark_running_with_timeout(self.run_timeout)
            self.db.commit()
        elif run.ensure_timeout_if_missing(self.run_timeout):
            self.db.commit()

        if run.is_timed_out():
            self._fail_timed_out(run)
            return run

        logger.info("Eval run started run_id=%s mode=%s cases=%s", run.id, run.mode.value, run.total_cases)
        cost = CostAccumulator()
        try:
            rubric = resolve_rubric(run.rubric_template_code, run.rubric_overrides_json)
            baseline_version = self._resolve_baseline_version(run)
            compare_baseline_available = run.mode != EvalMode.COMPARE_ACTIVE or baseline_version is not None
            if not compare_baseline_available:
                logger.warning("Eval run %s has no distinct baseline version; comparison disabled", run.id)

            case_ids = [
                case_id
                for (case_id,) in self.db.query(EvalCaseResult.id)
                .filter(EvalCaseResult.eval_run_id == run.id)
                .order_by(EvalCaseResult.id.asc())
                .all()
            ]
            for case_id in case_ids:
                current = self.db.get(EvalRun, run.id, populate_existing=True)
                if current is None or current.status == EvalRunStatus.CANCELLED:
                    logger.info("Eval run cancelled while processing run_id=%s", run.id)
                    return run
                if current.is_timed_out():
                    self._fail_timed_out(current)
                    return run
                case = self.db.get(EvalCaseResult, case_id)
                if case is None or case.status != EvalCaseStatus.QUEUED:
                    continue
                self.process_case(current, case, rubric, baseline_version, cost)

            self.finish_run(run.id, cost, compare_baseline_available)
        except Exception as exc:
            logger.exception("Eval run failed run_id=%s", run_id)
            self.db.rollback()
            self.fail_run(run_id, cost, str(exc))
        return run

    def process_case(
        self,
        run: EvalRun,
        case: EvalCaseResult,
        rubric: ResolvedRubricConfig,
        baseline_version: Optional[PromptVersion],
        cost: CostAccumulator,
    ) -> None:
        started = time.monotonic()
        case.mark_running()
        self.db.commit()

        try:
            test_case = case.test_case
            candidate_version = run.prompt_version
            candidate = self.runner.run(
                run.workspace_id,
                candidate_version.provider,
                candidate_version.model,
                build_final_prompt(candidate_version, test_case),
                read_temperature(candidate_version.model_config),
                resolve_max_output_tokens(candidate_version.provider, candidate_version.model_config),
            )
            cost.add(candidate.meta)

            baseline_output: Optional[str] = None
            baseline_meta: Optional[Dict[str, Any]] = None
            baseline_checks: Optional[Dict[str, Any]] = None
            baseline_judged: Optional[JudgeResult] = None
            if baseline_version is not None:
                try:
                    baseline = self.runner.run(
                        run.workspace_id,
                        baseline_version.provider,
                        baseline_version.model,
                        build_final_prompt(baseline_version, test_case),
                        read_temperature(baseline_version.model_config),
                        resolve_max_output_tokens(baseline_version.provider, baseline_version.model_config),
                    )
                    baseline_output = baseline.output_text
                    baseline_meta = baseline.meta
                    cost.add(baseline_meta)
                    baseline_checks = rule_checker.check(
                        baseline_output,
                        test_case.constraints_json,
                        test_case.expected_json,
                        run.rubric_template_code,
                    )
                    baseline_judged = self.judge.judge(
                        run.workspace_id,
                        rubric,
                        test_case.input_text,
                        test_case.context_json,
                        test_case.expected_json,
                        test_case.constraints_json,
                        baseline_output,
                        baseline_checks,
                        None,
                    )
                    cost.add(baseline_judged.judge_output.get("judgeMeta"))
                except Exception as baseline_exc:
                    logger.warning(
                        "Baseline execution failed run_id=%s case_id=%s: %s", run.id, case.id, baseline_exc
                    )
                    baseline_meta = {"error": BASELINE_ERROR_CODE, "message": sanitize_message(baseline_exc)}
                    baseline_judged = None

            checks = rule_checker.check(
                candidate.output_text,
                test_case.constraints_json,
                test_case.expected_json,
                run.rubric_template_code,
            )
            judged = self.judge.judge(
                run.workspace_id,
                rubric,
                test_case.input_text,
                test_case.context_json,
                test_case.expected_json,
                test_case.constraints_json,
                candidate.output_text,
                checks,
                baseline_output,
            )
            judge_output = dict(judged.judge_output)
            cost.add(judge_output.get("judgeMeta"))
            if baseline_judged is not None:
                judge_output["baseline"] = baseline_judged.judge_output
                judge_output["compare"] = build_compare_summary(judged, baseline_judged)

            case.mark_ok(
                candidate_output=candidate.output_text,
                baseline_output=baseline_output,
                candidate_meta=candidate.meta,
                baseline_meta=baseline_meta,
                rule_checks=combine_rule_checks(checks, baseline_checks),
                judge_output=judge_output,
                overall_score=judged.overall_score,
                passed=judged.passed,
            )
            run.on_case_ok(judged.passed)
            self.db.commit()
        except Exception as exc:
            logger.warning("Eval case failed run_id=%s case_id=%s: %s", run.id, case.id, exc)
            self.db.rollback()
            case = self.db.get(EvalCaseResult, case.id, populate_existing=True)
            latest = self.db.get(EvalRun, run.id, populate_existing=True)
            case.mark_error(CASE_ERROR_CODE, sanitize_message(exc))
            latest.on_case_error()
            self.db.commit()
        EvalMetrics.record_case_execution(time.monotonic() - started, case.status)

    def finish_run(self, run_id: int, cost: CostAccumulator, compare_baseline_available: bool) -> None:
        run = self.db.get(EvalRun, run_id, populate_existing=True)
        if run is None or run.is_terminal():
            return

        results = self._case_results(run.id)
        ok_results = [r for r in results if r.status == EvalCaseStatus.OK]
        error_results = [r for r in results if r.status == EvalCaseStatus.ERROR]
        compare_mode = run.mode == EvalMode.COMPARE_ACTIVE

        # Persisted rows are the source of truth for aggregates, not the live counters.
        passed = sum(1 for r in ok_results if r.pass_ is True)
        failed = len(ok_results) - passed
        errors = len(error_results)
        processed = passed + failed + errors

        pass_rate = passed * 100.0 / processed if processed > 0 else 0.0
        error_rate = errors * 100.0 / processed if processed > 0 else 0.0
        scores = [r.overall_score for r in ok_results if r.overall_score is not None]
        avg_score = sum(scores) / len(scores) if scores else 0.0

        avg_score_delta: Optional[float] = None
        compare_ok = 0
        compare_missing = 0
        compare_complete = True
        if compare_mode:
            deltas = [d for d in (_compare_score_delta(r.judge_output_json) for r in ok_results) if d is not None]
            avg_score_delta = sum(deltas) / len(deltas) if deltas else None
            compare_ok = sum(1 for r in ok_results if _has_compare(r.judge_output_json))
            compare_missing = max(0, len(ok_results) - compare_ok)
            compare_complete = compare_baseline_available and (not ok_results or compare_missing == 0)

        criteria = release_criteria.resolve_or_default(self.db, run.workspace_id)
        decision = release_decision.calculate(
            run.mode, criteria, pass_rate, avg_score, error_rate, avg_score_delta, compare_complete
        )

        summary: Dict[str, Any] = {
            "totalCases": run.total_cases,
            "processedCases": processed,
            "passedCases": passed,
            "failedCases": failed,
            "errorCases": errors,
            "passRate": round_half_up(pass_rate, 2),
            "avgOverallScore": round_half_up(avg_score, 2),
            "errorRate": round_half_up(error_rate, 2),
            "releaseDecision": decision.release_decision,
            "riskLevel": decision.risk_level,
            "decisionReasons": list(decision.reasons),
            "decisionBasis": decision.decision_basis,
            "criteriaSnapshot": {
                "minPassRate": criteria.min_pass_rate,
                "minAvgOverallScore": criteria.min_avg_overall_score,
                "maxErrorRate": criteria.max_error_rate,
                "minImprovementNoticeDelta": criteria.min_improvement_notice_delta,
            },
        }
        if avg_score_delta is not None:
            summary["avgScoreDelta"] = round_half_up(avg_score_delta, 2)
        if compare_mode:
            summary["compareBaselineAvailable"] = compare_baseline_available
            summary["compareBaselineComplete"] = compare_complete
            summary["compareOkCases"] = compare_ok
            summary["compareMissingOkCases"] = compare_missing
            if ok_results:
                summary["compareCoverageRate"] = round_half_up(compare_ok * 100.0 / len(ok_results), 2)

        rule_fail_counts = _count_rule_checks(ok_results, "failedChecks")
        rule_warning_counts = _count_rule_checks(ok_results, "warningChecks")
        error_code_counts = _sorted_counts(Counter(r.error_code for r in results if r.error_code and r.error_code.strip()))
        label_counts = _sorted_counts(
            Counter(label for r in ok_results for label in to_string_list((r.judge_output_json or {}).get("labels")))
        )
        summary["ruleFailCounts"] = rule_fail_counts
        summary["ruleWarningCounts"] = rule_warning_counts
        summary["errorCodeCounts"] = error_code_counts
        summary["labelCounts"] = label_counts

        top_issues = build_top_issues(decision, rule_fail_counts, rule_warning_counts, error_code_counts, label_counts)
        summary["topIssues"] = top_issues
        summary["plainSummary"] = build_plain_summary(decision, pass_rate, avg_score, avg_score_delta, top_issues)
        summary["performanceSummary"] = performance_summary.build_summary(
            [r.candidate_meta_json for r in ok_results],
            [r.baseline_meta_json for r in ok_results],
            compare_mode,
        )

        if self.settings.eval_run_overall_review_enabled:
            if self._stopped_meanwhile(run):
                return
            try:
                review = self.judge.summarize_run(run.workspace_id, run.mode, summary, build_case_highlights(results))
                cost.add(review.meta)
                summary["overallReview"] = review.review
            except Exception as exc:
                logger.warning("Run overall review skipped run_id=%s: %s", run.id, exc)

        # The overall review is slow; the run may have been cancelled meanwhile.
        if self._stopped_meanwhile(run):
            return
        if run.finish(summary, cost.as_dict(), counts=(processed, passed, failed, errors)):
            self.db.commit()
            logger.info(
                "Eval run finished run_id=%s decision=%s pass_rate=%.2f",
                run.id,
                decision.release_decision,
                pass_rate,
            )

    def fail_run(self, run_id: int, cost: CostAccumulator, reason: Optional[str]) -> None:
        run = self.db.get(EvalRun, run_id, populate_existing=True)
        if run is None or run.status == EvalRunStatus.CANCELLED:
            return
        summary = {
            "totalCases": run.total_cases,
            "processedCases": run.processed_cases,
            "passedCases": run.passed_cases,
            "failedCases": run.failed_cases,
            "errorCases": run.error_cases,
            "failReason": sanitize_message(reason),
        }
        if run.fail(summary, cost.as_dict()):
            self.db.commit()
            logger.info("Eval run marked failed run_id=%s", run.id)

    def _stopped_meanwhile(self, run: EvalRun) -> bool:
        self.db.refresh(run, attribute_names=["status"])
        if run.is_terminal():
            logger.info("Eval run %s left RUNNING before finish status=%s", run.id, run.status.value)
            return True
        return False

    def _fail_timed_out(self, run: EvalRun) -> None:
        minutes = int(self.settings.eval_run_timeout_minutes)
        if run.fail_with_reason(RUN_TIMEOUT, f"Run exceeded the time limit ({minutes} min)"):
            self.db.commit()
            logger.warning("Eval run timed out run_id=%s", run.id)

    def _resolve_baseline_version(self, run: EvalRun) -> Optional[PromptVersion]:
        if run.mode != EvalMode.COMPARE_ACTIVE:
            return None
        release = self.db.query(PromptRelease).filter(PromptRelease.prompt_id == run.prompt_id).first()
        if release is None or release.active_version is None:
            return None
        if release.active_version.id == run.prompt_version_id:
            return None
        return release.active_version

    def _case_results(self, run_id: int) -> List[EvalCaseResult]:
        return (
            self.db.query(EvalCaseResult)
            .filter(EvalCaseResult.eval_run_id == run_id)
            .order_by(EvalCaseResult.id.asc())
            .populate_existing()
            .all()
        )


def combine_rule_checks(
    candidate_checks: Optional[Dict[str, Any]],
    baseline_checks: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    candidate = dict(candidate_checks or {})
    if baseline_checks is None:
        return candidate
    combined = dict(candidate)
    combined["candidate"] = candidate
    combined["baseline"] = dict(baseline_checks)
    return combined


def build_compare_summary(candidate: JudgeResult, baseline: JudgeResult) -> Dict[str, Any]:
    score_delta = round_half_up(candidate.overall_score - baseline.overall_score, 2)
    if candidate.passed and not baseline.passed:
        winner = "CANDIDATE"
    elif baseline.passed and not candidate.passed:
        winner = "BASELINE"
    elif abs(score_delta) < 0.01:
        winner = "TIE"
    else:
        winner = "CANDIDATE" if score_delta > 0 else "BASELINE"
    return {
        "candidateOverallScore": round_half_up(candidate.overall_score, 2),
        "baselineOverallScore": round_half_up(baseline.overall_score, 2),
        "candidatePass": candidate.passed,
        "baselinePass": baseline.passed,
        "scoreDelta": score_delta,
        "winner": winner,
    }


def build_top_issues(
    decision: release_decision.ReleaseDecision,
    rule_fail_counts: Dict[str, int],
    rule_warning_counts: Dict[str, int],
    error_code_counts: Dict[str, int],
    label_counts: Dict[str, int],
) -> List[str]:
    issues: List[str] = []

    def _add(issue: str) -> None:
        if issue not in issues:
            issues.append(issue)

    for reason in decision.reasons:
        _add(release_decision.reason_label(reason))
    if rule_fail_counts:
        _add(f"Top rule failure: {next(iter(rule_fail_counts))}")
    if rule_warning_counts:
        _add(f"Top rule warning: {next(iter(rule_warning_counts))}")
    if error_code_counts:
        _add(f"Execution error code: {next(iter(error_code_counts))}")
    if label_counts:
        _add(f"Top judge issue: {next(iter(label_counts))}")
    return issues[:TOP_ISSUES_LIMIT]


def build_plain_summary(
    decision: release_decision.ReleaseDecision,
    pass_rate: float,
    avg_score: float,
    avg_score_delta: Optional[float],
    top_issues: List[str],
) -> str:
    parts = [
        "Decision: " + ("Hold" if decision.is_hold else "Safe to deploy"),
        f"PassRate {round_half_up(pass_rate, 2)}%",
        f"Avg score {round_half_up(avg_score, 2)}",
    ]
    if avg_score_delta is not None:
        parts.append(f"Compare Δ {round_half_up(avg_score_delta, 2)}")
    if top_issues:
        parts.append(f"Top issue: {top_issues[0]}")
    return " / ".join(parts)


def build_case_highlights(results: List[EvalCaseResult]) -> List[Dict[str, Any]]:
    """Up to five cases for the overall review, errors and failures first."""

    def _priority(result: EvalCaseResult) -> int:
        if result.status == EvalCaseStatus.ERROR:
            return 0
        if result.status == EvalCaseStatus.OK and result.pass_ is not True:
            return 1
        return 2

    terminal = [r for r in results if r.status in (EvalCaseStatus.OK, EvalCaseStatus.ERROR)]
    highlights = []
    for result in sorted(terminal, key=lambda r: (_priority(r), r.id))[:HIGHLIGHT_LIMIT]:
        judge_output = result.judge_output_json or {}
        highlight: Dict[str, Any] = {
            "caseResultId": result.id,
            "testCaseId": result.test_case_id,
            "status": result.status.value,
            "pass": result.pass_,
            "overallScore": result.overall_score,
            "labels": to_string_list(judge_output.get("labels"))[:5],
            "reason": judge_output.get("reason"),
        }
        if result.error_code:
            highlight["errorCode"] = result.error_code
            highlight["errorMessage"] = result.error_message
        compare = judge_output.get("compare")
        if isinstance(compare, dict):
            highlight["compare"] = {"scoreDelta": compare.get("scoreDelta"), "winner": compare.get("winner")}
        highlights.append(highlight)
    return highlights


def _has_compare(judge_output: Optional[Dict[str, Any]]) -> bool:
    return isinstance((judge_output or {}).get("compare"), dict)


def _compare_score_delta(judge_output: Optional[Dict[str, Any]]) -> Optional[float]:
    compare = (judge_output or {}).get("compare")
    if not isinstance(compare, dict):
        return None
    return read_double(compare.get("scoreDelta"))


def _count_rule_checks(ok_results: List[EvalCaseResult], key: str) -> Dict[str, int]:
    counts: Counter = Counter()
    for result in ok_results:
        checks = result.rule_checks_json or {}
        candidate = checks.get("candidate") if isinstance(checks.get("candidate"), dict) else checks
        for check in to_string_list(candidate.get(key)):
            counts[check] += 1
    return _sorted_counts(counts)


def _sorted_counts(counts: Counter) -> Dict[str, int]:
    # Counter preserves first-seen order; sorted() is stable, so ties keep it.
    return dict(sorted(counts.items(), key=lambda item: item[1], reverse=True))
