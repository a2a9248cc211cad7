"""LLM judge: prompt construction, multi-attempt scoring and run overall review."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from promptgate.config import get_settings
from promptgate.models.eval_run import EvalMode
from promptgate.services.eval.rubric_registry import ResolvedRubricConfig
from promptgate.services.eval.values import (
    limit_non_blank,
    read_boolean,
    read_double,
    round_half_up,
    to_string_list,
    trim_to_none,
)
from promptgate.services.llm.model_runner import ModelRunner
from promptgate.services.llm.types import ModelExecution, ProviderType

logger = logging.getLogger(__name__)

DECISION_STRATEGY = "PASS_IF_ANY_ELSE_BEST_SCORE"

LABEL_JSON_NOT_FOUND = "JUDGE_JSON_NOT_FOUND"
LABEL_JSON_PARSE_FAIL = "JUDGE_JSON_PARSE_FAIL"
LABEL_ATTEMPT_NOT_CREATED = "JUDGE_ATTEMPT_NOT_CREATED"
LABEL_CRITERION_DEFINITION_MISSING = "RUBRIC_CRITERION_DEFINITION_MISSING"
LABEL_REVIEW_JSON_NOT_FOUND = "RUN_OVERALL_REVIEW_JSON_NOT_FOUND"
LABEL_REVIEW_JSON_PARSE_FAIL = "RUN_OVERALL_REVIEW_JSON_PARSE_FAIL"

FAIL_REASON_PREFIX = "Fail reason: "
PASS_REASON_PREFIX = "Verdict reason: "

# Keyword checks are already settled by the rule checker; the judge must not re-check them.
_JUDGE_HIDDEN_KEYS = (
    "must_include",
    "must_not_include",
    "keyword_normalization",
    "keyword_normalize",
    "forbidden_words",
)
_BULLET_PREFIX = re.compile(r"^[\s\-*]+")
_LINE_BREAK = re.compile(r"\r\n|[\n\x0b\x0c\r\x85\u2028\u2029]")


@dataclass
class JudgeResult:
    judge_output: Dict[str, Any]
    overall_score: float
    passed: bool


@dataclass
class RunOverallReviewResult:
    review: Dict[str, Any]
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AttemptEvaluation:
    attempt: int
    execution: ModelExecution
    raw: Dict[str, Any]
    scores: Dict[str, float]
    overall_score: float
    passed: bool

    def as_summary(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "pass": self.passed,
            "overallScore": self.overall_score,
            "labels": to_string_list(self.raw.get("labels")),
        }


class EvalJudge:
    """Scores candidate outputs against a resolved rubric with a judge model."""

    def __init__(self, runner: Optional[ModelRunner] = None, settings=None) -> None:
        self._settings = settings or get_settings()
        self._runner = runner or ModelRunner()

    def judge(
        self,
        workspace_id: Optional[int],
        rubric: ResolvedRubricConfig,
        input_text: Optional[str],
        context: Optional[Dict[str, Any]],
        expected: Optional[Dict[str, Any]],
        constraints: Optional[Dict[str, Any]],
        candidate_output: Optional[str],
        rule_checks: Optional[Dict[str, Any]],
        baseline_output: Optional[str],
    ) -> JudgeResult:
        prompt = build_judge_prompt(
            rubric, input_text, context, expected, constraints, candidate_output, rule_checks, baseline_output
        )
        provider = ProviderType.parse(self._settings.eval_judge_provider)
        model = self._settings.eval_judge_model
        temperature = self._settings.eval_judge_temperature
        max_attempts = self._settings.judge_max_attempts()
        rejudge_on_fail = bool(self._settings.eval_judge_rejudge_on_fail)

        attempts: List[AttemptEvaluation] = []
        for attempt in range(1, max_attempts + 1):
            execution = self._runner.run(workspace_id, provider, model, prompt, temperature, None)
            evaluation = evaluate_attempt(execution, rubric, rule_checks, attempt)
            attempts.append(evaluation)
            if evaluation.passed or not rejudge_on_fail:
                break
            logger.info("Judge attempt %s failed (score=%s), re-judging", attempt, evaluation.overall_score)

        selected = select_attempt(attempts) or _fallback_attempt()
        evidence = to_string_list(selected.raw.get("evidence"))
        output: Dict[str, Any] = {
            "pass": selected.passed,
            "scores": dict(selected.scores),
            "labels": to_string_list(selected.raw.get("labels")),
            "reason": normalize_reason(selected.raw.get("reason"), evidence, selected.passed),
            "evidence": evidence,
            "suggestions": to_string_list(selected.raw.get("suggestions")),
            "overallScore": selected.overall_score,
            "judgeMeta": dict(selected.execution.meta or {}),
        }
        if len(attempts) > 1:
            output["judgeAttempts"] = [a.as_summary() for a in attempts]
            output["judgeDecisionStrategy"] = DECISION_STRATEGY
        return JudgeResult(judge_output=output, overall_score=selected.overall_score, passed=selected.passed)

    def summarize_run(
        self,
        workspace_id: Optional[int],
        mode: Optional[EvalMode],
        summary: Dict[str, Any],
        case_highlights: List[Dict[str, Any]],
    ) -> RunOverallReviewResult:
        prompt = build_overall_review_prompt(mode, summary, case_highlights)
        execution = self._runner.run(
            workspace_id,
            ProviderType.parse(self._settings.eval_judge_provider),
            self._settings.eval_judge_model,
            prompt,
            self._settings.eval_judge_temperature,
            None,
        )
        raw = _parse_object(execution.output_text, _fallback_overall_review)
        return RunOverallReviewResult(review=normalize_overall_review(raw), meta=dict(execution.meta or {}))


def select_attempt(attempts: Sequence[AttemptEvaluation]) -> Optional[AttemptEvaluation]:
    """First passing attempt, else the earliest highest-scoring failure."""
    best_failed: Optional[AttemptEvaluation] = None
    for evaluation in attempts:
        if evaluation.passed:
            return evaluation
        if best_failed is None or evaluation.overall_score > best_failed.overall_score:
            best_failed = evaluation
    return best_failed


def evaluate_attempt(
    execution: ModelExecution,
    rubric: ResolvedRubricConfig,
    rule_checks: Optional[Dict[str, Any]],
    attempt: int,
) -> AttemptEvaluation:
    raw = _parse_object(execution.output_text, _fallback_judge_output)
    scores = normalize_scores(raw.get("scores"))
    overall = compute_overall_score(scores, rubric.weights)
    rule_pass = read_boolean((rule_checks or {}).get("pass"))
    model_pass = read_boolean(raw.get("pass"))
    gate_pass = passes_gates(overall, rule_checks, rubric.gates, scores)
    return AttemptEvaluation(
        attempt=attempt,
        execution=execution,
        raw=raw,
        scores=scores,
        overall_score=overall,
        passed=model_pass and rule_pass and gate_pass,
    )


def normalize_scores(raw_scores: Any) -> Dict[str, float]:
    scores: Dict[str, float] = {}
    if not isinstance(raw_scores, dict):
        return scores
    for key, value in raw_scores.items():
        if key is None:
            continue
        number = read_double(value)
        if number is None:
            continue
        scores[str(key)] = min(5.0, max(0.0, number))
    return scores


def compute_overall_score(scores: Dict[str, float], weights: Dict[str, float]) -> float:
    weight_sum = 0.0
    weighted = 0.0
    for key, weight in (weights or {}).items():
        weight = weight or 0.0
        if weight <= 0:
            continue
        weight_sum += weight
        weighted += (scores.get(key, 0.0) / 5.0) * 100.0 * weight
    if weight_sum <= 0:
        return 0.0
    return round_half_up(weighted / weight_sum, 2)


def passes_gates(
    overall_score: float,
    rule_checks: Optional[Dict[str, Any]],
    gates: Optional[Dict[str, Any]],
    scores: Dict[str, float],
) -> bool:
    gates = gates or {}

    min_overall = read_double(gates.get("minOverallScore"))
    if min_overall is not None and overall_score < min_overall:
        return False

    if read_boolean(gates.get("requireJsonParsePass")):
        if (rule_checks or {}).get("json_parse") != "PASS":
            return False

    min_criterion_scores = gates.get("minCriterionScores")
    if isinstance(min_criterion_scores, dict):
        for criterion, raw_min in min_criterion_scores.items():
            if criterion is None:
                continue
            min_score = read_double(raw_min)
            if min_score is None:
                continue
            if scores.get(str(criterion), 0.0) < min_score:
                return False
    return True


def normalize_reason(raw_reason: Any, evidence: List[str], passed: bool) -> str:
    reason = str(raw_reason).strip() if raw_reason is not None else ""
    if not reason and evidence:
        reason = evidence[0]
    if not reason:
        reason = "Evaluation criteria met." if passed else "Evaluation criteria not met."
    if reason.startswith(FAIL_REASON_PREFIX.strip()) or reason.startswith(PASS_REASON_PREFIX.strip()):
        return reason
    return (PASS_REASON_PREFIX if passed else FAIL_REASON_PREFIX) + reason


def extract_first_json_object(text: Optional[str]) -> Optional[str]:
    """Return the first balanced top-level ``{...}`` in ``text``, or None."""
    if text is None or not text.strip():
        return None

    candidate = text.strip()
    if candidate.startswith("```") and candidate.endswith("```"):
        start = candidate.find("{")
        end = candidate.rfind("}")
        if start >= 0 and end > start:
            candidate = candidate[start:end + 1]

    start = candidate.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaping = False
    for i in range(start, len(candidate)):
        ch = candidate[i]
        if in_string:
            if escaping:
                escaping = False
            elif ch == "\\":
                escaping = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return candidate[start:i + 1]
    return None


def extract_criteria_definitions(description: Optional[str], weights: Dict[str, float]) -> Dict[str, str]:
    if not description or not description.strip() or not weights:
        return {}
    canonical = {}
    for key in weights:
        if key and key.strip():
            canonical[key.strip().lower()] = key

    definitions: Dict[str, str] = {}
    for raw_line in _LINE_BREAK.split(description):
        line = raw_line.strip()
        if not line:
            continue
        # "- key: meaning" bullets are allowed
        line = _BULLET_PREFIX.sub("", line, count=1)
        colon = line.find(":")
        if colon <= 0:
            continue
        candidate_key = line[:colon].strip()
        meaning = line[colon + 1:].strip()
        if not candidate_key or not meaning:
            continue
        key = canonical.get(candidate_key.lower())
        if key is not None and key not in definitions:
            definitions[key] = meaning
    return definitions


def missing_criteria_definitions(weights: Dict[str, float], definitions: Dict[str, str]) -> List[str]:
    return [key for key in (weights or {}) if key is not None and key not in definitions]


def build_judge_prompt(
    rubric: ResolvedRubricConfig,
    input_text: Optional[str],
    context: Optional[Dict[str, Any]],
    expected: Optional[Dict[str, Any]],
    constraints: Optional[Dict[str, Any]],
    candidate_output: Optional[str],
    rule_checks: Optional[Dict[str, Any]],
    baseline_output: Optional[str],
) -> str:
    is_custom = (rubric.template_code or "").upper() == "CUSTOM"
    rubric_payload: Dict[str, Any] = {
        "template": rubric.template_code,
        "description": rubric.description,
        "weights": rubric.weights,
        "gates": rubric.gates,
    }
    if rubric.criteria_anchors:
        rubric_payload["criteriaAnchors"] = rubric.criteria_anchors
    if is_custom:
        definitions = extract_criteria_definitions(rubric.description, rubric.weights)
        rubric_payload["criteriaDefinitions"] = definitions
        rubric_payload["missingCriteriaDefinitions"] = missing_criteria_definitions(rubric.weights, definitions)

    payload = {
        "rubric": rubric_payload,
        "input": input_text,
        "context": context,
        "expected": _hide_keyword_checks(expected),
        "constraints": _hide_keyword_checks(constraints),
        "candidateOutput": candidate_output,
        "ruleChecks": rule_checks,
        "baselineOutput": baseline_output,
    }
    payload_json = _dump_payload(payload, "Judge prompt")

    custom_rules = ""
    if is_custom:
        custom_rules = f"""- For a CUSTOM rubric the rubric.weights key names may be ambiguous.
  Score each criterion using rubric.criteriaDefinitions (the `key: meaning` lines of rubric.description).
  If missingCriteriaDefinitions is not empty, include "{LABEL_CRITERION_DEFINITION_MISSING}" in labels and list the missing keys in evidence.
"""

    return f"""You are a prompt evaluation judge.
Read the input JSON below and evaluate candidateOutput only.
baselineOutput is for reference; the final pass decision is about the candidate.

Output ONLY a JSON object. No Markdown, no code fences.
Output schema:
{{
  "pass": true,
  "reason": "{FAIL_REASON_PREFIX}missing key point ...",
  "scores": {{"<criterion>": number 1-5}},
  "labels": ["issue label"],
  "evidence": ["evidence"],
  "suggestions": ["improvement"],
  "mustCoverChecks": [{{"item": "key point", "covered": true, "note": "one-line evidence"}}]
}}

Rules:
- scores must contain every criterion key in rubric.weights (1-5 each).
- reason is a single sentence. Start it with "{FAIL_REASON_PREFIX.strip()}" when pass=false and "{PASS_REASON_PREFIX.strip()}" when pass=true.
- If expected.must_cover is present, decide whether each item is semantically covered by candidateOutput (synonyms allowed).
  If any item is missing set pass=false and include "MISSING_MUST_COVER" in labels.
  Fill mustCoverChecks with covered=true/false per item and name missing items in evidence.
- ruleChecks holds hard rule results (format, length, JSON, schema, forbidden keywords). If ruleChecks.pass=false then pass must be false.
- ruleChecks.warningChecks are soft warnings (e.g. must_include missing). Do not set pass=false for warnings alone; reflect them in labels, evidence or suggestions.
- Keyword string checks are already decided in ruleChecks. Do not re-check candidateOutput for them; follow ruleChecks.
- When ruleChecks has failures, name the failing rule keys (e.g. must_not_include) in reason or evidence.
- When must_cover items are missing, name them explicitly in reason or evidence.
{custom_rules}
Input:
{payload_json}
"""


def build_overall_review_prompt(
    mode: Optional[EvalMode],
    summary: Dict[str, Any],
    case_highlights: List[Dict[str, Any]],
) -> str:
    payload = {
        "mode": mode.value if mode is not None else None,
        "summary": summary,
        "caseHighlights": case_highlights,
    }
    payload_json = _dump_payload(payload, "Run overall review")
    return f"""You are an operations reviewer writing the final review of a prompt evaluation run.
Read the input JSON (run summary plus representative cases) and output ONLY a JSON object with the schema below.
No Markdown, no code fences, no prose.

Output schema:
{{
  "overallComment": "one or two sentences summarising all cases",
  "verdictReason": "one sentence with the main reason for the current verdict (deploy/hold)",
  "strengths": ["strength 1", "strength 2"],
  "risks": ["risk 1", "risk 2"],
  "nextActions": ["next action 1", "next action 2"]
}}

Rules:
- strengths, risks and nextActions hold at most 3 items each.
- verdictReason must cite numbers (passRate, score, errorRate or compare delta).
- Do not invent facts that are not in the input.

Input:
{payload_json}
"""


def normalize_overall_review(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    raw = raw or {}
    review: Dict[str, Any] = {
        "overallComment": trim_to_none(raw.get("overallComment"))
        or "Something went wrong while summarising the case results.",
        "verdictReason": trim_to_none(raw.get("verdictReason")) or "The verdict reason could not be generated.",
        "strengths": limit_non_blank(to_string_list(raw.get("strengths")), 3),
        "risks": limit_non_blank(to_string_list(raw.get("risks")), 3),
        "nextActions": limit_non_blank(to_string_list(raw.get("nextActions")), 3),
    }
    labels = limit_non_blank(to_string_list(raw.get("labels")), 5)
    if labels:
        review["labels"] = labels
    return review


def _parse_object(text: Optional[str], fallback) -> Dict[str, Any]:
    snippet = extract_first_json_object(text)
    if snippet is None:
        return fallback(found=False)
    try:
        parsed = json.loads(snippet)
    except ValueError:
        return fallback(found=True)
    if not isinstance(parsed, dict):
        return fallback(found=True)
    return parsed


def _fallback_judge_output(found: bool = False, label: Optional[str] = None) -> Dict[str, Any]:
    if label is None:
        label = LABEL_JSON_PARSE_FAIL if found else LABEL_JSON_NOT_FOUND
    return {
        "pass": False,
        "reason": f"{FAIL_REASON_PREFIX}the judge result (JSON) could not be parsed.",
        "scores": {},
        "labels": [label],
        "evidence": ["No JSON object was found in the judge response, or it failed to parse."],
        "suggestions": ["Check the judge model response format."],
    }


def _fallback_overall_review(found: bool = False) -> Dict[str, Any]:
    return {
        "overallComment": "The overall review could not be generated from the run results.",
        "verdictReason": "The verdict reason could not be analysed automatically.",
        "strengths": [],
        "risks": ["LLM overall review generation failed"],
        "nextActions": ["Check the run logs and run the evaluation again."],
        "labels": [LABEL_REVIEW_JSON_PARSE_FAIL if found else LABEL_REVIEW_JSON_NOT_FOUND],
    }


def _fallback_attempt() -> AttemptEvaluation:
    return AttemptEvaluation(
        attempt=1,
        execution=ModelExecution(output_text="{}", meta={}),
        raw=_fallback_judge_output(label=LABEL_ATTEMPT_NOT_CREATED),
        scores={},
        overall_score=0.0,
        passed=False,
    )


def _hide_keyword_checks(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not value:
        return value
    return {k: v for k, v in value.items() if k not in _JUDGE_HIDDEN_KEYS}


def _dump_payload(payload: Dict[str, Any], what: str) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as exc:
        logger.error("%s payload serialization failed: %s", what, exc)
        raise RuntimeError(f"{what} payload serialization failed") from exc
