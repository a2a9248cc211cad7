"""Built-in rubric templates and override resolution."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from promptgate.models.eval_run import RubricTemplateCode
from promptgate.services.eval.errors import invalid_input

CRITERIA_ANCHORS_KEY = "criteriaAnchors"
CRITERIA_ANCHORS_SNAKE_KEY = "criteria_anchors"


@dataclass(frozen=True)
class RubricTemplate:
    description: str
    weights: Dict[str, float]
    gates: Dict[str, Any]
    criteria_anchors: Dict[str, Dict[str, str]]


@dataclass
class ResolvedRubricConfig:
    template_code: str
    description: str
    weights: Dict[str, float]
    gates: Dict[str, Any] = field(default_factory=dict)
    criteria_anchors: Dict[str, Dict[str, str]] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "templateCode": self.template_code,
            "description": self.description,
            "weights": dict(self.weights),
            "gates": dict(self.gates),
            "criteriaAnchors": {k: dict(v) for k, v in self.criteria_anchors.items()},
        }


TEMPLATES: Dict[RubricTemplateCode, RubricTemplate] = {
    RubricTemplateCode.GENERAL_TEXT: RubricTemplate(
        description="General quality for free-form text.",
        weights={"relevance": 1.0, "completeness": 1.0, "clarity": 1.0, "safety": 1.0},
        gates={"minOverallScore": 70.0},
        criteria_anchors={
            "relevance": {
                "1": "Off-topic or misses the point of the question.",
                "3": "Mostly relevant, with some unnecessary or missing parts.",
                "5": "Matches the request exactly and stays focused on the core.",
            },
            "completeness": {
                "1": "Leaves out many key items.",
                "3": "Covers the main items but lacks detail or edge cases.",
                "5": "Meets every requirement and includes the needed detail.",
            },
            "clarity": {
                "1": "Confusing structure and vague wording.",
                "3": "Understandable overall with some ambiguous parts.",
                "5": "Structured and clear, with visible steps and reasoning.",
            },
            "safety": {
                "1": "Contains harmful, risky or policy-violating content.",
                "3": "Mostly safe with a few sensitive elements.",
                "5": "Safe and responsible, flagging risks where needed.",
            },
        },
    ),
    RubricTemplateCode.SUMMARY: RubricTemplate(
        description="Summary quality for coverage and faithfulness.",
        weights={"coverage": 1.0, "faithfulness": 1.2, "conciseness": 0.8, "format": 1.0},
        gates={"minOverallScore": 72.0},
        criteria_anchors={
            "coverage": {
                "1": "Misses most key points of the source.",
                "3": "Includes some key points but drops important ones.",
                "5": "Covers the key points evenly.",
            },
            "faithfulness": {
                "1": "Adds content not in the source or distorts it.",
                "3": "Mostly faithful with some exaggeration or guessing.",
                "5": "Fact based, with any inference clearly marked.",
            },
            "conciseness": {
                "1": "Needlessly long or repetitive.",
                "3": "Slightly verbose but gets the point across.",
                "5": "Delivers only the essentials.",
            },
            "format": {
                "1": "Ignores the required format (bullets, length).",
                "3": "Mostly follows the format with a few deviations.",
                "5": "Follows the required format completely.",
            },
        },
    ),
    RubricTemplateCode.JSON_EXTRACTION: RubricTemplate(
        description="Structured extraction quality with schema discipline.",
        weights={"format": 1.3, "schema": 1.3, "value_correctness": 1.0, "extraneous_text": 0.8},
        gates={"requireJsonParsePass": True, "minOverallScore": 75.0},
        criteria_anchors={
            "format": {
                "1": "Not JSON or cannot be parsed.",
                "3": "Parses, but format or types are partly unstable.",
                "5": "Parses cleanly with consistent JSON formatting.",
            },
            "schema": {
                "1": "Violates the schema with missing keys or wrong structure.",
                "3": "Mostly right with some key or type mismatches.",
                "5": "Follows the schema exactly.",
            },
            "value_correctness": {
                "1": "Values disagree with the source or are invented.",
                "3": "Mostly right with a few typos or omissions.",
                "5": "Values are accurate and match the source.",
            },
            "extraneous_text": {
                "1": "Includes prose outside the JSON.",
                "3": "Mostly JSON only, with a little stray text.",
                "5": "Outputs the JSON object only.",
            },
        },
    ),
    RubricTemplateCode.CLASSIFICATION: RubricTemplate(
        description="Classification quality and label validity.",
        weights={"label_valid": 1.2, "correctness": 1.1, "consistency": 1.0},
        gates={"minOverallScore": 75.0},
        criteria_anchors={
            "label_valid": {
                "1": "Uses labels or formats that are not allowed.",
                "3": "Labels are valid but notation is inconsistent.",
                "5": "Uses only allowed labels in the exact format.",
            },
            "correctness": {
                "1": "Mostly disagrees with the expected label.",
                "3": "Mostly right with some misclassification.",
                "5": "Classifies correctly.",
            },
            "consistency": {
                "1": "Criteria drift and results are inconsistent.",
                "3": "Consistent overall but wavers on borderline cases.",
                "5": "Clear criteria applied consistently.",
            },
        },
    ),
    RubricTemplateCode.CUSTOM: RubricTemplate(
        description="Custom rubric. Override weights/gates as needed.",
        weights={"quality": 1.0},
        gates={"minOverallScore": 70.0},
        criteria_anchors={
            "quality": {
                "1": "Barely meets the requirements.",
                "3": "Partly meets the requirements.",
                "5": "Fully meets the requirements.",
            },
        },
    ),
}


def get_template(code: RubricTemplateCode) -> RubricTemplate:
    return TEMPLATES[code]


def resolve(code: RubricTemplateCode, overrides: Optional[Dict[str, Any]]) -> ResolvedRubricConfig:
    template = get_template(code)
    description = template.description
    weights: Dict[str, float] = dict(template.weights)
    gates: Dict[str, Any] = dict(template.gates)
    anchors: Dict[str, Dict[str, str]] = {k: dict(v) for k, v in template.criteria_anchors.items()}

    if isinstance(overrides, dict):
        raw_weights = overrides.get("weights")
        if isinstance(raw_weights, dict):
            for key, value in raw_weights.items():
                if key is None or value is None or isinstance(value, bool):
                    continue
                try:
                    weights[str(key)] = float(str(value))
                except ValueError:
                    continue

        raw_gates = overrides.get("gates")
        if isinstance(raw_gates, dict):
            for key, value in raw_gates.items():
                if key is not None:
                    gates[str(key)] = value

        raw_description = overrides.get("description")
        if raw_description is not None and str(raw_description).strip():
            description = str(raw_description).strip()

        raw_anchors = overrides.get(CRITERIA_ANCHORS_KEY)
        if raw_anchors is None:
            raw_anchors = overrides.get(CRITERIA_ANCHORS_SNAKE_KEY)
        if isinstance(raw_anchors, dict):
            _merge_criteria_anchors(anchors, raw_anchors)

    if not weights:
        raise invalid_input("rubric weights are empty")

    return ResolvedRubricConfig(
        template_code=code.value,
        description=description,
        weights=weights,
        gates=gates,
        criteria_anchors=anchors,
    )


def _merge_criteria_anchors(target: Dict[str, Dict[str, str]], raw: Dict[Any, Any]) -> None:
    for key, value in raw.items():
        if key is None or value is None:
            continue
        criterion = str(key).strip()
        if not criterion:
            continue
        merged: Dict[str, str] = {}
        if isinstance(value, dict):
            for score, text in value.items():
                if score is None or text is None:
                    continue
                score_key = str(score).strip()
                text_value = str(text).strip()
                if score_key and text_value:
                    merged[score_key] = text_value
        if merged:
            target[criterion] = merged
