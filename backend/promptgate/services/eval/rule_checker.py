"""Deterministic output checks that run before the LLM judge."""
from __future__ import annotations

import json
import re
import unicodedata
from typing import Any, Dict, List, Optional

from promptgate.models.eval_run import RubricTemplateCode

PASS = "PASS"
FAIL = "FAIL"
WARN = "WARN"

_BASIC_NORMALIZE_PATTERN = re.compile(r"[^\w\s]|_", re.UNICODE)
_WHITESPACE_PATTERN = re.compile(r"\s+")
_LINE_BREAK_PATTERN = re.compile(r"\r\n|[\n\x0b\x0c\r\x85\u2028\u2029]")


def check(
    output: Optional[str],
    constraints: Optional[Dict[str, Any]],
    expected: Optional[Dict[str, Any]],
    rubric_template_code: Optional[RubricTemplateCode],
) -> Dict[str, Any]:
    """Return per-check PASS/FAIL/WARN markers plus pass, failedChecks and warningChecks.

    FAIL checks make the result fail; WARN checks are advisory and only
    surface in warningChecks.
    """
    result: Dict[str, Any] = {}
    failures: List[str] = []
    warnings: List[str] = []

    constraints = constraints if isinstance(constraints, dict) else {}
    expected = expected if isinstance(expected, dict) else {}
    safe_output = output if output is not None else ""

    basic = _keyword_normalization_enabled(constraints, expected)
    normalized_output = normalize_basic(safe_output) if basic else safe_output
    normalized_no_spaces = normalized_output.replace(" ", "") if basic else normalized_output

    max_chars = _read_int(constraints.get("max_chars"))
    if max_chars > 0:
        ok = len(safe_output) <= max_chars
        result["max_chars"] = PASS if ok else FAIL
        if not ok:
            failures.append("max_chars")

    max_lines = _read_int(constraints.get("max_lines"))
    if max_lines > 0:
        ok = count_lines(output) <= max_lines
        result["max_lines"] = PASS if ok else FAIL
        if not ok:
            failures.append("max_lines")

    must_include = _read_string_list(constraints.get("must_include")) or _read_string_list(expected.get("must_include"))
    if must_include:
        ok = all(
            _contains_token(safe_output, normalized_output, normalized_no_spaces, token.strip(), basic)
            for token in must_include
            if token.strip()
        )
        result["must_include"] = PASS if ok else WARN
        if not ok:
            warnings.append("must_include")

    must_not_include = _read_string_list(constraints.get("must_not_include")) or _read_string_list(
        expected.get("must_not_include")
    )
    if must_not_include:
        ok = not any(
            _contains_token(safe_output, normalized_output, normalized_no_spaces, token.strip(), basic)
            for token in must_not_include
            if token.strip()
        )
        result["must_not_include"] = PASS if ok else FAIL
        if not ok:
            failures.append("must_not_include")

    json_required = (
        str(constraints.get("format")).lower() == "json_only"
        or rubric_template_code == RubricTemplateCode.JSON_EXTRACTION
    )
    parsed: Optional[Dict[str, Any]] = None
    if json_required:
        parsed = _parse_json_object(output)
        result["json_parse"] = PASS if parsed is not None else FAIL
        if parsed is None:
            failures.append("json_parse")

    required_keys = _read_string_list(constraints.get("required_keys")) or _read_string_list(
        expected.get("required_keys")
    )
    if required_keys:
        # schema is checked even without format=json_only
        if parsed is None and safe_output.strip():
            parsed = _parse_json_object(output)
        ok = parsed is not None and all(key in parsed for key in required_keys)
        result["schema"] = PASS if ok else FAIL
        if not ok:
            failures.append("schema")

    result["pass"] = not failures
    result["failedChecks"] = failures
    result["warningChecks"] = warnings
    return result


def normalize_basic(text: Optional[str]) -> str:
    if text is None or not text.strip():
        return ""
    normalized = unicodedata.normalize("NFKC", text).lower()
    normalized = _BASIC_NORMALIZE_PATTERN.sub(" ", normalized)
    return _WHITESPACE_PATTERN.sub(" ", normalized).strip()


def count_lines(output: Optional[str]) -> int:
    if output is None or not output.strip():
        return 0
    parts = _LINE_BREAK_PATTERN.split(output)
    while parts and parts[-1] == "":
        parts.pop()
    return len(parts)


def _keyword_normalization_enabled(constraints: Dict[str, Any], expected: Dict[str, Any]) -> bool:
    value = None
    for source in (constraints, expected):
        for key in ("keyword_normalization", "keyword_normalize"):
            if value is None:
                value = source.get(key)
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().upper() in {"BASIC", "TRUE"}


def _contains_token(raw: str, normalized: str, normalized_no_spaces: str, token: str, basic: bool) -> bool:
    if not token:
        return True
    if not basic:
        return token in raw
    normalized_token = normalize_basic(token)
    if normalized_token in normalized:
        return True
    if " " in normalized_token:
        return normalized_token.replace(" ", "") in normalized_no_spaces
    return False


def _parse_json_object(output: Optional[str]) -> Optional[Dict[str, Any]]:
    if output is None:
        return None
    try:
        parsed = json.loads(output)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _read_int(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        return int(str(value).strip())
    except ValueError:
        return 0


def _read_string_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None]
    return []
