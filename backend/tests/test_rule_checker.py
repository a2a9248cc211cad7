from promptgate.models.eval_run import RubricTemplateCode
from promptgate.services.eval.rule_checker import FAIL, PASS, WARN, check, count_lines, normalize_basic


def test_no_constraints_passes_with_empty_lists():
    result = check("anything", None, None, RubricTemplateCode.GENERAL_TEXT)
    assert result == {"pass": True, "failedChecks": [], "warningChecks": []}


def test_length_limits_are_hard_failures():
    result = check("abcdef\nline two\nline three", {"max_chars": 5, "max_lines": 2}, None, None)
    assert result["max_chars"] == FAIL
    assert result["max_lines"] == FAIL
    assert result["pass"] is False
    assert result["failedChecks"] == ["max_chars", "max_lines"]


def test_missing_must_include_is_only_a_warning():
    result = check("The answer is four.", {"must_include": ["four", "citation"]}, None, None)
    assert result["must_include"] == WARN
    assert result["pass"] is True
    assert result["warningChecks"] == ["must_include"]


def test_must_not_include_falls_back_to_expected():
    result = check("contains secret token", {}, {"must_not_include": ["secret"]}, None)
    assert result["must_not_include"] == FAIL
    assert result["failedChecks"] == ["must_not_include"]


def test_basic_keyword_normalization_ignores_case_punctuation_and_spacing():
    constraints = {"must_include": ["Refund Policy", "e-mail"], "keyword_normalization": "BASIC"}
    result = check("See our REFUNDPOLICY, then E-Mail us!", constraints, None, None)
    assert result["must_include"] == PASS

    strict = check("See our REFUNDPOLICY", {"must_include": ["Refund Policy"]}, None, None)
    assert strict["must_include"] == WARN


def test_json_extraction_requires_parseable_object_and_keys():
    result = check('{"name": "Ada"}', {"required_keys": ["name", "age"]}, None, RubricTemplateCode.JSON_EXTRACTION)
    assert result["json_parse"] == PASS
    assert result["schema"] == FAIL

    broken = check("name: Ada", {"format": "json_only"}, None, None)
    assert broken["json_parse"] == FAIL
    assert "schema" not in broken

    arrays = check("[1, 2]", {"format": "json_only"}, None, None)
    assert arrays["json_parse"] == FAIL


def test_schema_is_checked_without_json_format():
    result = check('{"a": 1, "b": 2}', None, {"required_keys": ["a", "b"]}, RubricTemplateCode.SUMMARY)
    assert "json_parse" not in result
    assert result["schema"] == PASS


def test_count_lines_ignores_trailing_breaks():
    assert count_lines(None) == 0
    assert count_lines("   ") == 0
    assert count_lines("a\r\nb\n\n") == 2
    assert count_lines("a b") == 2


def test_normalize_basic():
    assert normalize_basic("  Ｈｅｌｌｏ,   World_! ") == "hello world"
    assert normalize_basic(None) == ""
