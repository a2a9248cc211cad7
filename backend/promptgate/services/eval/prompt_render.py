"""Render prompt versions against test cases and read model-config knobs."""
from __future__ import annotations

import json
from typing import Any, Dict, Optional

from promptgate.services.eval.values import read_double
from promptgate.services.llm.types import ProviderType

DEFAULT_USER_TEMPLATE = "{{question}}"

# Used for estimates when a version does not configure a max output length.
DEFAULT_MAX_OUTPUT_TOKENS = {
    ProviderType.OPENAI: 512,
    ProviderType.ANTHROPIC: 600,
    ProviderType.GEMINI: 700,
}


def build_variables(input_text: Optional[str], context: Optional[Dict[str, Any]]) -> Dict[str, str]:
    variables: Dict[str, str] = {"question": input_text or ""}
    if context is not None:
        for key, value in context.items():
            if key is None or value is None:
                continue
            variables[str(key)] = _as_text(value)
        if "context" not in variables:
            variables["context"] = _to_json(context)
    return variables


def render_template(template: str, variables: Dict[str, str]) -> str:
    rendered = template
    for key, value in variables.items():
        value = value if value is not None else ""
        rendered = rendered.replace("{{" + key + "}}", value)
        rendered = rendered.replace("{" + key + "}", value)
    return rendered


def build_final_prompt(version, test_case) -> str:
    """System prompt and user template of ``version`` rendered for ``test_case``."""
    variables = build_variables(test_case.input_text, test_case.context_json)

    user_template = version.user_template
    if user_template is None or not user_template.strip():
        user_template = DEFAULT_USER_TEMPLATE
    rendered_user = render_template(user_template, variables)

    system_template = version.system_prompt
    if system_template is None or not system_template.strip():
        return rendered_user
    rendered_system = render_template(system_template, variables)
    if not rendered_system.strip():
        return rendered_user
    return rendered_system + "\n\n" + rendered_user


def read_temperature(model_config: Optional[Dict[str, Any]]) -> Optional[float]:
    if not model_config:
        return None
    return read_double(model_config.get("temperature"))


def read_max_output_tokens(model_config: Optional[Dict[str, Any]]) -> Optional[int]:
    if not model_config:
        return None
    value = model_config.get("maxOutputTokens")
    if value is None:
        value = model_config.get("maxTokens")
    if value is None:
        value = model_config.get("max_tokens")
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def resolve_max_output_tokens(provider, model_config: Optional[Dict[str, Any]]) -> Optional[int]:
    # OpenAI calls run without an explicit cap
    if ProviderType.parse(provider) == ProviderType.OPENAI:
        return None
    return read_max_output_tokens(model_config)


def estimate_max_output_tokens(version) -> int:
    configured = read_max_output_tokens(version.model_config)
    if configured:
        return configured
    return DEFAULT_MAX_OUTPUT_TOKENS.get(ProviderType.parse(version.provider), 512)


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return _to_json(value)
    return str(value)


def _to_json(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)
