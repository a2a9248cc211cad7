from __future__ import annotations

from typing import Optional

from anthropic import Anthropic

from promptgate.config import get_settings
from promptgate.services.llm.types import LLMProviderError, ProviderCompletion

DEFAULT_MAX_TOKENS = 1024


class AnthropicProvider:
    name = "ANTHROPIC"

    def __init__(self) -> None:
        settings = get_settings()
        if not settings.anthropic_api_key:
            raise LLMProviderError("ANTHROPIC_API_KEY not configured", retryable=False)
        self._client = Anthropic(api_key=settings.anthropic_api_key)

    def generate(
        self,
        *,
        model: str,
        prompt: str,
        timeout_seconds: int,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> ProviderCompletion:
        kwargs = {}
        if temperature is not None:
            kwargs["temperature"] = temperature
        try:
            response = self._client.messages.create(
                model=model,
                max_tokens=max_output_tokens or DEFAULT_MAX_TOKENS,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout_seconds,
                **kwargs,
            )
        except Exception as exc:
            raise LLMProviderError(str(exc), retryable=True) from exc

        text_parts = []
        for block in getattr(response, "content", []) or []:
            value = getattr(block, "text", None)
            if value:
                text_parts.append(str(value))
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "input_tokens", None)
        output_tokens = getattr(usage, "output_tokens", None)
        return ProviderCompletion(
            text="\n".join(text_parts).strip(),
            model=getattr(response, "model", None) or model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
