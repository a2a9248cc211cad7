from __future__ import annotations

from typing import Optional

from openai import OpenAI

from promptgate.config import get_settings
from promptgate.services.llm.types import LLMProviderError, ProviderCompletion


class OpenAIProvider:
    name = "OPENAI"

    def __init__(self) -> None:
        settings = get_settings()
        if not settings.openai_api_key:
            raise LLMProviderError("OPENAI_API_KEY not configured", retryable=False)
        self._client = OpenAI(api_key=settings.openai_api_key)

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
        # Only one token ceiling field may be sent.
        if max_output_tokens:
            kwargs["max_completion_tokens"] = max_output_tokens
        try:
            response = self._client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout_seconds,
                **kwargs,
            )
        except Exception as exc:
            raise LLMProviderError(str(exc), retryable=True) from exc

        content = response.choices[0].message.content if response.choices else ""
        usage = getattr(response, "usage", None)
        return ProviderCompletion(
            text=str(content or "").strip(),
            model=getattr(response, "model", None) or model,
            input_tokens=getattr(usage, "prompt_tokens", None),
            output_tokens=getattr(usage, "completion_tokens", None),
            total_tokens=getattr(usage, "total_tokens", None),
        )
