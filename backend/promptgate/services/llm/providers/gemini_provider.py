from __future__ import annotations

from typing import Optional

from google import genai
from google.genai import types

from promptgate.config import get_settings
from promptgate.services.llm.types import LLMProviderError, ProviderCompletion


class GeminiProvider:
    name = "GEMINI"

    def __init__(self) -> None:
        settings = get_settings()
        if not settings.gemini_api_key:
            raise LLMProviderError("GEMINI_API_KEY not configured", retryable=False)
        self._client = genai.Client(api_key=settings.gemini_api_key)
        self._default_model = settings.eval_default_gemini_model

    def generate(
        self,
        *,
        model: str,
        prompt: str,
        timeout_seconds: int,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> ProviderCompletion:
        del timeout_seconds
        resolved_model = model if model and model.strip() else self._default_model
        try:
            cfg: Optional[types.GenerateContentConfig] = None
            if temperature is not None or max_output_tokens:
                cfg = types.GenerateContentConfig(
                    temperature=temperature,
                    max_output_tokens=max_output_tokens or None,
                )
            response = self._client.models.generate_content(
                model=resolved_model,
                contents=prompt,
                config=cfg,
            )
        except Exception as exc:
            raise LLMProviderError(str(exc), retryable=True) from exc

        usage = getattr(response, "usage_metadata", None)
        return ProviderCompletion(
            text=str(response.text or "").strip(),
            model=getattr(response, "model_version", None) or resolved_model,
            input_tokens=getattr(usage, "prompt_token_count", None),
            output_tokens=getattr(usage, "candidates_token_count", None),
            total_tokens=getattr(usage, "total_token_count", None),
        )
