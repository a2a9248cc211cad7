from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from promptgate.config import get_settings
from promptgate.services.eval.errors import invalid_input
from promptgate.services.llm import pricing
from promptgate.services.llm.providers.anthropic_provider import AnthropicProvider
from promptgate.services.llm.providers.gemini_provider import GeminiProvider
from promptgate.services.llm.providers.openai_provider import OpenAIProvider
from promptgate.services.llm.types import (
    LLMProviderError,
    ModelAttemptTrace,
    ModelExecution,
    ModelRunnerError,
    ProviderCompletion,
    ProviderType,
    classify_retryable_error,
    now_iso,
)

logger = logging.getLogger(__name__)


class ModelRunner:
    """Runs one prompt against one provider/model with bounded retries."""

    def __init__(self) -> None:
        self._settings = get_settings()
        self._providers: Dict[ProviderType, object] = {}

    def _provider(self, provider: ProviderType):
        if provider in self._providers:
            return self._providers[provider]
        if provider == ProviderType.GEMINI:
            instance = GeminiProvider()
        elif provider == ProviderType.OPENAI:
            instance = OpenAIProvider()
        elif provider == ProviderType.ANTHROPIC:
            instance = AnthropicProvider()
        else:
            raise LLMProviderError(f"Unsupported LLM provider: {provider}", retryable=False)
        self._providers[provider] = instance
        return instance

    def run(
        self,
        workspace_id: Optional[int],
        provider: Any,
        model: Optional[str],
        prompt: str,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> ModelExecution:
        if provider is None or str(provider).strip() == "":
            raise invalid_input("provider is required")
        if prompt is None or not str(prompt).strip():
            raise invalid_input("prompt is empty")
        provider_type = ProviderType.parse(provider)

        attempts: List[ModelAttemptTrace] = []
        max_attempts = max(1, int(self._settings.eval_runner_retry_max_attempts))
        backoff = max(0.0, float(self._settings.eval_runner_retry_backoff_seconds))
        timeout_seconds = max(1, int(self._settings.eval_runner_request_timeout_seconds))

        retry_count = 0
        t_first = time.perf_counter()
        while retry_count < max_attempts:
            started = now_iso()
            t0 = time.perf_counter()
            try:
                completion = self._provider(provider_type).generate(
                    model=model,
                    prompt=prompt,
                    timeout_seconds=timeout_seconds,
                    temperature=temperature,
                    max_output_tokens=max_output_tokens,
                )
                attempts.append(
                    ModelAttemptTrace(
                        provider=provider_type.value,
                        model=str(model or ""),
                        latency_ms=int((time.perf_counter() - t0) * 1000),
                        status="success",
                        retry_count=retry_count,
                        started_at=started,
                        ended_at=now_iso(),
                    )
                )
                latency_ms = max(0, int((time.perf_counter() - t_first) * 1000))
                return ModelExecution(
                    output_text=completion.text or "",
                    meta=build_execution_meta(provider_type, model, completion, latency_ms, retry_count),
                    attempts=attempts,
                )
            except Exception as exc:
                retryable = False
                if isinstance(exc, LLMProviderError):
                    retryable = bool(exc.retryable)
                if not retryable:
                    retryable = classify_retryable_error(exc)
                attempts.append(
                    ModelAttemptTrace(
                        provider=provider_type.value,
                        model=str(model or ""),
                        latency_ms=int((time.perf_counter() - t0) * 1000),
                        status="retryable_error" if retryable else "terminal_error",
                        retry_count=retry_count,
                        error_class=exc.__class__.__name__,
                        error_message=str(exc)[:500],
                        started_at=started,
                        ended_at=now_iso(),
                    )
                )
                if retryable and retry_count < max_attempts - 1:
                    logger.info(
                        "Model call retry provider=%s model=%s attempt=%s error=%s",
                        provider_type.value,
                        model,
                        retry_count + 1,
                        exc.__class__.__name__,
                    )
                    if backoff > 0:
                        time.sleep(backoff * (retry_count + 1))
                    retry_count += 1
                    continue
                break

        last_error = attempts[-1].error_message if attempts else None
        raise ModelRunnerError(
            f"Model call failed provider={provider_type.value} model={model}: {last_error}",
            attempts=attempts,
        )


def build_execution_meta(
    provider: ProviderType,
    requested_model: Optional[str],
    completion: ProviderCompletion,
    latency_ms: int,
    retry_count: int,
) -> Dict[str, Any]:
    used_model = completion.model or requested_model
    input_tokens = completion.input_tokens
    output_tokens = completion.output_tokens
    total_tokens = completion.total_tokens
    if total_tokens is None and input_tokens is not None and output_tokens is not None:
        total_tokens = input_tokens + output_tokens

    estimated_cost = None
    if input_tokens is not None and output_tokens is not None:
        estimated_cost = pricing.calculate_cost(used_model, input_tokens, output_tokens)
    elif total_tokens is not None:
        estimated_cost = pricing.calculate_cost_from_total_tokens(used_model, total_tokens)

    return {
        "provider": provider.value,
        "requestedModel": requested_model,
        "usedModel": used_model,
        "latencyMs": latency_ms,
        "inputTokens": input_tokens,
        "outputTokens": output_tokens,
        "totalTokens": total_tokens,
        "estimatedCostUsd": float(estimated_cost) if estimated_cost is not None else None,
        "pricingVersion": pricing.PRICING_VERSION,
        "retryCount": retry_count,
    }
