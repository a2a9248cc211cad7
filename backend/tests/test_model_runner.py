import pytest

from promptgate.config import Settings
from promptgate.services.eval.errors import INVALID_INPUT, EvalServiceError
from promptgate.services.llm import pricing
from promptgate.services.llm.model_runner import ModelRunner
from promptgate.services.llm.types import (
    LLMProviderError,
    ModelRunnerError,
    ProviderCompletion,
    ProviderType,
    classify_retryable_error,
)


class _FakeProvider:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []

    def generate(self, *, model, prompt, timeout_seconds, temperature=None, max_output_tokens=None):
        self.calls.append({"model": model, "temperature": temperature, "max_output_tokens": max_output_tokens})
        nxt = self._responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


def _runner(monkeypatch, provider, max_attempts=2):
    runner = ModelRunner()
    runner._settings = Settings(eval_runner_retry_max_attempts=max_attempts, eval_runner_retry_backoff_seconds=0)
    monkeypatch.setattr(runner, "_provider", lambda _provider_type: provider)
    return runner


def test_runner_returns_output_and_cost_meta(monkeypatch):
    provider = _FakeProvider(
        [ProviderCompletion(text="four", model="gpt-4.1-mini-2025-04-14", input_tokens=1000, output_tokens=1000)]
    )
    runner = _runner(monkeypatch, provider)

    execution = runner.run(1, "openai", "gpt-4.1-mini", "What is 2+2?", 0.2, 300)

    assert execution.output_text == "four"
    meta = execution.meta
    assert meta["provider"] == "OPENAI"
    assert meta["requestedModel"] == "gpt-4.1-mini"
    assert meta["usedModel"] == "gpt-4.1-mini-2025-04-14"
    assert meta["totalTokens"] == 2000
    assert meta["estimatedCostUsd"] == pytest.approx(0.002)
    assert meta["pricingVersion"] == pricing.PRICING_VERSION
    assert meta["retryCount"] == 0
    assert provider.calls == [{"model": "gpt-4.1-mini", "temperature": 0.2, "max_output_tokens": 300}]
    assert [a.status for a in execution.attempts] == ["success"]


def test_runner_retries_retryable_errors(monkeypatch):
    provider = _FakeProvider(
        [
            LLMProviderError("timeout", retryable=True),
            ProviderCompletion(text="ok", total_tokens=100),
        ]
    )
    runner = _runner(monkeypatch, provider)

    execution = runner.run(1, ProviderType.GEMINI, "gemini-2.0-flash", "prompt")

    assert execution.meta["retryCount"] == 1
    assert execution.meta["inputTokens"] is None
    assert execution.meta["estimatedCostUsd"] == pytest.approx(0.000019)
    assert [a.status for a in execution.attempts] == ["retryable_error", "success"]


def test_runner_stops_on_terminal_error(monkeypatch):
    provider = _FakeProvider([LLMProviderError("invalid api key", retryable=False), ProviderCompletion(text="x")])
    runner = _runner(monkeypatch, provider, max_attempts=3)

    with pytest.raises(ModelRunnerError) as exc:
        runner.run(1, "ANTHROPIC", "claude-3-5-haiku", "prompt")

    assert len(exc.value.attempts) == 1
    assert exc.value.attempts[0].status == "terminal_error"
    assert "invalid api key" in str(exc.value)


def test_runner_gives_up_after_max_attempts(monkeypatch):
    provider = _FakeProvider([RuntimeError("HTTP 503"), RuntimeError("rate limit exceeded")])
    runner = _runner(monkeypatch, provider)

    with pytest.raises(ModelRunnerError) as exc:
        runner.run(1, "OPENAI", "gpt-4o", "prompt")
    assert [a.error_class for a in exc.value.attempts] == ["RuntimeError", "RuntimeError"]


@pytest.mark.parametrize("provider, prompt", [(None, "prompt"), ("  ", "prompt"), ("OPENAI", "   ")])
def test_runner_rejects_missing_provider_or_prompt(monkeypatch, provider, prompt):
    runner = _runner(monkeypatch, _FakeProvider([]))
    with pytest.raises(EvalServiceError) as exc:
        runner.run(1, provider, "gpt-4o", prompt)
    assert exc.value.code == INVALID_INPUT


def test_retryable_error_classification():
    assert classify_retryable_error(RuntimeError("Request timed out"))
    assert classify_retryable_error(RuntimeError("upstream 502"))
    assert not classify_retryable_error(RuntimeError("bad request"))


def test_pricing_normalizes_dated_and_aliased_models():
    assert pricing.is_known_model("claude-3-5-haiku-20241022")
    assert pricing.is_known_model("claude-3-5-haiku-latest")
    assert not pricing.is_known_model("my-local-model")
    assert pricing.calculate_cost("my-local-model", 10, 10) == 0
