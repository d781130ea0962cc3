"""
Tests for LLMProvider failover, backoff and error classification.
"""

from typing import List

import httpx
import openai
import pytest
from google.genai import errors as genai_errors

from knowledge_engine.core.exceptions import (
    ProviderError,
    ProviderExhaustedError,
    ProviderRateLimitError,
    ProviderTerminalError,
    ProviderTransientError,
)
from knowledge_engine.services.credential_pool import CredentialPool
from knowledge_engine.services.llm_provider import GeminiProvider, LLMProvider, OpenAIProvider


class ScriptedProvider(LLMProvider):
    """Raises the scripted outcome for each credential, otherwise succeeds."""

    name = "scripted"

    def __init__(self, pool, script=None, dimension=4, **kwargs):
        self.sleeps: List[float] = []
        kwargs.setdefault("sleep", self._record_sleep)
        super().__init__(pool, dimension=dimension, **kwargs)
        self.script = script or {}
        self.calls: List[str] = []

    async def _record_sleep(self, delay: float) -> None:
        self.sleeps.append(delay)

    async def _embed_with(self, credential, text, task_type):
        self.calls.append(credential)
        outcome = self.script.get(credential)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome if outcome is not None else [0.5] * 4

    async def _generate_with(self, credential, prompt, system_prompt):
        self.calls.append(credential)
        outcome = self.script.get(credential)
        if isinstance(outcome, Exception):
            raise outcome
        return f"answered with {credential}: {prompt}"

    def classify_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, ConnectionError):
            return ProviderTransientError(str(exc), provider=self.name)
        return ProviderTerminalError(str(exc), provider=self.name)


@pytest.mark.asyncio
async def test_rate_limited_credential_rotates_to_next():
    pool = CredentialPool(["k1", "k2"], cooldown_seconds=60)
    provider = ScriptedProvider(pool, {"k1": ProviderRateLimitError("429", provider="scripted")})

    vector = await provider.embed("hello")

    assert vector == [0.5, 0.5, 0.5, 0.5]
    assert provider.calls == ["k1", "k2"]
    assert pool.failure_count("k1") == 1
    assert len(provider.sleeps) == 1


@pytest.mark.asyncio
async def test_sdk_transient_error_is_classified_and_rotated():
    pool = CredentialPool(["k1", "k2"], cooldown_seconds=60)
    provider = ScriptedProvider(pool, {"k1": ConnectionError("reset by peer")})

    answer = await provider.generate("What is open?")

    assert answer.startswith("answered with k2")
    assert pool.failure_count("k1") == 1


@pytest.mark.asyncio
async def test_every_credential_failing_raises_exhausted():
    pool = CredentialPool(["k1", "k2"], cooldown_seconds=60)
    error = ProviderTransientError("timeout", provider="scripted")
    provider = ScriptedProvider(pool, {"k1": error, "k2": error}, max_attempts=5)

    with pytest.raises(ProviderExhaustedError) as exc_info:
        await provider.embed("hello")

    assert exc_info.value.details["attempts"] == 5
    assert provider.calls == ["k1", "k2", "k1", "k2", "k1"]
    assert len(provider.sleeps) == 4


@pytest.mark.asyncio
async def test_attempts_are_bounded():
    pool = CredentialPool(["k1", "k2", "k3"], cooldown_seconds=0)
    error = ProviderRateLimitError("slow down", provider="scripted")
    provider = ScriptedProvider(pool, {"k1": error, "k2": error, "k3": error}, max_attempts=4)

    with pytest.raises(ProviderExhaustedError):
        await provider.embed("hello")

    assert len(provider.calls) == 4


@pytest.mark.asyncio
async def test_terminal_error_propagates_without_parking_credential():
    pool = CredentialPool(["k1", "k2"], cooldown_seconds=60)
    provider = ScriptedProvider(pool, {"k1": ValueError("bad request")})

    with pytest.raises(ProviderTerminalError):
        await provider.embed("hello")

    assert provider.calls == ["k1"]
    assert pool.failure_count("k1") == 0


@pytest.mark.asyncio
async def test_wrong_dimension_is_terminal():
    pool = CredentialPool(["k1"])
    provider = ScriptedProvider(pool, {"k1": [0.1, 0.2]})

    with pytest.raises(ProviderTerminalError):
        await provider.embed("hello")


@pytest.mark.asyncio
async def test_generate_wraps_context_into_prompt():
    provider = ScriptedProvider(CredentialPool(["k1"]))

    answer = await provider.generate("Where?", context="[Context 1] The office is downtown.")

    assert "Context:\n[Context 1] The office is downtown." in answer
    assert "Question: Where?" in answer


class FailsFirstCalls(ScriptedProvider):
    """Raises a transient error for the first `failures` calls, then succeeds."""

    def __init__(self, pool, failures=1, **kwargs):
        super().__init__(pool, **kwargs)
        self.failures = failures

    async def _embed_with(self, credential, text, task_type):
        self.calls.append(credential)
        if len(self.calls) <= self.failures:
            raise ProviderTransientError("read timeout", provider=self.name)
        return [0.5] * 4


@pytest.mark.asyncio
async def test_single_credential_recovers_after_backoff():
    pool = CredentialPool(["only-key"], cooldown_seconds=60)
    provider = FailsFirstCalls(pool, failures=1)

    vector = await provider.embed("hello")

    assert vector == [0.5, 0.5, 0.5, 0.5]
    assert provider.calls == ["only-key", "only-key"]
    assert len(provider.sleeps) == 1
    assert pool.failure_count("only-key") == 0
    assert pool.available_count == 1


@pytest.mark.asyncio
async def test_cooling_credential_is_still_tried_on_next_request():
    pool = CredentialPool(["only-key"], cooldown_seconds=60)
    provider = FailsFirstCalls(pool, failures=2, max_attempts=2)

    with pytest.raises(ProviderExhaustedError) as exc_info:
        await provider.embed("hello")
    assert exc_info.value.details["attempts"] == 2
    assert pool.available_count == 0

    assert await provider.embed("hello again") == [0.5, 0.5, 0.5, 0.5]
    assert provider.calls == ["only-key"] * 3


@pytest.mark.asyncio
async def test_empty_pool_raises_exhausted_without_attempts():
    provider = ScriptedProvider(CredentialPool([]))

    with pytest.raises(ProviderExhaustedError) as exc_info:
        await provider.embed("hello")

    assert exc_info.value.details["attempts"] == 0
    assert provider.calls == []


def test_backoff_delay_is_bounded():
    provider = ScriptedProvider(CredentialPool(["k1"]), backoff_base=0.5, backoff_max=8.0)

    for attempt in range(10):
        delay = provider.backoff_delay(attempt)
        cap = min(8.0, 0.5 * (2 ** attempt))
        assert cap / 2 <= delay <= cap


def test_openai_error_classification():
    provider = OpenAIProvider(CredentialPool(["sk-test"]))
    request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")

    assert isinstance(provider.classify_error(openai.APITimeoutError(request=request)), ProviderTransientError)
    assert isinstance(provider.classify_error(openai.APIConnectionError(request=request)), ProviderTransientError)
    assert isinstance(provider.classify_error(ValueError("bad input")), ProviderTerminalError)


def test_gemini_error_classification():
    provider = GeminiProvider(CredentialPool(["gm-test"]))
    quota = genai_errors.ClientError(
        429, {"error": {"code": 429, "message": "Resource exhausted", "status": "RESOURCE_EXHAUSTED"}}
    )

    assert isinstance(provider.classify_error(quota), ProviderRateLimitError)
    assert isinstance(provider.classify_error(ConnectionError("reset")), ProviderTransientError)
    assert isinstance(provider.classify_error(KeyError("missing")), ProviderTerminalError)
