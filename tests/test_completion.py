from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from quiz_coach.core import ai
from quiz_coach.core.config import ProviderConfig
from quiz_coach.errors import GenerationError
from quiz_coach.quizzer.completion import (
    OpenAICompletionService,
    SafetyPolicy,
    build_completion_service,
    validate_key,
)

from fixtures import ScriptedCompletionService


def test_openai_service_sends_chat_request(openai_factory):
    service = OpenAICompletionService(temperature=0.2, max_output_tokens=123)
    service._client_for("k1").queue_response("  answer  ")

    result = asyncio.run(
        service.complete("k1", "gpt-x", "hello", SafetyPolicy.PERMISSIVE)
    )

    assert result == "answer"
    assert len(openai_factory.instances) == 1
    assert openai_factory.last.init_kwargs == {"api_key": "k1"}
    call = openai_factory.last.calls[0]
    assert call["model"] == "gpt-x"
    assert call["messages"] == [{"role": "user", "content": "hello"}]
    assert call["temperature"] == 0.2
    assert call["max_tokens"] == 123


def test_openai_service_caches_client_per_key(openai_factory):
    service = OpenAICompletionService(api_base="http://local/v1")

    first = service._client_for("k1")
    again = service._client_for("k1")
    other = service._client_for("k2")

    assert first is again
    assert other is not first
    assert other.init_kwargs["base_url"] == "http://local/v1"


def test_openai_service_rejects_empty_completion(openai_factory):
    service = OpenAICompletionService()
    service._client_for("k").queue_response(None)

    with pytest.raises(GenerationError, match="empty"):
        asyncio.run(service.complete("k", "m", "p", SafetyPolicy.DEFAULT))


def test_gemini_service_applies_permissive_safety():
    pytest.importorskip("google.genai")
    from quiz_coach.quizzer.completion import GeminiCompletionService

    requests = []

    async def generate_content(**kwargs):
        requests.append(kwargs)
        return SimpleNamespace(text='["ok"]')

    def factory(api_key):
        models = SimpleNamespace(generate_content=generate_content)
        return SimpleNamespace(aio=SimpleNamespace(models=models))

    service = GeminiCompletionService(client_factory=factory)

    text = asyncio.run(
        service.complete("g", "gemini-x", "prompt", SafetyPolicy.PERMISSIVE)
    )

    assert text == '["ok"]'
    config = requests[0]["config"]
    assert requests[0]["model"] == "gemini-x"
    assert len(config.safety_settings) == 4
    assert {
        str(getattr(setting.threshold, "value", setting.threshold))
        for setting in config.safety_settings
    } == {"BLOCK_NONE"}
    assert service.safety_settings(SafetyPolicy.DEFAULT) == []


def test_build_completion_service_picks_openai():
    provider = ProviderConfig(
        name="openai",
        model="gpt-4o-mini",
        temperature=0.5,
        max_output_tokens=10,
        api_key_env="OPENAI_API_KEY",
    )

    assert isinstance(
        build_completion_service(provider), OpenAICompletionService
    )


def test_validate_key_reports_success_and_failure():
    good = ScriptedCompletionService("OK")
    bad = ScriptedCompletionService(RuntimeError("401 invalid key"))

    assert asyncio.run(validate_key(good, "k", "m")) is True
    assert asyncio.run(validate_key(bad, "k", "m")) is False
    assert good.calls[0].safety_policy is SafetyPolicy.DEFAULT


def test_load_client_is_default_factory(openai_factory):
    service = OpenAICompletionService()

    client = service._client_for("k9")

    assert client is openai_factory.last
    assert ai.AsyncOpenAI is openai_factory
