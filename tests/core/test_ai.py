from __future__ import annotations

import pytest

from quiz_coach.core import ai
from quiz_coach.errors import ConfigurationError


def test_load_api_key_reads_provider_default():
    key = ai.load_api_key("openai", env={"OPENAI_API_KEY": " sk-test "})

    assert key == "sk-test"


def test_load_api_key_custom_env_var():
    key = ai.load_api_key(
        "gemini", env_var="MY_KEY", env={"MY_KEY": "g-key"}
    )

    assert key == "g-key"


def test_load_api_key_missing_raises():
    with pytest.raises(ConfigurationError, match="GEMINI_API_KEY"):
        ai.load_api_key("gemini", env={})


def test_load_api_key_unknown_provider():
    with pytest.raises(ConfigurationError, match="Unknown provider"):
        ai.load_api_key("other", env={"X": "y"})


def test_load_client_passes_key_and_base(openai_factory):
    client = ai.load_client("sk-1", base_url="http://localhost:1234/v1")

    assert client is openai_factory.last
    assert client.init_kwargs == {
        "api_key": "sk-1",
        "base_url": "http://localhost:1234/v1",
    }


def test_load_client_requires_key(openai_factory):
    with pytest.raises(ConfigurationError):
        ai.load_client("")
    assert openai_factory.instances == []
