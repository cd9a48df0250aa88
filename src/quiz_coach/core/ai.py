"""Shared AI helper utilities."""

from __future__ import annotations

import os
from typing import Any, Mapping

from dotenv import load_dotenv
from openai import AsyncOpenAI

from ..errors import ConfigurationError

__all__ = ["load_api_key", "load_client"]

DEFAULT_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


def load_api_key(
    provider: str,
    *,
    env_var: str | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    """Return the API key for ``provider`` from ``.env``/environment.

    Called once at the command-line edge; the key is then passed explicitly
    to every component that talks to a model.
    """

    name = env_var or DEFAULT_KEY_ENV.get(provider)
    if not name:
        raise ConfigurationError(f"Unknown provider '{provider}'.")
    if env is None:
        load_dotenv()
        env = os.environ
    api_key = (env.get(name) or "").strip()
    if not api_key:
        raise ConfigurationError(
            f"{name} not found in environment. Set it or add to .env"
        )
    return api_key


def load_client(api_key: str, *, base_url: str | None = None) -> Any:
    """Initialize an async OpenAI client for ``api_key``."""

    if not api_key:
        raise ConfigurationError("An API key is required to create a client.")
    if base_url:
        return AsyncOpenAI(api_key=api_key, base_url=base_url)
    return AsyncOpenAI(api_key=api_key)
