"""Adapters for the generative text services quiz-coach can call.

Every adapter exposes the same coroutine,
``complete(api_key, model_id, prompt_text, safety_policy) -> str``. The API
key travels with each call so nothing here reads credentials from ambient
state.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from ..core.ai import load_client
from ..core.logging import get_logger
from ..errors import GenerationError

__all__ = [
    "SafetyPolicy",
    "CompletionService",
    "OpenAICompletionService",
    "GeminiCompletionService",
    "build_completion_service",
    "validate_key",
]


class SafetyPolicy(Enum):
    """Content-filter setting requested for a completion."""

    DEFAULT = "default"
    # Tutoring material often resembles borderline phrasing.
    PERMISSIVE = "permissive"


class CompletionService(Protocol):
    """Protocol satisfied by generative text adapters."""

    async def complete(
        self,
        api_key: str,
        model_id: str,
        prompt_text: str,
        safety_policy: SafetyPolicy,
    ) -> str:
        """Return the raw completion text for ``prompt_text``."""


class OpenAICompletionService:
    """Adapter for OpenAI chat completions.

    The chat API has no per-request content filter setting, so the safety
    policy is accepted for interface parity and only logged.
    """

    def __init__(
        self,
        *,
        temperature: float = 0.7,
        max_output_tokens: int = 4000,
        api_base: Optional[str] = None,
        client_factory: Optional[Callable[..., Any]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens
        self._api_base = api_base
        self._client_factory = client_factory or load_client
        self._clients: dict[str, Any] = {}
        self._logger = logger or get_logger("completion")

    def _client_for(self, api_key: str) -> Any:
        client = self._clients.get(api_key)
        if client is None:
            client = self._client_factory(api_key, base_url=self._api_base)
            self._clients[api_key] = client
        return client

    async def complete(
        self,
        api_key: str,
        model_id: str,
        prompt_text: str,
        safety_policy: SafetyPolicy,
    ) -> str:
        client = self._client_for(api_key)
        self._logger.debug(
            "Requesting OpenAI completion",
            extra={"model": model_id, "safety_policy": safety_policy.value},
        )
        response = await client.chat.completions.create(
            model=model_id,
            messages=[{"role": "user", "content": prompt_text}],
            temperature=self._temperature,
            max_tokens=self._max_output_tokens,
        )
        content = (response.choices[0].message.content or "").strip()
        if not content:
            raise GenerationError("The model returned an empty completion.")
        return content


_GEMINI_HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


class GeminiCompletionService:
    """Adapter for Google Gemini via the ``google-genai`` SDK."""

    def __init__(
        self,
        *,
        temperature: float = 0.7,
        max_output_tokens: int = 4000,
        client_factory: Optional[Callable[[str], Any]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        from google import genai  # type: ignore
        from google.genai import types  # type: ignore

        self._types = types
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens
        self._client_factory = client_factory or (
            lambda api_key: genai.Client(api_key=api_key)
        )
        self._clients: dict[str, Any] = {}
        self._logger = logger or get_logger("completion")

    def safety_settings(self, policy: SafetyPolicy) -> list[Any]:
        if policy is not SafetyPolicy.PERMISSIVE:
            return []
        return [
            self._types.SafetySetting(category=category, threshold="BLOCK_NONE")
            for category in _GEMINI_HARM_CATEGORIES
        ]

    async def complete(
        self,
        api_key: str,
        model_id: str,
        prompt_text: str,
        safety_policy: SafetyPolicy,
    ) -> str:
        client = self._clients.get(api_key)
        if client is None:
            client = self._client_factory(api_key)
            self._clients[api_key] = client
        self._logger.debug(
            "Requesting Gemini completion",
            extra={"model": model_id, "safety_policy": safety_policy.value},
        )
        response = await client.aio.models.generate_content(
            model=model_id,
            contents=prompt_text,
            config=self._types.GenerateContentConfig(
                temperature=self._temperature,
                max_output_tokens=self._max_output_tokens,
                safety_settings=self.safety_settings(safety_policy),
            ),
        )
        content = (response.text or "").strip()
        if not content:
            raise GenerationError("The model returned an empty completion.")
        return content


def build_completion_service(
    provider: Any, *, logger: Optional[logging.Logger] = None
) -> CompletionService:
    """Instantiate the adapter described by a ``ProviderConfig``."""

    if provider.name == "gemini":
        return GeminiCompletionService(
            temperature=provider.temperature,
            max_output_tokens=provider.max_output_tokens,
            logger=logger,
        )
    return OpenAICompletionService(
        temperature=provider.temperature,
        max_output_tokens=provider.max_output_tokens,
        api_base=provider.api_base,
        logger=logger,
    )


async def validate_key(
    service: CompletionService, api_key: str, model_id: str
) -> bool:
    """Return ``True`` when a minimal completion succeeds with ``api_key``."""

    try:
        await service.complete(
            api_key,
            model_id,
            "Reply with the single word OK.",
            SafetyPolicy.DEFAULT,
        )
    except Exception as exc:  # noqa: BLE001 - any failure means "invalid"
        get_logger("completion").warning(
            "API key validation failed", extra={"error": str(exc)}
        )
        return False
    return True
