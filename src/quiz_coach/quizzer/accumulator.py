"""Assemble an exact-size, duplicate-free quiz from an unreliable model.

The model neither respects requested counts nor avoids repeating itself
across calls, so generation proceeds in bounded attempts. Each attempt asks
only for the items still missing and lists every question already accepted
so it is not produced again.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Iterable, List, Optional, Sequence

from ..core.logging import get_logger
from .generation import GenerationClient
from .models import (
    GenerationFailure,
    GenerationOutcome,
    GenerationRequest,
    GenerationSuccess,
    QuizItem,
)

__all__ = [
    "MAX_ATTEMPTS",
    "AccumulatingGenerator",
    "build_attempt_context",
    "describe_seed_context",
    "merge_unique",
]

MAX_ATTEMPTS = 4


def describe_seed_context(seed_context: Optional[str]) -> str:
    """Rewrite ``seed_context`` into an instruction for related new items.

    A JSON list of strings is treated as previously missed questions; any
    other text is treated as free-form source material.
    """

    if not seed_context or not seed_context.strip():
        return ""
    try:
        decoded = json.loads(seed_context)
    except json.JSONDecodeError:
        decoded = None
    if isinstance(decoded, list) and all(
        isinstance(entry, str) for entry in decoded
    ):
        listed = "\n".join(f"- {entry}" for entry in decoded if entry.strip())
        return (
            "The learner previously answered these questions incorrectly. "
            "Write new questions that exercise the same concepts but are "
            "distinct from them; do not repeat any of them verbatim:\n"
            f"{listed}"
        )
    return (
        "Use the following material as context. Write questions that are "
        "thematically similar to it but distinct, and do not copy it "
        f"verbatim:\n{seed_context.strip()}"
    )


def build_attempt_context(
    request: GenerationRequest, accumulated: Sequence[QuizItem]
) -> str:
    """Prompt context for one attempt given what has been accepted so far."""

    remaining = request.desired_count - len(accumulated)
    kinds = ", ".join(
        sorted(kind.value for kind in request.allowed_kinds)
    )
    parts = [
        f'The topic is "{request.topic_text}".',
        f'The target audience is learners associated with a '
        f'"{request.audience_label}".',
        f'Use only these question types: {kinds}. The difficulty is '
        f'"{request.difficulty_label}".',
    ]
    seed = describe_seed_context(request.seed_context)
    if seed:
        parts.append(seed)
    if accumulated:
        listed = "\n".join(f"- {item.question_text}" for item in accumulated)
        parts.append(
            "These questions already exist. Do not repeat any of them "
            f"exactly:\n{listed}"
        )
    parts.append(f"Exactly {remaining} more question(s) are needed.")
    return "\n".join(parts)


def merge_unique(
    accumulated: List[QuizItem],
    batch: Iterable[QuizItem],
    *,
    allowed: Optional[frozenset] = None,
) -> tuple[int, int]:
    """Append unseen, allowed items from ``batch`` to ``accumulated`` in place.

    Returns ``(accepted, rejected)`` counts.
    """

    seen = {item.identity for item in accumulated}
    accepted = 0
    rejected = 0
    for item in batch:
        if item.identity in seen or (
            allowed is not None and item.kind not in allowed
        ):
            rejected += 1
            continue
        seen.add(item.identity)
        accumulated.append(item)
        accepted += 1
    return accepted, rejected


class AccumulatingGenerator:
    """Drive sequential generation attempts until the quiz is complete."""

    def __init__(
        self,
        client: GenerationClient,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        attempt_timeout: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._client = client
        self._max_attempts = max_attempts
        self._attempt_timeout = attempt_timeout
        self._logger = logger or get_logger("accumulator")

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def generate(
        self, request: GenerationRequest, *, api_key: str
    ) -> GenerationOutcome:
        """Return :class:`GenerationSuccess` with exactly ``desired_count``
        unique items, or :class:`GenerationFailure` once attempts run out.
        """

        accumulated: List[QuizItem] = []
        allowed = request.allowed_kinds
        last_error: Optional[str] = None
        attempts = 0

        while attempts < self._max_attempts:
            attempts += 1
            remaining = request.desired_count - len(accumulated)
            context = build_attempt_context(request, accumulated)
            try:
                batch = await self._request_batch(
                    api_key, request.model_id, context, remaining
                )
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                last_error = (
                    f"attempt timed out after {self._attempt_timeout}s"
                )
                self._logger.warning(
                    "Generation attempt timed out",
                    extra={"attempt": attempts, "remaining": remaining},
                )
                continue
            except Exception as exc:  # noqa: BLE001 - one bad attempt is absorbed
                last_error = str(exc) or type(exc).__name__
                self._logger.warning(
                    "Generation attempt failed",
                    extra={
                        "attempt": attempts,
                        "remaining": remaining,
                        "error": last_error,
                    },
                )
                continue

            accepted, rejected = merge_unique(
                accumulated, batch, allowed=allowed
            )
            self._logger.info(
                "Generation attempt merged",
                extra={
                    "attempt": attempts,
                    "returned": len(batch),
                    "accepted": accepted,
                    "rejected": rejected,
                    "accumulated": len(accumulated),
                    "desired": request.desired_count,
                },
            )
            if len(accumulated) >= request.desired_count:
                return GenerationSuccess(
                    items=tuple(accumulated[: request.desired_count])
                )

        reason = (
            f"Generated {len(accumulated)} of {request.desired_count} unique "
            f"questions after {attempts} attempt(s)."
        )
        if last_error:
            reason += f" Last error: {last_error}"
        self._logger.error(
            "Generation exhausted attempts",
            extra={
                "attempts": attempts,
                "accumulated": len(accumulated),
                "desired": request.desired_count,
            },
        )
        return GenerationFailure(
            attempts_used=attempts,
            items_so_far=tuple(accumulated),
            reason=reason,
        )

    async def _request_batch(
        self, api_key: str, model_id: str, context: str, remaining: int
    ) -> List[QuizItem]:
        call = self._client.generate_batch(
            api_key, model_id, context, remaining
        )
        if self._attempt_timeout is None:
            return await call
        return await asyncio.wait_for(call, timeout=self._attempt_timeout)
