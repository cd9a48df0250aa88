"""Single request/response call that turns a prompt into quiz items.

No retrying happens here; :mod:`quiz_coach.quizzer.accumulator` owns that.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Optional

from ..core.logging import get_logger
from ..errors import GenerationError
from .completion import CompletionService, SafetyPolicy
from .models import QuizItem, parse_quiz_item

__all__ = [
    "GenerationClient",
    "build_generation_prompt",
    "decode_json_payload",
    "strip_code_fence",
]

_OPENING_FENCE = re.compile(r"\A```[A-Za-z0-9_-]*[ \t]*\n?")
_CLOSING_FENCE = re.compile(r"\n?[ \t]*```\Z")


def strip_code_fence(text: str) -> str:
    """Remove exactly one leading and one trailing code-fence marker.

    Unfenced text is returned trimmed. A fence that is opened but never
    closed (or closed but never opened), or any fence left inside the body,
    raises :class:`GenerationError` instead of being coerced.
    """

    body = (text or "").strip()
    opening = _OPENING_FENCE.match(body)
    if opening:
        rest = body[opening.end() :]
        closing = _CLOSING_FENCE.search(rest)
        if closing is None:
            raise GenerationError(
                "Model response has an unbalanced code fence."
            )
        body = rest[: closing.start()].strip()
    elif _CLOSING_FENCE.search(body):
        raise GenerationError("Model response has an unbalanced code fence.")
    if "```" in body:
        raise GenerationError(
            "Model response contains more than one code-fenced block."
        )
    return body


def decode_json_payload(text: str) -> Any:
    """Strip one optional fence and decode the remaining JSON."""

    body = strip_code_fence(text)
    if not body:
        raise GenerationError("Model response is empty.")
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise GenerationError(
            f"Model response is not valid JSON: {exc.msg}"
        ) from exc


def build_generation_prompt(prompt_context: str, requested_count: int) -> str:
    schema_line = (
        '{"type": "multiple_choice" | "true_false" | "case_based" | '
        '"matching_pairs" | "decision_tree", "question": str, "answer": ...}'
    )
    return (
        f"Generate exactly {requested_count} quiz questions.\n"
        f"{prompt_context.strip()}\n\n"
        "Format your response as a valid JSON array of objects with the "
        f"shape {schema_line}.\n"
        '- "multiple_choice" must include an "options" array of strings and '
        "its answer must be the exact text of one of the options.\n"
        '- "true_false" answers are the JSON booleans true or false.\n'
        '- "case_based" must include a "prompt" field describing the case.\n'
        '- "matching_pairs" must include a "pairs" array of '
        '{"prompt": str, "match": str} and an "answer" array of the matches '
        "in prompt order.\n"
        "Return ONLY the JSON array, with no commentary."
    )


class GenerationClient:
    """Build a prompt, invoke the model and parse a typed batch of items."""

    def __init__(
        self,
        service: CompletionService,
        *,
        safety_policy: SafetyPolicy = SafetyPolicy.PERMISSIVE,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._service = service
        self._safety_policy = safety_policy
        self._logger = logger or get_logger("generation")

    async def generate_batch(
        self,
        api_key: str,
        model_id: str,
        prompt_context: str,
        requested_count: int,
    ) -> List[QuizItem]:
        """Return up to ``requested_count`` items; fewer is not an error.

        Raises :class:`GenerationError` when the completion is not a JSON
        array of well-formed items.
        """

        if requested_count <= 0:
            return []
        prompt = build_generation_prompt(prompt_context, requested_count)
        text = await self._service.complete(
            api_key, model_id, prompt, self._safety_policy
        )
        data = decode_json_payload(text)
        if not isinstance(data, list):
            raise GenerationError(
                "Model response is JSON but not an array of quiz items."
            )
        items: List[QuizItem] = []
        for index, record in enumerate(data):
            try:
                items.append(parse_quiz_item(record))
            except ValueError as exc:
                raise GenerationError(
                    f"Quiz item {index} is malformed: {exc}"
                ) from exc
        self._logger.debug(
            "Parsed generation batch",
            extra={
                "requested": requested_count,
                "returned": len(items),
                "model": model_id,
            },
        )
        return items[:requested_count]
