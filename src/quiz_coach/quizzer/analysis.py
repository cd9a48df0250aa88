"""On-demand worked solutions for multiple-choice questions.

An analysis explains the correct answer step by step and, for each wrong
option, sketches how a learner could plausibly arrive at it with the
faulty step marked. Nothing is persisted; callers render the result.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from ..core.logging import get_logger
from ..errors import GenerationError
from .completion import CompletionService, SafetyPolicy
from .generation import decode_json_payload
from .models import ItemKind, QuizAnalysis, QuizItem

__all__ = ["MAX_PATHWAYS", "analyze_question", "build_analysis_prompt"]

MAX_PATHWAYS = 3


def build_analysis_prompt(item: QuizItem) -> str:
    wrong_answers = [
        option for option in item.options or () if option != item.answer
    ]
    schema = {
        "correct_solution": {
            "answer": "string",
            "steps": [{"step": 1, "explanation": "string"}],
        },
        "counterfactual_analyses": [
            {
                "wrong_answer": "string",
                "error_type": "string",
                "possible_pathways": [
                    {
                        "pathway_description": "string",
                        "steps": [
                            {
                                "step": 1,
                                "explanation": "string",
                                "is_error": True,
                                "error_description": "string",
                            }
                        ],
                    }
                ],
            }
        ],
    }
    return (
        "You are an expert tutor. "
        "Analyze the multiple-choice question below.\n"
        f"Question: {item.question_text}\n"
        f"Correct answer: {item.answer}\n"
        f"Wrong answers: {json.dumps(wrong_answers)}\n\n"
        "Explain the correct answer as numbered steps. Then, for every wrong "
        "answer, classify the mistake that leads to it (for example "
        '"Sign Error", "Formula Misapplication", "Unit Conversion Error" or '
        f'"Conceptual Misunderstanding") and give 1 to {MAX_PATHWAYS} '
        "realistic reasoning pathways a learner might follow to reach it. "
        'Exactly one step of each pathway must have "is_error": true and an '
        '"error_description" saying what went wrong there.\n'
        f"Return ONLY a JSON object shaped like: {json.dumps(schema)}"
    )


async def analyze_question(
    service: CompletionService,
    api_key: str,
    model_id: str,
    item: QuizItem,
    *,
    safety_policy: SafetyPolicy = SafetyPolicy.PERMISSIVE,
    logger: Optional[logging.Logger] = None,
) -> QuizAnalysis:
    """Ask the model for a :class:`QuizAnalysis` of ``item``.

    Only multiple-choice items can be analyzed; anything else raises
    ``ValueError``. Provider and decoding failures raise
    :class:`GenerationError`.
    """

    if item.kind is not ItemKind.MULTIPLE_CHOICE or not item.options:
        raise ValueError(
            "Analysis is only available for multiple-choice questions."
        )
    log = logger or get_logger("analysis")
    prompt = build_analysis_prompt(item)
    try:
        text = await service.complete(api_key, model_id, prompt, safety_policy)
    except GenerationError:
        raise
    except Exception as exc:  # noqa: BLE001 - provider errors vary by SDK
        raise GenerationError(f"Failed to generate analysis: {exc}") from exc
    data = decode_json_payload(text)
    if not isinstance(data, dict):
        raise GenerationError("Analysis response is not a JSON object.")
    try:
        analysis = QuizAnalysis.from_dict(data)
    except ValueError as exc:
        raise GenerationError(
            f"Analysis response is malformed: {exc}"
        ) from exc
    log.debug(
        "Parsed analysis",
        extra={
            "model": model_id,
            "wrong_options": len(analysis.wrong_options),
        },
    )
    return analysis
