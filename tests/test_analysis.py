from __future__ import annotations

import asyncio
import json

import pytest

from quiz_coach.errors import GenerationError
from quiz_coach.quizzer.analysis import analyze_question
from quiz_coach.quizzer.completion import SafetyPolicy
from quiz_coach.quizzer.models import ItemKind, QuizItem

from fixtures import ScriptedCompletionService, analysis_payload, make_item

ITEM = QuizItem(
    kind=ItemKind.MULTIPLE_CHOICE,
    question_text="What is 2 + 2?",
    answer="4",
    options=("3", "4", "5"),
)


def test_analyze_question_parses_fenced_json():
    service = ScriptedCompletionService(
        "```json\n" + json.dumps(analysis_payload()) + "\n```"
    )

    analysis = asyncio.run(analyze_question(service, "key", "model", ITEM))

    assert analysis.correct_answer == "4"
    assert analysis.wrong_options[0].pathways[0].error_step.number == 2
    (call,) = service.calls
    assert call.api_key == "key"
    assert call.model_id == "model"
    assert call.safety_policy is SafetyPolicy.PERMISSIVE
    assert "Correct answer: 4" in call.prompt_text
    assert 'Wrong answers: ["3", "5"]' in call.prompt_text


def test_analyze_question_rejects_other_kinds():
    service = ScriptedCompletionService()
    item = make_item("Water is wet.", "true", kind=ItemKind.TRUE_FALSE)

    with pytest.raises(ValueError, match="multiple-choice"):
        asyncio.run(analyze_question(service, "key", "model", item))
    assert service.calls == []


@pytest.mark.parametrize(
    ("step", "message"),
    [
        (ConnectionError("socket closed"), "Failed to generate analysis"),
        ("not json", "not valid JSON"),
        ("[1, 2]", "not a JSON object"),
        ('{"correctSolution": {"answer": "4"}}', "malformed"),
    ],
)
def test_analyze_question_failures_raise_generation_error(step, message):
    service = ScriptedCompletionService(step)

    with pytest.raises(GenerationError, match=message):
        asyncio.run(analyze_question(service, "key", "model", ITEM))
