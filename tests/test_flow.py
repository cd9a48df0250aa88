from __future__ import annotations

import asyncio
import json

from quiz_coach.errors import PersistenceError
from quiz_coach.quizzer.accumulator import AccumulatingGenerator
from quiz_coach.quizzer.diagnosis import (
    DiagnosisDispatcher,
    LocalDiagnosisBackend,
)
from quiz_coach.quizzer.flow import FlowState, QuizFlowController
from quiz_coach.quizzer.generation import GenerationClient
from quiz_coach.quizzer.models import Diagnosis, GenerationRequest
from quiz_coach.quizzer.recorder import SessionRecorder
from quiz_coach.quizzer.session import QuizSessionResult
from quiz_coach.quizzer.store import DocumentStore, mistakes_collection
from quiz_coach.quizzer.sync import DiagnosisSync

from fixtures import (
    ScriptedCompletionService,
    batch_text,
    make_item,
    record_list,
)

OWNER = "local"

DIAGNOSIS = json.dumps(
    {
        "summary": "Guessed.",
        "reasons": [
            {
                "title": "Guessing",
                "probability": 0.6,
                "explanation": "No working shown.",
                "corrective_actions": ["Work it out"],
                "suggested_flashcard": {"front": "2+2", "back": "4"},
                "practice_prompt": "What is 3+3?",
            }
        ],
    }
)


class BrokenStore(DocumentStore):
    async def _apply(self, ops):
        raise PersistenceError("store offline")


def _controller(service, store=None):
    store = store if store is not None else DocumentStore()
    dispatcher = DiagnosisDispatcher(
        LocalDiagnosisBackend(service, store, model_id="diag"),
        store,
        tag_service=service,
        tag_model="tagger",
    )
    controller = QuizFlowController(
        AccumulatingGenerator(GenerationClient(service)),
        SessionRecorder(store),
        dispatcher,
        DiagnosisSync(store, owner_id=OWNER),
        owner_id=OWNER,
    )
    return controller, store


def _answers(*answers, action="submitted"):
    return lambda items: QuizSessionResult(tuple(answers), action)


REQUEST = GenerationRequest(
    topic_text="Arithmetic", desired_count=2, seed_context="Show working."
)


def test_full_run_records_dispatches_and_follows():
    service = ScriptedCompletionService(
        batch_text(record_list("1+1?", "2+2?")),
        '["Math"]',
        DIAGNOSIS,
    )
    controller, store = _controller(service)

    async def scenario():
        outcome = await controller.run(
            REQUEST, _answers("A", "B"), api_key="user-key"
        )
        settled = await controller.sync.wait_until_settled(1.0)
        results = controller.sync.results
        await controller.close()
        return outcome, settled, results

    outcome, settled, results = asyncio.run(scenario())

    assert outcome.state is FlowState.REVIEWING
    assert outcome.saved
    assert outcome.session.score == 1
    assert len(outcome.mistakes) == 1
    assert outcome.mistakes[0].tags == ("Math",)
    assert settled is True
    assert isinstance(results[1].diagnosis, Diagnosis)
    assert results[1].diagnosis.reasons[0].title == "Guessing"
    assert {call.api_key for call in service.calls} == {"user-key"}
    assert "Show working." in service.prompts[-1]
    docs = asyncio.run(store.query(mistakes_collection(OWNER)))
    assert docs[0][1]["diagnosis"]["reasons"][0]["title"] == "Guessing"


def test_perfect_run_dispatches_nothing():
    service = ScriptedCompletionService(batch_text(record_list("1+1?")))
    controller, _ = _controller(service)
    request = GenerationRequest(topic_text="Arithmetic", desired_count=1)

    async def scenario():
        outcome = await controller.run(request, _answers("a"), api_key="k")
        pending = controller.dispatcher.pending
        await controller.close()
        return outcome, pending

    outcome, pending = asyncio.run(scenario())

    assert outcome.state is FlowState.REVIEWING
    assert outcome.mistakes == ()
    assert pending == 0
    assert len(service.calls) == 1


def test_generation_failure_stops_before_answering():
    service = ScriptedCompletionService(*(["[]"] * 4))
    controller, _ = _controller(service)
    asked = []

    def answer_loop(items):
        asked.append(items)
        return QuizSessionResult((), "submitted")

    outcome = asyncio.run(controller.run(REQUEST, answer_loop, api_key="k"))

    assert outcome.state is FlowState.GENERATION_FAILED
    assert controller.state is FlowState.GENERATION_FAILED
    assert "0 of 2" in outcome.message
    assert asked == []


def test_quitting_abandons_without_recording():
    service = ScriptedCompletionService(batch_text(record_list("A?", "B?")))
    controller, store = _controller(service)

    quit_loop = _answers("A", None, action="quit")

    outcome = asyncio.run(controller.run(REQUEST, quit_loop, api_key="k"))

    assert outcome.state is FlowState.ABANDONED
    assert len(outcome.items) == 2
    assert asyncio.run(store.query(mistakes_collection(OWNER))) == []


def test_save_failure_keeps_local_score():
    service = ScriptedCompletionService()
    controller, _ = _controller(service, store=BrokenStore())
    items = [make_item("X?"), make_item("Y?")]

    async def scenario():
        outcome = await controller.finish(
            REQUEST, items, ["A", "C"], api_key="k"
        )
        return outcome, controller.dispatcher.pending

    outcome, pending = asyncio.run(scenario())

    assert outcome.state is FlowState.SAVE_FAILED
    assert not outcome.saved
    assert outcome.session.score == 1
    assert outcome.session.total_questions == 2
    assert "store offline" in outcome.message
    assert pending == 0
    assert service.calls == []
