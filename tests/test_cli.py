from __future__ import annotations

import asyncio
import json
import threading
from dataclasses import replace

import pytest
from rich.console import Console

from quiz_coach import cli
from quiz_coach.quizzer import completion as completion_mod
from quiz_coach.quizzer.models import DiagnosisError, ItemKind
from quiz_coach.quizzer.store import (
    DocumentStore,
    mistakes_collection,
    sessions_collection,
)

from fixtures import (
    Hang,
    ScriptedCompletionService,
    analysis_payload,
    batch_text,
    make_mistake,
    record_list,
)

DIAGNOSIS = json.dumps(
    {
        "reasons": [
            {
                "title": "Sign error",
                "probability": 0.7,
                "explanation": "Dropped a minus sign.",
                "corrective_actions": ["Track signs line by line"],
                "suggested_flashcard": {"front": "-(-1)", "back": "1"},
                "practice_prompt": "Simplify -(-3).",
            }
        ]
    }
)


def make_provider(commands):
    iterator = iter(commands)

    def _provider() -> str:
        return next(iterator)

    return _provider


@pytest.fixture
def console() -> Console:
    return Console(record=True, width=120)


@pytest.fixture
def api_env(workspace_env, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    return workspace_env


@pytest.fixture
def built_providers():
    return []


@pytest.fixture
def scripted(monkeypatch, built_providers):
    service = ScriptedCompletionService()

    def build(provider):
        built_providers.append(provider)
        return service

    monkeypatch.setattr(completion_mod, "build_completion_service", build)
    return service


def _store(home) -> DocumentStore:
    return DocumentStore(home / "store" / cli.STORE_FILENAME)


def _seed(home, *mistakes) -> None:
    store = _store(home)

    async def write():
        batch = store.batch()
        for mistake in mistakes:
            batch.set(
                mistakes_collection("local"),
                mistake.to_dict(),
                doc_id=mistake.id,
            )
        await batch.commit()

    asyncio.run(write())


def test_no_command_prints_help(console):
    assert cli.main([], console=console) == 2


def test_version_flag(console):
    assert cli.main(["--version"], console=console) == 0
    assert console.export_text().strip()


def test_init_writes_template_once(workspace_env, console):
    assert cli.main(["init"], console=console) == 0
    config_path = workspace_env / "config" / "quiz_coach.toml"
    assert config_path.is_file()
    assert cli.main(["init"], console=console) == 2
    assert "already exists" in console.export_text()
    assert cli.main(["init", "--force"], console=console) == 0


def test_invalid_config_exits_with_two(workspace_env, tmp_path, console):
    bad = tmp_path / "bad.toml"
    bad.write_text("[generation]\nmax_attempts = -1\n", encoding="utf-8")

    code = cli.main(
        ["--config", str(bad), "sessions", "list"], console=console
    )

    assert code == 2
    assert "positive integer" in console.export_text()


def test_start_requires_api_key(workspace_env, monkeypatch, console):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    assert cli.main(["start", "Algebra"], console=console) == 2
    assert "OPENAI_API_KEY" in console.export_text()


def test_start_rejects_non_positive_count(api_env, console):
    assert cli.main(["start", "Algebra", "-n", "0"], console=console) == 2


def test_start_runs_quiz_and_shows_diagnosis(api_env, scripted, console):
    scripted.queue(
        batch_text(record_list("What is -(-2)?", "What is 2*3?")),
        '["Algebra"]',
        DIAGNOSIS,
    )

    code = cli.main(
        ["start", "Signed numbers", "-n", "2", "--wait", "5"],
        console=console,
        input_provider=make_provider(["b", "a", "submit"]),
    )

    assert code == 0
    text = console.export_text()
    assert "Quiz Summary" in text
    assert "50.0%" in text
    assert "Why question 1 went wrong" in text
    assert "Sign error" in text
    assert "still pending" not in text
    assert [call.api_key for call in scripted.calls] == ["sk-test"] * 3

    store = _store(api_env)
    mistakes = asyncio.run(store.query(mistakes_collection("local")))
    sessions = asyncio.run(store.query(sessions_collection("local")))
    assert len(sessions) == 1
    assert len(mistakes) == 1
    assert mistakes[0][1]["tags"] == ["Algebra"]
    assert mistakes[0][1]["diagnosis"]["reasons"][0]["title"] == "Sign error"


def test_start_reports_pending_diagnoses(api_env, scripted, console):
    scripted.queue(batch_text(record_list("Q1?")), '["Algebra"]', Hang())

    code = cli.main(
        ["start", "Algebra", "-n", "1", "--wait", "0.05"],
        console=console,
        input_provider=make_provider(["b", "submit"]),
    )

    assert code == 0
    text = console.export_text()
    assert "Diagnosis pending..." in text
    assert "still pending" in text


def test_start_generation_failure(api_env, scripted, console):
    scripted.queue(*(["[]"] * 4))

    code = cli.main(
        ["start", "Algebra", "-n", "2"],
        console=console,
        input_provider=make_provider([]),
    )

    assert code == 1
    assert "0 of 2" in console.export_text()


def test_start_quit_records_nothing(api_env, scripted, console):
    scripted.queue(batch_text(record_list("Q1?")))

    code = cli.main(
        ["start", "Algebra", "-n", "1"],
        console=console,
        input_provider=make_provider(["quit"]),
    )

    assert code == 0
    assert "nothing was recorded" in console.export_text()
    assert asyncio.run(
        _store(api_env).query(sessions_collection("local"))
    ) == []


def test_start_from_mistakes_needs_history(api_env, scripted, console):
    code = cli.main(
        ["start", "Algebra", "--from-mistakes"],
        console=console,
        input_provider=make_provider([]),
    )

    assert code == 2
    assert "No recorded mistakes" in console.export_text()


def test_start_from_mistakes_seeds_prompt(api_env, scripted, console):
    _seed(api_env, make_mistake("m1", question="What is 7*8?"))
    scripted.queue(batch_text(record_list("What is 6*7?")))

    cli.main(
        ["start", "Times tables", "-n", "1", "--from-mistakes"],
        console=console,
        input_provider=make_provider(["quit"]),
    )

    prompt = scripted.prompts[0]
    assert "previously answered these questions incorrectly" in prompt
    assert "- What is 7*8?" in prompt


def test_mistakes_list_and_show(api_env, console):
    assert cli.main(["mistakes", "list"], console=console) == 0
    assert "No mistakes recorded." in console.export_text(clear=True)

    _seed(
        api_env,
        make_mistake("m1", tags=("Zoology",)),
        make_mistake("m2", question="Name a prime.", tags=("Algebra",)),
    )

    assert cli.main(
        ["mistakes", "list", "--sort", "subject"], console=console
    ) == 0
    listing = console.export_text(clear=True)
    assert listing.index("m2") < listing.index("m1")

    assert cli.main(["mistakes", "show", "m2"], console=console) == 0
    shown = console.export_text(clear=True)
    assert "Name a prime." in shown
    assert "Diagnosis pending..." in shown

    assert cli.main(["mistakes", "show", "nope"], console=console) == 1


def test_mistakes_retry_lands_new_diagnosis(api_env, scripted, console):
    failed = replace(make_mistake("m1"), diagnosis=DiagnosisError("quota"))
    _seed(api_env, failed)
    scripted.queue(DIAGNOSIS)

    code = cli.main(
        ["mistakes", "retry", "m1", "--wait", "5"], console=console
    )

    assert code == 0
    assert "Sign error" in console.export_text()
    doc = asyncio.run(_store(api_env).get(mistakes_collection("local"), "m1"))
    assert doc["diagnosis"]["reasons"][0]["title"] == "Sign error"


def test_mistakes_retry_timeout_leaves_pending(api_env, scripted, console):
    _seed(api_env, make_mistake("m1"))
    scripted.queue(Hang())

    code = cli.main(
        ["mistakes", "retry", "m1", "--wait", "0.05"], console=console
    )

    assert code == 1
    assert "Diagnosis is still pending." in console.export_text()
    doc = asyncio.run(_store(api_env).get(mistakes_collection("local"), "m1"))
    assert doc["diagnosis"] is None


def test_mistakes_retry_unknown_id(api_env, scripted, console):
    code = cli.main(["mistakes", "retry", "ghost"], console=console)

    assert code == 1
    assert "ghost" in console.export_text()


def test_start_answers_off_the_event_loop_thread(api_env, scripted, console):
    scripted.queue(batch_text(record_list("Q1?")))
    commands = iter(["a", "submit"])
    threads = []

    def provider():
        threads.append(threading.current_thread())
        return next(commands)

    code = cli.main(
        ["start", "Algebra", "-n", "1"],
        console=console,
        input_provider=provider,
    )

    assert code == 0
    assert threads
    assert threading.main_thread() not in threads


def test_start_diagnosis_uses_its_own_temperature(
    api_env, scripted, built_providers, console
):
    scripted.queue(batch_text(record_list("Q1?")), '["Algebra"]', DIAGNOSIS)

    cli.main(
        ["start", "Algebra", "-n", "1", "--wait", "5"],
        console=console,
        input_provider=make_provider(["b", "submit"]),
    )

    temperatures = [provider.temperature for provider in built_providers]
    assert temperatures == [0.7, 0.2]
    assert {provider.name for provider in built_providers} == {"openai"}


def test_mistakes_analyze_renders_solution(api_env, scripted, console):
    _seed(api_env, make_mistake("m1", options=("3", "4", "5")))
    scripted.queue(json.dumps(analysis_payload()))

    code = cli.main(["mistakes", "analyze", "m1"], console=console)

    assert code == 0
    text = console.export_text()
    assert "What is 2 + 2?" in text
    assert "Correct answer: 4" in text
    assert "Incorrect answer: 5" in text
    assert "Step 2 [error]" in text
    (call,) = scripted.calls
    assert call.api_key == "sk-test"
    assert 'Wrong answers: ["3", "5"]' in call.prompt_text


def test_mistakes_analyze_model_override(api_env, scripted, console):
    _seed(api_env, make_mistake("m1", options=("3", "4", "5")))
    scripted.queue(json.dumps(analysis_payload()))

    cli.main(
        ["mistakes", "analyze", "m1", "--model", "gpt-4o"], console=console
    )

    assert scripted.calls[0].model_id == "gpt-4o"


def test_mistakes_analyze_reports_bad_output(api_env, scripted, console):
    _seed(api_env, make_mistake("m1", options=("3", "4", "5")))
    scripted.queue("no json here")

    code = cli.main(["mistakes", "analyze", "m1"], console=console)

    assert code == 1
    assert "not valid JSON" in console.export_text()


@pytest.mark.parametrize(
    ("mistakes", "message"),
    [
        ((), "No mistake 'm1'"),
        (
            (make_mistake("m1", kind=ItemKind.TRUE_FALSE),),
            "only available for multiple-choice",
        ),
    ],
)
def test_mistakes_analyze_rejects_without_calling_model(
    api_env, scripted, console, mistakes, message
):
    _seed(api_env, *mistakes)

    code = cli.main(["mistakes", "analyze", "m1"], console=console)

    assert code == 1
    assert message in console.export_text()
    assert scripted.calls == []


def test_sessions_list(api_env, console):
    assert cli.main(["sessions", "list"], console=console) == 0
    assert "No practice sessions recorded." in console.export_text(clear=True)

    store = _store(api_env)
    asyncio.run(
        store.add(
            sessions_collection("local"),
            {
                "topic": "Fractions",
                "score": 3,
                "total_questions": 4,
                "created_at": "2024-05-01T10:00:00+00:00",
                "owner_id": "local",
                "questions": [],
            },
        )
    )

    assert cli.main(["sessions", "list"], console=console) == 0
    text = console.export_text()
    assert "Fractions" in text
    assert "3/4 (75%)" in text


@pytest.mark.parametrize(
    ("steps", "expected"),
    [(["OK"], 0), ([RuntimeError("401 unauthorized")], 1)],
)
def test_check_key(api_env, scripted, console, steps, expected):
    scripted.queue(*steps)

    assert cli.main(["check-key"], console=console) == expected
