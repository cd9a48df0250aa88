from __future__ import annotations

import sys
from pathlib import Path

import pytest

TESTS_DIR = Path(__file__).resolve().parent
ROOT = TESTS_DIR.parent
for extra in (TESTS_DIR, ROOT / "src"):
    path_str = str(extra)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

from fixtures import FakeOpenAIFactory, ScriptedCompletionService  # noqa: E402
from quiz_coach.core import ai  # noqa: E402
from quiz_coach.quizzer.store import DocumentStore  # noqa: E402


@pytest.fixture
def openai_factory(monkeypatch: pytest.MonkeyPatch) -> FakeOpenAIFactory:
    """Replace ``AsyncOpenAI`` with a recording fake."""

    factory = FakeOpenAIFactory()
    monkeypatch.setattr(ai, "AsyncOpenAI", factory)
    return factory


@pytest.fixture
def service() -> ScriptedCompletionService:
    return ScriptedCompletionService()


@pytest.fixture
def store() -> DocumentStore:
    return DocumentStore()


@pytest.fixture
def workspace_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the data home and config lookup at a fresh tmp directory."""

    home = tmp_path / "data"
    monkeypatch.setenv("QUIZ_COACH_DATA_HOME", str(home))
    monkeypatch.delenv("QUIZ_COACH_CONFIG", raising=False)
    return home
