"""Shared testing fixtures for the quiz_coach test suite."""

from .completion import ScriptedCompletionService, Hang  # noqa: F401
from .openai import FakeAsyncOpenAI, FakeOpenAIFactory  # noqa: F401
from .quiz import (  # noqa: F401
    analysis_payload,
    batch_text,
    make_item,
    make_mistake,
    mcq_record,
    record_list,
)

__all__ = [
    "FakeAsyncOpenAI",
    "FakeOpenAIFactory",
    "Hang",
    "ScriptedCompletionService",
    "analysis_payload",
    "batch_text",
    "make_item",
    "make_mistake",
    "mcq_record",
    "record_list",
]
