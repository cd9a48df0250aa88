"""Exception taxonomy for quiz-coach.

Diagnosis failures have no exception type. They are stored as data on the
mistake they concern (see :class:`quiz_coach.quizzer.models.DiagnosisError`).
"""

from __future__ import annotations

__all__ = [
    "QuizCoachError",
    "GenerationError",
    "PersistenceError",
    "ConfigurationError",
]


class QuizCoachError(RuntimeError):
    """Base class for quiz-coach failures."""


class GenerationError(QuizCoachError):
    """Raised when a model completion cannot be turned into quiz items."""


class PersistenceError(QuizCoachError):
    """Raised when a store write fails; nothing from the write is applied."""


class ConfigurationError(QuizCoachError):
    """Raised when a required setting such as the API key is missing."""
