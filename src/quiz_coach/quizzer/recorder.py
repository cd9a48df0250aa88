"""Score a completed quiz and persist its session and mistake records."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Optional, Sequence

from ..core.logging import get_logger
from ..errors import PersistenceError
from .models import (
    Mistake,
    PracticeSession,
    QuestionResult,
    QuizItem,
    timestamp,
)
from .store import DocumentStore, mistakes_collection, sessions_collection

__all__ = [
    "CompletedQuiz",
    "RecordOutcome",
    "SessionRecorder",
    "answers_match",
    "score_answers",
]

TagInferrer = Callable[[str], Awaitable[Sequence[str]]]


@dataclass(frozen=True)
class CompletedQuiz:
    """Everything the learner produced during one quiz."""

    owner_id: str
    topic_text: str
    difficulty_label: str
    items: Sequence[QuizItem]
    answers: Sequence[Optional[str]]

    def __post_init__(self) -> None:
        if len(self.items) != len(self.answers):
            raise ValueError("answers must align one-to-one with items")


@dataclass(frozen=True)
class RecordOutcome:
    session: PracticeSession
    mistakes: tuple[Mistake, ...] = field(default_factory=tuple)

    @property
    def session_id(self) -> str:
        return self.session.id


def answers_match(user_answer: Optional[str], canonical: str) -> bool:
    """Case-insensitive exact comparison; an unanswered item is wrong."""

    if user_answer is None:
        return False
    return str(user_answer).lower() == str(canonical).lower()


def score_answers(
    items: Sequence[QuizItem], answers: Sequence[Optional[str]]
) -> tuple[int, tuple[QuestionResult, ...]]:
    results = tuple(
        QuestionResult(
            question_text=item.question_text,
            kind=item.kind,
            user_answer="" if answer is None else str(answer),
            correct_answer=item.answer,
            is_correct=answers_match(answer, item.answer),
        )
        for item, answer in zip(items, answers)
    )
    return sum(1 for result in results if result.is_correct), results


class SessionRecorder:
    """Persist a :class:`PracticeSession` and derive its mistakes.

    A ``tag_inferrer`` passed to :meth:`record` runs once per session, only
    when there are mistakes, and its tags are attached to every mistake in
    the batch.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._store = store
        self._logger = logger or get_logger("recorder")

    async def record(
        self,
        quiz: CompletedQuiz,
        *,
        tag_inferrer: Optional[TagInferrer] = None,
    ) -> RecordOutcome:
        score, results = score_answers(quiz.items, quiz.answers)
        created_at = timestamp()
        draft = PracticeSession(
            id="",
            topic_text=quiz.topic_text,
            score=score,
            total_questions=len(results),
            created_at=created_at,
            owner_id=quiz.owner_id,
            per_question_results=results,
        )
        try:
            session_id = await self._store.add(
                sessions_collection(quiz.owner_id), draft.to_dict()
            )
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(
                f"Could not save practice session: {exc}"
            ) from exc
        session = replace(draft, id=session_id)
        self._logger.info(
            "Recorded practice session",
            extra={
                "session_id": session_id,
                "score": score,
                "total": len(results),
            },
        )

        wrong = [
            (index, item, result)
            for index, (item, result) in enumerate(zip(quiz.items, results))
            if not result.is_correct
        ]
        if not wrong:
            return RecordOutcome(session=session)

        tags = (
            tuple(await tag_inferrer(quiz.topic_text))
            if tag_inferrer is not None
            else (quiz.topic_text,)
        )
        batch = self._store.batch()
        mistakes = []
        ids_by_index: dict[int, str] = {}
        for index, item, result in wrong:
            mistake = Mistake(
                id="",
                owner_id=quiz.owner_id,
                session_id=session_id,
                question_text=item.question_text,
                user_answer_text=result.user_answer,
                correct_answer_text=item.answer,
                kind=item.kind,
                topic_text=quiz.topic_text,
                difficulty_label=quiz.difficulty_label,
                created_at=created_at,
                tags=tags,
                options=item.options,
            )
            doc_id = batch.set(
                mistakes_collection(quiz.owner_id), mistake.to_dict()
            )
            ids_by_index[index] = doc_id
            mistakes.append(replace(mistake, id=doc_id))
        try:
            await batch.commit()
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(
                f"Could not save mistakes for session {session_id}: {exc}"
            ) from exc
        self._logger.info(
            "Recorded mistakes",
            extra={"session_id": session_id, "count": len(mistakes)},
        )

        linked = tuple(
            replace(result, mistake_id=ids_by_index[index])
            if index in ids_by_index
            else result
            for index, result in enumerate(results)
        )
        session = replace(session, per_question_results=linked)
        return RecordOutcome(session=session, mistakes=tuple(mistakes))
