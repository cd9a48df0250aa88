"""Sequence one quiz from generation through live diagnosis.

generate -> answer -> record -> dispatch -> follow. The controller owns
only the UI-facing state; each step is delegated to its component.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Callable, Optional, Sequence

from ..core.logging import get_logger
from ..errors import PersistenceError
from .accumulator import AccumulatingGenerator
from .diagnosis import DiagnosisDispatcher
from .models import (
    GenerationFailure,
    GenerationOutcome,
    GenerationRequest,
    Mistake,
    PracticeSession,
    QuizItem,
    timestamp,
)
from .recorder import CompletedQuiz, SessionRecorder, score_answers
from .session import QuizSessionResult
from .sync import DiagnosisSync

__all__ = ["FlowOutcome", "FlowState", "QuizFlowController"]

AnswerLoop = Callable[[Sequence[QuizItem]], QuizSessionResult]


class FlowState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    ANSWERING = "answering"
    RECORDING = "recording"
    REVIEWING = "reviewing"
    GENERATION_FAILED = "generation_failed"
    SAVE_FAILED = "save_failed"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class FlowOutcome:
    """Terminal state of one quiz run."""

    state: FlowState
    items: tuple[QuizItem, ...] = ()
    session: Optional[PracticeSession] = None
    mistakes: tuple[Mistake, ...] = field(default_factory=tuple)
    message: Optional[str] = None

    @property
    def saved(self) -> bool:
        return self.state is FlowState.REVIEWING


class QuizFlowController:
    def __init__(
        self,
        generator: AccumulatingGenerator,
        recorder: SessionRecorder,
        dispatcher: DiagnosisDispatcher,
        sync: DiagnosisSync,
        *,
        owner_id: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._generator = generator
        self._recorder = recorder
        self._dispatcher = dispatcher
        self._sync = sync
        self._owner_id = owner_id
        self._logger = logger or get_logger("flow")
        self.state = FlowState.IDLE

    @property
    def sync(self) -> DiagnosisSync:
        return self._sync

    @property
    def dispatcher(self) -> DiagnosisDispatcher:
        return self._dispatcher

    async def generate(
        self, request: GenerationRequest, *, api_key: str
    ) -> GenerationOutcome:
        self._sync.set_session(None)
        self.state = FlowState.GENERATING
        outcome = await self._generator.generate(request, api_key=api_key)
        if isinstance(outcome, GenerationFailure):
            self.state = FlowState.GENERATION_FAILED
        else:
            self.state = FlowState.ANSWERING
        return outcome

    async def finish(
        self,
        request: GenerationRequest,
        items: Sequence[QuizItem],
        answers: Sequence[Optional[str]],
        *,
        api_key: str,
    ) -> FlowOutcome:
        """Record the answered quiz, dispatch diagnoses and start following.

        A store failure leaves the locally computed score intact and ends in
        :attr:`FlowState.SAVE_FAILED` without dispatching anything.
        """

        self.state = FlowState.RECORDING
        quiz = CompletedQuiz(
            owner_id=self._owner_id,
            topic_text=request.topic_text,
            difficulty_label=request.difficulty_label,
            items=tuple(items),
            answers=tuple(answers),
        )
        try:
            recorded = await self._recorder.record(
                quiz,
                tag_inferrer=partial(
                    self._dispatcher.infer_tags, api_key=api_key
                ),
            )
        except PersistenceError as exc:
            self.state = FlowState.SAVE_FAILED
            self._logger.error(
                "Could not save quiz", extra={"error": str(exc)}
            )
            score, results = score_answers(quiz.items, quiz.answers)
            unsaved = PracticeSession(
                id="",
                topic_text=quiz.topic_text,
                score=score,
                total_questions=len(results),
                created_at=timestamp(),
                owner_id=self._owner_id,
                per_question_results=results,
            )
            return FlowOutcome(
                state=self.state,
                items=quiz.items,
                session=unsaved,
                message=str(exc),
            )

        self._dispatcher.dispatch(
            recorded.mistakes, api_key=api_key, context=request.seed_context
        )
        self._sync.set_session(
            recorded.session_id, recorded.session.per_question_results
        )
        self.state = FlowState.REVIEWING
        return FlowOutcome(
            state=self.state,
            items=quiz.items,
            session=recorded.session,
            mistakes=recorded.mistakes,
        )

    async def run(
        self,
        request: GenerationRequest,
        answer_loop: AnswerLoop,
        *,
        api_key: str,
    ) -> FlowOutcome:
        outcome = await self.generate(request, api_key=api_key)
        if isinstance(outcome, GenerationFailure):
            return FlowOutcome(
                state=self.state,
                items=outcome.items_so_far,
                message=outcome.reason,
            )
        answered = answer_loop(outcome.items)
        if answered.exit_action != "submitted":
            self.state = FlowState.ABANDONED
            return FlowOutcome(state=self.state, items=outcome.items)
        return await self.finish(
            request, outcome.items, answered.answers, api_key=api_key
        )

    async def close(self) -> None:
        self._sync.close()
        await self._dispatcher.aclose()
