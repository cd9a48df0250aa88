"""Best-effort error diagnosis for recorded mistakes.

The dispatcher never waits on a diagnosis. Requests are pushed onto an
outbound queue and a pump task fans each one out as an independent task.
Results and failures alike land on the mistake record itself, where
:mod:`quiz_coach.quizzer.sync` picks them up from the store's change feed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, MutableMapping, Optional, Protocol, Set

from ..core.logging import get_logger
from ..errors import GenerationError
from .completion import CompletionService, SafetyPolicy
from .generation import decode_json_payload
from .models import (
    MAX_REASONS,
    Diagnosis,
    DiagnosisError,
    Mistake,
    timestamp,
)
from .store import DocumentStore, mistakes_collection

__all__ = [
    "MAX_TAGS",
    "DiagnosisBackend",
    "DiagnosisDispatcher",
    "DiagnosisRequest",
    "LocalDiagnosisBackend",
    "build_diagnosis_prompt",
    "build_tag_prompt",
    "infer_tags",
]

MAX_TAGS = 3
_MAX_TAG_LENGTH = 40


@dataclass(frozen=True)
class DiagnosisRequest:
    """Payload sent to a diagnosis backend for one mistake."""

    mistake_id: str
    owner_id: str
    question: str
    user_answer: str
    correct_answer: str
    subject: str
    topic: str
    difficulty: str
    context: Optional[str] = None

    @classmethod
    def from_mistake(
        cls, mistake: Mistake, *, context: Optional[str] = None
    ) -> "DiagnosisRequest":
        return cls(
            mistake_id=mistake.id,
            owner_id=mistake.owner_id,
            question=mistake.question_text,
            user_answer=mistake.user_answer_text,
            correct_answer=mistake.correct_answer_text,
            subject=mistake.tags[0] if mistake.tags else mistake.topic_text,
            topic=mistake.topic_text,
            difficulty=mistake.difficulty_label,
            context=context,
        )

    def to_payload(self) -> MutableMapping[str, Any]:
        payload: MutableMapping[str, Any] = {
            "mistakeId": self.mistake_id,
            "ownerId": self.owner_id,
            "question": self.question,
            "userAnswer": self.user_answer,
            "correctAnswer": self.correct_answer,
            "subject": self.subject,
            "topic": self.topic,
            "difficulty": self.difficulty,
        }
        if self.context:
            payload["context"] = self.context
        return payload


class DiagnosisBackend(Protocol):
    """Anything that eventually writes a diagnosis onto a mistake record."""

    async def submit(self, request: DiagnosisRequest, *, api_key: str) -> None:
        """Diagnose ``request`` and write the outcome to the store."""


def build_tag_prompt(topic: str) -> str:
    return (
        "Suggest up to three short subject tags (one to three words each) "
        f'for study material on the topic "{topic}".\n'
        'Return ONLY a JSON array of strings, for example ["Biology", '
        '"Cell Structure"].'
    )


async def infer_tags(
    service: CompletionService,
    api_key: str,
    model_id: str,
    topic: str,
    *,
    logger: Optional[logging.Logger] = None,
) -> tuple[str, ...]:
    """Return at most :data:`MAX_TAGS` subject tags for ``topic``.

    Falls back to ``(topic,)`` when the model fails or answers with anything
    other than a list of non-empty strings.
    """

    log = logger or get_logger("diagnosis")
    fallback = (topic,)
    try:
        text = await service.complete(
            api_key,
            model_id,
            build_tag_prompt(topic),
            SafetyPolicy.PERMISSIVE,
        )
        data = decode_json_payload(text)
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001 - tagging is best-effort
        log.warning(
            "Tag inference failed; using topic",
            extra={"topic": topic, "error": str(exc)},
        )
        return fallback
    if not isinstance(data, list):
        log.warning("Tag inference returned non-list", extra={"topic": topic})
        return fallback
    tags: list[str] = []
    seen: set[str] = set()
    for entry in data:
        if not isinstance(entry, str):
            continue
        tag = " ".join(entry.split())[:_MAX_TAG_LENGTH]
        if tag and tag.casefold() not in seen:
            seen.add(tag.casefold())
            tags.append(tag)
        if len(tags) == MAX_TAGS:
            break
    return tuple(tags) or fallback


def build_diagnosis_prompt(
    request: DiagnosisRequest, *, max_reasons: int = MAX_REASONS
) -> str:
    """Prompt asking the model to rank likely causes of a wrong answer."""

    payload = {
        "question": request.question,
        "user_answer": request.user_answer,
        "correct_answer": request.correct_answer,
        "subject": request.subject,
        "topic": request.topic,
        "difficulty": request.difficulty,
        "context": request.context or "",
    }
    schema = {
        "is_correct": "boolean",
        "confidence": "number between 0 and 1",
        "summary": "one or two sentences",
        "reasons": [
            {
                "title": "short name of the likely cause",
                "probability": "number between 0 and 1",
                "explanation": "why this cause fits the answer given",
                "corrective_actions": ["concrete step"],
                "suggested_flashcard": {"front": "str", "back": "str"},
                "practice_prompt": "a new question targeting this cause",
            }
        ],
    }
    return (
        "You are a patient tutoring assistant.\n"
        "Diagnose why the student's answer is incorrect. List at most "
        f"{max_reasons} likely reasons ranked by probability, most likely "
        "first.\n\n"
        f"INPUT:\n{json.dumps(payload, indent=2)}\n\n"
        f"Respond with ONLY a JSON object shaped like:\n"
        f"{json.dumps(schema, indent=2)}"
    )


class LocalDiagnosisBackend:
    """Diagnose in-process through a completion service and write the result.

    Failures are written onto the mistake as an error state rather than
    raised; only a failure to write that error state propagates.
    """

    def __init__(
        self,
        service: CompletionService,
        store: DocumentStore,
        *,
        model_id: str,
        max_reasons: int = MAX_REASONS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._service = service
        self._store = store
        self._model_id = model_id
        self._max_reasons = max(1, min(max_reasons, MAX_REASONS))
        self._logger = logger or get_logger("diagnosis")

    async def submit(self, request: DiagnosisRequest, *, api_key: str) -> None:
        collection = mistakes_collection(request.owner_id)
        try:
            diagnosis = await self._diagnose(request, api_key)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - recorded on the mistake
            message = str(exc) or type(exc).__name__
            self._logger.warning(
                "Diagnosis failed",
                extra={"mistake_id": request.mistake_id, "error": message},
            )
            await self._store.update(
                collection,
                request.mistake_id,
                {
                    "diagnosis": DiagnosisError(message).to_dict(),
                    "diagnosed_at": timestamp(),
                },
            )
            return
        await self._store.update(
            collection,
            request.mistake_id,
            {"diagnosis": diagnosis.to_dict(), "diagnosed_at": timestamp()},
        )
        self._logger.info(
            "Diagnosis written",
            extra={
                "mistake_id": request.mistake_id,
                "reasons": len(diagnosis.reasons),
            },
        )

    async def _diagnose(
        self, request: DiagnosisRequest, api_key: str
    ) -> Diagnosis:
        prompt = build_diagnosis_prompt(request, max_reasons=self._max_reasons)
        text = await self._service.complete(
            api_key, self._model_id, prompt, SafetyPolicy.PERMISSIVE
        )
        data = decode_json_payload(text)
        if not isinstance(data, dict):
            raise GenerationError("Diagnosis response is not a JSON object.")
        try:
            return Diagnosis.from_dict(data, max_reasons=self._max_reasons)
        except ValueError as exc:
            raise GenerationError(
                f"Diagnosis response is malformed: {exc}"
            ) from exc


@dataclass(frozen=True)
class _Envelope:
    request: DiagnosisRequest
    api_key: str


class DiagnosisDispatcher:
    """Fire-and-forget delivery of diagnosis requests to a backend.

    :meth:`dispatch` only enqueues, so it returns before any request is
    sent. Delivery failures are logged and dropped.
    """

    def __init__(
        self,
        backend: DiagnosisBackend,
        store: DocumentStore,
        *,
        tag_service: Optional[CompletionService] = None,
        tag_model: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._backend = backend
        self._store = store
        self._tag_service = tag_service
        self._tag_model = tag_model
        self._logger = logger or get_logger("diagnosis")
        self._queue: Optional[asyncio.Queue[_Envelope]] = None
        self._pump_task: Optional[asyncio.Task[None]] = None
        self._inflight: Set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        """Requests queued or in flight."""

        queued = self._queue.qsize() if self._queue is not None else 0
        return queued + len(self._inflight)

    async def infer_tags(self, topic: str, *, api_key: str) -> tuple[str, ...]:
        if self._tag_service is None or not self._tag_model:
            return (topic,)
        return await infer_tags(
            self._tag_service,
            api_key,
            self._tag_model,
            topic,
            logger=self._logger,
        )

    def dispatch(
        self,
        mistakes: Iterable[Mistake],
        *,
        api_key: str,
        context: Optional[str] = None,
    ) -> int:
        """Queue one request per mistake and return how many were queued.

        Must be called from inside a running event loop.
        """

        queue = self._ensure_pump()
        count = 0
        for mistake in mistakes:
            if not mistake.id:
                self._logger.warning(
                    "Skipping mistake without id",
                    extra={"question": mistake.question_text},
                )
                continue
            request = DiagnosisRequest.from_mistake(mistake, context=context)
            queue.put_nowait(_Envelope(request, api_key))
            count += 1
        if count:
            self._logger.info("Queued diagnoses", extra={"count": count})
        return count

    async def retry_diagnosis(
        self, mistake_id: str, *, owner_id: str, api_key: str
    ) -> None:
        """Reset ``mistake_id`` to pending, then queue it again.

        Raises :class:`~quiz_coach.errors.PersistenceError` when the mistake
        does not exist or cannot be reset.
        """

        collection = mistakes_collection(owner_id)
        await self._store.update(
            collection, mistake_id, {"diagnosis": None, "diagnosed_at": None}
        )
        doc = await self._store.get(collection, mistake_id)
        assert doc is not None
        self._logger.info("Retrying diagnosis", extra={"mistake_id": mistake_id})
        self.dispatch([Mistake.from_dict(mistake_id, doc)], api_key=api_key)

    async def drain(self) -> None:
        """Wait until every queued request has been delivered or dropped."""

        if self._queue is not None:
            await self._queue.join()
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def aclose(self, *, drain: bool = False) -> None:
        if drain:
            await self.drain()
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None
        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        self._queue = None

    def _ensure_pump(self) -> "asyncio.Queue[_Envelope]":
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._pump_task is None or self._pump_task.done():
            loop = asyncio.get_running_loop()
            self._pump_task = loop.create_task(self._pump(self._queue))
        return self._queue

    async def _pump(self, queue: "asyncio.Queue[_Envelope]") -> None:
        while True:
            envelope = await queue.get()
            task = asyncio.create_task(self._deliver(envelope))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            queue.task_done()

    async def _deliver(self, envelope: _Envelope) -> None:
        try:
            await self._backend.submit(envelope.request, api_key=envelope.api_key)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - diagnosis is advisory
            self._logger.warning(
                "Diagnosis delivery failed",
                extra={
                    "mistake_id": envelope.request.mistake_id,
                    "error": str(exc) or type(exc).__name__,
                },
            )
