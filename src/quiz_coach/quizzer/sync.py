"""Live merge of landed diagnoses into a finished quiz's results."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence

from ..core.logging import get_logger
from .models import Mistake, QuestionResult, normalize_question_text
from .store import Document, DocumentStore, Subscription, mistakes_collection

__all__ = ["DiagnosisSync", "merge_diagnoses", "wait_for_diagnosis"]

ChangeListener = Callable[[tuple[QuestionResult, ...]], None]


def merge_diagnoses(
    results: Sequence[QuestionResult], mistakes: Sequence[Mistake]
) -> tuple[QuestionResult, ...]:
    """Copy each mistake's current diagnosis onto its result.

    Results are matched by mistake id and, when a result has no id yet, by
    normalised question text. Applying the same snapshot twice is a no-op.
    """

    by_id = {mistake.id: mistake for mistake in mistakes}
    by_question: Dict[str, Mistake] = {}
    for mistake in mistakes:
        by_question.setdefault(
            normalize_question_text(mistake.question_text), mistake
        )

    merged: List[QuestionResult] = []
    for result in results:
        if result.is_correct:
            merged.append(result)
            continue
        mistake = by_id.get(result.mistake_id) if result.mistake_id else None
        if mistake is None and not result.mistake_id:
            mistake = by_question.get(
                normalize_question_text(result.question_text)
            )
        if mistake is None:
            merged.append(result)
            continue
        if (
            result.diagnosis == mistake.diagnosis
            and result.mistake_id == mistake.id
        ):
            merged.append(result)
            continue
        merged.append(
            replace(result, mistake_id=mistake.id, diagnosis=mistake.diagnosis)
        )
    return tuple(merged)


class DiagnosisSync:
    """Keep a session's results in step with its mistake records.

    ``results`` is only ever replaced as a whole, so readers see either the
    previous or the next tuple, never one in between.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        owner_id: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._store = store
        self._owner_id = owner_id
        self._logger = logger or get_logger("sync")
        self._session_id: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._results: tuple[QuestionResult, ...] = ()
        self._mistakes: tuple[Mistake, ...] = ()
        self._snapshot_seen = False
        self._listeners: List[ChangeListener] = []
        self._changed: Optional[asyncio.Event] = None

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def results(self) -> tuple[QuestionResult, ...]:
        return self._results

    @property
    def mistakes(self) -> tuple[Mistake, ...]:
        return self._mistakes

    @property
    def settled(self) -> bool:
        """True once every mistake of the session has a final diagnosis."""

        return self._snapshot_seen and all(
            not mistake.is_pending for mistake in self._mistakes
        )

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def set_session(
        self,
        session_id: Optional[str],
        results: Sequence[QuestionResult] = (),
    ) -> None:
        """Follow ``session_id``; ``None`` stops following anything.

        Must be called from inside a running event loop when ``session_id``
        is set.
        """

        self._release()
        self._session_id = session_id
        self._results = tuple(results)
        self._mistakes = ()
        self._snapshot_seen = False
        if session_id is None:
            return
        self._subscription = self._store.subscribe(
            mistakes_collection(self._owner_id),
            "session_id",
            session_id,
            self._on_snapshot,
        )
        self._logger.debug(
            "Following session mistakes", extra={"session_id": session_id}
        )

    def close(self) -> None:
        self.set_session(None)

    async def wait_until_settled(self, timeout: Optional[float]) -> bool:
        """Wait for :attr:`settled`; ``False`` when ``timeout`` runs out."""

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not self.settled:
            if self._session_id is None:
                return False
            event = self._change_event()
            event.clear()
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            try:
                await asyncio.wait_for(event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return self.settled
        return True

    def _change_event(self) -> asyncio.Event:
        if self._changed is None:
            self._changed = asyncio.Event()
        return self._changed

    def _release(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_snapshot(self, snapshot: List[tuple[str, Document]]) -> None:
        mistakes = []
        for doc_id, doc in snapshot:
            try:
                mistakes.append(Mistake.from_dict(doc_id, doc))
            except ValueError as exc:
                self._logger.warning(
                    "Skipping unreadable mistake",
                    extra={"mistake_id": doc_id, "error": str(exc)},
                )
        self._mistakes = tuple(mistakes)
        self._snapshot_seen = True
        merged = merge_diagnoses(self._results, self._mistakes)
        changed = merged != self._results
        self._results = merged
        if self._changed is not None:
            self._changed.set()
        if not changed:
            return
        for listener in list(self._listeners):
            listener(merged)


async def wait_for_diagnosis(
    store: DocumentStore,
    *,
    owner_id: str,
    mistake_id: str,
    timeout: Optional[float],
) -> Optional[Mistake]:
    """Follow one mistake until its diagnosis is no longer pending.

    Returns the settled mistake, or ``None`` when ``timeout`` runs out or the
    mistake does not exist.
    """

    doc = await store.get(mistakes_collection(owner_id), mistake_id)
    if doc is None:
        return None
    loop = asyncio.get_running_loop()
    landed: asyncio.Future[Mistake] = loop.create_future()

    def on_snapshot(snapshot: List[tuple[str, Document]]) -> None:
        for doc_id, payload in snapshot:
            if doc_id != mistake_id or landed.done():
                continue
            mistake = Mistake.from_dict(doc_id, payload)
            if not mistake.is_pending:
                landed.set_result(mistake)

    subscription = store.subscribe(
        mistakes_collection(owner_id),
        "session_id",
        doc.get("session_id"),
        on_snapshot,
    )
    try:
        return await asyncio.wait_for(landed, timeout=timeout)
    except asyncio.TimeoutError:
        return None
    finally:
        subscription.unsubscribe()
