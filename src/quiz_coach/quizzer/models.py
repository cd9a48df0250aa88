"""Data model shared by the generation, recording and diagnosis pipeline."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, MutableMapping, Optional, Sequence, Union

__all__ = [
    "ItemKind",
    "MatchingPair",
    "QuizItem",
    "GenerationRequest",
    "GenerationSuccess",
    "GenerationFailure",
    "GenerationOutcome",
    "QuestionResult",
    "PracticeSession",
    "Flashcard",
    "Reason",
    "Diagnosis",
    "DiagnosisError",
    "DiagnosisState",
    "Mistake",
    "SolutionStep",
    "ErrorPathway",
    "WrongOptionAnalysis",
    "QuizAnalysis",
    "MAX_REASONS",
    "mistake_questions",
    "normalize_question_text",
    "parse_quiz_item",
    "parse_diagnosis",
    "timestamp",
]

MAX_REASONS = 10


class ItemKind(str, Enum):
    """Structural category of a quiz question."""

    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE = "true_false"
    CASE_BASED = "case_based"
    MATCHING_PAIRS = "matching_pairs"
    DECISION_TREE = "decision_tree"

    @classmethod
    def from_value(cls, value: Any) -> "ItemKind":
        normalized = str(value or "").strip().lower().replace("-", "_")
        for member in cls:
            if member.value == normalized:
                return member
        expected = ", ".join(member.value for member in cls)
        raise ValueError(
            f"Unknown item kind '{value}'. Expected one of: {expected}."
        )


def normalize_question_text(text: str) -> str:
    """Identity key for de-duplication: trimmed, whitespace-collapsed, casefolded."""

    return " ".join(str(text).split()).casefold()


def timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class MatchingPair:
    prompt: str
    match: str


@dataclass(frozen=True)
class QuizItem:
    """One generated question. Immutable once produced."""

    kind: ItemKind
    question_text: str
    answer: str
    options: Optional[tuple[str, ...]] = None
    prompt: Optional[str] = None
    pairs: Optional[tuple[MatchingPair, ...]] = None

    @property
    def identity(self) -> str:
        return normalize_question_text(self.question_text)

    def to_dict(self) -> MutableMapping[str, Any]:
        payload: MutableMapping[str, Any] = {
            "type": self.kind.value,
            "question": self.question_text,
            "answer": self.answer,
        }
        if self.options is not None:
            payload["options"] = list(self.options)
        if self.prompt is not None:
            payload["prompt"] = self.prompt
        if self.pairs is not None:
            payload["pairs"] = [
                {"prompt": pair.prompt, "match": pair.match}
                for pair in self.pairs
            ]
        return payload


def parse_quiz_item(record: Any) -> QuizItem:
    """Validate one decoded model record and build a :class:`QuizItem`.

    Required keys: ``type``, ``question`` and ``answer``. Multiple-choice
    items need an ``options`` list of at least two strings, case-based items
    a ``prompt`` and matching items a ``pairs`` list. Raises ``ValueError``
    with an actionable message when the record is malformed.
    """

    if not isinstance(record, Mapping):
        raise ValueError("quiz item must be a JSON object")
    kind = ItemKind.from_value(record.get("type"))
    question = record.get("question")
    if not isinstance(question, str) or not question.strip():
        raise ValueError("question must be a non-empty string")
    if "answer" not in record or record.get("answer") is None:
        raise ValueError("answer is required")

    options: Optional[tuple[str, ...]] = None
    prompt: Optional[str] = None
    pairs: Optional[tuple[MatchingPair, ...]] = None
    raw_answer = record.get("answer")

    if kind is ItemKind.MULTIPLE_CHOICE:
        options = _parse_options(record.get("options"))
        answer = _resolve_choice_answer(raw_answer, options)
    elif kind is ItemKind.TRUE_FALSE:
        answer = _boolean_answer(raw_answer)
    elif kind is ItemKind.CASE_BASED:
        raw_prompt = record.get("prompt")
        if not isinstance(raw_prompt, str) or not raw_prompt.strip():
            raise ValueError("case_based items require a prompt")
        prompt = raw_prompt.strip()
        answer = _scalar_answer(raw_answer)
    elif kind is ItemKind.MATCHING_PAIRS:
        pairs = _parse_pairs(record.get("pairs"))
        if isinstance(raw_answer, list):
            answer = ", ".join(str(part).strip() for part in raw_answer)
        else:
            answer = _scalar_answer(raw_answer)
    else:
        answer = _scalar_answer(raw_answer)

    if not answer:
        raise ValueError("answer must not be empty")
    return QuizItem(
        kind=kind,
        question_text=question.strip(),
        answer=answer,
        options=options,
        prompt=prompt,
        pairs=pairs,
    )


def _parse_options(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, list) or len(raw) < 2:
        raise ValueError("multiple_choice items require at least two options")
    options = tuple(str(option).strip() for option in raw)
    if not all(options):
        raise ValueError("option text must be non-empty")
    return options


def _resolve_choice_answer(raw: Any, options: tuple[str, ...]) -> str:
    """Map a model's answer onto the text of one of ``options``.

    Option text wins over any other reading, so options that are themselves
    letters keep their meaning. Otherwise a letter (``"B"``, ``"b)"``) picks
    by position and an integer is a zero-based index.
    """

    if isinstance(raw, int) and not isinstance(raw, bool):
        if 0 <= raw < len(options):
            return options[raw]
        raise ValueError(
            f"answer index {raw} is out of range for {len(options)} options"
        )
    candidate = _scalar_answer(raw)
    folded = candidate.casefold()
    for option in options:
        if option.casefold() == folded:
            return option
    letter = candidate.rstrip(").:").strip().upper()
    if len(letter) == 1 and "A" <= letter <= "Z":
        position = ord(letter) - ord("A")
        if position < len(options):
            return options[position]
    raise ValueError(f"answer '{candidate}' does not match any option")


def _parse_pairs(raw: Any) -> tuple[MatchingPair, ...]:
    if not isinstance(raw, list) or not raw:
        raise ValueError("matching_pairs items require a pairs list")
    pairs = []
    for entry in raw:
        if not isinstance(entry, Mapping):
            raise ValueError("each pair must be an object with prompt/match")
        prompt = str(entry.get("prompt", "")).strip()
        match = str(entry.get("match", "")).strip()
        if not prompt or not match:
            raise ValueError("pair prompt and match must be non-empty")
        pairs.append(MatchingPair(prompt, match))
    return tuple(pairs)


def _scalar_answer(raw: Any) -> str:
    if isinstance(raw, (Mapping, list)):
        raise ValueError("answer must be a scalar value")
    if isinstance(raw, bool):
        return "true" if raw else "false"
    return str(raw).strip()


def _boolean_answer(raw: Any) -> str:
    if isinstance(raw, bool):
        return "true" if raw else "false"
    text = str(raw).strip().lower()
    if text in {"true", "false"}:
        return text
    raise ValueError("true_false answer must be true or false")


@dataclass(frozen=True)
class GenerationRequest:
    """Configuration for one generation run."""

    topic_text: str
    desired_count: int
    audience_label: str = "Student"
    item_kinds: tuple[ItemKind, ...] = (ItemKind.MULTIPLE_CHOICE,)
    difficulty_label: str = "neutral"
    model_id: str = "gpt-4o-mini"
    seed_context: Optional[str] = None

    def __post_init__(self) -> None:
        if not str(self.topic_text).strip():
            raise ValueError("topic_text must be non-empty")
        if isinstance(self.desired_count, bool) or self.desired_count < 1:
            raise ValueError("desired_count must be >= 1")

    @property
    def allowed_kinds(self) -> frozenset[ItemKind]:
        return frozenset(self.item_kinds or tuple(ItemKind))


@dataclass(frozen=True)
class GenerationSuccess:
    items: tuple[QuizItem, ...]


@dataclass(frozen=True)
class GenerationFailure:
    attempts_used: int
    items_so_far: tuple[QuizItem, ...]
    reason: str


GenerationOutcome = Union[GenerationSuccess, GenerationFailure]


@dataclass(frozen=True)
class Flashcard:
    front: str
    back: str


@dataclass(frozen=True)
class Reason:
    """One ranked likely cause of a mistake, with remediation."""

    title: str
    probability: float
    explanation: str
    corrective_steps: tuple[str, ...]
    flashcard: Flashcard
    practice_prompt: str

    def to_dict(self) -> MutableMapping[str, Any]:
        return {
            "title": self.title,
            "probability": self.probability,
            "explanation": self.explanation,
            "corrective_actions": list(self.corrective_steps),
            "suggested_flashcard": {
                "front": self.flashcard.front,
                "back": self.flashcard.back,
            },
            "practice_prompt": self.practice_prompt,
        }


@dataclass(frozen=True)
class Diagnosis:
    """Ranked likely error causes for one mistake."""

    reasons: tuple[Reason, ...] = ()
    is_correct: Optional[bool] = None
    confidence: Optional[float] = None
    summary: Optional[str] = None

    def to_dict(self) -> MutableMapping[str, Any]:
        payload: MutableMapping[str, Any] = {
            "reasons": [reason.to_dict() for reason in self.reasons],
        }
        if self.is_correct is not None:
            payload["is_correct"] = self.is_correct
        if self.confidence is not None:
            payload["confidence"] = self.confidence
        if self.summary is not None:
            payload["summary"] = self.summary
        return payload

    @classmethod
    def from_dict(
        cls, payload: Mapping[str, Any], *, max_reasons: int = MAX_REASONS
    ) -> "Diagnosis":
        raw_reasons = payload.get("reasons") or []
        if not isinstance(raw_reasons, list):
            raise ValueError("diagnosis reasons must be a list")
        reasons = [
            reason
            for reason in (_parse_reason(entry) for entry in raw_reasons)
            if reason is not None
        ]
        reasons.sort(key=lambda reason: reason.probability, reverse=True)
        is_correct = payload.get("is_correct")
        confidence = payload.get("confidence")
        summary = payload.get("summary")
        return cls(
            reasons=tuple(reasons[: min(max_reasons, MAX_REASONS)]),
            is_correct=is_correct if isinstance(is_correct, bool) else None,
            confidence=(
                _clamp_probability(confidence)
                if confidence is not None
                else None
            ),
            summary=str(summary) if summary else None,
        )


@dataclass(frozen=True)
class DiagnosisError:
    """Terminal failure state written onto a mistake instead of a diagnosis."""

    message: str

    def to_dict(self) -> MutableMapping[str, Any]:
        return {"error": True, "message": self.message}


DiagnosisState = Union[Diagnosis, DiagnosisError, None]


def parse_diagnosis(raw: Any) -> DiagnosisState:
    """Decode the stored ``diagnosis`` field; ``None`` means pending."""

    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        return DiagnosisError("Stored diagnosis is not an object.")
    if raw.get("error"):
        return DiagnosisError(str(raw.get("message") or "Diagnosis failed."))
    try:
        return Diagnosis.from_dict(raw)
    except ValueError as exc:
        return DiagnosisError(str(exc))


def _clamp_probability(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    return min(1.0, max(0.0, number))


def _parse_reason(entry: Any) -> Optional[Reason]:
    if not isinstance(entry, Mapping):
        return None
    title = str(entry.get("title") or "").strip()
    if not title:
        return None
    steps = entry.get("corrective_actions") or []
    card = entry.get("suggested_flashcard") or {}
    if not isinstance(card, Mapping):
        card = {}
    return Reason(
        title=title,
        probability=_clamp_probability(entry.get("probability", 0.0)),
        explanation=str(entry.get("explanation") or ""),
        corrective_steps=tuple(
            str(step) for step in steps if str(step).strip()
        )
        if isinstance(steps, list)
        else (),
        flashcard=Flashcard(
            front=str(card.get("front") or ""),
            back=str(card.get("back") or ""),
        ),
        practice_prompt=str(entry.get("practice_prompt") or ""),
    )


@dataclass(frozen=True)
class QuestionResult:
    """Per-question outcome shown to the learner after a quiz."""

    question_text: str
    kind: ItemKind
    user_answer: str
    correct_answer: str
    is_correct: bool
    mistake_id: Optional[str] = None
    diagnosis: DiagnosisState = None

    def to_dict(self) -> MutableMapping[str, Any]:
        return {
            "question": self.question_text,
            "type": self.kind.value,
            "user_answer": self.user_answer,
            "correct_answer": self.correct_answer,
            "is_correct": self.is_correct,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "QuestionResult":
        return cls(
            question_text=str(payload.get("question", "")),
            kind=ItemKind.from_value(payload.get("type")),
            user_answer=str(payload.get("user_answer", "")),
            correct_answer=str(payload.get("correct_answer", "")),
            is_correct=bool(payload.get("is_correct")),
        )


@dataclass(frozen=True)
class PracticeSession:
    """Append-only record of one completed quiz."""

    id: str
    topic_text: str
    score: int
    total_questions: int
    created_at: str
    owner_id: str
    per_question_results: tuple[QuestionResult, ...]

    @property
    def percentage(self) -> float:
        if self.total_questions == 0:
            return 0.0
        return self.score / self.total_questions * 100

    def to_dict(self) -> MutableMapping[str, Any]:
        return {
            "topic": self.topic_text,
            "score": self.score,
            "total_questions": self.total_questions,
            "created_at": self.created_at,
            "owner_id": self.owner_id,
            "questions": [
                result.to_dict() for result in self.per_question_results
            ],
        }

    @classmethod
    def from_dict(
        cls, doc_id: str, payload: Mapping[str, Any]
    ) -> "PracticeSession":
        return cls(
            id=doc_id,
            topic_text=str(payload.get("topic", "")),
            score=int(payload.get("score", 0)),
            total_questions=int(payload.get("total_questions", 0)),
            created_at=str(payload.get("created_at", "")),
            owner_id=str(payload.get("owner_id", "")),
            per_question_results=tuple(
                QuestionResult.from_dict(entry)
                for entry in payload.get("questions", [])
            ),
        )


@dataclass(frozen=True)
class Mistake:
    """Persisted wrong answer; only ``diagnosis`` changes after creation."""

    id: str
    owner_id: str
    session_id: str
    question_text: str
    user_answer_text: str
    correct_answer_text: str
    kind: ItemKind
    topic_text: str
    difficulty_label: str
    created_at: str
    tags: tuple[str, ...] = ()
    options: Optional[tuple[str, ...]] = None
    diagnosis: DiagnosisState = None
    diagnosed_at: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.diagnosis is None

    def to_item(self) -> QuizItem:
        return QuizItem(
            kind=self.kind,
            question_text=self.question_text,
            answer=self.correct_answer_text,
            options=self.options,
        )

    def to_dict(self) -> MutableMapping[str, Any]:
        payload: MutableMapping[str, Any] = {
            "owner_id": self.owner_id,
            "session_id": self.session_id,
            "question": self.question_text,
            "user_answer": self.user_answer_text,
            "correct_answer": self.correct_answer_text,
            "type": self.kind.value,
            "topic": self.topic_text,
            "difficulty": self.difficulty_label,
            "tags": list(self.tags),
            "created_at": self.created_at,
            "diagnosis": (
                self.diagnosis.to_dict()
                if self.diagnosis is not None
                else None
            ),
        }
        if self.options is not None:
            payload["options"] = list(self.options)
        if self.diagnosed_at is not None:
            payload["diagnosed_at"] = self.diagnosed_at
        return payload

    @classmethod
    def from_dict(cls, doc_id: str, payload: Mapping[str, Any]) -> "Mistake":
        options = payload.get("options")
        return cls(
            id=doc_id,
            owner_id=str(payload.get("owner_id", "")),
            session_id=str(payload.get("session_id", "")),
            question_text=str(payload.get("question", "")),
            user_answer_text=str(payload.get("user_answer", "")),
            correct_answer_text=str(payload.get("correct_answer", "")),
            kind=ItemKind.from_value(payload.get("type")),
            topic_text=str(payload.get("topic", "")),
            difficulty_label=str(payload.get("difficulty", "")),
            created_at=str(payload.get("created_at", "")),
            tags=tuple(str(tag) for tag in payload.get("tags") or ()),
            options=(
                tuple(str(option) for option in options)
                if isinstance(options, list)
                else None
            ),
            diagnosis=parse_diagnosis(payload.get("diagnosis")),
            diagnosed_at=payload.get("diagnosed_at"),
        )


def mistake_questions(mistakes: Sequence[Mistake]) -> list[str]:
    """Question texts of ``mistakes`` without duplicates, in order."""

    seen: set[str] = set()
    questions: list[str] = []
    for mistake in mistakes:
        key = normalize_question_text(mistake.question_text)
        if key in seen:
            continue
        seen.add(key)
        questions.append(mistake.question_text)
    return questions


@dataclass(frozen=True)
class SolutionStep:
    number: int
    explanation: str
    is_error: bool = False
    error_description: Optional[str] = None

    def to_dict(self) -> MutableMapping[str, Any]:
        payload: MutableMapping[str, Any] = {
            "step": self.number,
            "explanation": self.explanation,
        }
        if self.is_error:
            payload["is_error"] = True
            payload["error_description"] = self.error_description or ""
        return payload


@dataclass(frozen=True)
class ErrorPathway:
    """One plausible line of reasoning that ends at a wrong option."""

    description: str
    steps: tuple[SolutionStep, ...]

    @property
    def error_step(self) -> Optional[SolutionStep]:
        return next((step for step in self.steps if step.is_error), None)


@dataclass(frozen=True)
class WrongOptionAnalysis:
    wrong_answer: str
    error_type: str
    pathways: tuple[ErrorPathway, ...]


@dataclass(frozen=True)
class QuizAnalysis:
    """Worked solution for a multiple-choice item plus, for every wrong
    option, the pathways a learner might take to reach it."""

    correct_answer: str
    solution_steps: tuple[SolutionStep, ...]
    wrong_options: tuple[WrongOptionAnalysis, ...]

    def to_dict(self) -> MutableMapping[str, Any]:
        return {
            "correct_solution": {
                "answer": self.correct_answer,
                "steps": [step.to_dict() for step in self.solution_steps],
            },
            "counterfactual_analyses": [
                {
                    "wrong_answer": entry.wrong_answer,
                    "error_type": entry.error_type,
                    "possible_pathways": [
                        {
                            "pathway_description": pathway.description,
                            "steps": [
                                step.to_dict() for step in pathway.steps
                            ],
                        }
                        for pathway in entry.pathways
                    ],
                }
                for entry in self.wrong_options
            ],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "QuizAnalysis":
        """Build an analysis from decoded model output.

        Keys are accepted in snake_case or camelCase. Raises ``ValueError``
        when the correct solution is missing or a pathway has no error step.
        """

        solution = _field(payload, "correct_solution")
        if not isinstance(solution, Mapping):
            raise ValueError("analysis requires a correct_solution object")
        answer = str(solution.get("answer") or "").strip()
        if not answer:
            raise ValueError("correct_solution.answer must be non-empty")
        steps = _parse_steps(solution.get("steps"), where="correct_solution")

        raw_entries = _field(payload, "counterfactual_analyses") or []
        if not isinstance(raw_entries, list):
            raise ValueError("counterfactual_analyses must be a list")
        wrong_options = []
        for index, entry in enumerate(raw_entries):
            if not isinstance(entry, Mapping):
                raise ValueError(f"counterfactual {index} must be an object")
            wrong = str(_field(entry, "wrong_answer") or "").strip()
            if not wrong:
                raise ValueError(f"counterfactual {index} has no wrong_answer")
            raw_pathways = _field(entry, "possible_pathways") or []
            if not isinstance(raw_pathways, list):
                raise ValueError(
                    f"counterfactual {index} possible_pathways must be a list"
                )
            pathways = []
            for position, raw in enumerate(raw_pathways):
                if not isinstance(raw, Mapping):
                    continue
                where = f"counterfactual {index} pathway {position}"
                pathway = ErrorPathway(
                    description=str(
                        _field(raw, "pathway_description") or ""
                    ).strip(),
                    steps=_parse_steps(raw.get("steps"), where=where),
                )
                if pathway.error_step is None:
                    raise ValueError(f"{where} marks no error step")
                pathways.append(pathway)
            wrong_options.append(
                WrongOptionAnalysis(
                    wrong_answer=wrong,
                    error_type=str(_field(entry, "error_type") or "").strip()
                    or "Unclassified",
                    pathways=tuple(pathways),
                )
            )
        return cls(
            correct_answer=answer,
            solution_steps=steps,
            wrong_options=tuple(wrong_options),
        )


def _field(payload: Mapping[str, Any], name: str) -> Any:
    if name in payload:
        return payload[name]
    head, *rest = name.split("_")
    return payload.get(head + "".join(part.title() for part in rest))


def _parse_steps(raw: Any, *, where: str) -> tuple[SolutionStep, ...]:
    if not isinstance(raw, list) or not raw:
        raise ValueError(f"{where} requires a non-empty steps list")
    steps = []
    for position, entry in enumerate(raw, start=1):
        if not isinstance(entry, Mapping):
            raise ValueError(f"{where} step {position} must be an object")
        number = entry.get("step")
        is_error = _field(entry, "is_error") is True
        description = _field(entry, "error_description")
        steps.append(
            SolutionStep(
                number=(
                    number
                    if isinstance(number, int) and not isinstance(number, bool)
                    else position
                ),
                explanation=str(entry.get("explanation") or "").strip(),
                is_error=is_error,
                error_description=str(description).strip()
                if is_error and description
                else None,
            )
        )
    return tuple(steps)
