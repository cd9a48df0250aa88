"""Rich-powered answer loop and result rendering.

The loop is synchronous and driven by an ``input_provider`` callable so the
CLI can feed it ``console.input`` and tests can feed it a scripted iterator.
It returns the raw answers only; scoring happens in the recorder.
"""

from __future__ import annotations

from collections.abc import Collection, Sequence
from dataclasses import dataclass, field
from typing import Callable, Literal, Optional

from rich import box
from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .models import (
    Diagnosis,
    DiagnosisError,
    DiagnosisState,
    ItemKind,
    Mistake,
    PracticeSession,
    QuestionResult,
    QuizAnalysis,
    QuizItem,
    Reason,
    SolutionStep,
)

__all__ = [
    "TOP_REASONS",
    "AnswerSheet",
    "QuizSessionResult",
    "SessionCommand",
    "choice_key",
    "matching_bank",
    "parse_session_command",
    "render_analysis",
    "render_diagnosis",
    "render_mistake_table",
    "render_results_diagnoses",
    "render_session_table",
    "render_summary",
    "resolve_answer",
    "run_quiz_session",
]

InputProvider = Callable[[], str]
ExitAction = Literal["submitted", "quit", "empty"]

TOP_REASONS = 3


@dataclass(frozen=True)
class SessionCommand:
    """Normalized user command parsed from console input."""

    type: Literal["next", "prev", "submit", "quit", "answer"]
    value: Optional[str] = None


@dataclass
class AnswerSheet:
    """Mutable answer state shared by the Rich loop."""

    items: list[QuizItem]
    index: int = 0
    answers: dict[int, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def current(self) -> QuizItem:
        return self.items[self.index]

    def answered_count(self) -> int:
        return len(self.answers)

    def record(self, raw: str) -> Optional[str]:
        """Store ``raw`` for the current item; ``None`` when it is invalid."""

        answer = resolve_answer(self.current, raw)
        if answer is not None:
            self.answers[self.index] = answer
        return answer

    def next(self) -> None:
        if self.index + 1 < self.total:
            self.index += 1

    def previous(self) -> None:
        if self.index > 0:
            self.index -= 1

    def aligned_answers(self) -> tuple[Optional[str], ...]:
        return tuple(self.answers.get(index) for index in range(self.total))


@dataclass(frozen=True)
class QuizSessionResult:
    """Return value from :func:`run_quiz_session`."""

    answers: tuple[Optional[str], ...]
    exit_action: ExitAction

    @property
    def answered(self) -> int:
        return sum(1 for answer in self.answers if answer is not None)


def choice_key(index: int) -> str:
    return chr(ord("A") + index)


def matching_bank(item: QuizItem) -> list[str]:
    """Distinct match texts in a stable order unrelated to the answer."""

    return sorted({pair.match for pair in item.pairs or ()}, key=str.casefold)


def resolve_answer(item: QuizItem, raw: str) -> Optional[str]:
    """Translate console input into the answer text compared when scoring."""

    text = raw.strip()
    if not text:
        return None
    if item.kind is ItemKind.MULTIPLE_CHOICE:
        options = item.options or ()
        key = text.upper()
        if len(key) == 1 and key.isalpha():
            position = ord(key) - ord("A")
            if 0 <= position < len(options):
                return options[position]
            return None
        for option in options:
            if option.casefold() == text.casefold():
                return option
        return None
    if item.kind is ItemKind.TRUE_FALSE:
        lowered = text.lower()
        if lowered in {"t", "true", "y", "yes"}:
            return "true"
        if lowered in {"f", "false", "no"}:
            return "false"
        return None
    if item.kind is ItemKind.MATCHING_PAIRS:
        bank = matching_bank(item)
        keys = [part.strip().upper() for part in text.split(",")]
        if len(keys) != len(item.pairs or ()):
            return None
        picked = []
        for key in keys:
            position = ord(key) - ord("A") if len(key) == 1 else -1
            if not 0 <= position < len(bank):
                return None
            picked.append(bank[position])
        return ", ".join(picked)
    return text


def parse_session_command(
    raw: Optional[str], *, free_text: bool = False
) -> Optional[SessionCommand]:
    """Parse raw user input into a structured command.

    Navigation words always win; anything else is an answer.
    """

    if raw is None:
        return None
    text = raw.strip()
    if not text:
        return None
    lowered = text.lower()
    if lowered in {"n", "next"}:
        return SessionCommand("next")
    if lowered in {"p", "prev", "previous"}:
        return SessionCommand("prev")
    if lowered in {"submit", "s"}:
        return SessionCommand("submit")
    if lowered in {"quit", "q", "exit"}:
        return SessionCommand("quit")
    if free_text or text[0].isalnum():
        return SessionCommand("answer", text)
    return None


def run_quiz_session(
    items: Sequence[QuizItem],
    console: Console,
    input_provider: InputProvider,
) -> QuizSessionResult:
    """Collect one answer per item until the learner submits or quits."""

    sheet = AnswerSheet(list(items))
    if not sheet.items:
        console.print(
            Panel(
                "No questions to answer.",
                title="Quiz Session",
                border_style="yellow",
            )
        )
        return QuizSessionResult((), "empty")

    exit_action: ExitAction = "quit"
    while True:
        _render_item(console, sheet)
        try:
            raw = input_provider()
        except (EOFError, KeyboardInterrupt, StopIteration):
            console.print("\n[bold yellow]Session interrupted.[/]")
            break
        free_text = sheet.current.kind in {
            ItemKind.CASE_BASED,
            ItemKind.DECISION_TREE,
        }
        command = parse_session_command(raw, free_text=free_text)
        if command is None:
            console.print("[red]Unrecognized command. Try again.[/]")
            continue
        outcome = _apply_command(command, sheet, console)
        if outcome:
            exit_action = outcome
            break

    return QuizSessionResult(sheet.aligned_answers(), exit_action)


def _apply_command(
    command: SessionCommand, sheet: AnswerSheet, console: Console
) -> Optional[ExitAction]:
    if command.type == "answer" and command.value is not None:
        answer = sheet.record(command.value)
        if answer is None:
            console.print(
                f"[red]'{command.value}' is not a valid answer here.[/red]"
            )
            return None
        console.print(f"Answered [bold]{answer}[/].")
        if sheet.index + 1 < sheet.total:
            sheet.next()
        return None
    if command.type == "next":
        sheet.next()
        return None
    if command.type == "prev":
        sheet.previous()
        return None
    if command.type == "quit":
        console.print("\n[bold yellow]Ending session without submission.[/]")
        return "quit"
    if command.type == "submit":
        return "submitted"
    return None


def _render_item(console: Console, sheet: AnswerSheet) -> None:
    item = sheet.current
    header = Text.assemble(
        (f"Question {sheet.index + 1}", "bold cyan"),
        (f" / {sheet.total}", "dim"),
        (f"  {item.kind.value.replace('_', ' ')}", "dim italic"),
    )
    console.print()
    console.rule(header)
    if item.prompt:
        console.print(Panel(item.prompt, title="Case", border_style="blue"))
    console.print(Text(item.question_text, style="bold"))

    selected = sheet.answers.get(sheet.index)
    if item.kind is ItemKind.MULTIPLE_CHOICE:
        table = Table(show_header=False, box=box.SIMPLE, expand=True)
        table.add_column("Key", justify="center", style="cyan")
        table.add_column("Choice")
        for index, option in enumerate(item.options or ()):
            row = Text(option)
            if option == selected:
                row.stylize("bold green")
            table.add_row(choice_key(index), row)
        console.print(table)
        hint = "a letter"
    elif item.kind is ItemKind.TRUE_FALSE:
        hint = "t or f"
    elif item.kind is ItemKind.MATCHING_PAIRS:
        table = Table(box=box.SIMPLE, expand=True)
        table.add_column("#", justify="right")
        table.add_column("Prompt")
        table.add_column("Key", justify="center", style="cyan")
        table.add_column("Match")
        bank = matching_bank(item)
        prompts = [pair.prompt for pair in item.pairs or ()]
        for row in range(max(len(prompts), len(bank))):
            table.add_row(
                str(row + 1) if row < len(prompts) else "",
                prompts[row] if row < len(prompts) else "",
                choice_key(row) if row < len(bank) else "",
                bank[row] if row < len(bank) else "",
            )
        console.print(table)
        hint = "match keys in prompt order, comma separated"
    else:
        hint = "your answer"
    if selected is not None:
        console.print(Text(f"Current answer: {selected}", style="green"))
    console.print(
        Text(
            f"Answered {sheet.answered_count()}/{sheet.total} | "
            f"Enter {hint}; n (next), p (prev), submit, quit",
            style="dim",
        )
    )


def render_summary(
    console: Console,
    session: PracticeSession,
    *,
    saved: bool = True,
) -> None:
    console.print()
    console.rule(Text("Quiz Summary", style="bold magenta"))

    overview = Table(show_header=False, box=box.MINIMAL_DOUBLE_HEAD)
    overview.add_column("Metric", style="bold")
    overview.add_column("Value", justify="right")
    overview.add_row("Topic", session.topic_text)
    overview.add_row("Total questions", str(session.total_questions))
    overview.add_row("Correct", str(session.score))
    overview.add_row("Score", f"{session.percentage:.1f}%")
    console.print(overview)
    if not saved:
        console.print(
            Panel(
                "This quiz could not be saved. Your score is shown above.",
                border_style="red",
            )
        )

    responses = Table(title="Responses", box=box.SIMPLE, expand=True)
    responses.add_column("#", justify="right")
    responses.add_column("Question", overflow="fold")
    responses.add_column("Your answer", overflow="fold")
    responses.add_column("Correct answer", overflow="fold")
    responses.add_column("Result", justify="center")
    for index, result in enumerate(session.per_question_results, start=1):
        responses.add_row(
            str(index),
            result.question_text,
            result.user_answer or "-",
            result.correct_answer,
            "[green]correct[/]" if result.is_correct else "[red]wrong[/]",
        )
    console.print(responses)


def _reason_panel(reason: Reason, position: int) -> Panel:
    body = [Text(reason.explanation)]
    if reason.corrective_steps:
        body.append(Text("What to do", style="bold"))
        body.extend(Text(f"  - {step}") for step in reason.corrective_steps)
    if reason.flashcard.front or reason.flashcard.back:
        body.append(
            Text.assemble(
                ("Flashcard: ", "bold"),
                reason.flashcard.front,
                (" / ", "dim"),
                reason.flashcard.back,
            )
        )
    if reason.practice_prompt:
        body.append(
            Text.assemble(("Practice: ", "bold"), reason.practice_prompt)
        )
    return Panel(
        Group(*body),
        title=f"{position}. {reason.title} ({reason.probability * 100:.0f}%)",
        border_style="yellow",
    )


def render_diagnosis(
    console: Console,
    state: DiagnosisState,
    *,
    title: str,
    show_all: bool = False,
    retry_hint: Optional[str] = None,
) -> None:
    """Render one mistake's diagnosis in whatever state it is in."""

    if state is None:
        console.print(
            Panel("Diagnosis pending...", title=title, border_style="dim")
        )
        return
    if isinstance(state, DiagnosisError):
        message = f"Diagnosis failed: {state.message}"
        if retry_hint:
            message += f"\n{retry_hint}"
        console.print(Panel(message, title=title, border_style="red"))
        return
    assert isinstance(state, Diagnosis)
    if not state.reasons:
        console.print(
            Panel(
                state.summary or "No likely reasons were identified.",
                title=title,
                border_style="blue",
            )
        )
        return
    shown = state.reasons if show_all else state.reasons[:TOP_REASONS]
    parts: list = []
    if state.summary:
        parts.append(Text(state.summary, style="italic"))
    parts.extend(
        _reason_panel(reason, position)
        for position, reason in enumerate(shown, start=1)
    )
    hidden = len(state.reasons) - len(shown)
    if hidden:
        parts.append(Text(f"{hidden} more reason(s) hidden.", style="dim"))
    console.print(Panel(Group(*parts), title=title, border_style="magenta"))


def render_results_diagnoses(
    console: Console,
    results: Sequence[QuestionResult],
    *,
    show_all: bool = False,
    exclude: Collection[str] = (),
) -> list[str]:
    """Render a panel per wrong answer; returns the mistake ids rendered."""

    rendered: list[str] = []
    for index, result in enumerate(results, start=1):
        if result.is_correct or (result.mistake_id or "") in exclude:
            continue
        if result.mistake_id:
            rendered.append(result.mistake_id)
        render_diagnosis(
            console,
            result.diagnosis,
            title=f"Why question {index} went wrong",
            show_all=show_all,
            retry_hint=(
                f"Retry with: quiz-coach mistakes retry {result.mistake_id}"
                if result.mistake_id
                else None
            ),
        )
    return rendered


def _diagnosis_status(state: DiagnosisState) -> str:
    if state is None:
        return "[dim]pending[/]"
    if isinstance(state, DiagnosisError):
        return "[red]error[/]"
    return f"[green]{len(state.reasons)} reason(s)[/]"


def render_mistake_table(
    console: Console, mistakes: Sequence[Mistake], *, title: str = "Mistakes"
) -> None:
    table = Table(title=title, box=box.SIMPLE, expand=True)
    table.add_column("Id", style="cyan", no_wrap=True)
    table.add_column("Created")
    table.add_column("Tags")
    table.add_column("Question", overflow="fold")
    table.add_column("Diagnosis")
    for mistake in mistakes:
        table.add_row(
            mistake.id,
            mistake.created_at[:19],
            ", ".join(mistake.tags),
            mistake.question_text,
            _diagnosis_status(mistake.diagnosis),
        )
    console.print(table)


def render_session_table(
    console: Console, sessions: Sequence[PracticeSession]
) -> None:
    table = Table(title="Practice sessions", box=box.SIMPLE, expand=True)
    table.add_column("Id", style="cyan", no_wrap=True)
    table.add_column("Created")
    table.add_column("Topic", overflow="fold")
    table.add_column("Score", justify="right")
    for session in sessions:
        table.add_row(
            session.id,
            session.created_at[:19],
            session.topic_text,
            f"{session.score}/{session.total_questions} "
            f"({session.percentage:.0f}%)",
        )
    console.print(table)


def _step_lines(steps: Sequence[SolutionStep]) -> list[Text]:
    lines = []
    for step in steps:
        if step.is_error:
            lines.append(
                Text.assemble(
                    (f"Step {step.number} [error]: ", "bold red"),
                    step.explanation,
                )
            )
            if step.error_description:
                lines.append(Text(f"    {step.error_description}", "red"))
        else:
            lines.append(
                Text.assemble(
                    (f"Step {step.number}: ", "bold"), step.explanation
                )
            )
    return lines


def render_analysis(console: Console, analysis: QuizAnalysis) -> None:
    """Render the worked solution, then one panel per wrong option."""

    console.print(
        Panel(
            Group(
                Text.assemble(
                    ("Correct answer: ", "bold"), analysis.correct_answer
                ),
                *_step_lines(analysis.solution_steps),
            ),
            title="Correct answer & solution",
            border_style="green",
        )
    )
    for entry in analysis.wrong_options:
        body: list = [
            Text.assemble(("Error type: ", "bold yellow"), entry.error_type)
        ]
        for pathway in entry.pathways:
            if pathway.description:
                body.append(Text(pathway.description, style="italic"))
            body.extend(_step_lines(pathway.steps))
        console.print(
            Panel(
                Group(*body),
                title=f"Incorrect answer: {entry.wrong_answer}",
                border_style="red",
            )
        )
