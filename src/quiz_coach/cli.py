"""Command-line entry point for quiz-coach."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import dataclass, replace
from importlib import metadata
from pathlib import Path
from typing import Callable, Optional, Sequence

from rich.console import Console

from .core import ai as ai_mod
from .core import config as config_mod
from .core import logging as logging_mod
from .core import workspace as workspace_mod
from .errors import ConfigurationError, GenerationError, PersistenceError
from .quizzer import completion as completion_mod
from .quizzer.accumulator import AccumulatingGenerator
from .quizzer.analysis import analyze_question
from .quizzer.diagnosis import DiagnosisDispatcher, LocalDiagnosisBackend
from .quizzer.flow import FlowState, QuizFlowController
from .quizzer.generation import GenerationClient
from .quizzer.models import (
    GenerationRequest,
    ItemKind,
    Mistake,
    PracticeSession,
    mistake_questions,
)
from .quizzer.recorder import SessionRecorder
from .quizzer.session import (
    render_analysis,
    render_diagnosis,
    render_mistake_table,
    render_results_diagnoses,
    render_session_table,
    render_summary,
    run_quiz_session,
)
from .quizzer.store import (
    DocumentStore,
    mistakes_collection,
    sessions_collection,
)
from .quizzer.sync import DiagnosisSync, wait_for_diagnosis

InputProvider = Callable[[], str]

STORE_FILENAME = "quiz_coach.json"


@dataclass(frozen=True)
class Runtime:
    """Resolved workspace, configuration and logger for one invocation."""

    layout: workspace_mod.WorkspaceLayout
    config: config_mod.QuizCoachConfig
    logger: logging.Logger
    console: Console

    @property
    def owner_id(self) -> str:
        return self.config.storage.owner_id

    @property
    def store_path(self) -> Path:
        configured = self.config.storage.store_file
        if configured is not None:
            return configured
        return self.layout.path_for("store") / STORE_FILENAME


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quiz-coach",
        description=(
            "Generate practice quizzes with a language model, record your "
            "mistakes and get a ranked diagnosis of each one."
        ),
    )
    parser.add_argument(
        "-V", "--version", action="store_true", help="Print the version."
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to quiz_coach.toml (defaults to QUIZ_COACH_CONFIG or "
        "the workspace config).",
    )
    parser.add_argument(
        "--workspace",
        type=Path,
        help="Override the data home (defaults to QUIZ_COACH_DATA_HOME or "
        "~/.quiz-coach-data).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Also log to stderr.",
    )
    sub = parser.add_subparsers(dest="command")

    sp_init = sub.add_parser("init", help="Create workspace and config.")
    sp_init.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file.",
    )

    sub.add_parser("check-key", help="Verify the configured API key works.")

    sp_start = sub.add_parser("start", help="Generate and take a quiz.")
    sp_start.add_argument("topic", help="Topic the quiz should cover.")
    sp_start.add_argument("-n", "--count", type=int)
    sp_start.add_argument("--audience")
    sp_start.add_argument("--difficulty")
    sp_start.add_argument(
        "--kinds",
        nargs="+",
        choices=[kind.value for kind in ItemKind],
        help="Question kinds to allow.",
    )
    sp_start.add_argument("--model", help="Override the generation model.")
    seed = sp_start.add_mutually_exclusive_group()
    seed.add_argument("--context", help="Free-text source material.")
    seed.add_argument(
        "--context-file", type=Path, help="Read source material from a file."
    )
    seed.add_argument(
        "--from-mistakes",
        action="store_true",
        help="Seed the quiz with questions you previously missed.",
    )
    sp_start.add_argument(
        "--wait",
        type=float,
        help="Seconds to wait for diagnoses after the quiz.",
    )

    sp_mistakes = sub.add_parser("mistakes", help="Browse recorded mistakes.")
    m_sub = sp_mistakes.add_subparsers(dest="action", required=True)
    sp_m_list = m_sub.add_parser("list", help="List mistakes.")
    sp_m_list.add_argument(
        "--sort", choices=["date", "subject"], default="date"
    )
    sp_m_list.add_argument("--session", help="Only this session's mistakes.")
    sp_m_show = m_sub.add_parser("show", help="Show one mistake.")
    sp_m_show.add_argument("mistake_id")
    sp_m_show.add_argument(
        "--all", action="store_true", help="Show every ranked reason."
    )
    sp_m_analyze = m_sub.add_parser(
        "analyze", help="Explain a multiple-choice mistake step by step."
    )
    sp_m_analyze.add_argument("mistake_id")
    sp_m_analyze.add_argument("--model", help="Override the model.")
    sp_m_retry = m_sub.add_parser("retry", help="Diagnose a mistake again.")
    sp_m_retry.add_argument("mistake_id")
    sp_m_retry.add_argument(
        "--wait",
        type=float,
        help="Seconds to wait for the new diagnosis.",
    )

    sp_sessions = sub.add_parser("sessions", help="Browse practice sessions.")
    s_sub = sp_sessions.add_subparsers(dest="action", required=True)
    s_sub.add_parser("list", help="List practice sessions.")
    return parser


def _print_error(console: Console, message: str) -> None:
    console.print(f"[bold red]Error:[/] {message}")


def _handle_version(console: Console) -> int:
    try:
        version = metadata.version("quiz-coach")
    except metadata.PackageNotFoundError:
        version = "unknown"
    console.print(version)
    return 0


def _handle_init(args: argparse.Namespace, console: Console) -> int:
    try:
        layout = workspace_mod.ensure_workspace(path=args.workspace)
        target = config_mod.resolve_config_path(
            explicit_path=args.config, layout=layout
        )
        config_mod.write_template(target, overwrite=args.force)
    except (config_mod.ConfigError, workspace_mod.WorkspaceError) as exc:
        _print_error(console, str(exc))
        return 2
    console.print(f"Workspace ready at {layout.home}")
    console.print(f"Wrote config template to {target}")
    return 0


def _bootstrap(args: argparse.Namespace, console: Console) -> Runtime:
    layout = workspace_mod.ensure_workspace(path=args.workspace)
    cfg = config_mod.load_config(explicit_path=args.config, layout=layout)
    logger, _ = logging_mod.configure_logger(
        log_dir=layout.path_for("logs"),
        level=cfg.logging.level,
        verbose=args.verbose or cfg.logging.verbose,
    )
    return Runtime(layout=layout, config=cfg, logger=logger, console=console)


def _api_key(runtime: Runtime) -> str:
    provider = runtime.config.provider
    return ai_mod.load_api_key(provider.name, env_var=provider.api_key_env)


def _open_store(runtime: Runtime) -> DocumentStore:
    return DocumentStore(
        runtime.store_path, logger=logging_mod.get_logger("store")
    )


def _build_dispatcher(
    runtime: Runtime, store: DocumentStore
) -> DiagnosisDispatcher:
    diagnosis = runtime.config.diagnosis
    service = completion_mod.build_completion_service(
        replace(runtime.config.provider, temperature=diagnosis.temperature)
    )
    backend = LocalDiagnosisBackend(
        service,
        store,
        model_id=diagnosis.model,
        max_reasons=diagnosis.max_reasons,
    )
    return DiagnosisDispatcher(
        backend, store, tag_service=service, tag_model=diagnosis.tag_model
    )


def _handle_check_key(runtime: Runtime) -> int:
    api_key = _api_key(runtime)
    provider = runtime.config.provider
    service = completion_mod.build_completion_service(provider)
    ok = asyncio.run(
        completion_mod.validate_key(service, api_key, provider.model)
    )
    if ok:
        runtime.console.print(
            f"[green]API key for {provider.name} is valid.[/]"
        )
        return 0
    _print_error(runtime.console, f"API key for {provider.name} was rejected.")
    return 1


async def _load_mistakes(
    store: DocumentStore, owner_id: str
) -> list[Mistake]:
    docs = await store.query(mistakes_collection(owner_id))
    return [Mistake.from_dict(doc_id, doc) for doc_id, doc in docs]


async def _seed_context(
    args: argparse.Namespace, store: DocumentStore, owner_id: str
) -> Optional[str]:
    if args.from_mistakes:
        mistakes = await _load_mistakes(store, owner_id)
        questions = mistake_questions(
            sorted(mistakes, key=lambda item: item.created_at, reverse=True)
        )
        if not questions:
            raise ConfigurationError("No recorded mistakes to practise yet.")
        return json.dumps(questions)
    if args.context_file is not None:
        try:
            return args.context_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(
                f"Could not read {args.context_file}: {exc}"
            ) from exc
    return args.context


def _build_request(
    args: argparse.Namespace, runtime: Runtime, seed: Optional[str]
) -> GenerationRequest:
    generation = runtime.config.generation
    kinds = args.kinds or list(generation.item_kinds)
    return GenerationRequest(
        topic_text=args.topic,
        desired_count=(
            args.count if args.count is not None else generation.default_count
        ),
        audience_label=args.audience or generation.audience,
        item_kinds=tuple(ItemKind.from_value(kind) for kind in kinds),
        difficulty_label=args.difficulty or generation.difficulty,
        model_id=args.model or runtime.config.provider.model,
        seed_context=seed,
    )


async def _run_start(
    args: argparse.Namespace,
    runtime: Runtime,
    api_key: str,
    input_provider: InputProvider,
) -> int:
    console = runtime.console
    cfg = runtime.config
    store = _open_store(runtime)
    seed = await _seed_context(args, store, runtime.owner_id)
    request = _build_request(args, runtime, seed)

    service = completion_mod.build_completion_service(cfg.provider)
    generator = AccumulatingGenerator(
        GenerationClient(service),
        max_attempts=cfg.generation.max_attempts,
        attempt_timeout=cfg.generation.attempt_timeout,
    )
    controller = QuizFlowController(
        generator,
        SessionRecorder(store),
        _build_dispatcher(runtime, store),
        DiagnosisSync(store, owner_id=runtime.owner_id),
        owner_id=runtime.owner_id,
    )
    try:
        with console.status(
            f"Generating {request.desired_count} question(s)..."
        ):
            generated = await controller.generate(request, api_key=api_key)
        if controller.state is FlowState.GENERATION_FAILED:
            _print_error(console, generated.reason)
            return 1

        answered = await asyncio.to_thread(
            run_quiz_session, generated.items, console, input_provider
        )
        if answered.exit_action != "submitted":
            console.print("Quiz not submitted; nothing was recorded.")
            return 0

        outcome = await controller.finish(
            request, generated.items, answered.answers, api_key=api_key
        )
        render_summary(console, outcome.session, saved=outcome.saved)
        if not outcome.saved:
            _print_error(console, f"Could not save quiz: {outcome.message}")
            return 1
        if not outcome.mistakes:
            return 0

        shown: set[str] = {""}

        def show_landed(results) -> None:
            pending = {
                result.mistake_id
                for result in results
                if result.diagnosis is None and result.mistake_id
            }
            shown.update(
                render_results_diagnoses(
                    console, results, exclude=shown | pending
                )
            )

        wait = (
            args.wait if args.wait is not None else cfg.diagnosis.wait_seconds
        )
        stop_showing = controller.sync.add_listener(show_landed)
        try:
            with console.status("Diagnosing your mistakes..."):
                settled = await controller.sync.wait_until_settled(wait)
        finally:
            stop_showing()
        render_results_diagnoses(
            console, controller.sync.results, exclude=shown
        )
        if not settled:
            console.print(
                "[dim]Some diagnoses are still pending. Use "
                "'quiz-coach mistakes retry <id>' to run them again.[/]"
            )
        return 0
    finally:
        await controller.close()


def _handle_start(
    args: argparse.Namespace,
    runtime: Runtime,
    input_provider: Optional[InputProvider],
) -> int:
    if args.count is not None and args.count < 1:
        _print_error(runtime.console, "--count must be at least 1.")
        return 2
    api_key = _api_key(runtime)
    provider = input_provider or (lambda: runtime.console.input("> "))
    return asyncio.run(_run_start(args, runtime, api_key, provider))


def _sort_mistakes(mistakes: list[Mistake], order: str) -> list[Mistake]:
    by_date = sorted(mistakes, key=lambda item: item.created_at, reverse=True)
    if order == "subject":
        return sorted(
            by_date,
            key=lambda item: (item.tags[0] if item.tags else "").casefold(),
        )
    return by_date


def _handle_mistakes_list(args: argparse.Namespace, runtime: Runtime) -> int:
    store = _open_store(runtime)
    mistakes = asyncio.run(_load_mistakes(store, runtime.owner_id))
    if args.session:
        mistakes = [m for m in mistakes if m.session_id == args.session]
    if not mistakes:
        runtime.console.print("No mistakes recorded.")
        return 0
    render_mistake_table(runtime.console, _sort_mistakes(mistakes, args.sort))
    return 0


def _render_mistake(
    console: Console, mistake: Mistake, *, show_all: bool
) -> None:
    console.print(f"[bold]{mistake.question_text}[/]")
    if mistake.options:
        console.print("Options: " + " | ".join(mistake.options))
    console.print(f"Your answer: [red]{mistake.user_answer_text or '-'}[/]")
    console.print(f"Correct answer: [green]{mistake.correct_answer_text}[/]")
    console.print(
        f"[dim]{mistake.topic_text} | {', '.join(mistake.tags)} | "
        f"{mistake.created_at[:19]}[/]"
    )
    render_diagnosis(
        console,
        mistake.diagnosis,
        title="Diagnosis",
        show_all=show_all,
        retry_hint=f"Retry with: quiz-coach mistakes retry {mistake.id}",
    )


def _handle_mistakes_show(args: argparse.Namespace, runtime: Runtime) -> int:
    store = _open_store(runtime)
    doc = asyncio.run(
        store.get(mistakes_collection(runtime.owner_id), args.mistake_id)
    )
    if doc is None:
        _print_error(runtime.console, f"No mistake '{args.mistake_id}'.")
        return 1
    _render_mistake(
        runtime.console,
        Mistake.from_dict(args.mistake_id, doc),
        show_all=args.all,
    )
    return 0


async def _run_retry(
    args: argparse.Namespace, runtime: Runtime, api_key: str
) -> Optional[Mistake]:
    store = _open_store(runtime)
    dispatcher = _build_dispatcher(runtime, store)
    wait = (
        args.wait
        if args.wait is not None
        else runtime.config.diagnosis.wait_seconds
    )
    try:
        await dispatcher.retry_diagnosis(
            args.mistake_id, owner_id=runtime.owner_id, api_key=api_key
        )
        return await wait_for_diagnosis(
            store,
            owner_id=runtime.owner_id,
            mistake_id=args.mistake_id,
            timeout=wait,
        )
    finally:
        await dispatcher.aclose()


def _handle_mistakes_retry(args: argparse.Namespace, runtime: Runtime) -> int:
    api_key = _api_key(runtime)
    console = runtime.console
    try:
        with console.status("Diagnosing..."):
            mistake = asyncio.run(_run_retry(args, runtime, api_key))
    except PersistenceError as exc:
        _print_error(console, str(exc))
        return 1
    if mistake is None:
        console.print("Diagnosis is still pending.")
        return 1
    _render_mistake(console, mistake, show_all=False)
    return 0


def _handle_mistakes_analyze(
    args: argparse.Namespace, runtime: Runtime
) -> int:
    console = runtime.console
    store = _open_store(runtime)
    doc = asyncio.run(
        store.get(mistakes_collection(runtime.owner_id), args.mistake_id)
    )
    if doc is None:
        _print_error(console, f"No mistake '{args.mistake_id}'.")
        return 1
    mistake = Mistake.from_dict(args.mistake_id, doc)
    if mistake.kind is not ItemKind.MULTIPLE_CHOICE or not mistake.options:
        _print_error(
            console,
            "Analysis is only available for multiple-choice questions.",
        )
        return 1
    api_key = _api_key(runtime)
    provider = runtime.config.provider
    service = completion_mod.build_completion_service(provider)
    console.print(f"[bold]{mistake.question_text}[/]")
    try:
        with console.status("Analyzing..."):
            analysis = asyncio.run(
                analyze_question(
                    service,
                    api_key,
                    args.model or provider.model,
                    mistake.to_item(),
                )
            )
    except GenerationError as exc:
        runtime.logger.warning(
            "Analysis failed",
            extra={"mistake_id": mistake.id, "error": str(exc)},
        )
        _print_error(console, str(exc))
        return 1
    render_analysis(console, analysis)
    return 0


def _handle_sessions_list(runtime: Runtime) -> int:
    store = _open_store(runtime)
    docs = asyncio.run(store.query(sessions_collection(runtime.owner_id)))
    sessions = sorted(
        (PracticeSession.from_dict(doc_id, doc) for doc_id, doc in docs),
        key=lambda item: item.created_at,
        reverse=True,
    )
    if not sessions:
        runtime.console.print("No practice sessions recorded.")
        return 0
    render_session_table(runtime.console, sessions)
    return 0


def _dispatch(
    args: argparse.Namespace,
    runtime: Runtime,
    input_provider: Optional[InputProvider],
) -> int:
    if args.command == "check-key":
        return _handle_check_key(runtime)
    if args.command == "start":
        return _handle_start(args, runtime, input_provider)
    if args.command == "mistakes" and args.action == "list":
        return _handle_mistakes_list(args, runtime)
    if args.command == "mistakes" and args.action == "show":
        return _handle_mistakes_show(args, runtime)
    if args.command == "mistakes" and args.action == "retry":
        return _handle_mistakes_retry(args, runtime)
    if args.command == "mistakes" and args.action == "analyze":
        return _handle_mistakes_analyze(args, runtime)
    if args.command == "sessions":
        return _handle_sessions_list(runtime)
    raise RuntimeError(f"Unhandled command: {args.command}")


def main(
    argv: Sequence[str] | None = None,
    *,
    console: Optional[Console] = None,
    input_provider: Optional[InputProvider] = None,
) -> int:
    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        return int(exc.code or 0)
    console = console or Console()

    if args.version:
        return _handle_version(console)
    if args.command is None:
        parser.print_help()
        return 2
    if args.command == "init":
        return _handle_init(args, console)

    try:
        runtime = _bootstrap(args, console)
    except (config_mod.ConfigError, workspace_mod.WorkspaceError) as exc:
        _print_error(console, str(exc))
        return 2

    try:
        return _dispatch(args, runtime, input_provider)
    except ConfigurationError as exc:
        _print_error(console, str(exc))
        return 2
    except PersistenceError as exc:
        runtime.logger.error("Store failure", extra={"error": str(exc)})
        _print_error(console, str(exc))
        return 1
    except ValueError as exc:
        _print_error(console, str(exc))
        return 2


if __name__ == "__main__":  # pragma: no cover - module CLI guard
    raise SystemExit(main())
