from __future__ import annotations

import json
import logging
from pathlib import Path

from quiz_coach.core import logging as core_logging


def _flush(logger: logging.Logger) -> None:
    for handler in logger.handlers:
        handler.flush()


def test_configure_logger_writes_json_lines(tmp_path):
    logger, log_path = core_logging.configure_logger(
        name="quiz_coach_test.json",
        log_dir=tmp_path / "logs",
        filename="test.log",
    )

    logger.info("attempt merged", extra={"attempt": 2, "accepted": 3})
    try:
        raise ValueError("boom")
    except ValueError:
        logger.exception(
            "with error",
            extra={"paths": [Path("a"), 1], "mapping": {"k": object()}},
        )
    _flush(logger)

    lines = log_path.read_text(encoding="utf-8").strip().splitlines()
    first = json.loads(lines[0])
    assert first["message"] == "attempt merged"
    assert first["level"] == "INFO"
    assert first["logger"] == "quiz_coach_test.json"
    assert first["extra"] == {"attempt": 2, "accepted": 3}

    last = json.loads(lines[-1])
    assert "ValueError: boom" in last["exception"]
    assert last["extra"]["paths"] == ["a", 1]
    assert last["extra"]["mapping"]["k"].startswith("<object")


def test_configure_logger_is_idempotent(tmp_path):
    name = "quiz_coach_test.idempotent"
    first, path_one = core_logging.configure_logger(
        name=name, log_dir=tmp_path, verbose=True
    )
    second, path_two = core_logging.configure_logger(
        name=name, log_dir=tmp_path / "other", verbose=True
    )

    assert first is second
    assert path_one == path_two
    assert len(second.handlers) == 2


def test_verbose_toggle_removes_console_handler(tmp_path):
    name = "quiz_coach_test.toggle"
    logger, _ = core_logging.configure_logger(
        name=name, log_dir=tmp_path, verbose=True
    )
    assert any(
        isinstance(handler, logging.StreamHandler)
        and not hasattr(handler, "baseFilename")
        for handler in logger.handlers
    )

    core_logging.configure_logger(name=name, log_dir=tmp_path, verbose=False)

    assert all(hasattr(handler, "baseFilename") for handler in logger.handlers)


def test_file_level_follows_config(tmp_path):
    logger, log_path = core_logging.configure_logger(
        name="quiz_coach_test.level", log_dir=tmp_path, level="warning"
    )

    logger.info("hidden")
    logger.warning("shown")
    _flush(logger)

    messages = [
        json.loads(line)["message"]
        for line in log_path.read_text(encoding="utf-8").splitlines()
    ]
    assert messages == ["shown"]


def test_get_logger_is_namespaced():
    logger = core_logging.get_logger("accumulator")

    assert logger.name == "quiz_coach.accumulator"
    assert logger.parent is logging.getLogger("quiz_coach")
