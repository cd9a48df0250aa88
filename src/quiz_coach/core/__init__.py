"""Core shared helpers for quiz-coach."""

from __future__ import annotations

from .ai import load_api_key, load_client
from .config import (
    ConfigError,
    QuizCoachConfig,
    config_template,
    load_config,
    resolve_config_path,
    write_template,
)
from .logging import JsonLogFormatter, configure_logger, get_logger
from .workspace import (
    WORKSPACE_ENV,
    WorkspaceError,
    WorkspaceLayout,
    ensure_workspace,
)

__all__ = [
    "load_api_key",
    "load_client",
    "ConfigError",
    "QuizCoachConfig",
    "config_template",
    "load_config",
    "resolve_config_path",
    "write_template",
    "JsonLogFormatter",
    "configure_logger",
    "get_logger",
    "WORKSPACE_ENV",
    "WorkspaceError",
    "WorkspaceLayout",
    "ensure_workspace",
]
