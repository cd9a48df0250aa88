"""TOML configuration for quiz-coach.

The file is optional: built-in defaults cover every key and a TOML document
only needs to mention what it overrides. Unknown keys are rejected so typos
surface instead of being silently ignored.
"""

from __future__ import annotations

import copy
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

from . import workspace as workspace_mod

__all__ = [
    "CONFIG_ENV",
    "CONFIG_FILENAME",
    "ConfigError",
    "ProviderConfig",
    "GenerationConfig",
    "DiagnosisConfig",
    "StorageConfig",
    "LoggingConfig",
    "QuizCoachConfig",
    "config_template",
    "default_tree",
    "load_config",
    "resolve_config_path",
    "write_template",
]

CONFIG_ENV = "QUIZ_COACH_CONFIG"
CONFIG_FILENAME = "quiz_coach.toml"

_PROVIDERS = ("openai", "gemini")
_ITEM_KINDS = (
    "multiple_choice",
    "true_false",
    "case_based",
    "matching_pairs",
    "decision_tree",
)
_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(RuntimeError):
    """Raised when configuration parsing or validation fails."""


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    model: str
    temperature: float
    max_output_tokens: int
    api_key_env: str
    api_base: Optional[str] = None


@dataclass(frozen=True)
class GenerationConfig:
    max_attempts: int
    attempt_timeout_seconds: float
    default_count: int
    audience: str
    difficulty: str
    item_kinds: tuple[str, ...]

    @property
    def attempt_timeout(self) -> Optional[float]:
        """Per-attempt timeout, ``None`` when disabled."""

        if self.attempt_timeout_seconds <= 0:
            return None
        return self.attempt_timeout_seconds


@dataclass(frozen=True)
class DiagnosisConfig:
    model: str
    tag_model: str
    temperature: float
    max_reasons: int
    wait_seconds: float


@dataclass(frozen=True)
class StorageConfig:
    owner_id: str
    store_file: Optional[Path]


@dataclass(frozen=True)
class LoggingConfig:
    level: str
    verbose: bool


@dataclass(frozen=True)
class QuizCoachConfig:
    provider: ProviderConfig
    generation: GenerationConfig
    diagnosis: DiagnosisConfig
    storage: StorageConfig
    logging: LoggingConfig
    source: Optional[Path] = None


def resolve_config_path(
    *,
    explicit_path: Optional[Path] = None,
    env: Mapping[str, str] | None = None,
    layout: workspace_mod.WorkspaceLayout | None = None,
) -> Path:
    """Pick the config path: explicit flag, then env override, then workspace."""

    env_map = os.environ if env is None else env
    if explicit_path is not None:
        return explicit_path.expanduser().absolute()
    override = (env_map.get(CONFIG_ENV) or "").strip()
    if override:
        return Path(override).expanduser().absolute()
    if layout is None:
        layout = workspace_mod.ensure_workspace(env=env_map, create=False)
    return layout.path_for("config") / CONFIG_FILENAME


def load_config(
    *,
    explicit_path: Optional[Path] = None,
    env: Mapping[str, str] | None = None,
    layout: workspace_mod.WorkspaceLayout | None = None,
) -> QuizCoachConfig:
    """Load the TOML config, applying defaults and validation.

    A missing file is only an error when the path was given explicitly.
    """

    path = resolve_config_path(
        explicit_path=explicit_path, env=env, layout=layout
    )
    tree = default_tree()
    source: Optional[Path] = None
    if path.is_file():
        _merge_dict(tree, _load_toml(path))
        source = path
    elif explicit_path is not None:
        raise ConfigError(f"Config file not found: {path}")
    return _build_config(tree, source=source)


def default_tree() -> Dict[str, Any]:
    """Return a copy of the default configuration tree."""

    return copy.deepcopy(_DEFAULTS)


def config_template() -> str:
    """Return the TOML template written by ``quiz-coach init``."""

    return _CONFIG_TEMPLATE.strip() + "\n"


def write_template(
    path: Path, *, overwrite: bool = False, mode: int = 0o600
) -> Path:
    """Write the default template to ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists() and not overwrite:
        raise ConfigError(f"Config already exists: {path}")
    path.write_text(config_template(), encoding="utf-8")
    try:
        path.chmod(mode)
    except PermissionError:  # pragma: no cover - depends on filesystem
        pass
    return path


def _load_toml(path: Path) -> Mapping[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse config TOML: {exc}") from exc


def _merge_dict(
    base: MutableMapping[str, Any],
    override: Mapping[str, Any],
    *,
    path: str = "",
) -> None:
    for key, value in override.items():
        dotted = f"{path}{key}"
        if key not in base:
            raise ConfigError(f"Unknown configuration key '{dotted}'.")
        base_value = base[key]
        if isinstance(base_value, MutableMapping):
            if not isinstance(value, Mapping):
                raise ConfigError(
                    "Expected table for '{0}', found {1}.".format(
                        dotted, type(value).__name__
                    )
                )
            _merge_dict(base_value, value, path=f"{dotted}.")
        else:
            base[key] = value


def _require_string(value: Any, *, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"'{field}' must be a non-empty string.")
    return value.strip()


def _optional_string(value: Any, *, field: str) -> Optional[str]:
    if value is None or value == "":
        return None
    return _require_string(value, field=field)


def _require_positive_int(value: Any, *, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"'{field}' must be a positive integer.")
    return value


def _require_number(
    value: Any, *, field: str, min_value: float, max_value: float
) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{field}' must be a number.")
    number = float(value)
    if not (min_value <= number <= max_value):
        raise ConfigError(
            f"'{field}' must be between {min_value} and {max_value}."
        )
    return number


def _require_bool(value: Any, *, field: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"'{field}' must be a boolean.")
    return value


def _build_provider(section: Mapping[str, Any]) -> ProviderConfig:
    name = _require_string(section.get("default"), field="providers.default")
    if name not in _PROVIDERS:
        raise ConfigError(
            "providers.default must be one of: " + ", ".join(_PROVIDERS)
        )
    table = section[name]
    field = f"providers.{name}"
    return ProviderConfig(
        name=name,
        model=_require_string(table.get("model"), field=f"{field}.model"),
        temperature=_require_number(
            table.get("temperature"),
            field=f"{field}.temperature",
            min_value=0.0,
            max_value=2.0,
        ),
        max_output_tokens=_require_positive_int(
            table.get("max_output_tokens"),
            field=f"{field}.max_output_tokens",
        ),
        api_key_env=_require_string(
            table.get("api_key_env"), field=f"{field}.api_key_env"
        ),
        api_base=_optional_string(
            table.get("api_base"), field=f"{field}.api_base"
        ),
    )


def _build_generation(section: Mapping[str, Any]) -> GenerationConfig:
    kinds = section.get("item_kinds")
    if not isinstance(kinds, list) or not all(
        isinstance(kind, str) for kind in kinds
    ):
        raise ConfigError("'generation.item_kinds' must be a list of strings.")
    unknown = sorted(set(kinds) - set(_ITEM_KINDS))
    if unknown:
        raise ConfigError(
            "Unknown item kind(s) in generation.item_kinds: "
            + ", ".join(unknown)
        )
    return GenerationConfig(
        max_attempts=_require_positive_int(
            section.get("max_attempts"), field="generation.max_attempts"
        ),
        attempt_timeout_seconds=_require_number(
            section.get("attempt_timeout_seconds"),
            field="generation.attempt_timeout_seconds",
            min_value=0.0,
            max_value=3600.0,
        ),
        default_count=_require_positive_int(
            section.get("default_count"), field="generation.default_count"
        ),
        audience=_require_string(
            section.get("audience"), field="generation.audience"
        ),
        difficulty=_require_string(
            section.get("difficulty"), field="generation.difficulty"
        ),
        item_kinds=tuple(kinds),
    )


def _build_diagnosis(
    section: Mapping[str, Any], provider: ProviderConfig
) -> DiagnosisConfig:
    """Diagnosis settings; unset models fall back to the provider model."""

    max_reasons = _require_positive_int(
        section.get("max_reasons"), field="diagnosis.max_reasons"
    )
    if max_reasons > 10:
        raise ConfigError("'diagnosis.max_reasons' must be at most 10.")
    return DiagnosisConfig(
        model=_optional_string(section.get("model"), field="diagnosis.model")
        or provider.model,
        tag_model=_optional_string(
            section.get("tag_model"), field="diagnosis.tag_model"
        )
        or provider.model,
        temperature=_require_number(
            section.get("temperature"),
            field="diagnosis.temperature",
            min_value=0.0,
            max_value=2.0,
        ),
        max_reasons=max_reasons,
        wait_seconds=_require_number(
            section.get("wait_seconds"),
            field="diagnosis.wait_seconds",
            min_value=0.0,
            max_value=3600.0,
        ),
    )


def _build_storage(section: Mapping[str, Any]) -> StorageConfig:
    raw_file = _optional_string(
        section.get("store_file"), field="storage.store_file"
    )
    return StorageConfig(
        owner_id=_require_string(
            section.get("owner_id"), field="storage.owner_id"
        ),
        store_file=Path(raw_file).expanduser() if raw_file else None,
    )


def _build_logging(section: Mapping[str, Any]) -> LoggingConfig:
    level = _require_string(
        section.get("level"), field="logging.level"
    ).upper()
    if level not in _LEVELS:
        raise ConfigError("logging.level must be one of " + ", ".join(_LEVELS))
    return LoggingConfig(
        level=level,
        verbose=_require_bool(section.get("verbose"), field="logging.verbose"),
    )


def _build_config(
    tree: Mapping[str, Any], *, source: Optional[Path]
) -> QuizCoachConfig:
    provider = _build_provider(tree["providers"])
    return QuizCoachConfig(
        provider=provider,
        generation=_build_generation(tree["generation"]),
        diagnosis=_build_diagnosis(tree["diagnosis"], provider),
        storage=_build_storage(tree["storage"]),
        logging=_build_logging(tree["logging"]),
        source=source,
    )


_DEFAULTS: Dict[str, Any] = {
    "providers": {
        "default": "openai",
        "openai": {
            "model": "gpt-4o-mini",
            "temperature": 0.7,
            "max_output_tokens": 4000,
            "api_key_env": "OPENAI_API_KEY",
            "api_base": None,
        },
        "gemini": {
            "model": "gemini-2.5-flash-lite",
            "temperature": 0.7,
            "max_output_tokens": 4000,
            "api_key_env": "GEMINI_API_KEY",
            "api_base": None,
        },
    },
    "generation": {
        "max_attempts": 4,
        "attempt_timeout_seconds": 90,
        "default_count": 10,
        "audience": "Student",
        "difficulty": "neutral",
        "item_kinds": ["multiple_choice"],
    },
    "diagnosis": {
        "model": None,
        "tag_model": None,
        "temperature": 0.2,
        "max_reasons": 10,
        "wait_seconds": 60,
    },
    "storage": {
        "owner_id": "local",
        "store_file": None,
    },
    "logging": {
        "level": "INFO",
        "verbose": False,
    },
}


_CONFIG_TEMPLATE = """
# quiz-coach configuration

[providers]
# Which generative service to call: "openai" or "gemini"
default = "openai"

[providers.openai]
model = "gpt-4o-mini"
# Sampling temperature (0.0-2.0)
temperature = 0.7
max_output_tokens = 4000
# Environment variable (or .env entry) holding the API key
api_key_env = "OPENAI_API_KEY"
# api_base = "https://api.openai.com/v1"

[providers.gemini]
model = "gemini-2.5-flash-lite"
temperature = 0.7
max_output_tokens = 4000
api_key_env = "GEMINI_API_KEY"

[generation]
# Model calls allowed to assemble one quiz
max_attempts = 4
# Seconds before a single call counts as a failed attempt (0 disables)
attempt_timeout_seconds = 90
default_count = 10
audience = "Student"
difficulty = "neutral"
# multiple_choice, true_false, case_based, matching_pairs, decision_tree
item_kinds = ["multiple_choice"]

[diagnosis]
# Models used for mistake diagnosis and subject tagging; unset means the
# model of the default provider
# model = "gpt-4o-mini"
# tag_model = "gpt-4o-mini"
# Sampling temperature for diagnosis and tagging (0.0-2.0)
temperature = 0.2
# Upper bound on ranked reasons kept per diagnosis (1-10)
max_reasons = 10
# Seconds the quiz summary waits for diagnoses before returning
wait_seconds = 60

[storage]
owner_id = "local"
# Defaults to <workspace>/store/quiz_coach.json
# store_file = "~/quiz-coach-store.json"

[logging]
level = "INFO"
verbose = false
"""
