"""Merge CLI flags, the optional `<metadata>/config.yaml`, and built-in defaults."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .constants import (
    AGENT_MODEL_FLAG,
    CONFIG_FILE,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_QUIT_ON_ABORT,
    DEFAULT_TIMEOUT_SECONDS,
    ERROR_TYPE_INVALID_CONFIG,
)
from .errors import ConfigurationError
from .io_utils import _load_data_with_error
from .models import ModelProfile
from .project import find_metadata_dir
from .utils import _coerce_bool, _coerce_float, _coerce_int

CONFIG_KEYS = (
    "timeout",
    "idle_timeout",
    "model",
    "init_model",
    "code_model",
    "quit_on_abort",
    "continue_on_timeout",
    "no_clean",
    "agent_command",
    "clean_command",
    "prompts_dir",
    "poll_interval",
)


@dataclass
class RunnerSettings:
    """Fully resolved settings for one run."""

    project_dir: Path
    spec_file: Optional[Path] = None
    max_iterations: Optional[int] = None
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    idle_timeout_seconds: int = DEFAULT_IDLE_TIMEOUT_SECONDS
    model: Optional[str] = None
    init_model: Optional[str] = None
    code_model: Optional[str] = None
    no_clean: bool = False
    quit_on_abort: int = DEFAULT_QUIT_ON_ABORT
    continue_on_timeout: bool = False
    todo_mode: bool = False
    agent_command: str = DEFAULT_AGENT_COMMAND
    clean_command: Optional[str] = None
    prompts_dir: Optional[Path] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    extra: dict[str, Any] = field(default_factory=dict)

    def effective_model(self, profile: ModelProfile) -> Optional[str]:
        override = self.init_model if profile == ModelProfile.INIT else self.code_model
        return override or self.model or None

    def model_args(self, profile: ModelProfile) -> list[str]:
        model = self.effective_model(profile)
        return [AGENT_MODEL_FLAG, model] if model else []


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        project_dir: Target project directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    metadata_dir = find_metadata_dir(project_dir.resolve())
    if metadata_dir is None:
        return {}, None
    return _load_data_with_error(metadata_dir / CONFIG_FILE, {})


def _pick(overrides: dict[str, Any], config: dict[str, Any], key: str) -> Any:
    value = overrides.get(key)
    if value is not None:
        return value
    return config.get(key)


def _invalid(message: str) -> ConfigurationError:
    return ConfigurationError(message, error_type=ERROR_TYPE_INVALID_CONFIG)


def _non_negative_int(name: str, value: Any, default: int) -> int:
    if value is None:
        return default
    parsed = _coerce_int(value)
    if parsed is None or parsed < 0:
        raise _invalid(f"{name} must be a non-negative integer (got {value!r})")
    return parsed


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def build_settings(
    project_dir: Path,
    overrides: dict[str, Any],
    config: Optional[dict[str, Any]] = None,
) -> RunnerSettings:
    """Resolve settings with precedence CLI > config file > defaults.

    Args:
        project_dir: Target project directory.
        overrides: Values from the CLI; `None` means "not given".
        config: Parsed `config.yaml` mapping (may be empty).

    Returns:
        The merged settings.

    Raises:
        ConfigurationError: A value is out of range or has the wrong type.
    """
    config = config or {}
    unknown = sorted(set(config) - set(CONFIG_KEYS))

    timeout = _non_negative_int("timeout", _pick(overrides, config, "timeout"), DEFAULT_TIMEOUT_SECONDS)
    idle_timeout = _non_negative_int(
        "idle_timeout", _pick(overrides, config, "idle_timeout"), DEFAULT_IDLE_TIMEOUT_SECONDS
    )
    if timeout == 0 or idle_timeout == 0:
        raise _invalid("timeout and idle_timeout must be greater than zero")
    quit_on_abort = _non_negative_int(
        "quit_on_abort", _pick(overrides, config, "quit_on_abort"), DEFAULT_QUIT_ON_ABORT
    )

    max_iterations = overrides.get("max_iterations")
    if max_iterations is not None:
        max_iterations = _coerce_int(max_iterations)
        if max_iterations is None or max_iterations < 1:
            raise _invalid(f"max_iterations must be a positive integer (got {overrides.get('max_iterations')!r})")

    poll_raw = _pick(overrides, config, "poll_interval")
    poll_interval = DEFAULT_POLL_INTERVAL_SECONDS if poll_raw is None else _coerce_float(poll_raw)
    if poll_interval is None or poll_interval <= 0:
        raise _invalid(f"poll_interval must be a positive number (got {poll_raw!r})")

    prompts_dir = _pick(overrides, config, "prompts_dir")
    spec_file = overrides.get("spec_file")

    return RunnerSettings(
        project_dir=Path(project_dir),
        spec_file=Path(spec_file) if spec_file else None,
        max_iterations=max_iterations,
        timeout_seconds=timeout,
        idle_timeout_seconds=idle_timeout,
        model=_optional_str(_pick(overrides, config, "model")),
        init_model=_optional_str(_pick(overrides, config, "init_model")),
        code_model=_optional_str(_pick(overrides, config, "code_model")),
        no_clean=_coerce_bool(_pick(overrides, config, "no_clean")),
        quit_on_abort=quit_on_abort,
        continue_on_timeout=_coerce_bool(_pick(overrides, config, "continue_on_timeout")),
        todo_mode=_coerce_bool(overrides.get("todo_mode")),
        agent_command=_optional_str(_pick(overrides, config, "agent_command")) or DEFAULT_AGENT_COMMAND,
        clean_command=_optional_str(_pick(overrides, config, "clean_command")),
        prompts_dir=Path(prompts_dir) if prompts_dir else None,
        poll_interval=poll_interval,
        extra={key: config[key] for key in unknown},
    )
