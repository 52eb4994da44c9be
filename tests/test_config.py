"""Test settings precedence and validation for CLI flags and `config.yaml`."""

from __future__ import annotations

from pathlib import Path

import pytest

from aidd_runner.config import build_settings, load_runner_config
from aidd_runner.constants import (
    DEFAULT_AGENT_COMMAND,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
)
from aidd_runner.errors import ConfigurationError
from aidd_runner.models import ModelProfile


def test_defaults_when_nothing_given(tmp_path: Path) -> None:
    settings = build_settings(tmp_path, {}, {})

    assert settings.timeout_seconds == DEFAULT_TIMEOUT_SECONDS == 600
    assert settings.idle_timeout_seconds == DEFAULT_IDLE_TIMEOUT_SECONDS == 180
    assert settings.quit_on_abort == 0
    assert settings.max_iterations is None
    assert settings.no_clean is False
    assert settings.continue_on_timeout is False
    assert settings.agent_command == DEFAULT_AGENT_COMMAND
    assert settings.model_args(ModelProfile.INIT) == []


def test_cli_overrides_config_file(tmp_path: Path) -> None:
    """Ensure CLI values win over config values, which win over defaults."""
    config = {"timeout": 900, "idle_timeout": 60, "model": "from-config", "no_clean": True}
    overrides = {"timeout": 30, "model": None, "no_clean": None}

    settings = build_settings(tmp_path, overrides, config)

    assert settings.timeout_seconds == 30
    assert settings.idle_timeout_seconds == 60
    assert settings.model == "from-config"
    assert settings.no_clean is True


def test_phase_models_fall_back_to_base_model(tmp_path: Path) -> None:
    settings = build_settings(tmp_path, {"model": "base", "code_model": "coder"}, {})

    assert settings.effective_model(ModelProfile.INIT) == "base"
    assert settings.effective_model(ModelProfile.CODE) == "coder"
    assert settings.model_args(ModelProfile.CODE) == ["--model", "coder"]


def test_blank_model_is_treated_as_absent(tmp_path: Path) -> None:
    settings = build_settings(tmp_path, {"model": "  "}, {})

    assert settings.model is None
    assert settings.model_args(ModelProfile.CODE) == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"timeout": 0},
        {"idle_timeout": -1},
        {"timeout": "soon"},
        {"quit_on_abort": -2},
        {"max_iterations": 0},
        {"poll_interval": 0},
        {"poll_interval": "abc"},
    ],
)
def test_invalid_values_raise(tmp_path: Path, overrides: dict) -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        build_settings(tmp_path, overrides, {})

    assert excinfo.value.error_type == "invalid_config"


def test_unknown_config_keys_are_collected(tmp_path: Path) -> None:
    settings = build_settings(tmp_path, {}, {"colour": "blue", "timeout": 10})

    assert settings.extra == {"colour": "blue"}
    assert settings.timeout_seconds == 10


def test_load_runner_config_missing_metadata(tmp_path: Path) -> None:
    assert load_runner_config(tmp_path) == ({}, None)


def test_load_runner_config_reads_yaml(tmp_path: Path) -> None:
    metadata = tmp_path / ".aidd"
    metadata.mkdir()
    (metadata / "config.yaml").write_text("timeout: 120\ncode_model: coder\n")

    config, error = load_runner_config(tmp_path)

    assert error is None
    assert config == {"timeout": 120, "code_model": "coder"}


def test_load_runner_config_reports_invalid_yaml(tmp_path: Path) -> None:
    metadata = tmp_path / ".aidd"
    metadata.mkdir()
    (metadata / "config.yaml").write_text("- just\n- a list\n")

    config, error = load_runner_config(tmp_path)

    assert config == {}
    assert error is not None and "expected object" in error


def test_legacy_metadata_dir_is_found(tmp_path: Path) -> None:
    legacy = tmp_path / ".autok"
    legacy.mkdir()
    (legacy / "config.yaml").write_text("quit_on_abort: 3\n")

    config, error = load_runner_config(tmp_path)

    assert error is None
    assert config["quit_on_abort"] == 3
