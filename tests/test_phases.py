"""Test the phase decision tree."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from aidd_runner.errors import ConfigurationError
from aidd_runner.models import ModelProfile, Phase, ProjectState
from aidd_runner.phases import select_phase


def _state(tmp_path: Path, **overrides: object) -> ProjectState:
    metadata = tmp_path / ".aidd"
    base = ProjectState(
        project_root=tmp_path,
        metadata_dir=metadata,
        spec_check_path=metadata / "spec.txt",
        feature_list_check_path=metadata / "feature_list.json",
        todo_check_path=metadata / "todo.md",
        iterations_dir=metadata / "iterations",
        is_existing_codebase=False,
        is_new_project_created=False,
        onboarding_complete=False,
    )
    return replace(base, **overrides)


def test_empty_project_selects_initializer(tmp_path: Path) -> None:
    selection = select_phase(_state(tmp_path), todo_mode=False)

    assert selection.phase == Phase.INITIALIZER
    assert selection.prompt_name == "initializer.md"
    assert selection.model_profile == ModelProfile.INIT


def test_existing_codebase_selects_onboarding(tmp_path: Path) -> None:
    selection = select_phase(_state(tmp_path, is_existing_codebase=True), todo_mode=False)

    assert selection.phase == Phase.ONBOARDING
    assert selection.prompt_name == "onboarding.md"
    assert "existing codebase" in selection.message


def test_incomplete_onboarding_only_changes_message(tmp_path: Path) -> None:
    """Ensure a leftover template feature list still yields Onboarding, with a different message."""
    fresh = select_phase(_state(tmp_path, is_existing_codebase=True), todo_mode=False)
    resumed = select_phase(
        _state(tmp_path, is_existing_codebase=True, feature_list_present=True),
        todo_mode=False,
    )

    assert resumed.phase == fresh.phase == Phase.ONBOARDING
    assert resumed.prompt_name == fresh.prompt_name
    assert "incomplete onboarding" in resumed.message


def test_new_project_with_files_stays_initializer(tmp_path: Path) -> None:
    """Ensure a directory created by this run is never onboarded, even once files appear."""
    selection = select_phase(
        _state(tmp_path, is_existing_codebase=True, is_new_project_created=True),
        todo_mode=False,
    )

    assert selection.phase == Phase.INITIALIZER


@pytest.mark.parametrize("existing", [True, False])
@pytest.mark.parametrize("created", [True, False])
def test_onboarding_complete_selects_coding(tmp_path: Path, existing: bool, created: bool) -> None:
    selection = select_phase(
        _state(
            tmp_path,
            onboarding_complete=True,
            is_existing_codebase=existing,
            is_new_project_created=created,
        ),
        todo_mode=False,
    )

    assert selection.phase == Phase.CODING
    assert selection.model_profile == ModelProfile.CODE


def test_todo_mode_takes_priority(tmp_path: Path) -> None:
    selection = select_phase(_state(tmp_path, todo_present=True, onboarding_complete=True), todo_mode=True)

    assert selection.phase == Phase.TODO
    assert selection.prompt_name == "todo.md"
    assert selection.model_profile == ModelProfile.CODE


def test_todo_mode_without_todo_file_is_fatal(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        select_phase(_state(tmp_path, onboarding_complete=True), todo_mode=True)

    assert excinfo.value.error_type == "todo_missing"


def test_select_phase_is_pure(tmp_path: Path) -> None:
    """Ensure repeated calls with identical inputs give identical results regardless of order."""
    states = [
        _state(tmp_path),
        _state(tmp_path, is_existing_codebase=True),
        _state(tmp_path, onboarding_complete=True),
    ]
    first = [select_phase(state, todo_mode=False) for state in states]
    second = [select_phase(state, todo_mode=False) for state in reversed(states)]

    assert first == list(reversed(second))
