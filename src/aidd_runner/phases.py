"""Map project state and mode flags to the phase and prompt for the next iteration."""

from __future__ import annotations

from .constants import (
    ERROR_TYPE_TODO_MISSING,
    PROMPT_CODING,
    PROMPT_INITIALIZER,
    PROMPT_ONBOARDING,
    PROMPT_TODO,
)
from .errors import ConfigurationError
from .models import ModelProfile, Phase, PhaseSelection, ProjectState


def select_phase(state: ProjectState, todo_mode: bool) -> PhaseSelection:
    """Pick the phase for the next iteration.

    Rules are evaluated in order and the first match wins:

    1. todo mode: `Todo` when `todo.md` exists, otherwise a fatal configuration error.
    2. onboarding complete: `Coding`.
    3. pre-existing codebase (not created by this run): `Onboarding`.
    4. otherwise: `Initializer`.

    Args:
        state: Freshly resolved project state.
        todo_mode: Whether `--todo` was requested.

    Returns:
        The selected phase, prompt file name, model profile, and transcript message.

    Raises:
        ConfigurationError: Todo mode was requested but no todo file exists.
    """
    if todo_mode:
        if not state.todo_present:
            raise ConfigurationError(
                f"Todo mode requested but no {state.todo_check_path.name} found in {state.metadata_dir}",
                error_type=ERROR_TYPE_TODO_MISSING,
            )
        return PhaseSelection(
            phase=Phase.TODO,
            prompt_name=PROMPT_TODO,
            model_profile=ModelProfile.CODE,
            message="Using todo.md to complete existing work items...",
        )

    if state.onboarding_complete:
        return PhaseSelection(
            phase=Phase.CODING,
            prompt_name=PROMPT_CODING,
            model_profile=ModelProfile.CODE,
            message="Required files found, sending coding prompt...",
        )

    if not state.is_new_project_created and state.is_existing_codebase:
        if state.feature_list_present:
            message = "Detected incomplete onboarding, resuming onboarding prompt..."
        else:
            message = "Detected existing codebase, using onboarding prompt..."
        return PhaseSelection(
            phase=Phase.ONBOARDING,
            prompt_name=PROMPT_ONBOARDING,
            model_profile=ModelProfile.INIT,
            message=message,
        )

    return PhaseSelection(
        phase=Phase.INITIALIZER,
        prompt_name=PROMPT_INITIALIZER,
        model_profile=ModelProfile.INIT,
        message="Required files not found, copying spec and sending initializer prompt...",
    )
