"""Define project state, phase selection, and iteration bookkeeping models."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class Phase(str, Enum):
    """Enumerate the prompt classes that can govern an iteration."""

    ONBOARDING = "onboarding"
    INITIALIZER = "initializer"
    CODING = "coding"
    TODO = "todo"


class ModelProfile(str, Enum):
    """Select which model override applies to a phase."""

    INIT = "init"
    CODE = "code"


@dataclass
class ProjectState:
    """Snapshot of the target project as seen from disk at the start of an iteration."""

    project_root: Path
    metadata_dir: Path
    spec_check_path: Path
    feature_list_check_path: Path
    todo_check_path: Path
    iterations_dir: Path
    is_existing_codebase: bool
    is_new_project_created: bool
    onboarding_complete: bool
    feature_list_present: bool = False
    todo_present: bool = False


@dataclass(frozen=True)
class PhaseSelection:
    phase: Phase
    prompt_name: str
    model_profile: ModelProfile
    message: str


@dataclass
class IterationOutcome:
    """Record what happened during a single supervised agent invocation."""

    iteration: int
    log_path: Path
    phase: Phase
    exit_code: int
    started_at: str
    finished_at: str
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["log_path"] = str(self.log_path)
        data["phase"] = self.phase.value
        return data


@dataclass
class ControllerState:
    """Mutable per-run state owned by the iteration controller."""

    iteration: int = 0
    consecutive_failures: int = 0
    last_exit_code: Optional[int] = None
    last_failure_exit_code: Optional[int] = None


@dataclass(frozen=True)
class FailureVerdict:
    """Describe how one exit code was folded into the consecutive-failure counter."""

    counted: bool
    exempt: bool
    abort: bool
