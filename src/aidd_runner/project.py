"""Resolve the on-disk state of the target project and its metadata directory."""

from __future__ import annotations

import shutil
from pathlib import Path

from loguru import logger

from .constants import (
    CODEBASE_IGNORE_NAMES,
    ERROR_TYPE_MISSING_PROJECT_DIR,
    FEATURE_LIST_FILE,
    ITERATIONS_DIR,
    METADATA_DIR_CANDIDATES,
    METADATA_DIR_NAME,
    SPEC_FILE_NAME,
    TEMPLATE_DATE_MARKER,
    TEMPLATE_FEATURE_MARKER,
    TODO_FILE,
)
from .errors import ConfigurationError
from .models import ProjectState


def prepare_project_dir(project_dir: Path) -> bool:
    """Create the project directory when missing.

    Returns:
        True when the directory did not exist and was created by this call.

    Raises:
        ConfigurationError: The path exists but is not a directory, or it cannot be created.
    """
    if project_dir.is_dir():
        return False
    if project_dir.exists():
        raise ConfigurationError(
            f"Project directory '{project_dir}' exists but is not a directory",
            error_type=ERROR_TYPE_MISSING_PROJECT_DIR,
        )
    logger.info("Project directory '{}' does not exist; creating it", project_dir)
    try:
        project_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to create project directory '{project_dir}': {exc}",
            error_type=ERROR_TYPE_MISSING_PROJECT_DIR,
        ) from exc
    return True


def find_metadata_dir(project_dir: Path) -> Path | None:
    for name in METADATA_DIR_CANDIDATES:
        candidate = project_dir / name
        if candidate.is_dir():
            return candidate
    return None


def find_or_create_metadata_dir(project_dir: Path) -> Path:
    """Return the highest-ranked existing metadata directory, creating the default if none exist."""
    existing = find_metadata_dir(project_dir)
    if existing is not None:
        return existing
    metadata_dir = project_dir / METADATA_DIR_NAME
    metadata_dir.mkdir(parents=True, exist_ok=True)
    return metadata_dir


def is_existing_codebase(project_dir: Path) -> bool:
    """Report whether the directory holds anything besides VCS/editor/cache noise."""
    if not project_dir.is_dir():
        return False
    try:
        entries = list(project_dir.iterdir())
    except OSError:
        return False
    return any(entry.name not in CODEBASE_IGNORE_NAMES for entry in entries)


def check_onboarding_status(feature_list_path: Path) -> bool:
    """Report whether the feature list exists and no longer contains template placeholders."""
    if not feature_list_path.is_file():
        return False
    try:
        text = feature_list_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    return TEMPLATE_DATE_MARKER not in text and TEMPLATE_FEATURE_MARKER not in text


def resolve_project_state(project_dir: Path, *, new_project_created: bool) -> ProjectState:
    """Build a fresh `ProjectState` from disk.

    Safe to call every iteration: the metadata and iterations directories are created
    only when missing and existing-codebase detection runs before that creation can
    matter (metadata directories are in the ignore-set).

    Args:
        project_dir: Target project directory.
        new_project_created: Whether this run created `project_dir`; fixed for the run.

    Returns:
        The resolved project state.
    """
    project_dir = project_dir.resolve()
    existing = is_existing_codebase(project_dir)
    metadata_dir = find_or_create_metadata_dir(project_dir)
    iterations_dir = metadata_dir / ITERATIONS_DIR
    iterations_dir.mkdir(parents=True, exist_ok=True)
    feature_list_path = metadata_dir / FEATURE_LIST_FILE
    todo_path = metadata_dir / TODO_FILE
    return ProjectState(
        project_root=project_dir,
        metadata_dir=metadata_dir,
        spec_check_path=metadata_dir / SPEC_FILE_NAME,
        feature_list_check_path=feature_list_path,
        todo_check_path=todo_path,
        iterations_dir=iterations_dir,
        is_existing_codebase=existing,
        is_new_project_created=new_project_created,
        onboarding_complete=check_onboarding_status(feature_list_path),
        feature_list_present=feature_list_path.is_file(),
        todo_present=todo_path.is_file(),
    )


def copy_artifacts(source_dir: Path, metadata_dir: Path) -> list[Path]:
    """Copy auxiliary artifact files into the metadata directory without overwriting.

    Returns:
        Destination paths that were newly created.
    """
    copied: list[Path] = []
    if not source_dir.is_dir():
        logger.warning("Artifacts directory '{}' not found; nothing to copy", source_dir)
        return copied
    for source in sorted(source_dir.iterdir()):
        if not source.is_file() or source.name.startswith("__"):
            continue
        destination = metadata_dir / source.name
        if destination.exists():
            continue
        shutil.copy2(source, destination)
        copied.append(destination)
    if copied:
        logger.info("Copied {} artifact(s) into {}", len(copied), metadata_dir)
    return copied


def copy_spec(spec_file: Path, spec_check_path: Path) -> None:
    spec_check_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(spec_file, spec_check_path)
    logger.debug("Copied spec {} -> {}", spec_file, spec_check_path)
