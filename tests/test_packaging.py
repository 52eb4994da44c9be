"""Test packaging metadata, installation extras, and bundled resources."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from aidd_runner.orchestrator import DEFAULT_ARTIFACTS_DIR, DEFAULT_PROMPTS_DIR


def _load_pyproject() -> dict[str, Any]:
    pyproject_path = PROJECT_ROOT / "pyproject.toml"
    raw = pyproject_path.read_text(encoding="utf-8")
    if sys.version_info >= (3, 11):
        import tomllib

        return tomllib.loads(raw)

    import tomli

    return tomli.loads(raw)


def test_pyproject_declares_test_extras() -> None:
    """Ensure `pyproject.toml` declares pytest under `[project.optional-dependencies].test`."""
    data = _load_pyproject()
    test_deps = data.get("project", {}).get("optional-dependencies", {}).get("test", [])
    normalized = {str(item).strip().lower() for item in test_deps}
    assert any(item.startswith("pytest") for item in normalized)


def test_pyproject_declares_runtime_dependencies() -> None:
    data = _load_pyproject()
    deps = {str(item).split(">")[0].split("=")[0].strip().lower() for item in data["project"]["dependencies"]}

    assert {"loguru", "pyyaml", "rich"} <= deps


def test_console_script_points_at_runner_main() -> None:
    data = _load_pyproject()

    assert data["project"]["scripts"]["aidd-runner"] == "aidd_runner.runner:main"


def test_bundled_prompts_and_artifacts_exist() -> None:
    """Ensure every phase prompt and starter artifact ships with the package."""
    for name in ("onboarding.md", "initializer.md", "coding.md", "todo.md"):
        assert (DEFAULT_PROMPTS_DIR / name).is_file(), name
    assert (DEFAULT_ARTIFACTS_DIR / "feature_list.json").is_file()
