#!/usr/bin/env python3
"""Provide the CLI entrypoint for aidd-runner.

Drives a coding agent (KiloCode by default) through onboarding, initializer,
coding, and todo iterations against a single project directory.
"""

from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path
from types import FrameType
from typing import Any, Optional

from loguru import logger

from .config import CONFIG_KEYS, build_settings, load_runner_config
from .constants import (
    DEFAULT_AGENT_COMMAND,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    ERROR_TYPE_INVALID_CONFIG,
    EXIT_CONFIG_ERROR,
    EXIT_INTERRUPTED,
    EXIT_TERMINATED,
)
from .errors import ConfigurationError
from .orchestrator import run_aidd


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


# Initialize with default level; will be reconfigured in main() based on CLI args
_configure_logging()


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aidd-runner",
        description="aidd-runner - AI Development Driver for long-running autonomous coding sessions",
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        required=True,
        help="Project directory (created if missing)",
    )
    parser.add_argument(
        "--spec",
        dest="spec_file",
        type=Path,
        default=None,
        help="Specification file (required for new projects, optional for existing codebases)",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Maximum iterations (default: unlimited)",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=None,
        help=f"Hard timeout per agent run in seconds (default: {DEFAULT_TIMEOUT_SECONDS})",
    )
    parser.add_argument(
        "--idle-timeout",
        type=int,
        default=None,
        help=f"Kill the agent after this many seconds without output (default: {DEFAULT_IDLE_TIMEOUT_SECONDS})",
    )
    parser.add_argument("--model", type=str, default=None, help="Model to use for every phase")
    parser.add_argument(
        "--init-model",
        type=str,
        default=None,
        help="Model for initializer/onboarding prompts (overrides --model)",
    )
    parser.add_argument(
        "--code-model",
        type=str,
        default=None,
        help="Model for coding/todo prompts (overrides --model)",
    )
    parser.add_argument(
        "--no-clean",
        action="store_true",
        default=None,
        help="Skip log cleaning on exit",
    )
    parser.add_argument(
        "--quit-on-abort",
        type=int,
        default=None,
        help="Quit after N consecutive failures (default: 0 = never)",
    )
    parser.add_argument(
        "--continue-on-timeout",
        action="store_true",
        default=None,
        help="Do not count timeouts (exit 124) or idle timeouts as failures",
    )
    parser.add_argument(
        "--todo",
        dest="todo_mode",
        action="store_true",
        default=False,
        help="TODO mode: work through .aidd/todo.md instead of new features",
    )
    parser.add_argument(
        "--agent-command",
        type=str,
        default=None,
        help=f"Agent executable and leading arguments (default: {DEFAULT_AGENT_COMMAND})",
    )
    parser.add_argument(
        "--clean-command",
        type=str,
        default=None,
        help="External log cleanup command; '{iterations_dir}' is replaced with the log directory",
    )
    parser.add_argument(
        "--prompts-dir",
        type=Path,
        default=None,
        help="Directory containing onboarding.md, initializer.md, coding.md and todo.md",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    return parser


def _overrides_from_args(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "spec_file": args.spec_file,
        "max_iterations": args.max_iterations,
        "timeout": args.timeout,
        "idle_timeout": args.idle_timeout,
        "model": args.model,
        "init_model": args.init_model,
        "code_model": args.code_model,
        "no_clean": args.no_clean,
        "quit_on_abort": args.quit_on_abort,
        "continue_on_timeout": args.continue_on_timeout,
        "todo_mode": args.todo_mode,
        "agent_command": args.agent_command,
        "clean_command": args.clean_command,
        "prompts_dir": args.prompts_dir,
    }


def _raise_on_sigterm(signum: int, frame: Optional[FrameType]) -> None:
    raise SystemExit(EXIT_TERMINATED)


def main(argv: list[str] | None = None) -> None:
    """Run the `aidd-runner` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Always; carries the process exit code.
    """
    args = _build_run_parser().parse_args(argv)
    _configure_logging(args.log_level)

    config, config_error = load_runner_config(args.project_dir)
    try:
        if config_error:
            raise ConfigurationError(f"Invalid runner config: {config_error}", error_type=ERROR_TYPE_INVALID_CONFIG)
        settings = build_settings(args.project_dir, _overrides_from_args(args), config)
        if settings.extra:
            logger.warning(
                "Ignoring unknown config keys: {} (known: {})",
                ", ".join(sorted(settings.extra)),
                ", ".join(CONFIG_KEYS),
            )
        previous_handler = signal.signal(signal.SIGTERM, _raise_on_sigterm)
        try:
            exit_code = run_aidd(settings)
        finally:
            signal.signal(signal.SIGTERM, previous_handler)
    except ConfigurationError as exc:
        logger.error("{} [{}]", exc, exc.error_type)
        raise SystemExit(EXIT_CONFIG_ERROR) from exc
    except KeyboardInterrupt:
        logger.warning("Interrupted; exiting")
        raise SystemExit(EXIT_INTERRUPTED)
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
