"""Implement the main iteration loop: resolve state, pick a phase, supervise the agent, apply the failure policy."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Optional, TextIO

from loguru import logger
from rich.console import Console
from rich.table import Table

from .config import RunnerSettings
from .constants import (
    ERROR_TYPE_INVALID_CONFIG,
    ERROR_TYPE_MISSING_SPEC,
    ERROR_TYPE_RUN_LOCKED,
    ERROR_TYPE_SPEC_NOT_FOUND,
    LOCK_FILE,
    RUN_STATE_FILE,
    RUN_STATUS_ABORTED,
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
    RUN_STATUS_INTERRUPTED,
    RUN_STATUS_RUNNING,
)
from .errors import ConfigurationError
from .fsm import reduce_failures
from .io_utils import FileLock, LockBusyError, _atomic_write_yaml
from .logs import (
    AnsiStripPostProcessor,
    CommandPostProcessor,
    LogIndexer,
    LogPostProcessor,
    TranscriptWriter,
    cleanup_logs,
)
from .models import ControllerState, FailureVerdict, IterationOutcome, Phase, PhaseSelection, ProjectState
from .phases import select_phase
from .project import copy_artifacts, copy_spec, prepare_project_dir, resolve_project_state
from .utils import _format_duration, _local_timestamp, _now_iso
from .worker import AgentRunResult, run_agent

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_PROMPTS_DIR = PACKAGE_DIR / "prompts"
DEFAULT_ARTIFACTS_DIR = PACKAGE_DIR / "artifacts"

Supervisor = Callable[..., AgentRunResult]


def _default_post_processor(settings: RunnerSettings) -> LogPostProcessor:
    if settings.clean_command:
        return CommandPostProcessor(settings.clean_command)
    return AnsiStripPostProcessor()


class IterationController:
    """Drive the agent through sequential iterations against one project directory.

    Args:
        settings: Resolved run settings.
        new_project_created: Whether this run created the project directory. Fixed
            for the whole run.
        supervisor: Callable with the `run_agent` signature; injected for tests.
        post_processor: Log post-processor used by end-of-run cleanup.
        artifacts_dir: Source of files copied into the metadata directory during
            the initializer and onboarding phases.
        console: Stream that mirrors transcript output.
        summary_console: rich console for the end-of-run summary.
    """

    def __init__(
        self,
        settings: RunnerSettings,
        *,
        new_project_created: bool = False,
        supervisor: Supervisor = run_agent,
        post_processor: Optional[LogPostProcessor] = None,
        artifacts_dir: Optional[Path] = None,
        console: Optional[TextIO] = None,
        summary_console: Optional[Console] = None,
    ) -> None:
        self.settings = settings
        self.project_dir = settings.project_dir.resolve()
        self.new_project_created = new_project_created
        self.supervisor = supervisor
        self.post_processor = post_processor or _default_post_processor(settings)
        self.prompts_dir = (settings.prompts_dir or DEFAULT_PROMPTS_DIR).resolve()
        self.artifacts_dir = artifacts_dir or DEFAULT_ARTIFACTS_DIR
        self.console = console if console is not None else sys.stdout
        self.summary_console = summary_console or Console(stderr=True)
        self.state = ControllerState()
        self.outcomes: list[IterationOutcome] = []
        self._project: Optional[ProjectState] = None
        self._indexer: Optional[LogIndexer] = None
        self._cleaned = False

    # ------------------------------------------------------------------
    # State resolution
    # ------------------------------------------------------------------

    def resolve_state(self) -> ProjectState:
        project = resolve_project_state(self.project_dir, new_project_created=self.new_project_created)
        self._project = project
        return project

    def _log_indexer(self, project: ProjectState) -> LogIndexer:
        if self._indexer is None or self._indexer.iterations_dir != project.iterations_dir:
            self._indexer = LogIndexer(project.iterations_dir)
        return self._indexer

    def preflight(self) -> ProjectState:
        """Validate configuration before any iteration runs.

        Raises:
            ConfigurationError: The spec file is missing or unreadable when required,
                todo mode has no todo file, or the prompts directory is missing.
        """
        spec_file = self.settings.spec_file
        if spec_file is not None and not spec_file.is_file():
            raise ConfigurationError(
                f"Spec file '{spec_file}' does not exist",
                error_type=ERROR_TYPE_SPEC_NOT_FOUND,
            )
        if not self.prompts_dir.is_dir():
            raise ConfigurationError(
                f"Prompts directory '{self.prompts_dir}' does not exist",
                error_type=ERROR_TYPE_INVALID_CONFIG,
            )

        project = self.resolve_state()
        selection = select_phase(project, self.settings.todo_mode)
        if selection.phase == Phase.INITIALIZER and spec_file is None and not project.spec_check_path.is_file():
            raise ConfigurationError(
                "A spec file (--spec) is required for a new project",
                error_type=ERROR_TYPE_MISSING_SPEC,
            )
        return project

    # ------------------------------------------------------------------
    # Single iteration
    # ------------------------------------------------------------------

    def _apply_phase_side_effects(
        self,
        selection: PhaseSelection,
        project: ProjectState,
        transcript: TranscriptWriter,
    ) -> None:
        if selection.phase not in {Phase.INITIALIZER, Phase.ONBOARDING}:
            return
        try:
            copy_artifacts(self.artifacts_dir, project.metadata_dir)
            if selection.phase == Phase.INITIALIZER and self.settings.spec_file is not None:
                copy_spec(self.settings.spec_file, project.spec_check_path)
        except OSError as exc:
            logger.error("Failed to prepare metadata directory {}: {}", project.metadata_dir, exc)
            transcript.write_line(f"[aidd] Failed to prepare metadata directory: {exc}")

    def run_iteration(self, iteration: int) -> IterationOutcome:
        """Run one supervised agent invocation and write its transcript.

        Args:
            iteration: 1-based iteration number within this run.

        Returns:
            The outcome of the iteration.

        Raises:
            ConfigurationError: Todo mode is active but the todo file disappeared.
        """
        project = self.resolve_state()
        selection = select_phase(project, self.settings.todo_mode)
        log_path = self._log_indexer(project).next_log_path()
        prompt_path = self.prompts_dir / selection.prompt_name
        model_args = self.settings.model_args(selection.model_profile)
        max_iterations = self.settings.max_iterations

        logger.info("Starting iteration {} (phase={})", iteration, selection.phase.value)
        started_at = _local_timestamp()
        with TranscriptWriter(log_path, self.console) as transcript:
            transcript.write_line(f"Iteration {iteration}")
            if max_iterations is not None:
                transcript.write_line(f"Iteration {iteration} of {max_iterations}")
            transcript.write_line(f"Transcript: {log_path}")
            transcript.write_line(f"Started: {started_at}")
            transcript.write_line(f"Phase: {selection.phase.value}")
            transcript.write_line()
            transcript.write_line(selection.message)

            self._apply_phase_side_effects(selection, project, transcript)

            result = self.supervisor(
                project.project_root,
                prompt_path,
                model_args,
                self.settings.timeout_seconds,
                self.settings.idle_timeout_seconds,
                agent_command=self.settings.agent_command,
                sink=transcript,
                poll_interval=self.settings.poll_interval,
            )

            finished_at = _local_timestamp()
            transcript.write_line()
            transcript.write_line(f"--- End of iteration {iteration} ---")
            transcript.write_line(f"Finished: {finished_at}")
            transcript.write_line(f"Exit code: {result.exit_code} ({result.reason})")
            transcript.write_line()

        outcome = IterationOutcome(
            iteration=iteration,
            log_path=log_path,
            phase=selection.phase,
            exit_code=result.exit_code,
            started_at=started_at,
            finished_at=finished_at,
            reason=result.reason,
        )
        if outcome.succeeded:
            logger.info(
                "Iteration {} completed successfully in {}",
                iteration,
                _format_duration(result.runtime_seconds),
            )
        else:
            logger.warning("Iteration {} failed (exit={}, reason={})", iteration, result.exit_code, result.reason)
        return outcome

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _report_verdict(self, outcome: IterationOutcome, verdict: FailureVerdict) -> None:
        if verdict.exempt:
            logger.warning(
                "Timeout detected (exit={}) on iteration {}, continuing to next iteration...",
                outcome.exit_code,
                outcome.iteration,
            )
        elif verdict.counted:
            logger.warning(
                "Agent failed (exit={}); this is failure #{}",
                outcome.exit_code,
                self.state.consecutive_failures,
            )
            if verdict.abort:
                logger.error("Reached failure threshold ({}); quitting.", self.settings.quit_on_abort)
            else:
                logger.info("Continuing to next iteration (threshold: {})", self.settings.quit_on_abort)
        else:
            logger.debug("Failure counter reset")

    def _save_run_state(self, status: str) -> None:
        project = self._project
        if project is None:
            return
        last = self.outcomes[-1] if self.outcomes else None
        payload = {
            "status": status,
            "iteration": self.state.iteration,
            "max_iterations": self.settings.max_iterations,
            "consecutive_failures": self.state.consecutive_failures,
            "last_exit_code": self.state.last_exit_code,
            "last_outcome": last.to_dict() if last else None,
            "updated_at": _now_iso(),
        }
        try:
            _atomic_write_yaml(project.metadata_dir / RUN_STATE_FILE, payload)
        except OSError as exc:
            logger.warning("Unable to persist run state: {}", exc)

    def cleanup(self) -> bool:
        """Post-process iteration logs. Runs at most once per controller."""
        if self._cleaned or self._project is None:
            return False
        self._cleaned = True
        return cleanup_logs(
            self._project.iterations_dir,
            self.post_processor,
            no_clean=self.settings.no_clean,
        )

    def print_summary(self) -> None:
        table = Table(title="Iteration Summary", show_header=False)
        table.add_column("Metric", style="bold")
        table.add_column("Value")
        table.add_row("Total iterations", str(self.state.iteration))
        max_iterations = self.settings.max_iterations
        if max_iterations:
            progress = min(100, self.state.iteration * 100 // max_iterations)
            table.add_row("Progress", f"{progress}%")
        table.add_row("Consecutive failures", str(self.state.consecutive_failures))
        if self.state.last_exit_code is not None:
            table.add_row("Last exit code", str(self.state.last_exit_code))
        self.summary_console.print(table)

    def run_all(self) -> int:
        """Run iterations until `max_iterations` is reached or the failure threshold trips.

        Returns:
            0 on normal completion, otherwise the exit code of the iteration that
            crossed the `quit_on_abort` threshold.

        Raises:
            ConfigurationError: Fatal configuration problem (before or during the run).
            KeyboardInterrupt: Propagated after log cleanup.
        """
        project = self.preflight()
        try:
            with FileLock(project.metadata_dir / LOCK_FILE, blocking=False):
                return self._loop()
        except LockBusyError as exc:
            raise ConfigurationError(
                f"Another run is already active for {self.project_dir}",
                error_type=ERROR_TYPE_RUN_LOCKED,
            ) from exc

    def _loop(self) -> int:
        max_iterations = self.settings.max_iterations
        if max_iterations is None:
            logger.info("Running unlimited iterations (use Ctrl+C to stop)")
        else:
            logger.info("Running {} iterations", max_iterations)

        status = RUN_STATUS_RUNNING
        exit_code = 0
        try:
            iteration = 1
            while max_iterations is None or iteration <= max_iterations:
                self.state.iteration = iteration
                outcome = self.run_iteration(iteration)
                self.outcomes.append(outcome)
                verdict = reduce_failures(
                    self.state,
                    outcome.exit_code,
                    continue_on_timeout=self.settings.continue_on_timeout,
                    quit_on_abort=self.settings.quit_on_abort,
                )
                self._report_verdict(outcome, verdict)
                self._save_run_state(status)
                if verdict.abort:
                    status = RUN_STATUS_ABORTED
                    exit_code = outcome.exit_code
                    break
                iteration += 1
            else:
                logger.info("Reached maximum iterations: {}", max_iterations)
            if status == RUN_STATUS_RUNNING:
                status = RUN_STATUS_COMPLETED
            return exit_code
        except (KeyboardInterrupt, SystemExit):
            status = RUN_STATUS_INTERRUPTED
            logger.warning("Run interrupted during iteration {}", self.state.iteration)
            raise
        except BaseException:
            status = RUN_STATUS_FAILED
            raise
        finally:
            self._save_run_state(status)
            self.cleanup()
            self.print_summary()


def run_aidd(settings: RunnerSettings, **kwargs) -> int:
    """Create the project directory if needed and run the iteration loop.

    Args:
        settings: Resolved run settings.
        **kwargs: Forwarded to `IterationController`.

    Returns:
        The process exit code for the run.
    """
    new_project_created = prepare_project_dir(settings.project_dir.resolve())
    controller = IterationController(settings, new_project_created=new_project_created, **kwargs)
    return controller.run_all()
