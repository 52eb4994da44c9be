"""Run the coding agent as a supervised child process.

One call to `run_agent` owns one child process. Three activities run against it
concurrently: a writer thread feeding the prompt to stdin, one reader thread per
output pipe, and the calling thread acting as the idle/timeout watchdog. The
readers and the watchdog share only `_SupervisorState`.
"""

from __future__ import annotations

import shlex
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from loguru import logger

from .constants import (
    AGENT_FIXED_ARGS,
    AGENT_TIMEOUT_FLAG,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_POLL_INTERVAL_SECONDS,
    EXIT_IDLE_TIMEOUT,
    EXIT_NO_ASSISTANT,
    EXIT_PROVIDER_ERROR,
    EXIT_SPAWN_FAILED,
    EXIT_TIMEOUT,
    READER_JOIN_SECONDS,
    SENTINEL_NO_ASSISTANT,
    SENTINEL_PROVIDER_ERROR,
    TERMINATE_GRACE_SECONDS,
)

REASON_EXITED = "exited"
REASON_TIMEOUT = "timeout"
REASON_IDLE_TIMEOUT = "idle_timeout"
REASON_NO_ASSISTANT = "no_assistant"
REASON_PROVIDER_ERROR = "provider_error"
REASON_SPAWN_FAILED = "spawn_failed"
REASON_PROMPT_UNREADABLE = "prompt_unreadable"

_REASON_EXIT_CODES = {
    REASON_NO_ASSISTANT: EXIT_NO_ASSISTANT,
    REASON_PROVIDER_ERROR: EXIT_PROVIDER_ERROR,
    REASON_IDLE_TIMEOUT: EXIT_IDLE_TIMEOUT,
    REASON_TIMEOUT: EXIT_TIMEOUT,
}

LineSink = Callable[[str], None]


@dataclass(frozen=True)
class AgentRunResult:
    exit_code: int
    reason: str
    runtime_seconds: float
    pid: Optional[int] = None
    returncode: Optional[int] = None


class _SupervisorState:
    """Liveness timestamp plus the first recorded termination reason, under one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_output = time.monotonic()
        self._reason: Optional[str] = None
        self.terminate_requested = threading.Event()

    def touch(self) -> None:
        with self._lock:
            self._last_output = time.monotonic()

    def idle_seconds(self) -> float:
        with self._lock:
            return time.monotonic() - self._last_output

    def request_termination(self, reason: str) -> bool:
        """Record `reason` unless another one already won. Returns True when this call won."""
        with self._lock:
            if self._reason is not None:
                return False
            self._reason = reason
        self.terminate_requested.set()
        return True

    @property
    def reason(self) -> Optional[str]:
        with self._lock:
            return self._reason


def build_agent_command(
    agent_command: str,
    timeout_seconds: float,
    model_args: Sequence[str] = (),
) -> list[str]:
    parts = shlex.split(agent_command)
    if not parts:
        raise ValueError("Agent command must not be empty")
    return [*parts, *AGENT_FIXED_ARGS, AGENT_TIMEOUT_FLAG, str(int(timeout_seconds)), *model_args]


def detect_sentinel(line: str) -> Optional[str]:
    # Case-sensitive containment; "no assistant messages" wins when both appear.
    if SENTINEL_NO_ASSISTANT in line:
        return REASON_NO_ASSISTANT
    if SENTINEL_PROVIDER_ERROR in line:
        return REASON_PROVIDER_ERROR
    return None


def classify_exit(reason: Optional[str], returncode: Optional[int]) -> int:
    """Map the winning termination reason (or the raw child status) to an exit code."""
    if reason in _REASON_EXIT_CODES:
        return _REASON_EXIT_CODES[reason]
    if returncode is None:
        return EXIT_SPAWN_FAILED
    if returncode < 0:
        # Killed by a signal we did not send; report it the way a shell would.
        return 128 + (-returncode)
    return returncode


def _default_sink(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def _signal_terminate(process: subprocess.Popen) -> None:
    try:
        process.terminate()
    except OSError:
        pass


def _terminate_process(process: subprocess.Popen) -> None:
    """Terminate, then kill after a grace period. Already-exited processes are fine."""
    if process.poll() is not None:
        return
    _signal_terminate(process)
    try:
        process.wait(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
            process.wait(timeout=TERMINATE_GRACE_SECONDS)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Failed to kill agent pid={}: {}", process.pid, exc)


def _write_prompt(pipe: Any, prompt: str) -> None:
    try:
        pipe.write(prompt)
        pipe.flush()
    except (BrokenPipeError, OSError, ValueError) as exc:
        logger.debug("Agent closed stdin early: {}", exc)
    finally:
        try:
            pipe.close()
        except (BrokenPipeError, OSError):
            pass


def _stream_pipe(
    pipe: Any,
    process: subprocess.Popen,
    state: _SupervisorState,
    sink: LineSink,
) -> None:
    try:
        for line in iter(pipe.readline, ""):
            state.touch()
            text = line.rstrip("\r\n")
            sink(text)
            sentinel = detect_sentinel(text)
            if sentinel and state.request_termination(sentinel):
                logger.warning("Sentinel '{}' detected in agent output; terminating pid={}", sentinel, process.pid)
                _signal_terminate(process)
    except (OSError, ValueError) as exc:
        logger.debug("Agent output pipe closed: {}", exc)
    finally:
        try:
            pipe.close()
        except OSError:
            pass


def _watch(
    process: subprocess.Popen,
    state: _SupervisorState,
    *,
    timeout_seconds: float,
    idle_timeout_seconds: float,
    poll_interval: float,
    start: float,
) -> None:
    deadline = start + timeout_seconds
    while True:
        remaining = deadline - time.monotonic()
        try:
            process.wait(timeout=max(0.01, min(poll_interval, remaining)))
            return
        except subprocess.TimeoutExpired:
            pass

        if state.terminate_requested.is_set():
            _terminate_process(process)
            return

        if time.monotonic() >= deadline:
            if state.request_termination(REASON_TIMEOUT):
                logger.warning("Agent exceeded timeout of {}s; terminating pid={}", timeout_seconds, process.pid)
            _terminate_process(process)
            return

        idle = state.idle_seconds()
        if idle > idle_timeout_seconds:
            if state.request_termination(REASON_IDLE_TIMEOUT):
                logger.warning(
                    "No agent output for {:.0f}s (idle timeout {}s); terminating pid={}",
                    idle,
                    idle_timeout_seconds,
                    process.pid,
                )
            _terminate_process(process)
            return


def run_agent(
    project_dir: Path,
    prompt_path: Path,
    model_args: Sequence[str],
    timeout_seconds: float,
    idle_timeout_seconds: float,
    *,
    agent_command: str = DEFAULT_AGENT_COMMAND,
    sink: Optional[LineSink] = None,
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    on_spawn: Optional[Callable[[int], None]] = None,
) -> AgentRunResult:
    """Run the agent once with the given prompt and classify how it ended.

    Args:
        project_dir: Working directory for the child process.
        prompt_path: Prompt document written to the child's stdin, followed by EOF.
        model_args: Extra model-selection arguments (e.g. `["--model", "gpt-4"]`).
        timeout_seconds: Hard overall timeout; expiry yields exit code 124.
        idle_timeout_seconds: Maximum silence on stdout/stderr before the child is killed.
        agent_command: Agent executable (and leading args) as a shell-style string.
        sink: Receives every output line without its trailing newline. Called from
            reader threads; must be thread-safe.
        poll_interval: Watchdog wake-up interval in seconds.
        on_spawn: Optional callback receiving the child pid.

    Returns:
        The classified result. Spawn failures are reported, never raised.
    """
    sink = sink or _default_sink
    start = time.monotonic()

    try:
        prompt = prompt_path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.error("Unable to read prompt {}: {}", prompt_path, exc)
        sink(f"[aidd] Unable to read prompt {prompt_path}: {exc}")
        return AgentRunResult(EXIT_SPAWN_FAILED, REASON_PROMPT_UNREADABLE, 0.0)

    try:
        command = build_agent_command(agent_command, timeout_seconds, model_args)
        process = subprocess.Popen(
            command,
            cwd=project_dir,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
    except (OSError, ValueError) as exc:
        logger.error("Failed to start agent '{}': {}", agent_command, exc)
        sink(f"[aidd] Failed to start agent '{agent_command}': {exc}")
        return AgentRunResult(EXIT_SPAWN_FAILED, REASON_SPAWN_FAILED, time.monotonic() - start)

    logger.debug("Spawned agent pid={}: {}", process.pid, shlex.join(command))
    if on_spawn:
        try:
            on_spawn(process.pid)
        except Exception as exc:
            logger.debug("on_spawn callback failed: {}", exc)

    state = _SupervisorState()
    threads = [
        threading.Thread(target=_write_prompt, args=(process.stdin, prompt), daemon=True),
        threading.Thread(target=_stream_pipe, args=(process.stdout, process, state, sink), daemon=True),
        threading.Thread(target=_stream_pipe, args=(process.stderr, process, state, sink), daemon=True),
    ]
    for thread in threads:
        thread.start()

    try:
        _watch(
            process,
            state,
            timeout_seconds=timeout_seconds,
            idle_timeout_seconds=idle_timeout_seconds,
            poll_interval=poll_interval,
            start=start,
        )
    finally:
        # Also reached on KeyboardInterrupt/SystemExit: never leave the agent running.
        _terminate_process(process)
        for thread in threads:
            thread.join(timeout=READER_JOIN_SECONDS)

    reason = state.reason
    returncode = process.poll()
    exit_code = classify_exit(reason, returncode)
    return AgentRunResult(
        exit_code=exit_code,
        reason=reason or REASON_EXITED,
        runtime_seconds=time.monotonic() - start,
        pid=process.pid,
        returncode=returncode,
    )
