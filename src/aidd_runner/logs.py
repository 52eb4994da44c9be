"""Allocate transcript log names, tee transcript output, and post-process logs at exit."""

from __future__ import annotations

import re
import shlex
import subprocess
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, TextIO

from loguru import logger

from .constants import LOG_INDEX_WIDTH, LOG_SUFFIX

_LOG_NAME_RE = re.compile(r"^(\d+)" + re.escape(LOG_SUFFIX) + r"$")
_ANSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")


def scan_next_log_index(iterations_dir: Path) -> int:
    """Return one more than the largest numeric `NNN.log` in the directory, or 1."""
    highest = 0
    if not iterations_dir.is_dir():
        return 1
    for entry in iterations_dir.iterdir():
        match = _LOG_NAME_RE.match(entry.name)
        if not match or not entry.is_file():
            continue
        highest = max(highest, int(match.group(1), 10))
    return highest + 1


def format_log_name(index: int) -> str:
    return f"{index:0{LOG_INDEX_WIDTH}d}{LOG_SUFFIX}"


def list_log_files(iterations_dir: Path) -> list[Path]:
    if not iterations_dir.is_dir():
        return []
    return sorted(
        entry for entry in iterations_dir.iterdir() if entry.is_file() and _LOG_NAME_RE.match(entry.name)
    )


class LogIndexer:
    """Issue strictly increasing transcript indices for one iterations directory.

    The directory is rescanned on every call so logs written by an earlier run are
    respected; the last issued index is remembered so deleting logs mid-run never
    causes an index to be reused.
    """

    def __init__(self, iterations_dir: Path) -> None:
        self.iterations_dir = iterations_dir
        self._last_issued = 0

    def next_index(self) -> int:
        index = max(scan_next_log_index(self.iterations_dir), self._last_issued + 1)
        self._last_issued = index
        return index

    def next_log_path(self) -> Path:
        return self.iterations_dir / format_log_name(self.next_index())


class TranscriptWriter:
    """Thread-safe tee of transcript lines to a log file and a console stream."""

    def __init__(self, log_path: Path, console: Optional[TextIO] = None) -> None:
        self.log_path = log_path
        self.console = console
        self._lock = threading.Lock()
        self._handle: Optional[TextIO] = None

    def __enter__(self) -> "TranscriptWriter":
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = open(self.log_path, "w", encoding="utf-8")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        with self._lock:
            if self._handle:
                self._handle.close()
                self._handle = None

    def __call__(self, line: str) -> None:
        self.write_line(line)

    def write_line(self, line: str = "") -> None:
        with self._lock:
            if self._handle:
                self._handle.write(line + "\n")
                self._handle.flush()
            if self.console is not None:
                try:
                    self.console.write(line + "\n")
                    self.console.flush()
                except (OSError, ValueError):
                    pass


class LogPostProcessor(ABC):
    """Normalizes the iteration transcripts once the run is over."""

    @abstractmethod
    def process(self, iterations_dir: Path) -> None:
        raise NotImplementedError


def strip_terminal_noise(text: str) -> str:
    """Drop ANSI escapes and keep only the final frame of carriage-return redraws."""
    text = _ANSI_RE.sub("", text)
    lines = []
    for line in text.split("\n"):
        if "\r" in line:
            frames = [frame for frame in line.split("\r") if frame]
            line = frames[-1] if frames else ""
        lines.append(line)
    return "\n".join(lines)


class AnsiStripPostProcessor(LogPostProcessor):
    def process(self, iterations_dir: Path) -> None:
        for path in list_log_files(iterations_dir):
            try:
                raw = path.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                logger.warning("Skipping unreadable log {}: {}", path, exc)
                continue
            cleaned = strip_terminal_noise(raw)
            if cleaned != raw:
                path.write_text(cleaned, encoding="utf-8")


class CommandPostProcessor(LogPostProcessor):
    """Run an external log-cleaning command.

    `{iterations_dir}` in the command is replaced with the directory; without the
    placeholder the directory is appended as the last argument.
    """

    def __init__(self, command: str, *, timeout_seconds: Optional[int] = 300) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds

    def build_command(self, iterations_dir: Path) -> list[str]:
        if "{iterations_dir}" in self.command:
            return shlex.split(self.command.replace("{iterations_dir}", shlex.quote(str(iterations_dir))))
        return [*shlex.split(self.command), str(iterations_dir)]

    def process(self, iterations_dir: Path) -> None:
        command = self.build_command(iterations_dir)
        try:
            result = subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Log cleanup command failed: {}", exc)
            return
        if result.returncode != 0:
            logger.warning(
                "Log cleanup command exited {}: {}",
                result.returncode,
                (result.stdout or "").strip()[-500:],
            )


def cleanup_logs(iterations_dir: Path, post_processor: LogPostProcessor, *, no_clean: bool) -> bool:
    """Run the post-processor over the iterations directory.

    Returns:
        True when the post-processor was invoked.
    """
    if no_clean:
        logger.info("Skipping log cleanup (--no-clean flag set)")
        return False
    if not list_log_files(iterations_dir):
        return False
    logger.info("Cleaning iteration logs...")
    try:
        post_processor.process(iterations_dir)
    except OSError as exc:
        logger.warning("Log cleanup failed: {}", exc)
    else:
        logger.info("Log cleanup complete")
    return True
