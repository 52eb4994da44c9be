from __future__ import annotations

from .constants import EXIT_SUCCESS, TIMEOUT_EXIT_CODES
from .models import ControllerState, FailureVerdict


def _is_exempt(exit_code: int, continue_on_timeout: bool) -> bool:
    return continue_on_timeout and exit_code in TIMEOUT_EXIT_CODES


def reduce_failures(
    state: ControllerState,
    exit_code: int,
    *,
    continue_on_timeout: bool,
    quit_on_abort: int,
) -> FailureVerdict:
    """Fold one iteration exit code into the consecutive-failure counter.

    Success resets the counter; an exempt timeout leaves it untouched; any other
    non-zero code increments it. `abort` is set once the counter reaches a positive
    `quit_on_abort` threshold.
    """
    state.last_exit_code = exit_code
    if exit_code == EXIT_SUCCESS:
        state.consecutive_failures = 0
        return FailureVerdict(counted=False, exempt=False, abort=False)

    if _is_exempt(exit_code, continue_on_timeout):
        return FailureVerdict(counted=False, exempt=True, abort=False)

    state.consecutive_failures += 1
    state.last_failure_exit_code = exit_code
    abort = quit_on_abort > 0 and state.consecutive_failures >= quit_on_abort
    return FailureVerdict(counted=True, exempt=False, abort=abort)
