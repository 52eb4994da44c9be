"""Test the consecutive-failure counter and abort threshold."""

from __future__ import annotations

import pytest

from aidd_runner.constants import EXIT_IDLE_TIMEOUT, EXIT_NO_ASSISTANT, EXIT_PROVIDER_ERROR, EXIT_TIMEOUT
from aidd_runner.fsm import reduce_failures
from aidd_runner.models import ControllerState


def _fold(codes: list[int], *, continue_on_timeout: bool = False, quit_on_abort: int = 0) -> ControllerState:
    state = ControllerState()
    for code in codes:
        reduce_failures(state, code, continue_on_timeout=continue_on_timeout, quit_on_abort=quit_on_abort)
    return state


def _expected_counter(codes: list[int], exempt: set[int]) -> int:
    count = 0
    for code in reversed(codes):
        if code in exempt:
            continue
        if code == 0:
            break
        count += 1
    return count


@pytest.mark.parametrize(
    "codes",
    [
        [],
        [0],
        [1],
        [1, 1, 0],
        [0, 1, 2, 3],
        [1, 0, 1, 1],
        [EXIT_TIMEOUT, 1, EXIT_IDLE_TIMEOUT],
        [1, EXIT_TIMEOUT, 1],
    ],
)
@pytest.mark.parametrize("continue_on_timeout", [True, False])
def test_counter_equals_trailing_failures(codes: list[int], continue_on_timeout: bool) -> None:
    """Ensure the counter equals the trailing run of non-zero, non-exempt codes."""
    exempt = {EXIT_TIMEOUT, EXIT_IDLE_TIMEOUT} if continue_on_timeout else set()

    state = _fold(codes, continue_on_timeout=continue_on_timeout)

    assert state.consecutive_failures == _expected_counter(codes, exempt)


def test_success_resets_counter() -> None:
    state = _fold([1, 1, 0])

    assert state.consecutive_failures == 0
    assert state.last_exit_code == 0
    assert state.last_failure_exit_code == 1


def test_timeout_exempt_only_with_continue_flag() -> None:
    state = ControllerState()

    verdict = reduce_failures(state, EXIT_TIMEOUT, continue_on_timeout=True, quit_on_abort=1)
    assert verdict.exempt is True
    assert verdict.abort is False
    assert state.consecutive_failures == 0

    verdict = reduce_failures(state, EXIT_TIMEOUT, continue_on_timeout=False, quit_on_abort=1)
    assert verdict.counted is True
    assert verdict.abort is True


@pytest.mark.parametrize("code", [EXIT_NO_ASSISTANT, EXIT_PROVIDER_ERROR])
def test_sentinel_codes_are_never_exempt(code: int) -> None:
    state = ControllerState()

    verdict = reduce_failures(state, code, continue_on_timeout=True, quit_on_abort=0)

    assert verdict.counted is True
    assert state.consecutive_failures == 1


def test_threshold_zero_never_aborts() -> None:
    state = ControllerState()
    verdicts = [reduce_failures(state, 1, continue_on_timeout=False, quit_on_abort=0) for _ in range(10)]

    assert not any(v.abort for v in verdicts)
    assert state.consecutive_failures == 10


def test_abort_when_threshold_reached() -> None:
    state = ControllerState()

    first = reduce_failures(state, EXIT_PROVIDER_ERROR, continue_on_timeout=False, quit_on_abort=2)
    second = reduce_failures(state, EXIT_PROVIDER_ERROR, continue_on_timeout=False, quit_on_abort=2)

    assert first.abort is False
    assert second.abort is True
    assert state.last_failure_exit_code == EXIT_PROVIDER_ERROR
