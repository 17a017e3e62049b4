"""Tests for the verification status state machine."""

import pytest

from fraudcheck.errors import InvalidTransitionError
from fraudcheck.models import RISK_STATUS, RunStatus, transition


def test_in_progress_may_move_to_any_status():
    for status in RunStatus:
        assert transition(RunStatus.IN_PROGRESS, status) is status


@pytest.mark.parametrize("terminal", [RunStatus.SUCCESS, RunStatus.WARNING, RunStatus.FAILED])
def test_terminal_states_are_final(terminal):
    assert terminal.is_terminal
    for status in RunStatus:
        with pytest.raises(InvalidTransitionError):
            transition(terminal, status)


def test_accepts_stored_string_values():
    assert transition("in_progress", "failed") is RunStatus.FAILED


def test_risk_maps_to_terminal_status():
    assert RISK_STATUS == {
        "high": RunStatus.FAILED,
        "medium": RunStatus.WARNING,
        "low": RunStatus.SUCCESS,
    }
