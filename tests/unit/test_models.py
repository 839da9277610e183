"""Unit tests for lane runtime state transitions."""

import pytest

from warroom.core.models import LANE_TRANSITIONS, LaneRuntimeState


@pytest.mark.parametrize(
    "path",
    [
        ["starting", "running", "complete"],
        ["starting", "running", "paused", "running", "stopped"],
        ["starting", "failed"],
        ["starting", "running", "paused", "failed"],
    ],
)
def test_legal_paths_are_followed(path):
    state = LaneRuntimeState(lane_id="A")

    for status in path:
        assert state.transition(status)

    assert state.status == path[-1]


def test_terminal_statuses_have_no_way_out_except_reset():
    for status in ("complete", "failed", "stopped"):
        assert LANE_TRANSITIONS[status] == frozenset()
        state = LaneRuntimeState(lane_id="A", status=status)
        assert not state.can_transition("running")
        assert state.can_transition("pending")


def test_illegal_transition_is_refused_and_logged(caplog):
    state = LaneRuntimeState(lane_id="A", status="complete")

    with caplog.at_level("WARNING", logger="warroom.core.models"):
        assert not state.transition("running")

    assert state.status == "complete"
    assert "Refusing lane A transition complete -> running" in caplog.text


def test_pending_lane_cannot_skip_starting():
    state = LaneRuntimeState(lane_id="A")

    assert not state.transition("running")
    assert state.status == "pending"


def test_reset_to_pending_is_always_allowed():
    state = LaneRuntimeState(lane_id="A", status="failed")

    assert state.transition("pending")
    assert state.status == "pending"
