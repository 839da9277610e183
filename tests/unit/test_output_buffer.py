"""Unit tests for lane output ingestion."""

import pytest

from warroom.core.output_buffer import (
    LaneOutputBuffer,
    OutputBufferManager,
    classify_error,
    parse_progress,
    pricing_for,
)


def test_input_output_line_counts_tokens_once():
    """A combined input/output line adds each count exactly once."""
    buffer = LaneOutputBuffer("lane-a")
    buffer.add_line("Input: 1,000 tokens, Output: 500 tokens")

    usage = buffer.token_usage
    assert usage.input_tokens == 1000
    assert usage.output_tokens == 500
    assert usage.total_tokens == 1500


def test_total_only_line_applies_split_heuristic():
    buffer = LaneOutputBuffer("lane-a")
    buffer.add_line("Total tokens: 1000")

    cost = buffer.cost_tracking()
    assert cost.token_usage.input_tokens == 800
    assert cost.token_usage.output_tokens == 200
    assert cost.split_heuristic_applied is True
    assert cost.is_estimate is True


def test_total_line_does_not_override_existing_breakdown():
    buffer = LaneOutputBuffer("lane-a")
    buffer.add_line("Input: 100 tokens, Output: 50 tokens")
    buffer.add_line("Total tokens: 1000")

    usage = buffer.token_usage
    assert usage.input_tokens == 100
    assert usage.output_tokens == 50
    assert buffer.cost_tracking().split_heuristic_applied is False


def test_ansi_codes_are_stripped_before_scanning():
    buffer = LaneOutputBuffer("lane-a")
    buffer.add_line("\x1b[32mInput: 10 tokens, Output: 5 tokens\x1b[0m")

    assert buffer.token_usage.input_tokens == 10
    assert buffer.token_usage.output_tokens == 5


def test_lines_are_bounded_but_total_keeps_counting():
    buffer = LaneOutputBuffer("lane-a", max_lines=3)
    for i in range(5):
        buffer.add_line(f"line {i}")

    assert [line.content for line in buffer.recent_lines()] == ["line 2", "line 3", "line 4"]
    assert buffer.total_lines == 5
    assert buffer.recent_lines(0) == []


def test_errors_and_warnings_are_bounded():
    buffer = LaneOutputBuffer("lane-a", max_errors=2, max_warnings=1)
    for i in range(4):
        buffer.add_line(f"Error: broke {i}", stream="stderr")
        buffer.add_line(f"Warning: careful {i}")

    assert len(buffer.errors) == 2
    assert buffer.errors[-1].message == "Error: broke 3"
    assert len(buffer.warnings) == 1


def test_progress_indicators():
    percent = parse_progress("Building... 45%")
    assert percent is not None
    assert percent.type == "percentage"
    assert percent.value == 45.0

    step = parse_progress("[3/10] compiling")
    assert step is not None
    assert step.type == "step"
    assert step.value == 3
    assert step.total == 10

    assert parse_progress("nothing to see") is None


def test_classify_error_detects_general_errors():
    assert classify_error("Error: something failed") is not None
    assert classify_error("all good") is None


def test_pricing_falls_back_by_family_then_default():
    assert pricing_for("claude-opus-4-20250514").output == 75.0
    assert pricing_for("claude-opus-5-preview").output == 75.0
    assert pricing_for("claude-haiku-9").input == 0.80
    assert pricing_for(None) == pricing_for("default")


def test_cost_is_estimated_from_default_pricing():
    buffer = LaneOutputBuffer("lane-a")
    buffer.add_line("Input: 1,000,000 tokens, Output: 0 tokens")

    assert buffer.cost_tracking().estimated_cost_usd == pytest.approx(3.0)


def test_manager_rolls_up_run_costs():
    manager = OutputBufferManager()
    manager.add_line("run-1", "a", "Input: 1,000,000 tokens, Output: 0 tokens")
    manager.add_line("run-1", "b", "Input: 1,000,000 tokens, Output: 0 tokens")
    manager.add_line("run-2", "c", "Input: 5 tokens, Output: 5 tokens")

    summary = manager.get_run_cost_tracking("run-1")
    assert set(summary.lanes) == {"a", "b"}
    assert summary.total_input_tokens == 2_000_000
    assert summary.total_cost_usd == pytest.approx(6.0)


def test_manager_clear_lane_and_run():
    manager = OutputBufferManager()
    manager.add_line("run-1", "a", "Error: boom")
    assert manager.has_errors("run-1", "a")

    manager.clear_lane("run-1", "a")
    assert not manager.has_errors("run-1", "a")

    manager.clear_run("run-1")
    assert manager.get_lane_output("run-1", "a") is None
    assert manager.get_lane_cost_tracking("run-1", "a") is None
