"""Unit tests for the warroom-daemon entry point."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tests.conftest import make_lane, make_plan, write_run
from warroom.core.models import MergeResult, OperationResult
from warroom.core.run_documents import ConflictInfo
from warroom.daemon import _merge, _supervise, build_parser, main


def test_parser_modes_are_exclusive():
    parser = build_parser()

    args = parser.parse_args(["run-1", "run-2", "--runs-dir", "/tmp/runs"])
    assert args.run_slugs == ["run-1", "run-2"]
    assert args.runs_dir == "/tmp/runs"
    assert not args.propose and not args.merge

    with pytest.raises(SystemExit):
        parser.parse_args(["run-1", "--propose", "--merge"])
    with pytest.raises(SystemExit):
        parser.parse_args([])


@pytest.mark.asyncio
async def test_invalid_config_exits_with_2(tmp_path):
    config_path = tmp_path / "warroom.yml"
    config_path.write_text("retry:\n  max_attempts: -1\n", encoding="utf-8")

    with patch("warroom.daemon.setup_logging"):
        assert await main(["run-1", "--config", str(config_path)]) == 2


@pytest.mark.asyncio
async def test_propose_writes_merge_proposal(tmp_path):
    runs_dir = tmp_path / "runs"
    write_run(runs_dir, make_plan("run-1", "/repo", [make_lane("a", "/wt/a")]), {"lanesCompleted": ["a"]})

    with patch("warroom.daemon.setup_logging"), \
            patch("warroom.core.merge_engine.resolve_base_branch", new=AsyncMock(return_value="main")), \
            patch("warroom.core.git.branch_exists", new=AsyncMock(return_value=False)):
        code = await main(
            ["run-1", "--propose", "--runs-dir", str(runs_dir), "--config", str(tmp_path / "missing.yml")]
        )

    assert code == 0
    proposal = json.loads((runs_dir / "run-1" / "merge-proposal.json").read_text())
    assert proposal["mergeOrder"][0]["laneId"] == "a"
    assert proposal["warnings"][0]["kind"] == "no_commits"


@pytest.mark.asyncio
async def test_merge_conflict_exits_nonzero():
    orchestrator = MagicMock()
    orchestrator.execute_merge = AsyncMock(
        return_value=MergeResult(
            False,
            "Merge conflict in lane y",
            code="conflict",
            merged_lanes=["x"],
            conflict=ConflictInfo(lane_id="y", branch="lane/y", conflicting_files=["src/a.ts"]),
        )
    )

    assert await _merge(orchestrator, ["run-1"]) == 1


def _fake_orchestrator(final_status):
    orchestrator = MagicMock()
    orchestrator.shutdown_requested = asyncio.Event()
    orchestrator.start_run = AsyncMock(return_value=OperationResult(True))
    orchestrator.wait_for_run = AsyncMock(return_value=final_status)
    orchestrator.shutdown = AsyncMock()
    orchestrator.get_run_status = MagicMock(return_value=SimpleNamespace(status=final_status))
    return orchestrator


@pytest.mark.asyncio
async def test_supervise_waits_for_runs_then_shuts_down():
    orchestrator = _fake_orchestrator("complete")

    assert await _supervise(orchestrator, ["run-1"]) == 0
    orchestrator.install_signal_handlers.assert_called_once()
    orchestrator.shutdown.assert_awaited_once()


@pytest.mark.asyncio
async def test_supervise_reports_failed_runs():
    orchestrator = _fake_orchestrator("failed")

    assert await _supervise(orchestrator, ["run-1"]) == 1


@pytest.mark.asyncio
async def test_supervise_with_no_startable_runs():
    orchestrator = _fake_orchestrator("complete")
    orchestrator.start_run = AsyncMock(return_value=OperationResult(False, "missing", code="not_found"))

    assert await _supervise(orchestrator, ["ghost"]) == 1
    orchestrator.shutdown.assert_not_awaited()
