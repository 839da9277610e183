"""Merge, proposal and cleanup flows against real git repositories."""

import json
from unittest.mock import MagicMock

import pytest

from tests.conftest import make_lane, make_plan, write_run
from tests.integration.conftest import git, lane_branch
from warroom.config.schema import PathsConfig, WarroomConfig
from warroom.core import git as git_adapter
from warroom.core.git_operations import abort_merge, auto_commit_lane_work
from warroom.core.merge_engine import generate_merge_proposal, merge_lanes
from warroom.core.orchestrator import LaneOrchestrator
from warroom.core.run_documents import Lane, Plan, StatusDocument
from warroom.core.run_store import RunStore

INTEGRATION = "warroom/integration"


def _lane(lane_id: str) -> Lane:
    return Lane(lane_id=lane_id, branch=f"lane/{lane_id}", worktree_path=f"/unused/{lane_id}")


@pytest.mark.asyncio
async def test_overlapping_lane_conflicts_and_halts_merge(repo):
    lane_branch(repo, "lane/x", {"src/a.ts": "export const a = 'x';\n"})
    lane_branch(repo, "lane/y", {"src/a.ts": "export const a = 'y';\n"})
    lane_branch(repo, "lane/z", {"src/z.ts": "export const z = 1;\n"})
    progress = []

    async def on_progress(lane_id, status, detail):
        progress.append((lane_id, status))

    result = await merge_lanes(str(repo), INTEGRATION, [_lane("x"), _lane("y"), _lane("z")], "merge", on_progress)

    assert not result.success
    assert result.merged_lanes == ["x"]
    assert result.conflict is not None
    assert result.conflict.lane_id == "y"
    assert result.conflict.conflicting_files == ["src/a.ts"]
    assert ("z", "merging") not in progress
    assert await git_adapter.get_current_branch(repo) == INTEGRATION
    assert await git_adapter.unmerged_files(repo) == ["src/a.ts"]
    assert not await git_adapter.is_branch_merged(repo, "lane/z", INTEGRATION)

    aborted = await abort_merge(str(repo))

    assert aborted.success
    assert await git_adapter.unmerged_files(repo) == []
    assert await git_adapter.is_branch_merged(repo, "lane/x", INTEGRATION)


@pytest.mark.asyncio
async def test_squash_merge_of_independent_lanes(repo):
    lane_branch(repo, "lane/x", {"src/x.ts": "x\n"})
    lane_branch(repo, "lane/y", {"src/y.ts": "y\n"})

    result = await merge_lanes(str(repo), INTEGRATION, [_lane("x"), _lane("y")], "squash")

    assert result.success
    assert result.merged_lanes == ["x", "y"]
    assert await git_adapter.commits_ahead(repo, "main", INTEGRATION) == 2
    assert (repo / "src" / "x.ts").exists()
    assert (repo / "src" / "y.ts").exists()
    assert not await git_adapter.has_uncommitted_changes(repo)


@pytest.mark.asyncio
async def test_lane_without_commits_is_skipped(repo):
    git(repo, "branch", "lane/idle", "main")

    result = await merge_lanes(str(repo), INTEGRATION, [_lane("idle")], "merge")

    assert result.success
    assert result.skipped_lanes == ["idle"]
    assert result.merged_lanes == []


@pytest.mark.asyncio
async def test_proposal_reports_overlap_from_real_branches(repo):
    lane_branch(repo, "lane/x", {"src/a.ts": "x\n", "src/x.ts": "x\n"})
    lane_branch(repo, "lane/y", {"src/a.ts": "y\n"})
    git(repo, "branch", "lane/idle", "main")
    plan = Plan(
        run_id="id-1",
        run_slug="run-1",
        repo={"name": "repo", "path": str(repo)},
        integration_branch=INTEGRATION,
        lanes=[_lane("x"), _lane("y"), _lane("idle"), _lane("todo")],
    )
    status = StatusDocument(lanes_completed=["x", "y", "idle"])

    proposal = await generate_merge_proposal(plan, status)

    by_id = {entry.lane_id: entry for entry in proposal.merge_order}
    assert list(by_id) == ["x", "y", "idle"]
    assert by_id["x"].commits_ahead == 1
    assert sorted(by_id["x"].files_changed) == ["src/a.ts", "src/x.ts"]
    assert by_id["x"].overlapping_lanes == ["y"]
    assert by_id["y"].conflict_risk == "low"
    assert by_id["idle"].commits_ahead == 0
    kinds = {warning.kind: warning.lane_ids for warning in proposal.warnings}
    assert kinds["no_commits"] == ["idle"]
    assert kinds["incomplete_lanes"] == ["todo"]


@pytest.mark.asyncio
async def test_commit_merge_and_remove_lane_worktree(repo, tmp_path):
    worktree_root = tmp_path / "worktrees"
    worktree = worktree_root / "w"
    worktree_root.mkdir()
    git(repo, "worktree", "add", "-b", "lane/w", str(worktree), "main")

    runs_dir = tmp_path / "runs"
    write_run(
        runs_dir,
        make_plan("run-1", str(repo), [make_lane("w", str(worktree))], integration_branch=INTEGRATION),
        {"runId": "id-run-1", "lanesCompleted": ["w"]},
    )
    config = WarroomConfig(paths=PathsConfig(runs_dir=str(runs_dir), worktree_root=str(worktree_root)))
    orchestrator = LaneOrchestrator(store=RunStore(runs_dir), launcher=MagicMock(), config=config)

    (worktree / "src").mkdir(exist_ok=True)
    (worktree / "src" / "w.ts").write_text("export const w = 1;\n", encoding="utf-8")

    blocked = await orchestrator.remove_worktree("run-1", "w")
    assert not blocked.success
    assert blocked.code == "unsafe"
    assert blocked.safety.has_uncommitted_changes

    commit = await auto_commit_lane_work(str(worktree), "w")
    assert commit.committed
    assert commit.files_changed == 1
    assert commit.commit_message == "feat(w): Auto-commit lane work"

    merged = await orchestrator.execute_merge("run-1")
    assert merged.success
    assert merged.merged_lanes == ["w"]
    status = json.loads((runs_dir / "run-1" / "status.json").read_text())
    assert status["mergeState"]["status"] == "complete"
    assert status["mergeState"]["mergedLanes"] == ["w"]

    removed = await orchestrator.remove_worktree("run-1", "w", delete_branch=True)

    assert removed.success
    assert removed.branch_deleted
    assert not worktree.exists()
    assert not await git_adapter.branch_exists(repo, "lane/w")
