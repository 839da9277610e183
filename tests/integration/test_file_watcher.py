"""Worktree file watching against a real filesystem observer."""

import asyncio

import pytest

from tests.conftest import make_lane, make_plan, write_run
from warroom.core.file_watcher import LaneFileWatcher, is_relevant
from warroom.core.run_store import RunStore

RUN = "run-1"
RUN_ID = "id-run-1"
OLD = "2020-01-01T00:00:00+00:00"


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


@pytest.fixture
def worktree(tmp_path):
    path = tmp_path / "worktrees" / "A"
    for sub in ("src", ".git", "node_modules/pkg"):
        (path / sub).mkdir(parents=True)
    status = {"runId": RUN_ID, "lanes": {"A": {"status": "in_progress", "lastActivityAt": OLD}}}
    write_run(tmp_path / "runs", make_plan(RUN, str(tmp_path / "repo"), [make_lane("A", str(path))]), status)
    return path


def _last_activity(store: RunStore) -> str:
    return store.load_status(RUN, RUN_ID).lanes["A"].last_activity_at


@pytest.mark.parametrize(
    "path,expected",
    [
        ("src/app.py", True),
        (".git/index", False),
        ("web/node_modules/react/index.js", False),
        ("src/.app.py.swp", False),
        ("notes.txt~", False),
    ],
)
def test_is_relevant(path, expected):
    assert is_relevant(path) is expected


@pytest.mark.asyncio
async def test_file_changes_update_last_activity(tmp_path, worktree):
    store = RunStore(tmp_path / "runs")
    calls = []

    async def on_activity(run_slug, lane_id, paths, last_activity_at):
        calls.append((lane_id, paths, last_activity_at))

    watcher = LaneFileWatcher(store, debounce_s=0.05, on_activity=on_activity)
    try:
        assert watcher.watch(RUN, RUN_ID, "A", str(worktree))
        assert watcher.watched_lanes == [(RUN, "A")]

        (worktree / "src" / "app.py").write_text("print('hi')\n")
        await wait_until(lambda: bool(calls))

        lane_id, paths, last_activity_at = calls[0]
        assert lane_id == "A"
        assert paths == ["src/app.py"]
        assert _last_activity(store) == last_activity_at
        assert last_activity_at > OLD
    finally:
        await watcher.close()


@pytest.mark.asyncio
async def test_vcs_and_dependency_churn_is_not_activity(tmp_path, worktree):
    store = RunStore(tmp_path / "runs")
    calls = []

    async def on_activity(run_slug, lane_id, paths, last_activity_at):
        calls.append(paths)

    watcher = LaneFileWatcher(store, debounce_s=0.05, on_activity=on_activity)
    try:
        watcher.watch(RUN, RUN_ID, "A", str(worktree))
        (worktree / ".git" / "index").write_text("x")
        (worktree / "node_modules" / "pkg" / "index.js").write_text("x")
        (worktree / "src" / "scratch.tmp").write_text("x")
        await asyncio.sleep(0.3)

        assert calls == []
        assert _last_activity(store) == OLD
    finally:
        await watcher.close()


@pytest.mark.asyncio
async def test_unwatched_lane_is_no_longer_recorded(tmp_path, worktree):
    store = RunStore(tmp_path / "runs")
    calls = []

    async def on_activity(run_slug, lane_id, paths, last_activity_at):
        calls.append(paths)

    watcher = LaneFileWatcher(store, debounce_s=0.05, on_activity=on_activity)
    try:
        watcher.watch(RUN, RUN_ID, "A", str(worktree))
        watcher.unwatch(RUN, "A")
        assert watcher.watched_lanes == []

        (worktree / "src" / "late.py").write_text("x")
        await asyncio.sleep(0.3)

        assert calls == []
        assert _last_activity(store) == OLD
    finally:
        await watcher.close()
    # Closing twice is harmless.
    await watcher.close()


@pytest.mark.asyncio
async def test_missing_worktree_is_not_watched(tmp_path):
    watcher = LaneFileWatcher(RunStore(tmp_path / "runs"))

    assert not watcher.watch(RUN, RUN_ID, "A", str(tmp_path / "gone"))
    assert watcher.watched_lanes == []
    await watcher.close()
