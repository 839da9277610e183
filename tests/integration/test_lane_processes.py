"""Lane processes driven as real children of the test process."""

import asyncio
import json
import shutil
import signal

import pytest

from tests.conftest import make_lane, make_plan, write_run
from warroom.config.schema import CompletionConfig, OrchestratorConfig, PathsConfig, TerminalConfig, WarroomConfig
from warroom.core.launcher import LaneLauncher
from warroom.core.orchestrator import LaneOrchestrator
from warroom.core.output_buffer import OutputBufferManager
from warroom.core.run_documents import Lane
from warroom.core.run_store import RunStore

RUN = "run-1"

pytestmark = pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")


def _launcher(agent_command: str, buffers: OutputBufferManager) -> LaneLauncher:
    return LaneLauncher(OrchestratorConfig(agent_command=agent_command), TerminalConfig(backend="tmux"), buffers)


def _lane(tmp_path) -> Lane:
    worktree = tmp_path / "worktrees" / "A"
    worktree.mkdir(parents=True)
    return Lane(lane_id="A", branch="lane/A", worktree_path=str(worktree))


@pytest.mark.asyncio
async def test_output_from_both_streams_reaches_the_buffers(tmp_path):
    buffers = OutputBufferManager()
    launcher = _launcher("sh -c 'echo out-line; echo err-line >&2; echo \"$WARROOM_LANE_ID\"'", buffers)
    seen = []

    async def on_line(run_slug, lane_id, line):
        seen.append((line.stream, line.content))

    handle = await launcher.launch_process(RUN, _lane(tmp_path))
    await launcher.pump_output(RUN, "A", handle, on_line)

    assert await handle.wait() == 0
    assert ("stdout", "out-line") in seen
    assert ("stderr", "err-line") in seen
    assert ("stdout", "A") in seen
    contents = [line.content for line in buffers.get_recent_lines(RUN, "A", 10)]
    assert "out-line" in contents
    assert "err-line" in contents


@pytest.mark.asyncio
async def test_stop_escalates_to_sigkill_when_sigterm_is_ignored(tmp_path):
    launcher = _launcher("sh -c 'trap \"\" TERM; echo ready; exec sleep 30'", OutputBufferManager())
    handle = await launcher.launch_process(RUN, _lane(tmp_path))

    assert await asyncio.wait_for(handle.process.stdout.readline(), timeout=2) == b"ready\n"
    await handle.stop(grace_s=0.2)

    assert handle.process.returncode == -signal.SIGKILL


@pytest.mark.asyncio
async def test_stop_returns_once_sigterm_is_honoured(tmp_path):
    launcher = _launcher("sh -c 'echo ready; exec sleep 30'", OutputBufferManager())
    handle = await launcher.launch_process(RUN, _lane(tmp_path))

    await asyncio.wait_for(handle.process.stdout.readline(), timeout=2)
    await handle.stop(grace_s=2)

    assert handle.process.returncode == -signal.SIGTERM


@pytest.mark.asyncio
async def test_lane_completes_when_a_background_child_keeps_stdout_open(tmp_path):
    """The agent exits at once; the sleep it leaves behind holds the pipe for 3s."""
    runs_dir = tmp_path / "runs"
    worktree = tmp_path / "worktrees" / "A"
    worktree.mkdir(parents=True)
    write_run(runs_dir, make_plan(RUN, str(tmp_path / "repo"), [make_lane("A", str(worktree))]))

    config = WarroomConfig(
        paths=PathsConfig(runs_dir=str(runs_dir), worktree_root=str(tmp_path / "worktrees")),
        orchestrator=OrchestratorConfig(
            agent_command="sh -c 'sleep 3 & echo started; exit 0'",
            auto_commit_on_complete=False,
            completion_check_interval_s=3600,
            output_drain_timeout_s=0.2,
        ),
        completion=CompletionConfig(watch_worktrees=False),
    )
    buffers = OutputBufferManager()
    orch = LaneOrchestrator(
        store=RunStore(runs_dir),
        launcher=LaneLauncher(config.orchestrator, config.terminal, buffers),
        output_buffers=buffers,
        config=config,
    )

    await orch.start_run(RUN)
    loop = asyncio.get_running_loop()
    started = loop.time()
    assert await orch.wait_for_run(RUN, timeout=2.5) == "complete"

    assert loop.time() - started < 2.5
    assert [line.content for line in buffers.get_recent_lines(RUN, "A", 10)] == ["started"]
    status = json.loads((runs_dir / RUN / "status.json").read_text())
    assert status["lanesCompleted"] == ["A"]
    await orch.shutdown()
