"""Unit tests for TaskRegistry."""

import asyncio
from unittest.mock import patch

import pytest

from warroom.core.task_registry import TaskRegistry


@pytest.mark.asyncio
async def test_spawn_tracks_task():
    """Test that spawn() creates and tracks a task."""
    registry = TaskRegistry()
    ready = asyncio.Event()

    async def dummy_coro():
        await ready.wait()
        return "done"

    task = registry.spawn(dummy_coro(), name="test-task")

    assert registry.task_count() == 1
    assert not task.done()

    ready.set()
    assert await task == "done"


@pytest.mark.asyncio
async def test_spawn_auto_cleanup_on_completion():
    """Completed tasks are removed from the registry by the done callback."""
    registry = TaskRegistry()

    async def quick_coro():
        return "quick"

    task = registry.spawn(quick_coro(), name="quick-task")
    await task
    await asyncio.sleep(0)

    assert registry.task_count() == 0


@pytest.mark.asyncio
async def test_spawn_keyed_supersedes_previous_task():
    registry = TaskRegistry()
    blocker = asyncio.Event()

    async def poll():
        await blocker.wait()

    first = registry.spawn_keyed(("run-1", "lane-a", "poll"), poll(), name="poll-1")
    second = registry.spawn_keyed(("run-1", "lane-a", "poll"), poll(), name="poll-2")
    await asyncio.sleep(0)

    assert first.cancelled()
    assert not second.done()
    assert registry.has_keyed(("run-1", "lane-a", "poll"))

    assert registry.cancel_keyed(("run-1", "lane-a", "poll"))
    assert not registry.cancel_keyed(("run-1", "lane-a", "poll"))
    await asyncio.sleep(0)
    assert second.cancelled()
    assert not registry.has_keyed(("run-1", "lane-a", "poll"))


@pytest.mark.asyncio
async def test_task_cancelling_its_own_key_keeps_running():
    registry = TaskRegistry()
    key = ("run-1", "lane-a", "retry")

    async def retry_timer():
        await asyncio.sleep(0)
        cancelled = registry.cancel_keyed(key)
        await asyncio.sleep(0)
        return cancelled

    task = registry.spawn_keyed(key, retry_timer(), name="retry")

    assert await task is False
    assert not registry.has_keyed(key)


@pytest.mark.asyncio
async def test_keyed_entry_dropped_when_task_finishes():
    registry = TaskRegistry()

    async def quick():
        return None

    task = registry.spawn_keyed("k", quick())
    await task
    await asyncio.sleep(0)

    assert not registry.has_keyed("k")


@pytest.mark.asyncio
async def test_shutdown_cancels_pending_tasks():
    registry = TaskRegistry()
    blocker = asyncio.Event()

    async def long_coro():
        await blocker.wait()

    tasks = [registry.spawn(long_coro(), name=f"task-{i}") for i in range(3)]

    await registry.shutdown(timeout=0.5)

    assert all(task.cancelled() for task in tasks)


@pytest.mark.asyncio
async def test_shutdown_with_no_tasks():
    await TaskRegistry().shutdown(timeout=0.1)


@pytest.mark.asyncio
async def test_failed_task_is_logged():
    registry = TaskRegistry()

    async def boom():
        raise RuntimeError("monitor crashed")

    with patch("warroom.core.task_registry.logger") as mock_logger:
        task = registry.spawn(boom(), name="boom")
        with pytest.raises(RuntimeError):
            await task
        await asyncio.sleep(0)

    mock_logger.error.assert_called_once()
    assert "boom" in mock_logger.error.call_args.args
