"""Task registry for tracking background asyncio tasks.

Lane monitors, terminal pollers and retry timers all run as tracked tasks.
Keyed tasks let a new monitor for a lane supersede the previous one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskRegistry:
    """Registry for tracking background asyncio tasks.

    Example:
        registry = TaskRegistry()
        registry.spawn_keyed(("run-1", "lane-a", "poll"), poll_window(), name="poll-lane-a")
        registry.cancel_keyed(("run-1", "lane-a", "poll"))
        await registry.shutdown(timeout=5.0)
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[object]] = set()
        self._keyed: dict[Hashable, asyncio.Task[object]] = {}

    def _on_task_done(self, task: asyncio.Task[object]) -> None:
        """Drop the finished task and log any exception it raised."""
        self._tasks.discard(task)
        for key, keyed_task in list(self._keyed.items()):
            if keyed_task is task:
                del self._keyed[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)

    def spawn(self, coro: Coroutine[object, object, T], name: str | None = None) -> asyncio.Task[T]:
        """Spawn a tracked background task.

        Args:
            coro: Coroutine to execute as a background task
            name: Optional name for the task (useful for debugging)

        Returns:
            The created asyncio.Task that is being tracked
        """
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)  # type: ignore[arg-type]
        task.add_done_callback(self._on_task_done)  # type: ignore[arg-type]
        logger.debug("Spawned tracked task: %s (total: %d)", name or f"<unnamed-{id(task)}>", len(self._tasks))
        return task

    def spawn_keyed(
        self, key: Hashable, coro: Coroutine[object, object, T], name: str | None = None
    ) -> asyncio.Task[T]:
        """Spawn a task under ``key``, cancelling any task already held there."""
        self.cancel_keyed(key)
        task = self.spawn(coro, name=name)
        self._keyed[key] = task  # type: ignore[assignment]
        return task

    def cancel_keyed(self, key: Hashable) -> bool:
        """Cancel the task under ``key``. Returns False if there was none."""
        task = self._keyed.pop(key, None)
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            # A task superseding itself just drops its key.
            return False
        task.cancel()
        return True

    def has_keyed(self, key: Hashable) -> bool:
        task = self._keyed.get(key)
        return task is not None and not task.done()

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel all tracked tasks and wait up to ``timeout`` seconds for them."""
        if not self._tasks:
            logger.debug("No tasks to shutdown")
            return

        task_count = len(self._tasks)
        logger.info("Shutting down %d tracked tasks (timeout=%.1fs)", task_count, timeout)
        current = asyncio.current_task()
        pending_tasks = [task for task in self._tasks if task is not current]
        for task in pending_tasks:
            if not task.done():
                task.cancel()

        if not pending_tasks:
            return
        _, pending = await asyncio.wait(pending_tasks, timeout=timeout)
        if pending:
            logger.warning(
                "Shutdown timeout: %d/%d tasks still pending after %.1fs", len(pending), task_count, timeout
            )
            for task in pending:
                logger.warning("Pending task: %s", task.get_name())

    def task_count(self) -> int:
        return len(self._tasks)
