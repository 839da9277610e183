"""Worktree file watcher - records when a lane's agent last touched its files.

One watchdog Observer serves every watched lane. Events arrive on the observer
thread, are handed to the event loop, throttled per lane and written to the
lane's ``last_activity_at`` in status.json. That timestamp is what the
inactivity signal of completion detection measures against.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch

from warroom.constants import (
    FILE_ACTIVITY_DEBOUNCE_S,
    FILE_ACTIVITY_IGNORED_DIRS,
    FILE_ACTIVITY_IGNORED_SUFFIXES,
)
from warroom.core.errors import WarroomError
from warroom.core.run_store import RunStore
from warroom.logging_config import trace
from warroom.utils import now_iso

logger = logging.getLogger(__name__)

# How often the observer thread wakes to check for stop requests
OBSERVER_TIMEOUT_S = 0.2

LaneKey = Tuple[str, str]
ActivityCallback = Callable[[str, str, List[str], str], Awaitable[None]]


def is_relevant(relative_path: str) -> bool:
    """Ignore VCS internals, dependency trees and editor scratch files."""
    path = Path(relative_path)
    if any(part in FILE_ACTIVITY_IGNORED_DIRS for part in path.parts):
        return False
    return not path.name.endswith(FILE_ACTIVITY_IGNORED_SUFFIXES)


@dataclass
class _PendingActivity:
    first_event: float
    last_seen_at: str
    paths: Set[str] = field(default_factory=set)


class _LaneHandler(FileSystemEventHandler):
    """Watchdog handler that queues file changes for one lane worktree."""

    def __init__(
        self,
        key: LaneKey,
        worktree_path: str,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue[tuple[LaneKey, str, str]],
    ) -> None:
        super().__init__()
        self._key = key
        self._root = worktree_path
        self._loop = loop
        self._queue = queue

    def _handle(self, event: FileSystemEvent) -> None:
        src = os.fsdecode(event.src_path)
        relative = os.path.relpath(src, self._root)
        if relative == "." or relative.startswith("..") or not is_relevant(relative):
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, (self._key, relative, now_iso()))
        except RuntimeError:
            pass  # Loop closed

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._handle(event)


class LaneFileWatcher:
    """Watches running lanes' worktrees and records their last file activity.

    ``watch`` and ``unwatch`` are called from the event loop. The observer and
    the consumer task start with the first watched lane.
    """

    def __init__(
        self,
        store: RunStore,
        debounce_s: float = FILE_ACTIVITY_DEBOUNCE_S,
        on_activity: Optional[ActivityCallback] = None,
    ) -> None:
        self._store = store
        self._debounce_s = debounce_s
        self._on_activity = on_activity
        self._observer: Optional[BaseObserver] = None
        self._queue: Optional[asyncio.Queue[tuple[LaneKey, str, str]]] = None
        self._consumer: Optional[asyncio.Task[None]] = None
        self._watches: Dict[LaneKey, ObservedWatch] = {}
        self._run_ids: Dict[LaneKey, str] = {}
        self._pending: Dict[LaneKey, _PendingActivity] = {}

    @property
    def watched_lanes(self) -> List[LaneKey]:
        return list(self._watches)

    def watch(self, run_slug: str, run_id: str, lane_id: str, worktree_path: str) -> bool:
        """Start recording file activity for a lane. Returns False if the path cannot be watched."""
        key = (run_slug, lane_id)
        if key in self._watches:
            return True
        if not Path(worktree_path).is_dir():
            logger.warning("Not watching lane %s: %s is not a directory", lane_id, worktree_path)
            return False

        loop = asyncio.get_running_loop()
        if self._observer is None or self._queue is None:
            self._queue = asyncio.Queue()
            observer = Observer(timeout=OBSERVER_TIMEOUT_S)
            observer.daemon = True
            observer.start()
            self._observer = observer
            self._consumer = loop.create_task(self._consume(self._queue), name="lane-file-watcher")
            logger.info("Lane file watcher started")

        handler = _LaneHandler(key, worktree_path, loop, self._queue)
        try:
            watch = self._observer.schedule(handler, worktree_path, recursive=True)
        except OSError as e:
            logger.warning("Cannot watch %s for lane %s: %s", worktree_path, lane_id, e)
            return False

        self._watches[key] = watch
        self._run_ids[key] = run_id
        logger.debug("Watching %s for lane %s", worktree_path, lane_id)
        return True

    def unwatch(self, run_slug: str, lane_id: str) -> None:
        """Stop watching a lane. Activity not yet recorded is dropped."""
        key = (run_slug, lane_id)
        watch = self._watches.pop(key, None)
        self._run_ids.pop(key, None)
        self._pending.pop(key, None)
        if watch is None or self._observer is None:
            return
        with contextlib.suppress(KeyError):
            self._observer.unschedule(watch)
        logger.debug("Stopped watching lane %s", lane_id)

    async def close(self) -> None:
        """Stop the observer and the consumer. Safe to call repeatedly."""
        consumer, observer = self._consumer, self._observer
        self._consumer = None
        self._observer = None
        self._queue = None
        self._watches.clear()
        self._run_ids.clear()
        self._pending.clear()

        if consumer is not None:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 2)
            logger.info("Lane file watcher stopped")

    async def _consume(self, queue: asyncio.Queue[tuple[LaneKey, str, str]]) -> None:
        poll_s = max(self._debounce_s / 2, 0.01)
        while True:
            try:
                key, relative, seen_at = await asyncio.wait_for(queue.get(), timeout=poll_s)
            except asyncio.TimeoutError:
                pass
            else:
                if key in self._watches:
                    pending = self._pending.get(key)
                    if pending is None:
                        pending = self._pending[key] = _PendingActivity(time.monotonic(), seen_at)
                    pending.last_seen_at = seen_at
                    pending.paths.add(relative)

            # At most one status.json write per lane per debounce window.
            now = time.monotonic()
            ready = [key for key, pending in self._pending.items() if now - pending.first_event >= self._debounce_s]
            for key in ready:
                await self._record(key, self._pending.pop(key))

    async def _record(self, key: LaneKey, pending: _PendingActivity) -> None:
        run_slug, lane_id = key
        run_id = self._run_ids.get(key)
        if run_id is None:
            return
        try:
            async with self._store.update_status(run_slug, run_id) as doc:
                doc.entry(lane_id).last_activity_at = pending.last_seen_at
        except (OSError, WarroomError) as e:
            logger.error("Failed to record file activity for lane %s: %s", lane_id, e)
            return

        trace(logger, "Lane %s touched %d files", lane_id, len(pending.paths))
        if self._on_activity is not None:
            await self._on_activity(run_slug, lane_id, sorted(pending.paths), pending.last_seen_at)
