"""Lane orchestrator - dependency-aware scheduling of a run's lanes.

One orchestrator instance supervises every active run in the process. For each
run it launches lanes whose dependencies are complete, watches them until they
exit (process mode) or their window closes (terminal mode), records outcomes in
status.json and re-evaluates which lanes can start next.

Runtime state lives in memory only. status.json is the source of truth for
which lanes are complete; the in-memory state is a cache of what is running
right now and is rebuilt from disk on every ``start_run``.
"""

import asyncio
import contextlib
import logging
import signal
from typing import Callable, Dict, List, Optional, Sequence

from warroom.config.schema import WarroomConfig
from warroom.core import git, merge_engine, worktree_cleanup
from warroom.core.completion_detector import CompletionCheckResult, CompletionRules, detect_lane_completion
from warroom.core.errors import (
    LaunchError,
    PlanLoadError,
    RunNotFoundError,
    UnsupportedOperationError,
    WarroomError,
)
from warroom.core.event_bus import EventBus
from warroom.core.events import (
    LaneActivityContext,
    LaneFileActivityContext,
    LaneProgressContext,
    LaneStatusChangeContext,
    MergeProgressContext,
    RetryScheduledContext,
    RunStatusContext,
    WarroomEvents,
)
from warroom.core.file_watcher import LaneFileWatcher
from warroom.core.git_operations import (
    abort_merge,
    auto_commit_lane_work,
    push_integration_branch,
    push_lane_branch,
    worktree_exists,
)
from warroom.core.history import HistoryEventType
from warroom.core.lane_handles import ProcessHandle, TerminalHandle
from warroom.core.launcher import LaneLauncher
from warroom.core.merge_engine import MergeProgressStatus
from warroom.core.models import (
    ACTIVE_LANE_STATUSES,
    TERMINAL_LANE_STATUSES,
    LaneRuntimeState,
    LaneRuntimeStatus,
    MergeResult,
    OperationResult,
    OrchestratorStatus,
    ProposalResult,
    RunOrchestrationState,
    RunStatus,
    WorktreeRemovalResult,
)
from warroom.core.output_buffer import OutputBufferManager, OutputLine, parse_progress
from warroom.core.retry import RetryDecision, RetryEngine, RetryPolicy
from warroom.core.run_documents import Lane, MergeMethod, MergeState, Plan, PushState, StatusDocument
from warroom.core.run_store import RunStore
from warroom.core.task_registry import TaskRegistry
from warroom.logging_config import trace
from warroom.utils import now_iso, parse_iso, strip_ansi_codes

logger = logging.getLogger(__name__)

# Extra time a lane stop may take beyond the SIGTERM grace period
# (terminal backends need to talk to tmux or AppleScript).
STOP_TIMEOUT_SLACK_S = 10.0


class LaneOrchestrator:  # pylint: disable=too-many-public-methods
    """Supervises lanes for every active run.

    Public operations return ``OperationResult`` values; expected failures
    (unknown run, invalid state, git errors) never raise.
    """

    def __init__(
        self,
        store: RunStore,
        launcher: LaneLauncher,
        output_buffers: Optional[OutputBufferManager] = None,
        event_bus: Optional[EventBus] = None,
        retry_engine: Optional[RetryEngine] = None,
        config: Optional[WarroomConfig] = None,
        tasks: Optional[TaskRegistry] = None,
        file_watcher: Optional[LaneFileWatcher] = None,
    ) -> None:
        self._config = config or WarroomConfig()
        self._store = store
        self._launcher = launcher
        self._buffers = output_buffers or OutputBufferManager()
        self.events = event_bus or EventBus()
        self._retry = retry_engine or RetryEngine(
            RetryPolicy(
                max_attempts=self._config.retry.max_attempts,
                base_delay_s=self._config.retry.base_delay_s,
                max_delay_s=self._config.retry.max_delay_s,
            )
        )
        self._tasks = tasks or TaskRegistry()
        self._completion_rules = CompletionRules(
            marker_files=tuple(self._config.completion.marker_files),
            inactivity_threshold_s=self._config.completion.inactivity_threshold_s,
            commit_subject_window=self._config.completion.commit_subject_window,
        )
        if file_watcher is None and self._config.completion.watch_worktrees:
            file_watcher = LaneFileWatcher(
                store,
                debounce_s=self._config.completion.file_activity_debounce_s,
                on_activity=self._on_file_activity,
            )
        self._file_watcher = file_watcher

        self._runs: Dict[str, RunOrchestrationState] = {}
        self._run_done: Dict[str, asyncio.Event] = {}
        self._merge_locks: Dict[str, asyncio.Lock] = {}
        self._stop_tasks: Dict[str, asyncio.Task[OperationResult]] = {}

        self._is_shutting_down = False
        self._shutdown_task: Optional[asyncio.Task[None]] = None
        self._signals_installed = False
        self.shutdown_requested = asyncio.Event()

    @classmethod
    def from_config(cls, config: WarroomConfig) -> "LaneOrchestrator":
        """Wire the default collaborators from configuration."""
        buffers = OutputBufferManager(
            max_lines=config.output.max_lines,
            max_errors=config.output.max_errors,
            max_warnings=config.output.max_warnings,
        )
        return cls(
            store=RunStore(config.paths.runs_dir),
            launcher=LaneLauncher(config.orchestrator, config.terminal, buffers),
            output_buffers=buffers,
            config=config,
        )

    @property
    def output_buffers(self) -> OutputBufferManager:
        return self._buffers

    @property
    def is_shutting_down(self) -> bool:
        return self._is_shutting_down

    # --- helpers -----------------------------------------------------------

    def _history(
        self,
        run_slug: str,
        event_type: HistoryEventType,
        message: str,
        lane_id: Optional[str] = None,
        details: Optional[Dict[str, object]] = None,
    ) -> None:
        self._store.history(run_slug).append(event_type, message, lane_id=lane_id, details=details)

    async def _emit_lane_status(
        self, run_slug: str, state: LaneRuntimeState, previous: LaneRuntimeStatus
    ) -> None:
        await self.events.emit(
            WarroomEvents.LANE_STATUS_CHANGE,
            LaneStatusChangeContext(
                run_slug=run_slug,
                lane_id=state.lane_id,
                previous_status=previous,
                status=state.status,
                exit_code=state.exit_code,
                error=state.error,
            ),
        )

    async def _set_run_status(self, run: RunOrchestrationState, status: RunStatus) -> None:
        run.status = status
        await self.events.emit(
            WarroomEvents.RUN_STATUS_CHANGE, RunStatusContext(run_slug=run.run_slug, status=status)
        )

    async def _persist_run_status(self, run: RunOrchestrationState, status: str) -> None:
        try:
            async with self._store.update_status(run.run_slug, run.plan.run_id) as doc:
                doc.status = status
        except (OSError, WarroomError) as e:
            logger.error("Failed to record run %s as %s: %s", run.run_slug, status, e)

    def _load_plan_and_status(self, run_slug: str) -> tuple[Plan, StatusDocument]:
        run = self._runs.get(run_slug)
        plan = run.plan if run else self._store.load_plan(run_slug)
        return plan, self._store.load_status(run_slug, plan.run_id)

    # --- run lifecycle ------------------------------------------------------

    async def start_run(self, run_slug: str) -> OperationResult:
        """Begin orchestrating a run and launch every lane that is ready.

        Lanes already complete in status.json are not launched again.
        """
        if self._is_shutting_down:
            return OperationResult(False, "Orchestrator is shutting down", code="shutting_down")

        existing = self._runs.get(run_slug)
        if existing and existing.status in ("starting", "running", "stopping"):
            return OperationResult(False, f"Run {run_slug} is already {existing.status}", code="already_running")

        try:
            plan = self._store.load_plan(run_slug)
            status = self._store.load_status(run_slug, plan.run_id)
        except RunNotFoundError as e:
            return OperationResult(False, str(e), code="not_found")
        except (PlanLoadError, WarroomError) as e:
            return OperationResult(False, str(e), code="invalid_run")

        completed = status.completed_lane_ids()
        run = RunOrchestrationState(run_slug=run_slug, plan=plan, status="starting", started_at=now_iso())
        for lane in plan.lanes:
            run.lanes[lane.lane_id] = LaneRuntimeState(
                lane_id=lane.lane_id, status="complete" if lane.lane_id in completed else "pending"
            )

        for warning in merge_engine.topological_sort(plan.lanes).cycle_warnings():
            run.warnings.append(warning.message)
        for lane in plan.lanes:
            unknown = [dep for dep in lane.depends_on if plan.lane(dep) is None]
            if unknown:
                run.warnings.append(f"Lane {lane.lane_id} depends on unknown lane(s) {', '.join(unknown)}")
        for message in run.warnings:
            logger.warning("Run %s: %s", run_slug, message)

        self._runs[run_slug] = run
        self._run_done[run_slug] = asyncio.Event()

        try:
            async with self._store.update_status(run_slug, plan.run_id) as doc:
                doc.status = "running"
                for lane in plan.lanes:
                    doc.entry(lane.lane_id)
        except (OSError, WarroomError) as e:
            run.status = "failed"
            self._run_done[run_slug].set()
            return OperationResult(False, f"Failed to write status for run {run_slug}: {e}", code="io_error")

        self._history(run_slug, "mission_started", f"Run started with {len(plan.lanes)} lanes")
        logger.info("Starting run %s (%d lanes, %d already complete)", run_slug, len(plan.lanes), len(completed))
        await self._set_run_status(run, "running")

        self._tasks.spawn_keyed(
            (run_slug, "completion"), self._completion_loop(run_slug), name=f"completion-{run_slug}"
        )
        await self._start_ready_lanes(run)
        await self._check_run_finished(run)
        return OperationResult(True)

    async def start_ready_lanes(self, run_slug: str) -> List[str]:
        """Launch every pending lane whose dependencies are complete.

        Idempotent: a lane that is already starting or running is never
        launched twice.

        Returns:
            Lane ids launched by this call.
        """
        run = self._runs.get(run_slug)
        if run is None:
            return []
        return await self._start_ready_lanes(run)

    async def _start_ready_lanes(self, run: RunOrchestrationState) -> List[str]:
        if run.status != "running" or self._is_shutting_down:
            return []

        try:
            completed = self._store.load_status(run.run_slug, run.plan.run_id).completed_lane_ids()
        except WarroomError as e:
            logger.error("Cannot read status for run %s: %s", run.run_slug, e)
            completed = set()
        completed |= {lane_id for lane_id, state in run.lanes.items() if state.status == "complete"}

        # Claim every ready lane before the first await so concurrent
        # evaluations cannot launch the same lane twice.
        ready: List[Lane] = []
        for lane in run.plan.lanes:
            state = run.lanes.get(lane.lane_id)
            if state is None or state.status != "pending":
                continue
            if all(dep in completed for dep in lane.depends_on) and state.transition("starting"):
                state.started_at = now_iso()
                state.stopped_at = None
                state.exit_code = None
                state.error = None
                ready.append(lane)

        if ready:
            logger.info("Run %s: launching %s", run.run_slug, ", ".join(lane.lane_id for lane in ready))
            await asyncio.gather(*(self._start_lane(run, lane) for lane in ready))
        return [lane.lane_id for lane in ready]

    async def _start_lane(self, run: RunOrchestrationState, lane: Lane) -> None:
        slug = run.run_slug
        state = run.lanes[lane.lane_id]

        try:
            entry = self._store.load_status(slug, run.plan.run_id).lanes.get(lane.lane_id)
        except WarroomError:
            entry = None
        if entry is not None and entry.autonomy is not None:
            lane = lane.model_copy(update={"autonomy": entry.autonomy})

        try:
            if self._config.orchestrator.launch_mode == "terminal":
                handle = await self._launcher.launch_terminal(slug, lane)
            else:
                handle = await self._launcher.launch_process(slug, lane)
        except LaunchError as e:
            logger.error("Failed to launch lane %s: %s", lane.lane_id, e)
            await self._finish_lane(run, lane.lane_id, exit_code=None, error=str(e))
            return

        if state.status != "starting":
            logger.info("Lane %s was stopped while launching, closing it", lane.lane_id)
            await handle.stop(self._config.orchestrator.stop_grace_s)
            return

        state.handle = handle
        state.transition("running")

        commits = await git.commit_count(lane.worktree_path)
        try:
            async with self._store.update_status(slug, run.plan.run_id) as doc:
                doc_entry = doc.entry(lane.lane_id)
                doc_entry.status = "in_progress"
                doc_entry.launch_mode = handle.kind
                doc_entry.commits_at_launch = commits
                doc_entry.last_activity_at = now_iso()
                doc_entry.completion_detection = None
        except (OSError, WarroomError) as e:
            logger.error("Failed to record launch of lane %s: %s", lane.lane_id, e)

        if self._file_watcher is not None:
            self._file_watcher.watch(slug, run.plan.run_id, lane.lane_id, lane.worktree_path)
        self._history(slug, "lane_launched", f"Lane launched in {handle.kind} mode", lane_id=lane.lane_id)
        await self._emit_lane_status(slug, state, "pending")

        if handle.kind == "process":
            self._tasks.spawn_keyed(
                (slug, lane.lane_id, "monitor"),
                self._monitor_process(run, lane.lane_id, handle),
                name=f"monitor-{slug}-{lane.lane_id}",
            )
        else:
            self._tasks.spawn_keyed(
                (slug, lane.lane_id, "poll"),
                self._poll_terminal(run, lane.lane_id, handle),
                name=f"poll-{slug}-{lane.lane_id}",
            )

    async def _monitor_process(self, run: RunOrchestrationState, lane_id: str, handle: ProcessHandle) -> None:
        """Finish the lane when its process exits, whether or not its output has closed.

        A background child of the agent can inherit stdout/stderr and hold them
        open after the agent itself exits. Output is drained for a bounded time
        after the exit, then the readers are cancelled.
        """
        reader = asyncio.create_task(
            self._launcher.pump_output(run.run_slug, lane_id, handle, on_line=self._on_output_line),
            name=f"output-{run.run_slug}-{lane_id}",
        )
        try:
            exit_code = await handle.wait()
            drain_s = self._config.orchestrator.output_drain_timeout_s
            done, _ = await asyncio.wait({reader}, timeout=drain_s)
            if not done:
                logger.info("Lane %s exited but its output is still open after %.1fs; detaching", lane_id, drain_s)
            elif reader.exception() is not None:
                logger.error("Output reader for lane %s failed: %s", lane_id, reader.exception())
        finally:
            if not reader.done():
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader

        logger.info("Lane %s exited with code %s", lane_id, exit_code)
        await self._finish_lane(run, lane_id, exit_code=exit_code)

    async def _poll_terminal(self, run: RunOrchestrationState, lane_id: str, handle: TerminalHandle) -> None:
        """Treat a window the backend reports closed as a successful exit.

        A backend that cannot tell (automation failure, missing binary) changes
        nothing; polling continues.
        """
        interval = self._config.orchestrator.terminal_poll_interval_s
        state = run.lanes[lane_id]
        while state.status in ACTIVE_LANE_STATUSES and state.handle is handle:
            await asyncio.sleep(interval)
            if state.status not in ACTIVE_LANE_STATUSES or state.handle is not handle:
                return
            trace(logger, "Polling %s window %s for lane %s", handle.backend, handle.window_id, lane_id)
            window = await handle.window_state()
            if window == "unknown":
                logger.warning("Could not determine whether the window for lane %s is open; will retry", lane_id)
                continue
            if window == "closed":
                logger.info("Window for lane %s closed", lane_id)
                await self._finish_lane(run, lane_id, exit_code=0)
                return

    async def _on_output_line(self, run_slug: str, lane_id: str, line: OutputLine) -> None:
        await self.events.emit(
            WarroomEvents.LANE_ACTIVITY,
            LaneActivityContext(
                run_slug=run_slug,
                lane_id=lane_id,
                stream=line.stream,
                content=line.content,
                line_number=line.line_number,
            ),
        )
        progress = parse_progress(strip_ansi_codes(line.content))
        if progress is not None:
            await self.events.emit(
                WarroomEvents.LANE_PROGRESS,
                LaneProgressContext(
                    run_slug=run_slug,
                    lane_id=lane_id,
                    progress_type=progress.type,
                    value=progress.value,
                    total=progress.total,
                ),
            )

    async def _on_file_activity(self, run_slug: str, lane_id: str, paths: List[str], last_activity_at: str) -> None:
        await self.events.emit(
            WarroomEvents.LANE_FILE_ACTIVITY,
            LaneFileActivityContext(
                run_slug=run_slug, lane_id=lane_id, paths=paths, last_activity_at=last_activity_at
            ),
        )

    def _unwatch(self, run_slug: str, lane_id: str) -> None:
        if self._file_watcher is not None:
            self._file_watcher.unwatch(run_slug, lane_id)

    async def _finish_lane(
        self,
        run: RunOrchestrationState,
        lane_id: str,
        exit_code: Optional[int],
        error: Optional[str] = None,
        success: Optional[bool] = None,
        keep_handle: bool = False,
    ) -> None:
        """Record a lane outcome, then re-evaluate the run.

        Args:
            run: Owning run.
            lane_id: Lane that finished.
            exit_code: Process exit code, or None if there was no process exit.
            error: Launch or runtime error text.
            success: Override for the outcome; defaults to ``exit_code == 0``.
            keep_handle: Leave the handle attached (auto-detected completion
                while the agent is still open) so a later stop can close it.
        """
        state = run.lanes.get(lane_id)
        if state is None or state.status not in ACTIVE_LANE_STATUSES:
            return
        if run.status in ("stopping", "stopped"):
            state.exit_code = exit_code
            return

        slug = run.run_slug
        previous = state.status
        succeeded = success if success is not None else (exit_code == 0 and error is None)
        if not state.transition("complete" if succeeded else "failed"):
            return
        self._unwatch(slug, lane_id)
        state.exit_code = exit_code
        state.error = None if succeeded else (error or f"Exited with code {exit_code}")
        state.stopped_at = now_iso()
        attempt_started_at = state.started_at
        if not keep_handle:
            state.handle = None
        self._tasks.cancel_keyed((slug, lane_id, "poll"))

        await self._emit_lane_status(slug, state, previous)

        lane = run.plan.lane(lane_id)
        if (
            succeeded
            and lane is not None
            and self._config.orchestrator.auto_commit_on_complete
            and worktree_exists(lane.worktree_path)
        ):
            commit = await auto_commit_lane_work(lane.worktree_path, lane_id)
            if commit.committed:
                self._history(
                    slug,
                    "commit",
                    commit.commit_message or "Auto-commit",
                    lane_id=lane_id,
                    details={"commitHash": commit.commit_hash, "filesChanged": commit.files_changed},
                )
            elif not commit.success:
                self._history(slug, "error", f"Auto-commit failed: {commit.error}", lane_id=lane_id)

        decision: Optional[RetryDecision] = None
        push_lanes = False
        try:
            async with self._store.update_status(slug, run.plan.run_id) as doc:
                entry = doc.entry(lane_id)
                entry.status = "complete" if succeeded else "failed"
                if succeeded and lane_id not in doc.lanes_completed:
                    doc.lanes_completed.append(lane_id)
                cost = self._buffers.get_lane_cost_tracking(slug, lane_id)
                if cost is not None:
                    entry.cost_tracking = cost
                if succeeded and entry.retry_state is not None:
                    entry.retry_state = self._retry.record_success(entry.retry_state, attempt_started_at)
                if not succeeded and self._config.retry.enabled:
                    decision = self._retry.record_failure(
                        entry.retry_state, attempt_started_at, exit_code, state.error
                    )
                    entry.retry_state = decision.state
                push_lanes = doc.pushes_lane_branches()
        except (OSError, WarroomError) as e:
            logger.error("Failed to record outcome of lane %s: %s", lane_id, e)

        self._history(
            slug,
            "lane_status_change",
            f"Lane {state.status}" + (f": {state.error}" if state.error else ""),
            lane_id=lane_id,
            details={"from": previous, "to": state.status, "exitCode": exit_code},
        )

        if succeeded and push_lanes and lane is not None:
            await self._push_lane(run, lane)
        if decision is not None:
            await self._handle_retry_decision(run, lane_id, decision)

        await self._start_ready_lanes(run)
        await self._check_run_finished(run)

    async def _push_lane(self, run: RunOrchestrationState, lane: Lane) -> None:
        slug = run.run_slug
        self._history(slug, "push_started", f"Pushing {lane.branch}", lane_id=lane.lane_id)
        result = await push_lane_branch(lane.worktree_path, lane.branch)
        push_state = PushState(
            status="success" if result.success else "failed",
            last_pushed_at=now_iso() if result.success else None,
            error=result.error,
            error_type=result.error_type,
            push_type="lane",
        )
        try:
            async with self._store.update_status(slug, run.plan.run_id) as doc:
                doc.entry(lane.lane_id).push_state = push_state
        except (OSError, WarroomError) as e:
            logger.error("Failed to record push of lane %s: %s", lane.lane_id, e)

        if result.success:
            self._history(slug, "push_complete", f"Pushed {lane.branch}", lane_id=lane.lane_id)
        else:
            self._history(
                slug,
                "push_failed",
                f"Push of {lane.branch} failed: {result.error}",
                lane_id=lane.lane_id,
                details={"errorType": result.error_type},
            )

    # --- retries ------------------------------------------------------------

    async def _handle_retry_decision(
        self, run: RunOrchestrationState, lane_id: str, decision: RetryDecision
    ) -> None:
        slug = run.run_slug
        await self.events.emit(
            WarroomEvents.RETRY_SCHEDULED,
            RetryScheduledContext(
                run_slug=slug,
                lane_id=lane_id,
                attempt=decision.state.attempt,
                max_attempts=decision.state.max_attempts,
                backoff_seconds=decision.backoff_seconds,
                next_retry_at=decision.state.next_retry_at,
                exhausted=decision.exhausted,
            ),
        )
        if decision.exhausted:
            self._history(
                slug,
                "error",
                f"Retries exhausted after {decision.state.attempt} attempts",
                lane_id=lane_id,
            )
            return

        self._history(
            slug,
            "retry_scheduled",
            f"Retry {decision.state.attempt}/{decision.state.max_attempts} in {decision.backoff_seconds:.0f}s",
            lane_id=lane_id,
            details={"nextRetryAt": decision.state.next_retry_at},
        )
        self._tasks.spawn_keyed(
            (slug, lane_id, "retry"),
            self._retry_after(run, lane_id, decision.backoff_seconds),
            name=f"retry-{slug}-{lane_id}",
        )

    async def _retry_after(self, run: RunOrchestrationState, lane_id: str, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        # Drop our own key so the run can settle if this retry fails for good.
        self._tasks.cancel_keyed((run.run_slug, lane_id, "retry"))

        state = run.lanes.get(lane_id)
        if run.status != "running" or state is None or state.status != "failed":
            return

        try:
            async with self._store.update_status(run.run_slug, run.plan.run_id) as doc:
                entry = doc.entry(lane_id)
                if entry.retry_state is not None and entry.retry_state.status == "waiting":
                    entry.retry_state = RetryEngine.mark_retrying(entry.retry_state)
        except (OSError, WarroomError) as e:
            logger.error("Failed to record retry of lane %s: %s", lane_id, e)

        self._history(run.run_slug, "retry_started", "Retrying lane", lane_id=lane_id)
        state.transition("pending")
        await self._start_ready_lanes(run)

    # --- run completion -----------------------------------------------------

    async def _check_run_finished(self, run: RunOrchestrationState) -> None:
        if run.status != "running":
            return
        if any(state.status in ACTIVE_LANE_STATUSES for state in run.lanes.values()):
            return
        if any(self._tasks.has_keyed((run.run_slug, lane_id, "retry")) for lane_id in run.lanes):
            return

        blocked = [lane_id for lane_id, state in run.lanes.items() if state.status not in TERMINAL_LANE_STATUSES]
        if blocked:
            message = f"Lanes can never start: {', '.join(blocked)}"
            run.warnings.append(message)
            logger.warning("Run %s stalled. %s", run.run_slug, message)
            await self._finish_run(run, "failed")
        else:
            await self._finish_run(run, "complete")

    async def _finish_run(self, run: RunOrchestrationState, status: RunStatus) -> None:
        slug = run.run_slug
        run.stopped_at = now_iso()
        self._tasks.cancel_keyed((slug, "completion"))
        await self._persist_run_status(run, status)

        costs = self._buffers.get_run_cost_tracking(slug)
        failed = [lane_id for lane_id, state in run.lanes.items() if state.status == "failed"]
        self._history(
            slug,
            "mission_complete",
            f"Run {status}" + (f" ({len(failed)} failed lanes)" if failed else ""),
            details={
                "failedLanes": failed,
                "estimatedCostUsd": costs.total_cost_usd,
                "inputTokens": costs.total_input_tokens,
                "outputTokens": costs.total_output_tokens,
            },
        )
        logger.info("Run %s finished: %s", slug, status)
        await self._set_run_status(run, status)
        await self.events.emit(WarroomEvents.RUN_COMPLETE, RunStatusContext(run_slug=slug, status=status))
        self._run_done[slug].set()

        if status == "complete" and self._config.orchestrator.auto_merge_on_complete:
            result = await self.execute_merge(slug)
            if not result.success:
                logger.warning("Auto-merge of run %s did not complete: %s", slug, result.error)

    async def wait_for_run(self, run_slug: str, timeout: Optional[float] = None) -> Optional[RunStatus]:
        """Wait until the run completes, fails or is stopped.

        Returns:
            Final run status, or None if the run is unknown or the wait timed out.
        """
        done = self._run_done.get(run_slug)
        if done is None:
            return None
        try:
            await asyncio.wait_for(done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self._runs[run_slug].status

    # --- control ------------------------------------------------------------

    async def stop_run(self, run_slug: str) -> OperationResult:
        """Stop every lane of a run.

        Concurrent calls share one stop and all return once it has finished.
        Calling it on a stopped run is a no-op.
        """
        run = self._runs.get(run_slug)
        if run is None:
            return OperationResult(False, f"Run {run_slug} is not being orchestrated", code="not_found")
        in_flight = self._stop_tasks.get(run_slug)
        if in_flight is not None:
            return await asyncio.shield(in_flight)
        if run.status in ("stopping", "stopped"):
            return OperationResult(True)

        task = asyncio.create_task(self._stop_run(run), name=f"stop-{run_slug}")
        self._stop_tasks[run_slug] = task
        task.add_done_callback(lambda done: self._forget_stop(run_slug, done))
        return await asyncio.shield(task)

    def _forget_stop(self, run_slug: str, task: "asyncio.Task[OperationResult]") -> None:
        if self._stop_tasks.get(run_slug) is task:
            del self._stop_tasks[run_slug]

    async def _stop_run(self, run: RunOrchestrationState) -> OperationResult:
        run_slug = run.run_slug
        finished = run.status in ("complete", "failed")
        if not finished:
            await self._set_run_status(run, "stopping")

        self._tasks.cancel_keyed((run_slug, "completion"))
        for lane_id in run.lanes:
            self._tasks.cancel_keyed((run_slug, lane_id, "poll"))
            self._tasks.cancel_keyed((run_slug, lane_id, "retry"))

        targets = [state for state in run.lanes.values() if state.handle is not None]
        for state in run.lanes.values():
            if state.status == "starting" and state.handle is None and state.transition("stopped"):
                state.stopped_at = now_iso()

        logger.info("Stopping run %s (%d lanes)", run_slug, len(targets))
        results = await asyncio.gather(*(self._stop_lane(run, state) for state in targets), return_exceptions=True)
        for state, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error("Failed to stop lane %s: %s", state.lane_id, result)

        if finished:
            return OperationResult(True)

        run.stopped_at = now_iso()
        await self._persist_run_status(run, "stopped")
        self._history(run_slug, "mission_stopped", f"Run stopped ({len(targets)} lanes stopped)")
        await self._set_run_status(run, "stopped")
        self._run_done[run_slug].set()
        return OperationResult(True)

    async def _stop_lane(self, run: RunOrchestrationState, state: LaneRuntimeState) -> None:
        handle = state.handle
        previous = state.status
        if state.status in ACTIVE_LANE_STATUSES and state.transition("stopped"):
            state.stopped_at = now_iso()
        self._unwatch(run.run_slug, state.lane_id)
        grace = self._config.orchestrator.stop_grace_s
        try:
            if handle is not None:
                if previous == "paused" and handle.kind == "process":
                    try:
                        handle.resume()
                    except ProcessLookupError:
                        pass
                await asyncio.wait_for(handle.stop(grace), timeout=grace + STOP_TIMEOUT_SLACK_S)
        finally:
            state.handle = None
            self._tasks.cancel_keyed((run.run_slug, state.lane_id, "monitor"))
        if previous != state.status:
            await self._emit_lane_status(run.run_slug, state, previous)

    def _lane_state(self, run_slug: str, lane_id: str) -> tuple[Optional[LaneRuntimeState], Optional[OperationResult]]:
        run = self._runs.get(run_slug)
        if run is None:
            return None, OperationResult(False, f"Run {run_slug} is not being orchestrated", code="not_found")
        state = run.lanes.get(lane_id)
        if state is None:
            return None, OperationResult(False, f"Lane {lane_id} is not part of run {run_slug}", code="not_found")
        return state, None

    async def pause_lane(self, run_slug: str, lane_id: str) -> OperationResult:
        """Suspend a running process-mode lane."""
        state, failure = self._lane_state(run_slug, lane_id)
        if failure is not None:
            return failure
        assert state is not None
        if state.status != "running" or state.handle is None:
            return OperationResult(False, f"Lane {lane_id} is not running", code="invalid_state")
        try:
            state.handle.pause()
        except UnsupportedOperationError as e:
            return OperationResult(False, str(e), code="unsupported")
        except ProcessLookupError:
            return OperationResult(False, f"Lane {lane_id} process has already exited", code="invalid_state")

        state.transition("paused")
        logger.info("Paused lane %s", lane_id)
        await self._emit_lane_status(run_slug, state, "running")
        return OperationResult(True)

    async def resume_lane(self, run_slug: str, lane_id: str) -> OperationResult:
        """Continue a paused process-mode lane."""
        state, failure = self._lane_state(run_slug, lane_id)
        if failure is not None:
            return failure
        assert state is not None
        if state.handle is not None and state.handle.kind == "terminal":
            return OperationResult(False, "Resume is not supported for terminal-mode lanes", code="unsupported")
        if state.status != "paused" or state.handle is None:
            return OperationResult(False, f"Lane {lane_id} is not paused", code="invalid_state")
        try:
            state.handle.resume()
        except ProcessLookupError:
            return OperationResult(False, f"Lane {lane_id} process has already exited", code="invalid_state")

        state.transition("running")
        logger.info("Resumed lane %s", lane_id)
        await self._emit_lane_status(run_slug, state, "paused")
        return OperationResult(True)

    async def reset_lane(self, run_slug: str, lane_id: str) -> OperationResult:
        """Return a lane to pending, clearing its retry and completion state.

        A live agent is stopped first. If the run is being orchestrated the
        lane is launched again as soon as its dependencies allow.
        """
        run = self._runs.get(run_slug)
        try:
            plan = run.plan if run else self._store.load_plan(run_slug)
        except RunNotFoundError as e:
            return OperationResult(False, str(e), code="not_found")
        except PlanLoadError as e:
            return OperationResult(False, str(e), code="invalid_run")
        if plan.lane(lane_id) is None:
            return OperationResult(False, f"Lane {lane_id} is not part of run {run_slug}", code="not_found")

        state = run.lanes[lane_id] if run else None
        if run is not None and state is not None:
            self._tasks.cancel_keyed((run_slug, lane_id, "retry"))
            if state.handle is not None:
                try:
                    await self._stop_lane(run, state)
                except (OSError, asyncio.TimeoutError) as e:
                    return OperationResult(False, f"Failed to stop lane {lane_id}: {e}", code="stop_failed")

        try:
            async with self._store.update_status(run_slug, plan.run_id) as doc:
                entry = doc.entry(lane_id)
                entry.status = "pending"
                entry.retry_state = None
                entry.completion_detection = None
                entry.commits_at_launch = None
                doc.lanes_completed = [done for done in doc.lanes_completed if done != lane_id]
        except (OSError, WarroomError) as e:
            return OperationResult(False, f"Failed to reset lane {lane_id}: {e}", code="io_error")

        self._buffers.clear_lane(run_slug, lane_id)
        self._history(run_slug, "lane_reset", "Lane reset to pending", lane_id=lane_id)
        logger.info("Reset lane %s in run %s", lane_id, run_slug)

        if run is None or state is None:
            return OperationResult(True)

        previous = state.status
        state.transition("pending")
        state.exit_code = None
        state.error = None
        state.stopped_at = None
        await self._emit_lane_status(run_slug, state, previous)

        if run.status in ("complete", "failed"):
            self._run_done[run_slug] = asyncio.Event()
            await self._persist_run_status(run, "running")
            await self._set_run_status(run, "running")
            self._tasks.spawn_keyed(
                (run_slug, "completion"), self._completion_loop(run_slug), name=f"completion-{run_slug}"
            )
        if run.status == "running":
            await self._start_ready_lanes(run)
            await self._check_run_finished(run)
        return OperationResult(True)

    # --- queries ------------------------------------------------------------

    def get_status(self) -> OrchestratorStatus:
        active = [slug for slug, run in self._runs.items() if run.is_active]
        return OrchestratorStatus(
            is_running=bool(active),
            active_runs=active,
            run_statuses={slug: run.snapshot() for slug, run in self._runs.items()},
        )

    def get_run_status(self, run_slug: str) -> Optional[RunOrchestrationState]:
        return self._runs.get(run_slug)

    def is_run_active(self, run_slug: str) -> bool:
        run = self._runs.get(run_slug)
        return run is not None and run.is_active

    # --- completion detection -----------------------------------------------

    async def _completion_loop(self, run_slug: str) -> None:
        interval = self._config.orchestrator.completion_check_interval_s
        while True:
            await asyncio.sleep(interval)
            run = self._runs.get(run_slug)
            if run is None or run.status != "running":
                return
            try:
                await self.check_completion(run_slug)
            except (OSError, WarroomError) as e:
                logger.warning("Completion check for run %s failed: %s", run_slug, e)

    async def check_completion(self, run_slug: str) -> Dict[str, CompletionCheckResult]:
        """Evaluate completion heuristics for every in-progress lane.

        Detections are recorded in status.json. Lanes with autonomy enabled
        are marked complete automatically, once.
        """
        try:
            plan, doc = self._load_plan_and_status(run_slug)
        except WarroomError as e:
            logger.warning("Skipping completion check for %s: %s", run_slug, e)
            return {}

        run = self._runs.get(run_slug)
        results: Dict[str, CompletionCheckResult] = {}
        for lane in plan.lanes:
            entry = doc.lanes.get(lane.lane_id)
            if entry is None or entry.status != "in_progress":
                continue

            commits_since_launch = None
            if entry.commits_at_launch is not None:
                commits_since_launch = max(await git.commit_count(lane.worktree_path) - entry.commits_at_launch, 0)

            last_activity = entry.last_activity_at
            buffered = self._buffers.get_lane_output(run_slug, lane.lane_id)
            if buffered is not None:
                seen = parse_iso(buffered.last_activity_at)
                recorded = parse_iso(last_activity)
                if seen is not None and (recorded is None or seen > recorded):
                    last_activity = buffered.last_activity_at

            autonomy = (entry.autonomy or lane.autonomy).dangerously_skip_permissions
            result = await detect_lane_completion(
                lane.worktree_path,
                entry.model_copy(update={"last_activity_at": last_activity}),
                commits_since_launch,
                autonomy,
                self._completion_rules,
            )
            results[lane.lane_id] = result
            if not result.detection.detected:
                continue

            state = run.lanes.get(lane.lane_id) if run else None
            supervised = state is not None and state.status in ACTIVE_LANE_STATUSES
            try:
                async with self._store.update_status(run_slug, plan.run_id) as current:
                    current_entry = current.entry(lane.lane_id)
                    current_entry.completion_detection = result.detection
                    if result.should_auto_mark and not supervised:
                        current_entry.status = "complete"
                        if lane.lane_id not in current.lanes_completed:
                            current.lanes_completed.append(lane.lane_id)
            except (OSError, WarroomError) as e:
                logger.error("Failed to record completion detection for %s: %s", lane.lane_id, e)
                continue

            if result.should_auto_mark:
                logger.info("Auto-marking lane %s complete: %s", lane.lane_id, result.detection.reason)
                self._history(
                    run_slug,
                    "lane_status_change",
                    f"Lane auto-marked complete: {result.detection.reason}",
                    lane_id=lane.lane_id,
                    details={"signals": result.detection.signals},
                )
                if run is not None and supervised:
                    await self._finish_lane(run, lane.lane_id, exit_code=None, success=True, keep_handle=True)
        return results

    # --- merge --------------------------------------------------------------

    async def generate_merge_proposal(self, run_slug: str) -> ProposalResult:
        """Build an advisory merge proposal and save it as merge-proposal.json."""
        try:
            plan, doc = self._load_plan_and_status(run_slug)
        except RunNotFoundError as e:
            return ProposalResult(False, str(e), code="not_found")
        except WarroomError as e:
            return ProposalResult(False, str(e), code="invalid_run")

        proposal = await merge_engine.generate_merge_proposal(plan, doc, self._config.merge.risk_thresholds)
        try:
            self._store.save_merge_proposal(run_slug, proposal)
        except OSError as e:
            return ProposalResult(False, f"Failed to save merge proposal: {e}", code="io_error", proposal=proposal)
        logger.info("Merge proposal for %s: %d lanes, %d warnings", run_slug, len(proposal.merge_order), len(proposal.warnings))
        return ProposalResult(True, proposal=proposal)

    async def _update_merge_state(self, run_slug: str, run_id: str, mutate: Callable[[MergeState], None]) -> None:
        try:
            async with self._store.update_status(run_slug, run_id) as doc:
                merge_state = doc.merge_state or MergeState()
                mutate(merge_state)
                merge_state.updated_at = now_iso()
                doc.merge_state = merge_state
        except (OSError, WarroomError) as e:
            logger.error("Failed to record merge state for %s: %s", run_slug, e)

    async def execute_merge(
        self,
        run_slug: str,
        lane_ids: Optional[Sequence[str]] = None,
        method: Optional[MergeMethod] = None,
    ) -> MergeResult:
        """Merge completed lanes into the integration branch in dependency order.

        Args:
            run_slug: Run to merge.
            lane_ids: Lanes to merge; defaults to every completed lane.
            method: Merge method; defaults to the plan's method.

        Returns:
            MergeResult. A conflict halts the merge and is reported with the
            blocking lane and its conflicting files.
        """
        lock = self._merge_locks.setdefault(run_slug, asyncio.Lock())
        if lock.locked():
            return MergeResult(False, f"A merge is already in progress for run {run_slug}", code="busy")

        async with lock:
            try:
                plan, doc = self._load_plan_and_status(run_slug)
            except RunNotFoundError as e:
                return MergeResult(False, str(e), code="not_found")
            except WarroomError as e:
                return MergeResult(False, str(e), code="invalid_run")

            completed = doc.completed_lane_ids()
            if lane_ids is None:
                candidates = [lane for lane in plan.lanes if lane.lane_id in completed]
            else:
                unknown = [lane_id for lane_id in lane_ids if plan.lane(lane_id) is None]
                if unknown:
                    return MergeResult(False, f"Unknown lanes: {', '.join(unknown)}", code="not_found")
                incomplete = [lane_id for lane_id in lane_ids if lane_id not in completed]
                if incomplete:
                    return MergeResult(False, f"Lanes not complete: {', '.join(incomplete)}", code="incomplete")
                candidates = [lane for lane in plan.lanes if lane.lane_id in lane_ids]
            if not candidates:
                return MergeResult(False, "No completed lanes to merge", code="nothing_to_merge")

            method = method or plan.merge.method

            def begin(state: MergeState) -> None:
                state.status = "in_progress"
                state.current_lane = None
                state.merged_lanes = []
                state.conflict_info = None
                state.error = None

            await self._update_merge_state(run_slug, plan.run_id, begin)
            self._history(
                run_slug,
                "merge_started",
                f"Merging {len(candidates)} lanes into {plan.integration_branch} ({method})",
                details={"lanes": [lane.lane_id for lane in candidates]},
            )

            merged: List[str] = []

            async def on_progress(lane_id: str, status: MergeProgressStatus, detail: Optional[str]) -> None:
                if status == "merged":
                    merged.append(lane_id)
                    self._history(run_slug, "merge_lane_complete", f"Merged lane {lane_id}", lane_id=lane_id)

                def track(state: MergeState) -> None:
                    state.current_lane = lane_id if status == "merging" else None
                    state.merged_lanes = list(merged)

                if status in ("merging", "merged"):
                    await self._update_merge_state(run_slug, plan.run_id, track)
                await self.events.emit(
                    WarroomEvents.MERGE_PROGRESS,
                    MergeProgressContext(
                        run_slug=run_slug, lane_id=lane_id, status=status, detail=detail, merged_lanes=list(merged)
                    ),
                )

            try:
                outcome = await merge_engine.merge_lanes(
                    plan.repo.path, plan.integration_branch, candidates, method, on_progress
                )
            except asyncio.CancelledError:
                # current_lane is kept so the operator can see where it stopped.
                def interrupt(state: MergeState) -> None:
                    state.status = "failed"
                    state.merged_lanes = list(merged)
                    state.error = "Merge interrupted before it finished"

                await self._update_merge_state(run_slug, plan.run_id, interrupt)
                self._history(run_slug, "merge_failed", "Merge interrupted", details={"merged": list(merged)})
                raise
            result = MergeResult.from_run(outcome)

            def finish(state: MergeState) -> None:
                state.current_lane = None
                state.merged_lanes = list(outcome.merged_lanes)
                state.conflict_info = outcome.conflict
                state.error = outcome.error
                if outcome.success:
                    state.status = "complete"
                elif outcome.conflict is not None:
                    state.status = "conflict"
                else:
                    state.status = "failed"

            await self._update_merge_state(run_slug, plan.run_id, finish)

            if outcome.conflict is not None:
                self._history(
                    run_slug,
                    "merge_conflict",
                    outcome.error or "Merge conflict",
                    lane_id=outcome.conflict.lane_id,
                    details={"conflictingFiles": outcome.conflict.conflicting_files},
                )
            elif not outcome.success:
                self._history(run_slug, "merge_failed", outcome.error or "Merge failed", lane_id=outcome.failed_lane)
            else:
                self._history(
                    run_slug,
                    "merge_complete",
                    f"Merged {len(outcome.merged_lanes)} lanes, skipped {len(outcome.skipped_lanes)}",
                    details={"merged": outcome.merged_lanes, "skipped": outcome.skipped_lanes},
                )
                if outcome.merged_lanes and doc.pushes_integration_branch():
                    await self._push_integration(run_slug, plan)
            return result

    async def _push_integration(self, run_slug: str, plan: Plan) -> None:
        self._history(run_slug, "push_started", f"Pushing {plan.integration_branch}")
        result = await push_integration_branch(plan.repo.path, plan.integration_branch)
        try:
            async with self._store.update_status(run_slug, plan.run_id) as doc:
                doc.integration_branch_push_state = PushState(
                    status="success" if result.success else "failed",
                    last_pushed_at=now_iso() if result.success else None,
                    error=result.error,
                    error_type=result.error_type,
                    push_type="integration",
                )
        except (OSError, WarroomError) as e:
            logger.error("Failed to record integration push for %s: %s", run_slug, e)
        if result.success:
            self._history(run_slug, "push_complete", f"Pushed {plan.integration_branch}")
        else:
            self._history(
                run_slug,
                "push_failed",
                f"Push of {plan.integration_branch} failed: {result.error}",
                details={"errorType": result.error_type},
            )

    async def abort_merge(self, run_slug: str) -> OperationResult:
        """Abort an in-progress git merge in the run's repository."""
        try:
            plan, _ = self._load_plan_and_status(run_slug)
        except RunNotFoundError as e:
            return OperationResult(False, str(e), code="not_found")
        except WarroomError as e:
            return OperationResult(False, str(e), code="invalid_run")

        result = await abort_merge(plan.repo.path)
        if not result.success:
            return OperationResult(False, f"Failed to abort merge: {result.error}", code="git_failed")

        def reset(state: MergeState) -> None:
            state.status = "idle"
            state.current_lane = None
            state.conflict_info = None
            state.error = "Merge aborted"

        await self._update_merge_state(run_slug, plan.run_id, reset)
        self._history(run_slug, "merge_failed", "Merge aborted")
        return OperationResult(True)

    # --- cleanup ------------------------------------------------------------

    async def remove_worktree(
        self, run_slug: str, lane_id: str, delete_branch: bool = False, force: bool = False
    ) -> WorktreeRemovalResult:
        """Remove a lane's worktree after the safety checks pass.

        Args:
            run_slug: Run owning the lane.
            lane_id: Lane whose worktree is removed.
            delete_branch: Also delete the lane branch; force-deleted only when
                it is already merged into the integration branch.
            force: Pass ``--force`` to ``git worktree remove``.
        """
        try:
            plan, _ = self._load_plan_and_status(run_slug)
        except RunNotFoundError as e:
            return WorktreeRemovalResult(False, str(e), code="not_found")
        except WarroomError as e:
            return WorktreeRemovalResult(False, str(e), code="invalid_run")

        lane = plan.lane(lane_id)
        if lane is None:
            return WorktreeRemovalResult(False, f"Lane {lane_id} is not part of run {run_slug}", code="not_found")

        run = self._runs.get(run_slug)
        state = run.lanes.get(lane_id) if run else None
        if state is not None and (state.status in ACTIVE_LANE_STATUSES or state.handle is not None):
            return WorktreeRemovalResult(False, f"Lane {lane_id} is still running", code="invalid_state")

        root = self._config.paths.worktree_root
        safety = await worktree_cleanup.is_worktree_safe_to_remove(lane.worktree_path, root)
        if not safety.safe:
            return WorktreeRemovalResult(False, safety.reason, code="unsafe", safety=safety)

        removal = await worktree_cleanup.remove_worktree(plan.repo.path, lane.worktree_path, root, force=force)
        if not removal.success:
            return WorktreeRemovalResult(False, removal.error, code="git_failed", safety=safety)

        if not delete_branch:
            return WorktreeRemovalResult(True, safety=safety)

        merged = await git.is_branch_merged(plan.repo.path, lane.branch, plan.integration_branch)
        deletion = await worktree_cleanup.delete_lane_branch(plan.repo.path, lane.branch, confirmed_merged=merged)
        if not deletion.success:
            return WorktreeRemovalResult(
                False, f"Worktree removed but branch deletion failed: {deletion.error}", code="git_failed", safety=safety
            )
        return WorktreeRemovalResult(True, safety=safety, branch_deleted=True)

    # --- process lifecycle --------------------------------------------------

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> bool:
        """Stop every run on SIGTERM/SIGINT. Installs at most once.

        Returns:
            True if handlers were installed by this call.
        """
        if self._signals_installed:
            return False
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError) as e:
                logger.warning("Cannot install handler for %s: %s", sig.name, e)
        self._signals_installed = True
        return True

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s signal...", sig.name)
        self.shutdown_requested.set()
        self._begin_shutdown()

    def _begin_shutdown(self) -> "asyncio.Task[None]":
        if self._shutdown_task is None:
            self._is_shutting_down = True
            self._shutdown_task = asyncio.create_task(self._shutdown(), name="warroom-shutdown")
        return self._shutdown_task

    async def shutdown(self) -> None:
        """Stop all runs and cancel background tasks. Safe to call repeatedly."""
        await asyncio.shield(self._begin_shutdown())

    async def _shutdown(self) -> None:
        slugs = list(self._runs)
        logger.info("Shutting down orchestrator (%d runs)", len(slugs))
        results = await asyncio.gather(*(self.stop_run(slug) for slug in slugs), return_exceptions=True)
        for slug, result in zip(slugs, results):
            if isinstance(result, BaseException):
                logger.error("Error stopping run %s during shutdown: %s", slug, result)
        await self._tasks.shutdown()
        if self._file_watcher is not None:
            await self._file_watcher.close()
        self.shutdown_requested.set()
        logger.info("Orchestrator stopped")
