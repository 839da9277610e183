"""Runtime state owned by the orchestrator, plus operation results."""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional

from warroom.core.lane_handles import LaneHandle
from warroom.core.merge_engine import MergeRunResult
from warroom.core.run_documents import ConflictInfo, MergeProposal, Plan
from warroom.core.worktree_cleanup import WorktreeSafetyCheck

logger = logging.getLogger(__name__)

LaneRuntimeStatus = Literal["pending", "starting", "running", "paused", "stopped", "complete", "failed"]
RunStatus = Literal["idle", "starting", "running", "stopping", "stopped", "complete", "failed"]

TERMINAL_LANE_STATUSES = frozenset({"stopped", "complete", "failed"})
ACTIVE_LANE_STATUSES = frozenset({"starting", "running", "paused"})

# Allowed runtime transitions. Any -> pending is the operator reset path.
LANE_TRANSITIONS: Dict[str, frozenset[str]] = {
    "pending": frozenset({"starting"}),
    "starting": frozenset({"running", "failed", "stopped"}),
    "running": frozenset({"complete", "failed", "paused", "stopped"}),
    "paused": frozenset({"running", "stopped", "complete", "failed"}),
    "complete": frozenset(),
    "failed": frozenset(),
    "stopped": frozenset(),
}


@dataclass
class LaneRuntimeState:
    lane_id: str
    status: LaneRuntimeStatus = "pending"
    # Exactly one way of driving a lane: a child process or a terminal window.
    handle: Optional[LaneHandle] = None
    started_at: Optional[str] = None
    stopped_at: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def launch_mode(self) -> Optional[str]:
        if self.handle is None:
            return None
        return self.handle.kind

    def can_transition(self, new_status: LaneRuntimeStatus) -> bool:
        return new_status == "pending" or new_status in LANE_TRANSITIONS[self.status]

    def transition(self, new_status: LaneRuntimeStatus) -> bool:
        """Move to ``new_status`` if allowed. Illegal moves are logged and refused."""
        if not self.can_transition(new_status):
            logger.warning("Refusing lane %s transition %s -> %s", self.lane_id, self.status, new_status)
            return False
        self.status = new_status
        return True

    def snapshot(self) -> Dict[str, object]:
        return {
            "lane_id": self.lane_id,
            "status": self.status,
            "launch_mode": self.launch_mode,
            "started_at": self.started_at,
            "stopped_at": self.stopped_at,
            "exit_code": self.exit_code,
            "error": self.error,
        }


@dataclass
class RunOrchestrationState:
    run_slug: str
    plan: Plan
    status: RunStatus = "idle"
    lanes: Dict[str, LaneRuntimeState] = field(default_factory=dict)
    started_at: Optional[str] = None
    stopped_at: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status in ("starting", "running")

    def snapshot(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "started_at": self.started_at,
            "stopped_at": self.stopped_at,
            "lanes": {lane_id: lane.snapshot() for lane_id, lane in self.lanes.items()},
            "warnings": list(self.warnings),
        }


@dataclass
class OrchestratorStatus:
    is_running: bool
    active_runs: List[str]
    run_statuses: Dict[str, Dict[str, object]]


@dataclass
class OperationResult:
    """Outcome of a public orchestrator operation. Expected failures never raise."""

    success: bool
    error: Optional[str] = None
    # Machine-readable failure kind, e.g. "unsupported", "not_found", "conflict".
    code: Optional[str] = None


@dataclass
class ProposalResult(OperationResult):
    proposal: Optional[MergeProposal] = None


@dataclass
class MergeResult(OperationResult):
    merged_lanes: List[str] = field(default_factory=list)
    skipped_lanes: List[str] = field(default_factory=list)
    conflict: Optional[ConflictInfo] = None

    @classmethod
    def from_run(cls, run: MergeRunResult) -> "MergeResult":
        return cls(
            success=run.success,
            error=run.error,
            code="conflict" if run.conflict else (None if run.success else "merge_failed"),
            merged_lanes=list(run.merged_lanes),
            skipped_lanes=list(run.skipped_lanes),
            conflict=run.conflict,
        )


@dataclass
class WorktreeRemovalResult(OperationResult):
    safety: Optional[WorktreeSafetyCheck] = None
    branch_deleted: bool = False
