"""On-disk run documents: plan.json, status.json and merge-proposal.json.

All three are camelCase JSON shared with other tools, so every model uses a
camelCase alias generator and ``extra="allow"`` to carry keys Warroom does not
understand through a read-modify-write cycle untouched.
"""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

AgentRole = str
MergeMethod = Literal["merge", "squash", "cherry-pick"]
LaunchMode = Literal["process", "terminal"]
LaneDocStatus = Literal["pending", "in_progress", "complete", "failed", "conflict"]
PushErrorType = Literal["auth", "protected", "rejected", "network", "unknown"]


class DocumentModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_json_dict(self) -> dict[str, object]:
        """Serialize with on-disk key names, dropping unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# --- plan.json -------------------------------------------------------------


class LaneAutonomy(DocumentModel):
    dangerously_skip_permissions: bool = False


class LaneVerify(DocumentModel):
    commands: List[str] = []
    required: bool = False


class Lane(DocumentModel):
    """One agent's unit of parallel work. Immutable once staged."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow", frozen=True)

    lane_id: str = Field(..., min_length=1)
    agent: AgentRole = "developer"
    branch: str
    worktree_path: str
    depends_on: List[str] = []
    autonomy: LaneAutonomy = LaneAutonomy()
    verify: LaneVerify = LaneVerify()
    foundation: bool = False
    allowed_paths: Optional[List[str]] = None


class Repo(DocumentModel):
    name: str = ""
    path: str


class PlanMergeConfig(DocumentModel):
    proposed_order: List[str] = []
    method: MergeMethod = "merge"
    notes: str = ""


class Plan(DocumentModel):
    run_id: str = ""
    run_slug: str
    run_dir: str = ""
    goal: str = ""
    repo: Repo
    integration_branch: str
    lanes: List[Lane] = []
    merge: PlanMergeConfig = PlanMergeConfig()

    def lane(self, lane_id: str) -> Optional[Lane]:
        for lane in self.lanes:
            if lane.lane_id == lane_id:
                return lane
        return None


# --- status.json -----------------------------------------------------------


class CompletionDetection(DocumentModel):
    detected: bool = False
    reason: Optional[str] = None
    signals: List[str] = []
    detected_at: Optional[str] = None
    auto_marked: bool = False


class RetryAttempt(DocumentModel):
    attempt: int
    started_at: str
    ended_at: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    backoff_seconds: float = 0


class RetryState(DocumentModel):
    attempt: int = 0
    max_attempts: int = 3
    next_retry_at: Optional[str] = None
    history: List[RetryAttempt] = []
    status: Literal["waiting", "retrying", "succeeded", "exhausted"] = "waiting"


class PushState(DocumentModel):
    status: Literal["idle", "pushing", "success", "failed"] = "idle"
    last_pushed_at: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[PushErrorType] = None
    push_type: Optional[Literal["lane", "integration", "main"]] = None


class TokenUsage(DocumentModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    total_tokens: int = 0
    updated_at: Optional[str] = None


class CostTracking(DocumentModel):
    model: Optional[str] = None
    token_usage: TokenUsage = TokenUsage()
    estimated_cost_usd: float = 0.0
    # Parsed from free-form agent output; never exact billing data.
    is_estimate: bool = True
    # True once a bare total was split 80/20 into input/output.
    split_heuristic_applied: bool = False


class LaneStatusEntry(DocumentModel):
    staged: bool = True
    status: LaneDocStatus = "pending"
    autonomy: Optional[LaneAutonomy] = None
    launch_mode: Optional[LaunchMode] = None
    commits_at_launch: Optional[int] = None
    last_activity_at: Optional[str] = None
    completion_detection: Optional[CompletionDetection] = None
    retry_state: Optional[RetryState] = None
    push_state: Optional[PushState] = None
    cost_tracking: Optional[CostTracking] = None


class ConflictInfo(DocumentModel):
    lane_id: str
    branch: str
    conflicting_files: List[str] = []


class MergeState(DocumentModel):
    status: Literal["idle", "in_progress", "complete", "conflict", "failed"] = "idle"
    current_lane: Optional[str] = None
    merged_lanes: List[str] = []
    conflict_info: Optional[ConflictInfo] = None
    error: Optional[str] = None
    updated_at: Optional[str] = None


class AutoPushOptions(DocumentModel):
    full_autonomy_mode: bool = False
    push_lane_branches: bool = False
    push_integration_branch: bool = False


class StatusDocument(DocumentModel):
    run_id: str = ""
    status: str = "staged"
    current_lane: Optional[str] = None
    lanes_completed: List[str] = []
    lanes: Dict[str, LaneStatusEntry] = {}
    merge_state: Optional[MergeState] = None
    auto_push_options: Optional[AutoPushOptions] = None
    integration_branch_push_state: Optional[PushState] = None
    updated_at: Optional[str] = None

    def completed_lane_ids(self) -> set[str]:
        """Union of ``lanesCompleted`` and lane entries whose status is complete."""
        completed = set(self.lanes_completed)
        for lane_id, entry in self.lanes.items():
            if entry.status == "complete":
                completed.add(lane_id)
        return completed

    def entry(self, lane_id: str) -> LaneStatusEntry:
        """Lane entry, created as pending if absent."""
        existing = self.lanes.get(lane_id)
        if existing is None:
            existing = LaneStatusEntry()
            self.lanes[lane_id] = existing
        return existing

    def pushes_lane_branches(self) -> bool:
        opts = self.auto_push_options
        return bool(opts and (opts.full_autonomy_mode or opts.push_lane_branches))

    def pushes_integration_branch(self) -> bool:
        opts = self.auto_push_options
        return bool(opts and (opts.full_autonomy_mode or opts.push_integration_branch))


# --- merge-proposal.json ---------------------------------------------------

ConflictRisk = Literal["none", "low", "medium", "high"]


class ProposalWarning(DocumentModel):
    kind: Literal["conflict_risk", "incomplete_lanes", "no_commits", "dependency_cycle"]
    message: str
    lane_ids: List[str] = []


class MergeProposalLane(DocumentModel):
    lane_id: str
    branch: str
    order: int
    method: MergeMethod
    agent: AgentRole = "developer"
    depends_on: List[str] = []
    commits_ahead: int = 0
    files_changed: List[str] = []
    conflict_risk: ConflictRisk = "none"
    overlapping_lanes: List[str] = []
    notes: str = ""


class MergeProposal(DocumentModel):
    """Advisory merge plan. Regenerated on demand; status.json stays authoritative."""

    run_id: str = ""
    run_slug: str
    created_at: str
    integration_branch: str
    merge_order: List[MergeProposalLane] = []
    default_method: MergeMethod = "merge"
    warnings: List[ProposalWarning] = []
    pm_prompt: str = ""
