"""Merge proposal and sequential merge execution.

The proposal is advisory: it orders merge candidates by dependency, estimates
conflict risk from changed-file overlap, and suggests a merge method per lane.
Execution merges lanes into the integration branch one at a time and stops at
the first conflict or failure.

The engine assumes nothing else merges into the integration branch while it
runs; this is not enforced.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Literal, Optional, Sequence

from warroom.config.schema import RiskThresholds
from warroom.constants import ROLE_MERGE_PRIORITY, UNKNOWN_ROLE_PRIORITY
from warroom.core import git
from warroom.core.git_operations import merge_lane_branch
from warroom.core.run_documents import (
    ConflictInfo,
    ConflictRisk,
    Lane,
    MergeMethod,
    MergeProposal,
    MergeProposalLane,
    Plan,
    ProposalWarning,
    StatusDocument,
)
from warroom.utils import now_iso

logger = logging.getLogger(__name__)

MergeProgressStatus = Literal["merging", "merged", "skipped", "conflict", "failed"]
MergeProgressCallback = Callable[[str, MergeProgressStatus, Optional[str]], Awaitable[None]]


def role_priority(agent: str) -> int:
    return ROLE_MERGE_PRIORITY.get(agent, UNKNOWN_ROLE_PRIORITY)


# --- Ordering --------------------------------------------------------------


@dataclass
class TopologicalOrder:
    order: List[Lane]
    # (lane being visited, dependency that closed the cycle)
    cycles: List[tuple[str, str]] = field(default_factory=list)

    @property
    def lane_ids(self) -> List[str]:
        return [lane.lane_id for lane in self.order]

    def cycle_warnings(self) -> List[ProposalWarning]:
        return [
            ProposalWarning(
                kind="dependency_cycle",
                message=f"Dependency cycle: {lane_id} -> {dep}; edge ignored for ordering",
                lane_ids=[lane_id, dep],
            )
            for lane_id, dep in self.cycles
        ]


def topological_sort(lanes: Sequence[Lane]) -> TopologicalOrder:
    """Order lanes so every lane follows its dependencies.

    Depth-first; independent lanes are visited by role priority, then plan
    order. Dependencies outside ``lanes`` are ignored. A dependency that is
    still on the DFS stack closes a cycle: that edge is skipped and recorded.
    """
    by_id = {lane.lane_id: lane for lane in lanes}
    position = {lane.lane_id: i for i, lane in enumerate(lanes)}

    def sort_key(lane_id: str) -> tuple[int, int]:
        return role_priority(by_id[lane_id].agent), position[lane_id]

    result = TopologicalOrder(order=[])
    visited: set[str] = set()
    on_stack: set[str] = set()

    def visit(lane_id: str) -> None:
        visited.add(lane_id)
        on_stack.add(lane_id)
        deps = sorted((d for d in by_id[lane_id].depends_on if d in by_id), key=sort_key)
        for dep in deps:
            if dep in on_stack:
                logger.warning("Dependency cycle detected: %s -> %s, skipping edge", lane_id, dep)
                result.cycles.append((lane_id, dep))
                continue
            if dep not in visited:
                visit(dep)
        on_stack.discard(lane_id)
        result.order.append(by_id[lane_id])

    for lane_id in sorted(by_id, key=sort_key):
        if lane_id not in visited:
            visit(lane_id)
    return result


# --- Conflict risk ---------------------------------------------------------


def overlapping_lanes(lane_id: str, files_by_lane: Dict[str, List[str]]) -> List[str]:
    """Other lanes whose changed files intersect ``lane_id``'s. Symmetric by construction."""
    mine = set(files_by_lane.get(lane_id, []))
    if not mine:
        return []
    return [other for other, files in files_by_lane.items() if other != lane_id and mine.intersection(files)]


def conflict_risk(overlap_count: int, thresholds: RiskThresholds) -> ConflictRisk:
    if overlap_count == 0:
        return "none"
    if overlap_count <= thresholds.low:
        return "low"
    if overlap_count <= thresholds.medium:
        return "medium"
    return "high"


def suggest_merge_method(commits_ahead: int, risk: ConflictRisk) -> MergeMethod:
    if commits_ahead == 1:
        return "squash"
    if risk in ("medium", "high"):
        return "merge"
    return "squash"


async def resolve_base_branch(repo_path: str, integration_branch: str) -> Optional[str]:
    """Integration branch if it exists yet, else main/master."""
    if await git.branch_exists(repo_path, integration_branch):
        return integration_branch
    return await git.get_main_branch(repo_path)


@dataclass
class LaneBranchInfo:
    commits_ahead: int = 0
    files_changed: List[str] = field(default_factory=list)


async def collect_branch_info(repo_path: str, base: Optional[str], lanes: Iterable[Lane]) -> Dict[str, LaneBranchInfo]:
    async def one(lane: Lane) -> tuple[str, LaneBranchInfo]:
        if base is None or not await git.branch_exists(repo_path, lane.branch):
            return lane.lane_id, LaneBranchInfo()
        ahead, files = await asyncio.gather(
            git.commits_ahead(repo_path, base, lane.branch),
            git.changed_files(repo_path, base, lane.branch),
        )
        return lane.lane_id, LaneBranchInfo(commits_ahead=ahead, files_changed=files)

    pairs = await asyncio.gather(*(one(lane) for lane in lanes))
    return dict(pairs)


# --- Proposal --------------------------------------------------------------


def build_merge_proposal(
    plan: Plan,
    status: StatusDocument,
    branch_info: Dict[str, LaneBranchInfo],
    thresholds: Optional[RiskThresholds] = None,
) -> MergeProposal:
    """Assemble a proposal from already-collected branch info. No I/O."""
    thresholds = thresholds or RiskThresholds()
    completed = status.completed_lane_ids()
    complete_lanes = [lane for lane in plan.lanes if lane.lane_id in completed]

    candidate_files = {
        lane.lane_id: branch_info[lane.lane_id].files_changed
        for lane in complete_lanes
        if lane.lane_id in branch_info and branch_info[lane.lane_id].commits_ahead > 0
    }

    ordering = topological_sort(complete_lanes)
    warnings = ordering.cycle_warnings()
    merge_order: List[MergeProposalLane] = []

    for index, lane in enumerate(ordering.order, start=1):
        info = branch_info.get(lane.lane_id, LaneBranchInfo())
        overlaps = overlapping_lanes(lane.lane_id, candidate_files)
        risk = conflict_risk(len(overlaps), thresholds)

        if risk == "high":
            warnings.append(
                ProposalWarning(
                    kind="conflict_risk",
                    message=f"{lane.lane_id} has HIGH conflict risk with {', '.join(overlaps)}",
                    lane_ids=[lane.lane_id] + overlaps,
                )
            )
        elif risk == "medium":
            warnings.append(
                ProposalWarning(
                    kind="conflict_risk",
                    message=f"{lane.lane_id} has potential conflicts with {', '.join(overlaps)}",
                    lane_ids=[lane.lane_id] + overlaps,
                )
            )

        if info.commits_ahead == 0:
            notes = "No commits to merge"
        elif overlaps:
            notes = f"Review file overlap with {', '.join(overlaps)} before merging"
        else:
            notes = ""

        merge_order.append(
            MergeProposalLane(
                lane_id=lane.lane_id,
                branch=lane.branch,
                order=index,
                method=suggest_merge_method(info.commits_ahead, risk),
                agent=lane.agent,
                depends_on=list(lane.depends_on),
                commits_ahead=info.commits_ahead,
                files_changed=info.files_changed,
                conflict_risk=risk,
                overlapping_lanes=overlaps,
                notes=notes,
            )
        )

    empty = [entry.lane_id for entry in merge_order if entry.commits_ahead == 0]
    if empty:
        warnings.append(
            ProposalWarning(
                kind="no_commits",
                message=f"{len(empty)} complete lane(s) have no commits to merge: {', '.join(empty)}",
                lane_ids=empty,
            )
        )

    incomplete = [lane.lane_id for lane in plan.lanes if lane.lane_id not in completed]
    if incomplete:
        warnings.append(
            ProposalWarning(
                kind="incomplete_lanes",
                message=f"{len(incomplete)} lane(s) not yet complete: {', '.join(incomplete)}",
                lane_ids=incomplete,
            )
        )

    proposal = MergeProposal(
        run_id=plan.run_id,
        run_slug=plan.run_slug,
        created_at=now_iso(),
        integration_branch=plan.integration_branch,
        merge_order=merge_order,
        default_method=plan.merge.method,
        warnings=warnings,
    )
    proposal.pm_prompt = render_merge_prompt(plan, proposal)
    return proposal


def render_merge_prompt(plan: Plan, proposal: MergeProposal) -> str:
    """Markdown choreography a human or PM agent can follow to merge by hand."""
    lanes_list = "\n".join(
        f"{entry.order}. {entry.lane_id} ({entry.branch}) - {entry.method} - {entry.commits_ahead} commits"
        for entry in proposal.merge_order
    )
    warnings_block = ""
    if proposal.warnings:
        warnings_block = "\n**Warnings:**\n" + "\n".join(f"- {w.message}" for w in proposal.warnings) + "\n"

    return f"""# Merge Choreography

## Run: {plan.run_slug}
**Goal:** {plan.goal}
**Integration Branch:** {plan.integration_branch}

## Merge Order
{lanes_list}
{warnings_block}
## Instructions

1. Review each lane's changes before merging
2. Merge lanes in the proposed order
3. If conflicts occur, resolve them before continuing
4. Run tests after each merge
5. After all lanes are merged, verify the integration branch

## Commands Reference

```bash
git checkout {plan.integration_branch}
git merge --no-ff BRANCH -m "Merge LANE_ID into integration"
# or
git merge --squash BRANCH && git commit -m "Merge LANE_ID: description"
```
"""


async def generate_merge_proposal(
    plan: Plan, status: StatusDocument, thresholds: Optional[RiskThresholds] = None
) -> MergeProposal:
    base = await resolve_base_branch(plan.repo.path, plan.integration_branch)
    if base is None:
        logger.warning("No integration, main or master branch in %s", plan.repo.path)
    info = await collect_branch_info(plan.repo.path, base, plan.lanes)
    return build_merge_proposal(plan, status, info, thresholds)


# --- Execution -------------------------------------------------------------


@dataclass
class MergeRunResult:
    success: bool
    merged_lanes: List[str] = field(default_factory=list)
    skipped_lanes: List[str] = field(default_factory=list)
    conflict: Optional[ConflictInfo] = None
    failed_lane: Optional[str] = None
    error: Optional[str] = None
    warnings: List[ProposalWarning] = field(default_factory=list)


async def merge_lanes(
    repo_path: str,
    integration_branch: str,
    lanes: Sequence[Lane],
    method: MergeMethod = "merge",
    on_progress: Optional[MergeProgressCallback] = None,
) -> MergeRunResult:
    """Merge ``lanes`` into the integration branch in dependency order.

    Lanes with zero commits ahead are skipped. The first conflict or hard
    failure stops the run; the repository is left as git left it.

    Args:
        repo_path: Main repository checkout.
        integration_branch: Target branch, created from main/master if missing.
        lanes: Lanes to merge.
        method: merge, squash or cherry-pick (cherry-pick merges with --no-ff).
        on_progress: Awaited with (lane_id, status, detail) for each step.

    Returns:
        MergeRunResult with merged lanes and, on a halt, the blocking lane.
    """

    async def report(lane_id: str, status: MergeProgressStatus, detail: Optional[str] = None) -> None:
        if on_progress is not None:
            await on_progress(lane_id, status, detail)

    ordering = topological_sort(lanes)
    result = MergeRunResult(success=True, warnings=ordering.cycle_warnings())
    logger.info("Merging %d lanes into %s: %s", len(lanes), integration_branch, ordering.lane_ids)

    for lane in ordering.order:
        base = await resolve_base_branch(repo_path, integration_branch)
        ahead = await git.commits_ahead(repo_path, base, lane.branch) if base else 0
        if ahead == 0:
            logger.info("Skipping lane %s: no commits ahead of %s", lane.lane_id, base)
            result.skipped_lanes.append(lane.lane_id)
            await report(lane.lane_id, "skipped", "No commits to merge")
            continue

        await report(lane.lane_id, "merging")
        outcome = await merge_lane_branch(repo_path, integration_branch, lane.branch, method, lane.lane_id)
        if outcome.success:
            result.merged_lanes.append(lane.lane_id)
            await report(lane.lane_id, "merged")
            continue

        result.success = False
        result.failed_lane = lane.lane_id
        if outcome.is_conflict:
            result.conflict = ConflictInfo(
                lane_id=lane.lane_id, branch=lane.branch, conflicting_files=outcome.conflicting_files
            )
            result.error = f"Merge conflict in lane {lane.lane_id}"
            await report(lane.lane_id, "conflict", ", ".join(outcome.conflicting_files))
        else:
            result.error = f"Failed to merge lane {lane.lane_id}: {outcome.error}"
            await report(lane.lane_id, "failed", outcome.error)
        return result

    logger.info("Merge complete: %d merged, %d skipped", len(result.merged_lanes), len(result.skipped_lanes))
    return result
