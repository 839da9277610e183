"""Git operations on lane work: auto-commit, branch merges, pushes."""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Pattern, Tuple

from warroom.constants import PROTECTED_MAIN_BRANCHES
from warroom.core import git
from warroom.core.completion_detector import read_lane_status_file
from warroom.core.run_documents import MergeMethod, PushErrorType

logger = logging.getLogger(__name__)

_COMMIT_SUMMARY_MAX = 100


# --- Auto-commit -----------------------------------------------------------


@dataclass
class AutoCommitResult:
    success: bool
    committed: bool
    commit_hash: Optional[str] = None
    commit_message: Optional[str] = None
    files_changed: int = 0
    error: Optional[str] = None


def build_commit_message(lane_id: str, lane_status: Optional[dict[str, object]]) -> str:
    """``feat(<lane>): <summary>`` using the agent's own LANE_STATUS.json summary."""
    summary = "Auto-commit lane work"
    if lane_status:
        completed = lane_status.get("completedSteps")
        if lane_status.get("summary"):
            summary = str(lane_status["summary"])
        elif lane_status.get("currentStep"):
            summary = str(lane_status["currentStep"])
        elif isinstance(completed, list) and completed:
            summary = str(completed[-1])
    summary = re.sub(r'["\r\n]', " ", summary).strip()[:_COMMIT_SUMMARY_MAX]
    return f"feat({lane_id}): {summary}"


async def auto_commit_lane_work(worktree_path: str, lane_id: str) -> AutoCommitResult:
    """Stage and commit everything in a lane worktree.

    A clean worktree is a successful no-op (``committed=False``).
    """
    files_changed = await git.uncommitted_file_count(worktree_path)
    if files_changed == 0:
        logger.debug("No uncommitted changes in lane %s, skipping commit", lane_id)
        return AutoCommitResult(success=True, committed=False)

    message = build_commit_message(lane_id, read_lane_status_file(worktree_path))
    logger.info("Committing %d files for lane %s: %s", files_changed, lane_id, message)

    add = await git.run_git(worktree_path, "add", "-A")
    if not add.success:
        return AutoCommitResult(success=False, committed=False, error=add.error)

    commit = await git.run_git(worktree_path, "commit", "-m", message)
    if not commit.success:
        logger.error("Auto-commit failed for lane %s: %s", lane_id, commit.error)
        return AutoCommitResult(success=False, committed=False, error=commit.error)

    head = await git.run_git(worktree_path, "rev-parse", "--short", "HEAD")
    return AutoCommitResult(
        success=True,
        committed=True,
        commit_hash=head.stdout if head.success else None,
        commit_message=message,
        files_changed=files_changed,
    )


# --- Merge -----------------------------------------------------------------


@dataclass
class MergeLaneResult:
    success: bool
    lane_id: str
    branch: str
    method: MergeMethod
    error: Optional[str] = None
    conflicting_files: List[str] = field(default_factory=list)

    @property
    def is_conflict(self) -> bool:
        return bool(self.conflicting_files)


async def ensure_integration_branch(repo_path: str, integration_branch: str) -> Optional[str]:
    """Check out the integration branch, creating it from main/master if needed.

    Returns:
        None on success, otherwise an error message.
    """
    if (await git.run_git(repo_path, "checkout", integration_branch)).success:
        return None

    main_branch = await git.get_main_branch(repo_path)
    if not main_branch:
        return "No main or master branch found to branch from"

    checkout_main = await git.run_git(repo_path, "checkout", main_branch)
    if not checkout_main.success:
        return f"Failed to checkout {main_branch}: {checkout_main.error}"

    create = await git.run_git(repo_path, "checkout", "-b", integration_branch)
    if not create.success:
        return f"Failed to create integration branch: {create.error}"

    logger.info("Created integration branch %s from %s", integration_branch, main_branch)
    return None


async def merge_lane_branch(
    repo_path: str,
    integration_branch: str,
    lane_branch: str,
    method: MergeMethod,
    lane_id: str,
) -> MergeLaneResult:
    """Merge one lane branch into the integration branch.

    A failed merge is left in place for the user; see ``abort_merge``.
    """
    logger.info("Merging lane %s (%s) into %s using %s", lane_id, lane_branch, integration_branch, method)

    branch_error = await ensure_integration_branch(repo_path, integration_branch)
    if branch_error:
        return MergeLaneResult(False, lane_id, lane_branch, method, error=branch_error)

    merge_message = f"Merge {lane_id} ({lane_branch}) into {integration_branch}"
    if method == "squash":
        args: Tuple[str, ...] = ("merge", "--squash", lane_branch)
    else:
        if method == "cherry-pick":
            # TODO: replay the lane's commits with cherry-pick instead of merging.
            logger.warning("cherry-pick is not implemented, merging lane %s with --no-ff", lane_id)
        args = ("merge", "--no-ff", lane_branch, "-m", merge_message)

    result = await git.run_git(repo_path, *args)
    if not result.success:
        conflicting = await git.unmerged_files(repo_path)
        if conflicting:
            logger.warning("Merge conflict for lane %s in %s", lane_id, conflicting)
            return MergeLaneResult(
                False, lane_id, lane_branch, method, error="Merge conflict", conflicting_files=conflicting
            )
        return MergeLaneResult(False, lane_id, lane_branch, method, error=result.error or "Merge failed")

    if method == "squash" and await git.has_uncommitted_changes(repo_path):
        commit = await git.run_git(
            repo_path, "commit", "-m", f"Squash merge {lane_id} ({lane_branch}) into {integration_branch}"
        )
        if not commit.success:
            return MergeLaneResult(
                False, lane_id, lane_branch, method, error=f"Squash commit failed: {commit.error}"
            )

    logger.info("Merged lane %s", lane_id)
    return MergeLaneResult(True, lane_id, lane_branch, method)


async def abort_merge(repo_path: str) -> git.GitResult:
    """Abort an in-progress merge. Explicit recovery only."""
    result = await git.run_git(repo_path, "merge", "--abort")
    if not result.success:
        logger.warning("merge --abort failed in %s: %s", repo_path, result.error)
    return result


# --- Push ------------------------------------------------------------------

# First matching row wins. Matching is advisory: unmatched text is "unknown".
PUSH_ERROR_PATTERNS: List[Tuple[Pattern[str], PushErrorType]] = [
    (re.compile(r"authentication|permission denied|could not read from remote|invalid credentials"), "auth"),
    (re.compile(r"protected branch|pre-receive hook declined|denied to"), "protected"),
    (re.compile(r"rejected|non-fast-forward|failed to push"), "rejected"),
    (re.compile(r"could not resolve host|network|connection refused|timed out"), "network"),
]


def classify_push_error(stderr: str) -> PushErrorType:
    text = stderr.lower()
    for pattern, error_type in PUSH_ERROR_PATTERNS:
        if pattern.search(text):
            return error_type
    return "unknown"


@dataclass
class PushResult:
    success: bool
    branch: str
    remote: str
    error: Optional[str] = None
    error_type: Optional[PushErrorType] = None


async def push_branch(
    repo_path: str, branch: str, remote: Optional[str] = None, set_upstream: bool = False
) -> PushResult:
    remote = remote or git.get_remote()
    args = ["push"] + (["-u"] if set_upstream else []) + [remote, branch]
    logger.info("Pushing %s to %s", branch, remote)

    result = await git.run_git(repo_path, *args)
    if result.success:
        return PushResult(success=True, branch=branch, remote=remote)

    error_type = classify_push_error(f"{result.stderr}\n{result.error or ''}")
    logger.error("Push failed for %s (%s): %s", branch, error_type, result.error)
    return PushResult(
        success=False,
        branch=branch,
        remote=remote,
        error=result.error or result.stderr or "Push failed",
        error_type=error_type,
    )


async def push_with_upstream(repo_path: str, branch: str) -> PushResult:
    """Push ``branch``, setting upstream when the remote has no such branch yet."""
    has_remote = await git.remote_branch_exists(repo_path, branch)
    return await push_branch(repo_path, branch, set_upstream=not has_remote)


async def push_lane_branch(worktree_path: str, branch: str) -> PushResult:
    return await push_with_upstream(worktree_path, branch)


async def push_integration_branch(repo_path: str, integration_branch: str) -> PushResult:
    if is_protected_main_branch(integration_branch):
        return PushResult(
            success=False,
            branch=integration_branch,
            remote=git.get_remote(),
            error=f"Refusing to auto-push protected branch {integration_branch}",
            error_type="protected",
        )
    return await push_with_upstream(repo_path, integration_branch)


def is_protected_main_branch(branch: str) -> bool:
    return branch.lower() in PROTECTED_MAIN_BRANCHES


def worktree_exists(worktree_path: str) -> bool:
    return Path(worktree_path).is_dir()
