"""Safe removal of lane worktrees and branches.

Every removal path is validated first: no symlinks, nothing outside the
configured worktree root, nothing at or under a protected system directory.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from warroom.constants import DEFAULT_WORKTREE_ROOT
from warroom.core import git

logger = logging.getLogger(__name__)


def dangerous_paths() -> List[Path]:
    return [
        Path.home(),
        Path("/"),
        Path("/usr"),
        Path("/etc"),
        Path("/var"),
        Path("/tmp"),
        Path("/bin"),
        Path("/sbin"),
        Path("/Applications"),
    ]


@dataclass
class WorktreeSafetyCheck:
    safe: bool
    reason: str
    has_uncommitted_changes: bool = False
    is_symlink: bool = False
    path_outside_boundary: bool = False


@dataclass
class RemoveWorktreeResult:
    success: bool
    worktree_path: str
    error: Optional[str] = None


@dataclass
class DeleteBranchResult:
    success: bool
    branch: str
    forced_delete: bool = False
    error: Optional[str] = None


def _resolve(path: str | Path) -> Path:
    # Lexical resolution keeps a symlinked leaf detectable.
    return Path(os.path.abspath(os.path.expanduser(str(path))))


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def validate_worktree_path(worktree_path: str, worktree_root: str = DEFAULT_WORKTREE_ROOT) -> WorktreeSafetyCheck:
    """Path-only safety checks; does not touch git."""
    resolved = _resolve(worktree_path)
    root = _resolve(worktree_root)

    if resolved.is_symlink():
        return WorktreeSafetyCheck(
            safe=False,
            reason="Worktree path is a symlink - refusing to remove",
            is_symlink=True,
        )

    if not _is_within(resolved, root):
        return WorktreeSafetyCheck(
            safe=False,
            reason=f"Worktree path is outside the expected root ({root})",
            path_outside_boundary=True,
        )

    if resolved == root:
        return WorktreeSafetyCheck(safe=False, reason="Refusing to remove the worktree root itself")

    for dangerous in dangerous_paths():
        dangerous = _resolve(dangerous)
        # A root living inside a protected directory (e.g. under $HOME) may still
        # hold removable worktrees, but never the protected directory itself.
        # This exempts "root under protected dir", not "protected dir under root":
        # a protected directory nested inside the root stays blocked.
        if resolved == dangerous or (_is_within(resolved, dangerous) and not _is_within(root, dangerous)):
            return WorktreeSafetyCheck(
                safe=False,
                reason=f"Path {resolved} is or is under a protected system directory",
                path_outside_boundary=True,
            )

    return WorktreeSafetyCheck(safe=True, reason="Path validation passed")


async def is_worktree_safe_to_remove(
    worktree_path: str, worktree_root: str = DEFAULT_WORKTREE_ROOT
) -> WorktreeSafetyCheck:
    """Path checks plus a fresh uncommitted-changes check."""
    check = validate_worktree_path(worktree_path, worktree_root)
    if not check.safe:
        return check

    if not Path(worktree_path).exists():
        return WorktreeSafetyCheck(safe=True, reason="Worktree directory does not exist (already removed)")

    status = await git.run_git(worktree_path, "status", "--porcelain")
    if not status.success:
        return WorktreeSafetyCheck(safe=False, reason=f"Unable to check git status: {status.error}")
    if status.stdout:
        return WorktreeSafetyCheck(
            safe=False,
            reason="Worktree has uncommitted changes",
            has_uncommitted_changes=True,
        )
    return WorktreeSafetyCheck(safe=True, reason="Worktree is safe to remove")


async def remove_worktree(
    repo_path: str,
    worktree_path: str,
    worktree_root: str = DEFAULT_WORKTREE_ROOT,
    force: bool = False,
) -> RemoveWorktreeResult:
    """Remove a lane worktree after re-running the safety checks.

    Args:
        repo_path: Main repository the worktree belongs to.
        worktree_path: Worktree to remove.
        worktree_root: Only paths under this root may be removed.
        force: Pass ``--force`` to git; uncommitted changes still block removal.
    """
    check = await is_worktree_safe_to_remove(worktree_path, worktree_root)
    if not check.safe:
        logger.warning("Refusing to remove worktree %s: %s", worktree_path, check.reason)
        return RemoveWorktreeResult(success=False, worktree_path=worktree_path, error=check.reason)

    if not Path(worktree_path).exists():
        # The directory is gone; drop the stale administrative entry git still holds.
        pruned = await prune_worktrees(repo_path)
        if not pruned.success:
            logger.warning("git worktree prune failed in %s: %s", repo_path, pruned.error)
        return RemoveWorktreeResult(success=True, worktree_path=worktree_path)

    args = ["worktree", "remove", worktree_path] + (["--force"] if force else [])
    result = await git.run_git(repo_path, *args)
    if not result.success:
        logger.error("Failed to remove worktree %s: %s", worktree_path, result.error)
        return RemoveWorktreeResult(success=False, worktree_path=worktree_path, error=result.error)

    logger.info("Removed worktree %s", worktree_path)
    return RemoveWorktreeResult(success=True, worktree_path=worktree_path)


async def delete_lane_branch(repo_path: str, branch: str, confirmed_merged: bool = False) -> DeleteBranchResult:
    """Delete a lane branch: ``-d`` normally, ``-D`` only once the caller confirmed it is merged."""
    flag = "-D" if confirmed_merged else "-d"
    result = await git.run_git(repo_path, "branch", flag, branch)
    if not result.success:
        logger.error("Failed to delete branch %s: %s", branch, result.error)
        return DeleteBranchResult(success=False, branch=branch, error=result.error)
    return DeleteBranchResult(success=True, branch=branch, forced_delete=confirmed_merged)


async def prune_worktrees(repo_path: str) -> git.GitResult:
    return await git.run_git(repo_path, "worktree", "prune")
