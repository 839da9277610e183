"""Git shell adapter.

Runs git commands against a worktree and returns structured results. Nothing
here raises on a non-zero exit, a timeout, or a missing binary: callers must
check ``GitResult.success``.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from warroom.constants import GIT_LOCAL_TIMEOUT_S, GIT_NETWORK_COMMANDS, GIT_NETWORK_TIMEOUT_S

logger = logging.getLogger(__name__)

# Upper bound on reaping a killed git child
KILL_REAP_TIMEOUT_S = 2.0


@dataclass
class GitResult:
    """Outcome of one git invocation."""

    stdout: str
    stderr: str
    success: bool
    error: Optional[str] = None
    returncode: Optional[int] = None


@dataclass
class GitSettings:
    binary: str = "git"
    remote: str = "origin"
    local_timeout_s: float = GIT_LOCAL_TIMEOUT_S
    network_timeout_s: float = GIT_NETWORK_TIMEOUT_S


_settings = GitSettings()


def configure_git(binary: str, remote: str, local_timeout_s: float, network_timeout_s: float) -> None:
    """Apply git settings from config. Called once by the composition root."""
    _settings.binary = binary
    _settings.remote = remote
    _settings.local_timeout_s = local_timeout_s
    _settings.network_timeout_s = network_timeout_s


def get_remote() -> str:
    return _settings.remote


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    try:
        await asyncio.wait_for(proc.wait(), timeout=KILL_REAP_TIMEOUT_S)
    except asyncio.TimeoutError:
        logger.warning("git process %s did not exit after SIGKILL", proc.pid)


def _timeout_for(args: tuple[str, ...]) -> float:
    if args and args[0] in GIT_NETWORK_COMMANDS:
        return _settings.network_timeout_s
    return _settings.local_timeout_s


async def run_git(cwd: str | Path, *args: str, timeout: Optional[float] = None) -> GitResult:
    """Run ``git <args>`` in ``cwd``.

    Args:
        cwd: Working directory (a repository or worktree).
        *args: Git arguments, e.g. ``"merge", "--no-ff", branch``.
        timeout: Override for the default local/network timeout.

    Returns:
        GitResult with trimmed stdout/stderr.
    """
    effective_timeout = timeout if timeout is not None else _timeout_for(args)
    try:
        proc = await asyncio.create_subprocess_exec(
            _settings.binary,
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (OSError, ValueError) as e:
        logger.error("Failed to spawn git %s in %s: %s", " ".join(args), cwd, e)
        return GitResult(stdout="", stderr="", success=False, error=str(e))

    try:
        stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        logger.warning("git %s timed out after %.0fs in %s", " ".join(args), effective_timeout, cwd)
        return GitResult(
            stdout="",
            stderr="",
            success=False,
            error=f"git {args[0] if args else ''} timed out after {effective_timeout:.0f}s",
            returncode=proc.returncode,
        )
    except asyncio.CancelledError:
        logger.debug("git %s cancelled in %s, killing pid %s", " ".join(args), cwd, proc.pid)
        await _kill(proc)
        raise

    stdout = stdout_b.decode(errors="replace").strip()
    stderr = stderr_b.decode(errors="replace").strip()
    if proc.returncode != 0:
        logger.debug("git %s failed (exit %s): %s", " ".join(args), proc.returncode, stderr)
        return GitResult(
            stdout=stdout,
            stderr=stderr,
            success=False,
            error=stderr or stdout or f"git exited with {proc.returncode}",
            returncode=proc.returncode,
        )
    return GitResult(stdout=stdout, stderr=stderr, success=True, returncode=0)


def _lines(text: str) -> List[str]:
    return [line for line in text.splitlines() if line.strip()]


async def branch_exists(cwd: str | Path, branch: str) -> bool:
    result = await run_git(cwd, "show-ref", "--verify", "--quiet", f"refs/heads/{branch}")
    return result.success


async def get_main_branch(cwd: str | Path) -> Optional[str]:
    """Primary branch of the repository: ``main`` first, then ``master``."""
    for candidate in ("main", "master"):
        if await branch_exists(cwd, candidate):
            return candidate
    return None


async def get_current_branch(cwd: str | Path) -> Optional[str]:
    result = await run_git(cwd, "rev-parse", "--abbrev-ref", "HEAD")
    return result.stdout if result.success and result.stdout else None


async def commits_ahead(cwd: str | Path, base: str, branch: str) -> int:
    """Commits on ``branch`` not reachable from ``base``. 0 on any failure."""
    result = await run_git(cwd, "rev-list", "--count", f"{base}..{branch}")
    if not result.success:
        return 0
    try:
        return int(result.stdout)
    except ValueError:
        return 0


async def changed_files(cwd: str | Path, base: str, branch: str) -> List[str]:
    """Files changed on ``branch`` since it diverged from ``base``."""
    result = await run_git(cwd, "diff", "--name-only", f"{base}...{branch}")
    return _lines(result.stdout) if result.success else []


async def commit_count(cwd: str | Path) -> int:
    result = await run_git(cwd, "rev-list", "--count", "HEAD")
    if not result.success:
        return 0
    try:
        return int(result.stdout)
    except ValueError:
        return 0


async def recent_commit_subjects(cwd: str | Path, count: int) -> List[str]:
    result = await run_git(cwd, "log", f"-{count}", "--format=%s")
    return _lines(result.stdout) if result.success else []


async def uncommitted_file_count(cwd: str | Path) -> int:
    result = await run_git(cwd, "status", "--porcelain")
    return len(_lines(result.stdout)) if result.success else 0


async def has_uncommitted_changes(cwd: str | Path) -> bool:
    return await uncommitted_file_count(cwd) > 0


async def unmerged_files(cwd: str | Path) -> List[str]:
    """Paths left in conflict by the last merge."""
    result = await run_git(cwd, "diff", "--name-only", "--diff-filter=U")
    return _lines(result.stdout) if result.success else []


async def is_branch_merged(cwd: str | Path, branch: str, into: str) -> bool:
    result = await run_git(cwd, "merge-base", "--is-ancestor", branch, into)
    return result.success


async def remote_branch_exists(cwd: str | Path, branch: str, remote: Optional[str] = None) -> bool:
    result = await run_git(cwd, "ls-remote", "--heads", remote or _settings.remote, branch)
    return result.success and bool(result.stdout)
