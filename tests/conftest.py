"""Pytest configuration for Warroom tests."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from warroom.core import git


def pytest_collection_modifyitems(config, items):
    """Set per-marker timeouts: unit=1s, integration=5s."""
    for item in items:
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(1))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))


@pytest.fixture(autouse=True)
def _reset_git_settings():
    """Restore process-wide git settings after tests that reconfigure them."""
    yield
    git.configure_git(binary="git", remote="origin", local_timeout_s=30.0, network_timeout_s=60.0)


@pytest.fixture(autouse=True)
def _quiet_logging():
    logging.getLogger("warroom").handlers.clear()
    yield


def make_plan(
    run_slug: str,
    repo_path: str,
    lanes: List[Dict[str, Any]],
    integration_branch: str = "warroom/integration",
    method: str = "merge",
) -> Dict[str, Any]:
    """Camel-case plan.json document."""
    return {
        "runId": f"id-{run_slug}",
        "runSlug": run_slug,
        "goal": "Ship the feature",
        "repo": {"name": "repo", "path": repo_path},
        "integrationBranch": integration_branch,
        "lanes": lanes,
        "merge": {"proposedOrder": [], "method": method, "notes": ""},
    }


def make_lane(
    lane_id: str,
    worktree_path: str,
    depends_on: Optional[List[str]] = None,
    agent: str = "developer",
    branch: Optional[str] = None,
    skip_permissions: bool = False,
) -> Dict[str, Any]:
    return {
        "laneId": lane_id,
        "agent": agent,
        "branch": branch or f"lane/{lane_id}",
        "worktreePath": worktree_path,
        "dependsOn": depends_on or [],
        "autonomy": {"dangerouslySkipPermissions": skip_permissions},
    }


def write_run(runs_dir: Path, plan: Dict[str, Any], status: Optional[Dict[str, Any]] = None) -> Path:
    run_dir = runs_dir / plan["runSlug"]
    run_dir.mkdir(parents=True, exist_ok=True)
    (run_dir / "plan.json").write_text(json.dumps(plan), encoding="utf-8")
    if status is not None:
        (run_dir / "status.json").write_text(json.dumps(status), encoding="utf-8")
    return run_dir
