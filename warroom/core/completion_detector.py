"""Heuristic completion detection for in-progress lanes.

Read-only: gathers evidence that a lane's agent has finished and reports
whether the lane should be auto-marked complete. The caller decides what to
persist.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Pattern, Sequence

from warroom.constants import (
    COMPLETION_COMMIT_WINDOW,
    COMPLETION_INACTIVITY_S,
    COMPLETION_MARKER_FILES,
    LANE_STATUS_COMPLETE_PHASES,
    LANE_STATUS_FILENAME,
)
from warroom.core import git
from warroom.core.run_documents import CompletionDetection, LaneStatusEntry
from warroom.utils import parse_iso, utcnow

logger = logging.getLogger(__name__)

COMPLETION_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\bcomplete[sd]?\b", re.IGNORECASE),
    re.compile(r"\bdone\b", re.IGNORECASE),
    re.compile(r"\bfinished\b", re.IGNORECASE),
    re.compile(r"\bready for review\b", re.IGNORECASE),
    re.compile(r"\bwrap up\b", re.IGNORECASE),
    re.compile(r"\bfinal\b", re.IGNORECASE),
]


@dataclass
class CompletionRules:
    marker_files: Sequence[str] = COMPLETION_MARKER_FILES
    inactivity_threshold_s: float = COMPLETION_INACTIVITY_S
    commit_subject_window: int = COMPLETION_COMMIT_WINDOW


@dataclass
class CompletionCheckResult:
    detection: CompletionDetection = field(default_factory=CompletionDetection)
    should_auto_mark: bool = False


def check_marker_files(worktree_path: str, marker_files: Sequence[str]) -> List[str]:
    return [f"{name} exists" for name in marker_files if (Path(worktree_path) / name).exists()]


def matches_completion_phrase(subject: str) -> bool:
    return any(pattern.search(subject) for pattern in COMPLETION_PATTERNS)


async def check_commit_subjects(worktree_path: str, window: int) -> List[str]:
    if not Path(worktree_path).exists():
        return []
    signals = []
    for subject in await git.recent_commit_subjects(worktree_path, window):
        if matches_completion_phrase(subject):
            shown = subject[:50] + ("..." if len(subject) > 50 else "")
            signals.append(f'Commit message: "{shown}"')
    return signals


def check_inactivity(
    last_activity_at: Optional[str],
    commits_since_launch: Optional[int],
    threshold_s: float,
    now: datetime,
) -> Optional[str]:
    """Inactivity signal, only once at least one commit has landed since launch."""
    if not commits_since_launch or commits_since_launch <= 0:
        return None
    last_activity = parse_iso(last_activity_at)
    if last_activity is None:
        return None
    inactive_s = (now - last_activity).total_seconds()
    if inactive_s >= threshold_s:
        return f"No file changes for {int(inactive_s // 60)} minutes after commits"
    return None


async def detect_lane_completion(
    worktree_path: str,
    lane_entry: Optional[LaneStatusEntry],
    commits_since_launch: Optional[int],
    autonomy_enabled: bool,
    rules: Optional[CompletionRules] = None,
    now: Optional[datetime] = None,
) -> CompletionCheckResult:
    """Evaluate completion signals for one lane.

    Args:
        worktree_path: Lane worktree.
        lane_entry: Current status.json entry for the lane.
        commits_since_launch: Commits made in the worktree since launch.
        autonomy_enabled: Whether the lane may be auto-marked complete.
        rules: Marker files and thresholds.
        now: Clock override for tests.

    Returns:
        CompletionCheckResult. Lanes not ``in_progress`` yield an empty detection.
    """
    if lane_entry is None or lane_entry.status != "in_progress":
        return CompletionCheckResult()

    rules = rules or CompletionRules()
    now = now or utcnow()

    signals = check_marker_files(worktree_path, rules.marker_files)
    signals.extend(await check_commit_subjects(worktree_path, rules.commit_subject_window))
    inactivity = check_inactivity(
        lane_entry.last_activity_at, commits_since_launch, rules.inactivity_threshold_s, now
    )
    if inactivity:
        signals.append(inactivity)

    detected = bool(signals)
    was_auto_marked = bool(lane_entry.completion_detection and lane_entry.completion_detection.auto_marked)
    should_auto_mark = detected and autonomy_enabled and not was_auto_marked

    detection = CompletionDetection(
        detected=detected,
        reason=signals[0] if detected else None,
        signals=signals,
        detected_at=now.isoformat() if detected else None,
        auto_marked=should_auto_mark or was_auto_marked,
    )
    if detected:
        logger.debug("Completion signals in %s: %s", worktree_path, signals)
    return CompletionCheckResult(detection=detection, should_auto_mark=should_auto_mark)


def read_lane_status_file(worktree_path: str) -> Optional[dict[str, object]]:
    """Agent-written LANE_STATUS.json, or None if absent or unreadable."""
    path = Path(worktree_path) / LANE_STATUS_FILENAME
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.debug("Unreadable %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None


def is_lane_status_complete(worktree_path: str) -> bool:
    """True when the agent reported a finished phase in LANE_STATUS.json."""
    data = read_lane_status_file(worktree_path)
    if not data:
        return False
    phase = str(data.get("phase") or data.get("status") or "").lower()
    return phase in LANE_STATUS_COMPLETE_PHASES
