"""Events emitted by the orchestrator for external consumers (e.g. a dashboard).

The core never depends on anyone consuming them.
"""

from dataclasses import dataclass, field
from typing import List, Literal, Optional, Union

from warroom.utils import now_iso

EventType = Literal[
    "lane_status_change",
    "lane_activity",
    "lane_file_activity",
    "lane_progress",
    "merge_progress",
    "retry_scheduled",
    "run_status_change",
    "run_complete",
]


class WarroomEvents:
    """Event names emitted on the event bus."""

    LANE_STATUS_CHANGE: Literal["lane_status_change"] = "lane_status_change"
    LANE_ACTIVITY: Literal["lane_activity"] = "lane_activity"  # New output line
    LANE_FILE_ACTIVITY: Literal["lane_file_activity"] = "lane_file_activity"  # Worktree files changed
    LANE_PROGRESS: Literal["lane_progress"] = "lane_progress"  # Parsed progress indicator
    MERGE_PROGRESS: Literal["merge_progress"] = "merge_progress"
    RETRY_SCHEDULED: Literal["retry_scheduled"] = "retry_scheduled"
    RUN_STATUS_CHANGE: Literal["run_status_change"] = "run_status_change"
    RUN_COMPLETE: Literal["run_complete"] = "run_complete"


@dataclass
class LaneStatusChangeContext:
    run_slug: str
    lane_id: str
    previous_status: str
    status: str
    exit_code: Optional[int] = None
    error: Optional[str] = None
    timestamp: str = field(default_factory=now_iso)


@dataclass
class LaneActivityContext:
    run_slug: str
    lane_id: str
    stream: str
    content: str
    line_number: int
    timestamp: str = field(default_factory=now_iso)


@dataclass
class LaneFileActivityContext:
    run_slug: str
    lane_id: str
    paths: List[str]
    last_activity_at: str
    timestamp: str = field(default_factory=now_iso)


@dataclass
class LaneProgressContext:
    run_slug: str
    lane_id: str
    progress_type: str
    value: float
    total: Optional[int] = None
    timestamp: str = field(default_factory=now_iso)


@dataclass
class MergeProgressContext:
    run_slug: str
    lane_id: str
    status: str
    detail: Optional[str] = None
    merged_lanes: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=now_iso)


@dataclass
class RetryScheduledContext:
    run_slug: str
    lane_id: str
    attempt: int
    max_attempts: int
    backoff_seconds: float
    next_retry_at: Optional[str]
    exhausted: bool = False
    timestamp: str = field(default_factory=now_iso)


@dataclass
class RunStatusContext:
    run_slug: str
    status: str
    timestamp: str = field(default_factory=now_iso)


EventContext = Union[
    LaneStatusChangeContext,
    LaneActivityContext,
    LaneFileActivityContext,
    LaneProgressContext,
    MergeProgressContext,
    RetryScheduledContext,
    RunStatusContext,
]
