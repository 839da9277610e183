"""Append-only audit log (history.jsonl) in a run directory.

One JSON object per line. Writes are best-effort: a failed append is logged,
never raised, so the audit trail can't take a lane down with it.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Sequence

from warroom.constants import HISTORY_FILENAME
from warroom.utils import now_iso, parse_iso

logger = logging.getLogger(__name__)

HistoryEventType = Literal[
    "lane_launched",
    "lane_status_change",
    "commit",
    "merge_started",
    "merge_lane_complete",
    "merge_complete",
    "merge_conflict",
    "merge_failed",
    "push_started",
    "push_complete",
    "push_failed",
    "error",
    "retry_scheduled",
    "retry_started",
    "mission_started",
    "mission_stopped",
    "mission_complete",
    "lane_reset",
]


@dataclass
class HistoryFilter:
    event_types: Sequence[str] = ()
    lane_ids: Sequence[str] = ()
    since: Optional[str] = None
    until: Optional[str] = None
    offset: int = 0
    limit: Optional[int] = None


@dataclass
class HistoryPage:
    events: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0


class HistoryLog:
    """history.jsonl for one run."""

    def __init__(self, run_dir: str | Path) -> None:
        self.path = Path(run_dir) / HISTORY_FILENAME

    def append(
        self,
        event_type: HistoryEventType,
        message: str,
        lane_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Append an event and return it."""
        event: Dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "type": event_type,
            "timestamp": now_iso(),
            "message": message,
        }
        if lane_id:
            event["laneId"] = lane_id
        if details:
            event["details"] = details

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event) + "\n")
        except OSError as e:
            logger.error("Failed to append history event to %s: %s", self.path, e)
        return event

    def read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        events = []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for line_number, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        events.append(json.loads(line))
                    except ValueError:
                        logger.warning("Skipping malformed history line %d in %s", line_number, self.path)
        except OSError as e:
            logger.error("Failed to read history %s: %s", self.path, e)
        return events

    def query(self, history_filter: HistoryFilter) -> HistoryPage:
        """Filtered, paginated read. ``total`` counts every event before filtering."""
        events = self.read()
        total = len(events)

        if history_filter.event_types:
            events = [e for e in events if e.get("type") in history_filter.event_types]
        if history_filter.lane_ids:
            events = [e for e in events if e.get("laneId") in history_filter.lane_ids]

        since = parse_iso(history_filter.since)
        until = parse_iso(history_filter.until)
        if since or until:
            bounded = []
            for event in events:
                ts = parse_iso(event.get("timestamp"))
                if ts is None:
                    continue
                if since and ts < since:
                    continue
                if until and ts > until:
                    continue
                bounded.append(event)
            events = bounded

        start = max(history_filter.offset, 0)
        end = start + history_filter.limit if history_filter.limit is not None else None
        return HistoryPage(events=events[start:end], total=total)
