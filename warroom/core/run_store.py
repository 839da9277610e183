"""Run directory access: plan.json, status.json, merge-proposal.json.

status.json is shared by every lane of a run, so all writes go through
``update_status``, which holds a per-run lock across read, modify and write.
"""

import asyncio
import json
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict

from pydantic import ValidationError

from warroom.constants import MERGE_PROPOSAL_FILENAME, PLAN_FILENAME, STATUS_FILENAME
from warroom.core.errors import PlanLoadError, RunNotFoundError, WarroomError
from warroom.core.history import HistoryLog
from warroom.core.run_documents import MergeProposal, Plan, StatusDocument
from warroom.utils import now_iso

logger = logging.getLogger(__name__)


def _write_json_atomic(path: Path, data: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class RunStore:
    """Reads and writes the documents of runs under ``runs_dir``."""

    def __init__(self, runs_dir: str | Path) -> None:
        self.runs_dir = Path(os.path.expanduser(str(runs_dir)))
        self._locks: Dict[str, asyncio.Lock] = {}

    def run_dir(self, run_slug: str) -> Path:
        return self.runs_dir / run_slug

    def history(self, run_slug: str) -> HistoryLog:
        return HistoryLog(self.run_dir(run_slug))

    def _lock(self, run_slug: str) -> asyncio.Lock:
        lock = self._locks.get(run_slug)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[run_slug] = lock
        return lock

    def load_plan(self, run_slug: str) -> Plan:
        """Parse plan.json.

        Raises:
            RunNotFoundError: The run has no plan.json.
            PlanLoadError: plan.json is unreadable or invalid.
        """
        path = self.run_dir(run_slug) / PLAN_FILENAME
        if not path.exists():
            raise RunNotFoundError(f"No {PLAN_FILENAME} for run {run_slug} in {path.parent}")
        try:
            return Plan.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, ValidationError) as e:
            raise PlanLoadError(f"Invalid {PLAN_FILENAME} for run {run_slug}: {e}") from e

    def load_status(self, run_slug: str, run_id: str = "") -> StatusDocument:
        """Parse status.json. A missing file yields a fresh staged document.

        Raises:
            WarroomError: status.json exists but cannot be parsed. It is never
                overwritten in that case.
        """
        path = self.run_dir(run_slug) / STATUS_FILENAME
        if not path.exists():
            return StatusDocument(run_id=run_id, status="staged", updated_at=now_iso())
        try:
            return StatusDocument.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, ValidationError) as e:
            raise WarroomError(f"Unreadable {STATUS_FILENAME} for run {run_slug}: {e}") from e

    def save_status(self, run_slug: str, status: StatusDocument) -> None:
        status.updated_at = now_iso()
        _write_json_atomic(self.run_dir(run_slug) / STATUS_FILENAME, status.to_json_dict())

    @asynccontextmanager
    async def update_status(self, run_slug: str, run_id: str = "") -> AsyncIterator[StatusDocument]:
        """Serialized read-modify-write of status.json.

        Example:
            async with store.update_status(slug) as status:
                status.entry(lane_id).status = "complete"

        Not reentrant: do not nest two updates of the same run.
        """
        async with self._lock(run_slug):
            status = self.load_status(run_slug, run_id)
            yield status
            self.save_status(run_slug, status)

    def save_merge_proposal(self, run_slug: str, proposal: MergeProposal) -> Path:
        path = self.run_dir(run_slug) / MERGE_PROPOSAL_FILENAME
        _write_json_atomic(path, proposal.to_json_dict())
        return path

    def load_merge_proposal(self, run_slug: str) -> MergeProposal | None:
        path = self.run_dir(run_slug) / MERGE_PROPOSAL_FILENAME
        if not path.exists():
            return None
        try:
            return MergeProposal.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Ignoring unreadable %s: %s", path, e)
            return None
