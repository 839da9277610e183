"""Unit tests for run directory documents."""

import asyncio
import json

import pytest

from tests.conftest import make_lane, make_plan, write_run
from warroom.core.errors import PlanLoadError, RunNotFoundError, WarroomError
from warroom.core.run_documents import MergeProposal
from warroom.core.run_store import RunStore


@pytest.fixture
def store(tmp_path):
    plan = make_plan("run-1", "/repo", [make_lane("a", "/wt/a"), make_lane("b", "/wt/b", ["a"])])
    write_run(tmp_path, plan)
    return RunStore(tmp_path)


def test_load_plan(store):
    plan = store.load_plan("run-1")

    assert plan.run_id == "id-run-1"
    assert [lane.lane_id for lane in plan.lanes] == ["a", "b"]
    assert plan.lane("b").depends_on == ["a"]


def test_missing_and_invalid_plan(tmp_path, store):
    with pytest.raises(RunNotFoundError):
        store.load_plan("ghost")

    (tmp_path / "run-1" / "plan.json").write_text(json.dumps({"runSlug": "run-1"}))
    with pytest.raises(PlanLoadError):
        store.load_plan("run-1")


def test_missing_status_is_staged(store):
    status = store.load_status("run-1", "id-run-1")

    assert status.status == "staged"
    assert status.run_id == "id-run-1"
    assert status.lanes == {}


def test_malformed_status_raises_and_is_left_alone(tmp_path, store):
    path = tmp_path / "run-1" / "status.json"
    path.write_text("[1, 2")

    with pytest.raises(WarroomError):
        store.load_status("run-1")
    assert path.read_text() == "[1, 2"


@pytest.mark.asyncio
async def test_update_status_writes_camel_case(tmp_path, store):
    async with store.update_status("run-1", "id-run-1") as doc:
        doc.status = "running"
        doc.entry("a").status = "in_progress"
        doc.lanes_completed.append("x")

    data = json.loads((tmp_path / "run-1" / "status.json").read_text())
    assert data["runId"] == "id-run-1"
    assert data["status"] == "running"
    assert data["lanesCompleted"] == ["x"]
    assert data["lanes"]["a"]["status"] == "in_progress"
    assert "updatedAt" in data
    assert not [p for p in (tmp_path / "run-1").iterdir() if p.name.startswith(".status.json.")]


@pytest.mark.asyncio
async def test_concurrent_updates_are_not_lost(tmp_path, store):
    async def complete(lane_id):
        async with store.update_status("run-1") as doc:
            await asyncio.sleep(0)
            doc.lanes_completed.append(lane_id)

    await asyncio.gather(*(complete(f"lane-{i}") for i in range(10)))

    assert sorted(store.load_status("run-1").lanes_completed) == sorted(f"lane-{i}" for i in range(10))


@pytest.mark.asyncio
async def test_failed_update_leaves_document_untouched(tmp_path, store):
    store.save_status("run-1", store.load_status("run-1", "id-run-1"))
    before = (tmp_path / "run-1" / "status.json").read_text()

    with pytest.raises(RuntimeError):
        async with store.update_status("run-1") as doc:
            doc.status = "running"
            raise RuntimeError("interrupted")

    assert (tmp_path / "run-1" / "status.json").read_text() == before


def test_merge_proposal_round_trip(store):
    assert store.load_merge_proposal("run-1") is None

    proposal = MergeProposal(run_slug="run-1", created_at="2026-01-01T00:00:00+00:00", integration_branch="int")
    path = store.save_merge_proposal("run-1", proposal)

    assert path.name == "merge-proposal.json"
    loaded = store.load_merge_proposal("run-1")
    assert loaded is not None
    assert loaded.integration_branch == "int"
