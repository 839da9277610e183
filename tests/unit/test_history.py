"""Unit tests for the history.jsonl audit log."""

import json

from warroom.core.history import HistoryFilter, HistoryLog


def test_append_writes_one_json_object_per_line(tmp_path):
    log = HistoryLog(tmp_path / "run-1")

    event = log.append("lane_launched", "Lane launched in process mode", lane_id="a", details={"pid": 42})
    log.append("mission_started", "Run started with 2 lanes")

    lines = log.path.read_text().splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first == event
    assert first["type"] == "lane_launched"
    assert first["laneId"] == "a"
    assert first["details"] == {"pid": 42}
    assert "laneId" not in json.loads(lines[1])


def test_read_skips_malformed_lines(tmp_path):
    log = HistoryLog(tmp_path)
    log.append("commit", "feat(a): work", lane_id="a")
    with open(log.path, "a", encoding="utf-8") as f:
        f.write("{not json\n\n")
    log.append("commit", "feat(b): work", lane_id="b")

    assert [event["laneId"] for event in log.read()] == ["a", "b"]


def test_read_missing_file_is_empty(tmp_path):
    assert HistoryLog(tmp_path / "nowhere").read() == []


def test_query_filters_and_paginates(tmp_path):
    log = HistoryLog(tmp_path)
    log.append("lane_launched", "launch a", lane_id="a")
    log.append("lane_launched", "launch b", lane_id="b")
    log.append("commit", "commit a", lane_id="a")
    log.append("lane_status_change", "a complete", lane_id="a")

    page = log.query(HistoryFilter(lane_ids=["a"], offset=1, limit=1))

    assert page.total == 4
    assert [event["message"] for event in page.events] == ["commit a"]

    launches = log.query(HistoryFilter(event_types=["lane_launched"]))
    assert [event["laneId"] for event in launches.events] == ["a", "b"]


def test_query_time_bounds(tmp_path):
    log = HistoryLog(tmp_path)
    log.path.write_text(
        "\n".join(
            json.dumps({"id": str(i), "type": "commit", "timestamp": ts, "message": str(i)})
            for i, ts in enumerate(["2026-01-01T10:00:00+00:00", "2026-01-02T10:00:00+00:00", "2026-01-03T10:00:00+00:00"])
        )
        + "\n"
    )

    page = log.query(HistoryFilter(since="2026-01-02T00:00:00+00:00", until="2026-01-02T23:00:00+00:00"))

    assert [event["message"] for event in page.events] == ["1"]
