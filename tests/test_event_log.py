from __future__ import annotations

import json
from pathlib import Path

import pytest

from connect_now.event_log import CallEvent, CallEventLog


def test_record_and_tail_filter_by_session(tmp_path: Path) -> None:
    log = CallEventLog(tmp_path / "events.jsonl")
    log.record("room1", "state", "Preparing call...", role="caller", state="role-resolving")
    log.record("room2", "state", "Joining room...", role="callee")
    log.record("room1", "track", "Remote track received", details={"kind": "video", "id": None})

    events = log.tail(session_id="room1")
    assert [event.event for event in events] == ["state", "track"]
    assert events[-1].details == {"kind": "video"}
    assert [event.session_id for event in log.tail(1)] == ["room1"]


def test_events_survive_reload(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "events.jsonl"
    log = CallEventLog(path)
    entry = log.record("room1", "teardown", "Teardown started (hangup)", state="closed")
    lines = path.read_text().splitlines()
    assert json.loads(lines[0])["session"] == "room1"

    reloaded = CallEventLog(path)
    restored = reloaded.tail()
    assert len(restored) == 1
    assert restored[0].message == entry.message
    assert restored[0].state == "closed"


def test_malformed_lines_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    good = CallEvent(1.0, "room1", "state", "Connected").to_dict()
    path.write_text("\n".join(["{broken", json.dumps(["list"]), "", json.dumps(good)]) + "\n")
    log = CallEventLog(path)
    assert [event.message for event in log.tail()] == ["Connected"]


def test_memory_only_log_keeps_bounded_tail() -> None:
    log = CallEventLog(None, max_entries=2)
    for index in range(3):
        log.record("room1", "state", f"step {index}")
    assert log.path is None
    assert [event.message for event in log.tail()] == ["step 1", "step 2"]
    with pytest.raises(ValueError):
        CallEventLog(None, max_entries=0)
