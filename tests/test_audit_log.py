from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from cerberus_mcp.errors import AuditWriteError, CorruptedStateError
from cerberus_mcp.state import AuditLog, EventKind


def fixed_clock() -> datetime:
    return datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_append_and_read_preserves_order(tmp_path: Path) -> None:
    log = AuditLog(tmp_path, clock=fixed_clock)
    log.append(log.new_event(EventKind.SESSION_CREATED, "s1", payload={"web_url": "https://t"}))
    log.append(log.new_event(EventKind.AGENT_STARTED, "s1", agent="recon"))
    log.append(log.new_event(EventKind.AGENT_COMPLETED, "s1", agent="recon", payload={"cost_usd": 0.5}))

    events = list(log.read_all("s1"))

    assert [event.kind for event in events] == [
        EventKind.SESSION_CREATED,
        EventKind.AGENT_STARTED,
        EventKind.AGENT_COMPLETED,
    ]
    assert events[0].timestamp == "2024-05-01T12:00:00+00:00"
    assert events[2].payload == {"cost_usd": 0.5}
    assert log.list_sessions() == ["s1"]


def test_each_event_is_one_line(tmp_path: Path) -> None:
    log = AuditLog(tmp_path)
    log.append(log.new_event(EventKind.SESSION_CREATED, "s1", payload={"note": "line\nbreak"}))

    raw = log.path_for("s1").read_text(encoding="utf-8")

    assert raw.count("\n") == 1
    assert raw.endswith("\n")


def test_missing_log_reads_empty(tmp_path: Path) -> None:
    log = AuditLog(tmp_path)

    assert list(log.read_all("nope")) == []
    assert not log.exists("nope")


def test_truncated_final_line_is_skipped(tmp_path: Path) -> None:
    log = AuditLog(tmp_path)
    log.append(log.new_event(EventKind.SESSION_CREATED, "s1"))
    log.append(log.new_event(EventKind.AGENT_STARTED, "s1", agent="recon"))
    with log.path_for("s1").open("a", encoding="utf-8") as handle:
        handle.write('{"kind":"agent_completed","session_id":"s1"')

    events = list(log.read_all("s1"))

    assert [event.kind for event in events] == [EventKind.SESSION_CREATED, EventKind.AGENT_STARTED]


def test_append_repairs_torn_tail(tmp_path: Path) -> None:
    log = AuditLog(tmp_path)
    log.append(log.new_event(EventKind.SESSION_CREATED, "s1"))
    with log.path_for("s1").open("a", encoding="utf-8") as handle:
        handle.write('{"kind":"agent_sta')

    log.append(log.new_event(EventKind.AGENT_STARTED, "s1", agent="recon"))

    lines = log.path_for("s1").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert [event.kind for event in log.read_all("s1")] == [
        EventKind.SESSION_CREATED,
        EventKind.AGENT_STARTED,
    ]


def test_corrupted_middle_line_raises(tmp_path: Path) -> None:
    log = AuditLog(tmp_path)
    log.append(log.new_event(EventKind.SESSION_CREATED, "s1"))
    with log.path_for("s1").open("a", encoding="utf-8") as handle:
        handle.write("not json at all\n")
    log.append(log.new_event(EventKind.AGENT_STARTED, "s1", agent="recon"))

    with pytest.raises(CorruptedStateError):
        list(log.read_all("s1"))


def test_foreign_session_record_raises(tmp_path: Path) -> None:
    log = AuditLog(tmp_path)
    log.append(log.new_event(EventKind.SESSION_CREATED, "s1"))
    foreign = log.new_event(EventKind.AGENT_STARTED, "s2", agent="recon")
    with log.path_for("s1").open("a", encoding="utf-8") as handle:
        handle.write(foreign.to_json() + "\n")
    log.append(log.new_event(EventKind.AGENT_STARTED, "s1", agent="recon"))

    with pytest.raises(CorruptedStateError, match="belongs to session s2"):
        list(log.read_all("s1"))


def test_append_failure_raises_audit_write_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocked"
    blocker.write_text("a file where a directory should be", encoding="utf-8")
    log = AuditLog(blocker / "audit")

    with pytest.raises(AuditWriteError):
        log.append(log.new_event(EventKind.SESSION_CREATED, "s1"))


def test_delete_removes_log(tmp_path: Path) -> None:
    log = AuditLog(tmp_path)
    log.append(log.new_event(EventKind.SESSION_CREATED, "s1"))

    assert log.delete("s1") is True
    assert log.delete("s1") is False
    assert log.list_sessions() == []
