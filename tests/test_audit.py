from __future__ import annotations

from pathlib import Path
import json
import sys

sys.path.append(str(Path(__file__).resolve().parents[1]))

from plan_executor.audit import AuditLog


def test_ring_buffer_drops_oldest() -> None:
    audit = AuditLog(capacity=3)
    for index in range(5):
        audit.record("step_started", step_id=f"s{index}")
    assert len(audit) == 3
    assert [entry.details["step_id"] for entry in audit.entries()] == ["s2", "s3", "s4"]


def test_entries_filter_by_event() -> None:
    audit = AuditLog()
    audit.record("rollback_started", step_id="a")
    audit.record("rollback_success", step_id="a")
    assert [entry.event for entry in audit.entries("rollback_success")] == ["rollback_success"]


def test_flush_appends_only_new_entries(tmp_path: Path) -> None:
    path = tmp_path / "audit" / "audit.jsonl"
    audit = AuditLog(path=path)
    audit.record("step_started", step_id="a")
    assert audit.flush()
    audit.record("step_failed", step_id="a", error="boom")
    assert audit.flush()

    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [line["event"] for line in lines] == ["step_started", "step_failed"]
    assert lines[1]["details"]["error"] == "boom"


def test_flush_swallows_io_errors(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file", encoding="utf-8")
    audit = AuditLog(path=blocker / "audit.jsonl")
    audit.record("step_started", step_id="a")
    assert audit.flush() is False


def test_flush_without_path_is_a_no_op() -> None:
    audit = AuditLog()
    audit.record("step_started")
    assert audit.flush() is False
