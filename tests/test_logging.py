"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from stackctl.logging import OPERATIONS_LOG, StructuredLogger


def _records(log_dir: Path) -> list[dict[str, object]]:
    lines = (log_dir / OPERATIONS_LOG).read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_operation_record_written_with_redacted_args(tmp_path: Path) -> None:
    """Each scope appends one JSON line and secret-looking args are masked."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "credentials rotate", args={"name": "database", "password": "hunter2"}
    ) as op:
        op.add_step("rotate", detail={"token": "abc", "consumers": ["database", "app"]})
        op.set_lock_wait_ms(12)
        op.set_lock_wait_ms(3)
        op.success("Rotated.", changed=1)

    (record,) = _records(tmp_path / "logs")
    assert record["command"] == "credentials rotate"
    assert record["args"] == {"name": "database", "password": "***"}
    assert record["steps"] == [
        {
            "name": "rotate",
            "status": "success",
            "detail": {"token": "***", "consumers": ["database", "app"]},
        }
    ]
    assert record["lock_wait_ms"] == 15
    assert record["result"]["status"] == "success"
    assert record["result"]["changed"] == 1


def test_exception_inside_scope_records_error(tmp_path: Path) -> None:
    """An exception escaping the scope marks the record as an error and propagates."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError, match="boom"):
        with logger.operation("deploy"):
            raise RuntimeError("boom")

    (record,) = _records(tmp_path / "logs")
    assert record["result"]["status"] == "error"
    assert record["result"]["errors"] == ["boom"]


def test_warning_defaults_to_message(tmp_path: Path) -> None:
    """Warnings fall back to the message when no explicit list is given."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("monitor") as op:
        op.warning("Degraded.", rc=6)

    (record,) = _records(tmp_path / "logs")
    assert record["result"]["warnings"] == ["Degraded."]
    assert record["result"]["rc"] == 6


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger.enabled is False

    with logger.operation("status", args={"json": True}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("backup create") as op:
        op.success("done", changed=0)

    assert logger.enabled is False

    with logger.operation("backup list") as op:
        op.success("done", changed=0)
