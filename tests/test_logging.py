"""Tests for the structured logging subsystem."""
from __future__ import annotations

import io
import json
from pathlib import Path

import pytest
from rich.console import Console

from lxdbackup.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_operation_writes_single_record(tmp_path: Path) -> None:
    """Each operation appends one JSON line with its steps and result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("run", args={"root": tmp_path}) as op:
        op.set_lock_wait_ms(12)
        op.add_step("preflight", status="ok", detail="enough space")
        op.success("Backup run completed.", changed=2, backups=["a", "b"])

    (record,) = _records(logger)
    assert record["command"] == "run"
    assert record["args"] == {"root": str(tmp_path)}
    assert record["lock_wait_ms"] == 12
    assert record["steps"][0]["name"] == "preflight"  # type: ignore[index]
    assert record["result"] == {
        "status": "success",
        "message": "Backup run completed.",
        "changed": 2,
        "backups": ["a", "b"],
    }


def test_operation_records_unhandled_exception(tmp_path: Path) -> None:
    """An exception escaping the scope is logged as an error and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError):
        with logger.operation("prune"):
            raise RuntimeError("boom")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["message"] == "boom"  # type: ignore[index]


def test_steps_are_echoed_to_attached_console(tmp_path: Path) -> None:
    """Steps stream to the console; detaching silences them."""
    buffer = io.StringIO()
    console = Console(file=buffer, width=200, force_terminal=False)
    logger = StructuredLogger(tmp_path / "logs", console=console)

    with logger.operation("run") as op:
        op.add_step("default/web-01: snapshot", detail="snap-backup-2026-10-18-020000")
        logger.attach_console(None)
        op.add_step("hidden step")
        op.success("done")

    output = buffer.getvalue()
    assert "default/web-01: snapshot" in output
    assert "hidden step" not in output


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
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("run") as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("run") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("prune") as op:
        op.success("done", changed=0)
