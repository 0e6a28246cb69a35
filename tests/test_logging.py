"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
import typer

from unifictl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    path = logger._operations_log_path  # type: ignore[attr-defined]
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


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

    with logger.operation("up", args={"wait": True}) as op:
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


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("restore", args={"archive": Path("a.tar.gz")}) as op:
        op.add_step("restore.verify", status="skipped")
        op.set_lock_wait_ms(12)
        op.warning(
            "warned",
            warnings=("no checksum",),
            changed=1,
            backups=["a.tar.gz"],
            context={"path": Path("/opt/unifi"), "obj": Custom()},
        )

    (record,) = _records(logger)
    assert record["command"] == "restore"
    assert record["args"] == {"archive": "a.tar.gz"}
    assert record["lock_wait_ms"] == 12
    assert record["steps"][0]["name"] == "restore.verify"
    result = record["result"]
    assert result["status"] == "warning"
    assert result["warnings"] == ["no checksum"]
    assert result["context"] == {"path": "/opt/unifi", "obj": "<custom>"}


def test_operation_records_error_for_unhandled_exit(tmp_path: Path) -> None:
    """A non-zero typer exit without an explicit result is recorded as an error."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(typer.Exit):
        with logger.operation("down"):
            raise typer.Exit(code=4)

    with logger.operation("status"):
        pass

    error_record, ok_record = _records(logger)
    assert error_record["result"]["status"] == "error"
    assert ok_record["result"]["status"] == "success"
    assert (tmp_path / "logs" / "unifictl.log").exists()
