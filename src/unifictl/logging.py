"""Structured operation logging for unifictl.

Each CLI command runs inside an :class:`OperationScope`. When the scope closes a
single JSON record (command, arguments, steps, result, timing) is appended to
``operations.jsonl`` and a one-line summary is mirrored to ``unifictl.log``
through the standard :mod:`logging` machinery.

Logging must never break an operation: when the log directory cannot be
created or written the logger disables itself and carries on silently.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import time
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "unifictl.log"

_HUMAN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _current_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - container without passwd entry
        user = "unknown"
    return {"user": user, "uid": os.getuid(), "pid": os.getpid()}


class StructuredLogger:
    """Append operation records to ``operations.jsonl`` under *logs_dir*."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the logger when unavailable."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self.logs_dir / HUMAN_LOG_NAME
        self._enabled = True
        self._human = logging.getLogger("unifictl.operations")
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._attach_file_handler()

    @property
    def enabled(self) -> bool:
        """Return True while records are being persisted."""
        return self._enabled

    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> OperationScope:
        """Return a scope that records *command* when it exits."""
        return OperationScope(self, command, args=args, target=target)

    # ------------------------------------------------------------------
    def _attach_file_handler(self) -> None:
        resolved = str(self._human_log_path)
        for handler in self._human.handlers:
            if isinstance(handler, logging.FileHandler) and handler.baseFilename == resolved:
                return
        try:
            handler = logging.FileHandler(resolved, encoding="utf-8", delay=True)
        except OSError:  # pragma: no cover - FileHandler(delay=True) rarely raises
            return
        handler.setFormatter(logging.Formatter(_HUMAN_FORMAT))
        self._human.addHandler(handler)
        self._human.setLevel(logging.INFO)

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=False)
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError:
            self._enabled = False
            return

        result = record.get("result")
        status = "unknown"
        message = ""
        if isinstance(result, Mapping):
            status = str(result.get("status", "unknown"))
            message = str(result.get("message", ""))
        level = logging.INFO
        if status == "warning":
            level = logging.WARNING
        elif status == "error":
            level = logging.ERROR
        try:
            self._human.log(level, "%s [%s] %s", record.get("command"), status, message)
        except OSError:  # pragma: no cover - logging handles its own errors
            self._enabled = False


class OperationScope:
    """Collect the steps and outcome of a single CLI operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Bind the scope to *logger* for *command*."""
        self._logger = logger
        self._command = command
        self._args = dict(args or {})
        self._target = dict(target or {})
        self._steps: list[dict[str, object]] = []
        self._result: dict[str, object] | None = None
        self._lock_wait_ms: int | None = None
        self._started_at = _now_iso()
        self._start = time.monotonic()
        self.actor: Mapping[str, object] = _current_actor()

    def __enter__(self) -> OperationScope:
        """Start timing the operation."""
        self._start = time.monotonic()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        """Persist the record; exceptions always propagate."""
        if self._result is None:
            if exc is None or getattr(exc, "exit_code", None) == 0:
                self._set_result("success", "Completed.")
            else:
                message = str(exc) or exc.__class__.__name__
                self._set_result("error", message, errors=[message])
        self._logger._write(self._record())
        return False

    # Public API --------------------------------------------------------
    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail:
            step["detail"] = detail
        self._steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its lock."""
        self._lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 2,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        backups: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if changed is not None:
            result["changed"] = changed
        if warnings:
            result["warnings"] = [str(item) for item in warnings]
        if errors:
            result["errors"] = [str(item) for item in errors]
        if backups:
            result["backups"] = [str(item) for item in backups]
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self._result = result

    def _record(self) -> dict[str, object]:
        record: dict[str, object] = {
            "command": self._command,
            "started_at": self._started_at,
            "duration_ms": int((time.monotonic() - self._start) * 1000),
            "actor": _sanitize(self.actor),
            "args": _sanitize(self._args),
            "target": _sanitize(self._target),
            "steps": list(self._steps),
            "result": self._result,
        }
        if self._lock_wait_ms is not None:
            record["lock_wait_ms"] = self._lock_wait_ms
        return record


__all__ = ["OperationScope", "StructuredLogger"]
