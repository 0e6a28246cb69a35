"""Advisory file locks guarding mutating operations on a stack root.

Every command that changes a stack root (configuration, layout, backup,
restore, certificate import) holds an exclusive ``flock`` on
``<root>/.unifictl.lock`` for its whole duration. The lock file itself is left
behind for diagnostics; only the kernel lock matters.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

LOCK_FILE_NAME = ".unifictl.lock"
_POLL_INTERVAL = 0.1

_logger = logging.getLogger(__name__)


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """Details about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire exclusive locks scoped to stack roots."""

    def __init__(self, default_timeout: float = 30.0) -> None:
        """Store the default acquisition timeout in seconds."""
        self.default_timeout = default_timeout

    def lock_path(self, root: Path) -> Path:
        """Return the lock file location for *root*."""
        return Path(root) / LOCK_FILE_NAME

    @contextmanager
    def stack_lock(self, root: Path, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the exclusive lock for *root* while the context is active."""
        path = self.lock_path(root)
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout
        started = time.monotonic()
        with path.open("a+", encoding="utf-8") as handle:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}; "
                            "another unifictl operation is running on this stack."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _logger.debug("Acquired %s after %d ms", path, wait_ms)
            try:
                self._write_metadata(handle, path)
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                _logger.debug("Released %s", path)

    @staticmethod
    def _write_metadata(handle, path: Path) -> None:  # type: ignore[no-untyped-def]
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        handle.seek(0)
        handle.truncate()
        handle.write(json.dumps(payload) + "\n")
        handle.flush()


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
