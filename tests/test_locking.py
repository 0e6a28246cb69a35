"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from unifictl.locking import LOCK_FILE_NAME, LockManager, LockTimeoutError


def test_stack_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(default_timeout=1.0)
    root = tmp_path / "unifi"

    lock_path = root / LOCK_FILE_NAME
    with manager.stack_lock(root) as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.stack_lock(root, timeout=0.2):
        pass


def test_stack_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(default_timeout=1.0)

    with manager.stack_lock(tmp_path):
        with pytest.raises(LockTimeoutError, match="another unifictl operation"):
            with manager.stack_lock(tmp_path, timeout=0.1):
                pass


def test_locks_are_scoped_per_root(tmp_path: Path) -> None:
    """Different stack roots never contend for the same lock."""
    manager = LockManager(default_timeout=0.1)

    with manager.stack_lock(tmp_path / "a"):
        with manager.stack_lock(tmp_path / "b") as handle:
            assert handle.path == manager.lock_path(tmp_path / "b")
