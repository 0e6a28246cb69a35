"""Unit tests for bootstrap filesystem planning helpers."""
from __future__ import annotations

import os
from pathlib import Path

import pytest

from unifictl.bootstrap.filesystem import (
    DirectorySpec,
    FilesystemError,
    apply_directory_plan,
    ensure_stack_layout,
    plan_directories,
)
from unifictl.layout import StackRoot


def _ownership(root: Path) -> dict[str, tuple[int, int]]:
    state: dict[str, tuple[int, int]] = {}
    for current, dirnames, filenames in os.walk(root):
        for name in [*dirnames, *filenames]:
            info = (Path(current) / name).lstat()
            state[str(Path(current) / name)] = (info.st_uid, info.st_gid)
    return state


def test_plan_creates_missing_directory(tmp_path: Path) -> None:
    """Plan should create directories that are absent on disk."""
    target = tmp_path / "opt" / "unifi" / "backups"
    spec = DirectorySpec(path=target, mode=0o750)

    plan = plan_directories([spec])
    assert any(action.kind == "mkdir" for action in plan.actions)

    apply_directory_plan(plan)
    assert target.is_dir()
    assert target.stat().st_mode & 0o777 == 0o750


def test_plan_adjusts_permissions(tmp_path: Path) -> None:
    """Plan should adjust permissions when they differ from expectations."""
    target = tmp_path / "unifi-data"
    target.mkdir(mode=0o700)
    os.chmod(target, 0o700)

    plan = plan_directories([DirectorySpec(path=target, mode=0o750)])

    assert [action.kind for action in plan.actions] == ["chmod"]
    apply_directory_plan(plan)
    assert target.stat().st_mode & 0o777 == 0o750


def test_plan_warns_on_non_directory(tmp_path: Path) -> None:
    """Plan should warn when the target path is not a directory."""
    target = tmp_path / "mongo-data"
    target.write_text("not a directory", encoding="utf-8")

    plan = plan_directories([DirectorySpec(path=target)])

    assert plan.actions == []
    assert plan.warnings


def test_recursive_chown_only_touches_differing_entries(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Entries already owned by the target identity produce no chown."""
    data = tmp_path / "mongo-data"
    (data / "journal").mkdir(parents=True)
    (data / "journal" / "WiredTigerLog.1").write_text("x", encoding="utf-8")
    uid, gid = os.getuid(), os.getgid()

    assert plan_directories([DirectorySpec(path=data, uid=uid, gid=gid, recursive=True)]).actions == []

    plan = plan_directories([DirectorySpec(path=data, uid=uid + 1, gid=gid, recursive=True)])
    chowned = [action.path for action in plan.actions if action.kind == "chown"]
    assert chowned == [data, data / "journal", data / "journal" / "WiredTigerLog.1"]

    calls: list[tuple[Path, int, int]] = []
    monkeypatch.setattr(os, "chown", lambda path, u, g, **_: calls.append((Path(path), u, g)))
    assert apply_directory_plan(plan) == []
    assert calls == [(path, uid + 1, gid) for path in chowned]


def test_chown_failures_become_warnings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Ownership is best effort; mkdir failures still raise."""
    data = tmp_path / "unifi-data"
    data.mkdir()

    def deny(*_args: object, **_kwargs: object) -> None:
        raise PermissionError("operation not permitted")

    monkeypatch.setattr(os, "chown", deny)
    plan = plan_directories([DirectorySpec(path=data, uid=os.getuid() + 1, gid=os.getgid())])
    warnings = apply_directory_plan(plan)

    assert len(warnings) == 1
    assert "Could not chown" in warnings[0]
    assert plan.warnings == warnings

    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    plan = plan_directories([DirectorySpec(path=blocker / "child")])
    with pytest.raises(FilesystemError):
        apply_directory_plan(plan)


def test_ensure_stack_layout_is_idempotent(tmp_path: Path) -> None:
    """Running the layout twice yields the same state and no second-run actions."""
    root = StackRoot(tmp_path / "unifi")
    uid, gid = os.getuid(), os.getgid()

    first = ensure_stack_layout(root, uid, gid)
    assert {action.path for action in first.actions if action.kind == "mkdir"} == set(root.managed_dirs())
    for path in root.managed_dirs():
        assert path.is_dir()
    (root.mongo_data / "db.wt").write_text("x", encoding="utf-8")
    state_after_first = _ownership(root.path)

    second = ensure_stack_layout(root, uid, gid)

    assert second.actions == []
    assert second.warnings == []
    assert _ownership(root.path) == state_after_first


def test_ensure_stack_layout_skips_ownership_without_identity(tmp_path: Path) -> None:
    """Unknown PUID/PGID still creates directories but warns instead of chowning."""
    root = StackRoot(tmp_path / "unifi")

    plan = ensure_stack_layout(root, None, None)

    assert all(action.kind != "chown" for action in plan.actions)
    assert any("unknown" in warning for warning in plan.warnings)
    assert root.backups_dir.is_dir()


def test_ensure_stack_layout_dry_run_changes_nothing(tmp_path: Path) -> None:
    """A dry run reports the plan without creating anything."""
    root = StackRoot(tmp_path / "unifi")

    plan = ensure_stack_layout(root, os.getuid(), os.getgid(), dry_run=True)

    assert plan.changed
    assert not root.path.exists()
