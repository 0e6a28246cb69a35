"""Plan and apply the stack directory layout and its ownership."""
from __future__ import annotations

import logging
import os
import stat
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ..layout import StackRoot
from ..reconcile import ReconcilePlan, converge


class FilesystemError(RuntimeError):
    """Raised when required directories cannot be created."""


_logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DirectorySpec:
    """Desired state for one directory.

    ``uid``/``gid`` of ``None`` leave ownership untouched. With ``recursive``
    every entry below ``path`` is expected to carry the same ownership.
    """

    path: Path
    mode: int | None = None
    uid: int | None = None
    gid: int | None = None
    recursive: bool = False


@dataclass(slots=True)
class DirectoryAction:
    """Single filesystem change."""

    kind: Literal["mkdir", "chmod", "chown"]
    path: Path
    description: str
    mode: int | None = None
    uid: int | None = None
    gid: int | None = None


@dataclass(slots=True)
class PathState:
    """Observed state of one path."""

    path: Path
    exists: bool
    is_dir: bool = False
    mode: int | None = None
    uid: int | None = None
    gid: int | None = None


@dataclass(slots=True)
class DirectoryState:
    """Observed state for a :class:`DirectorySpec` (root first)."""

    spec: DirectorySpec
    entries: list[PathState] = field(default_factory=list)


DirectoryPlan = ReconcilePlan[DirectoryAction]


def _stat(path: Path) -> PathState:
    try:
        info = path.lstat()
    except (FileNotFoundError, NotADirectoryError):
        return PathState(path=path, exists=False)
    return PathState(
        path=path,
        exists=True,
        is_dir=stat.S_ISDIR(info.st_mode),
        mode=stat.S_IMODE(info.st_mode),
        uid=info.st_uid,
        gid=info.st_gid,
    )


def _walk(root: Path) -> Iterator[Path]:
    for current, dirnames, filenames in os.walk(root):
        base = Path(current)
        for name in sorted(dirnames) + sorted(filenames):
            yield base / name


class DirectoryReconciler:
    """Converge a set of :class:`DirectorySpec` entries."""

    def __init__(self, specs: Iterable[DirectorySpec]) -> None:
        """Capture the desired directory specs."""
        self.specs = list(specs)

    def observe(self) -> list[DirectoryState]:
        states: list[DirectoryState] = []
        for spec in self.specs:
            root_state = _stat(spec.path)
            state = DirectoryState(spec=spec, entries=[root_state])
            if spec.recursive and root_state.is_dir and _wants_owner(spec):
                state.entries.extend(_stat(child) for child in _walk(spec.path))
            states.append(state)
        return states

    def diff(self, actual: list[DirectoryState]) -> DirectoryPlan:
        plan: DirectoryPlan = ReconcilePlan()
        for state in actual:
            spec = state.spec
            root = state.entries[0]
            if root.exists and not root.is_dir:
                plan.warnings.append(f"{spec.path} exists but is not a directory.")
                continue
            if not root.exists:
                plan.actions.append(
                    DirectoryAction(
                        kind="mkdir",
                        path=spec.path,
                        description=f"Create {spec.path}.",
                        mode=spec.mode,
                    )
                )
            elif spec.mode is not None and root.mode != spec.mode:
                plan.actions.append(
                    DirectoryAction(
                        kind="chmod",
                        path=spec.path,
                        description=f"Set mode {spec.mode:04o} on {spec.path}.",
                        mode=spec.mode,
                    )
                )

            if not _wants_owner(spec):
                continue
            if not root.exists:
                # Freshly created directories are empty; only the root needs chown.
                plan.actions.append(_chown_action(spec.path, spec))
                continue
            for entry in state.entries:
                if _owner_differs(entry, spec):
                    plan.actions.append(_chown_action(entry.path, spec))
        return plan

    def apply(self, plan: DirectoryPlan) -> list[str]:
        warnings: list[str] = []
        for action in plan.actions:
            if action.kind == "mkdir":
                try:
                    action.path.mkdir(parents=True, exist_ok=True)
                    if action.mode is not None:
                        os.chmod(action.path, action.mode)
                except OSError as exc:
                    raise FilesystemError(f"Failed to create {action.path}: {exc}") from exc
            elif action.kind == "chmod":
                try:
                    os.chmod(action.path, action.mode or 0)
                except OSError as exc:
                    raise FilesystemError(f"Failed to chmod {action.path}: {exc}") from exc
            elif action.kind == "chown":
                uid = -1 if action.uid is None else action.uid
                gid = -1 if action.gid is None else action.gid
                try:
                    os.chown(action.path, uid, gid, follow_symlinks=False)
                except OSError as exc:
                    message = f"Could not chown {action.path} to {uid}:{gid}: {exc}"
                    _logger.warning(message)
                    warnings.append(message)
        return warnings

    def plan(self) -> DirectoryPlan:
        """Return the plan without applying it."""
        return self.diff(self.observe())


def _wants_owner(spec: DirectorySpec) -> bool:
    return spec.uid is not None or spec.gid is not None


def _owner_differs(entry: PathState, spec: DirectorySpec) -> bool:
    if spec.uid is not None and entry.uid != spec.uid:
        return True
    return spec.gid is not None and entry.gid != spec.gid


def _chown_action(path: Path, spec: DirectorySpec) -> DirectoryAction:
    return DirectoryAction(
        kind="chown",
        path=path,
        description=f"Set owner {spec.uid}:{spec.gid} on {path}.",
        uid=spec.uid,
        gid=spec.gid,
    )


def plan_directories(specs: Iterable[DirectorySpec]) -> DirectoryPlan:
    """Return the actions required to satisfy *specs*."""
    return DirectoryReconciler(specs).plan()


def apply_directory_plan(plan: DirectoryPlan) -> list[str]:
    """Execute *plan*; returns warnings for ownership changes that failed."""
    warnings = DirectoryReconciler([]).apply(plan)
    plan.warnings.extend(warnings)
    return warnings


def ensure_stack_layout(
    root: StackRoot,
    uid: int | None,
    gid: int | None,
    *,
    dry_run: bool = False,
) -> DirectoryPlan:
    """Create the stack directories and hand the data areas to ``uid:gid``.

    Unknown identity is not fatal: directories are still created and a warning
    explains that ownership was left alone.
    """
    owned = set(root.owned_dirs())
    identity_known = uid is not None and gid is not None
    specs = [
        DirectorySpec(
            path=path,
            uid=uid if identity_known and path in owned else None,
            gid=gid if identity_known and path in owned else None,
            recursive=path in owned,
        )
        for path in root.managed_dirs()
    ]
    reconciler = DirectoryReconciler(specs)
    plan = converge(reconciler, dry_run=dry_run)
    if not identity_known:
        message = "Host identity (PUID/PGID) unknown; skipping ownership changes."
        _logger.warning(message)
        plan.warnings.insert(0, message)
    return plan


__all__ = [
    "DirectoryAction",
    "DirectoryPlan",
    "DirectoryReconciler",
    "DirectorySpec",
    "FilesystemError",
    "apply_directory_plan",
    "ensure_stack_layout",
    "plan_directories",
]
