"""Restore a stack root from a backup archive."""
from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from .archive import (
    ArchiveError,
    check_members,
    extract_archive,
    list_members,
    top_level_names,
    verify_checksum,
)
from .backups import timestamp
from .layout import ARCHIVE_MANIFEST, StackRoot
from .lifecycle import ConvergenceError, HealthReport, StackController
from .providers.compose import ComposeError

_logger = logging.getLogger(__name__)


class RestoreMode(str, Enum):
    """Where an archive is unpacked."""

    STAGING = "staging"
    INPLACE = "inplace"


class RestoreError(RuntimeError):
    """Raised when a restore cannot be carried out."""


class RestoreConvergenceError(RestoreError):
    """Raised when the restored stack does not answer its health checks."""

    def __init__(self, message: str, *, logs: str, safety_dir: Path | None) -> None:
        """Attach the application's log tail and the pre-restore directory."""
        super().__init__(message)
        self.logs = logs
        self.safety_dir = safety_dir


@dataclass(slots=True)
class RestoreResult:
    """Outcome of :meth:`RestoreEngine.restore`."""

    mode: RestoreMode
    archive: Path
    target: Path
    verified: bool
    safety_dir: Path | None = None
    moved: list[str] = field(default_factory=list)
    extracted: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    health: HealthReport | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "mode": self.mode.value,
            "archive": str(self.archive),
            "target": str(self.target),
            "verified": self.verified,
            "safety_dir": str(self.safety_dir) if self.safety_dir else None,
            "moved": list(self.moved),
            "extracted": list(self.extracted),
            "next_steps": list(self.next_steps),
            "warnings": list(self.warnings),
        }


class RestoreEngine:
    """Unpack archives into a staging directory or over the live stack."""

    def __init__(
        self,
        root: StackRoot,
        controller: StackController,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Bind the engine to *root*."""
        self.root = root
        self.controller = controller
        self.clock = clock

    def restore(self, archive: Path, mode: RestoreMode = RestoreMode.STAGING) -> RestoreResult:
        """Verify *archive* and unpack it according to *mode*.

        A checksum mismatch aborts before anything is extracted. In-place
        restores never delete the current state: it is moved into
        ``pre-restore-<timestamp>/`` first.
        """
        archive = Path(archive).expanduser().absolute()
        if not archive.is_file():
            raise RestoreError(f"Backup archive {archive} not found.")

        result = RestoreResult(mode=mode, archive=archive, target=self.root.path, verified=False)
        result.verified = verify_checksum(archive)
        if not result.verified:
            message = f"No checksum file found for {archive.name}; skipping verification."
            _logger.warning(message)
            result.warnings.append(message)

        try:
            names = list_members(archive)
            check_members(names)
        except ArchiveError as exc:
            raise RestoreError(f"Cannot restore {archive.name}: {exc}") from exc
        if mode is RestoreMode.INPLACE:
            unexpected = sorted(set(top_level_names(names)) - set(ARCHIVE_MANIFEST))
            if unexpected:
                raise RestoreError(
                    f"Refusing to restore {archive.name} in place: it contains entries outside "
                    f"the backup manifest ({', '.join(unexpected)})."
                )

        stamp = timestamp(self.clock())
        if mode is RestoreMode.STAGING:
            return self._restore_staging(archive, stamp, result)
        return self._restore_inplace(archive, stamp, result)

    # ------------------------------------------------------------------
    def _restore_staging(self, archive: Path, stamp: str, result: RestoreResult) -> RestoreResult:
        target = _unique_dir(self.root.restores_dir / stamp)
        try:
            target.mkdir(parents=True)
            result.extracted = extract_archive(archive, target)
        except (ArchiveError, OSError) as exc:
            raise RestoreError(f"Failed to extract {archive.name} into {target}: {exc}") from exc
        result.target = target
        result.next_steps.append(f"cd {target} && docker compose up -d")
        _logger.info("Staged %s into %s", archive.name, target)
        return result

    def _restore_inplace(self, archive: Path, stamp: str, result: RestoreResult) -> RestoreResult:
        try:
            self.controller.down()
        except ComposeError as exc:
            message = f"Could not stop the stack cleanly: {exc}"
            _logger.warning(message)
            result.warnings.append(message)

        safety_dir = _unique_dir(self.root.safety_dir(stamp))
        try:
            safety_dir.mkdir(parents=True)
            for name in ARCHIVE_MANIFEST:
                source = self.root.path / name
                if source.exists() or source.is_symlink():
                    shutil.move(str(source), str(safety_dir / name))
                    result.moved.append(name)
        except OSError as exc:
            raise RestoreError(
                f"Failed to move current state into {safety_dir}: {exc}. "
                "Items already moved are kept there."
            ) from exc
        result.safety_dir = safety_dir

        try:
            result.extracted = extract_archive(archive, self.root.path)
        except (ArchiveError, OSError) as exc:
            raise RestoreError(
                f"Failed to extract {archive.name}: {exc}. Previous state is in {safety_dir}."
            ) from exc

        try:
            self.controller.compose.up()
        except ComposeError as exc:
            raise RestoreConvergenceError(
                f"Restored stack failed to start: {exc}",
                logs=self._logs(),
                safety_dir=safety_dir,
            ) from exc

        try:
            result.health = self.controller.check_health(strict=True)
        except ConvergenceError as exc:
            raise RestoreConvergenceError(str(exc), logs=exc.logs, safety_dir=safety_dir) from exc
        _logger.info("Restored %s in place; previous state kept in %s", archive.name, safety_dir)
        return result

    def _logs(self) -> str:
        try:
            return self.controller.logs()
        except ComposeError as exc:
            return f"(unable to read container logs: {exc})"


def _unique_dir(candidate: Path) -> Path:
    path = candidate
    counter = 1
    while path.exists():
        path = candidate.with_name(f"{candidate.name}-{counter}")
        counter += 1
    return path


__all__ = [
    "RestoreConvergenceError",
    "RestoreEngine",
    "RestoreError",
    "RestoreMode",
    "RestoreResult",
]
