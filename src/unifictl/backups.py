"""Consistent backups of the stack root."""
from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .archive import (
    ArchiveError,
    ChecksumError,
    checksum_path,
    compute_checksum,
    create_archive,
    verify_checksum,
    write_checksum_file,
)
from .layout import ARCHIVE_MANIFEST, StackRoot
from .lifecycle import StackController
from .providers.compose import ComposeError

TIMESTAMP_FORMAT = "%Y-%m-%d_%H%M%S"
ARCHIVE_SUFFIX = ".tar.gz"

_logger = logging.getLogger(__name__)


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


def timestamp(now: datetime) -> str:
    """Format *now* the way archive and restore directory names expect."""
    return now.strftime(TIMESTAMP_FORMAT)


def archive_name(prefix: str, now: datetime) -> str:
    """Return ``<prefix>-YYYY-MM-DD_HHMMSS.tar.gz``."""
    return f"{prefix}-{timestamp(now)}{ARCHIVE_SUFFIX}"


@dataclass(slots=True)
class BackupResult:
    """Outcome of :meth:`BackupEngine.create`."""

    archive: Path
    checksum_file: Path
    checksum: str
    members: list[str]
    stopped: bool = False
    restarted: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "archive": str(self.archive),
            "checksum_file": str(self.checksum_file),
            "checksum": self.checksum,
            "members": list(self.members),
            "stopped": self.stopped,
            "restarted": self.restarted,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class BackupEntry:
    """An archive found under ``backups/``."""

    archive: Path
    size: int
    created_at: datetime | None
    has_checksum: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "archive": str(self.archive),
            "size": self.size,
            "created_at": self.created_at.isoformat(sep=" ") if self.created_at else None,
            "checksum": "present" if self.has_checksum else "missing",
        }


class BackupEngine:
    """Create, list and verify archives of one stack root."""

    def __init__(
        self,
        root: StackRoot,
        controller: StackController,
        *,
        prefix: str = "unifi-controller",
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Bind the engine to *root*; *clock* supplies archive timestamps."""
        self.root = root
        self.controller = controller
        self.prefix = prefix
        self.clock = clock

    def create(self, *, stop_stack: bool = True) -> BackupResult:
        """Archive the stack root.

        The stack is stopped first (when *stop_stack* and it is running) so the
        database files are consistent, and started again afterwards even if
        archiving failed.
        """
        warnings: list[str] = []
        members = [name for name in ARCHIVE_MANIFEST if (self.root.path / name).exists()]
        for name in ARCHIVE_MANIFEST:
            if name not in members:
                message = f"{name} not found under {self.root.path}; skipped."
                _logger.warning(message)
                warnings.append(message)
        if not members:
            raise BackupError(f"Nothing to back up under {self.root.path}.")

        backups_dir = self.root.backups_dir
        try:
            backups_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"Failed to prepare {backups_dir}: {exc}") from exc
        archive = self._unique_archive_path()

        stopped = False
        if stop_stack and self._was_running():
            try:
                self.controller.compose.down()
                stopped = True
            except ComposeError as exc:
                message = f"Could not stop the stack ({exc}); archive may be inconsistent."
                _logger.warning(message)
                warnings.append(message)

        restarted = False
        try:
            create_archive(self.root.path, members, archive)
            digest = compute_checksum(archive)
            sidecar = write_checksum_file(archive, digest)
        except ArchiveError as exc:
            raise BackupError(f"Failed to create {archive.name}: {exc}") from exc
        except OSError as exc:
            raise BackupError(f"Failed to checksum {archive.name}: {exc}") from exc
        finally:
            if stopped:
                restarted = self._restart(warnings)

        _logger.info("Created backup %s", archive)
        return BackupResult(
            archive=archive,
            checksum_file=sidecar,
            checksum=digest,
            members=members,
            stopped=stopped,
            restarted=restarted,
            warnings=warnings,
        )

    def list_archives(self) -> list[BackupEntry]:
        """Return archives under ``backups/``, newest first."""
        backups_dir = self.root.backups_dir
        if not backups_dir.is_dir():
            return []
        pattern = re.compile(
            rf"^{re.escape(self.prefix)}-(\d{{4}}-\d{{2}}-\d{{2}}_\d{{6}}).*{re.escape(ARCHIVE_SUFFIX)}$"
        )
        entries: list[BackupEntry] = []
        for path in backups_dir.glob(f"*{ARCHIVE_SUFFIX}"):
            match = pattern.match(path.name)
            if match is None:
                continue
            try:
                created = datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
            except ValueError:
                created = None
            entries.append(
                BackupEntry(
                    archive=path,
                    size=path.stat().st_size,
                    created_at=created,
                    has_checksum=checksum_path(path).exists(),
                )
            )
        entries.sort(key=lambda entry: (entry.created_at or datetime.min, entry.archive.name), reverse=True)
        return entries

    def verify_archive(self, archive: Path) -> str:
        """Re-check *archive* against its sidecar and return the digest."""
        archive = Path(archive)
        if not archive.is_file():
            raise BackupError(f"Backup archive {archive} not found.")
        if not verify_checksum(archive):
            raise ChecksumError(f"Checksum verification failed: {checksum_path(archive).name} is missing.")
        return compute_checksum(archive)

    # ------------------------------------------------------------------
    def _unique_archive_path(self) -> Path:
        now = self.clock()
        candidate = self.root.backups_dir / archive_name(self.prefix, now)
        counter = 1
        while candidate.exists():
            candidate = self.root.backups_dir / (
                f"{self.prefix}-{timestamp(now)}-{counter}{ARCHIVE_SUFFIX}"
            )
            counter += 1
        return candidate

    def _was_running(self) -> bool:
        try:
            return self.controller.is_running()
        except ComposeError as exc:
            _logger.warning("Unable to read stack state (%s); stopping it anyway.", exc)
            return True

    def _restart(self, warnings: list[str]) -> bool:
        try:
            self.controller.compose.up()
        except ComposeError as exc:
            message = f"Failed to restart the stack after backup: {exc}"
            _logger.error(message)
            warnings.append(message)
            return False
        return True


__all__ = [
    "ARCHIVE_SUFFIX",
    "BackupEngine",
    "BackupEntry",
    "BackupError",
    "BackupResult",
    "TIMESTAMP_FORMAT",
    "archive_name",
    "timestamp",
]
