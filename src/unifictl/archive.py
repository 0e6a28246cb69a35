"""Archive and checksum helpers shared by backup and restore workflows."""
from __future__ import annotations

import hashlib
import os
import re
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path, PurePosixPath

CHECKSUM_SUFFIX = ".sha256"
PARTIAL_SUFFIX = ".partial"

_CHECKSUM_LINE = re.compile(r"^(?P<digest>[0-9a-fA-F]{64}) [ *](?P<name>.+)$")


class ArchiveError(RuntimeError):
    """Raised when tar operations fail or an archive is unsafe to extract."""


class ChecksumError(ArchiveError):
    """Raised when an archive does not match its checksum sidecar."""


def _tar_bin() -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to work with archives.")
    return tar_bin


def _run_tar(args: Sequence[str]) -> subprocess.CompletedProcess[str]:
    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        [_tar_bin(), *args],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())
    return result


def create_archive(source_dir: Path, members: Sequence[str], archive_path: Path) -> Path:
    """Write a gzip tarball of *members* (relative to *source_dir*) to *archive_path*.

    The archive is built under ``<archive>.partial`` and renamed into place only
    once tar succeeds, so a failed run never leaves a plausible-looking archive.
    """
    if not members:
        raise ArchiveError("Nothing to archive.")
    partial = archive_path.with_name(archive_path.name + PARTIAL_SUFFIX)
    try:
        _run_tar(["-czf", str(partial), "-C", str(source_dir), *members])
        os.replace(partial, archive_path)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise
    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass
    return archive_path


def list_members(archive_path: Path) -> list[str]:
    """Return the member names stored in *archive_path*."""
    result = _run_tar(["-tzf", str(archive_path)])
    return [line for line in result.stdout.splitlines() if line.strip()]


def check_members(names: Sequence[str]) -> None:
    """Reject absolute paths and parent references before extracting."""
    for name in names:
        path = PurePosixPath(name)
        if path.is_absolute() or ".." in path.parts:
            raise ArchiveError(f"Refusing to extract unsafe member {name!r}.")


def extract_archive(archive_path: Path, destination: Path) -> list[str]:
    """Extract *archive_path* into *destination*; returns the top-level entries."""
    names = list_members(archive_path)
    check_members(names)
    destination.mkdir(parents=True, exist_ok=True)
    _run_tar(["-xzpf", str(archive_path), "-C", str(destination)])
    return top_level_names(names)


def top_level_names(names: Sequence[str]) -> list[str]:
    """Return the distinct first path components of *names*, in order."""
    top_level: list[str] = []
    for name in names:
        parts = PurePosixPath(name).parts
        if parts and parts[0] not in top_level:
            top_level.append(parts[0])
    return top_level


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_path(archive_path: Path) -> Path:
    """Return the sidecar location for *archive_path*."""
    return archive_path.with_name(f"{archive_path.name}{CHECKSUM_SUFFIX}")


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` in ``sha256sum`` format and return its path."""
    sidecar = checksum_path(archive_path)
    sidecar.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(sidecar, 0o640)
    except OSError:
        pass
    return sidecar


def read_checksum_file(sidecar: Path) -> tuple[str, str]:
    """Return ``(digest, file name)`` from a sidecar."""
    try:
        text = sidecar.read_text(encoding="utf-8")
    except OSError as exc:
        raise ChecksumError(f"Checksum verification failed: cannot read {sidecar}: {exc}") from exc
    lines = [line for line in text.splitlines() if line.strip()]
    match = _CHECKSUM_LINE.match(lines[0].strip()) if lines else None
    if match is None:
        raise ChecksumError(f"Checksum verification failed: {sidecar} is malformed.")
    return match.group("digest").lower(), match.group("name")


def verify_checksum(archive_path: Path) -> bool:
    """Verify *archive_path* against its sidecar.

    Returns False when no sidecar exists and raises :class:`ChecksumError` on
    any mismatch.
    """
    sidecar = checksum_path(archive_path)
    if not sidecar.exists():
        return False
    expected, name = read_checksum_file(sidecar)
    if Path(name).name != archive_path.name:
        raise ChecksumError(
            f"Checksum verification failed: {sidecar} describes {name!r}, not {archive_path.name!r}."
        )
    actual = compute_checksum(archive_path)
    if actual != expected:
        raise ChecksumError(
            f"Checksum verification failed for {archive_path.name}: "
            f"expected {expected}, got {actual}."
        )
    return True


__all__ = [
    "ArchiveError",
    "CHECKSUM_SUFFIX",
    "ChecksumError",
    "PARTIAL_SUFFIX",
    "check_members",
    "checksum_path",
    "compute_checksum",
    "create_archive",
    "extract_archive",
    "list_members",
    "read_checksum_file",
    "top_level_names",
    "verify_checksum",
    "write_checksum_file",
]
