"""Tests for tar and checksum helpers."""
from __future__ import annotations

import shutil
import tarfile
from pathlib import Path

import pytest

from unifictl.archive import (
    ArchiveError,
    ChecksumError,
    check_members,
    checksum_path,
    compute_checksum,
    create_archive,
    extract_archive,
    read_checksum_file,
    top_level_names,
    verify_checksum,
    write_checksum_file,
)

pytestmark = pytest.mark.skipif(shutil.which("tar") is None, reason="tar is required")


def _source(tmp_path: Path) -> Path:
    source = tmp_path / "src"
    (source / "data").mkdir(parents=True)
    (source / "data" / "a.txt").write_text("alpha\n", encoding="utf-8")
    (source / ".env").write_text("KEY=value\n", encoding="utf-8")
    return source


def test_create_and_extract(tmp_path: Path) -> None:
    """Members round-trip through tar with their relative layout."""
    archive = create_archive(_source(tmp_path), [".env", "data"], tmp_path / "out.tar.gz")

    assert archive.exists()
    assert not (tmp_path / "out.tar.gz.partial").exists()
    top_level = extract_archive(archive, tmp_path / "dest")
    assert sorted(top_level) == [".env", "data"]
    assert (tmp_path / "dest" / "data" / "a.txt").read_text(encoding="utf-8") == "alpha\n"


def test_failed_create_leaves_no_archive(tmp_path: Path) -> None:
    """A tar failure removes the partial file and raises ArchiveError."""
    target = tmp_path / "out.tar.gz"

    with pytest.raises(ArchiveError):
        create_archive(_source(tmp_path), ["missing"], target)

    assert not target.exists()
    assert not (tmp_path / "out.tar.gz.partial").exists()


def test_unsafe_members_are_rejected(tmp_path: Path) -> None:
    """Absolute paths and parent references never reach the extractor."""
    with pytest.raises(ArchiveError):
        check_members(["../etc/passwd"])
    with pytest.raises(ArchiveError):
        check_members(["/etc/passwd"])
    check_members(["data/a.txt", "./.env"])

    payload = tmp_path / "evil.txt"
    payload.write_text("x", encoding="utf-8")
    archive = tmp_path / "evil.tar.gz"
    with tarfile.open(archive, "w:gz") as handle:
        handle.add(payload, arcname="../evil.txt")
    with pytest.raises(ArchiveError, match="unsafe member"):
        extract_archive(archive, tmp_path / "dest")
    assert not (tmp_path / "dest").exists()


def test_checksum_sidecar(tmp_path: Path) -> None:
    """Sidecars use sha256sum format and detect modification."""
    archive = create_archive(_source(tmp_path), ["data"], tmp_path / "b.tar.gz")
    assert verify_checksum(archive) is False

    digest = compute_checksum(archive)
    sidecar = write_checksum_file(archive, digest)

    assert sidecar == checksum_path(archive)
    assert sidecar.read_text(encoding="utf-8") == f"{digest}  b.tar.gz\n"
    assert read_checksum_file(sidecar) == (digest, "b.tar.gz")
    assert verify_checksum(archive) is True

    with archive.open("ab") as handle:
        handle.write(b"tampered")
    with pytest.raises(ChecksumError, match="Checksum verification failed"):
        verify_checksum(archive)


def test_malformed_sidecar(tmp_path: Path) -> None:
    """A sidecar that is not sha256sum output is a checksum failure."""
    archive = tmp_path / "c.tar.gz"
    archive.write_bytes(b"data")
    checksum_path(archive).write_text("not a digest\n", encoding="utf-8")

    with pytest.raises(ChecksumError, match="malformed"):
        verify_checksum(archive)


def test_sidecar_for_other_file(tmp_path: Path) -> None:
    """A sidecar naming another archive is rejected."""
    archive = tmp_path / "d.tar.gz"
    archive.write_bytes(b"data")
    checksum_path(archive).write_text(f"{compute_checksum(archive)}  other.tar.gz\n", encoding="utf-8")

    with pytest.raises(ChecksumError, match="other.tar.gz"):
        verify_checksum(archive)


def test_top_level_names_keep_first_seen_order() -> None:
    """Nested members collapse to their first path component."""
    names = ["./", "./.env", "unifi-data/", "unifi-data/data/a", "./scripts/init.sh", ".env"]

    assert top_level_names(names) == [".env", "unifi-data", "scripts"]
