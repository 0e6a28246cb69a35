"""The on-disk stack root and the names of everything inside it."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

ENV_FILE = ".env"
COMPOSE_FILE = "docker-compose.yml"
SCRIPTS_DIR = "scripts"
MONGO_DATA_DIR = "mongo-data"
UNIFI_DATA_DIR = "unifi-data"
BACKUPS_DIR = "backups"
RESTORES_DIR = "restores"
SAFETY_PREFIX = "pre-restore-"

#: Items captured by a backup and replaced by an in-place restore, in order.
ARCHIVE_MANIFEST: tuple[str, ...] = (
    COMPOSE_FILE,
    ENV_FILE,
    SCRIPTS_DIR,
    UNIFI_DATA_DIR,
    MONGO_DATA_DIR,
)


@dataclass(frozen=True)
class StackRoot:
    """Handle for a stack directory.

    Operations receiving a ``StackRoot`` assume exclusive access to it; the CLI
    holds :meth:`unifictl.locking.LockManager.stack_lock` while they run.
    """

    path: Path

    def __post_init__(self) -> None:
        """Normalise the root path."""
        object.__setattr__(self, "path", Path(self.path).expanduser().absolute())

    @property
    def env_file(self) -> Path:
        return self.path / ENV_FILE

    @property
    def compose_file(self) -> Path:
        return self.path / COMPOSE_FILE

    @property
    def scripts_dir(self) -> Path:
        return self.path / SCRIPTS_DIR

    @property
    def mongo_data(self) -> Path:
        return self.path / MONGO_DATA_DIR

    @property
    def unifi_data(self) -> Path:
        return self.path / UNIFI_DATA_DIR

    @property
    def backups_dir(self) -> Path:
        return self.path / BACKUPS_DIR

    @property
    def restores_dir(self) -> Path:
        return self.path / RESTORES_DIR

    @property
    def certs_dir(self) -> Path:
        return self.unifi_data / "certs"

    def managed_dirs(self) -> tuple[Path, ...]:
        """Directories that must exist before the stack starts."""
        return (self.scripts_dir, self.backups_dir, self.mongo_data, self.unifi_data)

    def owned_dirs(self) -> tuple[Path, ...]:
        """Directories chowned to the stack's host identity."""
        return (self.backups_dir, self.mongo_data, self.unifi_data, self.scripts_dir)

    def safety_dir(self, stamp: str) -> Path:
        """Return the directory receiving pre-restore state for *stamp*."""
        return self.path / f"{SAFETY_PREFIX}{stamp}"


__all__ = [
    "ARCHIVE_MANIFEST",
    "BACKUPS_DIR",
    "COMPOSE_FILE",
    "ENV_FILE",
    "MONGO_DATA_DIR",
    "RESTORES_DIR",
    "SAFETY_PREFIX",
    "SCRIPTS_DIR",
    "StackRoot",
    "UNIFI_DATA_DIR",
]
