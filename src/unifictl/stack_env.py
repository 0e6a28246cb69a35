"""Read and write the stack's ``.env`` file.

The ``.env`` file is consumed by ``docker compose`` at start time. It holds one
``KEY=value`` setting per line: bind address, host identity, timezone, image
tags, MongoDB credentials and logical database names, and the six published
ports. Writes always go to a temporary file in the same directory followed by
an atomic rename, so compose never reads a half-written file.
"""
from __future__ import annotations

import os
import secrets
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path


class StackEnvError(RuntimeError):
    """Raised when the stack environment file cannot be read or written."""


DEFAULT_UNIFI_IMAGE_TAG = "10.0.162-ls113"
DEFAULT_MONGO_IMAGE_TAG = "8"


def generate_password() -> str:
    """Return a random URL-safe credential."""
    return secrets.token_urlsafe(18)


# compose interpolates $ in unquoted .env values and the init script embeds
# passwords in double-quoted JavaScript strings.
_UNSAFE_CREDENTIAL_CHARACTERS = frozenset("$\"'\\`")

CREDENTIAL_KEYS: tuple[str, ...] = (
    "MONGO_INITDB_ROOT_USERNAME",
    "MONGO_INITDB_ROOT_PASSWORD",
    "MONGO_USER",
    "MONGO_PASS",
)


def check_credential(label: str, value: str) -> None:
    """Reject credentials that would not survive ``.env`` and the init script verbatim."""
    if not value:
        raise StackEnvError(f"{label} must not be empty.")
    bad = sorted({char for char in value if char in _UNSAFE_CREDENTIAL_CHARACTERS or char.isspace()})
    if bad:
        shown = " ".join(repr(char) for char in bad)
        raise StackEnvError(
            f"{label} contains unsupported characters ({shown}); "
            "quotes, backslashes, backticks, '$' and whitespace are not allowed."
        )


@dataclass(frozen=True)
class PortMap:
    """Host ports published by the application container."""

    https: str = "8443"
    inform: str = "8080"
    stun: str = "3478"
    discovery: str = "10001"
    guest_https: str = "8843"
    guest_http: str = "8880"


# (env key, PortMap attribute, container port, protocol suffix)
PORT_BINDINGS: tuple[tuple[str, str, str, str], ...] = (
    ("UNIFI_HTTPS_PORT", "https", "8443", ""),
    ("UNIFI_INFORM_PORT", "inform", "8080", ""),
    ("UNIFI_STUN_PORT", "stun", "3478", "/udp"),
    ("UNIFI_DISCOVERY_PORT", "discovery", "10001", "/udp"),
    ("UNIFI_GUEST_HTTPS_PORT", "guest_https", "8843", ""),
    ("UNIFI_GUEST_HTTP_PORT", "guest_http", "8880", ""),
)


@dataclass(frozen=True)
class StackConfig:
    """All settings persisted to the stack's ``.env`` file."""

    puid: int
    pgid: int
    mongo_root_password: str
    mongo_pass: str
    bind_ip: str = "0.0.0.0"
    tz: str = "America/Chicago"
    unifi_image_tag: str = DEFAULT_UNIFI_IMAGE_TAG
    mongo_image_tag: str = DEFAULT_MONGO_IMAGE_TAG
    mongo_root_username: str = "root"
    mongo_user: str = "unifi"
    mongo_dbname: str = "unifi"
    mongo_db_stat: str = "unifi_stat"
    mongo_db_audit: str = "unifi_audit"
    mongo_authsource: str = "admin"
    ports: PortMap = field(default_factory=PortMap)

    @classmethod
    def generate(cls, *, puid: int, pgid: int, **overrides: object) -> StackConfig:
        """Build a config with freshly generated MongoDB passwords."""
        values: dict[str, object] = {
            "mongo_root_password": generate_password(),
            "mongo_pass": generate_password(),
        }
        values.update(overrides)
        return cls(puid=puid, pgid=pgid, **values)  # type: ignore[arg-type]

    def with_credentials_from(self, previous: StackConfig) -> StackConfig:
        """Return a copy keeping the MongoDB credentials of *previous*."""
        return replace(
            self,
            mongo_root_username=previous.mongo_root_username,
            mongo_root_password=previous.mongo_root_password,
            mongo_user=previous.mongo_user,
            mongo_pass=previous.mongo_pass,
        )

    def port_bindings(self) -> list[str]:
        """Return the compose ``ports`` entries this config publishes."""
        bindings: list[str] = []
        for _, attribute, container_port, suffix in PORT_BINDINGS:
            host_port = getattr(self.ports, attribute)
            bindings.append(f"{self.bind_ip}:{host_port}:{container_port}{suffix}")
        return bindings

    def to_env(self) -> dict[str, str]:
        """Return the ordered ``KEY -> value`` mapping written to ``.env``."""
        env: dict[str, str] = {
            "BIND_IP": self.bind_ip,
            "PUID": str(self.puid),
            "PGID": str(self.pgid),
            "TZ": self.tz,
            "UNIFI_IMAGE_TAG": self.unifi_image_tag,
            "MONGO_IMAGE_TAG": self.mongo_image_tag,
            "MONGO_INITDB_ROOT_USERNAME": self.mongo_root_username,
            "MONGO_INITDB_ROOT_PASSWORD": self.mongo_root_password,
            "MONGO_USER": self.mongo_user,
            "MONGO_PASS": self.mongo_pass,
            "MONGO_DBNAME": self.mongo_dbname,
            "MONGO_DB_STAT": self.mongo_db_stat,
            "MONGO_DB_AUDIT": self.mongo_db_audit,
            "MONGO_AUTHSOURCE": self.mongo_authsource,
        }
        for key, attribute, _, _ in PORT_BINDINGS:
            env[key] = getattr(self.ports, attribute)
        return env

    @classmethod
    def from_env(cls, values: Mapping[str, str]) -> StackConfig:
        """Rebuild a config from a parsed ``.env`` mapping."""
        missing = [
            key
            for key in ("PUID", "PGID", "MONGO_INITDB_ROOT_PASSWORD", "MONGO_PASS")
            if not values.get(key)
        ]
        if missing:
            raise StackEnvError(f"Environment file is missing required keys: {', '.join(missing)}.")
        try:
            puid = int(values["PUID"])
            pgid = int(values["PGID"])
        except ValueError as exc:
            raise StackEnvError(f"PUID/PGID must be numeric: {exc}") from exc

        defaults = PortMap()
        ports = PortMap(
            **{
                attribute: values.get(key) or getattr(defaults, attribute)
                for key, attribute, _, _ in PORT_BINDINGS
            }
        )
        base = cls(puid=puid, pgid=pgid, mongo_root_password="", mongo_pass="")
        return cls(
            puid=puid,
            pgid=pgid,
            mongo_root_password=values["MONGO_INITDB_ROOT_PASSWORD"],
            mongo_pass=values["MONGO_PASS"],
            bind_ip=values.get("BIND_IP") or base.bind_ip,
            tz=values.get("TZ") or base.tz,
            unifi_image_tag=values.get("UNIFI_IMAGE_TAG") or base.unifi_image_tag,
            mongo_image_tag=values.get("MONGO_IMAGE_TAG") or base.mongo_image_tag,
            mongo_root_username=values.get("MONGO_INITDB_ROOT_USERNAME")
            or base.mongo_root_username,
            mongo_user=values.get("MONGO_USER") or base.mongo_user,
            mongo_dbname=values.get("MONGO_DBNAME") or base.mongo_dbname,
            mongo_db_stat=values.get("MONGO_DB_STAT") or base.mongo_db_stat,
            mongo_db_audit=values.get("MONGO_DB_AUDIT") or base.mongo_db_audit,
            mongo_authsource=values.get("MONGO_AUTHSOURCE") or base.mongo_authsource,
            ports=ports,
        )


# Blank lines separate these groups in the rendered file.
_GROUP_STARTS = {
    "UNIFI_IMAGE_TAG",
    "MONGO_INITDB_ROOT_USERNAME",
    "MONGO_USER",
    "MONGO_DBNAME",
    "UNIFI_HTTPS_PORT",
}


def render_env(config: StackConfig) -> str:
    """Return the ``.env`` file contents for *config*."""
    values = config.to_env()
    for key in CREDENTIAL_KEYS:
        check_credential(key, values[key])
    lines: list[str] = []
    for key, value in values.items():
        if any(char in value for char in "\r\n"):
            raise StackEnvError(f"Value for {key} must not contain line breaks.")
        if key in _GROUP_STARTS:
            lines.append("")
        lines.append(f"{key}={value}")
    return "\n".join(lines) + "\n"


def write_env_file(path: Path, config: StackConfig) -> Path:
    """Atomically replace *path* with the rendered *config*."""
    content = render_env(config)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise StackEnvError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)
    return path


def read_env_file(path: Path) -> dict[str, str]:
    """Parse ``KEY=value`` lines from *path*; comments and blanks are ignored."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise StackEnvError(f"Environment file {path} not found.") from exc
    except OSError as exc:
        raise StackEnvError(f"Failed to read {path}: {exc}") from exc

    values: dict[str, str] = {}
    for number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            raise StackEnvError(f"{path}:{number}: expected KEY=value, got {raw_line!r}.")
        if key in values:
            raise StackEnvError(f"{path}:{number}: duplicate key {key}.")
        values[key] = value.strip()
    return values


def load_stack_config(path: Path) -> StackConfig:
    """Read *path* and return the parsed :class:`StackConfig`."""
    return StackConfig.from_env(read_env_file(path))


def read_identity(path: Path) -> tuple[int, int] | None:
    """Return ``(PUID, PGID)`` from *path*, or ``None`` when unavailable."""
    try:
        values = read_env_file(path)
    except StackEnvError:
        return None
    try:
        return int(values["PUID"]), int(values["PGID"])
    except (KeyError, ValueError):
        return None


__all__ = [
    "CREDENTIAL_KEYS",
    "PORT_BINDINGS",
    "PortMap",
    "StackConfig",
    "StackEnvError",
    "check_credential",
    "generate_password",
    "load_stack_config",
    "read_env_file",
    "read_identity",
    "render_env",
    "write_env_file",
]
