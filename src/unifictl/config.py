"""Configuration loader for unifictl.

Values are resolved from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/unifictl/config.yml`` (or an override path).
3. Environment variables prefixed with ``UNIFICTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export UNIFICTL_PROBES__ATTEMPTS=10
    export UNIFICTL_BACKUPS__STOP_STACK=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.

This file configures the *tool*. The stack's own settings (ports, credentials)
live in the stack root's ``.env`` and are handled by :mod:`unifictl.stack_env`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load unifictl configuration. Install with "
        "`pip install unifictl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "UNIFICTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ComposeConfig:
    """Names used when talking to ``docker compose``."""

    docker_bin: str = "docker"
    app_service: str = "unifi-network"
    db_service: str = "unifi-db"
    app_container: str = "unifi-network"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "app_service": self.app_service,
            "db_service": self.db_service,
            "app_container": self.app_container,
        }


@dataclass(frozen=True)
class ProbeConfig:
    """Liveness probe timings (seconds)."""

    host: str = "127.0.0.1"
    timeout: float = 5.0
    attempts: int = 3
    interval: float = 5.0
    initial_delay: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.host,
            "timeout": self.timeout,
            "attempts": self.attempts,
            "interval": self.interval,
            "initial_delay": self.initial_delay,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup naming and consistency defaults."""

    prefix: str = "unifi-controller"
    stop_stack: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"prefix": self.prefix, "stop_stack": self.stop_stack}


@dataclass(frozen=True)
class RestoreConfig:
    """In-place restore safety settings."""

    delay_seconds: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"delay_seconds": self.delay_seconds}


@dataclass(frozen=True)
class TLSConfig:
    """Certificate deployment settings.

    ``p12_password`` and ``keystore_password`` default to the values the
    application image documents; they are not secrets chosen by unifictl.
    """

    live_dir: Path = Path("/etc/letsencrypt/live")
    p12_password: str = "temppass"
    keystore_password: str = "aircontrolenterprise"
    alias: str = "unifi"
    keystore_path: str = "/config/data/keystore"
    hook_path: Path = Path("/etc/letsencrypt/renewal-hooks/deploy/unifictl-deploy.sh")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "live_dir": str(self.live_dir),
            "p12_password": self.p12_password,
            "keystore_password": self.keystore_password,
            "alias": self.alias,
            "keystore_path": self.keystore_path,
            "hook_path": str(self.hook_path),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for unifictl."""

    config_file: Path
    stack_root: Path
    logs_dir: Path
    templates_dir: Path
    lock_timeout: float
    compose: ComposeConfig
    probes: ProbeConfig
    backups: BackupConfig
    restore: RestoreConfig
    tls: TLSConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "stack_root": str(self.stack_root),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "compose": self.compose.to_dict(),
            "probes": self.probes.to_dict(),
            "backups": self.backups.to_dict(),
            "restore": self.restore.to_dict(),
            "tls": self.tls.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/unifictl/config.yml",
    "stack_root": "/opt/unifi",
    "logs_dir": "/var/log/unifictl",
    "templates_dir": "/etc/unifictl/templates",
    "lock_timeout": 30.0,
    "compose": {
        "docker_bin": "docker",
        "app_service": "unifi-network",
        "db_service": "unifi-db",
        "app_container": "unifi-network",
    },
    "probes": {
        "host": "127.0.0.1",
        "timeout": 5.0,
        "attempts": 3,
        "interval": 5.0,
        "initial_delay": 5.0,
    },
    "backups": {
        "prefix": "unifi-controller",
        "stop_stack": True,
    },
    "restore": {
        "delay_seconds": 5.0,
    },
    "tls": {
        "live_dir": "/etc/letsencrypt/live",
        "p12_password": "temppass",
        "keystore_password": "aircontrolenterprise",
        "alias": "unifi",
        "keystore_path": "/config/data/keystore",
        "hook_path": "/etc/letsencrypt/renewal-hooks/deploy/unifictl-deploy.sh",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], value).keys())
    for section, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    compose_mapping = _as_dict(raw.get("compose"), "compose")
    compose = ComposeConfig(
        docker_bin=_expect_name(compose_mapping.get("docker_bin"), "compose.docker_bin"),
        app_service=_expect_name(compose_mapping.get("app_service"), "compose.app_service"),
        db_service=_expect_name(compose_mapping.get("db_service"), "compose.db_service"),
        app_container=_expect_name(
            compose_mapping.get("app_container"), "compose.app_container"
        ),
    )

    probes_mapping = _as_dict(raw.get("probes"), "probes")
    attempts = _expect_int(probes_mapping.get("attempts"), "probes.attempts", default=3)
    if attempts < 1:
        raise ConfigError("probes.attempts must be at least 1.")
    probes = ProbeConfig(
        host=_expect_name(probes_mapping.get("host"), "probes.host"),
        timeout=_expect_positive_float(probes_mapping.get("timeout"), "probes.timeout", default=5.0),
        attempts=attempts,
        interval=_expect_non_negative_float(
            probes_mapping.get("interval"), "probes.interval", default=5.0
        ),
        initial_delay=_expect_non_negative_float(
            probes_mapping.get("initial_delay"), "probes.initial_delay", default=5.0
        ),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    prefix = _expect_name(backups_mapping.get("prefix"), "backups.prefix")
    if "/" in prefix:
        raise ConfigError("backups.prefix must not contain path separators.")
    backups = BackupConfig(
        prefix=prefix,
        stop_stack=_expect_bool(backups_mapping.get("stop_stack"), "backups.stop_stack", True),
    )

    restore_mapping = _as_dict(raw.get("restore"), "restore")
    restore = RestoreConfig(
        delay_seconds=_expect_non_negative_float(
            restore_mapping.get("delay_seconds"), "restore.delay_seconds", default=5.0
        ),
    )

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    tls = TLSConfig(
        live_dir=_to_path(tls_mapping.get("live_dir")),
        p12_password=_expect_name(tls_mapping.get("p12_password"), "tls.p12_password"),
        keystore_password=_expect_name(
            tls_mapping.get("keystore_password"), "tls.keystore_password"
        ),
        alias=_expect_name(tls_mapping.get("alias"), "tls.alias"),
        keystore_path=_expect_name(tls_mapping.get("keystore_path"), "tls.keystore_path"),
        hook_path=_to_path(tls_mapping.get("hook_path")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        stack_root=_to_path(raw.get("stack_root")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=lock_timeout,
        compose=compose,
        probes=probes,
        backups=backups,
        restore=restore,
        tls=tls,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_name(value: object, label: str) -> str:
    if isinstance(value, bool) or value is None:
        raise ConfigError(f"Expected {label} to be a non-empty string.")
    text = str(value).strip()
    if not text:
        raise ConfigError(f"Expected {label} to be a non-empty string.")
    return text


def _expect_bool(value: object | None, label: str, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ComposeConfig",
    "ConfigError",
    "ProbeConfig",
    "RestoreConfig",
    "TLSConfig",
    "load_config",
]
