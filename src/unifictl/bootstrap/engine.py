"""Detect and install the container engine and the optional certbot tooling."""
from __future__ import annotations

import os
import shlex
import shutil
import subprocess
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import requests

from ..reconcile import ReconcilePlan
from .identity import Runner, default_runner, privileged

SUPPORTED_DISTROS = ("ubuntu", "debian")
DOCKER_KEYRING = Path("/etc/apt/keyrings/docker.gpg")
DOCKER_SOURCES_LIST = Path("/etc/apt/sources.list.d/docker.list")
DOCKER_PACKAGES = (
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
)


class EngineError(RuntimeError):
    """Raised when the container engine cannot be detected or installed."""


@dataclass(slots=True)
class EngineStatus:
    """Result of :func:`detect_engine`."""

    installed: bool
    running: bool
    server_version: str | None = None
    detail: str | None = None

    @property
    def ready(self) -> bool:
        return self.installed and self.running


@dataclass(slots=True)
class EngineAction:
    """One step of an install plan."""

    kind: Literal["run", "fetch-key", "write-file"]
    description: str
    command: list[str] | None = None
    url: str | None = None
    path: Path | None = None
    content: str | None = None
    best_effort: bool = False


EnginePlan = ReconcilePlan[EngineAction]
Fetcher = Callable[[str], bytes]

#: Replaced by the path of a staged temp file when the step runs.
PAYLOAD = "{payload}"


def _run_step(
    description: str,
    command: tuple[str, ...],
    *,
    use_sudo: bool,
    best_effort: bool,
) -> EngineAction:
    return EngineAction(
        kind="run",
        description=description,
        command=privileged(list(command), use_sudo=use_sudo),
        best_effort=best_effort,
    )


def detect_engine(docker_bin: str = "docker", *, runner: Runner | None = None) -> EngineStatus:
    """Report whether the engine binary exists and its daemon answers ``docker info``."""
    if shutil.which(docker_bin) is None:
        return EngineStatus(installed=False, running=False, detail=f"{docker_bin} not found on PATH.")
    runner = runner or default_runner
    try:
        result = runner([docker_bin, "info", "--format", "{{.ServerVersion}}"])
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or exc.stdout or "").strip() or f"exit {exc.returncode}"
        return EngineStatus(installed=True, running=False, detail=detail)
    except OSError as exc:
        return EngineStatus(installed=True, running=False, detail=str(exc))
    version = (result.stdout or "").strip() or None
    return EngineStatus(installed=True, running=True, server_version=version)


def read_os_release(path: Path = Path("/etc/os-release")) -> dict[str, str]:
    """Parse ``/etc/os-release`` into a mapping."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise EngineError(f"Cannot detect OS ({path}: {exc}). Install Docker manually.") from exc
    values: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, raw = line.partition("=")
        if not sep or not key.strip() or key.lstrip().startswith("#"):
            continue
        parts = shlex.split(raw, comments=False)
        values[key.strip()] = parts[0] if parts else ""
    return values


def detect_architecture(*, runner: Runner | None = None) -> str:
    """Return the dpkg architecture name (``amd64``, ``arm64`` ...)."""
    runner = runner or default_runner
    try:
        result = runner(["dpkg", "--print-architecture"])
    except (subprocess.CalledProcessError, OSError) as exc:
        raise EngineError(f"Unable to determine package architecture: {exc}") from exc
    return (result.stdout or "").strip()


def plan_engine_install(
    os_release: Mapping[str, str],
    *,
    architecture: str,
    use_sudo: bool = False,
    keyring: Path = DOCKER_KEYRING,
    sources_list: Path = DOCKER_SOURCES_LIST,
) -> EnginePlan:
    """Return the apt steps that install Docker Engine and the compose plugin."""
    distro = (os_release.get("ID") or "").lower()
    if distro not in SUPPORTED_DISTROS:
        raise EngineError(
            f"Unsupported distro for automatic Docker install: {distro or 'unknown'}. "
            "Install Docker manually, then rerun."
        )
    codename = os_release.get("VERSION_CODENAME")
    if not codename:
        raise EngineError("VERSION_CODENAME missing from os-release; cannot pick a Docker repository.")

    def run(description: str, *command: str, best_effort: bool = False) -> EngineAction:
        return _run_step(description, command, use_sudo=use_sudo, best_effort=best_effort)

    repo = f"https://download.docker.com/linux/{distro}"
    plan: EnginePlan = ReconcilePlan()
    plan.actions.append(run("Refresh package index.", "apt-get", "update", "-y"))
    plan.actions.append(
        run(
            "Install repository prerequisites.",
            "apt-get", "install", "-y", "ca-certificates", "curl", "gnupg", "lsb-release",
        )
    )
    plan.actions.append(
        run("Create apt keyring directory.", "install", "-m", "0755", "-d", str(keyring.parent))
    )
    if not keyring.exists():
        plan.actions.append(
            EngineAction(
                kind="fetch-key",
                description=f"Import Docker signing key into {keyring}.",
                url=f"{repo}/gpg",
                path=keyring,
                command=privileged(
                    ["gpg", "--batch", "--yes", "--dearmor", "-o", str(keyring), PAYLOAD],
                    use_sudo=use_sudo,
                ),
            )
        )
    plan.actions.append(
        EngineAction(
            kind="write-file",
            description=f"Register Docker apt repository in {sources_list}.",
            path=sources_list,
            content=(
                f"deb [arch={architecture} signed-by={keyring}] {repo} {codename} stable\n"
            ),
            command=privileged(
                ["install", "-m", "0644", PAYLOAD, str(sources_list)], use_sudo=use_sudo
            ),
        )
    )
    plan.actions.append(run("Refresh package index.", "apt-get", "update", "-y"))
    plan.actions.append(
        run("Install Docker Engine and compose plugin.", "apt-get", "install", "-y", *DOCKER_PACKAGES)
    )
    plan.actions.append(run("Enable and start docker.", "systemctl", "enable", "--now", "docker"))
    return plan


def plan_certbot_install(*, use_sudo: bool = False) -> EnginePlan:
    """Return the steps installing certbot through snap."""

    def run(description: str, *command: str, best_effort: bool = False) -> EngineAction:
        return _run_step(description, command, use_sudo=use_sudo, best_effort=best_effort)

    plan: EnginePlan = ReconcilePlan()
    plan.actions.extend(
        [
            run("Refresh package index.", "apt-get", "update", "-y"),
            run("Install snapd.", "apt-get", "install", "-y", "snapd"),
            run("Install snap core.", "snap", "install", "core", best_effort=True),
            run("Refresh snap core.", "snap", "refresh", "core", best_effort=True),
            run("Install certbot.", "snap", "install", "--classic", "certbot"),
        ]
    )
    plan.warnings.append(
        "Certificate issuance is not automated; use a DNS-01 plugin such as "
        "certbot-dns-cloudflare, then run 'unifictl cert install-hook'."
    )
    return plan


def apply_engine_plan(
    plan: EnginePlan,
    *,
    runner: Runner | None = None,
    fetcher: Fetcher | None = None,
    dry_run: bool = False,
) -> list[str]:
    """Execute *plan*; returns warnings from best-effort steps that failed."""
    runner = runner or default_runner
    fetcher = fetcher or _fetch
    warnings: list[str] = []
    for action in plan.actions:
        if dry_run:
            continue
        try:
            if action.kind == "run":
                runner(list(action.command or []))
            elif action.kind == "fetch-key":
                _run_with_payload(runner, list(action.command or []), fetcher(action.url or ""))
            elif action.kind == "write-file":
                payload = (action.content or "").encode("utf-8")
                _run_with_payload(runner, list(action.command or []), payload)
        except (subprocess.CalledProcessError, OSError) as exc:
            message = f"{action.description} failed: {_describe(exc)}"
            if not action.best_effort:
                raise EngineError(message) from exc
            warnings.append(message)
    return warnings


def _run_with_payload(runner: Runner, command: list[str], payload: bytes) -> None:
    """Stage *payload* in a temp file substituted for :data:`PAYLOAD` in *command*."""
    fd, name = tempfile.mkstemp(prefix="unifictl-")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
        os.chmod(name, 0o644)
        runner([name if part == PAYLOAD else part for part in command])
    finally:
        Path(name).unlink(missing_ok=True)


def _fetch(url: str) -> bytes:
    try:
        response = requests.get(url, timeout=30)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise EngineError(f"Failed to download {url}: {exc}") from exc
    return response.content


def _describe(exc: BaseException) -> str:
    if isinstance(exc, subprocess.CalledProcessError):
        output = (exc.stderr or exc.stdout or "").strip()
        return output or f"exit {exc.returncode}"
    return str(exc)


__all__ = [
    "EngineAction",
    "EngineError",
    "EnginePlan",
    "EngineStatus",
    "apply_engine_plan",
    "detect_architecture",
    "detect_engine",
    "plan_certbot_install",
    "plan_engine_install",
    "read_os_release",
]
