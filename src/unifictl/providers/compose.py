"""Compose provider driving the stack through the ``docker`` CLI."""
from __future__ import annotations

import json
import re
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from ..layout import StackRoot


class ComposeError(RuntimeError):
    """Raised when docker or docker compose operations fail."""


@dataclass(slots=True)
class ServiceState:
    """One row of ``docker compose ps``."""

    service: str
    container: str
    state: str
    status: str = ""
    health: str = ""

    @property
    def running(self) -> bool:
        return self.state.lower() == "running"

    def to_dict(self) -> dict[str, str]:
        return {
            "service": self.service,
            "container": self.container,
            "state": self.state,
            "status": self.status,
            "health": self.health,
        }


@dataclass(slots=True)
class ComposeProvider:
    """Run compose subcommands against one stack root."""

    root: StackRoot
    docker_bin: str = "docker"
    app_service: str = "unifi-network"
    db_service: str = "unifi-db"
    app_container: str = "unifi-network"

    def compose_args(self, *args: str) -> list[str]:
        """Return the full command line for ``docker compose <args>``."""
        command = [
            self.docker_bin,
            "compose",
            "--project-directory",
            str(self.root.path),
            "-f",
            str(self.root.compose_file),
        ]
        if self.root.env_file.exists():
            command.extend(["--env-file", str(self.root.env_file)])
        command.extend(args)
        return command

    def up(self, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Start every service in the background."""
        return self._compose("up", "-d", dry_run=dry_run)

    def down(self, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Stop and remove the stack's containers."""
        return self._compose("down", dry_run=dry_run)

    def restart(self, service: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Restart a single service."""
        return self._compose("restart", service, dry_run=dry_run)

    def ps(self) -> subprocess.CompletedProcess[str]:
        """Return the human-readable ``docker compose ps`` table."""
        return self._compose("ps", check=False)

    def services(self) -> list[ServiceState]:
        """Return parsed container states (empty when nothing exists)."""
        result = self._compose("ps", "--all", "--format", "json")
        return parse_ps_output(result.stdout or "")

    def is_running(self) -> bool:
        """Return True when any service container is running."""
        return any(state.running for state in self.services())

    def exec(
        self,
        service: str,
        command: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* inside *service* without a TTY."""
        return self._compose("exec", "-T", service, *command, check=check)

    def container_exec(
        self,
        command: Sequence[str],
        *,
        container: str | None = None,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* with ``docker exec`` in the application container."""
        target = container or self.app_container
        return self._run_command(
            [self.docker_bin, "exec", target, *command],
            check=True,
            error_prefix=f"{self.docker_bin} exec {target}",
            dry_run=dry_run,
        )

    def container_logs(self, *, tail: int = 120, container: str | None = None) -> str:
        """Return the last *tail* log lines of the application container."""
        target = container or self.app_container
        result = self._run_command(
            [self.docker_bin, "logs", "--tail", str(tail), target],
            check=False,
            error_prefix=f"{self.docker_bin} logs {target}",
            dry_run=False,
        )
        # docker logs replays the container's stderr on stderr.
        return "".join(part for part in (result.stdout, result.stderr) if part)

    # ------------------------------------------------------------------
    def _compose(
        self,
        *args: str,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        return self._run_command(
            self.compose_args(*args),
            check=check,
            error_prefix=f"{self.docker_bin} compose {args[0]}",
            dry_run=dry_run,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        dry_run: bool,
    ) -> subprocess.CompletedProcess[str]:
        if dry_run:
            return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                cwd=str(self.root.path),
            )
        except FileNotFoundError as exc:
            raise ComposeError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ComposeError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


def parse_ps_output(text: str) -> list[ServiceState]:
    """Parse ``docker compose ps --format json`` (array or one object per line)."""
    text = text.strip()
    if not text:
        return []
    try:
        payload = json.loads(text)
        rows = payload if isinstance(payload, list) else [payload]
    except json.JSONDecodeError:
        try:
            rows = [json.loads(line) for line in text.splitlines() if line.strip()]
        except json.JSONDecodeError as exc:
            raise ComposeError(f"Unexpected docker compose ps output: {exc}") from exc

    states: list[ServiceState] = []
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        states.append(
            ServiceState(
                service=str(row.get("Service", "")),
                container=str(row.get("Name", "")),
                state=str(row.get("State", "")),
                status=str(row.get("Status", "")),
                health=str(row.get("Health", "")),
            )
        )
    return states


_VARIABLE = re.compile(r"\$(?:(?P<escaped>\$)|\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:?-)(?P<default>[^}]*))?\})")


def interpolate_env(text: str, env: Mapping[str, str]) -> str:
    """Expand ``${VAR}``, ``${VAR:-default}``, ``${VAR-default}`` and ``$$`` like compose."""

    def _replace(match: re.Match[str]) -> str:
        if match.group("escaped"):
            return "$"
        name = match.group("name")
        op = match.group("op")
        value = env.get(name)
        if op == ":-" and not value:
            return match.group("default")
        if op == "-" and value is None:
            return match.group("default")
        if value is None:
            raise ComposeError(f"Variable {name} is not set.")
        return value

    return _VARIABLE.sub(_replace, text)


__all__ = [
    "ComposeError",
    "ComposeProvider",
    "ServiceState",
    "interpolate_env",
    "parse_ps_output",
]
