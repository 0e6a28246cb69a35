"""Bring the stack up and down and report whether it answers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

import yaml

from .config import ProbeConfig
from .layout import StackRoot
from .probes import ProbeResult, ProbeRunner, stack_endpoints
from .providers.compose import ComposeError, ComposeProvider, ServiceState, interpolate_env
from .stack_env import PortMap, StackEnvError, read_env_file

LOG_TAIL_LINES = 120

_logger = logging.getLogger(__name__)


class ConvergenceError(RuntimeError):
    """Raised by strict health checks when the stack does not answer."""

    def __init__(self, message: str, *, health: HealthReport, logs: str = "") -> None:
        """Attach the failing probe results and the application's log tail."""
        super().__init__(message)
        self.health = health
        self.logs = logs


@dataclass(slots=True)
class HealthReport:
    """Probe results for every stack endpoint."""

    results: list[ProbeResult] = field(default_factory=list)
    log_hint: str = ""

    @property
    def healthy(self) -> bool:
        return all(result.ok for result in self.results)

    def warnings(self) -> list[str]:
        notes = [
            f"{result.describe()}; it may still be starting."
            for result in self.results
            if not result.ok
        ]
        if notes and self.log_hint:
            notes.append(f"Check logs if it stays down: {self.log_hint}")
        return notes


@dataclass(slots=True)
class BringUpReport:
    """Outcome of :meth:`StackController.up`."""

    ps_output: str
    health: HealthReport
    ports: list[str] = field(default_factory=list)

    @property
    def warnings(self) -> list[str]:
        return self.health.warnings()


@dataclass(slots=True)
class StackStatus:
    """Snapshot returned by :meth:`StackController.status`."""

    configured: bool
    services: list[ServiceState]
    health: HealthReport
    ports: list[str] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return any(service.running for service in self.services)


class StackController:
    """Drive ``docker compose`` for a stack root and probe the result."""

    def __init__(
        self,
        root: StackRoot,
        compose: ComposeProvider,
        probes: ProbeRunner,
        probe_config: ProbeConfig,
    ) -> None:
        """Bind the controller to *root* and its collaborators."""
        self.root = root
        self.compose = compose
        self.probes = probes
        self.probe_config = probe_config

    @property
    def log_hint(self) -> str:
        return f"{self.compose.docker_bin} logs --tail {LOG_TAIL_LINES} {self.compose.app_container}"

    def up(self, *, wait: bool = True) -> BringUpReport:
        """Start the stack; unreachable endpoints are reported, never raised."""
        ports = self.published_ports()
        self.compose.up()
        ps = self.compose.ps()
        health = self.check_health() if wait else HealthReport(log_hint=self.log_hint)
        for warning in health.warnings():
            _logger.warning(warning)
        return BringUpReport(ps_output=(ps.stdout or "").rstrip(), health=health, ports=ports)

    def down(self) -> bool:
        """Stop the stack; returns False when there is nothing to stop."""
        if not self.root.compose_file.exists():
            _logger.info("No compose file under %s; nothing to stop.", self.root.path)
            return False
        self.compose.down()
        return True

    def is_running(self) -> bool:
        """Return True when any stack container is running."""
        if not self.root.compose_file.exists():
            return False
        return self.compose.is_running()

    def status(self) -> StackStatus:
        """Return container states and a single probe pass."""
        if not self.root.compose_file.exists():
            return StackStatus(configured=False, services=[], health=HealthReport())
        services = self.compose.services()
        try:
            ports = self.published_ports()
        except ComposeError as exc:
            _logger.warning("Unable to read published ports: %s", exc)
            ports = []
        health = self.check_health(attempts=1, initial_delay=0.0)
        return StackStatus(configured=True, services=services, health=health, ports=ports)

    def logs(self, *, tail: int = LOG_TAIL_LINES) -> str:
        """Return the application container's recent log lines."""
        return self.compose.container_logs(tail=tail)

    def check_health(
        self,
        *,
        attempts: int | None = None,
        initial_delay: float | None = None,
        strict: bool = False,
    ) -> HealthReport:
        """Probe the endpoints; with *strict* a failure raises :class:`ConvergenceError`."""
        ports = self.ports()
        endpoints = stack_endpoints(self.probe_config.host, ports.https, ports.inform)
        results = self.probes.wait_for(
            endpoints,
            attempts=self.probe_config.attempts if attempts is None else attempts,
            interval=self.probe_config.interval,
            initial_delay=self.probe_config.initial_delay if initial_delay is None else initial_delay,
        )
        report = HealthReport(results=results, log_hint=self.log_hint)
        if strict and not report.healthy:
            failed = "; ".join(result.describe() for result in results if not result.ok)
            try:
                logs = self.logs()
            except ComposeError as exc:
                logs = f"(unable to read container logs: {exc})"
            raise ConvergenceError(f"Stack did not become reachable: {failed}", health=report, logs=logs)
        return report

    def ports(self) -> PortMap:
        """Return host ports from ``.env``, falling back to defaults."""
        defaults = PortMap()
        try:
            values = read_env_file(self.root.env_file)
        except StackEnvError:
            return defaults
        return PortMap(
            https=values.get("UNIFI_HTTPS_PORT") or defaults.https,
            inform=values.get("UNIFI_INFORM_PORT") or defaults.inform,
            stun=values.get("UNIFI_STUN_PORT") or defaults.stun,
            discovery=values.get("UNIFI_DISCOVERY_PORT") or defaults.discovery,
            guest_https=values.get("UNIFI_GUEST_HTTPS_PORT") or defaults.guest_https,
            guest_http=values.get("UNIFI_GUEST_HTTP_PORT") or defaults.guest_http,
        )

    def published_ports(self) -> list[str]:
        """Return the application's port bindings after ``.env`` interpolation."""
        self._require_compose_file()
        try:
            env = read_env_file(self.root.env_file)
        except StackEnvError as exc:
            raise ComposeError(str(exc)) from exc
        text = interpolate_env(self.root.compose_file.read_text(encoding="utf-8"), env)
        try:
            document = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise ComposeError(f"Failed to parse {self.root.compose_file}: {exc}") from exc
        service = (document.get("services") or {}).get(self.compose.app_service) or {}
        return [str(port) for port in service.get("ports") or []]

    def _require_compose_file(self) -> None:
        if not self.root.compose_file.exists():
            raise ComposeError(
                f"{self.root.compose_file} not found; run 'unifictl render' or 'unifictl install' first."
            )


__all__ = [
    "BringUpReport",
    "ConvergenceError",
    "HealthReport",
    "LOG_TAIL_LINES",
    "StackController",
    "StackStatus",
]
