"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest
import requests

from unifictl.config import ProbeConfig
from unifictl.layout import StackRoot
from unifictl.lifecycle import StackController
from unifictl.probes import ProbeRunner
from unifictl.providers.compose import ComposeError, ServiceState
from unifictl.stack_env import StackConfig, write_env_file


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def _completed(args: Sequence[str], stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(list(args), returncode=0, stdout=stdout, stderr=stderr)


@dataclass
class FakeCompose:
    """In-memory stand-in for :class:`unifictl.providers.compose.ComposeProvider`."""

    root: StackRoot
    docker_bin: str = "docker"
    app_service: str = "unifi-network"
    db_service: str = "unifi-db"
    app_container: str = "unifi-network"
    running: bool = False
    calls: list[tuple[str, ...]] = field(default_factory=list)
    fail: set[str] = field(default_factory=set)
    logs_text: str = "server started\n"
    exec_output: str = ""

    def _record(self, *call: str) -> None:
        self.calls.append(call)
        if call[0] in self.fail:
            raise ComposeError(f"docker compose {call[0]} failed (exit 1): boom")

    def up(self, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        self._record("up")
        self.running = True
        return _completed(["up"])

    def down(self, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        self._record("down")
        self.running = False
        return _completed(["down"])

    def restart(self, service: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        self._record("restart", service)
        return _completed(["restart", service])

    def ps(self) -> subprocess.CompletedProcess[str]:
        self.calls.append(("ps",))
        return _completed(["ps"], stdout="NAME  STATE\nunifi-network  running\n")

    def services(self) -> list[ServiceState]:
        self._record("services")
        state = "running" if self.running else "exited"
        return [
            ServiceState(service=self.db_service, container=self.db_service, state=state),
            ServiceState(service=self.app_service, container=self.app_container, state=state),
        ]

    def is_running(self) -> bool:
        self._record("is_running")
        return self.running

    def exec(
        self,
        service: str,
        command: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        self._record("exec", service, *command)
        return _completed(["exec"], stdout=self.exec_output)

    def container_exec(
        self,
        command: Sequence[str],
        *,
        container: str | None = None,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        self._record("container_exec", *command)
        return _completed(["exec"])

    def container_logs(self, *, tail: int = 120, container: str | None = None) -> str:
        self.calls.append(("logs", str(tail)))
        return self.logs_text


class FakeResponse:
    """Minimal response carrying only a status code."""

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


class FakeSession:
    """Map URLs to status codes or exceptions for :class:`ProbeRunner`."""

    def __init__(self, responses: dict[str, int | Exception] | None = None, default: int | Exception = 200) -> None:
        self.responses = dict(responses or {})
        self.default = default
        self.requests: list[tuple[str, dict[str, object]]] = []

    def get(self, url: str, **kwargs: object) -> FakeResponse:
        self.requests.append((url, kwargs))
        outcome = self.responses.get(url, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(outcome)


@pytest.fixture()
def stack_root(tmp_path: Path) -> StackRoot:
    """Return a populated stack root with a compose file, .env and data trees."""
    root = StackRoot(tmp_path / "unifi")
    root.path.mkdir()
    write_env_file(
        root.env_file,
        StackConfig(puid=os.getuid(), pgid=os.getgid(), mongo_root_password="rootpw", mongo_pass="apppw"),
    )
    root.compose_file.write_text("services: {}\n", encoding="utf-8")
    root.scripts_dir.mkdir()
    (root.scripts_dir / "init-mongo.sh").write_text("#!/bin/bash\n", encoding="utf-8")
    (root.unifi_data / "data").mkdir(parents=True)
    (root.unifi_data / "data" / "system.properties").write_text("is_default=false\n", encoding="utf-8")
    root.mongo_data.mkdir()
    (root.mongo_data / "WiredTiger").write_text("wt\n", encoding="utf-8")
    return root


@pytest.fixture()
def fake_compose(stack_root: StackRoot) -> FakeCompose:
    """Return a fake compose provider bound to :func:`stack_root`."""
    return FakeCompose(root=stack_root)


@pytest.fixture()
def healthy_session() -> FakeSession:
    """Return a session where every endpoint answers 200."""
    return FakeSession()


@pytest.fixture()
def down_session() -> FakeSession:
    """Return a session where every request is refused."""
    return FakeSession(default=requests.ConnectionError("refused"))


def make_controller(
    root: StackRoot,
    compose: FakeCompose,
    session: FakeSession,
    *,
    attempts: int = 2,
) -> StackController:
    """Build a controller that never sleeps."""
    probes = ProbeRunner(session=session, timeout=1.0, sleep=lambda _seconds: None)  # type: ignore[arg-type]
    config = ProbeConfig(attempts=attempts, interval=0.0, initial_delay=0.0)
    return StackController(root, compose, probes, config)  # type: ignore[arg-type]


@pytest.fixture()
def controller_factory():  # type: ignore[no-untyped-def]
    """Return :func:`make_controller` for tests that need custom sessions."""
    return make_controller


@pytest.fixture()
def session_factory():  # type: ignore[no-untyped-def]
    """Return :class:`FakeSession` so tests can script endpoint answers."""
    return FakeSession
