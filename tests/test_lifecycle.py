"""Tests for the stack lifecycle controller."""
from __future__ import annotations

import os
from pathlib import Path

import pytest

from unifictl.config import ComposeConfig
from unifictl.lifecycle import ConvergenceError
from unifictl.providers.compose import ComposeError
from unifictl.stack_env import PortMap, StackConfig, write_env_file
from unifictl.templates import TemplateEngine, render_stack_files


def test_up_reports_health_without_failing(stack_root, fake_compose, down_session, controller_factory) -> None:  # type: ignore[no-untyped-def]
    """Unreachable endpoints after up are warnings carrying a diagnostic hint."""
    controller = controller_factory(stack_root, fake_compose, down_session)

    report = controller.up()

    assert ("up",) in fake_compose.calls
    assert report.health.healthy is False
    assert report.ps_output.startswith("NAME")
    assert any("docker logs --tail 120 unifi-network" in warning for warning in report.warnings)


def test_up_healthy_has_no_warnings(stack_root, fake_compose, healthy_session, controller_factory) -> None:  # type: ignore[no-untyped-def]
    """Both endpoints answering means a clean report."""
    controller = controller_factory(stack_root, fake_compose, healthy_session)

    report = controller.up()

    assert report.health.healthy is True
    assert report.warnings == []
    urls = [url for url, _ in healthy_session.requests]
    assert urls == ["https://127.0.0.1:8443/", "http://127.0.0.1:8080/inform"]


def test_up_without_wait_skips_probes(stack_root, fake_compose, healthy_session, controller_factory) -> None:  # type: ignore[no-untyped-def]
    """--no-wait starts the stack without touching the network."""
    controller = controller_factory(stack_root, fake_compose, healthy_session)

    controller.up(wait=False)

    assert healthy_session.requests == []


def test_up_requires_compose_file(stack_root, fake_compose, healthy_session, controller_factory) -> None:  # type: ignore[no-untyped-def]
    """Starting before rendering is a clear error."""
    stack_root.compose_file.unlink()
    controller = controller_factory(stack_root, fake_compose, healthy_session)

    with pytest.raises(ComposeError, match="unifictl render"):
        controller.up()
    assert fake_compose.calls == []


def test_down_is_idempotent(stack_root, fake_compose, healthy_session, controller_factory) -> None:  # type: ignore[no-untyped-def]
    """down on a stopped or unrendered stack never errors."""
    controller = controller_factory(stack_root, fake_compose, healthy_session)

    assert controller.down() is True
    assert controller.down() is True
    stack_root.compose_file.unlink()
    assert controller.down() is False
    assert fake_compose.calls == [("down",), ("down",)]


def test_strict_health_raises_with_logs(stack_root, fake_compose, down_session, controller_factory) -> None:  # type: ignore[no-untyped-def]
    """Strict checks raise ConvergenceError carrying the container log tail."""
    fake_compose.logs_text = "mongo auth failed\n"
    controller = controller_factory(stack_root, fake_compose, down_session, attempts=1)

    with pytest.raises(ConvergenceError) as excinfo:
        controller.check_health(strict=True)

    assert excinfo.value.logs == "mongo auth failed\n"
    assert excinfo.value.health.healthy is False


def test_status_reports_services_and_probes(stack_root, fake_compose, healthy_session, controller_factory) -> None:  # type: ignore[no-untyped-def]
    """status probes once and lists the compose services."""
    fake_compose.running = True
    controller = controller_factory(stack_root, fake_compose, healthy_session, attempts=5)

    snapshot = controller.status()

    assert snapshot.configured is True
    assert snapshot.running is True
    assert [service.service for service in snapshot.services] == ["unifi-db", "unifi-network"]
    assert len(healthy_session.requests) == 2


def test_status_unconfigured(stack_root, fake_compose, healthy_session, controller_factory) -> None:  # type: ignore[no-untyped-def]
    """Without a compose file nothing is queried."""
    stack_root.compose_file.unlink()
    controller = controller_factory(stack_root, fake_compose, healthy_session)

    snapshot = controller.status()

    assert snapshot.configured is False
    assert fake_compose.calls == []


def test_ports_follow_env_file(stack_root, fake_compose, healthy_session, controller_factory) -> None:  # type: ignore[no-untyped-def]
    """Probe ports come from .env, with defaults when it is unreadable."""
    stack_root.env_file.write_text(
        stack_root.env_file.read_text(encoding="utf-8").replace("UNIFI_HTTPS_PORT=8443", "UNIFI_HTTPS_PORT=9443"),
        encoding="utf-8",
    )
    controller = controller_factory(stack_root, fake_compose, healthy_session)

    assert controller.ports().https == "9443"
    stack_root.env_file.unlink()
    assert controller.ports().https == "8443"


def _render_root(stack_root) -> StackConfig:  # type: ignore[no-untyped-def]
    config = StackConfig(
        puid=os.getuid(),
        pgid=os.getgid(),
        mongo_root_password="rootpw",
        mongo_pass="apppw",
        bind_ip="10.0.0.5",
        ports=PortMap(https="9443", inform="9080", stun="3479", discovery="10002", guest_https="9843", guest_http="9880"),
    )
    write_env_file(stack_root.env_file, config)
    render_stack_files(
        TemplateEngine.with_overrides(None),
        stack_root,
        ComposeConfig(),
        letsencrypt_dir=Path("/etc/letsencrypt"),
    )
    return config


def test_up_requests_the_six_configured_ports(stack_root, fake_compose, healthy_session, controller_factory) -> None:  # type: ignore[no-untyped-def]
    """Bring-up on a rendered root publishes exactly the ports from .env."""
    config = _render_root(stack_root)
    controller = controller_factory(stack_root, fake_compose, healthy_session)

    report = controller.up()

    assert report.ports == config.port_bindings()
    assert len(report.ports) == 6
    assert "10.0.0.5:3479:3478/udp" in report.ports
    assert "10.0.0.5:10002:10001/udp" in report.ports
    assert controller.status().ports == report.ports


def test_malformed_compose_file_fails_before_start(stack_root, fake_compose, healthy_session, controller_factory) -> None:  # type: ignore[no-untyped-def]
    """An unparsable compose file is reported before compose is invoked."""
    stack_root.compose_file.write_text("services: [unclosed\n", encoding="utf-8")
    controller = controller_factory(stack_root, fake_compose, healthy_session)

    with pytest.raises(ComposeError, match="Failed to parse"):
        controller.up()
    assert fake_compose.calls == []
    assert controller.status().ports == []
