"""Tests for the docker compose provider."""
from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from unifictl.layout import StackRoot
from unifictl.providers import compose as compose_module
from unifictl.providers.compose import ComposeError, ComposeProvider, interpolate_env, parse_ps_output


class RecordingRun:
    """Replacement for subprocess.run that records commands."""

    def __init__(self, *, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.calls: list[tuple[list[str], dict[str, object]]] = []

    def __call__(self, args: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        self.calls.append((list(args), kwargs))
        return subprocess.CompletedProcess(args, self.returncode, self.stdout, self.stderr)


@pytest.fixture()
def provider(tmp_path: Path) -> ComposeProvider:
    root = StackRoot(tmp_path / "unifi")
    root.path.mkdir()
    return ComposeProvider(root=root)


def test_compose_args_include_project_and_env_file(provider: ComposeProvider) -> None:
    """The env file is passed only once it exists."""
    base = provider.compose_args("ps")
    assert base == [
        "docker",
        "compose",
        "--project-directory",
        str(provider.root.path),
        "-f",
        str(provider.root.compose_file),
        "ps",
    ]

    provider.root.env_file.write_text("PUID=1\n", encoding="utf-8")
    assert provider.compose_args("up", "-d")[-4:] == ["--env-file", str(provider.root.env_file), "up", "-d"]


def test_up_runs_detached_in_root(provider: ComposeProvider, monkeypatch: pytest.MonkeyPatch) -> None:
    """up shells out to compose up -d from the stack root."""
    run = RecordingRun()
    monkeypatch.setattr(compose_module.subprocess, "run", run)

    provider.up()

    args, kwargs = run.calls[0]
    assert args[-2:] == ["up", "-d"]
    assert kwargs["cwd"] == str(provider.root.path)
    assert kwargs["check"] is False


def test_failures_raise_compose_error(provider: ComposeProvider, monkeypatch: pytest.MonkeyPatch) -> None:
    """Non-zero exits surface stderr in a ComposeError."""
    monkeypatch.setattr(compose_module.subprocess, "run", RecordingRun(returncode=1, stderr="no such service"))

    with pytest.raises(ComposeError, match=r"docker compose restart failed \(exit 1\): no such service"):
        provider.restart("unifi-network")

    # ps is informational and never raises on exit status.
    assert provider.ps().returncode == 1


def test_missing_binary_raises_compose_error(provider: ComposeProvider, monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing docker binary is reported as ComposeError."""

    def missing(*_args: object, **_kwargs: object) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError("docker")

    monkeypatch.setattr(compose_module.subprocess, "run", missing)

    with pytest.raises(ComposeError, match="docker not found"):
        provider.down()


def test_dry_run_executes_nothing(provider: ComposeProvider, monkeypatch: pytest.MonkeyPatch) -> None:
    """Dry runs return a synthetic success."""
    run = RecordingRun()
    monkeypatch.setattr(compose_module.subprocess, "run", run)

    assert provider.down(dry_run=True).returncode == 0
    assert run.calls == []


def test_container_exec_and_logs(provider: ComposeProvider, monkeypatch: pytest.MonkeyPatch) -> None:
    """docker exec and docker logs target the application container."""
    run = RecordingRun(stdout="out\n", stderr="err\n")
    monkeypatch.setattr(compose_module.subprocess, "run", run)

    provider.container_exec(["keytool", "-list"])
    logs = provider.container_logs(tail=5)

    assert run.calls[0][0] == ["docker", "exec", "unifi-network", "keytool", "-list"]
    assert run.calls[1][0] == ["docker", "logs", "--tail", "5", "unifi-network"]
    assert logs == "out\nerr\n"


def test_services_parse_json_lines(provider: ComposeProvider, monkeypatch: pytest.MonkeyPatch) -> None:
    """Both NDJSON and array output from compose ps are understood."""
    ndjson = (
        '{"Service": "unifi-db", "Name": "unifi-db", "State": "running", "Status": "Up 2 minutes"}\n'
        '{"Service": "unifi-network", "Name": "unifi-network", "State": "exited", "Status": "Exited (1)"}\n'
    )
    monkeypatch.setattr(compose_module.subprocess, "run", RecordingRun(stdout=ndjson))

    services = provider.services()

    assert [(s.service, s.running) for s in services] == [("unifi-db", True), ("unifi-network", False)]
    assert provider.is_running() is True
    assert parse_ps_output('[{"Service": "a", "State": "exited"}]')[0].service == "a"
    assert parse_ps_output("") == []
    with pytest.raises(ComposeError):
        parse_ps_output("not json")


def test_interpolate_env_follows_compose_rules() -> None:
    """Defaults, escapes and unset variables behave like compose."""
    env = {"A": "1", "EMPTY": ""}

    assert interpolate_env("${A}:${EMPTY:-x}:${EMPTY-y}:${B:-z}:$$HOME", env) == "1:x::z:$HOME"
    with pytest.raises(ComposeError, match="Variable B is not set"):
        interpolate_env("${B}", env)
