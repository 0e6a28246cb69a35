"""Typer-powered command line interface for ``unifictl``.

Every command resolves the stack root, wraps its work in a structured
operation record and, when it changes anything on disk or in the running
stack, holds the stack root's advisory lock for its whole duration.
"""
from __future__ import annotations

import shutil
import sys
import textwrap
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .archive import ArchiveError, ChecksumError
from .backups import BackupEngine, BackupError
from .bootstrap.engine import (
    EngineError,
    apply_engine_plan,
    detect_architecture,
    detect_engine,
    plan_certbot_install,
    plan_engine_install,
    read_os_release,
)
from .bootstrap.filesystem import FilesystemError, ensure_stack_layout
from .bootstrap.identity import (
    IdentityError,
    apply_group_plan,
    current_user,
    needs_sudo,
    plan_docker_group,
    resolve_host_identity,
)
from .certs import CertificateDeployer, CertificateError
from .config import AppConfig, ConfigError, load_config
from .database import CredentialReconciler, DatabaseCredential, DatabaseError, MongoShellClient
from .exit_codes import ExitCode
from .layout import ARCHIVE_MANIFEST, StackRoot
from .lifecycle import BringUpReport, ConvergenceError, StackController
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .probes import ProbeRunner
from .providers.compose import ComposeError, ComposeProvider
from .restore import RestoreConvergenceError, RestoreEngine, RestoreError, RestoreMode
from .stack_env import (
    PortMap,
    StackConfig,
    StackEnvError,
    check_credential,
    load_stack_config,
    read_identity,
    write_env_file,
)
from .templates import TemplateEngine, render_stack_files

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to unifictl's YAML config file.",
)

ROOT_OPTION = typer.Option(
    None,
    "--root",
    file_okay=False,
    help="Stack root directory (defaults to stack_root from the config).",
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Show what would change without changing anything.",
)

JSON_OPTION = typer.Option(False, "--json", help="Emit results as JSON.")

YES_OPTION = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation.")

# Errors raised by library code that end a command with a red line and an exit code.
_HANDLED_ERRORS = (
    ArchiveError,
    BackupError,
    CertificateError,
    ComposeError,
    ConfigError,
    ConvergenceError,
    DatabaseError,
    EngineError,
    FilesystemError,
    IdentityError,
    LockTimeoutError,
    RestoreError,
    StackEnvError,
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        UniFi Network Application stack manager.

        Provisions, runs, backs up and restores a docker compose stack made of
        the UniFi Network Application and its MongoDB database.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    root: StackRoot
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    compose: ComposeProvider
    controller: StackController
    backups: BackupEngine
    restores: RestoreEngine
    certs: CertificateDeployer


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    root_override: Path | None = None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override
    if root_override is not None:
        overrides["stack_root"] = str(root_override)

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        err_console.print(f"[red]Invalid configuration: {exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    root = StackRoot(config.stack_root)
    locks = LockManager(config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    compose = ComposeProvider(
        root=root,
        docker_bin=config.compose.docker_bin,
        app_service=config.compose.app_service,
        db_service=config.compose.db_service,
        app_container=config.compose.app_container,
    )
    controller = StackController(
        root,
        compose,
        ProbeRunner(timeout=config.probes.timeout),
        config.probes,
    )
    runtime = RuntimeContext(
        config=config,
        root=root,
        locks=locks,
        logger=logger,
        templates=templates,
        compose=compose,
        controller=controller,
        backups=BackupEngine(root, controller, prefix=config.backups.prefix),
        restores=RestoreEngine(root, controller),
        certs=CertificateDeployer(root, compose, config.tls),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the unifictl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    root: Path | None = ROOT_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"unifictl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, root, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# Error helpers ---------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _exit_code_for(exc: BaseException) -> ExitCode:
    """Map a library exception (or the error it wraps) to a CLI exit code."""
    if isinstance(exc, (LockTimeoutError, EngineError)):
        return ExitCode.ENVIRONMENT
    if isinstance(exc, ChecksumError):
        return ExitCode.VALIDATION
    if isinstance(exc, (ComposeError, DatabaseError, ConvergenceError, RestoreConvergenceError, ArchiveError)):
        return ExitCode.PROVIDER
    cause = exc.__cause__
    if isinstance(cause, (ComposeError, ArchiveError)) and not isinstance(cause, ChecksumError):
        return ExitCode.PROVIDER
    return ExitCode.VALIDATION


@contextmanager
def _handle_errors(op: OperationScope, action: str) -> Iterator[None]:
    """Turn library errors raised inside the block into a command error."""
    try:
        yield
    except _HANDLED_ERRORS as exc:
        _command_error(op, f"{action}: {exc}", rc=_exit_code_for(exc))


@contextmanager
def _stack_lock(runtime: RuntimeContext, op: OperationScope) -> Iterator[None]:
    with runtime.locks.stack_lock(runtime.root.path) as lock:
        op.set_lock_wait_ms(lock.wait_ms)
        yield


def _print_warnings(warnings: Sequence[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]{warning}[/yellow]")


def _finish(
    op: OperationScope,
    message: str,
    *,
    warnings: Sequence[str] = (),
    changed: int = 0,
    backups: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> None:
    """Record success, or warning when *warnings* is non-empty."""
    if warnings:
        op.warning(message, warnings=list(warnings), changed=changed, backups=backups, context=context)
    else:
        op.success(message, changed=changed, backups=backups, context=context)


def _confirm_destructive(
    runtime: RuntimeContext,
    op: OperationScope,
    question: str,
    *,
    assume_yes: bool,
    delay: float | None = None,
) -> None:
    """Ask before a destructive step, or wait out the delay window with ``--yes``."""
    if assume_yes:
        wait = runtime.config.restore.delay_seconds if delay is None else delay
        if wait > 0:
            console.print(f"Ctrl+C to abort. Continuing in {wait:g} seconds...")
            time.sleep(wait)
        return
    if not typer.confirm(question, default=False):
        console.print("Cancelled.")
        op.warning("Cancelled by user.", warnings=["cancelled"])
        raise typer.Exit(code=1)


# Shared workflows ------------------------------------------------------------
def _write_configuration(
    runtime: RuntimeContext,
    op: OperationScope,
    *,
    user: str,
    bind_ip: str,
    tz: str,
    ports: PortMap,
    keep_credentials: bool,
    mongo_root_password: str | None = None,
    mongo_pass: str | None = None,
) -> tuple[StackConfig, list[str]]:
    if mongo_root_password:
        check_credential("Mongo root password", mongo_root_password)
    if mongo_pass:
        check_credential("Mongo app user password", mongo_pass)
    identity = resolve_host_identity(user)
    warnings: list[str] = []
    overrides: dict[str, object] = {"bind_ip": bind_ip, "tz": tz, "ports": ports}
    if mongo_root_password:
        overrides["mongo_root_password"] = mongo_root_password
    if mongo_pass:
        overrides["mongo_pass"] = mongo_pass
    config = StackConfig.generate(puid=identity.uid, pgid=identity.gid, **overrides)

    env_file = runtime.root.env_file
    if env_file.exists():
        if keep_credentials:
            config = config.with_credentials_from(load_stack_config(env_file))
            op.add_step("configure.credentials", detail="kept existing credentials")
        elif runtime.root.mongo_data.is_dir() and any(runtime.root.mongo_data.iterdir()):
            warnings.append(
                "MongoDB is already initialised; run 'unifictl db reconcile' after "
                "'unifictl up' so the database accepts the new credentials."
            )
    write_env_file(env_file, config)
    op.add_step("configure.env", detail=str(env_file))
    console.print(f"Wrote {env_file}")
    console.print(f"  Stack user: {identity.user} (PUID={identity.uid}, PGID={identity.gid})")
    console.print(f"  Bind IP:    {config.bind_ip}")
    return config, warnings


def _ensure_layout(
    runtime: RuntimeContext,
    op: OperationScope,
    *,
    puid: int | None = None,
    pgid: int | None = None,
    dry_run: bool = False,
) -> tuple[int, list[str]]:
    if puid is None or pgid is None:
        identity = read_identity(runtime.root.env_file)
        if identity is not None:
            puid = identity[0] if puid is None else puid
            pgid = identity[1] if pgid is None else pgid
    plan = ensure_stack_layout(runtime.root, puid, pgid, dry_run=dry_run)
    for action in plan.actions:
        prefix = "[yellow]Would[/yellow] " if dry_run else ""
        if action.kind != "chown":
            console.print(f"{prefix}{action.description}")
    chowns = sum(1 for action in plan.actions if action.kind == "chown")
    if chowns:
        verb = "Would change" if dry_run else "Changed"
        console.print(f"{verb} ownership of {chowns} path(s) to {puid}:{pgid}.")
    op.add_step("layout.apply", detail=f"{len(plan.actions)} action(s)")
    return len(plan.actions), list(plan.warnings)


def _render_files(runtime: RuntimeContext, op: OperationScope) -> int:
    rendered = render_stack_files(
        runtime.templates,
        runtime.root,
        runtime.config.compose,
        letsencrypt_dir=runtime.config.tls.live_dir.parent,
    )
    changed = 0
    for item in rendered:
        status = "updated" if item.changed else "unchanged"
        console.print(f"{item.path}: {status}")
        changed += int(item.changed)
    op.add_step("render.files", detail=f"{changed} changed")
    return changed


def _report_bring_up(report: BringUpReport) -> None:
    if report.ps_output:
        console.print(report.ps_output)
    if report.ports:
        console.print(f"Published ports: {', '.join(report.ports)}")
    for result in report.health.results:
        colour = "green" if result.ok else "yellow"
        console.print(f"[{colour}]{result.describe()}[/{colour}]")
    _print_warnings(report.warnings)


def _prompt_ports(defaults: PortMap) -> PortMap:
    return PortMap(
        https=typer.prompt("UniFi HTTPS port", default=defaults.https),
        inform=typer.prompt("UniFi Inform port", default=defaults.inform),
        stun=typer.prompt("UniFi STUN port (UDP)", default=defaults.stun),
        discovery=typer.prompt("UniFi Discovery port (UDP)", default=defaults.discovery),
        guest_https=typer.prompt("Guest portal HTTPS (optional)", default=defaults.guest_https),
        guest_http=typer.prompt("Guest portal HTTP (optional)", default=defaults.guest_http),
    )


def _ensure_engine(runtime: RuntimeContext, op: OperationScope, *, assume_yes: bool, dry_run: bool) -> list[str]:
    status = detect_engine(runtime.config.compose.docker_bin)
    if status.ready:
        console.print(f"Docker is installed and running (server {status.server_version or 'unknown'}).")
        op.add_step("engine.detect", detail="ready")
        return []
    console.print(f"[yellow]Docker is not ready: {status.detail}[/yellow]")
    use_sudo = needs_sudo()
    plan = plan_engine_install(
        read_os_release(),
        architecture=detect_architecture(),
        use_sudo=use_sudo,
    )
    for action in plan.actions:
        console.print(f"  - {action.description}")
    if dry_run:
        op.add_step("engine.plan", status="skipped", detail=f"{len(plan.actions)} action(s)")
        return list(plan.warnings)
    if not assume_yes and not typer.confirm("Install Docker Engine and the compose plugin now?", default=True):
        raise EngineError("Docker is required; install it manually and rerun.")
    warnings = apply_engine_plan(plan)
    op.add_step("engine.install", detail=f"{len(plan.actions)} action(s)")
    return list(plan.warnings) + warnings


def _ensure_docker_group(op: OperationScope, user: str, *, dry_run: bool) -> list[str]:
    plan = plan_docker_group(user, use_sudo=needs_sudo())
    for action in plan.actions:
        console.print(f"  - {action.description}")
    warnings = apply_group_plan(plan, dry_run=dry_run)
    op.add_step("engine.group", detail=f"{len(plan.actions)} action(s)")
    return list(plan.warnings) + warnings


# Commands --------------------------------------------------------------------
@app.command()
def install(
    ctx: typer.Context,
    user: str | None = typer.Option(None, "--user", help="UNIX user that will own UniFi data (must exist)."),
    bind_ip: str | None = typer.Option(None, "--bind-ip", help="Bind services to this IP."),
    tz: str | None = typer.Option(None, "--tz", help="Timezone for the containers."),
    certbot: bool | None = typer.Option(
        None,
        "--certbot/--no-certbot",
        help="Install certbot via snap (prompted when omitted).",
    ),
    skip_engine: bool = typer.Option(False, "--skip-engine", help="Do not check or install Docker."),
    assume_yes: bool = YES_OPTION,
) -> None:
    """Install Docker if needed, configure the stack and start it."""
    runtime = _get_runtime(ctx)
    interactive = not assume_yes
    console.print("[bold]UniFi Controller Stack Installer[/bold]")
    console.print(f"Stack root: {runtime.root.path}")

    with runtime.logger.operation(
        "install",
        args={"user": user, "bind_ip": bind_ip, "tz": tz, "certbot": certbot, "yes": assume_yes},
        target={"kind": "stack", "root": runtime.root.path},
    ) as op, _handle_errors(op, "Install failed"), _stack_lock(runtime, op):
        warnings: list[str] = []
        if not skip_engine:
            warnings.extend(_ensure_engine(runtime, op, assume_yes=assume_yes, dry_run=False))
            warnings.extend(_ensure_docker_group(op, current_user(), dry_run=False))

        defaults = StackConfig(puid=0, pgid=0, mongo_root_password="", mongo_pass="")
        keep_credentials = runtime.root.env_file.exists()
        if keep_credentials and interactive:
            keep_credentials = typer.confirm("Keep the MongoDB credentials from the existing .env?", default=True)
        if interactive:
            user = user or typer.prompt("UNIX user that will own UniFi data (must exist)", default="unifi")
            bind_ip = bind_ip or typer.prompt(
                "Bind services to IP (0.0.0.0 = all interfaces)", default=defaults.bind_ip
            )
            tz = tz or typer.prompt("Timezone", default=defaults.tz)
            ports = _prompt_ports(defaults.ports)
            root_password = app_password = None
            if not keep_credentials and not typer.confirm("Auto-generate Mongo passwords? (recommended)", default=True):
                root_password = typer.prompt("Mongo ROOT password (init only)", hide_input=True)
                app_password = typer.prompt("Mongo app user password", hide_input=True)
        else:
            ports = defaults.ports
            root_password = app_password = None

        stack, config_warnings = _write_configuration(
            runtime,
            op,
            user=user or "unifi",
            bind_ip=bind_ip or defaults.bind_ip,
            tz=tz or defaults.tz,
            ports=ports,
            keep_credentials=keep_credentials,
            mongo_root_password=root_password,
            mongo_pass=app_password,
        )
        warnings.extend(config_warnings)

        _, layout_warnings = _ensure_layout(runtime, op, puid=stack.puid, pgid=stack.pgid)
        warnings.extend(layout_warnings)
        _render_files(runtime, op)

        want_certbot = certbot
        if want_certbot is None:
            want_certbot = interactive and typer.confirm("Install certbot via snap now?", default=False)
        if want_certbot:
            plan = plan_certbot_install(use_sudo=needs_sudo())
            warnings.extend(apply_engine_plan(plan))
            warnings.extend(plan.warnings)
            op.add_step("certbot.install")
        else:
            console.print("Skipping certbot.")

        console.print("Starting stack...")
        report = runtime.controller.up()
        _report_bring_up(report)
        warnings.extend(report.warnings)

        console.print("[green]Done.[/green]")
        console.print(f"Open:   https://<server-ip>:{stack.ports.https}")
        console.print(f"Inform: http://<server-ip>:{stack.ports.inform}/inform")
        _print_warnings([w for w in warnings if w not in report.warnings])
        _finish(op, "Stack installed.", warnings=warnings, changed=1)


@app.command()
def configure(
    ctx: typer.Context,
    user: str = typer.Option("unifi", "--user", help="UNIX user that will own UniFi data (must exist)."),
    bind_ip: str = typer.Option("0.0.0.0", "--bind-ip", help="Bind services to this IP."),  # noqa: S104
    tz: str = typer.Option("America/Chicago", "--tz", help="Timezone for the containers."),
    https_port: str = typer.Option("8443", "--https-port"),
    inform_port: str = typer.Option("8080", "--inform-port"),
    stun_port: str = typer.Option("3478", "--stun-port"),
    discovery_port: str = typer.Option("10001", "--discovery-port"),
    guest_https_port: str = typer.Option("8843", "--guest-https-port"),
    guest_http_port: str = typer.Option("8880", "--guest-http-port"),
    keep_credentials: bool = typer.Option(
        False,
        "--keep-credentials",
        help="Reuse the MongoDB passwords from the existing .env.",
    ),
    assume_yes: bool = YES_OPTION,
) -> None:
    """Write the stack's .env file."""
    runtime = _get_runtime(ctx)
    ports = PortMap(
        https=https_port,
        inform=inform_port,
        stun=stun_port,
        discovery=discovery_port,
        guest_https=guest_https_port,
        guest_http=guest_http_port,
    )
    with runtime.logger.operation(
        "configure",
        args={"user": user, "bind_ip": bind_ip, "tz": tz, "keep_credentials": keep_credentials},
        target={"kind": "env", "path": runtime.root.env_file},
    ) as op, _handle_errors(op, "Configuration failed"), _stack_lock(runtime, op):
        if runtime.root.env_file.exists() and not keep_credentials:
            console.print(f"[yellow]{runtime.root.env_file} exists; new MongoDB passwords will be generated.[/yellow]")
            _confirm_destructive(runtime, op, "Regenerate the MongoDB credentials?", assume_yes=assume_yes)
        _, warnings = _write_configuration(
            runtime,
            op,
            user=user,
            bind_ip=bind_ip,
            tz=tz,
            ports=ports,
            keep_credentials=keep_credentials,
        )
        _print_warnings(warnings)
        _finish(op, "Configuration written.", warnings=warnings, changed=1)


@app.command()
def layout(
    ctx: typer.Context,
    puid: int | None = typer.Option(None, "--puid", help="Owner uid (defaults to PUID in .env)."),
    pgid: int | None = typer.Option(None, "--pgid", help="Owner gid (defaults to PGID in .env)."),
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Create the stack directories and fix their ownership."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "layout",
        args={"puid": puid, "pgid": pgid, "dry_run": dry_run},
        target={"kind": "stack", "root": runtime.root.path},
    ) as op, _handle_errors(op, "Layout failed"), _stack_lock(runtime, op):
        changed, warnings = _ensure_layout(runtime, op, puid=puid, pgid=pgid, dry_run=dry_run)
        _print_warnings(warnings)
        if dry_run:
            console.print(f"[yellow]Dry run[/yellow]: {changed} change(s) planned.")
            _finish(op, "Dry run complete.", warnings=warnings)
            return
        if not changed:
            console.print("Layout already up to date.")
        _finish(op, "Layout ensured.", warnings=warnings, changed=changed)


@app.command()
def render(ctx: typer.Context) -> None:
    """Render docker-compose.yml and the database init script."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "render",
        target={"kind": "stack", "root": runtime.root.path},
    ) as op, _handle_errors(op, "Render failed"), _stack_lock(runtime, op):
        try:
            changed = _render_files(runtime, op)
        except OSError as exc:
            _command_error(op, f"Render failed: {exc}", rc=ExitCode.VALIDATION)
        op.success("Stack files rendered.", changed=changed)


@app.command()
def up(
    ctx: typer.Context,
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Probe the endpoints after starting."),
) -> None:
    """Start the stack and check that it answers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "up",
        args={"wait": wait},
        target={"kind": "stack", "root": runtime.root.path},
    ) as op, _handle_errors(op, "Start failed"), _stack_lock(runtime, op):
        report = runtime.controller.up(wait=wait)
        _report_bring_up(report)
        _finish(op, "Stack started.", warnings=report.warnings, changed=1)


@app.command()
def down(ctx: typer.Context) -> None:
    """Stop the stack."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "down",
        target={"kind": "stack", "root": runtime.root.path},
    ) as op, _handle_errors(op, "Stop failed"), _stack_lock(runtime, op):
        stopped = runtime.controller.down()
        if stopped:
            console.print("Stack stopped.")
        else:
            console.print("No compose file found; nothing to stop.")
        op.success("Stack stopped." if stopped else "Nothing to stop.", changed=int(stopped))


@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show container states and endpoint reachability."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "stack", "root": runtime.root.path},
    ) as op, _handle_errors(op, "Status failed"):
        snapshot = runtime.controller.status()
        payload = {
            "root": str(runtime.root.path),
            "configured": snapshot.configured,
            "running": snapshot.running,
            "services": [service.to_dict() for service in snapshot.services],
            "ports": list(snapshot.ports),
            "endpoints": [result.to_dict() for result in snapshot.health.results],
        }
        if json_output:
            console.print_json(data=payload)
        elif not snapshot.configured:
            console.print(f"No compose file under {runtime.root.path}; run 'unifictl install'.")
        else:
            table = Table(title=f"Stack {runtime.root.path}")
            table.add_column("Service")
            table.add_column("Container")
            table.add_column("State")
            table.add_column("Status")
            for service in snapshot.services:
                table.add_row(service.service, service.container, service.state, service.status)
            console.print(table)
            if snapshot.ports:
                console.print(f"Published ports: {', '.join(snapshot.ports)}")
            for result in snapshot.health.results:
                colour = "green" if result.ok else "yellow"
                console.print(f"[{colour}]{result.describe()}[/{colour}]")
        op.success("Reported stack status.", context=payload)


@app.command()
def logs(
    ctx: typer.Context,
    tail: int = typer.Option(120, "--tail", min=1, help="Number of log lines to show."),
) -> None:
    """Show the application container's recent logs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logs",
        args={"tail": tail},
        target={"kind": "container", "name": runtime.config.compose.app_container},
    ) as op, _handle_errors(op, "Logs failed"):
        output = runtime.controller.logs(tail=tail)
        console.print(output.rstrip(), markup=False, highlight=False)
        op.success("Displayed container logs.")


backup_app = typer.Typer(help="Create, list and verify stack backups.")
cert_app = typer.Typer(help="Deploy TLS certificates into the controller.")
db_app = typer.Typer(help="Manage the application's MongoDB account.")
engine_app = typer.Typer(help="Check and install the container engine.")

app.add_typer(backup_app, name="backup")
app.add_typer(cert_app, name="cert")
app.add_typer(db_app, name="db")
app.add_typer(engine_app, name="engine")


@backup_app.command("create")
def backup_create(
    ctx: typer.Context,
    stop: bool | None = typer.Option(
        None,
        "--stop/--no-stop",
        help="Stop the stack while archiving (default from config).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create a backup archive of the stack root."""
    runtime = _get_runtime(ctx)
    stop_stack = runtime.config.backups.stop_stack if stop is None else stop
    with runtime.logger.operation(
        "backup create",
        args={"stop": stop_stack, "json": json_output},
        target={"kind": "backup", "root": runtime.root.path},
    ) as op, _handle_errors(op, "Failed to create backup"), _stack_lock(runtime, op):
        result = runtime.backups.create(stop_stack=stop_stack)
        op.add_step("backup.archive", detail=str(result.archive))
        if json_output:
            console.print_json(data=result.to_dict())
        else:
            console.print(f"[green]Created backup {result.archive.name}.[/green]")
            console.print(f"Archive: {result.archive}")
            console.print(f"Checksum (sha256): {result.checksum}")
            _print_warnings(result.warnings)
        _finish(
            op,
            "Backup created.",
            warnings=result.warnings,
            changed=2,
            backups=[result.archive.name],
            context=result.to_dict(),
        )


@backup_app.command("list")
def backup_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List archives under backups/."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backup", "root": runtime.root.path},
    ) as op, _handle_errors(op, "Failed to list backups"):
        entries = runtime.backups.list_archives()
        payload = {"backups": [entry.to_dict() for entry in entries]}
        if json_output:
            console.print_json(data=payload)
        elif not entries:
            console.print("No backups found.")
        else:
            table = Table(title="Backups")
            table.add_column("Archive")
            table.add_column("Created")
            table.add_column("Size")
            table.add_column("Checksum")
            for entry in entries:
                info = entry.to_dict()
                table.add_row(
                    entry.archive.name,
                    str(info["created_at"] or "-"),
                    f"{entry.size} B",
                    str(info["checksum"]),
                )
            console.print(table)
        op.success("Listed backups.", context=payload)


@backup_app.command("verify")
def backup_verify(
    ctx: typer.Context,
    archive: Path = typer.Argument(..., help="Archive to verify."),
) -> None:
    """Re-check an archive against its .sha256 sidecar."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup verify",
        args={"archive": archive},
        target={"kind": "backup", "archive": archive},
    ) as op, _handle_errors(op, "Backup verification failed"):
        digest = runtime.backups.verify_archive(archive)
        console.print(f"[green]{archive.name}: OK ({digest})[/green]")
        op.success("Backup verified.", context={"archive": archive, "sha256": digest})


@app.command()
def restore(
    ctx: typer.Context,
    archive: Path = typer.Argument(..., help="Backup archive (.tar.gz) to restore."),
    mode: RestoreMode = typer.Option(
        RestoreMode.STAGING,
        "--mode",
        case_sensitive=False,
        help="staging extracts into restores/<timestamp>/; inplace replaces the live stack.",
    ),
    assume_yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt; an in-place restore still waits out the delay window.",
    ),
    delay: float | None = typer.Option(
        None,
        "--delay",
        min=0.0,
        help="Seconds to wait before an unattended in-place restore (default from config).",
    ),
) -> None:
    """Restore a backup archive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restore",
        args={"archive": archive, "mode": mode.value, "yes": assume_yes},
        target={"kind": "stack", "root": runtime.root.path},
    ) as op, _handle_errors(op, "Restore failed"):
        console.print(f"Restore mode: {mode.value}")
        console.print(f"Backup: {archive}")
        if mode is RestoreMode.INPLACE:
            console.print(f"[bold red]Restoring IN PLACE into {runtime.root.path}[/bold red]")
            console.print(f"Overwrites: {' '.join(ARCHIVE_MANIFEST)}")
            if not archive.is_file():
                _command_error(op, f"Restore failed: backup archive {archive} not found.")
            _confirm_destructive(
                runtime,
                op,
                "Continue with the in-place restore?",
                assume_yes=assume_yes,
                delay=delay,
            )

        with _stack_lock(runtime, op):
            try:
                result = runtime.restores.restore(archive, mode)
            except RestoreConvergenceError as exc:
                err_console.print(f"[red]Restore failed: {exc}[/red]")
                if exc.safety_dir is not None:
                    err_console.print(f"Previous state kept in {exc.safety_dir}")
                if exc.logs:
                    err_console.print(exc.logs.rstrip(), markup=False, highlight=False)
                op.error(
                    "Restored stack did not become reachable.",
                    errors=[str(exc)],
                    rc=ExitCode.PROVIDER,
                    context={"safety_dir": exc.safety_dir},
                )
                raise typer.Exit(code=ExitCode.PROVIDER) from exc

        op.add_step("restore.verify", status="success" if result.verified else "skipped")
        op.add_step("restore.extract", detail=str(result.target))
        _print_warnings(result.warnings)
        if result.mode is RestoreMode.STAGING:
            console.print("[green]Staging restore complete.[/green]")
            console.print("Run it with:")
            for step in result.next_steps:
                console.print(f"  {step}")
        else:
            console.print("[green]Restore complete and validated.[/green]")
            console.print(f"Previous state kept in {result.safety_dir}")
        _finish(op, "Restore complete.", warnings=result.warnings, changed=1, context=result.to_dict())


@cert_app.command("deploy")
def cert_deploy(
    ctx: typer.Context,
    domain: str | None = typer.Option(
        None,
        "--domain",
        envvar="DOMAIN",
        help="Domain under the Let's Encrypt live directory.",
    ),
    lineage: Path | None = typer.Option(
        None,
        "--lineage",
        envvar="RENEWED_LINEAGE",
        help="certbot lineage directory (set by certbot for deploy hooks).",
    ),
    fullchain: Path | None = typer.Option(None, "--fullchain", help="Explicit fullchain.pem path."),
    privkey: Path | None = typer.Option(None, "--privkey", help="Explicit privkey.pem path."),
    restart: bool = typer.Option(True, "--restart/--no-restart", help="Restart the application afterwards."),
    from_hook: bool = typer.Option(
        False,
        "--from-hook",
        help="Renewal hook mode: report failures but always exit 0.",
    ),
) -> None:
    """Import a certificate into the controller's keystore."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cert deploy",
        args={
            "domain": domain,
            "lineage": lineage,
            "fullchain": fullchain,
            "privkey": privkey,
            "restart": restart,
            "from_hook": from_hook,
        },
        target={"kind": "certificate", "root": runtime.root.path},
    ) as op:
        if from_hook:
            try:
                source = runtime.certs.resolve_source(
                    domain=domain, lineage=lineage, fullchain=fullchain, privkey=privkey
                )
                with _stack_lock(runtime, op):
                    outcome = runtime.certs.deploy_best_effort(source)
            except (CertificateError, LockTimeoutError) as exc:
                err_console.print(f"[red]Certificate deployment skipped: {exc}[/red]")
                op.warning("Certificate deployment skipped.", warnings=[str(exc)])
                return
            deployed = outcome.result
            if not outcome.ok or deployed is None:
                err_console.print(f"[red]Certificate deployment failed: {outcome.error}[/red]")
                op.warning("Certificate deployment failed.", warnings=[outcome.error or "unknown"])
                return
            console.print(f"[green]Deployed certificate for {deployed.source.domain}.[/green]")
            op.success("Certificate deployed.", changed=1, context=deployed.to_dict())
            return

        with _handle_errors(op, "Certificate deployment failed"), _stack_lock(runtime, op):
            source = runtime.certs.resolve_source(
                domain=domain, lineage=lineage, fullchain=fullchain, privkey=privkey
            )
            console.print(f"Copying certs from {source.fullchain.parent} -> {runtime.root.certs_dir}")
            result = runtime.certs.deploy(source, restart=restart)
            _print_warnings(result.report.warnings)
            console.print(f"Built {result.p12_path} and imported it as '{runtime.config.tls.alias}'.")
            if result.restarted:
                console.print(f"Restarted {runtime.config.compose.app_service}.")
            console.print(
                f"[green]Certificate valid until {result.report.not_valid_after.isoformat()} "
                f"({result.report.days_remaining} day(s)).[/green]"
            )
            _finish(
                op,
                "Certificate deployed.",
                warnings=result.report.warnings,
                changed=1,
                context=result.to_dict(),
            )


@cert_app.command("install-hook")
def cert_install_hook(
    ctx: typer.Context,
    unifictl_bin: str | None = typer.Option(
        None,
        "--unifictl-bin",
        help="Path of the unifictl executable the hook should call.",
    ),
) -> None:
    """Install the certbot deploy hook that re-imports renewed certificates."""
    runtime = _get_runtime(ctx)
    binary = unifictl_bin or shutil.which("unifictl") or sys.argv[0]
    with runtime.logger.operation(
        "cert install-hook",
        args={"unifictl_bin": binary},
        target={"kind": "hook", "path": runtime.config.tls.hook_path},
    ) as op, _handle_errors(op, "Hook installation failed"):
        changed = runtime.certs.install_renewal_hook(runtime.templates, unifictl_bin=binary)
        state = "installed" if changed else "already up to date"
        console.print(f"Renewal hook {runtime.config.tls.hook_path} {state}.")
        op.success("Renewal hook installed.", changed=int(changed))


@db_app.command("reconcile")
def db_reconcile(ctx: typer.Context, dry_run: bool = DRY_RUN_OPTION) -> None:
    """Create or update the application's MongoDB user from .env."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "db reconcile",
        args={"dry_run": dry_run},
        target={"kind": "database", "service": runtime.config.compose.db_service},
    ) as op, _handle_errors(op, "Database reconcile failed"), _stack_lock(runtime, op):
        stack = load_stack_config(runtime.root.env_file)
        client = MongoShellClient(
            runtime.compose,
            root_username=stack.mongo_root_username,
            root_password=stack.mongo_root_password,
        )
        reconciler = CredentialReconciler(client, DatabaseCredential.from_stack_config(stack))
        plan = reconciler.reconcile(dry_run=dry_run)
        prefix = "[yellow]Would[/yellow] " if dry_run else ""
        for action in plan.actions:
            console.print(f"{prefix}{action.description}")
            op.add_step(f"db.{action.kind}", status="skipped" if dry_run else "success")
        _print_warnings(plan.warnings)
        message = "Dry run complete." if dry_run else "Database user reconciled."
        _finish(op, message, warnings=plan.warnings, changed=0 if dry_run else len(plan.actions))


@engine_app.command("ensure")
def engine_ensure(
    ctx: typer.Context,
    user: str | None = typer.Option(
        None,
        "--user",
        help="Account to add to the docker group (defaults to the invoking user).",
    ),
    assume_yes: bool = YES_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Make sure Docker Engine and the compose plugin are installed and running."""
    runtime = _get_runtime(ctx)
    member = user or current_user()
    with runtime.logger.operation(
        "engine ensure",
        args={"user": member, "yes": assume_yes, "dry_run": dry_run},
        target={"kind": "engine", "docker_bin": runtime.config.compose.docker_bin},
    ) as op, _handle_errors(op, "Engine setup failed"):
        warnings = _ensure_engine(runtime, op, assume_yes=assume_yes, dry_run=dry_run)
        warnings.extend(_ensure_docker_group(op, member, dry_run=dry_run))
        _print_warnings(warnings)
        _finish(op, "Dry run complete." if dry_run else "Engine ready.", warnings=warnings)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
