"""Resolve the host account that owns stack data and plan docker group membership."""
from __future__ import annotations

import grp
import os
import pwd
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from ..reconcile import ReconcilePlan


class IdentityError(RuntimeError):
    """Raised when the requested host account cannot be used."""


Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


def default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    """Run *command*, raising :class:`subprocess.CalledProcessError` on failure."""
    return subprocess.run(command, check=True, capture_output=True, text=True)  # noqa: S603,S607


def privileged(command: list[str], *, use_sudo: bool) -> list[str]:
    """Prefix *command* with ``sudo`` when requested."""
    return ["sudo", *command] if use_sudo else list(command)


def needs_sudo() -> bool:
    """Return True when privileged commands must go through ``sudo``."""
    if os.geteuid() == 0:
        return False
    if shutil.which("sudo") is None:
        raise IdentityError("sudo not found and not running as root.")
    return True


@dataclass(frozen=True, slots=True)
class HostIdentity:
    """Numeric identity the containers run as."""

    user: str
    uid: int
    gid: int


def resolve_host_identity(user: str) -> HostIdentity:
    """Return the uid/gid of *user*; the account must already exist."""
    try:
        entry = pwd.getpwnam(user)
    except KeyError as exc:
        raise IdentityError(f"User '{user}' does not exist. Create it, then rerun.") from exc
    return HostIdentity(user=user, uid=entry.pw_uid, gid=entry.pw_gid)


def current_user() -> str:
    """Return the login name of the invoking user."""
    try:
        return pwd.getpwuid(os.getuid()).pw_name
    except KeyError:
        return str(os.getuid())


@dataclass(slots=True)
class GroupAction:
    """Single group membership change."""

    kind: Literal["ensure-group", "add-member"]
    description: str
    command: list[str]
    best_effort: bool = False


GroupPlan = ReconcilePlan[GroupAction]


def plan_docker_group(user: str, *, group: str = "docker", use_sudo: bool = False) -> GroupPlan:
    """Return the steps that put *user* into the container engine's group."""
    plan: GroupPlan = ReconcilePlan()
    try:
        entry = grp.getgrnam(group)
    except KeyError:
        members: list[str] = []
        gid: int | None = None
        plan.actions.append(
            GroupAction(
                kind="ensure-group",
                description=f"Create group '{group}'.",
                command=privileged(["groupadd", "-f", group], use_sudo=use_sudo),
            )
        )
    else:
        members = list(entry.gr_mem)
        gid = entry.gr_gid

    primary_gid: int | None
    try:
        primary_gid = pwd.getpwnam(user).pw_gid
    except KeyError:
        primary_gid = None
        plan.warnings.append(f"User '{user}' not found; docker group membership may fail.")

    if user in members or (gid is not None and primary_gid == gid):
        return plan

    plan.actions.append(
        GroupAction(
            kind="add-member",
            description=f"Add '{user}' to group '{group}'.",
            command=privileged(["usermod", "-aG", group, user], use_sudo=use_sudo),
            best_effort=True,
        )
    )
    plan.warnings.append(
        f"'{user}' must log out and back in before docker works without sudo."
    )
    return plan


def apply_group_plan(
    plan: GroupPlan,
    *,
    runner: Runner | None = None,
    dry_run: bool = False,
) -> list[str]:
    """Execute *plan*; best-effort failures come back as warnings."""
    if runner is None:
        runner = default_runner
    warnings: list[str] = []
    for action in plan.actions:
        if dry_run:
            continue
        try:
            runner(action.command)
        except (subprocess.CalledProcessError, OSError) as exc:
            if not action.best_effort:
                raise IdentityError(f"{action.description} failed: {_describe(exc)}") from exc
            warnings.append(f"{action.description} failed: {_describe(exc)}")
    return warnings


def _describe(exc: BaseException) -> str:
    if isinstance(exc, subprocess.CalledProcessError):
        output = (exc.stderr or exc.stdout or "").strip()
        return output or f"exit {exc.returncode}"
    return str(exc)


__all__ = [
    "GroupAction",
    "GroupPlan",
    "HostIdentity",
    "IdentityError",
    "Runner",
    "apply_group_plan",
    "current_user",
    "default_runner",
    "needs_sudo",
    "plan_docker_group",
    "privileged",
    "resolve_host_identity",
]
