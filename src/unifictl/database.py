"""Converge the application's MongoDB account to the credentials in ``.env``.

The same rules back both the first-run init script (rendered from
``scripts/init-mongo.sh.j2``) and :class:`CredentialReconciler`, which
``unifictl db reconcile`` runs against a live database: create the account
when it is absent, otherwise reset its password and, where they drifted, its
roles. An existing account is never an error and never duplicated.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Literal, Protocol

from .providers.compose import ComposeError, ComposeProvider
from .reconcile import ReconcilePlan, converge
from .stack_env import StackConfig

DEFAULT_ROLE = "dbOwner"

_logger = logging.getLogger(__name__)


class DatabaseError(RuntimeError):
    """Raised when the database cannot be queried or updated."""


@dataclass(frozen=True, order=True)
class RoleGrant:
    """A role on one logical database."""

    role: str
    db: str


@dataclass(frozen=True)
class DatabaseCredential:
    """Desired state of the application account."""

    username: str
    password: str = field(repr=False)
    auth_db: str
    roles: frozenset[RoleGrant]

    @classmethod
    def from_stack_config(cls, config: StackConfig, *, role: str = DEFAULT_ROLE) -> DatabaseCredential:
        databases = (config.mongo_dbname, config.mongo_db_stat, config.mongo_db_audit)
        return cls(
            username=config.mongo_user,
            password=config.mongo_pass,
            auth_db=config.mongo_authsource,
            roles=frozenset(RoleGrant(role=role, db=name) for name in databases),
        )


@dataclass(frozen=True)
class UserRecord:
    """An account as reported by the database."""

    username: str
    auth_db: str
    roles: frozenset[RoleGrant]


class DatabaseClient(Protocol):
    """Minimal account API used by :class:`CredentialReconciler`."""

    def get_user(self, username: str, auth_db: str) -> UserRecord | None:
        """Return the account or ``None`` when it does not exist."""

    def create_user(self, credential: DatabaseCredential) -> None:
        """Create the account described by *credential*."""

    def update_user(self, credential: DatabaseCredential, *, roles: bool) -> None:
        """Reset the password (and roles when *roles*) of an existing account."""


@dataclass(slots=True)
class CredentialAction:
    """The single change needed to converge the account."""

    kind: Literal["create-user", "update-user"]
    username: str
    description: str
    update_roles: bool = False


CredentialPlan = ReconcilePlan[CredentialAction]


def plan_credential_changes(
    target: DatabaseCredential,
    actual: UserRecord | None,
) -> CredentialPlan:
    """Return at most one action moving *actual* to *target*.

    Passwords cannot be read back, so an existing account always gets its
    password reset; roles are only rewritten when they differ.
    """
    plan: CredentialPlan = ReconcilePlan()
    if actual is None:
        plan.actions.append(
            CredentialAction(
                kind="create-user",
                username=target.username,
                description=f"Create user '{target.username}' in '{target.auth_db}'.",
                update_roles=True,
            )
        )
        return plan

    roles_differ = actual.roles != target.roles
    detail = "password and roles" if roles_differ else "password"
    plan.actions.append(
        CredentialAction(
            kind="update-user",
            username=target.username,
            description=f"Update {detail} of existing user '{target.username}'.",
            update_roles=roles_differ,
        )
    )
    if roles_differ:
        extra = sorted(actual.roles - target.roles)
        if extra:
            plan.warnings.append(
                "Removing roles not managed by unifictl: "
                + ", ".join(f"{grant.role}@{grant.db}" for grant in extra)
            )
    return plan


class CredentialReconciler:
    """Observe, diff and apply the application account."""

    def __init__(self, client: DatabaseClient, target: DatabaseCredential) -> None:
        """Bind the reconciler to a client and the desired credential."""
        self.client = client
        self.target = target

    def observe(self) -> UserRecord | None:
        return self.client.get_user(self.target.username, self.target.auth_db)

    def diff(self, actual: UserRecord | None) -> CredentialPlan:
        return plan_credential_changes(self.target, actual)

    def apply(self, plan: CredentialPlan) -> list[str]:
        for action in plan.actions:
            if action.kind == "create-user":
                self.client.create_user(self.target)
            else:
                self.client.update_user(self.target, roles=action.update_roles)
            _logger.info(action.description)
        return []

    def reconcile(self, *, dry_run: bool = False) -> CredentialPlan:
        """Converge the account in one pass."""
        return converge(self, dry_run=dry_run)


class MongoShellClient:
    """:class:`DatabaseClient` backed by ``mongosh`` inside the database container."""

    def __init__(
        self,
        compose: ComposeProvider,
        *,
        root_username: str,
        root_password: str,
        service: str | None = None,
    ) -> None:
        """Authenticate as the root account created at database initialisation."""
        self.compose = compose
        self.root_username = root_username
        self.root_password = root_password
        self.service = service or compose.db_service

    def get_user(self, username: str, auth_db: str) -> UserRecord | None:
        script = (
            f"const u = db.getSiblingDB({_js(auth_db)}).getUser({_js(username)});"
            "print(JSON.stringify(u === null ? null : {user: u.user, db: u.db, roles: u.roles}));"
        )
        output = self._eval(script)
        return parse_user_document(output, username=username, auth_db=auth_db)

    def create_user(self, credential: DatabaseCredential) -> None:
        document = {
            "user": credential.username,
            "pwd": credential.password,
            "roles": _roles_payload(credential.roles),
        }
        self._eval(f"db.getSiblingDB({_js(credential.auth_db)}).createUser({json.dumps(document)});")

    def update_user(self, credential: DatabaseCredential, *, roles: bool) -> None:
        update: dict[str, object] = {"pwd": credential.password}
        if roles:
            update["roles"] = _roles_payload(credential.roles)
        self._eval(
            f"db.getSiblingDB({_js(credential.auth_db)})"
            f".updateUser({_js(credential.username)}, {json.dumps(update)});"
        )

    def _eval(self, script: str) -> str:
        command = [
            "mongosh",
            "--quiet",
            "--username",
            self.root_username,
            "--password",
            self.root_password,
            "--authenticationDatabase",
            "admin",
            "--eval",
            script,
        ]
        try:
            result = self.compose.exec(self.service, command)
        except ComposeError as exc:
            raise DatabaseError(_redact(str(exc), self.root_password)) from exc
        return result.stdout or ""


def parse_user_document(output: str, *, username: str, auth_db: str) -> UserRecord | None:
    """Parse the JSON line printed by :meth:`MongoShellClient.get_user`."""
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        raise DatabaseError("mongosh returned no output for getUser.")
    try:
        payload = json.loads(lines[-1])
    except json.JSONDecodeError as exc:
        raise DatabaseError(f"Unexpected mongosh output: {lines[-1]!r}") from exc
    if payload is None:
        return None
    if not isinstance(payload, Mapping):
        raise DatabaseError(f"Unexpected getUser document: {payload!r}")
    return UserRecord(
        username=str(payload.get("user", username)),
        auth_db=str(payload.get("db", auth_db)),
        roles=_parse_roles(payload.get("roles") or []),
    )


def _parse_roles(raw: object) -> frozenset[RoleGrant]:
    grants: set[RoleGrant] = set()
    if isinstance(raw, Iterable) and not isinstance(raw, (str, bytes)):
        for item in raw:
            if isinstance(item, Mapping) and "role" in item and "db" in item:
                grants.add(RoleGrant(role=str(item["role"]), db=str(item["db"])))
    return frozenset(grants)


def _roles_payload(roles: Iterable[RoleGrant]) -> list[dict[str, str]]:
    return [{"role": grant.role, "db": grant.db} for grant in sorted(roles)]


def _js(value: str) -> str:
    return json.dumps(value)


def _redact(message: str, secret: str) -> str:
    return message.replace(secret, "***") if secret else message


__all__ = [
    "CredentialAction",
    "CredentialPlan",
    "CredentialReconciler",
    "DatabaseClient",
    "DatabaseCredential",
    "DatabaseError",
    "MongoShellClient",
    "RoleGrant",
    "UserRecord",
    "parse_user_document",
    "plan_credential_changes",
]
