"""Jinja2 rendering for the compose file, init scripts and renewal hooks."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, PackageLoader, StrictUndefined

from ..config import ComposeConfig
from ..layout import MONGO_DATA_DIR, SCRIPTS_DIR, UNIFI_DATA_DIR, StackRoot
from ..stack_env import PORT_BINDINGS, StackConfig

COMPOSE_TEMPLATE = "compose/docker-compose.yml.j2"
INIT_SCRIPT_TEMPLATE = "scripts/init-mongo.sh.j2"
RENEWAL_HOOK_TEMPLATE = "hooks/renewal-hook.sh.j2"
INIT_SCRIPT_NAME = "init-mongo.sh"


class TemplateEngine:
    """Render built-in templates, optionally shadowed by a local override directory."""

    def __init__(self, environment: Environment) -> None:
        """Wrap a configured Jinja2 environment."""
        self.environment = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found under *override_dir*."""
        loaders = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("unifictl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,  # noqa: S701 - renders shell and YAML, never HTML
        )
        return cls(environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context*."""
        template = self.environment.get_template(template_name)
        return template.render(**context)

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render into *destination*; returns False when the file already matches."""
        content = self.render_to_string(template_name, context)
        destination = Path(destination)
        if destination.exists():
            current = destination.read_text(encoding="utf-8")
            current_mode = destination.stat().st_mode & 0o777
            if current == content and current_mode == mode:
                return False

        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


@dataclass(slots=True)
class RenderedFile:
    """Outcome of rendering one managed file."""

    path: Path
    changed: bool


def compose_context(compose: ComposeConfig, *, letsencrypt_dir: Path) -> dict[str, object]:
    """Return the context for :data:`COMPOSE_TEMPLATE`."""
    port_bindings = [
        f"${{BIND_IP}}:${{{key}}}:{container_port}{suffix}"
        for key, _, container_port, suffix in PORT_BINDINGS
    ]
    return {
        "db_service": compose.db_service,
        "app_service": compose.app_service,
        "app_container": compose.app_container,
        "mongo_data_dir": MONGO_DATA_DIR,
        "unifi_data_dir": UNIFI_DATA_DIR,
        "scripts_dir": SCRIPTS_DIR,
        "init_script": INIT_SCRIPT_NAME,
        "letsencrypt_dir": str(letsencrypt_dir),
        "port_bindings": port_bindings,
    }


def init_script_context(role: str = "dbOwner") -> dict[str, object]:
    """Return the context for :data:`INIT_SCRIPT_TEMPLATE`."""
    defaults = StackConfig(puid=0, pgid=0, mongo_root_password="", mongo_pass="")
    refs = [
        f"${{MONGO_DBNAME:-{defaults.mongo_dbname}}}",
        f"${{MONGO_DB_STAT:-{defaults.mongo_db_stat}}}",
        f"${{MONGO_DB_AUDIT:-{defaults.mongo_db_audit}}}",
    ]
    return {"role": role, "database_refs": refs}


def render_stack_files(
    engine: TemplateEngine,
    root: StackRoot,
    compose: ComposeConfig,
    *,
    letsencrypt_dir: Path,
) -> list[RenderedFile]:
    """Render the compose file and the database init script under *root*."""
    compose_changed = engine.render_to_path(
        COMPOSE_TEMPLATE,
        root.compose_file,
        compose_context(compose, letsencrypt_dir=letsencrypt_dir),
        mode=0o644,
    )
    script_path = root.scripts_dir / INIT_SCRIPT_NAME
    script_changed = engine.render_to_path(
        INIT_SCRIPT_TEMPLATE,
        script_path,
        init_script_context(),
        mode=0o755,
    )
    return [
        RenderedFile(path=root.compose_file, changed=compose_changed),
        RenderedFile(path=script_path, changed=script_changed),
    ]


__all__ = [
    "COMPOSE_TEMPLATE",
    "INIT_SCRIPT_NAME",
    "INIT_SCRIPT_TEMPLATE",
    "RENEWAL_HOOK_TEMPLATE",
    "RenderedFile",
    "TemplateEngine",
    "compose_context",
    "init_script_context",
    "render_stack_files",
]
