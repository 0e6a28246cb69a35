"""Helper utilities used by the host bootstrap workflow."""
from __future__ import annotations

from .engine import (
    EngineAction,
    EngineError,
    EnginePlan,
    EngineStatus,
    apply_engine_plan,
    detect_engine,
    plan_certbot_install,
    plan_engine_install,
)
from .filesystem import (
    DirectoryAction,
    DirectoryPlan,
    DirectorySpec,
    FilesystemError,
    apply_directory_plan,
    ensure_stack_layout,
    plan_directories,
)
from .identity import (
    GroupAction,
    GroupPlan,
    HostIdentity,
    IdentityError,
    apply_group_plan,
    plan_docker_group,
    resolve_host_identity,
)

__all__ = [
    # host identity helpers
    "GroupAction",
    "GroupPlan",
    "HostIdentity",
    "IdentityError",
    "resolve_host_identity",
    "plan_docker_group",
    "apply_group_plan",
    # filesystem helpers
    "DirectoryAction",
    "DirectoryPlan",
    "DirectorySpec",
    "FilesystemError",
    "plan_directories",
    "apply_directory_plan",
    "ensure_stack_layout",
    # container engine helpers
    "EngineAction",
    "EngineError",
    "EnginePlan",
    "EngineStatus",
    "detect_engine",
    "plan_engine_install",
    "plan_certbot_install",
    "apply_engine_plan",
]
