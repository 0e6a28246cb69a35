"""Provider interfaces for unifictl."""
from __future__ import annotations

from .compose import ComposeError, ComposeProvider, ServiceState, interpolate_env

__all__ = [
    "ComposeError",
    "ComposeProvider",
    "ServiceState",
    "interpolate_env",
]
