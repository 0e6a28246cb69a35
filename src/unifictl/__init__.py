"""unifictl package bootstrap.

Exposes lightweight metadata shared by the CLI and packaging machinery.
"""
from __future__ import annotations

__all__ = ["__version__"]

# NOTE: The version is duplicated in ``pyproject.toml``.
__version__ = "0.3.0"
