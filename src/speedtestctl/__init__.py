"""speedtestctl package bootstrap.

This module exposes lightweight metadata that other modules (and packaging
machinery) rely upon. ``__release__`` is the date-stamped tag compared by the
self-updater; ``__version__`` is the packaging version.
"""
from __future__ import annotations

__all__ = ["__release__", "__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "2025.12.23"

# Version: 2025-12-23
__release__ = "2025-12-23"


def get_version() -> str:
    """Return the current package version."""
    return __version__
