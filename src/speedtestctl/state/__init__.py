"""State management helpers for speedtestctl."""
from __future__ import annotations

from .registry import INSTALLATION_FILE, InstallationRecord, StateRegistry, StateRegistryError

__all__ = ["INSTALLATION_FILE", "InstallationRecord", "StateRegistry", "StateRegistryError"]
