"""OpenWrt package manager provider."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import DependencyError


@dataclass(slots=True)
class PackageManager:
    """Wrap ``opkg`` with a once-per-session index refresh."""

    opkg_bin: str = "opkg"
    updated: bool = False

    def update(self) -> None:
        """Refresh the package index unless it was already refreshed."""
        if self.updated:
            return
        self._run_opkg(["update"], error="Failed to update opkg package list")
        self.updated = True

    def install(self, package: str) -> subprocess.CompletedProcess[str]:
        """Install *package*, refreshing the index first if needed."""
        self.update()
        return self._run_opkg(
            ["install", package],
            error=f"Failed to install {package.upper()}",
            hint="Check your internet or opkg configuration.",
        )

    # ------------------------------------------------------------------
    def _run_opkg(
        self,
        args: Sequence[str],
        *,
        error: str,
        hint: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.opkg_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise DependencyError(f"{self.opkg_bin} not found: {exc}", hint=hint) from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise DependencyError(f"{error} (exit {result.returncode}): {message}", hint=hint)
        return result


__all__ = ["PackageManager"]
