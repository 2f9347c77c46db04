"""Ensure the external commands the installer drives are present."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .config import NginxConfig
from .providers.opkg import PackageManager


@dataclass(frozen=True, slots=True)
class Requirement:
    """A command and the package that provides it."""

    command: str
    package: str


REQUIREMENTS: tuple[Requirement, ...] = (
    Requirement("curl", "curl"),
    Requirement("nginx", "nginx-ssl"),
    Requirement("timeout", "coreutils-timeout"),
    Requirement("unzip", "unzip"),
    Requirement("wget", "wget"),
)


@dataclass(frozen=True, slots=True)
class CapabilityReport:
    """Which requirements were already present and which were installed."""

    present: tuple[str, ...]
    installed: tuple[str, ...]


def disable_stock_nginx(nginx: NginxConfig) -> None:
    """Stop and disable the distribution nginx service and drop its default site."""
    for action in ("stop", "disable"):
        try:
            subprocess.run(  # noqa: S603 - controlled command execution
                [str(nginx.stock_service), action],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError:
            continue
    nginx.default_site.unlink(missing_ok=True)


@dataclass
class CapabilityInstaller:
    """Install missing packages for the required commands."""

    packages: PackageManager
    nginx: NginxConfig
    requirements: Sequence[Requirement] = REQUIREMENTS
    which: Callable[[str], str | None] = shutil.which
    notify: Callable[[str], None] = field(default=lambda _message: None)
    post_install: dict[str, Callable[[NginxConfig], None]] = field(
        default_factory=lambda: {"nginx-ssl": disable_stock_nginx}
    )

    def missing(self) -> list[Requirement]:
        """Return requirements whose command is not on ``PATH``."""
        return [req for req in self.requirements if self.which(req.command) is None]

    def ensure(self) -> CapabilityReport:
        """Install every missing requirement; raises ``DependencyError`` on failure."""
        present: list[str] = []
        installed: list[str] = []
        for requirement in self.requirements:
            if self.which(requirement.command) is not None:
                self.notify(f"{requirement.command.upper()} already installed.")
                present.append(requirement.command)
                continue
            self.notify(
                f"{requirement.command.upper()} not found. "
                f"Installing {requirement.package.upper()}..."
            )
            self.packages.install(requirement.package)
            self.notify(f"{requirement.package.upper()} installed successfully.")
            hook = self.post_install.get(requirement.package)
            if hook is not None:
                hook(self.nginx)
            installed.append(requirement.package)
        return CapabilityReport(present=tuple(present), installed=tuple(installed))


__all__ = [
    "REQUIREMENTS",
    "CapabilityInstaller",
    "CapabilityReport",
    "Requirement",
    "disable_stock_nginx",
]
