"""Error taxonomy shared by the installer components.

Every failure that reaches the operator is one of these types. Providers
translate raw tool exit codes into them at the call site so the CLI can
decide between fallback, rollback, and the exit code to use.
"""
from __future__ import annotations

from pathlib import Path


class InstallerError(RuntimeError):
    """Base class for installer failures carrying an optional hint."""

    def __init__(self, message: str, *, hint: str | Path | None = None) -> None:
        """Store *message* and an optional log path or remediation *hint*."""
        super().__init__(message)
        self.hint = str(hint) if hint is not None else None


class ConfigError(InstallerError):
    """Raised when configuration parsing fails."""


class ConcurrencyError(InstallerError):
    """Another live session holds the installer lock."""

    def __init__(
        self,
        message: str,
        *,
        owner_pid: int | None = None,
        hint: str | Path | None = None,
    ) -> None:
        """Record the PID of the session that owns the lock."""
        super().__init__(message, hint=hint)
        self.owner_pid = owner_pid


class InsufficientSpaceError(InstallerError):
    """No primary or secondary volume satisfies the space requirement."""


class DependencyError(InstallerError):
    """A required package could not be installed."""


class DownloadError(InstallerError):
    """Downloading an artifact failed or timed out."""


class ValidationError(InstallerError):
    """A downloaded artifact is missing or undersized."""


class ExtractionError(InstallerError):
    """Unpacking an archive failed or produced an unexpected layout."""


class InvalidConfigError(InstallerError):
    """The web server rejected a synthesized configuration."""

    def __init__(
        self,
        message: str,
        *,
        diagnostics: str = "",
        restored: bool = False,
        hint: str | Path | None = None,
    ) -> None:
        """Keep the validator output and whether a backup was restored."""
        super().__init__(message, hint=hint)
        self.diagnostics = diagnostics
        self.restored = restored


class PortConflictError(InstallerError):
    """The requested port is bound by a foreign process."""

    def __init__(self, port: int, *, hint: str | Path | None = None) -> None:
        """Remember the conflicting *port*."""
        super().__init__(f"Port {port} is already in use.", hint=hint)
        self.port = port


class StartupError(InstallerError):
    """The service never reported a live process after launch."""


class IssuanceError(InstallerError):
    """Certificate issuance or installation failed."""


class UnsupportedProviderError(IssuanceError):
    """An unknown challenge strategy or DNS provider was requested."""


class InterruptError(InstallerError):
    """The session was interrupted by a signal."""

    def __init__(self, signum: int) -> None:
        """Record the signal number that triggered the interrupt."""
        super().__init__(f"Interrupted by signal {signum}.")
        self.signum = signum


__all__ = [
    "ConcurrencyError",
    "ConfigError",
    "DependencyError",
    "DownloadError",
    "ExtractionError",
    "InstallerError",
    "InsufficientSpaceError",
    "InterruptError",
    "InvalidConfigError",
    "IssuanceError",
    "PortConflictError",
    "StartupError",
    "UnsupportedProviderError",
    "ValidationError",
]
