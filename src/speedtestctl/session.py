"""Per-run session state and the compensation stack."""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .certificates import TLSRequest
    from .environment import HardwareProfile


class Mode(str, Enum):
    """Operations the orchestrator can run."""

    INSTALL = "install"
    DIAGNOSE = "diagnose"
    UNINSTALL = "uninstall"
    UPDATE = "update"


@dataclass
class Session:
    """Explicit context threaded through every orchestrator call."""

    mode: Mode
    port: int
    install_path: Path
    debug: bool = False
    verbose: bool = False
    installation_started: bool = False
    use_ssl: bool = False
    tls: TLSRequest | None = None
    profile: HardwareProfile | None = None
    download_url: str | None = None
    relocated_to: Path | None = None
    completed: list[str] = field(default_factory=list)

    def mark(self, stage: str) -> None:
        """Record that *stage* finished."""
        self.completed.append(stage)

    @property
    def last_stage(self) -> str | None:
        """Return the most recently finished stage, if any."""
        return self.completed[-1] if self.completed else None

    def disable_ssl(self) -> None:
        """Drop TLS state after a failed issuance."""
        self.use_ssl = False
        self.tls = None


@dataclass
class Compensation:
    """One inverse action registered by a completed stage."""

    name: str
    action: Callable[[], None]


@dataclass
class Compensations:
    """LIFO stack of inverse actions run when a session unwinds."""

    _stack: list[Compensation] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)

    def push(self, name: str, action: Callable[[], None]) -> None:
        """Register *action* to undo the stage called *name*."""
        self._stack.append(Compensation(name, action))

    def discard(self, name: str) -> None:
        """Drop every compensation registered as *name* (the stage committed)."""
        self._stack = [entry for entry in self._stack if entry.name != name]

    def names(self) -> list[str]:
        """Return pending compensation names, most recent first."""
        return [entry.name for entry in reversed(self._stack)]

    def clear(self) -> None:
        """Forget all pending compensations after a successful run."""
        self._stack.clear()

    def unwind(self) -> list[str]:
        """Run pending compensations newest-first, each exactly once."""
        ran: list[str] = []
        while self._stack:
            entry = self._stack.pop()
            try:
                entry.action()
            except Exception as exc:  # noqa: BLE001 - every compensation must get its turn
                self.failures.append((entry.name, str(exc)))
            ran.append(entry.name)
        return ran


__all__ = ["Compensation", "Compensations", "Mode", "Session"]
