"""Process-wide interrupt handling for installer sessions.

Handlers are installed only once the session lock is held. An interrupt
cancels every tracked background task and raises :class:`InterruptError`
into the foreground so the orchestrator can unwind its compensations. The
default dispositions are restored before raising, so a second interrupt
during cleanup terminates the process instead of being trapped.
"""
from __future__ import annotations

import atexit
import signal
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from types import FrameType
from typing import Any

from .errors import InterruptError
from .locking import SessionLock
from .tasks import TaskRegistry

HANDLED_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)


@dataclass
class InterruptHandler:
    """Translate termination signals into :class:`InterruptError`."""

    tasks: TaskRegistry
    signals: Sequence[signal.Signals] = HANDLED_SIGNALS
    on_cancel: Callable[[list[str]], None] | None = None
    interrupted: int | None = None
    _previous: dict[signal.Signals, Any] = field(default_factory=dict)
    _lock: SessionLock | None = None

    @property
    def installed(self) -> bool:
        """Return ``True`` while handlers are active."""
        return bool(self._previous)

    def attach(self, lock: SessionLock) -> None:
        """Install handlers and release *lock* at interpreter exit until detached."""
        if self._lock is None:
            atexit.register(lock.release)
            self._lock = lock
        self.install()

    def detach(self) -> None:
        """Restore the previous handlers and drop the exit-time lock release."""
        self.uninstall()
        if self._lock is not None:
            atexit.unregister(self._lock.release)
            self._lock = None

    def install(self) -> None:
        """Install handlers for the configured signals."""
        if self.installed or threading.current_thread() is not threading.main_thread():
            return
        for signum in self.signals:
            self._previous[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle)

    def uninstall(self) -> None:
        """Restore the handlers that were active before :meth:`install`."""
        for signum, previous in self._previous.items():
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._previous.clear()

    def disarm(self) -> None:
        """Reset handled signals to their default disposition while cleanup runs."""
        for handled in self._previous:
            signal.signal(handled, signal.SIG_DFL)

    def trigger(self, signum: int) -> None:
        """Cancel tracked tasks and raise :class:`InterruptError`."""
        self.interrupted = signum
        self.disarm()
        cancelled = self.tasks.cancel_all()
        if self.on_cancel is not None:
            self.on_cancel(cancelled)
        raise InterruptError(signum)

    def _handle(self, signum: int, _frame: FrameType | None) -> None:
        self.trigger(signum)


__all__ = ["HANDLED_SIGNALS", "InterruptHandler"]
