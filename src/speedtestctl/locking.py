"""Single-instance locking for installer sessions.

The lock is a marker file holding the owning process identifier. A marker
whose owner is no longer alive is stale and is reclaimed; a marker owned by
the current process is reclaimed as well so that re-acquiring is harmless.
Markers are published with a hard link and reclaimed with a rename, so two
sessions racing for a stale marker cannot both end up holding the lock.
"""
from __future__ import annotations

import contextlib
import errno
import json
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

from .errors import ConcurrencyError

RECLAIM_ATTEMPTS = 3


def pid_alive(pid: int) -> bool:
    """Return ``True`` when *pid* refers to a running process."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        return exc.errno == errno.EPERM
    return True


def read_pid(path: Path) -> int | None:
    """Return the PID recorded in *path* (JSON or bare integer), if any."""
    try:
        text = path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, IsADirectoryError, UnicodeDecodeError):
        return None
    if not text:
        return None
    if text.startswith("{"):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return None
        value = payload.get("pid") if isinstance(payload, dict) else None
    else:
        value = text.split()[0]
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


@dataclass(slots=True)
class LockHandle:
    """Metadata describing a held lock."""

    path: Path
    pid: int
    wait_ms: int
    reclaimed_pid: int | None = None


@dataclass
class SessionLock:
    """PID-file lock guarding the install/uninstall/update paths."""

    path: Path
    pid: int = field(default_factory=os.getpid)
    is_alive: Callable[[int], bool] = pid_alive
    on_acquire: Callable[[SessionLock], None] | None = None
    before_reclaim: Callable[[SessionLock], None] | None = None
    handle: LockHandle | None = None

    @property
    def held(self) -> bool:
        """Return ``True`` while this session owns the lock."""
        return self.handle is not None

    def owner(self) -> int | None:
        """Return the PID recorded in the marker file, if present."""
        return read_pid(self.path)

    def acquire(self) -> LockHandle:
        """Acquire the lock or raise :class:`ConcurrencyError`."""
        start = time.perf_counter()
        reclaimed: int | None = None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(RECLAIM_ATTEMPTS):
            if self._create():
                break
            existing = self.owner()
            if existing is not None and existing != self.pid and self.is_alive(existing):
                raise ConcurrencyError(
                    f"Another instance is running (PID: {existing}).",
                    owner_pid=existing,
                    hint=f"Remove {self.path} if this is a mistake.",
                )
            if self.before_reclaim is not None:
                self.before_reclaim(self)
            reclaimed = self._reclaim()
        else:
            contender = self.owner()
            raise ConcurrencyError(
                f"Another instance acquired the lock concurrently (PID: {contender}).",
                owner_pid=contender,
                hint=f"Remove {self.path} if this is a mistake.",
            )

        self.handle = LockHandle(
            path=self.path,
            pid=self.pid,
            wait_ms=int((time.perf_counter() - start) * 1000),
            reclaimed_pid=reclaimed,
        )
        if self.on_acquire is not None:
            self.on_acquire(self)
        return self.handle

    def _create(self) -> bool:
        # Linking a fully written file publishes the marker atomically.
        payload = {
            "pid": self.pid,
            "path": str(self.path),
            "acquired_at": datetime.now(UTC).isoformat(),
        }
        staging = self.path.with_name(f".{self.path.name}.{self.pid}.tmp")
        staging.write_text(json.dumps(payload) + "\n", encoding="utf-8")
        try:
            os.link(staging, self.path)
        except FileExistsError:
            return False
        finally:
            staging.unlink(missing_ok=True)
        return True

    def _reclaim(self) -> int | None:
        """Move a stale marker aside; return the PID it named.

        Only one contender can move a given marker. If the marker moved turns
        out to belong to a live contender it is put back and the acquisition
        fails.
        """
        aside = self.path.with_name(f".{self.path.name}.{self.pid}.stale")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return None
        moved = read_pid(aside)
        try:
            if moved is not None and moved != self.pid and self.is_alive(moved):
                with contextlib.suppress(FileExistsError):
                    os.link(aside, self.path)
                raise ConcurrencyError(
                    f"Another instance acquired the lock concurrently (PID: {moved}).",
                    owner_pid=moved,
                    hint=f"Remove {self.path} if this is a mistake.",
                )
        finally:
            aside.unlink(missing_ok=True)
        return moved

    def release(self) -> None:
        """Remove the marker if this session owns it; safe to call repeatedly."""
        self.handle = None
        if self.owner() == self.pid:
            self.path.unlink(missing_ok=True)

    def __enter__(self) -> LockHandle:
        """Acquire the lock for the duration of a ``with`` block."""
        return self.acquire()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Release the lock on every exit path."""
        self.release()


__all__ = ["LockHandle", "SessionLock", "pid_alive", "read_pid"]
