"""Cancellable background tasks with progress reporting.

Long-running external commands (download, unpack) run as child processes.
The foreground polls them at a fixed interval while a spinner is shown and
only proceeds once the task has been joined. Live tasks are kept in a
:class:`TaskRegistry` so the interrupt handler can cancel them by interface.
"""
from __future__ import annotations

import subprocess
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field

from rich.console import Console

POLL_INTERVAL = 0.2
TERMINATE_GRACE = 2.0


@dataclass
class CancellableTask:
    """A child process paired with cancellation and join operations."""

    name: str
    process: subprocess.Popen[str]
    cancelled: bool = False

    @property
    def pid(self) -> int:
        """Return the child process identifier."""
        return self.process.pid

    def running(self) -> bool:
        """Return ``True`` while the child has not exited."""
        return self.process.poll() is None

    def cancel(self) -> None:
        """Terminate the child, escalating to SIGKILL after a grace period."""
        if not self.running():
            return
        self.cancelled = True
        self.process.terminate()
        try:
            self.process.wait(timeout=TERMINATE_GRACE)
        except subprocess.TimeoutExpired:
            self.process.kill()
            self.process.wait()

    def join(self) -> int:
        """Wait for the child and return its exit code."""
        return self.process.wait()

    def output(self) -> str:
        """Return whatever the child wrote to its captured stderr."""
        stream = self.process.stderr
        if stream is None:
            return ""
        try:
            return stream.read().strip()
        except (OSError, ValueError):
            return ""


@dataclass
class TaskRegistry:
    """Tracks tasks that are currently in flight."""

    _tasks: dict[int, CancellableTask] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def add(self, task: CancellableTask) -> None:
        """Register *task* as live."""
        with self._lock:
            self._tasks[id(task)] = task

    def discard(self, task: CancellableTask) -> None:
        """Forget *task*; harmless when it was never registered."""
        with self._lock:
            self._tasks.pop(id(task), None)

    def active(self) -> list[CancellableTask]:
        """Return a snapshot of the registered tasks."""
        with self._lock:
            return list(self._tasks.values())

    def cancel_all(self) -> list[str]:
        """Cancel every registered task and return their names."""
        cancelled: list[str] = []
        for task in self.active():
            task.cancel()
            self.discard(task)
            cancelled.append(task.name)
        return cancelled

    @contextmanager
    def track(self, task: CancellableTask) -> Iterator[CancellableTask]:
        """Register *task* for the duration of the block."""
        self.add(task)
        try:
            yield task
        finally:
            self.discard(task)


Spawner = Callable[[Sequence[str]], subprocess.Popen[str]]


def spawn(args: Sequence[str]) -> subprocess.Popen[str]:
    """Start *args* in the background with stdout discarded."""
    return subprocess.Popen(  # noqa: S603 - controlled command execution
        list(args),
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        text=True,
    )


def run_with_progress(
    name: str,
    args: Sequence[str],
    *,
    registry: TaskRegistry,
    console: Console,
    spawner: Spawner = spawn,
    interval: float = POLL_INTERVAL,
) -> tuple[int, str]:
    """Run *args* as a tracked task showing a spinner; return (rc, stderr)."""
    process = spawner(args)
    task = CancellableTask(name=name, process=process)
    with registry.track(task):
        with console.status(f"{name}...", spinner="line"):
            while task.running():
                time.sleep(interval)
        rc = task.join()
    # Unregistered before the caller sees the result.
    detail = task.output()
    if rc == 0:
        console.print(f"[green]✅ {name}... Done![/green]")
    else:
        console.print(f"[red]❌ {name}... Failed![/red]")
    return rc, detail


__all__ = [
    "CancellableTask",
    "TaskRegistry",
    "run_with_progress",
    "spawn",
]
