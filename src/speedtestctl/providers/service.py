"""Service controller for the dedicated nginx instance.

The generated control script has two variants: a procd-supervised one that
respawns nginx, and a classic ``rc.common`` script for hosts without procd.
Both are driven through ``<script> enable|disable|start|stop|reload``.
"""
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..config import ServiceConfig
from ..errors import InstallerError, PortConflictError, StartupError
from ..locking import pid_alive, read_pid
from ..templates import TemplateEngine, write_text

PROCD_TEMPLATE = "service/procd.j2"
INITD_TEMPLATE = "service/initd.j2"
STOP_GRACE_SECONDS = 2.0


class ServiceError(InstallerError):
    """Raised when the control script reports a failure."""


class ServiceState(str, Enum):
    """Observable lifecycle of the managed service."""

    ABSENT = "absent"
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"


def detect_supervision(
    *,
    which: Callable[[str], str | None] = shutil.which,
    init_dir: Path = Path("/etc/init.d"),
) -> bool:
    """Return ``True`` when procd is available to supervise the service."""
    return which("procd") is not None and init_dir.is_dir()


def terminate_pid(
    pid: int,
    *,
    is_alive: Callable[[int], bool] = pid_alive,
    sleep: Callable[[float], None] = time.sleep,
    grace: float = STOP_GRACE_SECONDS,
) -> bool:
    """Send SIGTERM to *pid* and wait briefly; return ``True`` once it is gone."""
    if not is_alive(pid):
        return True
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return True
    except PermissionError:
        return False
    waited = 0.0
    step = 0.25
    while waited < grace:
        if not is_alive(pid):
            return True
        sleep(step)
        waited += step
    return not is_alive(pid)


@dataclass
class ServiceController:
    """Render the control script and drive it."""

    templates: TemplateEngine
    script_path: Path
    pid_file: Path
    config_path: Path
    error_log: Path
    port: int
    settings: ServiceConfig = field(default_factory=ServiceConfig)
    nginx_bin: str = "/usr/sbin/nginx"
    supervised: bool = False
    in_use: Callable[[int], bool] = lambda _port: False
    is_alive: Callable[[int], bool] = pid_alive
    sleep: Callable[[float], None] = time.sleep
    _starting: bool = False

    @property
    def template_name(self) -> str:
        """Return the template used for the detected init capability."""
        return PROCD_TEMPLATE if self.supervised else INITD_TEMPLATE

    def render_script(self) -> str:
        """Return the control script text."""
        context = {
            "nginx_bin": self.nginx_bin,
            "config_path": str(self.config_path),
            "pid_file": str(self.pid_file),
            "port": self.port,
            "respawn_threshold": self.settings.respawn_threshold,
            "respawn_timeout": self.settings.respawn_timeout,
            "respawn_retry": self.settings.respawn_retry,
        }
        return self.templates.render_to_string(self.template_name, context)

    def write_script(self) -> bool:
        """Write the executable control script; return ``True`` when it changed."""
        return write_text(self.script_path, self.render_script(), mode=0o755)

    def remove_script(self) -> None:
        """Delete the control script."""
        self.script_path.unlink(missing_ok=True)

    # Lifecycle ---------------------------------------------------------
    def enable(self) -> bool:
        """Enable start at boot; returns ``False`` if the script refused."""
        result = self._run_script("enable", check=False)
        return result.returncode == 0

    def disable(self) -> bool:
        """Disable start at boot; returns ``False`` if the script refused."""
        if not self.script_path.exists():
            return True
        result = self._run_script("disable", check=False)
        return result.returncode == 0

    def running_pid(self) -> int | None:
        """Return the live PID recorded in the PID file, if any."""
        pid = read_pid(self.pid_file)
        if pid is None or not self.is_alive(pid):
            return None
        return pid

    def start(self) -> int:
        """Start the service and wait until its PID file names a live process."""
        existing = self.running_pid()
        if existing is not None:
            return existing
        if self.in_use(self.port):
            raise PortConflictError(
                self.port,
                hint="Another process is bound to the port; choose a different one.",
            )
        self._starting = True
        try:
            try:
                self._run_script("start")
            except ServiceError as exc:
                raise StartupError(
                    f"Failed to start NGINX service: {exc}",
                    hint=self.error_log,
                ) from exc
            for _attempt in range(self.settings.start_attempts):
                pid = self.running_pid()
                if pid is not None:
                    return pid
                self.sleep(self.settings.poll_interval)
            pid = self.running_pid()
            if pid is not None:
                return pid
        finally:
            self._starting = False
        raise StartupError(
            f"NGINX started but is not running. Check logs: {self.error_log}",
            hint=self.error_log,
        )

    def stop(self) -> None:
        """Stop the service; absence of a process is not an error."""
        if self.script_path.exists():
            self._run_script("stop", check=False)
        pid = read_pid(self.pid_file)
        if pid is not None and pid != os.getpid():
            terminate_pid(pid, is_alive=self.is_alive, sleep=self.sleep)
        self.pid_file.unlink(missing_ok=True)

    def reload(self) -> None:
        """Validate and reload the running configuration."""
        self._run_script("reload")

    def restart(self) -> int:
        """Stop then start the service."""
        self.stop()
        return self.start()

    def state(self) -> ServiceState:
        """Return the current lifecycle state."""
        if not self.script_path.exists():
            return ServiceState.ABSENT
        if self._starting:
            return ServiceState.STARTING
        pid = read_pid(self.pid_file)
        if pid is None:
            return ServiceState.STOPPED
        if self.is_alive(pid):
            return ServiceState.RUNNING
        return ServiceState.FAILED

    # ------------------------------------------------------------------
    def _run_script(
        self, action: str, *, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        command = [str(self.script_path), action]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            if not check:
                return subprocess.CompletedProcess(
                    command, returncode=127, stdout="", stderr=str(exc)
                )
            raise ServiceError(f"{self.script_path} {action} failed: {exc}") from exc
        if check and result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise ServiceError(
                f"{self.script_path} {action} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = [
    "ServiceController",
    "ServiceError",
    "ServiceState",
    "detect_supervision",
    "terminate_pid",
]
