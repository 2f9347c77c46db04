"""Host capacity discovery for hardware-adaptive configuration."""
from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .locking import pid_alive, read_pid

LOW_RAM_MB = 128
MID_RAM_MB = 256
MAX_WORKERS = 2
ADDRESS_PLACEHOLDER = "<router_ip>"


@dataclass(frozen=True, slots=True)
class HardwareProfile:
    """Derived, read-only tuning tuple for the web server."""

    cpu_cores: int
    total_ram_mb: int
    workers: int
    connections: int

    @property
    def tier(self) -> str:
        """Return the tier label for display."""
        if self.total_ram_mb < LOW_RAM_MB:
            return "low"
        if self.total_ram_mb < MID_RAM_MB:
            return "mid"
        return "standard"


def hardware_profile(total_ram_mb: int, cpu_cores: int) -> HardwareProfile:
    """Classify a host into one of the three memory tiers."""
    cores = max(1, cpu_cores)
    if total_ram_mb < LOW_RAM_MB:
        workers, connections = 1, 256
    elif total_ram_mb < MID_RAM_MB:
        workers, connections = 1, 512
    else:
        workers, connections = min(cores, MAX_WORKERS), 1024
    return HardwareProfile(
        cpu_cores=cores,
        total_ram_mb=total_ram_mb,
        workers=workers,
        connections=connections,
    )


def read_cpu_cores(proc_root: Path = Path("/proc")) -> int:
    """Count processors listed in ``cpuinfo``; assume one when unreadable."""
    try:
        lines = (proc_root / "cpuinfo").read_text(encoding="utf-8").splitlines()
    except OSError:
        return 1
    count = sum(1 for line in lines if line.startswith("processor"))
    return count or 1


def _meminfo_kb(proc_root: Path, key: str) -> int | None:
    try:
        lines = (proc_root / "meminfo").read_text(encoding="utf-8").splitlines()
    except OSError:
        return None
    for line in lines:
        name, _, rest = line.partition(":")
        if name.strip() == key:
            parts = rest.split()
            if parts and parts[0].isdigit():
                return int(parts[0])
    return None


def read_total_ram_mb(proc_root: Path = Path("/proc")) -> int:
    """Return total memory in MB (0 when unreadable)."""
    value = _meminfo_kb(proc_root, "MemTotal")
    return (value or 0) // 1024


def read_free_ram_mb(proc_root: Path = Path("/proc")) -> int:
    """Return available memory in MB, falling back to ``MemFree``."""
    value = _meminfo_kb(proc_root, "MemAvailable")
    if value is None:
        value = _meminfo_kb(proc_root, "MemFree")
    return (value or 0) // 1024


def detect_hardware(proc_root: Path = Path("/proc")) -> HardwareProfile:
    """Read core count and total memory and return the matching profile."""
    return hardware_profile(read_total_ram_mb(proc_root), read_cpu_cores(proc_root))


Runner = Callable[[Sequence[str]], subprocess.CompletedProcess[str]]


def _run(args: Sequence[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603 - controlled command execution
        list(args),
        capture_output=True,
        text=True,
        check=False,
        timeout=5,
    )


def detect_internal_address(runner: Runner = _run) -> str:
    """Best-effort LAN address lookup; returns a placeholder on failure."""
    try:
        result = runner(["uci", "get", "network.lan.ipaddr"])
    except (OSError, subprocess.SubprocessError):
        return ADDRESS_PLACEHOLDER
    address = (result.stdout or "").strip()
    if result.returncode != 0 or not address:
        return ADDRESS_PLACEHOLDER
    return address


def nearest_existing(path: Path) -> Path:
    """Return *path* or its nearest existing ancestor."""
    candidate = path
    while not candidate.exists():
        if candidate.parent == candidate:
            break
        candidate = candidate.parent
    return candidate


def free_space_mb(path: Path) -> int:
    """Return free megabytes on the filesystem holding *path*."""
    try:
        usage = shutil.disk_usage(nearest_existing(path))
    except OSError:
        return 0
    return usage.free // (1024 * 1024)


def running_instance(
    pid_file: Path,
    *,
    is_alive: Callable[[int], bool] = pid_alive,
) -> int | None:
    """Return the PID of a live previously started service, if any."""
    pid = read_pid(pid_file)
    if pid is None or pid == os.getpid():
        return None
    return pid if is_alive(pid) else None


__all__ = [
    "ADDRESS_PLACEHOLDER",
    "HardwareProfile",
    "detect_hardware",
    "detect_internal_address",
    "free_space_mb",
    "hardware_profile",
    "nearest_existing",
    "read_cpu_cores",
    "read_free_ram_mb",
    "read_total_ram_mb",
    "running_instance",
]
