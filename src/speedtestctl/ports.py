"""Port availability helpers for speedtestctl."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from .errors import InstallerError, PortConflictError
from .prompts import Prompter

MIN_PORT = 1024
MAX_PORT = 65535
TCP_LISTEN = "0A"
PROC_TABLES = ("tcp", "tcp6", "udp", "udp6")


def listening_ports(proc_root: Path = Path("/proc")) -> set[int]:
    """Return local ports with a listening TCP socket or a bound UDP socket."""
    ports: set[int] = set()
    for table in PROC_TABLES:
        path = proc_root / "net" / table
        try:
            lines = path.read_text(encoding="utf-8").splitlines()[1:]
        except OSError:
            continue
        for line in lines:
            fields = line.split()
            if len(fields) < 4:
                continue
            local, state = fields[1], fields[3]
            if table.startswith("tcp") and state != TCP_LISTEN:
                continue
            _, _, port_hex = local.rpartition(":")
            try:
                ports.add(int(port_hex, 16))
            except ValueError:
                continue
    ports.discard(0)
    return ports


def is_port_in_use(port: int, proc_root: Path = Path("/proc")) -> bool:
    """Return ``True`` when *port* is bound on this host."""
    return port in listening_ports(proc_root)


def validate_port(value: str | int) -> int:
    """Parse *value* as an unprivileged port number."""
    text = str(value).strip()
    if not text.isdigit():
        raise InstallerError(f"Invalid port number: {text}")
    port = int(text)
    if port < MIN_PORT or port > MAX_PORT:
        raise InstallerError(
            f"Invalid port number: {port}",
            hint=f"Choose a port between {MIN_PORT} and {MAX_PORT}.",
        )
    return port


def resolve_port(
    port: int,
    prompter: Prompter,
    *,
    in_use: Callable[[int], bool],
    notify: Callable[[str], None] = lambda _message: None,
) -> int:
    """Return a free port, asking the operator for another one on conflict.

    An empty answer aborts with :class:`PortConflictError`.
    """
    candidate = port
    while in_use(candidate):
        notify(f"Port {candidate} is already in use.")
        answer = prompter.ask("Enter a different port (or press Enter to abort)")
        if not answer:
            raise PortConflictError(candidate, hint="Installation aborted by user.")
        candidate = validate_port(answer)
    return candidate


__all__ = [
    "MAX_PORT",
    "MIN_PORT",
    "is_port_in_use",
    "listening_ports",
    "resolve_port",
    "validate_port",
]
