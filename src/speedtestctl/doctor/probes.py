"""Probe registration entry point for diagnostics."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from ..certificates import CertificatePaths
from ..environment import free_space_mb, read_cpu_cores, read_free_ram_mb, read_total_ram_mb
from ..state import StateRegistryError
from ..tls import TLSInspectionError, inspect_certificate
from .models import ProbeCategory, ProbeContext, ProbeDefinition, ProbeResult, ProbeStatus

ERROR_LOG_TAIL = 5


def collect_probes(context: ProbeContext) -> Sequence[ProbeDefinition]:
    """Return the set of probes that should run for the current context."""
    probes: list[ProbeDefinition] = [
        _make_probe("service-process", "service", _probe_service_process),
        _make_probe("port-listening", "ports", _probe_port_listening),
        _make_probe("config-valid", "config", _probe_config),
        _make_probe("error-log", "logs", _probe_error_log),
    ]
    if _tls_domain(context):
        probes.append(_make_probe("tls-certificate", "tls", _probe_certificate))
    probes.append(_make_probe("system-resources", "system", _probe_resources))
    probes.append(_make_probe("installation-record", "state", _probe_installation_record))
    return tuple(probes)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_probe(
    probe_id: str,
    category: ProbeCategory,
    handler: Callable[[ProbeContext], ProbeResult],
) -> ProbeDefinition:
    return ProbeDefinition(id=probe_id, category=category, run=handler)


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    value = size / 1024
    for unit in ("K", "M"):
        if value < 1024:
            return f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}G"


def _tls_domain(context: ProbeContext) -> str | None:
    try:
        record = context.registry.read_installation()
    except StateRegistryError:
        return None
    return record.tls_domain if record is not None else None


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


def _probe_service_process(context: ProbeContext) -> ProbeResult:
    pid = context.service.running_pid()
    if pid is None:
        return ProbeResult(
            id="service-process",
            category="service",
            status=ProbeStatus.RED,
            message="OpenSpeedTest NGINX process is NOT running",
            remediation=f"Start it with {context.config.startup_script} start",
        )
    return ProbeResult(
        id="service-process",
        category="service",
        status=ProbeStatus.GREEN,
        message=f"OpenSpeedTest NGINX process is running (PID: {pid})",
        data={"pid": pid},
    )


def _probe_port_listening(context: ProbeContext) -> ProbeResult:
    url = f"http://{context.internal_address}:{context.port}"
    if context.port_in_use(context.port):
        return ProbeResult(
            id="port-listening",
            category="ports",
            status=ProbeStatus.GREEN,
            message=f"Port {context.port} is open and listening on {context.internal_address}",
            details=(f"You can access OpenSpeedTest at: {url}",),
            data={"url": url},
        )
    return ProbeResult(
        id="port-listening",
        category="ports",
        status=ProbeStatus.RED,
        message=f"Port {context.port} is not listening on {context.internal_address}",
    )


def _probe_config(context: ProbeContext) -> ProbeResult:
    path = context.config.config_path
    if not path.is_file():
        return ProbeResult(
            id="config-valid",
            category="config",
            status=ProbeStatus.RED,
            message=f"Configuration file missing: {path}",
            remediation="Re-run the installation.",
        )
    valid, output = context.nginx.is_valid(path)
    if valid:
        return ProbeResult(
            id="config-valid",
            category="config",
            status=ProbeStatus.GREEN,
            message=f"Configuration file exists and is valid: {path}",
        )
    return ProbeResult(
        id="config-valid",
        category="config",
        status=ProbeStatus.RED,
        message=f"Configuration has errors: {path}",
        details=tuple(line for line in output.splitlines() if line.strip()),
    )


def _probe_error_log(context: ProbeContext) -> ProbeResult:
    path = context.config.error_log
    if not path.is_file():
        return ProbeResult(
            id="error-log",
            category="logs",
            status=ProbeStatus.GREEN,
            message="Error log not yet created",
        )
    size = path.stat().st_size
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    tail = tuple(lines[-ERROR_LOG_TAIL:])
    return ProbeResult(
        id="error-log",
        category="logs",
        status=ProbeStatus.YELLOW if tail else ProbeStatus.GREEN,
        message=f"Error log: {path} ({_format_size(size)})",
        details=tail,
        data={"size_bytes": size},
    )


def _probe_certificate(context: ProbeContext) -> ProbeResult:
    domain = _tls_domain(context) or ""
    paths = CertificatePaths.for_domain(context.config.acme.cert_root, domain)
    try:
        status = inspect_certificate(paths.fullchain, now=datetime.now(UTC))
    except TLSInspectionError as exc:
        return ProbeResult(
            id="tls-certificate",
            category="tls",
            status=ProbeStatus.RED,
            message=str(exc),
        )
    expiry = status.not_valid_after.date().isoformat()
    if status.expired:
        return ProbeResult(
            id="tls-certificate",
            category="tls",
            status=ProbeStatus.RED,
            message=f"Certificate for {domain} expired on {expiry}",
            remediation="Check the acme.sh renewal entry in the crontab.",
        )
    return ProbeResult(
        id="tls-certificate",
        category="tls",
        status=ProbeStatus.YELLOW if status.expires_soon else ProbeStatus.GREEN,
        message=(
            f"Certificate for {domain} valid until {expiry} "
            f"({status.days_remaining} day(s) remaining)"
        ),
    )


def _probe_resources(context: ProbeContext) -> ProbeResult:
    proc_root = context.config.proc_root
    cores = read_cpu_cores(proc_root)
    total = read_total_ram_mb(proc_root)
    free_ram = read_free_ram_mb(proc_root)
    free_disk = free_space_mb(context.install_path)
    required = context.config.required_space_mb
    details = (
        f"CPU cores: {cores}",
        f"Total RAM: {total}MB",
        f"Free RAM: {free_ram}MB",
        f"Disk space at {context.install_path}: {free_disk}MB free",
    )
    return ProbeResult(
        id="system-resources",
        category="system",
        status=ProbeStatus.GREEN if free_disk >= required else ProbeStatus.YELLOW,
        message="System Resources",
        details=details,
        data={
            "cpu_cores": cores,
            "total_ram_mb": total,
            "free_ram_mb": free_ram,
            "free_disk_mb": free_disk,
        },
    )


def _probe_installation_record(context: ProbeContext) -> ProbeResult:
    try:
        record = context.registry.read_installation()
    except StateRegistryError as exc:
        return ProbeResult(
            id="installation-record",
            category="state",
            status=ProbeStatus.RED,
            message=str(exc),
        )
    if record is None:
        return ProbeResult(
            id="installation-record",
            category="state",
            status=ProbeStatus.YELLOW,
            message="No installation record found.",
        )
    return ProbeResult(
        id="installation-record",
        category="state",
        status=ProbeStatus.GREEN,
        message=f"Installed {record.installed_at} on port {record.port}",
        data=record.to_dict(),
    )
