"""Data models and helpers for diagnostic probes."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..providers.nginx import NginxProvider
    from ..providers.service import ServiceController
    from ..state.registry import StateRegistry


class ProbeStatus(str, Enum):
    """High-level outcome for a probe."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is ProbeStatus.RED


ProbeCategory = Literal["service", "ports", "config", "logs", "tls", "system", "state"]

PROBE_CATEGORY_VALUES: tuple[ProbeCategory, ...] = (
    "service",
    "ports",
    "config",
    "logs",
    "tls",
    "system",
    "state",
)


@dataclass(slots=True, frozen=True)
class ProbeContext:
    """Execution context provided to probes."""

    config: AppConfig
    service: ServiceController
    nginx: NginxProvider
    registry: StateRegistry
    internal_address: str
    port: int
    install_path: Path
    port_in_use: Callable[[int], bool]


@dataclass(slots=True, frozen=True)
class ProbeResult:
    """Outcome of running a probe."""

    id: str
    category: ProbeCategory
    status: ProbeStatus
    message: str
    remediation: str | None = None
    details: Sequence[str] = field(default_factory=tuple)
    duration_ms: int | None = None
    data: Mapping[str, Any] | None = None

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the probe result represents a failure."""
        return self.status.is_failure


@dataclass(slots=True, frozen=True)
class ProbeDefinition:
    """Metadata + callable for a probe."""

    id: str
    category: ProbeCategory
    run: Callable[[ProbeContext], ProbeResult]


@dataclass(slots=True, frozen=True)
class DoctorSummary:
    """Aggregated summary derived from probe results."""

    status: ProbeStatus
    totals: Mapping[ProbeStatus, int]


@dataclass(slots=True, frozen=True)
class DoctorReport:
    """Complete report for a diagnostics run."""

    results: Sequence[ProbeResult]
    summary: DoctorSummary
    metadata: Mapping[str, Any] | None = None


STATUS_ORDER: Mapping[ProbeStatus, int] = {
    ProbeStatus.GREEN: 0,
    ProbeStatus.YELLOW: 1,
    ProbeStatus.RED: 2,
}


def aggregate_results(results: Iterable[ProbeResult]) -> DoctorSummary:
    """Compute the overall status as the worst individual status."""
    totals: dict[ProbeStatus, int] = {
        ProbeStatus.GREEN: 0,
        ProbeStatus.YELLOW: 0,
        ProbeStatus.RED: 0,
    }
    worst_status = ProbeStatus.GREEN
    for result in results:
        totals[result.status] += 1
        if STATUS_ORDER[result.status] > STATUS_ORDER[worst_status]:
            worst_status = result.status
    return DoctorSummary(status=worst_status, totals=totals)


def build_report(
    results: Sequence[ProbeResult],
    metadata: Mapping[str, Any] | None = None,
) -> DoctorReport:
    """Create a full DoctorReport from probe results."""
    summary = aggregate_results(results)
    return DoctorReport(results=tuple(results), summary=summary, metadata=metadata)
