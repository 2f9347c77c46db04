"""Diagnostics infrastructure."""

from __future__ import annotations

from .engine import DoctorEngine, run_probes
from .models import (
    PROBE_CATEGORY_VALUES,
    DoctorReport,
    DoctorSummary,
    ProbeCategory,
    ProbeContext,
    ProbeDefinition,
    ProbeResult,
    ProbeStatus,
    aggregate_results,
    build_report,
)
from .probes import collect_probes

__all__ = [
    "DoctorEngine",
    "DoctorReport",
    "DoctorSummary",
    "ProbeCategory",
    "PROBE_CATEGORY_VALUES",
    "ProbeContext",
    "ProbeDefinition",
    "ProbeResult",
    "ProbeStatus",
    "aggregate_results",
    "build_report",
    "collect_probes",
    "run_probes",
]
