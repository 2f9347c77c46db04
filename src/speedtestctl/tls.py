"""Certificate inspection helpers used by diagnostics."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509

WARN_EXPIRY_DAYS = 14


class TLSInspectionError(RuntimeError):
    """Raised when a certificate cannot be loaded."""


@dataclass(frozen=True, slots=True)
class CertificateStatus:
    """Expiry details for an installed certificate."""

    path: Path
    subject: str
    not_valid_before: datetime
    not_valid_after: datetime
    now: datetime

    @property
    def expired(self) -> bool:
        """Return ``True`` when the certificate is no longer valid."""
        return self.not_valid_after <= self.now

    @property
    def days_remaining(self) -> int:
        """Return whole days until expiry (negative once expired)."""
        return (self.not_valid_after - self.now).days

    @property
    def expires_soon(self) -> bool:
        """Return ``True`` inside the warning window."""
        return not self.expired and self.days_remaining <= WARN_EXPIRY_DAYS


def inspect_certificate(path: Path, *, now: datetime | None = None) -> CertificateStatus:
    """Load the first certificate in *path* and report its validity window."""
    try:
        certificate = _load_certificate(path)
    except (OSError, ValueError) as exc:
        raise TLSInspectionError(f"Failed to load certificate {path}: {exc}") from exc
    return CertificateStatus(
        path=path,
        subject=certificate.subject.rfc4514_string(),
        not_valid_before=_as_utc(certificate.not_valid_before_utc),
        not_valid_after=_as_utc(certificate.not_valid_after_utc),
        now=_as_utc(now or datetime.now(UTC)),
    )


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = ["CertificateStatus", "TLSInspectionError", "inspect_certificate"]
