"""Certificate issuance, installation and renewal scheduling.

Three challenge strategies are supported: a standalone HTTP challenge on
port 80, a DNS challenge through one of the provider APIs acme.sh ships
hooks for, and a manual DNS challenge where the operator creates the TXT
record. Every failure surfaces as :class:`IssuanceError` so the caller can
fall back to a plain HTTP installation.
"""
from __future__ import annotations

import re
import shutil
from collections.abc import Callable, Iterator, Mapping
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType

from .errors import DependencyError, IssuanceError, UnsupportedProviderError
from .prompts import Prompter
from .providers.acme import CRON_MARKER, AcmeClient
from .providers.opkg import PackageManager

MANUAL_DNS_FLAG = "--yes-I-know-dns-manual-mode-enough-go-ahead-please"
DOMAIN_PATTERN = re.compile(
    r"^(?=.{1,253}$)(?:(?!-)[A-Za-z0-9-]{1,63}(?<!-)\.)+[A-Za-z]{2,63}$"
)


class ChallengeStrategy(str, Enum):
    """How domain ownership is proven."""

    HTTP = "http"
    DNS_API = "dns-api"
    DNS_MANUAL = "dns-manual"

    @classmethod
    def parse(cls, value: str) -> ChallengeStrategy:
        """Return the strategy for *value* (name, value or menu number)."""
        text = value.strip().lower()
        numbered = {"1": cls.HTTP, "2": cls.DNS_API, "3": cls.DNS_MANUAL}
        if text in numbered:
            return numbered[text]
        for member in cls:
            if text in {member.value, member.name.lower()}:
                return member
        raise UnsupportedProviderError(f"Unsupported challenge strategy: {value!r}")


class DnsProvider(Enum):
    """DNS providers with an acme.sh API hook."""

    CLOUDFLARE = ("cloudflare", "Cloudflare", "dns_cf", ("CF_Token", "CF_Account_ID"))
    DIGITALOCEAN = ("digitalocean", "DigitalOcean", "dns_dgon", ("DO_API_KEY",))
    GODADDY = ("godaddy", "GoDaddy", "dns_gd", ("GD_Key", "GD_Secret"))
    ROUTE53 = (
        "route53",
        "AWS Route 53",
        "dns_aws",
        ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY"),
    )
    NAMECHEAP = (
        "namecheap",
        "Namecheap",
        "dns_namecheap",
        ("NAMECHEAP_USERNAME", "NAMECHEAP_API_KEY"),
    )
    LINODE = ("linode", "Linode", "dns_linode_v4", ("LINODE_V4_API_KEY",))
    VULTR = ("vultr", "Vultr", "dns_vultr", ("VULTR_API_KEY",))
    DUCKDNS = ("duckdns", "DuckDNS", "dns_duckdns", ("DuckDNS_Token",))
    PORKBUN = (
        "porkbun",
        "Porkbun",
        "dns_porkbun",
        ("PORKBUN_API_KEY", "PORKBUN_SECRET_API_KEY"),
    )

    def __init__(
        self,
        key: str,
        label: str,
        hook: str,
        credential_keys: tuple[str, ...],
    ) -> None:
        """Unpack the provider profile."""
        self.key = key
        self.label = label
        self.hook = hook
        self.credential_keys = credential_keys

    @classmethod
    def parse(cls, value: str) -> DnsProvider:
        """Return the provider for *value* (key or 1-based menu number)."""
        text = value.strip().lower()
        members = list(cls)
        if text.isdigit() and 1 <= int(text) <= len(members):
            return members[int(text) - 1]
        for member in members:
            if text in {member.key, member.name.lower(), member.hook}:
                return member
        raise UnsupportedProviderError(f"Unsupported DNS provider: {value!r}")


def validate_domain(domain: str) -> str:
    """Return *domain* normalised, raising when it is not a valid FQDN."""
    candidate = domain.strip().rstrip(".").lower()
    if not candidate or not DOMAIN_PATTERN.match(candidate):
        raise IssuanceError(f"Invalid domain name: {domain!r}")
    return candidate


@dataclass(frozen=True)
class TLSRequest:
    """Operator input for a certificate request."""

    domain: str
    strategy: ChallengeStrategy
    provider: DnsProvider | None = None
    credentials: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate the domain and provider credentials."""
        object.__setattr__(self, "domain", validate_domain(self.domain))
        object.__setattr__(self, "credentials", MappingProxyType(dict(self.credentials)))
        if self.strategy is ChallengeStrategy.DNS_API:
            if self.provider is None:
                raise UnsupportedProviderError("A DNS provider is required for dns-api.")
            missing = [
                key for key in self.provider.credential_keys
                if not str(self.credentials.get(key, "")).strip()
            ]
            if missing:
                raise IssuanceError(
                    f"Missing {self.provider.label} credentials: {', '.join(missing)}"
                )


@dataclass(frozen=True, slots=True)
class CertificatePaths:
    """Installed certificate material for a domain."""

    domain: str
    directory: Path
    key: Path
    fullchain: Path

    @classmethod
    def for_domain(cls, cert_root: Path, domain: str) -> CertificatePaths:
        """Return the canonical layout under *cert_root*."""
        directory = cert_root / domain
        return cls(
            domain=domain,
            directory=directory,
            key=directory / "privkey.pem",
            fullchain=directory / "fullchain.pem",
        )


Port80Guard = Callable[[], AbstractContextManager[None]]


@contextmanager
def _no_guard() -> Iterator[None]:
    yield


@dataclass
class CertificateManager:
    """Obtain, install and renew certificates through acme.sh."""

    acme: AcmeClient
    packages: PackageManager
    prompter: Prompter
    cert_root: Path = Path("/etc/nginx/ssl")
    crontab: Path = Path("/etc/crontabs/root")
    required_packages: tuple[str, ...] = ("socat", "ca-bundle")
    reload_command: str = "/etc/init.d/nginx_speedtest reload"
    port80_guard: Port80Guard = _no_guard
    notify: Callable[[str], None] = field(default=lambda _message: None)

    def prepare(self) -> None:
        """Install the client and the packages it needs."""
        try:
            for package in self.required_packages:
                self.packages.install(package)
        except DependencyError as exc:
            raise IssuanceError(str(exc), hint=exc.hint) from exc
        self.acme.install()

    def issue(self, request: TLSRequest) -> CertificatePaths:
        """Issue and install a certificate for *request*."""
        if request.strategy is ChallengeStrategy.HTTP:
            self._issue_http(request)
        elif request.strategy is ChallengeStrategy.DNS_API:
            self._issue_dns_api(request)
        elif request.strategy is ChallengeStrategy.DNS_MANUAL:
            self._issue_dns_manual(request)
        else:  # pragma: no cover - closed enumeration
            raise UnsupportedProviderError(f"Unsupported strategy: {request.strategy}")
        return self.install(request.domain)

    def install(self, domain: str) -> CertificatePaths:
        """Copy the issued certificate for *domain* into the nginx layout."""
        paths = CertificatePaths.for_domain(self.cert_root, domain)
        paths.directory.mkdir(parents=True, exist_ok=True)
        self.acme.install_cert(
            domain,
            key_file=paths.key,
            fullchain_file=paths.fullchain,
            reload_command=self.reload_command,
        )
        if not paths.key.is_file() or not paths.fullchain.is_file():
            raise IssuanceError(f"Certificate files were not installed under {paths.directory}")
        return paths

    def schedule_renewal(self, paths: CertificatePaths | None = None) -> bool:
        """Register the daily renewal job; return ``False`` if it already exists."""
        existing = self._read_crontab()
        if any(self._is_renewal_line(line) for line in existing):
            return False
        existing.append(self.acme.cron_line())
        self._write_crontab(existing)
        if paths is not None:
            self.notify(f"Renewal scheduled for {paths.domain}.")
        return True

    def unschedule_renewal(self) -> bool:
        """Remove the renewal job; return ``True`` when a line was removed."""
        existing = self._read_crontab()
        kept = [line for line in existing if not self._is_renewal_line(line)]
        if len(kept) == len(existing):
            return False
        self._write_crontab(kept)
        return True

    def remove(self, domain: str) -> None:
        """Delete installed material for *domain*."""
        self.acme.remove(domain)
        paths = CertificatePaths.for_domain(self.cert_root, domain)
        if paths.directory.is_dir():
            shutil.rmtree(paths.directory)

    # Strategies -------------------------------------------------------
    def _issue_http(self, request: TLSRequest) -> None:
        self.notify("Issuing certificate with the HTTP challenge (port 80)...")
        with self.port80_guard():
            self.acme.issue(request.domain, ["--standalone", "--httpport", "80"])

    def _issue_dns_api(self, request: TLSRequest) -> None:
        provider = request.provider
        if provider is None:  # pragma: no cover - enforced by TLSRequest
            raise UnsupportedProviderError("A DNS provider is required for dns-api.")
        self.notify(f"Issuing certificate through the {provider.label} DNS API...")
        env = {key: str(request.credentials[key]) for key in provider.credential_keys}
        self.acme.issue(request.domain, ["--dns", provider.hook], env=env)

    def _issue_dns_manual(self, request: TLSRequest) -> None:
        mode = ["--dns", MANUAL_DNS_FLAG]
        first = self.acme.issue(request.domain, mode, check=False)
        instructions = (first.stdout or first.stderr or "").strip()
        if instructions:
            self.notify(instructions)
        confirmed = self.prompter.confirm(
            f"Create the TXT record shown above for _acme-challenge.{request.domain}. "
            "Has it propagated?",
            default=False,
        )
        if not confirmed:
            raise IssuanceError("Manual DNS challenge was not confirmed.")
        self.acme.renew(request.domain, mode)

    # Crontab ----------------------------------------------------------
    def _is_renewal_line(self, line: str) -> bool:
        return "acme.sh" in line and CRON_MARKER in line

    def _read_crontab(self) -> list[str]:
        try:
            return self.crontab.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []

    def _write_crontab(self, lines: list[str]) -> None:
        self.crontab.parent.mkdir(parents=True, exist_ok=True)
        content = "\n".join(lines)
        self.crontab.write_text(f"{content}\n" if content else "", encoding="utf-8")


__all__ = [
    "CertificateManager",
    "CertificatePaths",
    "ChallengeStrategy",
    "DnsProvider",
    "TLSRequest",
    "validate_domain",
]
