"""Tests for certificate issuance, installation and renewal scheduling."""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import pytest

from speedtestctl.certificates import (
    CertificateManager,
    CertificatePaths,
    ChallengeStrategy,
    DnsProvider,
    TLSRequest,
    validate_domain,
)
from speedtestctl.errors import DependencyError, IssuanceError, UnsupportedProviderError
from speedtestctl.orchestrator import tls_request_from_options
from speedtestctl.providers.acme import AcmeClient


def _write_acme(home: Path, *, issue_rc: int = 0, issue_output: str = "") -> Path:
    """Install a stand-in acme.sh that records its arguments."""
    home.mkdir(parents=True, exist_ok=True)
    script = home / "acme.sh"
    script.write_text(
        "#!/bin/sh\n"
        'echo "$@" >> "$(dirname "$0")/calls.log"\n'
        'env | grep -E "^(CF_|DO_)" >> "$(dirname "$0")/env.log"\n'
        'mode=""; key=""; chain=""\n'
        'while [ $# -gt 0 ]; do\n'
        '  case "$1" in\n'
        "    --issue) mode=issue ;;\n"
        "    --renew) mode=renew ;;\n"
        "    --install-cert) mode=install ;;\n"
        '    --key-file) shift; key="$1" ;;\n'
        '    --fullchain-file) shift; chain="$1" ;;\n'
        "  esac\n"
        "  shift\n"
        "done\n"
        'if [ "$mode" = issue ]; then\n'
        f"  echo '{issue_output}'\n"
        f"  exit {issue_rc}\n"
        "fi\n"
        'if [ "$mode" = install ]; then\n'
        '  echo key > "$key"; echo chain > "$chain"\n'
        "fi\n"
        "exit 0\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    return script


def _calls(home: Path) -> list[str]:
    log = home / "calls.log"
    return log.read_text(encoding="utf-8").splitlines() if log.exists() else []


class RecordingPackages:
    """Package manager double recording installs."""

    def __init__(self, *, fail: bool = False) -> None:
        """Create the double; *fail* makes every install raise."""
        self.fail = fail
        self.installed: list[str] = []

    def install(self, package: str) -> None:
        """Record or reject *package*."""
        if self.fail:
            raise DependencyError(f"Failed to install {package.upper()}")
        self.installed.append(package)


class ConfirmPrompter:
    """Prompter answering every confirmation with a fixed value."""

    def __init__(self, answer: bool) -> None:
        """Store the answer."""
        self.answer = answer
        self.questions: list[str] = []

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """Return the configured answer."""
        self.questions.append(message)
        return self.answer

    def ask(self, message: str, *, default: str = "") -> str:
        """Return the default."""
        return default

    def pause(self) -> None:
        """Do nothing."""


def _manager(
    tmp_path: Path,
    *,
    issue_rc: int = 0,
    issue_output: str = "",
    confirm: bool = True,
    packages: RecordingPackages | None = None,
    guard_events: list[str] | None = None,
) -> CertificateManager:
    home = tmp_path / "acme"
    _write_acme(home, issue_rc=issue_rc, issue_output=issue_output)
    events = guard_events if guard_events is not None else []

    @contextmanager
    def guard() -> Iterator[None]:
        events.append("stop")
        try:
            yield
        finally:
            events.append("start")

    return CertificateManager(
        acme=AcmeClient(home=home),
        packages=packages or RecordingPackages(),  # type: ignore[arg-type]
        prompter=ConfirmPrompter(confirm),
        cert_root=tmp_path / "ssl",
        crontab=tmp_path / "crontabs" / "root",
        port80_guard=guard,
    )


def test_validate_domain_normalises() -> None:
    """Domains are lower-cased and stripped of a trailing dot."""
    assert validate_domain(" Speed.Example.COM. ") == "speed.example.com"


@pytest.mark.parametrize("domain", ["", "localhost", "-bad.example.com", "a..b.com", "x.1"])
def test_validate_domain_rejects(domain: str) -> None:
    """Invalid names raise an issuance error."""
    with pytest.raises(IssuanceError):
        validate_domain(domain)


def test_strategy_and_provider_parsing() -> None:
    """Menu numbers, keys and hooks map onto the enumerations."""
    assert ChallengeStrategy.parse("1") is ChallengeStrategy.HTTP
    assert ChallengeStrategy.parse("dns-api") is ChallengeStrategy.DNS_API
    assert ChallengeStrategy.parse("DNS_MANUAL") is ChallengeStrategy.DNS_MANUAL
    assert DnsProvider.parse("1") is DnsProvider.CLOUDFLARE
    assert DnsProvider.parse("porkbun") is DnsProvider.PORKBUN
    assert DnsProvider.parse("dns_dgon") is DnsProvider.DIGITALOCEAN
    with pytest.raises(UnsupportedProviderError):
        ChallengeStrategy.parse("tls-alpn")
    with pytest.raises(UnsupportedProviderError):
        DnsProvider.parse("42")


def test_dns_api_requires_credentials() -> None:
    """Missing provider credentials are reported by name."""
    with pytest.raises(IssuanceError, match="CF_Account_ID"):
        TLSRequest(
            domain="speed.example.com",
            strategy=ChallengeStrategy.DNS_API,
            provider=DnsProvider.CLOUDFLARE,
            credentials={"CF_Token": "token"},
        )
    with pytest.raises(UnsupportedProviderError):
        TLSRequest(domain="speed.example.com", strategy=ChallengeStrategy.DNS_API)


def test_tls_request_from_environment() -> None:
    """Command-line options read credentials from acme.sh variable names."""
    env = {"DO_API_KEY": "secret", "UNRELATED": "x"}

    request = tls_request_from_options("Speed.Example.com", "dns-api", "digitalocean", env)

    assert request.domain == "speed.example.com"
    assert request.provider is DnsProvider.DIGITALOCEAN
    assert dict(request.credentials) == {"DO_API_KEY": "secret"}


def test_prepare_installs_packages_and_client(tmp_path: Path) -> None:
    """Preparation installs the helper packages; an existing client is kept."""
    packages = RecordingPackages()
    manager = _manager(tmp_path, packages=packages)

    manager.prepare()

    assert packages.installed == ["socat", "ca-bundle"]
    assert _calls(tmp_path / "acme") == []


def test_prepare_package_failure_is_issuance_error(tmp_path: Path) -> None:
    """Package failures during preparation allow an HTTP fallback."""
    manager = _manager(tmp_path, packages=RecordingPackages(fail=True))

    with pytest.raises(IssuanceError, match="SOCAT"):
        manager.prepare()


def test_http_challenge_issues_inside_guard(tmp_path: Path) -> None:
    """The standalone challenge runs while port 80 is released."""
    events: list[str] = []
    manager = _manager(tmp_path, guard_events=events)
    request = TLSRequest(domain="speed.example.com", strategy=ChallengeStrategy.HTTP)

    paths = manager.issue(request)

    assert events == ["stop", "start"]
    assert paths == CertificatePaths.for_domain(tmp_path / "ssl", "speed.example.com")
    assert paths.key.read_text(encoding="utf-8") == "key\n"
    calls = _calls(tmp_path / "acme")
    assert "--standalone --httpport 80" in calls[0]
    assert "--server letsencrypt -d speed.example.com" in calls[0]
    assert "--reloadcmd /etc/init.d/nginx_speedtest reload" in calls[1]


def test_http_challenge_failure_restarts_service(tmp_path: Path) -> None:
    """A failed challenge still releases the guard."""
    events: list[str] = []
    manager = _manager(tmp_path, issue_rc=1, issue_output="Verify error", guard_events=events)
    request = TLSRequest(domain="speed.example.com", strategy=ChallengeStrategy.HTTP)

    with pytest.raises(IssuanceError, match="Verify error"):
        manager.issue(request)

    assert events == ["stop", "start"]
    assert len(_calls(tmp_path / "acme")) == 1


def test_already_issued_exit_code_is_success(tmp_path: Path) -> None:
    """acme.sh exit 2 (not due for renewal) continues to installation."""
    manager = _manager(tmp_path, issue_rc=2)
    request = TLSRequest(domain="speed.example.com", strategy=ChallengeStrategy.HTTP)

    paths = manager.issue(request)

    assert paths.fullchain.is_file()


def test_dns_api_passes_credentials(tmp_path: Path) -> None:
    """Provider credentials reach acme.sh through its environment."""
    manager = _manager(tmp_path)
    request = TLSRequest(
        domain="speed.example.com",
        strategy=ChallengeStrategy.DNS_API,
        provider=DnsProvider.CLOUDFLARE,
        credentials={"CF_Token": "token", "CF_Account_ID": "acct"},
    )

    manager.issue(request)

    assert "--dns dns_cf" in _calls(tmp_path / "acme")[0]
    env_log = (tmp_path / "acme" / "env.log").read_text(encoding="utf-8")
    assert "CF_Token=token" in env_log
    assert "CF_Account_ID=acct" in env_log


def test_manual_dns_requires_confirmation(tmp_path: Path) -> None:
    """The manual challenge prints instructions and renews after confirmation."""
    manager = _manager(tmp_path, issue_output="TXT value: abc123")
    request = TLSRequest(domain="speed.example.com", strategy=ChallengeStrategy.DNS_MANUAL)

    manager.issue(request)

    calls = _calls(tmp_path / "acme")
    assert "--issue" in calls[0]
    assert "--yes-I-know-dns-manual-mode-enough-go-ahead-please" in calls[0]
    assert "--renew" in calls[1]


def test_manual_dns_declined(tmp_path: Path) -> None:
    """Declining the propagation check aborts issuance."""
    manager = _manager(tmp_path, confirm=False)
    request = TLSRequest(domain="speed.example.com", strategy=ChallengeStrategy.DNS_MANUAL)

    with pytest.raises(IssuanceError, match="not confirmed"):
        manager.issue(request)


def test_renewal_scheduling_is_idempotent(tmp_path: Path) -> None:
    """The renewal entry is added once and removed cleanly."""
    manager = _manager(tmp_path)
    crontab = tmp_path / "crontabs" / "root"
    crontab.parent.mkdir(parents=True)
    crontab.write_text("*/5 * * * * /usr/bin/gl_health\n", encoding="utf-8")

    assert manager.schedule_renewal() is True
    assert manager.schedule_renewal() is False

    lines = crontab.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "*/5 * * * * /usr/bin/gl_health"
    assert sum("acme.sh" in line for line in lines) == 1
    assert lines[1].startswith("0 0 * * * ")
    assert "--cron" in lines[1]

    assert manager.unschedule_renewal() is True
    assert manager.unschedule_renewal() is False
    assert crontab.read_text(encoding="utf-8") == "*/5 * * * * /usr/bin/gl_health\n"


def test_remove_deletes_material(tmp_path: Path) -> None:
    """Removing a domain drops its directory and the acme.sh entry."""
    manager = _manager(tmp_path)
    paths = manager.install("speed.example.com")
    assert paths.directory.is_dir()

    manager.remove("speed.example.com")

    assert not paths.directory.exists()
    assert "--remove -d speed.example.com" in _calls(tmp_path / "acme")[-1]
