"""End-to-end install, diagnose and uninstall flows against stand-in tools."""
from __future__ import annotations

import io
import subprocess
from collections.abc import Sequence
from pathlib import Path

import pytest
from rich.console import Console

from speedtestctl.certificates import ChallengeStrategy, TLSRequest
from speedtestctl.config import load_config
from speedtestctl.doctor import ProbeStatus
from speedtestctl.errors import InterruptError, IssuanceError, StartupError
from speedtestctl.fetcher import DownloadSource
from speedtestctl.orchestrator import (
    Orchestrator,
    Runtime,
    build_runtime,
    listens_on,
    port80_guard,
)
from speedtestctl.session import Mode
from speedtestctl.updater import SelfUpdater, staged_path

FAKE_PID = 424242

NGINX_STUB = """#!/bin/sh
if grep -q BROKEN "$3"; then
  echo "nginx: [emerg] unknown directive" >&2
  exit 1
fi
echo "nginx: configuration file $3 test is successful" >&2
exit 0
"""

INTERRUPTING_NGINX_STUB = """#!/bin/sh
kill -TERM $PPID
sleep 2
exit 0
"""

ACME_STUB = """#!/bin/sh
echo "$@" >> "$(dirname "$0")/calls.log"
case "$*" in
  *--issue*) echo "Verify error: connection refused"; exit 1 ;;
esac
exit 0
"""

CONTROL_TEMPLATE = """#!/bin/sh
echo "$1" >> '{{ pid_file }}.calls'
case "$1" in
  start) echo %d > '{{ pid_file }}' ;;
  stop) rm -f '{{ pid_file }}' ;;
esac
exit 0
""" % FAKE_PID


class ScriptedPrompter:
    """Prompter with canned confirmations."""

    def __init__(self, *confirmations: bool) -> None:
        """Store the answers to hand out in order."""
        self.confirmations = list(confirmations)
        self.questions: list[str] = []

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """Return the next scripted answer, declining once exhausted."""
        self.questions.append(message)
        return self.confirmations.pop(0) if self.confirmations else False

    def ask(self, message: str, *, default: str = "") -> str:
        """Return the default."""
        self.questions.append(message)
        return default

    def pause(self) -> None:
        """Do nothing."""


class RecordingPackages:
    """Package manager double."""

    def __init__(self) -> None:
        """Start with nothing installed."""
        self.installed: list[str] = []

    def install(self, package: str) -> None:
        """Record *package*."""
        self.installed.append(package)


def _spawner(args: Sequence[str]) -> subprocess.Popen[str]:
    if args[0] == "timeout":
        script = f"head -c 150000 /dev/zero > '{args[-2]}'"
    elif args[0] == "unzip":
        script = (
            f"mkdir -p '{args[-1]}/Speed-Test-main' && "
            f"echo '<html></html>' > '{args[-1]}/Speed-Test-main/index.html'"
        )
    else:
        script = "exit 99"
    return subprocess.Popen(  # noqa: S603, S607
        ["sh", "-c", script],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        text=True,
    )


def _executable(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")
    path.chmod(0o755)
    return path


def _runtime(
    tmp_path: Path,
    prompter: ScriptedPrompter,
    *,
    alive: set[int] | None = None,
    nginx_stub: str = NGINX_STUB,
) -> Runtime:
    proc = tmp_path / "proc"
    proc.mkdir(exist_ok=True)
    (proc / "cpuinfo").write_text("processor\t: 0\nprocessor\t: 1\n", encoding="utf-8")
    (proc / "meminfo").write_text("MemTotal:       524288 kB\n", encoding="utf-8")
    templates = tmp_path / "templates"
    (templates / "service").mkdir(parents=True, exist_ok=True)
    (templates / "service" / "initd.j2").write_text(CONTROL_TEMPLATE, encoding="utf-8")
    _executable(tmp_path / "acme" / "acme.sh", ACME_STUB)
    nginx = _executable(tmp_path / "bin" / "nginx", nginx_stub)

    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "install_dir": str(tmp_path / "www2"),
            "config_path": str(tmp_path / "nginx" / "nginx_openspeedtest.conf"),
            "startup_script": str(tmp_path / "init.d" / "nginx_speedtest"),
            "logrotate_script": str(tmp_path / "cron.daily" / "logrotate"),
            "error_log": str(tmp_path / "log" / "error.log"),
            "pid_file": str(tmp_path / "run" / "nginx.pid"),
            "lock_file": str(tmp_path / "run" / "install.lock"),
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "templates_dir": str(templates),
            "proc_root": str(proc),
            "required_space_mb": 1,
            "nginx": {"bin": str(nginx), "stock_service": str(tmp_path / "stock-nginx")},
            "acme": {
                "home": str(tmp_path / "acme"),
                "cert_root": str(tmp_path / "ssl"),
                "crontab": str(tmp_path / "crontabs" / "root"),
            },
            "persistence": {
                "manifest": str(tmp_path / "sysupgrade.conf"),
                "rc_dir": str(tmp_path / "rc.d"),
            },
            "service": {"start_attempts": 2, "poll_interval": 0.01},
            "storage": {"mounts_file": str(tmp_path / "mounts")},
            "update": {"download_path": str(tmp_path / "update.new")},
        },
    )
    for directory in ("nginx", "run", "log"):
        (tmp_path / directory).mkdir(exist_ok=True)
    live = {FAKE_PID} if alive is None else alive
    runtime = build_runtime(
        config,
        prompter=prompter,
        console=Console(file=io.StringIO(), width=120),
        err_console=Console(file=io.StringIO(), width=120),
    )
    runtime.packages = RecordingPackages()  # type: ignore[assignment]
    runtime.spawner = _spawner
    runtime.which = lambda name: f"/usr/bin/{name}"
    runtime.free_mb = lambda _path: 1000
    runtime.address = lambda: "192.168.8.1"
    runtime.supervised = lambda: False
    runtime.is_alive = lambda pid: pid in live
    return runtime


def _script_calls(runtime: Runtime) -> list[str]:
    calls = runtime.config.pid_file.with_name(f"{runtime.config.pid_file.name}.calls")
    return calls.read_text(encoding="utf-8").split() if calls.exists() else []


def _output(runtime: Runtime) -> str:
    return runtime.console.file.getvalue()  # type: ignore[attr-defined]


def _install(runtime: Runtime, *, tls: TLSRequest | None = None) -> Orchestrator:
    orchestrator = Orchestrator(runtime)
    session = orchestrator.new_session(Mode.INSTALL)
    session.tls = tls
    orchestrator.install(session, source=DownloadSource.OFFICIAL, offer_tls=False)
    return orchestrator


@pytest.mark.mutation_timeout
def test_http_install_commits_record(tmp_path: Path) -> None:
    """A plain install writes config, service, rotation and the record."""
    runtime = _runtime(tmp_path, ScriptedPrompter(True))

    _install(runtime)

    config = runtime.config
    text = config.config_path.read_text(encoding="utf-8")
    assert "listen 8888;" in text
    assert str(tmp_path / "www2" / "Speed-Test-main") in text
    assert "worker_processes  2;" in text
    assert config.startup_script.stat().st_mode & 0o777 == 0o755
    assert config.logrotate_script.is_file()
    assert not config.config_backup.exists()
    assert not config.lock_file.exists()
    assert _script_calls(runtime) == ["enable", "start"]

    record = runtime.registry.read_installation()
    assert record is not None
    assert record.port == 8888
    assert record.tls_domain is None
    assert record.persistent is True
    manifest = config.persistence.manifest.read_text(encoding="utf-8").splitlines()
    assert str(tmp_path / "www2") in manifest
    assert "Access OpenSpeedTest at: http://192.168.8.1:8888" in _output(runtime)


@pytest.mark.mutation_timeout
def test_failed_certificate_falls_back_to_http(tmp_path: Path) -> None:
    """An issuance failure leaves a working HTTP install and no TLS record."""
    runtime = _runtime(tmp_path, ScriptedPrompter(False))
    request = TLSRequest(domain="speed.example.com", strategy=ChallengeStrategy.HTTP)

    _install(runtime, tls=request)

    record = runtime.registry.read_installation()
    assert record is not None
    assert record.tls_domain is None
    assert record.renewal_scheduled is False
    text = runtime.config.config_path.read_text(encoding="utf-8")
    assert "ssl_certificate" not in text
    assert runtime.packages.installed == ["socat", "ca-bundle"]  # type: ignore[attr-defined]
    acme_calls = (tmp_path / "acme" / "calls.log").read_text(encoding="utf-8")
    assert "--issue" in acme_calls
    assert "--install-cert" not in acme_calls
    assert _script_calls(runtime) == ["enable", "start"]
    assert "Falling back to the HTTP-only configuration." in _output(runtime)
    assert not (tmp_path / "crontabs" / "root").exists()


@pytest.mark.mutation_timeout
def test_start_failure_rolls_back(tmp_path: Path) -> None:
    """Stages are unwound newest-first when the service never comes up."""
    runtime = _runtime(tmp_path, ScriptedPrompter(), alive=set())
    config = runtime.config

    with pytest.raises(StartupError):
        _install(runtime)

    assert _script_calls(runtime) == ["enable", "start", "stop", "disable"]
    assert not config.startup_script.exists()
    assert not config.logrotate_script.exists()
    assert not config.config_path.exists()
    assert not config.lock_file.exists()
    assert runtime.registry.read_installation() is None
    assert "Stopped after stage 'config'." in _output(runtime)
    log = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8")
    assert "after config: " in log


def test_diagnose_after_install(tmp_path: Path) -> None:
    """Diagnostics see the running service and the valid configuration."""
    runtime = _runtime(tmp_path, ScriptedPrompter())
    orchestrator = _install(runtime)

    report = orchestrator.diagnose(orchestrator.new_session(Mode.DIAGNOSE))

    results = {result.id: result for result in report.results}
    assert results["service-process"].status is ProbeStatus.GREEN
    assert results["config-valid"].status is ProbeStatus.GREEN
    assert results["installation-record"].status is ProbeStatus.GREEN
    assert report.metadata is not None
    assert report.metadata["port"] == 8888


@pytest.mark.mutation_timeout
def test_uninstall_removes_artifacts(tmp_path: Path) -> None:
    """Uninstall stops the service and deletes everything it recorded."""
    runtime = _runtime(tmp_path, ScriptedPrompter(False, True))
    orchestrator = _install(runtime)
    config = runtime.config

    removed = orchestrator.uninstall(orchestrator.new_session(Mode.UNINSTALL))

    assert removed is not None
    assert str(config.startup_script) in removed
    assert not (tmp_path / "www2").exists()
    assert not config.config_path.exists()
    assert not config.logrotate_script.exists()
    assert not config.pid_file.exists()
    assert runtime.registry.read_installation() is None
    assert _script_calls(runtime)[-2:] == ["stop", "disable"]


def test_uninstall_cancelled(tmp_path: Path) -> None:
    """Declining the confirmation changes nothing."""
    runtime = _runtime(tmp_path, ScriptedPrompter(False, False))
    orchestrator = _install(runtime)

    assert orchestrator.uninstall(orchestrator.new_session(Mode.UNINSTALL)) is None
    assert runtime.config.startup_script.exists()
    assert runtime.registry.read_installation() is not None


@pytest.mark.mutation_timeout
def test_interrupt_during_validation_restores_config(tmp_path: Path) -> None:
    """A signal while the new config is validated restores the old file and the lock."""
    runtime = _runtime(tmp_path, ScriptedPrompter(), nginx_stub=INTERRUPTING_NGINX_STUB)
    config = runtime.config
    original = "# previous configuration\nevents {}\n"
    config.config_path.write_text(original, encoding="utf-8")

    with pytest.raises(InterruptError):
        _install(runtime)

    assert config.config_path.read_text(encoding="utf-8") == original
    assert not config.lock_file.exists()
    assert not config.pid_file.exists()
    assert not config.startup_script.exists()
    assert runtime.registry.read_installation() is None


PORT_80_TABLE = (
    "  sl  local_address rem_address   st tx_queue rx_queue\n"
    "   0: 00000000:0050 00000000:0000 0A 00000000:00000000\n"
)


class FakeService:
    """Managed service double listening on the ports of its config."""

    def __init__(self, config_path: Path, bound: set[int], *, running: bool = True) -> None:
        """Track which of *bound* this service owns."""
        self.config_path = config_path
        self.bound = bound
        self.running = running
        self.calls: list[str] = []
        self.owned = {80, 443} if listens_on(config_path, 80) else {8888}
        if running:
            bound.update(self.owned)

    def running_pid(self) -> int | None:
        """Return the fake pid while running."""
        return FAKE_PID if self.running else None

    def stop(self) -> None:
        """Release the owned ports."""
        self.calls.append("stop")
        self.running = False
        self.bound.difference_update(self.owned)

    def start(self) -> int:
        """Bind the owned ports again."""
        self.calls.append("start")
        self.running = True
        self.bound.update(self.owned)
        return FAKE_PID


class FakeStockService:
    """Init script double for the distribution web server on port 80."""

    def __init__(self, bound: set[int]) -> None:
        """Start bound to port 80."""
        self.bound = bound
        self.calls: list[str] = []
        bound.add(80)

    def __call__(self, script: Path, action: str) -> bool:
        """Record *action* and update the bound ports."""
        self.calls.append(action)
        if action == "stop":
            self.bound.discard(80)
        elif action == "start":
            self.bound.add(80)
        return True


def _nginx_config(tmp_path: Path, listeners: str) -> Path:
    path = tmp_path / "nginx_openspeedtest.conf"
    path.write_text(f"http {{\n    server {{\n{listeners}    }}\n}}\n", encoding="utf-8")
    return path


def test_listens_on_matches_whole_port(tmp_path: Path) -> None:
    """Only exact listen directives count."""
    config = _nginx_config(tmp_path, "        listen 8080;\n        listen [::]:443 ssl;\n")

    assert listens_on(config, 8080) is True
    assert listens_on(config, 443) is True
    assert listens_on(config, 80) is False
    assert listens_on(tmp_path / "absent.conf", 80) is False


def test_port80_guard_halts_foreign_holder(tmp_path: Path) -> None:
    """A web server on port 80 is paused; the speed test on its own port is untouched."""
    bound: set[int] = set()
    service = FakeService(_nginx_config(tmp_path, "        listen 8888;\n"), bound)
    stock = FakeStockService(bound)
    stock_script = tmp_path / "stock-nginx"
    stock_script.write_text("", encoding="utf-8")
    guard = port80_guard(
        service,  # type: ignore[arg-type]
        http_port=80,
        stock_service=stock_script,
        in_use=lambda port: port in bound,
        control=stock,
        attempts=1,
    )

    with guard():
        assert 80 not in bound
        assert 8888 in bound

    assert stock.calls == ["stop", "start"]
    assert service.calls == []
    assert 80 in bound


def test_port80_guard_halts_managed_https_instance(tmp_path: Path) -> None:
    """The managed service is paused when its config binds port 80."""
    bound: set[int] = set()
    config = _nginx_config(tmp_path, "        listen 80;\n        listen 443 ssl;\n")
    service = FakeService(config, bound)
    stock = FakeStockService(set())
    guard = port80_guard(
        service,  # type: ignore[arg-type]
        http_port=80,
        stock_service=tmp_path / "stock-nginx",
        in_use=lambda port: port in bound,
        control=stock,
        attempts=1,
    )

    with guard():
        assert bound == set()

    assert service.calls == ["stop", "start"]
    assert stock.calls == []
    assert bound == {80, 443}


def test_port80_guard_restarts_holder_when_challenge_fails(tmp_path: Path) -> None:
    """The paused holder comes back even when issuance raises."""
    bound: set[int] = set()
    service = FakeService(_nginx_config(tmp_path, "        listen 8888;\n"), bound)
    stock = FakeStockService(bound)
    stock_script = tmp_path / "stock-nginx"
    stock_script.write_text("", encoding="utf-8")
    guard = port80_guard(
        service,  # type: ignore[arg-type]
        http_port=80,
        stock_service=stock_script,
        in_use=lambda port: port in bound,
        control=stock,
        attempts=1,
    )

    with pytest.raises(IssuanceError, match="Verify error"):
        with guard():
            raise IssuanceError("Verify error")

    assert stock.calls == ["stop", "start"]
    assert 80 in bound


def test_port80_guard_fails_when_port_stays_bound(tmp_path: Path) -> None:
    """An unknown holder that cannot be stopped aborts before the challenge."""
    bound = {80}
    service = FakeService(_nginx_config(tmp_path, "        listen 8888;\n"), bound)
    entered: list[bool] = []
    guard = port80_guard(
        service,  # type: ignore[arg-type]
        http_port=80,
        stock_service=tmp_path / "absent",
        in_use=lambda port: port in bound,
        attempts=1,
    )

    with pytest.raises(IssuanceError, match="Port 80 is in use"):
        with guard():
            entered.append(True)

    assert entered == []
    assert service.calls == []


def test_port80_guard_free_port_touches_nothing(tmp_path: Path) -> None:
    """Nothing is stopped when port 80 is already free."""
    bound: set[int] = set()
    service = FakeService(_nginx_config(tmp_path, "        listen 80;\n"), bound, running=False)
    stock = FakeStockService(set())
    guard = port80_guard(
        service,  # type: ignore[arg-type]
        http_port=80,
        stock_service=tmp_path / "stock-nginx",
        in_use=lambda port: port in bound,
        control=stock,
    )

    with guard():
        pass

    assert service.calls == []
    assert stock.calls == []


@pytest.mark.mutation_timeout
def test_http_challenge_frees_port_80_held_by_stock_server(tmp_path: Path) -> None:
    """The distribution web server is paused around the challenge and restarted."""
    runtime = _runtime(tmp_path, ScriptedPrompter(False))
    net = tmp_path / "proc" / "net"
    net.mkdir()
    saved_table = tmp_path / "tcp80"
    saved_table.write_text(PORT_80_TABLE, encoding="utf-8")
    (net / "tcp").write_text(PORT_80_TABLE, encoding="utf-8")
    _executable(
        tmp_path / "stock-nginx",
        "#!/bin/sh\n"
        f"echo \"$1\" >> '{tmp_path / 'stock.calls'}'\n"
        'case "$1" in\n'
        f"  stop) rm -f '{net / 'tcp'}' ;;\n"
        f"  start) cp '{saved_table}' '{net / 'tcp'}' ;;\n"
        "esac\n",
    )
    request = TLSRequest(domain="speed.example.com", strategy=ChallengeStrategy.HTTP)

    _install(runtime, tls=request)

    stock_calls = (tmp_path / "stock.calls").read_text(encoding="utf-8").split()
    assert stock_calls == ["stop", "start"]
    assert (net / "tcp").read_text(encoding="utf-8") == PORT_80_TABLE
    assert _script_calls(runtime) == ["enable", "start"]
    assert "--issue" in (tmp_path / "acme" / "calls.log").read_text(encoding="utf-8")


def test_update_rejects_foreign_script_without_asking(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A download of another kind of program is reported and never staged."""
    prompter = ScriptedPrompter(True)
    runtime = _runtime(tmp_path, prompter)
    entry_point = _executable(
        tmp_path / "bin" / "speedtestctl",
        "#!/usr/bin/python3\nimport sys\nfrom speedtestctl.cli import main\nsys.exit(main())\n",
    )
    runtime.script = entry_point

    def shell_download(self: SelfUpdater) -> Path:
        destination = self.config.download_path
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text("#!/bin/sh\n# Version: 2999-01-01\n" + "#\n" * 600, "utf-8")
        return destination

    monkeypatch.setattr(SelfUpdater, "download", shell_download)

    decision = Orchestrator(runtime).check_update([])

    assert decision.compatible is False
    assert prompter.questions == []
    assert not staged_path(entry_point).exists()
    assert "expected a python script" in _output(runtime)
