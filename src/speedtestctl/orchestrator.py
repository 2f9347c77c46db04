"""Session orchestration for install, diagnose, uninstall and update.

Every operation runs inside a structured-log scope. Operations that change
the system also hold the session lock with interrupt handling attached.
Each install stage that mutates the host pushes its inverse onto a
:class:`~speedtestctl.session.Compensations` stack; the stack is unwound
newest-first when the session fails or is interrupted after destructive
work has begun, and cleared once the install commits.
"""
from __future__ import annotations

import os
import re
import shutil
import subprocess
import sys
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path

from rich.console import Console
from rich.markup import escape

from .backups import ConfigSnapshot
from .capabilities import CapabilityInstaller
from .certificates import (
    CertificateManager,
    CertificatePaths,
    ChallengeStrategy,
    DnsProvider,
    Port80Guard,
    TLSRequest,
)
from .config import AppConfig
from .doctor import DoctorEngine, DoctorReport, ProbeContext, collect_probes
from .environment import (
    HardwareProfile,
    detect_hardware,
    detect_internal_address,
    free_space_mb,
    running_instance,
)
from .errors import InstallerError, InvalidConfigError, IssuanceError, StartupError
from .fetcher import ArtifactFetcher, DownloadSource
from .interrupts import InterruptHandler
from .locking import SessionLock, pid_alive, read_pid
from .logging import OperationScope, StructuredLogger
from .persistence import PersistenceManifest
from .ports import is_port_in_use, resolve_port
from .prompts import Prompter
from .providers import (
    AcmeClient,
    NginxProvider,
    PackageManager,
    ServiceController,
    detect_supervision,
    synthesize_config,
)
from .providers.service import terminate_pid
from .session import Compensations, Mode, Session
from .state import InstallationRecord, StateRegistry, StateRegistryError
from .storage import SpaceReport, StorageAllocator
from .tasks import Spawner, TaskRegistry, spawn
from .templates import TemplateEngine
from .updater import SENTINEL_VERSION, Exec, SelfUpdater, UpdateDecision

LOGROTATE_TEMPLATE = "cron/logrotate.sh.j2"
MAX_LOG_KB = 100
MAX_LOG_AGE_DAYS = 2
ACME_WEBROOT = "webroot"
BACKUP_DIR = "backup"
FALLBACK_SUFFIX = ".fallback"


@dataclass
class Runtime:
    """Aggregated collaborators shared by every operation."""

    config: AppConfig
    console: Console
    err_console: Console
    prompter: Prompter
    logger: StructuredLogger
    templates: TemplateEngine
    tasks: TaskRegistry
    registry: StateRegistry
    packages: PackageManager
    nginx: NginxProvider
    acme: AcmeClient
    persistence: PersistenceManifest
    spawner: Spawner = spawn
    which: Callable[[str], str | None] = shutil.which
    free_mb: Callable[[Path], int] = free_space_mb
    address: Callable[[], str] = detect_internal_address
    supervised: Callable[[], bool] = detect_supervision
    is_alive: Callable[[int], bool] = pid_alive
    script: Path = field(default_factory=lambda: Path(sys.argv[0]).resolve())
    execv: Exec = os.execv

    # Output -----------------------------------------------------------
    def debug(self, message: str) -> None:
        """Write ``[DEBUG]`` output to stderr when debug mode is on."""
        if self.config.debug:
            self.err_console.print(f"[DEBUG] {message}", markup=False, highlight=False)

    def info(self, message: str) -> None:
        """Write ``[INFO]`` output to stdout when verbose mode is on."""
        if self.config.verbose:
            self.console.print(f"[INFO] {message}", markup=False, highlight=False)

    def say(self, message: str) -> None:
        self.console.print(escape(message))

    def ok(self, message: str) -> None:
        self.console.print(f"[green]✅ {escape(message)}[/green]")

    def warn(self, message: str) -> None:
        self.console.print(f"[yellow]⚠️  {escape(message)}[/yellow]")

    def fail(self, message: str) -> None:
        self.err_console.print(f"[red]❌ {escape(message)}[/red]")

    # Collaborator factories -------------------------------------------
    def port_in_use(self, port: int) -> bool:
        """Return ``True`` when *port* is bound on this host."""
        return is_port_in_use(port, self.config.proc_root)

    def service(self, port: int) -> ServiceController:
        """Return a controller for the managed nginx instance on *port*."""
        config = self.config
        return ServiceController(
            templates=self.templates,
            script_path=config.startup_script,
            pid_file=config.pid_file,
            config_path=config.config_path,
            error_log=config.error_log,
            port=port,
            settings=config.service,
            nginx_bin=config.nginx.bin,
            supervised=self.supervised(),
            in_use=self.port_in_use,
            is_alive=self.is_alive,
        )

    def certificates(self, service: ServiceController | None = None) -> CertificateManager:
        """Return a certificate manager wired to *service* for port-80 handover."""
        acme = self.config.acme
        manager = CertificateManager(
            acme=self.acme,
            packages=self.packages,
            prompter=self.prompter,
            cert_root=acme.cert_root,
            crontab=acme.crontab,
            required_packages=acme.packages,
            reload_command=f"{self.config.startup_script} reload",
            notify=self.say,
        )
        if service is not None:
            manager.port80_guard = port80_guard(
                service,
                http_port=self.config.nginx.http_port,
                stock_service=self.config.nginx.stock_service,
                in_use=self.port_in_use,
                notify=self.say,
            )
        return manager

    def backup_path(self, path: Path) -> Path:
        """Return where the pre-install copy of *path* is kept."""
        return self.config.state_dir / BACKUP_DIR / path.name


def build_runtime(
    config: AppConfig,
    *,
    prompter: Prompter,
    console: Console | None = None,
    err_console: Console | None = None,
) -> Runtime:
    """Create the runtime collaborators described by *config*."""
    return Runtime(
        config=config,
        console=console or Console(),
        err_console=err_console or Console(stderr=True),
        prompter=prompter,
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        tasks=TaskRegistry(),
        registry=StateRegistry(config.state_dir),
        packages=PackageManager(),
        nginx=NginxProvider(nginx_bin=config.nginx.bin),
        acme=AcmeClient(
            home=config.acme.home,
            installer_url=config.acme.installer_url,
            server=config.acme.server,
            email=config.acme.email,
        ),
        persistence=PersistenceManifest(
            manifest=config.persistence.manifest,
            rc_dir=config.persistence.rc_dir,
        ),
    )


def _control_init_script(script: Path, action: str) -> bool:
    try:
        result = subprocess.run(  # noqa: S603 - controlled command execution
            [str(script), action],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return False
    return result.returncode == 0


def listens_on(config_path: Path, port: int) -> bool:
    """Return ``True`` when the nginx config at *config_path* listens on *port*."""
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError:
        return False
    pattern = rf"^\s*listen\s+(?:\S*:)?{port}\b"
    return re.search(pattern, text, re.MULTILINE) is not None


def port80_guard(
    service: ServiceController,
    *,
    http_port: int,
    stock_service: Path,
    in_use: Callable[[int], bool],
    control: Callable[[Path, str], bool] = _control_init_script,
    attempts: int = 10,
    interval: float = 0.5,
    notify: Callable[[str], None] = lambda _message: None,
) -> Port80Guard:
    """Return a guard that frees *http_port* while a standalone challenge runs.

    The holder is the managed service when its config listens on that port,
    otherwise the distribution web server behind *stock_service*. Whatever
    was halted is started again when the block exits, whether or not the
    challenge succeeded. Raises :class:`IssuanceError` before the challenge
    when the port cannot be freed.
    """

    def released() -> bool:
        for attempt in range(attempts):
            if not in_use(http_port):
                return True
            if attempt + 1 < attempts:
                time.sleep(interval)
        return False

    @contextmanager
    def guard() -> Iterator[None]:
        if not in_use(http_port):
            yield
            return
        restart: Callable[[], object] | None = None
        if service.running_pid() is not None and listens_on(service.config_path, http_port):
            notify(f"Stopping OpenSpeedTest NGINX to free port {http_port}...")
            service.stop()
            restart = service.start
        elif stock_service.exists():
            notify(f"Stopping {stock_service} to free port {http_port}...")
            control(stock_service, "stop")
            restart = partial(control, stock_service, "start")
        if not released():
            if restart is not None:
                restart()
            raise IssuanceError(
                f"Port {http_port} is in use by another service and could not be freed.",
                hint="Stop the service bound to port 80 or use a DNS challenge.",
            )
        try:
            yield
        finally:
            if restart is not None:
                notify(f"Restarting the service that held port {http_port}...")
                restart()

    return guard


def tls_request_from_options(
    domain: str,
    challenge: str,
    provider: str | None,
    env: Mapping[str, str],
) -> TLSRequest:
    """Build a :class:`TLSRequest` from command-line options.

    DNS API credentials are read from the environment variables acme.sh
    itself uses (``CF_Token``, ``DO_API_KEY``...).
    """
    strategy = ChallengeStrategy.parse(challenge)
    dns_provider = DnsProvider.parse(provider) if provider else None
    credentials: dict[str, str] = {}
    if dns_provider is not None:
        credentials = {
            key: env[key] for key in dns_provider.credential_keys if key in env
        }
    return TLSRequest(
        domain=domain,
        strategy=strategy,
        provider=dns_provider,
        credentials=credentials,
    )


class Orchestrator:
    """Sequence the installer stages for one operation at a time."""

    def __init__(self, runtime: Runtime) -> None:
        """Keep the shared *runtime*."""
        self.runtime = runtime

    def new_session(self, mode: Mode, *, port: int | None = None) -> Session:
        """Return a fresh session seeded from configuration."""
        config = self.runtime.config
        return Session(
            mode=mode,
            port=port if port is not None else config.port,
            install_path=config.install_dir,
            debug=config.debug,
            verbose=config.verbose,
        )

    # ------------------------------------------------------------------
    # Session plumbing
    # ------------------------------------------------------------------
    @contextmanager
    def guarded(
        self,
        session: Session,
        compensations: Compensations,
        op: OperationScope,
    ) -> Iterator[SessionLock]:
        """Hold the lock with interrupt handling; unwind on any failure."""
        runtime = self.runtime
        handler = InterruptHandler(runtime.tasks, on_cancel=self._report_cancelled)
        lock = SessionLock(
            runtime.config.lock_file,
            is_alive=runtime.is_alive,
            on_acquire=handler.attach,
        )
        handle = lock.acquire()
        op.set_lock_wait_ms(handle.wait_ms)
        if handle.reclaimed_pid is not None:
            runtime.debug(f"Reclaimed stale lock held by PID {handle.reclaimed_pid}")
        try:
            yield lock
        except BaseException:
            handler.disarm()
            if session.installation_started:
                self._unwind(session, compensations, op)
            raise
        finally:
            handler.detach()
            lock.release()
            runtime.debug("Cleanup completed")

    def _report_cancelled(self, names: list[str]) -> None:
        for name in names:
            self.runtime.warn(f"Cancelled: {name}")

    def _unwind(
        self, session: Session, compensations: Compensations, op: OperationScope
    ) -> None:
        runtime = self.runtime
        pending = compensations.names()
        if not pending:
            return
        reached = session.last_stage or "start"
        runtime.warn(f"Stopped after stage '{reached}'. Rolling back: {', '.join(pending)}")
        ran = compensations.unwind()
        op.add_step(
            "rollback",
            status="partial" if compensations.failures else "ok",
            detail=f"after {reached}: {', '.join(ran)}",
        )
        for name, message in compensations.failures:
            runtime.fail(f"Rollback of {name} failed: {message}")

    def _read_record(self) -> InstallationRecord | None:
        try:
            return self.runtime.registry.read_installation()
        except StateRegistryError as exc:
            self.runtime.warn(str(exc))
            return None

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------
    def install(
        self,
        session: Session,
        *,
        source: DownloadSource | None = None,
        offer_tls: bool = True,
    ) -> InstallationRecord:
        """Provision OpenSpeedTest; raises an :class:`InstallerError` on failure.

        When *offer_tls* is false and the session carries no TLS request the
        HTTPS questions are skipped and plain HTTP is installed.
        """
        compensations = Compensations()
        with self.runtime.logger.operation(
            "install",
            args={
                "port": session.port,
                "source": source.value if source else None,
                "domain": session.tls.domain if session.tls else None,
            },
            target={"kind": "installation", "path": session.install_path},
        ) as op:
            with self.guarded(session, compensations, op):
                record = self._install(session, compensations, op, source, offer_tls)
            op.success(
                "Installation complete.",
                changed=1,
                context={"port": record.port, "tls_domain": record.tls_domain},
            )
        return record

    def _install(
        self,
        session: Session,
        compensations: Compensations,
        op: OperationScope,
        source: DownloadSource | None,
        offer_tls: bool,
    ) -> InstallationRecord:
        runtime = self.runtime
        config = runtime.config

        profile = detect_hardware(config.proc_root)
        session.profile = profile
        runtime.info(f"Detected: {profile.cpu_cores} cores, {profile.total_ram_mb}MB RAM")
        runtime.info(
            f"NGINX tuning: {profile.workers} workers, {profile.connections} connections"
        )
        op.add_step("hardware", status="ok", detail=profile.tier)

        session.port = resolve_port(
            session.port,
            runtime.prompter,
            in_use=self._foreign_port_check(),
            notify=runtime.warn,
        )
        runtime.info(f"Port {session.port} is available")
        op.add_step("port", status="ok", detail=str(session.port))

        installed = CapabilityInstaller(
            runtime.packages,
            config.nginx,
            which=runtime.which,
            notify=runtime.ok,
        ).ensure()
        op.add_step(
            "dependencies",
            status="ok",
            detail=", ".join(installed.installed) or "already present",
        )

        space = StorageAllocator(
            config.storage,
            runtime.prompter,
            free_mb=runtime.free_mb,
            notify=runtime.say,
        ).ensure_space(session.install_path, config.required_space_mb)
        session.relocated_to = space.relocated_to
        op.add_step("storage", status="ok", detail=f"{space.available_mb}MB available")

        self._prepare_tls(session, offer=offer_tls)
        op.add_step("tls-client", status="ok" if session.use_ssl else "skipped")

        if source is None:
            source = self._choose_source()
        session.download_url = source.url(config.download)

        session.installation_started = True
        self._stop_previous()

        document_root = self._fetch(session, compensations)
        op.add_step("download", status="ok", detail=session.download_url)

        snapshots = [self._apply_http_config(session, profile, document_root, compensations)]
        session.mark("config")
        op.add_step("config", status="ok", detail=str(config.config_path))

        service = runtime.service(session.port)
        snapshots.extend(self._provision_service(session, service, compensations))
        op.add_step("service", status="ok", detail=service.template_name)

        paths: CertificatePaths | None = None
        if session.use_ssl and session.tls is not None:
            paths = self._enable_tls(session, service, profile, document_root)
            op.add_step("tls", status="ok" if paths else "fallback")

        record = self._write_record(session, service, paths)
        compensations.clear()
        for snapshot in snapshots:
            snapshot.discard()
        session.mark("commit")

        self._summary(session, profile, paths)
        self._prompt_persistence(session, record, space)
        return record

    def _foreign_port_check(self) -> Callable[[int], bool]:
        """Return a port check that ignores the port of our own running instance."""
        runtime = self.runtime
        ours: int | None = None
        if running_instance(runtime.config.pid_file, is_alive=runtime.is_alive) is not None:
            record = self._read_record()
            ours = record.port if record is not None else None

        def in_use(port: int) -> bool:
            return port != ours and runtime.port_in_use(port)

        return in_use

    def _choose_source(self) -> DownloadSource:
        runtime = self.runtime
        runtime.say("\n🌐 Choose download source:")
        for index, member in enumerate(DownloadSource, start=1):
            runtime.say(f"{index}) {member.label}")
        source, valid = DownloadSource.from_choice(
            runtime.prompter.ask("Choose [1-2]", default="1")
        )
        if not valid:
            runtime.warn("Invalid option. Defaulting to official repository.")
        return source

    def _stop_previous(self) -> None:
        runtime = self.runtime
        pid_file = runtime.config.pid_file
        pid = running_instance(pid_file, is_alive=runtime.is_alive)
        if pid is None:
            return
        runtime.warn("Existing OpenSpeedTest detected. Stopping...")
        if terminate_pid(pid, is_alive=runtime.is_alive):
            runtime.ok("Stopped.")
        else:
            runtime.fail("Failed to stop.")
        pid_file.unlink(missing_ok=True)

    def _fetch(self, session: Session, compensations: Compensations) -> Path:
        runtime = self.runtime
        download = runtime.config.download
        fetcher = ArtifactFetcher(
            download,
            runtime.tasks,
            runtime.console,
            spawner=runtime.spawner,
        )
        archive = session.install_path / download.archive_name
        extracted = session.install_path / download.extract_dir

        def remove_partial() -> None:
            archive.unlink(missing_ok=True)
            if extracted.is_dir() and not extracted.is_symlink():
                shutil.rmtree(extracted)

        compensations.push("download", remove_partial)
        runtime.debug(f"Downloading from {session.download_url}")
        document_root = fetcher.download_bundle(
            session.download_url or download.official_url,
            session.install_path,
        )
        compensations.discard("download")
        session.mark("download")
        return document_root

    def _synthesize(
        self,
        session: Session,
        profile: HardwareProfile,
        document_root: Path,
        tls: CertificatePaths | None = None,
    ) -> str:
        config = self.runtime.config
        return synthesize_config(
            self.runtime.templates,
            profile,
            session.port,
            document_root,
            error_log=config.error_log,
            pid_file=config.pid_file,
            tls=tls,
            http_port=config.nginx.http_port,
            https_port=config.nginx.https_port,
            acme_webroot=config.acme.cert_root / ACME_WEBROOT,
        )

    def _apply_http_config(
        self,
        session: Session,
        profile: HardwareProfile,
        document_root: Path,
        compensations: Compensations,
    ) -> ConfigSnapshot:
        runtime = self.runtime
        config = runtime.config
        text = self._synthesize(session, profile, document_root)
        runtime.debug("Validating NGINX configuration")
        try:
            snapshot = runtime.nginx.apply_config(
                config.config_path,
                text,
                config.config_backup,
                keep_backup=True,
            )
        except InvalidConfigError as exc:
            runtime.fail("NGINX configuration validation failed")
            if exc.diagnostics:
                runtime.err_console.print(escape(exc.diagnostics))
            if exc.restored:
                runtime.say("Restored backup configuration.")
            raise
        compensations.push("config", snapshot.restore)
        runtime.info("NGINX configuration is valid")
        return snapshot

    def _provision_service(
        self,
        session: Session,
        service: ServiceController,
        compensations: Compensations,
    ) -> list[ConfigSnapshot]:
        runtime = self.runtime
        config = runtime.config
        if service.supervised:
            runtime.info("Using procd service management")
        else:
            runtime.info("Using traditional init.d service")

        script = ConfigSnapshot.capture(
            service.script_path, runtime.backup_path(service.script_path)
        )
        service.write_script()
        compensations.push("service-script", script.restore)
        if not service.enable():
            runtime.info("Service enable returned non-zero")
        if not script.existed:
            compensations.push("service-enable", service.disable)

        rotation = ConfigSnapshot.capture(
            config.logrotate_script, runtime.backup_path(config.logrotate_script)
        )
        runtime.templates.render_to_path(
            LOGROTATE_TEMPLATE,
            config.logrotate_script,
            {
                "error_log": str(config.error_log),
                "pid_file": str(config.pid_file),
                "max_size_kb": MAX_LOG_KB,
                "max_age_days": MAX_LOG_AGE_DAYS,
                "log_dir": str(config.error_log.parent),
                "log_name": config.error_log.name,
            },
            mode=0o755,
        )
        compensations.push("logrotate", rotation.restore)
        runtime.ok(f"Log rotation script created at {config.logrotate_script}")
        runtime.info(
            f"Logs will rotate when >{MAX_LOG_KB}KB, kept for {MAX_LOG_AGE_DAYS} days max"
        )

        runtime.say("Starting OpenSpeedTest NGINX...")
        compensations.push("service", service.stop)
        pid = service.start()
        session.mark("service")
        runtime.debug(f"NGINX running with PID {pid}")
        return [script, rotation]

    # TLS --------------------------------------------------------------
    def _prepare_tls(self, session: Session, *, offer: bool = True) -> None:
        runtime = self.runtime
        if session.tls is None and offer:
            session.tls = self._prompt_tls()
        session.use_ssl = session.tls is not None
        if not session.use_ssl:
            return
        try:
            runtime.certificates().prepare()
        except IssuanceError as exc:
            runtime.warn(f"Unable to prepare the certificate client: {exc}")
            runtime.warn("Continuing without SSL.")
            session.disable_ssl()

    def _prompt_tls(self) -> TLSRequest | None:
        runtime = self.runtime
        prompter = runtime.prompter
        if not prompter.confirm("Enable HTTPS with a Let's Encrypt certificate?", default=False):
            return None
        domain = prompter.ask("Domain name pointing to this router")
        runtime.say("\n🔐 Choose validation method:")
        runtime.say("1) HTTP challenge (port 80, usually fails behind NAT)")
        runtime.say("2) DNS API challenge")
        runtime.say("3) Manual DNS challenge")
        try:
            strategy = ChallengeStrategy.parse(prompter.ask("Choose [1-3]", default="1"))
            provider: DnsProvider | None = None
            credentials: dict[str, str] = {}
            if strategy is ChallengeStrategy.DNS_API:
                for index, member in enumerate(DnsProvider, start=1):
                    runtime.say(f"{index}) {member.label}")
                provider = DnsProvider.parse(
                    prompter.ask(f"Choose DNS provider [1-{len(DnsProvider)}]")
                )
                credentials = {key: prompter.ask(key) for key in provider.credential_keys}
            return TLSRequest(
                domain=domain,
                strategy=strategy,
                provider=provider,
                credentials=credentials,
            )
        except IssuanceError as exc:
            runtime.warn(f"{exc} Continuing without SSL.")
            return None

    def _enable_tls(
        self,
        session: Session,
        service: ServiceController,
        profile: HardwareProfile,
        document_root: Path,
    ) -> CertificatePaths | None:
        runtime = self.runtime
        config = runtime.config
        request = session.tls
        if request is None:
            return None
        manager = runtime.certificates(service)
        try:
            paths = manager.issue(request)
            runtime.ok(f"Certificate installed for {paths.domain}")
            text = self._synthesize(session, profile, document_root, tls=paths)
            runtime.nginx.apply_config(
                config.config_path, text, _fallback_path(config.config_path)
            )
            service.restart()
        except (IssuanceError, InvalidConfigError, StartupError) as exc:
            self._fallback_to_http(session, service, profile, document_root, exc)
            return None
        if manager.schedule_renewal(paths):
            runtime.ok("Certificate renewal scheduled (daily check).")
        else:
            runtime.info("Certificate renewal already scheduled")
        session.mark("tls")
        return paths

    def _fallback_to_http(
        self,
        session: Session,
        service: ServiceController,
        profile: HardwareProfile,
        document_root: Path,
        reason: InstallerError,
    ) -> None:
        runtime = self.runtime
        config = runtime.config
        runtime.warn(f"SSL setup failed: {reason}")
        runtime.warn("Falling back to the HTTP-only configuration.")
        session.disable_ssl()
        text = self._synthesize(session, profile, document_root)
        current = (
            config.config_path.read_text(encoding="utf-8")
            if config.config_path.is_file()
            else None
        )
        runtime.nginx.apply_config(config.config_path, text, _fallback_path(config.config_path))
        if current != text or service.running_pid() is None:
            service.restart()

    # Commit -----------------------------------------------------------
    def _write_record(
        self,
        session: Session,
        service: ServiceController,
        paths: CertificatePaths | None,
    ) -> InstallationRecord:
        config = self.runtime.config
        record = InstallationRecord(
            port=config.nginx.https_port if paths else session.port,
            install_path=str(session.install_path),
            resolved_path=str(session.install_path.resolve()),
            config_path=str(config.config_path),
            startup_script=str(config.startup_script),
            logrotate_script=str(config.logrotate_script),
            error_log=str(config.error_log),
            pid_file=str(config.pid_file),
            supervised=service.supervised,
            tls_domain=paths.domain if paths else None,
            certificate_dir=str(paths.directory) if paths else None,
            renewal_scheduled=paths is not None,
            download_url=session.download_url,
        )
        self.runtime.registry.write_installation(record)
        return record

    def _summary(
        self,
        session: Session,
        profile: HardwareProfile,
        paths: CertificatePaths | None,
    ) -> None:
        runtime = self.runtime
        config = runtime.config
        if paths is not None:
            url = f"https://{paths.domain}"
            if config.nginx.https_port != 443:
                url = f"{url}:{config.nginx.https_port}"
        else:
            url = f"http://{runtime.address()}:{session.port}"
        runtime.console.print()
        runtime.ok("Installation complete!")
        runtime.console.print(f"🌐 Access OpenSpeedTest at: [cyan]{escape(url)}[/cyan]")
        runtime.say(
            f"📊 Performance tuning: {profile.workers} workers, "
            f"{profile.connections} max connections"
        )
        runtime.say(
            f"📝 Error logs: {config.error_log} (errors only, rotated at {MAX_LOG_KB}KB)"
        )
        if paths is not None:
            runtime.say(f"🔒 Certificate: {paths.fullchain} (renewal checked daily)")

    def _persisted_paths(self, record: InstallationRecord) -> list[str]:
        paths = [
            record.install_path,
            record.startup_script,
            record.config_path,
            record.logrotate_script,
        ]
        if record.certificate_dir:
            paths.append(record.certificate_dir)
        return paths

    def _prompt_persistence(
        self,
        session: Session,
        record: InstallationRecord,
        space: SpaceReport,
    ) -> None:
        runtime = self.runtime
        service_name = runtime.config.startup_script.name
        paths = self._persisted_paths(record)
        eligible = (
            space.relocated_to is None
            and not session.install_path.is_symlink()
            and space.available_mb >= runtime.config.required_space_mb
        )
        if eligible and runtime.prompter.confirm(
            "💾 Do you want OpenSpeedTest to persist through firmware updates?",
            default=False,
        ):
            added = runtime.persistence.register(paths, service_name=service_name)
            runtime.debug(f"Added to manifest: {', '.join(added) or 'nothing new'}")
            record.persistent = True
            runtime.registry.write_installation(record)
            runtime.ok("Persistence enabled.")
            return
        runtime.persistence.deregister(paths, service_name=service_name)
        runtime.ok("Persistence disabled.")

    # ------------------------------------------------------------------
    # Diagnose
    # ------------------------------------------------------------------
    def diagnose(self, session: Session) -> DoctorReport:
        """Run the diagnostic probes against the current installation."""
        runtime = self.runtime
        with runtime.logger.operation(
            "diagnose",
            args={"port": session.port},
            target={"kind": "system", "scope": "health"},
        ) as op:
            record = self._read_record()
            port = record.port if record is not None else session.port
            install_path = (
                Path(record.install_path) if record is not None else session.install_path
            )
            context = ProbeContext(
                config=runtime.config,
                service=runtime.service(port),
                nginx=runtime.nginx,
                registry=runtime.registry,
                internal_address=runtime.address(),
                port=port,
                install_path=install_path,
                port_in_use=runtime.port_in_use,
            )
            probes = collect_probes(context)
            report = DoctorEngine(context).run(probes, metadata={"port": port})
            failures = [
                f"{result.category}:{result.id}"
                for result in report.results
                if result.is_failure
            ]
            if failures:
                op.warning("Diagnostics found problems.", errors=failures)
            else:
                op.success("Diagnostics passed.")
        return report

    # ------------------------------------------------------------------
    # Uninstall
    # ------------------------------------------------------------------
    def uninstall(self, session: Session) -> list[str] | None:
        """Remove everything an install created; ``None`` when not confirmed."""
        runtime = self.runtime
        runtime.say(
            f"\n🧹 This will remove OpenSpeedTest, the startup script, "
            f"and {session.install_path} contents."
        )
        if not runtime.prompter.confirm("Are you sure?", default=False):
            runtime.fail("Uninstall cancelled.")
            return None
        compensations = Compensations()
        with runtime.logger.operation(
            "uninstall",
            target={"kind": "installation", "path": session.install_path},
        ) as op:
            with self.guarded(session, compensations, op):
                removed = self._uninstall(session, op)
            op.success("Uninstall complete.", changed=len(removed), context={"removed": removed})
        runtime.ok("OpenSpeedTest uninstall complete.")
        return removed

    def _uninstall(self, session: Session, op: OperationScope) -> list[str]:
        runtime = self.runtime
        config = runtime.config
        record = self._read_record()
        removed: list[str] = []

        def note(path: Path, label: str) -> None:
            removed.append(str(path))
            runtime.ok(f"Removed {label}")

        service = runtime.service(record.port if record is not None else session.port)
        if service.script_path.exists():
            runtime.say("Stopping service...")
            service.stop()
            service.disable()
            service.remove_script()
            note(service.script_path, "startup script")
        op.add_step("service", status="ok")

        pid = read_pid(config.pid_file)
        if pid is not None and pid != os.getpid():
            terminate_pid(pid, is_alive=runtime.is_alive)
        config.pid_file.unlink(missing_ok=True)

        install_path = session.install_path
        if install_path.is_symlink():
            target = install_path.resolve()
            install_path.unlink()
            note(install_path, f"{install_path} symlink")
            if target.is_dir():
                shutil.rmtree(target)
                note(target, str(target))
        elif install_path.is_dir():
            shutil.rmtree(install_path)
            note(install_path, str(install_path))
        if record is not None and record.resolved_path != str(install_path):
            leftover = Path(record.resolved_path)
            if leftover.is_dir():
                shutil.rmtree(leftover)
                note(leftover, str(leftover))

        for path, label in (
            (config.config_path, "configuration"),
            (config.config_backup, "backup configuration"),
            (config.logrotate_script, "log rotation script"),
            (config.error_log, "error logs"),
        ):
            if path.is_file():
                path.unlink()
                note(path, label)
        for rotated in config.error_log.parent.glob(f"{config.error_log.name}.*"):
            rotated.unlink(missing_ok=True)
            removed.append(str(rotated))
        backups = config.state_dir / BACKUP_DIR
        if backups.is_dir():
            shutil.rmtree(backups)
        op.add_step("files", status="ok", detail=str(len(removed)))

        if record is not None and record.tls_domain:
            manager = runtime.certificates()
            manager.remove(record.tls_domain)
            manager.unschedule_renewal()
            note(Path(record.certificate_dir or config.acme.cert_root), "TLS certificate")
            op.add_step("tls", status="ok", detail=record.tls_domain)

        runtime.registry.remove_installation()
        dropped = runtime.persistence.deregister(
            self._persisted_paths(record) if record is not None else [
                str(install_path),
                str(config.startup_script),
                str(config.config_path),
                str(config.logrotate_script),
            ],
            service_name=config.startup_script.name,
        )
        op.add_step("persistence", status="ok", detail=str(len(dropped)))
        return removed

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------
    def check_update(self, argv: Sequence[str]) -> UpdateDecision:
        """Compare versions and, with consent, stage and relaunch the new script."""
        runtime = self.runtime
        updater = SelfUpdater(runtime.config.update, runtime.script, execv=runtime.execv)
        runtime.say("\n🔍 Checking for script updates...")
        staged: Path | None = None
        with runtime.logger.operation(
            "update",
            args={"url": runtime.config.update.script_url},
            target={"kind": "script", "path": runtime.script},
        ) as op:
            decision = updater.check()
            if not decision.compatible:
                runtime.warn(decision.reason or "Downloaded update was rejected.")
                op.warning(decision.reason or "Downloaded update was rejected.")
                return decision
            if not decision.available and decision.remote_version == SENTINEL_VERSION:
                runtime.warn(decision.reason or "Unable to check for updates.")
                op.warning(decision.reason or "Unable to check for updates.")
                return decision
            runtime.say(f"📦 Current version: {decision.local_version}")
            runtime.say(f"🌐 Latest version:  {decision.remote_version}")
            if not decision.available:
                runtime.ok("You are already running the latest version.")
                op.success("Already up to date.")
                return decision
            if not runtime.prompter.confirm(
                "A new version is available. Update now?", default=False
            ):
                updater.discard()
                runtime.say("⏭️  Skipping update. Continuing with current version.")
                op.success("Update skipped.")
                return decision
            session = self.new_session(Mode.UPDATE)
            with self.guarded(session, Compensations(), op):
                runtime.say("⬆️  Updating...")
                staged = updater.stage(decision)
            runtime.ok("Upgrade complete. Restarting script...")
            op.success(
                "Update staged.",
                changed=1,
                context={"staged": staged, "version": decision.remote_version},
            )
        if staged is not None:
            updater.relaunch(staged, argv)
        return decision


def _fallback_path(path: Path) -> Path:
    return path.with_name(f"{path.name}{FALLBACK_SUFFIX}")


__all__ = [
    "Orchestrator",
    "Runtime",
    "build_runtime",
    "listens_on",
    "port80_guard",
    "tls_request_from_options",
]
