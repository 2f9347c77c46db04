"""Typer-powered command line interface for ``speedtestctl``.

Running ``speedtestctl`` without a subcommand shows the splash banner,
checks for a newer release and then loops the interactive menu. The
``install``, ``diagnose``, ``uninstall`` and ``update`` subcommands run a
single operation, which is convenient for scripted use. This module is the
only place where installer errors are turned into process exit codes.
"""
from __future__ import annotations

import os
import sys
import textwrap
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, TypeVar

import typer
from rich.console import Console
from rich.markup import escape

from . import __release__, get_version
from .certificates import ChallengeStrategy
from .config import AppConfig, load_config
from .doctor import DoctorReport, ProbeStatus
from .errors import InstallerError, InterruptError
from .exit_codes import ExitCode
from .fetcher import DownloadSource
from .orchestrator import Orchestrator, Runtime, build_runtime, tls_request_from_options
from .ports import validate_port
from .prompts import AssumeYesPrompter, TyperPrompter
from .session import Mode
from .updater import apply_staged_update

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")

SPLASH = r"""
   _____ _          _ _   _      _
  / ____| |        (_) \ | |    | |
 | |  __| |  ______ _|  \| | ___| |_
 | | |_ | | |______| | . ` |/ _ \ __|
 | |__| | |____    | | |\  |  __/ |_
  \_____|______|   |_|_| \_|\___|\__|

         OpenSpeedTest for GL-iNet
"""

MENU_ITEMS = (
    ("1", "Install OpenSpeedTest"),
    ("2", "Run diagnostics"),
    ("3", "Uninstall everything"),
    ("4", "Check for update"),
    ("5", "Exit"),
)

_PROBE_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]✅[/green]",
    ProbeStatus.YELLOW: "[yellow]⚠️ [/yellow]",
    ProbeStatus.RED: "[red]❌[/red]",
}

_SUMMARY_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]healthy[/green]",
    ProbeStatus.YELLOW: "[yellow]warnings[/yellow]",
    ProbeStatus.RED: "[red]problems found[/red]",
}

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to an alternate config.yml.",
)
PORT_OPTION = typer.Option(
    None,
    "--port",
    help="Port for the OpenSpeedTest server (1024-65535). Overrides PORT.",
)
DEBUG_OPTION = typer.Option(
    False,
    "--debug",
    help="Print [DEBUG] diagnostics to stderr. Same as DEBUG=1.",
)
VERBOSE_OPTION = typer.Option(
    False,
    "--verbose",
    help="Print [INFO] progress details. Same as VERBOSE=1.",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Answer yes to every confirmation and use defaults for other prompts.",
)
SOURCE_OPTION = typer.Option(
    None,
    "--source",
    case_sensitive=False,
    help="Download source for the application bundle.",
)
DOMAIN_OPTION = typer.Option(
    None,
    "--domain",
    help="Request a certificate for this domain and serve HTTPS.",
)
CHALLENGE_OPTION = typer.Option(
    ChallengeStrategy.HTTP,
    "--challenge",
    case_sensitive=False,
    help="How domain ownership is proven when --domain is given.",
)
DNS_PROVIDER_OPTION = typer.Option(
    None,
    "--dns-provider",
    help=(
        "DNS provider for --challenge dns-api (cloudflare, digitalocean, godaddy, "
        "route53, namecheap, linode, vultr, duckdns, porkbun). Credentials are "
        "read from the provider's acme.sh environment variables."
    ),
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        OpenSpeedTest installer and lifecycle manager for OpenWrt / GL.iNet routers.

        Without a subcommand an interactive menu is shown. DEBUG=1, VERBOSE=1
        and PORT=<n> are honoured from the environment.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    runtime: Runtime
    orchestrator: Orchestrator


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    *,
    port: int | None = None,
    debug: bool = False,
    verbose: bool = False,
) -> RuntimeContext:
    state = ctx.obj
    if isinstance(state, RuntimeContext):
        return state

    overrides: dict[str, object] = {}
    if debug:
        overrides["debug"] = True
    if verbose:
        overrides["verbose"] = True
    try:
        if port is not None:
            overrides["port"] = validate_port(port)
        config = load_config(config_file=config_file, overrides=overrides)
    except InstallerError as exc:
        _exit_with_error(exc)

    runtime = build_runtime(
        config,
        prompter=TyperPrompter(interactive=True),
        console=console,
        err_console=err_console,
    )
    state = RuntimeContext(
        config=config,
        runtime=runtime,
        orchestrator=Orchestrator(runtime),
    )
    ctx.obj = state
    return state


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    state = ctx.obj
    if isinstance(state, RuntimeContext):
        return state
    return _ensure_runtime(ctx, None)


def _report_error(exc: InstallerError) -> None:
    err_console.print(f"[red]❌ ERROR: {escape(str(exc))}[/red]")
    if exc.hint:
        err_console.print(f"   [dim]{escape(exc.hint)}[/dim]")


def _exit_with_error(exc: InstallerError) -> NoReturn:
    _report_error(exc)
    raise typer.Exit(code=ExitCode.FAILURE)


def _execute(action: Callable[[], T]) -> T:
    """Run *action*, mapping installer failures to exit codes."""
    try:
        return action()
    except InterruptError:
        err_console.print("\n[yellow]⚠️  Cancelled by user.[/yellow]")
        raise typer.Exit(code=ExitCode.CANCELLED) from None
    except InstallerError as exc:
        _exit_with_error(exc)


def _relaunch_args() -> list[str]:
    return list(sys.argv[1:])


def _render_doctor_report(report: DoctorReport) -> None:
    """Render a diagnostics report in a human-friendly format."""
    for result in report.results:
        status_label = _PROBE_STATUS_STYLE[result.status]
        console.print(f"{status_label} {escape(result.message)}")
        for line in result.details:
            console.print(f"   {escape(line)}")
        if result.remediation:
            console.print(f"   [dim]{escape(result.remediation)}[/dim]")

    summary = report.summary
    totals = summary.totals
    console.print()
    console.print(
        f"Diagnostics summary: {_SUMMARY_STATUS_STYLE[summary.status]} "
        f"(green={totals.get(ProbeStatus.GREEN, 0)} "
        f"warn={totals.get(ProbeStatus.YELLOW, 0)} "
        f"red={totals.get(ProbeStatus.RED, 0)})"
    )


def _run_diagnose(state: RuntimeContext) -> None:
    console.print("\n🔍 Running OpenSpeedTest diagnostics...\n")
    orchestrator = state.orchestrator
    report = _execute(lambda: orchestrator.diagnose(orchestrator.new_session(Mode.DIAGNOSE)))
    _render_doctor_report(report)


def _show_menu() -> None:
    if console.is_terminal:
        console.clear()
    console.print(SPLASH, markup=False, highlight=False)
    console.print("[cyan]Please select an option:[/cyan]\n")
    for key, label in MENU_ITEMS:
        console.print(f"{key}) {label}")


def _interactive(state: RuntimeContext) -> NoReturn:
    orchestrator = state.orchestrator
    prompter = state.runtime.prompter
    if console.is_terminal:
        console.clear()
    console.print(SPLASH, markup=False, highlight=False)
    _execute(lambda: orchestrator.check_update(_relaunch_args()))

    while True:
        _show_menu()
        choice = str(typer.prompt("Choose [1-5]", default="", show_default=False)).strip()
        console.print()
        if choice == "1":
            session = orchestrator.new_session(Mode.INSTALL)
            _execute(lambda: orchestrator.install(session))
            prompter.pause()
        elif choice == "2":
            _run_diagnose(state)
            prompter.pause()
        elif choice == "3":
            session = orchestrator.new_session(Mode.UNINSTALL)
            _execute(lambda: orchestrator.uninstall(session))
            prompter.pause()
        elif choice == "4":
            _execute(lambda: orchestrator.check_update(_relaunch_args()))
            prompter.pause()
        elif choice == "5":
            raise typer.Exit(code=ExitCode.OK)
        else:
            err_console.print("[red]❌ Invalid option.[/red]")


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the speedtestctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    port: int | None = PORT_OPTION,
    debug: bool = DEBUG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    state = _ensure_runtime(ctx, config_file, port=port, debug=debug, verbose=verbose)
    if version:
        with state.runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"speedtestctl {get_version()} (release {__release__})")
            op.success("Reported CLI version.")
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        _interactive(state)


@app.command()
def install(
    ctx: typer.Context,
    yes: bool = YES_OPTION,
    source: DownloadSource | None = SOURCE_OPTION,
    domain: str | None = DOMAIN_OPTION,
    challenge: ChallengeStrategy = CHALLENGE_OPTION,
    dns_provider: str | None = DNS_PROVIDER_OPTION,
) -> None:
    """Install OpenSpeedTest behind a dedicated NGINX instance."""
    state = _get_runtime(ctx)
    if yes:
        state.runtime.prompter = AssumeYesPrompter()
    orchestrator = state.orchestrator
    session = orchestrator.new_session(Mode.INSTALL)
    if domain:
        session.tls = _execute(
            lambda: tls_request_from_options(domain, challenge.value, dns_provider, os.environ)
        )
    _execute(
        lambda: orchestrator.install(
            session,
            source=source,
            offer_tls=not yes,
        )
    )


@app.command()
def diagnose(ctx: typer.Context) -> None:
    """Check the service, port, configuration, logs and certificate."""
    _run_diagnose(_get_runtime(ctx))


@app.command()
def uninstall(ctx: typer.Context, yes: bool = YES_OPTION) -> None:
    """Remove OpenSpeedTest and everything the installer created."""
    state = _get_runtime(ctx)
    if yes:
        state.runtime.prompter = AssumeYesPrompter()
    orchestrator = state.orchestrator
    session = orchestrator.new_session(Mode.UNINSTALL)
    _execute(lambda: orchestrator.uninstall(session))


@app.command()
def update(ctx: typer.Context, yes: bool = YES_OPTION) -> None:
    """Check for a newer release and apply it."""
    state = _get_runtime(ctx)
    if yes:
        state.runtime.prompter = AssumeYesPrompter()
    orchestrator = state.orchestrator
    _execute(lambda: orchestrator.check_update(_relaunch_args()))


def main(argv: Sequence[str] | None = None) -> None:
    """Console-script entry point; finishes a staged self-update first."""
    args = list(sys.argv[1:] if argv is None else argv)
    apply_staged_update(args)
    app(args=args, prog_name="speedtestctl")


__all__ = ["app", "main"]
