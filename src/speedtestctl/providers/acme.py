"""acme.sh provider used by the certificate manager."""
from __future__ import annotations

import os
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import IssuanceError

# acme.sh exits 2 when a certificate exists and is not yet due for renewal.
SKIPPED_EXIT = 2
CRON_MARKER = "--cron"


@dataclass(slots=True)
class AcmeClient:
    """Drive the acme.sh command line client."""

    home: Path = Path("/root/.acme.sh")
    installer_url: str = "https://get.acme.sh"
    server: str = "letsencrypt"
    email: str | None = None

    @property
    def script(self) -> Path:
        """Return the path of the acme.sh entry point."""
        return self.home / "acme.sh"

    def installed(self) -> bool:
        """Return ``True`` when acme.sh is present."""
        return self.script.is_file()

    def install(self) -> None:
        """Install acme.sh from its upstream installer."""
        if self.installed():
            return
        pipeline = f"curl -fsSL {shlex.quote(self.installer_url)} | sh -s"
        if self.email:
            pipeline = f"{pipeline} email={shlex.quote(self.email)}"
        result = self._run(["sh", "-c", pipeline])
        if result.returncode != 0 or not self.installed():
            message = (result.stderr or result.stdout or "no output").strip()
            raise IssuanceError(
                f"Failed to install acme.sh (exit {result.returncode}): {message}"
            )

    def issue(
        self,
        domain: str,
        mode: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``acme.sh --issue`` for *domain* with the given validation *mode*."""
        args = ["--issue", "--server", self.server, "-d", domain, *mode]
        return self._acme(args, env=env, check=check)

    def renew(
        self,
        domain: str,
        mode: Sequence[str] = (),
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``acme.sh --renew`` for *domain*."""
        return self._acme(["--renew", "-d", domain, *mode], check=check)

    def install_cert(
        self,
        domain: str,
        *,
        key_file: Path,
        fullchain_file: Path,
        reload_command: str,
    ) -> subprocess.CompletedProcess[str]:
        """Copy the issued certificate into place and record the reload hook."""
        args = [
            "--install-cert",
            "-d",
            domain,
            "--key-file",
            str(key_file),
            "--fullchain-file",
            str(fullchain_file),
            "--reloadcmd",
            reload_command,
        ]
        return self._acme(args)

    def remove(self, domain: str) -> None:
        """Forget *domain* in acme.sh; missing entries are ignored."""
        if self.installed():
            self._acme(["--remove", "-d", domain], check=False)

    def cron_line(self) -> str:
        """Return the crontab entry that runs renewals daily."""
        return (
            f'0 0 * * * "{self.script}" {CRON_MARKER} --home "{self.home}" > /dev/null'
        )

    # ------------------------------------------------------------------
    def _acme(
        self,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [str(self.script), "--home", str(self.home), *args]
        result = self._run(command, env=env)
        if check and result.returncode not in (0, SKIPPED_EXIT):
            message = (result.stderr or result.stdout or "no output").strip()
            raise IssuanceError(
                f"acme.sh {args[0]} failed (exit {result.returncode}): {message}"
            )
        return result

    def _run(
        self,
        command: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        merged_env = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)
        try:
            return subprocess.run(  # noqa: S603, S607
                list(command),
                capture_output=True,
                text=True,
                check=False,
                env=merged_env,
            )
        except FileNotFoundError as exc:
            raise IssuanceError(f"{command[0]} not found: {exc}") from exc


__all__ = ["CRON_MARKER", "AcmeClient"]
