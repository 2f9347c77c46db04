"""Nginx provider: configuration synthesis and validation."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from ..backups import ConfigSnapshot, apply_with_rollback
from ..errors import InvalidConfigError
from ..templates import TemplateEngine

if TYPE_CHECKING:
    from ..certificates import CertificatePaths
    from ..environment import HardwareProfile

SUCCESS_TOKEN = "successful"
HTTP_TEMPLATE = "nginx/http.conf.j2"
HTTPS_TEMPLATE = "nginx/https.conf.j2"


def synthesize_config(
    templates: TemplateEngine,
    profile: HardwareProfile,
    port: int,
    document_root: Path,
    *,
    error_log: Path,
    pid_file: Path,
    tls: CertificatePaths | None = None,
    http_port: int = 80,
    https_port: int = 443,
    acme_webroot: Path | None = None,
) -> str:
    """Return the complete nginx configuration text.

    Without *tls* a single server listens on *port*. With *tls* the output
    holds a plain server on *http_port* answering ACME challenges and
    redirecting everything else, plus a TLS server on *https_port*.
    """
    context: dict[str, object] = {
        "profile": profile,
        "error_log": str(error_log),
        "pid_file": str(pid_file),
        "document_root": str(document_root),
    }
    if tls is None:
        context["port"] = port
        return templates.render_to_string(HTTP_TEMPLATE, context)
    context.update(
        {
            "tls": {
                "domain": tls.domain,
                "fullchain": str(tls.fullchain),
                "key": str(tls.key),
            },
            "http_port": http_port,
            "https_port": https_port,
            "acme_webroot": str(acme_webroot or document_root),
        }
    )
    return templates.render_to_string(HTTPS_TEMPLATE, context)


@dataclass(slots=True)
class NginxProvider:
    """Validate and apply configurations for the dedicated nginx instance."""

    nginx_bin: str = "/usr/sbin/nginx"

    def test_config(self, path: Path) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t -c <path>``; raise unless the success token is reported."""
        try:
            result = self._run_nginx(["-t", "-c", str(path)])
        except FileNotFoundError as exc:
            raise InvalidConfigError(
                f"{self.nginx_bin} not found; cannot validate {path}.",
                diagnostics=str(exc),
            ) from exc
        output = "\n".join(part for part in (result.stdout, result.stderr) if part).strip()
        if result.returncode != 0 or SUCCESS_TOKEN not in output:
            raise InvalidConfigError(
                "NGINX configuration validation failed",
                diagnostics=output or "no output",
            )
        return result

    def is_valid(self, path: Path) -> tuple[bool, str]:
        """Return validity and diagnostic output without raising."""
        try:
            result = self.test_config(path)
        except InvalidConfigError as exc:
            return False, exc.diagnostics
        return True, (result.stderr or result.stdout or "").strip()

    def apply_config(
        self,
        path: Path,
        text: str,
        backup_path: Path,
        *,
        keep_backup: bool = False,
    ) -> ConfigSnapshot:
        """Write *text* to *path*, validating it and restoring the backup on failure."""

        def _validate(target: Path) -> None:
            self.test_config(target)

        return apply_with_rollback(
            path,
            text,
            _validate,
            backup_path,
            mode=0o644,
            keep_backup=keep_backup,
        )

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.nginx_bin, *args]
        return subprocess.run(  # noqa: S603, S607
            command,
            capture_output=True,
            text=True,
            check=False,
        )


__all__ = ["NginxProvider", "SUCCESS_TOKEN", "synthesize_config"]
