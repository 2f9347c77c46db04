"""Firmware upgrade-survival manifest management (``/etc/sysupgrade.conf``)."""
from __future__ import annotations

import fnmatch
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .templates import write_text


@dataclass
class PersistenceManifest:
    """Add and remove managed paths in the sysupgrade manifest."""

    manifest: Path = Path("/etc/sysupgrade.conf")
    rc_dir: Path = Path("/etc/rc.d")

    def entries(self) -> list[str]:
        """Return manifest lines (empty when the manifest is missing)."""
        try:
            return self.manifest.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []

    def service_links(self, service_name: str) -> list[Path]:
        """Return start/stop symlinks for *service_name* in the rc directory."""
        if not self.rc_dir.is_dir():
            return []
        links = [
            path
            for path in self.rc_dir.iterdir()
            if path.is_symlink() and fnmatch.fnmatch(path.name, f"[SK]*{service_name}")
        ]
        return sorted(links)

    def register(
        self,
        paths: Iterable[Path | str],
        *,
        service_name: str | None = None,
    ) -> list[str]:
        """Append each path (and service links) once; return the lines added."""
        lines = self.entries()
        present = set(lines)
        candidates = [str(path) for path in paths]
        if service_name:
            candidates.extend(str(link) for link in self.service_links(service_name))
        added: list[str] = []
        for candidate in candidates:
            if candidate in present:
                continue
            lines.append(candidate)
            present.add(candidate)
            added.append(candidate)
        if added:
            self._write(lines)
        return added

    def deregister(
        self,
        paths: Iterable[Path | str],
        *,
        service_name: str | None = None,
    ) -> list[str]:
        """Remove lines naming any of *paths* (or a path below one) or a service link."""
        targets = [str(path).rstrip("/") for path in paths]
        link_pattern = f"{self.rc_dir}/[SK]*{service_name}" if service_name else None
        kept: list[str] = []
        removed: list[str] = []
        for line in self.entries():
            stripped = line.strip()
            if any(_covers(target, stripped) for target in targets) or (
                link_pattern is not None and fnmatch.fnmatch(stripped, link_pattern)
            ):
                removed.append(line)
                continue
            kept.append(line)
        if removed:
            self._write(kept)
        return removed

    def is_registered(self, path: Path | str) -> bool:
        """Return ``True`` when *path* is listed verbatim."""
        return str(path) in self.entries()

    def _write(self, lines: list[str]) -> None:
        content = "\n".join(lines)
        write_text(self.manifest, f"{content}\n" if content else "", mode=0o644)


def _covers(target: str, line: str) -> bool:
    if not target:
        return False
    return line.rstrip("/") == target or line.startswith(f"{target}/")


__all__ = ["PersistenceManifest"]
