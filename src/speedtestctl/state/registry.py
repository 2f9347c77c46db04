"""Helpers for interacting with the speedtestctl state directory.

The state directory (``/etc/speedtestctl`` by default) stores YAML artifacts
such as ``installation.yml``, the record of what a successful install left on
disk. Writes are atomic so an interrupted session never leaves a truncated
record behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

INSTALLATION_FILE = "installation.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(slots=True)
class InstallationRecord:
    """What a completed install created and how it is configured."""

    port: int
    install_path: str
    resolved_path: str
    config_path: str
    startup_script: str
    logrotate_script: str
    error_log: str
    pid_file: str
    supervised: bool = False
    tls_domain: str | None = None
    certificate_dir: str | None = None
    renewal_scheduled: bool = False
    persistent: bool = False
    download_url: str | None = None
    installed_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def artifacts(self) -> list[str]:
        """Return every filesystem path the install owns."""
        paths = [
            self.install_path,
            self.config_path,
            self.startup_script,
            self.logrotate_script,
            self.error_log,
            self.pid_file,
        ]
        if self.certificate_dir:
            paths.append(self.certificate_dir)
        return paths

    def to_dict(self) -> dict[str, Any]:
        """Return a YAML-serialisable mapping."""
        return {
            "port": self.port,
            "install_path": self.install_path,
            "resolved_path": self.resolved_path,
            "config_path": self.config_path,
            "startup_script": self.startup_script,
            "logrotate_script": self.logrotate_script,
            "error_log": self.error_log,
            "pid_file": self.pid_file,
            "supervised": self.supervised,
            "tls": {
                "domain": self.tls_domain,
                "certificate_dir": self.certificate_dir,
                "renewal_scheduled": self.renewal_scheduled,
            },
            "persistent": self.persistent,
            "download_url": self.download_url,
            "installed_at": self.installed_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> InstallationRecord:
        """Build a record from a parsed YAML mapping."""
        tls_raw = data.get("tls")
        tls: Mapping[str, Any] = tls_raw if isinstance(tls_raw, Mapping) else {}
        try:
            return cls(
                port=int(data["port"]),
                install_path=str(data["install_path"]),
                resolved_path=str(data.get("resolved_path", data["install_path"])),
                config_path=str(data["config_path"]),
                startup_script=str(data["startup_script"]),
                logrotate_script=str(data["logrotate_script"]),
                error_log=str(data["error_log"]),
                pid_file=str(data["pid_file"]),
                supervised=bool(data.get("supervised", False)),
                tls_domain=_optional_str(tls.get("domain")),
                certificate_dir=_optional_str(tls.get("certificate_dir")),
                renewal_scheduled=bool(tls.get("renewal_scheduled", False)),
                persistent=bool(data.get("persistent", False)),
                download_url=_optional_str(data.get("download_url")),
                installed_at=str(data.get("installed_at") or _now_iso()),
                updated_at=str(data.get("updated_at") or _now_iso()),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StateRegistryError(f"Installation record is incomplete: {exc}") from exc


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML state files."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the state directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named state file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a state file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse state file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given state file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    def remove(self, name: str) -> bool:
        """Delete a state file; return ``True`` when it existed."""
        path = self.path_for(name)
        if not path.exists():
            return False
        path.unlink()
        return True

    # Installation helpers ---------------------------------------------
    def read_installation(self) -> InstallationRecord | None:
        """Return the installation record, if one was written."""
        value = self.read(INSTALLATION_FILE)
        if value is None:
            return None
        if not isinstance(value, Mapping):
            raise StateRegistryError(f"{INSTALLATION_FILE} must contain a mapping.")
        return InstallationRecord.from_mapping(value)

    def write_installation(self, record: InstallationRecord) -> None:
        """Persist *record* to ``installation.yml``."""
        record.updated_at = _now_iso()
        self.write(INSTALLATION_FILE, record.to_dict())

    def update_installation(self, updates: Mapping[str, object]) -> InstallationRecord:
        """Apply top-level *updates* to the stored record."""
        record = self.read_installation()
        if record is None:
            raise StateRegistryError("No installation record found.")
        for key, value in updates.items():
            if not hasattr(record, key):
                raise StateRegistryError(f"Unknown installation field: {key}")
            setattr(record, key, value)
        self.write_installation(record)
        return record

    def remove_installation(self) -> bool:
        """Delete ``installation.yml``."""
        return self.remove(INSTALLATION_FILE)


__all__ = ["INSTALLATION_FILE", "InstallationRecord", "StateRegistry", "StateRegistryError"]
