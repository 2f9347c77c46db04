"""Configuration loader for speedtestctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/speedtestctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SPEEDTESTCTL_``.
4. The bare ``DEBUG``, ``VERBOSE`` and ``PORT`` variables understood by the
   original shell installer.
5. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SPEEDTESTCTL_DOWNLOAD__TIMEOUT=600
    export SPEEDTESTCTL_NGINX__BIN=/usr/local/sbin/nginx

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import ConfigError

ENV_PREFIX = "SPEEDTESTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
LEGACY_ENV_KEYS = {"DEBUG": "debug", "VERBOSE": "verbose", "PORT": "port"}


@dataclass(frozen=True)
class NginxConfig:
    """Location of the nginx binary and the fixed listener ports."""

    bin: str = "/usr/sbin/nginx"
    http_port: int = 80
    https_port: int = 443
    stock_service: Path = Path("/etc/init.d/nginx")
    default_site: Path = Path("/etc/nginx/conf.d/default.conf")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": self.bin,
            "http_port": self.http_port,
            "https_port": self.https_port,
            "stock_service": str(self.stock_service),
            "default_site": str(self.default_site),
        }


@dataclass(frozen=True)
class DownloadConfig:
    """Application bundle sources and validation thresholds."""

    official_url: str = "https://github.com/openspeedtest/Speed-Test/archive/refs/heads/main.zip"
    mirror_url: str = "https://fw.gl-inet.com/tools/script/Speed-Test-main.zip"
    archive_name: str = "main.zip"
    extract_dir: str = "Speed-Test-main"
    min_bytes: int = 100_000
    timeout: int = 300
    read_timeout: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "official_url": self.official_url,
            "mirror_url": self.mirror_url,
            "archive_name": self.archive_name,
            "extract_dir": self.extract_dir,
            "min_bytes": self.min_bytes,
            "timeout": self.timeout,
            "read_timeout": self.read_timeout,
        }


@dataclass(frozen=True)
class UpdateConfig:
    """Self-update source and validation thresholds."""

    script_url: str = (
        "https://github.com/frankstutz/OpenSpeedTestServer/"
        "releases/latest/download/speedtestctl"
    )
    download_path: Path = Path("/tmp/speedtestctl_update.new")
    min_bytes: int = 1000
    timeout: int = 10

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "script_url": self.script_url,
            "download_path": str(self.download_path),
            "min_bytes": self.min_bytes,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class AcmeConfig:
    """Certificate client installation and issuance defaults."""

    home: Path = Path("/root/.acme.sh")
    installer_url: str = "https://get.acme.sh"
    cert_root: Path = Path("/etc/nginx/ssl")
    server: str = "letsencrypt"
    email: str | None = None
    crontab: Path = Path("/etc/crontabs/root")
    packages: tuple[str, ...] = ("socat", "ca-bundle")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "home": str(self.home),
            "installer_url": self.installer_url,
            "cert_root": str(self.cert_root),
            "server": self.server,
            "email": self.email,
            "crontab": str(self.crontab),
            "packages": list(self.packages),
        }


@dataclass(frozen=True)
class PersistenceConfig:
    """Firmware upgrade-survival manifest locations."""

    manifest: Path = Path("/etc/sysupgrade.conf")
    rc_dir: Path = Path("/etc/rc.d")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"manifest": str(self.manifest), "rc_dir": str(self.rc_dir)}


@dataclass(frozen=True)
class ServiceConfig:
    """Supervision tunables for the generated service script."""

    respawn_threshold: int = 3600
    respawn_timeout: int = 5
    respawn_retry: int = 0
    start_attempts: int = 5
    poll_interval: float = 1.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "respawn_threshold": self.respawn_threshold,
            "respawn_timeout": self.respawn_timeout,
            "respawn_retry": self.respawn_retry,
            "start_attempts": self.start_attempts,
            "poll_interval": self.poll_interval,
        }


@dataclass(frozen=True)
class StorageConfig:
    """Where secondary volumes are searched for during relocation."""

    mounts_file: Path = Path("/proc/mounts")
    mount_prefix: str = "/mnt/"
    relocated_name: str = "openspeedtest"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "mounts_file": str(self.mounts_file),
            "mount_prefix": self.mount_prefix,
            "relocated_name": self.relocated_name,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for speedtestctl."""

    config_file: Path
    install_dir: Path
    config_path: Path
    config_backup: Path
    startup_script: Path
    logrotate_script: Path
    error_log: Path
    pid_file: Path
    lock_file: Path
    state_dir: Path
    logs_dir: Path
    templates_dir: Path
    proc_root: Path
    port: int
    required_space_mb: int
    debug: bool
    verbose: bool
    nginx: NginxConfig
    download: DownloadConfig
    update: UpdateConfig
    acme: AcmeConfig
    persistence: PersistenceConfig
    service: ServiceConfig
    storage: StorageConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_dir": str(self.install_dir),
            "config_path": str(self.config_path),
            "config_backup": str(self.config_backup),
            "startup_script": str(self.startup_script),
            "logrotate_script": str(self.logrotate_script),
            "error_log": str(self.error_log),
            "pid_file": str(self.pid_file),
            "lock_file": str(self.lock_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "proc_root": str(self.proc_root),
            "port": self.port,
            "required_space_mb": self.required_space_mb,
            "debug": self.debug,
            "verbose": self.verbose,
            "nginx": self.nginx.to_dict(),
            "download": self.download.to_dict(),
            "update": self.update.to_dict(),
            "acme": self.acme.to_dict(),
            "persistence": self.persistence.to_dict(),
            "service": self.service.to_dict(),
            "storage": self.storage.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/speedtestctl/config.yml",
    "install_dir": "/www2",
    "config_path": "/etc/nginx/nginx_openspeedtest.conf",
    "config_backup": None,  # derived from config_path when absent
    "startup_script": "/etc/init.d/nginx_speedtest",
    "logrotate_script": "/etc/cron.daily/nginx_openspeedtest_logrotate",
    "error_log": "/var/log/nginx_openspeedtest_error.log",
    "pid_file": "/var/run/nginx_OpenSpeedTest.pid",
    "lock_file": "/var/run/openspeedtest_install.lock",
    "state_dir": "/etc/speedtestctl",
    "logs_dir": "/var/log/speedtestctl",
    "templates_dir": "/etc/speedtestctl/templates",
    "proc_root": "/proc",
    "port": 8888,
    "required_space_mb": 64,
    "debug": False,
    "verbose": False,
    "nginx": NginxConfig().to_dict(),
    "download": DownloadConfig().to_dict(),
    "update": UpdateConfig().to_dict(),
    "acme": AcmeConfig().to_dict(),
    "persistence": PersistenceConfig().to_dict(),
    "service": ServiceConfig().to_dict(),
    "storage": StorageConfig().to_dict(),
}

SECTION_KEYS: dict[str, set[str]] = {
    "nginx": set(NginxConfig().to_dict()),
    "download": set(DownloadConfig().to_dict()),
    "update": set(UpdateConfig().to_dict()),
    "acme": set(AcmeConfig().to_dict()),
    "persistence": set(PersistenceConfig().to_dict()),
    "service": set(ServiceConfig().to_dict()),
    "storage": set(StorageConfig().to_dict()),
}
ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    legacy_values = _build_legacy_overrides(resolved_env)
    if legacy_values:
        _deep_merge(merged, legacy_values)

    if overrides:
        _deep_merge(merged, {key: value for key, value in overrides.items() if value is not None})

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    port = _expect_int(raw.get("port"), "port", default=8888)
    if not 1 <= port <= 65535:
        raise ConfigError(f"port must be between 1 and 65535. Got {port}.")

    required = _expect_int(raw.get("required_space_mb"), "required_space_mb", default=64)
    if required <= 0:
        raise ConfigError("required_space_mb must be greater than zero.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_path = _to_path(raw.get("config_path"))
    backup_value = raw.get("config_backup")
    config_backup = (
        _to_path(backup_value)
        if backup_value
        else config_path.with_name(f"{config_path.name}.backup")
    )

    nginx_map = _as_dict(raw.get("nginx"), "nginx")
    nginx_defaults = NginxConfig()
    nginx = NginxConfig(
        bin=str(nginx_map.get("bin", nginx_defaults.bin)),
        http_port=_expect_int(nginx_map.get("http_port"), "nginx.http_port", default=80),
        https_port=_expect_int(nginx_map.get("https_port"), "nginx.https_port", default=443),
        stock_service=_to_path(nginx_map.get("stock_service", nginx_defaults.stock_service)),
        default_site=_to_path(nginx_map.get("default_site", nginx_defaults.default_site)),
    )

    download_map = _as_dict(raw.get("download"), "download")
    download_defaults = DownloadConfig()
    download = DownloadConfig(
        official_url=str(download_map.get("official_url", download_defaults.official_url)),
        mirror_url=str(download_map.get("mirror_url", download_defaults.mirror_url)),
        archive_name=str(download_map.get("archive_name", download_defaults.archive_name)),
        extract_dir=str(download_map.get("extract_dir", download_defaults.extract_dir)),
        min_bytes=_expect_int(
            download_map.get("min_bytes"), "download.min_bytes", default=download_defaults.min_bytes
        ),
        timeout=_expect_positive_int(
            download_map.get("timeout"), "download.timeout", default=download_defaults.timeout
        ),
        read_timeout=_expect_positive_int(
            download_map.get("read_timeout"),
            "download.read_timeout",
            default=download_defaults.read_timeout,
        ),
    )

    update_map = _as_dict(raw.get("update"), "update")
    update_defaults = UpdateConfig()
    update = UpdateConfig(
        script_url=str(update_map.get("script_url", update_defaults.script_url)),
        download_path=_to_path(update_map.get("download_path", update_defaults.download_path)),
        min_bytes=_expect_int(
            update_map.get("min_bytes"), "update.min_bytes", default=update_defaults.min_bytes
        ),
        timeout=_expect_positive_int(
            update_map.get("timeout"), "update.timeout", default=update_defaults.timeout
        ),
    )

    acme_map = _as_dict(raw.get("acme"), "acme")
    acme_defaults = AcmeConfig()
    email_value = acme_map.get("email")
    packages_value = acme_map.get("packages", list(acme_defaults.packages))
    if isinstance(packages_value, str) or not isinstance(packages_value, (list, tuple)):
        raise ConfigError("acme.packages must be a list of package names.")
    acme = AcmeConfig(
        home=_to_path(acme_map.get("home", acme_defaults.home)),
        installer_url=str(acme_map.get("installer_url", acme_defaults.installer_url)),
        cert_root=_to_path(acme_map.get("cert_root", acme_defaults.cert_root)),
        server=str(acme_map.get("server", acme_defaults.server)),
        email=str(email_value).strip() if email_value else None,
        crontab=_to_path(acme_map.get("crontab", acme_defaults.crontab)),
        packages=tuple(str(item) for item in packages_value),
    )

    persistence_map = _as_dict(raw.get("persistence"), "persistence")
    persistence = PersistenceConfig(
        manifest=_to_path(persistence_map.get("manifest", "/etc/sysupgrade.conf")),
        rc_dir=_to_path(persistence_map.get("rc_dir", "/etc/rc.d")),
    )

    service_map = _as_dict(raw.get("service"), "service")
    service_defaults = ServiceConfig()
    service = ServiceConfig(
        respawn_threshold=_expect_int(
            service_map.get("respawn_threshold"),
            "service.respawn_threshold",
            default=service_defaults.respawn_threshold,
        ),
        respawn_timeout=_expect_int(
            service_map.get("respawn_timeout"),
            "service.respawn_timeout",
            default=service_defaults.respawn_timeout,
        ),
        respawn_retry=_expect_int(
            service_map.get("respawn_retry"),
            "service.respawn_retry",
            default=service_defaults.respawn_retry,
        ),
        start_attempts=_expect_positive_int(
            service_map.get("start_attempts"),
            "service.start_attempts",
            default=service_defaults.start_attempts,
        ),
        poll_interval=_expect_positive_float(
            service_map.get("poll_interval"),
            "service.poll_interval",
            default=service_defaults.poll_interval,
        ),
    )

    storage_map = _as_dict(raw.get("storage"), "storage")
    storage_defaults = StorageConfig()
    storage = StorageConfig(
        mounts_file=_to_path(storage_map.get("mounts_file", storage_defaults.mounts_file)),
        mount_prefix=str(storage_map.get("mount_prefix", storage_defaults.mount_prefix)),
        relocated_name=str(storage_map.get("relocated_name", storage_defaults.relocated_name)),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        install_dir=_to_path(raw.get("install_dir")),
        config_path=config_path,
        config_backup=config_backup,
        startup_script=_to_path(raw.get("startup_script")),
        logrotate_script=_to_path(raw.get("logrotate_script")),
        error_log=_to_path(raw.get("error_log")),
        pid_file=_to_path(raw.get("pid_file")),
        lock_file=_to_path(raw.get("lock_file")),
        state_dir=_to_path(raw.get("state_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        proc_root=_to_path(raw.get("proc_root")),
        port=_expect_int(raw.get("port"), "port", default=8888),
        required_space_mb=_expect_int(
            raw.get("required_space_mb"), "required_space_mb", default=64
        ),
        debug=_expect_bool(raw.get("debug"), "debug"),
        verbose=_expect_bool(raw.get("verbose"), "verbose"),
        nginx=nginx,
        download=download,
        update=update,
        acme=acme,
        persistence=persistence,
        service=service,
        storage=storage,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _build_legacy_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for env_key, config_key in LEGACY_ENV_KEYS.items():
        value = env.get(env_key)
        if value is None or not value.strip():
            continue
        overrides[config_key] = _coerce_value(value)
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_bool(value: object | None, label: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"", "0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_int(value: object | None, label: str, *, default: int) -> int:
    numeric = _expect_int(value, label, default=default)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AcmeConfig",
    "AppConfig",
    "ConfigError",
    "DownloadConfig",
    "NginxConfig",
    "PersistenceConfig",
    "ServiceConfig",
    "StorageConfig",
    "UpdateConfig",
    "load_config",
]
