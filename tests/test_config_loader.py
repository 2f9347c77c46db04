"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from speedtestctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.install_dir == Path("/www2")
    assert config.config_path == Path("/etc/nginx/nginx_openspeedtest.conf")
    assert config.config_backup == Path("/etc/nginx/nginx_openspeedtest.conf.backup")
    assert config.startup_script == Path("/etc/init.d/nginx_speedtest")
    assert config.pid_file == Path("/var/run/nginx_OpenSpeedTest.pid")
    assert config.lock_file == Path("/var/run/openspeedtest_install.lock")
    assert config.port == 8888
    assert config.required_space_mb == 64
    assert config.debug is False
    assert config.verbose is False
    assert config.nginx.https_port == 443
    assert config.download.min_bytes == 100_000
    assert config.update.min_bytes == 1000
    assert config.acme.packages == ("socat", "ca-bundle")
    assert config.persistence.manifest == Path("/etc/sysupgrade.conf")


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "speedtestctl.yml"
    cfg.write_text(
        "install_dir: {root}\n"
        "port: 9090\n"
        "nginx:\n"
        "  bin: /opt/nginx/sbin/nginx\n"
        "acme:\n"
        "  email: ops@example.test\n"
        "  packages: [socat]\n".format(root=tmp_path / "www"),
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.install_dir == tmp_path / "www"
    assert config.port == 9090
    assert config.nginx.bin == "/opt/nginx/sbin/nginx"
    assert config.acme.email == "ops@example.test"
    assert config.acme.packages == ("socat",)


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Prefixed environment variables override defaults and file settings."""
    cfg = tmp_path / "speedtestctl.yml"
    cfg.write_text("port: 9090\n", encoding="utf-8")
    env = {
        "SPEEDTESTCTL_CONFIG_FILE": str(cfg),
        "SPEEDTESTCTL_PORT": "9191",
        "SPEEDTESTCTL_STATE_DIR": str(tmp_path / "state"),
        "SPEEDTESTCTL_DOWNLOAD__TIMEOUT": "600",
        "SPEEDTESTCTL_SERVICE__POLL_INTERVAL": "0.5",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.port == 9191
    assert config.state_dir == tmp_path / "state"
    assert config.download.timeout == 600
    assert config.service.poll_interval == 0.5


def test_legacy_environment_flags(tmp_path: Path) -> None:
    """The bare DEBUG, VERBOSE and PORT variables are honoured."""
    env = {"DEBUG": "1", "VERBOSE": "1", "PORT": "8080"}

    config = load_config(config_file=tmp_path / "missing.yml", env=env)

    assert config.debug is True
    assert config.verbose is True
    assert config.port == 8080


def test_blank_legacy_variables_are_ignored(tmp_path: Path) -> None:
    """Empty DEBUG or PORT values fall back to defaults."""
    config = load_config(config_file=tmp_path / "missing.yml", env={"DEBUG": "", "PORT": " "})

    assert config.debug is False
    assert config.port == 8888


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"PORT": "8080"},
        overrides={"port": 9000, "verbose": True, "debug": None},
    )

    assert config.port == 9000
    assert config.verbose is True
    assert config.debug is False


def test_unknown_top_level_key_rejected(tmp_path: Path) -> None:
    """Unknown keys surface a configuration error."""
    cfg = tmp_path / "speedtestctl.yml"
    cfg.write_text("bogus: 1\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="bogus"):
        load_config(config_file=cfg, env={})


def test_unknown_section_key_rejected(tmp_path: Path) -> None:
    """Unknown nested keys are reported with their section."""
    cfg = tmp_path / "speedtestctl.yml"
    cfg.write_text("nginx:\n  worker_count: 4\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown nginx configuration keys"):
        load_config(config_file=cfg, env={})


def test_top_level_mapping_required(tmp_path: Path) -> None:
    """A YAML list at the top level is rejected."""
    cfg = tmp_path / "speedtestctl.yml"
    cfg.write_text("- one\n- two\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_file=cfg, env={})


def test_invalid_port_rejected(tmp_path: Path) -> None:
    """Ports outside the TCP range are rejected."""
    with pytest.raises(ConfigError, match="port must be between"):
        load_config(config_file=tmp_path / "missing.yml", env={"PORT": "70000"})


def test_invalid_integer_rejected(tmp_path: Path) -> None:
    """Non-numeric integers raise a descriptive error."""
    with pytest.raises(ConfigError, match="download.timeout"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"SPEEDTESTCTL_DOWNLOAD__TIMEOUT": "soon"},
        )


def test_acme_packages_must_be_list(tmp_path: Path) -> None:
    """A scalar package list is rejected."""
    cfg = tmp_path / "speedtestctl.yml"
    cfg.write_text("acme:\n  packages: socat\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="acme.packages"):
        load_config(config_file=cfg, env={})


def test_explicit_backup_path(tmp_path: Path) -> None:
    """An explicit config_backup is used verbatim."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "config_path": str(tmp_path / "nginx.conf"),
            "config_backup": str(tmp_path / "saved.conf"),
        },
    )

    assert config.config_backup == tmp_path / "saved.conf"


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """The resolved config renders to plain data."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    data = config.to_dict()

    assert data["port"] == 8888
    assert data["nginx"]["bin"] == "/usr/sbin/nginx"  # type: ignore[index]
    assert data["acme"]["packages"] == ["socat", "ca-bundle"]  # type: ignore[index]
