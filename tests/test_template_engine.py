"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest
from jinja2 import UndefinedError

from speedtestctl.templates import TemplateEngine, write_text

ROTATION_CONTEXT = {
    "error_log": "/var/log/nginx_openspeedtest_error.log",
    "pid_file": "/var/run/nginx_OpenSpeedTest.pid",
    "max_size_kb": 100,
    "max_age_days": 2,
    "log_dir": "/var/log",
    "log_name": "nginx_openspeedtest_error.log",
}


def test_render_rotation_script() -> None:
    """The built-in rotation script carries the size and age limits."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("cron/logrotate.sh.j2", ROTATION_CONTEXT)

    assert output.startswith("#!/bin/sh\n")
    assert "MAX_SIZE_KB=100" in output
    assert "MAX_AGE_DAYS=2" in output
    assert 'find "/var/log" -name "nginx_openspeedtest_error.log.*"' in output


def test_missing_variables_are_errors() -> None:
    """Templates render with strict undefined handling."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(UndefinedError):
        engine.render_to_string("cron/logrotate.sh.j2", {"error_log": "/tmp/error.log"})


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file respects the mode and skips identical content."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "cron.daily" / "nginx_openspeedtest_logrotate"

    changed = engine.render_to_path(
        "cron/logrotate.sh.j2", destination, ROTATION_CONTEXT, mode=0o755
    )
    changed_again = engine.render_to_path(
        "cron/logrotate.sh.j2", destination, ROTATION_CONTEXT, mode=0o755
    )

    assert changed is True
    assert changed_again is False
    assert oct(destination.stat().st_mode & 0o777) == "0o755"
    assert not (destination.parent / f".{destination.name}.tmp").exists()


def test_override_path_takes_precedence(tmp_path: Path) -> None:
    """Override templates shadow the built-in ones; others still resolve."""
    override_dir = tmp_path / "templates"
    override = override_dir / "cron" / "logrotate.sh.j2"
    override.parent.mkdir(parents=True)
    override.write_text("rotate {{ error_log }}\n", encoding="utf-8")

    engine = TemplateEngine.with_overrides(override_dir)

    assert engine.render_to_string("cron/logrotate.sh.j2", ROTATION_CONTEXT) == (
        "rotate /var/log/nginx_openspeedtest_error.log\n"
    )
    assert "USE_PROCD=1" in engine.render_to_string(
        "service/procd.j2",
        {
            "nginx_bin": "/usr/sbin/nginx",
            "config_path": "/etc/nginx/nginx_openspeedtest.conf",
            "pid_file": "/var/run/nginx_OpenSpeedTest.pid",
            "port": 8888,
            "respawn_threshold": 3600,
            "respawn_timeout": 5,
            "respawn_retry": 0,
        },
    )


def test_missing_override_dir_uses_builtins(tmp_path: Path) -> None:
    """A non-existent override directory is ignored."""
    engine = TemplateEngine.with_overrides(tmp_path / "absent")

    assert "MAX_SIZE_KB" in engine.render_to_string("cron/logrotate.sh.j2", ROTATION_CONTEXT)


def test_write_text_refreshes_mode(tmp_path: Path) -> None:
    """Unchanged content still gets the requested permissions."""
    path = tmp_path / "script"
    write_text(path, "echo hi\n", mode=0o644)

    assert write_text(path, "echo hi\n", mode=0o700) is False
    assert oct(path.stat().st_mode & 0o777) == "0o700"
