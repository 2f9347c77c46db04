"""Jinja2 template engine with operator override support.

Built-in templates ship inside this package. An override directory (by
default ``/etc/speedtestctl/templates``) can shadow any of them by providing a
file under the same relative name.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, StrictUndefined

BUILTIN_DIR = Path(__file__).resolve().parent


class TemplateEngine:
    """Render built-in or overridden templates."""

    def __init__(self, search_paths: list[Path]) -> None:
        """Create an environment searching *search_paths* in order."""
        loaders = [FileSystemLoader(str(path)) for path in search_paths]
        self._env = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers *override_dir* over built-ins."""
        paths: list[Path] = []
        if override_dir is not None and override_dir.expanduser().is_dir():
            paths.append(override_dir.expanduser())
        paths.append(BUILTIN_DIR)
        return cls(paths)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        template = self._env.get_template(name)
        return template.render(**context)

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return ``True`` when content changed."""
        content = self.render_to_string(name, context)
        return write_text(destination, content, mode=mode)


def write_text(destination: Path, content: str, *, mode: int = 0o644) -> bool:
    """Atomically write *content* to *destination* unless it is already current."""
    if destination.exists():
        try:
            if destination.read_text(encoding="utf-8") == content:
                os.chmod(destination, mode)
                return False
        except (OSError, UnicodeDecodeError):
            pass
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = destination.with_name(f".{destination.name}.tmp")
    try:
        tmp_path.write_text(content, encoding="utf-8")
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = ["TemplateEngine", "write_text"]
