"""Snapshot, verify and roll back configuration files."""
from __future__ import annotations

import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .errors import InvalidConfigError
from .templates import write_text


@dataclass(slots=True)
class ConfigSnapshot:
    """Copy of a file taken before it is overwritten."""

    path: Path
    backup: Path
    existed: bool = False
    mode: int | None = None

    @classmethod
    def capture(cls, path: Path, backup: Path) -> ConfigSnapshot:
        """Copy *path* to *backup* when it exists."""
        snapshot = cls(path=path, backup=backup)
        if path.is_file():
            backup.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, backup)
            snapshot.existed = True
            snapshot.mode = path.stat().st_mode & 0o777
        return snapshot

    def restore(self) -> bool:
        """Put the captured bytes back; remove *path* if nothing existed before.

        Returns ``True`` when a previous file was restored.
        """
        if self.existed and self.backup.is_file():
            os.replace(self.backup, self.path)
            if self.mode is not None:
                os.chmod(self.path, self.mode)
            return True
        if not self.existed:
            self.path.unlink(missing_ok=True)
        return False

    def discard(self) -> None:
        """Forget the backup after the new content has been accepted."""
        self.backup.unlink(missing_ok=True)


Validator = Callable[[Path], None]


def apply_with_rollback(
    path: Path,
    text: str,
    validate: Validator,
    backup_path: Path,
    *,
    mode: int = 0o644,
    keep_backup: bool = False,
) -> ConfigSnapshot:
    """Write *text* to *path*, validate it, and restore the old file on failure.

    *validate* raises :class:`InvalidConfigError` (or any exception) when the
    new content is rejected. Rejections are re-raised as
    :class:`InvalidConfigError` carrying the validator output and whether a
    previous file was restored.
    """
    snapshot = ConfigSnapshot.capture(path, backup_path)
    try:
        write_text(path, text, mode=mode)
        validate(path)
    except InvalidConfigError as exc:
        restored = snapshot.restore()
        raise InvalidConfigError(
            str(exc),
            diagnostics=exc.diagnostics,
            restored=restored,
            hint=exc.hint,
        ) from exc
    except BaseException:
        snapshot.restore()
        raise
    if not keep_backup:
        snapshot.discard()
    return snapshot


__all__ = ["ConfigSnapshot", "Validator", "apply_with_rollback"]
