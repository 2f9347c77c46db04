"""Free-space verification and relocation to secondary volumes."""
from __future__ import annotations

import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .config import StorageConfig
from .environment import free_space_mb
from .errors import InsufficientSpaceError
from .prompts import Prompter


@dataclass(frozen=True, slots=True)
class SpaceReport:
    """Outcome of :meth:`StorageAllocator.ensure_space`."""

    path: Path
    available_mb: int
    relocated_to: Path | None = None


def secondary_volumes(mounts_file: Path, prefix: str) -> list[Path]:
    """Return mount points under *prefix* listed in *mounts_file*."""
    try:
        lines = mounts_file.read_text(encoding="utf-8").splitlines()
    except OSError:
        return []
    volumes: list[Path] = []
    for line in lines:
        fields = line.split()
        if len(fields) < 2:
            continue
        mountpoint = fields[1].replace("\\040", " ")
        if mountpoint.startswith(prefix) and Path(mountpoint) not in volumes:
            volumes.append(Path(mountpoint))
    return volumes


@dataclass
class StorageAllocator:
    """Ensure the install path has room, relocating it with consent."""

    config: StorageConfig
    prompter: Prompter
    free_mb: Callable[[Path], int] = free_space_mb
    notify: Callable[[str], None] = field(default=lambda _message: None)

    def ensure_space(self, path: Path, required_mb: int) -> SpaceReport:
        """Return a report for *path*, relocating it when it is too small."""
        available = self.free_mb(path)
        if available >= required_mb:
            self.notify(f"Sufficient space for installation: {available}MB available")
            return SpaceReport(path=path, available_mb=available)

        self.notify(
            f"Not enough free space at {path}. Required: {required_mb}MB, "
            f"Available: {available}MB"
        )
        relocated: Path | None = None
        for volume in secondary_volumes(self.config.mounts_file, self.config.mount_prefix):
            volume_free = self.free_mb(volume)
            if volume_free < required_mb:
                continue
            question = (
                f"Found {volume} with {volume_free}MB available. "
                f"Use it for installation by creating a symlink at {path}?"
            )
            if self.prompter.confirm(question, default=False):
                relocated = self.relocate(path, volume / self.config.relocated_name)
                break

        new_available = self.free_mb(relocated or path)
        if new_available < required_mb:
            raise InsufficientSpaceError(
                f"Still not enough space to install ({new_available}MB available, "
                f"{required_mb}MB required).",
                hint="Attach a USB drive or free up space and retry.",
            )
        return SpaceReport(path=path, available_mb=new_available, relocated_to=relocated)

    def relocate(self, canonical: Path, target: Path) -> Path:
        """Create *target* and point *canonical* at it with a symbolic link."""
        target.mkdir(parents=True, exist_ok=True)
        if canonical.is_symlink():
            canonical.unlink()
        elif canonical.is_dir():
            if any(canonical.iterdir()):
                shutil.copytree(canonical, target, dirs_exist_ok=True)
            shutil.rmtree(canonical)
        elif canonical.exists():
            canonical.unlink()
        canonical.parent.mkdir(parents=True, exist_ok=True)
        canonical.symlink_to(target, target_is_directory=True)
        self.notify(f"Symlink created: {canonical} -> {target}")
        return target


__all__ = ["SpaceReport", "StorageAllocator", "secondary_volumes"]
