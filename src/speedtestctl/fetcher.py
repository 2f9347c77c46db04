"""Download and unpack the OpenSpeedTest application bundle."""
from __future__ import annotations

import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from rich.console import Console

from .config import DownloadConfig
from .errors import DownloadError, ExtractionError, ValidationError
from .tasks import Spawner, TaskRegistry, run_with_progress, spawn

TIMEOUT_EXIT = 124


class DownloadSource(str, Enum):
    """Operator-selectable bundle sources."""

    OFFICIAL = "official"
    MIRROR = "mirror"

    @property
    def label(self) -> str:
        """Return the menu label."""
        if self is DownloadSource.MIRROR:
            return "GL.iNet mirror"
        return "Official repository"

    def url(self, config: DownloadConfig) -> str:
        """Return the configured URL for this source."""
        if self is DownloadSource.MIRROR:
            return config.mirror_url
        return config.official_url

    @classmethod
    def from_choice(cls, choice: str) -> tuple[DownloadSource, bool]:
        """Map a menu answer to a source; the flag is ``False`` for invalid input."""
        text = choice.strip().lower()
        if text in {"1", cls.OFFICIAL.value}:
            return cls.OFFICIAL, True
        if text in {"2", cls.MIRROR.value}:
            return cls.MIRROR, True
        return cls.OFFICIAL, False


def validate_download(path: Path, min_bytes: int) -> int:
    """Return the size of *path*, raising when it is missing or undersized."""
    if not path.is_file():
        raise ValidationError(f"Downloaded file not found: {path}")
    size = path.stat().st_size
    if size < min_bytes:
        raise ValidationError(
            f"Downloaded file is too small ({size} bytes, expected at least {min_bytes}).",
            hint="The download may be truncated; try the other source.",
        )
    return size


@dataclass
class ArtifactFetcher:
    """Cancellable download and extraction of the application bundle."""

    config: DownloadConfig
    tasks: TaskRegistry
    console: Console
    spawner: Spawner = spawn

    def prepare(self, install_dir: Path) -> None:
        """Create *install_dir* and drop a stale extracted tree."""
        install_dir.mkdir(parents=True, exist_ok=True)
        stale = install_dir / self.config.extract_dir
        if stale.is_dir() and not stale.is_symlink():
            shutil.rmtree(stale)

    def fetch(self, url: str, destination: Path) -> int:
        """Download *url* to *destination* and return its validated size."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        args = [
            "timeout",
            str(self.config.timeout),
            "wget",
            "-q",
            "-T",
            str(self.config.read_timeout),
            "-O",
            str(destination),
            url,
        ]
        rc, detail = run_with_progress(
            "Downloading OpenSpeedTest",
            args,
            registry=self.tasks,
            console=self.console,
            spawner=self.spawner,
        )
        if rc != 0:
            destination.unlink(missing_ok=True)
            reason = "timed out" if rc == TIMEOUT_EXIT else f"failed (exit {rc})"
            message = f"Download {reason}: {url}"
            if detail:
                message = f"{message}: {detail}"
            raise DownloadError(message)
        try:
            return validate_download(destination, self.config.min_bytes)
        except ValidationError:
            destination.unlink(missing_ok=True)
            raise

    def extract(self, archive: Path, destination: Path) -> Path:
        """Unpack *archive* into *destination* and return the application root."""
        rc, detail = run_with_progress(
            "Unzipping",
            ["unzip", "-o", str(archive), "-d", str(destination)],
            registry=self.tasks,
            console=self.console,
            spawner=self.spawner,
        )
        if rc != 0:
            message = f"Extraction failed (exit {rc})"
            raise ExtractionError(f"{message}: {detail}" if detail else message)
        archive.unlink(missing_ok=True)
        root = destination / self.config.extract_dir
        if not root.is_dir():
            raise ExtractionError(
                f"{self.config.extract_dir} directory not found after extraction."
            )
        return root

    def download_bundle(self, url: str, install_dir: Path) -> Path:
        """Run prepare, fetch and extract; return the document root."""
        self.prepare(install_dir)
        archive = install_dir / self.config.archive_name
        self.fetch(url, archive)
        return self.extract(archive, install_dir)


__all__ = ["ArtifactFetcher", "DownloadSource", "validate_download"]
