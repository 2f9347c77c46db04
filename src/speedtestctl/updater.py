"""Self-update: compare date-stamped version tags and swap in a new script.

Versions are ``YYYY-MM-DD`` strings, so plain string comparison orders them
chronologically. Replacing the running file happens in two hops: the new
copy is staged as ``<script>.new`` and executed; on start-up that staged
copy renames itself over the original and executes the original again.
Only a speedtestctl release run by the same interpreter as the running
script is accepted as a replacement.
"""
from __future__ import annotations

import os
import re
import shutil
import subprocess
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from . import __release__
from .config import UpdateConfig
from .errors import ValidationError
from .fetcher import validate_download

SENTINEL_VERSION = "0000-00-00"
STAGED_SUFFIX = ".new"
VERSION_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
HEADER_PATTERN = re.compile(r"^#\s*Version:\s*(\S+)", re.MULTILINE)
RELEASE_PATTERN = re.compile(r"""^__release__\s*=\s*["']([^"']+)["']""", re.MULTILINE)
SHEBANG_PATTERN = re.compile(r"^#!\s*(\S+)(?:[ \t]+(\S+))?")
PROJECT_MARKER = "speedtestctl"

Exec = Callable[[str, Sequence[str]], None]


def normalize_version(value: str | None) -> str:
    """Return *value* when it is a ``YYYY-MM-DD`` tag, else the sentinel."""
    if value is None:
        return SENTINEL_VERSION
    text = value.strip().replace("\r", "")
    return text if VERSION_PATTERN.match(text) else SENTINEL_VERSION


def extract_version(text: str) -> str:
    """Return the version tag embedded in a script body."""
    for pattern in (HEADER_PATTERN, RELEASE_PATTERN):
        match = pattern.search(text)
        if match:
            return normalize_version(match.group(1))
    return SENTINEL_VERSION


def read_version(path: Path) -> str:
    """Return the version tag embedded in *path* (sentinel when unreadable)."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return SENTINEL_VERSION
    return extract_version(text)


def is_newer(remote: str | None, local: str | None) -> bool:
    """Return ``True`` when *remote* sorts after *local*."""
    return normalize_version(remote) > normalize_version(local)


def interpreter_family(text: str) -> str | None:
    """Return the shebang interpreter of *text* without version digits."""
    match = SHEBANG_PATTERN.match(text)
    if match is None:
        return None
    program = match.group(1).rsplit("/", 1)[-1]
    if program == "env" and match.group(2):
        program = match.group(2)
    return program.rstrip("0123456789.") or None


def replacement_problem(current: str, candidate: str) -> str | None:
    """Return why *candidate* cannot replace the *current* script, if it cannot.

    A replacement must be a speedtestctl release run by the same interpreter
    as the running script.
    """
    expected = interpreter_family(current)
    if expected is None:
        return "The running program is not a script that can update itself."
    found = interpreter_family(candidate)
    if found != expected:
        return (
            f"Downloaded update is a {found or 'non-script'} program; "
            f"expected a {expected} script."
        )
    if PROJECT_MARKER not in candidate:
        return "Downloaded update is not a speedtestctl release."
    return None


@dataclass(frozen=True, slots=True)
class UpdateDecision:
    """Outcome of an update check."""

    local_version: str
    remote_version: str
    available: bool
    downloaded: Path | None = None
    reason: str | None = None
    compatible: bool = True


def staged_path(script: Path) -> Path:
    """Return where a new copy of *script* is staged."""
    return script.with_name(f"{script.name}{STAGED_SUFFIX}")


def is_staged(script: Path) -> bool:
    """Return ``True`` when *script* is a staged copy."""
    return script.name.endswith(STAGED_SUFFIX)


def _relaunch(target: Path, argv: Sequence[str], execv: Exec) -> None:
    # The staged file is executable; its shebang selects the interpreter.
    execv(str(target), [str(target), *argv])


def apply_staged_update(
    argv: Sequence[str],
    *,
    script: Path | None = None,
    execv: Exec = os.execv,
) -> bool:
    """Finish a staged update when running from ``<script>.new``.

    Renames the staged file over the original and re-executes it; returns
    ``False`` when the current script is not a staged copy.
    """
    current = script or Path(sys.argv[0]).resolve()
    if not is_staged(current):
        return False
    original = current.with_name(current.name[: -len(STAGED_SUFFIX)])
    os.replace(current, original)
    os.chmod(original, 0o755)
    _relaunch(original, argv, execv)
    return True


@dataclass
class SelfUpdater:
    """Check for and install newer versions of the running script."""

    config: UpdateConfig
    script: Path
    execv: Exec = os.execv

    def local_version(self) -> str:
        """Return the version embedded in the running script or package."""
        version = read_version(self.script)
        if version == SENTINEL_VERSION:
            return normalize_version(__release__)
        return version

    def download(self) -> Path:
        """Fetch the remote script to the temporary download path."""
        destination = self.config.download_path
        destination.parent.mkdir(parents=True, exist_ok=True)
        command = [
            "wget",
            "-q",
            "-T",
            str(self.config.timeout),
            "-O",
            str(destination),
            self.config.script_url,
        ]
        result = subprocess.run(  # noqa: S603, S607
            command,
            capture_output=True,
            text=True,
            check=False,
            timeout=self.config.timeout * 3,
        )
        if result.returncode != 0:
            destination.unlink(missing_ok=True)
            raise ValidationError(
                "Unable to check for updates (network or GitHub issue)."
            )
        return destination

    def check(self) -> UpdateDecision:
        """Compare local and remote versions; never raises for network issues."""
        local = self.local_version()
        try:
            downloaded = self.download()
            validate_download(downloaded, self.config.min_bytes)
            remote_text = downloaded.read_text(encoding="utf-8", errors="replace")
        except ValidationError as exc:
            self.discard()
            return UpdateDecision(local, SENTINEL_VERSION, False, reason=str(exc))
        except (OSError, subprocess.SubprocessError) as exc:
            self.discard()
            return UpdateDecision(
                local,
                SENTINEL_VERSION,
                False,
                reason=f"Unable to check for updates: {exc}",
            )
        remote = extract_version(remote_text)
        problem = replacement_problem(self._current_text(), remote_text)
        if problem is not None:
            self.discard()
            return UpdateDecision(local, remote, False, reason=problem, compatible=False)
        available = is_newer(remote, local)
        if not available:
            self.discard()
            return UpdateDecision(
                local, remote, False, reason="Already running the latest version."
            )
        return UpdateDecision(local, remote, True, downloaded=downloaded)

    def stage(self, decision: UpdateDecision) -> Path:
        """Copy the downloaded script next to the running one as ``.new``."""
        if decision.downloaded is None:
            raise ValidationError("No downloaded update to stage.")
        problem = replacement_problem(
            self._current_text(),
            decision.downloaded.read_text(encoding="utf-8", errors="replace"),
        )
        if problem is not None:
            raise ValidationError(problem)
        target = staged_path(self.script)
        shutil.copyfile(decision.downloaded, target)
        os.chmod(target, 0o755)
        self.discard()
        return target

    def relaunch(self, staged: Path, argv: Sequence[str]) -> None:
        """Execute the staged copy in place of the current process."""
        _relaunch(staged, argv, self.execv)

    def discard(self) -> None:
        """Remove the temporary download."""
        self.config.download_path.unlink(missing_ok=True)

    def _current_text(self) -> str:
        try:
            return self.script.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""


__all__ = [
    "SENTINEL_VERSION",
    "SelfUpdater",
    "UpdateDecision",
    "apply_staged_update",
    "extract_version",
    "interpreter_family",
    "is_newer",
    "is_staged",
    "normalize_version",
    "read_version",
    "replacement_problem",
    "staged_path",
]
