"""Tests for free-space checks and relocation."""
from __future__ import annotations

from pathlib import Path

import pytest

from speedtestctl.config import StorageConfig
from speedtestctl.errors import InsufficientSpaceError
from speedtestctl.storage import StorageAllocator, secondary_volumes


class ConsentPrompter:
    """Prompter with a fixed answer to confirmations."""

    def __init__(self, answer: bool) -> None:
        """Store the answer."""
        self.answer = answer
        self.asked: list[str] = []

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """Return the configured answer."""
        self.asked.append(message)
        return self.answer

    def ask(self, message: str, *, default: str = "") -> str:
        """Return the default."""
        return default

    def pause(self) -> None:
        """Do nothing."""


def _storage(tmp_path: Path, *mounts: Path) -> StorageConfig:
    mounts_file = tmp_path / "mounts"
    lines = ["/dev/root / squashfs ro 0 0", "tmpfs /tmp tmpfs rw 0 0"]
    lines += [f"/dev/sda1 {mount} ext4 rw 0 0" for mount in mounts]
    mounts_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return StorageConfig(mounts_file=mounts_file, mount_prefix=str(tmp_path / "mnt") + "/")


def test_secondary_volumes_filters_prefix(tmp_path: Path) -> None:
    """Only mounts under the prefix are returned, without duplicates."""
    usb = tmp_path / "mnt" / "sda1"
    config = _storage(tmp_path, usb, usb)

    assert secondary_volumes(config.mounts_file, config.mount_prefix) == [usb]
    assert secondary_volumes(tmp_path / "missing", "/mnt/") == []


def test_sufficient_space_is_left_alone(tmp_path: Path) -> None:
    """No relocation happens when the primary path has room."""
    allocator = StorageAllocator(
        _storage(tmp_path), ConsentPrompter(True), free_mb=lambda path: 500
    )

    report = allocator.ensure_space(tmp_path / "www2", 64)

    assert report.available_mb == 500
    assert report.relocated_to is None


def test_relocates_to_secondary_volume_with_consent(tmp_path: Path) -> None:
    """With consent the install path becomes a symlink onto the volume."""
    usb = tmp_path / "mnt" / "sda1"
    usb.mkdir(parents=True)
    canonical = tmp_path / "www2"
    canonical.mkdir()
    (canonical / "keep.txt").write_text("data", encoding="utf-8")

    def free_mb(path: Path) -> int:
        return 4096 if str(path).startswith(str(usb)) else 10

    allocator = StorageAllocator(_storage(tmp_path, usb), ConsentPrompter(True), free_mb=free_mb)

    report = allocator.ensure_space(canonical, 64)

    target = usb / "openspeedtest"
    assert report.relocated_to == target
    assert report.available_mb == 4096
    assert canonical.is_symlink()
    assert canonical.resolve() == target.resolve()
    assert (target / "keep.txt").read_text(encoding="utf-8") == "data"


def test_declined_relocation_raises(tmp_path: Path) -> None:
    """Declining every candidate fails with insufficient space."""
    usb = tmp_path / "mnt" / "sda1"
    usb.mkdir(parents=True)
    prompter = ConsentPrompter(False)
    allocator = StorageAllocator(
        _storage(tmp_path, usb),
        prompter,
        free_mb=lambda path: 4096 if str(path).startswith(str(usb)) else 10,
    )

    with pytest.raises(InsufficientSpaceError):
        allocator.ensure_space(tmp_path / "www2", 64)

    assert len(prompter.asked) == 1
    assert not (tmp_path / "www2").exists()


def test_small_volumes_are_not_offered(tmp_path: Path) -> None:
    """Volumes without enough room are skipped silently."""
    usb = tmp_path / "mnt" / "sda1"
    prompter = ConsentPrompter(True)
    allocator = StorageAllocator(_storage(tmp_path, usb), prompter, free_mb=lambda path: 10)

    with pytest.raises(InsufficientSpaceError):
        allocator.ensure_space(tmp_path / "www2", 64)

    assert prompter.asked == []


def test_relocate_replaces_existing_symlink(tmp_path: Path) -> None:
    """An old symlink is re-pointed at the new target."""
    old = tmp_path / "old"
    old.mkdir()
    canonical = tmp_path / "www2"
    canonical.symlink_to(old, target_is_directory=True)
    allocator = StorageAllocator(_storage(tmp_path), ConsentPrompter(True))

    target = allocator.relocate(canonical, tmp_path / "new")

    assert canonical.resolve() == target.resolve()
    assert old.is_dir()
