"""
MediaForge Platform Backend Base.

Defines the interface to the external tools the device workflows drive.
Every destructive method raises ``ToolExecutionFailed`` when the underlying
tool exits with a non-zero code.
"""

from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from mediaforge.core.exceptions import ToolExecutionFailed

if TYPE_CHECKING:
    from mediaforge.core.credentials import UnlockMethod
    from mediaforge.core.layout import PartitionPlan
    from mediaforge.core.models import DeviceSnapshot, FileSystem, PartitionSnapshot


class CommandResult:
    """Result of a command execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        command: str | list[str],
        duration_seconds: float = 0.0,
    ) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.command = command
        self.duration_seconds = duration_seconds

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def raise_for_status(self) -> CommandResult:
        """Raise ToolExecutionFailed unless the command succeeded."""
        if not self.success:
            raise ToolExecutionFailed(self.command, self.returncode, self.stderr)
        return self

    def __repr__(self) -> str:
        cmd = self.command if isinstance(self.command, str) else " ".join(self.command)
        return f"CommandResult(rc={self.returncode}, cmd='{cmd[:50]}...')"


@dataclass(frozen=True)
class CopyProgress:
    """Byte progress of a copy."""

    bytes_done: int
    bytes_total: int
    rate_bytes_per_second: float

    @property
    def eta_seconds(self) -> float | None:
        if self.rate_bytes_per_second <= 0 or self.bytes_total <= 0:
            return None
        return max(0, self.bytes_total - self.bytes_done) / self.rate_bytes_per_second


CopyCallback = Callable[[CopyProgress], None]


class PlatformBackend(ABC):
    """Abstract interface to device inventory and external tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Platform name."""

    @property
    @abstractmethod
    def requires_admin(self) -> bool:
        """Whether root privileges are required for operations."""

    @abstractmethod
    def is_admin(self) -> bool:
        """Check if running with root privileges."""

    # ==================== Inventory ====================

    @abstractmethod
    def list_devices(self) -> list[DeviceSnapshot]:
        """Snapshot every whole-disk block device."""

    @abstractmethod
    def probe_device(self, device: str) -> DeviceSnapshot | None:
        """Snapshot one device, or None if it is no longer present."""

    @abstractmethod
    def boot_device(self) -> str | None:
        """Bare name of the device the running system booted from."""

    @abstractmethod
    def open_event_stream(self, command: Sequence[str]) -> subprocess.Popen[str]:
        """Spawn the device-event monitor; its stdout yields one event per line."""

    def device_present(self, device: str) -> bool:
        return self.probe_device(device) is not None

    # ==================== Mounts ====================

    @abstractmethod
    def active_swaps(self) -> list[str]:
        """Device paths currently used as swap."""

    @abstractmethod
    def swap_off(self, device_path: str) -> None:
        """Stop swapping on ``device_path``."""

    @abstractmethod
    def mount(self, device_path: str, mount_point: Path, read_only: bool = False) -> None:
        """Mount ``device_path`` at ``mount_point``."""

    @abstractmethod
    def unmount(self, target: str | Path) -> None:
        """Unmount a device path or mount point."""

    def unmount_partitions(self, partitions: Sequence[PartitionSnapshot]) -> list[str]:
        """Unmount every mounted partition. Returns the unmounted device paths."""
        unmounted = []
        for partition in partitions:
            if partition.is_mounted:
                self.unmount(partition.device_path)
                unmounted.append(partition.device_path)
        return unmounted

    # ==================== Destructive operations ====================

    @abstractmethod
    def write_partition_table(
        self, device: DeviceSnapshot, plan: PartitionPlan, exchange_fs: FileSystem
    ) -> None:
        """Replace the partition table of ``device`` with ``plan``."""

    @abstractmethod
    def resize_partitions(
        self, device: DeviceSnapshot, plan: PartitionPlan, exchange_fs: FileSystem
    ) -> None:
        """Rewrite exchange and data partition boundaries within the current layout."""

    @abstractmethod
    def format_partition(
        self, device_path: str, filesystem: FileSystem, label: str | None = None
    ) -> None:
        """Create a file system on ``device_path``."""

    @abstractmethod
    def set_label(self, device_path: str, filesystem: FileSystem, label: str) -> None:
        """Change the file system label of ``device_path``."""

    @abstractmethod
    def open_encrypted(self, device_path: str, unlock: UnlockMethod, name: str) -> str:
        """Set up encryption on ``device_path``; returns the mapped device path."""

    @abstractmethod
    def close_encrypted(self, name: str) -> None:
        """Close a mapped encrypted device."""

    @abstractmethod
    def copy_tree(
        self,
        source: Path,
        destination: Path,
        progress: CopyCallback | None = None,
        excludes: Sequence[str] = (),
    ) -> None:
        """Copy a directory tree with byte progress."""

    @abstractmethod
    def install_bootloader(
        self, device: DeviceSnapshot, boot_mount: Path, system_mount: Path
    ) -> None:
        """Make the device bootable."""

    @abstractmethod
    def run_backup(self, source: Path, destination: Path) -> None:
        """Back up ``source`` into ``destination`` with the external backup tool."""

    @abstractmethod
    def change_owner(self, path: Path, owner: str) -> None:
        """Recursively change the owner of ``path`` (``user:group``)."""

    @abstractmethod
    def disk_used_bytes(self, mount_point: Path) -> int:
        """Used bytes of the file system mounted at ``mount_point``."""
