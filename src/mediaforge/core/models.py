"""
MediaForge data models.

Immutable snapshots of storage devices and their partitions, plus the
description of the live system used as installation source.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from pathlib import Path
from typing import Any

MEGA = 1024 * 1024

EFI_LABEL = "EFI"
SYSTEM_LABEL = "system"
PERSISTENCE_LABEL = "persistence"


class DeviceKind(Enum):
    """Kind of storage device."""

    USB_FLASH = auto()
    SD_CARD = auto()
    HARD_DRIVE = auto()
    OPTICAL = auto()
    RAID = auto()
    UNKNOWN = auto()

    @property
    def is_removable_media(self) -> bool:
        return self in (DeviceKind.USB_FLASH, DeviceKind.SD_CARD)


class PartitionRole(Enum):
    """Role of a partition on a provisioned medium."""

    BOOT = auto()
    EXCHANGE = auto()
    DATA = auto()
    SYSTEM = auto()
    UNKNOWN = auto()


class MountState(Enum):
    """Mount state of a partition."""

    UNMOUNTED = auto()
    MOUNTED_READ_ONLY = auto()
    MOUNTED_READ_WRITE = auto()
    MOUNTED_ELSEWHERE = auto()

    @property
    def is_mounted(self) -> bool:
        return self is not MountState.UNMOUNTED


class FileSystem(Enum):
    """File system types."""

    VFAT = "vfat"
    EXFAT = "exfat"
    NTFS = "ntfs"
    EXT2 = "ext2"
    EXT3 = "ext3"
    EXT4 = "ext4"
    BTRFS = "btrfs"
    XFS = "xfs"
    ISO9660 = "iso9660"
    SQUASHFS = "squashfs"
    SWAP = "swap"
    UNKNOWN = "unknown"

    @classmethod
    def from_string(cls, value: str | None) -> FileSystem:
        """Create FileSystem from string value."""
        if not value:
            return cls.UNKNOWN
        value_lower = value.lower().strip()
        for fs in cls:
            if fs.value == value_lower or fs.name.lower() == value_lower:
                return fs
        aliases = {
            "fat": cls.VFAT,
            "fat32": cls.VFAT,
            "fat16": cls.VFAT,
            "msdos": cls.VFAT,
        }
        return aliases.get(value_lower, cls.UNKNOWN)

    @property
    def is_fat_like(self) -> bool:
        return self in (FileSystem.VFAT, FileSystem.EXFAT, FileSystem.NTFS)


def derive_partition_role(label: str | None, filesystem: FileSystem) -> PartitionRole:
    """Derive the role of a partition from its label and file system."""
    normalized = (label or "").strip().lower()
    if normalized == EFI_LABEL.lower() and filesystem == FileSystem.VFAT:
        return PartitionRole.BOOT
    if normalized == PERSISTENCE_LABEL:
        return PartitionRole.DATA
    if normalized == SYSTEM_LABEL:
        return PartitionRole.SYSTEM
    if filesystem.is_fat_like:
        return PartitionRole.EXCHANGE
    return PartitionRole.UNKNOWN


def partition_device_name(device: str, number: int) -> str:
    """Kernel name of partition ``number`` on ``device`` (sdb1, mmcblk0p1)."""
    separator = "p" if device and device[-1].isdigit() else ""
    return f"{device}{separator}{number}"


@dataclass(frozen=True)
class PartitionSnapshot:
    """One partition of a storage device at a point in time."""

    device_and_number: str  # e.g. sdb2
    number: int
    size_bytes: int
    filesystem: FileSystem = FileSystem.UNKNOWN
    label: str | None = None
    mount_state: MountState = MountState.UNMOUNTED
    mount_point: str | None = None
    used_bytes: int | None = None
    active_persistence: bool = False

    @property
    def device_path(self) -> str:
        return f"/dev/{self.device_and_number}"

    @property
    def role(self) -> PartitionRole:
        return derive_partition_role(self.label, self.filesystem)

    @property
    def is_mounted(self) -> bool:
        return self.mount_state.is_mounted

    @property
    def size_mb(self) -> int:
        return self.size_bytes // MEGA

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_and_number": self.device_and_number,
            "number": self.number,
            "size_bytes": self.size_bytes,
            "filesystem": self.filesystem.value,
            "label": self.label,
            "role": self.role.name,
            "mount_state": self.mount_state.name,
            "mount_point": self.mount_point,
            "used_bytes": self.used_bytes,
            "active_persistence": self.active_persistence,
        }


@dataclass(frozen=True)
class DeviceSnapshot:
    """One physical storage device as observed at a point in time."""

    device: str  # bare identifier, e.g. sdb
    size_bytes: int
    vendor: str = ""
    model: str = ""
    serial: str | None = None
    revision: str | None = None
    kind: DeviceKind = DeviceKind.UNKNOWN
    removable: bool = False
    partitions: tuple[PartitionSnapshot, ...] = field(default_factory=tuple)

    @property
    def device_path(self) -> str:
        return f"/dev/{self.device}"

    @property
    def display_name(self) -> str:
        """Human-readable name for display."""
        parts = [p for p in (self.vendor.strip(), self.model.strip()) if p]
        if not parts:
            parts.append(self.device_path)
        return " ".join(parts)

    def _first_with_role(self, role: PartitionRole) -> PartitionSnapshot | None:
        for partition in self.partitions:
            if partition.role == role:
                return partition
        return None

    @property
    def boot_partition(self) -> PartitionSnapshot | None:
        return self._first_with_role(PartitionRole.BOOT)

    @property
    def exchange_partition(self) -> PartitionSnapshot | None:
        return self._first_with_role(PartitionRole.EXCHANGE)

    @property
    def data_partition(self) -> PartitionSnapshot | None:
        return self._first_with_role(PartitionRole.DATA)

    @property
    def system_partition(self) -> PartitionSnapshot | None:
        return self._first_with_role(PartitionRole.SYSTEM)

    @property
    def has_active_persistence(self) -> bool:
        return any(p.active_persistence for p in self.partitions)

    def partition_name(self, number: int) -> str:
        return partition_device_name(self.device, number)

    def get_partition_by_number(self, number: int) -> PartitionSnapshot | None:
        for p in self.partitions:
            if p.number == number:
                return p
        return None

    def with_partitions(self, partitions: list[PartitionSnapshot]) -> DeviceSnapshot:
        """Return a new snapshot with a different partition list."""
        return replace(self, partitions=tuple(partitions))

    def to_dict(self) -> dict[str, Any]:
        return {
            "device": self.device,
            "device_path": self.device_path,
            "vendor": self.vendor,
            "model": self.model,
            "serial": self.serial,
            "revision": self.revision,
            "size_bytes": self.size_bytes,
            "kind": self.kind.name,
            "removable": self.removable,
            "partitions": [p.to_dict() for p in self.partitions],
        }


@dataclass(frozen=True)
class SystemSource:
    """The running live system (or an image of it) used as installation source."""

    system_size_bytes: int
    system_path: Path
    device: str | None = None
    kind: DeviceKind = DeviceKind.UNKNOWN
    exchange_partition: PartitionSnapshot | None = None
    data_partition: PartitionSnapshot | None = None

    @property
    def has_exchange_partition(self) -> bool:
        return self.exchange_partition is not None

    @property
    def has_data_partition(self) -> bool:
        return self.data_partition is not None

    @property
    def exchange_used_bytes(self) -> int | None:
        return self.exchange_partition.used_bytes if self.exchange_partition else None

    @property
    def data_used_bytes(self) -> int | None:
        return self.data_partition.used_bytes if self.data_partition else None

    def validate(self) -> tuple[bool, str]:
        """Check that the system payload is still available."""
        if self.system_size_bytes <= 0:
            return False, "Source system size is unknown"
        if not self.system_path.is_dir():
            return False, f"Source system path {self.system_path} is not available"
        return True, "Source system available"


_DEVICE_NAME_RE = re.compile(r"^[a-z]+[a-z0-9]*$")
_PARTITION_NAME_RE = re.compile(r"^(?:(?:[shv]|xv)d[a-z]+\d+|[a-z]+\d+(?:n\d+)?p\d+)$")


def is_valid_device_name(name: str) -> bool:
    """Check that ``name`` looks like a bare kernel block device name."""
    return bool(_DEVICE_NAME_RE.match(name))


def is_partition_name(name: str) -> bool:
    """Check whether ``name`` is a partition node (sdb1, mmcblk0p1, nvme0n1p2)."""
    return bool(_PARTITION_NAME_RE.match(name))
