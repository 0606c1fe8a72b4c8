"""
Linux output parsers.

Parsers for lsblk, findmnt, /proc/mounts, /proc/swaps and rsync progress.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mediaforge.core.models import (
    DeviceKind,
    DeviceSnapshot,
    FileSystem,
    MountState,
    PartitionSnapshot,
)

# Mount points used by live-boot for the persistence overlay
PERSISTENCE_MOUNT_PREFIXES = ("/lib/live/mount/persistence", "/run/live/persistence")


@dataclass(frozen=True)
class MountEntry:
    """One mounted file system."""

    source: str
    target: str
    options: tuple[str, ...] = ()

    @property
    def read_only(self) -> bool:
        return "ro" in self.options

    @property
    def is_persistence(self) -> bool:
        return self.target.startswith(PERSISTENCE_MOUNT_PREFIXES)


@dataclass(frozen=True)
class RsyncProgress:
    """One progress line of ``rsync --info=progress2``."""

    bytes_done: int
    percent: int
    rate: str
    files_remaining: int | None = None
    files_total: int | None = None


def parse_lsblk_json(output: str) -> list[dict[str, Any]]:
    """Parse JSON output from lsblk."""
    try:
        data = json.loads(output)
        return data.get("blockdevices", [])
    except json.JSONDecodeError:
        return []


def parse_device_kind(tran: str | None, name: str, block_type: str | None) -> DeviceKind:
    """Determine the device kind from transport, name and block type."""
    if block_type == "rom" or name.startswith("sr"):
        return DeviceKind.OPTICAL
    if name.startswith("md") or (block_type or "").startswith("raid"):
        return DeviceKind.RAID
    if name.startswith("mmcblk"):
        return DeviceKind.SD_CARD
    if tran:
        tran_lower = tran.lower()
        if "usb" in tran_lower:
            return DeviceKind.USB_FLASH
        if tran_lower in ("sata", "ata", "nvme", "sas", "scsi", "spi"):
            return DeviceKind.HARD_DRIVE
    return DeviceKind.UNKNOWN


def _parse_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def _parse_flag(value: Any) -> bool:
    return value in (True, "1", 1)


def mount_state_for(
    device_path: str,
    mounts: dict[str, MountEntry],
    holders: list[dict[str, Any]] | None = None,
) -> tuple[MountState, MountEntry | None]:
    """Mount state of a partition, following device-mapper holders."""
    entry = mounts.get(device_path)
    if entry is not None:
        state = MountState.MOUNTED_READ_ONLY if entry.read_only else MountState.MOUNTED_READ_WRITE
        return state, entry

    for holder in holders or []:
        holder_path = holder.get("path") or f"/dev/mapper/{holder.get('name', '')}"
        holder_entry = mounts.get(holder_path)
        if holder_entry is not None:
            return MountState.MOUNTED_ELSEWHERE, holder_entry
    return MountState.UNMOUNTED, None


def build_partition_from_lsblk(
    block: dict[str, Any],
    mounts: dict[str, MountEntry],
) -> PartitionSnapshot | None:
    """Build a PartitionSnapshot from lsblk child device data."""
    block_type = block.get("type", "")
    if block_type not in ("part", "partition", ""):
        return None

    name = block.get("name", "")
    device_path = block.get("path") or f"/dev/{name}"
    number_match = re.search(r"(\d+)$", name)
    number = int(number_match.group(1)) if number_match else 0

    state, entry = mount_state_for(device_path, mounts, block.get("children"))

    return PartitionSnapshot(
        device_and_number=name,
        number=number,
        size_bytes=_parse_int(block.get("size")) or 0,
        filesystem=FileSystem.from_string(block.get("fstype")),
        label=block.get("label") or None,
        mount_state=state,
        mount_point=entry.target if entry else block.get("mountpoint"),
        used_bytes=_parse_int(block.get("fsused")),
        active_persistence=entry is not None and entry.is_persistence,
    )


def build_device_from_lsblk(
    block: dict[str, Any],
    mounts: dict[str, MountEntry],
) -> DeviceSnapshot:
    """Build a DeviceSnapshot from lsblk whole-disk data."""
    name = block.get("name", "")
    partitions = []
    for child in block.get("children", []):
        partition = build_partition_from_lsblk(child, mounts)
        if partition is not None:
            partitions.append(partition)
    partitions.sort(key=lambda p: p.number)

    return DeviceSnapshot(
        device=name,
        size_bytes=_parse_int(block.get("size")) or 0,
        vendor=(block.get("vendor") or "").strip(),
        model=(block.get("model") or "").strip(),
        serial=block.get("serial"),
        revision=(block.get("rev") or "").strip() or None,
        kind=parse_device_kind(block.get("tran"), name, block.get("type")),
        removable=_parse_flag(block.get("rm")) or _parse_flag(block.get("hotplug")),
        partitions=tuple(partitions),
    )


def parse_findmnt_json(output: str) -> dict[str, MountEntry]:
    """Parse ``findmnt -J -o SOURCE,TARGET,OPTIONS`` output."""
    result: dict[str, MountEntry] = {}
    try:
        data = json.loads(output)
    except json.JSONDecodeError:
        return result

    def process_fs(fs: dict[str, Any]) -> None:
        source = fs.get("source", "")
        target = fs.get("target", "")
        if source and target and source.startswith("/dev/"):
            # bind mounts show up as /dev/sdb1[/subdir]
            source = source.split("[", 1)[0]
            options = tuple((fs.get("options") or "").split(","))
            result.setdefault(source, MountEntry(source, target, options))
        for child in fs.get("children", []):
            process_fs(child)

    for fs in data.get("filesystems", []):
        process_fs(fs)
    return result


def parse_proc_mounts(path: Path = Path("/proc/mounts")) -> dict[str, MountEntry]:
    """Parse /proc/mounts as fallback."""
    result: dict[str, MountEntry] = {}
    try:
        with open(path) as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 4 and parts[0].startswith("/dev/"):
                    result.setdefault(
                        parts[0], MountEntry(parts[0], parts[1], tuple(parts[3].split(",")))
                    )
    except OSError:
        pass
    return result


def parse_proc_swaps(output: str) -> list[str]:
    """Return the swap devices listed in /proc/swaps."""
    swaps = []
    for line in output.strip().splitlines()[1:]:
        parts = line.split()
        if parts and parts[0].startswith("/dev/"):
            swaps.append(parts[0])
    return swaps


_RSYNC_PROGRESS_RE = re.compile(
    r"^\s*([\d,.]+)\s+(\d+)%\s+(\S+/s)\s+\S+"
    r"(?:\s+\(xfr#\d+,\s+(?:to-chk|to-check|ir-chk)=(\d+)/(\d+)\))?"
)


_RATE_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}


def parse_rate(rate: str) -> float:
    """Convert an rsync transfer rate such as ``31.25MB/s`` to bytes per second."""
    match = re.match(r"^([\d.,]+)([kKmMgGtT]?)B/s$", rate.strip())
    if not match:
        return 0.0
    value, unit = match.groups()
    return float(value.replace(",", ".")) * _RATE_UNITS[unit.lower()]


def parse_sfdisk_json(output: str) -> tuple[int, dict[str, dict[str, int]]]:
    """Parse ``sfdisk -J`` into the sector size and start/size per partition node."""
    try:
        table = json.loads(output).get("partitiontable", {})
    except json.JSONDecodeError:
        return 512, {}
    sector_size = int(table.get("sectorsize", 512))
    partitions = {
        entry["node"]: {"start": int(entry["start"]), "size": int(entry["size"])}
        for entry in table.get("partitions", [])
        if "node" in entry
    }
    return sector_size, partitions


def parse_rsync_progress(line: str) -> RsyncProgress | None:
    """Parse a progress line of rsync; other lines return None."""
    match = _RSYNC_PROGRESS_RE.match(line)
    if not match:
        return None
    bytes_str, percent, rate, remaining, total = match.groups()
    return RsyncProgress(
        bytes_done=int(re.sub(r"[,.]", "", bytes_str)),
        percent=int(percent),
        rate=rate,
        files_remaining=int(remaining) if remaining is not None else None,
        files_total=int(total) if total is not None else None,
    )
