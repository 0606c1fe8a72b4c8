"""
Reset of installed devices.

Reformats the exchange partition and either reformats or cleans the data
partition. Cleaning works on the overlay root of the data partition: the
partition root itself, or its ``rw`` subdirectory for layouts that keep the
overlay one level down.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from mediaforge.core.config import ResetConfig
from mediaforge.core.events import Phase
from mediaforge.core.exceptions import PreconditionFailed
from mediaforge.core.job import JobContext
from mediaforge.core.logging import get_logger
from mediaforge.core.models import PERSISTENCE_LABEL, DeviceSnapshot, FileSystem
from mediaforge.operations.base import BatchOperation

logger = get_logger(__name__)

HOME_DIR = "home"


def cleanup_root(mount_point: Path, probe_dir: str = "home", overlay_subdir: str = "rw") -> Path:
    """Directory holding the overlay content of a mounted data partition."""
    if (mount_point / probe_dir).is_dir():
        return mount_point
    return mount_point / overlay_subdir


def remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def remove_entries(directory: Path, keep: Iterable[str]) -> list[str]:
    """Remove every entry of ``directory`` not named in ``keep``."""
    if not directory.is_dir():
        return []
    kept = set(keep)
    removed = []
    for entry in sorted(directory.iterdir()):
        if entry.name in kept:
            continue
        remove_path(entry)
        removed.append(entry.name)
    return removed


def populate_home(
    home: Path,
    skeleton: Path,
    owner: str | None = None,
    change_owner: Callable[[Path, str], None] | None = None,
) -> None:
    """Recreate ``home`` from the skeleton directory."""
    if home.exists():
        shutil.rmtree(home)
    home.parent.mkdir(parents=True, exist_ok=True)
    if skeleton.is_dir():
        shutil.copytree(skeleton, home, symlinks=True)
    else:
        logger.warning("Skeleton directory missing", skeleton=str(skeleton))
        home.mkdir()
    if owner and change_owner is not None:
        change_owner(home, owner)


def clean_data_partition(
    mount_point: Path,
    options: ResetConfig,
    change_owner: Callable[[Path, str], None] | None = None,
) -> Path:
    """Reset system and/or home content of a mounted data partition.

    ``reset_system`` removes everything but the home subtree, ``reset_home``
    replaces the user's home with a copy of the skeleton directory. With both
    set, everything except the preserved entries is removed before the home
    directory is recreated. On the overlay layout ``reset_system`` also clears
    the partition root beside the overlay directory. Returns the cleanup root.
    """
    root = cleanup_root(mount_point, options.layout_probe_dir, options.overlay_subdir)
    preserved = set(options.preserved_entries)

    if options.reset_system:
        keep = preserved if options.reset_home else preserved | {HOME_DIR}
        removed = remove_entries(root, keep)
        if root != mount_point:
            # overlay work directory and other leftovers beside the upper dir
            removed += remove_entries(mount_point, preserved | {options.overlay_subdir})
        logger.info("Removed system content", root=str(root), entries=len(removed))

    if options.reset_home:
        home = root / HOME_DIR / options.home_user
        populate_home(home, options.skeleton_directory, options.home_owner, change_owner)
        logger.info("Home directory reset", home=str(home))

    return root


class ResetOperation(BatchOperation):
    """Reformat or clean the writable partitions of installed devices."""

    operation = "reset"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.options = self.config.reset

    def run_device(self, index: int, device: DeviceSnapshot, context: JobContext) -> str:
        current = self.require_device(device)
        if current.has_active_persistence:
            raise PreconditionFailed(
                f"The data partition of {device.device_path} is in use by the running system"
            )
        if not self.safety.confirm(current, self.operation, self.adapter):
            raise PreconditionFailed(f"Reset of {device.device_path} was not confirmed")

        actions = []
        if self.options.format_exchange:
            with self.phase(index, Phase.FORMAT_EXCHANGE, device) as current:
                if self.format_exchange(current):
                    actions.append("exchange formatted")

        if self.options.format_data:
            with self.phase(index, Phase.FORMAT_DATA, device) as current:
                if self.format_data(current):
                    actions.append("data formatted")
        elif self.options.reset_system or self.options.reset_home:
            with self.phase(index, Phase.CLEAN_DATA, device) as current:
                if self.clean_data(current):
                    actions.append("data cleaned")

        with self.phase(index, Phase.UNMOUNT_ALL, device, needs_device=False):
            self.unmount_all(device)

        done = ", ".join(actions) if actions else "nothing to do"
        return f"Reset {device.device_path}: {done}"

    def format_exchange(self, device: DeviceSnapshot) -> bool:
        exchange = device.exchange_partition
        if exchange is None:
            logger.info("No exchange partition to format", device=device.device)
            return False
        label = exchange.label if self.options.keep_exchange_label else None
        if not label:
            label = self.options.new_exchange_label
        if exchange.is_mounted:
            self.backend.unmount(exchange.device_path)
        self.backend.format_partition(
            exchange.device_path,
            FileSystem.from_string(self.options.exchange_filesystem),
            label,
        )
        return True

    def format_data(self, device: DeviceSnapshot) -> bool:
        data = device.data_partition
        if data is None:
            logger.info("No data partition to format", device=device.device)
            return False
        if data.is_mounted:
            self.backend.unmount(data.device_path)
        self.backend.format_partition(
            data.device_path,
            FileSystem.from_string(self.options.data_filesystem),
            PERSISTENCE_LABEL,
        )
        with self.mounted(data.device_path, self.mount_point(device, "data")) as mount_point:
            self.write_persistence_conf(mount_point)
        return True

    def clean_data(self, device: DeviceSnapshot) -> bool:
        data = device.data_partition
        if data is None:
            logger.info("No data partition to clean", device=device.device)
            return False
        if data.is_mounted and data.mount_point:
            clean_data_partition(Path(data.mount_point), self.options, self.backend.change_owner)
            return True
        with self.mounted(data.device_path, self.mount_point(device, "data")) as mount_point:
            clean_data_partition(mount_point, self.options, self.backend.change_owner)
        return True

    def unmount_all(self, device: DeviceSnapshot) -> list[str]:
        """Unmount the partitions of ``device`` unless it is the boot device."""
        current = self.backend.probe_device(device.device)
        if current is None or current.device == self.backend.boot_device():
            return []
        partitions = [p for p in current.partitions if not p.active_persistence]
        unmounted = self.backend.unmount_partitions(partitions)
        if unmounted:
            logger.info("Unmounted partitions", device=device.device, partitions=unmounted)
        return unmounted
