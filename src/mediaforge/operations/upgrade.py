"""
Upgrade of installed devices to the running system.

Keeps the data partition content while replacing boot and system
partitions. Optionally backs up the data partition first, moves the
exchange/data boundary and restores selected settings afterwards.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

from mediaforge.core.config import ResetConfig, UpgradeConfig
from mediaforge.core.events import Phase
from mediaforge.core.exceptions import PlanRejected, PreconditionFailed
from mediaforge.core.job import JobContext
from mediaforge.core.layout import (
    PartitionPlan,
    PlanRejection,
    RepartitionStrategy,
    compute_upgrade_plan,
)
from mediaforge.core.logging import get_logger
from mediaforge.core.models import (
    EFI_LABEL,
    SYSTEM_LABEL,
    DeviceSnapshot,
    FileSystem,
)
from mediaforge.operations.base import BatchOperation
from mediaforge.operations.reset import clean_data_partition, cleanup_root, remove_path

logger = get_logger(__name__)

PRINTER_SETTINGS = ("etc/cups",)
NETWORK_SETTINGS = ("etc/NetworkManager/system-connections",)
FIREWALL_SETTINGS = ("etc/ufw", "etc/iptables")
WELCOME_MARKER = "etc/mediaforge/welcome-done"


def parse_overwrite_entry(entry: str) -> tuple[str, str]:
    """Split ``destination[=source]`` into (destination, source)."""
    destination, _, source = entry.partition("=")
    destination = destination.strip()
    source = source.strip() or destination
    if not destination:
        raise ValueError(f"Invalid overwrite entry: {entry!r}")
    return destination, source


def apply_overwrite_list(
    entries: tuple[str, ...] | list[str], source_root: Path, target_root: Path
) -> list[str]:
    """Copy the listed paths from ``source_root`` over ``target_root``.

    Earlier entries win: a later entry for a destination that was already
    handled is skipped. Returns the destinations written.
    """
    seen: set[str] = set()
    written = []
    for entry in entries:
        destination, source = parse_overwrite_entry(entry)
        key = destination.strip("/")
        if key in seen:
            logger.warning("Skipping duplicate overwrite entry", entry=entry)
            continue
        seen.add(key)

        source_path = source_root / source.lstrip("/")
        target_path = target_root / key
        if not source_path.exists():
            logger.warning("Overwrite source missing", source=str(source_path))
            continue
        if target_path.exists() or target_path.is_symlink():
            remove_path(target_path)
        target_path.parent.mkdir(parents=True, exist_ok=True)
        if source_path.is_dir():
            shutil.copytree(source_path, target_path, symlinks=True)
        else:
            shutil.copy2(source_path, target_path, follow_symlinks=False)
        written.append(destination)
    return written


def preserve_settings(root: Path, options: UpgradeConfig) -> list[str]:
    """Drop the settings the operator chose not to keep from an overlay root."""
    discard: list[str] = []
    if not options.keep_printer_settings:
        discard.extend(PRINTER_SETTINGS)
    if not options.keep_network_settings:
        discard.extend(NETWORK_SETTINGS)
    if not options.keep_firewall_settings:
        discard.extend(FIREWALL_SETTINGS)
    if options.reactivate_welcome:
        discard.append(WELCOME_MARKER)

    removed = []
    for relative in discard:
        path = root / relative
        if path.exists() or path.is_symlink():
            remove_path(path)
            removed.append(relative)

    if options.remove_hidden_files:
        home = root / "home" / options.home_user
        if home.is_dir():
            for entry in sorted(home.iterdir()):
                if entry.name.startswith("."):
                    remove_path(entry)
                    removed.append(str(entry.relative_to(root)))
    return removed


class UpgradeOperation(BatchOperation):
    """Replace the system of installed devices and keep their data."""

    operation = "upgrade"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.options = self.config.upgrade
        self.strategy = RepartitionStrategy(self.options.repartition_strategy)
        self.exchange_fs = FileSystem.from_string(self.config.install.exchange_filesystem)
        self.backups: dict[str, Path] = {}
        self.overwrite_source = Path("/")

    def preflight_context(self) -> dict[str, Any]:
        context = super().preflight_context()
        context["automatic_backup"] = self.options.automatic_backup
        context["backup_destination"] = self.options.backup_destination
        return context

    def plan_for(self, device: DeviceSnapshot) -> PartitionPlan:
        assert self.source is not None
        if self.strategy is not RepartitionStrategy.KEEP:
            device = self.measure_data_usage(device)
        plan = compute_upgrade_plan(
            self.source.system_size_bytes,
            device,
            self.strategy,
            self.options.resize_exchange_mb,
            layout=self.config.layout,
        )
        if isinstance(plan, PlanRejection):
            raise PlanRejected(plan)
        if self.strategy is not RepartitionStrategy.KEEP and (
            device.exchange_partition is None or device.data_partition is None
        ):
            raise PreconditionFailed(
                f"{device.device_path} needs an exchange and a data partition to repartition"
            )
        return plan

    def measure_data_usage(self, device: DeviceSnapshot) -> DeviceSnapshot:
        """Fill in the used bytes of the data partition if the probe had none.

        The partition tools only report usage for mounted file systems, so an
        unmounted data partition is mounted read-only and measured.
        """
        data = device.data_partition
        if data is None or data.used_bytes is not None:
            return device
        if data.is_mounted and data.mount_point:
            used = self.backend.disk_used_bytes(Path(data.mount_point))
        else:
            mount_point = self.mount_point(device, "measure")
            with self.mounted(data.device_path, mount_point, read_only=True):
                used = self.backend.disk_used_bytes(mount_point)
        logger.debug("Measured data partition", partition=data.device_path, used_bytes=used)
        measured = replace(data, used_bytes=used)
        return device.with_partitions(
            [measured if p.number == data.number else p for p in device.partitions]
        )

    def needs_repartition(self, device: DeviceSnapshot, plan: PartitionPlan) -> bool:
        if self.strategy is RepartitionStrategy.KEEP:
            return False
        exchange = device.exchange_partition
        return exchange is None or exchange.size_mb != plan.exchange_mb

    def run_device(self, index: int, device: DeviceSnapshot, context: JobContext) -> str:
        if self.source is None:
            raise PreconditionFailed("No source system")

        with self.phase(index, Phase.PLAN, device) as current:
            plan = self.plan_for(current)
            logger.info("Upgrade plan", device=device.device, **plan.to_dict())
            if current.data_partition is None:
                warning = f"{device.device_path} has no data partition, no user data is kept"
                logger.warning("No data partition", device=device.device)
                context.add_warning(warning)
            if not self.safety.confirm(current, self.operation, self.adapter):
                raise PreconditionFailed(f"Upgrade of {device.device_path} was not confirmed")

        with self.phase(index, Phase.UNMOUNT, device) as current:
            self.release_device(current)

        if self.options.automatic_backup and current.data_partition is not None:
            with self.phase(index, Phase.BACKUP, device) as current:
                self.backup(current)

        if self.needs_repartition(current, plan):
            with self.phase(index, Phase.REPARTITION, device) as current:
                self.repartition(current, plan)

        if self.options.reset_data_partition:
            with self.phase(index, Phase.RESET_DATA, device) as current:
                self.reset_data(current)

        if self.options.upgrade_system_partition:
            with self.phase(index, Phase.FORMAT, device) as current:
                self.format_system(current)

            with self.phase(index, Phase.COPY, device, "Copying system") as current:
                system = current.system_partition
                assert system is not None
                target = self.mount_point(device, "system")
                with self.mounted(system.device_path, target):
                    self.backend.copy_tree(
                        self.source.system_path,
                        target,
                        self.copy_progress(index, Phase.COPY, "Copying system"),
                    )

        if current.data_partition is not None:
            with self.phase(index, Phase.OVERWRITE, device) as current:
                self.with_data_root(current, self.overwrite)

            with self.phase(index, Phase.PRESERVE_SETTINGS, device) as current:
                self.with_data_root(current, self.preserve)

        if self.options.upgrade_system_partition:
            with self.phase(index, Phase.BOOTLOADER, device) as current:
                self.install_bootloader(current)

        with self.phase(index, Phase.FINALIZE, device, needs_device=False):
            self.finalize(device)

        return f"Upgraded {device.device_path}"

    # ==================== Phases ====================

    def backup(self, device: DeviceSnapshot) -> None:
        data = device.data_partition
        destination = self.options.backup_destination
        if data is None or destination is None:
            return
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        name = device.serial or device.device
        target = destination / f"{name}_{stamp}"
        with self.mounted(
            data.device_path, self.mount_point(device, "data"), read_only=True
        ) as mount_point:
            source = cleanup_root(
                mount_point,
                self.config.reset.layout_probe_dir,
                self.config.reset.overlay_subdir,
            )
            self.backend.run_backup(source, target)
        self.backups[device.device] = target
        logger.info("Data partition backed up", device=device.device, destination=str(target))

    def repartition(self, device: DeviceSnapshot, plan: PartitionPlan) -> None:
        exchange = device.exchange_partition
        label = self.config.install.exchange_label
        if exchange is not None and exchange.label:
            label = exchange.label
        self.backend.resize_partitions(device, plan, self.exchange_fs)
        if plan.has_exchange and exchange is not None:
            self.backend.format_partition(exchange.device_path, self.exchange_fs, label)

    def reset_data(self, device: DeviceSnapshot) -> None:
        data = device.data_partition
        if data is None:
            return
        options = ResetConfig(
            reset_system=True,
            reset_home=True,
            home_user=self.options.home_user,
            home_owner=self.config.reset.home_owner,
            skeleton_directory=self.config.reset.skeleton_directory,
            preserved_entries=self.config.reset.preserved_entries,
            layout_probe_dir=self.config.reset.layout_probe_dir,
            overlay_subdir=self.config.reset.overlay_subdir,
        )
        with self.mounted(data.device_path, self.mount_point(device, "data")) as mount_point:
            clean_data_partition(mount_point, options, self.backend.change_owner)

    def format_system(self, device: DeviceSnapshot) -> None:
        boot = device.boot_partition
        system = device.system_partition
        if system is None:
            raise PreconditionFailed(f"{device.device_path} has no system partition")
        if boot is not None:
            self.backend.format_partition(boot.device_path, FileSystem.VFAT, EFI_LABEL)
        self.backend.format_partition(system.device_path, FileSystem.EXT4, SYSTEM_LABEL)

    def with_data_root(self, device: DeviceSnapshot, action: Callable[[Path], None]) -> None:
        data = device.data_partition
        if data is None:
            return
        with self.mounted(data.device_path, self.mount_point(device, "data")) as mount_point:
            root = cleanup_root(
                mount_point,
                self.config.reset.layout_probe_dir,
                self.config.reset.overlay_subdir,
            )
            action(root)

    def overwrite(self, root: Path) -> None:
        if not self.options.overwrite_list:
            return
        written = apply_overwrite_list(self.options.overwrite_list, self.overwrite_source, root)
        logger.info("Applied overwrite list", entries=len(written))

    def preserve(self, root: Path) -> None:
        removed = preserve_settings(root, self.options)
        if removed:
            logger.info("Discarded settings", entries=removed)

    def install_bootloader(self, device: DeviceSnapshot) -> None:
        boot = device.boot_partition
        system = device.system_partition
        if boot is None or system is None:
            raise PreconditionFailed(f"{device.device_path} lacks a boot or system partition")
        with self.mounted(boot.device_path, self.mount_point(device, "boot")) as boot_mount:
            with self.mounted(
                system.device_path, self.mount_point(device, "system")
            ) as system_mount:
                self.backend.install_bootloader(device, boot_mount, system_mount)

    def finalize(self, device: DeviceSnapshot) -> None:
        backup = self.backups.pop(device.device, None)
        if backup is not None and self.options.remove_backup and backup.exists():
            shutil.rmtree(backup)
            logger.info("Backup removed", device=device.device, backup=str(backup))
