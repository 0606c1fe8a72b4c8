"""
Installation of the live system onto blank devices.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Any

from mediaforge.core.events import Phase
from mediaforge.core.exceptions import PlanRejected, PreconditionFailed
from mediaforge.core.job import JobContext
from mediaforge.core.layout import PartitionPlan, PlanRejection, compute_install_plan
from mediaforge.core.logging import get_logger
from mediaforge.core.models import (
    EFI_LABEL,
    PERSISTENCE_LABEL,
    SYSTEM_LABEL,
    DeviceSnapshot,
    FileSystem,
    PartitionRole,
    PartitionSnapshot,
)
from mediaforge.operations.base import BatchOperation

logger = get_logger(__name__)

FAT_LABEL_LENGTH = 11

_PERSISTENCE_TOKENS = re.compile(
    r"\s+persistence(?:-read-only|-encryption=\S+)?(?=\s|$)"
)

DATA_PARTITION_OPTIONS = {
    "read_write": " persistence",
    "read_only": " persistence persistence-read-only",
    "not_used": "",
}


def numbered_label(label: str, pattern: str, counter: int) -> str:
    """Replace the first occurrence of ``pattern`` in ``label`` with ``counter``.

    The counter is zero-padded to the width of the pattern, so ``Stick##``
    with pattern ``##`` and counter 7 gives ``Stick07``.
    """
    if not pattern or pattern not in label:
        return label
    return label.replace(pattern, str(counter).zfill(len(pattern)), 1)


def kernel_options(line: str, mode: str, encrypted: bool = False) -> str:
    """Rewrite the persistence options of one live kernel command line."""
    options = DATA_PARTITION_OPTIONS[mode]
    if options and encrypted:
        options += " persistence-encryption=luks"
    return _PERSISTENCE_TOKENS.sub("", line) + options


def apply_data_partition_mode(root: Path, mode: str, encrypted: bool = False) -> list[Path]:
    """Write the data partition mode into every boot configuration below ``root``.

    Only lines booting the live system (``boot=live``) are touched. Returns
    the files that changed.
    """
    if mode not in DATA_PARTITION_OPTIONS:
        raise ValueError(f"Unknown data partition mode: {mode}")

    changed = []
    for path in sorted(root.rglob("*.cfg")):
        if not path.is_file():
            continue
        original = path.read_text()
        lines = []
        for line in original.splitlines(keepends=True):
            if "boot=live" in line:
                body = line.rstrip("\r\n")
                line = kernel_options(body, mode, encrypted) + line[len(body):]
            lines.append(line)
        updated = "".join(lines)
        if updated != original:
            path.write_text(updated)
            changed.append(path)
    logger.debug("Boot configuration updated", root=str(root), mode=mode, files=len(changed))
    return changed


class InstallOperation(BatchOperation):
    """Partition, format and populate each selected device."""

    operation = "install"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.options = self.config.install
        self.exchange_fs = FileSystem.from_string(self.options.exchange_filesystem)
        self.data_fs = FileSystem.from_string(self.options.data_filesystem)
        self.counter = self.options.auto_number_start

    @property
    def encrypted(self) -> bool:
        return self.unlock is not None and bool(self.unlock.secrets())

    def exchange_label(self) -> str:
        label = numbered_label(
            self.options.exchange_label, self.options.auto_number_pattern, self.counter
        )
        if self.exchange_fs is FileSystem.VFAT:
            label = label[:FAT_LABEL_LENGTH]
        return label

    def on_device_succeeded(self, index: int, device: DeviceSnapshot) -> None:
        if self.options.auto_number_pattern:
            self.counter += self.options.auto_number_increment

    def plan_for(self, device: DeviceSnapshot) -> PartitionPlan:
        assert self.source is not None
        plan = compute_install_plan(
            self.source.system_size_bytes,
            device,
            self.options.exchange_mb,
            layout=self.config.layout,
            source_device=self.source.device,
            copy_exchange=self.options.copy_exchange,
            copy_data=self.options.copy_data,
            source_exchange_used=self.source.exchange_used_bytes,
            source_data_used=self.source.data_used_bytes,
        )
        if isinstance(plan, PlanRejection):
            raise PlanRejected(plan)
        return plan

    def run_device(self, index: int, device: DeviceSnapshot, context: JobContext) -> str:
        if self.source is None:
            raise PreconditionFailed("No source system")

        with self.phase(index, Phase.PLAN, device) as current:
            plan = self.plan_for(current)
            logger.info("Installation plan", device=device.device, **plan.to_dict())
            if not self.safety.confirm(current, self.operation, self.adapter):
                raise PreconditionFailed(
                    f"Installation on {device.device_path} was not confirmed"
                )

        with self.phase(index, Phase.UNMOUNT, device) as current:
            self.release_device(current)

        with self.phase(index, Phase.PARTITION, device) as current:
            self.backend.write_partition_table(current, plan, self.exchange_fs)

        paths = {
            p.role: self.partition_path(device, p.number) for p in plan.partitions()
        }
        mapper = self.mapper_name(device)
        data_path: str | None = None

        with ExitStack() as cleanup:
            with self.phase(index, Phase.FORMAT, device):
                data_path = self.format_partitions(plan, paths, mapper)
                if data_path is not None and data_path != paths[PartitionRole.DATA]:
                    cleanup.callback(self.backend.close_encrypted, mapper)

            boot_mount = cleanup.enter_context(
                self.mounted(paths[PartitionRole.BOOT], self.mount_point(device, "boot"))
            )
            system_mount = cleanup.enter_context(
                self.mounted(paths[PartitionRole.SYSTEM], self.mount_point(device, "system"))
            )
            data_mount = None
            if data_path is not None:
                data_mount = cleanup.enter_context(
                    self.mounted(data_path, self.mount_point(device, "data"))
                )
                self.write_persistence_conf(data_mount)

            with self.phase(index, Phase.COPY, device, "Copying system"):
                self.copy_payloads(index, device, plan, paths, system_mount, data_mount)

            with self.phase(index, Phase.BOOTLOADER, device) as current:
                self.backend.install_bootloader(current, boot_mount, system_mount)

            with self.phase(index, Phase.FINALIZE, device):
                for root in (boot_mount, system_mount):
                    apply_data_partition_mode(
                        root, self.options.data_partition_mode, self.encrypted
                    )

        return f"Installed on {device.device_path}"

    def format_partitions(
        self, plan: PartitionPlan, paths: dict[PartitionRole, str], mapper: str
    ) -> str | None:
        """Create every file system of ``plan``. Returns the data device path."""
        self.backend.format_partition(paths[PartitionRole.BOOT], FileSystem.VFAT, EFI_LABEL)
        if plan.has_exchange:
            self.backend.format_partition(
                paths[PartitionRole.EXCHANGE], self.exchange_fs, self.exchange_label()
            )
        data_path = None
        if plan.has_data:
            data_path = paths[PartitionRole.DATA]
            if self.encrypted:
                assert self.unlock is not None
                data_path = self.backend.open_encrypted(data_path, self.unlock, mapper)
            self.backend.format_partition(data_path, self.data_fs, PERSISTENCE_LABEL)
        self.backend.format_partition(paths[PartitionRole.SYSTEM], FileSystem.EXT4, SYSTEM_LABEL)
        return data_path

    def copy_payloads(
        self,
        index: int,
        device: DeviceSnapshot,
        plan: PartitionPlan,
        paths: dict[PartitionRole, str],
        system_mount: Path,
        data_mount: Path | None,
    ) -> None:
        assert self.source is not None
        self.backend.copy_tree(
            self.source.system_path,
            system_mount,
            self.copy_progress(index, Phase.COPY, "Copying system"),
        )

        if self.options.copy_exchange and plan.has_exchange and self.source.exchange_partition:
            with ExitStack() as stack:
                source_root = stack.enter_context(
                    self.source_root(self.source.exchange_partition, "exchange")
                )
                target = stack.enter_context(
                    self.mounted(
                        paths[PartitionRole.EXCHANGE], self.mount_point(device, "exchange")
                    )
                )
                self.backend.copy_tree(
                    source_root,
                    target,
                    self.copy_progress(index, Phase.COPY, "Copying exchange partition"),
                )

        if self.options.copy_data and data_mount is not None and self.source.data_partition:
            with self.source_root(self.source.data_partition, "data") as source_root:
                self.backend.copy_tree(
                    source_root,
                    data_mount,
                    self.copy_progress(index, Phase.COPY, "Copying data partition"),
                    excludes=("lost+found",),
                )

    @contextmanager
    def source_root(self, partition: PartitionSnapshot, name: str) -> Iterator[Path]:
        """Directory holding the content of a source partition."""
        if partition.is_mounted and partition.mount_point:
            yield Path(partition.mount_point)
            return
        with self.mounted(
            partition.device_path,
            self.config.mount_root / "source" / name,
            read_only=True,
        ) as mount_point:
            yield mount_point
