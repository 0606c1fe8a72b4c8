"""
Partition layout calculator.

Pure functions from (source system size, target device, exchange request)
to a validated ``PartitionPlan`` or a typed ``PlanRejection``. All sizes are
whole MiB at the interface so plans match the granularity of the
partitioning tool; bytes are only used for the device capacity and for
used-space estimates.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any

from mediaforge.core.config import LayoutConfig
from mediaforge.core.models import MEGA, DeviceSnapshot, PartitionRole


class PartitionState(Enum):
    """What a device of a given size can hold besides the system."""

    TOO_SMALL = auto()
    ONLY_SYSTEM = auto()
    PERSISTENCE = auto()
    EXCHANGE = auto()


class RejectionReason(Enum):
    """Why a plan could not be produced."""

    TOO_SMALL = "too_small"
    NO_EXCHANGE_REQUESTED = "no_exchange_requested"
    DEVICE_IS_SOURCE = "device_is_source"
    PERSISTENCE_TOO_SMALL = "persistence_too_small"
    EXCHANGE_TOO_SMALL = "exchange_too_small"


class RepartitionStrategy(Enum):
    """What an upgrade does with the exchange partition."""

    KEEP = "keep"
    RESIZE = "resize"
    REMOVE = "remove"


@dataclass(frozen=True)
class PlannedPartition:
    """One partition of a plan, in on-disk order."""

    number: int
    role: PartitionRole
    size_mb: int

    @property
    def size_bytes(self) -> int:
        return self.size_mb * MEGA


@dataclass(frozen=True)
class PartitionPlan:
    """A validated partition layout for one device."""

    boot_mb: int
    system_mb: int
    exchange_mb: int
    data_mb: int
    device_size_bytes: int
    state: PartitionState

    @property
    def total_mb(self) -> int:
        return self.boot_mb + self.system_mb + self.exchange_mb + self.data_mb

    @property
    def has_exchange(self) -> bool:
        return self.exchange_mb > 0

    @property
    def has_data(self) -> bool:
        return self.data_mb > 0

    @property
    def boot_bytes(self) -> int:
        return self.boot_mb * MEGA

    @property
    def system_bytes(self) -> int:
        return self.system_mb * MEGA

    @property
    def exchange_bytes(self) -> int:
        return self.exchange_mb * MEGA

    @property
    def data_bytes(self) -> int:
        return self.data_mb * MEGA

    def partitions(self) -> list[PlannedPartition]:
        """Partitions in on-disk order: boot, exchange, data, system.

        Exchange and data are adjacent so an upgrade can move the boundary
        between them without touching boot or system.
        """
        ordered: list[tuple[PartitionRole, int]] = [(PartitionRole.BOOT, self.boot_mb)]
        if self.has_exchange:
            ordered.append((PartitionRole.EXCHANGE, self.exchange_mb))
        if self.has_data:
            ordered.append((PartitionRole.DATA, self.data_mb))
        ordered.append((PartitionRole.SYSTEM, self.system_mb))
        return [
            PlannedPartition(number=i, role=role, size_mb=size)
            for i, (role, size) in enumerate(ordered, start=1)
        ]

    def partition_number(self, role: PartitionRole) -> int | None:
        for planned in self.partitions():
            if planned.role == role:
                return planned.number
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "boot_mb": self.boot_mb,
            "system_mb": self.system_mb,
            "exchange_mb": self.exchange_mb,
            "data_mb": self.data_mb,
            "device_size_bytes": self.device_size_bytes,
            "state": self.state.name,
        }


@dataclass(frozen=True)
class PlanRejection:
    """A typed reason why no plan exists."""

    reason: RejectionReason
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason.value, "message": self.message}


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def enlarged_system_size(source_bytes: int, margin_percent: int = 5) -> int:
    """Source size plus the filesystem overhead margin, rounded up to a whole MiB."""
    if source_bytes < 0:
        raise ValueError("source size must not be negative")
    with_margin = _ceil_div(source_bytes * (100 + margin_percent), 100)
    return _ceil_div(with_margin, MEGA) * MEGA


def partition_state(
    device_bytes: int,
    required_bytes: int,
    minimum_partition_bytes: int,
) -> PartitionState:
    """Classify how much room a device leaves besides boot and system."""
    if device_bytes > required_bytes + 2 * minimum_partition_bytes:
        return PartitionState.EXCHANGE
    if device_bytes > required_bytes + minimum_partition_bytes:
        return PartitionState.PERSISTENCE
    if device_bytes >= required_bytes:
        return PartitionState.ONLY_SYSTEM
    return PartitionState.TOO_SMALL


def compute_install_plan(
    source_size: int,
    device: DeviceSnapshot,
    requested_exchange_mb: int,
    *,
    layout: LayoutConfig | None = None,
    source_device: str | None = None,
    copy_exchange: bool = False,
    copy_data: bool = False,
    source_exchange_used: int | None = None,
    source_data_used: int | None = None,
) -> PartitionPlan | PlanRejection:
    """Compute the layout of a fresh installation on ``device``."""
    layout = layout or LayoutConfig()
    if requested_exchange_mb < 0:
        raise ValueError("requested exchange size must not be negative")

    if source_device is not None and device.device == source_device:
        return PlanRejection(
            RejectionReason.DEVICE_IS_SOURCE,
            f"{device.device_path} holds the running system and cannot be a target",
        )

    boot_bytes = layout.boot_partition_mb * MEGA
    system_bytes = enlarged_system_size(source_size, layout.system_margin_percent)
    required_bytes = boot_bytes + system_bytes

    if device.size_bytes < required_bytes:
        return PlanRejection(
            RejectionReason.TOO_SMALL,
            f"{device.device_path} is too small: at least "
            f"{required_bytes // MEGA} MiB are required",
        )

    overhead_mb = (device.size_bytes - required_bytes) // MEGA
    if requested_exchange_mb > overhead_mb:
        return PlanRejection(
            RejectionReason.TOO_SMALL,
            f"{device.device_path} has only {overhead_mb} MiB left for an exchange "
            f"partition of {requested_exchange_mb} MiB",
        )

    if copy_exchange and requested_exchange_mb == 0:
        return PlanRejection(
            RejectionReason.NO_EXCHANGE_REQUESTED,
            "Copying the exchange partition requires an exchange partition on the target",
        )

    if (
        copy_exchange
        and source_exchange_used is not None
        and requested_exchange_mb * MEGA < source_exchange_used
    ):
        return PlanRejection(
            RejectionReason.EXCHANGE_TOO_SMALL,
            f"Exchange partition of {requested_exchange_mb} MiB cannot hold the "
            f"{_ceil_div(source_exchange_used, MEGA)} MiB used on the source",
        )

    data_mb = overhead_mb - requested_exchange_mb

    if copy_data and source_data_used is not None and data_mb * MEGA < source_data_used:
        return PlanRejection(
            RejectionReason.PERSISTENCE_TOO_SMALL,
            f"Data partition of {data_mb} MiB cannot hold the "
            f"{_ceil_div(source_data_used, MEGA)} MiB used on the source",
        )

    return PartitionPlan(
        boot_mb=layout.boot_partition_mb,
        system_mb=system_bytes // MEGA,
        exchange_mb=requested_exchange_mb,
        data_mb=data_mb,
        device_size_bytes=device.size_bytes,
        state=partition_state(
            device.size_bytes, required_bytes, layout.minimum_partition_mb * MEGA
        ),
    )


def compute_upgrade_plan(
    source_size: int,
    device: DeviceSnapshot,
    strategy: RepartitionStrategy,
    target_exchange_mb: int = 0,
    *,
    layout: LayoutConfig | None = None,
) -> PartitionPlan | PlanRejection:
    """Compute the layout of an upgrade within the current partition boundaries.

    Boot and system partitions keep their size. The exchange and data
    partitions share the space they currently occupy: KEEP leaves both
    untouched, REMOVE gives all of it to the data partition and RESIZE sets
    the exchange partition to ``target_exchange_mb``. The data partition must
    still hold what is stored on it.
    """
    layout = layout or LayoutConfig()
    if target_exchange_mb < 0:
        raise ValueError("target exchange size must not be negative")

    system = device.system_partition
    if system is None:
        return PlanRejection(
            RejectionReason.TOO_SMALL,
            f"{device.device_path} has no system partition to upgrade",
        )

    enlarged = enlarged_system_size(source_size, layout.system_margin_percent)
    if system.size_bytes < enlarged:
        return PlanRejection(
            RejectionReason.TOO_SMALL,
            f"System partition {system.device_path} has {system.size_mb} MiB, "
            f"{enlarged // MEGA} MiB are required",
        )

    boot = device.boot_partition
    exchange = device.exchange_partition
    data = device.data_partition

    boot_mb = boot.size_mb if boot else layout.boot_partition_mb
    current_exchange_mb = exchange.size_mb if exchange else 0
    current_data_mb = data.size_mb if data else 0
    shared_mb = current_exchange_mb + current_data_mb

    if strategy is RepartitionStrategy.KEEP:
        exchange_mb, data_mb = current_exchange_mb, current_data_mb
    elif strategy is RepartitionStrategy.REMOVE:
        exchange_mb, data_mb = 0, shared_mb
    else:
        if target_exchange_mb > shared_mb:
            return PlanRejection(
                RejectionReason.TOO_SMALL,
                f"Only {shared_mb} MiB are available for an exchange partition "
                f"of {target_exchange_mb} MiB",
            )
        exchange_mb, data_mb = target_exchange_mb, shared_mb - target_exchange_mb

    if data is not None and data.used_bytes is not None and data_mb * MEGA < data.used_bytes:
        return PlanRejection(
            RejectionReason.PERSISTENCE_TOO_SMALL,
            f"Data partition of {data_mb} MiB cannot hold the "
            f"{_ceil_div(data.used_bytes, MEGA)} MiB currently stored on it",
        )

    required_bytes = (boot_mb + system.size_mb) * MEGA
    return PartitionPlan(
        boot_mb=boot_mb,
        system_mb=system.size_mb,
        exchange_mb=exchange_mb,
        data_mb=data_mb,
        device_size_bytes=device.size_bytes,
        state=partition_state(
            device.size_bytes, required_bytes, layout.minimum_partition_mb * MEGA
        ),
    )
