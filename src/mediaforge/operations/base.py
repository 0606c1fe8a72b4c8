"""
Batch operation skeleton.

A batch processes its devices strictly in submission order. Each device runs
through the phases of the concrete operation; a device failure becomes a
``Failed(reason)`` result and the batch continues with the next device.
Cancellation is honoured at phase boundaries only.
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from mediaforge.core.events import NullAdapter, Phase, PresentationAdapter, ProgressDetail, notify
from mediaforge.core.exceptions import (
    BatchCancelled,
    DeviceDisappeared,
    FailureReason,
    MediaForgeError,
    PreconditionFailed,
    SourceInvalid,
)
from mediaforge.core.job import BatchJob, JobContext
from mediaforge.core.logging import OperationLogger, get_logger
from mediaforge.core.results import BatchReport
from mediaforge.core.safety import SafetyManager

if TYPE_CHECKING:
    from mediaforge.core.config import MediaForgeConfig
    from mediaforge.core.credentials import UnlockMethod
    from mediaforge.core.models import DeviceSnapshot, SystemSource
    from mediaforge.platform.base import CopyProgress, PlatformBackend

logger = get_logger(__name__)

PERSISTENCE_CONF = "persistence.conf"
PERSISTENCE_CONF_CONTENT = "/ union\n"


class BatchOperation(BatchJob[BatchReport]):
    """Base class of install, upgrade and reset batches."""

    operation = "batch"

    def __init__(
        self,
        devices: Sequence[DeviceSnapshot],
        backend: PlatformBackend,
        config: MediaForgeConfig,
        adapter: PresentationAdapter | None = None,
        source: SystemSource | None = None,
        unlock: UnlockMethod | None = None,
        safety: SafetyManager | None = None,
    ) -> None:
        super().__init__(
            name=self.operation,
            description=f"{self.operation.capitalize()} {len(devices)} device(s)",
        )
        self.devices = tuple(devices)
        self.backend = backend
        self.config = config
        self.adapter: PresentationAdapter = adapter or NullAdapter()
        self.source = source
        self.unlock = unlock
        self.safety = safety or SafetyManager(config.safety)
        self.report = BatchReport(operation=self.operation)
        self._context: JobContext | None = None
        self._device_index = 0
        self._phase: Phase | None = None

    # ==================== Lifecycle ====================

    def preflight_context(self) -> dict[str, Any]:
        return {"devices": self.devices, "source": self.source}

    def validate(self) -> list[str]:
        report = self.safety.run_preflight(self.operation, self.preflight_context())
        return report.errors()

    def get_plan(self) -> str:
        lines = [self.description]
        for index, device in enumerate(self.devices, 1):
            lines.append(f"  {index}. {device.display_name} ({device.device_path})")
        return "\n".join(lines)

    def execute(self, context: JobContext) -> BatchReport:
        self._context = context
        total = len(self.devices)

        for index, device in enumerate(self.devices):
            if context.is_cancelled:
                break
            self._device_index = index
            context.update_progress(
                device_index=index,
                device_count=total,
                message=f"{device.display_name} ({device.device_path})",
                bytes_processed=0,
                bytes_total=0,
            )
            slot = self.report.start(device)
            self._phase = None

            try:
                self.check_source()
                message = self.run_device(index, device, context)
            except BatchCancelled:
                after = self._phase.value if self._phase is not None else "start"
                logger.info("Batch cancelled during device", device=device.device, after=after)
                result = self.report.cancel(slot, f"cancelled after {after}")
                notify(self.adapter, "on_device_completed", result)
                break
            except SourceInvalid:
                self.report.freeze(cancelled=True)
                raise
            except MediaForgeError as e:
                logger.error(
                    "Device workflow failed",
                    device=device.device,
                    reason=e.reason.value,
                    error=str(e),
                )
                result = self.report.fail(slot, e.reason, str(e))
            except Exception as e:
                logger.error(
                    "Unexpected error in device workflow",
                    device=device.device,
                    error=str(e),
                    exc_info=True,
                )
                result = self.report.fail(slot, FailureReason.UNEXPECTED, str(e))
            else:
                result = self.report.succeed(slot, message)
                self.on_device_succeeded(index, device)
            notify(self.adapter, "on_device_completed", result)

        self.report.freeze(cancelled=context.is_cancelled)
        logger.info(
            "Batch report",
            operation=self.operation,
            cancelled=context.is_cancelled,
            **self.report.summary(),
        )
        notify(self.adapter, "on_batch_completed", self.report)
        return self.report

    def on_terminal(self) -> None:
        if self.unlock is not None:
            self.unlock.clear()

    @abstractmethod
    def run_device(self, index: int, device: DeviceSnapshot, context: JobContext) -> str:
        """Run all phases for one device. Returns the success message."""

    def on_device_succeeded(self, index: int, device: DeviceSnapshot) -> None:
        """Hook after a device finished successfully."""

    # ==================== Phase helpers ====================

    def check_source(self) -> None:
        if self.source is None:
            return
        valid, message = self.source.validate()
        if not valid:
            raise SourceInvalid(message)

    def require_device(self, device: DeviceSnapshot) -> DeviceSnapshot:
        """Re-probe ``device``; raises DeviceDisappeared if it is gone."""
        fresh = self.backend.probe_device(device.device)
        if fresh is None:
            raise DeviceDisappeared(device.device)
        return fresh

    def announce(self, index: int, phase: Phase, detail: ProgressDetail) -> None:
        if self._context is not None:
            self._context.update_progress(
                stage=phase.value,
                message=detail.message or None,
                bytes_processed=detail.bytes_done,
                bytes_total=detail.bytes_total,
                rate_bytes_per_sec=detail.rate_bytes_per_second,
            )
        notify(self.adapter, "on_batch_progress", index, phase, detail)

    @contextmanager
    def phase(
        self,
        index: int,
        phase: Phase,
        device: DeviceSnapshot,
        message: str = "",
        needs_device: bool = True,
    ) -> Iterator[DeviceSnapshot]:
        """Run one phase: cancellation check, presence check, announcement, logging."""
        if self._context is not None:
            self._context.check_cancelled()
        current = self.require_device(device) if needs_device else device
        self._phase = phase
        self.announce(index, phase, ProgressDetail(message=message))
        with OperationLogger(
            f"{self.operation} {phase.value}", logger, device=device.device
        ):
            yield current

    def copy_progress(self, index: int, phase: Phase, label: str) -> Callable[[CopyProgress], None]:
        def report(progress: CopyProgress) -> None:
            self.announce(
                index,
                phase,
                ProgressDetail(
                    message=label,
                    bytes_done=progress.bytes_done,
                    bytes_total=progress.bytes_total,
                    rate_bytes_per_second=progress.rate_bytes_per_second,
                    eta_seconds=progress.eta_seconds,
                ),
            )

        return report

    def mount_point(self, device: DeviceSnapshot, name: str) -> Path:
        return self.config.mount_root / device.device / name

    @contextmanager
    def mounted(
        self, device_path: str, mount_point: Path, read_only: bool = False
    ) -> Iterator[Path]:
        self.backend.mount(device_path, mount_point, read_only=read_only)
        try:
            yield mount_point
        finally:
            self.backend.unmount(mount_point)

    def release_device(self, device: DeviceSnapshot) -> None:
        """Stop swapping on and unmount every partition of ``device``."""
        if device.has_active_persistence:
            raise PreconditionFailed(
                f"The data partition of {device.device_path} is in use by the running system"
            )
        paths = {p.device_path for p in device.partitions}
        for swap in self.backend.active_swaps():
            if swap in paths:
                self.backend.swap_off(swap)
        self.backend.unmount_partitions(device.partitions)

    def write_persistence_conf(self, data_root: Path) -> None:
        (data_root / PERSISTENCE_CONF).write_text(PERSISTENCE_CONF_CONTENT)

    def partition_path(self, device: DeviceSnapshot, number: int) -> str:
        return f"/dev/{device.partition_name(number)}"

    def mapper_name(self, device: DeviceSnapshot) -> str:
        return f"mediaforge-{device.device}-data"
