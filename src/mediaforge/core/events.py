"""
Presentation adapter contract.

The engine talks to a front-end only through the callbacks of
``PresentationAdapter``. ``ChannelAdapter`` turns every callback into a
message on a ``queue.Queue`` for consumers that prefer to drain a channel
from their own thread.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from mediaforge.core.logging import get_logger

if TYPE_CHECKING:
    from mediaforge.core.models import DeviceSnapshot
    from mediaforge.core.results import BatchReport, DeviceOperationResult

logger = get_logger(__name__)


class Phase(Enum):
    """Phases of the per-device workflows."""

    PLAN = "plan"
    UNMOUNT = "unmount"
    BACKUP = "backup"
    REPARTITION = "repartition"
    RESET_DATA = "reset_data"
    PARTITION = "partition"
    FORMAT = "format"
    COPY = "copy"
    OVERWRITE = "overwrite"
    PRESERVE_SETTINGS = "preserve_settings"
    BOOTLOADER = "bootloader"
    FINALIZE = "finalize"
    FORMAT_EXCHANGE = "format_exchange"
    FORMAT_DATA = "format_data"
    CLEAN_DATA = "clean_data"
    UNMOUNT_ALL = "unmount_all"


@dataclass(frozen=True)
class ProgressDetail:
    """Detail of a progress notification."""

    message: str = ""
    bytes_done: int | None = None
    bytes_total: int | None = None
    rate_bytes_per_second: float | None = None
    eta_seconds: float | None = None

    @property
    def percentage(self) -> float | None:
        if not self.bytes_total or self.bytes_done is None:
            return None
        return min(100.0, self.bytes_done / self.bytes_total * 100)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "bytes_done": self.bytes_done,
            "bytes_total": self.bytes_total,
            "rate_bytes_per_second": self.rate_bytes_per_second,
            "eta_seconds": self.eta_seconds,
            "percentage": self.percentage,
        }


class PresentationAdapter(Protocol):
    """Callbacks the engine invokes on the front-end."""

    def on_device_list_changed(self, snapshots: tuple[DeviceSnapshot, ...]) -> None: ...

    def on_batch_progress(
        self, device_index: int, phase: Phase, detail: ProgressDetail
    ) -> None: ...

    def on_device_completed(self, result: DeviceOperationResult) -> None: ...

    def on_batch_completed(self, report: BatchReport) -> None: ...

    def confirm_destructive_operation(self, message: str) -> bool: ...


class NullAdapter:
    """Adapter that ignores notifications and declines every confirmation."""

    def on_device_list_changed(self, snapshots: tuple[DeviceSnapshot, ...]) -> None:
        pass

    def on_batch_progress(self, device_index: int, phase: Phase, detail: ProgressDetail) -> None:
        pass

    def on_device_completed(self, result: DeviceOperationResult) -> None:
        pass

    def on_batch_completed(self, report: BatchReport) -> None:
        pass

    def confirm_destructive_operation(self, message: str) -> bool:
        return False


def notify(adapter: PresentationAdapter, callback: str, *args: Any) -> None:
    """Invoke an adapter callback; a failing front-end never breaks the engine."""
    try:
        getattr(adapter, callback)(*args)
    except Exception as e:
        logger.warning("Presentation callback failed", callback=callback, error=str(e))


@dataclass
class DeviceListChanged:
    snapshots: tuple[DeviceSnapshot, ...]


@dataclass
class BatchProgress:
    device_index: int
    phase: Phase
    detail: ProgressDetail


@dataclass
class DeviceCompleted:
    result: DeviceOperationResult


@dataclass
class BatchCompleted:
    report: BatchReport


@dataclass
class ConfirmationRequest:
    """A destructive-operation prompt waiting for an answer from the consumer."""

    message: str
    _answered: threading.Event = field(default_factory=threading.Event, repr=False)
    _value: bool = field(default=False, repr=False)

    def answer(self, value: bool) -> None:
        self._value = value
        self._answered.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until answered. An unanswered prompt counts as declined."""
        if not self._answered.wait(timeout):
            return False
        return self._value


class ChannelAdapter:
    """Forwards every callback as a message on a queue."""

    def __init__(
        self,
        channel: queue.Queue[Any] | None = None,
        confirmation_timeout: float | None = None,
    ) -> None:
        self.channel: queue.Queue[Any] = channel if channel is not None else queue.Queue()
        self.confirmation_timeout = confirmation_timeout

    def on_device_list_changed(self, snapshots: tuple[DeviceSnapshot, ...]) -> None:
        self.channel.put_nowait(DeviceListChanged(snapshots))

    def on_batch_progress(self, device_index: int, phase: Phase, detail: ProgressDetail) -> None:
        self.channel.put_nowait(BatchProgress(device_index, phase, detail))

    def on_device_completed(self, result: DeviceOperationResult) -> None:
        self.channel.put_nowait(DeviceCompleted(result))

    def on_batch_completed(self, report: BatchReport) -> None:
        self.channel.put_nowait(BatchCompleted(report))

    def confirm_destructive_operation(self, message: str) -> bool:
        request = ConfirmationRequest(message)
        self.channel.put_nowait(request)
        return request.wait(self.confirmation_timeout)

    def drain(self) -> Iterator[Any]:
        """Yield all pending messages without blocking."""
        while True:
            try:
                yield self.channel.get_nowait()
            except queue.Empty:
                break
