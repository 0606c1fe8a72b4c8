"""
Result aggregation for batch operations.

A ``BatchReport`` records exactly one final result per submitted device, in
processing order, and becomes immutable once the batch ends.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Any

from mediaforge.core.exceptions import FailureReason
from mediaforge.core.models import DeviceSnapshot


class Outcome(Enum):
    """Outcome of one device workflow."""

    SUCCESS = auto()
    FAILED = auto()
    CANCELLED = auto()
    IN_PROGRESS = auto()  # only in the in-progress view


@dataclass(frozen=True)
class DeviceOperationResult:
    """Final (or in-progress) result of one device."""

    device: DeviceSnapshot
    duration_seconds: float
    outcome: Outcome
    reason: FailureReason | None = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAILED

    @property
    def cancelled(self) -> bool:
        return self.outcome is Outcome.CANCELLED

    def to_dict(self) -> dict[str, Any]:
        return {
            "device": self.device.device,
            "device_name": self.device.display_name,
            "size_bytes": self.device.size_bytes,
            "duration_seconds": round(self.duration_seconds, 3),
            "outcome": self.outcome.name,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
        }


@dataclass
class _Slot:
    device: DeviceSnapshot
    started: float
    result: DeviceOperationResult | None = None


@dataclass
class BatchReport:
    """Ordered, append-only results of one batch."""

    operation: str
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None
    cancelled: bool = False
    _slots: list[_Slot] = field(default_factory=list, repr=False)
    _frozen: tuple[DeviceOperationResult, ...] | None = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def is_frozen(self) -> bool:
        return self._frozen is not None

    def start(self, device: DeviceSnapshot) -> int:
        """Register an in-progress row for ``device`` and return its slot."""
        with self._lock:
            self._check_open()
            if self._slots and self._slots[-1].result is None:
                raise RuntimeError(
                    f"Device {self._slots[-1].device.device} is still in progress"
                )
            self._slots.append(_Slot(device=device, started=time.monotonic()))
            return len(self._slots) - 1

    def finish(
        self,
        slot: int,
        outcome: Outcome,
        reason: FailureReason | None = None,
        message: str = "",
    ) -> DeviceOperationResult:
        """Write the final entry of ``slot``. A slot can only be finished once."""
        if outcome is Outcome.IN_PROGRESS:
            raise ValueError("A final result cannot be in progress")
        with self._lock:
            self._check_open()
            entry = self._slots[slot]
            if entry.result is not None:
                raise RuntimeError(f"Result for {entry.device.device} already recorded")
            entry.result = DeviceOperationResult(
                device=entry.device,
                duration_seconds=time.monotonic() - entry.started,
                outcome=outcome,
                reason=reason,
                message=message,
            )
            return entry.result

    def succeed(self, slot: int, message: str = "") -> DeviceOperationResult:
        return self.finish(slot, Outcome.SUCCESS, message=message)

    def fail(self, slot: int, reason: FailureReason, message: str) -> DeviceOperationResult:
        return self.finish(slot, Outcome.FAILED, reason=reason, message=message)

    def cancel(self, slot: int, message: str) -> DeviceOperationResult:
        return self.finish(
            slot, Outcome.CANCELLED, reason=FailureReason.CANCELLED, message=message
        )

    def in_progress_view(self) -> tuple[DeviceOperationResult, ...]:
        """All rows so far, the running device included."""
        with self._lock:
            if self._frozen is not None:
                return self._frozen
            now = time.monotonic()
            return tuple(
                s.result
                if s.result is not None
                else DeviceOperationResult(
                    device=s.device,
                    duration_seconds=now - s.started,
                    outcome=Outcome.IN_PROGRESS,
                )
                for s in self._slots
            )

    def freeze(self, cancelled: bool = False) -> tuple[DeviceOperationResult, ...]:
        """Make the report immutable and return the final results.

        A row still in progress has never been finished; it is dropped.
        Operations finish interrupted rows as cancelled before freezing.
        """
        with self._lock:
            if self._frozen is None:
                self._frozen = tuple(s.result for s in self._slots if s.result is not None)
                self.finished_at = datetime.now()
                self.cancelled = cancelled
            return self._frozen

    @property
    def results(self) -> tuple[DeviceOperationResult, ...]:
        if self._frozen is not None:
            return self._frozen
        return tuple(r for r in self.in_progress_view() if r.outcome is not Outcome.IN_PROGRESS)

    def summary(self) -> dict[str, int]:
        results = self.results
        return {
            "total": len(results),
            "succeeded": sum(1 for r in results if r.succeeded),
            "failed": sum(1 for r in results if r.failed),
            "cancelled": sum(1 for r in results if r.cancelled),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "cancelled": self.cancelled,
            "summary": self.summary(),
            "results": [r.to_dict() for r in self.results],
        }

    def save(self, path: Path) -> None:
        """Save the report as JSON."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    def _check_open(self) -> None:
        if self._frozen is not None:
            raise RuntimeError("Batch report is frozen")
