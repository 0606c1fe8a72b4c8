"""
Device monitor.

Follows the device-event stream of the platform (``udisksctl monitor``),
probes added devices on a thread pool and maintains the active selection
list of the current mode. Every change is published to the presentation
adapter as an immutable tuple of ``DeviceSnapshot``.

A probe result is only inserted if the device is still expected: each add
and each remove bumps a per-device generation counter, and a probe carrying
an older generation is dropped.
"""

from __future__ import annotations

import atexit
import re
import subprocess
import threading
from collections.abc import Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING

from mediaforge.core.config import MonitorConfig
from mediaforge.core.events import NullAdapter, PresentationAdapter, notify
from mediaforge.core.logging import get_logger
from mediaforge.core.models import (
    DeviceSnapshot,
    PartitionRole,
    is_partition_name,
    is_valid_device_name,
)

if TYPE_CHECKING:
    from mediaforge.platform.base import PlatformBackend

logger = get_logger(__name__)


class EventKind(Enum):
    ADDED = auto()
    REMOVED = auto()
    IGNORED = auto()


@dataclass(frozen=True)
class MonitorEvent:
    """One classified line of the event stream."""

    kind: EventKind
    path: str | None = None

    @property
    def device(self) -> str | None:
        return device_name_from_path(self.path) if self.path else None


IGNORED = MonitorEvent(EventKind.IGNORED)


def _compile(patterns: Iterable[str | re.Pattern[str]]) -> list[re.Pattern[str]]:
    return [p if isinstance(p, re.Pattern) else re.compile(p) for p in patterns]


def classify_line(
    line: str,
    added_patterns: Iterable[str | re.Pattern[str]],
    removed_patterns: Iterable[str | re.Pattern[str]],
) -> MonitorEvent:
    """Classify one event-stream line as Added(path), Removed(path) or Ignored."""
    line = line.strip()
    if not line:
        return IGNORED
    for kind, patterns in (
        (EventKind.ADDED, added_patterns),
        (EventKind.REMOVED, removed_patterns),
    ):
        for pattern in _compile(patterns):
            match = pattern.match(line)
            if match:
                path = match.group(1) if match.groups() else line
                return MonitorEvent(kind, path.strip())
    return IGNORED


def device_name_from_path(path: str) -> str:
    """Last token of an object or device path (``.../block_devices/sdb`` -> ``sdb``)."""
    return path.rstrip("/").split("/")[-1]


class SelectionMode(Enum):
    """The operation a selection list collects devices for."""

    INSTALL = "install"
    UPGRADE = "upgrade"
    RESET = "reset"


@dataclass(frozen=True)
class DeviceFilter:
    """Eligibility rules of a selection list."""

    removable_only: bool = True
    excluded_devices: frozenset[str] = frozenset()
    minimum_size_bytes: int = 0
    required_roles: frozenset[PartitionRole] = frozenset()

    @classmethod
    def for_mode(
        cls,
        mode: SelectionMode,
        config: MonitorConfig,
        boot_device: str | None = None,
        minimum_size_bytes: int = 0,
    ) -> DeviceFilter:
        excluded: frozenset[str] = frozenset()
        if boot_device and config.exclude_boot_device:
            excluded = frozenset({boot_device})
        required: frozenset[PartitionRole] = frozenset()
        if mode is not SelectionMode.INSTALL:
            required = frozenset({PartitionRole.SYSTEM})
        return cls(
            removable_only=config.removable_only,
            excluded_devices=excluded,
            minimum_size_bytes=minimum_size_bytes,
            required_roles=required,
        )

    def accepts(self, snapshot: DeviceSnapshot) -> bool:
        if snapshot.device in self.excluded_devices:
            return False
        if self.removable_only and not (snapshot.removable or snapshot.kind.is_removable_media):
            return False
        if snapshot.size_bytes < self.minimum_size_bytes:
            return False
        roles = {p.role for p in snapshot.partitions}
        return self.required_roles <= roles


@dataclass
class SelectionList:
    """Ordered list of eligible devices for one mode. Not thread-safe by itself."""

    mode: SelectionMode
    device_filter: DeviceFilter = field(default_factory=DeviceFilter)
    _entries: list[DeviceSnapshot] = field(default_factory=list)
    _generations: dict[str, int] = field(default_factory=dict)

    def expect(self, device: str) -> int:
        """Start a new expectation for ``device``; returns its generation."""
        generation = self._generations.get(device, 0) + 1
        self._generations[device] = generation
        return generation

    def forget(self, device: str) -> bool:
        """Drop ``device`` and invalidate pending probes. Returns True if removed."""
        self._generations[device] = self._generations.get(device, 0) + 1
        return self._remove(device)

    def offer(self, snapshot: DeviceSnapshot, generation: int) -> bool:
        """Insert a probe result if still expected. Returns True if the list changed."""
        if self._generations.get(snapshot.device) != generation:
            logger.debug("Dropping stale probe", device=snapshot.device, generation=generation)
            return False
        if not self.device_filter.accepts(snapshot):
            return self._remove(snapshot.device)
        for index, entry in enumerate(self._entries):
            if entry.device == snapshot.device:
                if entry == snapshot:
                    return False
                self._entries[index] = snapshot
                return True
        self._entries.append(snapshot)
        return True

    def replace_all(self, snapshots: Sequence[DeviceSnapshot]) -> None:
        self._entries = [s for s in snapshots if self.device_filter.accepts(s)]
        for snapshot in snapshots:
            self._generations[snapshot.device] = self._generations.get(snapshot.device, 0) + 1

    def snapshot(self) -> tuple[DeviceSnapshot, ...]:
        return tuple(self._entries)

    def _remove(self, device: str) -> bool:
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.device != device]
        return len(self._entries) != before


class DeviceMonitor:
    """Tracks present and eligible devices from the platform event stream."""

    def __init__(
        self,
        backend: PlatformBackend,
        config: MonitorConfig | None = None,
        probe_workers: int | None = None,
        adapter: PresentationAdapter | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or MonitorConfig()
        self.adapter: PresentationAdapter = adapter or NullAdapter()
        self._added = _compile(self.config.added_patterns)
        self._removed = _compile(self.config.removed_patterns)
        self._executor = ThreadPoolExecutor(
            max_workers=probe_workers or self.config.probe_workers,
            thread_name_prefix="device-probe",
        )
        self._lock = threading.Lock()
        self._emit_lock = threading.Lock()
        self._active: SelectionList | None = None
        self._pending: set[Future[None]] = set()
        self._process: subprocess.Popen[str] | None = None
        self._reader: threading.Thread | None = None
        self._stopped = False
        self._boot_device: str | None = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def active_selection(self) -> SelectionList | None:
        with self._lock:
            return self._active

    @property
    def boot_device(self) -> str | None:
        return self._boot_device

    def start(self) -> None:
        """Spawn the event stream and its reader thread."""
        if self._process is not None:
            return
        self._boot_device = self.backend.boot_device()
        self._process = self.backend.open_event_stream(self.config.command)
        self._reader = threading.Thread(
            target=self._read_events,
            name="device-monitor",
            daemon=True,
        )
        self._reader.start()
        atexit.register(self.stop)
        logger.info("Device monitor started", boot_device=self._boot_device)

    def stop(self) -> None:
        """Terminate the event stream. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        process, self._process = self._process, None
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        self._executor.shutdown(wait=False, cancel_futures=True)
        atexit.unregister(self.stop)
        logger.info("Device monitor stopped")

    def _read_events(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        for line in process.stdout:
            if self._stopped:
                break
            try:
                self.feed_line(line)
            except Exception as e:
                logger.warning("Failed to process monitor line", line=line.strip(), error=str(e))
        logger.debug("Device event stream ended")

    def feed_line(self, line: str) -> MonitorEvent:
        """Process one event-stream line."""
        event = classify_line(line, self._added, self._removed)
        device = event.device
        if event.kind is EventKind.IGNORED or device is None:
            return event
        if not is_valid_device_name(device):
            logger.debug("Ignoring event for unexpected name", path=event.path)
            return IGNORED
        if is_partition_name(device):
            logger.debug("Ignoring partition event", path=event.path)
            return IGNORED

        if event.kind is EventKind.ADDED:
            self._on_added(device)
        else:
            self._on_removed(device)
        return event

    def set_active_selection(
        self,
        mode: SelectionMode | None,
        device_filter: DeviceFilter | None = None,
        rescan: bool = True,
    ) -> SelectionList | None:
        """Activate the selection list of ``mode``; None deactivates."""
        selection = None
        if mode is not None:
            device_filter = device_filter or DeviceFilter.for_mode(
                mode, self.config, self._boot_device
            )
            selection = SelectionList(mode=mode, device_filter=device_filter)
        with self._lock:
            self._active = selection
        logger.info("Active selection changed", mode=mode.value if mode else None)
        if selection is not None and rescan:
            self.rescan()
        else:
            self._emit()
        return selection

    def rescan(self) -> tuple[DeviceSnapshot, ...]:
        """Probe every present device and rebuild the active list."""
        devices = self.backend.list_devices()
        with self._lock:
            if self._active is None:
                return ()
            self._active.replace_all(devices)
        return self._emit()

    def snapshots(self) -> tuple[DeviceSnapshot, ...]:
        with self._lock:
            return self._active.snapshot() if self._active else ()

    def wait_for_probes(self, timeout: float | None = None) -> bool:
        """Wait for pending probes. Returns True if none is left."""
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def _on_added(self, device: str) -> None:
        with self._lock:
            selection = self._active
            if selection is None or self._stopped:
                return
            generation = selection.expect(device)
            future = self._executor.submit(self._probe, device, generation, selection)
            self._pending.add(future)
        future.add_done_callback(self._discard_future)
        logger.debug("Device added", device=device, generation=generation)

    def _discard_future(self, future: Future[None]) -> None:
        with self._lock:
            self._pending.discard(future)

    def _probe(self, device: str, generation: int, selection: SelectionList) -> None:
        try:
            snapshot = self.backend.probe_device(device)
        except Exception as e:
            logger.warning("Device probe failed", device=device, error=str(e))
            return
        if snapshot is None:
            return
        with self._lock:
            if self._active is not selection:
                return
            changed = selection.offer(snapshot, generation)
        if changed:
            self._emit()

    def _on_removed(self, device: str) -> None:
        with self._lock:
            selection = self._active
            if selection is None:
                return
            changed = selection.forget(device)
        logger.debug("Device removed", device=device)
        if changed:
            self._emit()

    def _emit(self) -> tuple[DeviceSnapshot, ...]:
        with self._emit_lock:
            snapshots = self.snapshots()
            notify(self.adapter, "on_device_list_changed", snapshots)
        return snapshots
