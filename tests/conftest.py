"""
Pytest configuration and fixtures for MediaForge tests.
"""

import subprocess
import sys
import tempfile
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, Generator

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mediaforge.core.config import LoggingConfig, MediaForgeConfig, SafetyConfig  # noqa: E402
from mediaforge.core.models import (  # noqa: E402
    MEGA,
    DeviceKind,
    DeviceSnapshot,
    FileSystem,
    PartitionSnapshot,
    SystemSource,
)
from mediaforge.platform.base import CopyProgress, PlatformBackend  # noqa: E402


class FakeBackend(PlatformBackend):
    """Backend that records every tool invocation instead of running it."""

    def __init__(
        self, devices: Sequence[DeviceSnapshot] = (), boot: str | None = "sda"
    ) -> None:
        self.devices: dict[str, DeviceSnapshot] = {d.device: d for d in devices}
        self.boot = boot
        self.calls: list[tuple[Any, ...]] = []
        self.swaps: list[str] = []
        self.used_bytes = 0
        self._failures: list[tuple[str, str | None, Exception]] = []
        self.hooks: dict[str, Callable[..., None]] = {}

    # ---- test helpers ----

    def fail(self, method: str, error: Exception, target: str | None = None) -> None:
        """Make ``method`` raise ``error`` (only for calls mentioning ``target``)."""
        self._failures.append((method, target, error))

    def remove(self, device: str) -> None:
        self.devices.pop(device, None)

    def calls_to(self, method: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == method]

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        for name, target, error in self._failures:
            if name == method and (target is None or target in " ".join(map(str, args))):
                raise error
        hook = self.hooks.get(method)
        if hook is not None:
            hook(*args)

    # ---- PlatformBackend ----

    @property
    def name(self) -> str:
        return "fake"

    @property
    def requires_admin(self) -> bool:
        return False

    def is_admin(self) -> bool:
        return True

    def list_devices(self) -> list[DeviceSnapshot]:
        return list(self.devices.values())

    def probe_device(self, device: str) -> DeviceSnapshot | None:
        return self.devices.get(device)

    def boot_device(self) -> str | None:
        return self.boot

    def open_event_stream(self, command: Sequence[str]) -> subprocess.Popen[str]:
        return subprocess.Popen(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            stdout=subprocess.PIPE,
            text=True,
        )

    def active_swaps(self) -> list[str]:
        return list(self.swaps)

    def swap_off(self, device_path: str) -> None:
        self._record("swap_off", device_path)

    def mount(self, device_path: str, mount_point: Path, read_only: bool = False) -> None:
        self._record("mount", device_path, mount_point, read_only)
        mount_point.mkdir(parents=True, exist_ok=True)

    def unmount(self, target: str | Path) -> None:
        self._record("unmount", str(target))

    def write_partition_table(self, device, plan, exchange_fs) -> None:  # type: ignore[no-untyped-def]
        self._record("write_partition_table", device.device, plan, exchange_fs)

    def resize_partitions(self, device, plan, exchange_fs) -> None:  # type: ignore[no-untyped-def]
        self._record("resize_partitions", device.device, plan, exchange_fs)

    def format_partition(
        self, device_path: str, filesystem: FileSystem, label: str | None = None
    ) -> None:
        self._record("format_partition", device_path, filesystem, label)

    def set_label(self, device_path: str, filesystem: FileSystem, label: str) -> None:
        self._record("set_label", device_path, filesystem, label)

    def open_encrypted(self, device_path, unlock, name) -> str:  # type: ignore[no-untyped-def]
        self._record("open_encrypted", device_path, unlock.kind, name)
        if not unlock.secrets():
            return device_path
        return f"/dev/mapper/{name}"

    def close_encrypted(self, name: str) -> None:
        self._record("close_encrypted", name)

    def copy_tree(self, source, destination, progress=None, excludes=()) -> None:  # type: ignore[no-untyped-def]
        self._record("copy_tree", source, destination, tuple(excludes))
        if progress is not None:
            progress(CopyProgress(50 * MEGA, 100 * MEGA, 10.0 * MEGA))
            progress(CopyProgress(100 * MEGA, 100 * MEGA, 10.0 * MEGA))

    def install_bootloader(self, device, boot_mount, system_mount) -> None:  # type: ignore[no-untyped-def]
        self._record("install_bootloader", device.device, boot_mount, system_mount)

    def run_backup(self, source: Path, destination: Path) -> None:
        self._record("run_backup", source, destination)
        destination.mkdir(parents=True, exist_ok=True)

    def change_owner(self, path: Path, owner: str) -> None:
        self._record("change_owner", path, owner)

    def disk_used_bytes(self, mount_point: Path) -> int:
        return self.used_bytes


def make_partition(
    device: str,
    number: int,
    size_mb: int,
    filesystem: FileSystem = FileSystem.EXT4,
    label: str | None = None,
    **kwargs: Any,
) -> PartitionSnapshot:
    return PartitionSnapshot(
        device_and_number=f"{device}{number}",
        number=number,
        size_bytes=size_mb * MEGA,
        filesystem=filesystem,
        label=label,
        **kwargs,
    )


def make_device(
    name: str = "sdb",
    size_mb: int = 8000,
    partitions: Sequence[PartitionSnapshot] = (),
    kind: DeviceKind = DeviceKind.USB_FLASH,
    removable: bool = True,
    **kwargs: Any,
) -> DeviceSnapshot:
    return DeviceSnapshot(
        device=name,
        size_bytes=size_mb * MEGA,
        vendor="Generic",
        model="Flash Disk",
        kind=kind,
        removable=removable,
        partitions=tuple(partitions),
        **kwargs,
    )


def make_installed_device(
    name: str = "sdb",
    exchange_mb: int = 1000,
    data_mb: int = 2700,
    system_mb: int = 4200,
    **kwargs: Any,
) -> DeviceSnapshot:
    """A device laid out like a fresh installation (boot, exchange, data, system)."""
    partitions = [make_partition(name, 1, 100, FileSystem.VFAT, "EFI")]
    number = 2
    if exchange_mb:
        partitions.append(make_partition(name, number, exchange_mb, FileSystem.EXFAT, "Exchange"))
        number += 1
    if data_mb:
        partitions.append(make_partition(name, number, data_mb, FileSystem.EXT4, "persistence"))
        number += 1
    partitions.append(make_partition(name, number, system_mb, FileSystem.EXT4, "system"))
    total = 100 + exchange_mb + data_mb + system_mb
    return make_device(name, total, partitions, **kwargs)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_config(temp_dir: Path) -> MediaForgeConfig:
    """Create a sample configuration for testing."""
    config = MediaForgeConfig(
        logging=LoggingConfig(log_directory=temp_dir / "logs", file_enabled=False),
        safety=SafetyConfig(power_check_enabled=False),
        report_directory=temp_dir / "reports",
        mount_root=temp_dir / "mnt",
    )
    config.ensure_directories()
    return config


@pytest.fixture
def source(temp_dir: Path) -> SystemSource:
    """A 4000 MiB source system booted from sda."""
    system_path = temp_dir / "medium"
    system_path.mkdir()
    return SystemSource(
        system_size_bytes=4000 * MEGA,
        system_path=system_path,
        device="sda",
        kind=DeviceKind.USB_FLASH,
    )


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
