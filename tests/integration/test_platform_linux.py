"""
Tests for mediaforge.platform.linux module.

Uses mocking to test without requiring admin privileges.
"""

import io
import json
import subprocess
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_installed_device
from mediaforge.core.credentials import NoPassword, PersonalPassword, Secret
from mediaforge.core.exceptions import PreconditionFailed, ToolExecutionFailed
from mediaforge.core.layout import PartitionPlan, PartitionState
from mediaforge.core.models import DeviceKind, FileSystem, MountState, PartitionRole
from mediaforge.platform.base import CommandResult, CopyProgress
from mediaforge.platform.linux.backend import LinuxBackend, build_sfdisk_script
from mediaforge.platform.linux.parsers import (
    MountEntry,
    build_device_from_lsblk,
    mount_state_for,
    parse_device_kind,
    parse_findmnt_json,
    parse_lsblk_json,
    parse_proc_mounts,
    parse_proc_swaps,
    parse_rate,
    parse_rsync_progress,
    parse_sfdisk_json,
)

LSBLK_DEVICE = {
    "name": "sdb",
    "path": "/dev/sdb",
    "size": 8000 * 1048576,
    "type": "disk",
    "vendor": "SanDisk ",
    "model": "Cruzer Blade    ",
    "serial": "4C530001",
    "tran": "usb",
    "rm": True,
    "children": [
        {
            "name": "sdb1",
            "path": "/dev/sdb1",
            "size": 104857600,
            "type": "part",
            "fstype": "vfat",
            "label": "EFI",
        },
        {
            "name": "sdb2",
            "path": "/dev/sdb2",
            "size": 1048576000,
            "type": "part",
            "fstype": "exfat",
            "label": "Exchange",
            "fsused": "1048576",
        },
        {
            "name": "sdb3",
            "path": "/dev/sdb3",
            "size": 2831155200,
            "type": "part",
            "fstype": "ext4",
            "label": "persistence",
        },
        {"name": "sdb4", "path": "/dev/sdb4", "size": 4404019200, "type": "part", "fstype": "ext4"},
    ],
}


POPEN = "mediaforge.platform.linux.backend.subprocess.Popen"


def ok(stdout: str = "", command: str = "tool") -> CommandResult:
    return CommandResult(0, stdout, "", [command])


class TestLinuxParsers:
    """Tests for Linux output parsers."""

    def test_parse_lsblk_json_valid(self) -> None:
        output = json.dumps({"blockdevices": [{"name": "sda"}, {"name": "sdb"}]})
        result = parse_lsblk_json(output)
        assert [b["name"] for b in result] == ["sda", "sdb"]

    def test_parse_lsblk_json_invalid(self) -> None:
        assert parse_lsblk_json("") == []
        assert parse_lsblk_json("not json") == []

    @pytest.mark.parametrize(
        ("tran", "name", "block_type", "expected"),
        [
            ("usb", "sdb", "disk", DeviceKind.USB_FLASH),
            ("sata", "sda", "disk", DeviceKind.HARD_DRIVE),
            ("nvme", "nvme0n1", "disk", DeviceKind.HARD_DRIVE),
            (None, "mmcblk0", "disk", DeviceKind.SD_CARD),
            (None, "sr0", "rom", DeviceKind.OPTICAL),
            (None, "md0", "raid1", DeviceKind.RAID),
            (None, "loop0", "loop", DeviceKind.UNKNOWN),
        ],
    )
    def test_parse_device_kind(
        self, tran: str | None, name: str, block_type: str, expected: DeviceKind
    ) -> None:
        assert parse_device_kind(tran, name, block_type) is expected

    def test_parse_findmnt_json(self) -> None:
        output = json.dumps(
            {
                "filesystems": [
                    {
                        "source": "/dev/sda4",
                        "target": "/run/live/medium",
                        "options": "ro,noatime",
                        "children": [
                            {
                                "source": "/dev/sda3[/rw]",
                                "target": "/run/live/persistence/sda3",
                                "options": "rw,noatime",
                            },
                            {"source": "tmpfs", "target": "/tmp", "options": "rw"},
                        ],
                    }
                ]
            }
        )

        mounts = parse_findmnt_json(output)

        assert set(mounts) == {"/dev/sda4", "/dev/sda3"}
        assert mounts["/dev/sda4"].read_only
        assert mounts["/dev/sda3"].is_persistence
        assert not mounts["/dev/sda4"].is_persistence

    def test_parse_findmnt_json_invalid(self) -> None:
        assert parse_findmnt_json("{") == {}

    def test_parse_proc_mounts(self, temp_dir: Path) -> None:
        proc = temp_dir / "mounts"
        proc.write_text(
            "/dev/sdb2 /media/user/Exchange exfat rw,nosuid 0 0\n"
            "proc /proc proc rw 0 0\n"
        )

        mounts = parse_proc_mounts(proc)

        assert list(mounts) == ["/dev/sdb2"]
        assert mounts["/dev/sdb2"].target == "/media/user/Exchange"

    def test_parse_proc_mounts_missing(self, temp_dir: Path) -> None:
        assert parse_proc_mounts(temp_dir / "missing") == {}

    def test_parse_proc_swaps(self) -> None:
        output = (
            "Filename\t\t\t\tType\t\tSize\tUsed\tPriority\n"
            "/dev/sdb5                               partition\t1048572\t0\t-2\n"
            "/swapfile                               file\t\t2097148\t0\t-3\n"
        )
        assert parse_proc_swaps(output) == ["/dev/sdb5"]

    @pytest.mark.parametrize(
        ("rate", "expected"),
        [("512B/s", 512.0), ("1.50kB/s", 1536.0), ("31,25MB/s", 31.25 * 1024**2), ("?", 0.0)],
    )
    def test_parse_rate(self, rate: str, expected: float) -> None:
        assert parse_rate(rate) == expected

    def test_parse_rsync_progress(self) -> None:
        line = "    123,456,789  42%   31.25MB/s    0:00:03 (xfr#120, to-chk=880/1000)"

        parsed = parse_rsync_progress(line)

        assert parsed is not None
        assert parsed.bytes_done == 123456789
        assert parsed.percent == 42
        assert parsed.rate == "31.25MB/s"
        assert (parsed.files_remaining, parsed.files_total) == (880, 1000)

    def test_parse_rsync_progress_without_file_counts(self) -> None:
        parsed = parse_rsync_progress("      1,024   0%    0.00kB/s    0:00:00")
        assert parsed is not None
        assert parsed.files_total is None

    def test_parse_rsync_other_line(self) -> None:
        assert parse_rsync_progress("sending incremental file list") is None

    def test_parse_sfdisk_json(self) -> None:
        output = json.dumps(
            {
                "partitiontable": {
                    "label": "dos",
                    "sectorsize": 4096,
                    "partitions": [
                        {"node": "/dev/sdb2", "start": 25600, "size": 256000, "type": "7"},
                        {"node": "/dev/sdb3", "start": 281600, "size": 691200, "type": "83"},
                    ],
                }
            }
        )

        sector_size, table = parse_sfdisk_json(output)

        assert sector_size == 4096
        assert table["/dev/sdb3"] == {"start": 281600, "size": 691200}

    def test_parse_sfdisk_json_invalid(self) -> None:
        assert parse_sfdisk_json("") == (512, {})


class TestMountState:
    """Tests for mount_state_for."""

    def test_unmounted(self) -> None:
        assert mount_state_for("/dev/sdb1", {}) == (MountState.UNMOUNTED, None)

    def test_read_only(self) -> None:
        entry = MountEntry("/dev/sdb1", "/mnt", ("ro",))
        assert mount_state_for("/dev/sdb1", {"/dev/sdb1": entry})[0] is MountState.MOUNTED_READ_ONLY

    def test_mounted_through_holder(self) -> None:
        entry = MountEntry("/dev/mapper/data", "/mnt/data", ("rw",))
        state, found = mount_state_for(
            "/dev/sdb3", {"/dev/mapper/data": entry}, [{"name": "data"}]
        )
        assert state is MountState.MOUNTED_ELSEWHERE
        assert found == entry


class TestBuildDeviceFromLsblk:
    """Tests for build_device_from_lsblk."""

    def test_build_device(self) -> None:
        device = build_device_from_lsblk(LSBLK_DEVICE, {})

        assert device.device == "sdb"
        assert device.vendor == "SanDisk"
        assert device.model == "Cruzer Blade"
        assert device.kind is DeviceKind.USB_FLASH
        assert device.removable
        assert [p.number for p in device.partitions] == [1, 2, 3, 4]
        assert device.partitions[1].used_bytes == 1048576

    def test_partition_roles(self) -> None:
        device = build_device_from_lsblk(LSBLK_DEVICE, {})

        assert device.exchange_partition is not None
        assert device.exchange_partition.number == 2
        assert device.data_partition is not None
        assert device.data_partition.role is PartitionRole.DATA

    def test_active_persistence(self) -> None:
        mounts = {
            "/dev/sdb3": MountEntry("/dev/sdb3", "/run/live/persistence/sdb3", ("rw",))
        }

        device = build_device_from_lsblk(LSBLK_DEVICE, mounts)

        data = device.data_partition
        assert data is not None
        assert data.active_persistence
        assert data.mount_state is MountState.MOUNTED_READ_WRITE

    def test_skips_non_partitions(self) -> None:
        block = {**LSBLK_DEVICE, "children": [{"name": "sdb_crypt", "type": "crypt"}]}
        assert build_device_from_lsblk(block, {}).partitions == ()


class TestSfdiskScript:
    """Tests for build_sfdisk_script."""

    def test_full_layout(self) -> None:
        plan = PartitionPlan(100, 4200, 1000, 2700, 8000 * 1048576, PartitionState.EXCHANGE)

        script = build_sfdisk_script(plan, FileSystem.EXFAT)

        assert script.splitlines() == [
            "label: dos",
            "size=100MiB, type=ef",
            "size=1000MiB, type=7",
            "size=2700MiB, type=83",
            "type=83, bootable",
        ]

    def test_only_system(self) -> None:
        plan = PartitionPlan(100, 4200, 0, 0, 4400 * 1048576, PartitionState.ONLY_SYSTEM)

        script = build_sfdisk_script(plan, FileSystem.VFAT)

        assert script.splitlines() == ["label: dos", "size=100MiB, type=ef", "type=83, bootable"]

    def test_fat_exchange_type(self) -> None:
        plan = PartitionPlan(100, 4200, 1000, 0, 5400 * 1048576, PartitionState.EXCHANGE)
        assert "size=1000MiB, type=c" in build_sfdisk_script(plan, FileSystem.VFAT)


@pytest.mark.integration
class TestLinuxBackend:
    """Tests for LinuxBackend with mocked commands."""

    @pytest.fixture
    def backend(self) -> LinuxBackend:
        return LinuxBackend(settle_seconds=0)

    def test_list_devices(self, backend: LinuxBackend) -> None:
        lsblk = json.dumps({"blockdevices": [LSBLK_DEVICE, {"name": "loop0", "type": "loop"}]})

        with patch.object(backend, "run_command", return_value=ok(lsblk, "lsblk")):
            with patch.object(backend, "_get_mounts", return_value={}):
                devices = backend.list_devices()

        assert [d.device for d in devices] == ["sdb"]

    def test_probe_missing_device(self, backend: LinuxBackend) -> None:
        failed = CommandResult(32, "", "not a block device", ["lsblk"])
        with patch.object(backend, "run_command", return_value=failed):
            assert backend.probe_device("sdz") is None

    def test_boot_device(self, backend: LinuxBackend) -> None:
        with patch.object(backend, "run_command") as mock_run:
            mock_run.side_effect = [ok("/dev/sda4\n", "findmnt"), ok("sda\n", "lsblk")]
            assert backend.boot_device() == "sda"

    def test_boot_device_not_found(self, backend: LinuxBackend) -> None:
        with patch.object(backend, "run_command", return_value=ok("overlay\n", "findmnt")):
            assert backend.boot_device() is None

    def test_format_partition(self, backend: LinuxBackend) -> None:
        with patch.object(backend, "run_command", return_value=ok()) as mock_run:
            backend.format_partition("/dev/sdb2", FileSystem.VFAT, "EXCHANGE")

        assert mock_run.call_args[0][0] == [
            "mkfs.vfat",
            "-F",
            "32",
            "-n",
            "EXCHANGE",
            "/dev/sdb2",
        ]

    def test_format_unsupported(self, backend: LinuxBackend) -> None:
        with pytest.raises(ValueError):
            backend.format_partition("/dev/sdb2", FileSystem.UNKNOWN)

    def test_tool_failure_raises(self, backend: LinuxBackend) -> None:
        failed = CommandResult(1, "", "device busy", ["umount", "/dev/sdb1"])
        with patch.object(backend, "run_command", return_value=failed):
            with pytest.raises(ToolExecutionFailed) as exc_info:
                backend.unmount("/dev/sdb1")
        assert exc_info.value.returncode == 1

    def test_mount_read_only(self, backend: LinuxBackend, temp_dir: Path) -> None:
        target = temp_dir / "mnt"
        with patch.object(backend, "run_command", return_value=ok()) as mock_run:
            backend.mount("/dev/sdb3", target, read_only=True)

        assert target.is_dir()
        assert mock_run.call_args[0][0] == ["mount", "-o", "ro", "/dev/sdb3", str(target)]

    def test_write_partition_table(self, backend: LinuxBackend) -> None:
        plan = PartitionPlan(100, 4200, 1000, 2700, 8000 * 1048576, PartitionState.EXCHANGE)
        device = make_installed_device("sdb")

        with patch.object(backend, "run_command", return_value=ok()) as mock_run:
            backend.write_partition_table(device, plan, FileSystem.EXFAT)

        sfdisk = mock_run.call_args_list[0]
        assert sfdisk[0][0][0] == "sfdisk"
        assert sfdisk[0][0][-1] == "/dev/sdb"
        assert sfdisk[1]["input_data"] == build_sfdisk_script(plan, FileSystem.EXFAT)

    def test_resize_needs_adjacent_partitions(self, backend: LinuxBackend) -> None:
        plan = PartitionPlan(100, 4200, 500, 3200, 8000 * 1048576, PartitionState.EXCHANGE)
        device = make_installed_device("sdb", data_mb=0)

        with pytest.raises(PreconditionFailed):
            backend.resize_partitions(device, plan, FileSystem.EXFAT)

    def test_open_without_password(self, backend: LinuxBackend) -> None:
        with patch.object(backend, "run_command") as mock_run:
            assert backend.open_encrypted("/dev/sdb3", NoPassword(), "data") == "/dev/sdb3"
        mock_run.assert_not_called()

    def test_open_personal_password(self, backend: LinuxBackend) -> None:
        unlock = PersonalPassword(password=Secret.from_string("secret"))

        with patch.object(backend, "run_command", return_value=ok()) as mock_run:
            mapper = backend.open_encrypted("/dev/sdb3", unlock, "mediaforge-sdb")

        assert mapper == "/dev/mapper/mediaforge-sdb"
        commands = [c[0][0] for c in mock_run.call_args_list]
        assert commands[0][:2] == ["cryptsetup", "luksFormat"]
        assert commands[-1][-2:] == ["/dev/sdb3", "mediaforge-sdb"]
        assert all("secret" not in " ".join(command) for command in commands)
        assert mock_run.call_args_list[0][1]["input_data"] == b"secret"

    def test_copy_tree_reads_errors_from_merged_output(
        self, backend: LinuxBackend, temp_dir: Path
    ) -> None:
        proc = MagicMock()
        proc.stdout = io.StringIO(
            "      1,024  50%    1.00MB/s    0:00:01 (xfr#1, to-chk=1/2)\n"
            'rsync: send_files failed to open "secret": Permission denied (13)\n'
            "rsync error: some files could not be transferred (code 23)\n"
        )
        proc.wait.return_value = 23
        proc.poll.return_value = 23
        reported: list[CopyProgress] = []

        with patch(POPEN, return_value=proc) as popen:
            with pytest.raises(ToolExecutionFailed) as exc_info:
                backend.copy_tree(temp_dir / "src", temp_dir / "dst", reported.append)

        assert popen.call_args[1]["stderr"] is subprocess.STDOUT
        assert exc_info.value.returncode == 23
        assert "Permission denied" in exc_info.value.stderr
        assert "1,024" not in exc_info.value.stderr
        assert [p.bytes_done for p in reported] == [1024]
        proc.kill.assert_not_called()

    def test_copy_tree_kills_rsync_on_interruption(
        self, backend: LinuxBackend, temp_dir: Path
    ) -> None:
        def lines() -> Iterator[str]:
            yield "      1,024  10%    1.00MB/s    0:00:09\n"
            raise OSError("read interrupted")

        proc = MagicMock()
        proc.stdout = lines()
        proc.poll.return_value = None

        with patch(POPEN, return_value=proc):
            with pytest.raises(OSError):
                backend.copy_tree(temp_dir / "src", temp_dir / "dst")

        proc.kill.assert_called_once()
        proc.wait.assert_called_once()
