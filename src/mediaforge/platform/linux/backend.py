"""
Linux Platform Backend Implementation.

Drives standard Linux tools: lsblk and findmnt for inventory, sfdisk for
partition tables, mkfs.* for file systems, cryptsetup for encrypted data
partitions, rsync for copies, grub-install for boot loaders and
rdiff-backup for user data backups.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import time
from collections import deque
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psutil

from mediaforge.core.credentials import MasterAndInitialPassword, NoPassword, PersonalPassword
from mediaforge.core.exceptions import PreconditionFailed, ToolExecutionFailed
from mediaforge.core.logging import get_logger
from mediaforge.core.models import MEGA, DeviceSnapshot, FileSystem, PartitionRole
from mediaforge.platform.base import CommandResult, CopyCallback, CopyProgress, PlatformBackend
from mediaforge.platform.linux.parsers import (
    MountEntry,
    build_device_from_lsblk,
    parse_findmnt_json,
    parse_lsblk_json,
    parse_proc_mounts,
    parse_proc_swaps,
    parse_rate,
    parse_rsync_progress,
    parse_sfdisk_json,
)

if TYPE_CHECKING:
    from mediaforge.core.credentials import UnlockMethod
    from mediaforge.core.layout import PartitionPlan

logger = get_logger(__name__)

LSBLK_COLUMNS = "NAME,PATH,SIZE,TYPE,FSTYPE,LABEL,MOUNTPOINT,MODEL,SERIAL,VENDOR,REV,TRAN,RM,HOTPLUG,FSUSED"

# Mount points of the medium the live system booted from
LIVE_MEDIUM_MOUNTS = ("/run/live/medium", "/lib/live/mount/medium")

# MBR partition type codes
PARTITION_TYPES = {
    PartitionRole.BOOT: "ef",
    PartitionRole.DATA: "83",
    PartitionRole.SYSTEM: "83",
}
EXCHANGE_PARTITION_TYPES = {
    FileSystem.VFAT: "c",
    FileSystem.EXFAT: "7",
    FileSystem.NTFS: "7",
}


def build_sfdisk_script(plan: PartitionPlan, exchange_fs: FileSystem) -> str:
    """Build the sfdisk input for ``plan``. The last partition fills the device."""
    lines = ["label: dos"]
    planned = plan.partitions()
    for index, partition in enumerate(planned):
        if partition.role == PartitionRole.EXCHANGE:
            type_code = EXCHANGE_PARTITION_TYPES.get(exchange_fs, "7")
        else:
            type_code = PARTITION_TYPES[partition.role]
        fields = []
        if index < len(planned) - 1:
            fields.append(f"size={partition.size_mb}MiB")
        fields.append(f"type={type_code}")
        if partition.role == PartitionRole.SYSTEM:
            fields.append("bootable")
        lines.append(", ".join(fields))
    return "\n".join(lines) + "\n"


class LinuxBackend(PlatformBackend):
    """Linux implementation of the platform backend."""

    # Tool paths (can be overridden for testing)
    LSBLK = "lsblk"
    FINDMNT = "findmnt"
    SFDISK = "sfdisk"
    PARTPROBE = "partprobe"
    UDEVADM = "udevadm"
    MOUNT = "mount"
    UMOUNT = "umount"
    SWAPOFF = "swapoff"
    CRYPTSETUP = "cryptsetup"
    RSYNC = "rsync"
    GRUB_INSTALL = "grub-install"
    RDIFF_BACKUP = "rdiff-backup"
    CHOWN = "chown"
    E2FSCK = "e2fsck"
    RESIZE2FS = "resize2fs"

    # Filesystem tools
    MKFS_EXT4 = "mkfs.ext4"
    MKFS_EXT3 = "mkfs.ext3"
    MKFS_EXT2 = "mkfs.ext2"
    MKFS_VFAT = "mkfs.vfat"
    MKFS_EXFAT = "mkfs.exfat"
    MKFS_NTFS = "mkfs.ntfs"

    # Label tools
    E2LABEL = "e2label"
    FATLABEL = "fatlabel"
    EXFATLABEL = "exfatlabel"
    NTFSLABEL = "ntfslabel"

    PROC_SWAPS = Path("/proc/swaps")
    # rsync output lines kept for error reports
    COPY_ERROR_LINES = 20

    def __init__(self, settle_seconds: float = 1.0) -> None:
        self.settle_seconds = settle_seconds

    @property
    def name(self) -> str:
        return "linux"

    @property
    def requires_admin(self) -> bool:
        return True

    def is_admin(self) -> bool:
        return os.geteuid() == 0

    def _check_tool(self, tool: str) -> bool:
        """Check if a tool is available."""
        return shutil.which(tool) is not None

    def run_command(
        self,
        command: list[str],
        timeout: int | None = None,
        check: bool = True,
        input_data: str | bytes | None = None,
        pass_fds: Sequence[int] = (),
    ) -> CommandResult:
        """Run a system command."""
        logger.debug("Running command", command=command)
        start_time = time.time()
        binary = isinstance(input_data, bytes)

        try:
            result = subprocess.run(
                command,
                input=input_data,
                capture_output=True,
                text=not binary,
                timeout=timeout,
                pass_fds=tuple(pass_fds),
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                returncode=-1,
                stdout="",
                stderr=f"Command timed out after {timeout}s",
                command=command,
                duration_seconds=time.time() - start_time,
            )
        except OSError as e:
            return CommandResult(
                returncode=-1,
                stdout="",
                stderr=str(e),
                command=command,
                duration_seconds=time.time() - start_time,
            )

        stdout = result.stdout.decode(errors="replace") if binary else result.stdout
        stderr = result.stderr.decode(errors="replace") if binary else result.stderr
        cmd_result = CommandResult(
            returncode=result.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            command=command,
            duration_seconds=time.time() - start_time,
        )

        if check and result.returncode != 0:
            logger.warning(
                "Command failed",
                command=command,
                returncode=result.returncode,
                stderr=cmd_result.stderr[:500],
            )

        return cmd_result

    def run_tool(self, command: list[str], **kwargs: Any) -> CommandResult:
        """Run a command and raise ToolExecutionFailed on a non-zero exit."""
        return self.run_command(command, **kwargs).raise_for_status()

    # ==================== Inventory ====================

    def _lsblk(self, *paths: str) -> list[dict[str, Any]]:
        result = self.run_command(
            [self.LSBLK, "-J", "-b", "-o", LSBLK_COLUMNS, *paths],
            check=not paths,
        )
        if not result.success:
            return []
        return parse_lsblk_json(result.stdout)

    def _get_mounts(self) -> dict[str, MountEntry]:
        """Get current mounts."""
        result = self.run_command(
            [self.FINDMNT, "-J", "-o", "SOURCE,TARGET,OPTIONS"], check=False
        )
        if result.success:
            return parse_findmnt_json(result.stdout)
        return parse_proc_mounts()

    def list_devices(self) -> list[DeviceSnapshot]:
        mounts = self._get_mounts()
        devices = []
        for block in self._lsblk():
            if block.get("type") != "disk":
                continue
            try:
                devices.append(build_device_from_lsblk(block, mounts))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("Failed to parse device", device=block.get("name"), error=str(e))
        return devices

    def probe_device(self, device: str) -> DeviceSnapshot | None:
        blocks = self._lsblk(f"/dev/{device}")
        if not blocks or blocks[0].get("type") != "disk":
            return None
        return build_device_from_lsblk(blocks[0], self._get_mounts())

    def boot_device(self) -> str | None:
        for target in (*LIVE_MEDIUM_MOUNTS, "/"):
            result = self.run_command(
                [self.FINDMNT, "-n", "-o", "SOURCE", target], check=False
            )
            source = result.stdout.strip()
            if not result.success or not source.startswith("/dev/"):
                continue
            parent = self.run_command(
                [self.LSBLK, "-n", "-o", "PKNAME", source], check=False
            )
            name = parent.stdout.strip().splitlines()[0] if parent.stdout.strip() else ""
            return name or source.removeprefix("/dev/")
        return None

    def open_event_stream(self, command: Sequence[str]) -> subprocess.Popen[str]:
        logger.info("Starting device event stream", command=list(command))
        return subprocess.Popen(
            list(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            bufsize=1,
        )

    # ==================== Mounts ====================

    def active_swaps(self) -> list[str]:
        try:
            return parse_proc_swaps(self.PROC_SWAPS.read_text())
        except OSError:
            return []

    def swap_off(self, device_path: str) -> None:
        self.run_tool([self.SWAPOFF, device_path])

    def mount(self, device_path: str, mount_point: Path, read_only: bool = False) -> None:
        mount_point.mkdir(parents=True, exist_ok=True)
        cmd = [self.MOUNT]
        if read_only:
            cmd.extend(["-o", "ro"])
        cmd.extend([device_path, str(mount_point)])
        self.run_tool(cmd)

    def unmount(self, target: str | Path) -> None:
        self.run_tool([self.UMOUNT, str(target)])

    # ==================== Partitioning ====================

    def _settle(self, device: DeviceSnapshot) -> None:
        self.run_command([self.PARTPROBE, device.device_path], check=False)
        self.run_command([self.UDEVADM, "settle"], check=False)
        if self.settle_seconds:
            time.sleep(self.settle_seconds)

    def write_partition_table(
        self, device: DeviceSnapshot, plan: PartitionPlan, exchange_fs: FileSystem
    ) -> None:
        script = build_sfdisk_script(plan, exchange_fs)
        logger.info("Writing partition table", device=device.device_path, script=script)
        self.run_tool(
            [self.SFDISK, "--wipe", "always", "--wipe-partitions", "always", device.device_path],
            input_data=script,
        )
        self._settle(device)

    def _partition_table(self, device: DeviceSnapshot) -> tuple[int, dict[str, dict[str, int]]]:
        result = self.run_tool([self.SFDISK, "-J", device.device_path])
        return parse_sfdisk_json(result.stdout)

    def resize_partitions(
        self, device: DeviceSnapshot, plan: PartitionPlan, exchange_fs: FileSystem
    ) -> None:
        """Move the boundary between the adjacent exchange and data partitions.

        The data partition keeps its end and its content; its start follows
        the new exchange size. The exchange content is not preserved.
        """
        exchange = device.exchange_partition
        data = device.data_partition
        if exchange is None or data is None or data.number != exchange.number + 1:
            raise PreconditionFailed(
                f"{device.device_path} has no adjacent exchange and data partitions"
            )

        sector_size, table = self._partition_table(device)
        exchange_entry = table.get(exchange.device_path)
        data_entry = table.get(data.device_path)
        if exchange_entry is None or data_entry is None:
            raise PreconditionFailed(f"Cannot read the partition table of {device.device_path}")
        data_end = data_entry["start"] + data_entry["size"]
        new_data_start = exchange_entry["start"] + plan.exchange_mb * MEGA // sector_size
        new_data_size = data_end - new_data_start
        if new_data_start == data_entry["start"]:
            return

        if new_data_start > data_entry["start"]:
            # data shrinks: shrink the file system, move the partition, grow exchange
            self.run_tool([self.E2FSCK, "-f", "-y", data.device_path])
            self.run_tool([self.RESIZE2FS, data.device_path, f"{plan.data_mb}M"])
            self._move_data_partition(device, data.number, new_data_start, new_data_size)
            self.run_tool(
                [self.SFDISK, "-N", str(exchange.number), device.device_path],
                input_data=f"size={plan.exchange_mb}MiB\n",
            )
        else:
            # data grows: shrink or drop exchange, move the partition, grow the file system
            if plan.exchange_mb == 0:
                self.run_tool([self.SFDISK, "--delete", device.device_path, str(exchange.number)])
            else:
                self.run_tool(
                    [self.SFDISK, "-N", str(exchange.number), device.device_path],
                    input_data=f"size={plan.exchange_mb}MiB\n",
                )
            self._move_data_partition(device, data.number, new_data_start, new_data_size)
            self._settle(device)
            self.run_tool([self.E2FSCK, "-f", "-y", data.device_path])
            self.run_tool([self.RESIZE2FS, data.device_path])

        self._settle(device)

    def _move_data_partition(
        self, device: DeviceSnapshot, number: int, start: int, size: int
    ) -> None:
        self.run_tool(
            [self.SFDISK, "--move-data", "-N", str(number), device.device_path],
            input_data=f"start={start}, size={size}\n",
        )

    # ==================== File systems ====================

    def format_partition(
        self, device_path: str, filesystem: FileSystem, label: str | None = None
    ) -> None:
        mkfs_map = {
            FileSystem.EXT4: (self.MKFS_EXT4, ["-F"], "-L"),
            FileSystem.EXT3: (self.MKFS_EXT3, ["-F"], "-L"),
            FileSystem.EXT2: (self.MKFS_EXT2, ["-F"], "-L"),
            FileSystem.VFAT: (self.MKFS_VFAT, ["-F", "32"], "-n"),
            FileSystem.EXFAT: (self.MKFS_EXFAT, [], "-n"),
            FileSystem.NTFS: (self.MKFS_NTFS, ["-f", "-F"], "-L"),
        }
        if filesystem not in mkfs_map:
            raise ValueError(f"Unsupported filesystem: {filesystem.value}")

        mkfs_tool, default_args, label_flag = mkfs_map[filesystem]
        cmd = [mkfs_tool, *default_args]
        if label:
            cmd.extend([label_flag, label])
        cmd.append(device_path)
        self.run_tool(cmd)

    def set_label(self, device_path: str, filesystem: FileSystem, label: str) -> None:
        label_map = {
            FileSystem.EXT4: self.E2LABEL,
            FileSystem.EXT3: self.E2LABEL,
            FileSystem.EXT2: self.E2LABEL,
            FileSystem.VFAT: self.FATLABEL,
            FileSystem.EXFAT: self.EXFATLABEL,
            FileSystem.NTFS: self.NTFSLABEL,
        }
        if filesystem not in label_map:
            raise ValueError(f"Cannot label filesystem: {filesystem.value}")
        self.run_tool([label_map[filesystem], device_path, label])

    def open_encrypted(self, device_path: str, unlock: UnlockMethod, name: str) -> str:
        if isinstance(unlock, NoPassword):
            return device_path
        if isinstance(unlock, PersonalPassword):
            primary, additional = unlock.password, None
        elif isinstance(unlock, MasterAndInitialPassword):
            primary, additional = unlock.master, unlock.initial
        else:
            raise ValueError(f"Unsupported unlock method: {unlock!r}")

        key = bytes(primary.reveal(), "utf-8")
        self.run_tool(
            [self.CRYPTSETUP, "luksFormat", "--batch-mode", "--key-file=-", device_path],
            input_data=key,
        )
        if additional is not None:
            read_fd, write_fd = os.pipe()
            try:
                os.write(write_fd, bytes(additional.reveal(), "utf-8"))
                os.close(write_fd)
                write_fd = -1
                self.run_tool(
                    [
                        self.CRYPTSETUP,
                        "luksAddKey",
                        "--key-file=-",
                        device_path,
                        f"/dev/fd/{read_fd}",
                    ],
                    input_data=key,
                    pass_fds=(read_fd,),
                )
            finally:
                os.close(read_fd)
                if write_fd >= 0:
                    os.close(write_fd)
        self.run_tool(
            [self.CRYPTSETUP, "open", "--key-file=-", device_path, name],
            input_data=key,
        )
        return f"/dev/mapper/{name}"

    def close_encrypted(self, name: str) -> None:
        self.run_tool([self.CRYPTSETUP, "close", name])

    # ==================== Copy, boot loader, backup ====================

    def copy_tree(
        self,
        source: Path,
        destination: Path,
        progress: CopyCallback | None = None,
        excludes: Sequence[str] = (),
    ) -> None:
        """Copy with rsync, reporting overall byte progress."""
        cmd = [self.RSYNC, "-a", "--no-inc-recursive", "--info=progress2"]
        cmd.extend(f"--exclude={pattern}" for pattern in excludes)
        cmd.extend([f"{source}/", f"{destination}/"])
        logger.info("Copying", source=str(source), destination=str(destination))

        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        # error output shares the pipe with the progress lines
        messages: deque[str] = deque(maxlen=self.COPY_ERROR_LINES)
        best = 0
        try:
            for line in proc.stdout or ():
                parsed = parse_rsync_progress(line)
                if parsed is None:
                    if line.strip():
                        messages.append(line.strip())
                    continue
                if progress is None:
                    continue
                # rsync totals grow while scanning; never report going backwards
                best = max(best, parsed.bytes_done)
                total = best * 100 // parsed.percent if parsed.percent else 0
                try:
                    progress(
                        CopyProgress(
                            bytes_done=best,
                            bytes_total=max(total, best),
                            rate_bytes_per_second=parse_rate(parsed.rate),
                        )
                    )
                except Exception as e:
                    logger.warning("Copy progress callback error", error=str(e))
            returncode = proc.wait()
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            if proc.stdout is not None:
                proc.stdout.close()

        if returncode != 0:
            raise ToolExecutionFailed(cmd, returncode, "\n".join(messages))

    def install_bootloader(
        self, device: DeviceSnapshot, boot_mount: Path, system_mount: Path
    ) -> None:
        self.run_tool(
            [
                self.GRUB_INSTALL,
                "--target=x86_64-efi",
                f"--efi-directory={boot_mount}",
                f"--boot-directory={system_mount / 'boot'}",
                "--removable",
                "--no-nvram",
            ]
        )
        self.run_tool(
            [
                self.GRUB_INSTALL,
                "--target=i386-pc",
                f"--boot-directory={system_mount / 'boot'}",
                device.device_path,
            ]
        )

    def run_backup(self, source: Path, destination: Path) -> None:
        destination.mkdir(parents=True, exist_ok=True)
        self.run_tool([self.RDIFF_BACKUP, str(source), str(destination)])

    def change_owner(self, path: Path, owner: str) -> None:
        self.run_tool([self.CHOWN, "-R", owner, str(path)])

    def disk_used_bytes(self, mount_point: Path) -> int:
        return psutil.disk_usage(str(mount_point)).used
