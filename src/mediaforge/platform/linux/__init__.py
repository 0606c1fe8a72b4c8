"""
MediaForge Linux Platform Backend.

Implements device workflows using standard Linux tools:
- lsblk, findmnt for inventory
- sfdisk for partitioning
- mkfs.*, cryptsetup for file systems
- rsync, grub-install, rdiff-backup for payloads
"""

from mediaforge.platform.linux.backend import LinuxBackend, build_sfdisk_script
from mediaforge.platform.linux.parsers import (
    parse_findmnt_json,
    parse_lsblk_json,
    parse_rsync_progress,
)

__all__ = [
    "LinuxBackend",
    "build_sfdisk_script",
    "parse_findmnt_json",
    "parse_lsblk_json",
    "parse_rsync_progress",
]
