"""
MediaForge configuration management.

Provides centralized configuration with validation using Pydantic. The
operation sections are frozen: a batch captures a fully-resolved copy at start
and never reads preferences again while it runs.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_ADDED_PATTERNS = [
    r".*: Added (/org/freedesktop/UDisks2/block_devices/\S+)",
    r"^added:\s*(\S+)",
]
DEFAULT_REMOVED_PATTERNS = [
    r".*: Removed (/org/freedesktop/UDisks2/block_devices/\S+)",
    r"^removed:\s*(\S+)",
]


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file_enabled: bool = True
    console_enabled: bool = True
    json_format: bool = False
    log_directory: Path = Field(default_factory=lambda: Path.home() / ".mediaforge" / "logs")

    @field_validator("log_directory", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class LayoutConfig(BaseModel):
    """Sizing constants of the partition layout calculator."""

    model_config = ConfigDict(frozen=True)

    boot_partition_mb: int = Field(default=100, ge=1)
    system_margin_percent: int = Field(default=5, ge=0, le=100)
    minimum_partition_mb: int = Field(default=200, ge=1)


class MonitorConfig(BaseModel):
    """Configuration of the device event monitor."""

    model_config = ConfigDict(frozen=True)

    command: tuple[str, ...] = ("udisksctl", "monitor")
    added_patterns: tuple[str, ...] = tuple(DEFAULT_ADDED_PATTERNS)
    removed_patterns: tuple[str, ...] = tuple(DEFAULT_REMOVED_PATTERNS)
    probe_workers: int = Field(default=4, ge=1, le=32)
    removable_only: bool = True
    exclude_boot_device: bool = True


class InstallConfig(BaseModel):
    """Options of an install batch."""

    model_config = ConfigDict(frozen=True)

    exchange_mb: int = Field(default=0, ge=0)
    exchange_label: str = Field(default="Exchange", max_length=11)
    exchange_filesystem: Literal["vfat", "exfat", "ntfs"] = "exfat"
    data_filesystem: Literal["ext2", "ext3", "ext4"] = "ext4"
    copy_exchange: bool = False
    copy_data: bool = False
    auto_number_pattern: str = ""
    auto_number_start: int = Field(default=1, ge=0)
    auto_number_increment: int = Field(default=1, ge=1)
    data_partition_mode: Literal["read_write", "read_only", "not_used"] = "read_write"
    unlock_method: Literal["none", "personal", "master_initial"] = "none"

    @field_validator("exchange_label")
    @classmethod
    def label_has_no_backslash(cls, v: str) -> str:
        if "\\" in v:
            raise ValueError("exchange label must not contain a backslash")
        return v


class UpgradeConfig(BaseModel):
    """Options of an upgrade batch."""

    model_config = ConfigDict(frozen=True)

    repartition_strategy: Literal["keep", "resize", "remove"] = "keep"
    resize_exchange_mb: int = Field(default=0, ge=0)
    automatic_backup: bool = False
    backup_destination: Path | None = None
    remove_backup: bool = False
    upgrade_system_partition: bool = True
    reset_data_partition: bool = False
    keep_printer_settings: bool = True
    keep_network_settings: bool = True
    keep_firewall_settings: bool = True
    reactivate_welcome: bool = True
    remove_hidden_files: bool = False
    overwrite_list: tuple[str, ...] = ()
    home_user: str = "user"

    @field_validator("backup_destination", mode="before")
    @classmethod
    def expand_backup_path(cls, v: str | Path | None) -> Path | None:
        if v is None or v == "":
            return None
        return Path(v).expanduser()


class ResetConfig(BaseModel):
    """Options of a reset batch."""

    model_config = ConfigDict(frozen=True)

    format_exchange: bool = False
    exchange_filesystem: Literal["vfat", "exfat", "ntfs"] = "exfat"
    keep_exchange_label: bool = True
    new_exchange_label: str = Field(default="Exchange", max_length=11)
    format_data: bool = False
    data_filesystem: Literal["ext2", "ext3", "ext4"] = "ext4"
    reset_home: bool = True
    reset_system: bool = True
    skeleton_directory: Path = Path("/etc/skel")
    home_user: str = "user"
    home_owner: str = "user:user"
    preserved_entries: tuple[str, ...] = ("lost+found", "persistence.conf")
    # A data partition without this directory at its root uses the overlay layout
    layout_probe_dir: str = "home"
    overlay_subdir: str = "rw"


class SafetyConfig(BaseModel):
    """Configuration for safety features."""

    confirm_non_removable: bool = True
    preflight_checks_enabled: bool = True
    power_check_enabled: bool = True
    minimum_battery_percent: int = Field(default=50, ge=0, le=100)


class MediaForgeConfig(BaseModel):
    """Main MediaForge configuration."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    layout: LayoutConfig = Field(default_factory=LayoutConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    install: InstallConfig = Field(default_factory=InstallConfig)
    upgrade: UpgradeConfig = Field(default_factory=UpgradeConfig)
    reset: ResetConfig = Field(default_factory=ResetConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    report_directory: Path = Field(
        default_factory=lambda: Path.home() / ".mediaforge" / "reports"
    )
    mount_root: Path = Path("/run/mediaforge")
    source_path: Path = Path("/run/live/medium")

    @field_validator("report_directory", mode="before")
    @classmethod
    def expand_report_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()

    @classmethod
    def load(cls, config_path: Path | None = None) -> MediaForgeConfig:
        """Load configuration from file or create default."""
        if config_path is None:
            config_path = Path.home() / ".mediaforge" / "config.json"

        if config_path.exists():
            with open(config_path) as f:
                data = json.load(f)
            return cls.model_validate(data)

        return cls()

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = Path.home() / ".mediaforge" / "config.json"

        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

    def ensure_directories(self) -> None:
        """Create all required directories."""
        self.logging.log_directory.mkdir(parents=True, exist_ok=True)
        self.report_directory.mkdir(parents=True, exist_ok=True)

    def get_report_file(self, operation: str) -> Path:
        """Get path for a new batch report file."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return self.report_directory / f"{operation}_{timestamp}.json"


def get_default_config() -> MediaForgeConfig:
    """Get the default configuration."""
    return MediaForgeConfig()


def load_config(config_path: Path | None = None) -> MediaForgeConfig:
    """Load or create configuration."""
    config = MediaForgeConfig.load(config_path)
    config.ensure_directories()
    return config
