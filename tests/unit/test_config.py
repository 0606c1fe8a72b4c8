"""
Tests for mediaforge.core.config module.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from mediaforge.core.config import (
    InstallConfig,
    LayoutConfig,
    LoggingConfig,
    MediaForgeConfig,
    ResetConfig,
    SafetyConfig,
    UpgradeConfig,
)


class TestLoggingConfig:
    """Tests for LoggingConfig."""

    def test_default_values(self) -> None:
        config = LoggingConfig()
        assert config.level == "INFO"
        assert config.file_enabled
        assert not config.json_format

    def test_path_expansion(self) -> None:
        config = LoggingConfig(log_directory="~/logs")
        assert "~" not in str(config.log_directory)

    def test_invalid_level(self) -> None:
        with pytest.raises(ValidationError):
            LoggingConfig(level="VERBOSE")


class TestLayoutConfig:
    """Tests for LayoutConfig."""

    def test_defaults(self) -> None:
        config = LayoutConfig()
        assert config.boot_partition_mb == 100
        assert config.system_margin_percent == 5
        assert config.minimum_partition_mb == 200

    def test_frozen(self) -> None:
        config = LayoutConfig()
        with pytest.raises(ValidationError):
            config.boot_partition_mb = 50  # type: ignore[misc]


class TestInstallConfig:
    """Tests for InstallConfig."""

    def test_defaults(self) -> None:
        config = InstallConfig()
        assert config.exchange_filesystem == "exfat"
        assert config.data_partition_mode == "read_write"
        assert config.unlock_method == "none"

    def test_label_length(self) -> None:
        with pytest.raises(ValidationError):
            InstallConfig(exchange_label="A" * 12)

    def test_label_backslash(self) -> None:
        with pytest.raises(ValidationError):
            InstallConfig(exchange_label="bad\\label")

    def test_unknown_filesystem(self) -> None:
        with pytest.raises(ValidationError):
            InstallConfig(exchange_filesystem="ext4")


class TestUpgradeConfig:
    """Tests for UpgradeConfig."""

    def test_empty_backup_destination(self) -> None:
        assert UpgradeConfig(backup_destination="").backup_destination is None

    def test_backup_destination_expansion(self) -> None:
        config = UpgradeConfig(backup_destination="~/backups")
        assert config.backup_destination == Path.home() / "backups"

    def test_strategy_choices(self) -> None:
        with pytest.raises(ValidationError):
            UpgradeConfig(repartition_strategy="grow")


class TestResetConfig:
    """Tests for ResetConfig."""

    def test_defaults(self) -> None:
        config = ResetConfig()
        assert config.reset_home and config.reset_system
        assert "lost+found" in config.preserved_entries
        assert config.overlay_subdir == "rw"


class TestSafetyConfig:
    """Tests for SafetyConfig."""

    def test_battery_bounds(self) -> None:
        with pytest.raises(ValidationError):
            SafetyConfig(minimum_battery_percent=101)


class TestMediaForgeConfig:
    """Tests for MediaForgeConfig."""

    def test_default_config(self) -> None:
        config = MediaForgeConfig()
        assert config.layout == LayoutConfig()
        assert config.mount_root == Path("/run/mediaforge")

    def test_save_and_load(self, temp_dir: Path) -> None:
        config = MediaForgeConfig(
            install=InstallConfig(exchange_mb=1000, auto_number_pattern="00"),
            report_directory=temp_dir / "reports",
        )
        config_path = temp_dir / "config.json"

        config.save(config_path)
        loaded = MediaForgeConfig.load(config_path)

        assert loaded.install.exchange_mb == 1000
        assert loaded.install.auto_number_pattern == "00"
        assert loaded.report_directory == config.report_directory

    def test_load_nonexistent(self, temp_dir: Path) -> None:
        config = MediaForgeConfig.load(temp_dir / "missing.json")
        assert config == MediaForgeConfig()

    def test_ensure_directories(self, temp_dir: Path) -> None:
        config = MediaForgeConfig(
            logging=LoggingConfig(log_directory=temp_dir / "logs"),
            report_directory=temp_dir / "reports",
        )
        config.ensure_directories()

        assert (temp_dir / "logs").is_dir()
        assert (temp_dir / "reports").is_dir()

    def test_report_file(self, sample_config: MediaForgeConfig) -> None:
        path = sample_config.get_report_file("install")
        assert path.parent == sample_config.report_directory
        assert path.name.startswith("install_")
        assert path.suffix == ".json"
