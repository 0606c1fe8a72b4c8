"""
MediaForge Safety Manager.

Preflight checks run before a batch starts and the confirmation policy for
destructive operations on devices that are not removable media.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psutil

from mediaforge.core.events import PresentationAdapter
from mediaforge.core.logging import get_logger

if TYPE_CHECKING:
    from mediaforge.core.config import SafetyConfig
    from mediaforge.core.models import DeviceSnapshot

logger = get_logger(__name__)


@dataclass
class PreflightCheck:
    """Result of a single preflight check."""

    name: str
    passed: bool
    message: str
    severity: str = "info"  # info, warning, error, critical
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class PreflightReport:
    """Complete preflight check report."""

    checks: list[PreflightCheck] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def all_passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def has_errors(self) -> bool:
        return any(c.severity in ("error", "critical") and not c.passed for c in self.checks)

    @property
    def has_warnings(self) -> bool:
        return any(c.severity == "warning" and not c.passed for c in self.checks)

    def errors(self) -> list[str]:
        return [
            f"{c.name}: {c.message}"
            for c in self.checks
            if not c.passed and c.severity in ("error", "critical")
        ]

    def get_summary(self) -> str:
        """Get human-readable summary."""
        lines = [f"Preflight Check Report ({self.timestamp.isoformat()})"]
        lines.append("=" * 60)

        passed = sum(1 for c in self.checks if c.passed)
        lines.append(f"Results: {passed}/{len(self.checks)} checks passed")
        lines.append("")

        for check in self.checks:
            status = "✓" if check.passed else "✗"
            lines.append(f"[{status}] {check.name}: {check.message}")
            for key, value in check.details.items():
                lines.append(f"    {key}: {value}")

        return "\n".join(lines)


CheckFunction = Callable[[dict[str, Any]], PreflightCheck | bool]


class PreflightChecker:
    """Performs preflight checks before a batch."""

    def __init__(self) -> None:
        self._checks: list[tuple[str, CheckFunction]] = []

    def add_check(self, name: str, check_func: CheckFunction) -> None:
        self._checks.append((name, check_func))

    def run_checks(self, context: dict[str, Any]) -> PreflightReport:
        """Run all preflight checks and return report."""
        report = PreflightReport()

        for name, check_func in self._checks:
            try:
                result = check_func(context)
                if isinstance(result, PreflightCheck):
                    report.checks.append(result)
                else:
                    report.checks.append(
                        PreflightCheck(
                            name=name,
                            passed=bool(result),
                            message="Passed" if result else "Failed",
                            severity="info" if result else "error",
                        )
                    )
            except Exception as e:
                report.checks.append(
                    PreflightCheck(
                        name=name,
                        passed=False,
                        message=f"Check failed with error: {e}",
                        severity="error",
                    )
                )

        for check in report.checks:
            if not check.passed:
                logger.info("Preflight check failed", check=check.name, message=check.message)
        return report


def check_power_status(context: dict[str, Any]) -> PreflightCheck:
    """Check that the system is on AC power or has enough battery."""
    minimum = context.get("minimum_battery_percent", 50)
    try:
        battery = psutil.sensors_battery()
    except (OSError, NotImplementedError, AttributeError) as e:
        return PreflightCheck(
            name="Power Status",
            passed=True,
            message=f"Could not check power status: {e}",
        )

    if battery is None:
        return PreflightCheck(
            name="Power Status",
            passed=True,
            message="No battery detected",
        )
    if battery.power_plugged:
        return PreflightCheck(
            name="Power Status",
            passed=True,
            message="System is on AC power",
            details={"battery_percent": battery.percent},
        )
    return PreflightCheck(
        name="Power Status",
        passed=battery.percent > minimum,
        message=f"System on battery ({battery.percent}%)",
        severity="warning" if battery.percent > minimum else "error",
        details={"battery_percent": battery.percent},
    )


def check_devices_selected(context: dict[str, Any]) -> PreflightCheck:
    devices = context.get("devices", ())
    if not devices:
        return PreflightCheck(
            name="Selection",
            passed=False,
            message="No device selected",
            severity="error",
        )
    return PreflightCheck(
        name="Selection",
        passed=True,
        message=f"{len(devices)} device(s) selected",
    )


def check_no_active_persistence(context: dict[str, Any]) -> PreflightCheck:
    """Refuse devices whose data partition is in use by the running system."""
    blocked = [d.device for d in context.get("devices", ()) if d.has_active_persistence]
    if blocked:
        return PreflightCheck(
            name="Active Persistence",
            passed=False,
            message=f"Data partition in use by the running system on: {', '.join(blocked)}",
            severity="error",
            details={"devices": blocked},
        )
    return PreflightCheck(
        name="Active Persistence",
        passed=True,
        message="No selected data partition is in use",
    )


def check_source_available(context: dict[str, Any]) -> PreflightCheck:
    source = context.get("source")
    if source is None:
        return PreflightCheck(
            name="Source System",
            passed=False,
            message="No source system",
            severity="critical",
        )
    valid, message = source.validate()
    return PreflightCheck(
        name="Source System",
        passed=valid,
        message=message,
        severity="info" if valid else "critical",
    )


def check_backup_destination(context: dict[str, Any]) -> PreflightCheck:
    """Check the destination of the automatic backup of an upgrade."""
    if not context.get("automatic_backup"):
        return PreflightCheck(
            name="Backup Destination",
            passed=True,
            message="Automatic backup disabled",
        )

    destination: Path | None = context.get("backup_destination")
    failure: str | None = None
    if destination is None or str(destination).strip() == "":
        failure = "No backup destination given"
    elif not destination.exists():
        failure = f"Backup destination {destination} does not exist"
    elif not destination.is_dir():
        failure = f"Backup destination {destination} is not a directory"
    elif not os.access(destination, os.R_OK | os.W_OK | os.X_OK):
        failure = f"Backup destination {destination} is not accessible"

    if failure:
        return PreflightCheck(
            name="Backup Destination",
            passed=False,
            message=failure,
            severity="error",
        )
    return PreflightCheck(
        name="Backup Destination",
        passed=True,
        message=f"Backups go to {destination}",
    )


def create_preflight_checker(operation: str, config: SafetyConfig) -> PreflightChecker:
    """Create the checker for an install, upgrade or reset batch."""
    checker = PreflightChecker()
    checker.add_check("Selection", check_devices_selected)
    checker.add_check("Active Persistence", check_no_active_persistence)
    if operation in ("install", "upgrade"):
        checker.add_check("Source System", check_source_available)
    if operation == "upgrade":
        checker.add_check("Backup Destination", check_backup_destination)
    if config.power_check_enabled:
        checker.add_check("Power Status", check_power_status)
    return checker


class SafetyManager:
    """Confirmation policy for destructive operations."""

    def __init__(self, config: SafetyConfig) -> None:
        self.config = config

    def requires_confirmation(self, device: DeviceSnapshot) -> bool:
        """Devices that are not removable media need an explicit confirmation."""
        if not self.config.confirm_non_removable:
            return False
        return not (device.removable or device.kind.is_removable_media)

    def confirmation_message(self, device: DeviceSnapshot, operation: str) -> str:
        return (
            f"{device.display_name} ({device.device_path}) is not a removable device. "
            f"All data on it will be destroyed by the {operation}. Continue?"
        )

    def confirm(
        self, device: DeviceSnapshot, operation: str, adapter: PresentationAdapter
    ) -> bool:
        """Ask the adapter if needed. A failing adapter counts as declined."""
        if not self.requires_confirmation(device):
            return True
        try:
            confirmed = bool(
                adapter.confirm_destructive_operation(self.confirmation_message(device, operation))
            )
        except Exception as e:
            logger.warning("Confirmation callback failed", device=device.device, error=str(e))
            confirmed = False
        logger.info("Destructive operation confirmation", device=device.device, confirmed=confirmed)
        return confirmed

    def run_preflight(self, operation: str, context: dict[str, Any]) -> PreflightReport:
        context.setdefault("minimum_battery_percent", self.config.minimum_battery_percent)
        if not self.config.preflight_checks_enabled:
            return PreflightReport()
        return create_preflight_checker(operation, self.config).run_checks(context)
