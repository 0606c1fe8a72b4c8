"""
MediaForge Session.

The engine façade a front-end talks to: it owns the configuration, the
platform backend, the device monitor, the credential policy and the job
runner, and turns operator requests into batches.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from mediaforge.core.config import MediaForgeConfig, load_config
from mediaforge.core.credentials import CredentialInput, CredentialPolicy, NoPassword, UnlockMethod
from mediaforge.core.events import NullAdapter, PresentationAdapter
from mediaforge.core.exceptions import ValidationError
from mediaforge.core.job import BatchStatus, JobProgress, JobResult, JobRunner
from mediaforge.core.layout import PartitionPlan, PlanRejection, compute_install_plan
from mediaforge.core.logging import get_logger, setup_logging
from mediaforge.core.models import DeviceKind, DeviceSnapshot, SystemSource
from mediaforge.core.monitor import DeviceMonitor, SelectionMode
from mediaforge.core.results import BatchReport
from mediaforge.core.safety import SafetyManager

if TYPE_CHECKING:
    from mediaforge.operations.base import BatchOperation
    from mediaforge.platform.base import PlatformBackend

logger = get_logger(__name__)


class Session:
    """
    Manages configuration, device tracking and batch execution.

    This is the main entry point for all MediaForge operations.
    """

    def __init__(
        self,
        config: MediaForgeConfig | None = None,
        backend: PlatformBackend | None = None,
        adapter: PresentationAdapter | None = None,
        session_id: str | None = None,
        configure_logging: bool = True,
    ) -> None:
        self.id = session_id or str(uuid.uuid4())
        self.config = config or load_config()
        self.started_at = datetime.now()

        if configure_logging:
            setup_logging(self.config.logging)

        self.adapter: PresentationAdapter = adapter or NullAdapter()
        self.safety = SafetyManager(self.config.safety)
        self.credentials = CredentialPolicy()
        self.job_runner = JobRunner()
        self.job_runner.add_status_callback(self._on_status)
        self.reports: dict[str, Path] = {}

        self._platform_backend = backend
        self._monitor: DeviceMonitor | None = None

        logger.info("Session started", session_id=self.id)

    @property
    def platform(self) -> PlatformBackend:
        """Get the platform-specific backend."""
        if self._platform_backend is None:
            from mediaforge.platform import get_platform_backend

            self._platform_backend = get_platform_backend()
        return self._platform_backend

    # ==================== Devices ====================

    @property
    def monitor(self) -> DeviceMonitor:
        if self._monitor is None:
            self._monitor = DeviceMonitor(
                self.platform, self.config.monitor, adapter=self.adapter
            )
        return self._monitor

    def start_monitor(self, mode: SelectionMode = SelectionMode.INSTALL) -> None:
        self.monitor.start()
        self.monitor.set_active_selection(mode)

    def stop_monitor(self) -> None:
        if self._monitor is not None:
            self._monitor.stop()

    def list_devices(self) -> list[DeviceSnapshot]:
        return self.platform.list_devices()

    def get_device(self, device: str) -> DeviceSnapshot | None:
        return self.platform.probe_device(device.removeprefix("/dev/"))

    def detect_source(self, system_path: Path | None = None) -> SystemSource:
        """Describe the running live system as installation source."""
        path = system_path or self.config.source_path
        boot = self.platform.boot_device()
        snapshot = self.platform.probe_device(boot) if boot else None
        size = self.platform.disk_used_bytes(path) if path.is_dir() else 0
        source = SystemSource(
            system_size_bytes=size,
            system_path=path,
            device=boot,
            kind=snapshot.kind if snapshot else DeviceKind.UNKNOWN,
            exchange_partition=snapshot.exchange_partition if snapshot else None,
            data_partition=snapshot.data_partition if snapshot else None,
        )
        logger.info("Source system detected", device=boot, path=str(path), size_bytes=size)
        return source

    def plan_install(
        self, device: DeviceSnapshot, source: SystemSource | None = None
    ) -> PartitionPlan | PlanRejection:
        source = source or self.detect_source()
        options = self.config.install
        return compute_install_plan(
            source.system_size_bytes,
            device,
            options.exchange_mb,
            layout=self.config.layout,
            source_device=source.device,
            copy_exchange=options.copy_exchange,
            copy_data=options.copy_data,
            source_exchange_used=source.exchange_used_bytes,
            source_data_used=source.data_used_bytes,
        )

    # ==================== Credentials ====================

    def select_unlock_method(
        self, method: str, secrets: CredentialInput | None = None
    ) -> UnlockMethod:
        return self.credentials.select(method, secrets)

    def _unlock_for_batch(self) -> UnlockMethod:
        if self.config.install.unlock_method == "none":
            return NoPassword()
        unlock = self.credentials.confirmed
        if unlock is None or unlock.kind.value != self.config.install.unlock_method:
            raise ValidationError("The data partition credentials have not been confirmed")
        if unlock.is_cleared:
            raise ValidationError("The data partition credentials have been cleared")
        return unlock

    # ==================== Batches ====================

    def install(
        self,
        devices: Sequence[DeviceSnapshot],
        source: SystemSource | None = None,
        wait: bool = True,
    ) -> JobResult[BatchReport] | str:
        from mediaforge.operations.install import InstallOperation

        operation = InstallOperation(
            devices,
            self.platform,
            self.config,
            adapter=self.adapter,
            source=source or self.detect_source(),
            unlock=self._unlock_for_batch(),
            safety=self.safety,
        )
        return self.run_batch(operation, wait)

    def upgrade(
        self,
        devices: Sequence[DeviceSnapshot],
        source: SystemSource | None = None,
        wait: bool = True,
    ) -> JobResult[BatchReport] | str:
        from mediaforge.operations.upgrade import UpgradeOperation

        operation = UpgradeOperation(
            devices,
            self.platform,
            self.config,
            adapter=self.adapter,
            source=source or self.detect_source(),
            safety=self.safety,
        )
        return self.run_batch(operation, wait)

    def reset(
        self, devices: Sequence[DeviceSnapshot], wait: bool = True
    ) -> JobResult[BatchReport] | str:
        from mediaforge.operations.reset import ResetOperation

        operation = ResetOperation(
            devices,
            self.platform,
            self.config,
            adapter=self.adapter,
            safety=self.safety,
        )
        return self.run_batch(operation, wait)

    def run_batch(
        self, operation: BatchOperation, wait: bool = True
    ) -> JobResult[BatchReport] | str:
        """Run ``operation`` after its preflight checks.

        Raises ValidationError if a preflight check fails. Returns the result
        when ``wait`` is set, otherwise the ID of the started batch.
        """
        errors = operation.validate()
        if errors:
            operation.on_terminal()
            self.credentials.clear()
            raise ValidationError("; ".join(errors))

        logger.info("Executing batch", job_id=operation.id, plan=operation.get_plan())
        if wait:
            return self.job_runner.run_sync(operation)

        job_id = self.job_runner.submit(operation)
        self.job_runner.start(job_id)
        return job_id

    def cancel(self) -> bool:
        """Cancel the active batch. Returns False if none is running."""
        job = self.job_runner.active_job
        if job is None:
            return False
        return self.job_runner.cancel(job.id)

    def get_status(self, job_id: str) -> BatchStatus | None:
        return self.job_runner.get_status(job_id)

    def get_progress(self, job_id: str) -> JobProgress | None:
        return self.job_runner.get_progress(job_id)

    def wait(self, job_id: str, timeout: float | None = None) -> JobResult[Any] | None:
        return self.job_runner.wait(job_id, timeout)

    def _on_status(self, job_id: str, status: BatchStatus) -> None:
        if not status.is_terminal:
            return
        self.credentials.clear()
        job = self.job_runner.get_job(job_id)
        if job is None or job.result is None or not isinstance(job.result.data, BatchReport):
            return
        path = self.config.get_report_file(job.name)
        job.result.data.save(path)
        self.reports[job_id] = path
        logger.info("Batch report saved", job_id=job_id, path=str(path))

    def close(self) -> None:
        self.stop_monitor()
        self.credentials.clear()
        logger.info(
            "Session closed",
            session_id=self.id,
            duration_seconds=(datetime.now() - self.started_at).total_seconds(),
        )

    def __enter__(self) -> Session:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
