"""
MediaForge batch runner.

Runs one batch job at a time on a worker thread with progress tracking,
cooperative cancellation and status callbacks.
"""

from __future__ import annotations

import threading
import traceback
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any, Generic, TypeVar

from mediaforge.core.exceptions import BatchAlreadyRunning, BatchCancelled
from mediaforge.core.logging import get_logger

T = TypeVar("T")
logger = get_logger(__name__)


class BatchStatus(Enum):
    """Lifecycle of a batch."""

    PENDING = auto()
    RUNNING = auto()
    COMPLETED = auto()
    CANCELLED = auto()
    FAILED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.CANCELLED, BatchStatus.FAILED)


@dataclass
class JobProgress:
    """Progress information for a running batch."""

    device_index: int = 0
    device_count: int = 0
    message: str = ""
    stage: str = ""
    bytes_processed: int = 0
    bytes_total: int = 0
    rate_bytes_per_sec: float = 0.0

    @property
    def percentage(self) -> float:
        if self.device_count == 0:
            return 0.0
        done = self.device_index
        if self.bytes_total:
            done += min(1.0, self.bytes_processed / self.bytes_total)
        return min(100.0, done / self.device_count * 100)

    @property
    def eta_seconds(self) -> float | None:
        if self.rate_bytes_per_sec <= 0 or self.bytes_total == 0:
            return None
        remaining = max(0, self.bytes_total - self.bytes_processed)
        return remaining / self.rate_bytes_per_sec


@dataclass
class JobResult(Generic[T]):
    """Result of a finished batch."""

    success: bool
    data: T | None = None
    error: str | None = None
    error_traceback: str | None = None
    warnings: list[str] = field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None


class JobContext:
    """Context passed to batch execution for progress and cancellation."""

    def __init__(self) -> None:
        self._cancelled = threading.Event()
        self._progress = JobProgress()
        self._progress_callbacks: list[Callable[[JobProgress], None]] = []
        self._lock = threading.Lock()
        self._warnings: list[str] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Request cancellation. Honoured at the next phase boundary."""
        self._cancelled.set()

    def check_cancelled(self) -> None:
        """Raise BatchCancelled if cancellation was requested."""
        if self._cancelled.is_set():
            raise BatchCancelled("Batch was cancelled")

    def update_progress(
        self,
        device_index: int | None = None,
        device_count: int | None = None,
        message: str | None = None,
        stage: str | None = None,
        bytes_processed: int | None = None,
        bytes_total: int | None = None,
        rate_bytes_per_sec: float | None = None,
    ) -> None:
        """Update progress information."""
        with self._lock:
            if device_index is not None:
                self._progress.device_index = device_index
            if device_count is not None:
                self._progress.device_count = device_count
            if message is not None:
                self._progress.message = message
            if stage is not None:
                self._progress.stage = stage
            if bytes_processed is not None:
                self._progress.bytes_processed = bytes_processed
            if bytes_total is not None:
                self._progress.bytes_total = bytes_total
            if rate_bytes_per_sec is not None:
                self._progress.rate_bytes_per_sec = rate_bytes_per_sec
            progress_copy = self._copy_progress()

        # Notify callbacks outside lock
        for callback in self._progress_callbacks:
            try:
                callback(progress_copy)
            except Exception as e:
                logger.warning("Progress callback error", error=str(e))

    def add_progress_callback(self, callback: Callable[[JobProgress], None]) -> None:
        self._progress_callbacks.append(callback)

    def get_progress(self) -> JobProgress:
        with self._lock:
            return self._copy_progress()

    def add_warning(self, warning: str) -> None:
        self._warnings.append(warning)

    def get_warnings(self) -> list[str]:
        return self._warnings.copy()

    def _copy_progress(self) -> JobProgress:
        p = self._progress
        return JobProgress(
            device_index=p.device_index,
            device_count=p.device_count,
            message=p.message,
            stage=p.stage,
            bytes_processed=p.bytes_processed,
            bytes_total=p.bytes_total,
            rate_bytes_per_sec=p.rate_bytes_per_sec,
        )


class BatchJob(ABC, Generic[T]):
    """Base class for all batch jobs."""

    def __init__(self, name: str, description: str) -> None:
        self.id = str(uuid.uuid4())
        self.name = name
        self.description = description
        self.status = BatchStatus.PENDING
        self.context = JobContext()
        self.result: JobResult[T] | None = None
        self.created_at = datetime.now()
        self.started_at: datetime | None = None
        self.completed_at: datetime | None = None

    @abstractmethod
    def execute(self, context: JobContext) -> T:
        """Execute the batch. Subclasses must implement this."""

    @abstractmethod
    def get_plan(self) -> str:
        """Return a human-readable execution plan."""

    def validate(self) -> list[str]:
        """
        Validate parameters before execution.
        Returns a list of validation errors (empty if valid).
        """
        return []

    def on_terminal(self) -> None:
        """Hook invoked once the batch reached a terminal state."""


class JobRunner:
    """Executes batches with lifecycle management. At most one is active."""

    def __init__(self) -> None:
        self._jobs: dict[str, BatchJob[Any]] = {}
        self._running_threads: dict[str, threading.Thread] = {}
        self._active: str | None = None
        self._lock = threading.Lock()
        self._status_callbacks: list[Callable[[str, BatchStatus], None]] = []

    @property
    def active_job(self) -> BatchJob[Any] | None:
        with self._lock:
            return self._jobs.get(self._active) if self._active else None

    def submit(self, job: BatchJob[T]) -> str:
        """Register a batch as the active one. Returns its ID."""
        with self._lock:
            if self._active is not None:
                raise BatchAlreadyRunning(f"Batch {self._active} is still active")
            self._jobs[job.id] = job
            self._active = job.id

        logger.info("Batch submitted", job_id=job.id, job_name=job.name)
        return job.id

    def start(self, job_id: str) -> None:
        """Start executing a submitted batch on a worker thread."""
        job = self._get_job(job_id)

        if self._fail_validation(job):
            return

        thread = threading.Thread(
            target=self._execute_job,
            args=(job,),
            name=f"batch-{job_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._running_threads[job_id] = thread
        thread.start()

    def run_sync(self, job: BatchJob[T]) -> JobResult[T]:
        """Run a batch on the calling thread and return its result."""
        self.submit(job)
        if not self._fail_validation(job):
            self._execute_job(job)
        return job.result  # type: ignore[return-value]

    def _fail_validation(self, job: BatchJob[Any]) -> bool:
        errors = job.validate()
        if not errors:
            return False
        now = datetime.now()
        job.status = BatchStatus.FAILED
        job.result = JobResult(
            success=False,
            error="Validation failed: " + "; ".join(errors),
            start_time=now,
            end_time=now,
        )
        logger.warning("Batch validation failed", job_id=job.id, errors=errors)
        self._finish(job)
        return True

    def _execute_job(self, job: BatchJob[Any]) -> None:
        job.status = BatchStatus.RUNNING
        job.started_at = datetime.now()
        self._notify_status(job.id, BatchStatus.RUNNING)

        logger.info("Batch started", job_id=job.id, job_name=job.name)

        try:
            result_data = job.execute(job.context)
            job.status = (
                BatchStatus.CANCELLED if job.context.is_cancelled else BatchStatus.COMPLETED
            )
            job.result = JobResult(
                success=job.status is BatchStatus.COMPLETED,
                data=result_data,
                error="Batch was cancelled" if job.context.is_cancelled else None,
                warnings=job.context.get_warnings(),
                start_time=job.started_at,
                end_time=datetime.now(),
            )
            logger.info(
                "Batch finished",
                job_id=job.id,
                job_name=job.name,
                status=job.status.name,
                duration_seconds=job.result.duration_seconds,
            )

        except BatchCancelled:
            job.status = BatchStatus.CANCELLED
            job.result = JobResult(
                success=False,
                error="Batch was cancelled",
                warnings=job.context.get_warnings(),
                start_time=job.started_at,
                end_time=datetime.now(),
            )
            logger.info("Batch cancelled", job_id=job.id, job_name=job.name)

        except Exception as e:
            job.status = BatchStatus.FAILED
            job.result = JobResult(
                success=False,
                error=str(e),
                error_traceback=traceback.format_exc(),
                warnings=job.context.get_warnings(),
                start_time=job.started_at,
                end_time=datetime.now(),
            )
            logger.error("Batch failed", job_id=job.id, job_name=job.name, error=str(e))

        finally:
            with self._lock:
                self._running_threads.pop(job.id, None)
            self._finish(job)

    def _finish(self, job: BatchJob[Any]) -> None:
        job.completed_at = datetime.now()
        try:
            job.on_terminal()
        except Exception as e:
            logger.warning("Terminal hook error", job_id=job.id, error=str(e))
        with self._lock:
            if self._active == job.id:
                self._active = None
        self._notify_status(job.id, job.status)

    def cancel(self, job_id: str) -> bool:
        """Request cancellation of a batch."""
        job = self._get_job(job_id)

        if job.status.is_terminal:
            return False

        job.context.cancel()
        logger.info("Batch cancellation requested", job_id=job_id)
        return True

    def get_job(self, job_id: str) -> BatchJob[Any] | None:
        return self._jobs.get(job_id)

    def get_status(self, job_id: str) -> BatchStatus | None:
        job = self._jobs.get(job_id)
        return job.status if job else None

    def get_progress(self, job_id: str) -> JobProgress | None:
        job = self._jobs.get(job_id)
        return job.context.get_progress() if job else None

    def get_result(self, job_id: str) -> JobResult[Any] | None:
        job = self._jobs.get(job_id)
        return job.result if job else None

    def wait(self, job_id: str, timeout: float | None = None) -> JobResult[Any] | None:
        """Wait for a batch to finish."""
        with self._lock:
            thread = self._running_threads.get(job_id)
        if thread:
            thread.join(timeout)

        job = self._jobs.get(job_id)
        return job.result if job else None

    def add_status_callback(self, callback: Callable[[str, BatchStatus], None]) -> None:
        self._status_callbacks.append(callback)

    def _get_job(self, job_id: str) -> BatchJob[Any]:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Batch not found: {job_id}")
        return job

    def _notify_status(self, job_id: str, status: BatchStatus) -> None:
        for callback in self._status_callbacks:
            try:
                callback(job_id, status)
            except Exception as e:
                logger.warning("Status callback error", error=str(e))
