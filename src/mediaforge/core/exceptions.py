"""
MediaForge exception hierarchy.

Every error raised inside a device workflow carries a ``FailureReason`` so the
batch can record a typed ``Failed(reason)`` result without inspecting messages.
"""

from __future__ import annotations

from enum import Enum


class FailureReason(Enum):
    """Typed failure tags recorded in batch reports."""

    PLAN_REJECTED = "plan_rejected"
    PRECONDITION_FAILED = "precondition_failed"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"
    DEVICE_DISAPPEARED = "device_disappeared"
    VALIDATION_ERROR = "validation_error"
    CANCELLED = "cancelled"
    SOURCE_INVALID = "source_invalid"
    UNEXPECTED = "unexpected"


class MediaForgeError(Exception):
    """Base class for all MediaForge errors."""

    reason = FailureReason.UNEXPECTED


class PlanRejected(MediaForgeError):
    """Sizing or validation failure before any side effect."""

    reason = FailureReason.PLAN_REJECTED

    def __init__(self, rejection: object) -> None:
        self.rejection = rejection
        super().__init__(getattr(rejection, "message", str(rejection)))


class PreconditionFailed(MediaForgeError):
    """A precondition for a phase does not hold (e.g. active persistence)."""

    reason = FailureReason.PRECONDITION_FAILED


class ToolExecutionFailed(MediaForgeError):
    """An external command exited with a non-zero code."""

    reason = FailureReason.TOOL_EXECUTION_FAILED

    def __init__(
        self,
        command: list[str] | str,
        returncode: int,
        stderr: str = "",
    ) -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        cmd = command if isinstance(command, str) else " ".join(command)
        message = f"'{cmd}' failed with exit code {returncode}"
        if stderr:
            message += f": {stderr.strip()[:300]}"
        super().__init__(message)


class DeviceDisappeared(MediaForgeError):
    """The target device was removed while the batch was running."""

    reason = FailureReason.DEVICE_DISAPPEARED

    def __init__(self, device: str) -> None:
        self.device = device
        super().__init__(f"Device {device} disappeared")


class ValidationError(MediaForgeError):
    """Credential validation failed. Blocks the batch before any I/O."""

    reason = FailureReason.VALIDATION_ERROR


class BatchCancelled(MediaForgeError):
    """The operator cancelled the batch. Not a failure."""

    reason = FailureReason.CANCELLED


class SourceInvalid(MediaForgeError):
    """The source system became unusable; aborts the whole batch."""

    reason = FailureReason.SOURCE_INVALID


class BatchAlreadyRunning(MediaForgeError):
    """A second batch was submitted while one is still active."""
