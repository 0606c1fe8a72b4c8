"""
MediaForge Core - Engine layer.

Contains the device model, layout calculation, job execution,
configuration and session management for MediaForge batches.
"""

from mediaforge.core.config import MediaForgeConfig
from mediaforge.core.job import BatchJob, BatchStatus, JobResult, JobRunner
from mediaforge.core.logging import get_logger, setup_logging
from mediaforge.core.results import BatchReport
from mediaforge.core.safety import SafetyManager
from mediaforge.core.session import Session

__all__ = [
    "MediaForgeConfig",
    "BatchJob",
    "BatchStatus",
    "JobResult",
    "JobRunner",
    "BatchReport",
    "Session",
    "get_logger",
    "setup_logging",
    "SafetyManager",
]
