"""
MediaForge Operations.

Per-device workflows run by a batch: install, upgrade and reset.
"""

from mediaforge.operations.base import BatchOperation
from mediaforge.operations.install import InstallOperation
from mediaforge.operations.reset import ResetOperation
from mediaforge.operations.upgrade import UpgradeOperation

__all__ = ["BatchOperation", "InstallOperation", "ResetOperation", "UpgradeOperation"]
