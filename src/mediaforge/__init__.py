"""
MediaForge - Batch provisioning of live-system storage devices.

Installs a running live system onto removable devices, upgrades devices
installed earlier and resets their writable partitions, one device after
another with a structured report per batch.
"""

__version__ = "1.0.0"
__author__ = "MediaForge Team"

from mediaforge.core.config import MediaForgeConfig
from mediaforge.core.session import Session

__all__ = ["MediaForgeConfig", "Session", "__version__"]
