"""
MediaForge Platform Abstraction Layer.

Provides the backend that drives the external partitioning, formatting,
copy and boot loader tools.
"""

from __future__ import annotations

import os
import platform

from mediaforge.platform.base import CommandResult, CopyProgress, PlatformBackend


def get_platform_backend() -> PlatformBackend:
    """Get the platform backend for the current OS."""
    system = platform.system().lower()

    if system == "linux":
        from mediaforge.platform.linux import LinuxBackend

        return LinuxBackend()
    raise RuntimeError(f"Unsupported platform: {system}")


def get_platform_name() -> str:
    """Get the current platform name."""
    return platform.system().lower()


def is_admin() -> bool:
    """Check if running with root privileges."""
    return hasattr(os, "geteuid") and os.geteuid() == 0


__all__ = [
    "CommandResult",
    "CopyProgress",
    "PlatformBackend",
    "get_platform_backend",
    "get_platform_name",
    "is_admin",
]
