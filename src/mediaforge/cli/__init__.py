"""
MediaForge CLI Module.

Provides command-line interface for MediaForge batches.
"""

from mediaforge.cli.main import cli, main

__all__ = ["main", "cli"]
