"""
Utilities package for callexport.

Exports shared helpers for logging and job profiling. Keep this package
lightweight and free of export-engine logic.
"""

from callexport.utils.logging import configure_logging, get_logger
from callexport.utils.profiler import ProfileStats, profile_block

__all__ = [
    "configure_logging",
    "get_logger",
    "ProfileStats",
    "profile_block",
]
