"""
Core configuration, logging and time primitives.
"""

from .clock import Clock, ManualClock, system_clock
from .config import CacheSettings, WriteMode, get_settings
from .logging import configure_logging, get_logger

__all__ = [
    "Clock",
    "ManualClock",
    "system_clock",
    "CacheSettings",
    "WriteMode",
    "get_settings",
    "configure_logging",
    "get_logger",
]
