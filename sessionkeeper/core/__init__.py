# SessionKeeper Core Module
from .clock import Clock, SystemClock
from .config import Settings, get_settings, settings
from .logging import get_logger, setup_logging

__all__ = [
    "Clock",
    "Settings",
    "SystemClock",
    "settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
