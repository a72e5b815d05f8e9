"""Core module for hookwatch.

Contains settings management and logging setup.
"""

from .settings import HookwatchSettings, SettingsManager, settings_manager
from .logging_config import setup_logging

__all__ = [
    "HookwatchSettings",
    "SettingsManager",
    "settings_manager",
    "setup_logging",
]
