"""
Configuration management for waydroid-backup.

This module handles loading and validating configuration settings.
"""

from waydroid_backup.config.settings import (
    ConfigurationError,
    Settings,
    load_config,
    settings_to_dict,
)

__all__ = [
    "Settings",
    "load_config",
    "settings_to_dict",
    "ConfigurationError",
]
