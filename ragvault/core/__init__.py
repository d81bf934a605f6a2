"""
ragvault Core Module
====================

Configuration and logging shared by the store, the CLI and the API.

Configuration:
    Set environment variables or create a .env file at the repository root.
    See ragvault.core.config for all available options.
"""

from .config import settings, get_settings, reset_settings, Settings
from .logging_config import setup_logging, setup_logging_from_config

__all__ = [
    "settings",
    "get_settings",
    "reset_settings",
    "Settings",
    "setup_logging",
    "setup_logging_from_config",
]
