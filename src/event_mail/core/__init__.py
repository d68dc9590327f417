"""Core utilities for configuration, logging, and domain contracts."""

from .config import AppSettings, SyncSettings, load_app_settings
from .logging import configure_logging

__all__ = [
    "AppSettings",
    "SyncSettings",
    "configure_logging",
    "load_app_settings",
]
