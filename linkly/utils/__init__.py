"""Utility modules for Linkly."""

from .config import Settings, get_settings, configure_logging

__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
]
