"""Core utilities for configuration, logging, and shared models."""

from .config import (
    AccountCredentials,
    AppSettings,
    ImapSettings,
    KeepaliveSettings,
    SyncSettings,
    load_app_settings,
)
from .logging import configure_logging

__all__ = [
    "AccountCredentials",
    "AppSettings",
    "ImapSettings",
    "KeepaliveSettings",
    "SyncSettings",
    "configure_logging",
    "load_app_settings",
]
