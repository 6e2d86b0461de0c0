"""Configuration package."""

from fintrack.config.settings import (
    GoogleSheetsSettings,
    LedgerSettings,
    OfflineQueueSettings,
    ServerSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "GoogleSheetsSettings",
    "LedgerSettings",
    "OfflineQueueSettings",
    "ServerSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
