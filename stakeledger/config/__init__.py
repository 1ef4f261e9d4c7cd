"""Configuration package."""

from stakeledger.config.settings import (
    AlarmSettings,
    AppSettings,
    GoalSettings,
    GoogleSheetsSettings,
    LedgerSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AlarmSettings",
    "AppSettings",
    "GoalSettings",
    "GoogleSheetsSettings",
    "LedgerSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
