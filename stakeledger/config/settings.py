"""
Configuration Management for Stake Ledger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Every tunable that changes how money moves (retry bounds, stake limits,
the collaboration pool policy) is visible in one place and validated at
startup.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stakeledger.models.goal import PoolPolicy


class LedgerSettings(BaseSettings):
    """Ledger storage and balance guard configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    storage_backend: Literal["memory", "sql"] = Field(
        default="memory",
        description="Which storage implementation backs the ledger"
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./stakeledger.db",
        description="SQLAlchemy async URL for the relational backend"
    )
    max_settle_attempts: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Compare-and-commit attempts before ConcurrentUpdateExhausted"
    )
    retry_wait_min_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="Lower bound of the jittered backoff between attempts"
    )
    retry_wait_max_seconds: float = Field(
        default=0.05,
        ge=0.0,
        le=5.0,
        description="Upper bound of the jittered backoff between attempts"
    )
    history_default_limit: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Entries returned by get_history when no limit is given"
    )

    @model_validator(mode='after')
    def validate_wait_bounds(self) -> 'LedgerSettings':
        if self.retry_wait_max_seconds < self.retry_wait_min_seconds:
            raise ValueError("retry_wait_max_seconds must be >= retry_wait_min_seconds")
        return self


class GoalSettings(BaseSettings):
    """Goal staking and collaboration rules."""

    model_config = SettingsConfigDict(
        env_prefix="GOALS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    min_stake_amount: Decimal = Field(
        default=Decimal("1.00"),
        gt=0,
        description="Smallest stake a goal may carry"
    )
    max_stake_amount: Decimal = Field(
        default=Decimal("10000.00"),
        gt=0,
        description="Largest stake a goal may carry (sanity check)"
    )
    require_verification_default: bool = Field(
        default=True,
        description="Whether new goals need an approved verification to complete"
    )
    collaboration_pool_policy: PoolPolicy = Field(
        default=PoolPolicy.UNCAPPED,
        description="uncapped: winners get their full stake; capped: winnings <= forfeited stakes"
    )

    @model_validator(mode='after')
    def validate_stake_bounds(self) -> 'GoalSettings':
        if self.max_stake_amount < self.min_stake_amount:
            raise ValueError("max_stake_amount must be >= min_stake_amount")
        return self


class AlarmSettings(BaseSettings):
    """Alarm penalty trigger configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ALARM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    window_minutes: int = Field(
        default=5,
        ge=1,
        le=720,
        description="How long the user has to enter the code"
    )
    code_length: int = Field(
        default=6,
        ge=4,
        le=12,
        description="Digits in generated alarm codes"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets audit mirror configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )
    audit_sheet_name: str = Field(
        default="LedgerAudit",
        description="Name of the sheet for audit events"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    audit_backend: Literal["local", "memory", "sheets"] = Field(
        default="local",
        description="local: structlog only; memory: keep events in process; sheets: mirror to Google Sheets"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily to allow partial configuration

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def goals(self) -> GoalSettings:
        return GoalSettings()

    @property
    def alarms(self) -> AlarmSettings:
        return AlarmSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks. The Google Sheets group is only
    required when the audit backend is "sheets".
    """
    results = {}

    settings = get_settings()

    for name in ("app", "ledger", "goals", "alarms"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    if results["app"] and settings.app.audit_backend == "sheets":
        try:
            _ = settings.google_sheets
            results["google_sheets"] = True
        except Exception as e:
            results["google_sheets"] = False
            results["google_sheets_error"] = str(e)

    return results
