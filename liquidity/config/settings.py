"""
Configuration Management for Liquidity Planner

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Generation bounds (horizon, iteration cap, time budget) live next to the
storage location so a single place shows how the engine is tuned.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RecurrenceSettings(BaseSettings):
    """Occurrence generation configuration."""

    model_config = SettingsConfigDict(
        env_prefix="RECURRENCE_",
        extra="ignore"
    )

    horizon_months: int = Field(
        default=12,
        ge=1,
        le=120,
        description="How far ahead of today occurrences are generated"
    )
    max_iterations: int = Field(
        default=1000,
        ge=1,
        description="Safety cap on dates examined per template per generation call"
    )
    anchor_mode: Literal["previous", "original"] = Field(
        default="previous",
        description=(
            "Day-of-month anchor for monthly/quarterly/yearly steps: "
            "'previous' carries a month-end clamp forward, "
            "'original' re-anchors to the start date's day"
        )
    )
    max_run_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Wall-clock budget for one top-up run across all templates"
    )


class StorageSettings(BaseSettings):
    """Persistence configuration."""

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        extra="ignore"
    )

    database_url: str = Field(
        default="sqlite:///liquidity.db",
        description="SQLAlchemy database URL"
    )
    echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )
    connect_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts made when opening the database"
    )


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

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Root log level for the maintenance entry point"
    )

    default_currency: str = Field(
        default="EUR",
        min_length=3,
        max_length=3,
        description="Currency used when a template does not name one"
    )

    @field_validator("log_level", "default_currency")
    @classmethod
    def uppercase(cls, v: str) -> str:
        return v.upper()


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

    @property
    def recurrence(self) -> RecurrenceSettings:
        return RecurrenceSettings()

    @property
    def storage(self) -> StorageSettings:
        return StorageSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, with an
    ``<name>_error`` entry for each section that failed.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("recurrence", "storage", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
