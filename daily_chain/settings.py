"""
Typed settings management using pydantic-settings.

All configuration is read from ``DAILY_CHAIN_*`` environment variables
(with ``.env`` support) and validated once, then cached.

Usage:
    from daily_chain.settings import get_settings

    settings = get_settings()
    print(settings.schedule.target_hour, settings.schedule.target_minute)
"""

from __future__ import annotations

import os
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Enums for validated choices
# =============================================================================


class SubstrateKind(str, Enum):
    """Which job substrate fires the daily trigger."""

    LOCAL = "local"
    DBOS = "dbos"


# =============================================================================
# Path Configuration
# =============================================================================


def _get_xdg_dir(env_var: str) -> Path:
    """Get XDG directory, defaulting to ~/.daily_chain if not set."""
    xdg_base = os.getenv(env_var)
    if xdg_base:
        return Path(xdg_base) / "daily_chain"
    return Path.home() / ".daily_chain"


class PathSettings(BaseSettings):
    """XDG-compliant path configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DAILY_CHAIN_",
        extra="ignore",
    )

    home: Optional[Path] = Field(
        default=None,
        description="Override for every data/state path (used by tests and containers)",
    )

    @property
    def data_dir(self) -> Path:
        """XDG_DATA_HOME/daily_chain or ~/.daily_chain"""
        if self.home is not None:
            return self.home
        return _get_xdg_dir("XDG_DATA_HOME")

    @property
    def state_dir(self) -> Path:
        """XDG_STATE_HOME/daily_chain or ~/.daily_chain"""
        if self.home is not None:
            return self.home
        return _get_xdg_dir("XDG_STATE_HOME")

    @property
    def ledger_file(self) -> Path:
        return self.data_dir / "ledger.json"

    @property
    def schedule_state_file(self) -> Path:
        return self.data_dir / "schedule_state.json"

    @property
    def triggers_file(self) -> Path:
        return self.data_dir / "triggers.json"

    @property
    def pid_file(self) -> Path:
        return self.state_dir / "daily_chain.pid"

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def dbos_sqlite_file(self) -> Path:
        return self.data_dir / "dbos_store.sqlite"

    def ensure_directories(self) -> None:
        """Create all necessary directories with secure permissions."""
        for directory in [self.data_dir, self.state_dir, self.log_dir]:
            directory.mkdir(parents=True, exist_ok=True, mode=0o700)


# =============================================================================
# Schedule Settings
# =============================================================================


class ScheduleSettings(BaseSettings):
    """Daily target time, health thresholds and substrate selection."""

    model_config = SettingsConfigDict(
        env_prefix="DAILY_CHAIN_",
        extra="ignore",
    )

    task_id: str = Field(default="daily_sync", min_length=1)
    target_hour: int = Field(default=23, ge=0, le=23)
    target_minute: int = Field(default=59, ge=0, le=59)
    timezone: Optional[str] = Field(
        default=None,
        description="IANA zone name; None follows the system's current local zone",
    )

    warning_after_hours: float = Field(default=26.0, gt=0)
    problem_after_hours: float = Field(default=48.0, gt=0)

    check_interval: int = Field(
        default=60,
        ge=1,
        description="Seconds between daemon polls of the local substrate",
    )
    substrate: SubstrateKind = Field(default=SubstrateKind.LOCAL)

    # Trigger constraints
    network_required: bool = Field(default=True)
    battery_not_low: bool = Field(default=False)
    network_probe_url: str = Field(default="https://clients3.google.com/generate_204")

    dbos_database_url: Optional[str] = Field(
        default=None,
        description="DBOS system database; defaults to a sqlite file in the data dir",
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @model_validator(mode="after")
    def validate_thresholds(self) -> "ScheduleSettings":
        if self.problem_after_hours <= self.warning_after_hours:
            raise ValueError("problem_after_hours must be greater than warning_after_hours")
        return self


# =============================================================================
# Retry Settings
# =============================================================================


class RetrySettings(BaseSettings):
    """Backoff applied by the substrate to transient action failures."""

    model_config = SettingsConfigDict(
        env_prefix="DAILY_CHAIN_RETRY_",
        extra="ignore",
    )

    initial_backoff_minutes: float = Field(default=15.0, gt=0)
    max_backoff_minutes: float = Field(default=30.0, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_attempts: int = Field(default=3, ge=1)


# =============================================================================
# Action Settings
# =============================================================================


class ActionSettings(BaseSettings):
    """The external command run at trigger time."""

    model_config = SettingsConfigDict(
        env_prefix="DAILY_CHAIN_ACTION_",
        extra="ignore",
    )

    command: str = Field(default="", description="Shell-style command line")
    working_directory: str = Field(default=".")
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


# =============================================================================
# Aggregate Settings
# =============================================================================


class Settings(BaseSettings):
    """Top-level settings combining every section."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    paths: PathSettings = Field(default_factory=PathSettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    action: ActionSettings = Field(default_factory=ActionSettings)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the cached settings instance."""
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache so the next call re-reads the environment."""
    get_settings.cache_clear()
