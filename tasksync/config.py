"""
Configuration management for tasksync.
Uses pydantic-settings to load from environment variables and .env files.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import InvalidConfiguration
from .scheduler import WorkHours


class Settings(BaseSettings):
    """Application settings loaded from TASKSYNC_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TASKSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Azure DevOps (issue tracker)
    devops_organization: str = ""
    devops_project: str = ""
    devops_pat: str | None = None
    # Override for on-prem servers and tests, e.g. "http://localhost:8080/tfs/org"
    devops_api_url: str | None = None

    # 7pace Timetracker (time tracking); uses the DevOps PAT
    pace_api_url: str | None = None

    # Work hours, "HH:MM" 24-hour wall clock in work_hours_timezone
    work_hours_start: str = "08:30"
    work_hours_end: str = "17:00"
    work_hours_timezone: str = "UTC"

    # Focus blocks
    focus_block_minutes: int = 45
    slot_horizon_days: int = 7

    # Local state
    task_expiry_hours: int = 24
    state_dir: Path | None = None
    # Seconds to wait for another tasksync process to release the state lock.
    # None waits forever.
    state_lock_timeout_seconds: float | None = 30.0

    # Google Calendar
    google_calendar_credentials_file: Path = Field(default=Path("./credentials.json"))
    google_calendar_token_file: Path = Field(default=Path("./token.json"))
    google_calendar_id: str = "primary"

    # Logging
    log_level: str = "WARNING"

    @field_validator("focus_block_minutes", "slot_horizon_days", "task_expiry_hours")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be greater than 0")
        return v

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    def get_devops_pat(self) -> str:
        """Get the DevOps personal access token.

        The 7pace API accepts the same token, so both clients use it.
        """
        if not self.devops_pat:
            raise InvalidConfiguration(
                "devops_pat", None, "not set. Add TASKSYNC_DEVOPS_PAT to your environment or .env"
            )
        return self.devops_pat

    def work_hours(self) -> WorkHours:
        """Parse the configured work hours, rejecting malformed values."""
        return WorkHours.parse(
            self.work_hours_start, self.work_hours_end, self.work_hours_timezone
        )


@lru_cache
def get_settings() -> Settings:
    """Load the settings once per process.

    Raises:
        InvalidConfiguration: For the first environment or .env value that
            fails validation, e.g. TASKSYNC_FOCUS_BLOCK_MINUTES=0.
    """
    try:
        return Settings()
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or "settings"
        raise InvalidConfiguration(field, error.get("input"), error["msg"]) from e
