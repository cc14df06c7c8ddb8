from functools import lru_cache
from typing import ClassVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

IMPACT_LEVELS = ("none", "minor", "major", "critical")


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    status_api_url: str
    google_chat_webhook: SecretStr

    # Minimum impact to notify on (optional, empty string means no filtering)
    min_impact_level: str = ""

    # Link for the "STATUS PAGE" button (empty = use the page URL from the API response)
    status_page_url: str = "https://www.cloudflarestatus.com"

    # SQLite file backing the incident state store
    state_db_path: str = "incident_state.db"

    # Check schedule (optional, empty = scheduler disabled)
    check_schedule_cron: str = "*/5 * * * *"

    display_timezone: str = "UTC"
    http_timeout_seconds: float = 15.0
    log_level: str = "INFO"

    # Reconciliation tunables
    rate_limit_cooldown_seconds: int = 60
    recency_window_days: int = 7
    digest_threshold: int = 3
    incident_retention_days: int = 30
    dispatch_max_attempts: int = 3
    dispatch_backoff_seconds: float = 1.0

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("min_impact_level")
    @classmethod
    def _check_impact_level(cls, value: str) -> str:
        value = value.strip().lower()
        if value and value not in IMPACT_LEVELS:
            msg = f"MIN_IMPACT_LEVEL must be one of {', '.join(IMPACT_LEVELS)} (got {value!r})"
            raise ValueError(msg)
        return value

    @field_validator("display_timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        if value.upper() == "UTC":
            return "UTC"
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            msg = f"DISPLAY_TIMEZONE must be an IANA time zone name (got {value!r})"
            raise ValueError(msg) from e
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()  # type: ignore[call-arg]  # pyright: ignore[reportCallIssue]
