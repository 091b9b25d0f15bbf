from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_SQLITE_PATH = BASE_DIR / "venue_scan.db"
DEFAULT_SQLITE_URL = f"sqlite:///{DEFAULT_SQLITE_PATH}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=BASE_DIR / ".env", env_prefix="APP_", case_sensitive=False)

    api_token: str = Field(default="dev-token", description="Bearer token required for all API calls")
    database_url: str = Field(default=DEFAULT_SQLITE_URL, description="SQLAlchemy database URL")
    # Comma-separated values or '*' for all
    cors_origins: str = Field(default="*")
    environment: str = Field(default="development")
    timezone: str = Field(default="UTC", description="Venue-local zone used to decide what 'today' is")

    # Duplicate-scan guard
    scan_cooldown_seconds: float = Field(default=30.0)
    recent_keys_capacity: int = Field(default=10)

    # Capture loop
    capture_interval_ms: int = Field(default=100)
    camera_width: int = Field(default=1280)
    camera_height: int = Field(default=720)
    camera_fps: int = Field(default=30)

    # Verification policy
    checkin_marks_status: bool = Field(default=False, description="Set status=checked_in on a verified booking")
    reject_rescanned_bookings: bool = Field(default=False)
    conditional_scan_writes: bool = Field(default=False, description="Compare-and-swap on scan_count")
    require_member_credit: bool = Field(default=True)

    # Notifications
    notifications_enabled: bool = Field(default=True)
    notification_provider: str = Field(default="log", description="log|webhook")
    notification_webhook_url: Optional[str] = Field(default=None)
    notification_timeout_seconds: float = Field(default=10.0)
    notification_cooldown_seconds: float = Field(default=60.0)
    notification_max_per_subject: int = Field(default=1)
    notification_max_per_hour: int = Field(default=5)
    notification_max_per_day: int = Field(default=20)

    @field_validator("notification_provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        value = (value or "log").strip().lower()
        if value not in {"log", "webhook"}:
            raise ValueError(f"Unsupported notification provider: {value}")
        return value

    @property
    def cors_origins_list(self) -> List[str]:
        s = (self.cors_origins or "").strip()
        if not s or s == "*":
            return ["*"]
        return [part.strip() for part in s.split(",") if part.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
