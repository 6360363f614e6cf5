"""Configuration for the ParcelBook client."""

from __future__ import annotations

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ANDROID_EMULATOR_BASE_URL = "http://10.0.2.2:8080"
LOCAL_BASE_URL = "http://localhost:8080"


def resolve_api_base_url(configured: str | None, platform: str) -> str:
    """Pick the backend base URL, falling back to a per-platform local default.

    The fallbacks only matter for local development: the Android emulator
    reaches the host machine through 10.0.2.2, everything else uses localhost.
    """
    if configured and configured.strip():
        return configured.strip().rstrip("/")
    if platform.strip().lower() == "android":
        return ANDROID_EMULATOR_BASE_URL
    return LOCAL_BASE_URL


class Settings(BaseSettings):
    """Runtime settings loaded from environment."""

    api_base_url: str = ""
    platform: str = "ios"
    request_timeout: float = 30.0
    page_size: int = 20

    deep_link_scheme: str = "parcelbooking"
    payer_email_domain: str = "parcelapp.com"

    # Payment reconciliation timing (seconds)
    foreground_recheck_delay: float = 2.0
    poll_initial_delay: float = 5.0
    poll_interval: float = 3.0
    poll_max_attempts: int = 40
    auto_poll: bool = True

    # Paid-but-PendingPayment refresh loop
    status_refresh_interval: float = 2.0
    status_refresh_max_attempts: int = 5
    auto_status_refresh: bool = True

    log_level: str = "INFO"
    sentry_dsn: str | None = None
    environment: str = "development"

    model_config = SettingsConfigDict(env_prefix="PARCELBOOK_", env_file=".env")

    @model_validator(mode="after")
    def _resolve_base_url(self) -> "Settings":
        self.api_base_url = resolve_api_base_url(self.api_base_url, self.platform)
        return self
