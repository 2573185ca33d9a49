"""Application settings configuration."""

from functools import lru_cache

from .base import BaseAppSettings


class AppSettings(BaseAppSettings):
    """General application configuration."""

    APP_NAME: str = "Autopilot Trigger Service"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    STRUCTURED_LOGGING: bool = True
    PUBLIC_BASE_URL: str = "http://localhost:8000"


@lru_cache
def get_app_settings() -> AppSettings:
    """Get application settings."""
    return AppSettings()
