"""Main application settings container."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings

from .app import AppSettings
from .database import DatabaseSettings
from .triggers import DispatchSettings, IngestionSettings, TriggerSettings


class Settings(BaseSettings):
    """Main application settings container."""

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    app: AppSettings = Field(default_factory=AppSettings)
    triggers: TriggerSettings = Field(default_factory=TriggerSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)

    model_config = {"env_file": ".env", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    """Get the main application settings."""
    return Settings()
