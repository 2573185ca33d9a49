"""Configuration management for the Autopilot services.

Settings are split per concern and each concern is cached behind its own getter.
"""

from .app import AppSettings, get_app_settings
from .base import BaseAppSettings
from .database import Database, DatabaseSettings, get_db_settings
from .settings import Settings, get_settings
from .triggers import (
    DispatchSettings,
    IngestionSettings,
    TriggerSettings,
    get_dispatch_settings,
    get_ingestion_settings,
    get_trigger_settings,
)

__all__ = [
    "AppSettings",
    "BaseAppSettings",
    "Database",
    "DatabaseSettings",
    "DispatchSettings",
    "IngestionSettings",
    "Settings",
    "TriggerSettings",
    "get_app_settings",
    "get_db_settings",
    "get_dispatch_settings",
    "get_ingestion_settings",
    "get_settings",
    "get_trigger_settings",
]
