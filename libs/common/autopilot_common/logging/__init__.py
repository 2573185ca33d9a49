"""Logging setup shared by the Autopilot services."""

from .config import StructuredFormatter, setup_logging

__all__ = ["StructuredFormatter", "setup_logging"]
