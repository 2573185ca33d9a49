"""Autopilot Common Library."""

from . import base, config, logging

__version__ = "0.1.0"

__all__ = [
    "base",
    "config",
    "logging",
]
