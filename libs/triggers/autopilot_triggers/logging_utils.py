"""Logging utilities for the trigger system.

This module provides structured logging with correlation IDs and the error
taxonomy shared by trigger administration, ingestion and dispatch.
"""

import logging
import uuid
from contextvars import ContextVar
from typing import Any

# Context variable to store correlation ID across async operations
correlation_id_context: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_CONTEXT_KEYS = (
    "trigger_id",
    "trigger_event_id",
    "schedule_id",
    "connection_key",
    "webhook_path",
    "message_id",
)

# LogRecord attributes that may not be passed through `extra`
_RESERVED_EXTRA = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
}


class TriggerLogger:
    """Logger for trigger operations with correlation ID support."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _get_correlation_id(self) -> str:
        """Get or generate correlation ID for current operation."""
        correlation_id = correlation_id_context.get()
        if not correlation_id:
            correlation_id = generate_correlation_id()
            correlation_id_context.set(correlation_id)
        return correlation_id

    def _format_message(self, message: str, **kwargs) -> str:
        """Format log message with correlation ID and additional context."""
        context_parts = [f"correlation_id={self._get_correlation_id()}"]
        for key in _CONTEXT_KEYS:
            if key in kwargs and kwargs[key] is not None:
                context_parts.append(f"{key}={kwargs[key]}")

        context_str = " | ".join(context_parts)
        return f"[{context_str}] {message}"

    def _extra(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        return {
            k: v
            for k, v in kwargs.items()
            if k not in _CONTEXT_KEYS and k not in _RESERVED_EXTRA
        }

    def info(self, message: str, **kwargs):
        """Log info message with correlation context."""
        self.logger.info(self._format_message(message, **kwargs), extra=self._extra(kwargs))

    def warning(self, message: str, **kwargs):
        """Log warning message with correlation context."""
        self.logger.warning(self._format_message(message, **kwargs), extra=self._extra(kwargs))

    def error(self, message: str, **kwargs):
        """Log error message with correlation context."""
        self.logger.error(self._format_message(message, **kwargs), extra=self._extra(kwargs))

    def exception(self, message: str, **kwargs):
        """Log error message with traceback and correlation context."""
        self.logger.exception(self._format_message(message, **kwargs), extra=self._extra(kwargs))

    def debug(self, message: str, **kwargs):
        """Log debug message with correlation context."""
        self.logger.debug(self._format_message(message, **kwargs), extra=self._extra(kwargs))


def set_correlation_id(correlation_id: str) -> None:
    """Set correlation ID for current operation context."""
    correlation_id_context.set(correlation_id)


def get_correlation_id() -> str | None:
    """Get current correlation ID."""
    return correlation_id_context.get()


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())[:8]


def start_operation() -> str:
    """Begin a new top-level operation with a fresh correlation ID."""
    correlation_id = generate_correlation_id()
    set_correlation_id(correlation_id)
    return correlation_id


class TriggerError(Exception):
    """Base exception for trigger system errors."""

    def __init__(self, message: str, correlation_id: str | None = None, **context):
        self.correlation_id = correlation_id or get_correlation_id()
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": str(self),
            "correlation_id": self.correlation_id,
            "context": self.context,
        }


class TriggerValidationError(TriggerError):
    """Raised when caller-supplied trigger data is rejected."""


class InvalidTriggerId(TriggerValidationError):
    """Raised when a unified trigger identifier is malformed."""


class InvalidScheduleConfig(TriggerValidationError):
    """Raised when a cron expression or timezone cannot be resolved."""


class InvalidInputMapping(TriggerValidationError):
    """Raised when an input mapping or event trigger config fails validation."""


class FilterMismatch(TriggerValidationError):
    """Raised when a manual fire payload does not satisfy the trigger filter."""


class SourceNotFound(TriggerError):
    """Raised when a schedule, trigger, agent or event is missing or out of scope."""


class TriggerDisabled(TriggerError):
    """Raised when a manual fire targets an inactive source or a disabled agent."""


class InvalidStatusTransition(TriggerError):
    """Raised when a trigger event transition is not allowed from its current state."""


class IntegrationAuthFailure(TriggerError):
    """Raised when an inbound delivery cannot be authenticated."""


class InvalidNotification(TriggerError):
    """Raised when an authenticated delivery envelope cannot be decoded."""


class UpstreamRateLimited(TriggerError):
    """Raised when a provider signals quota exhaustion or rate limiting."""


class ProviderError(TriggerError):
    """Raised for non rate-limit provider API failures."""


class PerMessageFailure(TriggerError):
    """Raised when a single message in a batch cannot be processed."""


class ConnectionBusy(TriggerError):
    """Raised when the per-connection lock cannot be acquired in time."""


class DispatchError(TriggerError):
    """Raised when the execution runtime rejects a fire request synchronously."""


class CursorExpired(ProviderError):
    """Raised when the provider no longer serves history from the stored cursor."""
