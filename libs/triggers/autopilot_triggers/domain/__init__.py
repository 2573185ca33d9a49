"""Trigger domain models and value objects."""

from .enums import (
    DEFAULT_INPUT_TRIGGER_TYPES,
    SCHEDULED_KIND,
    IntegrationProvider,
    TriggerEventSource,
    TriggerEventStatus,
    TriggerSourceType,
    TriggerType,
)
from .models import (
    AgentRef,
    BusinessHours,
    EmailMessageRecord,
    EventTriggerSource,
    FieldMapping,
    InputDefaults,
    InputMapping,
    IntegrationConnection,
    IntegrationCursor,
    ScheduleSource,
    TriggerConfig,
    TriggerCreate,
    TriggerEvent,
    TriggerEventCreate,
    TriggerExecuteRequest,
    TriggerRunSummary,
    TriggerUpdate,
    UnifiedTrigger,
)

__all__ = [
    "DEFAULT_INPUT_TRIGGER_TYPES",
    "SCHEDULED_KIND",
    "AgentRef",
    "BusinessHours",
    "EmailMessageRecord",
    "EventTriggerSource",
    "FieldMapping",
    "InputDefaults",
    "InputMapping",
    "IntegrationConnection",
    "IntegrationCursor",
    "IntegrationProvider",
    "ScheduleSource",
    "TriggerConfig",
    "TriggerCreate",
    "TriggerEvent",
    "TriggerEventCreate",
    "TriggerEventSource",
    "TriggerEventStatus",
    "TriggerExecuteRequest",
    "TriggerRunSummary",
    "TriggerSourceType",
    "TriggerType",
    "TriggerUpdate",
    "UnifiedTrigger",
]
