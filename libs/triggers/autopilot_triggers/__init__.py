"""Autopilot Triggers Library.

Unifies cron schedules and event triggers behind one identifier and one
administrative surface, records every candidate firing as a trigger event,
and ingests provider push notifications into dispatched agent runs.
"""

from .dispatcher import DispatchRequest, DispatchResult, Dispatcher, TemporalDispatcher
from .domain.enums import TriggerEventSource, TriggerEventStatus, TriggerSourceType, TriggerType
from .domain.models import (
    EventTriggerSource,
    ScheduleSource,
    TriggerCreate,
    TriggerEvent,
    TriggerUpdate,
    UnifiedTrigger,
)
from .identifiers import TriggerRef, decode_trigger_id, encode_trigger_id
from .logging_utils import TriggerError, TriggerValidationError
from .schedule_runner import ScheduleRunner
from .schedule_utils import get_next_run_at
from .trigger_events import TriggerEventManager
from .trigger_service import TriggerService

__all__ = [
    "DispatchRequest",
    "DispatchResult",
    "Dispatcher",
    "EventTriggerSource",
    "ScheduleRunner",
    "ScheduleSource",
    "TemporalDispatcher",
    "TriggerCreate",
    "TriggerError",
    "TriggerEvent",
    "TriggerEventManager",
    "TriggerEventSource",
    "TriggerEventStatus",
    "TriggerRef",
    "TriggerService",
    "TriggerSourceType",
    "TriggerType",
    "TriggerUpdate",
    "TriggerValidationError",
    "UnifiedTrigger",
    "decode_trigger_id",
    "encode_trigger_id",
    "get_next_run_at",
]
