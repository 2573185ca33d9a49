"""Trigger persistence layer."""

from .orm import (
    AgentORM,
    AgentScheduleORM,
    AgentTriggerORM,
    EmailMessageORM,
    IntegrationConnectionORM,
    IntegrationCursorORM,
    TriggerEventORM,
)
from .repository import (
    AgentRepository,
    CursorRepository,
    EmailMessageRepository,
    EventTriggerRepository,
    IntegrationConnectionRepository,
    ScheduleRepository,
    TriggerEventRepository,
)

__all__ = [
    "AgentORM",
    "AgentRepository",
    "AgentScheduleORM",
    "AgentTriggerORM",
    "CursorRepository",
    "EmailMessageORM",
    "EmailMessageRepository",
    "EventTriggerRepository",
    "IntegrationConnectionORM",
    "IntegrationConnectionRepository",
    "IntegrationCursorORM",
    "ScheduleRepository",
    "TriggerEventORM",
    "TriggerEventRepository",
]
