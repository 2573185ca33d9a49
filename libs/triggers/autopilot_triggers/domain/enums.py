"""Trigger system enums and value objects."""

from enum import Enum


class TriggerSourceType(str, Enum):
    """Which store a unified trigger is backed by."""

    SCHEDULE = "schedule"
    TRIGGER = "trigger"


class TriggerType(str, Enum):
    """Types of event-sourced triggers."""

    EVENT = "event"
    WEBHOOK = "webhook"
    API = "api"
    MANUAL = "manual"
    TEST = "test"
    MCP = "mcp"


# Kind reported for schedule-backed unified triggers
SCHEDULED_KIND = "scheduled"

UNIFIED_TRIGGER_KINDS: tuple[str, ...] = (SCHEDULED_KIND, *(t.value for t in TriggerType))

# Kinds that fire unattended and therefore need a literal default input
DEFAULT_INPUT_TRIGGER_TYPES = frozenset(
    {TriggerType.API, TriggerType.MANUAL, TriggerType.TEST, TriggerType.MCP}
)


class TriggerEventStatus(str, Enum):
    """Lifecycle status of a trigger event."""

    RECEIVED = "RECEIVED"
    PROCESSING = "PROCESSING"
    SKIPPED = "SKIPPED"
    FIRED = "FIRED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition_to(self, target: "TriggerEventStatus") -> bool:
        """Check whether moving from this status to ``target`` is allowed."""
        return target in ALLOWED_TRANSITIONS[self]

    @classmethod
    def predecessors_of(cls, target: "TriggerEventStatus") -> list["TriggerEventStatus"]:
        """Statuses from which ``target`` may be reached."""
        return [status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets]


TERMINAL_STATUSES = frozenset(
    {TriggerEventStatus.SKIPPED, TriggerEventStatus.FIRED, TriggerEventStatus.FAILED}
)

ALLOWED_TRANSITIONS: dict[TriggerEventStatus, frozenset[TriggerEventStatus]] = {
    TriggerEventStatus.RECEIVED: frozenset(
        {
            TriggerEventStatus.PROCESSING,
            TriggerEventStatus.SKIPPED,
            TriggerEventStatus.FIRED,
            TriggerEventStatus.FAILED,
        }
    ),
    TriggerEventStatus.PROCESSING: frozenset(
        {TriggerEventStatus.SKIPPED, TriggerEventStatus.FIRED, TriggerEventStatus.FAILED}
    ),
    TriggerEventStatus.SKIPPED: frozenset(),
    TriggerEventStatus.FIRED: frozenset(),
    TriggerEventStatus.FAILED: frozenset(),
}


class TriggerEventSource(str, Enum):
    """Origin of a trigger event."""

    SCHEDULE = "schedule"
    TRIGGER = "trigger"
    INTEGRATION = "integration"


class IntegrationProvider(str, Enum):
    """Upstream integrations with push ingestion adapters."""

    GMAIL = "gmail"
