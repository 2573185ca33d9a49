"""Read-time projection of schedules and event triggers into unified triggers."""

from typing import Any

from autopilot_common.config import get_trigger_settings

from .domain.enums import SCHEDULED_KIND, TriggerSourceType, TriggerType
from .domain.models import (
    EventTriggerSource,
    ScheduleSource,
    TriggerEvent,
    TriggerRunSummary,
    UnifiedTrigger,
)
from .identifiers import encode_trigger_id
from .input_mapping import effective_defaults


def run_summary(event: TriggerEvent | None) -> TriggerRunSummary | None:
    """Summarize the latest trigger event of a source."""
    if event is None:
        return None
    return TriggerRunSummary(
        id=event.id,
        status=event.status,
        received_at=event.created_at,
        updated_at=event.updated_at,
        error_message=event.error_message,
    )


def build_schedule_trigger(
    schedule: ScheduleSource, last_run: TriggerEvent | None = None
) -> UnifiedTrigger:
    """Project a schedule into a unified trigger."""
    return UnifiedTrigger(
        id=encode_trigger_id(TriggerSourceType.SCHEDULE, schedule.id),
        source_id=schedule.id,
        source_type=TriggerSourceType.SCHEDULE,
        kind=SCHEDULED_KIND,
        name=schedule.name,
        description=schedule.description,
        is_active=schedule.is_active,
        created_at=schedule.created_at,
        updated_at=schedule.updated_at,
        config={
            "cronExpr": schedule.cron_expr,
            "timezone": schedule.timezone,
            "nextRunAt": schedule.next_run_at.isoformat() if schedule.next_run_at else None,
        },
        input_defaults=schedule.input_defaults,
        stats={
            "runCount": schedule.run_count,
            "lastRunAt": schedule.last_run_at.isoformat() if schedule.last_run_at else None,
        },
        last_run=run_summary(last_run),
    )


def build_event_trigger(
    trigger: EventTriggerSource,
    agent_slug: str,
    last_run: TriggerEvent | None = None,
) -> UnifiedTrigger:
    """Project an event trigger into a unified trigger."""
    unified_id = encode_trigger_id(TriggerSourceType.TRIGGER, trigger.id)
    defaults = effective_defaults(trigger.input_mapping)

    config: dict[str, Any] = {"eventName": trigger.event_name}
    if trigger.trigger_type == TriggerType.WEBHOOK and trigger.webhook_path:
        base_url = get_trigger_settings().WEBHOOK_BASE_URL.rstrip("/")
        config["webhookPath"] = f"{base_url}/{trigger.webhook_path}"
        config["hasWebhookSecret"] = bool(trigger.webhook_secret)
    if trigger.trigger_type == TriggerType.MCP:
        config["toolName"] = f"agent.{agent_slug}"
    if trigger.trigger_type == TriggerType.API:
        config["apiEndpoint"] = f"/api/agents/{agent_slug}/execution-triggers/{unified_id}/execute"
    if defaults.environment:
        config["environment"] = defaults.environment

    return UnifiedTrigger(
        id=unified_id,
        source_id=trigger.id,
        source_type=TriggerSourceType.TRIGGER,
        kind=trigger.trigger_type.value,
        name=trigger.name,
        description=trigger.description,
        is_active=trigger.is_active,
        created_at=trigger.created_at,
        updated_at=trigger.updated_at,
        config=config,
        input_defaults=None if defaults.is_empty() else defaults,
        filter=trigger.filter,
        input_mapping=trigger.input_mapping,
        stats={
            "triggerCount": trigger.trigger_count,
            "lastTriggeredAt": (
                trigger.last_triggered_at.isoformat() if trigger.last_triggered_at else None
            ),
        },
        last_run=run_summary(last_run),
    )
