"""Build dispatch requests from trigger sources and payloads."""

from collections.abc import Mapping
from typing import Any

from .dispatcher import DispatchRequest
from .domain.enums import TriggerEventSource
from .domain.models import (
    AgentRef,
    EventTriggerSource,
    InputDefaults,
    ScheduleSource,
    TriggerEvent,
    TriggerExecuteRequest,
)
from .input_mapping import effective_defaults, map_payload_fields, resolve_trigger_input


def normalize_payload(payload: Any, input_override: str | None = None) -> dict[str, Any]:
    """Coerce a manual-fire payload into an object.

    Objects pass through; otherwise the input override or the bare value is wrapped.
    """
    if isinstance(payload, Mapping):
        return dict(payload)
    if input_override:
        return {"input": input_override}
    if payload is not None:
        return {"value": payload}
    return {}


def schedule_dispatch_request(
    event: TriggerEvent,
    schedule: ScheduleSource,
    agent: AgentRef,
    overrides: TriggerExecuteRequest | None = None,
) -> DispatchRequest:
    """Fire request for a schedule, applying per-run overrides over stored defaults."""
    overrides = overrides or TriggerExecuteRequest()
    defaults = schedule.input_defaults or InputDefaults()

    input_value = overrides.input or defaults.input or f"Scheduled run: {schedule.name}"
    max_steps = overrides.max_steps if overrides.max_steps is not None else defaults.max_steps
    environment = overrides.environment or defaults.environment

    context: dict[str, Any] = {
        **(defaults.context or {}),
        **(overrides.context or {}),
        "scheduleId": str(schedule.id),
        "scheduleName": schedule.name,
    }
    if environment:
        context["environment"] = environment

    return DispatchRequest(
        trigger_event_id=event.id,
        agent_id=agent.id,
        agent_slug=agent.slug,
        trigger_id=schedule.id,
        source_type=TriggerEventSource.SCHEDULE.value,
        trigger_type="scheduled",
        input=input_value,
        context=context,
        max_steps=max_steps,
        environment=environment,
        payload=event.payload,
    )


def trigger_dispatch_request(
    event: TriggerEvent,
    trigger: EventTriggerSource,
    agent: AgentRef,
    payload: Mapping[str, Any],
    overrides: TriggerExecuteRequest | None = None,
) -> DispatchRequest:
    """Fire request for an event trigger.

    Input comes from the override, else from the trigger's input mapping.
    Context layers the mapping defaults, mapped payload fields and the override
    context, then the trigger identity and the payload itself.
    """
    overrides = overrides or TriggerExecuteRequest()
    mapping = trigger.input_mapping
    defaults = effective_defaults(mapping)

    input_value = overrides.input or resolve_trigger_input(
        payload, mapping, defaults, fallback=trigger.name
    )
    max_steps = overrides.max_steps if overrides.max_steps is not None else defaults.max_steps
    environment = overrides.environment or defaults.environment

    context: dict[str, Any] = {
        **(defaults.context or {}),
        **map_payload_fields(payload, mapping),
        **(overrides.context or {}),
        "triggerId": str(trigger.id),
        "triggerName": trigger.name,
        "triggerType": trigger.trigger_type.value,
        "eventName": trigger.event_name,
        "payload": event.payload,
    }
    if environment:
        context["environment"] = environment

    return DispatchRequest(
        trigger_event_id=event.id,
        agent_id=agent.id,
        agent_slug=agent.slug,
        trigger_id=trigger.id,
        source_type=event.source_type.value,
        trigger_type=trigger.trigger_type.value,
        event_name=trigger.event_name,
        input=input_value,
        context=context,
        max_steps=max_steps,
        environment=environment,
        payload=event.payload,
    )
