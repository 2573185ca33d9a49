"""Unified execution trigger endpoints.

Schedules and event triggers of an agent are managed through one resource,
addressed by ``<schedule|trigger>:<uuid>`` identifiers.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from autopilot_triggers.domain.enums import TriggerEventStatus
from autopilot_triggers.domain.models import (
    CamelModel,
    TriggerCreate,
    TriggerEvent,
    TriggerExecuteRequest,
    TriggerUpdate,
    UnifiedTrigger,
)
from fastapi import APIRouter, Query, Response, status

from ..deps import TriggerServiceDep

router = APIRouter(prefix="/agents/{agent_id}/execution-triggers", tags=["triggers"])


class TriggerEventResponse(CamelModel):
    id: UUID
    trigger_id: UUID | None = None
    status: TriggerEventStatus
    source_type: str
    trigger_type: str | None = None
    event_name: str | None = None
    workflow_id: str | None = None
    error_message: str | None = None
    payload: Any = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_event(cls, event: TriggerEvent) -> "TriggerEventResponse":
        return cls.model_validate(event.model_dump())


def _serialize(trigger: UnifiedTrigger) -> dict[str, Any]:
    return trigger.model_dump(mode="json", by_alias=True)


def _serialize_event(event: TriggerEvent) -> dict[str, Any]:
    return TriggerEventResponse.from_event(event).model_dump(mode="json", by_alias=True)


@router.get("")
async def list_triggers(agent_id: str, trigger_service: TriggerServiceDep) -> dict[str, Any]:
    """List every schedule and event trigger of an agent."""
    triggers = await trigger_service.list_triggers(agent_id)
    return {"triggers": [_serialize(trigger) for trigger in triggers]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_trigger(
    agent_id: str, request: TriggerCreate, trigger_service: TriggerServiceDep
) -> dict[str, Any]:
    """Create a schedule (``type: scheduled``) or an event trigger.

    Webhook triggers return their path and secret once.
    """
    created = await trigger_service.create_trigger(agent_id, request)
    body: dict[str, Any] = {"trigger": _serialize(created.trigger)}
    if created.webhook is not None:
        body["webhook"] = created.webhook.model_dump()
    return body


@router.get("/{trigger_id}")
async def get_trigger(
    agent_id: str, trigger_id: str, trigger_service: TriggerServiceDep
) -> dict[str, Any]:
    trigger = await trigger_service.get_trigger(agent_id, trigger_id)
    return {"trigger": _serialize(trigger)}


@router.patch("/{trigger_id}")
async def update_trigger(
    agent_id: str, trigger_id: str, request: TriggerUpdate, trigger_service: TriggerServiceDep
) -> dict[str, Any]:
    """Partially update a trigger; only supplied fields change."""
    trigger = await trigger_service.update_trigger(agent_id, trigger_id, request)
    return {"trigger": _serialize(trigger)}


@router.delete("/{trigger_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_trigger(
    agent_id: str, trigger_id: str, trigger_service: TriggerServiceDep
) -> Response:
    await trigger_service.delete_trigger(agent_id, trigger_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{trigger_id}/execute")
async def execute_trigger(
    agent_id: str,
    trigger_id: str,
    trigger_service: TriggerServiceDep,
    request: TriggerExecuteRequest | None = None,
) -> dict[str, Any]:
    """Fire a trigger now with optional input, context, step and environment overrides."""
    event = await trigger_service.execute_trigger(
        agent_id, trigger_id, request or TriggerExecuteRequest()
    )
    return {"event": _serialize_event(event)}


@router.get("/{trigger_id}/events")
async def list_trigger_events(
    agent_id: str,
    trigger_id: str,
    trigger_service: TriggerServiceDep,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> dict[str, Any]:
    """Audit trail of a trigger, newest first."""
    events = await trigger_service.list_trigger_events(agent_id, trigger_id, limit, offset)
    return {"events": [_serialize_event(event) for event in events]}
