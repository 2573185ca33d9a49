"""Trigger domain models."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .enums import (
    TriggerEventSource,
    TriggerEventStatus,
    TriggerSourceType,
    TriggerType,
)


class CamelModel(BaseModel):
    """Model accepting both snake_case and camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# Input defaults and mapping


class InputDefaults(CamelModel):
    """Canonical defaults applied when a trigger fires."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        extra="allow",
    )

    input: str | None = None
    context: dict[str, Any] | None = None
    max_steps: int | None = Field(default=None, gt=0)
    environment: str | None = None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class FieldMapping(CamelModel):
    """Copy the value at ``source`` in the payload into the dispatched context key ``target``."""

    source: str
    target: str


class TriggerConfig(CamelModel):
    """Configuration block nested inside an input mapping."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        extra="allow",
    )

    defaults: InputDefaults | None = None
    environment: str | None = None


class InputMapping(CamelModel):
    """How an event payload becomes agent input.

    Unknown keys are kept so a merge never drops configuration it does not model.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        extra="allow",
    )

    template: str | None = None
    field: str | None = None
    fields: list[FieldMapping] | None = None
    default_input: str | None = None
    config: TriggerConfig | None = None

    def to_json(self) -> dict[str, Any]:
        """Serialize for storage, omitting unset fields."""
        return self.model_dump(mode="json", exclude_none=True)


# Sources


class ScheduleSource(BaseModel):
    """Cron-backed trigger source."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    agent_id: UUID
    workspace_id: str | None = None
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    cron_expr: str = Field(..., min_length=1)
    timezone: str = "UTC"
    input_defaults: InputDefaults | None = None
    is_active: bool = True
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    run_count: int = Field(default=0, ge=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class EventTriggerSource(BaseModel):
    """Event-backed trigger source (webhook, integration event, API, manual...)."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    agent_id: UUID
    workspace_id: str | None = None
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    trigger_type: TriggerType
    event_name: str | None = None
    webhook_path: str | None = None
    webhook_secret: str | None = Field(default=None, repr=False)
    filter: dict[str, Any] | None = None
    input_mapping: InputMapping | None = None
    is_active: bool = True
    last_triggered_at: datetime | None = None
    trigger_count: int = Field(default=0, ge=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def validate_event_name(self) -> "EventTriggerSource":
        """Event triggers are matched by name, so the name is mandatory."""
        if self.trigger_type == TriggerType.EVENT and not (self.event_name or "").strip():
            raise ValueError("eventName is required for event triggers")
        return self


# Read projection


class TriggerRunSummary(CamelModel):
    """Most recent trigger event recorded for a source."""

    id: UUID
    status: TriggerEventStatus
    received_at: datetime | None = None
    updated_at: datetime | None = None
    error_message: str | None = None


class UnifiedTrigger(CamelModel):
    """Read-time projection over a schedule or an event trigger; never stored."""

    id: str
    source_id: UUID
    source_type: TriggerSourceType
    kind: str
    name: str
    description: str | None = None
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    input_defaults: InputDefaults | None = None
    filter: dict[str, Any] | None = None
    input_mapping: InputMapping | None = None
    stats: dict[str, Any] = Field(default_factory=dict)
    last_run: TriggerRunSummary | None = None


# Audit records


class TriggerEvent(BaseModel):
    """Durable audit record of one candidate firing."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    trigger_id: UUID | None = None
    agent_id: UUID | None = None
    workspace_id: str | None = None
    status: TriggerEventStatus
    source_type: TriggerEventSource
    trigger_type: str | None = None
    integration_key: str | None = None
    integration_id: UUID | None = None
    event_name: str | None = None
    external_id: str | None = None
    payload: Any = None
    error_message: str | None = None
    workflow_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TriggerEventCreate(BaseModel):
    """Fields supplied when registering a trigger event."""

    trigger_id: UUID | None = None
    agent_id: UUID | None = None
    workspace_id: str | None = None
    status: TriggerEventStatus = TriggerEventStatus.RECEIVED
    source_type: TriggerEventSource
    trigger_type: str | None = None
    integration_key: str | None = None
    integration_id: UUID | None = None
    event_name: str | None = None
    external_id: str | None = None
    payload: Any = None
    error_message: str | None = None


# External collaborators


class AgentRef(BaseModel):
    """The slice of an agent the trigger engine needs."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    slug: str
    name: str | None = None
    workspace_id: str | None = None
    is_active: bool = True


class BusinessHours(BaseModel):
    """Business hours window evaluated in a reference timezone."""

    start_hour: int = Field(default=9, ge=0, le=23)
    end_hour: int = Field(default=17, ge=1, le=24)
    days: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @model_validator(mode="after")
    def validate_window(self) -> "BusinessHours":
        if self.end_hour <= self.start_hour:
            raise ValueError("end_hour must be after start_hour")
        return self


class IntegrationConnection(BaseModel):
    """Local record of a connected upstream account."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider_key: str
    external_account: str
    agent_id: UUID | None = None
    workspace_id: str | None = None
    organization_id: str | None = None
    is_active: bool = True
    internal_domains: list[str] = Field(default_factory=list)
    business_hours: BusinessHours | None = None

    @property
    def connection_key(self) -> str:
        return f"{self.provider_key}:{self.id}"


class IntegrationCursor(BaseModel):
    """Persisted provider cursor for one connection."""

    model_config = ConfigDict(from_attributes=True)

    connection_key: str
    cursor_value: str | None = None
    pending_cursor_value: str | None = None
    catchup_pending: bool = False
    rate_limited_at: datetime | None = None
    version: int = 0
    updated_at: datetime | None = None


class EmailMessageRecord(BaseModel):
    """Durable mirror of an ingested email, unique per connection and provider id."""

    model_config = ConfigDict(from_attributes=True)

    connection_id: UUID
    external_message_id: str
    workspace_id: str | None = None
    thread_id: str | None = None
    subject: str | None = None
    from_address: str | None = None
    to_addresses: list[str] = Field(default_factory=list)
    snippet: str | None = None
    labels: list[str] = Field(default_factory=list)
    received_at: datetime | None = None
    is_internal: bool = False
    is_forwarded: bool = False
    is_important: bool = False
    within_business_hours: bool = False
    has_attachments: bool = False
    last_trigger_event_id: UUID | None = None
    delivery_count: int = 1


# Administrative requests


class TriggerCreate(CamelModel):
    """Create a schedule or an event trigger through the unified surface."""

    type: str
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    input: str | None = None
    context: dict[str, Any] | None = None
    max_steps: int | None = Field(default=None, gt=0)
    environment: str | None = None
    filter: dict[str, Any] | None = None
    input_mapping: Any = None
    is_active: bool = True

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate trigger name."""
        if not v.strip():
            raise ValueError("Trigger name cannot be empty")
        return v.strip()

    def defaults_overrides(self) -> InputDefaults | None:
        return _defaults_from_fields(self)


class TriggerUpdate(CamelModel):
    """Partial update; only fields present in the request are applied."""

    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    input: str | None = None
    context: dict[str, Any] | None = None
    max_steps: int | None = Field(default=None, gt=0)
    environment: str | None = None
    filter: dict[str, Any] | None = None
    input_mapping: Any = None
    is_active: bool | None = None

    def has(self, field: str) -> bool:
        """Whether ``field`` was supplied in the request (even as null)."""
        return field in self.model_fields_set

    def defaults_overrides(self) -> InputDefaults | None:
        return _defaults_from_fields(self)


class TriggerExecuteRequest(CamelModel):
    """Manual fire with optional per-run overrides."""

    payload: Any = None
    input: str | None = None
    context: dict[str, Any] | None = None
    max_steps: int | None = Field(default=None, gt=0)
    environment: str | None = None


def _defaults_from_fields(request: TriggerCreate | TriggerUpdate) -> InputDefaults | None:
    """Collect input/context/max_steps/environment when any of them was supplied."""
    supplied = {"input", "context", "max_steps", "environment"} & request.model_fields_set
    if not supplied:
        return None
    return InputDefaults.model_validate(
        {name: getattr(request, name) for name in supplied if getattr(request, name) is not None}
    )
