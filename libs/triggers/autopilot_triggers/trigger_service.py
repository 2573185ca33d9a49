"""Unified trigger administration.

Schedules and event triggers live in different tables but are listed, read,
created, updated, deleted and fired through one surface keyed by unified ids.
"""

import secrets
from collections.abc import Callable
from datetime import datetime
from typing import Any

from autopilot_common.base import utcnow
from autopilot_common.config import (
    DispatchSettings,
    TriggerSettings,
    get_dispatch_settings,
    get_trigger_settings,
)
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .dispatcher import Dispatcher, fire_event
from .domain.enums import (
    DEFAULT_INPUT_TRIGGER_TYPES,
    SCHEDULED_KIND,
    TriggerEventSource,
    TriggerSourceType,
    TriggerType,
)
from .domain.models import (
    AgentRef,
    EventTriggerSource,
    InputDefaults,
    ScheduleSource,
    TriggerCreate,
    TriggerEvent,
    TriggerEventCreate,
    TriggerExecuteRequest,
    TriggerUpdate,
    UnifiedTrigger,
)
from .fire_requests import normalize_payload, schedule_dispatch_request, trigger_dispatch_request
from .identifiers import TriggerRef, decode_trigger_id
from .infrastructure.repository import (
    AgentRepository,
    EventTriggerRepository,
    ScheduleRepository,
    TriggerEventRepository,
)
from .input_mapping import (
    build_config_overrides,
    ensure_valid_input_mapping,
    matches_trigger_filter,
    merge_input_mapping,
    parse_input_mapping,
)
from .logging_utils import (
    FilterMismatch,
    InvalidInputMapping,
    InvalidScheduleConfig,
    SourceNotFound,
    TriggerDisabled,
    TriggerLogger,
    TriggerValidationError,
)
from .schedule_utils import get_next_run_at
from .trigger_events import TriggerEventManager
from .unified_triggers import build_event_trigger, build_schedule_trigger

logger = TriggerLogger(__name__)


class WebhookCredentials(BaseModel):
    """Webhook endpoint and secret, returned once on creation."""

    path: str
    secret: str
    note: str = "Save this secret - it won't be shown again"


class CreatedTrigger(BaseModel):
    """Result of :meth:`TriggerService.create_trigger`."""

    trigger: UnifiedTrigger
    webhook: WebhookCredentials | None = None


def _merge_defaults(existing: InputDefaults | None, overrides: InputDefaults, supplied: set[str]) -> InputDefaults | None:
    """Apply supplied default fields over stored ones; a supplied null clears the field."""
    values = existing.model_dump(exclude_none=True) if existing is not None else {}
    for field in supplied:
        value = getattr(overrides, field)
        if value is None:
            values.pop(field, None)
        else:
            values[field] = value
    merged = InputDefaults.model_validate(values)
    return None if merged.is_empty() else merged


def _config_str(config: dict[str, Any], key: str) -> str | None:
    value = config.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise TriggerValidationError(f"config.{key} must be a string")
    return value


class TriggerService:
    """Administrative operations over unified triggers of one agent."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_manager: TriggerEventManager,
        dispatcher: Dispatcher,
        settings: TriggerSettings | None = None,
        dispatch_settings: DispatchSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.event_manager = event_manager
        self.dispatcher = dispatcher
        self.settings = settings or get_trigger_settings()
        self.dispatch_settings = dispatch_settings or get_dispatch_settings()
        self._clock = clock

    async def _resolve_agent(self, session: AsyncSession, agent_ref: str) -> AgentRef:
        agent = await AgentRepository(session).get_by_id_or_slug(agent_ref)
        if agent is None:
            raise SourceNotFound(f"Agent '{agent_ref}' not found", agent=agent_ref)
        return agent

    async def _get_schedule(self, session: AsyncSession, ref: TriggerRef, agent: AgentRef) -> ScheduleSource:
        schedule = await ScheduleRepository(session).get_schedule(ref.as_uuid(), agent_id=agent.id)
        if schedule is None:
            raise SourceNotFound(f"Schedule '{ref.source_id}' not found", schedule_id=ref.source_id)
        return schedule

    async def _get_trigger(self, session: AsyncSession, ref: TriggerRef, agent: AgentRef) -> EventTriggerSource:
        trigger = await EventTriggerRepository(session).get_trigger(ref.as_uuid(), agent_id=agent.id)
        if trigger is None:
            raise SourceNotFound(f"Trigger '{ref.source_id}' not found", trigger_id=ref.source_id)
        return trigger

    async def list_triggers(self, agent_ref: str) -> list[UnifiedTrigger]:
        """List every schedule and event trigger of an agent, schedules first."""
        async with self._session_factory() as session:
            agent = await self._resolve_agent(session, agent_ref)
            schedules = await ScheduleRepository(session).list_by_agent(agent.id)
            triggers = await EventTriggerRepository(session).list_by_agent(agent.id)
            latest = await TriggerEventRepository(session).latest_for_triggers(
                [s.id for s in schedules] + [t.id for t in triggers]
            )

        return [build_schedule_trigger(s, latest.get(s.id)) for s in schedules] + [
            build_event_trigger(t, agent.slug, latest.get(t.id)) for t in triggers
        ]

    async def get_trigger(self, agent_ref: str, trigger_id: str) -> UnifiedTrigger:
        """Get one unified trigger.

        Raises:
            InvalidTriggerId: If ``trigger_id`` is malformed.
            SourceNotFound: If the agent or source does not exist.
        """
        ref = decode_trigger_id(trigger_id)
        async with self._session_factory() as session:
            agent = await self._resolve_agent(session, agent_ref)
            events = TriggerEventRepository(session)
            if ref.source_type == TriggerSourceType.SCHEDULE:
                schedule = await self._get_schedule(session, ref, agent)
                return build_schedule_trigger(schedule, await events.latest_for_trigger(schedule.id))
            trigger = await self._get_trigger(session, ref, agent)
            return build_event_trigger(trigger, agent.slug, await events.latest_for_trigger(trigger.id))

    async def list_trigger_events(
        self, agent_ref: str, trigger_id: str, limit: int = 50, offset: int = 0
    ) -> list[TriggerEvent]:
        """Audit trail of one trigger, newest first."""
        ref = decode_trigger_id(trigger_id)
        async with self._session_factory() as session:
            agent = await self._resolve_agent(session, agent_ref)
            if ref.source_type == TriggerSourceType.SCHEDULE:
                source_id = (await self._get_schedule(session, ref, agent)).id
            else:
                source_id = (await self._get_trigger(session, ref, agent)).id
        return await self.event_manager.list_events(trigger_id=source_id, limit=limit, offset=offset)

    async def create_trigger(
        self, agent_ref: str, request: TriggerCreate, created_by: str | None = None
    ) -> CreatedTrigger:
        """Create a schedule (``type == "scheduled"``) or an event trigger.

        Raises:
            TriggerValidationError: If the type or configuration is invalid.
            SourceNotFound: If the agent does not exist.
        """
        if request.type == SCHEDULED_KIND:
            return await self._create_schedule(agent_ref, request, created_by)

        try:
            trigger_type = TriggerType(request.type)
        except ValueError as e:
            kinds = ", ".join([SCHEDULED_KIND, *(t.value for t in TriggerType)])
            raise TriggerValidationError(f"Invalid type. Must be one of: {kinds}") from e
        return await self._create_event_trigger(agent_ref, trigger_type, request, created_by)

    async def _create_schedule(
        self, agent_ref: str, request: TriggerCreate, created_by: str | None
    ) -> CreatedTrigger:
        cron_expr = _config_str(request.config, "cronExpr")
        if not cron_expr:
            raise InvalidScheduleConfig("Missing required field: config.cronExpr")
        timezone = _config_str(request.config, "timezone") or self.settings.DEFAULT_TIMEZONE

        # Validate even when created inactive
        next_run_at = get_next_run_at(cron_expr, timezone, self._clock())

        async with self._session_factory() as session, session.begin():
            agent = await self._resolve_agent(session, agent_ref)
            schedule = ScheduleSource(
                agent_id=agent.id,
                workspace_id=agent.workspace_id,
                name=request.name,
                description=request.description,
                cron_expr=cron_expr,
                timezone=timezone,
                input_defaults=request.defaults_overrides(),
                is_active=request.is_active,
                next_run_at=next_run_at if request.is_active else None,
            )
            schedule = await ScheduleRepository(session).create_schedule(schedule, created_by)

        logger.info(f"Created schedule '{schedule.name}'", schedule_id=schedule.id)
        return CreatedTrigger(trigger=build_schedule_trigger(schedule))

    async def _create_event_trigger(
        self,
        agent_ref: str,
        trigger_type: TriggerType,
        request: TriggerCreate,
        created_by: str | None,
    ) -> CreatedTrigger:
        event_name = _config_str(request.config, "eventName")
        if trigger_type == TriggerType.EVENT and not (event_name or "").strip():
            raise InvalidInputMapping("Missing required field: config.eventName")

        candidate = parse_input_mapping(request.input_mapping)
        overrides = build_config_overrides(request.defaults_overrides(), request.environment)
        mapping = None
        if candidate is not None or overrides is not None:
            mapping = merge_input_mapping(
                candidate,
                overrides,
                set_default_field=trigger_type in DEFAULT_INPUT_TRIGGER_TYPES,
            )
        ensure_valid_input_mapping(mapping, trigger_type=trigger_type, event_name=event_name)

        webhook_path = webhook_secret = None
        if trigger_type == TriggerType.WEBHOOK:
            webhook_path = f"trigger_{secrets.token_hex(self.settings.WEBHOOK_PATH_BYTES)}"
            webhook_secret = secrets.token_hex(self.settings.WEBHOOK_SECRET_BYTES)

        async with self._session_factory() as session, session.begin():
            agent = await self._resolve_agent(session, agent_ref)
            trigger = EventTriggerSource(
                agent_id=agent.id,
                workspace_id=agent.workspace_id,
                name=request.name,
                description=request.description,
                trigger_type=trigger_type,
                event_name=event_name,
                webhook_path=webhook_path,
                webhook_secret=webhook_secret,
                filter=request.filter or None,
                input_mapping=mapping,
                is_active=request.is_active,
            )
            trigger = await EventTriggerRepository(session).create_trigger(trigger, created_by)

        logger.info(
            f"Created {trigger_type.value} trigger '{trigger.name}'",
            trigger_id=trigger.id,
            webhook_path=webhook_path,
        )
        webhook = None
        if webhook_path and webhook_secret:
            base_url = self.settings.WEBHOOK_BASE_URL.rstrip("/")
            webhook = WebhookCredentials(path=f"{base_url}/{webhook_path}", secret=webhook_secret)
        return CreatedTrigger(trigger=build_event_trigger(trigger, agent.slug), webhook=webhook)

    async def update_trigger(
        self, agent_ref: str, trigger_id: str, request: TriggerUpdate
    ) -> UnifiedTrigger:
        """Apply a partial update.

        Validation happens before any write; a rejected update leaves the stored
        source unchanged.

        Raises:
            InvalidTriggerId: If ``trigger_id`` is malformed.
            InvalidScheduleConfig: If a new cron expression or timezone is invalid.
            InvalidInputMapping: If the resulting mapping or event name is invalid.
            SourceNotFound: If the agent or source does not exist.
        """
        ref = decode_trigger_id(trigger_id)
        async with self._session_factory() as session, session.begin():
            agent = await self._resolve_agent(session, agent_ref)
            if ref.source_type == TriggerSourceType.SCHEDULE:
                schedule = await self._update_schedule(session, ref, agent, request)
                updated = build_schedule_trigger(schedule)
            else:
                trigger = await self._update_event_trigger(session, ref, agent, request)
                updated = build_event_trigger(trigger, agent.slug)

        logger.info(f"Updated trigger '{updated.name}'", trigger_id=updated.id)
        return updated

    async def _update_schedule(
        self, session: AsyncSession, ref: TriggerRef, agent: AgentRef, request: TriggerUpdate
    ) -> ScheduleSource:
        schedule = await self._get_schedule(session, ref, agent)
        values: dict[str, Any] = {}

        if request.has("name") and request.name is not None:
            values["name"] = request.name
        if request.has("description"):
            values["description"] = request.description

        cron_expr = _config_str(request.config, "cronExpr")
        timezone = _config_str(request.config, "timezone")
        if cron_expr is not None:
            values["cron_expr"] = cron_expr
        if timezone is not None:
            values["timezone"] = timezone

        is_active = schedule.is_active
        if request.has("is_active") and request.is_active is not None:
            is_active = request.is_active
            values["is_active"] = is_active

        supplied_defaults = {"input", "context", "max_steps", "environment"} & request.model_fields_set
        if supplied_defaults:
            merged = _merge_defaults(
                schedule.input_defaults, request.defaults_overrides() or InputDefaults(), supplied_defaults
            )
            values["input_json"] = (
                merged.model_dump(mode="json", by_alias=True, exclude_none=True) if merged else None
            )

        reactivated = is_active and not schedule.is_active
        if cron_expr is not None or timezone is not None or reactivated:
            # Supplied values are validated as given; an empty string never falls back
            effective_cron = cron_expr if cron_expr is not None else schedule.cron_expr
            effective_timezone = (
                timezone
                if timezone is not None
                else schedule.timezone or self.settings.DEFAULT_TIMEZONE
            )
            next_run_at = get_next_run_at(effective_cron, effective_timezone, self._clock())
            if is_active:
                values["next_run_at"] = next_run_at
        if not is_active:
            values["next_run_at"] = None

        updated = await ScheduleRepository(session).update_schedule(schedule.id, **values)
        return updated

    async def _update_event_trigger(
        self, session: AsyncSession, ref: TriggerRef, agent: AgentRef, request: TriggerUpdate
    ) -> EventTriggerSource:
        trigger = await self._get_trigger(session, ref, agent)
        values: dict[str, Any] = {}

        event_name = trigger.event_name
        if "eventName" in request.config:
            event_name = _config_str(request.config, "eventName")
            if trigger.trigger_type == TriggerType.EVENT and not (event_name or "").strip():
                raise InvalidInputMapping("eventName cannot be empty", trigger_id=str(trigger.id))
            values["event_name"] = event_name

        overrides = build_config_overrides(
            request.defaults_overrides(), request.environment if request.has("environment") else None
        )
        mapping = trigger.input_mapping
        if request.has("input_mapping") or overrides is not None:
            candidate = (
                parse_input_mapping(request.input_mapping)
                if request.has("input_mapping")
                else trigger.input_mapping
            )
            mapping = None
            if candidate is not None or overrides is not None:
                mapping = merge_input_mapping(
                    candidate,
                    overrides,
                    set_default_field=trigger.trigger_type in DEFAULT_INPUT_TRIGGER_TYPES,
                )
            values["input_mapping"] = mapping.to_json() if mapping is not None else None
        ensure_valid_input_mapping(mapping, trigger_type=trigger.trigger_type, event_name=event_name)

        if request.has("name") and request.name is not None:
            values["name"] = request.name
        if request.has("description"):
            values["description"] = request.description
        if request.has("filter"):
            values["filter_json"] = request.filter or None
        if request.has("is_active") and request.is_active is not None:
            values["is_active"] = request.is_active

        return await EventTriggerRepository(session).update_trigger(trigger.id, **values)

    async def delete_trigger(self, agent_ref: str, trigger_id: str) -> None:
        """Delete a schedule or event trigger.

        Raises:
            InvalidTriggerId: If ``trigger_id`` is malformed.
            SourceNotFound: If the agent or source does not exist.
        """
        ref = decode_trigger_id(trigger_id)
        async with self._session_factory() as session, session.begin():
            agent = await self._resolve_agent(session, agent_ref)
            if ref.source_type == TriggerSourceType.SCHEDULE:
                schedule = await self._get_schedule(session, ref, agent)
                await ScheduleRepository(session).delete(schedule.id)
            else:
                trigger = await self._get_trigger(session, ref, agent)
                await EventTriggerRepository(session).delete(trigger.id)

        logger.info("Deleted trigger", trigger_id=trigger_id)

    async def execute_trigger(
        self, agent_ref: str, trigger_id: str, request: TriggerExecuteRequest
    ) -> TriggerEvent:
        """Fire a trigger manually with optional per-run overrides.

        A disabled agent or source, or a payload rejected by the trigger filter,
        is recorded as a SKIPPED event before the error is raised.

        Returns:
            The trigger event after dispatch (FIRED or FAILED).

        Raises:
            InvalidTriggerId: If ``trigger_id`` is malformed.
            SourceNotFound: If the agent or source does not exist.
            TriggerDisabled: If the agent or source is inactive.
            FilterMismatch: If the payload does not satisfy the trigger filter.
        """
        ref = decode_trigger_id(trigger_id)
        async with self._session_factory() as session:
            agent = await self._resolve_agent(session, agent_ref)
            if ref.source_type == TriggerSourceType.SCHEDULE:
                source: ScheduleSource | EventTriggerSource = await self._get_schedule(session, ref, agent)
            else:
                source = await self._get_trigger(session, ref, agent)

        if isinstance(source, ScheduleSource):
            return await self._execute_schedule(agent, source, request)
        return await self._execute_event_trigger(agent, source, request)

    async def _execute_schedule(
        self, agent: AgentRef, schedule: ScheduleSource, request: TriggerExecuteRequest
    ) -> TriggerEvent:
        fields = TriggerEventCreate(
            trigger_id=schedule.id,
            agent_id=agent.id,
            workspace_id=schedule.workspace_id,
            source_type=TriggerEventSource.SCHEDULE,
            trigger_type=SCHEDULED_KIND,
            payload=normalize_payload(request.payload, request.input),
        )
        await self._reject_if_disabled(fields, agent, schedule.is_active, "Schedule")

        async with self._session_factory() as session, session.begin():
            event = await self.event_manager.create_event(fields, session=session)
            await ScheduleRepository(session).record_manual_run(schedule.id, self._clock())

        dispatch_request = schedule_dispatch_request(event, schedule, agent, request)
        return await fire_event(
            self.event_manager,
            self.dispatcher,
            event,
            dispatch_request,
            timeout=self.dispatch_settings.DISPATCH_TIMEOUT_SECONDS,
        )

    async def _execute_event_trigger(
        self, agent: AgentRef, trigger: EventTriggerSource, request: TriggerExecuteRequest
    ) -> TriggerEvent:
        payload = normalize_payload(request.payload, request.input)
        fields = TriggerEventCreate(
            trigger_id=trigger.id,
            agent_id=agent.id,
            workspace_id=trigger.workspace_id,
            source_type=TriggerEventSource.TRIGGER,
            trigger_type=trigger.trigger_type.value,
            event_name=trigger.event_name,
            payload=payload,
        )
        await self._reject_if_disabled(fields, agent, trigger.is_active, "Trigger")

        if not matches_trigger_filter(payload, trigger.filter):
            await self.event_manager.record_skipped(fields, "Trigger filter did not match payload")
            raise FilterMismatch("Trigger filter did not match payload", trigger_id=str(trigger.id))

        async with self._session_factory() as session, session.begin():
            event = await self.event_manager.create_event(fields, session=session)
            await EventTriggerRepository(session).record_fire(trigger.id, self._clock())

        dispatch_request = trigger_dispatch_request(event, trigger, agent, payload, request)
        return await fire_event(
            self.event_manager,
            self.dispatcher,
            event,
            dispatch_request,
            timeout=self.dispatch_settings.DISPATCH_TIMEOUT_SECONDS,
        )

    async def _reject_if_disabled(
        self, fields: TriggerEventCreate, agent: AgentRef, source_active: bool, label: str
    ) -> None:
        reason = None
        if not agent.is_active:
            reason = f"Agent '{agent.slug}' is disabled"
        elif not source_active:
            reason = f"{label} is disabled"
        if reason is None:
            return
        await self.event_manager.record_skipped(fields, reason)
        raise TriggerDisabled(reason, trigger_id=str(fields.trigger_id))

