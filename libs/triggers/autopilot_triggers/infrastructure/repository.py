"""Trigger repository implementations."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from autopilot_common.base import BaseRepository, ensure_utc, utcnow
from pydantic import ValidationError
from sqlalchemy import and_, desc, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.enums import TriggerEventSource, TriggerEventStatus, TriggerType
from ..domain.models import (
    AgentRef,
    BusinessHours,
    EmailMessageRecord,
    EventTriggerSource,
    IntegrationConnection,
    IntegrationCursor,
    ScheduleSource,
    TriggerEvent,
    TriggerEventCreate,
)
from ..input_mapping import extract_defaults, extract_input_mapping
from ..logging_utils import TriggerLogger
from .orm import (
    AgentORM,
    AgentScheduleORM,
    AgentTriggerORM,
    EmailMessageORM,
    IntegrationConnectionORM,
    IntegrationCursorORM,
    TriggerEventORM,
)

logger = TriggerLogger(__name__)


def _dialect_insert(session: AsyncSession, model: type) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upserts are not supported on {dialect}")


class AgentRepository(BaseRepository[AgentORM]):
    """Read access to agents for trigger resolution."""

    model_class = AgentORM

    async def get_agent(self, agent_id: UUID) -> AgentRef | None:
        agent_orm = await self.get_by_id(agent_id)
        return AgentRef.model_validate(agent_orm) if agent_orm else None

    async def get_by_id_or_slug(self, value: str) -> AgentRef | None:
        """Resolve an agent from either its UUID or its slug."""
        try:
            agent_id = UUID(value)
        except ValueError:
            agent_id = None

        condition = AgentORM.slug == value
        if agent_id is not None:
            condition = or_(AgentORM.id == agent_id, condition)

        result = await self.session.execute(select(AgentORM).where(condition).limit(1))
        agent_orm = result.scalar_one_or_none()
        return AgentRef.model_validate(agent_orm) if agent_orm else None


class ScheduleRepository(BaseRepository[AgentScheduleORM]):
    """Repository for schedule sources."""

    model_class = AgentScheduleORM

    async def get_schedule(self, schedule_id: UUID, agent_id: UUID | None = None) -> ScheduleSource | None:
        """Get a schedule, optionally scoped to an agent."""
        schedule_orm = await self.get_by_id(schedule_id)
        if schedule_orm is None or (agent_id is not None and schedule_orm.agent_id != agent_id):
            return None
        return self._orm_to_domain(schedule_orm)

    async def list_by_agent(self, agent_id: UUID, limit: int = 100) -> list[ScheduleSource]:
        schedule_orms = await self.list_where(
            AgentScheduleORM.agent_id == agent_id,
            order_by=desc(AgentScheduleORM.created_at),
            limit=limit,
        )
        return [self._orm_to_domain(schedule_orm) for schedule_orm in schedule_orms]

    async def create_schedule(self, schedule: ScheduleSource, created_by: str | None = None) -> ScheduleSource:
        """Create a schedule from the domain model."""
        schedule_orm = AgentScheduleORM(
            id=schedule.id,
            agent_id=schedule.agent_id,
            workspace_id=schedule.workspace_id,
            name=schedule.name,
            description=schedule.description,
            cron_expr=schedule.cron_expr,
            timezone=schedule.timezone,
            input_json=(
                schedule.input_defaults.model_dump(mode="json", by_alias=True, exclude_none=True)
                if schedule.input_defaults is not None
                else None
            ),
            is_active=schedule.is_active,
            next_run_at=schedule.next_run_at,
            last_run_at=schedule.last_run_at,
            run_count=schedule.run_count,
            created_by=created_by,
        )
        schedule_orm = await self.add(schedule_orm)
        return self._orm_to_domain(schedule_orm)

    async def update_schedule(self, schedule_id: UUID, **values: Any) -> ScheduleSource | None:
        """Apply column updates in the current transaction."""
        schedule_orm = await self.get_by_id(schedule_id)
        if schedule_orm is None:
            return None
        for key, value in values.items():
            setattr(schedule_orm, key, value)
        schedule_orm.updated_at = utcnow()
        await self.session.flush()
        return self._orm_to_domain(schedule_orm)

    async def list_due(self, now: datetime, limit: int = 100) -> list[ScheduleSource]:
        """Active schedules whose next run is at or before ``now``."""
        schedule_orms = await self.list_where(
            AgentScheduleORM.is_active.is_(True),
            AgentScheduleORM.next_run_at.is_not(None),
            AgentScheduleORM.next_run_at <= now,
            order_by=AgentScheduleORM.next_run_at,
            limit=limit,
        )
        return [self._orm_to_domain(schedule_orm) for schedule_orm in schedule_orms]

    async def claim_due(
        self,
        schedule_id: UUID,
        observed_next_run_at: datetime,
        fired_at: datetime,
        next_run_at: datetime,
    ) -> bool:
        """Record a firing only if the schedule still has the observed next run.

        A concurrent configuration change rewrites ``next_run_at`` (or
        deactivates the schedule), in which case the claim matches no row.
        """
        stmt = (
            update(AgentScheduleORM)
            .where(
                and_(
                    AgentScheduleORM.id == schedule_id,
                    AgentScheduleORM.is_active.is_(True),
                    AgentScheduleORM.next_run_at == observed_next_run_at,
                )
            )
            .values(
                last_run_at=fired_at,
                next_run_at=next_run_at,
                run_count=AgentScheduleORM.run_count + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def park(self, schedule_id: UUID, observed_next_run_at: datetime) -> bool:
        """Clear ``next_run_at`` of a schedule whose stored configuration cannot be evaluated."""
        stmt = (
            update(AgentScheduleORM)
            .where(
                and_(
                    AgentScheduleORM.id == schedule_id,
                    AgentScheduleORM.next_run_at == observed_next_run_at,
                )
            )
            .values(next_run_at=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def record_manual_run(self, schedule_id: UUID, fired_at: datetime) -> None:
        stmt = (
            update(AgentScheduleORM)
            .where(AgentScheduleORM.id == schedule_id)
            .values(
                last_run_at=fired_at,
                run_count=AgentScheduleORM.run_count + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    def _orm_to_domain(self, schedule_orm: AgentScheduleORM) -> ScheduleSource:
        """Convert ORM model to domain model."""
        defaults = extract_defaults(schedule_orm.input_json)
        return ScheduleSource(
            id=schedule_orm.id,
            agent_id=schedule_orm.agent_id,
            workspace_id=schedule_orm.workspace_id,
            name=schedule_orm.name,
            description=schedule_orm.description,
            cron_expr=schedule_orm.cron_expr,
            timezone=schedule_orm.timezone or "UTC",
            input_defaults=None if defaults.is_empty() else defaults,
            is_active=schedule_orm.is_active,
            last_run_at=ensure_utc(schedule_orm.last_run_at),
            next_run_at=ensure_utc(schedule_orm.next_run_at),
            run_count=schedule_orm.run_count or 0,
            created_at=ensure_utc(schedule_orm.created_at),
            updated_at=ensure_utc(schedule_orm.updated_at),
        )


class EventTriggerRepository(BaseRepository[AgentTriggerORM]):
    """Repository for event trigger sources."""

    model_class = AgentTriggerORM

    async def get_trigger(self, trigger_id: UUID, agent_id: UUID | None = None) -> EventTriggerSource | None:
        """Get a trigger, optionally scoped to an agent."""
        trigger_orm = await self.get_by_id(trigger_id)
        if trigger_orm is None or (agent_id is not None and trigger_orm.agent_id != agent_id):
            return None
        return self._orm_to_domain(trigger_orm)

    async def list_by_agent(self, agent_id: UUID, limit: int = 100) -> list[EventTriggerSource]:
        trigger_orms = await self.list_where(
            AgentTriggerORM.agent_id == agent_id,
            order_by=desc(AgentTriggerORM.created_at),
            limit=limit,
        )
        return [self._orm_to_domain(trigger_orm) for trigger_orm in trigger_orms]

    async def get_by_webhook_path(self, webhook_path: str) -> EventTriggerSource | None:
        result = await self.session.execute(
            select(AgentTriggerORM).where(AgentTriggerORM.webhook_path == webhook_path)
        )
        trigger_orm = result.scalar_one_or_none()
        return self._orm_to_domain(trigger_orm) if trigger_orm else None

    async def find_event_triggers(
        self, agent_id: UUID, event_name: str, active_only: bool = True
    ) -> list[EventTriggerSource]:
        """Event triggers of an agent listening for ``event_name``."""
        conditions = [
            AgentTriggerORM.agent_id == agent_id,
            AgentTriggerORM.trigger_type == TriggerType.EVENT.value,
            AgentTriggerORM.event_name == event_name,
        ]
        if active_only:
            conditions.append(AgentTriggerORM.is_active.is_(True))
        trigger_orms = await self.list_where(*conditions, order_by=AgentTriggerORM.created_at)
        return [self._orm_to_domain(trigger_orm) for trigger_orm in trigger_orms]

    async def create_trigger(self, trigger: EventTriggerSource, created_by: str | None = None) -> EventTriggerSource:
        """Create a trigger from the domain model."""
        trigger_orm = AgentTriggerORM(
            id=trigger.id,
            agent_id=trigger.agent_id,
            workspace_id=trigger.workspace_id,
            name=trigger.name,
            description=trigger.description,
            trigger_type=trigger.trigger_type.value,
            event_name=trigger.event_name,
            webhook_path=trigger.webhook_path,
            webhook_secret=trigger.webhook_secret,
            filter_json=trigger.filter,
            input_mapping=trigger.input_mapping.to_json() if trigger.input_mapping else None,
            is_active=trigger.is_active,
            trigger_count=trigger.trigger_count,
            created_by=created_by,
        )
        trigger_orm = await self.add(trigger_orm)
        return self._orm_to_domain(trigger_orm)

    async def update_trigger(self, trigger_id: UUID, **values: Any) -> EventTriggerSource | None:
        """Apply column updates in the current transaction."""
        trigger_orm = await self.get_by_id(trigger_id)
        if trigger_orm is None:
            return None
        for key, value in values.items():
            setattr(trigger_orm, key, value)
        trigger_orm.updated_at = utcnow()
        await self.session.flush()
        return self._orm_to_domain(trigger_orm)

    async def record_fire(self, trigger_id: UUID, fired_at: datetime) -> None:
        """Bump ``trigger_count`` and ``last_triggered_at``."""
        stmt = (
            update(AgentTriggerORM)
            .where(AgentTriggerORM.id == trigger_id)
            .values(
                last_triggered_at=fired_at,
                trigger_count=AgentTriggerORM.trigger_count + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    def _orm_to_domain(self, trigger_orm: AgentTriggerORM) -> EventTriggerSource:
        """Convert ORM model to domain model."""
        return EventTriggerSource(
            id=trigger_orm.id,
            agent_id=trigger_orm.agent_id,
            workspace_id=trigger_orm.workspace_id,
            name=trigger_orm.name,
            description=trigger_orm.description,
            trigger_type=TriggerType(trigger_orm.trigger_type),
            event_name=trigger_orm.event_name,
            webhook_path=trigger_orm.webhook_path,
            webhook_secret=trigger_orm.webhook_secret,
            filter=trigger_orm.filter_json if isinstance(trigger_orm.filter_json, dict) else None,
            input_mapping=extract_input_mapping(trigger_orm.input_mapping),
            is_active=trigger_orm.is_active,
            last_triggered_at=ensure_utc(trigger_orm.last_triggered_at),
            trigger_count=trigger_orm.trigger_count or 0,
            created_at=ensure_utc(trigger_orm.created_at),
            updated_at=ensure_utc(trigger_orm.updated_at),
        )


class TriggerEventRepository(BaseRepository[TriggerEventORM]):
    """Repository for trigger event audit records."""

    model_class = TriggerEventORM

    async def create_event(self, event: TriggerEventCreate) -> TriggerEvent:
        """Insert an event; ``event.payload`` must already be a snapshot."""
        event_orm = TriggerEventORM(
            id=uuid4(),
            trigger_id=event.trigger_id,
            agent_id=event.agent_id,
            workspace_id=event.workspace_id,
            status=event.status.value,
            source_type=event.source_type.value,
            trigger_type=event.trigger_type,
            integration_key=event.integration_key,
            integration_id=event.integration_id,
            event_name=event.event_name,
            external_id=event.external_id,
            payload=event.payload,
            error_message=event.error_message,
        )
        event_orm = await self.add(event_orm)
        return self._orm_to_domain(event_orm)

    async def get_event(self, event_id: UUID) -> TriggerEvent | None:
        event_orm = await self.session.get(TriggerEventORM, event_id, populate_existing=True)
        return self._orm_to_domain(event_orm) if event_orm else None

    async def transition(
        self,
        event_id: UUID,
        target: TriggerEventStatus,
        error_message: str | None = None,
        workflow_id: str | None = None,
    ) -> bool:
        """Move an event to ``target`` only if its current status allows it."""
        values: dict[str, Any] = {"status": target.value, "updated_at": utcnow()}
        if error_message is not None:
            values["error_message"] = error_message
        if workflow_id is not None:
            values["workflow_id"] = workflow_id

        predecessors = [status.value for status in TriggerEventStatus.predecessors_of(target)]
        stmt = (
            update(TriggerEventORM)
            .where(
                and_(
                    TriggerEventORM.id == event_id,
                    TriggerEventORM.status.in_(predecessors),
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def list_events(
        self,
        trigger_id: UUID | None = None,
        agent_id: UUID | None = None,
        integration_id: UUID | None = None,
        status: TriggerEventStatus | None = None,
        source_type: TriggerEventSource | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[TriggerEvent]:
        """List events newest first with optional filters."""
        conditions = []
        if trigger_id is not None:
            conditions.append(TriggerEventORM.trigger_id == trigger_id)
        if agent_id is not None:
            conditions.append(TriggerEventORM.agent_id == agent_id)
        if integration_id is not None:
            conditions.append(TriggerEventORM.integration_id == integration_id)
        if status is not None:
            conditions.append(TriggerEventORM.status == status.value)
        if source_type is not None:
            conditions.append(TriggerEventORM.source_type == source_type.value)

        stmt = select(TriggerEventORM)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = stmt.order_by(desc(TriggerEventORM.created_at)).offset(offset).limit(limit)
        result = await self.session.execute(stmt)
        return [self._orm_to_domain(event_orm) for event_orm in result.scalars().all()]

    async def latest_for_trigger(self, trigger_id: UUID) -> TriggerEvent | None:
        events = await self.list_events(trigger_id=trigger_id, limit=1)
        return events[0] if events else None

    async def has_fired(self, trigger_id: UUID, integration_id: UUID, external_id: str) -> bool:
        """Whether an upstream item already started a run for this trigger."""
        stmt = select(TriggerEventORM.id).where(
            and_(
                TriggerEventORM.trigger_id == trigger_id,
                TriggerEventORM.integration_id == integration_id,
                TriggerEventORM.external_id == external_id,
                TriggerEventORM.status == TriggerEventStatus.FIRED.value,
            )
        )
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none() is not None

    async def latest_for_triggers(self, trigger_ids: list[UUID]) -> dict[UUID, TriggerEvent]:
        """Most recent event per trigger id."""
        if not trigger_ids:
            return {}
        latest = (
            select(
                TriggerEventORM.trigger_id,
                func.max(TriggerEventORM.created_at).label("created_at"),
            )
            .where(TriggerEventORM.trigger_id.in_(trigger_ids))
            .group_by(TriggerEventORM.trigger_id)
            .subquery()
        )
        stmt = select(TriggerEventORM).join(
            latest,
            and_(
                TriggerEventORM.trigger_id == latest.c.trigger_id,
                TriggerEventORM.created_at == latest.c.created_at,
            ),
        )
        result = await self.session.execute(stmt)
        events: dict[UUID, TriggerEvent] = {}
        for event_orm in result.scalars().all():
            events[event_orm.trigger_id] = self._orm_to_domain(event_orm)
        return events

    def _orm_to_domain(self, event_orm: TriggerEventORM) -> TriggerEvent:
        """Convert ORM model to domain model."""
        return TriggerEvent(
            id=event_orm.id,
            trigger_id=event_orm.trigger_id,
            agent_id=event_orm.agent_id,
            workspace_id=event_orm.workspace_id,
            status=TriggerEventStatus(event_orm.status),
            source_type=TriggerEventSource(event_orm.source_type),
            trigger_type=event_orm.trigger_type,
            integration_key=event_orm.integration_key,
            integration_id=event_orm.integration_id,
            event_name=event_orm.event_name,
            external_id=event_orm.external_id,
            payload=event_orm.payload,
            error_message=event_orm.error_message,
            workflow_id=event_orm.workflow_id,
            created_at=ensure_utc(event_orm.created_at),
            updated_at=ensure_utc(event_orm.updated_at),
        )


class IntegrationConnectionRepository(BaseRepository[IntegrationConnectionORM]):
    """Repository for connected upstream accounts."""

    model_class = IntegrationConnectionORM

    async def get_connection(self, connection_id: UUID) -> IntegrationConnection | None:
        connection_orm = await self.get_by_id(connection_id)
        return self._orm_to_domain(connection_orm) if connection_orm else None

    async def get_by_account(self, provider_key: str, external_account: str) -> IntegrationConnection | None:
        """Find the connection for a provider account; account matching is case-insensitive."""
        stmt = select(IntegrationConnectionORM).where(
            and_(
                IntegrationConnectionORM.provider_key == provider_key,
                func.lower(IntegrationConnectionORM.external_account) == external_account.lower(),
            )
        )
        result = await self.session.execute(stmt.limit(1))
        connection_orm = result.scalar_one_or_none()
        return self._orm_to_domain(connection_orm) if connection_orm else None

    async def get_access_token(self, connection_id: UUID) -> str | None:
        result = await self.session.execute(
            select(IntegrationConnectionORM.access_token).where(
                IntegrationConnectionORM.id == connection_id
            )
        )
        return result.scalar_one_or_none()

    def _orm_to_domain(self, connection_orm: IntegrationConnectionORM) -> IntegrationConnection:
        """Convert ORM model to domain model."""
        business_hours = None
        if connection_orm.business_hours:
            try:
                business_hours = BusinessHours.model_validate(connection_orm.business_hours)
            except ValidationError as e:
                # Unusable settings fall back to the service-wide business hours
                logger.warning(
                    f"Ignoring invalid business hours of connection {connection_orm.id}: {e}"
                )
        return IntegrationConnection(
            id=connection_orm.id,
            provider_key=connection_orm.provider_key,
            external_account=connection_orm.external_account,
            agent_id=connection_orm.agent_id,
            workspace_id=connection_orm.workspace_id,
            organization_id=connection_orm.organization_id,
            is_active=connection_orm.is_active,
            internal_domains=[d.lower() for d in connection_orm.internal_domains or []],
            business_hours=business_hours,
        )


class CursorRepository(BaseRepository[IntegrationCursorORM]):
    """Persisted provider cursors with optimistic updates."""

    model_class = IntegrationCursorORM

    async def get_cursor(self, connection_key: str) -> IntegrationCursor | None:
        stmt = select(IntegrationCursorORM).where(
            IntegrationCursorORM.connection_key == connection_key
        )
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        cursor_orm = result.scalar_one_or_none()
        return self._orm_to_domain(cursor_orm) if cursor_orm else None

    async def create_baseline(self, connection_key: str, cursor_value: str) -> bool:
        """Store the first cursor for a connection.

        Returns ``False`` when another writer stored a cursor first.
        """
        now = utcnow()
        stmt = (
            _dialect_insert(self.session, IntegrationCursorORM)
            .values(
                id=uuid4(),
                connection_key=connection_key,
                cursor_value=cursor_value,
                catchup_pending=False,
                version=1,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["connection_key"])
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def compare_and_set(
        self,
        connection_key: str,
        expected: str | None,
        new_value: str,
        clear_pending: bool = True,
    ) -> bool:
        """Advance the cursor only if it still equals ``expected``."""
        cursor_condition = (
            IntegrationCursorORM.cursor_value.is_(None)
            if expected is None
            else IntegrationCursorORM.cursor_value == expected
        )
        values: dict[str, Any] = {
            "cursor_value": new_value,
            "version": IntegrationCursorORM.version + 1,
            "updated_at": utcnow(),
        }
        if clear_pending:
            values.update(pending_cursor_value=None, catchup_pending=False, rate_limited_at=None)

        stmt = (
            update(IntegrationCursorORM)
            .where(and_(IntegrationCursorORM.connection_key == connection_key, cursor_condition))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def mark_catchup(
        self,
        connection_key: str,
        pending_cursor_value: str,
        rate_limited_at: datetime | None = None,
    ) -> bool:
        """Flag a connection whose delta was deferred, remembering the notified cursor."""
        values: dict[str, Any] = {
            "pending_cursor_value": pending_cursor_value,
            "catchup_pending": True,
            "updated_at": utcnow(),
        }
        if rate_limited_at is not None:
            values["rate_limited_at"] = rate_limited_at
        stmt = (
            update(IntegrationCursorORM)
            .where(IntegrationCursorORM.connection_key == connection_key)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def list_catchup_pending(self, limit: int = 100) -> list[IntegrationCursor]:
        cursor_orms = await self.list_where(
            IntegrationCursorORM.catchup_pending.is_(True),
            order_by=IntegrationCursorORM.updated_at,
            limit=limit,
        )
        return [self._orm_to_domain(cursor_orm) for cursor_orm in cursor_orms]

    def _orm_to_domain(self, cursor_orm: IntegrationCursorORM) -> IntegrationCursor:
        """Convert ORM model to domain model."""
        return IntegrationCursor(
            connection_key=cursor_orm.connection_key,
            cursor_value=cursor_orm.cursor_value,
            pending_cursor_value=cursor_orm.pending_cursor_value,
            catchup_pending=cursor_orm.catchup_pending,
            rate_limited_at=ensure_utc(cursor_orm.rate_limited_at),
            version=cursor_orm.version,
            updated_at=ensure_utc(cursor_orm.updated_at),
        )


class EmailMessageRepository(BaseRepository[EmailMessageORM]):
    """Idempotent mirror of ingested email messages."""

    model_class = EmailMessageORM

    _UPDATABLE_COLUMNS = (
        "thread_id",
        "subject",
        "from_address",
        "to_addresses",
        "snippet",
        "labels",
        "received_at",
        "is_internal",
        "is_forwarded",
        "is_important",
        "within_business_hours",
        "has_attachments",
        "last_trigger_event_id",
    )

    async def upsert(self, record: EmailMessageRecord) -> bool:
        """Insert or refresh the mirror row keyed by connection and provider id.

        Returns ``True`` when a new row was inserted.
        """
        now = utcnow()
        values = record.model_dump(exclude={"delivery_count"})
        insert_stmt = _dialect_insert(self.session, EmailMessageORM).values(
            id=uuid4(), delivery_count=1, created_at=now, updated_at=now, **values
        )
        set_ = {column: insert_stmt.excluded[column] for column in self._UPDATABLE_COLUMNS}
        # A redelivery that fires nothing keeps the event that handled the message
        set_["last_trigger_event_id"] = func.coalesce(
            insert_stmt.excluded.last_trigger_event_id, EmailMessageORM.last_trigger_event_id
        )
        set_["delivery_count"] = EmailMessageORM.delivery_count + 1
        set_["updated_at"] = now
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=["connection_id", "external_message_id"],
            set_=set_,
        ).returning(EmailMessageORM.delivery_count)
        result = await self.session.execute(stmt)
        return result.scalar_one() == 1

    async def get_message(self, connection_id: UUID, external_message_id: str) -> EmailMessageRecord | None:
        stmt = select(EmailMessageORM).where(
            and_(
                EmailMessageORM.connection_id == connection_id,
                EmailMessageORM.external_message_id == external_message_id,
            )
        )
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        message_orm = result.scalar_one_or_none()
        if message_orm is None:
            return None
        record = EmailMessageRecord.model_validate(message_orm)
        record.received_at = ensure_utc(record.received_at)
        return record

    async def count_for_connection(self, connection_id: UUID) -> int:
        stmt = select(func.count(EmailMessageORM.id)).where(
            EmailMessageORM.connection_id == connection_id
        )
        result = await self.session.execute(stmt)
        return result.scalar() or 0
