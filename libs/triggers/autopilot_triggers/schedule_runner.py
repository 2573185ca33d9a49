"""Firing of due schedules.

An external loop calls :meth:`ScheduleRunner.fire_due` periodically. Each due
schedule is claimed with a guarded update on the ``next_run_at`` value that was
observed, so a schedule whose configuration changed in the meantime is never
fired from its stale fire time.
"""

from datetime import datetime

from autopilot_common.base import utcnow
from autopilot_common.config import DispatchSettings, get_dispatch_settings
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .dispatcher import Dispatcher, fire_event
from .domain.enums import SCHEDULED_KIND, TriggerEventSource
from .domain.models import ScheduleSource, TriggerEvent, TriggerEventCreate
from .fire_requests import schedule_dispatch_request
from .infrastructure.repository import AgentRepository, ScheduleRepository
from .logging_utils import InvalidScheduleConfig, TriggerLogger, start_operation
from .schedule_utils import get_next_run_at
from .trigger_events import TriggerEventManager

logger = TriggerLogger(__name__)


class ScheduleRunner:
    """Claims due schedules, records their events and dispatches them."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_manager: TriggerEventManager,
        dispatcher: Dispatcher,
        dispatch_settings: DispatchSettings | None = None,
        batch_size: int = 100,
    ):
        self._session_factory = session_factory
        self.event_manager = event_manager
        self.dispatcher = dispatcher
        self.dispatch_settings = dispatch_settings or get_dispatch_settings()
        self.batch_size = batch_size

    async def fire_due(self, now: datetime | None = None) -> list[TriggerEvent]:
        """Fire every active schedule whose next run is at or before ``now``.

        Returns:
            The events recorded for claimed schedules (FIRED, FAILED or SKIPPED).
        """
        start_operation()
        now = now or utcnow()
        async with self._session_factory() as session:
            due = await ScheduleRepository(session).list_due(now, limit=self.batch_size)

        if due:
            logger.info(f"Found {len(due)} due schedules")

        events: list[TriggerEvent] = []
        for schedule in due:
            event = await self._fire_schedule(schedule, now)
            if event is not None:
                events.append(event)
        return events

    async def _fire_schedule(self, schedule: ScheduleSource, now: datetime) -> TriggerEvent | None:
        observed = schedule.next_run_at
        fields = TriggerEventCreate(
            trigger_id=schedule.id,
            agent_id=schedule.agent_id,
            workspace_id=schedule.workspace_id,
            source_type=TriggerEventSource.SCHEDULE,
            trigger_type=SCHEDULED_KIND,
            payload={"scheduledFor": observed, "firedAt": now},
        )

        try:
            next_run_at = get_next_run_at(schedule.cron_expr, schedule.timezone, now)
        except InvalidScheduleConfig as e:
            async with self._session_factory() as session, session.begin():
                if not await ScheduleRepository(session).park(schedule.id, observed):
                    return None
                event = await self.event_manager.record_skipped(
                    fields, f"Schedule configuration is invalid: {e}", session=session
                )
            logger.error(f"Parked schedule with invalid configuration: {e}", schedule_id=schedule.id)
            return event

        async with self._session_factory() as session, session.begin():
            claimed = await ScheduleRepository(session).claim_due(
                schedule.id, observed, fired_at=now, next_run_at=next_run_at
            )
            if not claimed:
                logger.info("Schedule changed before it could be claimed", schedule_id=schedule.id)
                return None

            agent = await AgentRepository(session).get_agent(schedule.agent_id)
            if agent is None or not agent.is_active:
                reason = "Agent not found" if agent is None else f"Agent '{agent.slug}' is disabled"
                return await self.event_manager.record_skipped(fields, reason, session=session)

            event = await self.event_manager.create_event(fields, session=session)

        request = schedule_dispatch_request(event, schedule, agent)
        return await fire_event(
            self.event_manager,
            self.dispatcher,
            event,
            request,
            timeout=self.dispatch_settings.DISPATCH_TIMEOUT_SECONDS,
        )
