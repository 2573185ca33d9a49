"""Tests for dispatching trigger events."""

import asyncio
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from autopilot_common.config import DispatchSettings
from autopilot_triggers.dispatcher import (
    DispatchRequest,
    DispatchResult,
    TemporalDispatcher,
    fire_event,
    workflow_id_for,
)
from autopilot_triggers.domain.enums import TriggerEventSource, TriggerEventStatus
from autopilot_triggers.domain.models import TriggerEventCreate
from autopilot_triggers.logging_utils import DispatchError
from temporalio.exceptions import WorkflowAlreadyStartedError


class SlowDispatcher:
    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        await asyncio.sleep(1)
        return DispatchResult(accepted=True)


class BrokenDispatcher:
    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        raise RuntimeError("connection reset")


@pytest.fixture
async def received_event(event_manager):
    return await event_manager.create_event(
        TriggerEventCreate(source_type=TriggerEventSource.TRIGGER, payload={"a": 1})
    )


def _request(event) -> DispatchRequest:
    return DispatchRequest(
        trigger_event_id=event.id,
        agent_id=uuid4(),
        source_type="trigger",
        input="Handle it",
    )


class TestFireEvent:
    async def test_accepted_dispatch_fires(self, event_manager, dispatcher, received_event):
        event = await fire_event(event_manager, dispatcher, received_event, _request(received_event), 1)

        assert event.status == TriggerEventStatus.FIRED
        assert event.workflow_id == workflow_id_for(received_event.id)

    async def test_rejected_dispatch_fails(self, event_manager, rejecting_dispatcher, received_event):
        event = await fire_event(
            event_manager, rejecting_dispatcher, received_event, _request(received_event), 1
        )

        assert event.status == TriggerEventStatus.FAILED
        assert event.error_message == "Runtime rejected the request"

    async def test_dispatch_error_fails(self, event_manager, failing_dispatcher, received_event):
        event = await fire_event(
            event_manager, failing_dispatcher, received_event, _request(received_event), 1
        )

        assert event.status == TriggerEventStatus.FAILED
        assert event.error_message == "Temporal unavailable"

    async def test_timeout_fails(self, event_manager, received_event):
        event = await fire_event(
            event_manager, SlowDispatcher(), received_event, _request(received_event), 0.05
        )

        assert event.status == TriggerEventStatus.FAILED
        assert "timed out" in event.error_message

    async def test_unexpected_error_fails(self, event_manager, received_event):
        event = await fire_event(
            event_manager, BrokenDispatcher(), received_event, _request(received_event), 1
        )

        assert event.status == TriggerEventStatus.FAILED
        assert "connection reset" in event.error_message

    async def test_stalled_status_write_times_out(self, dispatcher, received_event):
        async def stalled_transition(*args, **kwargs):
            await asyncio.sleep(1)

        manager = MagicMock()
        manager.transition = stalled_transition

        with pytest.raises(TimeoutError):
            await fire_event(
                manager,
                dispatcher,
                received_event,
                _request(received_event),
                1,
                persistence_timeout=0.05,
            )

        assert len(dispatcher.requests) == 1


class TestTemporalDispatcher:
    async def test_starts_workflow_with_event_id(self):
        client = MagicMock()
        client.start_workflow = AsyncMock(return_value=MagicMock(id="trigger-event-x"))
        dispatcher = TemporalDispatcher(DispatchSettings(TASK_QUEUE="agents"), client=client)
        request = DispatchRequest(
            trigger_event_id=uuid4(), agent_id=uuid4(), source_type="schedule", input="go"
        )

        result = await dispatcher.dispatch(request)

        assert result.accepted
        _, kwargs = client.start_workflow.call_args
        assert kwargs["id"] == request.workflow_id
        assert kwargs["task_queue"] == "agents"

    async def test_already_started_counts_as_accepted(self):
        client = MagicMock()
        client.start_workflow = AsyncMock(
            side_effect=WorkflowAlreadyStartedError("trigger-event-x", "AgentExecutionWorkflow")
        )
        dispatcher = TemporalDispatcher(DispatchSettings(), client=client)
        request = DispatchRequest(
            trigger_event_id=uuid4(), agent_id=uuid4(), source_type="schedule", input="go"
        )

        result = await dispatcher.dispatch(request)

        assert result == DispatchResult(accepted=True, workflow_id=request.workflow_id)

    async def test_start_failure_raises_dispatch_error(self):
        client = MagicMock()
        client.start_workflow = AsyncMock(side_effect=RuntimeError("unavailable"))
        dispatcher = TemporalDispatcher(DispatchSettings(), client=client)
        request = DispatchRequest(
            trigger_event_id=uuid4(), agent_id=uuid4(), source_type="schedule", input="go"
        )

        with pytest.raises(DispatchError, match="unavailable"):
            await dispatcher.dispatch(request)
