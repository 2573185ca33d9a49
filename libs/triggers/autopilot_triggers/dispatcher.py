"""Dispatch of fire requests to the agent execution runtime."""

import asyncio
from typing import Any, Protocol
from uuid import UUID

from autopilot_common.config import DispatchSettings, get_dispatch_settings
from pydantic import BaseModel, Field
from temporalio.client import Client
from temporalio.contrib.pydantic import pydantic_data_converter
from temporalio.exceptions import WorkflowAlreadyStartedError

from .domain.enums import TriggerEventStatus
from .domain.models import TriggerEvent
from .logging_utils import DispatchError, TriggerLogger
from .trigger_events import TriggerEventManager

logger = TriggerLogger(__name__)


class DispatchRequest(BaseModel):
    """Normalized request to start one agent execution."""

    trigger_event_id: UUID
    agent_id: UUID
    trigger_id: UUID | None = None
    agent_slug: str | None = None
    source_type: str
    trigger_type: str | None = None
    event_name: str | None = None
    input: str
    context: dict[str, Any] = Field(default_factory=dict)
    max_steps: int | None = None
    environment: str | None = None
    payload: Any = None

    @property
    def workflow_id(self) -> str:
        return workflow_id_for(self.trigger_event_id)


class DispatchResult(BaseModel):
    """Synchronous outcome reported by a dispatcher."""

    accepted: bool
    workflow_id: str | None = None
    error: str | None = None


class Dispatcher(Protocol):
    """Hands fire requests to the execution runtime."""

    async def dispatch(self, request: DispatchRequest) -> DispatchResult: ...


def workflow_id_for(trigger_event_id: UUID) -> str:
    """Workflow id for an event; one event can start at most one workflow."""
    return f"trigger-event-{trigger_event_id}"


class TemporalDispatcher:
    """Starts the agent execution workflow on Temporal."""

    def __init__(self, settings: DispatchSettings | None = None, client: Client | None = None):
        self.settings = settings or get_dispatch_settings()
        self._client = client
        self._lock = asyncio.Lock()

    async def _get_client(self) -> Client:
        """Get Temporal client, connecting on first use."""
        async with self._lock:
            if self._client is None:
                try:
                    self._client = await Client.connect(
                        self.settings.TEMPORAL_HOST,
                        namespace=self.settings.TEMPORAL_NAMESPACE,
                        data_converter=pydantic_data_converter,
                    )
                except Exception as e:
                    logger.error(f"Failed to connect to Temporal: {e}")
                    raise DispatchError(f"Temporal client connection failed: {e}") from e
                logger.info(f"Connected to Temporal at {self.settings.TEMPORAL_HOST}")
        return self._client

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        """Start the execution workflow for a trigger event.

        Raises:
            DispatchError: If Temporal cannot be reached or rejects the request.
        """
        client = await self._get_client()
        workflow_id = request.workflow_id
        try:
            handle = await client.start_workflow(
                self.settings.WORKFLOW_NAME,
                request,
                id=workflow_id,
                task_queue=self.settings.TASK_QUEUE,
            )
        except WorkflowAlreadyStartedError:
            logger.info(
                "Workflow already started for trigger event",
                trigger_event_id=request.trigger_event_id,
            )
            return DispatchResult(accepted=True, workflow_id=workflow_id)
        except Exception as e:
            raise DispatchError(
                f"Failed to start workflow: {e}", trigger_event_id=str(request.trigger_event_id)
            ) from e

        logger.info(
            f"Started workflow {handle.id}",
            trigger_event_id=request.trigger_event_id,
            trigger_id=request.trigger_id,
        )
        return DispatchResult(accepted=True, workflow_id=handle.id)

    async def close(self) -> None:
        self._client = None


async def fire_event(
    manager: TriggerEventManager,
    dispatcher: Dispatcher,
    event: TriggerEvent,
    request: DispatchRequest,
    timeout: float | None = None,
    persistence_timeout: float | None = None,
) -> TriggerEvent:
    """Dispatch a RECEIVED event and record the outcome as FIRED or FAILED.

    Dispatch errors are recorded on the event instead of raised so that sibling
    work (other messages, other schedules) is never aborted by one failure.
    ``persistence_timeout`` bounds the status write; callers holding a
    connection lock pass it.
    """
    if timeout is None:
        timeout = get_dispatch_settings().DISPATCH_TIMEOUT_SECONDS

    error: str | None = None
    result: DispatchResult | None = None
    try:
        result = await asyncio.wait_for(dispatcher.dispatch(request), timeout)
    except TimeoutError:
        error = f"Dispatch timed out after {timeout}s"
    except DispatchError as e:
        error = str(e)
    except Exception as e:
        logger.exception(f"Unexpected dispatch failure: {e}", trigger_event_id=event.id)
        error = f"Dispatch failed: {e}"

    if result is not None and not result.accepted:
        error = result.error or "Dispatch rejected"

    if error is not None:
        logger.warning(f"Dispatch failed: {error}", trigger_event_id=event.id)
        write = manager.transition(event.id, TriggerEventStatus.FAILED, error_message=error)
    else:
        write = manager.transition(
            event.id,
            TriggerEventStatus.FIRED,
            workflow_id=result.workflow_id or request.workflow_id,
        )
    return await asyncio.wait_for(write, persistence_timeout)
