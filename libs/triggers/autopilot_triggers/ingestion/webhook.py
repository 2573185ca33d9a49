"""Generic webhook ingestion for ``webhook`` triggers."""

import hashlib
import hmac
import json
import math
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any
from uuid import UUID

from autopilot_common.base import utcnow
from autopilot_common.config import (
    DispatchSettings,
    TriggerSettings,
    get_dispatch_settings,
    get_trigger_settings,
)
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..dispatcher import Dispatcher, fire_event
from ..domain.enums import TriggerEventSource, TriggerEventStatus
from ..domain.models import AgentRef, EventTriggerSource, TriggerEventCreate
from ..fire_requests import trigger_dispatch_request
from ..infrastructure.repository import AgentRepository, EventTriggerRepository
from ..input_mapping import matches_trigger_filter
from ..logging_utils import IntegrationAuthFailure, SourceNotFound, TriggerLogger, start_operation
from ..trigger_events import TriggerEventManager

logger = TriggerLogger(__name__)


class WebhookOutcome(BaseModel):
    """Result of one webhook delivery and the HTTP status it maps to."""

    status_code: int
    success: bool
    event_id: UUID | None = None
    status: TriggerEventStatus | None = None
    error: str | None = None

    def body(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "eventId": str(self.event_id) if self.event_id else None,
            "status": self.status.value if self.status else None,
            "error": self.error,
        }


def compute_signature(secret: str, body: bytes, timestamp: str | None = None) -> str:
    """Hex HMAC-SHA256 of the body, or of ``"<timestamp>.<body>"`` when timestamped."""
    message = f"{timestamp}.".encode() + body if timestamp else body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def parse_webhook_body(body: bytes) -> dict[str, Any]:
    """Decode a JSON body into an object payload; anything else is kept as raw text."""
    if not body:
        return {}
    text = body.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(text)
    except ValueError:
        return {"raw": text}
    if isinstance(parsed, dict):
        return parsed
    return {"value": parsed}


class WebhookIngestor:
    """Resolves a webhook path, verifies its signature and fires the trigger."""

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
        self.clock = clock

    async def handle(
        self, webhook_path: str, body: bytes, headers: Mapping[str, str]
    ) -> WebhookOutcome:
        """Process one delivery.

        Raises:
            SourceNotFound: If no trigger owns ``webhook_path``.
            IntegrationAuthFailure: If the signature is missing, stale or wrong.
        """
        start_operation()
        headers = {key.lower(): value for key, value in headers.items()}
        logger.info("Processing webhook request", webhook_path=webhook_path)

        async with self._session_factory() as session:
            trigger = await EventTriggerRepository(session).get_by_webhook_path(webhook_path)
            agent = (
                await AgentRepository(session).get_agent(trigger.agent_id) if trigger else None
            )
        if trigger is None:
            logger.warning("Webhook not found", webhook_path=webhook_path)
            raise SourceNotFound(f"Webhook {webhook_path} not found", webhook_path=webhook_path)

        self.verify_signature(trigger, body, headers)

        payload = parse_webhook_body(body)
        fields = TriggerEventCreate(
            trigger_id=trigger.id,
            agent_id=trigger.agent_id,
            workspace_id=trigger.workspace_id,
            source_type=TriggerEventSource.TRIGGER,
            trigger_type=trigger.trigger_type.value,
            event_name=trigger.event_name,
            external_id=headers.get("x-request-id"),
            payload=payload,
        )

        reason = None
        if agent is None:
            reason = "Agent not found"
        elif not agent.is_active:
            reason = f"Agent '{agent.slug}' is disabled"
        elif not trigger.is_active:
            reason = "Webhook is inactive"
        if reason is not None:
            event = await self.event_manager.record_skipped(fields, reason)
            logger.warning(reason, webhook_path=webhook_path, trigger_id=trigger.id)
            return WebhookOutcome(
                status_code=403,
                success=False,
                event_id=event.id,
                status=event.status,
                error=reason,
            )

        if not matches_trigger_filter(payload, trigger.filter):
            event = await self.event_manager.record_skipped(
                fields, "Trigger filter did not match payload"
            )
            return WebhookOutcome(
                status_code=200, success=True, event_id=event.id, status=event.status
            )

        return await self._fire(trigger, agent, fields, payload)

    async def _fire(
        self,
        trigger: EventTriggerSource,
        agent: AgentRef,
        fields: TriggerEventCreate,
        payload: dict[str, Any],
    ) -> WebhookOutcome:
        async with self._session_factory() as session, session.begin():
            event = await self.event_manager.create_event(fields, session=session)
            await EventTriggerRepository(session).record_fire(trigger.id, self.clock())

        request = trigger_dispatch_request(event, trigger, agent, payload)
        event = await fire_event(
            self.event_manager,
            self.dispatcher,
            event,
            request,
            timeout=self.dispatch_settings.DISPATCH_TIMEOUT_SECONDS,
        )
        logger.info(
            f"Webhook processed with status {event.status.value}",
            webhook_path=trigger.webhook_path,
            trigger_id=trigger.id,
            trigger_event_id=event.id,
        )
        # The delivery is accounted for either way; dispatch failures live on the event.
        return WebhookOutcome(
            status_code=200,
            success=event.status == TriggerEventStatus.FIRED,
            event_id=event.id,
            status=event.status,
            error=event.error_message,
        )

    def verify_signature(
        self, trigger: EventTriggerSource, body: bytes, headers: Mapping[str, str]
    ) -> None:
        """Check the HMAC signature when the trigger has a secret.

        Raises:
            IntegrationAuthFailure: If the signature is missing, stale or wrong.
        """
        if not trigger.webhook_secret:
            return

        signature = headers.get(self.settings.WEBHOOK_SIGNATURE_HEADER.lower())
        timestamp = headers.get(self.settings.WEBHOOK_TIMESTAMP_HEADER.lower())
        if not signature:
            raise IntegrationAuthFailure(
                "Missing webhook signature", webhook_path=trigger.webhook_path
            )

        if timestamp:
            try:
                sent_at = float(timestamp)
            except ValueError as e:
                raise IntegrationAuthFailure(
                    "Malformed webhook timestamp", webhook_path=trigger.webhook_path
                ) from e
            if not math.isfinite(sent_at):
                raise IntegrationAuthFailure(
                    "Malformed webhook timestamp", webhook_path=trigger.webhook_path
                )
            age = abs(self.clock().timestamp() - sent_at)
            if age > self.settings.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS:
                raise IntegrationAuthFailure(
                    "Webhook timestamp outside tolerance", webhook_path=trigger.webhook_path
                )

        provided = signature.strip()
        if provided.startswith("sha256="):
            provided = provided[len("sha256=") :]
        expected = compute_signature(trigger.webhook_secret, body, timestamp)
        if not hmac.compare_digest(provided.lower(), expected):
            logger.warning("Webhook signature mismatch", webhook_path=trigger.webhook_path)
            raise IntegrationAuthFailure(
                "Invalid webhook signature", webhook_path=trigger.webhook_path
            )
