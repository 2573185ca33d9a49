"""Shared fixtures for trigger engine tests.

Persistence runs against in-memory SQLite; the dispatcher and the Gmail API
are replaced by recording fakes.
"""

import base64
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

import pytest
from autopilot_common.base import BaseModel
from autopilot_common.config import DispatchSettings, IngestionSettings, TriggerSettings
from autopilot_triggers.dispatcher import DispatchRequest, DispatchResult
from autopilot_triggers.domain.models import IntegrationConnection
from autopilot_triggers.infrastructure.orm import (
    AgentORM,
    AgentScheduleORM,
    AgentTriggerORM,
    IntegrationConnectionORM,
    IntegrationCursorORM,
)
from autopilot_triggers.ingestion.gmail_client import HistoryDelta
from autopilot_triggers.logging_utils import DispatchError
from autopilot_triggers.trigger_events import SnapshotLimits, TriggerEventManager
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

FIXED_NOW = datetime(2024, 3, 6, 14, 30, tzinfo=UTC)


class RecordingDispatcher:
    """Dispatcher that records requests instead of starting workflows."""

    def __init__(self, accept: bool = True, error: Exception | None = None):
        self.accept = accept
        self.error = error
        self.requests: list[DispatchRequest] = []

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if not self.accept:
            return DispatchResult(accepted=False, error="Runtime rejected the request")
        return DispatchResult(accepted=True, workflow_id=request.workflow_id)


class FakeGmailClient:
    """In-memory mailbox with numeric history ids."""

    def __init__(self, head: int = 100):
        self.head = head
        self.records: list[tuple[int, list[str]]] = []
        self.messages: dict[str, dict[str, Any]] = {}
        self.history_error: Exception | None = None
        self.message_errors: dict[str, Exception] = {}
        self.history_calls: list[str] = []
        self.message_calls: list[str] = []

    def add_message(
        self,
        message_id: str,
        subject: str = "Hello",
        sender: str = "Alice <alice@example.com>",
        to: str = "inbox@acme.test",
        received_at: datetime = FIXED_NOW,
        labels: list[str] | None = None,
        body: str = "Message body",
        extra_headers: dict[str, str] | None = None,
        attachment: bool = False,
    ) -> int:
        """Append a messageAdded history record and return its history id."""
        self.head += 1
        self.records.append((self.head, [message_id]))
        headers = {"Subject": subject, "From": sender, "To": to, **(extra_headers or {})}
        parts = [
            {
                "mimeType": "text/plain",
                "body": {"data": base64.urlsafe_b64encode(body.encode()).decode().rstrip("=")},
            }
        ]
        if attachment:
            parts.append(
                {
                    "mimeType": "application/pdf",
                    "filename": "report.pdf",
                    "body": {"attachmentId": "att-1", "size": 1024},
                }
            )
        self.messages[message_id] = {
            "id": message_id,
            "threadId": f"thread-{message_id}",
            "historyId": str(self.head),
            "labelIds": labels if labels is not None else ["INBOX", "UNREAD"],
            "snippet": body[:40],
            "internalDate": str(int(received_at.timestamp() * 1000)),
            "payload": {
                "mimeType": "multipart/mixed",
                "headers": [{"name": name, "value": value} for name, value in headers.items()],
                "parts": parts,
            },
        }
        return self.head

    async def list_history(self, start_history_id: str, max_results: int) -> HistoryDelta:
        self.history_calls.append(start_history_id)
        if self.history_error is not None:
            raise self.history_error
        message_ids: list[str] = []
        covered: str | None = None
        for record_id, added in self.records:
            if record_id <= int(start_history_id):
                continue
            new_ids = [m for m in added if m not in message_ids]
            if len(message_ids) + len(new_ids) > max_results and message_ids:
                return HistoryDelta(message_ids=message_ids, history_id=covered, truncated=True)
            message_ids.extend(new_ids)
            covered = str(record_id)
        return HistoryDelta(message_ids=message_ids, history_id=str(self.head))

    async def get_message(self, message_id: str) -> dict[str, Any]:
        self.message_calls.append(message_id)
        if message_id in self.message_errors:
            raise self.message_errors[message_id]
        return self.messages[message_id]


class FakeGmailClientFactory:
    def __init__(self, client: FakeGmailClient):
        self.client = client
        self.connections: list[IntegrationConnection] = []

    async def client_for(self, connection: IntegrationConnection) -> FakeGmailClient:
        self.connections.append(connection)
        return self.client


class Seeder:
    """Inserts fixture rows directly through the ORM."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _add(self, row):
        async with self._session_factory() as session, session.begin():
            session.add(row)
        return row

    async def agent(self, slug: str = "support-bot", is_active: bool = True) -> AgentORM:
        return await self._add(
            AgentORM(id=uuid4(), slug=slug, name=slug, workspace_id="ws-1", is_active=is_active)
        )

    async def schedule(
        self,
        agent_id: UUID,
        cron_expr: str = "0 9 * * *",
        timezone: str = "UTC",
        next_run_at: datetime | None = None,
        is_active: bool = True,
        input_json: dict[str, Any] | None = None,
        name: str = "Morning digest",
    ) -> AgentScheduleORM:
        return await self._add(
            AgentScheduleORM(
                id=uuid4(),
                agent_id=agent_id,
                workspace_id="ws-1",
                name=name,
                cron_expr=cron_expr,
                timezone=timezone,
                input_json=input_json,
                is_active=is_active,
                next_run_at=next_run_at,
                run_count=0,
            )
        )

    async def trigger(
        self,
        agent_id: UUID,
        trigger_type: str = "event",
        event_name: str | None = "gmail.message.received",
        filter_json: dict[str, Any] | None = None,
        input_mapping: dict[str, Any] | None = None,
        webhook_path: str | None = None,
        webhook_secret: str | None = None,
        is_active: bool = True,
        name: str = "New email",
    ) -> AgentTriggerORM:
        return await self._add(
            AgentTriggerORM(
                id=uuid4(),
                agent_id=agent_id,
                workspace_id="ws-1",
                name=name,
                trigger_type=trigger_type,
                event_name=event_name,
                webhook_path=webhook_path,
                webhook_secret=webhook_secret,
                filter_json=filter_json,
                input_mapping=input_mapping,
                is_active=is_active,
                trigger_count=0,
            )
        )

    async def connection(
        self,
        agent_id: UUID | None,
        external_account: str = "inbox@acme.test",
        internal_domains: list[str] | None = None,
        business_hours: dict[str, Any] | None = None,
        is_active: bool = True,
        access_token: str | None = "token-1",
    ) -> IntegrationConnectionORM:
        return await self._add(
            IntegrationConnectionORM(
                id=uuid4(),
                provider_key="gmail",
                external_account=external_account,
                agent_id=agent_id,
                workspace_id="ws-1",
                internal_domains=internal_domains if internal_domains is not None else ["acme.test"],
                business_hours=business_hours,
                is_active=is_active,
                access_token=access_token,
            )
        )

    async def cursor(
        self,
        connection_key: str,
        cursor_value: str | None,
        pending_cursor_value: str | None = None,
        catchup_pending: bool = False,
    ) -> IntegrationCursorORM:
        return await self._add(
            IntegrationCursorORM(
                id=uuid4(),
                connection_key=connection_key,
                cursor_value=cursor_value,
                pending_cursor_value=pending_cursor_value,
                catchup_pending=catchup_pending,
                version=1,
            )
        )


@pytest.fixture
async def engine():
    """In-memory SQLite engine with the trigger schema created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as connection:
        await connection.run_sync(BaseModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def trigger_settings():
    return TriggerSettings(WEBHOOK_BASE_URL="/api/webhooks")


@pytest.fixture
def ingestion_settings():
    return IngestionSettings(
        MESSAGE_FETCH_CONCURRENCY=1,
        MAX_MESSAGES_PER_NOTIFICATION=50,
        CONNECTION_LOCK_TIMEOUT_SECONDS=0.2,
        GMAIL_PUSH_VERIFICATION_TOKEN="push-secret",
    )


@pytest.fixture
def dispatch_settings():
    return DispatchSettings(DISPATCH_TIMEOUT_SECONDS=2.0)


@pytest.fixture
def event_manager(session_factory):
    return TriggerEventManager(session_factory, SnapshotLimits())


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def failing_dispatcher():
    return RecordingDispatcher(error=DispatchError("Temporal unavailable"))


@pytest.fixture
def rejecting_dispatcher():
    return RecordingDispatcher(accept=False)


@pytest.fixture
def gmail_client():
    return FakeGmailClient()


@pytest.fixture
def gmail_client_factory(gmail_client):
    return FakeGmailClientFactory(gmail_client)
