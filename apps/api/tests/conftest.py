"""Fixtures for HTTP tests: the real app over a SQLite file with fake edges."""

import base64
import json
from typing import Any
from uuid import uuid4

import pytest
from autopilot_common.base import BaseModel
from autopilot_common.config import Database, DatabaseSettings, IngestionSettings
from autopilot_triggers.dispatcher import DispatchRequest, DispatchResult
from autopilot_triggers.infrastructure.orm import (
    AgentORM,
    AgentTriggerORM,
    IntegrationConnectionORM,
)
from autopilot_triggers.ingestion import GmailPushAuthenticator, HistoryDelta
from httpx import ASGITransport, AsyncClient

from autopilot_api.api.deps import build_services
from autopilot_api.main import create_app


class RecordingDispatcher:
    def __init__(self):
        self.requests: list[DispatchRequest] = []

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        self.requests.append(request)
        return DispatchResult(accepted=True, workflow_id=request.workflow_id)


class EmptyMailbox:
    """Gmail client whose history never has new messages."""

    async def list_history(self, start_history_id: str, max_results: int) -> HistoryDelta:
        return HistoryDelta(message_ids=[], history_id=start_history_id)

    async def get_message(self, message_id: str) -> dict[str, Any]:
        raise KeyError(message_id)


class EmptyMailboxFactory:
    async def client_for(self, connection) -> EmptyMailbox:
        return EmptyMailbox()


@pytest.fixture
async def database(tmp_path):
    database = Database(DatabaseSettings(DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/api.db"))
    async with database.engine.begin() as connection:
        await connection.run_sync(BaseModel.metadata.create_all)
    yield database
    await database.dispose()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def services(database, dispatcher):
    return build_services(
        database,
        dispatcher=dispatcher,
        gmail_client_factory=EmptyMailboxFactory(),
        gmail_authenticator=GmailPushAuthenticator(
            IngestionSettings(GMAIL_PUSH_VERIFICATION_TOKEN="push-secret")
        ),
    )


@pytest.fixture
async def client(services):
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
async def agent(database):
    row = AgentORM(id=uuid4(), slug="support-bot", name="Support bot", workspace_id="ws-1")
    async with database.session_factory() as session, session.begin():
        session.add(row)
    return row


@pytest.fixture
async def gmail_connection(database, agent):
    async with database.session_factory() as session, session.begin():
        session.add(
            AgentTriggerORM(
                id=uuid4(),
                agent_id=agent.id,
                workspace_id="ws-1",
                name="New email",
                trigger_type="event",
                event_name="gmail.message.received",
                is_active=True,
                trigger_count=0,
            )
        )
        session.add(
            IntegrationConnectionORM(
                id=uuid4(),
                provider_key="gmail",
                external_account="inbox@acme.test",
                agent_id=agent.id,
                workspace_id="ws-1",
                internal_domains=["acme.test"],
                is_active=True,
                access_token="token-1",
            )
        )


@pytest.fixture
def push_envelope():
    def build(email_address: str = "inbox@acme.test", history_id: str = "100") -> dict[str, Any]:
        data = json.dumps({"emailAddress": email_address, "historyId": history_id}).encode()
        return {
            "message": {"data": base64.b64encode(data).decode(), "messageId": "pubsub-1"},
            "subscription": "projects/acme/subscriptions/gmail-push",
        }

    return build
