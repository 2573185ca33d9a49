"""Tests for generic webhook ingestion."""

import json

import pytest
from autopilot_triggers.domain.enums import TriggerEventStatus
from autopilot_triggers.ingestion import WebhookIngestor, compute_signature
from autopilot_triggers.ingestion.webhook import parse_webhook_body
from autopilot_triggers.logging_utils import IntegrationAuthFailure, SourceNotFound

SECRET = "s3cret"
PATH = "trigger_abc123"


@pytest.fixture
def ingestor(session_factory, event_manager, dispatcher, trigger_settings, dispatch_settings, now):
    return WebhookIngestor(
        session_factory,
        event_manager,
        dispatcher,
        settings=trigger_settings,
        dispatch_settings=dispatch_settings,
        clock=lambda: now,
    )


def _signed(body: bytes, timestamp: str, secret: str = SECRET) -> dict[str, str]:
    return {
        "X-Webhook-Signature": "sha256=" + compute_signature(secret, body, timestamp),
        "X-Webhook-Timestamp": timestamp,
    }


async def _webhook(seed, secret=SECRET, agent_active=True, trigger_active=True, filter_json=None):
    agent = await seed.agent(is_active=agent_active)
    return await seed.trigger(
        agent.id,
        trigger_type="webhook",
        event_name=None,
        webhook_path=PATH,
        webhook_secret=secret,
        is_active=trigger_active,
        filter_json=filter_json,
    )


class TestSignature:
    async def test_valid_signature_fires(self, ingestor, seed, dispatcher, now):
        await _webhook(seed)
        body = json.dumps({"action": "opened"}).encode()

        outcome = await ingestor.handle(PATH, body, _signed(body, str(int(now.timestamp()))))

        assert outcome.status_code == 200
        assert outcome.success
        assert outcome.status == TriggerEventStatus.FIRED
        assert dispatcher.requests[0].payload == {"action": "opened"}

    async def test_wrong_secret_is_rejected(self, ingestor, seed, event_manager, now):
        await _webhook(seed)
        body = b"{}"

        with pytest.raises(IntegrationAuthFailure, match="Invalid webhook signature"):
            await ingestor.handle(PATH, body, _signed(body, str(int(now.timestamp())), "other"))

        assert await event_manager.list_events() == []

    async def test_missing_signature_is_rejected(self, ingestor, seed):
        await _webhook(seed)

        with pytest.raises(IntegrationAuthFailure, match="Missing"):
            await ingestor.handle(PATH, b"{}", {})

    async def test_stale_timestamp_is_rejected(self, ingestor, seed, now):
        await _webhook(seed)
        body = b"{}"
        stale = str(int(now.timestamp()) - 3600)

        with pytest.raises(IntegrationAuthFailure, match="tolerance"):
            await ingestor.handle(PATH, body, _signed(body, stale))

    @pytest.mark.parametrize("timestamp", ["nan", "inf", "-inf", "yesterday"])
    async def test_non_numeric_timestamp_is_rejected(self, ingestor, seed, event_manager, timestamp):
        await _webhook(seed)
        body = b"{}"

        with pytest.raises(IntegrationAuthFailure, match="Malformed webhook timestamp"):
            await ingestor.handle(PATH, body, _signed(body, timestamp))

        assert await event_manager.list_events() == []

    async def test_unsigned_webhook_without_secret(self, ingestor, seed):
        await _webhook(seed, secret=None)

        outcome = await ingestor.handle(PATH, b"plain text", {})

        assert outcome.status == TriggerEventStatus.FIRED

    async def test_unknown_path(self, ingestor):
        with pytest.raises(SourceNotFound):
            await ingestor.handle("trigger_missing", b"{}", {})


class TestDelivery:
    async def test_disabled_agent_is_skipped(self, ingestor, seed, event_manager, dispatcher):
        await _webhook(seed, secret=None, agent_active=False)

        outcome = await ingestor.handle(PATH, b"{}", {})

        assert outcome.status_code == 403
        assert outcome.status == TriggerEventStatus.SKIPPED
        events = await event_manager.list_events()
        assert len(events) == 1
        assert "disabled" in events[0].error_message
        assert dispatcher.requests == []

    async def test_inactive_webhook_is_skipped(self, ingestor, seed):
        await _webhook(seed, secret=None, trigger_active=False)

        outcome = await ingestor.handle(PATH, b"{}", {})

        assert outcome.status_code == 403
        assert outcome.error == "Webhook is inactive"

    async def test_filter_mismatch_is_acknowledged(self, ingestor, seed, dispatcher):
        await _webhook(seed, secret=None, filter_json={"action": ["opened", "reopened"]})

        outcome = await ingestor.handle(PATH, b'{"action": "closed"}', {})

        assert outcome.status_code == 200
        assert outcome.status == TriggerEventStatus.SKIPPED
        assert dispatcher.requests == []

    async def test_dispatch_failure_is_reported_on_event(
        self, session_factory, event_manager, failing_dispatcher, trigger_settings, seed
    ):
        ingestor = WebhookIngestor(
            session_factory, event_manager, failing_dispatcher, settings=trigger_settings
        )
        await _webhook(seed, secret=None)

        outcome = await ingestor.handle(PATH, b"{}", {"X-Request-Id": "req-1"})

        assert outcome.status_code == 200
        assert not outcome.success
        assert outcome.status == TriggerEventStatus.FAILED
        event = await event_manager.get_event(outcome.event_id)
        assert event.external_id == "req-1"


class TestParseWebhookBody:
    @pytest.mark.parametrize(
        ("body", "expected"),
        [
            (b"", {}),
            (b'{"a": 1}', {"a": 1}),
            (b"[1, 2]", {"value": [1, 2]}),
            (b"not json", {"raw": "not json"}),
        ],
    )
    def test_shapes(self, body, expected):
        assert parse_webhook_body(body) == expected
