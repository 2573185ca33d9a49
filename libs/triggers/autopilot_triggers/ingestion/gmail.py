"""Gmail push-notification ingestion.

A Pub/Sub push only says "the mailbox changed, history is now at X". The
adapter turns that into the messages added since the stored cursor, enriches
each one, records an event per matching trigger, dispatches, and advances the
cursor last. Processing for one connection is serialized by a lock and the
final cursor write is a compare-and-set against the value that was read.
"""

import asyncio
import base64
import binascii
import hmac
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

import jwt
from autopilot_common.base import utcnow
from autopilot_common.config import (
    DispatchSettings,
    IngestionSettings,
    get_dispatch_settings,
    get_ingestion_settings,
)
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..dispatcher import Dispatcher, fire_event
from ..domain.enums import (
    IntegrationProvider,
    TriggerEventSource,
    TriggerEventStatus,
    TriggerType,
)
from ..domain.models import (
    AgentRef,
    BusinessHours,
    EmailMessageRecord,
    EventTriggerSource,
    IntegrationConnection,
    IntegrationCursor,
    TriggerEvent,
    TriggerEventCreate,
)
from ..fire_requests import trigger_dispatch_request
from ..infrastructure.repository import (
    AgentRepository,
    CursorRepository,
    EmailMessageRepository,
    EventTriggerRepository,
    IntegrationConnectionRepository,
    TriggerEventRepository,
)
from ..input_mapping import matches_trigger_filter
from ..logging_utils import (
    ConnectionBusy,
    CursorExpired,
    IntegrationAuthFailure,
    InvalidNotification,
    PerMessageFailure,
    ProviderError,
    TriggerLogger,
    UpstreamRateLimited,
    start_operation,
)
from ..trigger_events import TriggerEventManager
from .base import ConnectionLocks, IngestionResult
from .enrichment import EmailEnrichment, enrich_message
from .gmail_client import GmailClient, GmailClientFactory, HistoryDelta
from .gmail_parsing import ParsedGmailMessage, parse_gmail_message

logger = TriggerLogger(__name__)

EVENT_NAME = "gmail.message.received"
PROVIDER_KEY = IntegrationProvider.GMAIL.value

GOOGLE_ISSUERS = frozenset({"https://accounts.google.com", "accounts.google.com"})

MAX_CURSOR_ATTEMPTS = 3


# Authentication and envelope


class GmailPushAuthenticator:
    """Authenticates Pub/Sub push deliveries before anything else is read.

    Accepts either the shared verification token configured on the push
    endpoint or a Google-signed OIDC bearer token for the configured audience.
    With neither configured every delivery is rejected.
    """

    def __init__(
        self,
        settings: IngestionSettings | None = None,
        jwks_client: jwt.PyJWKClient | None = None,
    ):
        self.settings = settings or get_ingestion_settings()
        self._jwks_client = jwks_client

    @property
    def jwks_client(self) -> jwt.PyJWKClient:
        if self._jwks_client is None:
            self._jwks_client = jwt.PyJWKClient(self.settings.GOOGLE_JWKS_URL)
        return self._jwks_client

    async def authenticate(
        self, token: str | None = None, authorization: str | None = None
    ) -> None:
        """Raise ``IntegrationAuthFailure`` unless the delivery is authentic."""
        expected = self.settings.GMAIL_PUSH_VERIFICATION_TOKEN
        audience = self.settings.GMAIL_PUSH_AUDIENCE

        if not expected and not audience:
            raise IntegrationAuthFailure("Gmail push authentication is not configured")

        if expected and token and hmac.compare_digest(token.encode(), expected.encode()):
            return

        bearer = _bearer_token(authorization)
        if audience and bearer:
            await self._verify_oidc(bearer, audience)
            return

        raise IntegrationAuthFailure("Gmail push delivery could not be authenticated")

    async def _verify_oidc(self, bearer: str, audience: str) -> dict[str, Any]:
        try:
            signing_key = await asyncio.to_thread(
                self.jwks_client.get_signing_key_from_jwt, bearer
            )
            claims = jwt.decode(
                bearer,
                signing_key.key,
                algorithms=["RS256"],
                audience=audience,
                options={"require": ["exp", "iat", "iss", "aud"]},
            )
        except jwt.PyJWKClientError as e:
            raise IntegrationAuthFailure(f"Unable to resolve push token signing key: {e}") from e
        except jwt.InvalidTokenError as e:
            raise IntegrationAuthFailure(f"Invalid push token: {e}") from e

        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise IntegrationAuthFailure("Push token was not issued by Google")
        if claims.get("email_verified") is not True:
            raise IntegrationAuthFailure("Push token email is not verified")
        service_account = self.settings.GMAIL_PUSH_SERVICE_ACCOUNT
        if service_account and claims.get("email") != service_account:
            raise IntegrationAuthFailure("Push token was signed for an unexpected service account")
        return claims


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class GmailNotification(BaseModel):
    """Decoded ``{emailAddress, historyId}`` of a Pub/Sub push."""

    email_address: str
    history_id: str
    pubsub_message_id: str | None = None
    subscription: str | None = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "provider": PROVIDER_KEY,
            "emailAddress": self.email_address,
            "historyId": self.history_id,
            "pubsubMessageId": self.pubsub_message_id,
        }


def _b64decode(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    if "-" in data or "_" in data:
        return base64.urlsafe_b64decode(padded)
    return base64.b64decode(padded, validate=True)


def decode_notification(envelope: Any) -> GmailNotification:
    """Recover the account and history id from a Pub/Sub push envelope.

    Raises:
        InvalidNotification: If the envelope or its inner payload is malformed.
    """
    if not isinstance(envelope, dict) or not isinstance(envelope.get("message"), dict):
        raise InvalidNotification("Push envelope has no message")
    message = envelope["message"]
    data = message.get("data")
    if not isinstance(data, str) or not data:
        raise InvalidNotification("Push message has no data")

    try:
        inner = json.loads(_b64decode(data).decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        raise InvalidNotification(f"Push message data is not base64 JSON: {e}") from e

    if not isinstance(inner, dict):
        raise InvalidNotification("Push message data is not an object")
    email_address = inner.get("emailAddress")
    history_id = inner.get("historyId")
    if not isinstance(email_address, str) or not email_address.strip():
        raise InvalidNotification("Push message data has no emailAddress")
    if history_id is None or isinstance(history_id, bool) or not str(history_id).strip():
        raise InvalidNotification("Push message data has no historyId")

    return GmailNotification(
        email_address=email_address.strip().lower(),
        history_id=str(history_id).strip(),
        pubsub_message_id=message.get("messageId") or message.get("message_id"),
        subscription=envelope.get("subscription"),
    )


def history_is_newer(candidate: str | None, current: str | None) -> bool:
    """Gmail history ids are numeric; anything else only compares for inequality."""
    if candidate is None:
        return False
    if current is None:
        return True
    if candidate.isdigit() and current.isdigit():
        return int(candidate) > int(current)
    return candidate != current


def _latest_history(*values: str | None) -> str | None:
    latest: str | None = None
    for value in values:
        if value is not None and (latest is None or history_is_newer(value, latest)):
            latest = value
    return latest


# Adapter


@dataclass
class _Batch:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    rate_limited: UpstreamRateLimited | None = None
    event_ids: list[UUID] = field(default_factory=list)

    def add(self, other: "_Batch") -> None:
        self.processed += other.processed
        self.skipped += other.skipped
        self.failed += other.failed
        self.event_ids.extend(other.event_ids)


@dataclass
class _Target:
    """Who a connection's messages are delivered to."""

    connection: IntegrationConnection
    agent: AgentRef
    triggers: list[EventTriggerSource]


class GmailPushAdapter:
    """Turns Gmail push notifications into trigger events and dispatches."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_manager: TriggerEventManager,
        dispatcher: Dispatcher,
        client_factory: GmailClientFactory,
        locks: ConnectionLocks | None = None,
        settings: IngestionSettings | None = None,
        dispatch_settings: DispatchSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.event_manager = event_manager
        self.dispatcher = dispatcher
        self.client_factory = client_factory
        self.settings = settings or get_ingestion_settings()
        self.dispatch_settings = dispatch_settings or get_dispatch_settings()
        self.locks = locks or ConnectionLocks(self.settings.CONNECTION_LOCK_TIMEOUT_SECONDS)
        self.clock = clock

    # Entry points

    async def handle_notification(self, notification: GmailNotification) -> IngestionResult:
        """Process one authenticated, decoded push notification.

        Every outcome is recorded as at least one trigger event; only the
        returned result tells the transport whether a retry is useful.
        """
        start_operation()
        payload = notification.as_payload()
        logger.info(
            f"Gmail notification for {notification.email_address} at history {notification.history_id}"
        )

        async with self._session_factory() as session:
            connection = await IntegrationConnectionRepository(session).get_by_account(
                PROVIDER_KEY, notification.email_address
            )

        if connection is None or not connection.is_active:
            reason = (
                f"No Gmail connection for {notification.email_address}"
                if connection is None
                else "Gmail connection is inactive"
            )
            event = await self._record_notice(connection, None, payload, reason)
            return IngestionResult(success=True, skipped=1, reason=reason, event_ids=[event.id])

        target, reason = await self._resolve_target(connection)
        if target is None:
            event = await self._record_notice(connection, connection.agent_id, payload, reason)
            return IngestionResult(success=True, skipped=1, reason=reason, event_ids=[event.id])

        key = connection.connection_key
        try:
            async with self.locks.hold(key):
                return await self._sync_bounded(target, notification.history_id, payload)
        except ConnectionBusy as e:
            await self._persist(self._mark_catchup(key, notification.history_id))
            event = await self._record_notice(
                connection, target.agent.id, payload, f"{e}; deferred to catch-up"
            )
            return IngestionResult(
                success=True,
                skipped=1,
                retryable=True,
                reason="connection_busy",
                event_ids=[event.id],
            )

    async def run_catchup(self, connection_key: str) -> IngestionResult:
        """Drain a connection flagged for catch-up without waiting for a new notification."""
        start_operation()
        async with self._session_factory() as session:
            cursor = await CursorRepository(session).get_cursor(connection_key)
            connection = None
            if cursor is not None:
                connection = await IntegrationConnectionRepository(session).get_connection(
                    _connection_id(connection_key)
                )

        if cursor is None or not cursor.catchup_pending:
            current = cursor.cursor_value if cursor else None
            return IngestionResult(success=True, reason="nothing_pending", cursor=current)
        if connection is None or not connection.is_active:
            return IngestionResult(
                success=True, reason="connection_inactive", cursor=cursor.cursor_value
            )

        target, reason = await self._resolve_target(connection)
        if target is None:
            logger.info(f"Catch-up postponed: {reason}", connection_key=connection_key)
            return IngestionResult(success=True, reason=reason, cursor=cursor.cursor_value)

        notified = cursor.pending_cursor_value or cursor.cursor_value
        payload = {
            "provider": PROVIDER_KEY,
            "emailAddress": connection.external_account,
            "historyId": notified,
            "catchup": True,
        }
        try:
            async with self.locks.hold(connection_key):
                return await self._sync_bounded(target, notified, payload)
        except ConnectionBusy:
            return IngestionResult(
                success=True, retryable=True, reason="connection_busy", cursor=cursor.cursor_value
            )

    async def run_pending_catchups(self, limit: int = 100) -> list[IngestionResult]:
        async with self._session_factory() as session:
            pending = await CursorRepository(session).list_catchup_pending(limit=limit)
        results = []
        for cursor in pending:
            if cursor.connection_key.startswith(f"{PROVIDER_KEY}:"):
                results.append(await self.run_catchup(cursor.connection_key))
        return results

    # Resolution

    async def _resolve_target(
        self, connection: IntegrationConnection
    ) -> tuple[_Target | None, str | None]:
        if connection.agent_id is None:
            return None, "Gmail connection has no agent"
        async with self._session_factory() as session:
            agent = await AgentRepository(session).get_agent(connection.agent_id)
            if agent is None:
                return None, "Agent not found"
            if not agent.is_active:
                return None, f"Agent '{agent.slug}' is disabled"
            triggers = await EventTriggerRepository(session).find_event_triggers(
                agent.id, EVENT_NAME, active_only=True
            )
        if not triggers:
            return None, f"No active trigger for {EVENT_NAME}"
        return _Target(connection=connection, agent=agent, triggers=triggers), None

    # Cursor-gated processing; caller holds the connection lock

    async def _sync_bounded(
        self, target: _Target, notified: str, payload: dict[str, Any]
    ) -> IngestionResult:
        """Run :meth:`_sync`, turning a persistence timeout into a retryable FAILED event."""
        try:
            return await self._sync(target, notified, payload)
        except TimeoutError:
            message = (
                f"Persistence did not respond within {self.settings.PERSISTENCE_TIMEOUT_SECONDS}s"
            )
            logger.error(message, connection_key=target.connection.connection_key)
            event = await self._record_notice(
                target.connection,
                target.agent.id,
                payload,
                message,
                status=TriggerEventStatus.FAILED,
            )
            return IngestionResult(
                success=False, failed=1, retryable=True, reason="timeout", event_ids=[event.id]
            )

    async def _sync(
        self, target: _Target, notified: str, payload: dict[str, Any]
    ) -> IngestionResult:
        connection = target.connection
        key = connection.connection_key
        totals = _Batch()

        for _ in range(MAX_CURSOR_ATTEMPTS):
            cursor = await self._persist(self._load_cursor(key))

            if cursor is None or cursor.cursor_value is None:
                if await self._persist(self._store_baseline(key, notified)):
                    event = await self._record_notice(
                        connection,
                        target.agent.id,
                        payload,
                        "Baseline cursor stored; no history to process",
                    )
                    logger.info(f"Stored baseline cursor {notified}", connection_key=key)
                    return IngestionResult(
                        success=True,
                        skipped=1,
                        reason="baseline",
                        cursor=notified,
                        event_ids=[event.id],
                    )
                continue

            if not history_is_newer(notified, cursor.cursor_value) and not cursor.catchup_pending:
                event = await self._record_notice(
                    connection,
                    target.agent.id,
                    payload,
                    f"Notification history {notified} is not newer than cursor {cursor.cursor_value}",
                )
                totals.skipped += 1
                totals.event_ids.append(event.id)
                return self._result(totals, reason="stale", cursor=cursor.cursor_value)

            try:
                client = await self._provider_call(self.client_factory.client_for(connection))
                delta = await self._provider_call(
                    client.list_history(
                        cursor.cursor_value, self.settings.MAX_MESSAGES_PER_NOTIFICATION
                    )
                )
            except UpstreamRateLimited as e:
                return await self._defer_rate_limited(target, cursor, notified, payload, e, totals)
            except CursorExpired:
                return await self._resync(target, cursor, notified, payload, totals)
            except (ProviderError, TimeoutError) as e:
                return await self._defer_failed(target, cursor, notified, payload, e, totals)

            batch = await self._process_batch(target, client, delta)
            totals.add(batch)
            if batch.rate_limited is not None:
                return await self._defer_rate_limited(
                    target, cursor, notified, payload, batch.rate_limited, totals
                )

            if delta.truncated:
                # More history exists past the covered record; keep the connection flagged.
                new_cursor = delta.history_id or cursor.cursor_value
                pending = _latest_history(notified, cursor.pending_cursor_value, new_cursor)
            else:
                new_cursor = _latest_history(
                    delta.history_id, notified, cursor.pending_cursor_value
                )
                pending = None

            if await self._persist(self._advance(key, cursor.cursor_value, new_cursor, pending)):
                logger.info(
                    f"Advanced cursor {cursor.cursor_value} -> {new_cursor} "
                    f"({batch.processed} processed, {batch.failed} failed)",
                    connection_key=key,
                )
                return self._result(
                    totals, reason="catchup_pending" if pending else None, cursor=new_cursor
                )

            logger.warning(
                "Cursor changed during processing; restarting from the current cursor",
                connection_key=key,
            )

        return self._result(totals, success=False, retryable=True, reason="cursor_conflict")

    async def _load_cursor(self, key: str) -> IntegrationCursor | None:
        async with self._session_factory() as session:
            return await CursorRepository(session).get_cursor(key)

    async def _store_baseline(self, key: str, value: str) -> bool:
        async with self._session_factory() as session, session.begin():
            return await CursorRepository(session).create_baseline(key, value)

    async def _advance(self, key: str, expected: str, new_value: str, pending: str | None) -> bool:
        async with self._session_factory() as session, session.begin():
            repository = CursorRepository(session)
            if not await repository.compare_and_set(key, expected, new_value, clear_pending=True):
                return False
            if pending is not None:
                await repository.mark_catchup(key, pending)
            return True

    async def _defer_rate_limited(
        self,
        target: _Target,
        cursor: IntegrationCursor,
        notified: str,
        payload: dict[str, Any],
        error: UpstreamRateLimited,
        totals: _Batch,
    ) -> IngestionResult:
        """Acknowledge without advancing; the unadvanced cursor is re-read by the next pass."""
        key = target.connection.connection_key
        pending = _latest_history(notified, cursor.pending_cursor_value)
        await self._persist(self._mark_catchup(key, pending, rate_limited_at=self.clock()))
        event = await self._record_notice(
            target.connection, target.agent.id, payload, f"Deferred to catch-up: {error}"
        )
        totals.skipped += 1
        totals.event_ids.append(event.id)
        logger.warning(f"Gmail rate limited; deferred history {pending}", connection_key=key)
        return self._result(
            totals,
            success=False,
            retryable=False,
            reason="rate_limited",
            cursor=cursor.cursor_value,
        )

    async def _defer_failed(
        self,
        target: _Target,
        cursor: IntegrationCursor,
        notified: str,
        payload: dict[str, Any],
        error: Exception,
        totals: _Batch,
    ) -> IngestionResult:
        key = target.connection.connection_key
        message = f"Gmail history fetch failed: {str(error) or type(error).__name__}"
        await self._persist(
            self._mark_catchup(key, _latest_history(notified, cursor.pending_cursor_value))
        )
        event = await self._record_notice(
            target.connection, target.agent.id, payload, message, status=TriggerEventStatus.FAILED
        )
        totals.failed += 1
        totals.event_ids.append(event.id)
        logger.error(message, connection_key=key)
        return self._result(
            totals,
            success=False,
            retryable=True,
            reason="provider_error",
            cursor=cursor.cursor_value,
        )

    async def _resync(
        self,
        target: _Target,
        cursor: IntegrationCursor,
        notified: str,
        payload: dict[str, Any],
        totals: _Batch,
    ) -> IngestionResult:
        """The stored history id expired upstream; restart from the notified one."""
        key = target.connection.connection_key
        await self._persist(self._advance(key, cursor.cursor_value, notified, None))
        event = await self._record_notice(
            target.connection,
            target.agent.id,
            payload,
            f"Stored history {cursor.cursor_value} expired; cursor reset to {notified}",
        )
        totals.skipped += 1
        totals.event_ids.append(event.id)
        logger.warning(f"History {cursor.cursor_value} expired; resynced", connection_key=key)
        return self._result(totals, reason="cursor_reset", cursor=notified)

    async def _mark_catchup(
        self, key: str, pending: str, rate_limited_at: datetime | None = None
    ) -> None:
        async with self._session_factory() as session, session.begin():
            await CursorRepository(session).mark_catchup(
                key, pending, rate_limited_at=rate_limited_at
            )

    # Per-message processing

    async def _process_batch(
        self, target: _Target, client: GmailClient, delta: HistoryDelta
    ) -> _Batch:
        semaphore = asyncio.Semaphore(self.settings.MESSAGE_FETCH_CONCURRENCY)
        outcomes = await asyncio.gather(
            *(
                self._process_message(target, client, message_id, semaphore)
                for message_id in delta.message_ids
            ),
            return_exceptions=True,
        )

        batch = _Batch()
        for message_id, outcome in zip(delta.message_ids, outcomes, strict=True):
            if isinstance(outcome, UpstreamRateLimited):
                batch.rate_limited = batch.rate_limited or outcome
            elif isinstance(outcome, Exception):
                # A failure that cannot be recorded propagates and keeps the cursor
                reason = str(outcome) or type(outcome).__name__
                failure = PerMessageFailure(
                    f"Message {message_id} was not processed: {reason}", message_id=message_id
                )
                batch.add(await self._record_message_failure(target, message_id, failure))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                batch.add(outcome)
        return batch

    async def _process_message(
        self,
        target: _Target,
        client: GmailClient,
        message_id: str,
        semaphore: asyncio.Semaphore,
    ) -> _Batch:
        # The bound covers fetch, persistence and dispatch of a message
        async with semaphore:
            return await self._handle_message(target, client, message_id)

    async def _handle_message(
        self, target: _Target, client: GmailClient, message_id: str
    ) -> _Batch:
        try:
            resource = await self._provider_call(client.get_message(message_id))
            message = parse_gmail_message(resource)
        except UpstreamRateLimited:
            raise
        except (ProviderError, TimeoutError, ValueError) as e:
            failure = PerMessageFailure(
                f"Failed to fetch Gmail message {message_id}: {str(e) or type(e).__name__}",
                message_id=message_id,
            )
            return await self._record_message_failure(target, message_id, failure)

        try:
            enrichment = enrich_message(
                message,
                internal_domains=target.connection.internal_domains,
                business_hours=target.connection.business_hours or self._default_business_hours(),
            )
            payload = build_message_payload(target.connection, message, enrichment)
        except Exception as e:
            failure = PerMessageFailure(
                f"Failed to enrich Gmail message {message_id}: {str(e) or type(e).__name__}",
                message_id=message_id,
            )
            return await self._record_message_failure(target, message_id, failure)

        try:
            recorded = await self._persist(
                self._record_message(target, message, enrichment, payload)
            )
        except TimeoutError:
            failure = PerMessageFailure(
                f"Recording message {message_id} timed out", message_id=message_id
            )
            return await self._record_message_failure(target, message_id, failure)

        batch = _Batch()
        for trigger, event in recorded:
            batch.event_ids.append(event.id)
            if event.status == TriggerEventStatus.SKIPPED:
                batch.skipped += 1
                continue
            request = trigger_dispatch_request(event, trigger, target.agent, payload)
            fired = await fire_event(
                self.event_manager,
                self.dispatcher,
                event,
                request,
                timeout=self.dispatch_settings.DISPATCH_TIMEOUT_SECONDS,
                persistence_timeout=self.settings.PERSISTENCE_TIMEOUT_SECONDS,
            )
            if fired.status == TriggerEventStatus.FAILED:
                batch.failed += 1
            else:
                batch.processed += 1
        return batch

    async def _record_message(
        self,
        target: _Target,
        message: ParsedGmailMessage,
        enrichment: EmailEnrichment,
        payload: dict[str, Any],
    ) -> list[tuple[EventTriggerSource, TriggerEvent]]:
        """Record the mirror row and one event per trigger in a single transaction."""
        connection = target.connection
        now = self.clock()
        recorded: list[tuple[EventTriggerSource, TriggerEvent]] = []
        async with self._session_factory() as session, session.begin():
            triggers = EventTriggerRepository(session)
            events = TriggerEventRepository(session)
            for trigger in target.triggers:
                fields = self._event_fields(
                    connection, target.agent.id, payload, trigger.id, message.id
                )
                if await events.has_fired(trigger.id, connection.id, message.id):
                    event = await self.event_manager.record_skipped(
                        fields, f"Message {message.id} was already dispatched", session=session
                    )
                elif matches_trigger_filter(payload, trigger.filter):
                    event = await self.event_manager.create_event(fields, session=session)
                    await triggers.record_fire(trigger.id, now)
                else:
                    event = await self.event_manager.record_skipped(
                        fields, "Message does not match trigger filter", session=session
                    )
                recorded.append((trigger, event))

            fired = [
                event.id
                for _, event in recorded
                if event.status == TriggerEventStatus.RECEIVED
            ]
            created = await EmailMessageRepository(session).upsert(
                EmailMessageRecord(
                    connection_id=connection.id,
                    external_message_id=message.id,
                    workspace_id=connection.workspace_id,
                    thread_id=message.thread_id,
                    subject=message.subject,
                    from_address=message.sender,
                    to_addresses=message.parsed_to + message.parsed_cc,
                    snippet=message.snippet,
                    labels=message.label_ids,
                    received_at=message.received_at,
                    is_internal=enrichment.is_internal,
                    is_forwarded=enrichment.is_forwarded,
                    is_important=enrichment.is_important,
                    within_business_hours=enrichment.within_business_hours,
                    has_attachments=enrichment.has_attachments,
                    last_trigger_event_id=fired[-1] if fired else None,
                )
            )
        if not created:
            logger.info(
                f"Message {message.id} was delivered before",
                connection_key=connection.connection_key,
            )
        return recorded

    async def _record_message_failure(
        self, target: _Target, message_id: str, failure: PerMessageFailure
    ) -> _Batch:
        logger.error(str(failure), connection_key=target.connection.connection_key)
        fields = self._event_fields(
            target.connection,
            target.agent.id,
            {"provider": PROVIDER_KEY, "messageId": message_id},
            target.triggers[0].id if len(target.triggers) == 1 else None,
            message_id,
        )
        failed = fields.model_copy(
            update={"status": TriggerEventStatus.FAILED, "error_message": str(failure)}
        )
        event = await self._persist(self.event_manager.create_event(failed))
        return _Batch(failed=1, event_ids=[event.id])

    # Helpers

    def _default_business_hours(self) -> BusinessHours:
        return BusinessHours(
            start_hour=self.settings.BUSINESS_HOURS_START,
            end_hour=self.settings.BUSINESS_HOURS_END,
            days=self.settings.BUSINESS_DAYS,
            timezone=self.settings.BUSINESS_TIMEZONE,
        )

    async def _provider_call(self, coro):
        return await asyncio.wait_for(coro, self.settings.PROVIDER_TIMEOUT_SECONDS)

    async def _persist(self, coro):
        return await asyncio.wait_for(coro, self.settings.PERSISTENCE_TIMEOUT_SECONDS)

    def _event_fields(
        self,
        connection: IntegrationConnection | None,
        agent_id: UUID | None,
        payload: dict[str, Any],
        trigger_id: UUID | None = None,
        external_id: str | None = None,
    ) -> TriggerEventCreate:
        return TriggerEventCreate(
            trigger_id=trigger_id,
            agent_id=agent_id,
            workspace_id=connection.workspace_id if connection else None,
            source_type=TriggerEventSource.INTEGRATION,
            trigger_type=TriggerType.EVENT.value,
            integration_key=PROVIDER_KEY,
            integration_id=connection.id if connection else None,
            event_name=EVENT_NAME,
            external_id=external_id,
            payload=payload,
        )

    async def _record_notice(
        self,
        connection: IntegrationConnection | None,
        agent_id: UUID | None,
        payload: dict[str, Any],
        reason: str,
        status: TriggerEventStatus = TriggerEventStatus.SKIPPED,
    ) -> TriggerEvent:
        """Record a notification-level event that stands for the whole delivery."""
        fields = self._event_fields(connection, agent_id, payload, external_id=payload.get("historyId"))
        if status == TriggerEventStatus.SKIPPED:
            return await self._persist(self.event_manager.record_skipped(fields, reason))
        return await self._persist(
            self.event_manager.create_event(
                fields.model_copy(update={"status": status, "error_message": reason})
            )
        )

    @staticmethod
    def _result(
        batch: _Batch,
        success: bool = True,
        retryable: bool = False,
        reason: str | None = None,
        cursor: str | None = None,
    ) -> IngestionResult:
        return IngestionResult(
            success=success,
            processed=batch.processed,
            skipped=batch.skipped,
            failed=batch.failed,
            retryable=retryable,
            reason=reason,
            cursor=cursor,
            event_ids=batch.event_ids,
        )


def build_message_payload(
    connection: IntegrationConnection, message: ParsedGmailMessage, enrichment: EmailEnrichment
) -> dict[str, Any]:
    """Event payload for one message; filters and input mappings address it by dotted path."""
    received_at = message.received_at
    return {
        "provider": PROVIDER_KEY,
        "emailAddress": connection.external_account,
        "message": {
            "id": message.id,
            "threadId": message.thread_id,
            "historyId": message.history_id,
            "subject": message.subject,
            "from": message.sender,
            "fromHeader": message.from_header,
            "to": message.parsed_to,
            "cc": message.parsed_cc,
            "replyTo": message.reply_to,
            "snippet": message.snippet,
            "bodyText": message.body_text,
            "labels": message.label_ids,
            "receivedAt": received_at.isoformat() if received_at else None,
            "attachments": [attachment.model_dump(mode="json") for attachment in message.attachments],
        },
        "enrichment": {
            "senderDomain": enrichment.sender_domain,
            "isInternal": enrichment.is_internal,
            "isForwarded": enrichment.is_forwarded,
            "isImportant": enrichment.is_important,
            "withinBusinessHours": enrichment.within_business_hours,
            "hasAttachments": enrichment.has_attachments,
        },
    }


def _connection_id(connection_key: str) -> UUID:
    provider, _, raw_id = connection_key.partition(":")
    if provider != PROVIDER_KEY or not raw_id:
        raise ValueError(f"Not a Gmail connection key: {connection_key}")
    return UUID(raw_id)
