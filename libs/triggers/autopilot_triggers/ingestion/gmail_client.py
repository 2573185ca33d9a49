"""Gmail REST API access used by push ingestion."""

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import httpx
from autopilot_common.config import IngestionSettings, get_ingestion_settings
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..domain.models import IntegrationConnection
from ..infrastructure.repository import IntegrationConnectionRepository
from ..logging_utils import CursorExpired, ProviderError, TriggerLogger, UpstreamRateLimited

logger = TriggerLogger(__name__)

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


class HistoryDelta(BaseModel):
    """Messages added after a start history id.

    ``history_id`` is the cursor that covers exactly the returned messages; when
    ``truncated`` is set, more messages exist beyond it.
    """

    message_ids: list[str] = Field(default_factory=list)
    history_id: str | None = None
    truncated: bool = False


class GmailClient(Protocol):
    async def list_history(self, start_history_id: str, max_results: int) -> HistoryDelta: ...

    async def get_message(self, message_id: str) -> dict[str, Any]: ...


class GmailClientFactory(Protocol):
    async def client_for(self, connection: IntegrationConnection) -> GmailClient: ...


def _error_reason(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    error_body = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error_body, dict):
        return None
    for error in error_body.get("errors") or []:
        if isinstance(error, dict) and error.get("reason"):
            return error["reason"]
    return None


def raise_for_gmail_status(response: httpx.Response, resource: str) -> None:
    """Map a Gmail error response onto the trigger error taxonomy.

    Raises:
        UpstreamRateLimited: On 429, or 403 with a rate-limit reason.
        CursorExpired: On 404 from the history endpoint.
        ProviderError: On any other non-success status.
    """
    if response.is_success:
        return
    status = response.status_code
    reason = _error_reason(response)
    if status == 429 or (status == 403 and reason in _RATE_LIMIT_REASONS):
        raise UpstreamRateLimited(
            f"Gmail rate limited the {resource} request",
            status_code=status,
            reason=reason,
            retry_after=response.headers.get("retry-after"),
        )
    if status == 404 and resource == "history":
        raise CursorExpired("Gmail history id is too old", status_code=status)
    raise ProviderError(
        f"Gmail {resource} request failed with status {status}", status_code=status, reason=reason
    )


class HttpxGmailClient:
    """Gmail client for one mailbox, authenticated with a bearer token."""

    def __init__(
        self,
        access_token: str,
        settings: IngestionSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_ingestion_settings()
        self._access_token = access_token
        self._http_client = http_client

    async def _get(self, path: str, params: dict[str, Any], resource: str) -> dict[str, Any]:
        url = f"{self.settings.GMAIL_API_BASE_URL}/users/me/{path}"
        headers = {"Authorization": f"Bearer {self._access_token}"}
        try:
            if self._http_client is not None:
                response = await self._http_client.get(url, params=params, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.settings.PROVIDER_TIMEOUT_SECONDS) as client:
                    response = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"Gmail {resource} request failed: {e}") from e
        raise_for_gmail_status(response, resource)
        return response.json()

    async def list_history(self, start_history_id: str, max_results: int) -> HistoryDelta:
        """Collect added message ids after ``start_history_id``, stopping at ``max_results``.

        The returned ``history_id`` is the mailbox head when the delta is complete,
        otherwise the id of the last history record whose messages were all taken.
        """
        message_ids: list[str] = []
        seen: set[str] = set()
        covered: str | None = None
        page_token: str | None = None

        while True:
            params: dict[str, Any] = {
                "startHistoryId": start_history_id,
                "historyTypes": "messageAdded",
                "maxResults": 500,
            }
            if page_token:
                params["pageToken"] = page_token
            page = await self._get("history", params, "history")

            for record in page.get("history") or []:
                added = [
                    item["message"]["id"]
                    for item in record.get("messagesAdded") or []
                    if (item.get("message") or {}).get("id")
                ]
                new_ids = [message_id for message_id in added if message_id not in seen]
                if len(message_ids) + len(new_ids) > max_results and message_ids:
                    logger.info(f"History delta truncated after {len(message_ids)} messages")
                    return HistoryDelta(message_ids=message_ids, history_id=covered, truncated=True)
                for message_id in new_ids:
                    seen.add(message_id)
                    message_ids.append(message_id)
                covered = str(record.get("id") or covered)

            page_token = page.get("nextPageToken")
            if not page_token:
                head = page.get("historyId")
                return HistoryDelta(
                    message_ids=message_ids,
                    history_id=str(head) if head else covered,
                    truncated=False,
                )

    async def get_message(self, message_id: str) -> dict[str, Any]:
        return await self._get(f"messages/{message_id}", {"format": "full"}, "message")


class HttpxGmailClientFactory:
    """Builds per-connection clients from an access-token provider."""

    def __init__(
        self,
        token_provider: Callable[[IntegrationConnection], Awaitable[str | None]],
        settings: IngestionSettings | None = None,
    ):
        self._token_provider = token_provider
        self.settings = settings or get_ingestion_settings()

    async def client_for(self, connection: IntegrationConnection) -> GmailClient:
        token = await self._token_provider(connection)
        if not token:
            raise ProviderError(
                "No Gmail access token available", connection_id=str(connection.id)
            )
        return HttpxGmailClient(token, settings=self.settings)


def stored_token_provider(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[IntegrationConnection], Awaitable[str | None]]:
    """Token provider reading the access token stored on the connection row."""

    async def provide(connection: IntegrationConnection) -> str | None:
        async with session_factory() as session:
            return await IntegrationConnectionRepository(session).get_access_token(connection.id)

    return provide
