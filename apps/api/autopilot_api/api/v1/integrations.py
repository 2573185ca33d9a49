"""Push notification endpoints of provider integrations."""

from typing import Annotated, Any

from autopilot_triggers.ingestion import decode_notification
from autopilot_triggers.logging_utils import InvalidNotification
from fastapi import APIRouter, Header, Query, Request

from ..deps import GmailAdapterDep, GmailAuthenticatorDep

router = APIRouter(prefix="/integrations", tags=["integrations"])


@router.post("/gmail/push")
async def gmail_push(
    request: Request,
    adapter: GmailAdapterDep,
    authenticator: GmailAuthenticatorDep,
    token: Annotated[str | None, Query()] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> dict[str, Any]:
    """Receive a Pub/Sub push for Gmail and ingest the new messages.

    Handled outcomes, including skipped and deferred ones, answer 200 so that
    Pub/Sub does not redeliver them; a pending catch-up covers the rest.
    """
    await authenticator.authenticate(token=token, authorization=authorization)
    try:
        envelope = await request.json()
    except ValueError as e:
        raise InvalidNotification("Push body is not valid JSON") from e

    notification = decode_notification(envelope)
    result = await adapter.handle_notification(notification)
    return result.model_dump(mode="json")
