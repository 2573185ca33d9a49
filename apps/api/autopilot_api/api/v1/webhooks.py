"""Inbound webhook endpoint for webhook triggers."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..deps import WebhookIngestorDep

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{webhook_path}")
async def receive_webhook(
    webhook_path: str, request: Request, ingestor: WebhookIngestorDep
) -> JSONResponse:
    """Verify the signature, record the delivery and fire the trigger.

    The raw body is signed, so it is read before any parsing.
    """
    body = await request.body()
    outcome = await ingestor.handle(webhook_path, body, dict(request.headers))
    return JSONResponse(status_code=outcome.status_code, content=outcome.body())
