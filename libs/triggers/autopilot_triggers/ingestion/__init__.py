"""Push ingestion adapters: Gmail notifications and generic webhooks."""

from .base import ConnectionLocks, IngestionResult
from .enrichment import EmailEnrichment, enrich_message
from .gmail import (
    EVENT_NAME as GMAIL_EVENT_NAME,
    GmailNotification,
    GmailPushAdapter,
    GmailPushAuthenticator,
    decode_notification,
)
from .gmail_client import (
    GmailClient,
    GmailClientFactory,
    HistoryDelta,
    HttpxGmailClient,
    HttpxGmailClientFactory,
    stored_token_provider,
)
from .gmail_parsing import ParsedGmailMessage, parse_gmail_message
from .webhook import WebhookIngestor, WebhookOutcome, compute_signature

__all__ = [
    "GMAIL_EVENT_NAME",
    "ConnectionLocks",
    "EmailEnrichment",
    "GmailClient",
    "GmailClientFactory",
    "GmailNotification",
    "GmailPushAdapter",
    "GmailPushAuthenticator",
    "HistoryDelta",
    "HttpxGmailClient",
    "HttpxGmailClientFactory",
    "IngestionResult",
    "ParsedGmailMessage",
    "WebhookIngestor",
    "WebhookOutcome",
    "compute_signature",
    "decode_notification",
    "enrich_message",
    "parse_gmail_message",
    "stored_token_provider",
]
