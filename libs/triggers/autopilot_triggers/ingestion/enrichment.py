"""Deterministic enrichment flags for ingested email."""

from datetime import datetime

from pydantic import BaseModel

from ..domain.models import BusinessHours
from ..schedule_utils import resolve_timezone
from .gmail_parsing import ParsedGmailMessage

_FORWARD_PREFIXES = ("fwd:", "fw:")
_FORWARD_HEADERS = ("x-forwarded-for", "x-forwarded-to", "x-forwarded-message-id")


class EmailEnrichment(BaseModel):
    sender_domain: str | None = None
    is_internal: bool = False
    is_forwarded: bool = False
    is_important: bool = False
    within_business_hours: bool = False
    has_attachments: bool = False


def sender_domain(address: str | None) -> str | None:
    if not address or "@" not in address:
        return None
    return address.rsplit("@", 1)[1].strip().lower() or None


def is_internal_sender(address: str | None, internal_domains: list[str]) -> bool:
    """Whether the sender belongs to one of the domains or a subdomain of one."""
    domain = sender_domain(address)
    if domain is None:
        return False
    for candidate in internal_domains:
        candidate = candidate.strip().lower().lstrip("@")
        if candidate and (domain == candidate or domain.endswith("." + candidate)):
            return True
    return False


def within_business_hours(received_at: datetime | None, hours: BusinessHours | None) -> bool:
    """Evaluate the window in its own timezone; weekdays are 0 (Monday) to 6."""
    if received_at is None or hours is None:
        return False
    local = received_at.astimezone(resolve_timezone(hours.timezone))
    if local.weekday() not in hours.days:
        return False
    return hours.start_hour <= local.hour < hours.end_hour


def is_forwarded(message: ParsedGmailMessage) -> bool:
    subject = (message.subject or "").strip().lower()
    if subject.startswith(_FORWARD_PREFIXES):
        return True
    return any(name in message.headers for name in _FORWARD_HEADERS)


def is_important(message: ParsedGmailMessage) -> bool:
    if "IMPORTANT" in message.label_ids:
        return True
    if message.headers.get("importance", "").strip().lower() == "high":
        return True
    priority = message.headers.get("x-priority", "").strip()
    return priority[:1] in ("1", "2")


def enrich_message(
    message: ParsedGmailMessage,
    internal_domains: list[str] | None = None,
    business_hours: BusinessHours | None = None,
) -> EmailEnrichment:
    return EmailEnrichment(
        sender_domain=sender_domain(message.sender),
        is_internal=is_internal_sender(message.sender, internal_domains or []),
        is_forwarded=is_forwarded(message),
        is_important=is_important(message),
        within_business_hours=within_business_hours(message.received_at, business_hours),
        has_attachments=bool(message.attachments),
    )
