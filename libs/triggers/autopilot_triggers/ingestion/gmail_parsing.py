"""Parsing of Gmail API message resources."""

import base64
import binascii
from datetime import UTC, datetime
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any

from pydantic import BaseModel, Field


class GmailAttachment(BaseModel):
    filename: str
    mime_type: str | None = None
    size: int = 0
    attachment_id: str | None = None


class ParsedGmailMessage(BaseModel):
    """Flattened view of a ``users.messages.get`` resource (``format=full``)."""

    id: str
    thread_id: str | None = None
    history_id: str | None = None
    label_ids: list[str] = Field(default_factory=list)
    snippet: str | None = None
    internal_date: datetime | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    subject: str | None = None
    from_header: str | None = None
    to_header: str | None = None
    cc_header: str | None = None
    bcc_header: str | None = None
    reply_to: str | None = None
    date_header: str | None = None
    message_id_header: str | None = None
    body_text: str | None = None
    body_html: str | None = None
    attachments: list[GmailAttachment] = Field(default_factory=list)
    parsed_from: list[str] = Field(default_factory=list)
    parsed_to: list[str] = Field(default_factory=list)
    parsed_cc: list[str] = Field(default_factory=list)
    parsed_bcc: list[str] = Field(default_factory=list)

    @property
    def sender(self) -> str | None:
        return self.parsed_from[0] if self.parsed_from else None

    @property
    def received_at(self) -> datetime | None:
        """Provider receipt time, falling back to the Date header."""
        if self.internal_date is not None:
            return self.internal_date
        return parse_date_header(self.date_header)


def decode_base64url(data: str | None) -> str | None:
    """Decode a base64url body part as UTF-8, tolerating missing padding."""
    if not data:
        return None
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return None
    return raw.decode("utf-8", errors="replace")


def parse_addresses(value: str | None) -> list[str]:
    """Lowercased addresses from an address-list header."""
    if not value:
        return []
    return [address.strip().lower() for _, address in getaddresses([value]) if "@" in address]


def parse_date_header(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _walk_parts(part: dict[str, Any]):
    yield part
    for child in part.get("parts") or []:
        yield from _walk_parts(child)


def parse_gmail_message(resource: dict[str, Any]) -> ParsedGmailMessage:
    """Flatten a Gmail message resource.

    Raises:
        ValueError: If the resource has no message id.
    """
    message_id = resource.get("id")
    if not message_id:
        raise ValueError("Gmail message resource has no id")

    payload = resource.get("payload") or {}
    headers: dict[str, str] = {}
    for header in payload.get("headers") or []:
        name = (header.get("name") or "").lower()
        if name and name not in headers:
            headers[name] = header.get("value") or ""

    body_text = body_html = None
    attachments: list[GmailAttachment] = []
    for part in _walk_parts(payload):
        body = part.get("body") or {}
        filename = part.get("filename")
        mime_type = part.get("mimeType")
        if filename and body.get("attachmentId"):
            attachments.append(
                GmailAttachment(
                    filename=filename,
                    mime_type=mime_type,
                    size=int(body.get("size") or 0),
                    attachment_id=body.get("attachmentId"),
                )
            )
            continue
        if mime_type == "text/plain" and body_text is None:
            body_text = decode_base64url(body.get("data"))
        elif mime_type == "text/html" and body_html is None:
            body_html = decode_base64url(body.get("data"))

    internal_date = None
    if resource.get("internalDate"):
        try:
            internal_date = datetime.fromtimestamp(int(resource["internalDate"]) / 1000, tz=UTC)
        except (TypeError, ValueError, OverflowError):
            internal_date = None

    return ParsedGmailMessage(
        id=message_id,
        thread_id=resource.get("threadId"),
        history_id=str(resource["historyId"]) if resource.get("historyId") else None,
        label_ids=list(resource.get("labelIds") or []),
        snippet=resource.get("snippet"),
        internal_date=internal_date,
        headers=headers,
        subject=headers.get("subject"),
        from_header=headers.get("from"),
        to_header=headers.get("to"),
        cc_header=headers.get("cc"),
        bcc_header=headers.get("bcc"),
        reply_to=headers.get("reply-to"),
        date_header=headers.get("date"),
        message_id_header=headers.get("message-id"),
        body_text=body_text,
        body_html=body_html,
        attachments=attachments,
        parsed_from=parse_addresses(headers.get("from")),
        parsed_to=parse_addresses(headers.get("to")),
        parsed_cc=parse_addresses(headers.get("cc")),
        parsed_bcc=parse_addresses(headers.get("bcc")),
    )
