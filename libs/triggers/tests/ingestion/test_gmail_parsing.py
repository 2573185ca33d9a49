"""Tests for flattening Gmail message resources."""

from datetime import UTC, datetime

import pytest
from autopilot_triggers.ingestion.gmail_parsing import (
    decode_base64url,
    parse_addresses,
    parse_date_header,
    parse_gmail_message,
)


class TestParseGmailMessage:
    def test_flattens_headers_body_and_attachments(self, gmail_client, now):
        gmail_client.add_message(
            "m-1",
            subject="Quarterly report",
            sender='"Bob Smith" <Bob@Partner.io>',
            to="inbox@acme.test, Team <team@acme.test>",
            body="Numbers attached",
            extra_headers={"Cc": "carol@acme.test", "Reply-To": "replies@partner.io"},
            attachment=True,
        )

        message = parse_gmail_message(gmail_client.messages["m-1"])

        assert message.id == "m-1"
        assert message.thread_id == "thread-m-1"
        assert message.history_id == "101"
        assert message.subject == "Quarterly report"
        assert message.sender == "bob@partner.io"
        assert message.parsed_to == ["inbox@acme.test", "team@acme.test"]
        assert message.parsed_cc == ["carol@acme.test"]
        assert message.reply_to == "replies@partner.io"
        assert message.body_text == "Numbers attached"
        assert [a.filename for a in message.attachments] == ["report.pdf"]
        assert message.attachments[0].size == 1024
        assert message.received_at == now

    def test_header_names_are_case_insensitive(self):
        message = parse_gmail_message(
            {"id": "m-2", "payload": {"headers": [{"name": "SUBJECT", "value": "Hi"}]}}
        )

        assert message.subject == "Hi"
        assert message.headers == {"subject": "Hi"}

    def test_date_header_is_fallback_for_receipt_time(self):
        message = parse_gmail_message(
            {
                "id": "m-3",
                "payload": {
                    "headers": [{"name": "Date", "value": "Wed, 06 Mar 2024 09:30:00 -0500"}]
                },
            }
        )

        assert message.internal_date is None
        assert message.received_at == datetime(2024, 3, 6, 14, 30, tzinfo=UTC)

    def test_missing_id_is_rejected(self):
        with pytest.raises(ValueError):
            parse_gmail_message({"payload": {}})


class TestHelpers:
    def test_decode_base64url_without_padding(self):
        assert decode_base64url("aGVsbG8") == "hello"
        assert decode_base64url(None) is None

    def test_parse_addresses_lowercases(self):
        assert parse_addresses("Ann <ANN@x.org>, bob@y.org") == ["ann@x.org", "bob@y.org"]
        assert parse_addresses(None) == []

    def test_parse_date_header(self):
        assert parse_date_header("not a date") is None
        assert parse_date_header("Mon, 04 Mar 2024 08:00:00 +0000") == datetime(
            2024, 3, 4, 8, 0, tzinfo=UTC
        )
