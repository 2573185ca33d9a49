"""Tests for Gmail push authentication and envelope decoding."""

import base64
import json
import time
from types import SimpleNamespace

import jwt
import pytest
from autopilot_common.config import IngestionSettings
from autopilot_triggers.ingestion import GmailPushAuthenticator, decode_notification
from autopilot_triggers.ingestion.gmail import history_is_newer
from autopilot_triggers.logging_utils import IntegrationAuthFailure, InvalidNotification
from cryptography.hazmat.primitives.asymmetric import rsa

AUDIENCE = "https://triggers.example.com/v1/integrations/gmail/push"
SERVICE_ACCOUNT = "push@project.iam.gserviceaccount.com"


def _envelope(data: dict | str, **message) -> dict:
    raw = data if isinstance(data, str) else base64.b64encode(json.dumps(data).encode()).decode()
    return {
        "message": {"data": raw, "messageId": "pubsub-1", **message},
        "subscription": "projects/p/subscriptions/gmail",
    }


class TestDecodeNotification:
    def test_valid_envelope(self):
        notification = decode_notification(
            _envelope({"emailAddress": " Inbox@Acme.Test ", "historyId": 12345})
        )

        assert notification.email_address == "inbox@acme.test"
        assert notification.history_id == "12345"
        assert notification.pubsub_message_id == "pubsub-1"
        assert notification.subscription == "projects/p/subscriptions/gmail"

    def test_urlsafe_data_without_padding(self):
        data = base64.urlsafe_b64encode(
            json.dumps({"emailAddress": "a@b.c", "historyId": "7"}).encode()
        ).decode().rstrip("=")

        assert decode_notification(_envelope(data)).history_id == "7"

    @pytest.mark.parametrize(
        "envelope",
        [
            None,
            {},
            {"message": "nope"},
            {"message": {}},
            _envelope("%%% not base64 %%%"),
            _envelope(base64.b64encode(b"[1, 2]").decode()),
            _envelope({"emailAddress": "a@b.c"}),
            _envelope({"historyId": "1"}),
            _envelope({"emailAddress": "a@b.c", "historyId": True}),
        ],
    )
    def test_malformed_envelopes(self, envelope):
        with pytest.raises(InvalidNotification):
            decode_notification(envelope)


class TestHistoryIsNewer:
    def test_numeric_comparison(self):
        assert history_is_newer("100", "99")
        assert not history_is_newer("99", "100")
        assert not history_is_newer("100", "100")

    def test_missing_values(self):
        assert history_is_newer("1", None)
        assert not history_is_newer(None, "1")


class _StaticJwks:
    """Key resolver that always returns one RSA public key."""

    def __init__(self, public_key):
        self.public_key = public_key

    def get_signing_key_from_jwt(self, token):
        return SimpleNamespace(key=self.public_key)


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _token(signing_key, **overrides) -> str:
    now = int(time.time())
    claims = {
        "iss": "https://accounts.google.com",
        "aud": AUDIENCE,
        "iat": now,
        "exp": now + 300,
        "email": SERVICE_ACCOUNT,
        "email_verified": True,
    }
    claims.update(overrides)
    return jwt.encode(claims, signing_key, algorithm="RS256")


class TestGmailPushAuthenticator:
    async def test_shared_token(self):
        authenticator = GmailPushAuthenticator(
            IngestionSettings(GMAIL_PUSH_VERIFICATION_TOKEN="push-secret")
        )

        await authenticator.authenticate(token="push-secret")
        with pytest.raises(IntegrationAuthFailure):
            await authenticator.authenticate(token="wrong")

    async def test_unconfigured_rejects_everything(self):
        authenticator = GmailPushAuthenticator(
            IngestionSettings(GMAIL_PUSH_VERIFICATION_TOKEN=None, GMAIL_PUSH_AUDIENCE=None)
        )

        with pytest.raises(IntegrationAuthFailure, match="not configured"):
            await authenticator.authenticate(token="anything")

    async def test_valid_oidc_token(self, signing_key):
        authenticator = GmailPushAuthenticator(
            IngestionSettings(
                GMAIL_PUSH_VERIFICATION_TOKEN=None,
                GMAIL_PUSH_AUDIENCE=AUDIENCE,
                GMAIL_PUSH_SERVICE_ACCOUNT=SERVICE_ACCOUNT,
            ),
            jwks_client=_StaticJwks(signing_key.public_key()),
        )

        await authenticator.authenticate(authorization=f"Bearer {_token(signing_key)}")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"aud": "https://elsewhere.example.com"},
            {"iss": "https://evil.example.com"},
            {"email_verified": False},
            {"email": "someone@else.iam.gserviceaccount.com"},
            {"exp": int(time.time()) - 600, "iat": int(time.time()) - 900},
        ],
    )
    async def test_invalid_oidc_tokens(self, signing_key, overrides):
        authenticator = GmailPushAuthenticator(
            IngestionSettings(
                GMAIL_PUSH_VERIFICATION_TOKEN=None,
                GMAIL_PUSH_AUDIENCE=AUDIENCE,
                GMAIL_PUSH_SERVICE_ACCOUNT=SERVICE_ACCOUNT,
            ),
            jwks_client=_StaticJwks(signing_key.public_key()),
        )

        with pytest.raises(IntegrationAuthFailure):
            await authenticator.authenticate(
                authorization=f"Bearer {_token(signing_key, **overrides)}"
            )

    async def test_non_bearer_header_is_rejected(self):
        authenticator = GmailPushAuthenticator(
            IngestionSettings(GMAIL_PUSH_VERIFICATION_TOKEN=None, GMAIL_PUSH_AUDIENCE=AUDIENCE)
        )

        with pytest.raises(IntegrationAuthFailure):
            await authenticator.authenticate(authorization="Basic dXNlcjpwYXNz")
