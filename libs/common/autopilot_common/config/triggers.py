"""Trigger system configuration settings."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class TriggerSettings(BaseSettings):
    """Configuration settings for trigger administration and webhook delivery."""

    DEFAULT_TIMEZONE: str = Field(
        default="UTC", description="Timezone used when a schedule does not specify one"
    )

    # Payload snapshots
    SNAPSHOT_MAX_STRING_LENGTH: int = Field(
        default=20_000, description="Longest string kept verbatim in a payload snapshot"
    )
    SNAPSHOT_MAX_LIST_ITEMS: int = Field(
        default=200, description="Longest list kept verbatim in a payload snapshot"
    )
    SNAPSHOT_MAX_DEPTH: int = Field(default=12, description="Deepest nesting kept in a snapshot")
    SNAPSHOT_MAX_BYTES: int = Field(
        default=256_000, description="Upper bound for a serialized payload snapshot"
    )

    # Webhook settings
    WEBHOOK_BASE_URL: str = Field(
        default="/v1/webhooks", description="Base URL path for webhook endpoints"
    )
    WEBHOOK_SIGNATURE_HEADER: str = Field(
        default="x-webhook-signature", description="Header carrying the HMAC signature"
    )
    WEBHOOK_TIMESTAMP_HEADER: str = Field(
        default="x-webhook-timestamp", description="Header carrying the signing timestamp"
    )
    WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS: int = Field(
        default=300, description="Maximum age of a signed webhook timestamp"
    )
    WEBHOOK_PATH_BYTES: int = Field(default=16, description="Random bytes in a webhook path")
    WEBHOOK_SECRET_BYTES: int = Field(default=32, description="Random bytes in a webhook secret")

    model_config = {"env_prefix": "TRIGGER_", "extra": "ignore"}


class IngestionSettings(BaseSettings):
    """Configuration for provider push-notification ingestion."""

    # Timeouts
    PROVIDER_TIMEOUT_SECONDS: float = Field(
        default=20.0, description="Upper bound for a single provider API call"
    )
    PERSISTENCE_TIMEOUT_SECONDS: float = Field(
        default=10.0, description="Upper bound for a single persistence round trip"
    )
    CONNECTION_LOCK_TIMEOUT_SECONDS: float = Field(
        default=30.0, description="How long a delivery waits for its connection lock"
    )

    # Batch bounds
    MAX_MESSAGES_PER_NOTIFICATION: int = Field(
        default=50, description="Messages fetched per notification; the rest wait for catch-up"
    )
    MESSAGE_FETCH_CONCURRENCY: int = Field(
        default=5, description="Concurrent message fetches within one batch"
    )

    # Gmail push authentication
    GMAIL_PUSH_VERIFICATION_TOKEN: str | None = Field(
        default=None, description="Shared secret appended to the Pub/Sub push endpoint"
    )
    GMAIL_PUSH_AUDIENCE: str | None = Field(
        default=None, description="Expected audience of Pub/Sub OIDC push tokens"
    )
    GMAIL_PUSH_SERVICE_ACCOUNT: str | None = Field(
        default=None, description="Service account expected to sign OIDC push tokens"
    )
    GOOGLE_JWKS_URL: str = Field(default="https://www.googleapis.com/oauth2/v3/certs")
    GMAIL_API_BASE_URL: str = Field(default="https://gmail.googleapis.com/gmail/v1")

    # Enrichment defaults
    BUSINESS_HOURS_START: int = Field(default=9, ge=0, le=23)
    BUSINESS_HOURS_END: int = Field(default=17, ge=1, le=24)
    BUSINESS_DAYS: list[int] = Field(
        default_factory=lambda: [0, 1, 2, 3, 4], description="Weekdays, Monday is 0"
    )
    BUSINESS_TIMEZONE: str = Field(default="UTC")

    model_config = {"env_prefix": "INGESTION_", "extra": "ignore"}


class DispatchSettings(BaseSettings):
    """Configuration for handing fire requests to the execution runtime."""

    TEMPORAL_HOST: str = Field(default="localhost:7233")
    TEMPORAL_NAMESPACE: str = Field(default="default")
    TASK_QUEUE: str = Field(default="agent-execution-queue")
    WORKFLOW_NAME: str = Field(default="AgentExecutionWorkflow")
    DISPATCH_TIMEOUT_SECONDS: float = Field(default=10.0)

    model_config = {"env_prefix": "DISPATCH_", "extra": "ignore"}


@lru_cache
def get_trigger_settings() -> TriggerSettings:
    return TriggerSettings()


@lru_cache
def get_ingestion_settings() -> IngestionSettings:
    return IngestionSettings()


@lru_cache
def get_dispatch_settings() -> DispatchSettings:
    return DispatchSettings()
