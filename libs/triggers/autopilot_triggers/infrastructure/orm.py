"""Trigger ORM models."""

from datetime import datetime
from typing import Any
from uuid import UUID

from autopilot_common.base.models import AuditMixin, BaseModel, WorkspaceScopedMixin
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column


class AgentORM(BaseModel, WorkspaceScopedMixin):
    """The columns of the agent table the trigger engine reads."""

    __tablename__ = "agents"

    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class AgentScheduleORM(BaseModel, WorkspaceScopedMixin, AuditMixin):
    """Cron schedule attached to an agent."""

    __tablename__ = "agent_schedules"

    agent_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    cron_expr: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(100), nullable=False, default="UTC")
    input_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    run_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<AgentScheduleORM {self.id}: {self.name} ({self.cron_expr} {self.timezone})>"


class AgentTriggerORM(BaseModel, WorkspaceScopedMixin, AuditMixin):
    """Event-sourced trigger attached to an agent."""

    __tablename__ = "agent_triggers"

    agent_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_name: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    webhook_path: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    filter_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    input_mapping: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_triggered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    trigger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<AgentTriggerORM {self.id}: {self.name} ({self.trigger_type})>"


class TriggerEventORM(BaseModel, WorkspaceScopedMixin):
    """Audit record of one candidate firing."""

    __tablename__ = "trigger_events"

    # Schedule or trigger id; null for deliveries that matched nothing
    trigger_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    agent_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    source_type: Mapped[str] = mapped_column(String(20), nullable=False)
    trigger_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    integration_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    integration_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    event_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    workflow_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<TriggerEventORM {self.id}: {self.trigger_id} ({self.status})>"


class IntegrationConnectionORM(BaseModel, WorkspaceScopedMixin):
    """A connected upstream account."""

    __tablename__ = "integration_connections"
    __table_args__ = (UniqueConstraint("provider_key", "external_account"),)

    provider_key: Mapped[str] = mapped_column(String(50), nullable=False)
    external_account: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    agent_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("agents.id", ondelete="SET NULL"), nullable=True
    )
    organization_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    internal_domains: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    business_hours: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Maintained by the OAuth layer; read only when calling the provider
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)


class IntegrationCursorORM(BaseModel):
    """Provider cursor for one connection."""

    __tablename__ = "integration_cursors"

    connection_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    cursor_value: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pending_cursor_value: Mapped[str | None] = mapped_column(String(255), nullable=True)
    catchup_pending: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rate_limited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class EmailMessageORM(BaseModel, WorkspaceScopedMixin):
    """Mirror of an ingested email, keyed by the provider's message id."""

    __tablename__ = "email_messages"
    __table_args__ = (UniqueConstraint("connection_id", "external_message_id"),)

    connection_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("integration_connections.id", ondelete="CASCADE"), nullable=False
    )
    external_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    thread_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    from_address: Mapped[str | None] = mapped_column(String(320), nullable=True)
    to_addresses: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    snippet: Mapped[str | None] = mapped_column(Text, nullable=True)
    labels: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_internal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_forwarded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_important: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    within_business_hours: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_attachments: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_trigger_event_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    delivery_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
