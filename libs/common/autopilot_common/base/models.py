from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import DateTime, String, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class BaseModel(DeclarativeBase):
    """Base model for all database models."""

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        """Return a string representation of the model."""
        return f"<{self.__class__.__name__} {self.id}>"

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dictionary."""
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}


class WorkspaceScopedMixin:
    """Mixin for workspace-scoped resources."""

    workspace_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    def is_in_workspace(self, workspace_id: str) -> bool:
        """Check if this record belongs to the specified workspace."""
        return self.workspace_id == workspace_id


class AuditMixin:
    """Mixin to add audit fields to models."""

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    def set_created_by(self, user_id: str) -> None:
        """Set the user who created this record."""
        self.created_by = user_id
