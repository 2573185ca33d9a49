from .models import AuditMixin, BaseModel, WorkspaceScopedMixin, ensure_utc, utcnow
from .repository import BaseRepository

__all__ = [
    "AuditMixin",
    "BaseModel",
    "BaseRepository",
    "WorkspaceScopedMixin",
    "ensure_utc",
    "utcnow",
]
