"""Trigger event lifecycle.

Every candidate firing is recorded as a :class:`TriggerEvent`. The manager here
is the only writer: it snapshots payloads on creation and moves events through
``RECEIVED -> (PROCESSING) -> SKIPPED | FIRED | FAILED`` with guarded updates so
that no status is ever revisited.
"""

import json
import math
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from autopilot_common.config import TriggerSettings, get_trigger_settings
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .domain.enums import TriggerEventSource, TriggerEventStatus
from .domain.models import TriggerEvent, TriggerEventCreate
from .infrastructure.repository import TriggerEventRepository
from .logging_utils import InvalidStatusTransition, SourceNotFound, TriggerLogger

logger = TriggerLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 2000
TRUNCATED_SUFFIX = "...[truncated]"
MAX_DEPTH_MARKER = "[max depth exceeded]"

_DROP = object()


@dataclass(frozen=True)
class SnapshotLimits:
    """Bounds applied by :func:`build_payload_snapshot`."""

    max_string_length: int = 20_000
    max_list_items: int = 200
    max_depth: int = 12
    max_bytes: int = 256_000

    @classmethod
    def from_settings(cls, settings: TriggerSettings) -> "SnapshotLimits":
        return cls(
            max_string_length=settings.SNAPSHOT_MAX_STRING_LENGTH,
            max_list_items=settings.SNAPSHOT_MAX_LIST_ITEMS,
            max_depth=settings.SNAPSHOT_MAX_DEPTH,
            max_bytes=settings.SNAPSHOT_MAX_BYTES,
        )


def _truncate_string(value: str, limits: SnapshotLimits) -> str:
    if len(value) <= limits.max_string_length:
        return value
    keep = max(limits.max_string_length - len(TRUNCATED_SUFFIX), 0)
    return (value[:keep] + TRUNCATED_SUFFIX)[: limits.max_string_length]


def _sort_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _normalize(value: Any, limits: SnapshotLimits, depth: int) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Enum):
        return _normalize(value.value, limits, depth)
    if isinstance(value, str):
        return _truncate_string(value, limits)
    if isinstance(value, datetime | date | time):
        return value.isoformat()
    if isinstance(value, UUID | Decimal):
        return str(value)
    if isinstance(value, bytes | bytearray | memoryview):
        return _DROP
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json"), limits, depth)

    if isinstance(value, Mapping | list | tuple | set | frozenset) and depth >= limits.max_depth:
        return MAX_DEPTH_MARKER

    if isinstance(value, Mapping):
        normalized: dict[str, Any] = {}
        for key in sorted(value, key=str):
            if not isinstance(key, str | int | float | bool | UUID | Enum):
                continue
            item = _normalize(value[key], limits, depth + 1)
            if item is not _DROP:
                normalized[str(key.value if isinstance(key, Enum) else key)] = item
        return dict(sorted(normalized.items()))

    if isinstance(value, list | tuple | set | frozenset):
        items = [
            item
            for item in (_normalize(v, limits, depth + 1) for v in value)
            if item is not _DROP
        ]
        if isinstance(value, set | frozenset):
            items.sort(key=_sort_key)
        if len(items) > limits.max_list_items:
            omitted = len(items) - (limits.max_list_items - 1)
            items = items[: limits.max_list_items - 1] + [f"...[{omitted} more items]"]
        return items

    return _DROP


def build_payload_snapshot(raw: Any, limits: SnapshotLimits | None = None) -> Any:
    """Return a JSON-safe, bounded copy of ``raw``.

    Keys are sorted, datetimes become ISO-8601 strings, UUID/Decimal/enum values
    become strings, sets become sorted lists, bytes and other non-serializable
    values are dropped and NaN/infinity become ``None``. Long strings and lists
    are cut, nesting is bounded, and a payload over the byte budget is replaced
    by a preview object. Applying the function to its own output returns the
    same value.
    """
    limits = limits or SnapshotLimits.from_settings(get_trigger_settings())
    snapshot = _normalize(raw, limits, 0)
    if snapshot is _DROP:
        return None

    encoded = _encode(snapshot)
    size = len(encoded.encode("utf-8"))
    if size <= limits.max_bytes:
        return snapshot

    preview = encoded[: min(limits.max_bytes, limits.max_string_length)]
    while True:
        fallback = {"_truncated": True, "original_bytes": size, "preview": preview}
        if not preview or len(_encode(fallback).encode("utf-8")) <= limits.max_bytes:
            return fallback
        preview = preview[: len(preview) * 3 // 4]


def _encode(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _clip_error(message: str | None) -> str | None:
    if message is None or len(message) <= MAX_ERROR_MESSAGE_LENGTH:
        return message
    return message[: MAX_ERROR_MESSAGE_LENGTH - len(TRUNCATED_SUFFIX)] + TRUNCATED_SUFFIX


class TriggerEventManager:
    """Creates and transitions trigger events.

    Methods accept an optional ``session`` so callers can record an event in the
    same transaction as related writes; without one the manager commits its own.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        limits: SnapshotLimits | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.limits = limits or SnapshotLimits.from_settings(get_trigger_settings())

    @asynccontextmanager
    async def _scope(self, session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self._session_factory() as own_session, own_session.begin():
            yield own_session

    async def create_event(
        self, fields: TriggerEventCreate, session: AsyncSession | None = None
    ) -> TriggerEvent:
        """Snapshot the payload and persist a new event.

        Args:
            fields: Event attributes; ``payload`` is the raw payload.
            session: Optional session whose transaction the insert joins.

        Returns:
            The stored event.
        """
        snapshot = build_payload_snapshot(fields.payload, self.limits)
        to_store = fields.model_copy(
            update={"payload": snapshot, "error_message": _clip_error(fields.error_message)}
        )
        async with self._scope(session) as active:
            event = await TriggerEventRepository(active).create_event(to_store)

        logger.info(
            f"Recorded trigger event with status {event.status.value}",
            trigger_event_id=event.id,
            trigger_id=event.trigger_id,
            source_type=event.source_type.value,
            event_name=event.event_name,
        )
        return event

    async def record_skipped(
        self, fields: TriggerEventCreate, reason: str, session: AsyncSession | None = None
    ) -> TriggerEvent:
        """Record a terminal SKIPPED event explaining why nothing fired."""
        skipped = fields.model_copy(
            update={"status": TriggerEventStatus.SKIPPED, "error_message": reason}
        )
        return await self.create_event(skipped, session=session)

    async def transition(
        self,
        event_id: UUID,
        status: TriggerEventStatus,
        error_message: str | None = None,
        workflow_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> TriggerEvent:
        """Move an event to ``status``.

        Raises:
            SourceNotFound: If no event has this id.
            InvalidStatusTransition: If the current status does not allow ``status``.
        """
        async with self._scope(session) as active:
            repository = TriggerEventRepository(active)
            moved = await repository.transition(
                event_id, status, error_message=_clip_error(error_message), workflow_id=workflow_id
            )
            event = await repository.get_event(event_id)

        if event is None:
            raise SourceNotFound(f"Trigger event {event_id} not found", trigger_event_id=str(event_id))
        if not moved:
            logger.warning(
                f"Rejected transition {event.status.value} -> {status.value}",
                trigger_event_id=event_id,
            )
            raise InvalidStatusTransition(
                f"Cannot move trigger event from {event.status.value} to {status.value}",
                trigger_event_id=str(event_id),
                current_status=event.status.value,
                target_status=status.value,
            )

        logger.debug(f"Trigger event moved to {status.value}", trigger_event_id=event_id)
        return event

    async def get_event(self, event_id: UUID) -> TriggerEvent | None:
        async with self._session_factory() as session:
            return await TriggerEventRepository(session).get_event(event_id)

    async def list_events(
        self,
        trigger_id: UUID | None = None,
        agent_id: UUID | None = None,
        integration_id: UUID | None = None,
        status: TriggerEventStatus | None = None,
        source_type: TriggerEventSource | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[TriggerEvent]:
        """List events newest first."""
        async with self._session_factory() as session:
            return await TriggerEventRepository(session).list_events(
                trigger_id=trigger_id,
                agent_id=agent_id,
                integration_id=integration_id,
                status=status,
                source_type=source_type,
                limit=limit,
                offset=offset,
            )

    async def latest_for_trigger(self, trigger_id: UUID) -> TriggerEvent | None:
        async with self._session_factory() as session:
            return await TriggerEventRepository(session).latest_for_trigger(trigger_id)
