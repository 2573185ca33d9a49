"""Unified trigger identifiers.

A unified trigger id names either a schedule or an event trigger inside one
namespace: ``"schedule:<uuid>"`` or ``"trigger:<uuid>"``.
"""

from dataclasses import dataclass
from uuid import UUID

from .domain.enums import TriggerSourceType
from .logging_utils import InvalidTriggerId

SEPARATOR = ":"


@dataclass(frozen=True)
class TriggerRef:
    """Decoded unified trigger id."""

    source_type: TriggerSourceType
    source_id: str

    def as_uuid(self) -> UUID:
        """Return the source id as a UUID for persistence lookups."""
        try:
            return UUID(self.source_id)
        except ValueError as e:
            raise InvalidTriggerId(
                f"Trigger id source is not a UUID: {self.source_id!r}",
                source_type=self.source_type.value,
            ) from e

    def encode(self) -> str:
        return encode_trigger_id(self.source_type, self.source_id)


def _check_source_id(source_id: str) -> None:
    if not source_id:
        raise InvalidTriggerId("Trigger source id cannot be empty")
    if SEPARATOR in source_id or any(ch.isspace() for ch in source_id):
        raise InvalidTriggerId(
            f"Trigger source id contains reserved characters: {source_id!r}"
        )


def encode_trigger_id(source_type: TriggerSourceType | str, source_id: UUID | str) -> str:
    """Build the unified id for a schedule or event trigger.

    Raises:
        InvalidTriggerId: If the source type is unknown or the id cannot be
            represented without ambiguity.
    """
    try:
        source_type = TriggerSourceType(source_type)
    except ValueError as e:
        raise InvalidTriggerId(f"Unknown trigger source type: {source_type!r}") from e

    source_id = str(source_id)
    _check_source_id(source_id)
    return f"{source_type.value}{SEPARATOR}{source_id}"


def decode_trigger_id(value: str) -> TriggerRef:
    """Parse a unified id produced by :func:`encode_trigger_id`.

    Raises:
        InvalidTriggerId: For anything ``encode_trigger_id`` could not have produced.
    """
    if not isinstance(value, str):
        raise InvalidTriggerId(f"Trigger id must be a string, got {type(value).__name__}")

    prefix, sep, source_id = value.partition(SEPARATOR)
    if not sep:
        raise InvalidTriggerId(f"Trigger id is missing the separator: {value!r}")

    try:
        source_type = TriggerSourceType(prefix)
    except ValueError as e:
        raise InvalidTriggerId(f"Unknown trigger id prefix: {prefix!r}") from e

    _check_source_id(source_id)
    return TriggerRef(source_type=source_type, source_id=source_id)


def try_decode_trigger_id(value: str) -> TriggerRef | None:
    """Like :func:`decode_trigger_id` but returns ``None`` instead of raising."""
    try:
        return decode_trigger_id(value)
    except InvalidTriggerId:
        return None
