"""Input defaults and input mapping normalization.

Schedules store their defaults as free-form JSON and event triggers store an
input mapping that may carry a ``config`` block with defaults of its own. The
helpers here turn both into :class:`InputDefaults` / :class:`InputMapping`,
merge partial updates into stored mappings, validate them, and resolve the
agent input for a payload. Nothing in this module performs I/O.
"""

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .domain.enums import TriggerType
from .domain.models import InputDefaults, InputMapping, TriggerConfig
from .logging_utils import InvalidInputMapping

# Nested blocks merged key by key instead of replaced wholesale
_NESTED_MERGE_KEYS = frozenset({"config", "defaults"})


@dataclass(frozen=True)
class MappingValidation:
    """Outcome of :func:`validate_input_mapping`."""

    valid: bool
    error: str | None = None


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and math.isfinite(value) and value.is_integer() and value > 0:
        return int(value)
    return None


def extract_defaults(raw: Any) -> InputDefaults:
    """Extract input defaults from a stored JSON blob.

    Never fails: a blob of the wrong shape yields empty defaults and individually
    malformed fields are dropped.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return InputDefaults()
    if not isinstance(raw, Mapping):
        return InputDefaults()

    values: dict[str, Any] = {}

    input_value = raw.get("input")
    if isinstance(input_value, str):
        values["input"] = input_value

    context = raw.get("context")
    if isinstance(context, Mapping):
        values["context"] = dict(context)

    max_steps = _positive_int(raw.get("maxSteps", raw.get("max_steps")))
    if max_steps is not None:
        values["max_steps"] = max_steps

    environment = raw.get("environment")
    if isinstance(environment, str) and environment.strip():
        values["environment"] = environment.strip()

    return InputDefaults(**values)


def extract_input_mapping(raw: Any) -> InputMapping | None:
    """Return the stored input mapping, or ``None`` when none is configured or it is malformed."""
    if raw is None or not isinstance(raw, Mapping):
        return None
    try:
        return InputMapping.model_validate(dict(raw))
    except ValidationError:
        return None


def parse_input_mapping(raw: Any) -> InputMapping | None:
    """Strict variant of :func:`extract_input_mapping` for request bodies.

    Raises:
        InvalidInputMapping: If ``raw`` is neither null nor an object, or the
            object does not describe a valid mapping.
    """
    if raw is None:
        return None
    if isinstance(raw, InputMapping):
        return raw
    if not isinstance(raw, Mapping):
        raise InvalidInputMapping(
            "inputMapping must be an object", received_type=type(raw).__name__
        )
    try:
        return InputMapping.model_validate(dict(raw))
    except ValidationError as e:
        raise InvalidInputMapping(f"Invalid inputMapping: {e.errors()[0]['msg']}") from e


def extract_trigger_config(mapping: InputMapping | None) -> TriggerConfig | None:
    """Return the ``config`` block of a mapping, if any."""
    if mapping is None:
        return None
    return mapping.config


def build_config_overrides(
    defaults: InputDefaults | None, environment: str | None = None
) -> InputMapping | None:
    """Wrap request-level defaults into a mapping suitable for :func:`merge_input_mapping`."""
    if defaults is not None and defaults.is_empty():
        defaults = None
    if environment is None and defaults is not None:
        environment = defaults.environment
    if defaults is None and environment is None:
        return None
    return InputMapping(config=TriggerConfig(defaults=defaults, environment=environment))


def _merge_dicts(existing: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(existing)
    for key, value in overrides.items():
        current = merged.get(key)
        if key in _NESTED_MERGE_KEYS and isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(current, value)
        else:
            merged[key] = value
    return merged


def merge_input_mapping(
    existing: InputMapping | None,
    overrides: InputMapping | None,
    set_default_field: bool = False,
) -> InputMapping:
    """Merge ``overrides`` into ``existing``.

    Fields set in ``overrides`` win, fields set only in ``existing`` are kept and
    fields absent from both stay absent. ``config`` and ``config.defaults`` are
    merged field by field. With ``set_default_field`` the literal
    ``default_input`` is populated from ``overrides.config.defaults.input``.
    """
    base = existing.model_dump(exclude_none=True) if existing is not None else {}
    patch = overrides.model_dump(exclude_none=True) if overrides is not None else {}
    merged = _merge_dicts(base, patch)

    if set_default_field:
        override_input = patch.get("config", {}).get("defaults", {}).get("input")
        if override_input is not None:
            merged["default_input"] = override_input

    return InputMapping.model_validate(merged)


def validate_input_mapping(
    mapping: InputMapping | None,
    trigger_type: TriggerType | str | None = None,
    event_name: str | None = None,
) -> MappingValidation:
    """Check a mapping for structural problems.

    Rules: ``template`` and ``field`` are mutually exclusive, every ``fields``
    entry names a non-empty source path and target, no two entries write the
    same target, ``max_steps`` is positive, ``environment`` is non-empty when
    set, and event triggers carry a non-empty event name.
    """
    if trigger_type is not None and TriggerType(trigger_type) == TriggerType.EVENT:
        if not (event_name or "").strip():
            return MappingValidation(False, "eventName is required for event triggers")

    if mapping is None:
        return MappingValidation(True)

    if mapping.template is not None and mapping.field is not None:
        return MappingValidation(False, "template and field cannot both be set")

    if mapping.field is not None and not _valid_path(mapping.field):
        return MappingValidation(False, f"Invalid field path: {mapping.field!r}")

    seen_targets: set[str] = set()
    for entry in mapping.fields or []:
        if not _valid_path(entry.source):
            return MappingValidation(False, f"Invalid source path: {entry.source!r}")
        target = entry.target.strip()
        if not target:
            return MappingValidation(False, f"Mapping from {entry.source!r} has an empty target")
        if target in seen_targets:
            return MappingValidation(False, f"Multiple fields map to target {target!r}")
        seen_targets.add(target)

    config = mapping.config
    if config is not None:
        if config.environment is not None and not config.environment.strip():
            return MappingValidation(False, "environment cannot be empty")
        defaults = config.defaults
        if defaults is not None:
            if defaults.max_steps is not None and defaults.max_steps <= 0:
                return MappingValidation(False, "maxSteps must be a positive integer")
            if defaults.environment is not None and not defaults.environment.strip():
                return MappingValidation(False, "environment cannot be empty")

    return MappingValidation(True)


def ensure_valid_input_mapping(
    mapping: InputMapping | None,
    trigger_type: TriggerType | str | None = None,
    event_name: str | None = None,
) -> None:
    """Raise :class:`InvalidInputMapping` when :func:`validate_input_mapping` fails."""
    result = validate_input_mapping(mapping, trigger_type=trigger_type, event_name=event_name)
    if not result.valid:
        raise InvalidInputMapping(result.error or "Invalid input mapping")


def _valid_path(path: str) -> bool:
    return bool(path) and all(part.strip() for part in path.split("."))


_MISSING = object()


def get_path(payload: Any, path: str) -> Any:
    """Resolve a dotted path inside nested mappings and lists; ``None`` when absent."""
    value = _lookup(payload, path)
    return None if value is _MISSING else value


def _lookup(payload: Any, path: str) -> Any:
    current = payload
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def matches_trigger_filter(payload: Mapping[str, Any], filter: Mapping[str, Any] | None) -> bool:
    """Whether ``payload`` satisfies every condition of ``filter``.

    Each key is a dotted path; a list value means "any of", anything else must
    be equal. An empty or missing filter matches everything.
    """
    if not filter or not isinstance(filter, Mapping):
        return True
    for path, expected in filter.items():
        actual = _lookup(payload, path)
        if actual is _MISSING:
            return False
        if isinstance(expected, list):
            if isinstance(actual, list):
                if not any(item in expected for item in actual):
                    return False
            elif actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def render_template(template: str, payload: Mapping[str, Any]) -> str:
    """Substitute ``{{ path }}`` placeholders with values from ``payload``."""
    out: list[str] = []
    rest = template
    while True:
        start = rest.find("{{")
        if start == -1:
            out.append(rest)
            break
        end = rest.find("}}", start + 2)
        if end == -1:
            out.append(rest)
            break
        out.append(rest[:start])
        value = get_path(payload, rest[start + 2 : end].strip())
        if value is None:
            out.append("")
        elif isinstance(value, str):
            out.append(value)
        else:
            out.append(json.dumps(value, default=str, sort_keys=True))
        rest = rest[end + 2 :]
    return "".join(out)


def resolve_trigger_input(
    payload: Mapping[str, Any],
    mapping: InputMapping | None,
    defaults: InputDefaults | None = None,
    fallback: str | None = None,
) -> str:
    """Resolve the agent input for a payload.

    Order: mapping template, mapping field, the literal ``default_input``, the
    defaults' ``input``, ``fallback``, then the JSON encoding of the payload.
    """
    if mapping is not None:
        if mapping.template:
            return render_template(mapping.template, payload)
        if mapping.field:
            value = get_path(payload, mapping.field)
            if isinstance(value, str) and value:
                return value
            if value is not None and not isinstance(value, str):
                return json.dumps(value, default=str, sort_keys=True)
        if mapping.default_input:
            return mapping.default_input

    if defaults is not None and defaults.input:
        return defaults.input
    if fallback:
        return fallback
    return json.dumps(payload, default=str, sort_keys=True)


def map_payload_fields(payload: Mapping[str, Any], mapping: InputMapping | None) -> dict[str, Any]:
    """Copy mapped payload values into a context dict keyed by target."""
    if mapping is None or not mapping.fields:
        return {}
    mapped: dict[str, Any] = {}
    for entry in mapping.fields:
        value = _lookup(payload, entry.source)
        if value is not _MISSING:
            mapped[entry.target] = value
    return mapped


def effective_defaults(mapping: InputMapping | None) -> InputDefaults:
    """Defaults carried in a mapping's config block, with the block-level environment applied."""
    config = extract_trigger_config(mapping)
    if config is None:
        return InputDefaults()
    defaults = config.defaults.model_copy() if config.defaults is not None else InputDefaults()
    if config.environment:
        defaults.environment = config.environment
    return defaults
