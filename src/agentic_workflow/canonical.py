from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Convert models, enums, dates, sets and tuples into rfc8785-safe primitives.

    Raises:
        TypeError: If ``value`` holds a type with no JSON representation.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize(item) for item in value), key=repr)
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        "Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize ``value`` to RFC 8785 canonical JSON.

    Used for event-log lines and graph fingerprints so identical content always
    produces identical bytes regardless of key order.
    """
    return rfc8785.dumps(_normalize(value)).decode("utf-8")


def fingerprint(value: Any) -> str:
    """Return the sha256 hex digest of the canonical JSON form of ``value``."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
