"""
JSON codec helpers shared by the canonical model dataclasses.

All entities serialize to dicts with snake_case keys, ISO-8601 datetimes
and enum values, so the cache layer can persist them through any Storage
that holds strings.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from typing import Any

T = TypeVar("T")


def format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def parse_datetime(value: Any) -> datetime | None:
    """
    Parse an ISO-8601 string or unix timestamp into an aware UTC datetime.

    Naive values are assumed to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def serialize(entity: Any) -> str:
    """Encode a model instance (or list of them) to a JSON string."""
    if isinstance(entity, list):
        return json.dumps([item.to_dict() for item in entity], sort_keys=True)
    return json.dumps(entity.to_dict(), sort_keys=True)


def deserialize(model: type[T], raw: str) -> T:
    """Decode a JSON string produced by serialize() into a model instance."""
    return model.from_dict(json.loads(raw))  # type: ignore[attr-defined]


def deserialize_list(model: type[T], raw: str) -> list[T]:
    return [model.from_dict(item) for item in json.loads(raw)]  # type: ignore[attr-defined]
