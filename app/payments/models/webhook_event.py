"""
WebhookEvent entity.

Only an adapter's handle_webhook() produces events with verified=True,
and only after the back-end signature checks out.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from payments.models.enums import ProcessorType, WebhookEventType
from payments.models.serialization import format_datetime, parse_datetime

if TYPE_CHECKING:
    from typing import Any


@dataclass(frozen=True)
class WebhookEvent:
    """
    An inbound processor notification.

    Attributes:
        id: Back-end event id, used as the idempotency key
        type: Back-end native event type string
        processor: Back-end that sent the event
        data: Raw event payload object
        created_at: When the back-end created the event
        verified: Set by the owning adapter after signature verification
        canonical_type: Classification assigned by the webhook engine
    """

    id: str
    type: str
    processor: ProcessorType
    data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    verified: bool = False
    canonical_type: WebhookEventType | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "canonical_type": self.canonical_type.value if self.canonical_type else None,
            "processor": self.processor.value,
            "data": self.data,
            "created_at": format_datetime(self.created_at),
            "verified": self.verified,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebhookEvent:
        canonical = data.get("canonical_type")
        return cls(
            id=data["id"],
            type=data["type"],
            canonical_type=WebhookEventType(canonical) if canonical else None,
            processor=ProcessorType(data["processor"]),
            data=dict(data.get("data") or {}),
            created_at=parse_datetime(data.get("created_at")),
            verified=bool(data.get("verified", False)),
        )
