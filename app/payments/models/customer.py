"""
Customer entity.

A Customer is created on the first successful adapter call and updated
only through the adapter. processor_customer_id is opaque to the engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING

from payments.models.enums import ProcessorType
from payments.models.serialization import format_datetime, parse_datetime

if TYPE_CHECKING:
    from typing import Any


@dataclass(frozen=True)
class Customer:
    """
    Processor-agnostic customer.

    Attributes:
        id: Canonical identifier (equal to the processor id for most back-ends)
        email: Customer email address
        processor: Back-end that owns this customer
        processor_customer_id: Back-end's own identifier, never interpreted
        created_at: When the back-end created the customer
        updated_at: Last time the back-end reported a change
        name: Optional display name
        phone: Optional phone number
        metadata: Free-form string metadata
    """

    id: str
    email: str
    processor: ProcessorType
    processor_customer_id: str
    created_at: datetime
    updated_at: datetime
    name: str | None = None
    phone: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_changes(self, **changes: Any) -> Customer:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "processor": self.processor.value,
            "processor_customer_id": self.processor_customer_id,
            "metadata": dict(self.metadata),
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Customer:
        return cls(
            id=data["id"],
            email=data["email"],
            name=data.get("name"),
            phone=data.get("phone"),
            processor=ProcessorType(data["processor"]),
            processor_customer_id=data["processor_customer_id"],
            metadata=dict(data.get("metadata") or {}),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
        )
