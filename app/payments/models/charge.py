"""Charge entity. Immutable after creation except for refund fields."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING

from payments.models.enums import ChargeStatus, ProcessorType
from payments.models.serialization import format_datetime, parse_datetime

if TYPE_CHECKING:
    from typing import Any


@dataclass(frozen=True)
class Charge:
    """
    A one-off payment or a subscription invoice payment.

    Attributes:
        id: Canonical identifier
        customer_id: Paying customer
        amount: Amount in minor currency units
        currency: ISO 4217 currency code
        status: ChargeStatus
        processor: Back-end that owns this charge
        processor_charge_id: Back-end's own identifier
        created_at: When the charge was created
        description: Optional statement description
        receipt_url: Optional hosted receipt
        refunded: Whether any amount was refunded
        refunded_amount: Total refunded, in minor units
        metadata: Free-form string metadata
    """

    id: str
    customer_id: str
    amount: int
    currency: str
    status: ChargeStatus
    processor: ProcessorType
    processor_charge_id: str
    created_at: datetime
    description: str | None = None
    receipt_url: str | None = None
    refunded: bool = False
    refunded_amount: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_refund(self, amount: int) -> Charge:
        """Return a copy with a refund of ``amount`` applied."""
        total = (self.refunded_amount or 0) + amount
        return replace(
            self,
            refunded=True,
            refunded_amount=total,
            status=ChargeStatus.REFUNDED if total >= self.amount else self.status,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status.value,
            "description": self.description,
            "receipt_url": self.receipt_url,
            "refunded": self.refunded,
            "refunded_amount": self.refunded_amount,
            "processor": self.processor.value,
            "processor_charge_id": self.processor_charge_id,
            "created_at": format_datetime(self.created_at),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Charge:
        return cls(
            id=data["id"],
            customer_id=data["customer_id"],
            amount=int(data["amount"]),
            currency=data["currency"],
            status=ChargeStatus(data["status"]),
            description=data.get("description"),
            receipt_url=data.get("receipt_url"),
            refunded=bool(data.get("refunded", False)),
            refunded_amount=data.get("refunded_amount"),
            processor=ProcessorType(data["processor"]),
            processor_charge_id=data["processor_charge_id"],
            created_at=parse_datetime(data["created_at"]),
            metadata=dict(data.get("metadata") or {}),
        )
