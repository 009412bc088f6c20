"""Price entity. Immutable and read-only from the engine's perspective."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from payments.models.enums import BillingInterval, ProcessorType

if TYPE_CHECKING:
    from typing import Any


@dataclass(frozen=True)
class Price:
    """
    A purchasable price point for a product.

    Attributes:
        id: Canonical price identifier
        product_id: Owning product
        amount: Amount in minor currency units (e.g. cents)
        currency: ISO 4217 currency code, lowercase
        interval: Billing interval, ONE_TIME for non-recurring prices
        interval_count: Number of intervals per billing cycle
        processor: Back-end that owns this price
        processor_price_id: Back-end's own identifier
        trial_days: Default trial length, if any
        active: Whether the price can be subscribed to
        metadata: Free-form string metadata
    """

    id: str
    product_id: str
    amount: int
    currency: str
    interval: BillingInterval
    processor: ProcessorType
    processor_price_id: str
    interval_count: int = 1
    trial_days: int | None = None
    active: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError("amount must not be negative")
        if self.interval_count < 1:
            raise ValueError("interval_count must be at least 1")

    @property
    def is_recurring(self) -> bool:
        return self.interval != BillingInterval.ONE_TIME

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "amount": self.amount,
            "currency": self.currency,
            "interval": self.interval.value,
            "interval_count": self.interval_count,
            "trial_days": self.trial_days,
            "active": self.active,
            "processor": self.processor.value,
            "processor_price_id": self.processor_price_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Price:
        return cls(
            id=data["id"],
            product_id=data["product_id"],
            amount=int(data["amount"]),
            currency=data["currency"],
            interval=BillingInterval(data["interval"]),
            interval_count=int(data.get("interval_count", 1)),
            trial_days=data.get("trial_days"),
            active=bool(data.get("active", True)),
            processor=ProcessorType(data["processor"]),
            processor_price_id=data["processor_price_id"],
            metadata=dict(data.get("metadata") or {}),
        )
