"""
PaymentMethod entity.

At most one payment method per customer is the default. Whenever a new
default is chosen, enforce_single_default() clears the flag everywhere
else in the same call.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from payments.models.address import BillingDetails
from payments.models.enums import PaymentMethodType

if TYPE_CHECKING:
    from typing import Any


@dataclass(frozen=True)
class PaymentMethod:
    """
    A stored means of payment (card summary, bank account, wallet).

    Attributes:
        id: Canonical identifier (the back-end's token or id)
        customer_id: Owning customer
        type: PaymentMethodType
        last4: Last four digits, for cards and bank accounts
        brand: Card brand
        expiry_month: Card expiry month
        expiry_year: Card expiry year
        is_default: Whether this is the customer's default method
        billing_details: Optional billing contact
        metadata: Free-form string metadata
    """

    id: str
    customer_id: str
    type: PaymentMethodType
    last4: str | None = None
    brand: str | None = None
    expiry_month: int | None = None
    expiry_year: int | None = None
    is_default: bool = False
    billing_details: BillingDetails | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "type": self.type.value,
            "last4": self.last4,
            "brand": self.brand,
            "expiry_month": self.expiry_month,
            "expiry_year": self.expiry_year,
            "is_default": self.is_default,
            "billing_details": (
                self.billing_details.to_dict() if self.billing_details else None
            ),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaymentMethod:
        billing = data.get("billing_details")
        return cls(
            id=data["id"],
            customer_id=data["customer_id"],
            type=PaymentMethodType(data["type"]),
            last4=data.get("last4"),
            brand=data.get("brand"),
            expiry_month=data.get("expiry_month"),
            expiry_year=data.get("expiry_year"),
            is_default=bool(data.get("is_default", False)),
            billing_details=BillingDetails.from_dict(billing) if billing else None,
            metadata=dict(data.get("metadata") or {}),
        )


def enforce_single_default(
    methods: list[PaymentMethod], default_id: str | None
) -> list[PaymentMethod]:
    """
    Return methods with is_default set on default_id only.

    Passing None clears every default.
    """
    return [
        method
        if method.is_default == (method.id == default_id)
        else replace(method, is_default=method.id == default_id)
        for method in methods
    ]
