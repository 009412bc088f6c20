"""Address and billing details attached to payment methods."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


@dataclass(frozen=True)
class Address:
    line1: str | None = None
    line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Address:
        return cls(
            line1=data.get("line1"),
            line2=data.get("line2"),
            city=data.get("city"),
            state=data.get("state"),
            postal_code=data.get("postal_code"),
            country=data.get("country"),
        )


@dataclass(frozen=True)
class BillingDetails:
    """
    Billing contact captured alongside a payment method.

    Attributes:
        name: Cardholder or account holder name
        email: Billing email
        phone: Billing phone
        address: Billing address
    """

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: Address | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address.to_dict() if self.address else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BillingDetails:
        address = data.get("address")
        return cls(
            name=data.get("name"),
            email=data.get("email"),
            phone=data.get("phone"),
            address=Address.from_dict(address) if address else None,
        )
