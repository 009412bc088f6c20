"""
Canonical payment domain model.

Processor-agnostic, immutable representations every adapter translates
into:
- Customer: Identity at the back-end
- Price: Purchasable price point
- Subscription: Recurring billing relationship with derived predicates
- Charge: One-off or invoice payment
- PaymentMethod: Stored card/bank/wallet summary
- WebhookEvent: Inbound notification, verified by its adapter
"""

from payments.models.address import Address, BillingDetails
from payments.models.charge import Charge
from payments.models.customer import Customer
from payments.models.enums import (
    BillingInterval,
    ChargeStatus,
    PaymentMethodType,
    ProcessorType,
    SubscriptionStatus,
    WebhookEventType,
)
from payments.models.payment_method import PaymentMethod, enforce_single_default
from payments.models.price import Price
from payments.models.serialization import (
    deserialize,
    deserialize_list,
    format_datetime,
    parse_datetime,
    serialize,
)
from payments.models.subscription import DEFAULT_GRACE_DAYS, Subscription
from payments.models.webhook_event import WebhookEvent

__all__ = [
    "Address",
    "BillingDetails",
    "BillingInterval",
    "Charge",
    "ChargeStatus",
    "Customer",
    "DEFAULT_GRACE_DAYS",
    "PaymentMethod",
    "PaymentMethodType",
    "Price",
    "ProcessorType",
    "Subscription",
    "SubscriptionStatus",
    "WebhookEvent",
    "WebhookEventType",
    "deserialize",
    "deserialize_list",
    "enforce_single_default",
    "format_datetime",
    "parse_datetime",
    "serialize",
]
