"""
Webhook payload extraction.

A WebhookPayloadParser turns a verified event's native ``data`` into the
pieces the handlers need: the subscription id, a dict of canonical
Subscription fields, the customer id and the charge id.

Only fields actually present in the payload are returned, so merging them
into a cached Subscription never blanks out values the event did not
carry.

Field paths are dotted lookups into the payload; integer segments index
into lists (``items.data.0.price.id``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from payments.adapters import braintree_adapter, lemon_squeezy_adapter, paddle_adapter
from payments.adapters import stripe_adapter, totalpay_adapter
from payments.models import ProcessorType, SubscriptionStatus

if TYPE_CHECKING:
    from typing import Any

    from payments.models import WebhookEvent

_MISSING = object()


def lookup(source: Any, path: str) -> Any:
    """Follow a dotted path; returns _MISSING when any segment is absent."""
    current = source
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return _MISSING
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def first(source: Any, *paths: str) -> Any:
    """Value at the first path that resolves to something non-empty."""
    for path in paths:
        value = lookup(source, path)
        if value is not _MISSING and value not in (None, ""):
            return value
    return None


class WebhookPayloadParser:
    """
    Default parser. Expects canonical field names at the top of ``data``.

    Subclasses override the path tables and, where a back-end nests its
    objects, subscription_source().
    """

    processor: ProcessorType = ProcessorType.FAKE
    statuses: dict[str, SubscriptionStatus] = {
        status.value: status for status in SubscriptionStatus
    }

    subscription_field_paths: dict[str, str] = {
        "status": "status",
        "price_id": "price_id",
        "product_id": "product_id",
        "current_period_start": "current_period_start",
        "current_period_end": "current_period_end",
        "trial_start": "trial_start",
        "trial_end": "trial_end",
        "canceled_at": "canceled_at",
        "cancel_at_period_end": "cancel_at_period_end",
        "quantity": "quantity",
        "metadata": "metadata",
    }
    subscription_id_paths: tuple[str, ...] = ("subscription_id", "id")
    customer_id_paths: tuple[str, ...] = ("customer_id",)
    charge_id_paths: tuple[str, ...] = ("charge_id", "id")
    payment_subscription_id_paths: tuple[str, ...] = ("subscription_id",)

    def subscription_source(self, event: WebhookEvent) -> dict[str, Any]:
        return event.data

    def subscription_id(self, event: WebhookEvent, payment: bool = False) -> str | None:
        paths = self.payment_subscription_id_paths if payment else self.subscription_id_paths
        value = first(self.subscription_source(event), *paths)
        return str(value) if value is not None else None

    def subscription_fields(self, event: WebhookEvent) -> dict[str, Any]:
        source = self.subscription_source(event)
        fields: dict[str, Any] = {}
        for name, path in self.subscription_field_paths.items():
            value = lookup(source, path)
            if value is not _MISSING:
                fields[name] = value
        if "status" in fields:
            fields["status"] = self.statuses.get(
                str(fields["status"]).lower(), SubscriptionStatus.INCOMPLETE
            )
        return fields

    def customer_id(self, event: WebhookEvent) -> str | None:
        value = first(self.subscription_source(event), *self.customer_id_paths)
        if isinstance(value, dict):
            value = value.get("id")
        return str(value) if value is not None else None

    def charge_id(self, event: WebhookEvent) -> str | None:
        value = first(self.subscription_source(event), *self.charge_id_paths)
        return str(value) if value is not None else None


class StripePayloadParser(WebhookPayloadParser):
    processor = ProcessorType.STRIPE
    statuses = stripe_adapter.SUBSCRIPTION_STATUSES

    subscription_field_paths = {
        "status": "status",
        "price_id": "items.data.0.price.id",
        "product_id": "items.data.0.price.product",
        "current_period_start": "current_period_start",
        "current_period_end": "current_period_end",
        "trial_start": "trial_start",
        "trial_end": "trial_end",
        "canceled_at": "canceled_at",
        "cancel_at_period_end": "cancel_at_period_end",
        "quantity": "items.data.0.quantity",
        "metadata": "metadata",
    }
    subscription_id_paths = (
        "subscription",
        "parent.subscription_details.subscription",
        "id",
    )
    payment_subscription_id_paths = (
        "subscription",
        "parent.subscription_details.subscription",
    )
    customer_id_paths = ("customer",)
    charge_id_paths = ("charge", "payment_intent", "id")

    def subscription_fields(self, event: WebhookEvent) -> dict[str, Any]:
        source = event.data
        if source.get("object") != "invoice":
            return super().subscription_fields(event)
        # Invoices carry the renewed period on their subscription line
        fields: dict[str, Any] = {"status": SubscriptionStatus.ACTIVE}
        period_start = first(source, "lines.data.0.period.start", "period_start")
        period_end = first(source, "lines.data.0.period.end", "period_end")
        if period_start is not None:
            fields["current_period_start"] = period_start
        if period_end is not None:
            fields["current_period_end"] = period_end
        return fields


class PaddlePayloadParser(WebhookPayloadParser):
    processor = ProcessorType.PADDLE
    statuses = paddle_adapter.SUBSCRIPTION_STATUSES

    subscription_field_paths = {
        "status": "status",
        "price_id": "items.0.price.id",
        "product_id": "items.0.price.product_id",
        "current_period_start": "current_billing_period.starts_at",
        "current_period_end": "current_billing_period.ends_at",
        "trial_start": "items.0.trial_dates.starts_at",
        "trial_end": "items.0.trial_dates.ends_at",
        "canceled_at": "canceled_at",
        "quantity": "items.0.quantity",
        "metadata": "custom_data",
    }
    subscription_id_paths = ("subscription_id", "id")
    payment_subscription_id_paths = ("subscription_id",)
    customer_id_paths = ("customer_id",)
    charge_id_paths = ("id",)

    def subscription_fields(self, event: WebhookEvent) -> dict[str, Any]:
        fields = super().subscription_fields(event)
        scheduled = lookup(event.data, "scheduled_change")
        if scheduled is not _MISSING:
            fields["cancel_at_period_end"] = bool(
                scheduled and scheduled.get("action") == "cancel"
            )
        if fields.get("metadata") is None:
            fields.pop("metadata", None)
        return fields


class BraintreePayloadParser(WebhookPayloadParser):
    processor = ProcessorType.BRAINTREE
    statuses = braintree_adapter.SUBSCRIPTION_STATUSES

    subscription_field_paths = {
        "status": "status",
        "price_id": "planId",
        "product_id": "planId",
        "current_period_start": "billingPeriodStartDate",
        "current_period_end": "billingPeriodEndDate",
        "quantity": "quantity",
    }
    subscription_id_paths = ("subscriptionId", "id")
    payment_subscription_id_paths = ("subscriptionId",)
    customer_id_paths = ("customer.id", "customerId")
    charge_id_paths = ("id",)

    def subscription_source(self, event: WebhookEvent) -> dict[str, Any]:
        subject = event.data
        for key in ("subscription", "transaction", "paymentMethod"):
            if isinstance(subject.get(key), dict):
                return subject[key]
        return subject

    def subscription_id(self, event: WebhookEvent, payment: bool = False) -> str | None:
        subject = event.data
        if payment and isinstance(subject.get("subscription"), dict):
            return str(subject["subscription"]["id"])
        return super().subscription_id(event, payment)

    def charge_id(self, event: WebhookEvent) -> str | None:
        transactions = lookup(event.data, "subscription.transactions")
        if isinstance(transactions, list) and transactions:
            return str(transactions[0].get("id"))
        return super().charge_id(event)


class LemonSqueezyPayloadParser(WebhookPayloadParser):
    processor = ProcessorType.LEMON_SQUEEZY
    statuses = lemon_squeezy_adapter.SUBSCRIPTION_STATUSES

    subscription_field_paths = {
        "status": "status",
        "price_id": "variant_id",
        "product_id": "product_id",
        "current_period_end": "renews_at",
        "trial_end": "trial_ends_at",
        "cancel_at_period_end": "cancelled",
    }
    subscription_id_paths = ("subscription_id", "id")
    payment_subscription_id_paths = ("subscription_id",)
    customer_id_paths = ("customer_id",)
    charge_id_paths = ("order_id", "id")

    def subscription_source(self, event: WebhookEvent) -> dict[str, Any]:
        resource = event.data.get("data") or {}
        return lemon_squeezy_adapter.flatten_resource(resource)

    def subscription_fields(self, event: WebhookEvent) -> dict[str, Any]:
        fields = super().subscription_fields(event)
        for name in ("price_id", "product_id"):
            if fields.get(name) is not None:
                fields[name] = str(fields[name])
        source = self.subscription_source(event)
        if source.get("cancelled") and source.get("ends_at"):
            fields["canceled_at"] = source["ends_at"]
        return fields


class TotalpayPayloadParser(WebhookPayloadParser):
    processor = ProcessorType.TOTALPAY_GLOBAL
    statuses = totalpay_adapter.SUBSCRIPTION_STATUSES

    charge_id_paths = ("transaction_id", "payment_id", "id")


PARSERS: dict[ProcessorType, type[WebhookPayloadParser]] = {
    ProcessorType.STRIPE: StripePayloadParser,
    ProcessorType.PADDLE: PaddlePayloadParser,
    ProcessorType.BRAINTREE: BraintreePayloadParser,
    ProcessorType.LEMON_SQUEEZY: LemonSqueezyPayloadParser,
    ProcessorType.TOTALPAY_GLOBAL: TotalpayPayloadParser,
    ProcessorType.FAKE: WebhookPayloadParser,
}


def parser_for(processor: ProcessorType) -> WebhookPayloadParser:
    return PARSERS[processor]()
