"""
Lemon Squeezy adapter.

Lemon Squeezy speaks JSON:API (``application/vnd.api+json``) with bearer
authentication. Resources arrive as ``{"id", "type", "attributes",
"relationships"}`` and are flattened before mapping.

Lemon Squeezy is checkout driven: subscriptions, one-time charges and
payment methods are created by hosted checkouts, not by the API. Those
operations raise UnsupportedOperation, as do resume and refunds. Card
details are only exposed on subscriptions, so list_payment_methods is
derived from them.

Webhooks carry ``X-Signature``: hex HMAC-SHA256 of the raw body under the
signing secret. Deliveries without a ``meta.webhook_id`` get a stable id
built from the event name, resource id and update time.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from payments.adapters.base import as_bytes, compute_hmac_sha256, signatures_match
from payments.adapters.http import HttpProcessorAdapter
from payments.models import (
    Charge,
    ChargeStatus,
    Customer,
    PaymentMethod,
    PaymentMethodType,
    ProcessorType,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    parse_datetime,
)

if TYPE_CHECKING:
    from typing import Any

API_URL = "https://api.lemonsqueezy.com"

SUBSCRIPTION_STATUSES = {
    "active": SubscriptionStatus.ACTIVE,
    "on_trial": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "cancelled": SubscriptionStatus.CANCELED,
    "expired": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.INCOMPLETE,
    "paused": SubscriptionStatus.PAUSED,
}

ORDER_STATUSES = {
    "paid": ChargeStatus.SUCCEEDED,
    "pending": ChargeStatus.PENDING,
    "failed": ChargeStatus.FAILED,
    "refunded": ChargeStatus.REFUNDED,
}

CHECKOUT_ONLY = "Lemon Squeezy creates {what} through hosted checkouts"


def flatten_resource(resource: dict[str, Any]) -> dict[str, Any]:
    """Merge a JSON:API resource's attributes with its id."""
    flat = dict(resource.get("attributes") or {})
    flat["id"] = str(resource.get("id", ""))
    return flat


def webhook_event_id(payload: dict[str, Any]) -> str:
    meta = payload.get("meta") or {}
    if meta.get("webhook_id"):
        return str(meta["webhook_id"])
    data = payload.get("data") or {}
    attributes = data.get("attributes") or {}
    return f"{meta.get('event_name')}:{data.get('id')}:{attributes.get('updated_at')}"


class LemonSqueezyAdapter(HttpProcessorAdapter):
    processor_type = ProcessorType.LEMON_SQUEEZY
    display_name = "Lemon Squeezy"
    content_type = "application/vnd.api+json"

    supports_trial_periods = True
    supports_plan_swapping = True
    supports_proration = True

    def base_url(self) -> str:
        return API_URL

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.credentials.api_key}"}

    def error_details(self, payload: Any) -> tuple[str | None, str | None]:
        if isinstance(payload, dict) and payload.get("errors"):
            first = payload["errors"][0]
            return first.get("detail") or first.get("title"), first.get("status")
        return super().error_details(payload)

    # =========================================================================
    # Mapping
    # =========================================================================

    def _map_customer(self, resource: dict[str, Any]) -> Customer:
        data = flatten_resource(resource)
        return Customer(
            id=data["id"],
            email=data.get("email") or "",
            name=data.get("name"),
            phone=data.get("phone"),
            processor=ProcessorType.LEMON_SQUEEZY,
            processor_customer_id=data["id"],
            metadata={
                key: data[key]
                for key in ("status", "city", "region", "country")
                if data.get(key) is not None
            },
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at") or data.get("created_at")),
        )

    def _map_subscription(self, resource: dict[str, Any]) -> Subscription:
        data = flatten_resource(resource)
        created_at = parse_datetime(data.get("created_at"))
        ends_at = parse_datetime(data.get("ends_at"))
        period_end = parse_datetime(data.get("renews_at")) or ends_at or created_at
        metadata = {
            key: data[key]
            for key in ("card_brand", "card_last_four", "billing_anchor")
            if data.get(key) is not None
        }
        return Subscription(
            id=data["id"],
            customer_id=str(data.get("customer_id") or ""),
            status=SUBSCRIPTION_STATUSES.get(
                (data.get("status") or "").lower(), SubscriptionStatus.INCOMPLETE
            ),
            price_id=str(data.get("variant_id") or ""),
            product_id=str(data.get("product_id") or ""),
            current_period_start=created_at,
            current_period_end=period_end,
            trial_end=parse_datetime(data.get("trial_ends_at")),
            canceled_at=ends_at if data.get("cancelled") else None,
            cancel_at_period_end=bool(data.get("cancelled")),
            processor=ProcessorType.LEMON_SQUEEZY,
            processor_subscription_id=data["id"],
            metadata=metadata,
            source_timestamp=parse_datetime(data.get("updated_at")),
        )

    def _map_order(self, resource: dict[str, Any]) -> Charge:
        data = flatten_resource(resource)
        refunded_amount = data.get("refunded_amount")
        first_item = data.get("first_order_item") or {}
        return Charge(
            id=data["id"],
            customer_id=str(data.get("customer_id") or ""),
            amount=int(data.get("total") or 0),
            currency=(data.get("currency") or "usd").lower(),
            status=ORDER_STATUSES.get((data.get("status") or "").lower(), ChargeStatus.PENDING),
            description=first_item.get("product_name"),
            receipt_url=(data.get("urls") or {}).get("receipt"),
            refunded=bool(data.get("refunded")),
            refunded_amount=int(refunded_amount) if refunded_amount else None,
            processor=ProcessorType.LEMON_SQUEEZY,
            processor_charge_id=data["id"],
            created_at=parse_datetime(data.get("created_at")),
            metadata={"order_number": data["order_number"]} if data.get("order_number") else {},
        )

    def _document(self, kind: str, attributes: dict[str, Any], resource_id: str | None = None):
        document: dict[str, Any] = {"type": kind, "attributes": attributes}
        if resource_id is not None:
            document["id"] = resource_id
        return {"data": document}

    # =========================================================================
    # Customers
    # =========================================================================

    async def create_customer(self, email, name=None, phone=None, metadata=None):
        body = self._document("customers", {"name": name or email, "email": email})
        body["data"]["relationships"] = {
            "store": {"data": {"type": "stores", "id": str(self.credentials.store_id)}}
        }
        response = await self._request(
            "POST", "/v1/customers", json_body=body, operation="create_customer"
        )
        return self._map_customer(response["data"])

    async def get_customer(self, customer_id):
        response = await self._request(
            "GET", f"/v1/customers/{customer_id}", resource="customer"
        )
        return self._map_customer(response["data"])

    async def update_customer(
        self, customer_id, email=None, name=None, phone=None, metadata=None
    ):
        attributes = {
            key: value
            for key, value in (("email", email), ("name", name))
            if value is not None
        }
        response = await self._request(
            "PATCH",
            f"/v1/customers/{customer_id}",
            json_body=self._document("customers", attributes, customer_id),
            resource="customer",
            operation="update_customer",
        )
        return self._map_customer(response["data"])

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def create_subscription(
        self,
        customer_id,
        price_id,
        payment_method_id=None,
        trial_days=None,
        quantity=1,
        metadata=None,
        idempotency_key=None,
    ):
        self._unsupported("create_subscription", CHECKOUT_ONLY.format(what="subscriptions"))

    async def get_subscription(self, subscription_id):
        response = await self._request(
            "GET", f"/v1/subscriptions/{subscription_id}", resource="subscription"
        )
        return self._map_subscription(response["data"])

    async def list_subscriptions(self, customer_id):
        response = await self._request(
            "GET",
            "/v1/subscriptions",
            params={
                "filter[customer_id]": customer_id,
                "filter[store_id]": self.credentials.store_id,
            },
            resource="customer",
        )
        return [self._map_subscription(item) for item in response.get("data", [])]

    async def change_plan(self, subscription_id, new_price_id, prorate=True):
        attributes = {
            "variant_id": int(new_price_id) if str(new_price_id).isdigit() else new_price_id,
            "invoice_immediately": prorate,
            "disable_prorations": not prorate,
        }
        response = await self._request(
            "PATCH",
            f"/v1/subscriptions/{subscription_id}",
            json_body=self._document("subscriptions", attributes, subscription_id),
            resource="subscription",
            operation="change_plan",
        )
        return self._map_subscription(response["data"])

    async def cancel_subscription(self, subscription_id, immediate=False):
        if immediate:
            self._unsupported(
                "cancel_subscription",
                "Lemon Squeezy only cancels at the end of the billing period",
            )
        response = await self._request(
            "DELETE",
            f"/v1/subscriptions/{subscription_id}",
            resource="subscription",
            operation="cancel_subscription",
        )
        return self._map_subscription(response["data"])

    async def resume_subscription(self, subscription_id):
        self._unsupported(
            "resume_subscription",
            "Lemon Squeezy cannot resume canceled subscriptions; start a new checkout",
        )

    async def pause_subscription(self, subscription_id):
        response = await self._request(
            "PATCH",
            f"/v1/subscriptions/{subscription_id}",
            json_body=self._document(
                "subscriptions", {"pause": {"mode": "void"}}, subscription_id
            ),
            resource="subscription",
            operation="pause_subscription",
        )
        return self._map_subscription(response["data"])

    # =========================================================================
    # Payment Methods
    # =========================================================================

    async def set_default_payment_method(self, customer_id, payment_method_id):
        self._unsupported("set_default_payment_method", CHECKOUT_ONLY.format(what="payment methods"))

    async def remove_payment_method(self, customer_id, payment_method_id):
        self._unsupported("remove_payment_method", CHECKOUT_ONLY.format(what="payment methods"))

    async def list_payment_methods(self, customer_id):
        methods = []
        for subscription in await self.list_subscriptions(customer_id):
            last4 = subscription.metadata.get("card_last_four")
            if not last4:
                continue
            methods.append(
                PaymentMethod(
                    id=subscription.id,
                    customer_id=customer_id,
                    type=PaymentMethodType.CARD,
                    last4=str(last4),
                    brand=subscription.metadata.get("card_brand"),
                    is_default=not methods,
                )
            )
        return methods

    # =========================================================================
    # Charges
    # =========================================================================

    async def create_charge(
        self,
        customer_id,
        amount,
        currency,
        payment_method_id=None,
        description=None,
        metadata=None,
        idempotency_key=None,
    ):
        self._unsupported("create_charge", CHECKOUT_ONLY.format(what="one-time payments"))

    async def list_charges(self, customer_id, limit=20):
        response = await self._request(
            "GET",
            "/v1/orders",
            params={
                "filter[customer_id]": customer_id,
                "filter[store_id]": self.credentials.store_id,
                "page[size]": limit,
            },
            resource="customer",
        )
        return [self._map_order(item) for item in response.get("data", [])][:limit]

    async def refund_charge(self, charge_id, amount=None, reason=None):
        self._unsupported(
            "refund_charge", "Lemon Squeezy refunds are issued from the dashboard"
        )

    # =========================================================================
    # Webhooks & Lifecycle
    # =========================================================================

    async def handle_webhook(self, signature, raw_payload):
        body = as_bytes(raw_payload)
        secret = self.credentials.webhook_secret
        if not secret:
            self._reject_webhook("No webhook signing secret configured", "missing_secret")
        if not signatures_match(compute_hmac_sha256(secret, body), signature):
            self._reject_webhook("Invalid webhook signature", "invalid_signature")
        try:
            payload = json.loads(body)
        except ValueError:
            self._reject_webhook("Malformed webhook payload", "malformed_payload")
        meta = payload.get("meta") or {}
        if not meta.get("event_name"):
            self._reject_webhook("Webhook event name is missing", "missing_event_name")
        data = payload.get("data") or {}
        return WebhookEvent(
            id=webhook_event_id(payload),
            type=meta["event_name"],
            processor=ProcessorType.LEMON_SQUEEZY,
            data={"data": data, "custom_data": meta.get("custom_data") or {}},
            created_at=parse_datetime((data.get("attributes") or {}).get("updated_at")),
            verified=True,
        )

    async def validate_configuration(self):
        await self._ping("/v1/users/me")
