"""
Paddle Billing adapter.

Talks to the Paddle Billing REST API over httpx with bearer
authentication. Paddle wraps every response in a ``data`` envelope and
reports errors as ``{"error": {"code": ..., "detail": ...}}``.

Notes:
- Subscriptions are created from transactions. A transaction that cannot
  be collected automatically (no saved payment method) needs a hosted
  checkout and is reported as ProcessorDeclined(checkout_required).
- Paddle has no per-customer default payment method; the method used by
  each subscription is chosen at checkout.
- Only full refunds are offered through adjustments.

Webhooks carry a ``Paddle-Signature: ts=<unix>;h1=<hex>`` header where h1
is HMAC-SHA256 of ``"<ts>:<raw body>"`` under the notification secret.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from payments.adapters.base import as_bytes, compute_hmac_sha256, signatures_match
from payments.adapters.http import HttpProcessorAdapter
from payments.config import SANDBOX
from payments.exceptions import ProcessorDeclined
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

PRODUCTION_URL = "https://api.paddle.com"
SANDBOX_URL = "https://sandbox-api.paddle.com"

SUBSCRIPTION_STATUSES = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "deleted": SubscriptionStatus.CANCELED,
    "canceled": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.PAUSED,
}

CHARGE_STATUSES = {
    "completed": ChargeStatus.SUCCEEDED,
    "paid": ChargeStatus.SUCCEEDED,
    "success": ChargeStatus.SUCCEEDED,
    "refunded": ChargeStatus.REFUNDED,
    "canceled": ChargeStatus.FAILED,
    "failed": ChargeStatus.FAILED,
    "past_due": ChargeStatus.FAILED,
}


class PaddleAdapter(HttpProcessorAdapter):
    processor_type = ProcessorType.PADDLE
    display_name = "Paddle"

    supports_trial_periods = True
    supports_plan_swapping = True
    supports_proration = True

    def base_url(self) -> str:
        if self.credentials.environment == SANDBOX:
            return SANDBOX_URL
        return PRODUCTION_URL

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.credentials.api_key}"}

    # =========================================================================
    # Mapping
    # =========================================================================

    def _map_customer(self, data: dict[str, Any]) -> Customer:
        return Customer(
            id=data["id"],
            email=data.get("email") or "",
            name=data.get("name"),
            processor=ProcessorType.PADDLE,
            processor_customer_id=data["id"],
            metadata=dict(data.get("custom_data") or {}),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at") or data.get("created_at")),
        )

    def _map_subscription(self, data: dict[str, Any]) -> Subscription:
        items = data.get("items") or [{}]
        price = items[0].get("price") or {}
        period = data.get("current_billing_period") or {}
        trial = items[0].get("trial_dates") or {}
        scheduled = data.get("scheduled_change") or {}
        return Subscription(
            id=data["id"],
            customer_id=data.get("customer_id", ""),
            status=SUBSCRIPTION_STATUSES.get(
                (data.get("status") or "").lower(), SubscriptionStatus.INCOMPLETE
            ),
            price_id=price.get("id", ""),
            product_id=price.get("product_id", ""),
            current_period_start=parse_datetime(
                period.get("starts_at") or data.get("started_at") or data.get("created_at")
            ),
            current_period_end=parse_datetime(
                period.get("ends_at") or data.get("next_billed_at") or data.get("updated_at")
            ),
            trial_start=parse_datetime(trial.get("starts_at")),
            trial_end=parse_datetime(trial.get("ends_at")),
            canceled_at=parse_datetime(data.get("canceled_at")),
            cancel_at_period_end=scheduled.get("action") == "cancel",
            quantity=int(items[0].get("quantity") or 1),
            processor=ProcessorType.PADDLE,
            processor_subscription_id=data["id"],
            metadata=dict(data.get("custom_data") or {}),
            source_timestamp=parse_datetime(data.get("updated_at")),
        )

    def _map_charge(self, data: dict[str, Any]) -> Charge:
        totals = (data.get("details") or {}).get("totals") or {}
        return Charge(
            id=data["id"],
            customer_id=data.get("customer_id") or "",
            amount=int(totals.get("grand_total") or totals.get("total") or 0),
            currency=(data.get("currency_code") or "usd").lower(),
            status=CHARGE_STATUSES.get(
                (data.get("status") or "").lower(), ChargeStatus.PENDING
            ),
            description=(data.get("custom_data") or {}).get("description"),
            receipt_url=(data.get("checkout") or {}).get("url"),
            processor=ProcessorType.PADDLE,
            processor_charge_id=data["id"],
            created_at=parse_datetime(data.get("created_at")),
            metadata=dict(data.get("custom_data") or {}),
        )

    def _map_payment_method(self, customer_id: str, data: dict[str, Any]) -> PaymentMethod:
        card = data.get("card") or {}
        method_type = (
            PaymentMethodType.PAYPAL if data.get("type") == "paypal" else PaymentMethodType.CARD
        )
        return PaymentMethod(
            id=data["id"],
            customer_id=customer_id,
            type=method_type,
            last4=card.get("last4"),
            brand=card.get("type"),
            expiry_month=card.get("expiry_month"),
            expiry_year=card.get("expiry_year"),
        )

    # =========================================================================
    # Customers
    # =========================================================================

    async def create_customer(self, email, name=None, phone=None, metadata=None):
        body: dict[str, Any] = {"email": email}
        if name:
            body["name"] = name
        if metadata:
            body["custom_data"] = metadata
        response = await self._request(
            "POST", "/customers", json_body=body, operation="create_customer"
        )
        return self._map_customer(response["data"])

    async def get_customer(self, customer_id):
        response = await self._request(
            "GET", f"/customers/{customer_id}", resource="customer"
        )
        return self._map_customer(response["data"])

    async def update_customer(
        self, customer_id, email=None, name=None, phone=None, metadata=None
    ):
        body: dict[str, Any] = {}
        if email is not None:
            body["email"] = email
        if name is not None:
            body["name"] = name
        if metadata is not None:
            body["custom_data"] = metadata
        response = await self._request(
            "PATCH", f"/customers/{customer_id}", json_body=body, resource="customer"
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
        body: dict[str, Any] = {
            "customer_id": customer_id,
            "items": [{"price_id": price_id, "quantity": quantity}],
            "collection_mode": "automatic",
            "custom_data": dict(metadata or {}),
        }
        response = await self._request(
            "POST",
            "/transactions",
            json_body=body,
            resource="customer",
            operation="create_subscription",
            idempotency_key=idempotency_key,
        )
        subscription_id = response["data"].get("subscription_id")
        if not subscription_id:
            raise ProcessorDeclined(
                "Paddle needs a checkout to collect the first payment",
                processor_code="checkout_required",
                details={"transaction_id": response["data"].get("id")},
            )
        return await self.get_subscription(subscription_id)

    async def get_subscription(self, subscription_id):
        response = await self._request(
            "GET", f"/subscriptions/{subscription_id}", resource="subscription"
        )
        return self._map_subscription(response["data"])

    async def list_subscriptions(self, customer_id):
        response = await self._request(
            "GET",
            "/subscriptions",
            params={"customer_id": customer_id},
            resource="customer",
        )
        return [self._map_subscription(item) for item in response.get("data", [])]

    async def change_plan(self, subscription_id, new_price_id, prorate=True):
        current = await self.get_subscription(subscription_id)
        body = {
            "items": [{"price_id": new_price_id, "quantity": current.quantity}],
            "proration_billing_mode": (
                "prorated_immediately" if prorate else "full_next_billing_period"
            ),
        }
        response = await self._request(
            "PATCH",
            f"/subscriptions/{subscription_id}",
            json_body=body,
            resource="subscription",
            operation="change_plan",
        )
        return self._map_subscription(response["data"])

    async def cancel_subscription(self, subscription_id, immediate=False):
        body = {"effective_from": "immediately" if immediate else "next_billing_period"}
        response = await self._request(
            "POST",
            f"/subscriptions/{subscription_id}/cancel",
            json_body=body,
            resource="subscription",
            operation="cancel_subscription",
        )
        return self._map_subscription(response["data"])

    async def resume_subscription(self, subscription_id):
        current = await self.get_subscription(subscription_id)
        if current.status == SubscriptionStatus.PAUSED:
            response = await self._request(
                "POST",
                f"/subscriptions/{subscription_id}/resume",
                json_body={"effective_from": "immediately"},
                resource="subscription",
                operation="resume_subscription",
            )
        else:
            response = await self._request(
                "PATCH",
                f"/subscriptions/{subscription_id}",
                json_body={"scheduled_change": None},
                resource="subscription",
                operation="resume_subscription",
            )
        return self._map_subscription(response["data"])

    async def pause_subscription(self, subscription_id):
        response = await self._request(
            "POST",
            f"/subscriptions/{subscription_id}/pause",
            json_body={},
            resource="subscription",
            operation="pause_subscription",
        )
        return self._map_subscription(response["data"])

    # =========================================================================
    # Payment Methods
    # =========================================================================

    async def set_default_payment_method(self, customer_id, payment_method_id):
        self._unsupported(
            "set_default_payment_method",
            "Paddle chooses the payment method per subscription at checkout",
        )

    async def remove_payment_method(self, customer_id, payment_method_id):
        await self._request(
            "DELETE",
            f"/customers/{customer_id}/payment-methods/{payment_method_id}",
            resource="payment_method",
            operation="remove_payment_method",
        )

    async def list_payment_methods(self, customer_id):
        response = await self._request(
            "GET", f"/customers/{customer_id}/payment-methods", resource="customer"
        )
        return [
            self._map_payment_method(customer_id, item)
            for item in response.get("data", [])
        ]

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
        label = description or "One-time charge"
        body = {
            "customer_id": customer_id,
            "collection_mode": "automatic",
            "currency_code": currency.upper(),
            "items": [
                {
                    "quantity": 1,
                    "price": {
                        "description": label,
                        "unit_price": {
                            "amount": str(amount),
                            "currency_code": currency.upper(),
                        },
                        "product": {"name": label, "tax_category": "standard"},
                    },
                }
            ],
            "custom_data": {**(metadata or {}), "description": label},
        }
        response = await self._request(
            "POST",
            "/transactions",
            json_body=body,
            resource="customer",
            operation="create_charge",
            idempotency_key=idempotency_key,
        )
        return self._map_charge(response["data"])

    async def list_charges(self, customer_id, limit=20):
        response = await self._request(
            "GET",
            "/transactions",
            params={"customer_id": customer_id, "per_page": limit, "order_by": "created_at[DESC]"},
            resource="customer",
        )
        return [self._map_charge(item) for item in response.get("data", [])][:limit]

    async def refund_charge(self, charge_id, amount=None, reason=None):
        response = await self._request(
            "GET", f"/transactions/{charge_id}", resource="charge"
        )
        charge = self._map_charge(response["data"])
        if amount is not None and amount != charge.amount:
            self._unsupported("refund_charge", "Paddle adapter only issues full refunds")
        await self._request(
            "POST",
            "/adjustments",
            json_body={
                "action": "refund",
                "transaction_id": charge_id,
                "type": "full",
                "reason": reason or "requested_by_customer",
            },
            resource="charge",
            operation="refund_charge",
        )
        return charge.with_refund(charge.amount)

    # =========================================================================
    # Webhooks & Lifecycle
    # =========================================================================

    async def handle_webhook(self, signature, raw_payload):
        body = as_bytes(raw_payload)
        parts = dict(
            part.split("=", 1) for part in (signature or "").split(";") if "=" in part
        )
        timestamp, provided = parts.get("ts"), parts.get("h1")
        if not timestamp or not provided:
            self._reject_webhook("Missing Paddle signature", "missing_signature")
        expected = compute_hmac_sha256(
            self.credentials.webhook_secret, timestamp.encode() + b":" + body
        )
        if not signatures_match(expected, provided):
            self._reject_webhook("Invalid webhook signature", "invalid_signature")
        try:
            payload = json.loads(body)
        except ValueError:
            self._reject_webhook("Malformed webhook payload", "malformed_payload")
        if not payload.get("event_id") or not payload.get("event_type"):
            self._reject_webhook("Webhook event id or type is missing", "missing_event_type")
        return WebhookEvent(
            id=payload["event_id"],
            type=payload["event_type"],
            processor=ProcessorType.PADDLE,
            data=payload.get("data") or {},
            created_at=parse_datetime(payload.get("occurred_at")),
            verified=True,
        )

    async def validate_configuration(self):
        await self._ping("/event-types")
