"""
Totalpay Global adapter.

REST over httpx. Every request carries ``X-Merchant-Id`` and ``X-Api-Key``
headers; request bodies are additionally signed with ``X-Signature``, the
hex HMAC-SHA256 of the encoded body under the merchant secret key.
Webhooks are signed the same way.

Totalpay bills recurring payments from a stored card token and has no
trials, plan changes or pausing.
"""

from __future__ import annotations

import json
from dataclasses import replace
from typing import TYPE_CHECKING

from payments.adapters.base import as_bytes, compute_hmac_sha256, signatures_match
from payments.adapters.http import HttpProcessorAdapter
from payments.config import SANDBOX
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

PRODUCTION_URL = "https://api.totalpay.global"
SANDBOX_URL = "https://sandbox.totalpay.global/api"

SUBSCRIPTION_STATUSES = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "trial": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "overdue": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.PAUSED,
    "suspended": SubscriptionStatus.PAUSED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "pending": SubscriptionStatus.INCOMPLETE,
}

CHARGE_STATUSES = {
    "success": ChargeStatus.SUCCEEDED,
    "succeeded": ChargeStatus.SUCCEEDED,
    "completed": ChargeStatus.SUCCEEDED,
    "approved": ChargeStatus.SUCCEEDED,
    "failed": ChargeStatus.FAILED,
    "declined": ChargeStatus.FAILED,
    "error": ChargeStatus.FAILED,
    "pending": ChargeStatus.PENDING,
    "processing": ChargeStatus.PENDING,
    "initiated": ChargeStatus.PENDING,
    "refunded": ChargeStatus.REFUNDED,
}

PAYMENT_METHOD_TYPES = {
    "card": PaymentMethodType.CARD,
    "credit_card": PaymentMethodType.CARD,
    "debit_card": PaymentMethodType.CARD,
    "bank_account": PaymentMethodType.BANK_ACCOUNT,
    "bank": PaymentMethodType.BANK_ACCOUNT,
    "paypal": PaymentMethodType.PAYPAL,
    "apple_pay": PaymentMethodType.APPLE_PAY,
    "google_pay": PaymentMethodType.GOOGLE_PAY,
}


class TotalpayAdapter(HttpProcessorAdapter):
    processor_type = ProcessorType.TOTALPAY_GLOBAL
    display_name = "Totalpay Global"

    supports_trial_periods = False
    supports_plan_swapping = False
    supports_proration = False

    def base_url(self) -> str:
        if self.credentials.environment == SANDBOX:
            return SANDBOX_URL
        return PRODUCTION_URL

    def auth_headers(self) -> dict[str, str]:
        return {
            "X-Merchant-Id": self.credentials.merchant_id,
            "X-Api-Key": self.credentials.api_key,
        }

    def sign_request(self, body: bytes) -> dict[str, str]:
        return {"X-Signature": compute_hmac_sha256(self.credentials.secret_key, body)}

    # =========================================================================
    # Mapping
    # =========================================================================

    def _map_customer(self, data: dict[str, Any]) -> Customer:
        customer_id = str(data.get("id") or data.get("customer_id") or "")
        return Customer(
            id=customer_id,
            email=data.get("email") or "",
            name=data.get("name"),
            phone=data.get("phone"),
            processor=ProcessorType.TOTALPAY_GLOBAL,
            processor_customer_id=customer_id,
            metadata=dict(data.get("metadata") or {}),
            created_at=parse_datetime(data.get("created_at") or data.get("created")),
            updated_at=parse_datetime(
                data.get("updated_at") or data.get("updated") or data.get("created_at")
            ),
        )

    def _map_subscription(self, data: dict[str, Any], customer_id: str = "") -> Subscription:
        return Subscription(
            id=str(data["id"]),
            customer_id=str(data.get("customer_id") or customer_id),
            status=SUBSCRIPTION_STATUSES.get(
                (data.get("status") or "").lower(), SubscriptionStatus.INCOMPLETE
            ),
            price_id=data.get("price_id") or "",
            product_id=data.get("product_id") or "",
            current_period_start=parse_datetime(data.get("current_period_start")),
            current_period_end=parse_datetime(data.get("current_period_end")),
            canceled_at=parse_datetime(data.get("canceled_at")),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            quantity=int(data.get("quantity") or 1),
            processor=ProcessorType.TOTALPAY_GLOBAL,
            processor_subscription_id=str(data["id"]),
            metadata=dict(data.get("metadata") or {}),
            source_timestamp=parse_datetime(data.get("updated_at")),
        )

    def _map_charge(self, data: dict[str, Any], customer_id: str = "") -> Charge:
        charge_id = str(data.get("id") or data.get("transaction_id") or "")
        refunded_amount = data.get("refunded_amount")
        return Charge(
            id=charge_id,
            customer_id=str(data.get("customer_id") or customer_id),
            amount=int(data.get("amount") or 0),
            currency=(data.get("currency") or "usd").lower(),
            status=CHARGE_STATUSES.get((data.get("status") or "").lower(), ChargeStatus.PENDING),
            description=data.get("description"),
            receipt_url=data.get("receipt_url"),
            refunded=bool(data.get("refunded")),
            refunded_amount=int(refunded_amount) if refunded_amount else None,
            processor=ProcessorType.TOTALPAY_GLOBAL,
            processor_charge_id=charge_id,
            created_at=parse_datetime(data.get("created_at") or data.get("created")),
            metadata=dict(data.get("metadata") or {}),
        )

    def _map_payment_method(self, data: dict[str, Any], customer_id: str) -> PaymentMethod:
        return PaymentMethod(
            id=str(data.get("id") or data.get("token") or ""),
            customer_id=customer_id,
            type=PAYMENT_METHOD_TYPES.get(
                (data.get("type") or "card").lower(), PaymentMethodType.CARD
            ),
            last4=data.get("last4"),
            brand=data.get("brand") or data.get("card_type"),
            expiry_month=data.get("exp_month"),
            expiry_year=data.get("exp_year"),
            is_default=bool(data.get("is_default")),
            metadata=dict(data.get("metadata") or {}),
        )

    # =========================================================================
    # Customers
    # =========================================================================

    async def create_customer(self, email, name=None, phone=None, metadata=None):
        body: dict[str, Any] = {"email": email}
        if name is not None:
            body["name"] = name
        if phone is not None:
            body["phone"] = phone
        if metadata:
            body["metadata"] = metadata
        response = await self._request(
            "POST", "/v1/customers", json_body=body, operation="create_customer"
        )
        return self._map_customer(response)

    async def get_customer(self, customer_id):
        response = await self._request(
            "GET", f"/v1/customers/{customer_id}", resource="customer"
        )
        return self._map_customer(response)

    async def update_customer(
        self, customer_id, email=None, name=None, phone=None, metadata=None
    ):
        changes = {
            key: value
            for key, value in (
                ("email", email),
                ("name", name),
                ("phone", phone),
                ("metadata", metadata),
            )
            if value is not None
        }
        response = await self._request(
            "PATCH",
            f"/v1/customers/{customer_id}",
            json_body=changes,
            resource="customer",
            operation="update_customer",
        )
        return self._map_customer(response)

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
        if trial_days:
            self._unsupported("create_subscription", "Totalpay Global does not offer trials")
        body: dict[str, Any] = {
            "merchant_id": self.credentials.merchant_id,
            "customer_id": customer_id,
            "price_id": price_id,
            "quantity": quantity,
            "recurring_init": True,
        }
        if payment_method_id:
            body["payment_method_id"] = payment_method_id
        if metadata:
            body["metadata"] = metadata
        response = await self._request(
            "POST",
            "/v1/subscriptions",
            json_body=body,
            resource="customer",
            operation="create_subscription",
            idempotency_key=idempotency_key,
        )
        return self._map_subscription(response, customer_id)

    async def get_subscription(self, subscription_id):
        response = await self._request(
            "GET", f"/v1/subscriptions/{subscription_id}", resource="subscription"
        )
        return self._map_subscription(response)

    async def list_subscriptions(self, customer_id):
        response = await self._request(
            "GET",
            "/v1/subscriptions",
            params={"customer_id": customer_id},
            resource="customer",
        )
        return [self._map_subscription(item, customer_id) for item in response.get("data", [])]

    async def change_plan(self, subscription_id, new_price_id, prorate=True):
        self._unsupported("change_plan")

    async def cancel_subscription(self, subscription_id, immediate=False):
        response = await self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}/cancel",
            json_body={"at_period_end": not immediate},
            resource="subscription",
            operation="cancel_subscription",
        )
        return self._map_subscription(response)

    async def resume_subscription(self, subscription_id):
        response = await self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}/resume",
            json_body={},
            resource="subscription",
            operation="resume_subscription",
        )
        return self._map_subscription(response)

    # =========================================================================
    # Payment Methods
    # =========================================================================

    async def add_payment_method(self, customer_id, token, set_as_default=False):
        response = await self._request(
            "POST",
            f"/v1/customers/{customer_id}/payment-methods",
            json_body={"token": token, "is_default": set_as_default},
            resource="customer",
            operation="add_payment_method",
        )
        return self._map_payment_method(response, customer_id)

    async def set_default_payment_method(self, customer_id, payment_method_id):
        response = await self._request(
            "POST",
            f"/v1/customers/{customer_id}/payment-methods/{payment_method_id}/default",
            json_body={},
            resource="payment_method",
            operation="set_default_payment_method",
        )
        method = self._map_payment_method(response, customer_id)
        return replace(method, is_default=True)

    async def remove_payment_method(self, customer_id, payment_method_id):
        await self._request(
            "DELETE",
            f"/v1/customers/{customer_id}/payment-methods/{payment_method_id}",
            resource="payment_method",
            operation="remove_payment_method",
        )

    async def list_payment_methods(self, customer_id):
        response = await self._request(
            "GET", f"/v1/customers/{customer_id}/payment-methods", resource="customer"
        )
        return [
            self._map_payment_method(item, customer_id) for item in response.get("data", [])
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
        body: dict[str, Any] = {
            "merchant_id": self.credentials.merchant_id,
            "customer_id": customer_id,
            "amount": amount,
            "currency": currency.upper(),
            "operation": "purchase",
        }
        if description:
            body["description"] = description
        if payment_method_id:
            body["payment_method_id"] = payment_method_id
        if metadata:
            body["metadata"] = metadata
        response = await self._request(
            "POST",
            "/v1/payments",
            json_body=body,
            resource="customer",
            operation="create_charge",
            idempotency_key=idempotency_key,
        )
        return self._map_charge(response, customer_id)

    async def list_charges(self, customer_id, limit=20):
        response = await self._request(
            "GET",
            "/v1/payments",
            params={"customer_id": customer_id, "limit": limit},
            resource="customer",
        )
        return [self._map_charge(item, customer_id) for item in response.get("data", [])][:limit]

    async def refund_charge(self, charge_id, amount=None, reason=None):
        body: dict[str, Any] = {}
        if amount is not None:
            body["amount"] = amount
        if reason:
            body["reason"] = reason
        response = await self._request(
            "POST",
            f"/v1/payments/{charge_id}/refund",
            json_body=body,
            resource="charge",
            operation="refund_charge",
        )
        return self._map_charge(response)

    # =========================================================================
    # Webhooks & Lifecycle
    # =========================================================================

    async def handle_webhook(self, signature, raw_payload):
        body = as_bytes(raw_payload)
        expected = compute_hmac_sha256(self.credentials.secret_key, body)
        if not signatures_match(expected, signature):
            self._reject_webhook("Invalid webhook signature", "invalid_signature")
        try:
            payload = json.loads(body)
        except ValueError:
            self._reject_webhook("Malformed webhook payload", "malformed_payload")
        event_id = payload.get("id") or payload.get("transaction_id")
        if not event_id:
            self._reject_webhook("Webhook event id is missing", "missing_event_id")
        return WebhookEvent(
            id=str(event_id),
            type=payload.get("event_type") or payload.get("type") or "unknown",
            processor=ProcessorType.TOTALPAY_GLOBAL,
            data=payload.get("data") or payload,
            created_at=parse_datetime(payload.get("timestamp") or payload.get("created")),
            verified=True,
        )

    async def validate_configuration(self):
        await self._ping("/v1/merchant/info")
