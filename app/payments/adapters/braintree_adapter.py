"""
Braintree adapter.

Talks to the Braintree gateway's JSON endpoints under
``/merchants/<merchant_id>`` with HTTP basic authentication
(public key : private key). Amounts are decimal strings in major units on
the wire and are converted to integer minor units here.

Subscriptions end at the period boundary by capping numberOfBillingCycles
at the current cycle; immediate cancellation uses the cancel endpoint.
Braintree has no pause.

Webhook signatures are the hex HMAC-SHA256 of the raw body under the
private key.
"""

from __future__ import annotations

import json
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

import httpx

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

PRODUCTION_URL = "https://api.braintreegateway.com"
SANDBOX_URL = "https://api.sandbox.braintreegateway.com"

SUBSCRIPTION_STATUSES = {
    "active": SubscriptionStatus.ACTIVE,
    "pending": SubscriptionStatus.TRIALING,
    "past due": SubscriptionStatus.PAST_DUE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "expired": SubscriptionStatus.CANCELED,
}

CHARGE_STATUSES = {
    "settled": ChargeStatus.SUCCEEDED,
    "settling": ChargeStatus.SUCCEEDED,
    "submitted_for_settlement": ChargeStatus.SUCCEEDED,
    "authorized": ChargeStatus.FAILED,
    "authorization_expired": ChargeStatus.FAILED,
    "processor_declined": ChargeStatus.FAILED,
    "settlement_declined": ChargeStatus.FAILED,
    "failed": ChargeStatus.FAILED,
    "gateway_rejected": ChargeStatus.FAILED,
    "voided": ChargeStatus.REFUNDED,
}


def to_minor_units(amount: Any) -> int:
    return int((Decimal(str(amount or "0")) * 100).to_integral_value())


def to_major_units(amount: int) -> str:
    return str((Decimal(amount) / 100).quantize(Decimal("0.01")))


class BraintreeAdapter(HttpProcessorAdapter):
    processor_type = ProcessorType.BRAINTREE
    display_name = "Braintree"

    supports_trial_periods = True
    supports_plan_swapping = True
    supports_proration = True

    def base_url(self) -> str:
        root = SANDBOX_URL if self.credentials.environment == SANDBOX else PRODUCTION_URL
        return f"{root}/merchants/{self.credentials.merchant_id}"

    def auth(self) -> httpx.Auth:
        return httpx.BasicAuth(self.credentials.public_key, self.credentials.private_key)

    def auth_headers(self) -> dict[str, str]:
        return {"Braintree-Version": "2019-01-01"}

    # =========================================================================
    # Mapping
    # =========================================================================

    def _map_customer(self, data: dict[str, Any]) -> Customer:
        name = " ".join(
            part for part in (data.get("firstName"), data.get("lastName")) if part
        )
        return Customer(
            id=data["id"],
            email=data.get("email") or "",
            name=name or None,
            phone=data.get("phone"),
            processor=ProcessorType.BRAINTREE,
            processor_customer_id=data["id"],
            metadata=dict(data.get("customFields") or {}),
            created_at=parse_datetime(data.get("createdAt")),
            updated_at=parse_datetime(data.get("updatedAt") or data.get("createdAt")),
        )

    def _map_subscription(self, data: dict[str, Any]) -> Subscription:
        status = SUBSCRIPTION_STATUSES.get(
            (data.get("status") or "").lower(), SubscriptionStatus.INCOMPLETE
        )
        period_start = parse_datetime(
            data.get("billingPeriodStartDate") or data.get("createdAt")
        )
        period_end = parse_datetime(
            data.get("billingPeriodEndDate") or data.get("nextBillingDate")
        ) or period_start + timedelta(days=30)
        trial_end = parse_datetime(data.get("trialEndDate"))
        if data.get("trialPeriod") and trial_end is None and data.get("trialDuration"):
            trial_end = period_start + timedelta(days=int(data["trialDuration"]))
        capped = not data.get("neverExpires", True) and data.get(
            "numberOfBillingCycles"
        ) == data.get("currentBillingCycle")
        return Subscription(
            id=data["id"],
            customer_id=data.get("customerId") or "",
            status=status,
            price_id=data.get("planId") or "",
            product_id=data.get("planId") or "",
            current_period_start=period_start,
            current_period_end=period_end,
            trial_start=period_start if data.get("trialPeriod") else None,
            trial_end=trial_end,
            canceled_at=parse_datetime(data.get("canceledAt")),
            cancel_at_period_end=bool(capped) and status != SubscriptionStatus.CANCELED,
            quantity=int(data.get("quantity") or 1),
            processor=ProcessorType.BRAINTREE,
            processor_subscription_id=data["id"],
            metadata=dict(data.get("metadata") or {}),
            source_timestamp=parse_datetime(data.get("updatedAt")),
        )

    def _map_payment_method(self, data: dict[str, Any]) -> PaymentMethod:
        if data.get("email") and not data.get("last4"):
            method_type = PaymentMethodType.PAYPAL
        else:
            method_type = PaymentMethodType.CARD
        return PaymentMethod(
            id=data["token"],
            customer_id=data.get("customerId") or "",
            type=method_type,
            last4=data.get("last4"),
            brand=data.get("cardType"),
            expiry_month=int(data["expirationMonth"]) if data.get("expirationMonth") else None,
            expiry_year=int(data["expirationYear"]) if data.get("expirationYear") else None,
            is_default=bool(data.get("default")),
        )

    def _map_charge(self, data: dict[str, Any]) -> Charge:
        refunded_ids = data.get("refundIds") or []
        status = CHARGE_STATUSES.get((data.get("status") or "").lower(), ChargeStatus.PENDING)
        refunded_amount = to_minor_units(data["refundedAmount"]) if data.get("refundedAmount") else None
        amount = to_minor_units(data.get("amount"))
        if refunded_amount is not None and refunded_amount >= amount:
            status = ChargeStatus.REFUNDED
        return Charge(
            id=data["id"],
            customer_id=(data.get("customer") or {}).get("id") or data.get("customerId") or "",
            amount=amount,
            currency=(data.get("currencyIsoCode") or "usd").lower(),
            status=status,
            description=(data.get("descriptor") or {}).get("name") or data.get("orderId"),
            refunded=bool(refunded_ids) or bool(refunded_amount),
            refunded_amount=refunded_amount,
            processor=ProcessorType.BRAINTREE,
            processor_charge_id=data["id"],
            created_at=parse_datetime(data.get("createdAt")),
            metadata=dict(data.get("customFields") or {}),
        )

    # =========================================================================
    # Customers
    # =========================================================================

    async def create_customer(self, email, name=None, phone=None, metadata=None):
        first, _, last = (name or "").partition(" ")
        body = {
            "customer": {
                "email": email,
                "firstName": first or None,
                "lastName": last or None,
                "phone": phone,
                "customFields": metadata or {},
            }
        }
        response = await self._request(
            "POST", "/customers", json_body=body, operation="create_customer"
        )
        return self._map_customer(response["customer"])

    async def get_customer(self, customer_id):
        response = await self._request(
            "GET", f"/customers/{customer_id}", resource="customer"
        )
        return self._map_customer(response["customer"])

    async def update_customer(
        self, customer_id, email=None, name=None, phone=None, metadata=None
    ):
        changes: dict[str, Any] = {}
        if email is not None:
            changes["email"] = email
        if name is not None:
            first, _, last = name.partition(" ")
            changes["firstName"] = first
            changes["lastName"] = last or None
        if phone is not None:
            changes["phone"] = phone
        if metadata is not None:
            changes["customFields"] = metadata
        response = await self._request(
            "PUT",
            f"/customers/{customer_id}",
            json_body={"customer": changes},
            resource="customer",
        )
        return self._map_customer(response["customer"])

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
        if payment_method_id is None:
            defaults = [pm for pm in await self.list_payment_methods(customer_id) if pm.is_default]
            payment_method_id = defaults[0].id if defaults else None
        subscription: dict[str, Any] = {
            "planId": price_id,
            "paymentMethodToken": payment_method_id,
            "quantity": quantity,
        }
        if trial_days:
            subscription.update(
                {"trialPeriod": True, "trialDuration": trial_days, "trialDurationUnit": "day"}
            )
        response = await self._request(
            "POST",
            "/subscriptions",
            json_body={"subscription": subscription},
            resource="payment_method",
            operation="create_subscription",
            idempotency_key=idempotency_key,
        )
        data = {**response["subscription"], "customerId": customer_id}
        return self._map_subscription(data)

    async def get_subscription(self, subscription_id):
        response = await self._request(
            "GET", f"/subscriptions/{subscription_id}", resource="subscription"
        )
        return self._map_subscription(response["subscription"])

    async def list_subscriptions(self, customer_id):
        response = await self._request(
            "GET", f"/customers/{customer_id}", resource="customer"
        )
        subscriptions = []
        for method in response["customer"].get("paymentMethods", []):
            for item in method.get("subscriptions", []):
                subscriptions.append(
                    self._map_subscription({**item, "customerId": customer_id})
                )
        return subscriptions

    async def change_plan(self, subscription_id, new_price_id, prorate=True):
        body = {
            "subscription": {
                "planId": new_price_id,
                "options": {"prorateCharges": prorate},
            }
        }
        response = await self._request(
            "PUT",
            f"/subscriptions/{subscription_id}",
            json_body=body,
            resource="subscription",
            operation="change_plan",
        )
        return self._map_subscription(response["subscription"])

    async def cancel_subscription(self, subscription_id, immediate=False):
        if immediate:
            response = await self._request(
                "PUT",
                f"/subscriptions/{subscription_id}/cancel",
                resource="subscription",
                operation="cancel_subscription",
            )
            return self._map_subscription(response["subscription"])
        current = await self._request(
            "GET", f"/subscriptions/{subscription_id}", resource="subscription"
        )
        cycle = current["subscription"].get("currentBillingCycle") or 1
        response = await self._request(
            "PUT",
            f"/subscriptions/{subscription_id}",
            json_body={"subscription": {"neverExpires": False, "numberOfBillingCycles": cycle}},
            resource="subscription",
            operation="cancel_subscription",
        )
        return self._map_subscription(response["subscription"])

    async def resume_subscription(self, subscription_id):
        response = await self._request(
            "PUT",
            f"/subscriptions/{subscription_id}",
            json_body={"subscription": {"neverExpires": True}},
            resource="subscription",
            operation="resume_subscription",
        )
        return self._map_subscription(response["subscription"])

    # =========================================================================
    # Payment Methods
    # =========================================================================

    async def add_payment_method(self, customer_id, token, set_as_default=False):
        body = {
            "paymentMethod": {
                "customerId": customer_id,
                "paymentMethodNonce": token,
                "options": {"makeDefault": set_as_default},
            }
        }
        response = await self._request(
            "POST",
            "/payment_methods",
            json_body=body,
            resource="customer",
            operation="add_payment_method",
        )
        return self._map_payment_method(response["paymentMethod"])

    async def set_default_payment_method(self, customer_id, payment_method_id):
        response = await self._request(
            "PUT",
            f"/payment_methods/{payment_method_id}",
            json_body={"paymentMethod": {"options": {"makeDefault": True}}},
            resource="payment_method",
            operation="set_default_payment_method",
        )
        return self._map_payment_method(response["paymentMethod"])

    async def remove_payment_method(self, customer_id, payment_method_id):
        await self._request(
            "DELETE",
            f"/payment_methods/{payment_method_id}",
            resource="payment_method",
            operation="remove_payment_method",
        )

    async def list_payment_methods(self, customer_id):
        response = await self._request(
            "GET", f"/customers/{customer_id}", resource="customer"
        )
        return [
            self._map_payment_method({**item, "customerId": customer_id})
            for item in response["customer"].get("paymentMethods", [])
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
        transaction: dict[str, Any] = {
            "amount": to_major_units(amount),
            "customerId": customer_id,
            "currencyIsoCode": currency.upper(),
            "options": {"submitForSettlement": True},
            "customFields": metadata or {},
        }
        if payment_method_id:
            transaction["paymentMethodToken"] = payment_method_id
        if description:
            transaction["orderId"] = description
        response = await self._request(
            "POST",
            "/transactions",
            json_body={"transaction": transaction},
            resource="customer",
            operation="create_charge",
            idempotency_key=idempotency_key,
        )
        return self._map_charge(response["transaction"])

    async def list_charges(self, customer_id, limit=20):
        response = await self._request(
            "GET",
            "/transactions",
            params={"customerId": customer_id, "limit": limit},
            resource="customer",
        )
        return [self._map_charge(item) for item in response.get("transactions", [])][:limit]

    async def refund_charge(self, charge_id, amount=None, reason=None):
        body = {"transaction": {"amount": to_major_units(amount)}} if amount else None
        await self._request(
            "POST",
            f"/transactions/{charge_id}/refund",
            json_body=body,
            resource="charge",
            operation="refund_charge",
        )
        response = await self._request(
            "GET", f"/transactions/{charge_id}", resource="charge"
        )
        return self._map_charge(response["transaction"])

    # =========================================================================
    # Webhooks & Lifecycle
    # =========================================================================

    async def handle_webhook(self, signature, raw_payload):
        body = as_bytes(raw_payload)
        expected = compute_hmac_sha256(self.credentials.private_key, body)
        if not signatures_match(expected, signature):
            self._reject_webhook("Invalid webhook signature", "invalid_signature")
        try:
            payload = json.loads(body)
        except ValueError:
            self._reject_webhook("Malformed webhook payload", "malformed_payload")
        if not payload.get("kind"):
            self._reject_webhook("Webhook event kind is missing", "missing_event_kind")
        if not payload.get("id"):
            self._reject_webhook("Webhook event id is missing", "missing_event_id")
        return WebhookEvent(
            id=payload["id"],
            type=payload["kind"],
            processor=ProcessorType.BRAINTREE,
            data=payload.get("subject") or {},
            created_at=parse_datetime(payload.get("timestamp")),
            verified=True,
        )

    async def validate_configuration(self):
        await self._ping("/ping")
