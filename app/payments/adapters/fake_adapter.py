"""
In-memory fake processor.

FakeAdapter implements the full adapter contract without any network
access. It is the default processor in development and the workhorse of
the test suite.

Features:
- Realistic ids with a fake_ prefix (fake_cus_..., fake_sub_..., fake_ch_...)
- Injected clock for trial and billing period dates
- Optional simulated latency (FakeCredentials.simulate_delays)
- Random NetworkFailure at FakeCredentials.failure_rate
- Deterministic failure injection per operation (fail_next / fail_always)
- Per-operation call counters for asserting cache behaviour
- Webhook signatures of the form "fake_sig_<hmac-sha256>"

Usage:
    adapter = FakeAdapter(config, clock=FrozenClock())

    adapter.fail_next("create_charge", NetworkFailure("boom"))
    signature, body = adapter.build_webhook(
        "evt_1", "subscription.canceled", {"subscription_id": sub.id}
    )
    event = await adapter.handle_webhook(signature, body)
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import random
import uuid
from collections import Counter, defaultdict, deque
from dataclasses import replace
from datetime import timedelta
from typing import TYPE_CHECKING

from payments.adapters.base import (
    ProcessorAdapter,
    as_bytes,
    compute_hmac_sha256,
    signatures_match,
)
from payments.clock import SystemClock
from payments.exceptions import (
    CustomerNotFound,
    InvalidConfiguration,
    NetworkFailure,
    PaymentMethodFailure,
    ProcessorDeclined,
    SubscriptionNotFound,
    ValidationFailure,
)
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
    enforce_single_default,
    parse_datetime,
)

if TYPE_CHECKING:
    from typing import Any

    from payments.clock import Clock
    from payments.config import ProcessorConfiguration

SIGNATURE_PREFIX = "fake_sig_"
BILLING_PERIOD = timedelta(days=30)
CARD_BRANDS = ("visa", "mastercard", "amex", "discover")


def fake_product_id(price_id: str) -> str:
    return f"fake_prod_{hashlib.sha1(price_id.encode()).hexdigest()[:8]}"


class FakeAdapter(ProcessorAdapter):
    """
    Adapter for the in-memory fake back-end.

    State lives on the instance, so two FakeAdapter instances behave like
    two independent back-ends.
    """

    processor_type = ProcessorType.FAKE
    display_name = "Fake Processor"

    supports_trial_periods = True
    supports_plan_swapping = True
    supports_proration = True

    def __init__(
        self,
        config: ProcessorConfiguration,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ):
        super().__init__(config)
        self.clock = clock or SystemClock()
        self._random = rng or random.Random()
        self._customers: dict[str, Customer] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._charges: dict[str, Charge] = {}
        self._payment_methods: dict[str, PaymentMethod] = {}
        self._default_payment_methods: dict[str, str] = {}
        self._failures: dict[str, deque[Exception]] = defaultdict(deque)
        self._persistent_failures: dict[str, Exception] = {}
        self.call_counts: Counter[str] = Counter()
        self.idempotency_keys: list[str] = []
        self.closed = False

    # =========================================================================
    # Test hooks
    # =========================================================================

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Raise ``error`` on the next ``times`` calls of ``operation``."""
        for _ in range(times):
            self._failures[operation].append(error)

    def fail_always(self, operation: str, error: Exception) -> None:
        """Raise ``error`` on every call of ``operation`` until clear_failures()."""
        self._persistent_failures[operation] = error

    def clear_failures(self) -> None:
        self._failures.clear()
        self._persistent_failures.clear()

    def reset(self) -> None:
        self._customers.clear()
        self._subscriptions.clear()
        self._charges.clear()
        self._payment_methods.clear()
        self._default_payment_methods.clear()
        self.clear_failures()
        self.call_counts.clear()
        self.idempotency_keys.clear()

    def sign_payload(self, raw_payload: bytes | str) -> str:
        secret = self.credentials.webhook_secret
        return SIGNATURE_PREFIX + compute_hmac_sha256(secret, as_bytes(raw_payload))

    def build_webhook(
        self,
        event_id: str,
        event_type: str,
        data: dict[str, Any],
    ) -> tuple[str, bytes]:
        """Return (signature, raw_payload) for a webhook this adapter will accept."""
        body = json.dumps(
            {
                "id": event_id,
                "type": event_type,
                "created_at": self.clock.now().isoformat(),
                "data": data,
            },
            sort_keys=True,
        ).encode()
        return self.sign_payload(body), body

    def put_subscription(self, subscription: Subscription) -> None:
        """Replace back-end state directly, as if changed out of band."""
        self._subscriptions[subscription.id] = subscription

    # =========================================================================
    # Helpers
    # =========================================================================

    def _generate_id(self, prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex}"

    async def _begin(self, operation: str, **context: Any) -> None:
        self.call_counts[operation] += 1
        self.get_logger().debug(
            "Fake processor operation",
            extra={"operation": operation, "processor": "fake", **context},
        )
        if self.credentials.simulate_delays:
            await asyncio.sleep(self.credentials.delay_seconds)
        if self._failures.get(operation):
            raise self._failures[operation].popleft()
        if operation in self._persistent_failures:
            raise self._persistent_failures[operation]
        rate = self.credentials.failure_rate
        if rate > 0 and self._random.random() < rate:
            raise NetworkFailure(
                f"Simulated failure: {operation} failed",
                error_code="simulated_failure",
            )

    def _customer(self, customer_id: str) -> Customer:
        customer = self._customers.get(customer_id)
        if customer is None:
            raise CustomerNotFound(
                "Customer not found", details={"customer_id": customer_id}
            )
        return customer

    def _subscription(self, subscription_id: str) -> Subscription:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(
                "Subscription not found",
                details={"subscription_id": subscription_id},
            )
        return subscription

    def _set_default(self, customer_id: str, payment_method_id: str | None) -> None:
        methods = [
            pm for pm in self._payment_methods.values() if pm.customer_id == customer_id
        ]
        for method in enforce_single_default(methods, payment_method_id):
            self._payment_methods[method.id] = method
        if payment_method_id is None:
            self._default_payment_methods.pop(customer_id, None)
        else:
            self._default_payment_methods[customer_id] = payment_method_id

    def _save_subscription(self, subscription: Subscription) -> Subscription:
        subscription = replace(subscription, source_timestamp=self.clock.now())
        self._subscriptions[subscription.id] = subscription
        return subscription

    # =========================================================================
    # Customers
    # =========================================================================

    async def create_customer(
        self,
        email: str,
        name: str | None = None,
        phone: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Customer:
        await self._begin("create_customer")
        if not email or "@" not in email:
            raise ValidationFailure(
                "Invalid email address", details={"field": "email", "value": email}
            )
        customer_id = self._generate_id("fake_cus")
        now = self.clock.now()
        customer = Customer(
            id=customer_id,
            email=email,
            name=name,
            phone=phone,
            processor=ProcessorType.FAKE,
            processor_customer_id=customer_id,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self._customers[customer_id] = customer
        return customer

    async def get_customer(self, customer_id: str) -> Customer:
        await self._begin("get_customer", customer_id=customer_id)
        return self._customer(customer_id)

    async def update_customer(
        self,
        customer_id: str,
        email: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Customer:
        await self._begin("update_customer", customer_id=customer_id)
        customer = self._customer(customer_id)
        if email is not None and "@" not in email:
            raise ValidationFailure(
                "Invalid email address", details={"field": "email", "value": email}
            )
        changes: dict[str, Any] = {"updated_at": self.clock.now()}
        if email is not None:
            changes["email"] = email
        if name is not None:
            changes["name"] = name
        if phone is not None:
            changes["phone"] = phone
        if metadata is not None:
            changes["metadata"] = {**customer.metadata, **metadata}
        customer = customer.with_changes(**changes)
        self._customers[customer_id] = customer
        return customer

    # =========================================================================
    # Payment Methods
    # =========================================================================

    async def add_payment_method(
        self,
        customer_id: str,
        token: str,
        set_as_default: bool = False,
    ) -> PaymentMethod:
        await self._begin("add_payment_method", customer_id=customer_id)
        self._customer(customer_id)
        if not token:
            raise PaymentMethodFailure(
                "Payment method token cannot be empty", error_code="INVALID_TOKEN"
            )
        is_first = not any(
            pm.customer_id == customer_id for pm in self._payment_methods.values()
        )
        method = PaymentMethod(
            id=self._generate_id("fake_pm"),
            customer_id=customer_id,
            type=PaymentMethodType.CARD,
            last4=str(self._random.randint(1000, 9999)),
            brand=self._random.choice(CARD_BRANDS),
            expiry_month=self._random.randint(1, 12),
            expiry_year=self.clock.now().year + self._random.randint(1, 5),
            metadata={"token": token},
        )
        self._payment_methods[method.id] = method
        if set_as_default or is_first:
            self._set_default(customer_id, method.id)
        return self._payment_methods[method.id]

    async def set_default_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> PaymentMethod:
        await self._begin("set_default_payment_method", customer_id=customer_id)
        self._customer(customer_id)
        method = self._payment_methods.get(payment_method_id)
        if method is None or method.customer_id != customer_id:
            raise PaymentMethodFailure(
                "Payment method not found",
                details={"payment_method_id": payment_method_id},
            )
        self._set_default(customer_id, payment_method_id)
        return self._payment_methods[payment_method_id]

    async def remove_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> None:
        await self._begin("remove_payment_method", customer_id=customer_id)
        method = self._payment_methods.get(payment_method_id)
        if method is None or method.customer_id != customer_id:
            raise PaymentMethodFailure(
                "Payment method not found",
                details={"payment_method_id": payment_method_id},
            )
        others = [
            pm
            for pm in self._payment_methods.values()
            if pm.customer_id == customer_id and pm.id != payment_method_id
        ]
        has_live_subscription = any(
            sub.customer_id == customer_id
            and sub.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
            for sub in self._subscriptions.values()
        )
        if method.is_default and has_live_subscription and not others:
            raise PaymentMethodFailure(
                "Cannot remove the only payment method with active subscriptions",
                error_code="LAST_PAYMENT_METHOD",
            )
        del self._payment_methods[payment_method_id]
        if self._default_payment_methods.get(customer_id) == payment_method_id:
            self._set_default(customer_id, others[0].id if others else None)

    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethod]:
        await self._begin("list_payment_methods", customer_id=customer_id)
        self._customer(customer_id)
        return [
            pm for pm in self._payment_methods.values() if pm.customer_id == customer_id
        ]

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str | None = None,
        trial_days: int | None = None,
        quantity: int = 1,
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Subscription:
        await self._begin("create_subscription", customer_id=customer_id)
        if idempotency_key:
            self.idempotency_keys.append(idempotency_key)
        self._customer(customer_id)
        has_trial = bool(trial_days and trial_days > 0)
        if payment_method_id is not None:
            method = self._payment_methods.get(payment_method_id)
            if method is None or method.customer_id != customer_id:
                raise PaymentMethodFailure(
                    "Payment method not found",
                    details={"payment_method_id": payment_method_id},
                )
        elif not has_trial and customer_id not in self._default_payment_methods:
            raise PaymentMethodFailure(
                "A payment method is required for subscriptions without a trial",
                error_code="PAYMENT_METHOD_REQUIRED",
            )

        now = self.clock.now()
        subscription_id = self._generate_id("fake_sub")
        if has_trial:
            trial_end = now + timedelta(days=trial_days)
            status = SubscriptionStatus.TRIALING
            period_end = trial_end
        else:
            trial_end = None
            status = SubscriptionStatus.ACTIVE
            period_end = now + BILLING_PERIOD

        return self._save_subscription(
            Subscription(
                id=subscription_id,
                customer_id=customer_id,
                status=status,
                price_id=price_id,
                product_id=fake_product_id(price_id),
                current_period_start=now,
                current_period_end=period_end,
                trial_start=now if has_trial else None,
                trial_end=trial_end,
                quantity=quantity,
                processor=ProcessorType.FAKE,
                processor_subscription_id=subscription_id,
                metadata=dict(metadata or {}),
            )
        )

    async def get_subscription(self, subscription_id: str) -> Subscription:
        await self._begin("get_subscription", subscription_id=subscription_id)
        return self._subscription(subscription_id)

    async def list_subscriptions(self, customer_id: str) -> list[Subscription]:
        await self._begin("list_subscriptions", customer_id=customer_id)
        self._customer(customer_id)
        return [
            sub for sub in self._subscriptions.values() if sub.customer_id == customer_id
        ]

    async def change_plan(
        self,
        subscription_id: str,
        new_price_id: str,
        prorate: bool = True,
    ) -> Subscription:
        await self._begin("change_plan", subscription_id=subscription_id)
        subscription = self._subscription(subscription_id)
        if subscription.is_canceled:
            raise ProcessorDeclined(
                "Cannot change the plan of a canceled subscription",
                processor_code="subscription_canceled",
            )
        return self._save_subscription(
            replace(
                subscription,
                price_id=new_price_id,
                product_id=fake_product_id(new_price_id),
                metadata={**subscription.metadata, "prorated": str(prorate).lower()},
            )
        )

    async def cancel_subscription(
        self, subscription_id: str, immediate: bool = False
    ) -> Subscription:
        await self._begin("cancel_subscription", subscription_id=subscription_id)
        subscription = self._subscription(subscription_id)
        now = self.clock.now()
        if immediate:
            updated = replace(
                subscription,
                status=SubscriptionStatus.CANCELED,
                canceled_at=now,
                cancel_at_period_end=False,
            )
        else:
            updated = replace(subscription, canceled_at=now, cancel_at_period_end=True)
        return self._save_subscription(updated)

    async def resume_subscription(self, subscription_id: str) -> Subscription:
        await self._begin("resume_subscription", subscription_id=subscription_id)
        subscription = self._subscription(subscription_id)
        if not subscription.cancel_at_period_end:
            raise ProcessorDeclined(
                "Subscription is not scheduled for cancellation",
                processor_code="not_scheduled_for_cancellation",
            )
        return self._save_subscription(
            replace(subscription, canceled_at=None, cancel_at_period_end=False)
        )

    async def pause_subscription(self, subscription_id: str) -> Subscription:
        await self._begin("pause_subscription", subscription_id=subscription_id)
        subscription = self._subscription(subscription_id)
        return self._save_subscription(
            replace(subscription, status=SubscriptionStatus.PAUSED)
        )

    # =========================================================================
    # Charges
    # =========================================================================

    async def create_charge(
        self,
        customer_id: str,
        amount: int,
        currency: str,
        payment_method_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Charge:
        await self._begin("create_charge", customer_id=customer_id, amount=amount)
        if idempotency_key:
            self.idempotency_keys.append(idempotency_key)
        self._customer(customer_id)
        method_id = payment_method_id or self._default_payment_methods.get(customer_id)
        if method_id is None:
            raise PaymentMethodFailure(
                "Customer has no default payment method",
                error_code="NO_DEFAULT_PAYMENT_METHOD",
            )
        if method_id not in self._payment_methods:
            raise PaymentMethodFailure(
                "Payment method not found", details={"payment_method_id": method_id}
            )
        charge_id = self._generate_id("fake_ch")
        charge = Charge(
            id=charge_id,
            customer_id=customer_id,
            amount=amount,
            currency=currency.lower(),
            status=ChargeStatus.SUCCEEDED,
            description=description,
            receipt_url=f"https://fake-processor.example.com/receipt/{charge_id}",
            refunded_amount=0,
            processor=ProcessorType.FAKE,
            processor_charge_id=charge_id,
            created_at=self.clock.now(),
            metadata=dict(metadata or {}),
        )
        self._charges[charge_id] = charge
        return charge

    async def list_charges(self, customer_id: str, limit: int = 20) -> list[Charge]:
        await self._begin("list_charges", customer_id=customer_id)
        self._customer(customer_id)
        charges = sorted(
            (c for c in self._charges.values() if c.customer_id == customer_id),
            key=lambda c: c.created_at,
            reverse=True,
        )
        return charges[:limit]

    async def refund_charge(
        self,
        charge_id: str,
        amount: int | None = None,
        reason: str | None = None,
    ) -> Charge:
        await self._begin("refund_charge", charge_id=charge_id)
        charge = self._charges.get(charge_id)
        if charge is None:
            raise ProcessorDeclined(
                "Charge not found",
                processor_code="charge_not_found",
                details={"charge_id": charge_id},
            )
        refund_amount = charge.amount if amount is None else amount
        if refund_amount <= 0 or (charge.refunded_amount or 0) + refund_amount > charge.amount:
            raise ProcessorDeclined(
                "Refund amount exceeds charge amount",
                processor_code="invalid_refund_amount",
            )
        charge = charge.with_refund(refund_amount)
        self._charges[charge_id] = charge
        return charge

    # =========================================================================
    # Webhooks & Lifecycle
    # =========================================================================

    async def handle_webhook(
        self, signature: str | None, raw_payload: bytes | str
    ) -> WebhookEvent:
        await self._begin("handle_webhook")
        body = as_bytes(raw_payload)
        if not signature or not signature.startswith(SIGNATURE_PREFIX):
            self._reject_webhook("Invalid webhook signature", "invalid_signature")
        if not signatures_match(self.sign_payload(body), signature):
            self._reject_webhook("Invalid webhook signature", "invalid_signature")
        try:
            payload = json.loads(body)
        except ValueError:
            self._reject_webhook("Malformed webhook payload", "malformed_payload")
        if not isinstance(payload, dict) or not payload.get("type"):
            self._reject_webhook("Missing webhook event type", "missing_event_type")
        if not payload.get("id"):
            self._reject_webhook("Missing webhook event id", "missing_event_id")
        return WebhookEvent(
            id=payload["id"],
            type=payload["type"],
            processor=ProcessorType.FAKE,
            data=payload.get("data") or {},
            created_at=parse_datetime(payload.get("created_at")) or self.clock.now(),
            verified=True,
        )

    async def validate_configuration(self) -> None:
        await self._begin("validate_configuration")
        if not self.credentials.api_key.startswith("fake_"):
            raise InvalidConfiguration(
                "Fake processor rejected the API key",
                details={"field": "api_key"},
            )

    async def aclose(self) -> None:
        self.closed = True
