"""
Payment orchestration facade.

This module provides PaymentService, the single entry point the rest of
the application uses for billing, and PaymentServiceHolder, which owns the
current facade across processor switches.

Every write operation runs in the same order:
    1. Validate inputs (ValidationFailure, nothing else runs)
    2. Call the adapter through the RetryController
    3. Write the result through the CacheLayer
    4. Return the canonical domain object

Reads go through CacheLayer.get_or_fetch, so a read inside the freshness
window never reaches the back-end.

Usage:
    from payments.services import PaymentServiceHolder

    holder = PaymentServiceHolder(ProcessorConfiguration.from_settings())
    service = await holder.get()

    await service.initialize("ada@example.com", name="Ada")
    subscription = await service.subscribe("price_pro", trial_days=14)
    if await service.is_on_trial():
        ...

    # Switch processors; the cache is cleared and the customer re-created
    service = await holder.reinitialize(new_config)
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from functools import partial
from typing import TYPE_CHECKING

from django.conf import settings

from payments.adapters import ADAPTER_FACTORIES, AdapterRegistry, FakeAdapter
from payments.cache import CacheKind, CacheLayer
from payments.clock import SystemClock
from payments.exceptions import NotInitialized, UnsupportedOperation, ValidationFailure
from payments.models import (
    Charge,
    Customer,
    PaymentMethod,
    ProcessorType,
    Subscription,
    SubscriptionStatus,
    deserialize,
    deserialize_list,
    enforce_single_default,
    serialize,
)
from payments.retry import RetryController, RetryPolicy
from payments.storage import DjangoCacheStorage
from payments.webhooks import WebhookReconciliationEngine

if TYPE_CHECKING:
    from typing import Any, Awaitable, Callable, TypeVar

    from payments.adapters.base import ProcessorAdapter
    from payments.clock import Clock
    from payments.config import ProcessorConfiguration
    from payments.storage import Storage
    from payments.webhooks import WebhookResult

    T = TypeVar("T")

logger = logging.getLogger(__name__)

CURRENT_CUSTOMER_KEY = "current"
ANY_PRODUCT_KEY = "any"
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CURRENCY_PATTERN = re.compile(r"^[A-Za-z]{3}$")


# Entries keyed by customer id, dropped when a service switches customers
CUSTOMER_SCOPED_KINDS = (
    CacheKind.SUBSCRIPTIONS,
    CacheKind.PAYMENT_METHODS,
    CacheKind.DEFAULT_PAYMENT_METHOD,
    CacheKind.CHARGES,
)


def _identity(value: str) -> str:
    return value


def active_key(customer_id: str, product_id: str | None = None) -> str:
    """Cache key of a customer's access-granting subscriptions."""
    return f"{customer_id}:{product_id or ANY_PRODUCT_KEY}"


# =============================================================================
# Payment Service
# =============================================================================


class PaymentService:
    """
    Orchestrates one adapter, the cache layer, retries and webhooks.

    A PaymentService is bound to a single adapter for its lifetime. Swapping
    processors builds a new service; the old one is marked ``retired`` and
    drops any cache write it would still make. Its reads go straight to its
    own back-end, bypassing the shared cache.

    Args:
        adapter: Adapter for the configured back-end
        cache: Cache layer shared with the webhook engine
        storage: Durable store for webhook idempotency and failure counters
        clock: Time source for trial, grace-period and freshness checks
        retry: Retry controller (default: built from settings)
        webhooks: Webhook engine (default: built over the same cache)
        grace_days: Past-due grace window in days
        validated: Skip the first-use validate_configuration() round trip
    """

    def __init__(
        self,
        adapter: ProcessorAdapter,
        cache: CacheLayer,
        storage: Storage,
        clock: Clock,
        retry: RetryController | None = None,
        webhooks: WebhookReconciliationEngine | None = None,
        grace_days: int | None = None,
        validated: bool = False,
    ):
        self.adapter = adapter
        self.cache = cache
        self.storage = storage
        self.clock = clock
        self.retry = retry or RetryController(
            RetryPolicy.from_settings(timeout=adapter.config.timeout)
        )
        self.webhooks = webhooks or WebhookReconciliationEngine(
            adapter,
            cache,
            storage,
            clock,
            failure_threshold=settings.PAYMENTS_PAYMENT_FAILURE_THRESHOLD,
        )
        self.grace_days = (
            grace_days if grace_days is not None else settings.PAYMENTS_PAST_DUE_GRACE_DAYS
        )
        self.retired = False
        self._validated = validated
        self._customer_id: str | None = None
        self._profile: tuple[str, str | None, str | None] | None = None

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @property
    def processor(self) -> ProcessorType:
        return self.adapter.processor_type

    @property
    def is_initialized(self) -> bool:
        return self._customer_id is not None

    @property
    def customer_id(self) -> str:
        """
        Back-end id of the current customer.

        Raises:
            NotInitialized: initialize() has not completed
        """
        if self._customer_id is None:
            raise NotInitialized(
                "Payment service used before initialize()",
                details={"processor": str(self.processor)},
            )
        return self._customer_id

    @property
    def profile(self) -> tuple[str, str | None, str | None] | None:
        """(email, name, phone) the service was initialized with."""
        return self._profile

    # =========================================================================
    # Plumbing
    # =========================================================================

    async def _call(
        self,
        operation: str,
        fn: Callable[..., Awaitable[T]],
        idempotent_key_seed: str | None = None,
    ) -> T:
        start_time = time.monotonic()
        result = await self.retry.call(
            operation, fn, idempotent_key_seed=idempotent_key_seed
        )
        if self.adapter.config.logging_enabled:
            self.get_logger().debug(
                f"{operation} completed",
                extra={
                    "operation": operation,
                    "processor": str(self.processor),
                    "duration_ms": (time.monotonic() - start_time) * 1000,
                },
            )
        return result

    async def _write(
        self,
        kind: str,
        key: str,
        value: Any,
        serialize_fn: Callable[[Any], str] = serialize,
    ) -> bool:
        if self.retired:
            self.get_logger().info(
                "Dropping cache write from retired payment service",
                extra={"cache_kind": kind, "processor": str(self.processor)},
            )
            return False
        return await self.cache.put(kind, key, value, serialize_fn)

    async def _invalidate(self, kind: str, key: str | None = None) -> None:
        if self.retired:
            return
        if key is None:
            await self.cache.invalidate_kind(kind)
        else:
            await self.cache.invalidate(kind, key)

    async def _ensure_validated(self) -> None:
        if self._validated:
            return
        await self._call("validate_configuration", self.adapter.validate_configuration)
        self._validated = True

    # =========================================================================
    # Customer
    # =========================================================================

    async def initialize(
        self, email: str, name: str | None = None, phone: str | None = None
    ) -> Customer:
        """
        Bind the service to a customer, creating one at the back-end if needed.

        The configuration is validated against the back-end first, so wrong
        credentials fail here before anything is created. A customer id
        already cached for the same email is reused.

        Raises:
            ValidationFailure: Malformed email
            InvalidConfiguration: Back-end rejected the credentials
        """
        email = (email or "").strip()
        if not EMAIL_PATTERN.match(email):
            raise ValidationFailure(
                "A valid email address is required", details={"field": "email"}
            )

        await self._ensure_validated()

        customer = await self._cached_customer(email)
        if customer is None:
            customer = await self._call(
                "create_customer",
                lambda: self.adapter.create_customer(email, name=name, phone=phone),
            )
            await self._write(CacheKind.CUSTOMER, customer.id, customer)
            await self._write(
                CacheKind.CUSTOMER_ID, CURRENT_CUSTOMER_KEY, customer.id, _identity
            )
            self.get_logger().info(
                "Payment customer created",
                extra={"customer_id": customer.id, "processor": str(self.processor)},
            )

        previous_id = self._customer_id
        if previous_id is not None and previous_id != customer.id:
            await self._forget_customer(previous_id)
            self.get_logger().info(
                "Payment service switched customers",
                extra={
                    "previous_customer_id": previous_id,
                    "customer_id": customer.id,
                    "processor": str(self.processor),
                },
            )

        self._customer_id = customer.id
        self._profile = (email, name, phone)
        return customer

    async def _forget_customer(self, customer_id: str) -> None:
        for kind in CUSTOMER_SCOPED_KINDS:
            await self._invalidate(kind, customer_id)
        await self._invalidate(CacheKind.ACTIVE_SUBSCRIPTIONS)

    async def _cached_customer(self, email: str) -> Customer | None:
        pointer = await self.cache.read(
            CacheKind.CUSTOMER_ID, CURRENT_CUSTOMER_KEY, _identity
        )
        if pointer is None:
            return None
        cached = await self.cache.read(
            CacheKind.CUSTOMER, pointer[0], partial(deserialize, Customer)
        )
        if cached is None or cached[0].email.lower() != email.lower():
            return None
        if cached[0].processor != self.processor:
            return None
        return cached[0]

    async def get_current_customer(self, force_refresh: bool = False) -> Customer:
        customer_id = self.customer_id
        return await self.cache.get_or_fetch(
            CacheKind.CUSTOMER,
            customer_id,
            lambda: self._call(
                "get_customer", lambda: self.adapter.get_customer(customer_id)
            ),
            serialize,
            partial(deserialize, Customer),
            force_refresh=force_refresh,
            write=not self.retired,
        )

    async def refresh_customer(self) -> Customer:
        return await self.get_current_customer(force_refresh=True)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def subscribe(
        self,
        price_id: str,
        payment_method_token: str | None = None,
        trial_days: int | None = None,
        quantity: int = 1,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        """
        Start a subscription for the current customer.

        A payment method token, when given, is attached as the customer's
        default before the subscription is created.

        Raises:
            ValidationFailure: Empty price id, quantity < 1 or negative trial
            UnsupportedOperation: Trial requested on a back-end without trials
        """
        customer_id = self.customer_id
        if not price_id:
            raise ValidationFailure("price_id is required", details={"field": "price_id"})
        if quantity < 1:
            raise ValidationFailure(
                "quantity must be at least 1", details={"field": "quantity"}
            )
        if trial_days is not None and trial_days < 0:
            raise ValidationFailure(
                "trial_days must not be negative", details={"field": "trial_days"}
            )
        if trial_days and not self.adapter.supports_trial_periods:
            raise UnsupportedOperation(
                f"{self.adapter.display_name} does not support trial periods",
                details={"operation": "subscribe", "processor": str(self.processor)},
            )

        payment_method_id = None
        if payment_method_token:
            method = await self._attach_payment_method(payment_method_token, True)
            payment_method_id = method.id

        subscription = await self._call(
            "create_subscription",
            lambda key: self.adapter.create_subscription(
                customer_id,
                price_id,
                payment_method_id=payment_method_id,
                trial_days=trial_days,
                quantity=quantity,
                metadata=metadata,
                idempotency_key=key,
            ),
            idempotent_key_seed=customer_id,
        )
        await self._remember_subscription(subscription)

        self.get_logger().info(
            "Subscription created",
            extra={
                "subscription_id": subscription.id,
                "customer_id": customer_id,
                "price_id": price_id,
                "status": str(subscription.status),
                "trial_days": trial_days,
            },
        )
        return subscription

    async def change_plan(
        self, subscription_id: str, new_price_id: str, prorate: bool = True
    ) -> Subscription:
        self._require_subscription_id(subscription_id)
        if not new_price_id:
            raise ValidationFailure(
                "new_price_id is required", details={"field": "new_price_id"}
            )
        if not self.adapter.supports_plan_swapping:
            raise UnsupportedOperation(
                f"{self.adapter.display_name} does not support plan changes",
                details={"operation": "change_plan", "processor": str(self.processor)},
            )
        subscription = await self._call(
            "change_plan",
            lambda: self.adapter.change_plan(subscription_id, new_price_id, prorate=prorate),
        )
        await self._remember_subscription(subscription)
        return subscription

    async def cancel_subscription(
        self, subscription_id: str, immediate: bool = False
    ) -> Subscription:
        """Cancel now, or at the end of the paid period when immediate is False."""
        self._require_subscription_id(subscription_id)
        subscription = await self._call(
            "cancel_subscription",
            lambda: self.adapter.cancel_subscription(subscription_id, immediate=immediate),
        )
        await self._remember_subscription(subscription)
        self.get_logger().info(
            "Subscription canceled",
            extra={
                "subscription_id": subscription_id,
                "immediate": immediate,
                "status": str(subscription.status),
            },
        )
        return subscription

    async def resume_subscription(self, subscription_id: str) -> Subscription:
        self._require_subscription_id(subscription_id)
        subscription = await self._call(
            "resume_subscription",
            lambda: self.adapter.resume_subscription(subscription_id),
        )
        await self._remember_subscription(subscription)
        return subscription

    async def pause_subscription(self, subscription_id: str) -> Subscription:
        self._require_subscription_id(subscription_id)
        subscription = await self._call(
            "pause_subscription",
            lambda: self.adapter.pause_subscription(subscription_id),
        )
        await self._remember_subscription(subscription)
        return subscription

    async def get_subscriptions(self, force_refresh: bool = False) -> list[Subscription]:
        customer_id = self.customer_id

        async def fetch() -> list[Subscription]:
            subscriptions = await self._call(
                "list_subscriptions",
                lambda: self.adapter.list_subscriptions(customer_id),
            )
            if not self.retired:
                for subscription in subscriptions:
                    await self.cache.put_subscription(subscription)
            return subscriptions

        return await self.cache.get_or_fetch(
            CacheKind.SUBSCRIPTIONS,
            customer_id,
            fetch,
            serialize,
            partial(deserialize_list, Subscription),
            force_refresh=force_refresh,
            write=not self.retired,
        )

    async def get_subscription(
        self, subscription_id: str, force_refresh: bool = False
    ) -> Subscription:
        self._require_subscription_id(subscription_id)
        if not force_refresh and not self.retired:
            cached = await self.cache.read(
                CacheKind.SUBSCRIPTION,
                subscription_id,
                partial(deserialize, Subscription),
            )
            if cached is not None and self.cache.is_fresh(cached[1]):
                return cached[0]
        subscription = await self._call(
            "get_subscription",
            lambda: self.adapter.get_subscription(subscription_id),
        )
        if not self.retired:
            await self.cache.put_subscription(subscription)
        return subscription

    async def refresh_subscriptions(self) -> list[Subscription]:
        subscriptions = await self.get_subscriptions(force_refresh=True)
        await self._invalidate(CacheKind.ACTIVE_SUBSCRIPTIONS)
        return subscriptions

    async def get_active_subscription(
        self, product_id: str | None = None, force_refresh: bool = False
    ) -> Subscription | None:
        """
        Subscription currently granting access, optionally for one product.

        Active and trialing subscriptions qualify, as do past-due ones still
        inside the grace window.
        """
        customer_id = self.customer_id

        async def fetch() -> list[Subscription]:
            subscriptions = await self.get_subscriptions(force_refresh=force_refresh)
            return [
                subscription
                for subscription in subscriptions
                if self._grants_access(subscription)
                and (product_id is None or subscription.product_id == product_id)
            ]

        active = await self.cache.get_or_fetch(
            CacheKind.ACTIVE_SUBSCRIPTIONS,
            active_key(customer_id, product_id),
            fetch,
            serialize,
            partial(deserialize_list, Subscription),
            force_refresh=force_refresh,
            write=not self.retired,
        )
        return active[0] if active else None

    async def has_active_subscription(self, product_id: str | None = None) -> bool:
        return await self.get_active_subscription(product_id) is not None

    async def is_on_trial(self, product_id: str | None = None) -> bool:
        subscription = await self.get_active_subscription(product_id)
        return subscription is not None and subscription.is_on_trial(self.clock.now())

    async def days_until_due(self, subscription_id: str) -> int | None:
        subscription = await self.get_subscription(subscription_id)
        return subscription.days_until_due(self.clock.now(), self.grace_days)

    def _grants_access(self, subscription: Subscription) -> bool:
        if subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            return True
        if subscription.status == SubscriptionStatus.PAST_DUE:
            remaining = subscription.days_until_due(self.clock.now(), self.grace_days)
            return remaining is not None and remaining >= 0
        return False

    async def _remember_subscription(self, subscription: Subscription) -> None:
        """Write a changed subscription through to its entry and the customer's list."""
        if self.retired:
            return
        await self.cache.put_subscription(subscription)

        cached = await self.cache.read(
            CacheKind.SUBSCRIPTIONS,
            subscription.customer_id,
            partial(deserialize_list, Subscription),
        )
        if cached is not None:
            others = [item for item in cached[0] if item.id != subscription.id]
            await self._write(
                CacheKind.SUBSCRIPTIONS, subscription.customer_id, [*others, subscription]
            )
        await self._invalidate(CacheKind.ACTIVE_SUBSCRIPTIONS)

    @staticmethod
    def _require_subscription_id(subscription_id: str) -> None:
        if not subscription_id:
            raise ValidationFailure(
                "subscription_id is required", details={"field": "subscription_id"}
            )

    # =========================================================================
    # Payment Methods
    # =========================================================================

    async def get_payment_methods(self, force_refresh: bool = False) -> list[PaymentMethod]:
        customer_id = self.customer_id
        return await self.cache.get_or_fetch(
            CacheKind.PAYMENT_METHODS,
            customer_id,
            lambda: self._call(
                "list_payment_methods",
                lambda: self.adapter.list_payment_methods(customer_id),
            ),
            serialize,
            partial(deserialize_list, PaymentMethod),
            force_refresh=force_refresh,
            write=not self.retired,
        )

    async def get_default_payment_method(
        self, force_refresh: bool = False
    ) -> PaymentMethod | None:
        customer_id = self.customer_id
        if not force_refresh and not self.retired:
            cached = await self.cache.read(
                CacheKind.DEFAULT_PAYMENT_METHOD,
                customer_id,
                partial(deserialize, PaymentMethod),
            )
            if cached is not None and self.cache.is_fresh(cached[1]):
                return cached[0]

        methods = await self.get_payment_methods(force_refresh=force_refresh)
        default = next((method for method in methods if method.is_default), None)
        if default is not None:
            await self._write(CacheKind.DEFAULT_PAYMENT_METHOD, customer_id, default)
        return default

    async def set_default_payment_method(self, token_or_id: str) -> PaymentMethod:
        """
        Make a stored method the default, or attach a new token as default.

        An argument matching the id of a stored method selects it; anything
        else is treated as a fresh token from the client SDK.
        """
        if not token_or_id:
            raise ValidationFailure(
                "A payment method id or token is required",
                details={"field": "token_or_id"},
            )
        customer_id = self.customer_id
        methods = await self.get_payment_methods()
        if any(method.id == token_or_id for method in methods):
            method = await self._call(
                "set_default_payment_method",
                lambda: self.adapter.set_default_payment_method(customer_id, token_or_id),
            )
            await self._remember_payment_method(method, make_default=True)
            return method
        return await self._attach_payment_method(token_or_id, set_as_default=True)

    async def add_payment_method(
        self, token: str, set_as_default: bool = False
    ) -> PaymentMethod:
        if not token:
            raise ValidationFailure(
                "A payment method token is required", details={"field": "token"}
            )
        return await self._attach_payment_method(token, set_as_default)

    async def remove_payment_method(self, payment_method_id: str) -> None:
        if not payment_method_id:
            raise ValidationFailure(
                "payment_method_id is required", details={"field": "payment_method_id"}
            )
        customer_id = self.customer_id
        await self._call(
            "remove_payment_method",
            lambda: self.adapter.remove_payment_method(customer_id, payment_method_id),
        )

        cached = await self.cache.read(
            CacheKind.PAYMENT_METHODS, customer_id, partial(deserialize_list, PaymentMethod)
        )
        if cached is not None:
            await self._write(
                CacheKind.PAYMENT_METHODS,
                customer_id,
                [method for method in cached[0] if method.id != payment_method_id],
            )
        await self._invalidate(CacheKind.DEFAULT_PAYMENT_METHOD, customer_id)

    async def _attach_payment_method(
        self, token: str, set_as_default: bool
    ) -> PaymentMethod:
        customer_id = self.customer_id
        method = await self._call(
            "add_payment_method",
            lambda: self.adapter.add_payment_method(
                customer_id, token, set_as_default=set_as_default
            ),
        )
        await self._remember_payment_method(
            method, make_default=set_as_default or method.is_default
        )
        return method

    async def _remember_payment_method(
        self, method: PaymentMethod, make_default: bool
    ) -> None:
        customer_id = method.customer_id
        cached = await self.cache.read(
            CacheKind.PAYMENT_METHODS, customer_id, partial(deserialize_list, PaymentMethod)
        )
        if cached is None:
            await self._invalidate(CacheKind.PAYMENT_METHODS, customer_id)
        else:
            methods = [item for item in cached[0] if item.id != method.id] + [method]
            if make_default:
                methods = enforce_single_default(methods, method.id)
            await self._write(CacheKind.PAYMENT_METHODS, customer_id, methods)

        if make_default:
            await self._write(CacheKind.DEFAULT_PAYMENT_METHOD, customer_id, method)
        else:
            await self._invalidate(CacheKind.DEFAULT_PAYMENT_METHOD, customer_id)

    # =========================================================================
    # Charges
    # =========================================================================

    async def make_payment(
        self,
        amount: int,
        currency: str = "usd",
        description: str | None = None,
        payment_method_token: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Charge:
        """
        Charge the current customer once.

        Args:
            amount: Amount in minor units (cents)
            currency: ISO 4217 code
            description: Statement description
            payment_method_token: Attach and charge this token instead of
                the customer's default

        Raises:
            ValidationFailure: Non-positive amount or malformed currency
        """
        customer_id = self.customer_id
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationFailure(
                "amount must be a positive integer of minor units",
                details={"field": "amount", "value": amount},
            )
        if not CURRENCY_PATTERN.match(currency or ""):
            raise ValidationFailure(
                "currency must be a three-letter ISO code",
                details={"field": "currency", "value": currency},
            )
        currency = currency.lower()

        payment_method_id = None
        if payment_method_token:
            method = await self._attach_payment_method(payment_method_token, False)
            payment_method_id = method.id

        charge = await self._call(
            "create_charge",
            lambda key: self.adapter.create_charge(
                customer_id,
                amount,
                currency,
                payment_method_id=payment_method_id,
                description=description,
                metadata=metadata,
                idempotency_key=key,
            ),
            idempotent_key_seed=customer_id,
        )
        await self._remember_charge(charge)

        self.get_logger().info(
            "Payment created",
            extra={
                "charge_id": charge.id,
                "customer_id": customer_id,
                "amount": amount,
                "currency": currency,
                "status": str(charge.status),
            },
        )
        return charge

    async def refund_payment(
        self, charge_id: str, amount: int | None = None, reason: str | None = None
    ) -> Charge:
        if not charge_id:
            raise ValidationFailure("charge_id is required", details={"field": "charge_id"})
        if amount is not None and amount <= 0:
            raise ValidationFailure(
                "Refund amount must be positive", details={"field": "amount"}
            )
        charge = await self._call(
            "refund_charge",
            lambda: self.adapter.refund_charge(charge_id, amount=amount, reason=reason),
        )
        await self._remember_charge(charge)
        return charge

    async def get_payment_history(
        self, limit: int = 20, force_refresh: bool = False
    ) -> list[Charge]:
        customer_id = self.customer_id
        charges = await self.cache.get_or_fetch(
            CacheKind.CHARGES,
            customer_id,
            lambda: self._call(
                "list_charges",
                lambda: self.adapter.list_charges(customer_id, limit=limit),
            ),
            serialize,
            partial(deserialize_list, Charge),
            force_refresh=force_refresh,
            write=not self.retired,
        )
        return charges[:limit]

    async def _remember_charge(self, charge: Charge) -> None:
        cached = await self.cache.read(
            CacheKind.CHARGES, charge.customer_id, partial(deserialize_list, Charge)
        )
        if cached is None:
            return
        others = [item for item in cached[0] if item.id != charge.id]
        await self._write(CacheKind.CHARGES, charge.customer_id, [charge, *others])

    # =========================================================================
    # Webhooks & Cache
    # =========================================================================

    async def handle_webhook(
        self, signature: str | None, raw_payload: bytes | str
    ) -> WebhookResult:
        """
        Verify and apply one webhook delivery.

        Raises:
            WebhookVerificationFailure: Signature missing or invalid
        """
        return await self.webhooks.process(signature, raw_payload)

    async def payment_failure_count(self, subscription_id: str) -> int:
        return await self.webhooks.failure_count(subscription_id)

    async def exceeds_failure_threshold(self, subscription_id: str) -> bool:
        return await self.webhooks.exceeds_failure_threshold(subscription_id)

    async def clear_cache(self) -> None:
        """Drop every cached entity. The service stays bound to its customer."""
        await self.cache.invalidate_all()
        if self._customer_id is not None:
            await self._write(
                CacheKind.CUSTOMER_ID, CURRENT_CUSTOMER_KEY, self._customer_id, _identity
            )


# =============================================================================
# Wiring
# =============================================================================


def default_factories(clock: Clock) -> dict[ProcessorType, Callable[..., ProcessorAdapter]]:
    """ADAPTER_FACTORIES with the fake back-end bound to clock."""
    factories: dict[ProcessorType, Callable[..., ProcessorAdapter]] = dict(ADAPTER_FACTORIES)
    factories[ProcessorType.FAKE] = partial(FakeAdapter, clock=clock)
    return factories


def build_payment_service(
    config: ProcessorConfiguration,
    storage: Storage | None = None,
    clock: Clock | None = None,
    *,
    registry: AdapterRegistry | None = None,
    cache: CacheLayer | None = None,
    retry: RetryController | None = None,
    validated: bool = False,
) -> PaymentService:
    """
    Wire a PaymentService for config.

    Args:
        config: Processor configuration
        storage: Backing store (default: Django cache alias from settings)
        clock: Time source (default: SystemClock)
        registry: Adapter registry to draw the adapter from
        cache: Cache layer to share (default: new layer over storage)
        retry: Retry controller (default: built from settings)
        validated: The adapter already passed validate_configuration()
    """
    clock = clock or SystemClock()
    if storage is None:
        storage = cache.storage if cache is not None else DjangoCacheStorage(
            settings.PAYMENTS_CACHE_ALIAS
        )
    cache = cache or CacheLayer(
        storage, clock, ttl_seconds=settings.PAYMENTS_CACHE_TTL_SECONDS
    )
    if registry is None:
        registry = AdapterRegistry(default_factories(clock))
        registry.register_invalidation_callback(cache.invalidate_all)
    adapter = registry.get(config)
    return PaymentService(
        adapter, cache, storage, clock, retry=retry, validated=validated
    )


# =============================================================================
# Holder
# =============================================================================


class PaymentServiceHolder:
    """
    Owns the current PaymentService and swaps it on reconfiguration.

    get() waits while a swap is in progress. reinitialize() validates the
    new back-end, retires the old service, clears the cache and only then
    publishes the new service, so no caller ever sees a half-switched
    state.

    Args:
        config: Initial processor configuration
        storage: Backing store (default: Django cache alias from settings)
        clock: Time source (default: SystemClock)
        registry: Adapter registry (default: built with default_factories)
        retry_factory: Builds a RetryController per service
    """

    def __init__(
        self,
        config: ProcessorConfiguration,
        storage: Storage | None = None,
        clock: Clock | None = None,
        registry: AdapterRegistry | None = None,
        retry_factory: Callable[[], RetryController] | None = None,
    ):
        self.config = config
        self.clock = clock or SystemClock()
        self.storage = storage or DjangoCacheStorage(settings.PAYMENTS_CACHE_ALIAS)
        self.cache = CacheLayer(
            self.storage, self.clock, ttl_seconds=settings.PAYMENTS_CACHE_TTL_SECONDS
        )
        self.registry = registry or AdapterRegistry(default_factories(self.clock))
        self.registry.register_invalidation_callback(self._retire_and_clear)
        self._retry_factory = retry_factory
        self._service: PaymentService | None = None
        self._ready = asyncio.Event()
        self._ready.set()
        self._swap_lock = asyncio.Lock()

    async def get(self) -> PaymentService:
        await self._ready.wait()
        if self._service is None:
            self._service = self._build(self.config)
        return self._service

    async def reinitialize(self, config: ProcessorConfiguration) -> PaymentService:
        """
        Switch to config and return the new service.

        The previous customer profile is re-initialized against the new
        back-end. A configuration that fails validation leaves the current
        service in place.

        Raises:
            InvalidConfiguration: New credentials rejected
        """
        async with self._swap_lock:
            self._ready.clear()
            try:
                previous = self._service
                # Validates, swaps the adapter and fires _retire_and_clear
                await self.registry.reinitialize(config)
                service = self._build(config, validated=True)
                self.config = config
                self._service = service
            finally:
                self._ready.set()

            logger.info(
                "Payment service reinitialized",
                extra={
                    "previous_processor": str(previous.processor) if previous else None,
                    "processor": str(config.processor_kind),
                },
            )

        if previous is not None and previous.profile is not None:
            await service.initialize(*previous.profile)
        return service

    async def aclose(self) -> None:
        await self.registry.aclose()

    async def _retire_and_clear(self) -> None:
        if self._service is not None:
            self._service.retired = True
        await self.cache.invalidate_all()

    def _build(self, config: ProcessorConfiguration, validated: bool = False) -> PaymentService:
        return build_payment_service(
            config,
            self.storage,
            self.clock,
            registry=self.registry,
            cache=self.cache,
            retry=self._retry_factory() if self._retry_factory else None,
            validated=validated,
        )
