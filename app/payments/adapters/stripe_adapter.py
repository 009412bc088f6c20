"""
Stripe adapter.

Wraps the official stripe SDK. The SDK is synchronous, so every call runs
in a worker thread through asgiref's sync_to_async; the API key is passed
per call rather than set globally so several configurations can coexist in
one process.

Features:
- Automatic error translation to the payments error taxonomy
- Structured logging with timing metrics
- Idempotency keys forwarded on mutating calls
- Webhook verification through stripe.Webhook.construct_event

Error translation:
    stripe.CardError              → ProcessorDeclined (decline code)
    stripe.InvalidRequestError    → CustomerNotFound / SubscriptionNotFound /
                                    PaymentMethodFailure for missing
                                    resources, ValidationFailure otherwise
    stripe.AuthenticationError    → AuthenticationFailure
    stripe.RateLimitError         → NetworkFailure (rate_limited)
    stripe.APIConnectionError     → NetworkFailure (connection_error)
    stripe.APIError               → NetworkFailure (server_error)

Usage:
    adapter = StripeAdapter(config)
    customer = await adapter.create_customer("user@example.com")
    subscription = await adapter.create_subscription(
        customer.id,
        "price_123",
        payment_method_id="pm_123",
        idempotency_key="create_subscription:cus_123:1:a1b2c3d4",
    )
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import stripe
from asgiref.sync import sync_to_async

from payments.adapters.base import ProcessorAdapter, as_bytes
from payments.exceptions import (
    AuthenticationFailure,
    CustomerNotFound,
    InvalidConfiguration,
    NetworkFailure,
    PaymentMethodFailure,
    ProcessorDeclined,
    SubscriptionNotFound,
    ValidationFailure,
)
from payments.models import (
    BillingDetails,
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
    from typing import Any, Callable, NoReturn

SUBSCRIPTION_STATUSES = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "paused": SubscriptionStatus.PAUSED,
}

CHARGE_STATUSES = {
    "succeeded": ChargeStatus.SUCCEEDED,
    "failed": ChargeStatus.FAILED,
    "canceled": ChargeStatus.FAILED,
    "requires_payment_method": ChargeStatus.FAILED,
}

PAYMENT_METHOD_TYPES = {
    "card": PaymentMethodType.CARD,
    "us_bank_account": PaymentMethodType.BANK_ACCOUNT,
    "sepa_debit": PaymentMethodType.BANK_ACCOUNT,
    "paypal": PaymentMethodType.PAYPAL,
}

WALLET_TYPES = {
    "apple_pay": PaymentMethodType.APPLE_PAY,
    "google_pay": PaymentMethodType.GOOGLE_PAY,
}

REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


def _params(**params: Any) -> dict[str, Any]:
    return {key: value for key, value in params.items() if value is not None}


def _as_dict(obj: Any) -> dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


class StripeAdapter(ProcessorAdapter):
    """
    Adapter for Stripe API operations.

    Holds no entity state. One instance per ProcessorConfiguration.
    """

    processor_type = ProcessorType.STRIPE
    display_name = "Stripe"

    supports_trial_periods = True
    supports_plan_swapping = True
    supports_proration = True

    # =========================================================================
    # Plumbing
    # =========================================================================

    async def _call(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        resource: str | None = None,
        log_extra: dict[str, Any] | None = None,
        **params: Any,
    ) -> Any:
        """
        Run one SDK call in a worker thread with timing and translation.

        Raises:
            PaymentError: Translated Stripe failure
        """
        logger = self.get_logger()
        log_context = {"operation": operation, **(log_extra or {})}
        if params.get("idempotency_key"):
            log_context["idempotency_key"] = params["idempotency_key"]

        start_time = time.time()
        if self.config.logging_enabled:
            logger.debug("Starting Stripe operation", extra=log_context)

        try:
            result = await sync_to_async(func, thread_sensitive=False)(
                *args, api_key=self.credentials.secret_key, **params
            )
        except stripe.StripeError as e:
            duration_ms = (time.time() - start_time) * 1000
            self._handle_stripe_error(e, log_context, duration_ms, resource)

        if self.config.logging_enabled:
            logger.debug(
                "Stripe operation completed",
                extra={**log_context, "duration_ms": (time.time() - start_time) * 1000},
            )
        return result

    def _handle_stripe_error(
        self,
        error: stripe.StripeError,
        log_context: dict[str, Any],
        duration_ms: float,
        resource: str | None,
    ) -> NoReturn:
        """
        Translate Stripe exceptions to payments exceptions.

        Args:
            error: The Stripe exception
            log_context: Logging context dict
            duration_ms: Operation duration for logging
            resource: Resource kind the call addressed, for not-found mapping
        """
        logger = self.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}
        message = str(getattr(error, "user_message", None) or error)
        details = {"processor_code": error.code, "status_code": error.http_status}

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None)
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )
            raise ProcessorDeclined(
                message, processor_code=decline_code or error.code, details=details
            ) from error

        if isinstance(error, stripe.InvalidRequestError):
            logger.warning(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            if error.code == "resource_missing":
                raise self._not_found(resource, message, details) from error
            raise ValidationFailure(message, details=details) from error

        if isinstance(error, (stripe.AuthenticationError, stripe.PermissionError)):
            logger.critical(
                "Stripe authentication failed - check API key", extra=log_context
            )
            raise AuthenticationFailure(
                "Stripe authentication failed", details=details
            ) from error

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise NetworkFailure(
                "Stripe rate limit exceeded", error_code="rate_limited", status_code=429
            ) from error

        if isinstance(error, stripe.APIConnectionError):
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            raise NetworkFailure(
                "Could not connect to Stripe", error_code="connection_error"
            ) from error

        if isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise NetworkFailure(
                "Stripe service error",
                error_code="server_error",
                status_code=error.http_status,
            ) from error

        logger.error(
            f"Unexpected error from Stripe: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise ProcessorDeclined(
            message, processor_code=error.code or "unknown_error", details=details
        ) from error

    @staticmethod
    def _not_found(resource: str | None, message: str, details: dict[str, Any]):
        if resource == "customer":
            return CustomerNotFound(message, details=details)
        if resource == "subscription":
            return SubscriptionNotFound(message, details=details)
        if resource == "payment_method":
            return PaymentMethodFailure(message, details=details)
        return ProcessorDeclined(
            message, processor_code=f"{resource or 'resource'}_not_found", details=details
        )

    # =========================================================================
    # Mapping
    # =========================================================================

    def _map_customer(self, data: dict[str, Any]) -> Customer:
        if data.get("deleted"):
            raise CustomerNotFound(
                f"Stripe customer {data['id']} was deleted",
                details={"customer_id": data["id"]},
            )
        created_at = parse_datetime(data.get("created"))
        return Customer(
            id=data["id"],
            email=data.get("email") or "",
            name=data.get("name"),
            phone=data.get("phone"),
            processor=ProcessorType.STRIPE,
            processor_customer_id=data["id"],
            metadata=dict(data.get("metadata") or {}),
            created_at=created_at,
            updated_at=created_at,
        )

    def _map_subscription(self, data: dict[str, Any]) -> Subscription:
        items = (data.get("items") or {}).get("data") or [{}]
        item = items[0]
        price = item.get("price") or {}
        product = price.get("product")
        if isinstance(product, dict):
            product = product.get("id")
        status = SUBSCRIPTION_STATUSES.get(data.get("status"), SubscriptionStatus.INCOMPLETE)
        if data.get("pause_collection") and status == SubscriptionStatus.ACTIVE:
            status = SubscriptionStatus.PAUSED
        customer = data.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        return Subscription(
            id=data["id"],
            customer_id=customer or "",
            status=status,
            price_id=price.get("id") or "",
            product_id=product or "",
            current_period_start=parse_datetime(
                data.get("current_period_start") or item.get("current_period_start")
            ),
            current_period_end=parse_datetime(
                data.get("current_period_end") or item.get("current_period_end")
            ),
            trial_start=parse_datetime(data.get("trial_start")),
            trial_end=parse_datetime(data.get("trial_end")),
            canceled_at=parse_datetime(data.get("canceled_at")),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            quantity=int(item.get("quantity") or data.get("quantity") or 1),
            processor=ProcessorType.STRIPE,
            processor_subscription_id=data["id"],
            metadata=dict(data.get("metadata") or {}),
        )

    def _map_payment_method(
        self, data: dict[str, Any], default_id: str | None = None
    ) -> PaymentMethod:
        card = data.get("card") or {}
        wallet = (card.get("wallet") or {}).get("type")
        method_type = WALLET_TYPES.get(wallet) or PAYMENT_METHOD_TYPES.get(
            data.get("type"), PaymentMethodType.CARD
        )
        billing = data.get("billing_details")
        return PaymentMethod(
            id=data["id"],
            customer_id=data.get("customer") or "",
            type=method_type,
            last4=card.get("last4"),
            brand=card.get("brand"),
            expiry_month=card.get("exp_month"),
            expiry_year=card.get("exp_year"),
            is_default=default_id is not None and data["id"] == default_id,
            billing_details=BillingDetails.from_dict(billing) if billing else None,
            metadata=dict(data.get("metadata") or {}),
        )

    def _map_charge(self, data: dict[str, Any]) -> Charge:
        amount = int(data.get("amount") or 0)
        amount_refunded = int(data.get("amount_refunded") or 0)
        if data.get("object") == "payment_intent":
            status = CHARGE_STATUSES.get(data.get("status"), ChargeStatus.PENDING)
        elif data.get("refunded"):
            status = ChargeStatus.REFUNDED
        else:
            status = CHARGE_STATUSES.get(data.get("status"), ChargeStatus.PENDING)
        return Charge(
            id=data["id"],
            customer_id=data.get("customer") or "",
            amount=amount,
            currency=(data.get("currency") or "usd").lower(),
            status=status,
            description=data.get("description"),
            receipt_url=data.get("receipt_url"),
            refunded=amount_refunded > 0,
            refunded_amount=amount_refunded or None,
            processor=ProcessorType.STRIPE,
            processor_charge_id=data["id"],
            created_at=parse_datetime(data.get("created")),
            metadata=dict(data.get("metadata") or {}),
        )

    async def _default_payment_method_id(self, customer_id: str) -> str | None:
        customer = _as_dict(
            await self._call(
                "get_customer", stripe.Customer.retrieve, customer_id, resource="customer"
            )
        )
        default = (customer.get("invoice_settings") or {}).get("default_payment_method")
        if isinstance(default, dict):
            return default.get("id")
        return default

    # =========================================================================
    # Customers
    # =========================================================================

    async def create_customer(self, email, name=None, phone=None, metadata=None):
        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            **_params(email=email, name=name, phone=phone, metadata=metadata),
        )
        return self._map_customer(_as_dict(customer))

    async def get_customer(self, customer_id):
        customer = await self._call(
            "get_customer",
            stripe.Customer.retrieve,
            customer_id,
            resource="customer",
            log_extra={"customer_id": customer_id},
        )
        return self._map_customer(_as_dict(customer))

    async def update_customer(
        self, customer_id, email=None, name=None, phone=None, metadata=None
    ):
        customer = await self._call(
            "update_customer",
            stripe.Customer.modify,
            customer_id,
            resource="customer",
            **_params(email=email, name=name, phone=phone, metadata=metadata),
        )
        return self._map_customer(_as_dict(customer))

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
        subscription = await self._call(
            "create_subscription",
            stripe.Subscription.create,
            resource="customer",
            log_extra={"customer_id": customer_id, "price_id": price_id},
            **_params(
                customer=customer_id,
                items=[{"price": price_id, "quantity": quantity}],
                default_payment_method=payment_method_id,
                trial_period_days=trial_days or None,
                metadata=metadata,
                idempotency_key=idempotency_key,
            ),
        )
        return self._map_subscription(_as_dict(subscription))

    async def get_subscription(self, subscription_id):
        subscription = await self._call(
            "get_subscription",
            stripe.Subscription.retrieve,
            subscription_id,
            resource="subscription",
        )
        return self._map_subscription(_as_dict(subscription))

    async def list_subscriptions(self, customer_id):
        page = await self._call(
            "list_subscriptions",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            resource="customer",
        )
        return [self._map_subscription(_as_dict(item)) for item in _as_dict(page)["data"]]

    async def change_plan(self, subscription_id, new_price_id, prorate=True):
        current = _as_dict(
            await self._call(
                "change_plan",
                stripe.Subscription.retrieve,
                subscription_id,
                resource="subscription",
            )
        )
        item_id = current["items"]["data"][0]["id"]
        subscription = await self._call(
            "change_plan",
            stripe.Subscription.modify,
            subscription_id,
            resource="subscription",
            items=[{"id": item_id, "price": new_price_id}],
            proration_behavior="create_prorations" if prorate else "none",
        )
        return self._map_subscription(_as_dict(subscription))

    async def cancel_subscription(self, subscription_id, immediate=False):
        if immediate:
            subscription = await self._call(
                "cancel_subscription",
                stripe.Subscription.cancel,
                subscription_id,
                resource="subscription",
            )
        else:
            subscription = await self._call(
                "cancel_subscription",
                stripe.Subscription.modify,
                subscription_id,
                resource="subscription",
                cancel_at_period_end=True,
            )
        return self._map_subscription(_as_dict(subscription))

    async def resume_subscription(self, subscription_id):
        subscription = await self._call(
            "resume_subscription",
            stripe.Subscription.modify,
            subscription_id,
            resource="subscription",
            cancel_at_period_end=False,
            pause_collection="",
        )
        return self._map_subscription(_as_dict(subscription))

    async def pause_subscription(self, subscription_id):
        subscription = await self._call(
            "pause_subscription",
            stripe.Subscription.modify,
            subscription_id,
            resource="subscription",
            pause_collection={"behavior": "void"},
        )
        return self._map_subscription(_as_dict(subscription))

    # =========================================================================
    # Payment Methods
    # =========================================================================

    async def add_payment_method(self, customer_id, token, set_as_default=False):
        method = _as_dict(
            await self._call(
                "add_payment_method",
                stripe.PaymentMethod.attach,
                token,
                resource="payment_method",
                customer=customer_id,
            )
        )
        if set_as_default:
            await self._call(
                "add_payment_method",
                stripe.Customer.modify,
                customer_id,
                resource="customer",
                invoice_settings={"default_payment_method": method["id"]},
            )
        return self._map_payment_method(
            method, default_id=method["id"] if set_as_default else None
        )

    async def set_default_payment_method(self, customer_id, payment_method_id):
        await self._call(
            "set_default_payment_method",
            stripe.Customer.modify,
            customer_id,
            resource="payment_method",
            invoice_settings={"default_payment_method": payment_method_id},
        )
        method = await self._call(
            "set_default_payment_method",
            stripe.PaymentMethod.retrieve,
            payment_method_id,
            resource="payment_method",
        )
        return self._map_payment_method(_as_dict(method), default_id=payment_method_id)

    async def remove_payment_method(self, customer_id, payment_method_id):
        await self._call(
            "remove_payment_method",
            stripe.PaymentMethod.detach,
            payment_method_id,
            resource="payment_method",
        )

    async def list_payment_methods(self, customer_id):
        default_id = await self._default_payment_method_id(customer_id)
        page = await self._call(
            "list_payment_methods",
            stripe.PaymentMethod.list,
            customer=customer_id,
            type="card",
            resource="customer",
        )
        return [
            self._map_payment_method(_as_dict(item), default_id=default_id)
            for item in _as_dict(page)["data"]
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
        if payment_method_id is None:
            payment_method_id = await self._default_payment_method_id(customer_id)
        intent = await self._call(
            "create_charge",
            stripe.PaymentIntent.create,
            resource="customer",
            log_extra={"customer_id": customer_id, "amount_cents": amount, "currency": currency},
            **_params(
                amount=amount,
                currency=currency.lower(),
                customer=customer_id,
                payment_method=payment_method_id,
                description=description,
                metadata=metadata,
                confirm=True,
                off_session=True,
                idempotency_key=idempotency_key,
            ),
        )
        return self._map_charge(_as_dict(intent))

    async def list_charges(self, customer_id, limit=20):
        page = await self._call(
            "list_charges",
            stripe.Charge.list,
            customer=customer_id,
            limit=limit,
            resource="customer",
        )
        return [self._map_charge(_as_dict(item)) for item in _as_dict(page)["data"]][:limit]

    async def refund_charge(self, charge_id, amount=None, reason=None):
        target = (
            {"payment_intent": charge_id}
            if charge_id.startswith("pi_")
            else {"charge": charge_id}
        )
        await self._call(
            "refund_charge",
            stripe.Refund.create,
            resource="charge",
            **_params(
                amount=amount,
                reason=reason if reason in REFUND_REASONS else None,
                metadata={"reason": reason} if reason and reason not in REFUND_REASONS else None,
                **target,
            ),
        )
        retrieve = stripe.PaymentIntent.retrieve if "payment_intent" in target else stripe.Charge.retrieve
        charge = await self._call("refund_charge", retrieve, charge_id, resource="charge")
        return self._map_charge(_as_dict(charge))

    # =========================================================================
    # Webhooks & Lifecycle
    # =========================================================================

    async def handle_webhook(self, signature, raw_payload):
        secret = self.credentials.webhook_secret
        if not secret:
            self._reject_webhook("No webhook signing secret configured", "missing_secret")
        if not signature:
            self._reject_webhook("Missing Stripe-Signature header", "missing_signature")
        try:
            event = stripe.Webhook.construct_event(as_bytes(raw_payload), signature, secret)
        except stripe.SignatureVerificationError:
            self._reject_webhook("Invalid webhook signature", "invalid_signature")
        except ValueError:
            self._reject_webhook("Malformed webhook payload", "malformed_payload")
        event = _as_dict(event)
        return WebhookEvent(
            id=event["id"],
            type=event["type"],
            processor=ProcessorType.STRIPE,
            data=_as_dict((event.get("data") or {}).get("object") or {}),
            created_at=parse_datetime(event.get("created")),
            verified=True,
        )

    async def validate_configuration(self):
        try:
            await self._call("validate_configuration", stripe.Balance.retrieve)
        except NetworkFailure:
            raise
        except (AuthenticationFailure, ValidationFailure, ProcessorDeclined) as e:
            raise InvalidConfiguration(
                f"Stripe rejected the configuration: {e.message}",
                details={"cause": e.error_code},
            ) from e
