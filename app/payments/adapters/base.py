"""
Processor adapter contract.

ProcessorAdapter is the polymorphic interface every payment back-end
implements. Adapters translate the back-end's native data into the
canonical model and its native failures into the payments error taxonomy.
Nothing above the adapter layer ever sees a processor SDK object, an HTTP
response or a processor-specific error.

The set of adapters is closed: one per ProcessorType, selected once by the
AdapterRegistry from a ProcessorConfiguration.

Capability flags:
    supports_trial_periods: create_subscription honours trial_days
    supports_plan_swapping: change_plan is available
    supports_proration: change_plan can prorate

Operations a back-end does not offer raise UnsupportedOperation.

Usage:
    class AcmeAdapter(ProcessorAdapter):
        processor_type = ProcessorType.FAKE

        async def create_customer(self, email, name=None, phone=None, metadata=None):
            ...
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from payments.exceptions import UnsupportedOperation, WebhookVerificationFailure

if TYPE_CHECKING:
    from typing import Any, NoReturn

    from payments.config import ProcessorConfiguration
    from payments.models import (
        Charge,
        Customer,
        PaymentMethod,
        ProcessorType,
        Subscription,
        WebhookEvent,
    )


# =============================================================================
# Signature helpers
# =============================================================================


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA256 of payload under secret."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: str | None) -> bool:
    """Constant-time comparison that tolerates a missing signature."""
    if not provided:
        return False
    return hmac.compare_digest(expected.encode(), provided.encode())


def as_bytes(raw_payload: bytes | str) -> bytes:
    if isinstance(raw_payload, str):
        return raw_payload.encode()
    return raw_payload


# =============================================================================
# Adapter Contract
# =============================================================================


class ProcessorAdapter(ABC):
    """
    Abstract base class for processor adapters.

    Every operation is a coroutine. Adapters hold no cached entity state;
    caching belongs to the cache layer.

    Subclasses must implement the abstract operations. Optional operations
    (update_customer, get_subscription, pause_subscription, add_payment_method,
    refund_charge) raise UnsupportedOperation unless overridden.
    """

    processor_type: ProcessorType
    display_name: str = ""

    supports_trial_periods: bool = True
    supports_plan_swapping: bool = True
    supports_proration: bool = False

    def __init__(self, config: ProcessorConfiguration):
        self.config = config
        self.credentials = config.credentials

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Get logger for this adapter."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    def _unsupported(self, operation: str, reason: str | None = None) -> NoReturn:
        raise UnsupportedOperation(
            reason or f"{self.display_name} does not support {operation}",
            details={"operation": operation, "processor": str(self.processor_type)},
        )

    def _reject_webhook(self, message: str, code: str) -> NoReturn:
        self.get_logger().warning(
            "Webhook rejected",
            extra={"processor": str(self.processor_type), "reason": code},
        )
        raise WebhookVerificationFailure(message, details={"reason": code})

    # =========================================================================
    # Customers
    # =========================================================================

    @abstractmethod
    async def create_customer(
        self,
        email: str,
        name: str | None = None,
        phone: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Customer: ...

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Customer: ...

    async def update_customer(
        self,
        customer_id: str,
        email: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Customer:
        self._unsupported("update_customer")

    # =========================================================================
    # Subscriptions
    # =========================================================================

    @abstractmethod
    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str | None = None,
        trial_days: int | None = None,
        quantity: int = 1,
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Subscription: ...

    async def get_subscription(self, subscription_id: str) -> Subscription:
        self._unsupported("get_subscription")

    @abstractmethod
    async def list_subscriptions(self, customer_id: str) -> list[Subscription]: ...

    @abstractmethod
    async def change_plan(
        self,
        subscription_id: str,
        new_price_id: str,
        prorate: bool = True,
    ) -> Subscription: ...

    @abstractmethod
    async def cancel_subscription(
        self, subscription_id: str, immediate: bool = False
    ) -> Subscription: ...

    @abstractmethod
    async def resume_subscription(self, subscription_id: str) -> Subscription: ...

    async def pause_subscription(self, subscription_id: str) -> Subscription:
        self._unsupported("pause_subscription")

    # =========================================================================
    # Payment Methods
    # =========================================================================

    async def add_payment_method(
        self,
        customer_id: str,
        token: str,
        set_as_default: bool = False,
    ) -> PaymentMethod:
        self._unsupported("add_payment_method")

    @abstractmethod
    async def set_default_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> PaymentMethod: ...

    @abstractmethod
    async def remove_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> None: ...

    @abstractmethod
    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethod]: ...

    # =========================================================================
    # Charges
    # =========================================================================

    @abstractmethod
    async def create_charge(
        self,
        customer_id: str,
        amount: int,
        currency: str,
        payment_method_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Charge: ...

    @abstractmethod
    async def list_charges(self, customer_id: str, limit: int = 20) -> list[Charge]: ...

    async def refund_charge(
        self,
        charge_id: str,
        amount: int | None = None,
        reason: str | None = None,
    ) -> Charge:
        self._unsupported("refund_charge")

    # =========================================================================
    # Webhooks & Lifecycle
    # =========================================================================

    @abstractmethod
    async def handle_webhook(
        self, signature: str | None, raw_payload: bytes | str
    ) -> WebhookEvent:
        """
        Verify and parse an inbound webhook.

        Returns:
            WebhookEvent with verified=True

        Raises:
            WebhookVerificationFailure: Signature missing/invalid or payload malformed
        """

    @abstractmethod
    async def validate_configuration(self) -> None:
        """
        Cheap authenticated round trip to the back-end.

        Raises:
            InvalidConfiguration: Credentials or configuration rejected
        """

    async def aclose(self) -> None:
        """Release network resources. Safe to call more than once."""
