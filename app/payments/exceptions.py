"""
Payment-specific exceptions for processor operations.

This module provides the closed error vocabulary every processor adapter
translates its native failures into. Callers (the orchestration facade,
the webhook engine, and the UI layer above them) only ever branch on
these kinds, never on SDK or HTTP errors.

Exception Hierarchy:
    PaymentError (base for payment domain)
    ├── AuthenticationFailure - Credentials rejected by the back-end
    ├── InvalidConfiguration - Configuration failed local or remote checks
    ├── ValidationFailure - Caller input rejected (permanent)
    ├── NetworkFailure - Transient transport/availability failure (retry)
    ├── ProcessorDeclined - Back-end business rejection (carries processor_code)
    ├── CustomerNotFound - Customer lookup failed
    ├── SubscriptionNotFound - Subscription lookup failed
    ├── PaymentMethodFailure - Payment method could not be used or managed
    ├── WebhookVerificationFailure - Webhook signature or payload rejected
    ├── UnsupportedOperation - Back-end does not offer the operation
    ├── RetriesExhausted - Transient failures outlasted the retry budget
    └── NotInitialized - Facade used before a customer was initialized

Propagation:
    Only NetworkFailure is retryable. It surfaces to callers exclusively
    as RetriesExhausted once the retry budget is spent. Every other kind
    surfaces on the first attempt.

Usage:
    from payments.exceptions import ProcessorDeclined, RetriesExhausted

    try:
        charge = await service.make_payment(amount=1000, currency="usd")
    except ProcessorDeclined as e:
        show_decline_message(e.processor_code)
    except RetriesExhausted as e:
        logger.warning(f"Gave up after {e.attempts} attempts: {e.last_error}")
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Payment Domain Exceptions
# =============================================================================


class PaymentError(BaseApplicationError):
    """
    Base exception for all payment operations.

    Subclasses set is_retryable to tell the retry controller whether
    another attempt can succeed.

    Example:
        try:
            await service.subscribe(price_id="price_123")
        except PaymentError as e:
            logger.error(f"Payment operation failed: {e}")
            return e.to_dict()
    """

    default_error_code: str = "PAYMENT_ERROR"
    is_retryable: bool = False


class AuthenticationFailure(PaymentError):
    """Raised when the back-end rejects the configured credentials (401/403)."""

    default_error_code: str = "AUTHENTICATION_FAILED"


class InvalidConfiguration(PaymentError):
    """
    Raised when a processor configuration is malformed or rejected.

    Use for:
    - Missing credential fields for the chosen processor kind
    - Key prefixes that cannot belong to the processor (e.g. Stripe sk_)
    - A validation round trip that the back-end refuses

    Example:
        raise InvalidConfiguration(
            "Stripe secret key must start with sk_",
            details={"field": "secret_key"},
        )
    """

    default_error_code: str = "INVALID_CONFIGURATION"


class ValidationFailure(PaymentError, ValidationError):
    """
    Raised when caller input is rejected, locally or by the back-end.

    Example:
        if amount <= 0:
            raise ValidationFailure(
                "Amount must be positive",
                details={"amount": amount},
            )
    """

    default_error_code: str = "VALIDATION_FAILED"


class NetworkFailure(PaymentError, ExternalServiceError):
    """
    Raised for transient transport or availability failures.

    Timeouts, connection errors, rate limiting (429) and 5xx responses all
    map here. This is the only retryable kind.

    Attributes:
        status_code: HTTP status when the failure came from a response
        url: Request URL when known
    """

    default_error_code: str = "NETWORK_FAILURE"
    is_retryable: bool = True

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
        url: str | None = None,
    ):
        super().__init__(message, error_code=error_code, details=details)
        self.status_code = status_code
        self.url = url


class ProcessorDeclined(PaymentError):
    """
    Raised when the back-end rejects an operation for business reasons.

    Attributes:
        processor_code: The back-end's own error/decline code, for UI mapping

    Example:
        raise ProcessorDeclined(
            "Your card was declined.",
            processor_code="card_declined",
        )
    """

    default_error_code: str = "PROCESSOR_DECLINED"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
        processor_code: str | None = None,
    ):
        super().__init__(message, error_code=error_code, details=details)
        self.processor_code = processor_code

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.processor_code:
            result["processor_code"] = self.processor_code
        return result


class CustomerNotFound(PaymentError, NotFoundError):
    """Raised when a customer cannot be found at the back-end."""

    default_error_code: str = "CUSTOMER_NOT_FOUND"


class SubscriptionNotFound(PaymentError, NotFoundError):
    """Raised when a subscription cannot be found at the back-end."""

    default_error_code: str = "SUBSCRIPTION_NOT_FOUND"


class PaymentMethodFailure(PaymentError):
    """
    Raised when a payment method cannot be attached, used or removed.

    Use for:
    - Unknown payment method id
    - Subscribing without a trial and without any payment method
    - Removing a method that belongs to another customer
    """

    default_error_code: str = "PAYMENT_METHOD_FAILED"


class WebhookVerificationFailure(PaymentError):
    """
    Raised when an inbound webhook fails signature or payload checks.

    An event that raises this is never classified or applied.
    """

    default_error_code: str = "WEBHOOK_VERIFICATION_FAILED"


WebhookException = WebhookVerificationFailure


class UnsupportedOperation(PaymentError):
    """
    Raised when the configured back-end does not offer an operation.

    Example:
        raise UnsupportedOperation(
            "Lemon Squeezy subscriptions are created through checkout",
            details={"operation": "create_subscription"},
        )
    """

    default_error_code: str = "UNSUPPORTED_OPERATION"


class RetriesExhausted(PaymentError):
    """
    Raised when transient failures outlast the retry budget.

    Attributes:
        attempts: Number of attempts made
        last_error: The final NetworkFailure observed
    """

    default_error_code: str = "RETRIES_EXHAUSTED"

    def __init__(
        self,
        message: str,
        attempts: int,
        last_error: BaseException | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = {"attempts": attempts, **(details or {})}
        super().__init__(message, error_code=error_code, details=details)
        self.attempts = attempts
        self.last_error = last_error


class NotInitialized(PaymentError, ConflictError):
    """Raised when a facade operation needs a customer before initialize()."""

    default_error_code: str = "NOT_INITIALIZED"


__all__ = [
    "PaymentError",
    "AuthenticationFailure",
    "InvalidConfiguration",
    "ValidationFailure",
    "NetworkFailure",
    "ProcessorDeclined",
    "CustomerNotFound",
    "SubscriptionNotFound",
    "PaymentMethodFailure",
    "WebhookVerificationFailure",
    "WebhookException",
    "UnsupportedOperation",
    "RetriesExhausted",
    "NotInitialized",
]
