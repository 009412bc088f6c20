"""
Pytest fixtures for processor adapter tests.

This module provides fixtures for testing the Stripe adapter without the
network: mock SDK objects shaped like Stripe responses, patched SDK
resources and Stripe error instances. HTTP adapters use
httpx.MockTransport fixtures defined in their own test module.

Sections:
    - Configuration Fixtures
    - Mock Stripe Response Fixtures
    - Mock Stripe Error Fixtures
    - Mock Stripe Client Fixtures
"""

from dataclasses import dataclass
from typing import Any
from unittest.mock import patch

import pytest
import stripe

from payments.adapters import StripeAdapter
from payments.config import ProcessorConfiguration, StripeCredentials
from payments.models import ProcessorType


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def stripe_config():
    return ProcessorConfiguration(
        processor_kind=ProcessorType.STRIPE,
        credentials=StripeCredentials(
            publishable_key="pk_test_123",
            secret_key="sk_test_123",
            webhook_secret="whsec_test_123",
        ),
    )


@pytest.fixture
def stripe_adapter(stripe_config):
    return StripeAdapter(stripe_config)


# =============================================================================
# Mock Stripe Response Fixtures
# =============================================================================


@dataclass
class MockStripeObject:
    """Mock Stripe API object with to_dict support."""

    data: dict[str, Any]

    def __getattr__(self, name: str) -> Any:
        if name == "data":
            return self.__dict__["data"]
        return self.data.get(name)

    def to_dict(self) -> dict[str, Any]:
        return self.data


@dataclass
class MockStripeList:
    """Mock Stripe list response with data attribute."""

    items: list[MockStripeObject]
    has_more: bool = False

    @property
    def data(self) -> list[MockStripeObject]:
        return self.items

    def to_dict(self) -> dict[str, Any]:
        return {"object": "list", "data": self.items, "has_more": self.has_more}


@pytest.fixture
def mock_customer():
    """Create a mock Customer response."""

    def _create(
        id: str = "cus_test123",
        email: str = "ada@example.com",
        name: str | None = "Ada Lovelace",
        default_payment_method: str | None = None,
        deleted: bool = False,
    ) -> MockStripeObject:
        data = {
            "id": id,
            "object": "customer",
            "email": email,
            "name": name,
            "phone": None,
            "created": 1772366400,
            "invoice_settings": {"default_payment_method": default_payment_method},
            "metadata": {},
        }
        if deleted:
            data["deleted"] = True
        return MockStripeObject(data)

    return _create


@pytest.fixture
def mock_subscription():
    """Create a mock Subscription response."""

    def _create(
        id: str = "sub_test123",
        status: str = "active",
        price_id: str = "price_pro",
        product_id: str = "prod_pro",
        trial_end: int | None = None,
        cancel_at_period_end: bool = False,
        pause_collection: dict | None = None,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "subscription",
                "customer": "cus_test123",
                "status": status,
                "current_period_start": 1772366400,
                "current_period_end": 1774958400,
                "trial_start": 1772366400 if trial_end else None,
                "trial_end": trial_end,
                "canceled_at": None,
                "cancel_at_period_end": cancel_at_period_end,
                "pause_collection": pause_collection,
                "items": {
                    "data": [
                        {
                            "id": "si_test123",
                            "quantity": 2,
                            "price": {"id": price_id, "product": product_id},
                        }
                    ]
                },
                "metadata": {},
            }
        )

    return _create


@pytest.fixture
def mock_payment_method():
    """Create a mock PaymentMethod response."""

    def _create(
        id: str = "pm_test123",
        wallet: str | None = None,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "payment_method",
                "type": "card",
                "customer": "cus_test123",
                "card": {
                    "brand": "visa",
                    "last4": "4242",
                    "exp_month": 12,
                    "exp_year": 2030,
                    "wallet": {"type": wallet} if wallet else None,
                },
                "billing_details": {"name": "Ada Lovelace", "email": None},
                "metadata": {},
            }
        )

    return _create


@pytest.fixture
def mock_payment_intent():
    """Create a mock PaymentIntent response."""

    def _create(
        id: str = "pi_test123456",
        status: str = "succeeded",
        amount: int = 5000,
        currency: str = "usd",
        amount_refunded: int = 0,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "payment_intent",
                "customer": "cus_test123",
                "status": status,
                "amount": amount,
                "amount_refunded": amount_refunded,
                "currency": currency,
                "created": 1772366400,
                "metadata": {},
            }
        )

    return _create


@pytest.fixture
def mock_charge():
    """Create a mock Charge response."""

    def _create(
        id: str = "ch_test123",
        amount: int = 5000,
        amount_refunded: int = 0,
        refunded: bool = False,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "charge",
                "customer": "cus_test123",
                "status": "succeeded",
                "amount": amount,
                "amount_refunded": amount_refunded,
                "refunded": refunded,
                "currency": "usd",
                "receipt_url": f"https://pay.stripe.com/receipts/{id}",
                "created": 1772366400,
                "metadata": {},
            }
        )

    return _create


# =============================================================================
# Mock Stripe Error Fixtures
# =============================================================================


@pytest.fixture
def card_error():
    """Create a Stripe CardError."""

    def _create(
        message: str = "Your card was declined.",
        code: str = "card_declined",
        decline_code: str | None = "generic_decline",
    ) -> stripe.CardError:
        error = stripe.CardError(message=message, param=None, code=code)
        error.decline_code = decline_code
        return error

    return _create


@pytest.fixture
def invalid_request_error():
    """Create a Stripe InvalidRequestError."""

    def _create(
        message: str = "No such customer: 'cus_missing'",
        param: str | None = "id",
        code: str = "resource_missing",
    ) -> stripe.InvalidRequestError:
        return stripe.InvalidRequestError(message=message, param=param, code=code)

    return _create


@pytest.fixture
def rate_limit_error():
    return stripe.RateLimitError(message="Too many requests hit the API too quickly.")


@pytest.fixture
def api_connection_error():
    return stripe.APIConnectionError(message="Could not connect to Stripe.")


@pytest.fixture
def api_error():
    return stripe.APIError(message="Something went wrong on Stripe's end.", http_status=500)


@pytest.fixture
def authentication_error():
    return stripe.AuthenticationError(message="Invalid API Key provided.")


@pytest.fixture
def signature_verification_error():
    return stripe.SignatureVerificationError(
        message="Unable to verify webhook signature.",
        sig_header="bad_signature",
    )


# =============================================================================
# Mock Stripe Client Fixtures
# =============================================================================


@pytest.fixture
def mock_stripe_customer(mock_customer):
    """Mock stripe.Customer API."""
    with patch("stripe.Customer") as mock:
        mock.create.return_value = mock_customer()
        mock.retrieve.return_value = mock_customer()
        mock.modify.return_value = mock_customer()
        yield mock


@pytest.fixture
def mock_stripe_subscription(mock_subscription):
    """Mock stripe.Subscription API."""
    with patch("stripe.Subscription") as mock:
        mock.create.return_value = mock_subscription()
        mock.retrieve.return_value = mock_subscription()
        mock.modify.return_value = mock_subscription()
        mock.cancel.return_value = mock_subscription(status="canceled")
        mock.list.return_value = MockStripeList(items=[mock_subscription()])
        yield mock


@pytest.fixture
def mock_stripe_payment_method(mock_payment_method):
    """Mock stripe.PaymentMethod API."""
    with patch("stripe.PaymentMethod") as mock:
        mock.attach.return_value = mock_payment_method()
        mock.retrieve.return_value = mock_payment_method()
        mock.list.return_value = MockStripeList(
            items=[mock_payment_method(), mock_payment_method(id="pm_other")]
        )
        yield mock


@pytest.fixture
def mock_stripe_payment_intent(mock_payment_intent):
    """Mock stripe.PaymentIntent API."""
    with patch("stripe.PaymentIntent") as mock:
        mock.create.return_value = mock_payment_intent()
        mock.retrieve.return_value = mock_payment_intent()
        yield mock


@pytest.fixture
def mock_stripe_charge(mock_charge):
    """Mock stripe.Charge API."""
    with patch("stripe.Charge") as mock:
        mock.list.return_value = MockStripeList(items=[mock_charge()])
        mock.retrieve.return_value = mock_charge()
        yield mock


@pytest.fixture
def mock_stripe_refund():
    """Mock stripe.Refund API."""
    with patch("stripe.Refund") as mock:
        mock.create.return_value = MockStripeObject({"id": "re_test123", "status": "succeeded"})
        yield mock


@pytest.fixture
def mock_stripe_webhook():
    """Mock stripe.Webhook API."""
    with patch("stripe.Webhook") as mock:
        mock.construct_event.return_value = MockStripeObject(
            {
                "id": "evt_test123",
                "type": "customer.subscription.updated",
                "created": 1772366400,
                "data": {"object": {"id": "sub_test123", "status": "past_due"}},
            }
        )
        yield mock
