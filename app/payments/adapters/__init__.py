"""
Processor adapters.

One adapter per payment back-end, all implementing ProcessorAdapter. Every
call to a back-end goes through an adapter so error translation, timeouts,
idempotency and logging stay consistent whichever processor is configured.

Usage:
    from payments.adapters import AdapterRegistry

    registry = AdapterRegistry()
    adapter = registry.get(ProcessorConfiguration.from_settings())
    customer = await adapter.create_customer("user@example.com")
"""

from payments.adapters.base import ProcessorAdapter
from payments.adapters.braintree_adapter import BraintreeAdapter
from payments.adapters.fake_adapter import FakeAdapter
from payments.adapters.http import HttpProcessorAdapter
from payments.adapters.lemon_squeezy_adapter import LemonSqueezyAdapter
from payments.adapters.paddle_adapter import PaddleAdapter
from payments.adapters.registry import ADAPTER_FACTORIES, AdapterRegistry
from payments.adapters.stripe_adapter import StripeAdapter
from payments.adapters.totalpay_adapter import TotalpayAdapter

__all__ = [
    "ADAPTER_FACTORIES",
    "AdapterRegistry",
    "BraintreeAdapter",
    "FakeAdapter",
    "HttpProcessorAdapter",
    "LemonSqueezyAdapter",
    "PaddleAdapter",
    "ProcessorAdapter",
    "StripeAdapter",
    "TotalpayAdapter",
]
