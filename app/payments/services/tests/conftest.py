"""
Pytest fixtures for payment service tests.

Every service here runs on the fake processor, the shared in-memory
storage, the frozen clock and a retry controller that records delays
instead of sleeping.
"""

from dataclasses import replace

import pytest

from payments.config import FakeCredentials
from payments.services import PaymentService, PaymentServiceHolder


@pytest.fixture
def service(fake_adapter, cache, storage, clock, retry):
    return PaymentService(fake_adapter, cache, storage, clock, retry=retry, grace_days=7)


@pytest.fixture
async def customer(service):
    return await service.initialize("ada@example.com", name="Ada Lovelace")


@pytest.fixture
async def card(service, customer):
    return await service.add_payment_method("tok_visa")


@pytest.fixture
async def holder(fake_config, storage, clock, retry):
    holder = PaymentServiceHolder(
        fake_config, storage=storage, clock=clock, retry_factory=lambda: retry
    )
    yield holder
    await holder.aclose()


@pytest.fixture
def rotated_config(fake_config):
    """A second fake back-end: same kind, different credentials."""
    return replace(
        fake_config,
        credentials=FakeCredentials(webhook_secret="rotated_secret", api_key="fake_rotated"),
    )
