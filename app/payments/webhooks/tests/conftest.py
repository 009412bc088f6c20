"""
Pytest fixtures for webhook tests.

Provides a reconciliation engine over the fake processor, a helper that
signs and delivers events through it, and a subscription already sitting
in the cache for handlers to merge into.
"""

import pytest

from payments.tests.factories import SubscriptionFactory
from payments.webhooks.engine import WebhookReconciliationEngine


@pytest.fixture
def engine(fake_adapter, cache, storage, clock):
    return WebhookReconciliationEngine(fake_adapter, cache, storage, clock)


@pytest.fixture
def deliver(engine, fake_adapter):
    """Sign an event with the fake's secret and run it through the engine."""

    async def _deliver(event_id, event_type, data):
        signature, body = fake_adapter.build_webhook(event_id, event_type, data)
        return await engine.process(signature, body)

    return _deliver


@pytest.fixture
async def cached_subscription(cache, start_time):
    subscription = SubscriptionFactory(
        id="sub_1",
        customer_id="cus_1",
        source_timestamp=start_time,
    )
    await cache.put_subscription(subscription)
    return subscription
