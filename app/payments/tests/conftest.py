"""
Pytest fixtures for payments core tests.

Clock, storage, cache and retry fixtures live in the root conftest.py;
this module adds entity fixtures built from the factories.

Usage:
    def test_trial_predicate(trialing_subscription, clock):
        assert trialing_subscription.is_on_trial(clock.now())
"""

import pytest

from payments.models import SubscriptionStatus
from payments.tests.factories import (
    ChargeFactory,
    CustomerFactory,
    PaymentMethodFactory,
    SubscriptionFactory,
)


# =============================================================================
# Entity Fixtures
# =============================================================================


@pytest.fixture
def customer():
    return CustomerFactory(name="Ada Lovelace", phone="+15550100")


@pytest.fixture
def subscription(start_time):
    return SubscriptionFactory(
        current_period_start=start_time, source_timestamp=start_time
    )


@pytest.fixture
def trialing_subscription(start_time):
    return SubscriptionFactory(
        trialing=True, current_period_start=start_time, source_timestamp=start_time
    )


@pytest.fixture
def past_due_subscription(start_time):
    return SubscriptionFactory(
        status=SubscriptionStatus.PAST_DUE, current_period_start=start_time
    )


@pytest.fixture
def payment_method():
    return PaymentMethodFactory(is_default=True)


@pytest.fixture
def charge():
    return ChargeFactory()
