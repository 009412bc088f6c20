"""
Tests for the in-memory fake processor.

The fake backs most of the suite, so its behaviour is pinned down here:
trial dates, default payment methods, failure injection, refunds and
webhook signing.
"""

from dataclasses import replace
from datetime import timedelta

import pytest

from payments.adapters.fake_adapter import SIGNATURE_PREFIX, FakeAdapter
from payments.config import FakeCredentials
from payments.exceptions import (
    CustomerNotFound,
    InvalidConfiguration,
    NetworkFailure,
    PaymentMethodFailure,
    ProcessorDeclined,
    SubscriptionNotFound,
    ValidationFailure,
    WebhookVerificationFailure,
)
from payments.models import ChargeStatus, ProcessorType, SubscriptionStatus


@pytest.fixture
async def customer_id(fake_adapter):
    customer = await fake_adapter.create_customer("ada@example.com", name="Ada")
    return customer.id


@pytest.fixture
async def card(fake_adapter, customer_id):
    return await fake_adapter.add_payment_method(customer_id, "tok_visa")


# =============================================================================
# Customer Tests
# =============================================================================


class TestCustomers:
    async def test_create_and_get(self, fake_adapter, clock):
        customer = await fake_adapter.create_customer("ada@example.com", phone="+1555")

        fetched = await fake_adapter.get_customer(customer.id)

        assert fetched == customer
        assert customer.id.startswith("fake_cus_")
        assert customer.processor == ProcessorType.FAKE
        assert customer.created_at == clock.now()

    async def test_invalid_email(self, fake_adapter):
        with pytest.raises(ValidationFailure):
            await fake_adapter.create_customer("not-an-email")

    async def test_unknown_customer(self, fake_adapter):
        with pytest.raises(CustomerNotFound):
            await fake_adapter.get_customer("fake_cus_missing")

    async def test_update_merges_metadata(self, fake_adapter):
        customer = await fake_adapter.create_customer(
            "ada@example.com", metadata={"a": "1"}
        )

        updated = await fake_adapter.update_customer(
            customer.id, name="Ada L", metadata={"b": "2"}
        )

        assert updated.name == "Ada L"
        assert updated.metadata == {"a": "1", "b": "2"}


# =============================================================================
# Subscription Tests
# =============================================================================


class TestSubscriptions:
    async def test_trial_subscription(self, fake_adapter, customer_id, clock):
        """Should start trialing with the period ending at trial end."""
        subscription = await fake_adapter.create_subscription(
            customer_id, "price_pro", trial_days=14
        )

        assert subscription.status == SubscriptionStatus.TRIALING
        assert subscription.trial_end == clock.now() + timedelta(days=14)
        assert subscription.current_period_end == subscription.trial_end
        assert subscription.is_on_trial(clock.now())

    async def test_requires_payment_method_without_trial(self, fake_adapter, customer_id):
        with pytest.raises(PaymentMethodFailure) as exc_info:
            await fake_adapter.create_subscription(customer_id, "price_pro")

        assert exc_info.value.error_code == "PAYMENT_METHOD_REQUIRED"

    async def test_active_with_default_method(self, fake_adapter, customer_id, card, clock):
        subscription = await fake_adapter.create_subscription(customer_id, "price_pro")

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_end == clock.now() + timedelta(days=30)
        assert subscription.source_timestamp == clock.now()

    async def test_records_idempotency_key(self, fake_adapter, customer_id):
        await fake_adapter.create_subscription(
            customer_id, "price_pro", trial_days=7, idempotency_key="key-1"
        )

        assert fake_adapter.idempotency_keys == ["key-1"]

    async def test_change_plan_updates_product(self, fake_adapter, customer_id, card):
        subscription = await fake_adapter.create_subscription(customer_id, "price_basic")

        changed = await fake_adapter.change_plan(subscription.id, "price_pro")

        assert changed.price_id == "price_pro"
        assert changed.product_id != subscription.product_id

    async def test_cancel_at_period_end_then_resume(self, fake_adapter, customer_id, card, clock):
        subscription = await fake_adapter.create_subscription(customer_id, "price_pro")

        canceled = await fake_adapter.cancel_subscription(subscription.id)
        assert canceled.cancel_at_period_end is True
        assert canceled.is_on_grace_period(clock.now())

        resumed = await fake_adapter.resume_subscription(subscription.id)
        assert resumed.cancel_at_period_end is False
        assert resumed.canceled_at is None

    async def test_immediate_cancel(self, fake_adapter, customer_id, card):
        subscription = await fake_adapter.create_subscription(customer_id, "price_pro")

        canceled = await fake_adapter.cancel_subscription(subscription.id, immediate=True)

        assert canceled.status == SubscriptionStatus.CANCELED
        with pytest.raises(ProcessorDeclined):
            await fake_adapter.change_plan(subscription.id, "price_other")

    async def test_resume_requires_scheduled_cancellation(self, fake_adapter, customer_id, card):
        subscription = await fake_adapter.create_subscription(customer_id, "price_pro")

        with pytest.raises(ProcessorDeclined):
            await fake_adapter.resume_subscription(subscription.id)

    async def test_unknown_subscription(self, fake_adapter):
        with pytest.raises(SubscriptionNotFound):
            await fake_adapter.get_subscription("fake_sub_missing")


# =============================================================================
# Payment Method Tests
# =============================================================================


class TestPaymentMethods:
    async def test_first_method_becomes_default(self, card):
        assert card.is_default is True

    async def test_single_default(self, fake_adapter, customer_id, card):
        """Should keep exactly one default after switching."""
        second = await fake_adapter.add_payment_method(
            customer_id, "tok_mc", set_as_default=True
        )

        methods = await fake_adapter.list_payment_methods(customer_id)

        assert [m.id for m in methods if m.is_default] == [second.id]

    async def test_remove_default_promotes_another(self, fake_adapter, customer_id, card):
        second = await fake_adapter.add_payment_method(customer_id, "tok_mc")

        await fake_adapter.remove_payment_method(customer_id, card.id)

        methods = await fake_adapter.list_payment_methods(customer_id)
        assert [m.id for m in methods if m.is_default] == [second.id]

    async def test_cannot_remove_last_method_with_live_subscription(
        self, fake_adapter, customer_id, card
    ):
        await fake_adapter.create_subscription(customer_id, "price_pro")

        with pytest.raises(PaymentMethodFailure) as exc_info:
            await fake_adapter.remove_payment_method(customer_id, card.id)

        assert exc_info.value.error_code == "LAST_PAYMENT_METHOD"

    async def test_empty_token(self, fake_adapter, customer_id):
        with pytest.raises(PaymentMethodFailure):
            await fake_adapter.add_payment_method(customer_id, "")


# =============================================================================
# Charge Tests
# =============================================================================


class TestCharges:
    async def test_charge_default_method(self, fake_adapter, customer_id, card):
        charge = await fake_adapter.create_charge(customer_id, 2500, "USD")

        assert charge.status == ChargeStatus.SUCCEEDED
        assert charge.currency == "usd"
        assert await fake_adapter.list_charges(customer_id) == [charge]

    async def test_charge_without_method(self, fake_adapter, customer_id):
        with pytest.raises(PaymentMethodFailure) as exc_info:
            await fake_adapter.create_charge(customer_id, 2500, "usd")

        assert exc_info.value.error_code == "NO_DEFAULT_PAYMENT_METHOD"

    async def test_list_newest_first_with_limit(self, fake_adapter, customer_id, card, clock):
        first = await fake_adapter.create_charge(customer_id, 100, "usd")
        clock.advance(60)
        second = await fake_adapter.create_charge(customer_id, 200, "usd")

        assert await fake_adapter.list_charges(customer_id) == [second, first]
        assert await fake_adapter.list_charges(customer_id, limit=1) == [second]

    async def test_partial_then_full_refund(self, fake_adapter, customer_id, card):
        charge = await fake_adapter.create_charge(customer_id, 1000, "usd")

        partial = await fake_adapter.refund_charge(charge.id, amount=400)
        full = await fake_adapter.refund_charge(charge.id)

        assert partial.refunded_amount == 400
        assert full.status == ChargeStatus.REFUNDED

    async def test_over_refund_declined(self, fake_adapter, customer_id, card):
        charge = await fake_adapter.create_charge(customer_id, 1000, "usd")

        with pytest.raises(ProcessorDeclined) as exc_info:
            await fake_adapter.refund_charge(charge.id, amount=1001)

        assert exc_info.value.processor_code == "invalid_refund_amount"


# =============================================================================
# Failure Injection Tests
# =============================================================================


class TestFailureInjection:
    async def test_fail_next_then_recover(self, fake_adapter):
        fake_adapter.fail_next("create_customer", NetworkFailure("boom"), times=2)

        for _ in range(2):
            with pytest.raises(NetworkFailure):
                await fake_adapter.create_customer("ada@example.com")

        assert await fake_adapter.create_customer("ada@example.com")
        assert fake_adapter.call_counts["create_customer"] == 3

    async def test_fail_always_until_cleared(self, fake_adapter):
        fake_adapter.fail_always("validate_configuration", NetworkFailure("down"))

        with pytest.raises(NetworkFailure):
            await fake_adapter.validate_configuration()

        fake_adapter.clear_failures()
        await fake_adapter.validate_configuration()

    async def test_failure_rate(self, fake_config, clock):
        config = replace(fake_config, credentials=FakeCredentials(failure_rate=1.0))
        adapter = FakeAdapter(config, clock=clock)

        with pytest.raises(NetworkFailure) as exc_info:
            await adapter.create_customer("ada@example.com")

        assert exc_info.value.error_code == "simulated_failure"

    async def test_instances_are_independent(self, fake_adapter, fake_config, clock):
        customer = await fake_adapter.create_customer("ada@example.com")

        with pytest.raises(CustomerNotFound):
            await FakeAdapter(fake_config, clock=clock).get_customer(customer.id)


# =============================================================================
# Webhook and Configuration Tests
# =============================================================================


class TestWebhooks:
    async def test_signed_webhook_verifies(self, fake_adapter, clock):
        signature, body = fake_adapter.build_webhook(
            "evt_1", "subscription.canceled", {"subscription_id": "sub_1"}
        )

        event = await fake_adapter.handle_webhook(signature, body)

        assert signature.startswith(SIGNATURE_PREFIX)
        assert event.id == "evt_1"
        assert event.verified is True
        assert event.data == {"subscription_id": "sub_1"}
        assert event.created_at == clock.now()

    @pytest.mark.parametrize("signature", [None, "", "sig_abc", "fake_sig_0000"])
    async def test_bad_signature(self, fake_adapter, signature):
        _, body = fake_adapter.build_webhook("evt_1", "charge.succeeded", {})

        with pytest.raises(WebhookVerificationFailure):
            await fake_adapter.handle_webhook(signature, body)

    async def test_tampered_body(self, fake_adapter):
        signature, body = fake_adapter.build_webhook("evt_1", "charge.succeeded", {})

        with pytest.raises(WebhookVerificationFailure):
            await fake_adapter.handle_webhook(signature, body.replace(b"evt_1", b"evt_2"))

    async def test_missing_event_type(self, fake_adapter):
        body = b'{"id": "evt_1"}'

        with pytest.raises(WebhookVerificationFailure) as exc_info:
            await fake_adapter.handle_webhook(fake_adapter.sign_payload(body), body)

        assert exc_info.value.details["reason"] == "missing_event_type"


class TestValidateConfiguration:
    async def test_accepts_fake_key(self, fake_adapter):
        await fake_adapter.validate_configuration()

    async def test_rejects_other_key(self, fake_config, clock):
        config = replace(fake_config, credentials=FakeCredentials(api_key="bad"))

        with pytest.raises(InvalidConfiguration):
            await FakeAdapter(config, clock=clock).validate_configuration()
