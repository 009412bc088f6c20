"""
Tests for the payment orchestration facade.

Tests cover:
- Initialization, credential validation and customer reuse
- Subscription lifecycle and trial/grace access checks
- Cache freshness, forced refresh and write-through after writes
- Retry behaviour as seen by callers
- Webhook delivery through the facade
- Processor switching through PaymentServiceHolder
"""

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from payments.cache import CacheKind, entry_key
from payments.config import FakeCredentials
from payments.exceptions import (
    InvalidConfiguration,
    NetworkFailure,
    NotInitialized,
    RetriesExhausted,
    UnsupportedOperation,
    ValidationFailure,
)
from payments.models import ChargeStatus, ProcessorType, SubscriptionStatus
from payments.services import PaymentService, build_payment_service
from payments.services.payment_service import active_key
from payments.webhooks import WebhookOutcome


# =============================================================================
# Initialization
# =============================================================================


class TestInitialize:
    async def test_creates_customer(self, service, fake_adapter):
        customer = await service.initialize("ada@example.com", name="Ada")

        assert service.is_initialized
        assert service.customer_id == customer.id
        assert service.profile == ("ada@example.com", "Ada", None)
        assert fake_adapter.call_counts["validate_configuration"] == 1
        assert fake_adapter.call_counts["create_customer"] == 1

    async def test_reuses_cached_customer(self, service, fake_adapter, cache, storage, clock, retry):
        """Should not create a second back-end customer for the same email."""
        first = await service.initialize("ada@example.com")
        again = PaymentService(fake_adapter, cache, storage, clock, retry=retry)

        second = await again.initialize("ADA@example.com")

        assert second.id == first.id
        assert fake_adapter.call_counts["create_customer"] == 1

    async def test_different_email_creates_customer(self, service, fake_adapter):
        await service.initialize("ada@example.com")

        await service.initialize("grace@example.com")

        assert fake_adapter.call_counts["create_customer"] == 2

    async def test_switching_customer_hides_previous_access(self, service):
        """Should not report the previous customer's subscription for the new one."""
        await service.initialize("ada@example.com")
        await service.subscribe("price_pro", trial_days=14)
        assert await service.has_active_subscription() is True

        await service.initialize("bob@example.com")

        assert await service.get_active_subscription() is None
        assert await service.has_active_subscription() is False
        assert await service.is_on_trial() is False

    async def test_active_subscriptions_cached_per_customer(
        self, service, fake_adapter, cache, storage, clock, retry
    ):
        await service.initialize("ada@example.com")
        await service.subscribe("price_pro", trial_days=14)
        assert await service.has_active_subscription() is True
        other = PaymentService(fake_adapter, cache, storage, clock, retry=retry)

        bob = await other.initialize("bob@example.com")

        assert await other.has_active_subscription() is False
        assert await service.has_active_subscription() is True
        assert await storage.contains_key(
            entry_key(CacheKind.ACTIVE_SUBSCRIPTIONS, active_key(bob.id))
        )

    @pytest.mark.parametrize("email",["", "ada", "ada@", "a b@example.com"])
    async def test_invalid_email(self, service, fake_adapter, email):
        with pytest.raises(ValidationFailure):
            await service.initialize(email)

        assert fake_adapter.call_counts["validate_configuration"] == 0

    async def test_rejected_credentials_create_nothing(self, fake_config, storage, clock, retry):
        """Should fail validation before any customer is created."""
        config = replace(fake_config, credentials=FakeCredentials(api_key="bad"))
        service = build_payment_service(config, storage, clock, retry=retry)

        with pytest.raises(InvalidConfiguration):
            await service.initialize("ada@example.com")

        assert service.adapter.call_counts["create_customer"] == 0
        assert not service.is_initialized

    async def test_validates_once(self, service, fake_adapter):
        await service.initialize("ada@example.com")
        await service.initialize("ada@example.com")

        assert fake_adapter.call_counts["validate_configuration"] == 1

    @pytest.mark.parametrize(
        "call",
        [
            lambda s: s.subscribe("price_pro", trial_days=7),
            lambda s: s.get_subscriptions(),
            lambda s: s.get_payment_methods(),
            lambda s: s.make_payment(1000),
            lambda s: s.get_payment_history(),
            lambda s: s.get_current_customer(),
        ],
    )
    async def test_requires_initialize(self, service, fake_adapter, call):
        with pytest.raises(NotInitialized):
            await call(service)

        assert sum(fake_adapter.call_counts.values()) == 0


# =============================================================================
# Subscriptions
# =============================================================================


class TestSubscribe:
    async def test_subscribe_with_trial(self, service, customer, clock):
        subscription = await service.subscribe("price_pro", trial_days=14)

        assert subscription.status == SubscriptionStatus.TRIALING
        assert subscription.customer_id == customer.id
        assert await service.is_on_trial() is True
        assert await service.has_active_subscription() is True

    async def test_trial_ends(self, service, customer, clock):
        await service.subscribe("price_pro", trial_days=14)

        clock.advance(timedelta(days=15).total_seconds())

        assert await service.is_on_trial() is False

    async def test_subscribe_with_token_sets_default(self, service, customer, fake_adapter):
        subscription = await service.subscribe("price_pro", payment_method_token="tok_visa")

        default = await service.get_default_payment_method()

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert default.metadata == {"token": "tok_visa"}
        assert fake_adapter.call_counts["list_payment_methods"] == 0

    async def test_idempotency_key_derived_from_customer(self, service, customer, fake_adapter):
        await service.subscribe("price_pro", trial_days=7)

        assert fake_adapter.idempotency_keys[0].startswith(
            f"create_subscription:{customer.id}:1:"
        )

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"price_id": ""},
            {"price_id": "price_pro", "quantity": 0},
            {"price_id": "price_pro", "trial_days": -1},
        ],
    )
    async def test_invalid_input(self, service, customer, fake_adapter, kwargs):
        with pytest.raises(ValidationFailure):
            await service.subscribe(**kwargs)

        assert fake_adapter.call_counts["create_subscription"] == 0

    async def test_trial_unsupported(self, service, customer, fake_adapter, monkeypatch):
        monkeypatch.setattr(fake_adapter, "supports_trial_periods", False)

        with pytest.raises(UnsupportedOperation):
            await service.subscribe("price_pro", trial_days=7)

        assert fake_adapter.call_counts["create_subscription"] == 0

    async def test_plan_swap_unsupported(self, service, customer, fake_adapter, monkeypatch):
        subscription = await service.subscribe("price_pro", trial_days=7)
        monkeypatch.setattr(fake_adapter, "supports_plan_swapping", False)

        with pytest.raises(UnsupportedOperation):
            await service.change_plan(subscription.id, "price_max")

    async def test_cancel_and_resume(self, service, customer, card, clock):
        subscription = await service.subscribe("price_pro")

        canceled = await service.cancel_subscription(subscription.id)
        assert canceled.is_on_grace_period(clock.now())
        assert await service.has_active_subscription() is True

        resumed = await service.resume_subscription(subscription.id)
        assert resumed.cancel_at_period_end is False

    async def test_immediate_cancel_revokes_access(self, service, customer, card):
        subscription = await service.subscribe("price_pro")

        await service.cancel_subscription(subscription.id, immediate=True)

        assert await service.has_active_subscription() is False

    async def test_product_filter(self, service, customer):
        subscription = await service.subscribe("price_pro", trial_days=7)

        assert await service.get_active_subscription(subscription.product_id) == subscription
        assert await service.get_active_subscription("prod_other") is None


class TestGraceAccess:
    async def make_past_due(self, service, fake_adapter, clock, days_overdue):
        subscription = await service.subscribe("price_pro", trial_days=7)
        fake_adapter.put_subscription(
            replace(
                subscription,
                status=SubscriptionStatus.PAST_DUE,
                current_period_end=clock.now() - timedelta(days=days_overdue),
            )
        )
        await service.refresh_subscriptions()
        return subscription

    async def test_past_due_inside_grace(self, service, customer, fake_adapter, clock):
        subscription = await self.make_past_due(service, fake_adapter, clock, days_overdue=3)

        assert await service.has_active_subscription() is True
        assert await service.days_until_due(subscription.id) == 4

    async def test_past_due_after_grace(self, service, customer, fake_adapter, clock):
        subscription = await self.make_past_due(service, fake_adapter, clock, days_overdue=8)

        assert await service.has_active_subscription() is False
        assert await service.days_until_due(subscription.id) == -1

    async def test_days_until_due_only_for_past_due(self, service, customer):
        subscription = await service.subscribe("price_pro", trial_days=7)

        assert await service.days_until_due(subscription.id) is None


# =============================================================================
# Caching
# =============================================================================


class TestCacheFreshness:
    async def test_reads_inside_window_skip_backend(self, service, customer, fake_adapter):
        await service.get_subscriptions()
        await service.get_subscriptions()

        assert fake_adapter.call_counts["list_subscriptions"] == 1

    async def test_stale_after_window(self, service, customer, fake_adapter, clock):
        await service.get_subscriptions()

        clock.advance(301)
        await service.get_subscriptions()

        assert fake_adapter.call_counts["list_subscriptions"] == 2

    async def test_force_refresh(self, service, customer, fake_adapter):
        await service.get_subscriptions()

        await service.get_subscriptions(force_refresh=True)

        assert fake_adapter.call_counts["list_subscriptions"] == 2

    async def test_out_of_band_change_visible_after_refresh(self, service, customer, fake_adapter):
        subscription = await service.subscribe("price_pro", trial_days=7)
        fake_adapter.put_subscription(replace(subscription, quantity=9))

        cached = await service.get_subscription(subscription.id)
        refreshed = await service.get_subscription(subscription.id, force_refresh=True)

        assert cached.quantity == 1
        assert refreshed.quantity == 9
        assert fake_adapter.call_counts["get_subscription"] == 1

    async def test_current_customer_cached_at_initialize(self, service, customer, fake_adapter):
        assert await service.get_current_customer() == customer
        assert fake_adapter.call_counts["get_customer"] == 0

        await service.refresh_customer()
        assert fake_adapter.call_counts["get_customer"] == 1

    async def test_clear_cache_keeps_customer(self, service, customer, fake_adapter, storage):
        await service.get_subscriptions()

        await service.clear_cache()

        assert service.is_initialized
        assert not await storage.contains_key(entry_key(CacheKind.SUBSCRIPTIONS, customer.id))
        await service.get_current_customer()
        assert fake_adapter.call_counts["get_customer"] == 1


class TestWriteThrough:
    async def test_subscription_change_updates_cached_list(self, service, customer, card, fake_adapter):
        subscription = await service.subscribe("price_pro")
        await service.get_subscriptions()

        await service.cancel_subscription(subscription.id)
        subscriptions = await service.get_subscriptions()

        assert [s.cancel_at_period_end for s in subscriptions] == [True]
        assert fake_adapter.call_counts["list_subscriptions"] == 1

    async def test_new_subscription_served_from_cache(self, service, customer, fake_adapter):
        subscription = await service.subscribe("price_pro", trial_days=7)

        assert await service.get_subscription(subscription.id) == subscription
        assert fake_adapter.call_counts["get_subscription"] == 0

    async def test_charge_prepended_to_history(self, service, customer, card, fake_adapter):
        assert await service.get_payment_history() == []

        charge = await service.make_payment(2500, "USD", description="Top-up")

        assert charge.currency == "usd"
        assert await service.get_payment_history() == [charge]
        assert fake_adapter.call_counts["list_charges"] == 1

    async def test_refund_updates_history(self, service, customer, card):
        charge = await service.make_payment(2500)
        await service.get_payment_history()

        refunded = await service.refund_payment(charge.id)

        history = await service.get_payment_history()
        assert refunded.status == ChargeStatus.REFUNDED
        assert history[0].status == ChargeStatus.REFUNDED

    async def test_default_method_switch(self, service, customer, card, fake_adapter):
        await service.get_payment_methods()

        second = await service.add_payment_method("tok_mc", set_as_default=True)
        methods = await service.get_payment_methods()

        assert [m.id for m in methods if m.is_default] == [second.id]
        assert await service.get_default_payment_method() == second
        assert fake_adapter.call_counts["list_payment_methods"] == 1

    async def test_set_default_by_id(self, service, customer, card):
        second = await service.add_payment_method("tok_mc")

        await service.set_default_payment_method(card.id)
        await service.set_default_payment_method(second.id)

        assert (await service.get_default_payment_method()).id == second.id

    async def test_remove_method(self, service, customer, card, fake_adapter):
        second = await service.add_payment_method("tok_mc")
        await service.get_payment_methods()

        await service.remove_payment_method(second.id)

        assert [m.id for m in await service.get_payment_methods()] == [card.id]
        assert fake_adapter.call_counts["list_payment_methods"] == 1

    @pytest.mark.parametrize(
        "amount,currency",
        [(0, "usd"), (-5, "usd"), (10.5, "usd"), (True, "usd"), (100, "dollars"), (100, "")],
    )
    async def test_invalid_payment(self, service, customer, fake_adapter, amount, currency):
        with pytest.raises(ValidationFailure):
            await service.make_payment(amount, currency)

        assert fake_adapter.call_counts["create_charge"] == 0


# =============================================================================
# Retries
# =============================================================================


class TestRetries:
    async def test_transient_failure_retried_with_same_key(
        self, service, customer, card, fake_adapter, sleeps
    ):
        fake_adapter.fail_next("create_charge", NetworkFailure("blip"))

        charge = await service.make_payment(1000)

        assert charge.status == ChargeStatus.SUCCEEDED
        assert sleeps == [2.0]
        assert fake_adapter.call_counts["create_charge"] == 2

    async def test_exhausted(self, service, customer, fake_adapter, sleeps):
        fake_adapter.fail_always("list_charges", NetworkFailure("down"))

        with pytest.raises(RetriesExhausted) as exc_info:
            await service.get_payment_history()

        assert exc_info.value.attempts == 3
        assert sleeps == [2.0, 4.0]


# =============================================================================
# Webhooks
# =============================================================================


class TestWebhooks:
    async def test_cancel_event_updates_cache(self, service, customer, fake_adapter):
        subscription = await service.subscribe("price_pro", trial_days=7)
        signature, body = fake_adapter.build_webhook(
            "evt_1", "subscription.canceled", {"subscription_id": subscription.id}
        )

        result = await service.handle_webhook(signature, body)

        assert result.outcome == WebhookOutcome.PROCESSED
        cached = await service.get_subscription(subscription.id)
        assert cached.status == SubscriptionStatus.CANCELED
        assert fake_adapter.call_counts["get_subscription"] == 0

    async def test_failure_threshold(self, service, customer, fake_adapter):
        for n in range(3):
            signature, body = fake_adapter.build_webhook(
                f"evt_{n}", "payment.failed", {"subscription_id": "fake_sub_1"}
            )
            await service.handle_webhook(signature, body)

        assert await service.payment_failure_count("fake_sub_1") == 3
        assert await service.exceeds_failure_threshold("fake_sub_1") is True


# =============================================================================
# Wiring and Reconfiguration
# =============================================================================


class TestBuildPaymentService:
    async def test_builds_fake_service(self, fake_config, storage, clock, retry):
        service = build_payment_service(fake_config, storage, clock, retry=retry)

        assert service.processor == ProcessorType.FAKE
        assert service.cache.storage is storage
        assert service.webhooks.failure_threshold == 3
        assert service.grace_days == 7


class TestReinitialize:
    async def test_switch_isolates_state(self, holder, rotated_config):
        """Should start the new back-end with an empty cache and a fresh customer."""
        old = await holder.get()
        old_customer = await old.initialize("ada@example.com", name="Ada")
        subscription = await old.subscribe("price_pro", trial_days=14)

        new = await holder.reinitialize(rotated_config)

        assert new is not old
        assert old.retired is True
        assert await holder.get() is new
        assert new.is_initialized
        assert new.customer_id != old_customer.id
        assert new.profile == old.profile
        assert await holder.cache.get_subscription(subscription.id) is None
        assert await new.get_subscriptions() == []

    async def test_retired_service_cannot_write_cache(self, holder, rotated_config):
        old = await holder.get()
        await old.initialize("ada@example.com")
        await holder.reinitialize(rotated_config)

        late = await old.subscribe("price_pro", trial_days=7)

        assert await holder.cache.get_subscription(late.id) is None

    async def test_retired_reads_bypass_shared_cache(self, holder, rotated_config, storage):
        """Should serve a stale reference from its own back-end without caching anything."""
        old = await holder.get()
        await old.initialize("ada@example.com")
        subscription = await old.subscribe("price_pro", trial_days=14)
        new = await holder.reinitialize(rotated_config)

        assert (await old.get_active_subscription()).id == subscription.id
        assert [item.id for item in await old.get_subscriptions()] == [subscription.id]
        assert (await old.get_subscription(subscription.id)).id == subscription.id
        assert (await old.get_current_customer()).id == old.customer_id
        await old.get_payment_methods()
        await old.get_default_payment_method()
        await old.get_payment_history()

        keys = await storage.keys()
        assert not any(old.customer_id in key or subscription.id in key for key in keys)
        assert await new.get_active_subscription() is None
        assert await new.has_active_subscription() is False

    async def test_read_in_flight_across_swap_is_dropped(
        self, holder, rotated_config, storage, monkeypatch
    ):
        """Should drop the result of a slow read that completes after the switch."""
        old = await holder.get()
        await old.initialize("ada@example.com")
        subscription = await old.subscribe("price_pro", trial_days=14)
        started = asyncio.Event()
        release = asyncio.Event()
        list_subscriptions = old.adapter.list_subscriptions

        async def delayed_list(customer_id):
            started.set()
            await release.wait()
            return await list_subscriptions(customer_id)

        monkeypatch.setattr(old.adapter, "list_subscriptions", delayed_list)
        pending = asyncio.create_task(old.get_active_subscription())
        await started.wait()

        new = await holder.reinitialize(rotated_config)
        assert not pending.done()
        release.set()
        active = await pending

        assert active.id == subscription.id
        keys = await storage.keys()
        assert not any(old.customer_id in key or subscription.id in key for key in keys)
        assert await new.get_active_subscription() is None

    async def test_write_in_flight_across_swap_is_dropped(
        self, holder, rotated_config, monkeypatch
    ):
        old = await holder.get()
        await old.initialize("ada@example.com")
        started = asyncio.Event()
        release = asyncio.Event()
        create_subscription = old.adapter.create_subscription

        async def delayed_create(*args, **kwargs):
            started.set()
            await release.wait()
            return await create_subscription(*args, **kwargs)

        monkeypatch.setattr(old.adapter, "create_subscription", delayed_create)
        pending = asyncio.create_task(old.subscribe("price_pro", trial_days=7))
        await started.wait()

        new = await holder.reinitialize(rotated_config)
        release.set()
        late = await pending

        assert await holder.cache.get_subscription(late.id) is None
        assert await new.has_active_subscription() is False

    async def test_rejected_config_keeps_current(self, holder, fake_config):
        current = await holder.get()
        await current.initialize("ada@example.com")
        subscription = await current.subscribe("price_pro", trial_days=7)
        bad = replace(fake_config, credentials=FakeCredentials(api_key="bad"))

        with pytest.raises(InvalidConfiguration):
            await holder.reinitialize(bad)

        assert await holder.get() is current
        assert current.retired is False
        assert holder.config == fake_config
        assert await holder.cache.get_subscription(subscription.id) == subscription

    async def test_get_waits_for_swap(self, holder, fake_config):
        await holder.get()
        slow = replace(
            fake_config,
            credentials=FakeCredentials(
                simulate_delays=True, delay_seconds=0.01, api_key="fake_slow"
            ),
        )

        swap = asyncio.create_task(holder.reinitialize(slow))
        await asyncio.sleep(0)
        current = await holder.get()

        assert current is await swap
        assert holder.config == slow

    async def test_uninitialized_service_not_reinitialized(self, holder, rotated_config):
        await holder.get()

        new = await holder.reinitialize(rotated_config)

        assert not new.is_initialized
