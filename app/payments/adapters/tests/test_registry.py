"""
Tests for the adapter registry.

Tests cover:
- One adapter per configuration, built on first use
- Closed processor mapping and local credential validation
- Reinitialization: validate first, retire the old adapter, fire callbacks
"""

from dataclasses import replace
from functools import partial

import pytest

from payments.adapters import ADAPTER_FACTORIES, AdapterRegistry, FakeAdapter
from payments.config import FakeCredentials, ProcessorConfiguration, StripeCredentials
from payments.exceptions import InvalidConfiguration
from payments.models import ProcessorType


@pytest.fixture
def registry(clock):
    return AdapterRegistry(
        {**ADAPTER_FACTORIES, ProcessorType.FAKE: partial(FakeAdapter, clock=clock)}
    )


@pytest.fixture
def other_fake_config(fake_config):
    return replace(
        fake_config, credentials=FakeCredentials(webhook_secret="rotated_secret")
    )


class TestGet:
    def test_same_config_same_adapter(self, registry, fake_config):
        """Should build once and hand back the same instance."""
        first = registry.get(fake_config)
        second = registry.get(replace(fake_config))

        assert first is second
        assert registry.current is first

    def test_every_processor_has_a_factory(self):
        assert set(ADAPTER_FACTORIES) == set(ProcessorType)

    def test_invalid_credentials_rejected_before_build(self, registry):
        config = ProcessorConfiguration(
            processor_kind=ProcessorType.STRIPE,
            credentials=StripeCredentials(publishable_key="pk_test", secret_key="oops"),
        )

        with pytest.raises(InvalidConfiguration):
            registry.get(config)

        assert registry.current is None

    def test_unknown_kind(self, fake_config):
        registry = AdapterRegistry({ProcessorType.STRIPE: ADAPTER_FACTORIES[ProcessorType.STRIPE]})

        with pytest.raises(InvalidConfiguration, match="No adapter"):
            registry.get(fake_config)


class TestReinitialize:
    async def test_swaps_current_adapter(self, registry, fake_config, other_fake_config):
        old = registry.get(fake_config)

        new = await registry.reinitialize(other_fake_config)

        assert new is not old
        assert registry.current is new
        assert registry.get(other_fake_config) is new
        assert new.call_counts["validate_configuration"] == 1

    async def test_callbacks_run_before_return(self, registry, fake_config, other_fake_config):
        calls = []

        async def on_invalidate():
            calls.append(registry.current)

        registry.register_invalidation_callback(on_invalidate)
        registry.get(fake_config)

        new = await registry.reinitialize(other_fake_config)

        assert calls == [new]

    async def test_failed_validation_keeps_previous(self, registry, fake_config):
        """Should leave the previous adapter current when validation fails."""
        old = registry.get(fake_config)
        callback_calls = []

        async def on_invalidate():
            callback_calls.append(True)

        registry.register_invalidation_callback(on_invalidate)
        bad = replace(fake_config, credentials=FakeCredentials(api_key="bad"))

        with pytest.raises(InvalidConfiguration):
            await registry.reinitialize(bad)

        assert registry.current is old
        assert callback_calls == []

    async def test_old_adapter_retired_not_closed(self, registry, fake_config, other_fake_config):
        old = registry.get(fake_config)

        await registry.reinitialize(other_fake_config)

        assert old.closed is False
        await registry.aclose()
        assert old.closed is True
        assert registry.current is None

    async def test_same_config_gets_fresh_adapter(self, registry, fake_config):
        old = registry.get(fake_config)

        new = await registry.reinitialize(fake_config)

        assert new is not old
        assert registry.current is new
