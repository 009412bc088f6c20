"""
Adapter registry.

Maps each ProcessorType to the factory that builds its adapter. The
mapping is closed: there is exactly one adapter per processor kind and
no runtime registration of new kinds.

The registry builds an adapter once per ProcessorConfiguration value and
hands the same instance back for the rest of the process lifetime.
reinitialize() validates an adapter for a new configuration, swaps it in,
retires the old one and fires the invalidation callbacks (the cache layer registers one)
so no entity fetched from the previous back-end survives the switch.

Usage:
    registry = AdapterRegistry()
    registry.register_invalidation_callback(cache.invalidate_all)

    adapter = registry.get(config)
    adapter = await registry.reinitialize(new_config)
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from payments.adapters.braintree_adapter import BraintreeAdapter
from payments.adapters.fake_adapter import FakeAdapter
from payments.adapters.lemon_squeezy_adapter import LemonSqueezyAdapter
from payments.adapters.paddle_adapter import PaddleAdapter
from payments.adapters.stripe_adapter import StripeAdapter
from payments.adapters.totalpay_adapter import TotalpayAdapter
from payments.exceptions import InvalidConfiguration
from payments.models import ProcessorType

if TYPE_CHECKING:
    from typing import Any, Awaitable, Callable

    from payments.adapters.base import ProcessorAdapter
    from payments.config import ProcessorConfiguration

    AdapterFactory = Callable[..., ProcessorAdapter]
    InvalidationCallback = Callable[[], Awaitable[Any]]

logger = logging.getLogger(__name__)

ADAPTER_FACTORIES: dict[ProcessorType, type[ProcessorAdapter]] = {
    ProcessorType.STRIPE: StripeAdapter,
    ProcessorType.PADDLE: PaddleAdapter,
    ProcessorType.BRAINTREE: BraintreeAdapter,
    ProcessorType.LEMON_SQUEEZY: LemonSqueezyAdapter,
    ProcessorType.TOTALPAY_GLOBAL: TotalpayAdapter,
    ProcessorType.FAKE: FakeAdapter,
}


class AdapterRegistry:
    """
    Builds and caches one adapter per configuration.

    Args:
        factories: Override for ADAPTER_FACTORIES. Keys must still be
            ProcessorType members; tests use this to inject adapters
            built with a mock transport or a frozen clock.
    """

    def __init__(self, factories: dict[ProcessorType, AdapterFactory] | None = None):
        self._factories: dict[ProcessorType, AdapterFactory] = dict(
            factories or ADAPTER_FACTORIES
        )
        self._adapters: dict[ProcessorConfiguration, ProcessorAdapter] = {}
        self._current: ProcessorConfiguration | None = None
        self._retired: list[ProcessorAdapter] = []
        self._callbacks: list[InvalidationCallback] = []
        self._lock = asyncio.Lock()

    @property
    def current(self) -> ProcessorAdapter | None:
        if self._current is None:
            return None
        return self._adapters.get(self._current)

    def register_invalidation_callback(self, callback: InvalidationCallback) -> None:
        self._callbacks.append(callback)

    def get(self, config: ProcessorConfiguration) -> ProcessorAdapter:
        """
        Return the adapter for config, building it on first use.

        Raises:
            InvalidConfiguration: Unknown processor kind or bad credentials
        """
        adapter = self._adapters.get(config)
        if adapter is not None:
            return adapter

        adapter = self._build(config)
        self._adapters[config] = adapter
        if self._current is None:
            self._current = config
        logger.info(
            "Payment adapter created",
            extra={"processor": str(config.processor_kind)},
        )
        return adapter

    async def reinitialize(self, config: ProcessorConfiguration) -> ProcessorAdapter:
        """
        Replace the current adapter with one for config.

        The new adapter is built and validated against its back-end before
        anything changes; a failure leaves the previous adapter current.
        Replaced adapters are retired rather than closed so calls already
        issued through them can finish. They are closed by aclose().
        Every invalidation callback runs before the new adapter is returned.

        Raises:
            InvalidConfiguration: Bad credentials or unreachable back-end
            NetworkFailure: Validation could not reach the back-end
        """
        async with self._lock:
            adapter = self._build(config)
            try:
                await adapter.validate_configuration()
            except Exception:
                await adapter.aclose()
                raise

            previous = self._current
            for key in {previous, config}:
                if key is not None and key in self._adapters:
                    self._retired.append(self._adapters.pop(key))
            self._adapters[config] = adapter
            self._current = config

            for callback in self._callbacks:
                await callback()

            logger.info(
                "Payment adapter reinitialized",
                extra={
                    "previous_processor": str(previous.processor_kind) if previous else None,
                    "processor": str(config.processor_kind),
                },
            )
            return adapter

    async def aclose(self) -> None:
        for adapter in [*self._adapters.values(), *self._retired]:
            await adapter.aclose()
        self._adapters.clear()
        self._retired.clear()
        self._current = None

    def _build(self, config: ProcessorConfiguration) -> ProcessorAdapter:
        factory = self._factories.get(config.processor_kind)
        if factory is None:
            raise InvalidConfiguration(
                f"No adapter for processor {config.processor_kind}",
                details={"processor": str(config.processor_kind)},
            )
        config.validate()
        return factory(config)
