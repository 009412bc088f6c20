"""
Payment services.

This module provides:
- PaymentService: Facade over one adapter, the cache and webhooks
- PaymentServiceHolder: Owns the current facade across processor switches
- build_payment_service: Wires a PaymentService for a configuration

Usage:
    from payments.services import PaymentServiceHolder

    holder = PaymentServiceHolder(ProcessorConfiguration.from_settings())
    service = await holder.get()
    await service.initialize("ada@example.com")
"""

from payments.services.payment_service import (
    PaymentService,
    PaymentServiceHolder,
    build_payment_service,
    default_factories,
)

__all__ = [
    "PaymentService",
    "PaymentServiceHolder",
    "build_payment_service",
    "default_factories",
]
