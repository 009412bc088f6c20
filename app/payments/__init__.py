"""
Payments app: one API over interchangeable payment processors.

This app handles:
- Customer, subscription, payment method and charge operations
- Translation of every processor's data into the canonical model
- Cached reads with a freshness window and write-through updates
- Verified, deduplicated webhook reconciliation
- Retries for transient processor failures

Supported processors: Stripe, Paddle, Braintree, Lemon Squeezy,
Totalpay Global, and an in-memory fake for development and tests.

Usage:
    from payments.config import ProcessorConfiguration
    from payments.services import PaymentServiceHolder

    holder = PaymentServiceHolder(ProcessorConfiguration.from_settings())
    service = await holder.get()
    await service.initialize(email="ada@example.com")
    subscription = await service.subscribe(price_id="price_pro", trial_days=14)

    # Webhook endpoint
    outcome = await service.handle_webhook(signature, raw_body)
"""
