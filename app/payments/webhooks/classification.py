"""
Webhook event classification.

Each back-end names its events differently. EVENT_TYPES maps every native
type string this engine understands onto the canonical WebhookEventType
set. Anything not listed classifies as UNRECOGNIZED, which the engine
logs and drops so new back-end event types never break processing.
"""

from __future__ import annotations

from payments.models import ProcessorType, WebhookEventType

Canonical = WebhookEventType

STRIPE_EVENT_TYPES = {
    "customer.subscription.created": Canonical.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": Canonical.SUBSCRIPTION_UPDATED,
    "customer.subscription.paused": Canonical.SUBSCRIPTION_UPDATED,
    "customer.subscription.resumed": Canonical.SUBSCRIPTION_UPDATED,
    "customer.subscription.trial_will_end": Canonical.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": Canonical.SUBSCRIPTION_CANCELED,
    "invoice.paid": Canonical.SUBSCRIPTION_RENEWED,
    "invoice.payment_succeeded": Canonical.PAYMENT_SUCCEEDED,
    "payment_intent.succeeded": Canonical.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": Canonical.PAYMENT_FAILED,
    "payment_intent.payment_failed": Canonical.PAYMENT_FAILED,
    "payment_method.attached": Canonical.PAYMENT_METHOD_UPDATED,
    "payment_method.detached": Canonical.PAYMENT_METHOD_UPDATED,
    "payment_method.updated": Canonical.PAYMENT_METHOD_UPDATED,
    "payment_method.automatically_updated": Canonical.PAYMENT_METHOD_UPDATED,
}

PADDLE_EVENT_TYPES = {
    "subscription.created": Canonical.SUBSCRIPTION_CREATED,
    "subscription.activated": Canonical.SUBSCRIPTION_UPDATED,
    "subscription.updated": Canonical.SUBSCRIPTION_UPDATED,
    "subscription.trialing": Canonical.SUBSCRIPTION_UPDATED,
    "subscription.past_due": Canonical.SUBSCRIPTION_UPDATED,
    "subscription.paused": Canonical.SUBSCRIPTION_UPDATED,
    "subscription.resumed": Canonical.SUBSCRIPTION_UPDATED,
    "subscription.canceled": Canonical.SUBSCRIPTION_CANCELED,
    "transaction.completed": Canonical.PAYMENT_SUCCEEDED,
    "transaction.payment_failed": Canonical.PAYMENT_FAILED,
    "payment_method.saved": Canonical.PAYMENT_METHOD_UPDATED,
    "payment_method.deleted": Canonical.PAYMENT_METHOD_UPDATED,
}

BRAINTREE_EVENT_TYPES = {
    "subscription_went_active": Canonical.SUBSCRIPTION_UPDATED,
    "subscription_went_past_due": Canonical.SUBSCRIPTION_UPDATED,
    "subscription_trial_ended": Canonical.SUBSCRIPTION_UPDATED,
    "subscription_canceled": Canonical.SUBSCRIPTION_CANCELED,
    "subscription_expired": Canonical.SUBSCRIPTION_CANCELED,
    "subscription_charged_successfully": Canonical.SUBSCRIPTION_RENEWED,
    "subscription_charged_unsuccessfully": Canonical.PAYMENT_FAILED,
    "transaction_settled": Canonical.PAYMENT_SUCCEEDED,
    "transaction_settlement_declined": Canonical.PAYMENT_FAILED,
    "payment_method_revoked_by_customer": Canonical.PAYMENT_METHOD_UPDATED,
    "payment_method_customer_data_updated": Canonical.PAYMENT_METHOD_UPDATED,
}

LEMON_SQUEEZY_EVENT_TYPES = {
    "subscription_created": Canonical.SUBSCRIPTION_CREATED,
    "subscription_updated": Canonical.SUBSCRIPTION_UPDATED,
    "subscription_resumed": Canonical.SUBSCRIPTION_UPDATED,
    "subscription_paused": Canonical.SUBSCRIPTION_UPDATED,
    "subscription_unpaused": Canonical.SUBSCRIPTION_UPDATED,
    "subscription_cancelled": Canonical.SUBSCRIPTION_CANCELED,
    "subscription_expired": Canonical.SUBSCRIPTION_CANCELED,
    "subscription_payment_success": Canonical.PAYMENT_SUCCEEDED,
    "subscription_payment_recovered": Canonical.PAYMENT_SUCCEEDED,
    "order_created": Canonical.PAYMENT_SUCCEEDED,
    "subscription_payment_failed": Canonical.PAYMENT_FAILED,
}

TOTALPAY_EVENT_TYPES = {
    "subscription.created": Canonical.SUBSCRIPTION_CREATED,
    "subscription.updated": Canonical.SUBSCRIPTION_UPDATED,
    "subscription.canceled": Canonical.SUBSCRIPTION_CANCELED,
    "subscription.cancelled": Canonical.SUBSCRIPTION_CANCELED,
    "subscription.renewed": Canonical.SUBSCRIPTION_RENEWED,
    "payment.success": Canonical.PAYMENT_SUCCEEDED,
    "payment.completed": Canonical.PAYMENT_SUCCEEDED,
    "payment.declined": Canonical.PAYMENT_FAILED,
    "payment.failed": Canonical.PAYMENT_FAILED,
    "card.updated": Canonical.PAYMENT_METHOD_UPDATED,
}

# The fake back-end emits canonical type strings directly
FAKE_EVENT_TYPES = {
    value: Canonical(value) for value in Canonical.values if value != Canonical.UNRECOGNIZED
}

EVENT_TYPES: dict[ProcessorType, dict[str, WebhookEventType]] = {
    ProcessorType.STRIPE: STRIPE_EVENT_TYPES,
    ProcessorType.PADDLE: PADDLE_EVENT_TYPES,
    ProcessorType.BRAINTREE: BRAINTREE_EVENT_TYPES,
    ProcessorType.LEMON_SQUEEZY: LEMON_SQUEEZY_EVENT_TYPES,
    ProcessorType.TOTALPAY_GLOBAL: TOTALPAY_EVENT_TYPES,
    ProcessorType.FAKE: FAKE_EVENT_TYPES,
}


def classify(processor: ProcessorType, event_type: str) -> WebhookEventType:
    """Map a back-end event type string to its canonical type."""
    return EVENT_TYPES.get(processor, {}).get(event_type, WebhookEventType.UNRECOGNIZED)
