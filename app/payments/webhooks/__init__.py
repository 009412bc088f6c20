"""
Webhook reconciliation for payment back-end events.

Inbound deliveries are verified by the active adapter, deduplicated by
event id, classified into canonical event types and applied to cached
state by registered handlers.

Usage:
    from payments.webhooks import WebhookReconciliationEngine

    engine = WebhookReconciliationEngine(adapter, cache, storage, clock)
    result = await engine.process(request.headers["Stripe-Signature"], request.body)
"""

from payments.webhooks.classification import classify
from payments.webhooks.engine import (
    WebhookOutcome,
    WebhookReconciliationEngine,
    WebhookResult,
)
from payments.webhooks.handlers import WEBHOOK_HANDLERS, register_handler
from payments.webhooks.parsers import WebhookPayloadParser, parser_for

__all__ = [
    "WEBHOOK_HANDLERS",
    "WebhookOutcome",
    "WebhookPayloadParser",
    "WebhookReconciliationEngine",
    "WebhookResult",
    "classify",
    "parser_for",
    "register_handler",
]
