"""
Webhook event handlers.

This module provides a handler registry keyed by canonical
WebhookEventType and the handlers that apply each event to cached state.

Handlers only touch the cache layer and the engine's storage; they never
call the back-end. Each returns a ServiceResult: a failure leaves the event
unrecorded so a redelivery can apply it again.

Usage:
    from payments.webhooks.handlers import register_handler

    @register_handler(WebhookEventType.SUBSCRIPTION_UPDATED)
    async def handle_subscription_updated(engine, event) -> ServiceResult:
        ...
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from core.services import ServiceResult

from payments.cache import CacheKind
from payments.models import SubscriptionStatus, WebhookEventType

if TYPE_CHECKING:
    from typing import Any, Awaitable

    from payments.models import Subscription, WebhookEvent
    from payments.webhooks.engine import WebhookReconciliationEngine

    Handler = Callable[[WebhookReconciliationEngine, WebhookEvent], Awaitable[ServiceResult]]


logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


# Maps canonical event types to handler coroutines
WEBHOOK_HANDLERS: dict[WebhookEventType, Handler] = {}


def register_handler(event_type: WebhookEventType) -> Callable:
    """
    Decorator to register a webhook event handler.

    Args:
        event_type: The canonical event type the handler applies

    Returns:
        Decorator function that registers the handler
    """

    def decorator(func: Handler) -> Handler:
        WEBHOOK_HANDLERS[event_type] = func
        logger.debug(f"Registered webhook handler for {event_type}")
        return func

    return decorator


# =============================================================================
# Shared Helpers
# =============================================================================


async def invalidate_subscription_lists(
    engine: WebhookReconciliationEngine, customer_id: str | None
) -> None:
    """Drop list-level entries a changed subscription may belong to."""
    if customer_id:
        await engine.cache.invalidate(CacheKind.SUBSCRIPTIONS, customer_id)
    else:
        await engine.cache.invalidate_kind(CacheKind.SUBSCRIPTIONS)
    await engine.cache.invalidate_kind(CacheKind.ACTIVE_SUBSCRIPTIONS)


async def apply_subscription_change(
    engine: WebhookReconciliationEngine,
    event: WebhookEvent,
    overrides: dict[str, Any] | None = None,
) -> ServiceResult[Subscription | None]:
    """
    Merge the event's subscription fields into the cached copy.

    A subscription that is not cached is left for the next read to fetch;
    the list entries are invalidated either way.
    """
    subscription_id = engine.parser.subscription_id(event)
    if not subscription_id:
        logger.error(
            f"{event.type}: Could not extract subscription id",
            extra={"event_id": event.id, "processor": str(event.processor)},
        )
        return ServiceResult.failure(
            "Webhook payload has no subscription id",
            error_code="missing_subscription_id",
        )

    fields = {**engine.parser.subscription_fields(event), **(overrides or {})}
    try:
        merged = await engine.cache.merge_subscription(
            subscription_id, fields, source_timestamp=event.created_at
        )
    except (ValueError, TypeError) as e:
        logger.error(
            f"{event.type}: Malformed subscription fields",
            extra={"event_id": event.id, "subscription_id": subscription_id},
        )
        return ServiceResult.from_exception(
            e, error_code="malformed_payload", details={"fields": sorted(fields)}
        )
    customer_id = engine.parser.customer_id(event) or (
        merged.customer_id if merged else None
    )
    await invalidate_subscription_lists(engine, customer_id)

    logger.info(
        f"Applied {event.canonical_type} to subscription",
        extra={
            "event_id": event.id,
            "subscription_id": subscription_id,
            "merged": merged is not None,
            "fields": sorted(fields),
        },
    )
    return ServiceResult.success(merged)


# =============================================================================
# Subscription Handlers
# =============================================================================


@register_handler(WebhookEventType.SUBSCRIPTION_CREATED)
async def handle_subscription_created(engine, event) -> ServiceResult:
    return await apply_subscription_change(engine, event)


@register_handler(WebhookEventType.SUBSCRIPTION_UPDATED)
async def handle_subscription_updated(engine, event) -> ServiceResult:
    return await apply_subscription_change(engine, event)


@register_handler(WebhookEventType.SUBSCRIPTION_CANCELED)
async def handle_subscription_canceled(engine, event) -> ServiceResult:
    """Force the canceled status whatever the back-end reported."""
    fields = engine.parser.subscription_fields(event)
    overrides: dict[str, Any] = {"status": SubscriptionStatus.CANCELED}
    if not fields.get("canceled_at"):
        overrides["canceled_at"] = event.created_at or engine.clock.now()
    return await apply_subscription_change(engine, event, overrides)


@register_handler(WebhookEventType.SUBSCRIPTION_RENEWED)
async def handle_subscription_renewed(engine, event) -> ServiceResult:
    result = await apply_subscription_change(engine, event)
    if result.success:
        await engine.reset_failures(engine.parser.subscription_id(event))
    return result


# =============================================================================
# Payment Handlers
# =============================================================================


@register_handler(WebhookEventType.PAYMENT_SUCCEEDED)
async def handle_payment_succeeded(engine, event) -> ServiceResult:
    """
    Reset the failure streak and make the charge visible in history.

    The charges list is invalidated rather than patched; the event's
    idempotency record guarantees this runs once per charge event.
    """
    subscription_id = engine.parser.subscription_id(event, payment=True)
    customer_id = engine.parser.customer_id(event)
    if subscription_id:
        await engine.reset_failures(subscription_id)
    if customer_id:
        await engine.cache.invalidate(CacheKind.CHARGES, customer_id)
    else:
        await engine.cache.invalidate_kind(CacheKind.CHARGES)

    logger.info(
        "Recorded successful payment",
        extra={
            "event_id": event.id,
            "charge_id": engine.parser.charge_id(event),
            "subscription_id": subscription_id,
        },
    )
    return ServiceResult.success({"subscription_id": subscription_id, "failure_count": 0})


@register_handler(WebhookEventType.PAYMENT_FAILED)
async def handle_payment_failed(engine, event) -> ServiceResult:
    subscription_id = engine.parser.subscription_id(event, payment=True)
    customer_id = engine.parser.customer_id(event)
    if customer_id:
        await engine.cache.invalidate(CacheKind.CHARGES, customer_id)

    if not subscription_id:
        logger.info(
            "Payment failure not tied to a subscription",
            extra={"event_id": event.id, "charge_id": engine.parser.charge_id(event)},
        )
        return ServiceResult.success({"subscription_id": None, "failure_count": 0})

    count = await engine.record_failure(subscription_id)
    if count >= engine.failure_threshold:
        logger.warning(
            "Subscription reached payment failure threshold",
            extra={
                "event_id": event.id,
                "subscription_id": subscription_id,
                "failure_count": count,
                "threshold": engine.failure_threshold,
            },
        )
    return ServiceResult.success({"subscription_id": subscription_id, "failure_count": count})


# =============================================================================
# Payment Method Handlers
# =============================================================================


@register_handler(WebhookEventType.PAYMENT_METHOD_UPDATED)
async def handle_payment_method_updated(engine, event) -> ServiceResult:
    customer_id = engine.parser.customer_id(event)
    for kind in (CacheKind.PAYMENT_METHODS, CacheKind.DEFAULT_PAYMENT_METHOD):
        if customer_id:
            await engine.cache.invalidate(kind, customer_id)
        else:
            await engine.cache.invalidate_kind(kind)
    return ServiceResult.success({"customer_id": customer_id})
