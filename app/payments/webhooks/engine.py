"""
Webhook reconciliation engine.

Processes one inbound webhook delivery end to end:

    1. Verify   - the adapter checks the signature; a failure raises
                  WebhookException and nothing else runs.
    2. Claim    - deliveries of the same event id are serialized by a
                  per-id lock, checked against the in-process seen set,
                  then claimed by atomically adding a ``processing`` marker
                  under ``webhook:<event id>``. A delivery that finds the
                  record already there, processed or in flight on another
                  worker, is a duplicate.
    3. Classify - the native type maps onto a canonical WebhookEventType.
                  Unrecognized types are logged and dropped.
    4. Apply    - the registered handler updates cached state.
    5. Persist  - on success the marker is replaced by the processing
                  timestamp. On failure it is removed, so the event can be
                  redelivered.

Deliveries with distinct event ids run fully in parallel.

Usage:
    engine = WebhookReconciliationEngine(adapter, cache, storage, clock)
    result = await engine.process(signature, raw_payload)
    if result.outcome == WebhookOutcome.DUPLICATE:
        ...
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from django.db import models

from payments.exceptions import WebhookVerificationFailure
from payments.models import WebhookEventType
from payments.webhooks.classification import classify
from payments.webhooks.handlers import WEBHOOK_HANDLERS
from payments.webhooks.parsers import parser_for

if TYPE_CHECKING:
    from typing import Any

    from payments.adapters.base import ProcessorAdapter
    from payments.cache import CacheLayer
    from payments.clock import Clock
    from payments.models import WebhookEvent
    from payments.storage import Storage
    from payments.webhooks.parsers import WebhookPayloadParser

logger = logging.getLogger(__name__)

IDEMPOTENCY_PREFIX = "webhook"
FAILURE_COUNT_PREFIX = "payment_failures"
DEFAULT_FAILURE_THRESHOLD = 3
PROCESSING_MARKER = "processing"
SEEN_CAPACITY = 10_000


def idempotency_key(event_id: str) -> str:
    return f"{IDEMPOTENCY_PREFIX}:{event_id}"


def failure_count_key(subscription_id: str) -> str:
    return f"{FAILURE_COUNT_PREFIX}:{subscription_id}"


class WebhookOutcome(models.TextChoices):
    PROCESSED = "processed", "Processed"
    DUPLICATE = "duplicate", "Duplicate"
    IGNORED = "ignored", "Ignored"
    FAILED = "failed", "Failed"


@dataclass(frozen=True)
class WebhookResult:
    """
    What process() did with a delivery.

    Attributes:
        outcome: WebhookOutcome
        event: The verified event, with canonical_type set
        data: Handler result data (PROCESSED only)
        error: Handler error message (FAILED only)
        error_code: Handler error code (FAILED only)
    """

    outcome: WebhookOutcome
    event: WebhookEvent
    data: Any = None
    error: str | None = None
    error_code: str | None = None


@dataclass
class _EventLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class WebhookReconciliationEngine:
    """
    Verifies, deduplicates, classifies and applies webhook deliveries.

    Args:
        adapter: Adapter whose handle_webhook() verifies deliveries
        cache: Cache layer the handlers update
        storage: Durable store for idempotency records and failure counters
        clock: Time source for idempotency record values
        failure_threshold: Consecutive payment failures that mark a
            subscription for suspension (default: 3)
        parser: Payload parser, defaults to the adapter's processor parser
    """

    def __init__(
        self,
        adapter: ProcessorAdapter,
        cache: CacheLayer,
        storage: Storage,
        clock: Clock,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        parser: WebhookPayloadParser | None = None,
    ):
        self.adapter = adapter
        self.cache = cache
        self.storage = storage
        self.clock = clock
        self.failure_threshold = failure_threshold
        self.parser = parser or parser_for(adapter.processor_type)
        # Bounded: the durable record is the authority, this only saves a read
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._locks: dict[str, _EventLock] = {}

    # =========================================================================
    # Processing
    # =========================================================================

    async def process(self, signature: str | None, raw_payload: bytes | str) -> WebhookResult:
        """
        Process one delivery.

        Raises:
            WebhookException: Signature verification failed
        """
        event = await self.adapter.handle_webhook(signature, raw_payload)
        if not event.verified:
            raise WebhookVerificationFailure(
                "Adapter returned an unverified event",
                details={"event_id": event.id},
            )

        log_context = {
            "event_id": event.id,
            "event_type": event.type,
            "processor": str(event.processor),
        }

        async with self._event_lock(event.id):
            if event.id in self._seen or not await self._claim(event.id):
                logger.info("Duplicate webhook delivery", extra=log_context)
                return WebhookResult(WebhookOutcome.DUPLICATE, event)

            try:
                return await self._apply(event, log_context)
            except BaseException:
                await self._release(event.id)
                raise

    async def _apply(self, event: WebhookEvent, log_context: dict[str, Any]) -> WebhookResult:
        canonical = classify(event.processor, event.type)
        event = replace(event, canonical_type=canonical)
        log_context["canonical_type"] = str(canonical)

        handler = WEBHOOK_HANDLERS.get(canonical)
        if canonical == WebhookEventType.UNRECOGNIZED or handler is None:
            logger.info("Ignoring unrecognized webhook event", extra=log_context)
            await self._mark_processed(event.id)
            return WebhookResult(WebhookOutcome.IGNORED, event)

        logger.info(f"Dispatching {canonical} to handler", extra=log_context)
        result = await handler(self, event)
        if not result.success:
            logger.warning(
                "Webhook handler failed",
                extra={**log_context, "error_code": result.error_code},
            )
            await self._release(event.id)
            return WebhookResult(
                WebhookOutcome.FAILED,
                event,
                error=result.error,
                error_code=result.error_code,
            )

        await self._mark_processed(event.id)
        return WebhookResult(WebhookOutcome.PROCESSED, event, data=result.data)

    # =========================================================================
    # Idempotency records
    # =========================================================================

    @asynccontextmanager
    async def _event_lock(self, event_id: str):
        """Serialize deliveries of one event id; the lock is dropped with its last holder."""
        entry = self._locks.get(event_id)
        if entry is None:
            entry = self._locks[event_id] = _EventLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[event_id]

    async def is_processed(self, event_id: str) -> bool:
        """True once the event was applied, here or by another worker."""
        if event_id in self._seen:
            return True
        record = await self.storage.get_string(idempotency_key(event_id))
        if record is None or record == PROCESSING_MARKER:
            return False
        self._remember(event_id)
        return True

    async def _claim(self, event_id: str) -> bool:
        """Atomically reserve the event's record. False if any worker holds it."""
        return await self.storage.add_string(idempotency_key(event_id), PROCESSING_MARKER)

    async def _release(self, event_id: str) -> None:
        await self.storage.remove(idempotency_key(event_id))

    async def _mark_processed(self, event_id: str) -> None:
        await self.storage.set_string(
            idempotency_key(event_id), self.clock.now().isoformat()
        )
        self._remember(event_id)

    def _remember(self, event_id: str) -> None:
        self._seen[event_id] = None
        self._seen.move_to_end(event_id)
        if len(self._seen) > SEEN_CAPACITY:
            self._seen.popitem(last=False)

    # =========================================================================
    # Payment failure tracking
    # =========================================================================

    async def failure_count(self, subscription_id: str) -> int:
        return await self.storage.get_int(failure_count_key(subscription_id)) or 0

    async def exceeds_failure_threshold(self, subscription_id: str) -> bool:
        """True once consecutive failures reach the threshold. Access is not suspended here."""
        return await self.failure_count(subscription_id) >= self.failure_threshold

    async def record_failure(self, subscription_id: str) -> int:
        return await self.storage.increment(failure_count_key(subscription_id))

    async def reset_failures(self, subscription_id: str | None) -> None:
        if subscription_id:
            await self.storage.remove(failure_count_key(subscription_id))
