"""
Time-boxed read cache with write-through updates.

The cache layer is the sole owner of persisted Customer, Subscription,
PaymentMethod and Charge copies. The orchestration facade reads through
get_or_fetch() and writes through put(); the webhook engine changes
subscriptions only via merge_subscription().

Storage layout:
    cache:<kind>:<key>            Serialized entity or list
    cache:<kind>:<key>:timestamp  ISO-8601 time the data was observed

Guarantees:
- A read within the freshness window never calls the fetcher.
- Concurrent readers of the same missing key share one fetch.
- A write older than the entry it would replace is discarded.
- A fetch that started before an invalidation does not write its result.
- A corrupt entry is treated as a miss and removed.

Usage:
    from payments.cache import CacheKind, CacheLayer

    cache = CacheLayer(storage, clock, ttl_seconds=300)
    customer = await cache.get_or_fetch(
        CacheKind.CUSTOMER,
        customer_id,
        fetch=lambda: adapter.get_customer(customer_id),
        serialize_fn=serialize,
        deserialize_fn=lambda raw: deserialize(Customer, raw),
    )
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, TypeVar

from payments.models import Subscription, deserialize, parse_datetime, serialize

if TYPE_CHECKING:
    from typing import Any, Awaitable, Callable

    from payments.clock import Clock
    from payments.storage import Storage

T = TypeVar("T")

logger = logging.getLogger(__name__)

CACHE_PREFIX = "cache"
TIMESTAMP_SUFFIX = "timestamp"
DEFAULT_TTL_SECONDS = 300

# Errors raised by model decoders on malformed JSON or missing fields
DECODE_ERRORS = (ValueError, KeyError, TypeError, AttributeError)


class CacheKind:
    """Logical entity kinds, the second segment of every cache key."""

    CUSTOMER = "customer"
    CUSTOMER_ID = "customer_id"
    SUBSCRIPTIONS = "subscriptions"
    SUBSCRIPTION = "subscription"
    ACTIVE_SUBSCRIPTIONS = "active_subscriptions"
    PAYMENT_METHODS = "payment_methods"
    DEFAULT_PAYMENT_METHOD = "default_payment_method"
    CHARGES = "charges"

    ALL = (
        CUSTOMER,
        CUSTOMER_ID,
        SUBSCRIPTIONS,
        SUBSCRIPTION,
        ACTIVE_SUBSCRIPTIONS,
        PAYMENT_METHODS,
        DEFAULT_PAYMENT_METHOD,
        CHARGES,
    )


def entry_key(kind: str, key: str) -> str:
    return f"{CACHE_PREFIX}:{kind}:{key}"


def timestamp_key(kind: str, key: str) -> str:
    return f"{entry_key(kind, key)}:{TIMESTAMP_SUFFIX}"


class CacheLayer:
    """
    Freshness-windowed cache over a Storage.

    Args:
        storage: Backing key/value store
        clock: Time source for freshness and write timestamps
        ttl_seconds: Freshness window (default: 300)
    """

    def __init__(
        self,
        storage: Storage,
        clock: Clock,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ):
        self.storage = storage
        self.clock = clock
        self.ttl = timedelta(seconds=ttl_seconds)
        self._inflight: dict[str, asyncio.Future] = {}
        self._generation = 0
        self._kind_generations: dict[str, int] = {}
        self._key_generations: dict[str, int] = {}

    # -------------------------------------------------------------------------
    # Generations
    # -------------------------------------------------------------------------

    def _generation_of(self, kind: str, key: str) -> tuple[int, int, int]:
        return (
            self._generation,
            self._kind_generations.get(kind, 0),
            self._key_generations.get(entry_key(kind, key), 0),
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def read(
        self, kind: str, key: str, deserialize_fn: Callable[[str], T]
    ) -> tuple[T, datetime] | None:
        """
        Return (value, observed_at) for an entry, or None on a miss.

        Corrupt entries are removed and reported as a miss.
        """
        raw = await self.storage.get_string(entry_key(kind, key))
        if raw is None:
            return None
        raw_timestamp = await self.storage.get_string(timestamp_key(kind, key))
        try:
            value = deserialize_fn(raw)
            observed_at = parse_datetime(raw_timestamp)
            if observed_at is None:
                raise ValueError("missing timestamp")
        except DECODE_ERRORS:
            logger.warning(
                "Discarding corrupt cache entry",
                extra={"cache_kind": kind, "cache_key": key},
            )
            await self._remove(kind, key)
            return None
        return value, observed_at

    def is_fresh(self, observed_at: datetime) -> bool:
        return self.clock.now() - observed_at < self.ttl

    async def get_or_fetch(
        self,
        kind: str,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        serialize_fn: Callable[[T], str],
        deserialize_fn: Callable[[str], T],
        force_refresh: bool = False,
        write: bool = True,
    ) -> T:
        """
        Return a fresh cached value or fetch, store and return a new one.

        Concurrent callers for the same key share one in-flight fetch. A
        forced refresh never joins a fetch that started before it. With
        write=False the cache is bypassed: the value is fetched and
        returned without being read from or written to storage.
        """
        if not write:
            logger.debug(
                "Cache bypassed", extra={"cache_kind": kind, "cache_key": key}
            )
            return await fetch()

        if not force_refresh:
            cached = await self.read(kind, key, deserialize_fn)
            if cached is not None and self.is_fresh(cached[1]):
                logger.debug(
                    "Cache hit", extra={"cache_kind": kind, "cache_key": key}
                )
                return cached[0]
            pending = self._inflight.get(entry_key(kind, key))
            if pending is not None:
                return await asyncio.shield(pending)

        return await self._fetch_and_store(kind, key, fetch, serialize_fn)

    async def _fetch_and_store(
        self,
        kind: str,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        serialize_fn: Callable[[T], str],
    ) -> T:
        slot = entry_key(kind, key)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[slot] = future
        generation = self._generation_of(kind, key)
        try:
            value = await fetch()
            if self._generation_of(kind, key) == generation:
                await self.put(kind, key, value, serialize_fn)
            else:
                logger.debug(
                    "Dropping fetch result invalidated in flight",
                    extra={"cache_kind": kind, "cache_key": key},
                )
        except BaseException as e:
            future.set_exception(e)
            # Waiters re-raise it; mark retrieved for the no-waiter case
            future.exception()
            raise
        finally:
            if self._inflight.get(slot) is future:
                del self._inflight[slot]
        future.set_result(value)
        return value

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def put(
        self,
        kind: str,
        key: str,
        value: T,
        serialize_fn: Callable[[T], str],
        source_timestamp: datetime | None = None,
    ) -> bool:
        """
        Write value and timestamp together.

        Returns False (and writes nothing) when the existing entry was
        observed after source_timestamp.
        """
        observed_at = source_timestamp or self.clock.now()
        try:
            existing = parse_datetime(
                await self.storage.get_string(timestamp_key(kind, key))
            )
        except ValueError:
            existing = None
        if existing is not None and observed_at < existing:
            logger.info(
                "Discarding stale cache write",
                extra={
                    "cache_kind": kind,
                    "cache_key": key,
                    "source_timestamp": observed_at.isoformat(),
                    "cached_timestamp": existing.isoformat(),
                },
            )
            return False
        await self.storage.set_string(entry_key(kind, key), serialize_fn(value))
        await self.storage.set_string(timestamp_key(kind, key), observed_at.isoformat())
        return True

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    async def _remove(self, kind: str, key: str) -> None:
        await self.storage.remove(entry_key(kind, key))
        await self.storage.remove(timestamp_key(kind, key))

    async def invalidate(self, kind: str, key: str) -> None:
        slot = entry_key(kind, key)
        self._key_generations[slot] = self._key_generations.get(slot, 0) + 1
        self._inflight.pop(slot, None)
        await self._remove(kind, key)

    async def invalidate_kind(self, kind: str) -> None:
        self._kind_generations[kind] = self._kind_generations.get(kind, 0) + 1
        prefix = f"{CACHE_PREFIX}:{kind}:"
        for slot in [slot for slot in self._inflight if slot.startswith(prefix)]:
            del self._inflight[slot]
        for stored_key in await self.storage.keys(prefix):
            await self.storage.remove(stored_key)

    async def invalidate_all(self) -> None:
        """
        Drop every cache entry. Webhook idempotency records are kept.

        Fetches already in flight finish for their own callers, but later
        readers no longer join them.
        """
        self._generation += 1
        self._inflight.clear()
        for stored_key in await self.storage.keys(f"{CACHE_PREFIX}:"):
            await self.storage.remove(stored_key)
        logger.info("Cache invalidated")

    # -------------------------------------------------------------------------
    # Subscription read/merge/write
    # -------------------------------------------------------------------------

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        cached = await self.read(
            CacheKind.SUBSCRIPTION, subscription_id, _decode_subscription
        )
        return cached[0] if cached else None

    async def put_subscription(
        self, subscription: Subscription, source_timestamp: datetime | None = None
    ) -> bool:
        return await self.put(
            CacheKind.SUBSCRIPTION,
            subscription.id,
            subscription,
            serialize,
            source_timestamp=source_timestamp or subscription.source_timestamp,
        )

    async def merge_subscription(
        self,
        subscription_id: str,
        fields: dict[str, Any],
        source_timestamp: datetime | None = None,
        base: Subscription | None = None,
    ) -> Subscription | None:
        """
        Merge event fields into the cached subscription and write it back.

        Fields absent from ``fields`` keep their cached values. ``base`` is
        used when nothing is cached yet. Returns the merged subscription,
        or None when there is nothing to merge into or the write was stale.
        """
        current = await self.get_subscription(subscription_id) or base
        if current is None:
            return None
        merged = current.merge_event_fields(
            {**fields, "source_timestamp": source_timestamp or self.clock.now()}
        )
        written = await self.put_subscription(merged, merged.source_timestamp)
        return merged if written else None


def _decode_subscription(raw: str) -> Subscription:
    return deserialize(Subscription, raw)
