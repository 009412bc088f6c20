"""
Key/value storage capability used by the cache layer and webhook engine.

Storage is the only persistence the engine depends on. It assumes nothing
beyond single-key atomicity: no transactions, no multi-key operations.
add_string() is the one conditional write: it stores a value only when the
key is absent, which is how webhook deliveries are claimed across workers.

Implementations:
    - InMemoryStorage: Process-local dict, for tests and short-lived processes
    - DjangoCacheStorage: Any Django cache alias (locmem, redis, memcached)

Usage:
    from payments.storage import DjangoCacheStorage

    storage = DjangoCacheStorage(alias="default", prefix="payments")
    await storage.set_string("cache:customer:current", payload)
    await storage.set_object("cache:customer:current", customer, serialize)

    if await storage.add_string("webhook:evt_1", "processing"):
        ...  # this worker owns evt_1
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, TypeVar

from django.core.cache import caches

if TYPE_CHECKING:
    from typing import Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)


class Storage(ABC):
    """
    Abstract async key/value store.

    Subclasses implement the string primitives. Typed accessors are built
    on top of them so every value round-trips through a string.
    """

    @abstractmethod
    async def get_string(self, key: str) -> str | None: ...

    @abstractmethod
    async def set_string(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def add_string(self, key: str, value: str) -> bool:
        """Store value only if key is absent. True when this call stored it."""

    @abstractmethod
    async def increment(self, key: str, delta: int = 1) -> int:
        """Atomically add delta to an integer entry, starting from 0. Returns the new value."""

    @abstractmethod
    async def remove(self, key: str) -> None: ...

    @abstractmethod
    async def contains_key(self, key: str) -> bool: ...

    @abstractmethod
    async def clear(self) -> None: ...

    @abstractmethod
    async def keys(self, prefix: str = "") -> list[str]:
        """Enumerable keys starting with prefix, in no particular order."""

    async def get_int(self, key: str) -> int | None:
        raw = await self.get_string(key)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    async def set_int(self, key: str, value: int) -> None:
        await self.set_string(key, str(int(value)))

    async def get_bool(self, key: str) -> bool | None:
        raw = await self.get_string(key)
        if raw is None:
            return None
        return raw == "true"

    async def set_bool(self, key: str, value: bool) -> None:
        await self.set_string(key, "true" if value else "false")

    async def get_object(self, key: str, deserialize: Callable[[str], T]) -> T | None:
        """
        Read and decode an object.

        Raises whatever ``deserialize`` raises on a corrupt entry; the
        caller decides whether that is a miss.
        """
        raw = await self.get_string(key)
        if raw is None:
            return None
        return deserialize(raw)

    async def set_object(
        self, key: str, value: T, serialize: Callable[[T], str]
    ) -> None:
        await self.set_string(key, serialize(value))


class InMemoryStorage(Storage):
    """Dict-backed storage guarded by an asyncio lock."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})
        self._lock = asyncio.Lock()

    async def get_string(self, key: str) -> str | None:
        return self._data.get(key)

    async def set_string(self, key: str, value: str) -> None:
        async with self._lock:
            self._data[key] = value

    async def add_string(self, key: str, value: str) -> bool:
        async with self._lock:
            if key in self._data:
                return False
            self._data[key] = value
            return True

    async def increment(self, key: str, delta: int = 1) -> int:
        async with self._lock:
            try:
                current = int(self._data.get(key, 0))
            except ValueError:
                current = 0
            self._data[key] = str(current + delta)
            return current + delta

    async def remove(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def contains_key(self, key: str) -> bool:
        return key in self._data

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()

    async def keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._data if key.startswith(prefix)]


class DjangoCacheStorage(Storage):
    """
    Storage on top of a Django cache alias.

    Entries never expire at the cache level; freshness is the cache
    layer's concern. Keys are prefixed so several engines can share one
    cache.

    Only keys under an indexed namespace (by default the cache layer's
    ``cache``) can be enumerated. They are tracked in one index entry per
    bucket, a bucket being the namespace plus the next key segment
    (``cache:subscriptions``), so keys(prefix) reads only the buckets it
    needs. Webhook idempotency records and failure counters are never
    indexed: keys() does not list them and clear() leaves them in place.

    Args:
        alias: Django CACHES alias (default: "default")
        prefix: Namespace for every key
        indexed_namespaces: First key segments whose keys are enumerable
    """

    INDEX_KEY = "__index__"
    BUCKETS_KEY = "__buckets__"
    INDEX_ATTEMPTS = 3

    def __init__(
        self,
        alias: str = "default",
        prefix: str = "payments",
        indexed_namespaces: tuple[str, ...] = ("cache",),
    ):
        self._cache = caches[alias]
        self._prefix = prefix
        self._indexed = tuple(indexed_namespaces)
        self._lock = asyncio.Lock()

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def _bucket(self, key: str) -> str | None:
        namespace, separator, rest = key.partition(":")
        if not separator or namespace not in self._indexed:
            return None
        return f"{namespace}:{rest.partition(':')[0]}"

    def _index_key(self, bucket: str) -> str:
        return self._key(f"{self.INDEX_KEY}:{bucket}")

    # -------------------------------------------------------------------------
    # Bucket index
    # -------------------------------------------------------------------------

    async def _members(self, index_key: str) -> set[str]:
        return set(await self._cache.aget(index_key) or ())

    async def _update_set(self, index_key: str, member: str, present: bool) -> None:
        """
        Add or drop one member of an index entry.

        The entry is read-modify-write, so the result is re-read: a writer
        in another process that overwrote this change gets it reapplied.
        """
        for _ in range(self.INDEX_ATTEMPTS):
            members = await self._members(index_key)
            if (member in members) == present:
                return
            if present:
                members.add(member)
            else:
                members.discard(member)
            await self._cache.aset(index_key, sorted(members), None)

        if (member in await self._members(index_key)) != present:
            logger.warning(
                "Storage index update lost to a concurrent writer",
                extra={"index_key": index_key, "member": member, "present": present},
            )

    async def _index(self, key: str) -> None:
        bucket = self._bucket(key)
        if bucket is None:
            return
        async with self._lock:
            await self._update_set(self._index_key(bucket), key, True)
            await self._update_set(self._key(self.BUCKETS_KEY), bucket, True)

    async def _unindex(self, key: str) -> None:
        bucket = self._bucket(key)
        if bucket is None:
            return
        async with self._lock:
            await self._update_set(self._index_key(bucket), key, False)

    async def _buckets_for(self, prefix: str) -> list[str]:
        buckets = await self._members(self._key(self.BUCKETS_KEY))
        return [
            bucket
            for bucket in buckets
            if f"{bucket}:".startswith(prefix) or prefix.startswith(f"{bucket}:")
        ]

    # -------------------------------------------------------------------------
    # Storage API
    # -------------------------------------------------------------------------

    async def get_string(self, key: str) -> str | None:
        value = await self._cache.aget(self._key(key))
        # Counters are stored as native ints so the backend can increment them
        return value if value is None or isinstance(value, str) else str(value)

    async def set_string(self, key: str, value: str) -> None:
        await self._cache.aset(self._key(key), value, None)
        await self._index(key)

    async def add_string(self, key: str, value: str) -> bool:
        added = await self._cache.aadd(self._key(key), value, None)
        if added:
            await self._index(key)
        return added

    async def increment(self, key: str, delta: int = 1) -> int:
        cache_key = self._key(key)
        try:
            return await self._cache.aincr(cache_key, delta)
        except ValueError:
            # Missing key: add() loses to a concurrent creator, then incr applies
            if await self._cache.aadd(cache_key, delta, None):
                return delta
            return await self._cache.aincr(cache_key, delta)

    async def remove(self, key: str) -> None:
        await self._cache.adelete(self._key(key))
        await self._unindex(key)

    async def contains_key(self, key: str) -> bool:
        return await self._cache.ahas_key(self._key(key))

    async def clear(self) -> None:
        """Remove every indexed key and the index itself."""
        async with self._lock:
            for bucket in await self._buckets_for(""):
                members = await self._members(self._index_key(bucket))
                await self._cache.adelete_many([self._key(key) for key in members])
                await self._cache.adelete(self._index_key(bucket))
            await self._cache.adelete(self._key(self.BUCKETS_KEY))

    async def keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        for bucket in await self._buckets_for(prefix):
            members = await self._members(self._index_key(bucket))
            keys.extend(key for key in members if key.startswith(prefix))
        return keys
