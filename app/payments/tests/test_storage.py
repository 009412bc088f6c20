"""
Tests for the Storage implementations.

Both implementations run the same contract tests; DjangoCacheStorage runs
over the locmem cache configured in settings.
"""

import asyncio
import uuid

import pytest

from payments.models import Customer, deserialize, serialize
from payments.storage import DjangoCacheStorage, InMemoryStorage
from payments.tests.factories import CustomerFactory


@pytest.fixture(params=["memory", "django"])
def any_storage(request):
    if request.param == "memory":
        return InMemoryStorage()
    # Unique prefix per test keeps locmem state isolated
    return DjangoCacheStorage(prefix=f"test-{uuid.uuid4().hex[:8]}")


class TestStorageContract:
    """Tests every Storage must pass."""

    async def test_string_round_trip(self, any_storage):
        await any_storage.set_string("a", "1")

        assert await any_storage.get_string("a") == "1"
        assert await any_storage.contains_key("a") is True

    async def test_missing_key(self, any_storage):
        assert await any_storage.get_string("missing") is None
        assert await any_storage.contains_key("missing") is False

    async def test_typed_values(self, any_storage):
        await any_storage.set_int("count", 3)
        await any_storage.set_bool("flag", True)

        assert await any_storage.get_int("count") == 3
        assert await any_storage.get_bool("flag") is True

    async def test_get_int_of_garbage_is_none(self, any_storage):
        await any_storage.set_string("count", "three")

        assert await any_storage.get_int("count") is None

    async def test_object_round_trip(self, any_storage):
        customer = CustomerFactory()

        await any_storage.set_object("customer", customer, serialize)

        restored = await any_storage.get_object(
            "customer", lambda raw: deserialize(Customer, raw)
        )
        assert restored == customer

    async def test_remove(self, any_storage):
        await any_storage.set_string("a", "1")

        await any_storage.remove("a")

        assert await any_storage.contains_key("a") is False
        assert "a" not in await any_storage.keys()

    async def test_clear(self, any_storage):
        await any_storage.set_string("cache:customer:a", "1")
        await any_storage.set_string("cache:charges:b", "2")

        await any_storage.clear()

        assert await any_storage.keys() == []
        assert await any_storage.get_string("cache:customer:a") is None

    async def test_keys_by_prefix(self, any_storage):
        await any_storage.set_string("cache:charges:cus_1", "[]")
        await any_storage.set_string("cache:charges:cus_1:timestamp", "t")
        await any_storage.set_string("cache:customer:cus_1", "{}")

        assert sorted(await any_storage.keys("cache:charges:")) == [
            "cache:charges:cus_1",
            "cache:charges:cus_1:timestamp",
        ]
        assert len(await any_storage.keys("cache:")) == 3


class TestConditionalWrites:
    async def test_add_only_when_absent(self, any_storage):
        assert await any_storage.add_string("webhook:evt_1", "processing") is True
        assert await any_storage.add_string("webhook:evt_1", "other") is False

        assert await any_storage.get_string("webhook:evt_1") == "processing"

    async def test_add_after_remove(self, any_storage):
        await any_storage.add_string("webhook:evt_1", "processing")
        await any_storage.remove("webhook:evt_1")

        assert await any_storage.add_string("webhook:evt_1", "processing") is True

    async def test_concurrent_adds_have_one_winner(self, any_storage):
        results = await asyncio.gather(
            *(any_storage.add_string("webhook:evt_1", str(n)) for n in range(5))
        )

        assert results.count(True) == 1

    async def test_increment_starts_from_zero(self, any_storage):
        assert await any_storage.increment("payment_failures:sub_1") == 1
        assert await any_storage.increment("payment_failures:sub_1") == 2

        assert await any_storage.get_int("payment_failures:sub_1") == 2

    async def test_concurrent_increments_all_count(self, any_storage):
        await asyncio.gather(
            *(any_storage.increment("payment_failures:sub_1") for _ in range(10))
        )

        assert await any_storage.get_int("payment_failures:sub_1") == 10

    async def test_increment_after_remove_restarts(self, any_storage):
        await any_storage.increment("payment_failures:sub_1")
        await any_storage.remove("payment_failures:sub_1")

        assert await any_storage.increment("payment_failures:sub_1") == 1


class TestDjangoCacheStorage:
    @pytest.fixture
    def django_storage(self):
        return DjangoCacheStorage(prefix=f"test-{uuid.uuid4().hex[:8]}")

    async def test_prefixes_isolate_storages(self):
        """Should not see or clear another prefix's keys."""
        first = DjangoCacheStorage(prefix=f"one-{uuid.uuid4().hex[:8]}")
        second = DjangoCacheStorage(prefix=f"two-{uuid.uuid4().hex[:8]}")
        await first.set_string("cache:customer:shared", "first")
        await second.set_string("cache:customer:shared", "second")

        await first.clear()

        assert await first.get_string("cache:customer:shared") is None
        assert await second.get_string("cache:customer:shared") == "second"

    async def test_idempotency_records_not_indexed(self, django_storage):
        """Should keep webhook records and counters out of the key index."""
        for n in range(50):
            await django_storage.set_string(f"webhook:evt_{n}", "2026-03-01T12:00:00+00:00")
        await django_storage.increment("payment_failures:sub_1")
        await django_storage.set_string("cache:customer:cus_1", "{}")

        assert await django_storage.keys() == ["cache:customer:cus_1"]
        assert await django_storage._members(
            django_storage._index_key("cache:customer")
        ) == {"cache:customer:cus_1"}

    async def test_clear_keeps_unindexed_keys(self, django_storage):
        await django_storage.set_string("webhook:evt_1", "2026-03-01T12:00:00+00:00")
        await django_storage.set_string("cache:customer:cus_1", "{}")

        await django_storage.clear()

        assert await django_storage.get_string("cache:customer:cus_1") is None
        assert await django_storage.contains_key("webhook:evt_1") is True

    async def test_buckets_indexed_per_kind(self, django_storage):
        await django_storage.set_string("cache:charges:cus_1", "[]")
        await django_storage.set_string("cache:customer:cus_1", "{}")

        assert await django_storage._members(
            django_storage._index_key("cache:charges")
        ) == {"cache:charges:cus_1"}
        assert await django_storage.keys("cache:customer:") == ["cache:customer:cus_1"]
