"""
Unit tests for the API cache.

Tests:
- TTL expiry per data type
- Invalidation axes
- Bounded size with oldest-first eviction
- Serialization failures
- Async caching decorator
"""

import asyncio
import unittest

from broker_tools.cache import APICache, DEFAULT_TTL, FALLBACK_TTL, cached
from broker_tools.models import DataType


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestCacheTTL(unittest.TestCase):
    """Test get/set and expiry."""

    def setUp(self):
        self.clock = FakeClock()
        self.cache = APICache(time_func=self.clock)

    def test_set_then_get(self):
        """A fresh entry is returned."""
        self.cache.set("u1", "a1", DataType.PORTFOLIO, {"positions": [1, 2]})
        self.assertEqual(self.cache.get("u1", "a1", DataType.PORTFOLIO), {"positions": [1, 2]})

    def test_entry_expires_after_ttl(self):
        """An entry aged to its TTL is unreadable."""
        self.cache.set("u1", "a1", DataType.PORTFOLIO, [1])
        self.clock.advance(119)
        self.assertEqual(self.cache.get("u1", "a1", DataType.PORTFOLIO), [1])

        self.clock.advance(1)
        self.assertIsNone(self.cache.get("u1", "a1", DataType.PORTFOLIO))
        self.assertEqual(self.cache.get_stats()["total_entries"], 0)

    def test_ttl_table(self):
        self.assertEqual(self.cache.get_ttl(DataType.PORTFOLIO), 120)
        self.assertEqual(self.cache.get_ttl(DataType.ACCOUNT), 300)
        self.assertEqual(self.cache.get_ttl(DataType.ORDERS), 60)
        self.assertEqual(self.cache.get_ttl("positions"), 120)
        self.assertEqual(self.cache.get_ttl(DataType.AI_RECOMMENDATION_BATCH), 86400)
        self.assertEqual(DEFAULT_TTL[DataType.ACCOUNT], 300)

    def test_unknown_data_type_uses_fallback_ttl(self):
        """Unknown data types are cached with the short fallback TTL."""
        self.cache.set("u1", "a1", "dividends", [1])
        self.assertEqual(self.cache.get_ttl("dividends"), FALLBACK_TTL)

        self.clock.advance(FALLBACK_TTL - 1)
        self.assertEqual(self.cache.get("u1", "a1", "dividends"), [1])
        self.clock.advance(1)
        self.assertIsNone(self.cache.get("u1", "a1", "dividends"))

    def test_ttl_overrides(self):
        cache = APICache(ttl_overrides={"portfolio": 5}, time_func=self.clock)
        cache.set("u1", "a1", DataType.PORTFOLIO, [1])
        self.clock.advance(5)
        self.assertIsNone(cache.get("u1", "a1", DataType.PORTFOLIO))

    def test_params_are_part_of_key(self):
        """Same params in any key order hit; different params miss."""
        self.cache.set("u1", "a1", DataType.ORDERS, ["x"], params={"a": 1, "b": 2})
        self.assertEqual(self.cache.get("u1", "a1", DataType.ORDERS, {"b": 2, "a": 1}), ["x"])
        self.assertIsNone(self.cache.get("u1", "a1", DataType.ORDERS, {"a": 2}))
        self.assertIsNone(self.cache.get("u1", "a1", DataType.ORDERS))

    def test_overwrite_replaces_value(self):
        self.cache.set("u1", "a1", DataType.ACCOUNT, {"v": 1})
        self.cache.set("u1", "a1", DataType.ACCOUNT, {"v": 2})
        self.assertEqual(self.cache.get("u1", "a1", DataType.ACCOUNT), {"v": 2})
        self.assertEqual(self.cache.get_stats()["total_entries"], 1)

    def test_none_value_does_not_raise(self):
        """Storing None is tolerated and reads as a miss."""
        self.cache.set("u1", "a1", DataType.ACCOUNT, None)
        self.assertIsNone(self.cache.get("u1", "a1", DataType.ACCOUNT))

    def test_unserializable_value_is_skipped(self):
        """A value that cannot be sized is not cached and nothing is raised."""
        self.cache.set("u1", "a1", DataType.ACCOUNT, {"bad": object()})
        self.assertIsNone(self.cache.get("u1", "a1", DataType.ACCOUNT))
        self.assertEqual(self.cache.get_stats()["sets"], 0)

    def test_get_with_metadata(self):
        self.cache.set("u1", "a1", DataType.ACCOUNT, {"v": 1})
        self.clock.advance(100)

        meta = self.cache.get_with_metadata("u1", "a1", DataType.ACCOUNT)
        self.assertEqual(meta["value"], {"v": 1})
        self.assertEqual(meta["age_seconds"], 100)
        self.assertEqual(meta["remaining_ttl"], 200)

    def test_stats(self):
        self.cache.set("u1", "a1", DataType.ACCOUNT, {"v": 1})
        self.cache.get("u1", "a1", DataType.ACCOUNT)
        self.cache.get("u1", "a2", DataType.ACCOUNT)

        stats = self.cache.get_stats()
        self.assertEqual(stats["total_entries"], 1)
        self.assertEqual(stats["hits"], 1)
        self.assertEqual(stats["misses"], 1)
        self.assertEqual(stats["hit_rate_pct"], 50.0)
        self.assertEqual(stats["memory_usage"], len('{"v": 1}'))


class TestCacheInvalidation(unittest.TestCase):
    """Test invalidation filters."""

    def setUp(self):
        self.cache = APICache()
        self.cache.set("userA", "acc1", DataType.PORTFOLIO, [1])
        self.cache.set("userA", "acc2", DataType.PORTFOLIO, [2])
        self.cache.set("userA", "acc1", DataType.ACCOUNT, {"a": 1})
        self.cache.set("userB", "acc9", DataType.PORTFOLIO, [9])

    def test_invalidate_user_and_account(self):
        """User+account removes every data type of that account only."""
        removed = self.cache.invalidate("userA", "acc1")

        self.assertEqual(removed, 2)
        self.assertIsNone(self.cache.get("userA", "acc1", DataType.PORTFOLIO))
        self.assertIsNone(self.cache.get("userA", "acc1", DataType.ACCOUNT))
        self.assertEqual(self.cache.get("userA", "acc2", DataType.PORTFOLIO), [2])

    def test_invalidate_user(self):
        """User alone removes all of that user's entries."""
        removed = self.cache.invalidate("userA")

        self.assertEqual(removed, 3)
        self.assertEqual(self.cache.get_stats()["total_entries"], 1)
        self.assertEqual(self.cache.get("userB", "acc9", DataType.PORTFOLIO), [9])

    def test_invalidate_user_and_data_type(self):
        """User+data type removes that type across the user's accounts."""
        removed = self.cache.invalidate("userA", data_type=DataType.PORTFOLIO)

        self.assertEqual(removed, 2)
        self.assertEqual(self.cache.get("userA", "acc1", DataType.ACCOUNT), {"a": 1})
        self.assertEqual(self.cache.get("userB", "acc9", DataType.PORTFOLIO), [9])

    def test_invalidate_all(self):
        self.assertEqual(self.cache.invalidate_all(), 4)
        self.assertEqual(self.cache.get_stats()["total_entries"], 0)


class TestCacheBoundedSize(unittest.TestCase):
    """Test the entry ceiling."""

    def test_non_positive_ceiling_rejected(self):
        for max_entries in (0, -5):
            with self.assertRaises(ValueError):
                APICache(max_entries=max_entries)

    def test_total_entries_never_exceed_ceiling(self):
        cache = APICache(max_entries=10)
        for i in range(25):
            cache.set("u1", f"a{i}", DataType.ACCOUNT, {"i": i})
            self.assertLessEqual(cache.get_stats()["total_entries"], 10)

    def test_oldest_inserted_evicted_first(self):
        cache = APICache(max_entries=3)
        cache.set("u1", "a1", DataType.ACCOUNT, 1)
        cache.set("u1", "a2", DataType.ACCOUNT, 2)
        cache.set("u1", "a3", DataType.ACCOUNT, 3)

        # Overwriting a1 makes it the newest entry
        cache.set("u1", "a1", DataType.ACCOUNT, 11)
        cache.set("u1", "a4", DataType.ACCOUNT, 4)

        self.assertIsNone(cache.get("u1", "a2", DataType.ACCOUNT))
        self.assertEqual(cache.get("u1", "a1", DataType.ACCOUNT), 11)
        self.assertEqual(cache.get("u1", "a3", DataType.ACCOUNT), 3)
        self.assertEqual(cache.get("u1", "a4", DataType.ACCOUNT), 4)

    def test_expired_entries_swept_before_eviction(self):
        clock = FakeClock()
        cache = APICache(max_entries=2, time_func=clock)
        cache.set("u1", "a1", DataType.ORDERS, 1)      # 60s TTL
        cache.set("u1", "a2", DataType.ACCOUNT, 2)     # 300s TTL

        clock.advance(61)
        cache.set("u1", "a3", DataType.ACCOUNT, 3)

        self.assertEqual(cache.get("u1", "a2", DataType.ACCOUNT), 2)
        self.assertEqual(cache.get("u1", "a3", DataType.ACCOUNT), 3)


class TestCachedDecorator(unittest.IsolatedAsyncioTestCase):
    """Test the async caching decorator."""

    async def test_second_call_served_from_cache(self):
        cache = APICache()
        calls = []

        @cached(cache, DataType.ORDERS, key_func=lambda user_id, account_id: (user_id, account_id, None))
        async def get_orders(user_id, account_id):
            calls.append(account_id)
            await asyncio.sleep(0)
            return [{"id": 1}]

        first = await get_orders("u1", "a1")
        second = await get_orders("u1", "a1")
        await get_orders("u1", "a2")

        self.assertEqual(first, second)
        self.assertEqual(calls, ["a1", "a2"])

    async def test_database_hooks_are_noops(self):
        cache = APICache()
        self.assertIsNone(await cache.get_from_database("u1", "a1", DataType.ACCOUNT))
        self.assertIsNone(await cache.set_in_database("u1", "a1", DataType.ACCOUNT, {"v": 1}))


if __name__ == "__main__":
    unittest.main()
