"""
Unit tests for the brokerage data service.

Tests:
- Cache-first account and portfolio reads
- Coalescing of concurrent cache misses
- Multi-account isolation and aggregation
- Background sync and health check
"""

import asyncio
import unittest

from broker_tools.cache import APICache, SlidingWindowRateLimiter
from broker_tools.request_batcher import RequestBatcher
from core.data_structures import AccountCredentials, DataType
from core.observability import OptimizationMonitor
from core.trading212_service import BrokerageDataService


class FakeTrading212:
    """Per-API-key canned responses; counts calls per resource."""

    def __init__(self, accounts):
        # accounts: api_key -> {"account": ..., "portfolio": [...], "orders": [...]} or an Exception
        self.accounts = accounts
        self.calls = []
        self.delay = 0.0

    def client(self, api_key, is_practice):
        fake = self

        class Client:
            async def _get(self, resource):
                fake.calls.append((api_key, resource))
                await asyncio.sleep(fake.delay)
                data = fake.accounts[api_key]
                if isinstance(data, Exception):
                    raise data
                return data[resource]

            async def get_account(self):
                return await self._get("account")

            async def get_positions(self):
                return await self._get("portfolio")

            async def get_orders(self):
                return await self._get("orders")

        return Client()

    def count(self, resource):
        return sum(1 for _, r in self.calls if r == resource)


def position(ticker, quantity, price, ppl):
    return {"ticker": ticker, "quantity": quantity, "currentPrice": price, "ppl": ppl}


ACC1 = {
    "account": {"total": 1200.0, "result": 20.0, "currencyCode": "GBP"},
    "portfolio": [position("AAPL_US_EQ", 10, 100.0, 50.0)],
    "orders": [{"id": 7}],
}
ACC2 = {
    "account": {"total": 600.0},
    "portfolio": [position("TSLA_US_EQ", 5, 100.0, 50.0)],
    "orders": [],
}


class ServiceTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.fake = FakeTrading212({"key-1": ACC1, "key-2": ACC2})
        self.cache = APICache()
        self.limiter = SlidingWindowRateLimiter(window_seconds=60.0, max_requests=15, name="brokerage")
        self.monitor = OptimizationMonitor()
        self.service = BrokerageDataService(
            self.cache,
            RequestBatcher(client_factory=self.fake.client),
            self.limiter,
            monitor=self.monitor,
        )
        self.acc1 = AccountCredentials(id="acc1", api_key="key-1")
        self.acc2 = AccountCredentials(id="acc2", api_key="key-2")


class TestAccountData(ServiceTestCase):
    """Test single account reads."""

    async def test_miss_then_hit(self):
        """Second read is served from cache without an upstream call."""
        first = await self.service.get_account_data("u1", "acc1", "key-1")
        second = await self.service.get_account_data("u1", "acc1", "key-1")

        self.assertFalse(first.cache_hit)
        self.assertTrue(second.cache_hit)
        self.assertEqual(self.fake.count("account"), 1)
        self.assertEqual(self.fake.count("portfolio"), 1)
        self.assertEqual(second.stats, first.stats)

    async def test_summary_fields(self):
        summary = await self.service.get_account_data("u1", "acc1", "key-1")

        self.assertEqual(summary.account_id, "acc1")
        self.assertEqual(summary.currency, "GBP")
        self.assertEqual(summary.orders, [])
        self.assertEqual(summary.stats.active_positions, 1)
        self.assertEqual(summary.stats.total_value, 1000.0)
        self.assertEqual(summary.stats.total_pnl, 50.0)
        self.assertAlmostEqual(summary.stats.total_pnl_percent, 5.263, places=3)
        self.assertEqual(summary.stats.today_pnl, 20.0)
        self.assertAlmostEqual(summary.stats.today_pnl_percent, 20.0 / 980.0 * 100)

    async def test_currency_defaults_to_usd(self):
        summary = await self.service.get_account_data("u1", "acc2", "key-2")
        self.assertEqual(summary.currency, "USD")
        self.assertEqual(summary.stats.today_pnl, 0.0)

    async def test_include_orders(self):
        summary = await self.service.get_account_data("u1", "acc1", "key-1", include_orders=True)
        self.assertEqual(summary.orders, [{"id": 7}])

    async def test_concurrent_misses_share_one_fetch(self):
        self.fake.delay = 0.01

        results = await asyncio.gather(*(
            self.service.get_account_data("u1", "acc1", "key-1") for _ in range(5)
        ))

        self.assertEqual(self.fake.count("account"), 1)
        self.assertEqual(len({id(r) for r in results}), 1)

    async def test_partial_failure_is_cached(self):
        """A failed account call still yields a summary built from positions."""
        class AccountEndpointDown(dict):
            def __getitem__(self, key):
                if key == "account":
                    raise ConnectionError("account endpoint down")
                return dict.__getitem__(self, key)

        self.fake.accounts["key-3"] = AccountEndpointDown(
            portfolio=[position("X", 1, 10.0, 0.0)],
            orders=[],
        )

        summary = await self.service.get_account_data("u1", "acc3", "key-3")

        self.assertIsNone(summary.account)
        self.assertEqual(summary.stats.active_positions, 1)
        self.assertIsNotNone(self.cache.get("u1", "acc3", DataType.ACCOUNT))

    async def test_total_failure_yields_empty_summary(self):
        """When every resource call fails the summary is empty but still returned."""
        self.fake.accounts["key-9"] = RuntimeError("down")

        summary = await self.service.get_account_data("u1", "acc9", "key-9")

        self.assertIsNone(summary.account)
        self.assertEqual(summary.positions, [])
        self.assertEqual(summary.stats.total_value, 0.0)

    async def test_force_refresh(self):
        await self.service.get_account_data("u1", "acc1", "key-1")
        refreshed = await self.service.force_refresh_account_data("u1", "acc1", "key-1")

        self.assertFalse(refreshed.cache_hit)
        self.assertEqual(self.fake.count("account"), 2)

    async def test_monitor_records_fetches(self):
        await self.service.get_account_data("u1", "acc1", "key-1")
        await self.service.get_account_data("u1", "acc1", "key-1")

        metrics = self.monitor.get_metrics()
        self.assertEqual(metrics["fetches"], 2)
        self.assertEqual(metrics["cache_hit_rate"], 0.5)


class TestPortfolioData(ServiceTestCase):
    """Test portfolio reads."""

    async def test_portfolio_cached(self):
        first = await self.service.get_portfolio_data("u1", "acc1", "key-1")
        second = await self.service.get_portfolio_data("u1", "acc1", "key-1")

        self.assertFalse(first.cache_hit)
        self.assertTrue(second.cache_hit)
        self.assertEqual(self.fake.count("portfolio"), 1)
        self.assertEqual(first.total_value, 1000.0)
        self.assertEqual(first.active_positions, 1)

    async def test_currency_from_cached_account(self):
        self.assertEqual((await self.service.get_portfolio_data("u1", "acc1", "key-1")).currency, "USD")

        self.service.invalidate_cache("u1", "acc1")
        await self.service.get_account_data("u1", "acc1", "key-1")
        portfolio = await self.service.get_portfolio_data("u1", "acc1", "key-1")

        self.assertEqual(portfolio.currency, "GBP")


class TestMultiAccount(ServiceTestCase):
    """Test multi-account fetches and aggregation."""

    async def test_failing_account_isolated(self):
        self.service.get_account_data = self._failing_for("acc2", self.service.get_account_data)

        results = await self.service.get_multi_account_data("u1", [self.acc1, self.acc2])

        self.assertEqual([r.account_id for r in results], ["acc1", "acc2"])
        self.assertIsNotNone(results[0].data)
        self.assertIsNone(results[0].error)
        self.assertIsNone(results[1].data)
        self.assertEqual(results[1].error, "invalid API key")

    async def test_force_refresh_bypasses_cache(self):
        await self.service.get_multi_account_data("u1", [self.acc1])
        results = await self.service.get_multi_account_data("u1", [self.acc1], force_refresh=True)

        self.assertFalse(results[0].cache_hit)
        self.assertEqual(self.fake.count("account"), 2)
        # Still written through
        self.assertIsNotNone(self.cache.get("u1", "acc1", DataType.ACCOUNT))

    async def test_cache_hit_flag(self):
        await self.service.get_multi_account_data("u1", [self.acc1])
        results = await self.service.get_multi_account_data("u1", [self.acc1, self.acc2])

        self.assertTrue(results[0].cache_hit)
        self.assertFalse(results[1].cache_hit)

    async def test_aggregation(self):
        """Totals 1500 value and 100 P&L give 100/1400 of cost."""
        aggregated = await self.service.get_aggregated_account_data("u1", [self.acc1, self.acc2])
        stats = aggregated.total_stats

        self.assertEqual(stats.connected_accounts, 2)
        self.assertEqual(stats.active_positions, 2)
        self.assertEqual(stats.total_value, 1500.0)
        self.assertEqual(stats.total_pnl, 100.0)
        self.assertAlmostEqual(stats.total_pnl_percent, 7.142857, places=5)
        self.assertEqual(stats.today_pnl, 20.0)
        self.assertEqual(aggregated.cache_hits, 0)
        self.assertEqual(len(aggregated.account_results), 2)

    async def test_aggregation_skips_failed_accounts(self):
        self.service.get_account_data = self._failing_for("acc2", self.service.get_account_data)

        aggregated = await self.service.get_aggregated_account_data("u1", [self.acc1, self.acc2])

        self.assertEqual(aggregated.total_stats.connected_accounts, 1)
        self.assertEqual(aggregated.total_stats.total_value, 1000.0)

    async def test_aggregation_of_nothing(self):
        aggregated = await self.service.get_aggregated_account_data("u1", [])
        self.assertEqual(aggregated.total_stats.total_pnl_percent, 0.0)
        self.assertEqual(aggregated.total_stats.connected_accounts, 0)

    @staticmethod
    def _failing_for(account_id, wrapped):
        async def get_account_data(user_id, acc_id, *args, **kwargs):
            if acc_id == account_id:
                raise PermissionError("invalid API key")
            return await wrapped(user_id, acc_id, *args, **kwargs)
        return get_account_data


class TestCacheAndLimits(ServiceTestCase):
    """Test invalidation, rate limit helpers, background sync and health."""

    async def test_invalidate_cache(self):
        await self.service.get_account_data("u1", "acc1", "key-1")
        await self.service.get_portfolio_data("u1", "acc1", "key-1")

        self.assertEqual(self.service.invalidate_cache("u1", "acc1", DataType.PORTFOLIO), 1)
        self.assertEqual(self.service.invalidate_cache("u1"), 1)
        self.assertEqual(self.service.get_cache_stats()["total_entries"], 0)

    def test_rate_limit_helpers(self):
        limiter = SlidingWindowRateLimiter(window_seconds=60.0, max_requests=1)
        service = BrokerageDataService(self.cache, RequestBatcher(self.fake.client), limiter)

        self.assertTrue(service.can_make_request("u1", "acc1"))
        self.assertFalse(service.can_make_request("u1", "acc1"))
        self.assertTrue(service.can_make_request("u1", "acc2"))
        self.assertGreater(service.get_time_until_reset("u1", "acc1"), 59.0)
        self.assertEqual(service.get_time_until_reset("u1", "acc3"), 0.0)

    async def test_background_sync_warms_cache(self):
        synced = await self.service.background_sync("u1", [self.acc1, self.acc2])

        self.assertEqual(synced, 2)

        self.assertIsNotNone(self.cache.get("u1", "acc1", DataType.ACCOUNT))
        self.assertIsNotNone(self.cache.get("u1", "acc2", DataType.ACCOUNT))

    async def test_background_sync_all_limited_is_noop(self):
        limiter = SlidingWindowRateLimiter(window_seconds=60.0, max_requests=0)
        service = BrokerageDataService(self.cache, RequestBatcher(self.fake.client), limiter)

        synced = await service.background_sync("u1", [self.acc1, self.acc2])

        self.assertEqual(synced, 0)
        self.assertEqual(self.fake.calls, [])
        self.assertEqual(self.cache.get_stats()["total_entries"], 0)

    async def test_background_sync_never_raises(self):
        async def broken(*args, **kwargs):
            raise RuntimeError("network down")

        self.service.get_multi_account_data = broken
        self.assertEqual(await self.service.background_sync("u1", [self.acc1]), 0)

    async def test_background_sync_counts_only_synced_accounts(self):
        """Rate limited and failed accounts are left out of the count."""
        limiter = SlidingWindowRateLimiter(window_seconds=60.0, max_requests=1)
        service = BrokerageDataService(self.cache, RequestBatcher(self.fake.client), limiter)
        service.get_account_data = TestMultiAccount._failing_for("acc2", service.get_account_data)
        acc3 = AccountCredentials(id="acc3", api_key="key-1")
        service.can_make_request("u1", "acc3")

        synced = await service.background_sync("u1", [self.acc1, self.acc2, acc3])

        self.assertEqual(synced, 1)

    async def test_start_background_sync(self):
        task = self.service.start_background_sync("u1", [self.acc1])
        self.assertEqual(self.service.health_check()["background_tasks"], 1)

        await task
        await asyncio.sleep(0)

        self.assertEqual(self.service.health_check()["background_tasks"], 0)
        self.assertIsNotNone(self.cache.get("u1", "acc1", DataType.ACCOUNT))

    async def test_health_check_is_read_only(self):
        before = self.limiter.get_stats()["admitted"]
        for _ in range(3):
            health = self.service.health_check()

        self.assertEqual(self.limiter.get_stats()["admitted"], before)
        self.assertTrue(health["rate_limiter"]["can_make_request"])
        self.assertIn("cache", health)
        self.assertEqual(health["batches"], {"pending_batches": 0, "total_pending_requests": 0})
        self.assertIn("cache_hit_rate", health["performance"])

    def test_health_check_reports_limited(self):
        limiter = SlidingWindowRateLimiter(window_seconds=60.0, max_requests=1)
        service = BrokerageDataService(self.cache, RequestBatcher(self.fake.client), limiter)
        service.can_make_request("u1", "acc1")

        health = service.health_check()

        self.assertFalse(health["rate_limiter"]["can_make_request"])
        self.assertEqual(health["performance"], {})


if __name__ == "__main__":
    unittest.main()
