"""
Brokerage Data Service

Cache-first access to Trading212 account data for the dashboard routes.
Combines the shared APICache, the RequestBatcher and the brokerage rate
limiter:

    route -> service -> cache -> (miss) batcher -> Trading212 API
                              <- write-through <-

Foreground fetch errors propagate to the caller unchanged. Only the
background sync path logs and swallows them.
"""

import asyncio
import dataclasses
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Set, Union

from broker_tools.cache import APICache, SlidingWindowRateLimiter
from broker_tools.request_batcher import InFlightRequests, RequestBatcher, pnl_percent
from broker_tools.models import RequestType

from .data_structures import (
    AccountCredentials,
    AccountStats,
    AccountSummary,
    AggregatedAccountData,
    AggregatedStats,
    DataType,
    MultiAccountResult,
    PortfolioSummary,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"


class BrokerageDataService:
    """
    Orchestrates cache, batcher and rate limiter for brokerage data.

    Usage:
        service = BrokerageDataService(cache, batcher, limiters.get_limiter("brokerage"))

        summary = await service.get_account_data(user_id, account.id, account.api_key,
                                                 account.is_practice)
        if summary.cache_hit:
            ...

        aggregated = await service.get_aggregated_account_data(user_id, accounts)
    """

    def __init__(
        self,
        cache: APICache,
        batcher: RequestBatcher,
        rate_limiter: SlidingWindowRateLimiter,
        monitor=None,
    ):
        """
        Args:
            cache: Process-wide API cache
            batcher: Process-wide request batcher
            rate_limiter: Limiter for the brokerage API
            monitor: Optional OptimizationMonitor receiving fetch timings
        """
        self.cache = cache
        self.batcher = batcher
        self.rate_limiter = rate_limiter
        self.monitor = monitor

        self._pending_fetches = InFlightRequests()
        self._background_tasks: Set[asyncio.Task] = set()

    def _record(self, data_type: DataType, cache_hit: bool, started: float) -> None:
        if self.monitor is not None:
            self.monitor.record_fetch(data_type, cache_hit, time.perf_counter() - started)

    # ==================== Single Account ====================

    async def get_account_data(
        self,
        user_id: str,
        account_id: str,
        api_key: str,
        is_practice: bool = False,
        include_orders: bool = False,
    ) -> AccountSummary:
        """
        Get the account summary, from cache when fresh.

        Concurrent misses for the same account share one upstream fetch.
        """
        started = time.perf_counter()

        cached = self.cache.get(user_id, account_id, DataType.ACCOUNT)
        if cached is not None:
            logger.info(f"Cache HIT for account {account_id}")
            self._record(DataType.ACCOUNT, True, started)
            return dataclasses.replace(cached, cache_hit=True)

        key = (user_id, account_id, include_orders)
        if key in self._pending_fetches:
            logger.info(f"Waiting for pending fetch for account {account_id}")

        summary = await self._pending_fetches.run(
            key,
            lambda: self._fetch_and_cache(user_id, account_id, api_key, is_practice, include_orders),
        )
        self._record(DataType.ACCOUNT, False, started)
        return summary

    async def _fetch_and_cache(
        self,
        user_id: str,
        account_id: str,
        api_key: str,
        is_practice: bool,
        include_orders: bool,
    ) -> AccountSummary:
        logger.info(f"Fetching account {account_id} from Trading212")

        fetched = await self.batcher.fetch_account_data(
            user_id, account_id, api_key, is_practice, include_orders
        )

        account = fetched.account
        today_pnl = 0.0
        today_pnl_percent = 0.0
        if isinstance(account, dict):
            result = account.get("result")
            if isinstance(result, (int, float)) and not isinstance(result, bool):
                today_pnl = float(result)
                today_pnl_percent = pnl_percent(today_pnl, fetched.stats.total_value)

        currency = DEFAULT_CURRENCY
        if isinstance(account, dict) and account.get("currencyCode"):
            currency = account["currencyCode"]

        summary = AccountSummary(
            account_id=account_id,
            account=account,
            positions=fetched.portfolio,
            orders=fetched.orders or [],
            stats=AccountStats(
                active_positions=fetched.stats.active_positions,
                total_pnl=fetched.stats.total_pnl,
                total_pnl_percent=fetched.stats.total_pnl_percent,
                total_value=fetched.stats.total_value,
                today_pnl=today_pnl,
                today_pnl_percent=today_pnl_percent,
            ),
            currency=currency,
            last_updated=utc_now_iso(),
            cache_hit=False,
        )

        self.cache.set(user_id, account_id, DataType.ACCOUNT, summary)
        return summary

    async def get_portfolio_data(
        self,
        user_id: str,
        account_id: str,
        api_key: str,
        is_practice: bool = False,
    ) -> PortfolioSummary:
        """Get positions with totals, from cache when fresh."""
        started = time.perf_counter()

        cached = self.cache.get(user_id, account_id, DataType.PORTFOLIO)
        if cached is not None:
            logger.info(f"Portfolio cache HIT for account {account_id}")
            self._record(DataType.PORTFOLIO, True, started)
            return dataclasses.replace(cached, cache_hit=True)

        positions = await self.batcher.request(
            user_id, account_id, RequestType.PORTFOLIO, api_key, is_practice
        )
        positions = positions or []
        stats = self.batcher.calculate_stats(positions)

        # Currency is only known from the account record
        currency = DEFAULT_CURRENCY
        account_entry = self.cache.get_with_metadata(user_id, account_id, DataType.ACCOUNT)
        if account_entry is not None:
            currency = account_entry["value"].currency

        summary = PortfolioSummary(
            account_id=account_id,
            positions=positions,
            active_positions=stats.active_positions,
            total_value=stats.total_value,
            total_pnl=stats.total_pnl,
            total_pnl_percent=stats.total_pnl_percent,
            currency=currency,
            last_updated=utc_now_iso(),
            cache_hit=False,
        )

        self.cache.set(user_id, account_id, DataType.PORTFOLIO, summary)
        self._record(DataType.PORTFOLIO, False, started)
        return summary

    async def force_refresh_account_data(
        self,
        user_id: str,
        account_id: str,
        api_key: str,
        is_practice: bool = False,
        include_orders: bool = False,
    ) -> AccountSummary:
        """Drop the cached account summary, then fetch and cache it again."""
        self.invalidate_cache(user_id, account_id, DataType.ACCOUNT)
        return await self.get_account_data(user_id, account_id, api_key, is_practice, include_orders)

    # ==================== Multiple Accounts ====================

    async def get_multi_account_data(
        self,
        user_id: str,
        accounts: Sequence[AccountCredentials],
        force_refresh: bool = False,
        include_orders: bool = False,
    ) -> List[MultiAccountResult]:
        """
        Fetch several accounts concurrently.

        Each account succeeds or fails on its own; results follow the input
        order. With force_refresh the cache is not read but is still written.
        """
        logger.info(f"Multi-account fetch for {len(accounts)} accounts (force_refresh={force_refresh})")

        async def fetch_one(account: AccountCredentials) -> MultiAccountResult:
            try:
                if force_refresh:
                    summary = await self._pending_fetches.run(
                        (user_id, account.id, include_orders),
                        lambda: self._fetch_and_cache(
                            user_id, account.id, account.api_key, account.is_practice, include_orders
                        ),
                    )
                else:
                    summary = await self.get_account_data(
                        user_id, account.id, account.api_key, account.is_practice, include_orders
                    )
            except Exception as e:
                logger.error(f"Failed to fetch account {account.id}: {e}")
                return MultiAccountResult(account_id=account.id, error=str(e) or type(e).__name__)

            return MultiAccountResult(account_id=account.id, data=summary, cache_hit=summary.cache_hit)

        return list(await asyncio.gather(*(fetch_one(account) for account in accounts)))

    async def get_aggregated_account_data(
        self,
        user_id: str,
        accounts: Sequence[AccountCredentials],
    ) -> AggregatedAccountData:
        """Totals across every account that was fetched without error."""
        logger.info(f"Aggregated data fetch for {len(accounts)} accounts")

        account_results = await self.get_multi_account_data(user_id, accounts)

        total_stats = AggregatedStats()
        cache_hits = 0

        for result in account_results:
            if result.data is None or result.error:
                continue

            stats = result.data.stats
            total_stats.active_positions += stats.active_positions
            total_stats.total_pnl += stats.total_pnl
            total_stats.total_value += stats.total_value
            total_stats.today_pnl += stats.today_pnl
            total_stats.connected_accounts += 1

            if result.cache_hit:
                cache_hits += 1

        total_stats.total_pnl_percent = pnl_percent(total_stats.total_pnl, total_stats.total_value)
        total_stats.today_pnl_percent = pnl_percent(total_stats.today_pnl, total_stats.total_value)

        return AggregatedAccountData(
            total_stats=total_stats,
            account_results=account_results,
            cache_hits=cache_hits,
        )

    # ==================== Cache & Rate Limits ====================

    def invalidate_cache(
        self,
        user_id: str,
        account_id: Optional[str] = None,
        data_type: Optional[Union[DataType, str]] = None,
    ) -> int:
        removed = self.cache.invalidate(user_id, account_id, data_type)
        logger.info(f"Cache invalidated for user {user_id}, account {account_id}, type {data_type}")
        return removed

    @staticmethod
    def _rate_limit_key(user_id: str, account_id: str) -> str:
        return f"brokerage-{user_id}-{account_id}"

    def can_make_request(self, user_id: str, account_id: str) -> bool:
        """Admission check for one account. Records the request when admitted."""
        return self.rate_limiter.can_make_request(self._rate_limit_key(user_id, account_id))

    def get_time_until_reset(self, user_id: str, account_id: str) -> float:
        """Seconds until the account's rate limit window frees a slot."""
        return self.rate_limiter.get_time_until_reset(self._rate_limit_key(user_id, account_id))

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats()

    def get_batch_stats(self) -> Dict[str, int]:
        return self.batcher.get_stats()

    # ==================== Background Sync ====================

    async def background_sync(self, user_id: str, accounts: Sequence[AccountCredentials]) -> int:
        """
        Warm the cache for the accounts that are not rate limited.

        Never raises: failures are logged.

        Returns:
            Number of accounts refreshed without error; rate limited
            accounts are not counted.
        """
        logger.info(f"Background sync for user {user_id}")

        accounts_to_sync = [a for a in accounts if self.can_make_request(user_id, a.id)]
        if not accounts_to_sync:
            logger.info(f"All accounts of user {user_id} are rate limited, skipping background sync")
            return 0

        try:
            results = await self.get_multi_account_data(user_id, accounts_to_sync)
        except Exception as e:
            logger.error(f"Background sync failed for user {user_id}: {e}")
            return 0

        failed = sum(1 for r in results if r.error)
        logger.info(
            f"Background sync completed for {len(accounts_to_sync)} accounts "
            f"of user {user_id} ({failed} failed)"
        )
        return len(accounts_to_sync) - failed

    def start_background_sync(
        self, user_id: str, accounts: Sequence[AccountCredentials]
    ) -> asyncio.Task:
        """Run background_sync detached. The service keeps the task alive until it ends."""
        task = asyncio.create_task(self.background_sync(user_id, list(accounts)))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ==================== Health ====================

    def health_check(self) -> Dict[str, Any]:
        """Read-only snapshot of cache, in-flight and rate limiter state."""
        limiter_stats = self.rate_limiter.get_stats()
        can_make_request = (
            limiter_stats["max_requests"] > 0 and limiter_stats["limited_keys"] == 0
        )

        return {
            "cache": self.get_cache_stats(),
            "batches": self.get_batch_stats(),
            "rate_limiter": {"can_make_request": can_make_request, **limiter_stats},
            "performance": self.monitor.get_metrics() if self.monitor is not None else {},
            "background_tasks": len(self._background_tasks),
        }
