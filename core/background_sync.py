"""
Background Sync Service

Keeps the brokerage cache warm by periodically refreshing the accounts of
active users. Runs as an asyncio task next to the request handlers; its
outcome is only observable through logs, the sync history and
health_check().
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .data_structures import AccountCredentials, SyncStats, utc_now_iso
from .trading212_service import BrokerageDataService

logger = logging.getLogger(__name__)

UserAccounts = Tuple[str, List[AccountCredentials]]
AccountSource = Callable[[], Awaitable[Sequence[UserAccounts]]]


class BackgroundSyncService:
    """
    Periodic cache warming over the users supplied by an account source.

    Usage:
        async def active_users():
            return [("user-1", [AccountCredentials(id="acc-1", api_key="...")])]

        sync = BackgroundSyncService(brokerage_service, active_users)
        await sync.start()
        ...
        await sync.stop()
    """

    def __init__(
        self,
        brokerage_service: BrokerageDataService,
        account_source: AccountSource,
        interval_seconds: float = 300.0,
        max_users_per_sync: int = 10,
        max_accounts_per_user: int = 5,
        user_delay_seconds: float = 1.0,
        sync_logger=None,
    ):
        """
        Args:
            brokerage_service: Service whose cache is warmed
            account_source: Async callable returning [(user_id, [AccountCredentials])]
            interval_seconds: Time between sync runs
            max_users_per_sync: Users visited per run
            max_accounts_per_user: Accounts refreshed per user
            user_delay_seconds: Pause between users to spread API load
            sync_logger: Optional SyncLogger recording each run
        """
        self.brokerage_service = brokerage_service
        self.account_source = account_source
        self.interval_seconds = interval_seconds
        self.max_users_per_sync = max_users_per_sync
        self.max_accounts_per_user = max_accounts_per_user
        self.user_delay_seconds = user_delay_seconds
        self.sync_logger = sync_logger

        self.is_running = False
        self._task: Optional[asyncio.Task] = None
        self.last_sync: Optional[datetime] = None
        self.last_stats: Optional[SyncStats] = None

    async def start(self) -> None:
        """Run one sync now, then keep syncing every interval until stop()."""
        if self.is_running:
            logger.info("Background sync is already running")
            return

        self.is_running = True
        logger.info(f"Starting background sync service (interval {self.interval_seconds:.0f}s)")

        await self.run_sync()
        if self.is_running:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if not self.is_running:
            return

        self.is_running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Background sync service stopped")

    async def _loop(self) -> None:
        while self.is_running:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_sync()
            except Exception:
                logger.exception("Background sync run failed")

    async def run_sync(self) -> SyncStats:
        """
        Refresh every user returned by the account source.

        Failures are counted and logged, never raised.
        """
        started = time.perf_counter()
        stats = SyncStats(started_at=utc_now_iso())

        logger.info("Starting background sync...")

        try:
            users = list(await self.account_source())[:self.max_users_per_sync]
        except Exception as e:
            logger.error(f"Background sync could not load users: {e}")
            stats.errors += 1
            return self._finish(stats, started)

        logger.info(f"Found {len(users)} users with active Trading212 accounts")

        for index, (user_id, accounts) in enumerate(users):
            result = await self.sync_user(user_id, accounts)
            if result["success"]:
                stats.users_processed += 1
                stats.accounts_processed += result["accounts_processed"]
            stats.errors += result["errors"]

            # Spread load on the brokerage API
            if self.user_delay_seconds > 0 and index < len(users) - 1:
                await asyncio.sleep(self.user_delay_seconds)

        return self._finish(stats, started)

    def _finish(self, stats: SyncStats, started: float) -> SyncStats:
        stats.execution_time = time.perf_counter() - started
        self.last_sync = datetime.now(timezone.utc)
        self.last_stats = stats

        logger.info(
            f"Background sync completed: {stats.users_processed} users, "
            f"{stats.accounts_processed} accounts, {stats.errors} errors, "
            f"{stats.execution_time:.2f}s"
        )

        if self.sync_logger is not None:
            try:
                self.sync_logger.log_run({
                    "started_at": stats.started_at,
                    "users_processed": stats.users_processed,
                    "accounts_processed": stats.accounts_processed,
                    "errors": stats.errors,
                    "execution_time": stats.execution_time,
                })
            except OSError as e:
                logger.error(f"Failed to write sync history: {e}")

        return stats

    async def sync_user(
        self,
        user_id: str,
        accounts: Sequence[AccountCredentials],
    ) -> Dict[str, Any]:
        """Warm the cache for one user's accounts."""
        accounts = list(accounts)[:self.max_accounts_per_user]
        if not accounts:
            return {"success": False, "accounts_processed": 0, "errors": 0}

        try:
            synced = await self.brokerage_service.background_sync(user_id, accounts)
        except Exception as e:
            logger.error(f"Background sync failed for user {user_id}: {e}")
            return {"success": False, "accounts_processed": 0, "errors": 1}

        return {"success": True, "accounts_processed": synced, "errors": 0}

    def clear_expired_cache(self) -> int:
        """Sweep expired entries from the shared cache."""
        removed = self.brokerage_service.cache.cleanup_expired()
        logger.info(f"Cleared {removed} expired cache entries")
        return removed

    def health_check(self) -> Dict[str, Any]:
        next_sync = None
        if self.is_running and self.last_sync is not None:
            next_sync = (self.last_sync + timedelta(seconds=self.interval_seconds)).isoformat()

        return {
            "is_running": self.is_running,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "next_sync": next_sync,
            "last_stats": vars(self.last_stats) if self.last_stats else None,
            "cache_stats": self.brokerage_service.get_cache_stats(),
            "batch_stats": self.brokerage_service.get_batch_stats(),
        }
