"""
Request Batcher for the Trading212 API

Sits between the data services and the Trading212 client:
- Coalesces concurrent identical requests into one upstream call
- Fetches the resources of one account concurrently, isolating failures
- Fans out across accounts while preserving input order
- Computes portfolio statistics from raw positions
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Sequence, Tuple, Union

from broker_tools.models import (
    AccountBatchResult,
    AccountCredentials,
    AccountFetchResult,
    PortfolioStats,
    RequestType,
)
from broker_tools.trading212_client import Trading212Client

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, bool], Any]


def _num(value: Any) -> float:
    """Numeric field of an upstream record; missing or non-numeric counts as 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def pnl_percent(pnl: float, value: float) -> float:
    """
    P&L as a percentage of cost basis (value - pnl).

    Returns 0 when the cost basis is zero.
    """
    cost_basis = value - pnl
    if cost_basis == 0:
        return 0.0
    return pnl / cost_basis * 100


def calculate_stats(positions: Optional[Sequence[Dict[str, Any]]]) -> PortfolioStats:
    """
    Portfolio totals for a raw Trading212 position list.

    Every listed position counts as active, including zero-quantity ones.
    """
    positions = positions or []

    total_value = sum(_num(p.get("quantity")) * _num(p.get("currentPrice")) for p in positions)
    total_pnl = sum(_num(p.get("ppl")) for p in positions)

    return PortfolioStats(
        active_positions=len(positions),
        total_pnl=total_pnl,
        total_pnl_percent=pnl_percent(total_pnl, total_value),
        total_value=total_value,
    )


class InFlightRequests:
    """
    Registry of in-flight coroutines keyed by request identity.

    The first caller for a key starts the work as a task; later callers for
    the same key await that task instead of starting their own. All callers
    receive the same result or the same exception. The key is released as
    soon as the task finishes, so the next call starts fresh work.
    """

    def __init__(self):
        self._tasks: Dict[Hashable, asyncio.Task] = {}
        self._waiters: Dict[Hashable, int] = {}

    def _release(self, key: Hashable, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
            self._waiters.pop(key, None)
        # Mark the outcome as retrieved even if every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task
            self._waiters[key] = 0
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        else:
            logger.debug(f"Joining in-flight request {key}")

        self._waiters[key] += 1
        try:
            # shield: one caller being cancelled must not cancel the shared work
            return await asyncio.shield(task)
        finally:
            if self._tasks.get(key) is task:
                self._waiters[key] -= 1

    def __contains__(self, key: Hashable) -> bool:
        return key in self._tasks

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def waiting(self) -> int:
        return sum(self._waiters.values())


class RequestBatcher:
    """
    Coalescing request layer over the Trading212 API.

    Usage:
        batcher = RequestBatcher()

        positions = await batcher.request(user_id, account_id, "portfolio", api_key, False)

        data = await batcher.fetch_account_data(user_id, account_id, api_key, False,
                                                include_orders=True)
        if data.account is None:
            ...  # account call failed, positions may still be present
    """

    def __init__(self, client_factory: ClientFactory = Trading212Client):
        """
        Args:
            client_factory: Called as client_factory(api_key, is_practice); the
                returned object must provide async get_account, get_positions
                and get_orders. One client is kept per (api_key, is_practice)
                and reused, so its HTTP session and request spacing persist.
        """
        self.client_factory = client_factory
        self._in_flight = InFlightRequests()
        self._clients: Dict[Tuple[str, bool], Any] = {}

    def _get_client(self, api_key: str, is_practice: bool) -> Any:
        key = (api_key, is_practice)
        client = self._clients.get(key)
        if client is None:
            client = self.client_factory(api_key, is_practice)
            self._clients[key] = client
        return client

    def close(self) -> None:
        """Close every cached client that holds resources."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            close = getattr(client, "close", None)
            if close is not None:
                close()

    @staticmethod
    def _parse_request_type(request_type: Union[RequestType, str]) -> RequestType:
        try:
            return RequestType(request_type)
        except ValueError:
            raise ValueError(f"Unknown request type: {request_type}") from None

    async def _execute(self, request_type: RequestType, api_key: str, is_practice: bool) -> Any:
        client = self._get_client(api_key, is_practice)

        if request_type is RequestType.ACCOUNT:
            return await client.get_account()
        if request_type is RequestType.PORTFOLIO:
            return await client.get_positions()
        return await client.get_orders()

    async def request(
        self,
        user_id: str,
        account_id: str,
        request_type: Union[RequestType, str],
        api_key: str,
        is_practice: bool = False,
    ) -> Any:
        """
        Fetch one resource, joining an identical request already in flight.

        Raises:
            ValueError: For an unknown request type, before any I/O
        """
        request_type = self._parse_request_type(request_type)
        key = (user_id, account_id, request_type.value)

        return await self._in_flight.run(
            key, lambda: self._execute(request_type, api_key, is_practice)
        )

    async def fetch_account_data(
        self,
        user_id: str,
        account_id: str,
        api_key: str,
        is_practice: bool = False,
        include_orders: bool = False,
    ) -> AccountFetchResult:
        """
        Fetch account, portfolio and (optionally) orders concurrently.

        A failed resource degrades on its own: account -> None,
        portfolio -> [], orders -> []. Stats are computed from whatever
        portfolio data arrived.
        """
        request_types = [RequestType.ACCOUNT, RequestType.PORTFOLIO]
        if include_orders:
            request_types.append(RequestType.ORDERS)

        results = await asyncio.gather(
            *(self.request(user_id, account_id, rt, api_key, is_practice) for rt in request_types),
            return_exceptions=True,
        )

        values: Dict[RequestType, Any] = {}
        for request_type, result in zip(request_types, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to fetch {request_type.value} for account {account_id}: {result}")
                values[request_type] = None
            elif isinstance(result, BaseException):
                raise result
            else:
                values[request_type] = result

        account = values.get(RequestType.ACCOUNT)
        portfolio = values.get(RequestType.PORTFOLIO) or []
        orders = (values.get(RequestType.ORDERS) or []) if include_orders else None

        return AccountFetchResult(
            account=account,
            portfolio=portfolio,
            orders=orders,
            stats=calculate_stats(portfolio),
        )

    async def fetch_multi_account_data(
        self,
        user_id: str,
        accounts: Sequence[AccountCredentials],
        include_orders: bool = False,
    ) -> List[AccountBatchResult]:
        """Fetch several accounts in parallel. Results follow the input order."""
        logger.info(f"Batch fetching {len(accounts)} accounts for user {user_id}")

        async def fetch_one(account: AccountCredentials) -> AccountBatchResult:
            try:
                data = await self.fetch_account_data(
                    user_id, account.id, account.api_key, account.is_practice, include_orders
                )
                return AccountBatchResult(account_id=account.id, data=data)
            except Exception as e:
                logger.error(f"Account {account.id} failed during batch fetch: {e}")
                return AccountBatchResult(account_id=account.id, error=str(e) or type(e).__name__)

        return list(await asyncio.gather(*(fetch_one(account) for account in accounts)))

    def calculate_stats(self, positions: Optional[Sequence[Dict[str, Any]]]) -> PortfolioStats:
        return calculate_stats(positions)

    def get_stats(self) -> Dict[str, int]:
        """In-flight requests and the callers waiting on them."""
        return {
            "pending_batches": self._in_flight.pending,
            "total_pending_requests": self._in_flight.waiting,
        }
