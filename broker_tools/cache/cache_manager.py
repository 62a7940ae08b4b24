"""
API Cache for the Trading Dashboard

Provides an in-memory cache with TTL support for data fetched from the
brokerage and LLM APIs. Entries are keyed by user, account, data type and
an optional parameter object.

Usage:
    cache = APICache()

    # Store data; TTL comes from the data type
    cache.set(user_id, account_id, DataType.PORTFOLIO, positions)

    # Retrieve data (None on miss or expiry)
    positions = cache.get(user_id, account_id, DataType.PORTFOLIO)

    # Drop everything cached for one account
    cache.invalidate(user_id, account_id)

    # Use decorator on an async fetch function
    @cached(cache, DataType.ORDERS, key_func=lambda user_id, account_id: (user_id, account_id, None))
    async def get_orders(user_id, account_id):
        return await api_call(account_id)
"""

import dataclasses
import functools
import json
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar, Union

from broker_tools.models import DataType

logger = logging.getLogger(__name__)

T = TypeVar("T")

DataTypeLike = Union[DataType, str]

# Default TTL values for each data type (in seconds)
DEFAULT_TTL: Dict[DataType, float] = {
    DataType.PORTFOLIO: 120,                   # 2 minutes for positions summary
    DataType.ACCOUNT: 300,                     # 5 minutes for account summary
    DataType.ORDERS: 60,                       # 1 minute for open orders
    DataType.POSITIONS: 120,                   # 2 minutes for raw positions
    DataType.AI_RECOMMENDATION_BATCH: 86400,   # 24 hours for AI recommendations
}

# Used for data types outside the enum
FALLBACK_TTL = 60.0

MAX_MEMORY_ENTRIES = 1000


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _data_type_name(data_type: DataTypeLike) -> str:
    return data_type.value if isinstance(data_type, DataType) else str(data_type)


@dataclass
class CacheEntry:
    """A cached entry with metadata"""
    value: Any
    created_at: float
    ttl_seconds: float
    user_id: str
    account_id: str
    data_type: str
    params_hash: str = ""
    size_bytes: int = 0
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        """An entry is valid only while its age is below its TTL."""
        return now - self.created_at >= self.ttl_seconds

    def remaining_ttl(self, now: float) -> float:
        return max(0.0, self.created_at + self.ttl_seconds - now)


class APICache:
    """
    Thread-safe in-memory cache with TTL support.

    Features:
    - Per-data-type TTL with a short fallback for unknown types
    - Lazy expiry on read, opportunistic sweep on write
    - Bounded size, oldest inserted entries evicted first
    - Invalidation by user, account and data type
    - Cache statistics

    One instance is shared by every service of the process.
    """

    def __init__(
        self,
        max_entries: int = MAX_MEMORY_ENTRIES,
        ttl_overrides: Optional[Dict[str, float]] = None,
        time_func: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize API cache.

        Args:
            max_entries: Ceiling on the number of entries kept in memory
            ttl_overrides: TTL in seconds by data type value, replacing defaults
            time_func: Clock returning epoch seconds (injectable for tests)
        """
        if max_entries < 1:
            raise ValueError(f"max_entries must be at least 1, got {max_entries}")
        self.max_entries = max_entries
        self._ttl = {data_type.value: ttl for data_type, ttl in DEFAULT_TTL.items()}
        if ttl_overrides:
            self._ttl.update({_data_type_name(k): float(v) for k, v in ttl_overrides.items()})
        self._now = time_func or time.time
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "evictions": 0,
        }

    @staticmethod
    def _params_hash(params: Optional[Dict[str, Any]]) -> str:
        if params is None:
            return ""
        return json.dumps(params, sort_keys=True, default=str)

    def _make_key(
        self,
        user_id: str,
        account_id: str,
        data_type: DataTypeLike,
        params: Optional[Dict[str, Any]] = None,
    ) -> str:
        return f"{user_id}:{account_id}:{_data_type_name(data_type)}:{self._params_hash(params)}"

    def get_ttl(self, data_type: DataTypeLike) -> float:
        """TTL in seconds for a data type; unknown types get FALLBACK_TTL."""
        return self._ttl.get(_data_type_name(data_type), FALLBACK_TTL)

    def get(
        self,
        user_id: str,
        account_id: str,
        data_type: DataTypeLike,
        params: Optional[Dict[str, Any]] = None,
    ) -> Optional[Any]:
        """
        Get a value from cache.

        Returns:
            Cached value or None if not found/expired
        """
        key = self._make_key(user_id, account_id, data_type, params)

        with self._lock:
            entry = self._cache.get(key)

            if entry is None:
                self._stats["misses"] += 1
                logger.debug(f"Cache MISS for {_data_type_name(data_type)} ({account_id}): {key}")
                return None

            if entry.is_expired(self._now()):
                del self._cache[key]
                self._stats["misses"] += 1
                self._stats["evictions"] += 1
                logger.debug(f"Cache EXPIRED for {_data_type_name(data_type)} ({account_id}): {key}")
                return None

            entry.access_count += 1
            self._stats["hits"] += 1
            logger.debug(f"Cache HIT for {_data_type_name(data_type)} ({account_id}): {key}")
            return entry.value

    def get_with_metadata(
        self,
        user_id: str,
        account_id: str,
        data_type: DataTypeLike,
        params: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Get value with metadata (age, remaining TTL, etc.)

        Returns:
            Dict with 'value', 'age_seconds', 'remaining_ttl', 'access_count'
            or None if not found
        """
        key = self._make_key(user_id, account_id, data_type, params)

        with self._lock:
            entry = self._cache.get(key)
            now = self._now()

            if entry is None or entry.is_expired(now):
                return None

            entry.access_count += 1

            return {
                "value": entry.value,
                "age_seconds": round(now - entry.created_at, 1),
                "remaining_ttl": round(entry.remaining_ttl(now), 1),
                "access_count": entry.access_count,
            }

    def set(
        self,
        user_id: str,
        account_id: str,
        data_type: DataTypeLike,
        data: Any,
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Set a value in cache, replacing any entry with the same key.

        A value that cannot be serialized for sizing is not cached; the
        failure is logged and the next read simply misses.
        """
        try:
            key = self._make_key(user_id, account_id, data_type, params)
            size_bytes = len(json.dumps(data, default=_json_default))
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache SET skipped for {_data_type_name(data_type)} ({account_id}): {e}")
            return

        with self._lock:
            now = self._now()
            self._cache.pop(key, None)
            self._cleanup_expired_locked(now)
            self._enforce_memory_limit_locked()

            self._cache[key] = CacheEntry(
                value=data,
                created_at=now,
                ttl_seconds=self.get_ttl(data_type),
                user_id=user_id,
                account_id=account_id,
                data_type=_data_type_name(data_type),
                params_hash=self._params_hash(params),
                size_bytes=size_bytes,
            )
            self._stats["sets"] += 1

        logger.debug(f"Cache SET for {_data_type_name(data_type)} ({account_id}): {key}")

    def invalidate(
        self,
        user_id: str,
        account_id: Optional[str] = None,
        data_type: Optional[DataTypeLike] = None,
    ) -> int:
        """
        Remove entries of a user, optionally narrowed to one account and/or
        one data type.

        Returns:
            Number of entries removed
        """
        type_name = _data_type_name(data_type) if data_type is not None else None

        with self._lock:
            keys_to_delete = [
                key for key, entry in self._cache.items()
                if entry.user_id == user_id
                and (account_id is None or entry.account_id == account_id)
                and (type_name is None or entry.data_type == type_name)
            ]
            for key in keys_to_delete:
                del self._cache[key]

        if keys_to_delete:
            logger.info(f"Cache INVALIDATED: {len(keys_to_delete)} entries for user {user_id}")
        return len(keys_to_delete)

    def invalidate_all(self) -> int:
        """
        Clear entire cache.

        Returns:
            Number of entries cleared
        """
        with self._lock:
            count = len(self._cache)
            self._cache.clear()

        logger.info(f"Cache CLEARED: {count} entries removed")
        return count

    def cleanup_expired(self) -> int:
        """
        Remove all expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            return self._cleanup_expired_locked(self._now())

    def _cleanup_expired_locked(self, now: float) -> int:
        expired = [key for key, entry in self._cache.items() if entry.is_expired(now)]
        for key in expired:
            del self._cache[key]
            self._stats["evictions"] += 1
        return len(expired)

    def _enforce_memory_limit_locked(self) -> None:
        """Drop oldest inserted entries until one more entry fits."""
        while self._cache and len(self._cache) >= self.max_entries:
            oldest_key = next(iter(self._cache))
            del self._cache[oldest_key]
            self._stats["evictions"] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        with self._lock:
            total_requests = self._stats["hits"] + self._stats["misses"]
            hit_rate = (
                self._stats["hits"] / total_requests * 100
                if total_requests > 0
                else 0
            )

            return {
                "total_entries": len(self._cache),
                "memory_usage": sum(entry.size_bytes for entry in self._cache.values()),
                "hits": self._stats["hits"],
                "misses": self._stats["misses"],
                "hit_rate_pct": round(hit_rate, 1),
                "sets": self._stats["sets"],
                "evictions": self._stats["evictions"],
            }

    # ==================== Persistence Hooks ====================

    async def get_from_database(
        self,
        user_id: str,
        account_id: str,
        data_type: DataTypeLike,
        params: Optional[Dict[str, Any]] = None,
    ) -> Optional[Any]:
        """Hook for a shared persistent cache. Memory-only by default."""
        return None

    async def set_in_database(
        self,
        user_id: str,
        account_id: str,
        data_type: DataTypeLike,
        data: Any,
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Hook for a shared persistent cache. Memory-only by default."""
        return None


def cached(
    cache: APICache,
    data_type: DataTypeLike,
    key_func: Callable[..., Tuple[str, str, Optional[Dict[str, Any]]]],
):
    """
    Decorator for caching async function results with the data type's TTL.

    Args:
        cache: Cache instance to read from and write to
        data_type: Data type of the returned value
        key_func: Maps the call arguments to (user_id, account_id, params)

    Example:
        @cached(cache, DataType.ORDERS, key_func=lambda u, a, client: (u, a, None))
        async def get_orders(u, a, client):
            return await client.get_orders()
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            user_id, account_id, params = key_func(*args, **kwargs)

            hit = cache.get(user_id, account_id, data_type, params)
            if hit is not None:
                return hit

            result = await func(*args, **kwargs)
            cache.set(user_id, account_id, data_type, result, params)
            return result

        return wrapper
    return decorator
