"""
Rate Limiter for the Trading Dashboard

Provides admission control for calls to the brokerage and LLM APIs.
Uses a per-key sliding window: a key may make at most ``max_requests``
calls within any ``window_seconds`` interval.

Usage:
    from broker_tools.cache import RateLimiterManager

    limiter = RateLimiterManager().get_limiter("brokerage")

    key = f"brokerage-{user_id}-{account_id}"
    if limiter.can_make_request(key):
        api_call()
    else:
        wait = limiter.get_time_until_reset(key)
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuration for a rate limiter."""
    window_seconds: float = 60.0  # Sliding window length
    max_requests: int = 10  # Admissions allowed per window and key
    name: str = "default"  # Service name for logging


# Default rate limits for the external services
DEFAULT_RATE_LIMITS = {
    "brokerage": RateLimitConfig(
        window_seconds=60.0,
        max_requests=15,  # Trading212 tolerates bursts of ~15/min per key
        name="brokerage",
    ),
    "llm": RateLimitConfig(
        window_seconds=60.0,
        max_requests=10,
        name="llm",
    ),
    "default": RateLimitConfig(
        window_seconds=60.0,
        max_requests=10,
        name="default",
    ),
}


class SlidingWindowRateLimiter:
    """
    Sliding window rate limiter partitioned by key.

    Each key keeps the timestamps of its admitted requests. Timestamps older
    than the window are discarded on every check, so a key whose window has
    fully elapsed behaves as if it had never been seen.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_requests: int = 10,
        name: str = "default",
        time_func: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize rate limiter.

        Args:
            window_seconds: Length of the sliding window in seconds
            max_requests: Requests admitted per key inside one window
            name: Service name used in logs and stats
            time_func: Clock returning epoch seconds (injectable for tests)
        """
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.name = name
        self._now = time_func or time.time
        self._requests: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

        # Statistics
        self._stats = {
            "admitted": 0,
            "rejected": 0,
        }

    @classmethod
    def from_config(
        cls,
        config: RateLimitConfig,
        time_func: Optional[Callable[[], float]] = None,
    ) -> "SlidingWindowRateLimiter":
        return cls(
            window_seconds=config.window_seconds,
            max_requests=config.max_requests,
            name=config.name,
            time_func=time_func,
        )

    def _valid_timestamps(self, key: str, now: float) -> List[float]:
        """Timestamps for key still inside the window. Caller holds the lock."""
        timestamps = self._requests.get(key)
        if not timestamps:
            return []
        valid = [ts for ts in timestamps if now - ts < self.window_seconds]
        if valid:
            self._requests[key] = valid
        else:
            del self._requests[key]
        return valid

    def can_make_request(self, key: str, rate_limit: Optional[int] = None) -> bool:
        """
        Check whether key may make a request now, recording it if so.

        Args:
            key: Caller identity, e.g. "brokerage-{user}-{account}"
            rate_limit: Optional per-call override of max_requests

        Returns:
            True if admitted, False if the window is full
        """
        limit = self.max_requests if rate_limit is None else rate_limit

        with self._lock:
            now = self._now()
            valid = self._valid_timestamps(key, now)

            if limit <= 0 or len(valid) >= limit:
                self._stats["rejected"] += 1
                logger.debug(f"[{self.name}] Rate limited: {key} ({len(valid)}/{limit})")
                return False

            valid.append(now)
            self._requests[key] = valid
            self._stats["admitted"] += 1
            return True

    def get_time_until_reset(self, key: str) -> float:
        """Seconds until the oldest request of key leaves the window (0 if none)."""
        with self._lock:
            now = self._now()
            valid = self._valid_timestamps(key, now)
            if not valid:
                return 0.0

            remaining = self.window_seconds - (now - min(valid))
            return max(0.0, remaining)

    def is_limited(self, key: str) -> bool:
        """Whether key is currently at capacity. Does not record a request."""
        with self._lock:
            valid = self._valid_timestamps(key, self._now())
            return self.max_requests <= 0 or len(valid) >= self.max_requests

    def reset(self, key: Optional[str] = None) -> None:
        """Forget the history of one key, or of every key."""
        with self._lock:
            if key is None:
                self._requests.clear()
            else:
                self._requests.pop(key, None)

    def get_stats(self) -> Dict:
        """Get rate limiter statistics."""
        with self._lock:
            now = self._now()
            limited = 0
            for key in list(self._requests):
                if len(self._valid_timestamps(key, now)) >= self.max_requests:
                    limited += 1

            return {
                "service": self.name,
                "window_seconds": self.window_seconds,
                "max_requests": self.max_requests,
                "tracked_keys": len(self._requests),
                "limited_keys": limited,
                "admitted": self._stats["admitted"],
                "rejected": self._stats["rejected"],
            }


class RateLimiterManager:
    """
    Registry of rate limiters, one per external service.

    Built once at process start and shared by every component that talks to
    a rate-limited API.
    """

    def __init__(
        self,
        configs: Optional[Dict[str, RateLimitConfig]] = None,
        time_func: Optional[Callable[[], float]] = None,
    ):
        self._configs = dict(DEFAULT_RATE_LIMITS)
        if configs:
            self._configs.update(configs)
        self._time_func = time_func
        self._limiters: Dict[str, SlidingWindowRateLimiter] = {}
        self._lock = threading.Lock()

    def get_limiter(self, service: str) -> SlidingWindowRateLimiter:
        """
        Get rate limiter for a service.

        Args:
            service: Service name (e.g., "brokerage", "llm")

        Returns:
            Rate limiter for the service
        """
        with self._lock:
            if service not in self._limiters:
                config = self._configs.get(service, self._configs["default"])
                # Create new config with correct name if using default
                if service not in self._configs:
                    config = RateLimitConfig(
                        window_seconds=config.window_seconds,
                        max_requests=config.max_requests,
                        name=service,
                    )
                self._limiters[service] = SlidingWindowRateLimiter.from_config(
                    config, time_func=self._time_func
                )

            return self._limiters[service]

    def get_all_stats(self) -> Dict[str, Dict]:
        """Get statistics for all rate limiters."""
        with self._lock:
            limiters = dict(self._limiters)
        return {service: limiter.get_stats() for service, limiter in limiters.items()}
