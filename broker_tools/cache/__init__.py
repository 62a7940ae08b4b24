"""
Cache Module for the Trading Dashboard

Provides a unified caching layer with TTL support for brokerage and LLM data,
and rate limiting for external API calls.
"""

from .cache_manager import APICache, CacheEntry, DEFAULT_TTL, FALLBACK_TTL, cached
from .rate_limiter import (
    SlidingWindowRateLimiter,
    RateLimitConfig,
    RateLimiterManager,
    DEFAULT_RATE_LIMITS,
)

__all__ = [
    # Cache
    "APICache",
    "CacheEntry",
    "DEFAULT_TTL",
    "FALLBACK_TTL",
    "cached",
    # Rate Limiting
    "SlidingWindowRateLimiter",
    "RateLimitConfig",
    "RateLimiterManager",
    "DEFAULT_RATE_LIMITS",
]
