"""
Observability Layer for the Trading Dashboard

This module provides:
- Rolling fetch metrics (cache hit rate, response time) per data type
- System recommendations derived from cache and batcher statistics
- A health report combining both
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Union

from .data_structures import DataType

logger = logging.getLogger(__name__)

# Thresholds for system recommendations
MIN_CACHE_ENTRIES = 50
MAX_CACHE_MEMORY_BYTES = 50 * 1024 * 1024  # 50MB
MAX_PENDING_BATCHES = 10
MAX_PENDING_REQUESTS = 100
MIN_HIT_RATE = 0.5
MAX_AVG_RESPONSE_SECONDS = 1.0


@dataclass
class FetchSample:
    """One served data request."""
    data_type: str
    cache_hit: bool
    elapsed_seconds: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class OptimizationMonitor:
    """
    Collects fetch timings from the data services.

    Maintains a rolling window of samples so metrics reflect recent traffic.
    """

    def __init__(self, window_size: int = 500):
        self.window_size = window_size
        self.samples: Deque[FetchSample] = deque(maxlen=window_size)
        self.total_fetches = 0

    def record_fetch(
        self,
        data_type: Union[DataType, str],
        cache_hit: bool,
        elapsed_seconds: float,
    ) -> None:
        """Record one served request."""
        name = data_type.value if isinstance(data_type, DataType) else str(data_type)
        self.samples.append(FetchSample(name, cache_hit, elapsed_seconds))
        self.total_fetches += 1

        if elapsed_seconds > MAX_AVG_RESPONSE_SECONDS:
            logger.warning(f"Slow {name} fetch: {elapsed_seconds:.2f}s (cache_hit={cache_hit})")

    @staticmethod
    def _summarize(samples: List[FetchSample]) -> Dict[str, Any]:
        if not samples:
            return {"fetches": 0, "cache_hit_rate": 0.0, "avg_response_seconds": 0.0}

        hits = sum(1 for s in samples if s.cache_hit)
        return {
            "fetches": len(samples),
            "cache_hit_rate": hits / len(samples),
            "avg_response_seconds": sum(s.elapsed_seconds for s in samples) / len(samples),
            "max_response_seconds": max(s.elapsed_seconds for s in samples),
        }

    def get_metrics(self) -> Dict[str, Any]:
        """Metrics over the rolling window, overall and per data type."""
        samples = list(self.samples)
        by_type: Dict[str, List[FetchSample]] = {}
        for sample in samples:
            by_type.setdefault(sample.data_type, []).append(sample)

        metrics = self._summarize(samples)
        metrics["total_fetches"] = self.total_fetches
        metrics["by_data_type"] = {name: self._summarize(s) for name, s in by_type.items()}
        return metrics

    def get_system_recommendations(
        self,
        cache_stats: Dict[str, Any],
        batch_stats: Dict[str, Any],
    ) -> List[str]:
        """Tuning hints from cache, batcher and fetch metrics."""
        recommendations = []

        # Cache recommendations
        if cache_stats.get("total_entries", 0) < MIN_CACHE_ENTRIES:
            recommendations.append("Consider increasing cache size for better performance")

        if cache_stats.get("memory_usage", 0) > MAX_CACHE_MEMORY_BYTES:
            recommendations.append("Cache memory usage is high, consider cleanup")

        # Batch recommendations
        if batch_stats.get("pending_batches", 0) > MAX_PENDING_BATCHES:
            recommendations.append("High number of pending batches, check for bottlenecks")

        if batch_stats.get("total_pending_requests", 0) > MAX_PENDING_REQUESTS:
            recommendations.append("Many pending requests, consider increasing batch size")

        # Performance recommendations (only once traffic has been observed)
        if self.samples:
            metrics = self._summarize(list(self.samples))
            if metrics["cache_hit_rate"] < MIN_HIT_RATE:
                recommendations.append("Low cache hit rate, consider optimizing cache TTL")
            if metrics["avg_response_seconds"] > MAX_AVG_RESPONSE_SECONDS:
                recommendations.append("High response times detected, check API performance")

        return recommendations

    def get_health_report(
        self,
        cache_stats: Dict[str, Any],
        batch_stats: Dict[str, Any],
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Health status with metrics and recommendations."""
        report = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "status": "healthy",
            "services": {
                "api_cache": cache_stats,
                "api_batcher": batch_stats,
            },
            "performance": self.get_metrics(),
            "recommendations": self.get_system_recommendations(cache_stats, batch_stats),
        }
        if extra:
            report.update(extra)
        return report

    def reset(self) -> None:
        self.samples.clear()
        self.total_fetches = 0
