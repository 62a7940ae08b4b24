"""
Service wiring for the Trading Dashboard

build_services() is called once at process start. It constructs the shared
cache, rate limiters and batcher and injects them into every service, so
all callers in the process observe the same state.
"""

import logging
import os
from dataclasses import dataclass
from typing import Callable, Optional

from langchain_openai import ChatOpenAI

from broker_tools.cache import APICache, RateLimiterManager
from broker_tools.request_batcher import ClientFactory, RequestBatcher
from broker_tools.trading212_client import Trading212Client

from .ai_batch_service import AIAnalysisBatchService
from .config import DashboardConfig
from .llm_validator import RecommendationValidator
from .observability import OptimizationMonitor
from .trading212_service import BrokerageDataService

logger = logging.getLogger(__name__)


@dataclass
class OptimizationServices:
    """Process-wide service container."""
    config: DashboardConfig
    cache: APICache
    rate_limiters: RateLimiterManager
    batcher: RequestBatcher
    monitor: OptimizationMonitor
    brokerage: BrokerageDataService
    ai: AIAnalysisBatchService


def create_llm(config: DashboardConfig) -> Optional[ChatOpenAI]:
    """Chat model from the AI config, or None when disabled or no key is set."""
    if not config.ai.enabled:
        logger.info("AI analysis disabled, using rule-based recommendations")
        return None

    api_key = os.getenv(config.ai.openai_api_key_env)
    if not api_key:
        logger.info(
            f"${config.ai.openai_api_key_env} not set, using rule-based recommendations"
        )
        return None

    return ChatOpenAI(
        model=config.ai.model,
        temperature=config.ai.temperature,
        max_tokens=config.ai.max_tokens,
        api_key=api_key,
        base_url=config.ai.openai_base_url,
    )


def build_services(
    config: Optional[DashboardConfig] = None,
    llm=None,
    client_factory: Optional[ClientFactory] = None,
    time_func: Optional[Callable[[], float]] = None,
) -> OptimizationServices:
    """
    Construct the shared service graph.

    Args:
        config: Dashboard configuration (defaults when None)
        llm: Chat model to use instead of the configured one
        client_factory: Brokerage client factory (defaults to Trading212Client)
        time_func: Clock for cache, limiters and AI buckets (tests)
    """
    config = config or DashboardConfig()

    cache = APICache(
        max_entries=config.cache.max_entries,
        ttl_overrides=config.cache.ttl_overrides,
        time_func=time_func,
    )
    rate_limiters = RateLimiterManager(config.rate_limit_configs(), time_func=time_func)
    batcher = RequestBatcher(client_factory or Trading212Client)
    monitor = OptimizationMonitor()

    brokerage = BrokerageDataService(
        cache=cache,
        batcher=batcher,
        rate_limiter=rate_limiters.get_limiter("brokerage"),
        monitor=monitor,
    )

    if llm is None:
        llm = create_llm(config)

    ai = AIAnalysisBatchService(
        cache=cache,
        llm=llm,
        validator=RecommendationValidator(min_reasoning_length=config.ai.min_reasoning_length),
        rate_limiter=rate_limiters.get_limiter("llm"),
        batch_size=config.ai.batch_size,
        bucket_seconds=config.ai.bucket_seconds,
        max_tokens=config.ai.max_tokens,
        time_func=time_func,
    )

    logger.info(
        f"Services built: cache max {config.cache.max_entries} entries, "
        f"AI {'LLM ' + config.ai.model if llm is not None else 'rules only'}"
    )

    return OptimizationServices(
        config=config,
        cache=cache,
        rate_limiters=rate_limiters,
        batcher=batcher,
        monitor=monitor,
        brokerage=brokerage,
        ai=ai,
    )
