"""
AI Analysis Batch Service

Produces exit-strategy recommendations for portfolio positions while
keeping LLM traffic low:
- One cached recommendation per (symbol, risk profile, time bucket)
- Only cache misses go to the LLM, in fixed-size batches
- LLM calls are gated by a per-user rate limit
- Any LLM failure falls back to a deterministic rule-based classifier,
  scoped to the positions it affected
"""

import dataclasses
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from langchain_core.messages import HumanMessage, SystemMessage

from broker_tools.cache import APICache, SlidingWindowRateLimiter
from prompts.exit_strategy_prompt import EXIT_STRATEGY_SYSTEM_PROMPT, build_batch_analysis_prompt

from .data_structures import (
    AIRecommendation,
    BatchAnalysisRequest,
    BatchAnalysisResult,
    DataType,
    MarketData,
    PositionData,
    RecommendationType,
    RiskLevel,
    RiskProfile,
    Timeframe,
)
from .llm_validator import RecommendationValidator, create_structured_prompt

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_BUCKET_SECONDS = 86400  # 24 hours


def rule_based_recommendation(
    position: PositionData,
    market: Optional[MarketData],
    risk_profile: RiskProfile,
) -> AIRecommendation:
    """
    Deterministic recommendation used when the LLM is unavailable.

    Ordered decision list, first match wins:
    1. pnl > 20% and price within 10% of the 52-week high -> EXIT (LOW risk)
    2. pnl < -15%                                         -> EXIT (HIGH risk)
    3. pnl > 10% and conservative profile                 -> REDUCE (LOW risk)
    4. pnl < -5% and price > 50% above the 52-week low    -> HOLD (MEDIUM risk)
    5. otherwise                                          -> HOLD (MEDIUM risk)
    """
    price = market.price if market is not None and market.price else position.current_price
    pnl_pct = position.pnl_percent

    near_high = False
    far_from_low = False
    if market is not None:
        if market.high_52_week:
            near_high = (market.high_52_week - price) / market.high_52_week * 100 < 10
        if market.low_52_week:
            far_from_low = (price - market.low_52_week) / market.low_52_week * 100 > 50

    if pnl_pct > 20 and near_high:
        rec_type, confidence, risk = RecommendationType.EXIT, 0.8, RiskLevel.LOW
        reasoning = "Strong gains achieved and price near 52-week high. Consider taking profits."
        action = "Sell position to lock in profits. Consider setting trailing stop if holding."
    elif pnl_pct < -15:
        rec_type, confidence, risk = RecommendationType.EXIT, 0.7, RiskLevel.HIGH
        reasoning = "Significant losses accumulated. Consider cutting losses to preserve capital."
        action = "Sell position to limit further losses. Reassess investment thesis."
    elif pnl_pct > 10 and RiskProfile(risk_profile) is RiskProfile.CONSERVATIVE:
        rec_type, confidence, risk = RecommendationType.REDUCE, 0.7, RiskLevel.LOW
        reasoning = "Good profits achieved. Conservative profile suggests taking some profits."
        action = "Sell 25-50% of position to reduce risk while maintaining upside exposure."
    elif pnl_pct < -5 and far_from_low:
        rec_type, confidence, risk = RecommendationType.HOLD, 0.6, RiskLevel.MEDIUM
        reasoning = "Minor losses but price well above 52-week low. Monitor for reversal."
        action = "Hold position but set stop-loss at -10%. Monitor for trend changes."
    else:
        rec_type, confidence, risk = RecommendationType.HOLD, 0.5, RiskLevel.MEDIUM
        reasoning = "Position within normal range. Continue monitoring market conditions."
        action = "Maintain current position. Review regularly for changes in fundamentals."

    return AIRecommendation(
        symbol=position.symbol,
        recommendation_type=rec_type,
        confidence=confidence,
        reasoning=reasoning,
        suggested_action=action,
        risk_level=risk,
        timeframe=Timeframe.MEDIUM,
        target_price=None if rec_type is RecommendationType.EXIT else price * 1.1,
        stop_loss=price * 0.9,
        source="rules",
    )


class AIAnalysisBatchService:
    """
    Batched, cached LLM analysis of portfolio positions.

    Usage:
        service = AIAnalysisBatchService(cache, llm=ChatOpenAI(model="gpt-4o"),
                                         rate_limiter=limiters.get_limiter("llm"))

        result = await service.analyze_positions_batch(BatchAnalysisRequest(
            positions=positions, market_data=market_data,
            user_id=user_id, account_id=account_id,
        ))
        for rec in result.recommendations:
            print(rec.symbol, rec.recommendation_type.value, rec.source)
    """

    def __init__(
        self,
        cache: APICache,
        llm=None,
        validator: Optional[RecommendationValidator] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        bucket_seconds: float = DEFAULT_BUCKET_SECONDS,
        max_tokens: int = 4000,
        time_func: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            cache: Process-wide API cache
            llm: LangChain chat model exposing ainvoke(messages); None means
                rules only
            validator: Validator for LLM output
            rate_limiter: Limiter for the LLM API, keyed per user
            batch_size: Positions per LLM call
            bucket_seconds: Width of the time bucket in recommendation cache keys
            max_tokens: Token budget per LLM call (informational, set on the model)
            time_func: Clock returning epoch seconds (injectable for tests)
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        self.cache = cache
        self.llm = llm
        self.validator = validator or RecommendationValidator()
        self.rate_limiter = rate_limiter
        self.batch_size = batch_size
        self.bucket_seconds = bucket_seconds
        self.max_tokens = max_tokens
        self._now = time_func or time.time

        self._stats = {
            "positions_analyzed": 0,
            "cache_hits": 0,
            "llm_batches": 0,
            "llm_failures": 0,
            "rate_limited_batches": 0,
            "rule_based": 0,
            "total_tokens": 0,
        }

    def cache_key(self, symbol: str, risk_profile: RiskProfile) -> str:
        bucket = int(self._now() // self.bucket_seconds)
        return f"ai_analysis:{symbol.upper()}:{RiskProfile(risk_profile).value}:{bucket}"

    def rule_based_recommendation(
        self,
        position: PositionData,
        market: Optional[MarketData],
        risk_profile: RiskProfile,
    ) -> AIRecommendation:
        return rule_based_recommendation(position, market, risk_profile)

    async def analyze_positions_batch(self, request: BatchAnalysisRequest) -> BatchAnalysisResult:
        """
        Recommend an action for every position in the request.

        Recommendations follow the order of request.positions.
        """
        started = time.perf_counter()
        risk_profile = RiskProfile(request.risk_profile)

        logger.info(
            f"Batch AI analysis: {len(request.positions)} positions for account {request.account_id}"
        )

        recommendations: List[Optional[AIRecommendation]] = [None] * len(request.positions)
        misses: List[Tuple[int, PositionData, str]] = []
        cache_hits = 0

        for index, position in enumerate(request.positions):
            key = self.cache_key(position.symbol, risk_profile)
            cached = self.cache.get(
                request.user_id, request.account_id,
                DataType.AI_RECOMMENDATION_BATCH, {"cache_key": key},
            )
            if cached is not None:
                recommendations[index] = dataclasses.replace(cached, source="cache")
                cache_hits += 1
            else:
                misses.append((index, position, key))

        total_tokens = 0
        for start in range(0, len(misses), self.batch_size):
            chunk = misses[start:start + self.batch_size]
            fresh, tokens = await self._analyze_chunk(
                [position for _, position, _ in chunk],
                request.market_data,
                risk_profile,
                request.user_id,
            )
            total_tokens += tokens

            for (index, _, key), rec in zip(chunk, fresh):
                rec = dataclasses.replace(rec, cache_key=key)
                # Rule output stands in for a failed LLM call; let the next run retry
                if rec.source == "llm" or self.llm is None:
                    self.cache.set(
                        request.user_id, request.account_id,
                        DataType.AI_RECOMMENDATION_BATCH, rec, {"cache_key": key},
                    )
                recommendations[index] = rec

        self._stats["positions_analyzed"] += len(request.positions)
        self._stats["cache_hits"] += cache_hits
        self._stats["total_tokens"] += total_tokens

        analysis_time = time.perf_counter() - started
        logger.info(
            f"Batch AI analysis done: {len(request.positions)} positions, "
            f"{cache_hits} cache hits, {total_tokens} tokens, {analysis_time:.2f}s"
        )

        return BatchAnalysisResult(
            recommendations=recommendations,
            cache_hits=cache_hits,
            total_tokens=total_tokens,
            analysis_time=analysis_time,
        )

    def _rules_for(
        self,
        positions: Sequence[PositionData],
        market_data: Sequence[MarketData],
        risk_profile: RiskProfile,
    ) -> List[AIRecommendation]:
        market_by_symbol = {m.symbol: m for m in market_data}
        self._stats["rule_based"] += len(positions)
        return [
            rule_based_recommendation(p, market_by_symbol.get(p.symbol), risk_profile)
            for p in positions
        ]

    async def _analyze_chunk(
        self,
        positions: List[PositionData],
        market_data: List[MarketData],
        risk_profile: RiskProfile,
        user_id: str,
    ) -> Tuple[List[AIRecommendation], int]:
        """Recommendations for one batch, in position order, plus tokens used."""
        if self.llm is None:
            return self._rules_for(positions, market_data, risk_profile), 0

        if self.rate_limiter is not None and not self.rate_limiter.can_make_request(f"llm-{user_id}"):
            logger.warning(f"LLM rate limit reached for user {user_id}, using rule-based analysis")
            self._stats["rate_limited_batches"] += 1
            return self._rules_for(positions, market_data, risk_profile), 0

        prompt = create_structured_prompt(
            build_batch_analysis_prompt(positions, market_data, risk_profile)
        )
        messages = [
            SystemMessage(content=EXIT_STRATEGY_SYSTEM_PROMPT),
            HumanMessage(content=prompt),
        ]

        logger.info(f"LLM batch analysis: {len(positions)} positions")
        self._stats["llm_batches"] += 1

        try:
            response = await self.llm.ainvoke(messages)
        except Exception as e:
            logger.warning(f"LLM batch analysis failed, using rule-based fallback: {e}")
            self._stats["llm_failures"] += 1
            return self._rules_for(positions, market_data, risk_profile), 0

        tokens = self._token_count(response)

        validation = self.validator.validate(
            self._content_text(response),
            expected_symbols=[p.symbol for p in positions],
        )
        if not validation.is_valid:
            logger.warning(f"LLM output rejected, using rule-based fallback: {validation.errors}")
            self._stats["llm_failures"] += 1
            return self._rules_for(positions, market_data, risk_profile), tokens

        if validation.warnings:
            logger.debug(f"LLM output warnings: {validation.warnings}")

        parsed = {
            rec.symbol: rec
            for rec in self.validator.parse_recommendations(
                validation.corrected_output, validation.confidence_adjustment
            )
        }

        results = []
        missing = []
        for position in positions:
            rec = parsed.get(position.symbol.upper())
            if rec is None:
                missing.append(position)
                results.append(None)
            else:
                results.append(dataclasses.replace(rec, symbol=position.symbol))

        if missing:
            logger.warning(
                f"LLM response missing {len(missing)} symbols, using rule-based fallback for "
                f"{', '.join(p.symbol for p in missing)}"
            )
            fallbacks = iter(self._rules_for(missing, market_data, risk_profile))
            results = [rec if rec is not None else next(fallbacks) for rec in results]

        return results, tokens

    @staticmethod
    def _content_text(response: Any) -> str:
        content = getattr(response, "content", response)
        if isinstance(content, list):
            return " ".join(
                part.get("text", "") if isinstance(part, dict) else str(part) for part in content
            )
        return str(content) if content else ""

    @staticmethod
    def _token_count(response: Any) -> int:
        usage = getattr(response, "usage_metadata", None) or {}
        return int(usage.get("total_tokens", 0) or 0)

    def clear_cache(self, user_id: str, account_id: Optional[str] = None) -> int:
        """Drop cached recommendations of a user, or of one of their accounts."""
        removed = self.cache.invalidate(user_id, account_id, DataType.AI_RECOMMENDATION_BATCH)
        logger.info(f"Cleared {removed} cached AI recommendations for user {user_id}")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        analyzed = self._stats["positions_analyzed"]
        return {
            **self._stats,
            "cache_hit_rate_pct": round(self._stats["cache_hits"] / analyzed * 100, 1) if analyzed else 0,
            "llm_configured": self.llm is not None,
            "batch_size": self.batch_size,
            "validation": self.validator.get_validation_stats(),
        }
