"""
Data Structures for the Trading Dashboard

Records passed between the brokerage data service, the AI analysis service
and background sync. Broker-side records live in broker_tools.models and are
re-exported here.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from broker_tools.models import (
    AccountBatchResult,
    AccountCredentials,
    AccountFetchResult,
    DataType,
    PortfolioStats,
    RequestType,
)


class RecommendationType(str, Enum):
    HOLD = "HOLD"
    EXIT = "EXIT"
    REDUCE = "REDUCE"
    INCREASE = "INCREASE"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class Timeframe(str, Enum):
    SHORT = "SHORT"
    MEDIUM = "MEDIUM"
    LONG = "LONG"


class RiskProfile(str, Enum):
    CONSERVATIVE = "CONSERVATIVE"
    MODERATE = "MODERATE"
    AGGRESSIVE = "AGGRESSIVE"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ==================== Brokerage ====================

@dataclass
class AccountStats:
    """Portfolio totals plus today's movement for one account."""
    active_positions: int = 0
    total_pnl: float = 0.0
    total_pnl_percent: float = 0.0
    total_value: float = 0.0
    today_pnl: float = 0.0
    today_pnl_percent: float = 0.0


@dataclass
class AccountSummary:
    account_id: str
    account: Optional[Dict[str, Any]]
    positions: List[Dict[str, Any]]
    orders: List[Dict[str, Any]]
    stats: AccountStats
    currency: str = "USD"
    last_updated: str = field(default_factory=utc_now_iso)
    cache_hit: bool = False
    error: Optional[str] = None


@dataclass
class PortfolioSummary:
    account_id: str
    positions: List[Dict[str, Any]]
    active_positions: int = 0
    total_value: float = 0.0
    total_pnl: float = 0.0
    total_pnl_percent: float = 0.0
    currency: str = "USD"
    last_updated: str = field(default_factory=utc_now_iso)
    cache_hit: bool = False


@dataclass
class MultiAccountResult:
    account_id: str
    data: Optional[AccountSummary] = None
    error: Optional[str] = None
    cache_hit: bool = False


@dataclass
class AggregatedStats:
    active_positions: int = 0
    total_pnl: float = 0.0
    total_pnl_percent: float = 0.0
    total_value: float = 0.0
    today_pnl: float = 0.0
    today_pnl_percent: float = 0.0
    connected_accounts: int = 0


@dataclass
class AggregatedAccountData:
    total_stats: AggregatedStats
    account_results: List[MultiAccountResult] = field(default_factory=list)
    cache_hits: int = 0


# ==================== AI Analysis ====================

@dataclass
class PositionData:
    """A position as seen by the AI analysis pipeline."""
    symbol: str
    quantity: float = 0.0
    average_price: float = 0.0
    current_price: float = 0.0
    pnl: float = 0.0
    pnl_percent: float = 0.0
    market_value: float = 0.0

    @classmethod
    def from_trading212(cls, raw: Dict[str, Any]) -> "PositionData":
        """Build from a raw Trading212 portfolio entry; P&L % is on cost basis."""
        quantity = float(raw.get("quantity") or 0)
        average_price = float(raw.get("averagePrice") or 0)
        current_price = float(raw.get("currentPrice") or 0)
        pnl = float(raw.get("ppl") or 0)
        cost = quantity * average_price

        return cls(
            symbol=str(raw.get("ticker", "")),
            quantity=quantity,
            average_price=average_price,
            current_price=current_price,
            pnl=pnl,
            pnl_percent=pnl / cost * 100 if cost else 0.0,
            market_value=quantity * current_price,
        )


@dataclass
class MarketData:
    symbol: str
    price: float
    volume: float = 0.0
    change: float = 0.0
    change_percent: float = 0.0
    high_52_week: Optional[float] = None
    low_52_week: Optional[float] = None
    market_cap: Optional[float] = None
    pe: Optional[float] = None
    beta: Optional[float] = None


@dataclass
class AIRecommendation:
    symbol: str
    recommendation_type: RecommendationType
    confidence: float
    reasoning: str
    suggested_action: str
    risk_level: RiskLevel = RiskLevel.MEDIUM
    timeframe: Timeframe = Timeframe.MEDIUM
    target_price: Optional[float] = None
    stop_loss: Optional[float] = None
    cache_key: str = ""
    source: str = "rules"  # llm, rules or cache


@dataclass
class BatchAnalysisRequest:
    positions: List[PositionData]
    market_data: List[MarketData]
    user_id: str
    account_id: str
    risk_profile: RiskProfile = RiskProfile.MODERATE


@dataclass
class BatchAnalysisResult:
    recommendations: List[AIRecommendation]
    cache_hits: int = 0
    total_tokens: int = 0
    analysis_time: float = 0.0  # seconds


# ==================== Background Sync ====================

@dataclass
class SyncStats:
    users_processed: int = 0
    accounts_processed: int = 0
    errors: int = 0
    execution_time: float = 0.0  # seconds
    started_at: str = field(default_factory=utc_now_iso)
