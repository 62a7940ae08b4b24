"""
Broker-side records shared by the cache, the Trading212 client and the
request batcher.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional


class DataType(str, Enum):
    """Kinds of data held in the API cache. Each has its own TTL."""
    PORTFOLIO = "portfolio"
    ACCOUNT = "account"
    ORDERS = "orders"
    POSITIONS = "positions"
    AI_RECOMMENDATION_BATCH = "ai-recommendation-batch"


class RequestType(str, Enum):
    """Brokerage resources the request batcher knows how to fetch."""
    ACCOUNT = "account"
    PORTFOLIO = "portfolio"
    ORDERS = "orders"


@dataclass
class AccountCredentials:
    """A connected brokerage account as handed over by the route layer."""
    id: str
    api_key: str
    is_practice: bool = False
    name: str = ""


@dataclass
class PortfolioStats:
    """Totals derived from a raw position list."""
    active_positions: int = 0
    total_pnl: float = 0.0
    total_pnl_percent: float = 0.0
    total_value: float = 0.0


@dataclass
class AccountFetchResult:
    """Raw resources fetched for one account."""
    account: Optional[Dict[str, Any]]
    portfolio: List[Dict[str, Any]]
    orders: Optional[List[Dict[str, Any]]]
    stats: PortfolioStats


@dataclass
class AccountBatchResult:
    """Outcome of one account in a multi-account fan-out. Carries data or error."""
    account_id: str
    data: Optional[AccountFetchResult] = None
    error: Optional[str] = None
