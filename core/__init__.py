"""
Trading Dashboard Core Module

This module contains the service layer of the dashboard backend:
- Data structures for account summaries and AI recommendations
- Brokerage data service (cache-first, coalesced, rate limited)
- AI analysis batching with rule-based fallback
- LLM output validation
- Background cache warming
- Observability and configuration
"""

from .data_structures import (
    AccountCredentials,
    AccountStats,
    AccountSummary,
    AggregatedAccountData,
    AggregatedStats,
    AIRecommendation,
    BatchAnalysisRequest,
    BatchAnalysisResult,
    DataType,
    MarketData,
    MultiAccountResult,
    PortfolioSummary,
    PositionData,
    RecommendationType,
    RiskLevel,
    RiskProfile,
    SyncStats,
    Timeframe,
)

from .trading212_service import BrokerageDataService
from .ai_batch_service import AIAnalysisBatchService, rule_based_recommendation
from .llm_validator import RecommendationValidator, ValidationResult, create_structured_prompt
from .background_sync import BackgroundSyncService
from .observability import OptimizationMonitor
from .config import AIConfig, AccountConfig, CacheConfig, DashboardConfig, SyncConfig, load_config
from .services import OptimizationServices, build_services

__all__ = [
    # Data Structures
    "AccountCredentials",
    "AccountStats",
    "AccountSummary",
    "AggregatedAccountData",
    "AggregatedStats",
    "AIRecommendation",
    "BatchAnalysisRequest",
    "BatchAnalysisResult",
    "DataType",
    "MarketData",
    "MultiAccountResult",
    "PortfolioSummary",
    "PositionData",
    "RecommendationType",
    "RiskLevel",
    "RiskProfile",
    "SyncStats",
    "Timeframe",
    # Brokerage Data
    "BrokerageDataService",
    # AI Analysis
    "AIAnalysisBatchService",
    "rule_based_recommendation",
    # LLM Validation
    "RecommendationValidator",
    "ValidationResult",
    "create_structured_prompt",
    # Background Sync
    "BackgroundSyncService",
    # Observability
    "OptimizationMonitor",
    # Configuration
    "AIConfig",
    "AccountConfig",
    "CacheConfig",
    "DashboardConfig",
    "SyncConfig",
    "load_config",
    "OptimizationServices",
    "build_services",
]
