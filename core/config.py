"""
Configuration for the Trading Dashboard

Dataclass tree with defaults, built from an optional JSON file and then
overridden from the environment (.env is loaded by the entry point).

Example JSON:
    {
        "log_level": "INFO",
        "cache": {"max_entries": 1000, "ttl_overrides": {"portfolio": 60}},
        "brokerage_rate_limit": {"window_seconds": 60, "max_requests": 15},
        "ai": {"model": "gpt-4o", "batch_size": 5},
        "sync": {"interval_seconds": 300},
        "users": {
            "user-1": [
                {"id": "acc-1", "name": "ISA", "is_practice": true,
                 "api_key_env": "TRADING212_API_KEY_ACC1"}
            ]
        }
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from broker_tools.cache import DEFAULT_RATE_LIMITS, RateLimitConfig

from .data_structures import AccountCredentials

logger = logging.getLogger(__name__)


@dataclass
class CacheConfig:
    """Configuration for the API cache."""
    max_entries: int = 1000
    ttl_overrides: Dict[str, float] = field(default_factory=dict)  # data type -> seconds


@dataclass
class AIConfig:
    """Configuration for the AI analysis service."""
    enabled: bool = True
    model: str = "gpt-4o"
    openai_base_url: Optional[str] = None
    openai_api_key_env: str = "OPENAI_API_KEY"
    temperature: float = 0.3
    max_tokens: int = 4000
    batch_size: int = 5
    bucket_seconds: float = 86400  # 24 hours
    min_reasoning_length: int = 10


@dataclass
class SyncConfig:
    """Configuration for background cache warming."""
    interval_seconds: float = 300.0  # 5 minutes
    max_users_per_sync: int = 10
    max_accounts_per_user: int = 5
    user_delay_seconds: float = 1.0


@dataclass
class AccountConfig:
    """A Trading212 account whose API key is read from the environment."""
    id: str
    name: str = ""
    is_practice: bool = False
    api_key_env: str = ""

    def to_credentials(self) -> AccountCredentials:
        api_key = os.getenv(self.api_key_env, "") if self.api_key_env else ""
        if not api_key:
            logger.warning(f"No API key found in ${self.api_key_env or '<unset>'} for account {self.id}")
        return AccountCredentials(
            id=self.id,
            api_key=api_key,
            is_practice=self.is_practice,
            name=self.name,
        )


def _rate_limit_from_dict(data: Dict[str, Any], default: RateLimitConfig) -> RateLimitConfig:
    return RateLimitConfig(
        window_seconds=float(data.get("window_seconds", default.window_seconds)),
        max_requests=int(data.get("max_requests", default.max_requests)),
        name=default.name,
    )


@dataclass
class DashboardConfig:
    """Top-level configuration."""
    cache: CacheConfig = field(default_factory=CacheConfig)
    brokerage_rate_limit: RateLimitConfig = field(
        default_factory=lambda: _rate_limit_from_dict({}, DEFAULT_RATE_LIMITS["brokerage"])
    )
    llm_rate_limit: RateLimitConfig = field(
        default_factory=lambda: _rate_limit_from_dict({}, DEFAULT_RATE_LIMITS["llm"])
    )
    ai: AIConfig = field(default_factory=AIConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    users: Dict[str, List[AccountConfig]] = field(default_factory=dict)

    # Logging settings
    log_dir: str = "./logs"
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DashboardConfig":
        users = {
            user_id: [AccountConfig(**account) for account in accounts]
            for user_id, accounts in data.get("users", {}).items()
        }

        return cls(
            cache=CacheConfig(**data.get("cache", {})),
            brokerage_rate_limit=_rate_limit_from_dict(
                data.get("brokerage_rate_limit", {}), DEFAULT_RATE_LIMITS["brokerage"]
            ),
            llm_rate_limit=_rate_limit_from_dict(
                data.get("llm_rate_limit", {}), DEFAULT_RATE_LIMITS["llm"]
            ),
            ai=AIConfig(**data.get("ai", {})),
            sync=SyncConfig(**data.get("sync", {})),
            users=users,
            log_dir=data.get("log_dir", "./logs"),
            log_level=data.get("log_level", "INFO"),
        )

    def rate_limit_configs(self) -> Dict[str, RateLimitConfig]:
        return {
            "brokerage": self.brokerage_rate_limit,
            "llm": self.llm_rate_limit,
        }

    def get_accounts(self, user_id: str) -> List[AccountCredentials]:
        """Credentials for a user's configured accounts."""
        return [account.to_credentials() for account in self.users.get(user_id, [])]


def _apply_env_overrides(config: DashboardConfig) -> DashboardConfig:
    log_level = os.getenv("DASHBOARD_LOG_LEVEL")
    if log_level:
        config.log_level = log_level.upper()

    log_dir = os.getenv("DASHBOARD_LOG_DIR")
    if log_dir:
        config.log_dir = log_dir

    max_entries = os.getenv("DASHBOARD_CACHE_MAX_ENTRIES")
    if max_entries:
        try:
            config.cache.max_entries = int(max_entries)
        except ValueError:
            raise ValueError(f"DASHBOARD_CACHE_MAX_ENTRIES must be an integer, got {max_entries!r}") from None

    model = os.getenv("OPENAI_MODEL")
    if model:
        config.ai.model = model

    return config


def load_config(config_path: Optional[str] = None) -> DashboardConfig:
    """
    Load configuration from an optional JSON file plus environment overrides.

    Args:
        config_path: Path to a JSON config file; None uses defaults only

    Raises:
        FileNotFoundError: If config_path is given but missing
        ValueError: If the file or an override holds an invalid value
    """
    data: Dict[str, Any] = {}
    if config_path:
        with open(config_path, "r") as f:
            data = json.load(f)

    try:
        config = DashboardConfig.from_dict(data)
    except TypeError as e:
        raise ValueError(f"Invalid configuration in {config_path}: {e}") from e

    return _apply_env_overrides(config)
