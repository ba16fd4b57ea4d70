"""
Configuration management.
"""

from .config import (
    Config,
    get_config,
    ExchangeName,
    ExchangeConfig,
    RiskConfig,
    TradingConfig,
    StoreConfig,
    LogConfig,
)
from .strategies import (
    StrategyProfile,
    TakeProfitStage,
    STRATEGY_PROFILES,
    load_strategy_profiles,
)

__all__ = [
    "Config",
    "get_config",
    "ExchangeName",
    "ExchangeConfig",
    "RiskConfig",
    "TradingConfig",
    "StoreConfig",
    "LogConfig",
    "StrategyProfile",
    "TakeProfitStage",
    "STRATEGY_PROFILES",
    "load_strategy_profiles",
]
