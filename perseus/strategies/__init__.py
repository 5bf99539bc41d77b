from perseus.strategies.builtin import (
    StrategyDefinition,
    StrategyFn,
    breakout,
    default_strategies,
    mean_reversion,
    momentum,
    trend_following,
    volume_profile,
)
from perseus.strategies.indicators import compute_returns, compute_rsi, std_dev

__all__ = [
    "StrategyDefinition",
    "StrategyFn",
    "breakout",
    "compute_returns",
    "compute_rsi",
    "default_strategies",
    "mean_reversion",
    "momentum",
    "std_dev",
    "trend_following",
    "volume_profile",
]
