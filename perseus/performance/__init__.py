from perseus.performance.metrics import (
    calculate_average_return,
    calculate_max_drawdown,
    calculate_profit_factor,
    calculate_sharpe_ratio,
    calculate_win_rate,
    equity_curve_from_returns,
    worst_return_drawdown,
)
from perseus.performance.monitor import FEEDBACK_TOPIC, PerformanceMonitor

__all__ = [
    "FEEDBACK_TOPIC",
    "PerformanceMonitor",
    "calculate_average_return",
    "calculate_max_drawdown",
    "calculate_profit_factor",
    "calculate_sharpe_ratio",
    "calculate_win_rate",
    "equity_curve_from_returns",
    "worst_return_drawdown",
]
