"""Performance metric calculations for strategies and executions.

Returns are fractional (0.05 == +5%).
"""

from __future__ import annotations

import math
from typing import Sequence


def calculate_sharpe_ratio(returns: Sequence[float], risk_free_rate: float = 0.0, periods_per_year: int = 365) -> float:
    """Calculate the annualized Sharpe ratio from per-trade or per-period returns.

    Sharpe Ratio = (Mean Return - Risk Free Rate) / Std Dev of Returns

    Args:
        returns: Sequence of returns
        risk_free_rate: Risk-free rate per period (default 0.0)
        periods_per_year: Annualization factor (default 365 for crypto)

    Returns:
        Sharpe ratio, 0.0 with fewer than two returns or zero variance
    """
    if not returns or len(returns) < 2:
        return 0.0

    mean_return = sum(returns) / len(returns)
    variance = sum((r - mean_return) ** 2 for r in returns) / (len(returns) - 1)
    std_dev = math.sqrt(variance) if variance > 0 else 0.0

    if std_dev == 0:
        return 0.0

    return ((mean_return - risk_free_rate) / std_dev) * math.sqrt(periods_per_year)


def calculate_max_drawdown(equity_curve: Sequence[float]) -> float:
    """Calculate maximum drawdown from an equity curve.

    Max Drawdown = max((peak - trough) / peak)

    Returns:
        Maximum drawdown as a fraction (0.0 to 1.0)
    """
    if not equity_curve or len(equity_curve) < 2:
        return 0.0

    max_dd = 0.0
    peak = equity_curve[0]

    for value in equity_curve:
        if value > peak:
            peak = value
        dd = (peak - value) / peak if peak > 0 else 0.0
        if dd > max_dd:
            max_dd = dd

    return max_dd


def equity_curve_from_returns(returns: Sequence[float], start: float = 1.0) -> list[float]:
    """Compound returns into an equity curve starting at ``start``."""
    curve = [start]
    for r in returns:
        curve.append(curve[-1] * (1 + r))
    return curve


def calculate_win_rate(returns: Sequence[float]) -> float:
    """Fraction of returns above zero."""
    if not returns:
        return 0.0
    return sum(1 for r in returns if r > 0) / len(returns)


def calculate_profit_factor(returns: Sequence[float]) -> float:
    """Gross gains over gross losses.

    A loss-free history divides by 1 instead of 0, so the result stays finite
    and equals the gross gain.
    """
    if not returns:
        return 0.0

    gross_profit = sum(r for r in returns if r > 0)
    gross_loss = abs(sum(r for r in returns if r < 0))
    return gross_profit / (gross_loss or 1.0)


def calculate_average_return(returns: Sequence[float]) -> float:
    if not returns:
        return 0.0
    return sum(returns) / len(returns)


def worst_return_drawdown(returns: Sequence[float]) -> float:
    """Magnitude of the worst single losing return (0.0 if none lost)."""
    if not returns:
        return 0.0
    return abs(min(0.0, min(returns)))
