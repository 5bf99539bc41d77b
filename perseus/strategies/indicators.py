"""Price-series indicators used by the built-in strategies."""

from __future__ import annotations

import math
from typing import Sequence


def compute_rsi(prices: Sequence[float], period: int = 14) -> float:
    """
    Calculate RSI over the last ``period`` price changes.

    Uses simple averages of gains and losses (no Wilder smoothing), so the
    value reacts to the most recent window only.

    Formula:
        RSI = 100 - (100 / (1 + RS))
        where RS = Average Gain / Average Loss over period

    Args:
        prices: Price series, oldest first (at least period+1 values)
        period: Lookback period (default: 14)

    Returns:
        RSI value (0-100); 100.0 when there were no losses in the window

    Raises:
        ValueError: If insufficient prices or invalid period
    """
    if period < 1:
        raise ValueError(f"period must be >= 1, got {period}")

    if len(prices) < period + 1:
        raise ValueError(f"need at least {period + 1} prices for RSI({period}), got {len(prices)}")

    sum_gain = 0.0
    sum_loss = 0.0
    for i in range(len(prices) - period, len(prices)):
        change = prices[i] - prices[i - 1]
        if change >= 0:
            sum_gain += change
        else:
            sum_loss += -change

    avg_gain = sum_gain / period
    avg_loss = sum_loss / period

    if avg_loss == 0:
        return 100.0

    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def compute_returns(prices: Sequence[float]) -> list[float]:
    """Simple period-over-period returns; zero prices are skipped."""
    return [(prices[i] - prices[i - 1]) / prices[i - 1] for i in range(1, len(prices)) if prices[i - 1]]


def std_dev(values: Sequence[float]) -> float:
    """Population standard deviation (0.0 for fewer than two values)."""
    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))
