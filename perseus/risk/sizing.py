"""Position sizing algorithms for risk management.

Implements:
- Risk-based (fixed fractional): risk X% of portfolio between entry and stop
- Fixed size: a constant fraction of the portfolio regardless of the stop
- Kelly criterion: optimal fraction from historical win rate

Every method is capped at ``max_position_size`` of the portfolio.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

SizingMethod = Literal["risk-based", "fixed", "kelly"]


@dataclass
class PositionSizeConfig:
    """Position sizing configuration.

    Attributes:
        method: Sizing method ('risk-based', 'fixed', 'kelly')
        risk_per_trade: Fraction of portfolio risked per trade ('risk-based')
        max_position_size: Cap on position value as a fraction of portfolio
        kelly_fraction: Fraction of full Kelly to use ('kelly')
        win_rate: Historical win rate ('kelly')
        avg_win: Average winning return ('kelly')
        avg_loss: Average losing return, positive ('kelly')
    """

    method: SizingMethod = "risk-based"
    risk_per_trade: float = 0.01
    max_position_size: float = 0.05
    kelly_fraction: float = 0.5
    win_rate: Optional[float] = None
    avg_win: Optional[float] = None
    avg_loss: Optional[float] = None


def calculate_position_size(
    config: PositionSizeConfig,
    portfolio_value: float,
    entry_price: float,
    stop_loss_price: float,
) -> float:
    """Calculate position size in base units.

    Args:
        config: Position sizing configuration
        portfolio_value: Total portfolio value
        entry_price: Entry price for the position
        stop_loss_price: Stop loss price

    Returns:
        Position size in number of units, capped by ``max_position_size``

    Raises:
        ValueError: If the price is not positive, the stop equals the entry,
            or the method is unknown
    """
    if entry_price <= 0:
        raise ValueError("entry_price must be positive")

    risk_per_unit = abs(entry_price - stop_loss_price)
    if risk_per_unit == 0:
        raise ValueError("Risk per unit cannot be zero (entry_price == stop_loss_price)")

    if config.method == "risk-based":
        units = (portfolio_value * config.risk_per_trade) / risk_per_unit
    elif config.method == "fixed":
        units = (portfolio_value * config.max_position_size) / entry_price
    elif config.method == "kelly":
        units = (portfolio_value * kelly_fraction_of(config)) / risk_per_unit
    else:
        raise ValueError(f"Unknown sizing method: {config.method}")

    max_units = (portfolio_value * config.max_position_size) / entry_price
    return max(0.0, min(units, max_units))


def kelly_fraction_of(config: PositionSizeConfig) -> float:
    """Fractional Kelly: f* = (p * b - q) / b scaled by ``kelly_fraction``.

    Falls back to ``risk_per_trade`` until there is trade history.
    """
    if config.win_rate is None or not config.avg_win or not config.avg_loss:
        return config.risk_per_trade

    p = config.win_rate
    q = 1.0 - p
    b = config.avg_win / config.avg_loss
    if b <= 0:
        return 0.0
    return max((p * b - q) / b, 0.0) * config.kelly_fraction
