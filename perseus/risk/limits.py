"""Pre-trade limit checks.

Each check returns ``(is_allowed, reason_if_rejected)``.
"""

from __future__ import annotations

from perseus.config import RiskParameters
from perseus.types import PortfolioState


class LimitChecker:
    """Checks a proposed trade against the configured risk parameters."""

    def __init__(self, params: RiskParameters) -> None:
        self.params = params

    def check_exposure(self, portfolio: PortfolioState) -> tuple[bool, str | None]:
        if portfolio.exposure >= self.params.max_total_exposure:
            return False, (
                f"Maximum exposure reached ({portfolio.exposure:.2%} >= {self.params.max_total_exposure:.2%})"
            )
        return True, None

    def check_drawdown(self, portfolio: PortfolioState) -> tuple[bool, str | None]:
        if portfolio.drawdown >= self.params.max_drawdown:
            return False, f"Maximum drawdown reached ({portfolio.drawdown:.2%} >= {self.params.max_drawdown:.2%})"
        return True, None

    def check_existing_position(self, portfolio: PortfolioState, symbol: str, action: str) -> tuple[bool, str | None]:
        position = portfolio.positions.get(symbol)
        if position is not None and position.direction == action:
            return False, f"Already holding a {action} position in {symbol}"
        return True, None

    def check_risk_reward(self, ratio: float) -> tuple[bool, str | None]:
        if ratio < self.params.min_risk_reward:
            return False, f"Insufficient risk/reward ratio ({ratio:.2f}:1)"
        return True, None

    def check_exposure_after(self, portfolio: PortfolioState, position_value: float) -> tuple[bool, str | None]:
        if portfolio.total_value <= 0:
            return False, "Portfolio value is not positive"
        exposure_after = portfolio.exposure + position_value / portfolio.total_value
        if exposure_after > self.params.max_total_exposure:
            return False, (
                f"Trade would exceed maximum exposure ({exposure_after:.2%} > {self.params.max_total_exposure:.2%})"
            )
        return True, None
