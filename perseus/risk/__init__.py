"""Risk management module.

Position sizing, limit checks and portfolio bookkeeping.
"""

from .limits import LimitChecker
from .portfolio import close, open_or_add, portfolio_from_dict, portfolio_to_dict, recompute_exposure
from .sizing import PositionSizeConfig, calculate_position_size, kelly_fraction_of

__all__ = [
    # Limits
    "LimitChecker",
    # Sizing
    "PositionSizeConfig",
    "calculate_position_size",
    "kelly_fraction_of",
    # Portfolio
    "close",
    "open_or_add",
    "portfolio_from_dict",
    "portfolio_to_dict",
    "recompute_exposure",
]
