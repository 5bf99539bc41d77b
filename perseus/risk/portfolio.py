"""Portfolio bookkeeping for the risk manager.

Positions are tracked per symbol with an average entry price. Closing a
position realises P&L into ``total_value`` and updates the high-water mark
and drawdown.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Mapping

from perseus.types import PortfolioState, Position

logger = logging.getLogger(__name__)


def recompute_exposure(state: PortfolioState) -> float:
    if state.total_value <= 0:
        state.exposure = 0.0
    else:
        state.exposure = sum(p.value for p in state.positions.values()) / state.total_value
    return state.exposure


def open_or_add(
    state: PortfolioState,
    symbol: str,
    direction: Literal["BUY", "SELL"],
    quantity: float,
    price: float,
) -> Position:
    """Open a position or average into an existing one in the same direction.

    A trade opposite to the open position reduces it (realising P&L on the
    reduced part) and flips it when larger.
    """
    if quantity <= 0:
        raise ValueError("Quantity must be positive")
    if price <= 0:
        raise ValueError("Price must be positive")

    position = state.positions.get(symbol)
    if position is None:
        position = Position(symbol=symbol, direction=direction, quantity=quantity, entry_price=price)
        state.positions[symbol] = position
    elif position.direction == direction:
        total_cost = position.entry_price * position.quantity + price * quantity
        position.quantity += quantity
        position.entry_price = total_cost / position.quantity
    else:
        closing = min(quantity, position.quantity)
        _realise(state, position, closing, price)
        remaining = quantity - closing
        if position.quantity <= 0 and remaining > 0:
            position = Position(symbol=symbol, direction=direction, quantity=remaining, entry_price=price)
            state.positions[symbol] = position
        elif position.quantity <= 0:
            del state.positions[symbol]

    recompute_exposure(state)
    return position


def close(state: PortfolioState, symbol: str, price: float) -> float:
    """Close the whole position at ``price``. Returns the realised P&L."""
    position = state.positions.get(symbol)
    if position is None:
        logger.warning("No open position to close for %s", symbol)
        return 0.0
    pnl = _realise(state, position, position.quantity, price)
    del state.positions[symbol]
    recompute_exposure(state)
    return pnl


def _realise(state: PortfolioState, position: Position, quantity: float, price: float) -> float:
    sign = 1.0 if position.direction == "BUY" else -1.0
    pnl = (price - position.entry_price) * quantity * sign
    position.quantity -= quantity
    state.realized_pnl += pnl
    state.total_value += pnl
    if state.total_value > state.high_water_mark:
        state.high_water_mark = state.total_value
    state.drawdown = 1 - state.total_value / state.high_water_mark if state.high_water_mark > 0 else 0.0
    logger.info("Realised %.2f on %s (drawdown %.2f%%)", pnl, position.symbol, state.drawdown * 100)
    return pnl


def portfolio_to_dict(state: PortfolioState) -> dict[str, Any]:
    return {
        "total_value": state.total_value,
        "exposure": state.exposure,
        "high_water_mark": state.high_water_mark,
        "drawdown": state.drawdown,
        "realized_pnl": state.realized_pnl,
        "positions": {
            symbol: {
                "direction": p.direction,
                "quantity": p.quantity,
                "entry_price": p.entry_price,
                "value": p.value,
                "opened_at": p.opened_at,
            }
            for symbol, p in state.positions.items()
        },
    }


def portfolio_from_dict(data: Mapping[str, Any]) -> PortfolioState:
    positions = {
        symbol: Position(
            symbol=symbol,
            direction=p["direction"],
            quantity=float(p["quantity"]),
            entry_price=float(p["entry_price"]),
            opened_at=int(p.get("opened_at") or 0),
        )
        for symbol, p in (data.get("positions") or {}).items()
    }
    return PortfolioState(
        total_value=float(data.get("total_value", 100_000.0)),
        positions=positions,
        exposure=float(data.get("exposure", 0.0)),
        high_water_mark=float(data.get("high_water_mark", 100_000.0)),
        drawdown=float(data.get("drawdown", 0.0)),
        realized_pnl=float(data.get("realized_pnl", 0.0)),
    )
