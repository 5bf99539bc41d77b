from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any, Literal, Optional

from perseus.execution.interfaces import OrderFill, OrderRequest
from perseus.knowledge import KnowledgeBase
from perseus.types import MarketSnapshot, now_ms

logger = logging.getLogger(__name__)


@dataclass
class SimulatedPosition:
    """Represents a simulated position."""

    symbol: str
    qty: float  # Positive for long, negative for short
    avg_entry: float
    realized_pnl: float = 0.0


class SimulatedExchangeClient:
    """Paper exchange used whenever no live client is registered.

    Features:
    - Market orders: instant fill at the reference price +/- slippage
    - Limit orders: immediate fill when the limit crosses the book, otherwise
      filled with ``fill_probability`` (simulating a later fill) or expired
    - Position tracking: long/short positions with average entry price
    - Fees: ``fee_rate`` of the filled notional
    """

    def __init__(
        self,
        exchange_id: str = "simulated",
        *,
        knowledge_base: Optional[KnowledgeBase] = None,
        slippage_bps: float = 5.0,
        fee_rate: float = 0.001,
        fill_probability: float = 0.7,
        starting_balance: float = 100_000.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        """Initialize the simulated exchange.

        Args:
            exchange_id: Identifier used in order ids
            knowledge_base: Source of ``market_data/<symbol>.current`` snapshots
            slippage_bps: Slippage in basis points for market orders
            fee_rate: Transaction fee as a fraction of notional
            fill_probability: Chance that a resting limit order fills
            starting_balance: Quote currency balance
            rng: Random source (inject a seeded one for deterministic tests)
        """
        self.exchange_id = exchange_id
        self._knowledge_base = knowledge_base
        self._slippage_bps = slippage_bps
        self._fee_rate = fee_rate
        self._fill_probability = fill_probability
        self._rng = rng or random.Random()
        self._balance = starting_balance
        self._positions: dict[str, SimulatedPosition] = {}
        self._orders: dict[str, dict[str, Any]] = {}
        self._next_order_id = 1

    async def get_market_data(self, symbol: str) -> MarketSnapshot:
        if self._knowledge_base is not None:
            current = self._knowledge_base.get("market_data", f"{symbol}.current")
            if isinstance(current, MarketSnapshot):
                return current
            if isinstance(current, dict):
                return MarketSnapshot.from_mapping(current)

        return MarketSnapshot(symbol=symbol, bid=10000.0, ask=10010.0, price=10005.0, volume=100.0)

    async def execute_trade(self, order: OrderRequest) -> OrderFill:
        if order.quantity <= 0:
            return OrderFill(success=False, status="REJECTED", error="Quantity must be positive")

        order_id = f"{self.exchange_id}-{self._next_order_id}"
        self._next_order_id += 1

        if order.order_type == "MARKET":
            reference = order.reference_price
            if reference is None:
                reference = (await self.get_market_data(order.symbol)).latest_price
            if reference is None:
                rejected = OrderFill(success=False, status="REJECTED", error="No market price")
                return self._record(order_id, order, rejected)
            fill_price = self._apply_slippage(reference, order.side, self._slippage_bps)
        else:
            if order.limit_price is None:
                return self._record(
                    order_id, order, OrderFill(success=False, status="REJECTED", error="Limit price required")
                )
            snapshot = await self.get_market_data(order.symbol)
            touch = snapshot.ask if order.side == "BUY" else snapshot.bid
            touch = touch if touch is not None else snapshot.latest_price
            crosses = touch is not None and (
                order.limit_price >= touch if order.side == "BUY" else order.limit_price <= touch
            )
            if not crosses and self._rng.random() >= self._fill_probability:
                return self._record(
                    order_id,
                    order,
                    OrderFill(
                        success=False,
                        order_id=order_id,
                        status="EXPIRED",
                        error="Limit order expired without filling",
                    ),
                )
            fill_price = order.limit_price

        cost = fill_price * order.quantity * self._fee_rate
        self._update_position(order.symbol, order.side, order.quantity, fill_price)
        self._balance -= cost
        fill = OrderFill(
            success=True,
            order_id=order_id,
            executed_price=fill_price,
            executed_quantity=order.quantity,
            transaction_cost=cost,
            status="FILLED",
        )
        logger.info(
            "Simulated %s %s %s qty=%.6f @ %.4f",
            order.order_type,
            order.side,
            order.symbol,
            order.quantity,
            fill_price,
        )
        return self._record(order_id, order, fill)

    async def get_account_balance(self) -> dict[str, Any]:
        in_positions = sum(abs(p.qty) * p.avg_entry for p in self._positions.values())
        return {
            "total_balance": self._balance,
            "available_balance": self._balance - in_positions,
            "in_positions": in_positions,
            "timestamp": now_ms(),
        }

    async def check_order_status(self, order_id: str) -> dict[str, Any]:
        order = self._orders.get(order_id)
        if order is None:
            return {"order_id": order_id, "status": "UNKNOWN"}
        return dict(order)

    def get_position(self, symbol: str) -> Optional[SimulatedPosition]:
        return self._positions.get(symbol)

    def _record(self, order_id: str, order: OrderRequest, fill: OrderFill) -> OrderFill:
        self._orders[order_id] = {
            "order_id": order_id,
            "symbol": order.symbol,
            "side": order.side,
            "order_type": order.order_type,
            "status": fill.status,
            "filled_quantity": fill.executed_quantity,
            "remaining_quantity": max(order.quantity - fill.executed_quantity, 0.0),
            "avg_fill_price": fill.executed_price,
            "timestamp": fill.timestamp,
        }
        return fill

    def _apply_slippage(self, price: float, side: Literal["BUY", "SELL"], slippage_bps: float) -> float:
        """Apply slippage to a price.

        BUY orders pay more, SELL orders receive less.
        """
        slippage_factor = 1 + slippage_bps / 10_000
        if side == "BUY":
            return price * slippage_factor
        return price / slippage_factor

    def _update_position(self, symbol: str, side: Literal["BUY", "SELL"], qty: float, price: float) -> None:
        position = self._positions.get(symbol)
        signed_qty = qty if side == "BUY" else -qty

        if position is None:
            self._positions[symbol] = SimulatedPosition(symbol=symbol, qty=signed_qty, avg_entry=price)
            return

        if (position.qty > 0 and signed_qty > 0) or (position.qty < 0 and signed_qty < 0):
            # Adding to position - update average entry
            total_cost = position.avg_entry * abs(position.qty) + price * qty
            position.qty += signed_qty
            position.avg_entry = total_cost / abs(position.qty)
        elif abs(signed_qty) < abs(position.qty):
            # Reducing position - realize P&L
            pnl_per_unit = (price - position.avg_entry) * (1 if position.qty > 0 else -1)
            position.realized_pnl += pnl_per_unit * qty
            self._balance += pnl_per_unit * qty
            position.qty += signed_qty
        else:
            # Closing or flipping position
            closing_qty = abs(position.qty)
            pnl_per_unit = (price - position.avg_entry) * (1 if position.qty > 0 else -1)
            position.realized_pnl += pnl_per_unit * closing_qty
            self._balance += pnl_per_unit * closing_qty

            remaining_qty = abs(signed_qty) - closing_qty
            if remaining_qty > 0:
                position.qty = remaining_qty if signed_qty > 0 else -remaining_qty
                position.avg_entry = price
            else:
                position.qty = 0.0
                position.avg_entry = 0.0
