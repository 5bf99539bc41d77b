from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Optional, Protocol, runtime_checkable

from perseus.types import MarketSnapshot, TimeInForce, now_ms

REQUIRED_CLIENT_METHODS = ("get_market_data", "execute_trade", "get_account_balance", "check_order_status")


@dataclass(frozen=True)
class OrderRequest:
    """Normalized order sent to an exchange client.

    ``reference_price`` is the price the signal expected; market fills are
    measured against it.
    """

    symbol: str
    side: Literal["BUY", "SELL"]
    quantity: float
    order_type: Literal["MARKET", "LIMIT"] = "MARKET"
    reference_price: Optional[float] = None
    limit_price: Optional[float] = None
    time_in_force: TimeInForce = "GTC"
    expire_after: Optional[int] = None
    client_order_id: Optional[str] = None

    @property
    def notional(self) -> float:
        price = self.limit_price or self.reference_price or 0.0
        return self.quantity * price


@dataclass(frozen=True)
class OrderFill:
    success: bool
    order_id: Optional[str] = None
    executed_price: Optional[float] = None
    executed_quantity: float = 0.0
    transaction_cost: float = 0.0
    status: str = "FILLED"
    error: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)
    raw: Optional[Mapping[str, Any]] = None


@runtime_checkable
class ExchangeClient(Protocol):
    """Interface for trading venues (simulated or live).

    Live implementations may do blocking I/O internally; they must offload it
    (``asyncio.to_thread``) so the event loop is never blocked.
    """

    async def get_market_data(self, symbol: str) -> MarketSnapshot:
        """Return the latest snapshot for ``symbol``."""

    async def execute_trade(self, order: OrderRequest) -> OrderFill:
        """Place an order and report how it was filled."""

    async def get_account_balance(self) -> dict[str, Any]:
        """Return balances (``total_balance``, ``available_balance``, ...)."""

    async def check_order_status(self, order_id: str) -> dict[str, Any]:
        """Return status details for a previously placed order."""


def missing_client_methods(client: object) -> list[str]:
    return [name for name in REQUIRED_CLIENT_METHODS if not callable(getattr(client, name, None))]
