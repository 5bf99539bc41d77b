from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Optional

Action = Literal["BUY", "SELL", "CLOSE"]
OrderType = Literal["MARKET", "LIMIT", "SMART"]
TimeInForce = Literal["GTC", "IOC", "FOK"]
ExecutionStrategy = Literal["market", "limit", "smart", "iceberg"]
Trend = Literal["strong_up", "up", "sideways", "down", "strong_down", "unknown"]


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _opt_float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


@dataclass
class MarketSnapshot:
    """Normalized market data for one symbol.

    ``prices`` is ordered oldest first.
    """

    symbol: str
    prices: list[float] = field(default_factory=list)
    volumes: list[float] = field(default_factory=list)
    price: Optional[float] = None
    bid: Optional[float] = None
    ask: Optional[float] = None
    spread: Optional[float] = None
    volume: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    timestamp: int = field(default_factory=now_ms)
    provider: Optional[str] = None

    @property
    def latest_price(self) -> Optional[float]:
        if self.price is not None:
            return self.price
        if self.prices:
            return self.prices[-1]
        return None

    @property
    def relative_spread(self) -> float:
        """Spread as a fraction of the mid price (0.0 when unknown)."""
        if self.spread is not None:
            return self.spread
        if self.bid and self.ask:
            mid = (self.bid + self.ask) / 2
            return (self.ask - self.bid) / mid if mid else 0.0
        return 0.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "MarketSnapshot":
        symbol = _pick(data, "symbol")
        if not symbol:
            raise ValueError("market data requires a symbol")
        prices = [float(p) for p in (_pick(data, "prices") or [])]
        volumes = [float(v) for v in (_pick(data, "volumes") or [])]
        return cls(
            symbol=str(symbol),
            prices=prices,
            volumes=volumes,
            price=_opt_float(_pick(data, "price", "last")),
            bid=_opt_float(_pick(data, "bid")),
            ask=_opt_float(_pick(data, "ask")),
            spread=_opt_float(_pick(data, "spread")),
            volume=_opt_float(_pick(data, "volume")),
            high=_opt_float(_pick(data, "high")),
            low=_opt_float(_pick(data, "low")),
            timestamp=int(_pick(data, "timestamp") or now_ms()),
            provider=_pick(data, "provider"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "prices": list(self.prices),
            "volumes": list(self.volumes),
            "price": self.price,
            "bid": self.bid,
            "ask": self.ask,
            "spread": self.spread,
            "volume": self.volume,
            "high": self.high,
            "low": self.low,
            "timestamp": self.timestamp,
            "provider": self.provider,
        }


@dataclass
class SignalParams:
    entry_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    position_size: Optional[float] = None  # quote currency notional
    quantity: Optional[float] = None  # base units
    order_type: Optional[OrderType] = None
    time_in_force: Optional[TimeInForce] = None
    expire_after: Optional[int] = None
    slippage_tolerance: Optional[float] = None
    risk_reward_ratio: Optional[float] = None


@dataclass
class RiskMetrics:
    max_loss: float
    var_95: float
    position_risk: float
    exposure_after: float = 0.0


@dataclass
class TradeSignal:
    action: Action
    symbol: str
    confidence: float
    strategy_id: str = ""
    strategy_name: str = ""
    reason: str = ""
    params: SignalParams = field(default_factory=SignalParams)
    generated_at: int = field(default_factory=now_ms)
    market_timestamp: Optional[int] = None
    risk_metrics: Optional[RiskMetrics] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TradeSignal":
        """Rebuild a signal from ``dataclasses.asdict`` output or a message payload."""
        params = data.get("params") or {}
        known = set(SignalParams.__dataclass_fields__)
        metrics = data.get("risk_metrics")
        return cls(
            action=data["action"],
            symbol=str(data.get("symbol") or ""),
            confidence=float(data.get("confidence", 0.0)),
            strategy_id=str(data.get("strategy_id") or ""),
            strategy_name=str(data.get("strategy_name") or ""),
            reason=str(data.get("reason") or ""),
            params=SignalParams(**{k: v for k, v in params.items() if k in known}),
            generated_at=int(data.get("generated_at") or now_ms()),
            market_timestamp=data.get("market_timestamp"),
            risk_metrics=RiskMetrics(**metrics) if isinstance(metrics, Mapping) else None,
        )


@dataclass
class RiskDecision:
    approved: bool
    reason: str
    signal: Optional[TradeSignal] = None
    risk_metrics: Optional[RiskMetrics] = None
    error: Optional[str] = None


@dataclass
class ExecutionReport:
    success: bool
    symbol: str
    action: str
    strategy: str
    order_id: Optional[str] = None
    requested_price: Optional[float] = None
    executed_price: Optional[float] = None
    executed_quantity: float = 0.0
    slippage: float = 0.0
    execution_time_ms: float = 0.0
    attempts: int = 0
    chunks: int = 1
    transaction_cost: float = 0.0
    strategy_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class Message:
    sender: str
    recipient: str
    type: str
    content: Any
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: int = field(default_factory=now_ms)


@dataclass
class Position:
    symbol: str
    direction: Literal["BUY", "SELL"]
    quantity: float
    entry_price: float
    opened_at: int = field(default_factory=now_ms)

    @property
    def value(self) -> float:
        return self.quantity * self.entry_price


@dataclass
class PortfolioState:
    total_value: float = 100_000.0
    positions: dict[str, Position] = field(default_factory=dict)
    exposure: float = 0.0
    high_water_mark: float = 100_000.0
    drawdown: float = 0.0
    realized_pnl: float = 0.0
