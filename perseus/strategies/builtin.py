"""Built-in signal strategies.

Every strategy takes a ``MarketSnapshot`` plus its parameter mapping and
returns a ``TradeSignal`` or ``None`` when there is nothing to do. Strategies
only set the price levels; sizing is left to the risk manager.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from perseus.strategies.indicators import compute_rsi
from perseus.types import Action, MarketSnapshot, SignalParams, TradeSignal

logger = logging.getLogger(__name__)

StrategyFn = Callable[[MarketSnapshot, Mapping[str, Any]], Optional[TradeSignal]]


@dataclass
class StrategyDefinition:
    id: str
    name: str
    fn: StrategyFn
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True

    def metadata(self) -> dict[str, Any]:
        """Serialisable view (the function itself is not stored)."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters),
            "enabled": self.enabled,
        }


def _signal(
    snapshot: MarketSnapshot,
    action: Action,
    reason: str,
    confidence: float,
    entry: float,
    stop_loss: float,
    take_profit: float,
) -> TradeSignal:
    return TradeSignal(
        action=action,
        symbol=snapshot.symbol,
        confidence=confidence,
        reason=reason,
        params=SignalParams(entry_price=entry, stop_loss=stop_loss, take_profit=take_profit),
    )


def trend_following(snapshot: MarketSnapshot, params: Mapping[str, Any]) -> Optional[TradeSignal]:
    prices = snapshot.prices
    if not prices:
        return None
    last = prices[-1]
    prev = prices[-2] if len(prices) > 1 else last
    threshold = float(params.get("threshold", 0.02))

    if last > prev * (1 + threshold):
        return _signal(snapshot, "BUY", "Upward trend detected", 0.6, last, prev, last * 1.05)
    if last < prev * (1 - threshold):
        return _signal(snapshot, "SELL", "Downward trend detected", 0.6, last, prev, last * 0.95)
    return None


def mean_reversion(snapshot: MarketSnapshot, params: Mapping[str, Any]) -> Optional[TradeSignal]:
    prices = snapshot.prices
    if not prices:
        return None
    last = prices[-1]
    mean = sum(prices) / len(prices)
    deviation = float(params.get("deviation_threshold", 5)) / 100

    if last > mean * (1 + deviation):
        return _signal(snapshot, "SELL", "Price significantly above mean", 0.7, last, last * 1.03, mean)
    if last < mean * (1 - deviation):
        return _signal(snapshot, "BUY", "Price significantly below mean", 0.7, last, last * 0.97, mean)
    return None


def breakout(snapshot: MarketSnapshot, params: Mapping[str, Any]) -> Optional[TradeSignal]:
    prices = snapshot.prices
    lookback = int(params.get("lookback", 20))
    # The three most recent prices are the breakout candidates, not the range.
    if lookback < 4 or len(prices) < lookback:
        return None
    reference = prices[-lookback:][:-3]
    current = prices[-1]
    resistance = max(reference)
    support = min(reference)
    factor = float(params.get("volatility_factor", 2)) / 100

    if current > resistance * (1 + factor):
        return _signal(snapshot, "BUY", "Bullish breakout detected", 0.75, current, resistance, current * 1.1)
    if current < support * (1 - factor):
        return _signal(snapshot, "SELL", "Bearish breakout detected", 0.75, current, support, current * 0.9)
    return None


def momentum(snapshot: MarketSnapshot, params: Mapping[str, Any]) -> Optional[TradeSignal]:
    prices = snapshot.prices
    period = int(params.get("period", 14))
    if len(prices) <= period:
        return None

    rsi = compute_rsi(prices, period)
    current = prices[-1]
    if rsi < float(params.get("oversold_level", 30)):
        reason = f"Oversold condition detected by RSI ({rsi:.1f})"
        return _signal(snapshot, "BUY", reason, 0.7, current, current * 0.95, current * 1.1)
    if rsi > float(params.get("overbought_level", 70)):
        reason = f"Overbought condition detected by RSI ({rsi:.1f})"
        return _signal(snapshot, "SELL", reason, 0.7, current, current * 1.05, current * 0.9)
    return None


def volume_profile(snapshot: MarketSnapshot, params: Mapping[str, Any]) -> Optional[TradeSignal]:
    prices = snapshot.prices
    volumes = snapshot.volumes
    if not prices or not volumes:
        return None

    current_volume = snapshot.volume if snapshot.volume is not None else volumes[-1]
    average_volume = sum(volumes) / len(volumes)
    threshold = float(params.get("significant_level_threshold", 1.5))
    if average_volume <= 0 or current_volume <= average_volume * threshold:
        return None

    current = snapshot.latest_price or prices[-1]
    recent = prices[-5:]
    recent_high = max(recent)
    recent_low = min(recent)
    proximity = float(params.get("proximity", 0.01))

    if recent_low and abs(current - recent_low) / recent_low < proximity:
        return _signal(snapshot, "BUY", "Volume support level detected", 0.65, current, current * 0.97, current * 1.1)
    if recent_high and abs(current - recent_high) / recent_high < proximity:
        reason = "Volume resistance level detected"
        return _signal(snapshot, "SELL", reason, 0.65, current, current * 1.03, current * 0.9)
    return None


def default_strategies() -> list[StrategyDefinition]:
    return [
        StrategyDefinition(
            "trend-following",
            "Trend Following",
            trend_following,
            "Follows short-term price moves above a threshold",
            {"threshold": 0.02},
        ),
        StrategyDefinition(
            "mean-reversion",
            "Mean Reversion",
            mean_reversion,
            "Fades prices that stray from the series mean",
            {"deviation_threshold": 5},
        ),
        StrategyDefinition(
            "breakout",
            "Breakout",
            breakout,
            "Trades breaks of the recent support/resistance range",
            {"lookback": 20, "volatility_factor": 2},
        ),
        StrategyDefinition(
            "momentum",
            "Momentum",
            momentum,
            "RSI oversold/overbought reversals",
            {"period": 14, "oversold_level": 30, "overbought_level": 70},
        ),
        StrategyDefinition(
            "volume-profile",
            "Volume Profile",
            volume_profile,
            "High-volume tests of recent highs and lows",
            {"significant_level_threshold": 1.5, "proximity": 0.01},
        ),
    ]
