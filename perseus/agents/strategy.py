"""Strategy agent: turns market snapshots into trade signals."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Mapping, Optional, Union

from perseus.agents.base import BaseAgent
from perseus.knowledge import KnowledgeBase
from perseus.messaging import AgentMessenger
from perseus.performance.metrics import (
    calculate_average_return,
    calculate_profit_factor,
    worst_return_drawdown,
)
from perseus.strategies import StrategyDefinition, StrategyFn, default_strategies
from perseus.types import MarketSnapshot, Message, TradeSignal, now_ms

STRATEGIES_CATEGORY = "strategies"
SIGNALS_CATEGORY = "signals"
PERFORMANCE_CATEGORY = "performance"
MAX_TRADES_PER_STRATEGY = 1000
MAX_SIGNAL_BATCHES = 500


@dataclass
class StrategyPerformance:
    total_signals: int = 0
    successful_signals: int = 0
    failed_signals: int = 0
    win_rate: float = 0.0
    average_return: float = 0.0
    profit_factor: float = 0.0
    max_drawdown: float = 0.0
    trades: list[dict[str, Any]] = field(default_factory=list)

    def returns(self) -> list[float]:
        return [float(t["return_pct"]) for t in self.trades]


def market_type(symbol: str) -> str:
    """Classify a symbol as crypto, forex or stocks from its notation."""
    upper = symbol.upper()
    if "-USD" in upper or "/USD" in upper:
        return "crypto"
    if "/" in upper:
        return "forex"
    return "stocks"


class StrategyAgent(BaseAgent):
    """Runs every enabled strategy over each snapshot and tracks outcomes."""

    def __init__(self, messenger: AgentMessenger, knowledge_base: KnowledgeBase) -> None:
        super().__init__("strategy", "strategy", messenger, knowledge_base)
        self.strategies: dict[str, StrategyDefinition] = {}
        self.performance: dict[str, StrategyPerformance] = {}

    async def on_initialize(self) -> None:
        for definition in default_strategies():
            self._install(definition)
        self.logger.info("Registered %d default strategies", len(self.strategies))

    def _install(self, definition: StrategyDefinition) -> None:
        self.strategies[definition.id] = definition
        self.store_knowledge(STRATEGIES_CATEGORY, definition.id, definition.metadata())
        if definition.id not in self.performance:
            self._restore_performance(definition.id)

    def _restore_performance(self, strategy_id: str) -> None:
        stored = self.get_knowledge(PERFORMANCE_CATEGORY, strategy_id)
        if not isinstance(stored, Mapping):
            return
        known = {f.name for f in fields(StrategyPerformance)}
        perf = StrategyPerformance(**{k: v for k, v in stored.items() if k in known})
        perf.trades = [dict(t) for t in perf.trades][-MAX_TRADES_PER_STRATEGY:]
        self.performance[strategy_id] = perf
        self.logger.info("Restored performance for %s (%d trades)", strategy_id, len(perf.trades))

    def register_strategy(
        self,
        strategy_id: str,
        name: str,
        fn: StrategyFn,
        description: str = "",
        parameters: Optional[dict[str, Any]] = None,
    ) -> bool:
        if not isinstance(strategy_id, str) or not strategy_id.strip():
            self.logger.warning("Rejected strategy registration: empty id")
            return False
        if not isinstance(name, str) or not name.strip():
            self.logger.warning("Rejected strategy %s: empty name", strategy_id)
            return False
        if not callable(fn):
            self.logger.warning("Rejected strategy %s: implementation is not callable", strategy_id)
            return False

        self._install(StrategyDefinition(strategy_id, name, fn, description, dict(parameters or {})))
        self.logger.info("Registered strategy %s (%s)", strategy_id, name)
        return True

    def set_strategy_enabled(self, strategy_id: str, enabled: bool) -> bool:
        definition = self.strategies.get(strategy_id)
        if definition is None:
            return False
        definition.enabled = enabled
        self.store_knowledge(STRATEGIES_CATEGORY, strategy_id, definition.metadata())
        return True

    async def process(self, data: Union[MarketSnapshot, Mapping[str, Any]]) -> list[TradeSignal]:
        try:
            snapshot = data if isinstance(data, MarketSnapshot) else MarketSnapshot.from_mapping(data)
        except (TypeError, ValueError) as exc:
            self.logger.error("Invalid market data: %s", exc)
            return []

        generated_at = now_ms()
        signals: list[TradeSignal] = []
        for definition in list(self.strategies.values()):
            if not definition.enabled:
                continue
            try:
                signal = definition.fn(snapshot, definition.parameters)
            except Exception as exc:
                self.logger.error("Strategy %s failed on %s: %s", definition.id, snapshot.symbol, exc)
                continue
            if signal is None:
                continue
            signals.append(
                replace(
                    signal,
                    symbol=signal.symbol or snapshot.symbol,
                    strategy_id=definition.id,
                    strategy_name=definition.name,
                    generated_at=generated_at,
                    market_timestamp=snapshot.timestamp,
                )
            )

        if signals:
            self.store_knowledge(
                SIGNALS_CATEGORY,
                f"signals-{generated_at}",
                [asdict(s) for s in signals],
                {"symbol": snapshot.symbol, "market_type": market_type(snapshot.symbol)},
            )
            self.knowledge_base.prune(SIGNALS_CATEGORY, MAX_SIGNAL_BATCHES)
            self.logger.info("Generated %d signal(s) for %s", len(signals), snapshot.symbol)
        for signal in signals:
            self.performance.setdefault(signal.strategy_id, StrategyPerformance()).total_signals += 1
        return signals

    def record_trade_outcome(
        self,
        strategy_id: str,
        trade: Mapping[str, Any],
        success: bool,
        return_pct: float,
    ) -> StrategyPerformance:
        perf = self.performance.setdefault(strategy_id, StrategyPerformance())
        if success:
            perf.successful_signals += 1
        else:
            perf.failed_signals += 1

        perf.trades.append(
            {**dict(trade), "success": success, "return_pct": float(return_pct), "recorded_at": now_ms()}
        )
        if len(perf.trades) > MAX_TRADES_PER_STRATEGY:
            perf.trades = perf.trades[-MAX_TRADES_PER_STRATEGY:]

        returns = perf.returns()
        decided = perf.successful_signals + perf.failed_signals
        perf.win_rate = perf.successful_signals / decided if decided else 0.0
        perf.average_return = calculate_average_return(returns)
        perf.profit_factor = calculate_profit_factor(returns)
        perf.max_drawdown = worst_return_drawdown(returns)

        self.store_knowledge(PERFORMANCE_CATEGORY, strategy_id, asdict(perf))
        self.logger.info(
            "Trade outcome for %s: success=%s return=%.4f win_rate=%.2f",
            strategy_id,
            success,
            return_pct,
            perf.win_rate,
        )
        return perf

    def get_performance_report(self, strategy_id: Optional[str] = None) -> dict[str, Any]:
        if strategy_id is not None:
            perf = self.performance.get(strategy_id)
            return {strategy_id: asdict(perf)} if perf else {}
        return {sid: asdict(perf) for sid, perf in self.performance.items()}

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    async def on_market_data(self, message: Message) -> None:
        signals = await self.process(message.content)
        await self.send_message(message.sender, {"signals": [asdict(s) for s in signals]}, "signal_response")

    async def on_data_response(self, message: Message) -> None:
        content = message.content or {}
        original = content.get("original", content)
        signals = await self.process(original)
        await self.send_message(message.sender, {"signals": [asdict(s) for s in signals]}, "signal_response")

    async def on_strategy_update(self, message: Message) -> None:
        content = message.content or {}
        strategy_id = content.get("strategy_id", "")
        if "enabled" in content and strategy_id in self.strategies and "fn" not in content:
            success = self.set_strategy_enabled(strategy_id, bool(content["enabled"]))
        else:
            success = self.register_strategy(
                strategy_id,
                content.get("name", ""),
                content.get("fn"),
                content.get("description", ""),
                content.get("parameters"),
            )
        await self.send_message(
            message.sender, {"success": success, "strategy_id": strategy_id}, "strategy_update_response"
        )

    async def on_trade_outcome(self, message: Message) -> None:
        content = message.content or {}
        perf = self.record_trade_outcome(
            content["strategy_id"],
            content.get("trade") or {},
            bool(content.get("success")),
            float(content.get("return_pct", 0.0)),
        )
        await self.send_message(
            message.sender,
            {"success": True, "strategy_id": content["strategy_id"], "win_rate": perf.win_rate},
            "trade_outcome_response",
        )

    async def on_performance_request(self, message: Message) -> None:
        content = message.content or {}
        report = self.get_performance_report(content.get("strategy_id"))
        await self.send_message(message.sender, {"performance": report}, "performance_response")
