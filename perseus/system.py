"""Perseus system orchestration.

Wires the messenger, knowledge base, agents, providers and performance monitor
together and drives the market data pipeline:

    market_data -> data processing -> strategy -> risk -> execution
                -> portfolio update -> performance monitor -> prompt feedback
"""

from __future__ import annotations

import time
from dataclasses import asdict, replace
from typing import Any, Literal, Mapping, Optional, Sequence, Union

from sqlalchemy.exc import SQLAlchemyError

from perseus.agents import (
    DataProcessingAgent,
    ExecutionAgent,
    PromptEngineeringAgent,
    RiskManagementAgent,
    StrategyAgent,
)
from perseus.agents.base import BaseAgent
from perseus.config import ExecutionParameters, RiskParameters, SystemConfig
from perseus.errors import ProviderError
from perseus.knowledge import KnowledgeBase, SqlKnowledgeStore
from perseus.logger import get_component_logger
from perseus.messaging import AgentMessenger
from perseus.performance import FEEDBACK_TOPIC, PerformanceMonitor
from perseus.providers import BinanceProvider, CoinbaseProvider, ProviderManager
from perseus.risk import portfolio_from_dict
from perseus.types import ExecutionReport, ExecutionStrategy, MarketSnapshot, TradeSignal, now_ms

SystemState = Literal["stopped", "initialized", "running"]

MARKET_DATA_TOPIC = "market_data"
SYSTEM_CONTROL_TOPIC = "system_control"
SYSTEM_STATUS_TOPIC = "system_status"
MARKET_DATA_CATEGORY = "market_data"
RECENT_WINDOW = 100
LOW_CONFIDENCE = 0.6
SMART_ROUTING_NOTIONAL = 1000.0

_ORDER_TYPE_ROUTES: dict[str, ExecutionStrategy] = {"MARKET": "market", "LIMIT": "limit", "SMART": "smart"}


def choose_execution_strategy(signal: TradeSignal) -> ExecutionStrategy:
    """Pick the execution route for an approved signal.

    An explicit ``order_type`` wins; otherwise low confidence rests a limit
    order, large notionals go through smart routing and the rest are market.
    """
    if signal.params.order_type:
        return _ORDER_TYPE_ROUTES.get(signal.params.order_type.upper(), "market")
    if signal.confidence < LOW_CONFIDENCE:
        return "limit"
    if (signal.params.position_size or 0.0) > SMART_ROUTING_NOTIONAL:
        return "smart"
    return "market"


class PerseusSystem:
    def __init__(
        self,
        config: Optional[SystemConfig] = None,
        *,
        messenger: Optional[AgentMessenger] = None,
        knowledge_base: Optional[KnowledgeBase] = None,
        provider_manager: Optional[ProviderManager] = None,
        knowledge_store: Optional[SqlKnowledgeStore] = None,
        risk_params: Optional[RiskParameters] = None,
        execution_params: Optional[ExecutionParameters] = None,
    ) -> None:
        self.config = config or SystemConfig.from_env()
        self.messenger = messenger or AgentMessenger()
        self.knowledge_base = knowledge_base or KnowledgeBase()
        if knowledge_store is None and self.config.database_url:
            knowledge_store = SqlKnowledgeStore(self.config.database_url)
        self.knowledge_store = knowledge_store
        self.logger = get_component_logger("system")

        self.prompt_agent = PromptEngineeringAgent(self.messenger, self.knowledge_base)
        self.data_agent = DataProcessingAgent(self.messenger, self.knowledge_base)
        self.strategy_agent = StrategyAgent(self.messenger, self.knowledge_base)
        self.risk_agent = RiskManagementAgent(self.messenger, self.knowledge_base, risk_params)
        self.execution_agent = ExecutionAgent(self.messenger, self.knowledge_base, execution_params)
        self.performance = PerformanceMonitor(self.messenger, self.knowledge_base)
        self.providers = provider_manager if provider_manager is not None else self._build_providers()

        self.state: SystemState = "stopped"
        self.started_at: Optional[float] = None
        self.metrics: dict[str, int] = {
            "ticks_processed": 0,
            "signals_generated": 0,
            "signals_approved": 0,
            "trades_executed": 0,
            "trades_failed": 0,
            "errors": 0,
        }
        # symbol -> strategy id that opened the current position
        self._position_strategies: dict[str, str] = {}
        self._unsubscribers: list[Any] = []
        self.messenger.subscribe(SYSTEM_CONTROL_TOPIC, self._on_system_control)

    @property
    def agents(self) -> list[BaseAgent]:
        return [self.prompt_agent, self.data_agent, self.strategy_agent, self.risk_agent, self.execution_agent]

    def _build_providers(self) -> ProviderManager:
        manager = ProviderManager()
        if self.config.enable_providers:
            # Default symbols are USD pairs, which Coinbase quotes directly.
            manager.register_provider(CoinbaseProvider(), is_default=True, priority=1)
            manager.register_provider(BinanceProvider(), priority=2)
        return manager

    def _provider_configs(self) -> dict[str, dict[str, Any]]:
        binance, coinbase = self.config.binance, self.config.coinbase
        return {
            "binance": {"api_key": binance.api_key, "api_secret": binance.api_secret, "testnet": binance.testnet},
            "coinbase": {
                "api_key": coinbase.api_key,
                "api_secret": coinbase.api_secret,
                "passphrase": coinbase.passphrase,
            },
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> bool:
        if self.state != "stopped":
            return True
        self.logger.info("Initializing Perseus system (dry_run=%s)", self.config.dry_run)

        if self.knowledge_store is not None:
            try:
                self.knowledge_store.load(self.knowledge_base)
            except SQLAlchemyError as exc:
                self.logger.error("Could not load knowledge snapshot: %s", exc)
            saved = self.knowledge_base.get("risk", "portfolio-state")
            if isinstance(saved, Mapping):
                self.risk_agent.portfolio = portfolio_from_dict(saved)

        for agent in self.agents:
            await agent.initialize()

        if self.config.enable_providers:
            if not await self.providers.initialize(self._provider_configs()):
                self.logger.warning("No market data provider is active")
        self._register_live_exchange()

        self._unsubscribers = [
            self.messenger.subscribe(MARKET_DATA_TOPIC, self._on_market_data),
            self.messenger.subscribe(FEEDBACK_TOPIC, self._on_performance_feedback),
        ]
        self.state = "initialized"
        self.logger.info("Perseus system initialized with %d agents", len(self.agents))
        return True

    def _register_live_exchange(self) -> None:
        if self.config.dry_run:
            return
        coinbase = self.providers.get_provider("coinbase")
        client = coinbase.get_exchange_client() if isinstance(coinbase, CoinbaseProvider) else None
        if client is None:
            self.logger.warning("Live trading requested but no trading client is configured; using simulation")
            return
        if self.execution_agent.register_exchange("coinbase", client):
            self.execution_agent.default_exchange = "coinbase"
            self.logger.warning("LIVE trading enabled on coinbase")

    async def start(self) -> None:
        if self.state == "running":
            return
        await self.initialize()
        self.state = "running"
        self.started_at = time.time()
        self.logger.info("Perseus system running")
        await self._publish_status("started")

    async def stop(self) -> None:
        if self.state == "stopped":
            return
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self.providers.disconnect()
        self._persist_knowledge()
        for agent in self.agents:
            await agent.shutdown()
        self.state = "stopped"
        self.started_at = None
        self.logger.info("Perseus system stopped")
        await self._publish_status("stopped")

    async def restart(self) -> None:
        await self.stop()
        await self.start()

    def _persist_knowledge(self) -> None:
        if self.knowledge_store is None:
            return
        try:
            self.knowledge_store.save(self.knowledge_base)
        except SQLAlchemyError as exc:
            self.logger.error("Could not persist knowledge snapshot: %s", exc)

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def stream_market_data(self, symbols: Optional[Sequence[str]] = None) -> dict[str, bool]:
        """Subscribe to tickers and republish every update on ``market_data``."""
        results: dict[str, bool] = {}
        for symbol in symbols or self.config.symbols:
            try:
                results[symbol] = await self.providers.subscribe(symbol, "ticker", self._publish_tick)
            except ProviderError as exc:
                self.logger.error("Could not stream %s: %s", symbol, exc)
                results[symbol] = False
        return results

    async def poll_market_data(self, symbols: Optional[Sequence[str]] = None) -> int:
        """Fetch one REST snapshot per symbol and publish it. Returns the number published."""
        published = 0
        for symbol in symbols or self.config.symbols:
            try:
                data = await self.providers.get_market_data(symbol)
            except ProviderError as exc:
                self.logger.error("Could not fetch %s: %s", symbol, exc)
                continue
            await self._publish_tick({**data, "symbol": symbol})
            published += 1
        return published

    async def _publish_tick(self, data: Mapping[str, Any]) -> None:
        await self.messenger.publish(MARKET_DATA_TOPIC, dict(data))

    async def _on_market_data(self, payload: Any) -> None:
        if self.state != "running":
            self.logger.debug("Ignoring market data while %s", self.state)
            return
        await self.process_market_data(payload)

    def _with_recent_history(self, snapshot: MarketSnapshot) -> MarketSnapshot:
        """Merge a tick into the rolling ``<symbol>.recent`` window.

        Ticks carrying a single price extend the stored series; snapshots with
        a full series replace it.
        """
        recent = self.knowledge_base.get(MARKET_DATA_CATEGORY, f"{snapshot.symbol}.recent") or {}
        prices = list(recent.get("prices") or [])
        volumes = list(recent.get("volumes") or [])
        if len(snapshot.prices) > 1:
            prices, volumes = list(snapshot.prices), list(snapshot.volumes)
        elif snapshot.latest_price is not None:
            prices.append(snapshot.latest_price)
            if snapshot.volume is not None:
                volumes.append(snapshot.volume)

        prices, volumes = prices[-RECENT_WINDOW:], volumes[-RECENT_WINDOW:]
        self.knowledge_base.store(
            MARKET_DATA_CATEGORY,
            f"{snapshot.symbol}.recent",
            {"symbol": snapshot.symbol, "prices": prices, "volumes": volumes, "timestamp": snapshot.timestamp},
            {"source": snapshot.provider or "unknown"},
        )
        return replace(snapshot, prices=prices, volumes=volumes)

    async def process_market_data(self, data: Union[MarketSnapshot, Mapping[str, Any]]) -> list[ExecutionReport]:
        """Run one tick through the whole pipeline. Returns the execution reports."""
        try:
            tick = data if isinstance(data, MarketSnapshot) else MarketSnapshot.from_mapping(data)
        except (TypeError, ValueError) as exc:
            self.metrics["errors"] += 1
            self.logger.error("Invalid market data: %s", exc)
            return []

        self.metrics["ticks_processed"] += 1
        self.knowledge_base.store(
            MARKET_DATA_CATEGORY, f"{tick.symbol}.current", tick.to_dict(), {"source": tick.provider or "unknown"}
        )
        snapshot = self._with_recent_history(tick)

        await self.data_agent.process(snapshot)
        signals = await self.strategy_agent.process(snapshot)
        approved = self.risk_agent.evaluate_signals(signals, snapshot)
        self.metrics["signals_generated"] += len(signals)
        self.metrics["signals_approved"] += len(approved)

        reports = []
        for signal in approved:
            reports.append(await self._execute(signal))

        if any(r.success for r in reports):
            await self.performance.publish_feedback()
        await self.messenger.publish(
            SYSTEM_STATUS_TOPIC,
            {
                "event": "tick_processed",
                "state": self.state,
                "symbol": tick.symbol,
                "signals": len(signals),
                "approved": len(approved),
                "executed": sum(1 for r in reports if r.success),
                "timestamp": now_ms(),
            },
        )
        return reports

    async def _execute(self, signal: TradeSignal) -> ExecutionReport:
        route = choose_execution_strategy(signal)
        report = await self.execution_agent.execute_trade(signal, route)
        self.performance.record_execution(report)
        if not report.success or report.executed_price is None or report.executed_quantity <= 0:
            self.metrics["trades_failed"] += 1
            return report

        self.metrics["trades_executed"] += 1
        self._record_outcome(signal, report)
        self.risk_agent.update_portfolio(
            {
                "symbol": report.symbol,
                "action": report.action,
                "quantity": report.executed_quantity,
                "price": report.executed_price,
            }
        )
        if report.symbol in self.risk_agent.portfolio.positions:
            self._position_strategies.setdefault(report.symbol, signal.strategy_id)
        else:
            self._position_strategies.pop(report.symbol, None)
        return report

    def _record_outcome(self, signal: TradeSignal, report: ExecutionReport) -> None:
        """Book the realised return when a fill reduces or closes an open position."""
        position = self.risk_agent.portfolio.positions.get(report.symbol)
        if position is None or position.direction == report.action:
            return
        sign = 1.0 if position.direction == "BUY" else -1.0
        return_pct = (report.executed_price - position.entry_price) / position.entry_price * sign
        strategy_id = self._position_strategies.get(report.symbol) or signal.strategy_id
        trade = {
            "symbol": report.symbol,
            "entry_price": position.entry_price,
            "exit_price": report.executed_price,
            "quantity": min(report.executed_quantity, position.quantity),
            "order_id": report.order_id,
        }
        self.strategy_agent.record_trade_outcome(strategy_id, trade, return_pct > 0, return_pct)
        self.performance.record_trade_outcome(strategy_id, return_pct)
        if report.executed_quantity >= position.quantity:
            self._position_strategies.pop(report.symbol, None)

    # ------------------------------------------------------------------
    # Control and status
    # ------------------------------------------------------------------

    async def _on_system_control(self, payload: Any) -> None:
        command = payload.get("command") if isinstance(payload, Mapping) else payload
        if command == "start":
            await self.start()
        elif command == "stop":
            await self.stop()
        elif command == "restart":
            await self.restart()
        elif command == "status":
            await self._publish_status("status")
        else:
            self.logger.warning("Unknown system control command: %s", command)

    async def _on_performance_feedback(self, payload: Any) -> None:
        if self.prompt_agent.is_active and isinstance(payload, Mapping):
            self.prompt_agent.record_feedback(payload)

    async def _publish_status(self, event: str) -> None:
        await self.messenger.publish(SYSTEM_STATUS_TOPIC, {"event": event, **self.status()})

    def status(self) -> dict[str, Any]:
        execution = self.execution_agent.get_execution_metrics()
        execution.pop("recent_executions", None)
        return {
            "state": self.state,
            "dry_run": self.config.dry_run,
            "uptime_seconds": time.time() - self.started_at if self.started_at else 0.0,
            "symbols": list(self.config.symbols),
            "agents": {agent.id: agent.status for agent in self.agents},
            "providers": self.providers.status(),
            "metrics": dict(self.metrics),
            "execution": execution,
            "portfolio": self.risk_agent.get_portfolio_state(),
            "risk_parameters": asdict(self.risk_agent.get_risk_parameters()),
            "timestamp": now_ms(),
        }
