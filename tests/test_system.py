"""Tests for PerseusSystem orchestration."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from perseus.config import ExecutionParameters, SystemConfig
from perseus.execution import OrderFill, OrderRequest
from perseus.knowledge import KnowledgeBase, SqlKnowledgeStore
from perseus.messaging import AgentMessenger
from perseus.performance import FEEDBACK_TOPIC
from perseus.providers import ProviderManager
from perseus.system import (
    MARKET_DATA_TOPIC,
    RECENT_WINDOW,
    SYSTEM_CONTROL_TOPIC,
    SYSTEM_STATUS_TOPIC,
    PerseusSystem,
    choose_execution_strategy,
)
from perseus.types import MarketSnapshot, SignalParams, TradeSignal


class FixedPriceExchange:
    """Fills every order in full at its reference price."""

    def __init__(self) -> None:
        self.orders: list[OrderRequest] = []

    async def get_market_data(self, symbol: str) -> MarketSnapshot:
        return MarketSnapshot(symbol=symbol, price=100.0, bid=99.9, ask=100.1)

    async def execute_trade(self, order: OrderRequest) -> OrderFill:
        self.orders.append(order)
        return OrderFill(
            success=True,
            order_id=f"order-{len(self.orders)}",
            executed_price=order.reference_price,
            executed_quantity=order.quantity,
        )

    async def get_account_balance(self) -> dict[str, Any]:
        return {"total_balance": 100_000.0, "available_balance": 100_000.0}

    async def check_order_status(self, order_id: str) -> dict[str, Any]:
        return {"order_id": order_id, "status": "FILLED"}


def _always(action: str):
    def strategy(snapshot: MarketSnapshot, params) -> TradeSignal:
        return TradeSignal(
            action=action,
            symbol=snapshot.symbol,
            confidence=0.9,
            reason=f"always {action.lower()}",
            params=SignalParams(entry_price=snapshot.latest_price, order_type="MARKET"),
        )

    return strategy


def _tick(price: float, symbol: str = "BTC-USD") -> dict[str, Any]:
    return {"symbol": symbol, "price": price, "volume": 1.0, "timestamp": 1_700_000_000_000, "provider": "test"}


@pytest_asyncio.fixture
async def system(offline_config):
    """Running system with scripted strategies and a fixed-price exchange."""
    perseus = PerseusSystem(
        offline_config, execution_params=ExecutionParameters(retry_delay_ms=0, chunk_delay_ms=0)
    )
    await perseus.start()
    for strategy_id in list(perseus.strategy_agent.strategies):
        perseus.strategy_agent.set_strategy_enabled(strategy_id, False)
    perseus.strategy_agent.register_strategy("buyer", "Always Buy", _always("BUY"))
    perseus.strategy_agent.register_strategy("seller", "Always Sell", _always("SELL"))
    perseus.strategy_agent.set_strategy_enabled("seller", False)
    exchange = FixedPriceExchange()
    perseus.execution_agent.register_exchange("simulated", exchange)
    perseus.exchange = exchange
    yield perseus
    await perseus.stop()


# ========== Routing Tests ==========


class TestChooseExecutionStrategy:
    """Tests for picking the execution route of an approved signal."""

    def _signal(self, confidence: float = 0.9, **params: Any) -> TradeSignal:
        return TradeSignal(action="BUY", symbol="BTC-USD", confidence=confidence, params=SignalParams(**params))

    def test_explicit_order_type_wins(self) -> None:
        assert choose_execution_strategy(self._signal(0.1, order_type="MARKET", position_size=5000)) == "market"
        assert choose_execution_strategy(self._signal(order_type="LIMIT")) == "limit"

    def test_low_confidence_uses_limit(self) -> None:
        assert choose_execution_strategy(self._signal(0.5, position_size=50_000)) == "limit"

    def test_large_notional_uses_smart(self) -> None:
        assert choose_execution_strategy(self._signal(position_size=5000)) == "smart"

    def test_default_is_market(self) -> None:
        assert choose_execution_strategy(self._signal(position_size=500)) == "market"


# ========== Lifecycle Tests ==========


class TestLifecycle:
    """Tests for start, stop and control messages."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, offline_config) -> None:
        perseus = PerseusSystem(offline_config)
        events = []
        perseus.messenger.subscribe(SYSTEM_STATUS_TOPIC, lambda payload: events.append(payload["event"]))

        await perseus.start()
        assert perseus.state == "running"
        assert all(agent.is_active for agent in perseus.agents)
        assert MARKET_DATA_TOPIC in perseus.messenger.topics()

        await perseus.stop()
        assert perseus.state == "stopped"
        assert all(agent.status == "inactive" for agent in perseus.agents)
        assert MARKET_DATA_TOPIC not in perseus.messenger.topics()
        assert events == ["started", "stopped"]

    @pytest.mark.asyncio
    async def test_initialize_only_once(self, offline_config) -> None:
        perseus = PerseusSystem(offline_config)
        assert await perseus.initialize() is True
        assert await perseus.initialize() is True
        assert perseus.state == "initialized"
        assert len(perseus.messenger._topics[MARKET_DATA_TOPIC]) == 1

    @pytest.mark.asyncio
    async def test_control_topic(self, offline_config) -> None:
        perseus = PerseusSystem(offline_config)
        statuses = []
        perseus.messenger.subscribe(SYSTEM_STATUS_TOPIC, statuses.append)

        await perseus.messenger.publish(SYSTEM_CONTROL_TOPIC, {"command": "start"})
        assert perseus.state == "running"

        await perseus.messenger.publish(SYSTEM_CONTROL_TOPIC, "status")
        assert statuses[-1]["event"] == "status"
        assert statuses[-1]["state"] == "running"

        await perseus.messenger.publish(SYSTEM_CONTROL_TOPIC, {"command": "restart"})
        assert perseus.state == "running"

        await perseus.messenger.publish(SYSTEM_CONTROL_TOPIC, {"command": "self-destruct"})
        assert perseus.state == "running"

        await perseus.messenger.publish(SYSTEM_CONTROL_TOPIC, {"command": "stop"})
        assert perseus.state == "stopped"

    def test_providers_disabled(self, offline_config) -> None:
        perseus = PerseusSystem(offline_config)
        assert perseus.providers.status() == {"default_provider": None, "providers": {}}

    def test_default_providers_registered(self) -> None:
        perseus = PerseusSystem(SystemConfig(log_dir=None))
        assert perseus.providers.priority_order == ["coinbase", "binance"]
        assert perseus.providers.default_provider == "coinbase"

    @pytest.mark.asyncio
    async def test_live_mode_without_credentials_stays_simulated(self) -> None:
        perseus = PerseusSystem(
            SystemConfig(dry_run=False, enable_providers=False, log_dir=None), provider_manager=ProviderManager()
        )
        await perseus.initialize()
        assert perseus.execution_agent.default_exchange == "simulated"

    def test_status_shape(self, offline_config) -> None:
        status = PerseusSystem(offline_config).status()
        assert status["state"] == "stopped"
        assert status["dry_run"] is True
        assert status["uptime_seconds"] == 0.0
        assert set(status["agents"]) == {
            "prompt-engineering",
            "data-processing",
            "strategy",
            "risk-management",
            "execution",
        }
        assert "recent_executions" not in status["execution"]
        assert status["portfolio"]["total_value"] == 100_000.0
        assert status["risk_parameters"]["max_position_size"] == 0.05


# ========== Pipeline Tests ==========


class TestPipeline:
    """Tests for running ticks through data, strategy, risk and execution."""

    @pytest.mark.asyncio
    async def test_invalid_market_data(self, system) -> None:
        assert await system.process_market_data({"price": 1.0}) == []
        assert system.metrics["errors"] == 1
        assert system.metrics["ticks_processed"] == 0

    @pytest.mark.asyncio
    async def test_buy_tick_opens_position(self, system) -> None:
        reports = await system.process_market_data(_tick(100.0))

        assert len(reports) == 1
        report = reports[0]
        assert report.success is True
        assert report.strategy == "market"
        assert report.executed_quantity == pytest.approx(50.0)
        assert system.exchange.orders[0].side == "BUY"

        position = system.risk_agent.portfolio.positions["BTC-USD"]
        assert position.direction == "BUY"
        assert position.quantity == pytest.approx(50.0)
        assert system.metrics == {
            "ticks_processed": 1,
            "signals_generated": 1,
            "signals_approved": 1,
            "trades_executed": 1,
            "trades_failed": 0,
            "errors": 0,
        }
        assert system.knowledge_base.get("market_data", "BTC-USD.current")["price"] == 100.0

    @pytest.mark.asyncio
    async def test_existing_position_blocks_repeat_buy(self, system) -> None:
        await system.process_market_data(_tick(100.0))
        reports = await system.process_market_data(_tick(101.0))

        assert reports == []
        assert system.metrics["signals_generated"] == 2
        assert system.metrics["signals_approved"] == 1

    @pytest.mark.asyncio
    async def test_closing_fill_records_outcome_for_opening_strategy(self, system) -> None:
        feedback = []
        system.messenger.subscribe(FEEDBACK_TOPIC, feedback.append)
        await system.process_market_data(_tick(100.0))

        system.strategy_agent.set_strategy_enabled("buyer", False)
        system.strategy_agent.set_strategy_enabled("seller", True)
        reports = await system.process_market_data(_tick(110.0))

        assert reports[0].action == "SELL"
        sold = reports[0].executed_quantity
        assert sold == pytest.approx(5000.0 / 110.0)

        stats = system.performance.summary()["strategies"]
        assert list(stats) == ["buyer"]
        assert stats["buyer"]["average_return"] == pytest.approx(0.1)
        assert system.strategy_agent.performance["buyer"].successful_signals == 1
        assert system.risk_agent.portfolio.realized_pnl == pytest.approx(sold * 10.0)
        assert system.risk_agent.portfolio.positions["BTC-USD"].quantity == pytest.approx(50.0 - sold)
        assert feedback[-1]["best_strategy"] == "buyer"
        assert system.prompt_agent.get_knowledge("performance", "summary")["best_strategy"] == "buyer"

    @pytest.mark.asyncio
    async def test_recent_history_window(self, system) -> None:
        system.strategy_agent.set_strategy_enabled("buyer", False)
        for i in range(RECENT_WINDOW + 5):
            await system.process_market_data(_tick(100.0 + i))

        recent = system.knowledge_base.get("market_data", "BTC-USD.recent")
        assert len(recent["prices"]) == RECENT_WINDOW
        assert recent["prices"][-1] == 100.0 + RECENT_WINDOW + 4

        await system.process_market_data({"symbol": "BTC-USD", "prices": [1.0, 2.0, 3.0]})
        assert system.knowledge_base.get("market_data", "BTC-USD.recent")["prices"] == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_market_data_topic_drives_pipeline(self, system) -> None:
        await system.messenger.publish(MARKET_DATA_TOPIC, _tick(100.0))
        assert system.metrics["trades_executed"] == 1

    @pytest.mark.asyncio
    async def test_ticks_ignored_when_not_running(self, offline_config) -> None:
        perseus = PerseusSystem(offline_config)
        await perseus.initialize()
        await perseus.messenger.publish(MARKET_DATA_TOPIC, _tick(100.0))
        assert perseus.metrics["ticks_processed"] == 0

    @pytest.mark.asyncio
    async def test_tick_status_published(self, system) -> None:
        statuses = []
        system.messenger.subscribe(SYSTEM_STATUS_TOPIC, statuses.append)

        await system.process_market_data(_tick(100.0))

        assert statuses[-1]["event"] == "tick_processed"
        assert statuses[-1]["approved"] == 1
        assert statuses[-1]["executed"] == 1


# ========== Market Data Source Tests ==========


class StaticManager(ProviderManager):
    """Provider manager returning a fixed quote for known symbols."""

    async def get_market_data(self, symbol: str, **options: Any) -> dict[str, Any]:
        from perseus.errors import ProviderError

        if symbol != "BTC-USD":
            raise ProviderError(f"unknown symbol {symbol}")
        return {"symbol": "BTCUSD", "price": 100.0, "provider": "static"}

    async def subscribe(self, symbol: str, channel: str = "ticker", callback: Any = None) -> bool:
        from perseus.errors import ProviderError

        if symbol != "BTC-USD":
            raise ProviderError("No active providers available")
        self.callback = callback
        return True


class TestMarketDataSources:
    """Tests for polling and streaming market data through the providers."""

    @pytest.mark.asyncio
    async def test_poll_publishes_with_requested_symbol(self, offline_config) -> None:
        perseus = PerseusSystem(offline_config, provider_manager=StaticManager())
        ticks = []
        perseus.messenger.subscribe(MARKET_DATA_TOPIC, ticks.append)

        published = await perseus.poll_market_data(["BTC-USD", "DOGE-USD"])

        assert published == 1
        assert ticks == [{"symbol": "BTC-USD", "price": 100.0, "provider": "static"}]

    @pytest.mark.asyncio
    async def test_stream_reports_per_symbol(self, offline_config) -> None:
        manager = StaticManager()
        perseus = PerseusSystem(offline_config, provider_manager=manager)
        ticks = []
        perseus.messenger.subscribe(MARKET_DATA_TOPIC, ticks.append)

        results = await perseus.stream_market_data(["BTC-USD", "DOGE-USD"])
        await manager.callback({"symbol": "BTC-USD", "price": 101.0})

        assert results == {"BTC-USD": True, "DOGE-USD": False}
        assert ticks == [{"symbol": "BTC-USD", "price": 101.0}]


# ========== Persistence Tests ==========


class TestPersistence:
    """Tests for saving and restoring knowledge through SQL."""

    @pytest.mark.asyncio
    async def test_portfolio_survives_restart(self, tmp_path, offline_config) -> None:
        url = f"sqlite:///{tmp_path / 'perseus.db'}"
        first = PerseusSystem(
            offline_config,
            knowledge_store=SqlKnowledgeStore(url),
            execution_params=ExecutionParameters(retry_delay_ms=0),
        )
        await first.start()
        for strategy_id in list(first.strategy_agent.strategies):
            first.strategy_agent.set_strategy_enabled(strategy_id, False)
        first.strategy_agent.register_strategy("buyer", "Always Buy", _always("BUY"))
        first.execution_agent.register_exchange("simulated", FixedPriceExchange())
        await first.process_market_data(_tick(100.0))
        await first.stop()

        second = PerseusSystem(
            offline_config,
            messenger=AgentMessenger(),
            knowledge_base=KnowledgeBase(),
            knowledge_store=SqlKnowledgeStore(url),
        )
        await second.initialize()

        position = second.risk_agent.portfolio.positions["BTC-USD"]
        assert position.quantity == pytest.approx(50.0)
        assert second.knowledge_base.get("market_data", "BTC-USD.current")["price"] == 100.0

    @pytest.mark.asyncio
    async def test_risk_parameters_survive_restart(self, tmp_path, offline_config) -> None:
        url = f"sqlite:///{tmp_path / 'perseus.db'}"
        first = PerseusSystem(offline_config, knowledge_store=SqlKnowledgeStore(url))
        await first.start()
        first.risk_agent.set_risk_parameters(max_position_size=0.01)
        await first.stop()

        second = PerseusSystem(
            offline_config,
            messenger=AgentMessenger(),
            knowledge_base=KnowledgeBase(),
            knowledge_store=SqlKnowledgeStore(url),
        )
        await second.start()

        assert second.risk_agent.get_risk_parameters().max_position_size == 0.01
        await second.stop()

    def test_database_url_builds_store(self, tmp_path) -> None:
        config = SystemConfig(enable_providers=False, log_dir=None, database_url=f"sqlite:///{tmp_path / 'k.db'}")
        assert isinstance(PerseusSystem(config).knowledge_store, SqlKnowledgeStore)
