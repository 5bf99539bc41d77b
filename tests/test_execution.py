"""Tests for signal validation, the simulated exchange and the execution agent."""

from __future__ import annotations

import base64
import random
from unittest.mock import Mock

import pytest
import requests

from perseus.agents import ExecutionAgent
from perseus.config import ExecutionParameters
from perseus.errors import ExecutionError, SignalValidationError
from perseus.execution import (
    OrderFill,
    OrderRequest,
    SimulatedExchangeClient,
    missing_client_methods,
    validate_signal,
)
from perseus.providers import CoinbaseExchangeClient
from perseus.types import MarketSnapshot, SignalParams, TradeSignal


def _signal(action="BUY", entry=100.0, notional=1_000.0, **params) -> TradeSignal:
    return TradeSignal(
        action=action,
        symbol="BTC-USD",
        confidence=0.8,
        strategy_id="test",
        params=SignalParams(entry_price=entry, position_size=notional, **params),
    )


class FlakyClient(SimulatedExchangeClient):
    """Raises on the first ``failures`` orders, then behaves normally."""

    def __init__(self, failures: int) -> None:
        super().__init__("flaky", rng=random.Random(1))
        self.failures = failures
        self.calls = 0

    async def execute_trade(self, order: OrderRequest) -> OrderFill:
        self.calls += 1
        if self.calls <= self.failures:
            raise ExecutionError("exchange unavailable")
        return await super().execute_trade(order)


class FailsOnCallClient(SimulatedExchangeClient):
    """Raises once, on order number ``fail_on``."""

    def __init__(self, fail_on: int) -> None:
        super().__init__("iceberg", rng=random.Random(1))
        self.fail_on = fail_on
        self.calls = 0

    async def execute_trade(self, order: OrderRequest) -> OrderFill:
        self.calls += 1
        if self.calls == self.fail_on:
            raise ExecutionError("order gateway timeout")
        return await super().execute_trade(order)


class RestingOrderClient(SimulatedExchangeClient):
    """Acknowledges orders as pending and reports scripted status updates."""

    def __init__(self, statuses: list) -> None:
        super().__init__("resting")
        self.statuses = list(statuses)
        self.status_checks = 0

    async def execute_trade(self, order: OrderRequest) -> OrderFill:
        return OrderFill(success=True, order_id="resting-1", status="PENDING")

    async def check_order_status(self, order_id: str) -> dict:
        self.status_checks += 1
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]


class NoMarketDataClient(SimulatedExchangeClient):
    async def get_market_data(self, symbol: str) -> MarketSnapshot:
        raise ConnectionError("exchange down")


async def _agent(messenger, knowledge_base, client=None, **params) -> ExecutionAgent:
    agent = ExecutionAgent(
        messenger,
        knowledge_base,
        ExecutionParameters(retry_delay_ms=0, chunk_delay_ms=0, order_poll_interval_ms=0, **params),
    )
    await agent.initialize()
    if client is not None:
        agent.register_exchange("simulated", client)
    return agent


# ========== Validation Tests ==========


class TestValidation:
    """Tests for executable signal validation."""

    def test_valid_signal_passes(self) -> None:
        signal = _signal()
        assert validate_signal(signal) is signal

    def test_mapping_is_converted(self) -> None:
        signal = validate_signal(
            {
                "action": "SELL",
                "symbol": "ETH-USD",
                "confidence": 0.5,
                "strategy_id": "x",
                "params": {"entry_price": 10.0, "position_size": 100.0},
            }
        )
        assert isinstance(signal, TradeSignal)
        assert signal.params.entry_price == 10.0

    def test_missing_fields_listed(self) -> None:
        with pytest.raises(SignalValidationError) as exc_info:
            validate_signal({"action": "HOLD", "symbol": "", "confidence": 2, "params": {}})
        message = str(exc_info.value)
        assert "action" in message
        assert "confidence" in message
        assert "params.entry_price" in message

    def test_missing_client_methods(self) -> None:
        assert missing_client_methods(SimulatedExchangeClient()) == []
        assert missing_client_methods(object()) == [
            "get_market_data",
            "execute_trade",
            "get_account_balance",
            "check_order_status",
        ]


# ========== Simulated Exchange Tests ==========


class TestSimulatedExchange:
    """Tests for the paper exchange."""

    @pytest.mark.asyncio
    async def test_market_buy_pays_slippage(self) -> None:
        client = SimulatedExchangeClient(slippage_bps=10.0, fee_rate=0.001)
        fill = await client.execute_trade(OrderRequest("BTC-USD", "BUY", 2.0, reference_price=100.0))

        assert fill.success is True
        assert fill.executed_price == pytest.approx(100.1)
        assert fill.transaction_cost == pytest.approx(100.1 * 2 * 0.001)
        assert client.get_position("BTC-USD").qty == 2.0

    @pytest.mark.asyncio
    async def test_market_sell_receives_less(self) -> None:
        client = SimulatedExchangeClient(slippage_bps=10.0)
        fill = await client.execute_trade(OrderRequest("BTC-USD", "SELL", 1.0, reference_price=100.0))
        assert fill.executed_price < 100.0

    @pytest.mark.asyncio
    async def test_rejects_non_positive_quantity(self) -> None:
        fill = await SimulatedExchangeClient().execute_trade(OrderRequest("BTC-USD", "BUY", 0.0))
        assert fill.success is False
        assert fill.status == "REJECTED"

    @pytest.mark.asyncio
    async def test_limit_crossing_the_book_fills(self) -> None:
        client = SimulatedExchangeClient(fill_probability=0.0)
        order = OrderRequest("BTC-USD", "BUY", 1.0, order_type="LIMIT", limit_price=10_020.0)
        fill = await client.execute_trade(order)
        assert fill.success is True
        assert fill.executed_price == 10_020.0

    @pytest.mark.asyncio
    async def test_resting_limit_expires(self) -> None:
        client = SimulatedExchangeClient(fill_probability=0.0)
        order = OrderRequest("BTC-USD", "BUY", 1.0, order_type="LIMIT", limit_price=9_000.0)
        fill = await client.execute_trade(order)

        assert fill.success is False
        assert fill.status == "EXPIRED"
        status = await client.check_order_status(fill.order_id)
        assert status["status"] == "EXPIRED"

    @pytest.mark.asyncio
    async def test_limit_requires_price(self) -> None:
        fill = await SimulatedExchangeClient().execute_trade(OrderRequest("BTC-USD", "BUY", 1.0, order_type="LIMIT"))
        assert fill.error == "Limit price required"

    @pytest.mark.asyncio
    async def test_market_data_from_knowledge_base(self, knowledge_base) -> None:
        knowledge_base.store("market_data", "BTC-USD.current", {"symbol": "BTC-USD", "price": 123.0})
        client = SimulatedExchangeClient(knowledge_base=knowledge_base)
        snapshot = await client.get_market_data("BTC-USD")
        assert snapshot.latest_price == 123.0

    @pytest.mark.asyncio
    async def test_reducing_position_realises_pnl(self) -> None:
        client = SimulatedExchangeClient(slippage_bps=0.0, fee_rate=0.0)
        await client.execute_trade(OrderRequest("BTC-USD", "BUY", 2.0, reference_price=100.0))
        await client.execute_trade(OrderRequest("BTC-USD", "SELL", 1.0, reference_price=110.0))

        position = client.get_position("BTC-USD")
        assert position.qty == 1.0
        assert position.realized_pnl == pytest.approx(10.0)
        balance = await client.get_account_balance()
        assert balance["total_balance"] == pytest.approx(100_010.0)

    @pytest.mark.asyncio
    async def test_unknown_order_status(self) -> None:
        status = await SimulatedExchangeClient().check_order_status("missing")
        assert status["status"] == "UNKNOWN"


# ========== Execution Agent Tests ==========


class TestExecutionAgent:
    """Tests for routing, retries, metrics and the circuit breaker."""

    @pytest.mark.asyncio
    async def test_market_execution(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base, SimulatedExchangeClient(slippage_bps=5.0))

        report = await agent.execute_trade(_signal(), "market")

        assert report.success is True
        assert report.strategy == "market"
        assert report.executed_quantity == pytest.approx(10.0)
        assert report.slippage == pytest.approx(0.0005)
        assert report.attempts == 1
        assert report.strategy_id == "test"
        assert knowledge_base.get("executions", report.order_id)["success"] is True

    @pytest.mark.asyncio
    async def test_explicit_quantity_wins(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base, SimulatedExchangeClient())
        report = await agent.execute_trade(_signal(quantity=3.0), "market")
        assert report.executed_quantity == 3.0

    @pytest.mark.asyncio
    async def test_limit_execution_inside_entry(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base, SimulatedExchangeClient(fill_probability=1.0))

        report = await agent.execute_trade(_signal(action="SELL"), "limit")

        assert report.success is True
        assert report.strategy == "limit"
        assert report.executed_price == pytest.approx(100.1)

    @pytest.mark.asyncio
    async def test_expired_limit_is_a_failed_report(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base, SimulatedExchangeClient(fill_probability=0.0))

        report = await agent.execute_trade(_signal(), "limit")

        assert report.success is False
        assert "expired" in report.error
        assert agent.get_execution_metrics()["failed_orders"] == 1

    @pytest.mark.asyncio
    async def test_iceberg_splits_into_chunks(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base, SimulatedExchangeClient(), iceberg_chunks=4)

        report = await agent.execute_trade(_signal(), "iceberg")

        assert report.success is True
        assert report.chunks == 4
        assert report.executed_quantity == pytest.approx(10.0)
        assert report.order_id.startswith("iceberg-BTC-USD-")

    @pytest.mark.asyncio
    async def test_smart_routes_wide_spread_to_limit(self, messenger, knowledge_base) -> None:
        knowledge_base.store("market_data", "BTC-USD.current", {"symbol": "BTC-USD", "bid": 95.0, "ask": 105.0})
        client = SimulatedExchangeClient(knowledge_base=knowledge_base, fill_probability=1.0)
        agent = await _agent(messenger, knowledge_base, client)

        report = await agent.execute_trade(_signal(), "smart")
        assert report.strategy == "limit"

    @pytest.mark.asyncio
    async def test_smart_routes_volatile_market_to_market(self, messenger, knowledge_base) -> None:
        knowledge_base.store("market_data", "BTC-USD.current", {"symbol": "BTC-USD", "bid": 99.9, "ask": 100.1})
        knowledge_base.store("market_data", "BTC-USD.recent", {"prices": [100.0, 110.0, 95.0, 105.0]})
        client = SimulatedExchangeClient(knowledge_base=knowledge_base)
        agent = await _agent(messenger, knowledge_base, client)

        report = await agent.execute_trade(_signal(), "smart")
        assert report.strategy == "market"

    @pytest.mark.asyncio
    async def test_smart_routes_large_order_to_iceberg(self, messenger, knowledge_base) -> None:
        knowledge_base.store(
            "market_data",
            "BTC-USD.current",
            {"symbol": "BTC-USD", "bid": 99.99, "ask": 100.01, "volume": 20.0},
        )
        client = SimulatedExchangeClient(knowledge_base=knowledge_base)
        agent = await _agent(messenger, knowledge_base, client, iceberg_chunks=5)

        report = await agent.execute_trade(_signal(), "smart")

        assert report.strategy == "iceberg"
        assert report.chunks == 5

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, messenger, knowledge_base) -> None:
        client = FlakyClient(failures=2)
        agent = await _agent(messenger, knowledge_base, client)

        report = await agent.execute_trade(_signal(), "market")

        assert report.success is True
        assert report.attempts == 3
        assert client.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retry_attempts(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base, FlakyClient(failures=10), retry_attempts=2)

        report = await agent.execute_trade(_signal(), "market")

        assert report.success is False
        assert report.attempts == 2
        assert "after 2 attempts" in report.error

    @pytest.mark.asyncio
    async def test_iceberg_chunk_failure_is_not_resent(self, messenger, knowledge_base) -> None:
        client = FailsOnCallClient(fail_on=3)
        agent = await _agent(messenger, knowledge_base, client, iceberg_chunks=5)

        report = await agent.execute_trade(_signal(notional=50.0), "iceberg")

        assert client.calls == 3
        assert report.attempts == 1
        assert report.chunks == 3
        assert report.success is True
        assert report.executed_quantity == pytest.approx(0.2)
        assert client.get_position("BTC-USD").qty == pytest.approx(report.executed_quantity)
        assert "chunk 3/5" in report.error

    @pytest.mark.asyncio
    async def test_iceberg_first_chunk_failure_fails_report(self, messenger, knowledge_base) -> None:
        client = FailsOnCallClient(fail_on=1)
        agent = await _agent(messenger, knowledge_base, client, iceberg_chunks=5)

        report = await agent.execute_trade(_signal(notional=50.0), "iceberg")

        assert client.calls == 1
        assert report.success is False
        assert report.executed_quantity == 0.0

    @pytest.mark.asyncio
    async def test_pending_order_is_polled_until_filled(self, messenger, knowledge_base) -> None:
        client = RestingOrderClient(
            [
                {"status": "OPEN", "filled_quantity": 0.0},
                {"status": "FILLED", "filled_quantity": 10.0, "avg_fill_price": 100.5, "transaction_cost": 1.0},
            ]
        )
        agent = await _agent(messenger, knowledge_base, client)

        report = await agent.execute_trade(_signal(), "market")

        assert client.status_checks == 2
        assert report.success is True
        assert report.executed_quantity == 10.0
        assert report.executed_price == 100.5
        assert report.transaction_cost == 1.0

    @pytest.mark.asyncio
    async def test_pending_order_expires_unfilled(self, messenger, knowledge_base) -> None:
        client = RestingOrderClient([{"status": "PENDING", "filled_quantity": 0.0}])
        agent = await _agent(messenger, knowledge_base, client, expire_after_seconds=0)

        report = await agent.execute_trade(_signal(), "market")

        assert client.status_checks == 1
        assert report.success is False
        assert "not filled before expiry" in report.error

    @pytest.mark.asyncio
    async def test_pending_order_partially_filled_at_expiry(self, messenger, knowledge_base) -> None:
        client = RestingOrderClient([{"status": "OPEN", "filled_quantity": 4.0, "avg_fill_price": 100.0}])
        agent = await _agent(messenger, knowledge_base, client, expire_after_seconds=0)

        report = await agent.execute_trade(_signal(), "market")

        assert report.success is True
        assert report.executed_quantity == 4.0

    @pytest.mark.asyncio
    async def test_market_data_failure_returns_error_report(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base, NoMarketDataClient())

        report = await agent.execute_trade(_signal(), "market")

        assert report.success is False
        assert "exchange down" in report.error
        assert agent.get_execution_metrics()["failed_orders"] == 1

    @pytest.mark.asyncio
    async def test_coinbase_pending_order_settles(self, messenger, knowledge_base) -> None:
        requests_made = []

        def respond(method, url, **kwargs):
            requests_made.append((method, url))
            response = Mock()
            response.raise_for_status.return_value = None
            if method == "POST":
                response.json.return_value = {"id": "abc", "status": "pending", "filled_size": "0"}
            elif url.endswith("/orders/abc"):
                response.json.return_value = {
                    "id": "abc",
                    "status": "done",
                    "done_reason": "filled",
                    "filled_size": "0.5",
                    "executed_value": "50.1",
                    "fill_fees": "0.3",
                }
            elif url.endswith("/ticker"):
                response.json.return_value = {"price": "100", "bid": "99.9", "ask": "100.1", "time": 1_000}
            else:
                response.json.return_value = {"volume": "1000", "high": "101", "low": "99", "open": "100"}
            return response

        session = Mock(spec=requests.Session)
        session.request.side_effect = respond
        client = CoinbaseExchangeClient("key", base64.b64encode(b"secret").decode(), "pass", session=session)
        agent = await _agent(messenger, knowledge_base)
        assert agent.register_exchange("coinbase", client) is True

        report = await agent.execute_trade(_signal(notional=50.0), "market", "coinbase")

        assert report.success is True
        assert report.executed_quantity == 0.5
        assert report.executed_price == pytest.approx(100.2)
        assert report.transaction_cost == 0.3
        assert [m for m, _ in requests_made].count("POST") == 1

    @pytest.mark.asyncio
    async def test_invalid_signal_fails(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base, SimulatedExchangeClient())
        report = await agent.execute_trade({"action": "BUY", "symbol": "BTC-USD"})

        assert report.success is False
        assert report.error == "Invalid trade signal"
        assert report.strategy == "market"

    @pytest.mark.asyncio
    async def test_order_size_limit(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base, SimulatedExchangeClient(), order_size_limit=500.0)
        report = await agent.execute_trade(_signal(notional=1_000.0))
        assert report.success is False
        assert "exceeds limit" in report.error

    @pytest.mark.asyncio
    async def test_circuit_breaker_opens_on_slippage(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base, SimulatedExchangeClient(slippage_bps=1_000.0))

        first = await agent.execute_trade(_signal(), "market")
        assert first.success is True
        assert agent.circuit_open is True

        blocked = await agent.execute_trade(_signal(), "market")
        assert blocked.error == "Circuit breaker open"

        agent.reset_circuit_breaker()
        assert agent.circuit_open is False

    @pytest.mark.asyncio
    async def test_metrics(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base, SimulatedExchangeClient(slippage_bps=5.0))
        await agent.execute_trade(_signal(), "market")
        await agent.execute_trade({"action": "BUY"}, "market")

        metrics = agent.get_execution_metrics()
        assert metrics["total_orders"] == 2
        assert metrics["successful_orders"] == 1
        assert metrics["success_rate"] == 0.5
        assert metrics["average_slippage"] == pytest.approx(0.0005)
        assert metrics["orders_by_type"]["market"]["total"] == 2
        assert len(metrics["recent_executions"]) == 2

        agent.reset_metrics()
        assert agent.get_execution_metrics()["total_orders"] == 0

    @pytest.mark.asyncio
    async def test_register_exchange_rejects_incomplete_client(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base)
        assert agent.register_exchange("broken", object()) is False
        assert "broken" not in agent.exchanges

    @pytest.mark.asyncio
    async def test_unknown_exchange_falls_back_to_simulation(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base)
        client = await agent.connect_to_exchange("nowhere")
        assert isinstance(client, SimulatedExchangeClient)
        assert agent.exchanges["nowhere"] is client

    @pytest.mark.asyncio
    async def test_set_execution_parameters(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base)
        assert agent.set_execution_parameters(retry_attempts=5).retry_attempts == 5
        with pytest.raises(ValueError, match="Unknown execution parameters"):
            agent.set_execution_parameters(turbo=True)

    @pytest.mark.asyncio
    async def test_estimate_volatility_default(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base)
        assert agent.estimate_volatility("BTC-USD") == 0.005

    @pytest.mark.asyncio
    async def test_trade_execution_topic(self, messenger, knowledge_base) -> None:
        await _agent(messenger, knowledge_base, SimulatedExchangeClient())
        responses = []
        messenger.subscribe("execution_response", responses.append)

        await messenger.publish("trade_execution", {"request_id": "r1", "signal": _signal(), "strategy": "market"})

        assert responses[0]["request_id"] == "r1"
        assert responses[0]["success"] is True

    @pytest.mark.asyncio
    async def test_params_update_topic(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base)
        results = []
        messenger.subscribe("execution_params_updated", results.append)

        await messenger.publish("execution_params_update", {"aggressiveness": 0.9})
        await messenger.publish("execution_params_update", {"bogus": 1})

        assert agent.params.aggressiveness == 0.9
        assert [r["success"] for r in results] == [True, False]

    @pytest.mark.asyncio
    async def test_shutdown_unsubscribes(self, messenger, knowledge_base) -> None:
        agent = await _agent(messenger, knowledge_base)
        await agent.shutdown()
        assert "trade_execution" not in messenger.topics()


def test_snapshot_relative_spread() -> None:
    assert MarketSnapshot(symbol="X", bid=99.0, ask=101.0).relative_spread == pytest.approx(0.02)
    assert MarketSnapshot(symbol="X").relative_spread == 0.0
