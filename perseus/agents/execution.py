"""Execution agent: routes approved signals to an exchange client.

Execution strategies:
- market: immediate fill, slippage measured against the signal's entry price
- limit: resting order 0.1% inside the entry price
- smart: picks limit (wide spread), market (volatile) or iceberg (large order)
- iceberg: splits the order into equal market child orders
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Mapping, Optional, Union

from perseus.agents.base import BaseAgent
from perseus.config import ExecutionParameters
from perseus.errors import SignalValidationError
from perseus.execution import (
    ExchangeClient,
    OrderFill,
    OrderRequest,
    SimulatedExchangeClient,
    missing_client_methods,
    validate_signal,
)
from perseus.knowledge import KnowledgeBase
from perseus.messaging import AgentMessenger
from perseus.strategies import compute_returns, std_dev
from perseus.types import ExecutionReport, ExecutionStrategy, MarketSnapshot, TradeSignal

EXECUTIONS_CATEGORY = "executions"
DEFAULT_VOLATILITY = 0.005
HISTORY_LIMIT = 1000
OPEN_ORDER_STATUSES = ("PENDING", "OPEN", "ACTIVE", "RECEIVED", "NEW")


@dataclass
class OrderTypeStats:
    total: int = 0
    successful: int = 0
    failed: int = 0
    avg_slippage: float = 0.0


@dataclass
class ExecutionMetrics:
    total_orders: int = 0
    successful_orders: int = 0
    failed_orders: int = 0
    total_slippage: float = 0.0
    average_slippage: float = 0.0
    total_execution_time_ms: float = 0.0
    average_execution_time_ms: float = 0.0
    transaction_costs: float = 0.0
    orders_by_type: dict[str, OrderTypeStats] = field(
        default_factory=lambda: {name: OrderTypeStats() for name in ("market", "limit", "smart", "iceberg")}
    )
    history: deque = field(default_factory=lambda: deque(maxlen=HISTORY_LIMIT))


@dataclass
class _Outcome:
    fill: OrderFill
    slippage: float
    route: str
    chunks: int = 1


class ExecutionAgent(BaseAgent):
    def __init__(
        self,
        messenger: AgentMessenger,
        knowledge_base: KnowledgeBase,
        params: Optional[ExecutionParameters] = None,
        default_exchange: str = "simulated",
    ) -> None:
        super().__init__("execution", "execution", messenger, knowledge_base)
        self.params = params or ExecutionParameters()
        self.default_exchange = default_exchange
        self.exchanges: dict[str, ExchangeClient] = {}
        self.metrics = ExecutionMetrics()
        self.circuit_open = False
        self._unsubscribers: list[Any] = []

    async def on_initialize(self) -> None:
        self._unsubscribers = [
            self.messenger.subscribe("trade_execution", self._on_trade_execution),
            self.messenger.subscribe("execution_params_update", self._on_params_update),
        ]

    async def shutdown(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await super().shutdown()

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    def register_exchange(self, exchange_id: str, client: Any) -> bool:
        missing = missing_client_methods(client)
        if missing:
            self.logger.error("Exchange %s client is missing: %s", exchange_id, ", ".join(missing))
            return False
        self.exchanges[exchange_id] = client
        self.logger.info("Registered exchange %s", exchange_id)
        return True

    async def connect_to_exchange(self, exchange_id: Optional[str] = None) -> ExchangeClient:
        exchange_id = exchange_id or self.default_exchange
        client = self.exchanges.get(exchange_id)
        if client is None:
            self.logger.warning("Exchange %s not registered, using simulated client", exchange_id)
            client = SimulatedExchangeClient(
                exchange_id,
                knowledge_base=self.knowledge_base,
                fee_rate=self.params.fee_rate,
            )
            self.exchanges[exchange_id] = client
        return client

    # ------------------------------------------------------------------
    # Validation and estimates
    # ------------------------------------------------------------------

    def validate_trade_signal(self, signal: Union[TradeSignal, Mapping[str, Any]]) -> Optional[TradeSignal]:
        try:
            return validate_signal(signal)
        except SignalValidationError as exc:
            self.logger.warning("Invalid trade signal: %s", exc)
            return None

    def estimate_volatility(self, symbol: str) -> float:
        """Standard deviation of recent returns from the knowledge base."""
        recent = self.get_knowledge("market_data", f"{symbol}.recent")
        prices = None
        if isinstance(recent, MarketSnapshot):
            prices = recent.prices
        elif isinstance(recent, Mapping):
            prices = recent.get("prices")
        if not prices or len(prices) < 2:
            return DEFAULT_VOLATILITY
        return std_dev(compute_returns([float(p) for p in prices]))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_trade(
        self,
        signal: Union[TradeSignal, Mapping[str, Any]],
        strategy: Optional[ExecutionStrategy] = None,
        exchange_id: Optional[str] = None,
    ) -> ExecutionReport:
        started = time.perf_counter()
        route = strategy or self.params.execution_strategy
        validated = self.validate_trade_signal(signal)
        if validated is None:
            return self._fail(signal, route, "Invalid trade signal", started)

        notional = float(validated.params.position_size or 0.0)
        if notional > self.params.order_size_limit:
            return self._fail(
                validated,
                route,
                f"Order size {notional:.2f} exceeds limit {self.params.order_size_limit:.2f}",
                started,
            )
        if self.circuit_open:
            return self._fail(validated, route, "Circuit breaker open", started)

        self.logger.info("Executing %s %s via %s", validated.action, validated.symbol, route)
        client = await self.connect_to_exchange(exchange_id)
        try:
            snapshot = await client.get_market_data(validated.symbol)
        except Exception as exc:
            return self._fail(validated, route, f"Market data unavailable for {validated.symbol}: {exc}", started)

        outcome: Optional[_Outcome] = None
        last_error: Optional[Exception] = None
        attempts = 0
        while attempts < self.params.retry_attempts and outcome is None:
            attempts += 1
            try:
                outcome = await self._dispatch(route, validated, snapshot, client)
            except Exception as exc:
                last_error = exc
                self.logger.error("Execution attempt %d failed: %s", attempts, exc)
                if attempts < self.params.retry_attempts:
                    await asyncio.sleep(self.params.retry_delay_ms / 1000)

        if outcome is None:
            error = f"Failed to execute trade after {attempts} attempts: {last_error}"
            return self._fail(validated, route, error, started, attempts)

        report = ExecutionReport(
            success=outcome.fill.success,
            symbol=validated.symbol,
            action=validated.action,
            strategy=outcome.route,
            order_id=outcome.fill.order_id,
            requested_price=validated.params.entry_price,
            executed_price=outcome.fill.executed_price,
            executed_quantity=outcome.fill.executed_quantity,
            slippage=outcome.slippage,
            execution_time_ms=(time.perf_counter() - started) * 1000,
            attempts=attempts,
            chunks=outcome.chunks,
            transaction_cost=outcome.fill.transaction_cost,
            strategy_id=validated.strategy_id,
            error=outcome.fill.error,
        )
        self._record(report, route)
        if report.success and abs(report.slippage) > self.params.circuit_breaker_threshold:
            self.circuit_open = True
            self.logger.error(
                "Circuit breaker opened: slippage %.4f above %.4f",
                report.slippage,
                self.params.circuit_breaker_threshold,
            )
        return report

    async def _dispatch(
        self, route: str, signal: TradeSignal, snapshot: MarketSnapshot, client: ExchangeClient
    ) -> _Outcome:
        if route == "limit":
            return await self._execute_limit(signal, client)
        if route == "smart":
            return await self._execute_smart(signal, snapshot, client)
        if route == "iceberg":
            return await self._execute_iceberg(signal, client)
        return await self._execute_market(signal, client)

    def _quantity(self, signal: TradeSignal) -> float:
        if signal.params.quantity:
            return float(signal.params.quantity)
        return float(signal.params.position_size) / float(signal.params.entry_price)

    async def _execute_market(
        self, signal: TradeSignal, client: ExchangeClient, quantity: Optional[float] = None
    ) -> _Outcome:
        order = OrderRequest(
            symbol=signal.symbol,
            side=signal.action,  # type: ignore[arg-type]
            quantity=quantity if quantity is not None else self._quantity(signal),
            order_type="MARKET",
            reference_price=signal.params.entry_price,
            time_in_force=signal.params.time_in_force or "IOC",
        )
        fill = await self._settle(client, await client.execute_trade(order), order.expire_after)
        return _Outcome(fill, _slippage(signal.action, signal.params.entry_price, fill.executed_price), "market")

    async def _execute_limit(self, signal: TradeSignal, client: ExchangeClient) -> _Outcome:
        entry = float(signal.params.entry_price)
        offset = self.params.limit_offset
        limit_price = entry * (1 - offset) if signal.action == "BUY" else entry * (1 + offset)
        order = OrderRequest(
            symbol=signal.symbol,
            side=signal.action,  # type: ignore[arg-type]
            quantity=self._quantity(signal),
            order_type="LIMIT",
            reference_price=entry,
            limit_price=limit_price,
            time_in_force=signal.params.time_in_force or "GTC",
            expire_after=signal.params.expire_after or self.params.expire_after_seconds,
        )
        fill = await self._settle(client, await client.execute_trade(order), order.expire_after)
        return _Outcome(fill, _slippage(signal.action, limit_price, fill.executed_price), "limit")

    async def _execute_smart(self, signal: TradeSignal, snapshot: MarketSnapshot, client: ExchangeClient) -> _Outcome:
        if not self.params.smart_routing_enabled:
            return await self._execute_market(signal, client)

        spread = snapshot.relative_spread
        volatility = self.estimate_volatility(signal.symbol)
        volume = snapshot.volume if snapshot.volume is not None else 1000.0

        if spread > 0.005:
            self.logger.info("Smart routing: wide spread %.4f, using limit", spread)
            return await self._execute_limit(signal, client)
        if volatility > 0.01:
            self.logger.info("Smart routing: volatility %.4f, using market", volatility)
            return await self._execute_market(signal, client)
        if self._quantity(signal) > volume * 0.1:
            self.logger.info("Smart routing: large order vs volume %.2f, using iceberg", volume)
            return await self._execute_iceberg(signal, client)
        return await self._execute_market(signal, client)

    async def _execute_iceberg(self, signal: TradeSignal, client: ExchangeClient) -> _Outcome:
        """Send equal child market orders; a failed child stops the remaining ones.

        Child orders are never resent, so the report carries only what filled.
        """
        chunks = max(1, self.params.iceberg_chunks)
        chunk_quantity = self._quantity(signal) / chunks
        total_quantity = 0.0
        total_cost = 0.0
        fees = 0.0
        sent = 0
        error: Optional[str] = None

        for i in range(chunks):
            if i > 0 and self.params.chunk_delay_ms:
                await asyncio.sleep(self.params.chunk_delay_ms / 1000)
            sent += 1
            try:
                child = await self._execute_market(signal, client, quantity=chunk_quantity)
            except Exception as exc:
                error = f"chunk {i + 1}/{chunks} failed: {exc}"
            else:
                fill = child.fill
                if fill.executed_quantity > 0 and fill.executed_price is not None:
                    total_quantity += fill.executed_quantity
                    total_cost += fill.executed_quantity * fill.executed_price
                    fees += fill.transaction_cost
                if not fill.success:
                    error = f"chunk {i + 1}/{chunks} failed: {fill.error or fill.status}"
            if error:
                self.logger.error("Iceberg %s %s stopped: %s", signal.action, signal.symbol, error)
                break

        average_price = total_cost / total_quantity if total_quantity > 0 else None
        fill = OrderFill(
            success=total_quantity > 0,
            order_id=f"iceberg-{signal.symbol}-{signal.generated_at}",
            executed_price=average_price,
            executed_quantity=total_quantity,
            transaction_cost=fees,
            status="FILLED" if error is None else ("PARTIAL" if total_quantity else "FAILED"),
            error=error,
        )
        return _Outcome(fill, _slippage(signal.action, signal.params.entry_price, average_price), "iceberg", sent)

    async def _settle(self, client: ExchangeClient, fill: OrderFill, expire_after: Optional[int]) -> OrderFill:
        """Poll an acknowledged order until it fills, is cancelled or expires."""
        if not fill.success or fill.status not in OPEN_ORDER_STATUSES or not fill.order_id:
            return fill

        deadline = time.monotonic() + (expire_after or self.params.expire_after_seconds)
        current = fill
        while True:
            await asyncio.sleep(self.params.order_poll_interval_ms / 1000)
            try:
                status = await client.check_order_status(fill.order_id)
            except Exception as exc:
                self.logger.warning("Order %s status check failed: %s", fill.order_id, exc)
            else:
                current = _fill_from_status(current, status)
                if current.status not in OPEN_ORDER_STATUSES:
                    return current
            if time.monotonic() >= deadline:
                break

        self.logger.warning(
            "Order %s still %s after polling, filled %.8f", fill.order_id, current.status, current.executed_quantity
        )
        if current.executed_quantity > 0:
            return replace(current, success=True, status="PARTIAL")
        return replace(current, success=False, error=f"Order {fill.order_id} not filled before expiry")

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _record(self, report: ExecutionReport, requested_route: str) -> None:
        m = self.metrics
        m.total_orders += 1
        m.total_execution_time_ms += report.execution_time_ms
        m.average_execution_time_ms = m.total_execution_time_ms / m.total_orders

        stats = m.orders_by_type.setdefault(requested_route, OrderTypeStats())
        stats.total += 1
        if report.success:
            m.successful_orders += 1
            m.total_slippage += abs(report.slippage)
            m.average_slippage = m.total_slippage / m.successful_orders
            m.transaction_costs += report.transaction_cost
            stats.successful += 1
            stats.avg_slippage += (abs(report.slippage) - stats.avg_slippage) / stats.successful
        else:
            m.failed_orders += 1
            stats.failed += 1

        m.history.append(asdict(report))
        if self.is_active:
            key = report.order_id or f"failed-{report.timestamp}"
            self.store_knowledge(EXECUTIONS_CATEGORY, key, asdict(report), {"symbol": report.symbol})
            self.knowledge_base.prune(EXECUTIONS_CATEGORY, HISTORY_LIMIT)

    def _fail(
        self,
        signal: Union[TradeSignal, Mapping[str, Any]],
        route: str,
        error: str,
        started: float,
        attempts: int = 0,
    ) -> ExecutionReport:
        self.logger.error("Trade execution failed: %s", error)
        if isinstance(signal, TradeSignal):
            symbol, action = signal.symbol, signal.action
        else:
            symbol, action = str(signal.get("symbol", "")), str(signal.get("action", ""))
        report = ExecutionReport(
            success=False,
            symbol=symbol,
            action=action,
            strategy=route,
            execution_time_ms=(time.perf_counter() - started) * 1000,
            attempts=attempts,
            error=error,
        )
        self._record(report, route)
        return report

    def get_execution_metrics(self) -> dict[str, Any]:
        m = self.metrics
        return {
            "total_orders": m.total_orders,
            "successful_orders": m.successful_orders,
            "failed_orders": m.failed_orders,
            "success_rate": m.successful_orders / m.total_orders if m.total_orders else 0.0,
            "average_slippage": m.average_slippage,
            "average_execution_time_ms": m.average_execution_time_ms,
            "transaction_costs": m.transaction_costs,
            "orders_by_type": {name: asdict(stats) for name, stats in m.orders_by_type.items()},
            "circuit_open": self.circuit_open,
            "recent_executions": list(m.history)[-10:],
        }

    def reset_metrics(self) -> None:
        self.metrics = ExecutionMetrics()

    def reset_circuit_breaker(self) -> None:
        self.circuit_open = False
        self.logger.info("Circuit breaker reset")

    def set_execution_parameters(self, **changes: Any) -> ExecutionParameters:
        known = {f.name for f in fields(ExecutionParameters)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown execution parameters: {', '.join(sorted(unknown))}")
        self.params = replace(self.params, **changes)
        self.logger.info("Execution parameters updated: %s", changes)
        return self.params

    async def process(self, data: Any) -> ExecutionReport:
        if isinstance(data, Mapping) and "signal" in data:
            return await self.execute_trade(data["signal"], data.get("strategy"), data.get("exchange"))
        return await self.execute_trade(data)

    # ------------------------------------------------------------------
    # Topic handlers
    # ------------------------------------------------------------------

    async def _on_trade_execution(self, payload: Mapping[str, Any]) -> None:
        report = await self.process(payload)
        await self.messenger.publish(
            "execution_response",
            {"request_id": payload.get("request_id"), **asdict(report)},
        )

    async def _on_params_update(self, payload: Mapping[str, Any]) -> None:
        try:
            params = self.set_execution_parameters(**dict(payload))
        except ValueError as exc:
            await self.messenger.publish("execution_params_updated", {"success": False, "error": str(exc)})
            return
        await self.messenger.publish("execution_params_updated", {"success": True, "params": asdict(params)})


def _slippage(action: str, reference: Optional[float], executed: Optional[float]) -> float:
    """Signed slippage; positive means a worse price than requested."""
    if not reference or executed is None:
        return 0.0
    slippage = (executed - reference) / reference
    return -slippage if action == "SELL" else slippage


def _fill_from_status(placed: OrderFill, status: Mapping[str, Any]) -> OrderFill:
    state = str(status.get("status") or placed.status).upper()
    filled = float(status.get("filled_quantity") or 0.0)
    price = status.get("avg_fill_price")
    success = filled > 0 or state not in ("REJECTED", "CANCELLED", "EXPIRED", "UNKNOWN")
    return replace(
        placed,
        success=success,
        executed_price=float(price) if price is not None else placed.executed_price,
        executed_quantity=filled,
        transaction_cost=float(status.get("transaction_cost") or placed.transaction_cost),
        status=state,
        error=status.get("error") or (None if success else f"Order {placed.order_id} {state.lower()}"),
    )
