"""Risk Management agent: sizes, vets and books trade signals."""

from __future__ import annotations

from dataclasses import asdict, fields, replace
from typing import Any, Mapping, Optional, Sequence

from perseus.agents.base import BaseAgent
from perseus.config import RiskParameters
from perseus.knowledge import KnowledgeBase
from perseus.messaging import AgentMessenger
from perseus.risk import (
    LimitChecker,
    PositionSizeConfig,
    calculate_position_size,
    close,
    open_or_add,
    portfolio_to_dict,
)
from perseus.types import MarketSnapshot, Message, PortfolioState, RiskDecision, RiskMetrics, TradeSignal

RISK_CATEGORY = "risk"


class RiskManagementAgent(BaseAgent):
    """Approves, modifies or rejects signals against portfolio limits.

    Approved signals come back with ``quantity`` (base units),
    ``position_size`` (quote notional), stop loss, take profit and the
    risk/reward ratio filled in.
    """

    def __init__(
        self,
        messenger: AgentMessenger,
        knowledge_base: KnowledgeBase,
        params: Optional[RiskParameters] = None,
        portfolio: Optional[PortfolioState] = None,
    ) -> None:
        super().__init__("risk-management", "risk", messenger, knowledge_base)
        self.params = params or RiskParameters()
        self.portfolio = portfolio or PortfolioState()
        self.limits = LimitChecker(self.params)

    async def on_initialize(self) -> None:
        stored = self.get_knowledge(RISK_CATEGORY, "parameters")
        if isinstance(stored, Mapping):
            known = {f.name for f in fields(RiskParameters)}
            self.params = replace(self.params, **{k: v for k, v in stored.items() if k in known})
            self.limits = LimitChecker(self.params)
            self.logger.info("Restored stored risk parameters")
        self._persist()

    def _persist(self) -> None:
        self.store_knowledge(RISK_CATEGORY, "parameters", asdict(self.params))
        self.store_knowledge(RISK_CATEGORY, "portfolio-state", portfolio_to_dict(self.portfolio))

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_trade(self, signal: TradeSignal, snapshot: Optional[MarketSnapshot] = None) -> RiskDecision:
        if not isinstance(signal, TradeSignal) or signal.action not in ("BUY", "SELL", "CLOSE") or not signal.symbol:
            return RiskDecision(approved=False, reason="Invalid trade signal", error="invalid_signal")

        if signal.action == "CLOSE":
            return RiskDecision(approved=True, reason="Position close always allowed", signal=signal)

        for allowed, reason in (
            self.limits.check_exposure(self.portfolio),
            self.limits.check_drawdown(self.portfolio),
            self.limits.check_existing_position(self.portfolio, signal.symbol, signal.action),
        ):
            if not allowed:
                self.logger.info("Rejected %s %s: %s", signal.action, signal.symbol, reason)
                return RiskDecision(approved=False, reason=reason or "Rejected")

        price = signal.params.entry_price
        if price is None and snapshot is not None:
            price = snapshot.latest_price
        if price is None or price <= 0:
            return RiskDecision(approved=False, reason="No valid entry price", error="missing_price")

        is_buy = signal.action == "BUY"
        stop_loss = signal.params.stop_loss
        if stop_loss is None or stop_loss <= 0 or (stop_loss >= price if is_buy else stop_loss <= price):
            offset = self.params.stop_loss_default
            stop_loss = price * (1 - offset) if is_buy else price * (1 + offset)

        try:
            quantity = calculate_position_size(
                self._sizing_config(signal.strategy_id),
                self.portfolio.total_value,
                price,
                stop_loss,
            )
        except ValueError as exc:
            return RiskDecision(approved=False, reason=f"Position sizing failed: {exc}", error="sizing_error")
        if quantity <= 0:
            return RiskDecision(approved=False, reason="Position size is zero")

        risk_distance = abs(price - stop_loss)
        take_profit = signal.params.take_profit
        if take_profit is None or (take_profit <= price if is_buy else take_profit >= price):
            take_profit = price + 2 * risk_distance if is_buy else price - 2 * risk_distance
        risk_reward = abs(take_profit - price) / risk_distance

        allowed, reason = self.limits.check_risk_reward(risk_reward)
        if not allowed:
            self.logger.info("Rejected %s %s: %s", signal.action, signal.symbol, reason)
            return RiskDecision(approved=False, reason=reason or "Rejected")

        notional = quantity * price
        allowed, reason = self.limits.check_exposure_after(self.portfolio, notional)
        if not allowed:
            return RiskDecision(approved=False, reason=reason or "Rejected")

        max_loss = risk_distance * quantity
        metrics = RiskMetrics(
            max_loss=max_loss,
            var_95=max_loss,
            position_risk=max_loss / self.portfolio.total_value,
            exposure_after=self.portfolio.exposure + notional / self.portfolio.total_value,
        )
        modified = replace(
            signal,
            params=replace(
                signal.params,
                entry_price=price,
                stop_loss=stop_loss,
                take_profit=take_profit,
                quantity=quantity,
                position_size=notional,
                risk_reward_ratio=risk_reward,
            ),
            risk_metrics=metrics,
        )
        self.logger.info(
            "Approved %s %s qty=%.6f notional=%.2f R/R=%.2f",
            signal.action,
            signal.symbol,
            quantity,
            notional,
            risk_reward,
        )
        return RiskDecision(approved=True, reason="Trade meets risk criteria", signal=modified, risk_metrics=metrics)

    def evaluate_signals(
        self, signals: Sequence[TradeSignal], snapshot: Optional[MarketSnapshot] = None
    ) -> list[TradeSignal]:
        """Evaluate a batch and return only the approved, modified signals.

        Signals are judged one at a time; a symbol approved earlier in the batch
        blocks later signals for the same symbol and direction.
        """
        approved: list[TradeSignal] = []
        pending: set[tuple[str, str]] = set()
        for signal in signals:
            key = (signal.symbol, signal.action)
            if key in pending:
                self.logger.debug("Skipping duplicate %s signal for %s in batch", signal.action, signal.symbol)
                continue
            decision = self.evaluate_trade(signal, snapshot)
            if decision.approved and decision.signal is not None:
                approved.append(decision.signal)
                pending.add(key)
        return approved

    def _sizing_config(self, strategy_id: str) -> PositionSizeConfig:
        config = PositionSizeConfig(
            method=self.params.position_sizing,
            risk_per_trade=self.params.risk_per_trade,
            max_position_size=self.params.max_position_size,
            kelly_fraction=self.params.kelly_fraction,
        )
        if config.method == "kelly" and strategy_id:
            perf = self.get_knowledge("performance", strategy_id)
            if isinstance(perf, Mapping):
                returns = [float(t.get("return_pct", 0.0)) for t in perf.get("trades") or []]
                wins = [r for r in returns if r > 0]
                losses = [-r for r in returns if r < 0]
                if wins and losses:
                    config.win_rate = len(wins) / len(returns)
                    config.avg_win = sum(wins) / len(wins)
                    config.avg_loss = sum(losses) / len(losses)
        return config

    # ------------------------------------------------------------------
    # Portfolio
    # ------------------------------------------------------------------

    def update_portfolio(self, trade: Mapping[str, Any]) -> PortfolioState:
        """Apply an executed trade: ``{"symbol", "action", "quantity", "price"}``."""
        action = trade.get("action")
        symbol = trade.get("symbol")
        price = float(trade.get("price") or 0.0)
        if not symbol or action not in ("BUY", "SELL", "CLOSE"):
            raise ValueError(f"Invalid trade for portfolio update: {trade!r}")

        if action == "CLOSE":
            close(self.portfolio, symbol, price)
        else:
            open_or_add(self.portfolio, symbol, action, float(trade.get("quantity") or 0.0), price)

        self._persist()
        return self.portfolio

    def set_risk_parameters(self, **changes: Any) -> RiskParameters:
        known = {f.name for f in fields(RiskParameters)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown risk parameters: {', '.join(sorted(unknown))}")
        self.params = replace(self.params, **changes)
        self.limits = LimitChecker(self.params)
        self._persist()
        self.logger.info("Risk parameters updated: %s", changes)
        return self.params

    def get_risk_parameters(self) -> RiskParameters:
        return replace(self.params)

    def get_portfolio_state(self) -> dict[str, Any]:
        return portfolio_to_dict(self.portfolio)

    async def process(self, data: Any) -> list[TradeSignal]:
        signals = data.get("signals", []) if isinstance(data, Mapping) else data
        snapshot = data.get("market_data") if isinstance(data, Mapping) else None
        if isinstance(snapshot, Mapping):
            snapshot = MarketSnapshot.from_mapping(snapshot)
        return self.evaluate_signals(signals, snapshot)

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    async def on_risk_evaluation(self, message: Message) -> None:
        content = message.content or {}
        signal = content["signal"]
        if isinstance(signal, Mapping):
            signal = TradeSignal.from_dict(signal)
        snapshot = content.get("market_data")
        if isinstance(snapshot, Mapping):
            snapshot = MarketSnapshot.from_mapping(snapshot)
        decision = self.evaluate_trade(signal, snapshot)
        await self.send_message(message.sender, asdict(decision), "risk_evaluation_response")

    async def on_portfolio_update(self, message: Message) -> None:
        self.update_portfolio(message.content or {})
        await self.send_message(
            message.sender,
            {"success": True, "portfolio": self.get_portfolio_state()},
            "portfolio_update_response",
        )

    async def on_risk_params_update(self, message: Message) -> None:
        params = self.set_risk_parameters(**(message.content or {}))
        await self.send_message(
            message.sender,
            {"success": True, "parameters": asdict(params)},
            "risk_params_update_response",
        )
