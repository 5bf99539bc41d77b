from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Optional, Union

from perseus.knowledge import KnowledgeBase
from perseus.messaging import AgentMessenger
from perseus.performance.metrics import (
    calculate_average_return,
    calculate_max_drawdown,
    calculate_profit_factor,
    calculate_sharpe_ratio,
    calculate_win_rate,
    equity_curve_from_returns,
)
from perseus.types import ExecutionReport, now_ms

logger = logging.getLogger(__name__)

FEEDBACK_TOPIC = "performance_feedback"
SUMMARY_CATEGORY = "performance"
SUMMARY_KEY = "summary"


@dataclass
class _ExecutionTotals:
    total: int = 0
    successful: int = 0
    slippage_sum: float = 0.0
    costs: float = 0.0
    by_strategy: dict[str, int] = field(default_factory=dict)


class PerformanceMonitor:
    """Aggregates execution reports and trade outcomes into a feedback summary.

    The summary is what the prompt engineering agent receives on the
    ``performance_feedback`` topic.
    """

    def __init__(self, messenger: AgentMessenger, knowledge_base: KnowledgeBase) -> None:
        self.messenger = messenger
        self.knowledge_base = knowledge_base
        self._returns: dict[str, list[float]] = {}
        self._executions = _ExecutionTotals()

    def record_execution(self, report: Union[ExecutionReport, Mapping[str, Any]]) -> None:
        data = asdict(report) if isinstance(report, ExecutionReport) else dict(report)
        totals = self._executions
        totals.total += 1
        route = str(data.get("strategy") or "unknown")
        totals.by_strategy[route] = totals.by_strategy.get(route, 0) + 1
        if data.get("success"):
            totals.successful += 1
            totals.slippage_sum += abs(float(data.get("slippage") or 0.0))
            totals.costs += float(data.get("transaction_cost") or 0.0)

    def record_trade_outcome(self, strategy_id: str, return_pct: float) -> None:
        if not strategy_id:
            raise ValueError("strategy_id is required")
        self._returns.setdefault(strategy_id, []).append(float(return_pct))
        logger.debug("Recorded outcome %.4f for %s", return_pct, strategy_id)

    def summary(self) -> dict[str, Any]:
        strategies: dict[str, Any] = {}
        for strategy_id, returns in self._returns.items():
            strategies[strategy_id] = {
                "trades": len(returns),
                "win_rate": calculate_win_rate(returns),
                "average_return": calculate_average_return(returns),
                "profit_factor": calculate_profit_factor(returns),
                "sharpe_ratio": calculate_sharpe_ratio(returns),
                "max_drawdown": calculate_max_drawdown(equity_curve_from_returns(returns)),
            }

        totals = self._executions
        return {
            "strategies": strategies,
            "executions": {
                "total": totals.total,
                "successful": totals.successful,
                "success_rate": totals.successful / totals.total if totals.total else 0.0,
                "average_slippage": totals.slippage_sum / totals.successful if totals.successful else 0.0,
                "transaction_costs": totals.costs,
                "by_strategy": dict(totals.by_strategy),
            },
            "generated_at": now_ms(),
        }

    def best_strategy(self) -> Optional[str]:
        """Strategy id with the highest average return, if any outcome is known."""
        if not self._returns:
            return None
        return max(self._returns, key=lambda sid: calculate_average_return(self._returns[sid]))

    async def publish_feedback(self) -> dict[str, Any]:
        summary = self.summary()
        summary["best_strategy"] = self.best_strategy()
        self.knowledge_base.store(SUMMARY_CATEGORY, SUMMARY_KEY, summary, {"source": "performance-monitor"})
        delivered = await self.messenger.publish(FEEDBACK_TOPIC, summary)
        logger.info(
            "Published performance feedback to %d subscriber(s) (%d executions, %d strategies)",
            delivered,
            summary["executions"]["total"],
            len(summary["strategies"]),
        )
        return summary
