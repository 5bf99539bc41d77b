"""Data Processing agent: summary statistics for incoming market data."""

from __future__ import annotations

import math
from typing import Any, Mapping, Sequence, Union

from perseus.agents.base import BaseAgent
from perseus.knowledge import KnowledgeBase
from perseus.messaging import AgentMessenger
from perseus.types import MarketSnapshot, Message, Trend, now_ms

MARKET_DATA_CATEGORY = "market-data"
MAX_STORED_RESULTS = 500


def calculate_mean(prices: Sequence[float]) -> float:
    if not prices:
        return 0.0
    return sum(prices) / len(prices)


def calculate_volatility(prices: Sequence[float]) -> float:
    """Population standard deviation of prices."""
    if len(prices) < 2:
        return 0.0
    mean = calculate_mean(prices)
    variance = sum((p - mean) ** 2 for p in prices) / len(prices)
    return math.sqrt(variance)


def identify_trend(prices: Sequence[float]) -> Trend:
    if len(prices) < 2:
        return "unknown"
    first, last = prices[0], prices[-1]
    if last > first * 1.05:
        return "strong_up"
    if last > first:
        return "up"
    if last < first * 0.95:
        return "strong_down"
    if last < first:
        return "down"
    return "sideways"


class DataProcessingAgent(BaseAgent):
    def __init__(self, messenger: AgentMessenger, knowledge_base: KnowledgeBase) -> None:
        super().__init__("data-processing", "data", messenger, knowledge_base)

    async def process(self, data: Union[MarketSnapshot, Mapping[str, Any]]) -> dict[str, Any]:
        snapshot = data if isinstance(data, MarketSnapshot) else MarketSnapshot.from_mapping(data)
        prices = snapshot.prices
        timestamp = now_ms()
        result = {
            "timestamp": timestamp,
            "original": snapshot.to_dict(),
            "processed": {
                "mean": calculate_mean(prices),
                "volatility": calculate_volatility(prices),
                "trend": identify_trend(prices),
            },
        }
        self.store_knowledge(MARKET_DATA_CATEGORY, f"data-{timestamp}", result, {"symbol": snapshot.symbol})
        self.knowledge_base.prune(MARKET_DATA_CATEGORY, MAX_STORED_RESULTS)
        self.logger.debug("Processed %d prices for %s", len(prices), snapshot.symbol)
        return result

    async def on_data_request(self, message: Message) -> None:
        result = await self.process(message.content)
        await self.send_message(message.sender, result, "data_response")
