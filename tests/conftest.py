"""Shared test fixtures for pytest.

Provides market snapshots, a messenger/knowledge base pair and a deterministic
simulated exchange used across multiple test files.
"""

import random

import pytest

from perseus.config import ExecutionParameters, SystemConfig
from perseus.execution import SimulatedExchangeClient
from perseus.knowledge import KnowledgeBase
from perseus.messaging import AgentMessenger
from perseus.types import MarketSnapshot

UPTREND_PRICES = [9500.0 + i * 100.0 for i in range(10)]  # 9500 ... 10400


@pytest.fixture
def messenger() -> AgentMessenger:
    return AgentMessenger()


@pytest.fixture
def knowledge_base() -> KnowledgeBase:
    return KnowledgeBase()


@pytest.fixture
def uptrend_snapshot() -> MarketSnapshot:
    """Ten rising BTC-USD closes with a tight spread."""
    return MarketSnapshot(
        symbol="BTC-USD",
        prices=list(UPTREND_PRICES),
        volumes=[10.0] * 9 + [25.0],
        price=UPTREND_PRICES[-1],
        bid=10399.0,
        ask=10401.0,
        volume=25.0,
        timestamp=1_700_000_000_000,
        provider="test",
    )


@pytest.fixture
def flat_snapshot() -> MarketSnapshot:
    return MarketSnapshot(
        symbol="ETH-USD",
        prices=[2000.0] * 10,
        volumes=[5.0] * 10,
        price=2000.0,
        timestamp=1_700_000_000_000,
    )


@pytest.fixture
def fast_execution_params() -> ExecutionParameters:
    """Execution parameters without retry or chunk delays."""
    return ExecutionParameters(retry_delay_ms=0, chunk_delay_ms=0, order_poll_interval_ms=0)


@pytest.fixture
def simulated_exchange() -> SimulatedExchangeClient:
    return SimulatedExchangeClient(rng=random.Random(42))


@pytest.fixture
def offline_config() -> SystemConfig:
    """Dry-run config with providers and file logging disabled."""
    return SystemConfig(enable_providers=False, log_dir=None)
