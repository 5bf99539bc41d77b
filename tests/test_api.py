"""Tests for the FastAPI endpoints."""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Add project root to path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from api.main import app, set_system  # noqa: E402
from perseus.providers import RateLimitState, get_tracker  # noqa: E402
from perseus.system import PerseusSystem  # noqa: E402


@pytest.fixture
def system(offline_config):
    perseus = PerseusSystem(offline_config)
    set_system(perseus)
    yield perseus
    set_system(None)


@pytest.fixture
def client(system) -> TestClient:
    return TestClient(app)


@pytest.fixture
def tracker():
    tracker = get_tracker()
    tracker.clear()
    yield tracker
    tracker.clear()


# ========== Status Tests ==========


class TestStatusEndpoint:
    """Tests for /api/status."""

    def test_status_of_stopped_system(self, client) -> None:
        response = client.get("/api/status")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "stopped"
        assert data["dry_run"] is True
        assert data["metrics"]["ticks_processed"] == 0
        assert data["agents"]["execution"] == "created"

    def test_status_of_running_system(self, client, system) -> None:
        asyncio.run(system.start())
        data = client.get("/api/status").json()
        assert data["state"] == "running"
        assert data["agents"]["strategy"] == "active"


# ========== Knowledge Tests ==========


class TestKnowledgeEndpoints:
    """Tests for the knowledge base endpoints."""

    def test_categories(self, client, system) -> None:
        system.knowledge_base.store("signals", "a", {"x": 1})
        system.knowledge_base.store("risk", "parameters", {"max_position_size": 0.05})

        data = client.get("/api/knowledge/categories").json()

        assert data == {"categories": ["risk", "signals"], "count": 2}

    def test_category_entries_newest_first(self, client, system) -> None:
        system.knowledge_base.store("signals", "old", {"n": 1})
        time.sleep(0.002)
        system.knowledge_base.store("signals", "new", {"n": 2})

        data = client.get("/api/knowledge/signals").json()

        assert data["category"] == "signals"
        assert data["count"] == 2
        assert [e["key"] for e in data["entries"]] == ["new", "old"]

        limited = client.get("/api/knowledge/signals", params={"limit": 1}).json()
        assert [e["key"] for e in limited["entries"]] == ["new"]
        assert limited["count"] == 2

    def test_limit_validation(self, client) -> None:
        assert client.get("/api/knowledge/signals", params={"limit": 0}).status_code == 422

    def test_unknown_category_is_empty(self, client) -> None:
        assert client.get("/api/knowledge/nothing").json() == {"category": "nothing", "entries": [], "count": 0}

    def test_entry(self, client, system) -> None:
        system.knowledge_base.store("risk", "parameters", {"max_position_size": 0.05}, {"source": "test"})

        data = client.get("/api/knowledge/risk/parameters").json()

        assert data["category"] == "risk"
        assert data["key"] == "parameters"
        assert data["data"] == {"max_position_size": 0.05}
        assert data["metadata"]["source"] == "test"
        assert isinstance(data["timestamp"], int)

    def test_missing_entry(self, client) -> None:
        response = client.get("/api/knowledge/risk/missing")
        assert response.status_code == 404
        assert response.json()["detail"] == "No knowledge entry risk/missing"


# ========== Performance Tests ==========


class TestPerformanceEndpoint:
    """Tests for /api/performance."""

    def test_summary_with_strategy_report(self, client, system) -> None:
        system.performance.record_trade_outcome("breakout", 0.02)

        data = client.get("/api/performance").json()

        assert data["strategies"]["breakout"]["trades"] == 1
        assert data["executions"]["total"] == 0
        assert data["strategy_report"] == {}


# ========== Rate Limit Tests ==========


class TestRateLimitEndpoint:
    """Tests for /api/ratelimits."""

    def test_empty(self, client, tracker) -> None:
        assert client.get("/api/ratelimits").json() == {"limits": [], "count": 0}

    def test_filter_and_expiry(self, client, tracker) -> None:
        now = int(time.time() * 1000)
        tracker.record("binance", "rest", RateLimitState(1200, 60_000, 1100, now + 60_000))
        tracker.record("coinbase", "rest", RateLimitState(10, 1_000, 1, now + 60_000))
        tracker.record("coinbase", "ws", RateLimitState(10, 1_000, 10, now - 1_000))

        data = client.get("/api/ratelimits").json()
        assert data["count"] == 2
        assert [item["provider"] for item in data["limits"]] == ["binance", "coinbase"]

        filtered = client.get("/api/ratelimits", params={"provider": "coinbase"}).json()
        assert filtered["count"] == 1
        assert filtered["limits"][0]["status"] == "critical"
        assert filtered["limits"][0]["used"] == 9


# ========== Health Tests ==========


class TestHealthEndpoint:
    """Tests for /system/health."""

    def test_degraded_when_not_running(self, client) -> None:
        data = client.get("/system/health").json()

        assert data["api"]["status"] == "ok"
        assert data["system"] == {"status": "degraded", "state": "stopped", "dry_run": True}
        assert data["providers"] == {"status": "ok", "active": []}
        assert data["overall"]["status"] == "degraded"


# ========== Error Handling Tests ==========


class TestErrorHandling:
    """Tests for the global exception handler."""

    def test_unexpected_error_returns_500(self, system, monkeypatch) -> None:
        def broken():
            raise RuntimeError("boom")

        monkeypatch.setattr(system, "status", broken)
        client = TestClient(app, raise_server_exceptions=False)

        response = client.get("/api/status")

        assert response.status_code == 500
        assert response.json() == {
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
        }
