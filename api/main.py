"""FastAPI application exposing Perseus system state.

Endpoints:
- GET /api/status - System state, agents, providers and pipeline metrics
- GET /api/knowledge/categories - Knowledge base categories
- GET /api/knowledge/{category} - Latest entries in a category
- GET /api/knowledge/{category}/{key} - One entry (404 when missing)
- GET /api/performance - Performance monitor summary
- GET /api/ratelimits - Provider rate limit usage
- GET /system/health - Liveness and uptime

The API reads from a single PerseusSystem. ``scripts/run_perseus.py`` installs
the running system with ``set_system``; otherwise one is built from the
environment on first use.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Path, Query
from fastapi.responses import JSONResponse

from api.routes import health
from perseus.config import SystemConfig
from perseus.providers import get_tracker
from perseus.system import PerseusSystem

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Perseus Drive API",
    description="Read-only API for the Perseus multi-agent trading system",
    version="0.1.0",
)
app.include_router(health.router)

# Global system instance (installed by the runner or built on first use)
_system: PerseusSystem | None = None


def _get_system() -> PerseusSystem:
    """Get or initialize the Perseus system singleton."""
    global _system
    if _system is None:
        _system = PerseusSystem(SystemConfig.from_env())
    return _system


def set_system(system: Optional[PerseusSystem]) -> None:
    """Install the system the API reports on (None resets the singleton)."""
    global _system
    _system = system


@app.get("/api/status")
async def get_status() -> dict[str, Any]:
    return _get_system().status()


@app.get("/api/knowledge/categories")
async def get_knowledge_categories() -> dict[str, Any]:
    categories = _get_system().knowledge_base.categories()
    return {"categories": categories, "count": len(categories)}


@app.get("/api/knowledge/{category}")
async def get_knowledge_category(
    category: str = Path(..., min_length=1),
    limit: int = Query(100, ge=1, le=1000, description="Maximum entries to return"),
) -> dict[str, Any]:
    """Latest entries of a category, newest first."""
    entries = _get_system().knowledge_base.query_by_category(category)
    entries.sort(key=lambda e: e["timestamp"], reverse=True)
    return {"category": category, "entries": entries[:limit], "count": len(entries)}


@app.get("/api/knowledge/{category}/{key}")
async def get_knowledge_entry(
    category: str = Path(..., min_length=1),
    key: str = Path(..., min_length=1),
) -> dict[str, Any]:
    entry = _get_system().knowledge_base.get_entry(category, key)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No knowledge entry {category}/{key}")
    return {"category": category, "key": key, **entry.to_dict()}


@app.get("/api/performance")
async def get_performance() -> dict[str, Any]:
    system = _get_system()
    return {
        **system.performance.summary(),
        "strategy_report": system.strategy_agent.get_performance_report(),
    }


@app.get("/api/ratelimits")
async def get_rate_limits(
    provider: Optional[str] = Query(None, description="Filter by provider"),
) -> dict[str, Any]:
    """Current rate limit usage, remaining quota and reset times."""
    tracker = get_tracker()
    tracker.clear_expired()
    limits = [info.to_dict() for info in tracker.get_all(provider=provider)]
    return {"limits": limits, "count": len(limits)}


@app.exception_handler(Exception)
async def global_exception_handler(_request, exc):
    """Global exception handler to ensure consistent error responses."""
    logger.error("Unhandled API error: %s", exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
        },
    )
