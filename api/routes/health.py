"""Health check API endpoint."""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter

router = APIRouter(prefix="/system/health", tags=["health"])

# Track API start time
_api_start_time = time.time()


@router.get("")
async def health_check() -> dict[str, Any]:
    """Liveness check.

    Reports API uptime and, when a system is installed, its lifecycle state.
    Overall status is ``ok`` while the system is running, ``degraded`` otherwise.
    """
    from api.main import _get_system

    system = _get_system()
    providers = system.providers.status()["providers"]
    active = [pid for pid, info in providers.items() if info["active"]]

    result: dict[str, Any] = {
        "api": {
            "status": "ok",
            "uptime_seconds": int(time.time() - _api_start_time),
            "message": "API running",
        },
        "system": {
            "status": "ok" if system.state == "running" else "degraded",
            "state": system.state,
            "dry_run": system.config.dry_run,
        },
        "providers": {
            "status": "ok" if active or not providers else "degraded",
            "active": active,
        },
    }

    statuses = [component["status"] for component in result.values()]
    result["overall"] = {"status": "degraded" if "degraded" in statuses else "ok"}
    return result
