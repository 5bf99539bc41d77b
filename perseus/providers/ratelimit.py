"""Provider quota snapshots for the status API.

Each provider keeps a live ``RateLimitState`` that it updates from response
headers (Binance ``X-MBX-USED-WEIGHT-*``) and 429 replies (Coinbase
``Retry-After``). After every change it records a copy here, keyed by provider
and endpoint, so the API can report quotas without touching the providers.
All times are epoch milliseconds.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Any, Optional

from perseus.types import now_ms

# Remaining quota below these fractions of the maximum.
LOW_RATIO = 0.1
CAUTION_RATIO = 0.3


@dataclass
class RateLimitState:
    """Live quota of one provider, mutated as responses arrive."""

    max_requests: int = 0
    per_time_window_ms: int = 0
    remaining: int = 0
    reset_time: Optional[int] = None  # epoch ms


@dataclass(frozen=True)
class RateLimitInfo:
    provider: str
    endpoint: str
    limit: int
    remaining: int
    reset_time: int
    window_ms: int
    low_events: int = 0
    updated_at: int = field(default_factory=now_ms)

    @property
    def used(self) -> int:
        return self.limit - self.remaining

    @property
    def remaining_ratio(self) -> float:
        return self.remaining / self.limit if self.limit else 1.0

    @property
    def is_low(self) -> bool:
        """True when a provider should raise its rate-limit warning."""
        return self.remaining_ratio < LOW_RATIO

    @property
    def status(self) -> str:
        if self.is_low:
            return "critical"
        if self.remaining_ratio < CAUTION_RATIO:
            return "warning"
        return "ok"

    def is_expired(self, at_ms: Optional[int] = None) -> bool:
        return 0 < self.reset_time < (at_ms if at_ms is not None else now_ms())

    def to_dict(self) -> dict[str, Any]:
        current = now_ms()
        return {
            "provider": self.provider,
            "endpoint": self.endpoint,
            "limit": self.limit,
            "remaining": self.remaining,
            "used": self.used,
            "remaining_ratio": round(self.remaining_ratio, 4),
            "reset_time": self.reset_time,
            "reset_in_ms": max(0, self.reset_time - current) if self.reset_time else 0,
            "window_ms": self.window_ms,
            "low_events": self.low_events,
            "status": self.status,
            "updated_at": self.updated_at,
        }


class ProviderRateLimitTracker:
    """Thread-safe registry of the latest quota per provider endpoint."""

    def __init__(self) -> None:
        self._limits: dict[tuple[str, str], RateLimitInfo] = {}
        self._lock = Lock()

    def record(self, provider: str, endpoint: str, state: RateLimitState) -> RateLimitInfo:
        """Snapshot ``state``; counts each drop into the low band once."""
        info = RateLimitInfo(
            provider=provider,
            endpoint=endpoint,
            limit=state.max_requests,
            remaining=max(state.remaining, 0),
            reset_time=state.reset_time or 0,
            window_ms=state.per_time_window_ms,
        )
        with self._lock:
            previous = self._limits.get((provider, endpoint))
            low_events = previous.low_events if previous else 0
            if info.is_low and not (previous and previous.is_low):
                low_events += 1
            info = replace(info, low_events=low_events)
            self._limits[(provider, endpoint)] = info
        return info

    def get(self, provider: str, endpoint: str) -> Optional[RateLimitInfo]:
        with self._lock:
            return self._limits.get((provider, endpoint))

    def get_all(self, provider: Optional[str] = None) -> list[RateLimitInfo]:
        with self._lock:
            limits = list(self._limits.values())
        if provider:
            limits = [info for info in limits if info.provider == provider]
        return sorted(limits, key=lambda info: (info.provider, info.endpoint))

    def clear_expired(self) -> int:
        """Drop snapshots whose window has reset. Returns how many were dropped."""
        current = now_ms()
        with self._lock:
            expired = [key for key, info in self._limits.items() if info.is_expired(current)]
            for key in expired:
                del self._limits[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._limits.clear()


_tracker = ProviderRateLimitTracker()


def get_tracker() -> ProviderRateLimitTracker:
    """Process-wide tracker shared by providers and the API."""
    return _tracker
