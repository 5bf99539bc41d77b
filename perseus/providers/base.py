"""Base market data provider interface."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict
from typing import Any, Callable, Mapping, Optional

import httpx
import websockets

from perseus.errors import ProviderError
from perseus.logger import get_component_logger
from perseus.providers.ratelimit import ProviderRateLimitTracker, RateLimitState, get_tracker

logger = logging.getLogger(__name__)

ProviderListener = Callable[..., Any]
DataCallback = Callable[[dict[str, Any]], Any]

PROVIDER_EVENTS = ("rate-limit-warning", "connection-error", "connected", "disconnected")


class BaseProvider(ABC):
    """Abstract base class for exchange market data connectors.

    Subclasses implement the REST and streaming calls; this class owns the
    connection flag, rate limit bookkeeping and lifecycle events.
    """

    def __init__(
        self,
        provider_id: str,
        config: Optional[Mapping[str, Any]] = None,
        *,
        tracker: Optional[ProviderRateLimitTracker] = None,
    ) -> None:
        self.id = provider_id
        self.config: dict[str, Any] = dict(config or {})
        self.connected = False
        self.rate_limits = RateLimitState()
        self.tracker = tracker or get_tracker()
        self.logger = get_component_logger(f"provider-{provider_id}")
        self._listeners: dict[str, list[ProviderListener]] = {}
        self._client: Optional[httpx.AsyncClient] = None
        self._subscriptions: dict[str, dict[str, Any]] = {}
        self._ws: Any = None
        self._stream_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.max_reconnect_attempts = 5

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, listener: ProviderListener) -> None:
        if event not in PROVIDER_EVENTS:
            raise ValueError(f"Unknown provider event: {event}")
        self._listeners.setdefault(event, []).append(listener)

    def emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(self.id, *args)
            except Exception as exc:
                logger.warning("Listener for %s on %s failed: %s", event, self.id, exc)

    # ------------------------------------------------------------------
    # Interface
    # ------------------------------------------------------------------

    @abstractmethod
    async def initialize(self, config: Optional[Mapping[str, Any]] = None) -> bool:
        """Connect and verify the provider. Returns True when usable."""

    @abstractmethod
    async def get_market_data(self, symbol: str, **options: Any) -> dict[str, Any]:
        """Current normalized market data for ``symbol``."""

    @abstractmethod
    async def get_historical_data(self, symbol: str, timeframe: str = "1h", **options: Any) -> list[dict[str, Any]]:
        """Normalized candles for ``symbol``, oldest first."""

    @abstractmethod
    async def subscribe(self, symbol: str, channel: str = "ticker", callback: Optional[DataCallback] = None) -> bool:
        """Start streaming ``channel`` updates for ``symbol``."""

    @abstractmethod
    async def unsubscribe(self, symbol: str, channel: str = "ticker") -> bool:
        """Stop streaming ``channel`` updates for ``symbol``."""

    async def disconnect(self) -> None:
        await self._stop_stream()
        self._subscriptions.clear()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self.connected:
            self.connected = False
            self.emit("disconnected")
        self.logger.info("Provider disconnected")

    def is_connected(self) -> bool:
        return self.connected

    def get_rate_limits(self) -> dict[str, Any]:
        return asdict(self.rate_limits)

    @property
    def subscriptions(self) -> list[str]:
        return sorted(self._subscriptions)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    @property
    def stream_url(self) -> str:
        raise NotImplementedError

    async def _on_stream_open(self, ws: Any) -> None:
        """Send subscription requests for everything in ``_subscriptions``."""

    async def _on_stream_message(self, message: Any) -> None:
        """Normalize one decoded stream message and hand it to callbacks."""

    def _reconnect_delay(self, attempt: int) -> float:
        """Seconds to wait before reconnect ``attempt`` (1-based)."""
        return min(2.0**attempt, 30.0)

    def _ensure_stream(self) -> None:
        if self._stream_task is None or self._stream_task.done():
            self._stop_event = asyncio.Event()
            self._stream_task = asyncio.create_task(self._stream_forever())

    async def _stop_stream(self) -> None:
        self._stop_event.set()
        if self._ws is not None:
            await self._ws.close()
        if self._stream_task is not None:
            self._stream_task.cancel()
            try:
                await self._stream_task
            except asyncio.CancelledError:
                pass
            self._stream_task = None

    async def _send_ws(self, payload: dict[str, Any]) -> bool:
        if self._ws is None:
            return False
        await self._ws.send(json.dumps(payload))
        return True

    async def _stream_forever(self) -> None:
        attempt = 0
        while not self._stop_event.is_set():
            try:
                async with websockets.connect(self.stream_url, ping_interval=20, ping_timeout=20) as ws:
                    self._ws = ws
                    attempt = 0
                    self.logger.info("WebSocket connected")
                    await self._on_stream_open(ws)
                    async for raw in ws:
                        if self._stop_event.is_set():
                            break
                        await self._on_stream_message(json.loads(raw))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.warning("WebSocket error: %s", exc)
            finally:
                self._ws = None

            if self._stop_event.is_set():
                break
            attempt += 1
            if attempt > self.max_reconnect_attempts:
                self._handle_connection_error(
                    ProviderError(
                        f"WebSocket reconnection failed after {self.max_reconnect_attempts} attempts",
                        provider_id=self.id,
                    )
                )
                break
            delay = self._reconnect_delay(attempt)
            self.logger.info(
                "Reconnecting in %.1fs (attempt %d/%d)", delay, attempt, self.max_reconnect_attempts
            )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                self.logger.debug("WebSocket backoff expired; retrying")

    async def _deliver(self, key: str, data: dict[str, Any]) -> None:
        subscription = self._subscriptions.get(key)
        if subscription is None or subscription.get("callback") is None:
            return
        try:
            result = subscription["callback"](data)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self.logger.error("Subscriber callback for %s failed: %s", key, exc)

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _get_client(self, base_url: str, timeout: float = 10.0) -> httpx.AsyncClient:
        if self._client is None:
            transport = self.config.get("transport")
            self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        return self._client

    def _mark_connected(self) -> None:
        if not self.connected:
            self.connected = True
            self.emit("connected")

    def _update_rate_limits(self, endpoint: str = "rest", **changes: Any) -> None:
        for name, value in changes.items():
            setattr(self.rate_limits, name, value)

        limits = self.rate_limits
        if limits.reset_time is None and limits.per_time_window_ms:
            limits.reset_time = int(time.time() * 1000) + limits.per_time_window_ms
        if limits.max_requests:
            info = self.tracker.record(self.id, endpoint, limits)
            if info.is_low:
                self.logger.warning(
                    "Rate limit warning: %d/%d remaining", limits.remaining, limits.max_requests
                )
                self.emit("rate-limit-warning", asdict(limits))

    def _handle_connection_error(self, error: Exception) -> None:
        self.connected = False
        self.logger.error("Connection error: %s", error)
        self.emit("connection-error", error)

    def _provider_error(self, method: str, path: str, exc: Exception) -> ProviderError:
        """Translate an httpx failure into a ProviderError carrying the status code."""
        if isinstance(exc, httpx.HTTPStatusError):
            return ProviderError(
                f"{method} {path} failed with HTTP {exc.response.status_code}: {exc.response.text[:200]}",
                provider_id=self.id,
                status_code=exc.response.status_code,
            )
        if isinstance(exc, httpx.TimeoutException):
            return ProviderError(f"{method} {path} timed out: {exc}", provider_id=self.id)
        if isinstance(exc, httpx.TransportError):
            return ProviderError(f"{method} {path} could not connect: {exc}", provider_id=self.id)
        return ProviderError(f"{method} {path} failed: {exc}", provider_id=self.id)
