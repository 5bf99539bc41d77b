"""Coinbase Exchange market data provider and trading client."""

from __future__ import annotations

import asyncio
import json
import random
import time
from datetime import datetime, timezone
from typing import Any, Mapping, Optional
from urllib.parse import urlencode

import httpx
import requests

from perseus.errors import ExecutionError, ProviderError
from perseus.execution.interfaces import OrderFill, OrderRequest
from perseus.providers.auth import coinbase_auth_headers
from perseus.providers.base import BaseProvider, DataCallback
from perseus.providers.ratelimit import ProviderRateLimitTracker
from perseus.types import MarketSnapshot, now_ms

REST_URL = "https://api.exchange.coinbase.com"
WS_URL = "wss://ws-feed.exchange.coinbase.com"
CHANNELS = ("ticker", "level2", "matches")
MAX_RECONNECT_ATTEMPTS = 10
RECONNECT_DELAY_MS = 1000
MAX_RECONNECT_DELAY_MS = 30_000
MAX_RATE_LIMIT_RETRIES = 3
USER_AGENT = "Perseus-Drive-Trading-Bot"
PUBLIC_RATE_LIMIT = 10  # requests per second

GRANULARITIES = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "1h": 3600,
    "6h": 21600,
    "1d": 86400,
}


def reconnect_delay_ms(attempt: int, jitter: Optional[float] = None) -> float:
    """``1000 * 1.5^attempt`` plus up to a second of jitter, capped at 30s."""
    jitter = random.random() if jitter is None else jitter
    return min(RECONNECT_DELAY_MS * 1.5**attempt + jitter * 1000, MAX_RECONNECT_DELAY_MS)


def _to_ms(value: Any) -> int:
    if value in (None, ""):
        return now_ms()
    if isinstance(value, (int, float)):
        return int(value)
    return int(datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp() * 1000)


def _f(value: Any) -> Optional[float]:
    return float(value) if value not in (None, "") else None


def granularity_for(timeframe: str) -> int:
    if timeframe in GRANULARITIES:
        return GRANULARITIES[timeframe]
    if timeframe.isdigit():
        return int(timeframe)
    return 3600


def normalize_market_data(symbol: str, ticker: Mapping[str, Any], stats: Mapping[str, Any]) -> dict[str, Any]:
    price = _f(ticker.get("price"))
    return {
        "symbol": symbol,
        "price": price,
        "prices": [price] if price is not None else [],
        "bid": _f(ticker.get("bid")),
        "ask": _f(ticker.get("ask")),
        "volume": _f(stats.get("volume", ticker.get("volume"))),
        "high": _f(stats.get("high")),
        "low": _f(stats.get("low")),
        "open": _f(stats.get("open")),
        "timestamp": _to_ms(ticker.get("time")),
        "provider": "coinbase",
    }


def normalize_candle(row: list[Any], symbol: str) -> dict[str, Any]:
    """Coinbase candle rows are ``[time, low, high, open, close, volume]`` (seconds)."""
    return {
        "symbol": symbol,
        "timestamp": int(row[0]) * 1000,
        "low": float(row[1]),
        "high": float(row[2]),
        "open": float(row[3]),
        "close": float(row[4]),
        "volume": float(row[5]),
        "provider": "coinbase",
    }


def normalize_ws_message(message: Mapping[str, Any]) -> Optional[dict[str, Any]]:
    kind = message.get("type")
    if kind == "ticker":
        return {
            "provider": "coinbase",
            "channel": "ticker",
            "symbol": message.get("product_id"),
            "price": _f(message.get("price")),
            "bid": _f(message.get("best_bid")),
            "ask": _f(message.get("best_ask")),
            "volume": _f(message.get("volume_24h")),
            "side": message.get("side"),
            "timestamp": _to_ms(message.get("time")),
        }
    if kind in ("match", "last_match"):
        return {
            "provider": "coinbase",
            "channel": "matches",
            "symbol": message.get("product_id"),
            "price": _f(message.get("price")),
            "size": _f(message.get("size")),
            "side": message.get("side"),
            "trade_id": message.get("trade_id"),
            "timestamp": _to_ms(message.get("time")),
        }
    if kind in ("snapshot", "l2update"):
        return {
            "provider": "coinbase",
            "channel": "level2",
            "symbol": message.get("product_id"),
            "bids": message.get("bids"),
            "asks": message.get("asks"),
            "changes": message.get("changes"),
            "timestamp": _to_ms(message.get("time")),
        }
    return None


_CHANNEL_FOR_TYPE = {
    "ticker": "ticker",
    "match": "matches",
    "last_match": "matches",
    "snapshot": "level2",
    "l2update": "level2",
}


class CoinbaseProvider(BaseProvider):
    """Coinbase Exchange market data connector.

    Config keys: ``api_key``, ``api_secret`` (base64), ``passphrase`` and,
    for tests, ``transport``.
    """

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        *,
        tracker: Optional[ProviderRateLimitTracker] = None,
    ) -> None:
        super().__init__("coinbase", config, tracker=tracker)
        self.max_reconnect_attempts = MAX_RECONNECT_ATTEMPTS
        self.authenticated = False
        self.rate_limits.max_requests = PUBLIC_RATE_LIMIT
        self.rate_limits.per_time_window_ms = 1000
        self.rate_limits.remaining = PUBLIC_RATE_LIMIT

    @property
    def stream_url(self) -> str:
        return WS_URL

    @property
    def has_credentials(self) -> bool:
        return bool(self.config.get("api_key") and self.config.get("api_secret") and self.config.get("passphrase"))

    @property
    def supports_trading(self) -> bool:
        return self.has_credentials

    async def initialize(self, config: Optional[Mapping[str, Any]] = None) -> bool:
        self.config.update(config or {})
        try:
            server_time = await self._request("GET", "/time")
        except ProviderError as exc:
            self._handle_connection_error(exc)
            return False

        self.authenticated = self.has_credentials
        if not self.authenticated:
            self.logger.warning("Coinbase provider initialized without authentication")
        self._mark_connected()
        self.logger.info("Coinbase provider connected, server time: %s", server_time.get("iso"))
        return True

    async def get_market_data(self, symbol: str, **options: Any) -> dict[str, Any]:
        ticker = await self._request("GET", f"/products/{symbol}/ticker")
        stats = await self._request("GET", f"/products/{symbol}/stats")
        return normalize_market_data(symbol, ticker, stats)

    async def get_historical_data(
        self,
        symbol: str,
        timeframe: str = "1h",
        *,
        granularity: Optional[int] = None,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"granularity": granularity or granularity_for(timeframe)}
        if start_time is not None:
            params["start"] = datetime.fromtimestamp(start_time / 1000, tz=timezone.utc).isoformat()
        if end_time is not None:
            params["end"] = datetime.fromtimestamp(end_time / 1000, tz=timezone.utc).isoformat()
        rows = await self._request("GET", f"/products/{symbol}/candles", params)
        candles = [normalize_candle(row, symbol) for row in rows]
        return sorted(candles, key=lambda c: c["timestamp"])

    def get_exchange_client(self) -> Optional["CoinbaseExchangeClient"]:
        """Trading client bound to this provider's credentials, or None without them."""
        if not self.supports_trading:
            return None
        return CoinbaseExchangeClient(
            api_key=self.config["api_key"],
            api_secret=self.config["api_secret"],
            passphrase=self.config["passphrase"],
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _reconnect_delay(self, attempt: int) -> float:
        return reconnect_delay_ms(attempt) / 1000

    def _subscribe_message(self, kind: str, symbols: list[str], channel: str) -> dict[str, Any]:
        message: dict[str, Any] = {"type": kind, "product_ids": symbols, "channels": [channel]}
        if self.authenticated and kind == "subscribe":
            headers = coinbase_auth_headers(
                self.config["api_key"],
                self.config["api_secret"],
                self.config["passphrase"],
                "GET",
                "/users/self/verify",
            )
            message.update(
                signature=headers["CB-ACCESS-SIGN"],
                key=headers["CB-ACCESS-KEY"],
                passphrase=headers["CB-ACCESS-PASSPHRASE"],
                timestamp=headers["CB-ACCESS-TIMESTAMP"],
            )
        return message

    async def subscribe(self, symbol: str, channel: str = "ticker", callback: Optional[DataCallback] = None) -> bool:
        if channel not in CHANNELS:
            raise ValueError(f"Invalid channel type: {channel}. Must be one of: {', '.join(CHANNELS)}")
        key = f"{channel}-{symbol}"
        self._subscriptions[key] = {"symbol": symbol, "channel": channel, "callback": callback}
        if not await self._send_ws(self._subscribe_message("subscribe", [symbol], channel)):
            self._ensure_stream()
        self.logger.info("Subscribed to %s for %s", channel, symbol)
        return True

    async def unsubscribe(self, symbol: str, channel: str = "ticker") -> bool:
        if self._subscriptions.pop(f"{channel}-{symbol}", None) is None:
            self.logger.warning("No active subscription found for %s on %s", channel, symbol)
            return True
        await self._send_ws(self._subscribe_message("unsubscribe", [symbol], channel))
        self.logger.info("Unsubscribed from %s for %s", channel, symbol)
        return True

    async def _on_stream_open(self, ws: Any) -> None:
        for subscription in self._subscriptions.values():
            await self._send_ws(
                self._subscribe_message("subscribe", [subscription["symbol"]], subscription["channel"])
            )

    async def _on_stream_message(self, message: Any) -> None:
        if not isinstance(message, dict):
            return
        kind = message.get("type")
        if kind == "subscriptions":
            self.logger.debug("Subscription confirmed: %s", message.get("channels"))
            return
        if kind == "error":
            self.logger.error("Coinbase WebSocket error: %s", message.get("message"))
            return
        channel = _CHANNEL_FOR_TYPE.get(str(kind))
        data = normalize_ws_message(message)
        if channel is None or data is None:
            return
        await self._deliver(f"{channel}-{message.get('product_id')}", data)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        client = self._get_client(REST_URL)
        request_path = f"{path}?{urlencode(params)}" if params else path
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if self.authenticated:
            headers.update(
                coinbase_auth_headers(
                    self.config["api_key"],
                    self.config["api_secret"],
                    self.config["passphrase"],
                    method,
                    request_path,
                )
            )

        for attempt in range(MAX_RATE_LIMIT_RETRIES + 1):
            try:
                resp = await client.request(method, request_path, headers=headers)
            except httpx.HTTPError as exc:
                raise self._provider_error(method, path, exc) from exc

            if resp.status_code != 429:
                break
            retry_after = float(resp.headers.get("retry-after", "5"))
            self._update_rate_limits(remaining=0, reset_time=int((time.time() + retry_after) * 1000))
            if attempt >= MAX_RATE_LIMIT_RETRIES:
                raise ProviderError(f"{method} {path} rate limited (HTTP 429)", provider_id=self.id, status_code=429)
            self.logger.warning("Rate limited by Coinbase, waiting %.1fs before retrying", retry_after)
            await asyncio.sleep(retry_after)

        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise self._provider_error(method, path, exc) from exc
        return resp.json()


class CoinbaseExchangeClient:
    """Live Coinbase Exchange trading client.

    Uses ``requests`` for the signed order endpoints; every blocking call is
    run with ``asyncio.to_thread``. Errors surface as ``ExecutionError``.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        passphrase: str,
        *,
        base_url: str = REST_URL,
        fee_rate: float = 0.006,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._api_secret = api_secret
        self._passphrase = passphrase
        self.base_url = base_url.rstrip("/")
        self.fee_rate = fee_rate
        self.timeout = timeout
        self._session = session or requests.Session()

    def _call(self, method: str, path: str, body: Optional[dict[str, Any]] = None) -> Any:
        payload = json.dumps(body) if body is not None else ""
        headers = coinbase_auth_headers(self._api_key, self._api_secret, self._passphrase, method, path, payload)
        headers["User-Agent"] = USER_AGENT
        try:
            response = self._session.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                data=payload or None,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ExecutionError(f"Coinbase {method} {path} failed: {exc}") from exc
        return response.json()

    async def _request(self, method: str, path: str, body: Optional[dict[str, Any]] = None) -> Any:
        return await asyncio.to_thread(self._call, method, path, body)

    async def get_market_data(self, symbol: str) -> MarketSnapshot:
        ticker = await self._request("GET", f"/products/{symbol}/ticker")
        stats = await self._request("GET", f"/products/{symbol}/stats")
        return MarketSnapshot.from_mapping(normalize_market_data(symbol, ticker, stats))

    async def execute_trade(self, order: OrderRequest) -> OrderFill:
        body: dict[str, Any] = {
            "product_id": order.symbol,
            "side": order.side.lower(),
            "type": order.order_type.lower(),
            "size": f"{order.quantity:.8f}",
        }
        if order.order_type == "LIMIT":
            if order.limit_price is None:
                raise ExecutionError("Limit orders require a limit price")
            body["price"] = f"{order.limit_price:.2f}"
            body["time_in_force"] = order.time_in_force
        if order.client_order_id:
            body["client_oid"] = order.client_order_id

        placed = await self._request("POST", "/orders", body)
        return self._to_fill(placed)

    async def get_account_balance(self) -> dict[str, Any]:
        accounts = await self._request("GET", "/accounts")
        balances = {a["currency"]: float(a.get("balance") or 0.0) for a in accounts}
        available = {a["currency"]: float(a.get("available") or 0.0) for a in accounts}
        return {
            "total_balance": balances.get("USD", 0.0),
            "available_balance": available.get("USD", 0.0),
            "balances": balances,
            "timestamp": now_ms(),
        }

    async def check_order_status(self, order_id: str) -> dict[str, Any]:
        order = await self._request("GET", f"/orders/{order_id}")
        fill = self._to_fill(order)
        return {
            "order_id": order_id,
            "status": fill.status,
            "filled_quantity": fill.executed_quantity,
            "avg_fill_price": fill.executed_price,
            "transaction_cost": fill.transaction_cost,
            "timestamp": now_ms(),
        }

    def _to_fill(self, order: Mapping[str, Any]) -> OrderFill:
        filled = float(order.get("filled_size") or 0.0)
        executed_value = float(order.get("executed_value") or 0.0)
        price = executed_value / filled if filled else _f(order.get("price"))
        status = str(order.get("status") or "pending").upper()
        if status == "DONE":
            status = "FILLED" if order.get("done_reason", "filled") == "filled" else "CANCELLED"
        fees = order.get("fill_fees")
        return OrderFill(
            success=status != "REJECTED" and not (status == "CANCELLED" and filled == 0),
            order_id=str(order.get("id")),
            executed_price=price,
            executed_quantity=filled,
            transaction_cost=float(fees) if fees is not None else executed_value * self.fee_rate,
            status=status,
            error=order.get("reject_reason"),
            raw=dict(order),
        )
