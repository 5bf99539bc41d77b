"""Binance spot market data provider (REST via httpx, streams via websockets)."""

from __future__ import annotations

import time
from typing import Any, Mapping, Optional

import httpx

from perseus.errors import ProviderError
from perseus.providers.auth import binance_signed_query
from perseus.providers.base import BaseProvider, DataCallback
from perseus.providers.ratelimit import ProviderRateLimitTracker

REST_URL = "https://api.binance.com"
TESTNET_REST_URL = "https://testnet.binance.vision"
WS_URL = "wss://stream.binance.com:9443/ws"
TESTNET_WS_URL = "wss://testnet.binance.vision/ws"

QUOTE_ASSETS = ("USDT", "BTC", "ETH", "BNB", "BUSD", "USDC")
VALID_INTERVALS = ("1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "3d", "1w", "1M")
TIMEFRAME_ALIASES = {
    "1min": "1m",
    "3min": "3m",
    "5min": "5m",
    "15min": "15m",
    "30min": "30m",
    "1hour": "1h",
    "2hour": "2h",
    "4hour": "4h",
    "1day": "1d",
    "1week": "1w",
    "1month": "1M",
}
CHANNELS = ("ticker", "kline", "depth", "trade")
DEFAULT_WEIGHT_LIMIT = 1200
WEIGHT_HEADERS = ("x-mbx-used-weight-1m", "x-mbx-used-weight")


def format_symbol(symbol: str) -> str:
    """``BTC-USDT`` -> ``BTCUSDT``."""
    return symbol.replace("-", "").replace("/", "").upper()


def reverse_format_symbol(symbol: str) -> str:
    """``BTCUSDT`` -> ``BTC-USDT`` using the known quote assets."""
    symbol = symbol.upper()
    for quote in QUOTE_ASSETS:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return f"{symbol[: -len(quote)]}-{quote}"
    return f"{symbol[:-4]}-{symbol[-4:]}"


def format_timeframe(timeframe: str) -> str:
    if timeframe in VALID_INTERVALS:
        return timeframe
    return TIMEFRAME_ALIASES.get(timeframe, "1h")


def _f(value: Any) -> Optional[float]:
    return float(value) if value not in (None, "") else None


def normalize_ticker(data: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize a REST 24hr ticker or a ``24hrTicker`` stream event."""
    price = _f(data.get("lastPrice", data.get("c")))
    bid = _f(data.get("bidPrice", data.get("b")))
    ask = _f(data.get("askPrice", data.get("a")))
    return {
        "symbol": reverse_format_symbol(str(data.get("symbol", data.get("s", "")))),
        "price": price,
        "prices": [price] if price is not None else [],
        "bid": bid,
        "ask": ask,
        "volume": _f(data.get("volume", data.get("v"))),
        "quote_volume": _f(data.get("quoteVolume", data.get("q"))),
        "high": _f(data.get("highPrice", data.get("h"))),
        "low": _f(data.get("lowPrice", data.get("l"))),
        "open": _f(data.get("openPrice", data.get("o"))),
        "price_change": _f(data.get("priceChange", data.get("p"))),
        "price_change_percent": _f(data.get("priceChangePercent", data.get("P"))),
        "trades": int(data.get("count", data.get("n")) or 0),
        "timestamp": int(data.get("closeTime", data.get("E")) or time.time() * 1000),
        "provider": "binance",
    }


def normalize_kline(data: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize a ``kline`` stream event."""
    k = data["k"]
    return {
        "symbol": reverse_format_symbol(str(data.get("s", ""))),
        "interval": k.get("i"),
        "open_time": int(k["t"]),
        "close_time": int(k["T"]),
        "open": float(k["o"]),
        "high": float(k["h"]),
        "low": float(k["l"]),
        "close": float(k["c"]),
        "volume": float(k["v"]),
        "trades": int(k.get("n") or 0),
        "is_closed": bool(k.get("x")),
        "timestamp": int(data.get("E") or k["T"]),
        "provider": "binance",
    }


def normalize_candle(row: list[Any], symbol: str) -> dict[str, Any]:
    """Normalize one REST ``/api/v3/klines`` row."""
    return {
        "symbol": symbol,
        "timestamp": int(row[0]),
        "open": float(row[1]),
        "high": float(row[2]),
        "low": float(row[3]),
        "close": float(row[4]),
        "volume": float(row[5]),
        "close_time": int(row[6]),
        "quote_volume": float(row[7]),
        "trades": int(row[8]),
        "provider": "binance",
    }


def normalize_depth(data: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize a REST depth snapshot or a ``depthUpdate`` event."""
    bids = data.get("bids", data.get("b")) or []
    asks = data.get("asks", data.get("a")) or []
    return {
        "symbol": reverse_format_symbol(str(data.get("s", ""))) if data.get("s") else None,
        "bids": [{"price": float(p), "quantity": float(q)} for p, q in bids],
        "asks": [{"price": float(p), "quantity": float(q)} for p, q in asks],
        "first_update_id": data.get("U"),
        "final_update_id": data.get("u", data.get("lastUpdateId")),
        "timestamp": int(data.get("E") or time.time() * 1000),
        "provider": "binance",
    }


def normalize_trade(data: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize a REST trade or a ``trade`` stream event."""
    return {
        "symbol": reverse_format_symbol(str(data.get("s", ""))) if data.get("s") else None,
        "id": data.get("id", data.get("t")),
        "price": float(data.get("price", data.get("p"))),
        "quantity": float(data.get("qty", data.get("q"))),
        "time": int(data.get("time", data.get("T"))),
        "is_buyer_maker": bool(data.get("isBuyerMaker", data.get("m"))),
        "provider": "binance",
    }


_EVENT_CHANNELS = {
    "24hrTicker": ("ticker", normalize_ticker),
    "kline": ("kline", normalize_kline),
    "depthUpdate": ("depth", normalize_depth),
    "trade": ("trade", normalize_trade),
}


class BinanceProvider(BaseProvider):
    """Binance market data connector.

    Config keys: ``api_key``, ``api_secret``, ``testnet`` and, for tests,
    ``transport`` (an ``httpx`` transport).
    """

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        *,
        tracker: Optional[ProviderRateLimitTracker] = None,
    ) -> None:
        super().__init__("binance", config, tracker=tracker)
        self.rate_limits.max_requests = DEFAULT_WEIGHT_LIMIT
        self.rate_limits.per_time_window_ms = 60_000
        self.rate_limits.remaining = DEFAULT_WEIGHT_LIMIT
        # Binance stream symbol (lower case) -> caller's symbol
        self._symbol_map: dict[str, str] = {}

    @property
    def testnet(self) -> bool:
        return bool(self.config.get("testnet"))

    @property
    def base_url(self) -> str:
        return TESTNET_REST_URL if self.testnet else REST_URL

    @property
    def stream_url(self) -> str:
        return TESTNET_WS_URL if self.testnet else WS_URL

    async def initialize(self, config: Optional[Mapping[str, Any]] = None) -> bool:
        self.config.update(config or {})
        self.logger.info("Initializing Binance provider%s", " (testnet)" if self.testnet else "")
        try:
            info = await self._request("/api/v3/exchangeInfo")
        except ProviderError as exc:
            self._handle_connection_error(exc)
            return False

        if not isinstance(info, dict) or "symbols" not in info:
            self.logger.error("Failed to initialize Binance provider: invalid exchangeInfo response")
            return False

        for limit in info.get("rateLimits") or []:
            if limit.get("rateLimitType") == "REQUEST_WEIGHT":
                unit_ms = 60_000 if limit.get("interval") == "MINUTE" else 1000
                window_ms = int(limit.get("intervalNum", 1)) * unit_ms
                self._update_rate_limits(max_requests=int(limit["limit"]), per_time_window_ms=window_ms)
                break

        self._mark_connected()
        self.logger.info("Binance provider initialized")
        return True

    async def get_market_data(
        self,
        symbol: str,
        *,
        include_order_book: bool = False,
        include_recent_trades: bool = False,
        order_book_limit: int = 20,
        trades_limit: int = 50,
    ) -> dict[str, Any]:
        formatted = format_symbol(symbol)
        ticker = await self._request("/api/v3/ticker/24hr", {"symbol": formatted})
        result = normalize_ticker(ticker)
        result["symbol"] = symbol

        if include_order_book:
            depth = await self._request("/api/v3/depth", {"symbol": formatted, "limit": order_book_limit})
            book = normalize_depth(depth)
            result["order_book"] = {"bids": book["bids"], "asks": book["asks"]}
        if include_recent_trades:
            trades = await self._request("/api/v3/trades", {"symbol": formatted, "limit": trades_limit})
            result["recent_trades"] = [normalize_trade(t) for t in trades]
        return result

    async def get_historical_data(
        self,
        symbol: str,
        timeframe: str = "1h",
        *,
        limit: int = 500,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        interval = format_timeframe(timeframe)
        if interval != timeframe:
            self.logger.debug("Timeframe %s mapped to %s", timeframe, interval)
        params: dict[str, Any] = {"symbol": format_symbol(symbol), "interval": interval, "limit": limit}
        if start_time is not None:
            params["startTime"] = start_time
        if end_time is not None:
            params["endTime"] = end_time
        rows = await self._request("/api/v3/klines", params)
        return [normalize_candle(row, symbol) for row in rows]

    async def get_account(self) -> dict[str, Any]:
        """Signed ``/api/v3/account`` call; requires credentials."""
        return await self._request("/api/v3/account", signed=True)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _stream_name(self, symbol: str, channel: str, interval: Optional[str]) -> str:
        lower = format_symbol(symbol).lower()
        if channel == "kline":
            if not interval:
                raise ValueError("Interval is required for kline subscription")
            return f"{lower}@kline_{format_timeframe(interval)}"
        return f"{lower}@{channel}"

    async def subscribe(
        self,
        symbol: str,
        channel: str = "ticker",
        callback: Optional[DataCallback] = None,
        *,
        interval: Optional[str] = None,
    ) -> bool:
        if channel not in CHANNELS:
            raise ValueError(f"Unsupported channel: {channel}")
        stream = self._stream_name(symbol, channel, interval)
        key = f"{format_symbol(symbol).lower()}_{channel}"
        if key in self._subscriptions:
            self.logger.debug("Already subscribed to %s", stream)
            return True

        self._subscriptions[key] = {"stream": stream, "callback": callback}
        self._symbol_map[format_symbol(symbol).lower()] = symbol
        if not await self._send_ws({"method": "SUBSCRIBE", "params": [stream], "id": int(time.time() * 1000)}):
            self._ensure_stream()
        self.logger.info("Subscribed to %s", stream)
        return True

    async def unsubscribe(self, symbol: str, channel: str = "ticker") -> bool:
        key = f"{format_symbol(symbol).lower()}_{channel}"
        subscription = self._subscriptions.pop(key, None)
        if subscription is None:
            return True
        payload = {"method": "UNSUBSCRIBE", "params": [subscription["stream"]], "id": int(time.time() * 1000)}
        await self._send_ws(payload)
        self.logger.info("Unsubscribed from %s", subscription["stream"])
        return True

    async def _on_stream_open(self, ws: Any) -> None:
        streams = [s["stream"] for s in self._subscriptions.values()]
        if streams:
            await self._send_ws({"method": "SUBSCRIBE", "params": streams, "id": int(time.time() * 1000)})

    async def _on_stream_message(self, message: Any) -> None:
        if not isinstance(message, dict) or "e" not in message:
            return  # subscription acks carry {"result": null, "id": ...}
        handler = _EVENT_CHANNELS.get(message["e"])
        if handler is None:
            self.logger.debug("Unhandled event type: %s", message["e"])
            return
        channel, normalize = handler
        data = normalize(message)
        raw_symbol = str(message.get("s", "")).lower()
        data["symbol"] = self._symbol_map.get(raw_symbol, data.get("symbol"))
        await self._deliver(f"{raw_symbol}_{channel}", {"provider": self.id, "channel": channel, **data})

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _request(self, path: str, params: Optional[dict[str, Any]] = None, signed: bool = False) -> Any:
        client = self._get_client(self.base_url)
        headers: dict[str, str] = {}
        url = path
        if signed:
            api_key = self.config.get("api_key")
            api_secret = self.config.get("api_secret")
            if not api_key or not api_secret:
                raise ProviderError("API key and secret required for signed endpoints", provider_id=self.id)
            url = f"{path}?{binance_signed_query(api_secret, params)}"
            params = None
            headers["X-MBX-APIKEY"] = api_key

        try:
            resp = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise self._provider_error("GET", path, exc) from exc

        if resp.status_code == 429:
            self.logger.warning("Rate limit exceeded on %s", path)
            self._update_rate_limits(remaining=0, reset_time=int(time.time() * 1000) + 60_000)
            raise ProviderError(f"GET {path} rate limited (HTTP 429)", provider_id=self.id, status_code=429)

        for header in WEIGHT_HEADERS:
            used = resp.headers.get(header)
            if used is not None:
                self._update_rate_limits(remaining=self.rate_limits.max_requests - int(used))
                break

        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise self._provider_error("GET", path, exc) from exc
        return resp.json()
