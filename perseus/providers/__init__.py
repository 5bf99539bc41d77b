from perseus.providers.base import BaseProvider
from perseus.providers.binance import BinanceProvider
from perseus.providers.coinbase import CoinbaseExchangeClient, CoinbaseProvider
from perseus.providers.manager import ProviderManager
from perseus.providers.ratelimit import ProviderRateLimitTracker, RateLimitInfo, RateLimitState, get_tracker

__all__ = [
    "BaseProvider",
    "BinanceProvider",
    "CoinbaseExchangeClient",
    "CoinbaseProvider",
    "ProviderManager",
    "ProviderRateLimitTracker",
    "RateLimitInfo",
    "RateLimitState",
    "get_tracker",
]
