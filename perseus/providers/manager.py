"""Provider manager: one market data interface over several providers with failover."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from perseus.errors import ProviderError
from perseus.logger import get_component_logger
from perseus.providers.base import BaseProvider

DEFAULT_PRIORITY = 100


@dataclass
class _Registration:
    provider: BaseProvider
    priority: int = DEFAULT_PRIORITY
    is_active: bool = False
    last_error: Optional[str] = None


class ProviderManager:
    """Routes market data calls to the best available provider.

    Order of attempts: the default provider first, then the remaining active
    providers by ascending priority. Connection and timeout failures
    deactivate a provider; other errors only move on to the next one.
    """

    def __init__(self) -> None:
        self._providers: dict[str, _Registration] = {}
        self.default_provider: Optional[str] = None
        self.logger = get_component_logger("provider-manager")

    def register_provider(
        self, provider: BaseProvider, is_default: bool = False, priority: int = DEFAULT_PRIORITY
    ) -> bool:
        if provider is None or not getattr(provider, "id", None):
            self.logger.error("Cannot register invalid provider")
            return False

        self._providers[provider.id] = _Registration(provider, priority)
        if is_default or len(self._providers) == 1:
            self.default_provider = provider.id
            self.logger.info("Set default provider: %s", provider.id)

        provider.on("connection-error", self._on_connection_error)
        provider.on("rate-limit-warning", self._on_rate_limit_warning)
        self.logger.info("Registered provider %s (priority %d)", provider.id, priority)
        return True

    def get_provider(self, provider_id: str) -> Optional[BaseProvider]:
        registration = self._providers.get(provider_id)
        return registration.provider if registration else None

    @property
    def priority_order(self) -> list[str]:
        return [pid for pid, _ in sorted(self._providers.items(), key=lambda item: item[1].priority)]

    def active_providers(self) -> list[str]:
        return [pid for pid in self.priority_order if self._providers[pid].is_active]

    async def initialize(self, configs: Optional[Mapping[str, Mapping[str, Any]]] = None) -> bool:
        """Initialize every provider concurrently. Returns True if at least one is active."""
        configs = configs or {}
        ids = list(self._providers)
        results = await asyncio.gather(
            *(self._providers[pid].provider.initialize(configs.get(pid)) for pid in ids),
            return_exceptions=True,
        )
        for pid, result in zip(ids, results):
            registration = self._providers[pid]
            if isinstance(result, BaseException):
                registration.is_active = False
                registration.last_error = str(result)
                self.logger.error("Provider %s initialization error: %s", pid, result)
            else:
                registration.is_active = bool(result)
                self.logger.info("Provider %s initialization %s", pid, "successful" if result else "failed")

        if self.default_provider and not self._providers[self.default_provider].is_active:
            self._select_new_default()

        active = self.active_providers()
        self.logger.info("Provider initialization complete. Active providers: %s", ", ".join(active) or "NONE")
        return bool(active)

    async def get_market_data(self, symbol: str, **options: Any) -> dict[str, Any]:
        return await self._execute_with_failover("get_market_data", symbol, **options)

    async def get_historical_data(self, symbol: str, timeframe: str = "1h", **options: Any) -> list[dict[str, Any]]:
        return await self._execute_with_failover("get_historical_data", symbol, timeframe, **options)

    async def subscribe(self, symbol: str, channel: str = "ticker", callback: Any = None) -> bool:
        return await self._execute_with_failover("subscribe", symbol, channel, callback)

    async def disconnect(self) -> None:
        for registration in self._providers.values():
            try:
                await registration.provider.disconnect()
            except Exception as exc:
                self.logger.warning("Error disconnecting %s: %s", registration.provider.id, exc)
            registration.is_active = False

    def _attempt_order(self) -> list[str]:
        order = self.active_providers()
        if self.default_provider in order:
            order.remove(self.default_provider)
            order.insert(0, self.default_provider)
        return order

    async def _execute_with_failover(self, method: str, *args: Any, **kwargs: Any) -> Any:
        order = self._attempt_order()
        if not order:
            raise ProviderError("No active providers available")

        last_error: Optional[Exception] = None
        for pid in order:
            registration = self._providers[pid]
            try:
                result = await getattr(registration.provider, method)(*args, **kwargs)
            except Exception as exc:
                last_error = exc
                self.logger.warning("Provider %s failed for %s: %s", pid, method, exc)
                if _is_connection_failure(exc):
                    registration.is_active = False
                    registration.last_error = str(exc)
                continue

            if pid != self.default_provider:
                default = self._providers.get(self.default_provider or "")
                if default is None or not default.is_active:
                    self.default_provider = pid
                    self.logger.info("Updated default provider to %s", pid)
            return result

        raise ProviderError(f"All providers failed for {method}: {last_error}")

    def _select_new_default(self) -> None:
        active = self.active_providers()
        self.default_provider = active[0] if active else None
        if self.default_provider:
            self.logger.info("Set new default provider: %s", self.default_provider)
        else:
            self.logger.warning("No active providers available for default")

    def _on_connection_error(self, provider_id: str, error: Exception) -> None:
        registration = self._providers.get(provider_id)
        if registration is None:
            return
        registration.last_error = str(error)
        if provider_id == self.default_provider:
            registration.is_active = False
            self._select_new_default()

    def _on_rate_limit_warning(self, provider_id: str, limits: Mapping[str, Any]) -> None:
        self.logger.warning("Rate limit warning for %s: %s", provider_id, dict(limits))
        if provider_id != self.default_provider:
            return
        for pid in self.priority_order:
            if pid != provider_id and self._providers[pid].is_active:
                self.logger.info("Switching from %s to %s due to rate limits", provider_id, pid)
                self.default_provider = pid
                return

    def status(self) -> dict[str, Any]:
        return {
            "default_provider": self.default_provider,
            "providers": {
                pid: {
                    "active": reg.is_active,
                    "connected": reg.provider.is_connected(),
                    "priority": reg.priority,
                    "last_error": reg.last_error,
                    "rate_limits": reg.provider.get_rate_limits(),
                    "subscriptions": reg.provider.subscriptions,
                }
                for pid, reg in self._providers.items()
            },
        }


def _is_connection_failure(exc: Exception) -> bool:
    if isinstance(exc, ProviderError):
        return exc.is_connection_error
    return isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError))
