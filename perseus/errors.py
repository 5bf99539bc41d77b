"""Exception hierarchy for Perseus Drive."""

from __future__ import annotations


class PerseusError(Exception):
    """Base exception for all Perseus errors."""


class AgentNotInitializedError(PerseusError):
    """Raised when an agent is used before ``initialize()`` completed."""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent {agent_id} not initialized")
        self.agent_id = agent_id


class ProviderError(PerseusError):
    """Market data provider failure."""

    def __init__(self, message: str, provider_id: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.provider_id = provider_id
        self.status_code = status_code

    @property
    def is_connection_error(self) -> bool:
        text = str(self).lower()
        return "connect" in text or "timeout" in text or "timed out" in text


class ExecutionError(PerseusError):
    """Order placement failed on the exchange client."""


class SignalValidationError(PerseusError):
    """Trade signal failed validation."""
