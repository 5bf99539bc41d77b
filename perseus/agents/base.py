"""Base class for all Perseus agents."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Literal, Optional

from perseus.errors import AgentNotInitializedError
from perseus.knowledge import KnowledgeBase
from perseus.logger import get_agent_logger
from perseus.messaging import AgentMessenger
from perseus.types import Message, now_ms

AgentStatus = Literal["created", "active", "inactive", "error"]


class BaseAgent(ABC):
    """Common lifecycle, messaging and knowledge access for agents.

    Incoming messages are dispatched by type to ``on_<type>`` coroutines
    (``prompt_request`` -> ``on_prompt_request``). When a handler raises, an
    ``error`` message is sent back to the sender.
    """

    def __init__(
        self,
        agent_id: str,
        agent_type: str,
        messenger: AgentMessenger,
        knowledge_base: KnowledgeBase,
    ) -> None:
        self.id = agent_id
        self.type = agent_type
        self.status: AgentStatus = "created"
        self.messenger = messenger
        self.knowledge_base = knowledge_base
        self.logger = get_agent_logger(agent_id, agent_type)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    async def initialize(self) -> bool:
        try:
            self.messenger.register_agent(self.id, self.type, self._on_message)
            self.status = "active"
            await self.on_initialize()
        except Exception as exc:
            self.status = "error"
            self.logger.error("Initialization failed: %s", exc)
            raise
        self.logger.info("Agent initialized")
        return True

    async def on_initialize(self) -> None:
        """Hook for subclass setup; the agent is already registered and active."""

    async def _on_message(self, message: Message) -> None:
        if message.recipient != self.id:
            return
        await self.handle_message(message)

    async def handle_message(self, message: Message) -> None:
        handler = getattr(self, f"on_{message.type}", None)
        if handler is None:
            self.logger.debug("Ignoring message type %s from %s", message.type, message.sender)
            return
        try:
            await handler(message)
        except Exception as exc:
            self.logger.error("Error handling %s from %s: %s", message.type, message.sender, exc)
            await self.messenger.send_message(self.id, message.sender, {"error": str(exc)}, "error")

    async def send_message(self, recipient: str, content: Any, type: str = "data") -> str:
        if not self.is_active:
            raise AgentNotInitializedError(self.id)
        return await self.messenger.send_message(self.id, recipient, content, type)

    def store_knowledge(
        self,
        category: str,
        key: str,
        data: Any,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        if not self.is_active:
            raise AgentNotInitializedError(self.id)
        meta = dict(metadata or {})
        meta["agent"] = {"id": self.id, "type": self.type}
        meta["timestamp"] = now_ms()
        self.knowledge_base.store(category, key, data, meta)
        return True

    def get_knowledge(self, category: str, key: str, version: int | str = "latest") -> Any:
        try:
            return self.knowledge_base.get(category, key, version)
        except Exception as exc:
            self.logger.error("Failed to read knowledge %s/%s: %s", category, key, exc)
            return None

    @abstractmethod
    async def process(self, data: Any) -> Any:
        """Run the agent's pipeline stage on ``data``."""

    async def shutdown(self) -> None:
        self.messenger.unregister_agent(self.id)
        self.status = "inactive"
        self.logger.info("Agent shut down")
