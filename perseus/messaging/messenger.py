"""In-process asyncio message bus connecting the agents.

Two delivery styles are supported:

- Direct messages: ``send_message(sender, recipient, ...)`` queues the message
  for the recipient and awaits the recipient's registered handler.
- Topics: ``subscribe(topic, handler)`` / ``publish(topic, payload)`` for
  system-wide streams such as ``market_data`` or ``trade_execution``.

Handler failures are logged and never propagate to the sender.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from perseus.types import Message

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Message], Union[Awaitable[None], None]]
TopicHandler = Callable[[Any], Union[Awaitable[None], None]]
EventListener = Callable[..., None]

EVENTS = ("agent:registered", "agent:unregistered", "message:sent", "message:received")


@dataclass
class AgentRegistration:
    agent_id: str
    agent_type: str
    handler: Optional[MessageHandler] = None


async def _call(handler: Callable[..., Any], *args: Any) -> None:
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class AgentMessenger:
    """Routes messages between registered agents."""

    def __init__(self, max_history: int = 10_000) -> None:
        self._agents: dict[str, AgentRegistration] = {}
        self._queues: dict[str, list[Message]] = {}
        self._history: deque[Message] = deque(maxlen=max_history)
        self._topics: dict[str, list[TopicHandler]] = {}
        self._listeners: dict[str, list[EventListener]] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_agent(self, agent_id: str, agent_type: str, handler: Optional[MessageHandler] = None) -> None:
        self._agents[agent_id] = AgentRegistration(agent_id, agent_type, handler)
        self._queues.setdefault(agent_id, [])
        logger.info("Agent registered: %s (%s)", agent_id, agent_type)
        self._emit("agent:registered", agent_id, agent_type)

    def unregister_agent(self, agent_id: str) -> bool:
        registration = self._agents.pop(agent_id, None)
        if registration is None:
            return False
        logger.info("Agent unregistered: %s", agent_id)
        self._emit("agent:unregistered", agent_id, registration.agent_type)
        return True

    def is_registered(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def active_agents(self) -> dict[str, str]:
        """Map of active agent id to agent type."""
        return {agent_id: reg.agent_type for agent_id, reg in self._agents.items()}

    # ------------------------------------------------------------------
    # Direct messages
    # ------------------------------------------------------------------

    async def send_message(self, sender: str, recipient: str, content: Any, type: str = "data") -> str:
        if sender not in self._agents:
            logger.warning("Message from unregistered agent: %s", sender)
        if recipient not in self._agents:
            logger.warning("Message to unregistered agent: %s", recipient)

        message = Message(sender=sender, recipient=recipient, type=type, content=content)
        self._queues.setdefault(recipient, []).append(message)
        self._history.append(message)

        logger.debug("Message %s: %s -> %s (%s)", message.id, sender, recipient, type)
        self._emit("message:sent", message)

        registration = self._agents.get(recipient)
        if registration is not None and registration.handler is not None:
            self._emit("message:received", message)
            try:
                await _call(registration.handler, message)
            except Exception as exc:
                logger.error("Handler for %s failed on message %s: %s", recipient, message.id, exc)

        return message.id

    async def broadcast(self, sender: str, content: Any, type: str = "broadcast") -> list[str]:
        recipients = [agent_id for agent_id in self._agents if agent_id != sender]
        return [await self.send_message(sender, agent_id, content, type) for agent_id in recipients]

    def get_messages(self, agent_id: str, clear: bool = False) -> list[Message]:
        messages = list(self._queues.get(agent_id, []))
        if clear:
            self._queues[agent_id] = []
        return messages

    def get_message_history(self, agent_a: str, agent_b: str, limit: int = 100) -> list[Message]:
        pair = {agent_a, agent_b}
        matching = [m for m in self._history if {m.sender, m.recipient} == pair]
        return matching[-limit:] if limit > 0 else []

    def clear_all_queues(self) -> None:
        for agent_id in self._queues:
            self._queues[agent_id] = []

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    def subscribe(self, topic: str, handler: TopicHandler) -> Callable[[], None]:
        """Subscribe to a topic. Returns a callable that removes the subscription."""
        self._topics.setdefault(topic, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._topics.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def publish(self, topic: str, payload: Any) -> int:
        """Deliver a payload to every subscriber. Returns the number of handlers that succeeded."""
        delivered = 0
        for handler in list(self._topics.get(topic, [])):
            try:
                await _call(handler, payload)
                delivered += 1
            except Exception as exc:
                logger.error("Subscriber to %s failed: %s", topic, exc)
        return delivered

    def topics(self) -> list[str]:
        return sorted(topic for topic, handlers in self._topics.items() if handlers)

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    def on(self, event: str, listener: EventListener) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unknown messenger event: {event}")
        self._listeners.setdefault(event, []).append(listener)

    def _emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(*args)
            except Exception as exc:
                logger.warning("Listener for %s failed: %s", event, exc)


async def wait_for_reply(
    messenger: AgentMessenger,
    sender: str,
    recipient: str,
    content: Any,
    type: str,
    reply_type: str,
    timeout: float = 5.0,
) -> Optional[Message]:
    """Send a message and return the first reply of ``reply_type`` queued for ``sender``."""
    before = len(messenger.get_messages(sender))
    await messenger.send_message(sender, recipient, content, type)

    async def _poll() -> Message:
        while True:
            for message in messenger.get_messages(sender)[before:]:
                if message.sender == recipient and message.type in (reply_type, "error"):
                    return message
            await asyncio.sleep(0.01)

    try:
        return await asyncio.wait_for(_poll(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("No %s from %s within %.1fs", reply_type, recipient, timeout)
        return None
