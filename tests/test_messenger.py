"""Tests for the in-process agent messenger."""

from __future__ import annotations

import asyncio

import pytest

from perseus.messaging import AgentMessenger, wait_for_reply


# ========== Direct Message Tests ==========


class TestDirectMessages:
    """Tests for registration and point-to-point messages."""

    def test_register_and_unregister(self) -> None:
        messenger = AgentMessenger()
        messenger.register_agent("a", "test")
        assert messenger.is_registered("a")
        assert messenger.active_agents() == {"a": "test"}

        assert messenger.unregister_agent("a") is True
        assert messenger.unregister_agent("a") is False
        assert not messenger.is_registered("a")

    @pytest.mark.asyncio
    async def test_send_message_queues_and_calls_handler(self) -> None:
        messenger = AgentMessenger()
        received = []
        messenger.register_agent("a", "test")
        messenger.register_agent("b", "test", received.append)

        message_id = await messenger.send_message("a", "b", {"hello": 1}, "greeting")

        assert len(received) == 1
        assert received[0].id == message_id
        assert received[0].type == "greeting"
        assert [m.content for m in messenger.get_messages("b")] == [{"hello": 1}]

    @pytest.mark.asyncio
    async def test_async_handler_awaited(self) -> None:
        messenger = AgentMessenger()
        received = []

        async def handler(message):
            await asyncio.sleep(0)
            received.append(message.content)

        messenger.register_agent("b", "test", handler)
        await messenger.send_message("a", "b", "ping")
        assert received == ["ping"]

    @pytest.mark.asyncio
    async def test_handler_failure_does_not_propagate(self) -> None:
        messenger = AgentMessenger()

        def handler(message):
            raise RuntimeError("handler failure")

        messenger.register_agent("b", "test", handler)
        message_id = await messenger.send_message("a", "b", "ping")
        assert message_id

    @pytest.mark.asyncio
    async def test_message_to_unregistered_agent_is_queued(self) -> None:
        messenger = AgentMessenger()
        await messenger.send_message("a", "ghost", "hello")
        assert [m.content for m in messenger.get_messages("ghost")] == ["hello"]

    @pytest.mark.asyncio
    async def test_get_messages_clear(self) -> None:
        messenger = AgentMessenger()
        messenger.register_agent("b", "test")
        await messenger.send_message("a", "b", 1)
        assert len(messenger.get_messages("b", clear=True)) == 1
        assert messenger.get_messages("b") == []

    @pytest.mark.asyncio
    async def test_broadcast_skips_sender(self) -> None:
        messenger = AgentMessenger()
        for agent_id in ("a", "b", "c"):
            messenger.register_agent(agent_id, "test")

        ids = await messenger.broadcast("a", "hi")

        assert len(ids) == 2
        assert messenger.get_messages("a") == []
        assert [m.type for m in messenger.get_messages("b")] == ["broadcast"]

    @pytest.mark.asyncio
    async def test_message_history_between_pair(self) -> None:
        messenger = AgentMessenger()
        await messenger.send_message("a", "b", 1)
        await messenger.send_message("b", "a", 2)
        await messenger.send_message("a", "c", 3)

        history = messenger.get_message_history("a", "b")
        assert [m.content for m in history] == [1, 2]
        assert [m.content for m in messenger.get_message_history("a", "b", limit=1)] == [2]

    @pytest.mark.asyncio
    async def test_clear_all_queues(self) -> None:
        messenger = AgentMessenger()
        await messenger.send_message("a", "b", 1)
        messenger.clear_all_queues()
        assert messenger.get_messages("b") == []

    @pytest.mark.asyncio
    async def test_lifecycle_events(self) -> None:
        messenger = AgentMessenger()
        events = []
        messenger.on("agent:registered", lambda agent_id, agent_type: events.append(("registered", agent_id)))
        messenger.on("message:sent", lambda message: events.append(("sent", message.content)))

        messenger.register_agent("a", "test")
        await messenger.send_message("a", "b", "x")

        assert events == [("registered", "a"), ("sent", "x")]

    def test_unknown_event_raises(self) -> None:
        with pytest.raises(ValueError):
            AgentMessenger().on("bogus", lambda: None)


# ========== Topic Tests ==========


class TestTopics:
    """Tests for publish/subscribe topics."""

    @pytest.mark.asyncio
    async def test_publish_delivers_in_subscription_order(self) -> None:
        messenger = AgentMessenger()
        order = []
        messenger.subscribe("market_data", lambda payload: order.append(("first", payload)))

        async def second(payload):
            order.append(("second", payload))

        messenger.subscribe("market_data", second)
        delivered = await messenger.publish("market_data", 1)

        assert delivered == 2
        assert order == [("first", 1), ("second", 1)]

    @pytest.mark.asyncio
    async def test_unsubscribe(self) -> None:
        messenger = AgentMessenger()
        seen = []
        unsubscribe = messenger.subscribe("t", seen.append)
        unsubscribe()
        unsubscribe()

        assert await messenger.publish("t", 1) == 0
        assert seen == []
        assert messenger.topics() == []

    @pytest.mark.asyncio
    async def test_failing_subscriber_not_counted(self) -> None:
        messenger = AgentMessenger()

        def boom(payload):
            raise RuntimeError("subscriber failure")

        messenger.subscribe("t", boom)
        messenger.subscribe("t", lambda payload: None)
        assert await messenger.publish("t", 1) == 1

    def test_topics_lists_active_topics(self) -> None:
        messenger = AgentMessenger()
        messenger.subscribe("b", lambda p: None)
        messenger.subscribe("a", lambda p: None)
        assert messenger.topics() == ["a", "b"]


# ========== Request/Reply Tests ==========


class TestWaitForReply:
    """Tests for the request/reply helper."""

    @pytest.mark.asyncio
    async def test_returns_reply(self) -> None:
        messenger = AgentMessenger()
        messenger.register_agent("client", "test")

        async def echo(message):
            await messenger.send_message("server", message.sender, message.content, "echo_response")

        messenger.register_agent("server", "test", echo)
        reply = await wait_for_reply(messenger, "client", "server", "hi", "echo", "echo_response", timeout=1.0)

        assert reply is not None
        assert reply.content == "hi"

    @pytest.mark.asyncio
    async def test_timeout_returns_none(self) -> None:
        messenger = AgentMessenger()
        messenger.register_agent("client", "test")
        messenger.register_agent("server", "test")
        reply = await wait_for_reply(messenger, "client", "server", "hi", "echo", "echo_response", timeout=0.05)
        assert reply is None
