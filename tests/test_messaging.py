"""Tests for the message bus: routing, retries, dead letters and delays."""

import asyncio

import pytest

from support_service.core.messaging import (
    InMemoryMessageBus,
    Message,
    MessageBusError,
    RedisMessageBus,
    create_message_bus,
)


class TestMessage:
    def test_json_envelope_keeps_identity(self):
        message = Message(type="payment.completed", payload={"userId": "u-1"}, correlation_id="c-1")

        restored = Message.from_json(message.to_json())

        assert restored == message


class TestInMemoryMessageBus:
    async def test_every_bound_queue_gets_a_copy(self, bus: InMemoryMessageBus):
        received: dict[str, list[str]] = {"a": [], "b": []}

        async def handler_a(message: Message) -> None:
            received["a"].append(message.message_id)

        async def handler_b(message: Message) -> None:
            received["b"].append(message.message_id)

        await bus.subscribe("payment.events", "queue-a", "payment.completed", handler_a)
        await bus.subscribe("payment.events", "queue-b", "payment.completed", handler_b)
        message = Message(type="payment.completed", payload={})

        await bus.publish("payment.events", "payment.completed", message)
        await bus.join()

        assert received == {"a": [message.message_id], "b": [message.message_id]}

    async def test_unbound_routing_key_is_dropped(self, bus: InMemoryMessageBus):
        calls = []

        async def handler(message: Message) -> None:
            calls.append(message)

        await bus.subscribe("payment.events", "queue-a", "payment.completed", handler)
        await bus.publish("payment.events", "payment.failed", Message(type="payment.failed", payload={}))
        await bus.join()

        assert calls == []
        assert len(bus.messages("payment.events")) == 1

    async def test_failed_handler_is_retried(self, bus: InMemoryMessageBus):
        attempts = []

        async def flaky(message: Message) -> None:
            attempts.append(message.attempts)
            if len(attempts) < 2:
                raise RuntimeError("database unavailable")

        await bus.subscribe("user.events", "queue-a", "user.created", flaky)
        await bus.publish("user.events", "user.created", Message(type="user.created", payload={}))
        await bus.join()

        assert attempts == [0, 1]
        assert bus.dead_letters == []

    async def test_exhausted_retries_are_dead_lettered(self, bus: InMemoryMessageBus):
        attempts = []

        async def broken(message: Message) -> None:
            attempts.append(message.attempts)
            raise RuntimeError("boom")

        await bus.subscribe("user.events", "queue-a", "user.created", broken)
        await bus.publish("user.events", "user.created", Message(type="user.created", payload={}))
        await bus.join()

        # max_retries=2 in the fixture: one delivery plus two retries
        assert attempts == [0, 1, 2]
        assert len(bus.dead_letters) == 1
        exchange, routing_key, message, error = bus.dead_letters[0]
        assert (exchange, routing_key, error) == ("user.events", "user.created", "boom")

    async def test_delayed_publish(self, bus: InMemoryMessageBus):
        delivered = asyncio.Event()

        async def handler(message: Message) -> None:
            delivered.set()

        await bus.subscribe("notifications.queue", "worker", "notification.send", handler)
        await bus.publish(
            "notifications.queue",
            "notification.send",
            Message(type="notification.send", payload={}),
            delay_seconds=0.05,
        )

        assert not delivered.is_set()
        await asyncio.wait_for(delivered.wait(), timeout=2)

    async def test_requires_connection(self):
        bus = InMemoryMessageBus()

        with pytest.raises(MessageBusError):
            await bus.publish("x", "y", Message(type="y", payload={}))


class TestCreateMessageBus:
    def test_memory_backend(self, settings):
        assert isinstance(create_message_bus(settings), InMemoryMessageBus)

    def test_redis_backend(self, settings):
        redis_settings = settings.model_copy(update={"message_bus_backend": "redis"})

        bus = create_message_bus(redis_settings)

        assert isinstance(bus, RedisMessageBus)
        assert bus._stream_key("payment.events", "payment.completed") == (
            "rto:payment.events:payment.completed"
        )
