"""
Message bus: topic exchanges with durable, at-least-once consumer queues.

Publishers address a message by (exchange, routing_key). Consumers bind a
named queue to an (exchange, routing_key) pair; every bound queue receives its
own copy, and each queue is drained one message at a time. A handler that
raises leaves the message eligible for redelivery until the retry budget is
spent, after which it is dead-lettered.

Two transports:
- InMemoryMessageBus: asyncio queues, for development and tests
- RedisMessageBus: Redis Streams with consumer groups, for production
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field, replace
from typing import Any
from uuid import uuid4

from redis import asyncio as aioredis
from redis.exceptions import ResponseError

from .config import Settings

logger = logging.getLogger(__name__)


# =============================================================================
# EXCHANGES & ROUTING KEYS
# =============================================================================

NOTIFICATIONS_EXCHANGE = "notifications.queue"
SUPPORT_EVENTS_EXCHANGE = "support.events"
PAYMENT_EVENTS_EXCHANGE = "payment.events"
USER_EVENTS_EXCHANGE = "user.events"
TELEMATICS_EVENTS_EXCHANGE = "telematics.events"

NOTIFICATION_SEND = "notification.send"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Message:
    """Envelope for everything that crosses the bus."""
    type: str
    payload: dict[str, Any]
    timestamp: int = field(default_factory=now_ms)
    correlation_id: str | None = None
    message_id: str = field(default_factory=lambda: uuid4().hex)
    attempts: int = 0

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, data: str | bytes) -> "Message":
        raw = json.loads(data)
        return cls(
            type=raw["type"],
            payload=raw.get("payload") or {},
            timestamp=raw.get("timestamp") or now_ms(),
            correlation_id=raw.get("correlation_id"),
            message_id=raw.get("message_id") or uuid4().hex,
            attempts=raw.get("attempts", 0),
        )


MessageHandler = Callable[[Message], Awaitable[None]]


class MessageBusError(Exception):
    """Transport-level failure (not connected, broker unreachable)."""
    pass


class MessageBus(ABC):
    """Abstract publish/subscribe transport."""

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    async def publish(
        self,
        exchange: str,
        routing_key: str,
        message: Message,
        delay_seconds: float = 0,
    ) -> None:
        """Publish a message; with a delay, it becomes visible only after it."""
        pass

    @abstractmethod
    async def subscribe(
        self,
        exchange: str,
        queue: str,
        routing_key: str,
        handler: MessageHandler,
    ) -> None:
        """Bind `queue` to (exchange, routing_key) and consume it with `handler`."""
        pass


# =============================================================================
# IN-MEMORY TRANSPORT
# =============================================================================


class InMemoryMessageBus(MessageBus):
    """
    Single-process transport backed by asyncio queues.

    Keeps a history of every published message (`published`) and of every
    message that exhausted its retries (`dead_letters`).
    """

    def __init__(self, max_retries: int = 3):
        self._max_retries = max_retries
        self._bindings: dict[tuple[str, str], set[str]] = defaultdict(set)
        self._handlers: dict[tuple[str, str, str], MessageHandler] = {}
        self._queues: dict[str, asyncio.Queue] = {}
        self._consumers: dict[str, asyncio.Task] = {}
        self._delayed: set[asyncio.TimerHandle] = set()
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._connected = False

        self.published: list[tuple[str, str, Message]] = []
        self.dead_letters: list[tuple[str, str, Message, str]] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.info("In-memory message bus connected")

    async def close(self) -> None:
        for handle in self._delayed:
            handle.cancel()
        self._delayed.clear()

        for task in self._consumers.values():
            task.cancel()
        for task in self._consumers.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._consumers.clear()
        self._connected = False

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        message: Message,
        delay_seconds: float = 0,
    ) -> None:
        if not self._connected:
            raise MessageBusError("Message bus is not connected")

        self.published.append((exchange, routing_key, message))

        if delay_seconds > 0:
            loop = asyncio.get_running_loop()

            def fire() -> None:
                self._delayed.discard(handle)
                self._route(exchange, routing_key, message)

            handle = loop.call_later(delay_seconds, fire)
            self._delayed.add(handle)
            return

        self._route(exchange, routing_key, message)

    async def subscribe(
        self,
        exchange: str,
        queue: str,
        routing_key: str,
        handler: MessageHandler,
    ) -> None:
        if not self._connected:
            raise MessageBusError("Message bus is not connected")

        self._bindings[(exchange, routing_key)].add(queue)
        self._handlers[(queue, exchange, routing_key)] = handler

        if queue not in self._queues:
            self._queues[queue] = asyncio.Queue()
            self._consumers[queue] = asyncio.create_task(self._consume(queue))

        logger.info(f"Subscribed queue {queue} to {exchange}/{routing_key}")

    async def join(self) -> None:
        """Wait until every routed message has been handled (delayed ones excluded)."""
        await self._idle.wait()

    def messages(self, exchange: str, routing_key: str | None = None) -> list[Message]:
        """Published history filtered by exchange and optional routing key."""
        return [
            message
            for ex, key, message in self.published
            if ex == exchange and (routing_key is None or key == routing_key)
        ]

    def _route(self, exchange: str, routing_key: str, message: Message) -> None:
        for queue in self._bindings.get((exchange, routing_key), ()):
            self._enqueue(queue, exchange, routing_key, message)

    def _enqueue(self, queue: str, exchange: str, routing_key: str, message: Message) -> None:
        self._pending += 1
        self._idle.clear()
        self._queues[queue].put_nowait((exchange, routing_key, message))

    def _task_done(self) -> None:
        self._pending -= 1
        if self._pending == 0:
            self._idle.set()

    async def _consume(self, queue: str) -> None:
        q = self._queues[queue]
        while True:
            exchange, routing_key, message = await q.get()
            try:
                handler = self._handlers.get((queue, exchange, routing_key))
                if handler is not None:
                    await self._deliver(queue, exchange, routing_key, message, handler)
            finally:
                q.task_done()
                self._task_done()

    async def _deliver(
        self,
        queue: str,
        exchange: str,
        routing_key: str,
        message: Message,
        handler: MessageHandler,
    ) -> None:
        try:
            await handler(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Error processing {message.type} ({message.message_id}) "
                f"on queue {queue}: {e}"
            )
            if message.attempts < self._max_retries:
                self._enqueue(
                    queue, exchange, routing_key,
                    replace(message, attempts=message.attempts + 1),
                )
            else:
                logger.error(
                    f"Message {message.message_id} failed after "
                    f"{message.attempts + 1} attempts, moving to dead letters"
                )
                self.dead_letters.append((exchange, routing_key, message, str(e)))


# =============================================================================
# REDIS STREAMS TRANSPORT
# =============================================================================


class RedisMessageBus(MessageBus):
    """
    Redis Streams transport.

    Each (exchange, routing_key) pair is a stream; each bound queue is a
    consumer group on it. Entries are acknowledged only after the handler
    returns. Entries left unacknowledged for longer than the visibility
    timeout (a crashed or failing consumer) are reclaimed with XAUTOCLAIM and
    redelivered; once delivered more than `max_retries + 1` times they are
    copied to the dead-letter stream and acknowledged.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        prefix: str = "rto",
        visibility_timeout_seconds: float = 30.0,
        max_retries: int = 3,
        block_ms: int = 1000,
        consumer_name: str | None = None,
    ):
        self._url = url
        self._prefix = prefix
        self._visibility_timeout_ms = int(visibility_timeout_seconds * 1000)
        self._max_retries = max_retries
        self._block_ms = block_ms
        self._consumer_name = consumer_name or f"consumer-{uuid4().hex[:8]}"
        self._redis: aioredis.Redis | None = None
        self._consumers: list[asyncio.Task] = []
        self._running = False

    @property
    def _delayed_key(self) -> str:
        return f"{self._prefix}:delayed"

    @property
    def _dead_letter_key(self) -> str:
        return f"{self._prefix}:dead-letter"

    def _stream_key(self, exchange: str, routing_key: str) -> str:
        return f"{self._prefix}:{exchange}:{routing_key}"

    async def connect(self) -> None:
        try:
            self._redis = aioredis.from_url(self._url, decode_responses=True)
            await self._redis.ping()
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise MessageBusError(f"Failed to connect to Redis: {e}") from e

        self._running = True
        logger.info(f"Connected to Redis message bus as {self._consumer_name}")

    async def close(self) -> None:
        self._running = False
        for task in self._consumers:
            task.cancel()
        for task in self._consumers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._consumers.clear()

        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            raise MessageBusError("Message bus is not connected")
        return self._redis

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        message: Message,
        delay_seconds: float = 0,
    ) -> None:
        client = self._client()
        stream = self._stream_key(exchange, routing_key)

        if delay_seconds > 0:
            envelope = json.dumps({"stream": stream, "data": message.to_json()})
            await client.zadd(self._delayed_key, {envelope: time.time() + delay_seconds})
            return

        await client.xadd(stream, {"data": message.to_json()})

    async def subscribe(
        self,
        exchange: str,
        queue: str,
        routing_key: str,
        handler: MessageHandler,
    ) -> None:
        client = self._client()
        stream = self._stream_key(exchange, routing_key)

        try:
            await client.xgroup_create(stream, queue, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

        self._consumers.append(
            asyncio.create_task(self._consume(stream, queue, handler))
        )
        logger.info(f"Subscribed group {queue} to stream {stream}")

    async def _consume(self, stream: str, group: str, handler: MessageHandler) -> None:
        client = self._client()
        while self._running:
            try:
                await self._promote_delayed()

                entries = await self._reclaim(stream, group)
                if not entries:
                    response = await client.xreadgroup(
                        group,
                        self._consumer_name,
                        {stream: ">"},
                        count=1,
                        block=self._block_ms,
                    )
                    entries = response[0][1] if response else []

                for entry_id, fields in entries:
                    await self._handle_entry(stream, group, entry_id, fields, handler)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Consumer loop error on {stream}/{group}: {e}")
                await asyncio.sleep(1)

    async def _reclaim(self, stream: str, group: str) -> list:
        result = await self._client().xautoclaim(
            stream,
            group,
            self._consumer_name,
            min_idle_time=self._visibility_timeout_ms,
            start_id="0-0",
            count=1,
        )
        return result[1] if result else []

    async def _handle_entry(
        self,
        stream: str,
        group: str,
        entry_id: str,
        fields: dict,
        handler: MessageHandler,
    ) -> None:
        client = self._client()
        message = Message.from_json(fields["data"])

        pending = await client.xpending_range(stream, group, min=entry_id, max=entry_id, count=1)
        deliveries = pending[0]["times_delivered"] if pending else 1
        message = replace(message, attempts=deliveries - 1)

        if message.attempts > self._max_retries:
            logger.error(
                f"Message {message.message_id} on {stream} exceeded "
                f"{self._max_retries} retries, moving to dead letters"
            )
            await client.xadd(
                self._dead_letter_key,
                {"stream": stream, "group": group, "data": fields["data"]},
            )
            await client.xack(stream, group, entry_id)
            return

        try:
            await handler(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Left unacknowledged; reclaimed after the visibility timeout.
            logger.error(
                f"Error processing {message.type} ({message.message_id}) "
                f"on {stream}/{group}: {e}"
            )
            return

        await client.xack(stream, group, entry_id)

    async def _promote_delayed(self) -> None:
        client = self._client()
        due = await client.zrangebyscore(self._delayed_key, 0, time.time(), start=0, num=100)
        for member in due:
            # Only the consumer that removes the entry re-publishes it.
            if await client.zrem(self._delayed_key, member):
                envelope = json.loads(member)
                await client.xadd(envelope["stream"], {"data": envelope["data"]})


def create_message_bus(settings: Settings) -> MessageBus:
    """Build the configured transport."""
    if settings.message_bus_backend == "redis":
        return RedisMessageBus(
            url=settings.redis_url,
            prefix=settings.bus_prefix,
            visibility_timeout_seconds=settings.broker_visibility_timeout_seconds,
            max_retries=settings.broker_max_retries,
        )
    return InMemoryMessageBus(max_retries=settings.broker_max_retries)
