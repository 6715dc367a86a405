"""Named broadcast channels between peers and the registry.

Two substrates implement the same ``Broadcast`` port: ``InMemoryBroadcast`` for
peers sharing one event loop (tests, the ``demo`` command) and
``RedisBroadcast`` over Redis pub/sub for peers in separate processes.
Messages are JSON values; every subscriber of a channel receives each message
at most once.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Protocol

import redis.asyncio as aioredis

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from contention.config import AppConfig, RedisConfig

logger = logging.getLogger(__name__)

REGISTRY_CHANNEL = "registry"
CLIENTS_CHANNEL = "clients"
GO_CHANNEL = "go"


class SubscriptionClosedError(RuntimeError):
    """Raised by ``Subscription.get`` once the subscription has been closed."""


class Subscription(Protocol):
    channel: str

    async def get(self) -> Any: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[Any]: ...


class Broadcast(Protocol):
    async def publish(self, channel: str, message: Any) -> int: ...

    async def subscribe(self, channel: str) -> Subscription: ...

    async def close(self) -> None: ...


async def _iterate(subscription: Subscription) -> AsyncIterator[Any]:
    while True:
        try:
            yield await subscription.get()
        except SubscriptionClosedError:
            return


# ----------------------------------------------------------------------
# In-memory substrate
# ----------------------------------------------------------------------

_CLOSED = object()


class MemorySubscription:
    def __init__(self, broadcast: InMemoryBroadcast, channel: str) -> None:
        self.channel = channel
        self._broadcast = broadcast
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    def _deliver(self, message: Any) -> None:
        self._queue.put_nowait(message)

    async def get(self) -> Any:
        if self._closed and self._queue.empty():
            raise SubscriptionClosedError(self.channel)
        message = await self._queue.get()
        if message is _CLOSED:
            raise SubscriptionClosedError(self.channel)
        return message

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broadcast._detach(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[Any]:
        return _iterate(self)


class InMemoryBroadcast:
    """Fan messages out to every subscription in this process."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[MemorySubscription]] = defaultdict(list)

    async def publish(self, channel: str, message: Any) -> int:
        payload = json.dumps(message)
        receivers = list(self._subscribers.get(channel, []))
        for subscription in receivers:
            # Each receiver gets its own decoded copy, as it would off the wire
            subscription._deliver(json.loads(payload))
        logger.debug("broadcast_published", extra={"channel": channel, "receivers": len(receivers)})
        return len(receivers)

    async def subscribe(self, channel: str) -> MemorySubscription:
        subscription = MemorySubscription(self, channel)
        self._subscribers[channel].append(subscription)
        return subscription

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, []))

    def _detach(self, subscription: MemorySubscription) -> None:
        subscribers = self._subscribers.get(subscription.channel, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    async def close(self) -> None:
        for subscribers in list(self._subscribers.values()):
            for subscription in list(subscribers):
                await subscription.close()
        self._subscribers.clear()


# ----------------------------------------------------------------------
# Redis substrate
# ----------------------------------------------------------------------


def redis_key(prefix: str, *parts: str) -> str:
    """Compose a namespaced Redis key."""
    safe_parts = [part for part in parts if part]
    return ":".join([prefix, *safe_parts])


class RedisSubscription:
    def __init__(self, pubsub: Any, channel: str, *, poll_timeout: float = 1.0) -> None:
        self.channel = channel
        self._pubsub = pubsub
        self._poll_timeout = poll_timeout
        self._closed = False

    async def get(self) -> Any:
        while not self._closed:
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True, timeout=self._poll_timeout
            )
            if message is None or message.get("type") != "message":
                continue
            return json.loads(message["data"])
        raise SubscriptionClosedError(self.channel)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pubsub.unsubscribe()
        await self._pubsub.aclose()

    def __aiter__(self) -> AsyncIterator[Any]:
        return _iterate(self)


class RedisBroadcast:
    """Redis pub/sub channels namespaced under ``prefix``."""

    def __init__(self, client: aioredis.Redis, *, prefix: str = "contention") -> None:
        self._client = client
        self._prefix = prefix

    async def publish(self, channel: str, message: Any) -> int:
        receivers = await self._client.publish(redis_key(self._prefix, channel), json.dumps(message))
        logger.debug("broadcast_published", extra={"channel": channel, "receivers": receivers})
        return int(receivers)

    async def subscribe(self, channel: str) -> RedisSubscription:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(redis_key(self._prefix, channel))
        return RedisSubscription(pubsub, channel)

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("redis_closed")


def _build_url(cfg: RedisConfig) -> str:
    if cfg.url:
        return cfg.url
    return f"redis://{cfg.host}:{cfg.port}/{cfg.db}"


async def connect_redis(cfg: RedisConfig) -> aioredis.Redis:
    """Create a Redis client and check it answers ``PING``."""
    url = _build_url(cfg)
    client = aioredis.from_url(
        url,
        password=cfg.password,
        socket_timeout=cfg.socket_timeout,
        decode_responses=True,
    )
    try:
        await client.ping()
    except Exception:
        logger.warning("redis_connection_failed", exc_info=True, extra={"url": url})
        await client.aclose()
        raise
    logger.info("redis_connected", extra={"url": url, "db": cfg.db, "prefix": cfg.prefix})
    return client


async def create_broadcast(config: AppConfig) -> Broadcast:
    """Build the broadcast substrate selected by ``BROADCAST_BACKEND``."""
    if config.runtime.broadcast_backend == "redis":
        client = await connect_redis(config.redis)
        return RedisBroadcast(client, prefix=config.redis.prefix)
    return InMemoryBroadcast()
