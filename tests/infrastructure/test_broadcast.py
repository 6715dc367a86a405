"""Tests for the in-memory and Redis broadcast substrates."""

from __future__ import annotations

import asyncio

import fakeredis.aioredis
import pytest

from contention.config import load_config
from contention.messaging.broadcast import (
    GO_CHANNEL,
    InMemoryBroadcast,
    RedisBroadcast,
    SubscriptionClosedError,
    _build_url,
    create_broadcast,
    redis_key,
)


@pytest.mark.asyncio
class TestInMemoryBroadcast:
    async def test_every_subscriber_receives_each_message(self) -> None:
        broadcast = InMemoryBroadcast()
        first = await broadcast.subscribe(GO_CHANNEL)
        second = await broadcast.subscribe(GO_CHANNEL)

        receivers = await broadcast.publish(GO_CHANNEL, 1234)

        assert receivers == 2
        assert await first.get() == 1234
        assert await second.get() == 1234

    async def test_messages_are_copied_per_subscriber(self) -> None:
        broadcast = InMemoryBroadcast()
        first = await broadcast.subscribe("registry")
        second = await broadcast.subscribe("registry")
        message = {"type": "register", "name": "a"}

        await broadcast.publish("registry", message)
        received = await first.get()
        received["name"] = "mutated"

        assert await second.get() == {"type": "register", "name": "a"}
        assert message["name"] == "a"

    async def test_channels_are_independent(self) -> None:
        broadcast = InMemoryBroadcast()
        go = await broadcast.subscribe(GO_CHANNEL)

        assert await broadcast.publish("clients", 3) == 0
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(go.get(), timeout=0.02)

    async def test_close_ends_iteration(self) -> None:
        broadcast = InMemoryBroadcast()
        subscription = await broadcast.subscribe(GO_CHANNEL)
        received = []

        async def consume() -> None:
            async for message in subscription:
                received.append(message)

        consumer = asyncio.create_task(consume())
        await broadcast.publish(GO_CHANNEL, 1)
        await broadcast.publish(GO_CHANNEL, 2)
        await asyncio.sleep(0)
        await subscription.close()
        await asyncio.wait_for(consumer, timeout=1)

        assert received == [1, 2]
        assert broadcast.subscriber_count(GO_CHANNEL) == 0
        with pytest.raises(SubscriptionClosedError):
            await subscription.get()


@pytest.mark.asyncio
class TestRedisBroadcast:
    async def test_publish_and_receive(self) -> None:
        client = fakeredis.aioredis.FakeRedis(decode_responses=True)
        broadcast = RedisBroadcast(client, prefix="test")
        subscription = await broadcast.subscribe(GO_CHANNEL)
        try:
            receivers = await broadcast.publish(GO_CHANNEL, {"end_time": 99})
            message = await asyncio.wait_for(subscription.get(), timeout=2)
        finally:
            await subscription.close()
            await broadcast.close()

        assert receivers == 1
        assert message == {"end_time": 99}

    async def test_channels_are_namespaced(self) -> None:
        client = fakeredis.aioredis.FakeRedis(decode_responses=True)
        pubsub = client.pubsub()
        await pubsub.subscribe("test:go")
        broadcast = RedisBroadcast(client, prefix="test")
        try:
            assert await broadcast.publish(GO_CHANNEL, 1) == 1
            assert await broadcast.publish("go-other", 1) == 0
        finally:
            await pubsub.aclose()
            await broadcast.close()


def test_redis_key() -> None:
    assert redis_key("contention", "go") == "contention:go"
    assert redis_key("contention", "", "go") == "contention:go"


def test_build_url_prefers_explicit_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REDIS_HOST", "cache")
    monkeypatch.setenv("REDIS_PORT", "6390")
    assert _build_url(load_config().redis) == "redis://cache:6390/0"

    monkeypatch.setenv("REDIS_URL", "redis://elsewhere:1/2")
    assert _build_url(load_config().redis) == "redis://elsewhere:1/2"


@pytest.mark.asyncio
async def test_create_broadcast_defaults_to_memory() -> None:
    broadcast = await create_broadcast(load_config())

    assert isinstance(broadcast, InMemoryBroadcast)
