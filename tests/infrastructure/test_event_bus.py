"""Unit tests for EventBus."""

import pytest

from contention.core.time_utils import utc_now
from contention.messaging.event_bus import EventBus
from contention.messaging.events import PeerGo, PeerLog, PeerReady


def _log(text: str = "hello") -> PeerLog:
    return PeerLog(occurred_at=utc_now(), peer_id="a1", text=text)


class TestEventBus:
    """Test suite for EventBus."""

    @pytest.fixture
    def event_bus(self):
        """Create a fresh event bus for each test."""
        return EventBus()

    @pytest.mark.asyncio
    async def test_subscribe_and_publish(self, event_bus):
        received = []

        async def handler(event: PeerLog):
            received.append(event)

        event_bus.subscribe(PeerLog, handler)
        event = _log()
        await event_bus.publish(event)

        assert received == [event]

    @pytest.mark.asyncio
    async def test_handlers_only_see_their_event_type(self, event_bus):
        logs = []
        readies = []

        async def on_log(event: PeerLog):
            logs.append(event)

        async def on_ready(event: PeerReady):
            readies.append(event)

        event_bus.subscribe(PeerLog, on_log)
        event_bus.subscribe(PeerReady, on_ready)

        await event_bus.publish(_log())
        await event_bus.publish(PeerReady(occurred_at=utc_now(), peer_id="a1"))
        await event_bus.publish(PeerGo(occurred_at=utc_now(), peer_id="a1", end_time=5))

        assert len(logs) == 1
        assert len(readies) == 1

    @pytest.mark.asyncio
    async def test_publish_with_no_handlers(self, event_bus):
        # Should not raise error
        await event_bus.publish(_log())

    @pytest.mark.asyncio
    async def test_handler_error_does_not_affect_other_handlers(self, event_bus):
        """Test that error in one handler doesn't stop other handlers."""
        handler2_called = False

        async def handler1(event: PeerLog):
            raise ValueError("Handler 1 error")

        async def handler2(event: PeerLog):
            nonlocal handler2_called
            handler2_called = True

        event_bus.subscribe(PeerLog, handler1)
        event_bus.subscribe(PeerLog, handler2)

        await event_bus.publish(_log())

        # Handler 2 should still be called even though handler 1 failed
        assert handler2_called is True

    @pytest.mark.asyncio
    async def test_unsubscribe(self, event_bus):
        called = False

        async def handler(event: PeerLog):
            nonlocal called
            called = True

        event_bus.subscribe(PeerLog, handler)
        event_bus.unsubscribe(PeerLog, handler)
        # Unknown handlers are ignored
        event_bus.unsubscribe(PeerLog, handler)

        await event_bus.publish(_log())

        assert called is False


class TestPeerEvents:
    def test_events_are_immutable(self):
        event = _log()

        with pytest.raises(AttributeError):
            event.text = "changed"

    def test_validation(self):
        with pytest.raises(ValueError):
            PeerReady(occurred_at=utc_now(), peer_id="")
        with pytest.raises(TypeError):
            PeerReady(occurred_at="yesterday", peer_id="a1")
        with pytest.raises(ValueError):
            PeerGo(occurred_at=utc_now(), peer_id="a1", end_time=-1)
