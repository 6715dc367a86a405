"""Simple in-memory event bus for peer events.

Publishers and subscribers stay decoupled: a coordinator publishes
``PeerReady``/``PeerGo``/``PeerLog``/``ClientCount`` and whatever host is
attached decides how to render them.
"""

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import TypeVar

from contention.messaging.events import PeerEvent

logger = logging.getLogger(__name__)

TEvent = TypeVar("TEvent", bound=PeerEvent)

EventHandler = Callable[[TEvent], Awaitable[None]]


class EventBus:
    """Dispatch peer events to async handlers subscribed by event type.

    Example:
        ```python
        bus = EventBus()

        async def on_log(event: PeerLog):
            print(event.text)

        bus.subscribe(PeerLog, on_log)
        await bus.publish(PeerLog(occurred_at=utc_now(), peer_id="a1", text="hello"))
        ```
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[EventHandler]] = defaultdict(list)

    def subscribe(
        self,
        event_type: type[TEvent],
        handler: EventHandler[TEvent],
    ) -> None:
        """Subscribe a handler to a specific event type."""
        self._handlers[event_type].append(handler)
        logger.debug(
            "event_handler_subscribed",
            extra={
                "event_type": event_type.__name__,
                "handler": getattr(handler, "__name__", repr(handler)),
                "total_handlers": len(self._handlers[event_type]),
            },
        )

    def unsubscribe(
        self,
        event_type: type[TEvent],
        handler: EventHandler[TEvent],
    ) -> None:
        """Unsubscribe a handler from an event type."""
        if event_type in self._handlers:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                logger.warning(
                    "event_handler_not_found",
                    extra={
                        "event_type": event_type.__name__,
                        "handler": getattr(handler, "__name__", repr(handler)),
                    },
                )

    async def publish(self, event: PeerEvent) -> None:
        """Publish an event to every handler subscribed to its exact type.

        A failing handler is logged and the remaining handlers still run.
        """
        event_type = type(event)
        handlers = list(self._handlers.get(event_type, []))
        if not handlers:
            return

        logger.debug(
            "event_published",
            extra={
                "event_type": event_type.__name__,
                "peer_id": event.peer_id,
                "handler_count": len(handlers),
            },
        )

        for handler in handlers:
            try:
                await handler(event)
            except Exception as exc:
                logger.exception(
                    "event_handler_failed",
                    extra={
                        "event_type": event_type.__name__,
                        "handler": getattr(handler, "__name__", repr(handler)),
                        "error": str(exc),
                    },
                )

