"""Peer registry: counts connected peers and turns run requests into an EndTime.

Peers send ``{"type": "register", "name": peer_id}`` on the registry channel
while holding their liveness token. The registry counts them, broadcasts the
count on the clients channel, then waits to acquire each peer's token; that
only succeeds once the peer is gone, at which point the count drops again.

``{"type": "go", "duration": ms}`` makes the registry pick one absolute
EndTime and broadcast it on the go channel.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from contention.core.time_utils import now_ms
from contention.messaging.broadcast import CLIENTS_CHANNEL, GO_CHANNEL, REGISTRY_CHANNEL
from contention.peer.liveness import is_valid_name

if TYPE_CHECKING:
    from collections.abc import Callable

    from contention.messaging.broadcast import Broadcast, Subscription
    from contention.peer.liveness import LockManager

logger = logging.getLogger(__name__)


class PeerRegistry:
    def __init__(
        self,
        broadcast: Broadcast,
        locks: LockManager,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._broadcast = broadcast
        self._locks = locks
        self._clock = clock
        self._peers: set[str] = set()
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._subscription: Subscription | None = None
        self._serve_task: asyncio.Task[None] | None = None

    @property
    def count(self) -> int:
        return len(self._peers)

    @property
    def peers(self) -> frozenset[str]:
        return frozenset(self._peers)

    async def start(self) -> None:
        """Subscribe to the registry channel and serve it in the background."""
        if self._serve_task is not None:
            return
        self._subscription = await self._broadcast.subscribe(REGISTRY_CHANNEL)
        self._serve_task = asyncio.create_task(self._serve(), name="peer-registry")
        logger.info("registry_started")

    async def serve(self) -> None:
        """Start and block until the registry is stopped."""
        await self.start()
        if self._serve_task is not None:
            await self._serve_task

    async def _serve(self) -> None:
        if self._subscription is None:
            return
        async for message in self._subscription:
            await self.handle(message)

    async def handle(self, message: Any) -> None:
        """Apply one registry-channel message."""
        if not isinstance(message, dict):
            logger.warning("registry_message_ignored", extra={"payload": repr(message)})
            return

        kind = message.get("type")
        if kind == "register":
            await self._register(str(message.get("name") or ""))
        elif kind == "go":
            await self._go(message.get("duration"))
        else:
            logger.warning("registry_message_unknown", extra={"type": kind})

    async def _register(self, name: str) -> None:
        if not is_valid_name(name) or name in self._peers:
            logger.warning("registry_register_ignored", extra={"peer_id": name})
            return
        self._peers.add(name)
        logger.info("peer_registered", extra={"peer_id": name, "count": self.count})
        await self._broadcast.publish(CLIENTS_CHANNEL, self.count)
        self._watchers[name] = asyncio.create_task(self._watch(name), name=f"watch-{name}")

    async def _watch(self, name: str) -> None:
        try:
            session = await self._locks.acquire(name)
        except Exception:
            # Peers that cannot be watched are dropped
            logger.exception("peer_watch_failed", extra={"peer_id": name})
        else:
            session.close()
            logger.info("peer_departed", extra={"peer_id": name, "count": self.count - 1})
        self._watchers.pop(name, None)
        self._peers.discard(name)
        await self._broadcast.publish(CLIENTS_CHANNEL, self.count)

    async def _go(self, duration: Any) -> int | None:
        try:
            duration_ms = int(duration)
        except (TypeError, ValueError):
            logger.warning("registry_go_invalid", extra={"duration": repr(duration)})
            return None
        if duration_ms <= 0:
            logger.warning("registry_go_invalid", extra={"duration": duration_ms})
            return None

        end_time = self._clock() + duration_ms
        receivers = await self._broadcast.publish(GO_CHANNEL, end_time)
        logger.info(
            "run_started",
            extra={"end_time": end_time, "duration_ms": duration_ms, "receivers": receivers},
        )
        return end_time

    async def stop(self) -> None:
        tasks = [task for task in (self._serve_task, *self._watchers.values()) if task]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._serve_task = None
        self._watchers.clear()
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        logger.info("registry_stopped")
