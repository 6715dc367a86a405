"""Per-process peer coordinator.

A coordinator opens its connection pool, takes its liveness token, registers
with the registry and then waits for go broadcasts. Each go carries one
absolute EndTime; the coordinator runs the benchmark loop against its own
pool until then, reconciles the log and goes back to idle.

State machine::

    INITIALIZING --prepare ok--> IDLE --go--> RUNNING --done/error--> IDLE
    INITIALIZING --prepare error--> FAILED
    any --close--> CLOSED

Hosts observe the coordinator only through its ``EventBus``.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from contention.config.backends import BackendConfig, resolve_backend
from contention.config.database import PoolConfig
from contention.core.logging_utils import generate_peer_id
from contention.core.time_utils import now_ms, transcript_timestamp, utc_now
from contention.db.backends import clear_storage, connection_factory
from contention.db.job_pool import ConnectionJobPool
from contention.db.schema import RESET_SQL
from contention.domain.exceptions import InvalidStateTransitionError
from contention.messaging.broadcast import CLIENTS_CHANNEL, GO_CHANNEL, REGISTRY_CHANNEL
from contention.messaging.event_bus import EventBus
from contention.messaging.events import ClientCount, PeerEvent, PeerGo, PeerLog, PeerReady
from contention.peer.benchmark import BenchmarkLoop, BenchmarkResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from contention.config import AppConfig
    from contention.db.channel import Connection
    from contention.messaging.broadcast import Broadcast, Subscription
    from contention.peer.liveness import LockManager, Session

logger = logging.getLogger(__name__)


class PeerState(StrEnum):
    INITIALIZING = "initializing"
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"
    CLOSED = "closed"


class PeerCoordinator:
    """Coordinates one peer's participation in synchronized benchmark runs.

    Args:
        backend: Backend preset label or an already resolved ``BackendConfig``.
        broadcast: Substrate carrying the registry, clients and go channels.
        locks: Lock manager that issues the liveness token.
        db_path: Database path bound into a backend given by label.
        pool: Pool size and serialization flags.
        busy_timeout: Seconds a connection waits on a locked database.
        run_duration_ms: Default duration ``request_start`` asks for.
        clear: Delete persisted database files before opening.
        events: Bus for observable events; a private one is created if omitted.
        peer_id: Identifier override, mostly for tests.
        clock: Epoch-millisecond clock used for deadlines.
        factory: Connection factory override, mostly for tests.
    """

    def __init__(
        self,
        backend: str | BackendConfig | None,
        broadcast: Broadcast,
        locks: LockManager,
        *,
        db_path: str = "data/contention.sqlite",
        pool: PoolConfig | None = None,
        busy_timeout: float = 30.0,
        run_duration_ms: int = 10_000,
        clear: bool = False,
        events: EventBus | None = None,
        peer_id: str | None = None,
        clock: Callable[[], int] = now_ms,
        factory: Callable[[int], Awaitable[Connection]] | None = None,
    ) -> None:
        self.peer_id = peer_id or generate_peer_id()
        self.events = events or EventBus()
        self.transcript: list[str] = []
        self.results: list[BenchmarkResult] = []

        self._backend = backend
        self._broadcast = broadcast
        self._locks = locks
        self._db_path = db_path
        self._pool_config = pool or PoolConfig()
        self._busy_timeout = busy_timeout
        self._run_duration_ms = run_duration_ms
        self._clear = clear
        self._clock = clock
        self._factory = factory

        self._state = PeerState.INITIALIZING
        self._pool: ConnectionJobPool | None = None
        self._session: Session | None = None
        self._subscriptions: list[Subscription] = []
        self._listeners: list[asyncio.Task[None]] = []
        self._run_task: asyncio.Task[BenchmarkResult] | None = None
        self._run_waiters: list[asyncio.Future[BenchmarkResult]] = []

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        broadcast: Broadcast,
        locks: LockManager,
        *,
        backend: str | None = None,
        clear: bool = False,
        events: EventBus | None = None,
    ) -> PeerCoordinator:
        return cls(
            backend or config.runtime.backend,
            broadcast,
            locks,
            db_path=config.runtime.db_path,
            pool=config.pool,
            busy_timeout=config.database.busy_timeout_sec,
            run_duration_ms=config.runtime.run_duration_ms,
            clear=clear,
            events=events,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> PeerState:
        return self._state

    @property
    def pool(self) -> ConnectionJobPool | None:
        return self._pool

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def current_run(self) -> asyncio.Task[BenchmarkResult] | None:
        """Task of the run in progress or most recently finished."""
        return self._run_task

    async def prepare(self) -> None:
        """Open storage, take the liveness token and register with the registry.

        Raises:
            ConfigurationError: Unknown backend configuration.
            BackendConnectionError: The pool could not be opened.
            InvalidStateTransitionError: ``prepare`` was already called.
        """
        if self._state is not PeerState.INITIALIZING:
            msg = f"Cannot prepare a peer in state {self._state}"
            raise InvalidStateTransitionError(msg, details={"peer_id": self.peer_id})

        try:
            config = self._resolve_backend()
            if self._clear:
                await self._log("clearing storage")
                clear_storage(config)

            factory = self._factory or connection_factory(config, busy_timeout=self._busy_timeout)
            self._pool = await ConnectionJobPool.open(
                factory,
                self._pool_config.size,
                use_mutex=self._pool_config.use_mutex,
                serialize_open=self._pool_config.serialize_open,
            )

            # Held until close() or process exit; its release is the departure signal
            self._session = await self._locks.acquire(self.peer_id)

            # Subscribe before registering so no go broadcast can slip past
            go_subscription = await self._broadcast.subscribe(GO_CHANNEL)
            self._subscriptions.append(go_subscription)
            clients_subscription = await self._broadcast.subscribe(CLIENTS_CHANNEL)
            self._subscriptions.append(clients_subscription)

            await self._broadcast.publish(
                REGISTRY_CHANNEL, {"type": "register", "name": self.peer_id}
            )
        except Exception as exc:
            self._state = PeerState.FAILED
            await self._log_error(exc)
            await self._release()
            raise

        self._listeners = [
            asyncio.create_task(self._listen_go(go_subscription), name=f"{self.peer_id}-go"),
            asyncio.create_task(
                self._listen_clients(clients_subscription), name=f"{self.peer_id}-clients"
            ),
        ]
        self._state = PeerState.IDLE
        logger.info(
            "peer_ready",
            extra={"peer_id": self.peer_id, "backend": config.label, "pool_size": self._pool.size},
        )
        await self._emit(PeerReady)

    async def request_start(self, duration_ms: int | None = None) -> None:
        """Reset the shared tables and ask the registry to start a run.

        Raises:
            InvalidStateTransitionError: The peer is not idle.
            ValueError: ``duration_ms`` is not positive.
            QueryError: The reset batch failed.
        """
        if self._state is not PeerState.IDLE or self._pool is None:
            msg = f"Cannot start a run from state {self._state}"
            raise InvalidStateTransitionError(msg, details={"peer_id": self.peer_id})

        duration = self._run_duration_ms if duration_ms is None else duration_ms
        if duration <= 0:
            msg = f"Run duration must be positive, got {duration}"
            raise ValueError(msg)
        try:
            await self._pool.query(RESET_SQL)
        except Exception as exc:
            await self._log_error(exc)
            raise

        await self._broadcast.publish(REGISTRY_CHANNEL, {"type": "go", "duration": duration})
        logger.info("run_requested", extra={"peer_id": self.peer_id, "duration_ms": duration})

    async def next_run(self) -> BenchmarkResult:
        """Wait for the next run this peer completes.

        Raises whatever aborted that run.
        """
        waiter: asyncio.Future[BenchmarkResult] = asyncio.get_running_loop().create_future()
        self._run_waiters.append(waiter)
        return await waiter

    async def close(self) -> None:
        """Stop listening, abort any run, close the pool and release the token."""
        if self._state is PeerState.CLOSED:
            return
        await self._release()
        self._state = PeerState.CLOSED
        logger.info("peer_closed", extra={"peer_id": self.peer_id})

    # ------------------------------------------------------------------
    # Run handling
    # ------------------------------------------------------------------

    def _start_run(self, end_time: int) -> None:
        if self._state is not PeerState.IDLE:
            logger.warning(
                "go_ignored",
                extra={"peer_id": self.peer_id, "state": str(self._state), "end_time": end_time},
            )
            return
        self._state = PeerState.RUNNING
        self._run_task = asyncio.create_task(self._run(end_time), name=f"{self.peer_id}-run")
        self._run_task.add_done_callback(self._on_run_done)

    async def _run(self, end_time: int) -> BenchmarkResult:
        try:
            if self._pool is None:
                msg = "Peer has no open pool"
                raise InvalidStateTransitionError(msg, details={"peer_id": self.peer_id})
            await self._emit(PeerGo, end_time=end_time)
            loop = BenchmarkLoop(self._pool.query, self.peer_id, clock=self._clock)
            result = await loop.run(end_time)
        except asyncio.CancelledError:
            self._settle_waiters(cancel=True)
            raise
        except Exception as exc:
            self._state = PeerState.IDLE
            await self._log_error(exc)
            self._settle_waiters(error=exc)
            raise

        self.results.append(result)
        await self._log(result.summary())
        self._state = PeerState.IDLE
        self._settle_waiters(result=result)
        await self._emit(PeerReady)
        return result

    def _on_run_done(self, task: asyncio.Task[BenchmarkResult]) -> None:
        # The error already reached the transcript and every next_run() waiter
        if not task.cancelled():
            task.exception()

    def _settle_waiters(
        self,
        *,
        result: BenchmarkResult | None = None,
        error: BaseException | None = None,
        cancel: bool = False,
    ) -> None:
        waiters, self._run_waiters = self._run_waiters, []
        for waiter in waiters:
            if waiter.done():
                continue
            if cancel:
                waiter.cancel()
            elif error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(result)

    async def _listen_go(self, subscription: Subscription) -> None:
        async for message in subscription:
            try:
                end_time = int(message)
            except (TypeError, ValueError):
                logger.warning("go_message_invalid", extra={"payload": repr(message)})
                continue
            if end_time < 0:
                logger.warning("go_message_invalid", extra={"payload": repr(message)})
                continue
            self._start_run(end_time)

    async def _listen_clients(self, subscription: Subscription) -> None:
        async for message in subscription:
            try:
                count = int(message)
            except (TypeError, ValueError):
                logger.warning("clients_message_invalid", extra={"payload": repr(message)})
                continue
            await self._emit(ClientCount, count=count)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_backend(self) -> BackendConfig:
        if isinstance(self._backend, BackendConfig):
            return self._backend.with_default_path(self._db_path)
        return resolve_backend(self._backend, db_path=self._db_path)

    async def _release(self) -> None:
        listeners, self._listeners = self._listeners, []
        for task in listeners:
            task.cancel()
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
            listeners.append(self._run_task)
        await asyncio.gather(*listeners, return_exceptions=True)

        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await subscription.close()

        if self._pool is not None:
            await self._pool.close()
        if self._session is not None:
            self._session.close()

    async def _emit(self, event_type: type[PeerEvent], **fields: Any) -> None:
        await self.events.publish(event_type(occurred_at=utc_now(), peer_id=self.peer_id, **fields))

    async def _log(self, text: str) -> None:
        moment = utc_now()
        line = f"{transcript_timestamp(moment)} {text}"
        self.transcript.append(line)
        await self.events.publish(PeerLog(occurred_at=moment, peer_id=self.peer_id, text=line))

    async def _log_error(self, exc: BaseException) -> None:
        logger.error(
            "peer_error",
            exc_info=exc,
            extra={"peer_id": self.peer_id, "state": str(self._state), "error": str(exc)},
        )
        await self._log("".join(traceback.format_exception(exc)).rstrip())
