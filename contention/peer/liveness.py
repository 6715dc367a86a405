"""Exclusive, long-held liveness tokens.

A peer acquires a token named by its peer id and keeps it for its whole
lifetime. The registry acquires the same name: it only succeeds once the peer
has gone, which is how disappearance is detected.

``InMemoryLockManager`` serves peers that share one event loop.
``FileLockManager`` uses ``flock`` on a per-name lock file, so the operating
system releases the token when the holding process exits.
"""

from __future__ import annotations

import asyncio
import atexit
import fcntl
import logging
import os
import re
from collections import defaultdict, deque
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


def is_valid_name(name: str) -> bool:
    """Whether ``name`` can name a liveness token."""
    return bool(_SAFE_NAME.match(name))


def _check_name(name: str) -> str:
    if not is_valid_name(name):
        msg = f"Invalid lock name: {name!r}"
        raise ValueError(msg)
    return name


class Session:
    """Handle for one held token.

    ``close()`` releases the token; it is idempotent. When ``teardown`` is set,
    the release is also registered to run at interpreter exit.
    """

    def __init__(
        self,
        name: str,
        release: Callable[[], None],
        *,
        teardown: bool = False,
    ) -> None:
        self.name = name
        self._release = release
        self._teardown = teardown
        self.closed = False
        if teardown:
            atexit.register(self.close)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._teardown:
            atexit.unregister(self.close)
        self._release()
        logger.debug("liveness_session_closed", extra={"lock_name": self.name})

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "held"
        return f"<Session {self.name!r} {state}>"


class LockManager(Protocol):
    async def acquire(self, name: str) -> Session: ...

    def try_acquire(self, name: str) -> Session | None: ...


class InMemoryLockManager:
    """Named exclusive locks for tasks on one event loop, granted FIFO."""

    def __init__(self) -> None:
        self._holders: set[str] = set()
        self._waiters: dict[str, deque[asyncio.Future[None]]] = defaultdict(deque)

    def held(self, name: str) -> bool:
        return name in self._holders

    def try_acquire(self, name: str) -> Session | None:
        _check_name(name)
        if name in self._holders:
            return None
        self._holders.add(name)
        return Session(name, lambda: self._release(name))

    async def acquire(self, name: str) -> Session:
        """Wait until ``name`` is free, then hold it until the session closes."""
        session = self.try_acquire(name)
        if session is not None:
            return session

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters[name].append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Ownership was handed over just as we were cancelled
                self._release(name)
            raise
        return Session(name, lambda: self._release(name))

    def _release(self, name: str) -> None:
        waiters = self._waiters.get(name)
        while waiters:
            waiter = waiters.popleft()
            if not waiter.done():
                # Hand ownership straight to the next waiter
                waiter.set_result(None)
                return
        self._waiters.pop(name, None)
        self._holders.discard(name)


class FileLockManager:
    """Cross-process tokens backed by ``flock`` on ``<lock_dir>/<name>.lock``.

    Blocking acquisition polls with ``LOCK_NB`` so waiting stays cancellable.
    """

    def __init__(self, lock_dir: str | Path, *, poll_interval: float = 0.25) -> None:
        self.lock_dir = Path(lock_dir)
        self.poll_interval = poll_interval

    def _path(self, name: str) -> Path:
        return self.lock_dir / f"{_check_name(name)}.lock"

    def try_acquire(self, name: str) -> Session | None:
        path = self._path(name)
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return None
        except OSError:
            os.close(fd)
            raise

        def _release() -> None:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

        return Session(name, _release, teardown=True)

    async def acquire(self, name: str) -> Session:
        """Wait until no process holds ``name``, then hold it."""
        while True:
            session = self.try_acquire(name)
            if session is not None:
                return session
            await asyncio.sleep(self.poll_interval)
