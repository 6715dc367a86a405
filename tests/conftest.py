"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import pytest

from contention.config import BackendConfig, resolve_backend
from contention.messaging.broadcast import InMemoryBroadcast
from contention.peer.liveness import InMemoryLockManager

# Keep developer settings out of config tests
_CONFIG_ENV = (
    "DB_PATH",
    "LOG_LEVEL",
    "LOG_BACKEND",
    "LOG_FILE",
    "RUN_DURATION_MS",
    "BACKEND",
    "BROADCAST_BACKEND",
    "LOCK_DIR",
    "LOCK_POLL_INTERVAL_SEC",
    "DB_BUSY_TIMEOUT_SEC",
    "POOL_SIZE",
    "POOL_USE_MUTEX",
    "POOL_SERIALIZE_OPEN",
    "REDIS_URL",
    "REDIS_HOST",
    "REDIS_PORT",
    "REDIS_DB",
    "REDIS_PASSWORD",
    "REDIS_PREFIX",
    "REDIS_SOCKET_TIMEOUT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in _CONFIG_ENV:
        monkeypatch.delenv(name, raising=False)
    # Settings also reads ./.env
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def temp_db_path(tmp_path) -> str:
    """Path of a database file that does not exist yet."""
    return str(tmp_path / "contention.sqlite")


@pytest.fixture
def wal_backend(temp_db_path: str) -> BackendConfig:
    return resolve_backend("wal", db_path=temp_db_path)


@pytest.fixture
def broadcast() -> InMemoryBroadcast:
    return InMemoryBroadcast()


@pytest.fixture
def locks() -> InMemoryLockManager:
    return InMemoryLockManager()
