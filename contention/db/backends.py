"""SQLite backends behind the query channel contract.

Each ``BackendKind`` maps to a journaling mode; the rest of the package only
ever sees ``SqliteConnection.query`` and ``close``.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any

import peewee
from playhouse.sqlite_ext import SqliteExtDatabase

from contention.config.backends import BackendConfig, BackendKind
from contention.db.channel import QueryResult, split_statements
from contention.domain.exceptions import BackendConnectionError, ConfigurationError, QueryError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

logger = logging.getLogger(__name__)

JOURNAL_MODES: dict[BackendKind, str] = {
    BackendKind.SQLITE_WAL: "wal",
    BackendKind.SQLITE_ROLLBACK: "delete",
    BackendKind.SQLITE_MEMORY_JOURNAL: "memory",
}

STORAGE_SUFFIXES = ("", "-wal", "-shm", "-journal")


class SqliteConnection:
    """One peewee-managed SQLite connection speaking the query channel contract.

    Statements run on a worker thread when the backend is asynchronous and
    inline on the event loop otherwise. Each batch is a single blocking call
    either way, so no transaction is ever held open across an ``await``.
    """

    def __init__(
        self,
        config: BackendConfig,
        index: int = 0,
        *,
        busy_timeout: float = 30.0,
    ) -> None:
        journal_mode = JOURNAL_MODES.get(config.kind)
        if journal_mode is None:
            msg = f"Unsupported backend kind: {config.kind}"
            raise ConfigurationError(msg, details={"label": config.label})

        self.config = config
        self.index = index
        self.path = config.database_path
        self._database = SqliteExtDatabase(
            self.path,
            pragmas={
                "journal_mode": journal_mode,
                "synchronous": "normal",
            },
            timeout=busy_timeout,
            # One connection shared by whichever worker thread runs the batch
            thread_safe=False,
            check_same_thread=False,
        )
        self._conn: sqlite3.Connection | None = None

    @property
    def database(self) -> peewee.SqliteDatabase:
        """Access the underlying Peewee database instance."""
        return self._database

    @property
    def closed(self) -> bool:
        return self._conn is None

    async def open(self) -> SqliteConnection:
        await self._call(self._open_sync)
        logger.debug(
            "backend_opened",
            extra={"label": self.config.label, "index": self.index, "path": self.path},
        )
        return self

    async def query(
        self, sql: str, params: Mapping[str, Any] | None = None
    ) -> list[QueryResult]:
        """Execute every statement in ``sql`` with the same named parameters.

        Raises:
            QueryError: If any statement fails. An open transaction is rolled back.
        """
        return await self._call(self._execute_batch, sql, dict(params or {}))

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._call(self._database.close)
        self._conn = None
        logger.debug("backend_closed", extra={"label": self.config.label, "index": self.index})

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        if self.config.is_async:
            return await asyncio.to_thread(func, *args)
        return func(*args)

    def _open_sync(self) -> None:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._database.connect(reuse_if_open=True)
        self._conn = self._database.connection()

    def _execute_batch(self, sql: str, params: dict[str, Any]) -> list[QueryResult]:
        conn = self._conn
        if conn is None:
            msg = f"Connection {self.index} is closed"
            raise QueryError(msg, details={"label": self.config.label})

        results: list[QueryResult] = []
        statement = ""
        try:
            for statement in split_statements(sql):
                cursor = conn.execute(statement, params)
                try:
                    if cursor.description:
                        columns = tuple(column[0] for column in cursor.description)
                        results.append(
                            QueryResult(columns=columns, rows=[tuple(r) for r in cursor])
                        )
                finally:
                    cursor.close()
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise QueryError(
                str(exc),
                details={
                    "statement": statement,
                    "index": self.index,
                    "error_type": type(exc).__name__,
                },
            ) from exc
        return results


async def open_backend(
    config: BackendConfig, index: int = 0, *, busy_timeout: float = 30.0
) -> SqliteConnection:
    """Open connection ``index`` to the database ``config`` selects.

    Raises:
        ConfigurationError: If the backend configuration is incomplete.
        BackendConnectionError: If the database cannot be opened.
    """
    connection = SqliteConnection(config, index, busy_timeout=busy_timeout)
    try:
        return await connection.open()
    except (peewee.PeeweeException, sqlite3.Error, OSError) as exc:
        logger.exception(
            "backend_open_failed",
            extra={"label": config.label, "index": index, "error": str(exc)},
        )
        msg = f"Failed to open {config.label} connection {index}: {exc}"
        raise BackendConnectionError(msg, details={"label": config.label, "index": index}) from exc


def connection_factory(
    config: BackendConfig, *, busy_timeout: float = 30.0
) -> Callable[[int], Awaitable[SqliteConnection]]:
    """Bind ``config`` into the ``factory(index)`` shape the job pool expects."""

    async def factory(index: int) -> SqliteConnection:
        return await open_backend(config, index, busy_timeout=busy_timeout)

    return factory


def clear_storage(config: BackendConfig) -> list[Path]:
    """Delete the database file and its journal/WAL side files.

    Returns:
        The paths that existed and were removed.
    """
    base = config.database_path
    removed: list[Path] = []
    for suffix in STORAGE_SUFFIXES:
        candidate = Path(base + suffix)
        if candidate.exists():
            candidate.unlink()
            removed.append(candidate)
    logger.info(
        "storage_cleared",
        extra={"label": config.label, "removed": [str(path) for path in removed]},
    )
    return removed
