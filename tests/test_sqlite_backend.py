"""Tests for the SQLite backends behind the query channel."""

from __future__ import annotations

from pathlib import Path

import pytest

from contention.config import resolve_backend
from contention.db.backends import SqliteConnection, clear_storage, connection_factory, open_backend
from contention.db.schema import COUNTER_SQL, INCREMENT_SQL, RECONCILE_SQL, RESET_SQL
from contention.domain.exceptions import BackendConnectionError, ConfigurationError, QueryError


@pytest.mark.asyncio
class TestSqliteConnection:
    @pytest.mark.parametrize("label", ["wal", "wal-sync", "rollback", "memory-journal"])
    async def test_reset_and_increment(self, label: str, temp_db_path: str) -> None:
        connection = await open_backend(resolve_backend(label, db_path=temp_db_path))
        try:
            await connection.query(RESET_SQL)
            for stamp in (100, 101, 102):
                await connection.query(INCREMENT_SQL, {"time": stamp, "peer_id": "a"})
            counter = await connection.query(COUNTER_SQL)
        finally:
            await connection.close()

        assert counter[0].rows == [(3,)]

    async def test_journal_mode_follows_backend(self, temp_db_path: str) -> None:
        connection = await open_backend(resolve_backend("wal", db_path=temp_db_path))
        try:
            results = await connection.query("PRAGMA journal_mode;")
        finally:
            await connection.close()

        assert results[0].rows[0][0] == "wal"

    async def test_only_row_producing_statements_return_results(self, temp_db_path: str) -> None:
        connection = await open_backend(resolve_backend("wal", db_path=temp_db_path))
        try:
            results = await connection.query(
                "CREATE TABLE t (a); INSERT INTO t VALUES (1); SELECT a FROM t; SELECT 2 AS b;"
            )
        finally:
            await connection.close()

        assert len(results) == 2
        assert results[0].columns == ("a",)
        assert results[0].rows == [(1,)]
        assert results[1].column("b") == [2]

    async def test_named_params_shared_by_every_statement(self, temp_db_path: str) -> None:
        connection = await open_backend(resolve_backend("wal", db_path=temp_db_path))
        try:
            await connection.query(
                "CREATE TABLE t (a); INSERT INTO t VALUES (:v); INSERT INTO t VALUES (:v + 1);",
                {"v": 10},
            )
            results = await connection.query("SELECT a FROM t ORDER BY a;")
        finally:
            await connection.close()

        assert results[0].rows == [(10,), (11,)]

    async def test_failed_transaction_rolls_back(self, temp_db_path: str) -> None:
        connection = await open_backend(resolve_backend("wal", db_path=temp_db_path))
        try:
            await connection.query(RESET_SQL)
            with pytest.raises(QueryError) as exc_info:
                await connection.query(
                    "BEGIN IMMEDIATE;"
                    " UPDATE kv SET value = value + 1 WHERE key = 'counter';"
                    " INSERT INTO missing VALUES (1);"
                    " COMMIT;"
                )
            counter = await connection.query(COUNTER_SQL)
            # The connection is usable again after the rollback
            await connection.query(INCREMENT_SQL, {"time": 1, "peer_id": "a"})
            after = await connection.query(COUNTER_SQL)
        finally:
            await connection.close()

        assert "missing" in str(exc_info.value)
        assert exc_info.value.details["statement"].startswith("INSERT INTO missing")
        assert counter[0].rows == [(0,)]
        assert after[0].rows == [(1,)]

    async def test_reconcile_trims_rows_after_deadline(self, temp_db_path: str) -> None:
        connection = await open_backend(resolve_backend("wal", db_path=temp_db_path))
        try:
            await connection.query(RESET_SQL)
            for stamp, peer in ((10, "a"), (20, "b"), (30, "a"), (31, "b")):
                await connection.query(INCREMENT_SQL, {"time": stamp, "peer_id": peer})
            results = await connection.query(RECONCILE_SQL, {"end_time": 30})
        finally:
            await connection.close()

        assert results[0].columns == ("peer_id", "transactions")
        assert results[0].rows == [("a", 2), ("b", 1)]

    async def test_query_after_close_raises(self, temp_db_path: str) -> None:
        connection = await open_backend(resolve_backend("wal", db_path=temp_db_path))
        await connection.close()

        assert connection.closed
        with pytest.raises(QueryError):
            await connection.query("SELECT 1;")

    async def test_factory_passes_index(self, temp_db_path: str) -> None:
        factory = connection_factory(resolve_backend("wal", db_path=temp_db_path))
        connection = await factory(3)
        try:
            assert connection.index == 3
        finally:
            await connection.close()

    async def test_unopenable_path_raises_connection_error(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        backend = resolve_backend("wal", db_path=str(blocker / "db.sqlite"))

        with pytest.raises(BackendConnectionError):
            await open_backend(backend)


class TestBackendConfig:
    def test_unknown_label(self, temp_db_path: str) -> None:
        with pytest.raises(ConfigurationError, match="Bad backend: nope"):
            resolve_backend("nope", db_path=temp_db_path)

    def test_missing_path(self) -> None:
        backend = resolve_backend("wal", db_path="")

        with pytest.raises(ConfigurationError):
            SqliteConnection(backend)

    def test_explicit_args_win_over_default_path(self, temp_db_path: str) -> None:
        backend = resolve_backend("wal", db_path=temp_db_path)
        rebound = backend.with_default_path("/elsewhere.sqlite")

        assert rebound.database_path == temp_db_path

    def test_sync_preset(self, temp_db_path: str) -> None:
        assert resolve_backend("wal-sync", db_path=temp_db_path).is_async is False
        assert resolve_backend(None, db_path=temp_db_path).label == "wal"


@pytest.mark.asyncio
async def test_clear_storage_removes_side_files(temp_db_path: str) -> None:
    backend = resolve_backend("wal", db_path=temp_db_path)
    connection = await open_backend(backend)
    await connection.query(RESET_SQL)
    await connection.close()
    Path(temp_db_path + "-journal").write_text("")

    removed = clear_storage(backend)

    assert Path(temp_db_path) in removed
    assert Path(temp_db_path + "-journal") in removed
    assert not Path(temp_db_path).exists()
    assert clear_storage(backend) == []
