"""Peewee ORM models over the benchmark tables, used for read-side reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import peewee
from playhouse.sqlite_ext import SqliteExtDatabase

from contention.db.schema import COUNTER_KEY

# A proxy that will be initialised with the concrete database instance at runtime.
database_proxy: peewee.Database = peewee.DatabaseProxy()


class BaseModel(peewee.Model):
    class Meta:
        database = database_proxy
        legacy_table_names = False


class SharedCounter(BaseModel):
    # Columns are untyped in the workload DDL; peewee only needs names here
    key = peewee.TextField(primary_key=True)
    value = peewee.IntegerField()

    class Meta:
        table_name = "kv"


class ContentionLogEntry(BaseModel):
    time = peewee.BigIntegerField()
    peer_id = peewee.TextField()
    count = peewee.IntegerField()

    class Meta:
        table_name = "log"
        primary_key = False


ALL_MODELS = [SharedCounter, ContentionLogEntry]


@dataclass(frozen=True)
class StoreSnapshot:
    """Counter value and per-peer log row counts at one moment."""

    counter: int | None
    counts: dict[str, int] = field(default_factory=dict)
    latest_time: int | None = None

    @property
    def total(self) -> int:
        return sum(self.counts.values())


def read_snapshot(path: str) -> StoreSnapshot:
    """Read the shared counter and per-peer log counts from the database at ``path``.

    Missing tables read as an empty snapshot.
    """
    if path != ":memory:" and not Path(path).exists():
        return StoreSnapshot(counter=None)

    database = SqliteExtDatabase(path, pragmas={"query_only": 1})
    with database.connection_context(), database.bind_ctx(ALL_MODELS):
        if not database.table_exists(SharedCounter._meta.table_name):
            return StoreSnapshot(counter=None)

        row = SharedCounter.get_or_none(SharedCounter.key == COUNTER_KEY)
        counter = int(row.value) if row is not None else None

        counts: dict[str, int] = {}
        latest_time = None
        if database.table_exists(ContentionLogEntry._meta.table_name):
            query = (
                ContentionLogEntry.select(
                    ContentionLogEntry.peer_id,
                    peewee.fn.COUNT(peewee.SQL("*")).alias("transactions"),
                )
                .group_by(ContentionLogEntry.peer_id)
                .order_by(ContentionLogEntry.peer_id)
                .tuples()
            )
            counts = {str(peer_id): int(n) for peer_id, n in query}
            latest_time = ContentionLogEntry.select(
                peewee.fn.MAX(ContentionLogEntry.time)
            ).scalar()

    return StoreSnapshot(counter=counter, counts=counts, latest_time=latest_time)
