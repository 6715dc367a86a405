"""Query channel contract shared by backends, the job pool and the benchmark."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Rows produced by one statement of a batch."""

    columns: tuple[str, ...]
    rows: list[tuple[Any, ...]] = field(default_factory=list)

    def column(self, name: str) -> list[Any]:
        index = self.columns.index(name)
        return [row[index] for row in self.rows]


class QueryChannel(Protocol):
    """Anything that executes a statement batch and returns its result sets."""

    async def query(
        self, sql: str, params: Mapping[str, Any] | None = None
    ) -> list[QueryResult]: ...


class Connection(QueryChannel, Protocol):
    """A query channel backed by one opened connection."""

    index: int

    async def close(self) -> None: ...


def split_statements(script: str) -> Iterator[str]:
    """Yield complete SQL statements from ``script`` in order.

    A statement ends at a ``;`` that SQLite itself considers terminal, so
    semicolons inside string literals or comments do not split. Trailing text
    without a terminator is yielded as a final statement.
    """
    buffer: list[str] = []
    for char in script:
        buffer.append(char)
        if char == ";":
            candidate = "".join(buffer)
            if sqlite3.complete_statement(candidate):
                statement = candidate.strip()
                buffer.clear()
                if statement != ";":
                    yield statement

    tail = "".join(buffer).strip()
    if tail and not _is_comment_only(tail):
        yield tail


def _is_comment_only(text: str) -> bool:
    lines = [line.strip() for line in text.splitlines()]
    return all(not line or line.startswith("--") for line in lines)
