"""Storage backend selection.

Backends form a closed set keyed by ``BackendKind``. ``DATABASE_CONFIGS`` holds
the named presets a peer can be started with.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from contention.domain.exceptions import ConfigurationError


class BackendKind(StrEnum):
    """SQLite journaling strategies the benchmark can contend on."""

    SQLITE_WAL = "sqlite-wal"
    SQLITE_ROLLBACK = "sqlite-rollback"
    SQLITE_MEMORY_JOURNAL = "sqlite-memory-journal"


class BackendConfig(BaseModel):
    """Opaque backend selection handed to the connection factory."""

    model_config = ConfigDict(frozen=True)

    label: str
    kind: BackendKind
    args: tuple[Any, ...] = Field(default=())
    is_async: bool = True

    @field_validator("label", mode="before")
    @classmethod
    def _validate_label(cls, value: Any) -> str:
        label = str(value or "").strip()
        if not label:
            msg = "Backend label cannot be empty"
            raise ValueError(msg)
        return label

    @field_validator("args", mode="before")
    @classmethod
    def _coerce_args(cls, value: Any) -> tuple[Any, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        return tuple(value)

    def with_default_path(self, db_path: str) -> BackendConfig:
        """Return a copy whose first argument is the database path."""
        if self.args:
            return self
        return self.model_copy(update={"args": (db_path,)})

    @property
    def database_path(self) -> str:
        if not self.args or not str(self.args[0]).strip():
            msg = f"Backend {self.label!r} has no database path argument"
            raise ConfigurationError(msg, details={"label": self.label})
        return str(self.args[0])


DATABASE_CONFIGS: dict[str, BackendConfig] = {
    config.label: config
    for config in (
        BackendConfig(label="wal", kind=BackendKind.SQLITE_WAL, is_async=True),
        BackendConfig(label="wal-sync", kind=BackendKind.SQLITE_WAL, is_async=False),
        BackendConfig(label="rollback", kind=BackendKind.SQLITE_ROLLBACK, is_async=True),
        BackendConfig(
            label="memory-journal", kind=BackendKind.SQLITE_MEMORY_JOURNAL, is_async=True
        ),
    )
}

DEFAULT_BACKEND = "wal"


def resolve_backend(label: str | None, *, db_path: str) -> BackendConfig:
    """Look up a backend preset by label and bind it to ``db_path``.

    Raises:
        ConfigurationError: If ``label`` names no known preset.
    """
    name = (label or DEFAULT_BACKEND).strip()
    config = DATABASE_CONFIGS.get(name)
    if config is None:
        msg = f"Bad backend: {name}"
        raise ConfigurationError(
            msg, details={"label": name, "known": sorted(DATABASE_CONFIGS)}
        )
    return config.with_default_path(db_path)
