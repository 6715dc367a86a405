from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DatabaseConfig(BaseModel):
    """SQLite connection settings."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    busy_timeout_sec: float = Field(
        default=30.0,
        validation_alias="DB_BUSY_TIMEOUT_SEC",
        description="How long a connection waits on a locked database before failing",
    )

    @field_validator("busy_timeout_sec", mode="before")
    @classmethod
    def _validate_timeout(cls, value: Any) -> float:
        if value in (None, ""):
            return 30.0
        try:
            parsed = float(str(value))
        except ValueError as exc:
            msg = "Database busy timeout must be a valid number"
            raise ValueError(msg) from exc
        if parsed < 0:
            msg = "Database busy timeout cannot be negative"
            raise ValueError(msg)
        if parsed > 3600:
            msg = "Database busy timeout must be 3600 seconds or less"
            raise ValueError(msg)
        return parsed


class PoolConfig(BaseModel):
    """Connection job pool sizing and serialization."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    size: int = Field(
        default=1,
        validation_alias="POOL_SIZE",
        description="Number of warm connections each peer opens",
    )
    use_mutex: bool = Field(
        default=False,
        validation_alias="POOL_USE_MUTEX",
        description="Funnel every job through one shared mutex (fully serial execution)",
    )
    serialize_open: bool = Field(
        default=False,
        validation_alias="POOL_SERIALIZE_OPEN",
        description="Open connections one at a time",
    )

    @field_validator("size", mode="before")
    @classmethod
    def _validate_size(cls, value: Any) -> int:
        try:
            parsed = int(str(value if value not in (None, "") else 1))
        except ValueError as exc:
            msg = "Pool size must be a valid integer"
            raise ValueError(msg) from exc
        if parsed < 1 or parsed > 64:
            msg = "Pool size must be between 1 and 64"
            raise ValueError(msg)
        return parsed
