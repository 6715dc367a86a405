from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RedisConfig(BaseModel):
    """Redis connection used as the cross-process broadcast substrate."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    url: str | None = Field(default=None, validation_alias="REDIS_URL")
    host: str = Field(default="127.0.0.1", validation_alias="REDIS_HOST")
    port: int = Field(default=6379, validation_alias="REDIS_PORT")
    db: int = Field(default=0, validation_alias="REDIS_DB")
    password: str | None = Field(default=None, validation_alias="REDIS_PASSWORD")
    prefix: str = Field(default="contention", validation_alias="REDIS_PREFIX")
    socket_timeout: float | None = Field(default=None, validation_alias="REDIS_SOCKET_TIMEOUT")

    @field_validator("port", mode="before")
    @classmethod
    def _validate_port(cls, value: Any) -> int:
        try:
            parsed = int(str(value if value not in (None, "") else 6379))
        except ValueError as exc:
            msg = "Redis port must be a valid integer"
            raise ValueError(msg) from exc
        if parsed <= 0 or parsed > 65535:
            msg = "Redis port must be between 1 and 65535"
            raise ValueError(msg)
        return parsed

    @field_validator("prefix", mode="before")
    @classmethod
    def _validate_prefix(cls, value: Any) -> str:
        prefix = str(value or "contention").strip()
        if any(ch.isspace() for ch in prefix):
            msg = "Redis prefix cannot contain whitespace"
            raise ValueError(msg)
        return prefix
