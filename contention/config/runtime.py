from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from contention.config.backends import DATABASE_CONFIGS, DEFAULT_BACKEND


class RuntimeConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    db_path: str = Field(default="data/contention.sqlite", validation_alias="DB_PATH")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_backend: str = Field(default="loguru", validation_alias="LOG_BACKEND")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")
    run_duration_ms: int = Field(default=10_000, validation_alias="RUN_DURATION_MS")
    backend: str = Field(default=DEFAULT_BACKEND, validation_alias="BACKEND")
    broadcast_backend: str = Field(default="memory", validation_alias="BROADCAST_BACKEND")
    lock_dir: str = Field(default="data/locks", validation_alias="LOCK_DIR")
    lock_poll_interval_sec: float = Field(default=0.25, validation_alias="LOCK_POLL_INTERVAL_SEC")

    @field_validator("log_level", mode="before")
    @classmethod
    def _validate_log_level(cls, value: Any) -> str:
        log_level = str(value or "INFO").upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if log_level not in valid_levels:
            msg = f"Invalid log level: {value}. Must be one of {valid_levels}"
            raise ValueError(msg)
        return log_level

    @field_validator("log_backend", mode="before")
    @classmethod
    def _validate_log_backend(cls, value: Any) -> str:
        kind = str(value or "loguru").lower().strip()
        if kind not in {"loguru", "stdlib"}:
            msg = f"Invalid log backend: {kind}. Must be 'loguru' or 'stdlib'"
            raise ValueError(msg)
        return kind

    @field_validator("log_file", mode="before")
    @classmethod
    def _validate_log_file(cls, value: Any) -> str | None:
        if value in (None, ""):
            return None
        return str(value).strip() or None

    @field_validator("backend", mode="before")
    @classmethod
    def _validate_backend(cls, value: Any) -> str:
        label = str(value or DEFAULT_BACKEND).strip()
        if label not in DATABASE_CONFIGS:
            msg = f"Invalid backend: {label}. Must be one of {sorted(DATABASE_CONFIGS)}"
            raise ValueError(msg)
        return label

    @field_validator("broadcast_backend", mode="before")
    @classmethod
    def _validate_broadcast(cls, value: Any) -> str:
        kind = str(value or "memory").lower().strip()
        if kind not in {"memory", "redis"}:
            msg = f"Invalid broadcast backend: {kind}. Must be 'memory' or 'redis'"
            raise ValueError(msg)
        return kind

    @field_validator("run_duration_ms", mode="before")
    @classmethod
    def _validate_duration(cls, value: Any) -> int:
        try:
            parsed = int(str(value if value not in (None, "") else 10_000))
        except ValueError as exc:
            msg = "Run duration must be a valid integer"
            raise ValueError(msg) from exc
        if parsed <= 0:
            msg = "Run duration must be positive"
            raise ValueError(msg)
        if parsed > 3_600_000:
            msg = "Run duration must be one hour or less"
            raise ValueError(msg)
        return parsed

    @field_validator("db_path", "lock_dir", mode="before")
    @classmethod
    def _validate_path(cls, value: Any, info: ValidationInfo) -> str:
        default = cls.model_fields[info.field_name].default
        trimmed = str(value if value not in (None, "") else default).strip()
        if "\x00" in trimmed:
            msg = f"{info.field_name.replace('_', ' ')} contains invalid characters"
            raise ValueError(msg)
        return trimmed

    @field_validator("lock_poll_interval_sec", mode="before")
    @classmethod
    def _validate_poll_interval(cls, value: Any) -> float:
        try:
            parsed = float(str(value if value not in (None, "") else 0.25))
        except ValueError as exc:
            msg = "Lock poll interval must be a valid number"
            raise ValueError(msg) from exc
        if parsed <= 0 or parsed > 60:
            msg = "Lock poll interval must be between 0 and 60 seconds"
            raise ValueError(msg)
        return parsed
