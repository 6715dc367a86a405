from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from contention.config.backends import BackendConfig, resolve_backend
from contention.config.database import DatabaseConfig, PoolConfig
from contention.config.redis import RedisConfig
from contention.config.runtime import RuntimeConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    database: DatabaseConfig
    pool: PoolConfig
    redis: RedisConfig

    def backend(self, label: str | None = None) -> BackendConfig:
        """Resolve ``label`` (or the configured default) against the runtime DB path."""
        return resolve_backend(label or self.runtime.backend, db_path=self.runtime.db_path)


class Settings(BaseSettings):
    """Application settings loaded from environment variables and ``.env``.

    Nested sections are populated by matching the ``validation_alias`` of each
    of their fields against the flat environment.
    """

    model_config = SettingsConfigDict(
        extra="ignore",
        populate_by_name=True,
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)

    @model_validator(mode="before")
    @classmethod
    def _build_nested_from_env(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Build nested config objects from flat environment variables.

        Constructor arguments take precedence over the environment.
        """
        if not isinstance(data, dict):
            return data

        result = dict(data)
        merged_source = {**dict(os.environ), **data}

        for field_name, field_info in cls.model_fields.items():
            annotation = field_info.annotation
            if not isinstance(annotation, type) or not issubclass(annotation, BaseModel):
                continue

            nested_data: dict[str, Any] = {}
            for nested_field_name, nested_field in annotation.model_fields.items():
                env_value = cls._resolve_env_value(merged_source, nested_field)
                if env_value is not None:
                    nested_data[nested_field_name] = env_value

            if nested_data:
                if field_name in result and isinstance(result[field_name], dict):
                    result[field_name] = {**nested_data, **result[field_name]}
                else:
                    result[field_name] = nested_data

        return result

    @staticmethod
    def _resolve_env_value(data: dict[str, Any], field: Any) -> Any | None:
        aliases: list[str] = []
        alias = field.validation_alias
        if isinstance(alias, AliasChoices):
            aliases.extend(choice for choice in alias.choices if isinstance(choice, str))
        elif isinstance(alias, str):
            aliases.append(alias)
        if field.alias:
            aliases.append(field.alias)

        for name in aliases:
            if name in data:
                return data[name]
        return None

    def as_app_config(self) -> AppConfig:
        return AppConfig(
            runtime=self.runtime,
            database=self.database,
            pool=self.pool,
            redis=self.redis,
        )


def load_config(**overrides: Any) -> AppConfig:
    """Load configuration from the environment and ``.env``.

    Keyword arguments override fields section by section, e.g.
    ``load_config(runtime={"db_path": "/tmp/x.sqlite"})``.

    Raises:
        RuntimeError: If configuration validation fails.
    """
    try:
        settings = Settings(**overrides)
    except ValidationError as exc:
        msg = f"Configuration validation failed: {exc}"
        raise RuntimeError(msg) from exc

    config = settings.as_app_config()
    logger.debug(
        "config_loaded",
        extra={
            "backend": config.runtime.backend,
            "broadcast_backend": config.runtime.broadcast_backend,
            "pool_size": config.pool.size,
        },
    )
    return config
