from __future__ import annotations

from .backends import (
    DATABASE_CONFIGS,
    DEFAULT_BACKEND,
    BackendConfig,
    BackendKind,
    resolve_backend,
)
from .database import DatabaseConfig, PoolConfig
from .redis import RedisConfig
from .runtime import RuntimeConfig
from .settings import AppConfig, Settings, load_config

__all__ = [
    "DATABASE_CONFIGS",
    "DEFAULT_BACKEND",
    "AppConfig",
    "BackendConfig",
    "BackendKind",
    "DatabaseConfig",
    "PoolConfig",
    "RedisConfig",
    "RuntimeConfig",
    "Settings",
    "load_config",
    "resolve_backend",
]
