from contention.domain.exceptions import (
    BackendConnectionError,
    ConfigurationError,
    ContentionError,
    InvalidStateTransitionError,
    PoolJobError,
    QueryError,
)

__all__ = [
    "BackendConnectionError",
    "ConfigurationError",
    "ContentionError",
    "InvalidStateTransitionError",
    "PoolJobError",
    "QueryError",
]
