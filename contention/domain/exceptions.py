"""Domain-specific exceptions.

Every error raised by the benchmark core derives from ``ContentionError`` so
callers can catch the whole family at once. Errors are logged where they occur
and then re-raised; nothing in this package swallows them.
"""


class ContentionError(Exception):
    """Base exception for all benchmark errors."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(ContentionError):
    """Raised when the backend configuration is unknown or incomplete."""

    pass


class BackendConnectionError(ContentionError):
    """Raised when a backend connection cannot be opened."""

    pass


class QueryError(ContentionError):
    """Raised when a statement or transaction fails."""

    pass


class PoolJobError(QueryError):
    """Raised when a query routed to a pool job fails."""

    def __init__(self, message: str, job_index: int, details: dict | None = None) -> None:
        super().__init__(message, details)
        self.job_index = job_index


class InvalidStateTransitionError(ContentionError):
    """Raised when a peer is asked to do something its current state forbids."""

    pass
