"""Multi-peer SQLite write-contention benchmark and round-robin connection pool."""

__version__ = "0.1.0"
