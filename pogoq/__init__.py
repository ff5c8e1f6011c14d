"""A PostgreSQL-backed message queue with topics, scheduling, retries and time-to-live."""

__version__ = "0.1.0"

__all__ = ["client", "message", "queries"]