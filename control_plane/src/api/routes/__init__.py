"""HTTP API route handlers."""

from . import callbacks, pool, sessions, state

__all__ = ["sessions", "callbacks", "state", "pool"]
