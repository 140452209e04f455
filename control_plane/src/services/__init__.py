"""Service layer: session lifecycle, environments, completion detection and state."""

from .config import AppConfig, get_config, reload_config
from .database import DatabaseService, init_database
from .errors import ErrorKind, SandboxError, SessionNotFoundError

__all__ = [
    "AppConfig",
    "get_config",
    "reload_config",
    "DatabaseService",
    "init_database",
    "ErrorKind",
    "SandboxError",
    "SessionNotFoundError",
]
