"""SQLite database helpers for the session control plane schema."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from pathlib import Path
import sqlite3
from typing import Iterable, Optional

from .config import DEFAULT_DB_PATH, get_config

logger = logging.getLogger(__name__)

# Seconds a connection waits on a locked database before raising
BUSY_TIMEOUT_SECONDS = 30.0


def utcnow_iso(moment: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with fixed microsecond precision (sorts lexically)."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


DDL_STATEMENTS: tuple[str, ...] = (
    # Agent sessions (one agent run each)
    """
    CREATE TABLE IF NOT EXISTS agent_sessions (
        id TEXT PRIMARY KEY,
        scope_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK(status IN ('pending', 'running', 'completed', 'failed', 'cancelled')),
        sandbox_id TEXT,
        sandbox_endpoint TEXT,
        remote_session_id TEXT,
        config_json TEXT NOT NULL DEFAULT '{}',
        output_json TEXT,
        error TEXT,
        metrics_json TEXT NOT NULL DEFAULT '{}',
        last_heartbeat_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_scope ON agent_sessions(scope_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_status ON agent_sessions(status)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_sandbox ON agent_sessions(sandbox_id)",
    # At most one non-terminal session per scope
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_one_active_per_scope
    ON agent_sessions(scope_id) WHERE status IN ('pending', 'running')
    """,
    # Append-only session logs, read back in insertion order
    """
    CREATE TABLE IF NOT EXISTS session_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        message TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (session_id) REFERENCES agent_sessions(id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_session_logs_session ON session_logs(session_id, id)",
    # Warm environment pool
    """
    CREATE TABLE IF NOT EXISTS sandbox_pool (
        id TEXT PRIMARY KEY,
        template_id TEXT NOT NULL,
        sandbox_id TEXT,
        endpoint TEXT,
        status TEXT NOT NULL DEFAULT 'warming'
            CHECK(status IN ('warming', 'ready', 'claimed', 'expired')),
        created_at TEXT NOT NULL,
        ready_at TEXT,
        expires_at TEXT NOT NULL,
        claimed_at TEXT,
        claimed_by TEXT,
        expired_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_pool_template_status ON sandbox_pool(template_id, status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_pool_expires ON sandbox_pool(expires_at)",
    # Compacted CRDT snapshots plus file manifest, per scope
    """
    CREATE TABLE IF NOT EXISTS state_snapshots (
        id TEXT PRIMARY KEY,
        scope_id TEXT NOT NULL,
        run_id TEXT,
        state_blob BLOB NOT NULL,
        manifest_json TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_snapshots_scope ON state_snapshots(scope_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_snapshots_run ON state_snapshots(run_id)",
    # Incremental CRDT updates
    """
    CREATE TABLE IF NOT EXISTS state_updates (
        id TEXT PRIMARY KEY,
        scope_id TEXT NOT NULL,
        update_bytes BLOB NOT NULL,
        client_id TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_updates_scope_time ON state_updates(scope_id, created_at)",
    # File contents referenced by snapshot manifests
    """
    CREATE TABLE IF NOT EXISTS scope_files (
        storage_key TEXT PRIMARY KEY,
        scope_id TEXT NOT NULL,
        path TEXT NOT NULL,
        name TEXT NOT NULL,
        content TEXT NOT NULL,
        type TEXT NOT NULL,
        size INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL,
        UNIQUE(scope_id, path)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_scope_files_scope ON scope_files(scope_id)",
    # Durable delayed jobs (scheduler primitive)
    """
    CREATE TABLE IF NOT EXISTS scheduled_jobs (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        args_json TEXT NOT NULL DEFAULT '{}',
        run_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK(status IN ('pending', 'running', 'done', 'failed')),
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TEXT NOT NULL,
        finished_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_due ON scheduled_jobs(status, run_at)",
)

# Migration statements for existing databases
MIGRATION_STATEMENTS: tuple[str, ...] = (
    # Heartbeat column added after the first release
    "ALTER TABLE agent_sessions ADD COLUMN last_heartbeat_at TEXT",
    # Pool bookkeeping for reaping expired entries after a grace period
    "ALTER TABLE sandbox_pool ADD COLUMN expired_at TEXT",
)


class DatabaseService:
    """Manage SQLite connections and schema initialization."""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else get_config().database_path

    def _ensure_directory(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def connect(self) -> sqlite3.Connection:
        """Return a sqlite3 connection with the proper data directory created."""
        self._ensure_directory()
        conn = sqlite3.connect(self.db_path, timeout=BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self, statements: Iterable[str] | None = None) -> Path:
        """Create all schema artifacts required by the control plane."""
        conn = self.connect()
        try:
            # WAL lets the scheduler loop read while request handlers write
            conn.execute("PRAGMA journal_mode=WAL")
            with conn:  # Transactional apply of DDL
                for statement in statements or DDL_STATEMENTS:
                    conn.execute(statement)

            # Run simple column migrations for existing databases (ignore errors for already-applied migrations)
            for migration in MIGRATION_STATEMENTS:
                try:
                    conn.execute(migration)
                    conn.commit()
                except sqlite3.OperationalError:
                    pass  # Column already exists
        finally:
            conn.close()
        logger.debug(f"Database initialized at {self.db_path}")
        return self.db_path


def init_database(db_path: str | Path | None = None) -> Path:
    """Convenience wrapper used at application startup."""
    return DatabaseService(db_path).initialize()


__all__ = ["DatabaseService", "init_database", "utcnow_iso", "DEFAULT_DB_PATH"]
