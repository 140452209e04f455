"""Durable session store backed by SQLite.

Status changes are single guarded UPDATE statements. A mutator that finds the
session already terminal matches zero rows and returns ``False``; callers use
that result to decide whether they won a race (and therefore own follow-up
work such as state capture).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Iterable, Optional
from uuid import uuid4

from ..models.session import AgentSession, SessionLogEntry, SessionStatus
from .database import DatabaseService, utcnow_iso
from .errors import ActiveSessionExistsError, ErrorKind, SessionNotFoundError, format_error

logger = logging.getLogger(__name__)

_ACTIVE_SQL = "('pending', 'running')"


class SessionStore:
    """Create, transition and inspect agent sessions."""

    def __init__(self, db_service: Optional[DatabaseService] = None):
        self.db = db_service or DatabaseService()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, scope_id: str, config: Optional[dict[str, Any]] = None) -> str:
        """Insert a ``pending`` session for the scope and return its id.

        Raises:
            ActiveSessionExistsError: the scope already has a pending/running session.
        """
        session_id = str(uuid4())
        now = utcnow_iso()
        conn = self.db.connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO agent_sessions (
                        id, scope_id, status, config_json, metrics_json,
                        created_at, updated_at
                    ) VALUES (?, ?, 'pending', ?, '{}', ?, ?)
                    """,
                    (session_id, scope_id, json.dumps(config or {}), now, now),
                )
        except sqlite3.IntegrityError as e:
            existing = self._active_id(conn, scope_id)
            logger.info(f"Refusing second active session for scope {scope_id} (active: {existing})")
            raise ActiveSessionExistsError(scope_id, existing) from e
        finally:
            conn.close()

        logger.info(f"Created session {session_id} for scope {scope_id}")
        return session_id

    @staticmethod
    def _active_id(conn: sqlite3.Connection, scope_id: str) -> Optional[str]:
        row = conn.execute(
            f"SELECT id FROM agent_sessions WHERE scope_id = ? AND status IN {_ACTIVE_SQL}",
            (scope_id,),
        ).fetchone()
        return row["id"] if row else None

    # ------------------------------------------------------------------
    # Guarded transitions
    # ------------------------------------------------------------------

    def _guarded_update(self, sql: str, params: tuple[Any, ...]) -> bool:
        conn = self.db.connect()
        try:
            with conn:
                cursor = conn.execute(sql, params)
            return cursor.rowcount > 0
        except Exception as e:
            logger.error(f"Session update failed: {e}")
            raise
        finally:
            conn.close()

    def attach_environment(self, session_id: str, sandbox_id: str, endpoint: Optional[str]) -> bool:
        """Record the environment on a still-pending session so cancel can find it."""
        now = utcnow_iso()
        return self._guarded_update(
            """
            UPDATE agent_sessions
            SET sandbox_id = ?, sandbox_endpoint = ?, updated_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (sandbox_id, endpoint, now, session_id),
        )

    def mark_running(
        self,
        session_id: str,
        sandbox_id: str,
        endpoint: Optional[str],
        remote_session_id: Optional[str],
    ) -> bool:
        """Move ``pending`` to ``running``. Returns False if the session left ``pending``."""
        now = utcnow_iso()
        updated = self._guarded_update(
            """
            UPDATE agent_sessions
            SET status = 'running', sandbox_id = ?, sandbox_endpoint = ?,
                remote_session_id = ?, last_heartbeat_at = ?, updated_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (sandbox_id, endpoint, remote_session_id, now, now, session_id),
        )
        if updated:
            logger.info(f"Session {session_id} running in {sandbox_id}")
        return updated

    def complete(self, session_id: str, output: dict[str, Any]) -> bool:
        """Only a running session can complete; a pending one has no agent yet."""
        now = utcnow_iso()
        updated = self._guarded_update(
            """
            UPDATE agent_sessions
            SET status = 'completed', output_json = ?, completed_at = ?, updated_at = ?
            WHERE id = ? AND status = 'running'
            """,
            (json.dumps(output), now, now, session_id),
        )
        if updated:
            logger.info(f"Session {session_id} completed")
        else:
            logger.debug(f"complete() ignored for session {session_id}: not running")
        return updated

    def fail(self, session_id: str, error: str, output: Optional[dict[str, Any]] = None) -> bool:
        """Mark the session failed. ``output`` keeps partial results when there are any."""
        now = utcnow_iso()
        updated = self._guarded_update(
            f"""
            UPDATE agent_sessions
            SET status = 'failed', error = ?, output_json = COALESCE(?, output_json),
                completed_at = ?, updated_at = ?
            WHERE id = ? AND status IN {_ACTIVE_SQL}
            """,
            (error, json.dumps(output) if output is not None else None, now, now, session_id),
        )
        if updated:
            logger.warning(f"Session {session_id} failed: {error}")
        else:
            logger.debug(f"fail() ignored for session {session_id}: already terminal")
        return updated

    def cancel(self, session_id: str, reason: str = "Cancelled by user") -> bool:
        now = utcnow_iso()
        updated = self._guarded_update(
            f"""
            UPDATE agent_sessions
            SET status = 'cancelled', error = ?, completed_at = ?, updated_at = ?
            WHERE id = ? AND status IN {_ACTIVE_SQL}
            """,
            (format_error(ErrorKind.CANCELLED, reason), now, now, session_id),
        )
        if updated:
            logger.info(f"Session {session_id} cancelled")
        return updated

    # ------------------------------------------------------------------
    # Appends and patches that never touch status
    # ------------------------------------------------------------------

    def append_logs(self, session_id: str, lines: Iterable[str]) -> int:
        """Append log lines in order. Returns how many were written."""
        rows = [(session_id, line, utcnow_iso()) for line in lines if line]
        if not rows:
            return 0
        conn = self.db.connect()
        try:
            with conn:
                conn.executemany(
                    "INSERT INTO session_logs (session_id, message, created_at) VALUES (?, ?, ?)",
                    rows,
                )
            return len(rows)
        except Exception as e:
            logger.error(f"Failed to append logs for session {session_id}: {e}")
            raise
        finally:
            conn.close()

    def touch_heartbeat(self, session_id: str) -> bool:
        now = utcnow_iso()
        return self._guarded_update(
            f"""
            UPDATE agent_sessions SET last_heartbeat_at = ?
            WHERE id = ? AND status IN {_ACTIVE_SQL}
            """,
            (now, session_id),
        )

    def record_metrics(self, session_id: str, metrics: dict[str, Any]) -> bool:
        """Merge ``metrics`` into the stored metrics object in one statement."""
        return self._guarded_update(
            """
            UPDATE agent_sessions
            SET metrics_json = json_patch(COALESCE(metrics_json, '{}'), ?)
            WHERE id = ?
            """,
            (json.dumps(metrics), session_id),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[AgentSession]:
        conn = self.db.connect()
        try:
            row = conn.execute("SELECT * FROM agent_sessions WHERE id = ?", (session_id,)).fetchone()
        finally:
            conn.close()
        return self._row_to_session(row) if row else None

    def require(self, session_id: str) -> AgentSession:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def get_status(self, session_id: str) -> Optional[SessionStatus]:
        conn = self.db.connect()
        try:
            row = conn.execute(
                "SELECT status FROM agent_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        finally:
            conn.close()
        return SessionStatus(row["status"]) if row else None

    def get_active_for_scope(self, scope_id: str) -> Optional[AgentSession]:
        conn = self.db.connect()
        try:
            row = conn.execute(
                f"SELECT * FROM agent_sessions WHERE scope_id = ? AND status IN {_ACTIVE_SQL}",
                (scope_id,),
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_session(row) if row else None

    def list_for_scope(self, scope_id: str, limit: int = 50) -> list[AgentSession]:
        conn = self.db.connect()
        try:
            rows = conn.execute(
                """
                SELECT * FROM agent_sessions
                WHERE scope_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (scope_id, limit),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_session(row) for row in rows]

    def get_logs(self, session_id: str, limit: Optional[int] = None) -> list[SessionLogEntry]:
        """Return log entries in insertion order (the newest ``limit`` when given)."""
        conn = self.db.connect()
        try:
            if limit is None:
                rows = conn.execute(
                    "SELECT * FROM session_logs WHERE session_id = ? ORDER BY id ASC",
                    (session_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM (
                        SELECT * FROM session_logs WHERE session_id = ?
                        ORDER BY id DESC LIMIT ?
                    ) ORDER BY id ASC
                    """,
                    (session_id, limit),
                ).fetchall()
        finally:
            conn.close()
        return [
            SessionLogEntry(
                id=row["id"],
                session_id=row["session_id"],
                message=row["message"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> AgentSession:
        return AgentSession(
            id=row["id"],
            scope_id=row["scope_id"],
            status=SessionStatus(row["status"]),
            sandbox_id=row["sandbox_id"],
            sandbox_endpoint=row["sandbox_endpoint"],
            remote_session_id=row["remote_session_id"],
            config=json.loads(row["config_json"] or "{}"),
            output=json.loads(row["output_json"]) if row["output_json"] else None,
            error=row["error"],
            metrics=json.loads(row["metrics_json"] or "{}"),
            last_heartbeat_at=row["last_heartbeat_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )


_session_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    """Return the process-wide session store."""
    global _session_store
    if _session_store is None:
        _session_store = SessionStore()
    return _session_store


__all__ = ["SessionStore", "get_session_store"]
