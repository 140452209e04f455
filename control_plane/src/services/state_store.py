"""Per-scope CRDT state: update log, compacted snapshots and file contents.

``get_full_state`` is the latest snapshot merged with the updates recorded
after it. Updates within the compaction safety margin before the snapshot
are merged again as well: a write stamped just before a concurrent compaction
may commit after it, and re-applying an already folded update is a no-op for
the CRDT.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import json
import logging
import sqlite3
from typing import Iterable, Optional, Union
from uuid import uuid4

from ..models.state import CompactResult, ManifestEntry, StateSnapshot, StateUpdate, StoredFile
from .config import AppConfig, get_config
from .crdt import LWWMap
from .database import DatabaseService, utcnow_iso

logger = logging.getLogger(__name__)

Timestamp = Union[str, datetime, None]


def _as_iso(value: Timestamp) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return utcnow_iso(value)


def storage_key_for(scope_id: str, path: str) -> str:
    """Stable content key for a scope file; re-capturing a path overwrites it."""
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:24]
    return f"scopes/{scope_id}/files/{digest}"


@dataclass
class FullState:
    scope_id: str
    state: LWWMap
    snapshot_id: Optional[str] = None
    updates_applied: int = 0

    @property
    def state_hash(self) -> str:
        return self.state.state_hash()


class StateStore:
    """Durable CRDT update log and snapshots for pipeline scopes."""

    def __init__(
        self,
        db_service: Optional[DatabaseService] = None,
        config: Optional[AppConfig] = None,
    ):
        self.config = config or get_config()
        self.db = db_service or DatabaseService(self.config.database_path)

    @property
    def safety_margin(self) -> timedelta:
        return timedelta(seconds=self.config.compaction_safety_margin_s)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def push_update(
        self,
        scope_id: str,
        update_bytes: bytes,
        client_id: str,
        now: Optional[datetime] = None,
    ) -> StateUpdate:
        """Append one update. Raises ``CRDTDecodeError`` for undecodable bytes."""
        LWWMap.decode(update_bytes)
        update = StateUpdate(
            id=str(uuid4()),
            scope_id=scope_id,
            update_bytes=bytes(update_bytes),
            client_id=client_id,
            created_at=utcnow_iso(now),
        )
        conn = self.db.connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO state_updates (id, scope_id, update_bytes, client_id, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (update.id, scope_id, sqlite3.Binary(update.update_bytes), client_id, update.created_at),
                )
        finally:
            conn.close()
        logger.debug(f"Pushed {len(update_bytes)}-byte update for scope {scope_id} from {client_id}")
        return update

    def get_updates_since(self, scope_id: str, since: Timestamp = None) -> list[StateUpdate]:
        """Updates strictly after ``since`` in timestamp order (all when None)."""
        conn = self.db.connect()
        try:
            return self._updates_after(conn, scope_id, _as_iso(since))
        finally:
            conn.close()

    @staticmethod
    def _updates_after(
        conn: sqlite3.Connection, scope_id: str, after_iso: Optional[str]
    ) -> list[StateUpdate]:
        if after_iso is None:
            rows = conn.execute(
                "SELECT * FROM state_updates WHERE scope_id = ? ORDER BY created_at ASC, id ASC",
                (scope_id,),
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT * FROM state_updates
                WHERE scope_id = ? AND created_at > ?
                ORDER BY created_at ASC, id ASC
                """,
                (scope_id, after_iso),
            ).fetchall()
        return [
            StateUpdate(
                id=row["id"],
                scope_id=row["scope_id"],
                update_bytes=bytes(row["update_bytes"]),
                client_id=row["client_id"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def save_snapshot(
        self,
        scope_id: str,
        state_blob: bytes,
        manifest: Iterable[ManifestEntry] = (),
        run_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StateSnapshot:
        conn = self.db.connect()
        try:
            with conn:
                return self._insert_snapshot(conn, scope_id, state_blob, list(manifest), run_id, utcnow_iso(now))
        finally:
            conn.close()

    @staticmethod
    def _insert_snapshot(
        conn: sqlite3.Connection,
        scope_id: str,
        state_blob: bytes,
        manifest: list[ManifestEntry],
        run_id: Optional[str],
        created_at: str,
    ) -> StateSnapshot:
        snapshot = StateSnapshot(
            id=str(uuid4()),
            scope_id=scope_id,
            state_blob=bytes(state_blob),
            manifest=manifest,
            created_at=created_at,
            run_id=run_id,
        )
        conn.execute(
            """
            INSERT INTO state_snapshots (id, scope_id, run_id, state_blob, manifest_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                snapshot.id,
                scope_id,
                run_id,
                sqlite3.Binary(snapshot.state_blob),
                json.dumps([entry.model_dump(by_alias=True) for entry in manifest]),
                created_at,
            ),
        )
        return snapshot

    def get_latest_snapshot(self, scope_id: str) -> Optional[StateSnapshot]:
        conn = self.db.connect()
        try:
            return self._latest_snapshot(conn, scope_id)
        finally:
            conn.close()

    def _latest_snapshot(self, conn: sqlite3.Connection, scope_id: str) -> Optional[StateSnapshot]:
        row = conn.execute(
            """
            SELECT * FROM state_snapshots WHERE scope_id = ?
            ORDER BY created_at DESC, rowid DESC LIMIT 1
            """,
            (scope_id,),
        ).fetchone()
        return self._row_to_snapshot(row) if row else None

    def list_snapshots(self, scope_id: str, limit: int = 20) -> list[StateSnapshot]:
        conn = self.db.connect()
        try:
            rows = conn.execute(
                """
                SELECT * FROM state_snapshots WHERE scope_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT ?
                """,
                (scope_id, limit),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_snapshot(row) for row in rows]

    # ------------------------------------------------------------------
    # Full state and compaction
    # ------------------------------------------------------------------

    def get_full_state(self, scope_id: str) -> FullState:
        conn = self.db.connect()
        try:
            return self._full_state(conn, scope_id)
        finally:
            conn.close()

    def _full_state(self, conn: sqlite3.Connection, scope_id: str) -> FullState:
        snapshot = self._latest_snapshot(conn, scope_id)
        if snapshot is None:
            state = LWWMap()
            updates = self._updates_after(conn, scope_id, None)
        else:
            state = LWWMap.decode(snapshot.state_blob)
            overlap_start = datetime.fromisoformat(snapshot.created_at) - self.safety_margin
            updates = self._updates_after(conn, scope_id, utcnow_iso(overlap_start))
        for update in updates:
            state = state.merge(LWWMap.decode(update.update_bytes))
        return FullState(
            scope_id=scope_id,
            state=state,
            snapshot_id=snapshot.id if snapshot else None,
            updates_applied=len(updates),
        )

    def compact(self, scope_id: str, now: Optional[datetime] = None) -> CompactResult:
        """Fold the full state into a new snapshot and prune old updates.

        Updates older than the snapshot time minus the safety margin are
        deleted; the read, the snapshot insert and the delete share one
        write transaction.
        """
        moment = now or datetime.now(timezone.utc)
        created_at = utcnow_iso(moment)
        cutoff = utcnow_iso(moment - self.safety_margin)
        conn = self.db.connect()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                full = self._full_state(conn, scope_id)
                previous = self._latest_snapshot(conn, scope_id)
                snapshot = self._insert_snapshot(
                    conn,
                    scope_id,
                    full.state.encode(),
                    previous.manifest if previous else [],
                    None,
                    created_at,
                )
                deleted = conn.execute(
                    "DELETE FROM state_updates WHERE scope_id = ? AND created_at < ?",
                    (scope_id, cutoff),
                ).rowcount
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

        logger.info(
            f"Compacted scope {scope_id}: snapshot {snapshot.id}, "
            f"{full.updates_applied} updates folded, {deleted} deleted"
        )
        return CompactResult(
            scope_id=scope_id,
            snapshot_id=snapshot.id,
            created_at=snapshot.created_at,
            state_hash=full.state_hash,
            updates_deleted=deleted,
        )

    # ------------------------------------------------------------------
    # File contents
    # ------------------------------------------------------------------

    def put_files(self, files: Iterable[StoredFile]) -> list[StoredFile]:
        """Upsert file contents in one transaction and return them with storage keys."""
        stored: list[StoredFile] = []
        now = utcnow_iso()
        conn = self.db.connect()
        try:
            with conn:
                for item in files:
                    item.storage_key = item.storage_key or storage_key_for(item.scope_id, item.path)
                    item.updated_at = now
                    conn.execute(
                        """
                        INSERT INTO scope_files (
                            storage_key, scope_id, path, name, content, type, size, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(storage_key) DO UPDATE SET
                            content = excluded.content,
                            type = excluded.type,
                            size = excluded.size,
                            name = excluded.name,
                            updated_at = excluded.updated_at
                        """,
                        (
                            item.storage_key,
                            item.scope_id,
                            item.path,
                            item.name,
                            item.content,
                            item.type,
                            item.size,
                            now,
                        ),
                    )
                    stored.append(item)
        finally:
            conn.close()
        return stored

    def get_file(self, storage_key: str) -> Optional[StoredFile]:
        conn = self.db.connect()
        try:
            row = conn.execute(
                "SELECT * FROM scope_files WHERE storage_key = ?", (storage_key,)
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_file(row) if row else None

    def list_files(self, scope_id: str) -> list[StoredFile]:
        conn = self.db.connect()
        try:
            rows = conn.execute(
                "SELECT * FROM scope_files WHERE scope_id = ? ORDER BY path ASC", (scope_id,)
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_file(row) for row in rows]

    @staticmethod
    def _row_to_file(row: sqlite3.Row) -> StoredFile:
        return StoredFile(
            scope_id=row["scope_id"],
            path=row["path"],
            name=row["name"],
            content=row["content"],
            type=row["type"],
            size=row["size"],
            storage_key=row["storage_key"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> StateSnapshot:
        manifest = [ManifestEntry.model_validate(item) for item in json.loads(row["manifest_json"] or "[]")]
        return StateSnapshot(
            id=row["id"],
            scope_id=row["scope_id"],
            state_blob=bytes(row["state_blob"]),
            manifest=manifest,
            created_at=row["created_at"],
            run_id=row["run_id"],
        )


_state_store: Optional[StateStore] = None


def get_state_store() -> StateStore:
    global _state_store
    if _state_store is None:
        _state_store = StateStore()
    return _state_store


__all__ = ["FullState", "StateStore", "get_state_store", "storage_key_for"]
