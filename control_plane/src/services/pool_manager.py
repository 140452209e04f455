"""Warm pool of pre-provisioned environments.

Entries move ``warming -> ready -> claimed``; ``ready`` and ``claimed``
entries past ``expires_at`` become ``expired`` and are removed after a grace
period. Claiming is a compare-and-set on ``status = 'ready'`` so concurrent
spawns can never share an environment.

A warm entry is a provisioned environment with no agent server running: the
server needs the claiming session's credentials and must start after that
session's prior-stage state has been restored, so ``spawn`` starts it.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
import sqlite3
from typing import Any, Optional
from uuid import uuid4

from ..models.pool import MaintainResult, PoolEntry, PoolStats, PoolStatus, SweepResult
from .config import AppConfig, get_config
from .database import DatabaseService, utcnow_iso
from .provisioner import EnvironmentProvisioner, environment_vars, get_provisioner, safe_kill
from .scheduler import JobScheduler

logger = logging.getLogger(__name__)

MAINTAIN_JOB = "pool.maintain"

# Candidates tried by one claim before giving up to on-demand provisioning
CLAIM_ATTEMPTS = 5


class PoolManager:
    """Claim, warm and reap pooled environments."""

    def __init__(
        self,
        db_service: Optional[DatabaseService] = None,
        provisioner: Optional[EnvironmentProvisioner] = None,
        config: Optional[AppConfig] = None,
        scheduler: Optional[JobScheduler] = None,
    ):
        self.config = config or get_config()
        self.db = db_service or DatabaseService(self.config.database_path)
        self._provisioner = provisioner
        self.scheduler = scheduler

    @property
    def provisioner(self) -> EnvironmentProvisioner:
        if self._provisioner is None:
            self._provisioner = get_provisioner(self.config)
        return self._provisioner

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def claim(
        self,
        template_id: str,
        claimant: str,
        now: Optional[datetime] = None,
    ) -> Optional[PoolEntry]:
        """Claim the oldest unexpired ``ready`` entry, or return None."""
        now_iso = utcnow_iso(now)
        conn = self.db.connect()
        try:
            for _ in range(CLAIM_ATTEMPTS):
                row = conn.execute(
                    """
                    SELECT id FROM sandbox_pool
                    WHERE template_id = ? AND status = 'ready' AND expires_at > ?
                    ORDER BY created_at ASC
                    LIMIT 1
                    """,
                    (template_id, now_iso),
                ).fetchone()
                if row is None:
                    return None
                with conn:
                    cursor = conn.execute(
                        """
                        UPDATE sandbox_pool
                        SET status = 'claimed', claimed_at = ?, claimed_by = ?
                        WHERE id = ? AND status = 'ready' AND expires_at > ?
                        """,
                        (now_iso, claimant, row["id"], now_iso),
                    )
                if cursor.rowcount > 0:
                    logger.info(f"Pool entry {row['id']} claimed by {claimant}")
                    return self._get(conn, row["id"])
                logger.debug(f"Lost claim race for pool entry {row['id']}")
            return None
        finally:
            conn.close()

    def discard(self, entry_id: str) -> Optional[str]:
        """Delete an entry whose environment is unusable. Returns its sandbox id."""
        conn = self.db.connect()
        try:
            with conn:
                row = conn.execute(
                    "SELECT sandbox_id FROM sandbox_pool WHERE id = ?", (entry_id,)
                ).fetchone()
                conn.execute("DELETE FROM sandbox_pool WHERE id = ?", (entry_id,))
        finally:
            conn.close()
        if row is None:
            return None
        logger.info(f"Discarded pool entry {entry_id}")
        return row["sandbox_id"]

    def release_claimed_by(self, claimant: str) -> int:
        """Drop entries claimed by a finished session; its environment is already gone."""
        conn = self.db.connect()
        try:
            with conn:
                cursor = conn.execute(
                    "DELETE FROM sandbox_pool WHERE claimed_by = ? AND status IN ('claimed', 'expired')",
                    (claimant,),
                )
            released = cursor.rowcount
        finally:
            conn.close()
        if released:
            logger.debug(f"Released {released} pool entries claimed by {claimant}")
        return released

    # ------------------------------------------------------------------
    # Warming
    # ------------------------------------------------------------------

    def begin_warming(self, template_id: str, now: Optional[datetime] = None) -> str:
        entry_id = str(uuid4())
        moment = now or datetime.now(timezone.utc)
        expires_at = moment + timedelta(seconds=self.config.pool_ttl_s)
        conn = self.db.connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO sandbox_pool (id, template_id, status, created_at, expires_at)
                    VALUES (?, ?, 'warming', ?, ?)
                    """,
                    (entry_id, template_id, utcnow_iso(moment), utcnow_iso(expires_at)),
                )
        finally:
            conn.close()
        return entry_id

    def attach_sandbox(self, entry_id: str, sandbox_id: str) -> bool:
        """Record the environment of a warming entry so a sweep can kill it."""
        return self._update(
            "UPDATE sandbox_pool SET sandbox_id = ? WHERE id = ? AND status = 'warming'",
            (sandbox_id, entry_id),
        )

    def mark_ready(
        self,
        entry_id: str,
        sandbox_id: str,
        endpoint: Optional[str],
        now: Optional[datetime] = None,
    ) -> bool:
        moment = now or datetime.now(timezone.utc)
        expires_at = moment + timedelta(seconds=self.config.pool_ttl_s)
        return self._update(
            """
            UPDATE sandbox_pool
            SET status = 'ready', sandbox_id = ?, endpoint = ?, ready_at = ?, expires_at = ?
            WHERE id = ? AND status = 'warming'
            """,
            (sandbox_id, endpoint, utcnow_iso(moment), utcnow_iso(expires_at), entry_id),
        )

    async def _warm_one(self, template_id: str) -> bool:
        entry_id = self.begin_warming(template_id)
        handle = None
        try:
            handle = await asyncio.wait_for(
                self.provisioner.create(
                    template_id,
                    envs=environment_vars(self.config),
                    timeout_s=self.config.sandbox_timeout_s,
                ),
                timeout=self.config.provision_timeout_s,
            )
            self.attach_sandbox(entry_id, handle.id)
        except Exception as e:
            logger.warning(f"Warming pool entry {entry_id} failed: {e}")
            self.discard(entry_id)
            await safe_kill(self.provisioner, handle)
            return False

        if not self.mark_ready(entry_id, handle.id, handle.endpoint):
            # Swept while warming
            await safe_kill(self.provisioner, handle)
            return False
        logger.info(f"Pool entry {entry_id} ready ({handle.id})")
        return True

    async def replenish(self, template_id: Optional[str] = None) -> tuple[int, int]:
        """Warm enough environments to reach the target. Returns (warmed, failed)."""
        template_id = template_id or self.config.sandbox_template
        counts = self._counts(template_id)
        deficit = self.config.pool_target_size - counts.get("ready", 0) - counts.get("warming", 0)
        if deficit <= 0:
            return 0, 0
        logger.info(f"Warming {deficit} environment(s) for template {template_id}")
        results = await asyncio.gather(*(self._warm_one(template_id) for _ in range(deficit)))
        warmed = sum(1 for ok in results if ok)
        return warmed, len(results) - warmed

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Expire lapsed entries, drop stale warming rows and reap old expired rows.

        Only environments that were never claimed are killed on reap; a
        claimed environment belongs to its session and is killed by the
        session's own cleanup.
        """
        moment = now or datetime.now(timezone.utc)
        now_iso = utcnow_iso(moment)
        grace_cutoff = utcnow_iso(moment - timedelta(seconds=self.config.pool_reap_grace_s))

        conn = self.db.connect()
        try:
            with conn:
                expired = conn.execute(
                    """
                    UPDATE sandbox_pool SET status = 'expired', expired_at = ?
                    WHERE status IN ('ready', 'claimed') AND expires_at < ?
                    """,
                    (now_iso, now_iso),
                ).rowcount
                stale_warming = conn.execute(
                    "SELECT id, sandbox_id FROM sandbox_pool WHERE status = 'warming' AND expires_at < ?",
                    (now_iso,),
                ).fetchall()
                reaped = conn.execute(
                    """
                    SELECT id, sandbox_id, claimed_by FROM sandbox_pool
                    WHERE status = 'expired' AND expired_at <= ?
                    """,
                    (grace_cutoff,),
                ).fetchall()
                removed_ids = [row["id"] for row in (*stale_warming, *reaped)]
                conn.executemany(
                    "DELETE FROM sandbox_pool WHERE id = ?", [(entry_id,) for entry_id in removed_ids]
                )
        finally:
            conn.close()

        to_kill = [row["sandbox_id"] for row in stale_warming if row["sandbox_id"]]
        to_kill += [row["sandbox_id"] for row in reaped if row["sandbox_id"] and not row["claimed_by"]]
        killed = 0
        for sandbox_id in to_kill:
            if await safe_kill(self.provisioner, sandbox_id):
                killed += 1

        result = SweepResult(expired=expired, removed=len(removed_ids), killed=killed)
        if expired or removed_ids:
            logger.info(f"Pool sweep: {result.model_dump()}")
        return result

    async def maintain(self, template_id: Optional[str] = None) -> MaintainResult:
        sweep = await self.sweep()
        warmed, failed = await self.replenish(template_id)
        return MaintainResult(sweep=sweep, warmed=warmed, warm_failures=failed)

    async def maintain_job(self, args: dict[str, Any]) -> None:
        """Scheduler handler: maintain, then schedule the next run."""
        try:
            await self.maintain(args.get("template_id"))
        finally:
            if self.scheduler is not None and self.config.pool_target_size > 0:
                self.scheduler.run_after(self.config.pool_maintain_interval_s, MAINTAIN_JOB, args)

    def ensure_maintenance_scheduled(self) -> Optional[str]:
        """Schedule the maintenance loop unless a pending run already exists."""
        if self.scheduler is None or self.config.pool_target_size <= 0:
            return None
        if self.scheduler.list_jobs(name=MAINTAIN_JOB, status="pending"):
            return None
        return self.scheduler.run_after(0, MAINTAIN_JOB, {"template_id": self.config.sandbox_template})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, entry_id: str) -> Optional[PoolEntry]:
        conn = self.db.connect()
        try:
            return self._get(conn, entry_id)
        finally:
            conn.close()

    def list_entries(
        self,
        template_id: Optional[str] = None,
        status: Optional[PoolStatus] = None,
    ) -> list[PoolEntry]:
        query = "SELECT * FROM sandbox_pool WHERE 1 = 1"
        params: list[Any] = []
        if template_id is not None:
            query += " AND template_id = ?"
            params.append(template_id)
        if status is not None:
            query += " AND status = ?"
            params.append(PoolStatus(status).value)
        query += " ORDER BY created_at ASC"
        conn = self.db.connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [PoolEntry(**dict(row)) for row in rows]

    def stats(self, template_id: Optional[str] = None) -> PoolStats:
        template_id = template_id or self.config.sandbox_template
        counts = {status.value: 0 for status in PoolStatus}
        counts.update(self._counts(template_id))
        return PoolStats(
            template_id=template_id,
            target_size=self.config.pool_target_size,
            counts=counts,
        )

    def _counts(self, template_id: str) -> dict[str, int]:
        conn = self.db.connect()
        try:
            rows = conn.execute(
                """
                SELECT status, COUNT(*) AS n FROM sandbox_pool
                WHERE template_id = ?
                GROUP BY status
                """,
                (template_id,),
            ).fetchall()
        finally:
            conn.close()
        return {row["status"]: row["n"] for row in rows}

    @staticmethod
    def _get(conn: sqlite3.Connection, entry_id: str) -> Optional[PoolEntry]:
        row = conn.execute("SELECT * FROM sandbox_pool WHERE id = ?", (entry_id,)).fetchone()
        return PoolEntry(**dict(row)) if row else None

    def _update(self, sql: str, params: tuple[Any, ...]) -> bool:
        conn = self.db.connect()
        try:
            with conn:
                cursor = conn.execute(sql, params)
            return cursor.rowcount > 0
        finally:
            conn.close()


_pool_manager: Optional[PoolManager] = None


def get_pool_manager() -> PoolManager:
    global _pool_manager
    if _pool_manager is None:
        from .scheduler import get_scheduler

        _pool_manager = PoolManager(scheduler=get_scheduler())
    return _pool_manager


__all__ = ["PoolManager", "get_pool_manager", "MAINTAIN_JOB"]
