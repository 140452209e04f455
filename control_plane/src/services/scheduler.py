"""Durable delayed-job scheduler.

Long waits are never held in a coroutine. A step that needs to "check again
in N seconds" calls ``run_after(N, name, args)``; the job row survives process
restarts and is picked up by whichever process next runs ``run_due_jobs``.
Each due job is claimed with a guarded UPDATE so it runs at most once.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from .config import get_config
from .database import DatabaseService, utcnow_iso

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class ScheduledJob:
    id: str
    name: str
    args: dict[str, Any]
    run_at: str
    status: str
    attempts: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "args": self.args,
            "run_at": self.run_at,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


class JobScheduler:
    """Run named async handlers after a delay, persisted in ``scheduled_jobs``."""

    def __init__(
        self,
        db_service: Optional[DatabaseService] = None,
        tick_s: Optional[float] = None,
    ):
        self.db = db_service or DatabaseService()
        self.tick_s = tick_s if tick_s is not None else get_config().scheduler_tick_s
        self._handlers: dict[str, JobHandler] = {}
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    def register(self, name: str, handler: JobHandler) -> None:
        if name in self._handlers:
            logger.debug(f"Replacing handler for job {name}")
        self._handlers[name] = handler

    def run_after(self, delay_s: float, name: str, args: Optional[dict[str, Any]] = None) -> str:
        """Persist a job to run ``delay_s`` seconds from now and return its id."""
        job_id = str(uuid4())
        now = datetime.now(timezone.utc)
        run_at = utcnow_iso(now + timedelta(seconds=max(delay_s, 0.0)))
        conn = self.db.connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO scheduled_jobs (id, name, args_json, run_at, status, created_at)
                    VALUES (?, ?, ?, ?, 'pending', ?)
                    """,
                    (job_id, name, json.dumps(args or {}), run_at, utcnow_iso(now)),
                )
        finally:
            conn.close()
        logger.debug(f"Scheduled {name} ({job_id}) in {delay_s:.1f}s")
        return job_id

    def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        conn = self.db.connect()
        try:
            row = conn.execute("SELECT * FROM scheduled_jobs WHERE id = ?", (job_id,)).fetchone()
        finally:
            conn.close()
        return self._row_to_job(row) if row else None

    def list_jobs(self, name: Optional[str] = None, status: Optional[str] = None) -> list[ScheduledJob]:
        query = "SELECT * FROM scheduled_jobs WHERE 1 = 1"
        params: list[Any] = []
        if name is not None:
            query += " AND name = ?"
            params.append(name)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY run_at ASC"
        conn = self.db.connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [self._row_to_job(row) for row in rows]

    def recover_interrupted(self) -> int:
        """Return jobs left ``running`` by a dead process to ``pending``."""
        conn = self.db.connect()
        try:
            with conn:
                cursor = conn.execute(
                    "UPDATE scheduled_jobs SET status = 'pending' WHERE status = 'running'"
                )
            recovered = cursor.rowcount
        finally:
            conn.close()
        if recovered:
            logger.warning(f"Re-queued {recovered} interrupted scheduled jobs")
        return recovered

    def _claim(self, job_id: str) -> bool:
        conn = self.db.connect()
        try:
            with conn:
                cursor = conn.execute(
                    """
                    UPDATE scheduled_jobs
                    SET status = 'running', attempts = attempts + 1
                    WHERE id = ? AND status = 'pending'
                    """,
                    (job_id,),
                )
            return cursor.rowcount > 0
        finally:
            conn.close()

    def _finish(self, job_id: str, status: str, error: Optional[str] = None) -> None:
        conn = self.db.connect()
        try:
            with conn:
                conn.execute(
                    """
                    UPDATE scheduled_jobs
                    SET status = ?, last_error = ?, finished_at = ?
                    WHERE id = ?
                    """,
                    (status, error, utcnow_iso(), job_id),
                )
        finally:
            conn.close()

    async def _execute(self, job: ScheduledJob) -> bool:
        handler = self._handlers.get(job.name)
        if handler is None:
            logger.error(f"No handler registered for job {job.name} ({job.id})")
            self._finish(job.id, "failed", f"no handler registered for {job.name}")
            return False
        try:
            await handler(job.args)
        except Exception as e:
            logger.exception(f"Job {job.name} ({job.id}) failed: {e}")
            self._finish(job.id, "failed", str(e))
            return False
        self._finish(job.id, "done")
        return True

    async def run_due_jobs(self, now: Optional[datetime] = None) -> int:
        """Run every pending job whose ``run_at`` has passed. Returns jobs executed."""
        cutoff = utcnow_iso(now)
        conn = self.db.connect()
        try:
            rows = conn.execute(
                """
                SELECT * FROM scheduled_jobs
                WHERE status = 'pending' AND run_at <= ?
                ORDER BY run_at ASC
                """,
                (cutoff,),
            ).fetchall()
        finally:
            conn.close()

        claimed = [job for job in map(self._row_to_job, rows) if self._claim(job.id)]
        if not claimed:
            return 0
        await asyncio.gather(*(self._execute(job) for job in claimed))
        return len(claimed)

    async def run_forever(self) -> None:
        logger.info(f"Scheduler loop started (tick {self.tick_s}s)")
        self._stopping = False
        while not self._stopping:
            try:
                await self.run_due_jobs()
            except Exception as e:
                # A broken tick must not stop the loop that drives every watchdog
                logger.exception(f"Scheduler tick failed: {e}")
            await asyncio.sleep(self.tick_s)
        logger.info("Scheduler loop stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self.recover_interrupted()
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    @staticmethod
    def _row_to_job(row) -> ScheduledJob:
        return ScheduledJob(
            id=row["id"],
            name=row["name"],
            args=json.loads(row["args_json"] or "{}"),
            run_at=row["run_at"],
            status=row["status"],
            attempts=row["attempts"],
            last_error=row["last_error"],
        )


_scheduler: Optional[JobScheduler] = None


def get_scheduler() -> JobScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = JobScheduler()
    return _scheduler


__all__ = ["JobScheduler", "ScheduledJob", "JobHandler", "get_scheduler"]
