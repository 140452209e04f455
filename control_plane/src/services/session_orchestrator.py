"""Entry points used by the API: start and cancel sessions, wire scheduler jobs."""

from __future__ import annotations

import logging
from typing import Optional

from ..models.session import AgentSession, SessionRequest, SpawnResult
from .completion_detector import CompletionDetector
from .config import AppConfig, get_config
from .pool_manager import MAINTAIN_JOB, PoolManager
from .provisioner import EnvironmentProvisioner, get_provisioner, safe_kill
from .scheduler import JobScheduler
from .session_store import SessionStore
from .spawn_controller import SpawnController

logger = logging.getLogger(__name__)


class SessionOrchestrator:
    """One active session per scope; a new request supersedes the running one."""

    def __init__(
        self,
        session_store: SessionStore,
        spawn_controller: SpawnController,
        detector: CompletionDetector,
        pool_manager: PoolManager,
        scheduler: JobScheduler,
        provisioner: Optional[EnvironmentProvisioner] = None,
        config: Optional[AppConfig] = None,
    ):
        self.config = config or get_config()
        self.sessions = session_store
        self.spawner = spawn_controller
        self.detector = detector
        self.pool = pool_manager
        self.scheduler = scheduler
        self._provisioner = provisioner

    @property
    def provisioner(self) -> EnvironmentProvisioner:
        if self._provisioner is None:
            self._provisioner = get_provisioner(self.config)
        return self._provisioner

    def register_jobs(self) -> None:
        self.detector.register_jobs(self.scheduler)
        self.scheduler.register(MAINTAIN_JOB, self.pool.maintain_job)

    async def start_session(self, request: SessionRequest) -> SpawnResult:
        """Cancel any active session of the scope, create a new one and spawn it.

        Raises:
            ActiveSessionExistsError: another request re-activated the scope in between.
        """
        active = self.sessions.get_active_for_scope(request.scope_id)
        if active is not None:
            logger.info(f"Scope {request.scope_id} has active session {active.id}; cancelling it")
            await self.cancel_session(active.id, reason="Superseded by a new session")

        session_id = self.sessions.create(
            request.scope_id, config=request.model_dump(exclude_none=True)
        )
        self.sessions.append_logs(session_id, ["⏳ Session created"])
        return await self.spawner.spawn(session_id, request)

    async def cancel_session(self, session_id: str, reason: str = "Cancelled by user") -> AgentSession:
        """Cancel a pending or running session and kill its environment.

        Raises:
            SessionNotFoundError: no such session.
        """
        self.sessions.require(session_id)
        if self.sessions.cancel(session_id, reason):
            self.sessions.append_logs(session_id, [f"🛑 {reason}"])
            # Re-read: the environment may have been attached after the first read
            session = self.sessions.require(session_id)
            await safe_kill(self.provisioner, session.sandbox_id)
            self.pool.release_claimed_by(session_id)
        return self.sessions.require(session_id)


_orchestrator: Optional[SessionOrchestrator] = None


def get_orchestrator() -> SessionOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        from .completion_detector import get_completion_detector
        from .pool_manager import get_pool_manager
        from .scheduler import get_scheduler
        from .session_store import get_session_store
        from .spawn_controller import get_spawn_controller

        _orchestrator = SessionOrchestrator(
            session_store=get_session_store(),
            spawn_controller=get_spawn_controller(),
            detector=get_completion_detector(),
            pool_manager=get_pool_manager(),
            scheduler=get_scheduler(),
        )
    return _orchestrator


__all__ = ["SessionOrchestrator", "get_orchestrator"]
