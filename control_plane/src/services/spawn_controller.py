"""Non-blocking spawn of an agent session.

``spawn`` obtains an environment (warm pool first, then on demand), restores
prior-stage state, starts the agent server, configures it, dispatches the
prompt asynchronously and returns as soon as the agent server has accepted
the work. Completion is observed later by the channels in
``completion_detector``.

Any failure before the session is running is fatal: the session is marked
failed, the environment is killed and a claimed pool entry is discarded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional, Type

from ..models.agent_server import RemoteSession
from ..models.pool import PoolEntry
from ..models.session import SessionRequest, SessionStatus, SpawnResult
from .agent_server_client import (
    AgentServerClient,
    AgentServerError,
    ClientFactory,
    default_client_factory,
    launch_agent_server,
    wait_until_healthy,
)
from .completion_detector import POLL_JOB, WATCHDOG_JOB
from .config import AppConfig, get_config
from .database import utcnow_iso
from .errors import (
    AuthConfigFailure,
    PromptDispatchFailure,
    ProvisioningFailure,
    SandboxError,
    ServerStartupTimeout,
    SessionCreationFailure,
)
from .metrics import SpawnMetrics
from .pool_manager import PoolManager
from .provisioner import (
    EnvironmentHandle,
    EnvironmentProvisioner,
    environment_vars,
    get_provisioner,
    safe_kill,
)
from .sandbox_tokens import SandboxTokenService
from .scheduler import JobScheduler
from .session_store import SessionStore
from .state_continuity import StateContinuityManager

logger = logging.getLogger(__name__)

REMOTE_SESSION_TITLE = "Agent Task"


def build_prompt_text(request: SessionRequest) -> str:
    text = request.prompt
    if request.allowed_tools:
        text += f"\n\n## ALLOWED TOOLS\nYou may ONLY use: {', '.join(request.allowed_tools)}"
    return text


def build_prompt_body(request: SessionRequest, config: AppConfig) -> dict[str, Any]:
    """Body of ``POST /session/{id}/prompt_async`` with model routing options."""
    max_tokens = request.max_tokens or config.agent_max_tokens
    body: dict[str, Any] = {
        "model": {
            "providerID": config.llm_provider,
            "modelID": request.model or config.agent_model,
        },
        "route": "fallback",
        "models": list(request.fallback_models or config.agent_fallback_models),
        "parts": [{"type": "text", "text": build_prompt_text(request)}],
        "max_tokens": max_tokens,
        "maxTokens": max_tokens,
    }
    if request.provider_preferences:
        body["provider"] = request.provider_preferences
    if request.system_prompt:
        body["system"] = request.system_prompt
    return body


class SpawnController:
    """Bring up an environment and hand the task to its agent server."""

    def __init__(
        self,
        session_store: Optional[SessionStore] = None,
        pool_manager: Optional[PoolManager] = None,
        provisioner: Optional[EnvironmentProvisioner] = None,
        scheduler: Optional[JobScheduler] = None,
        continuity: Optional[StateContinuityManager] = None,
        token_service: Optional[SandboxTokenService] = None,
        config: Optional[AppConfig] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.config = config or get_config()
        self.sessions = session_store or SessionStore()
        self._provisioner = provisioner
        self.scheduler = scheduler or JobScheduler()
        self.pool = pool_manager or PoolManager(
            provisioner=provisioner, config=self.config, scheduler=self.scheduler
        )
        self.continuity = continuity or StateContinuityManager(config=self.config)
        self.tokens = token_service or SandboxTokenService(self.config)
        self.client_factory = client_factory or default_client_factory

    @property
    def provisioner(self) -> EnvironmentProvisioner:
        if self._provisioner is None:
            self._provisioner = get_provisioner(self.config)
        return self._provisioner

    async def spawn(self, session_id: str, request: SessionRequest) -> SpawnResult:
        """Dispatch ``request`` for a pending session and return without waiting for the agent."""
        metrics = SpawnMetrics()
        template_id = request.template_id or self.config.sandbox_template
        token = self.tokens.mint(session_id, request.scope_id)
        handle: Optional[EnvironmentHandle] = None
        pool_entry: Optional[PoolEntry] = None
        client: Optional[AgentServerClient] = None
        stage: Type[SandboxError] = ProvisioningFailure

        try:
            with metrics.measure("environment"):
                handle, pool_entry = await self._obtain_environment(
                    session_id, request.scope_id, template_id, token
                )
            metrics.from_pool = pool_entry is not None
            if not self.sessions.attach_environment(session_id, handle.id, handle.endpoint):
                return await self._abandon(session_id, handle, pool_entry, metrics)
            self.sessions.append_logs(
                session_id,
                [f"🖥️ Environment {handle.id} ready ({'warm pool' if pool_entry else 'provisioned'})"],
            )
            client = self.client_factory(handle.endpoint)

            # Files and state must be in place before the agent server starts
            await self._restore(session_id, request, handle, metrics)

            stage = ServerStartupTimeout
            with metrics.measure("server_start"):
                await launch_agent_server(
                    handle,
                    self.config,
                    envs=environment_vars(
                        self.config,
                        session_id=session_id,
                        scope_id=request.scope_id,
                        sandbox_token=token,
                    ),
                )
                metrics.health_checks = await wait_until_healthy(
                    client, self.config.server_startup_timeout_s
                )

            stage = SessionCreationFailure
            with metrics.measure("session_setup"):
                remote = await self._configure(client)

            if not self.sessions.mark_running(session_id, handle.id, handle.endpoint, remote.id):
                return await self._abandon(session_id, handle, pool_entry, metrics)

            stage = PromptDispatchFailure
            with metrics.measure("prompt_dispatch"):
                await self._dispatch(client, remote.id, request)

            await self._start_forwarder(handle, session_id, request.scope_id, remote.id, token)
            self._schedule_channels(session_id, handle.id)
        except SandboxError as e:
            return await self._abort(session_id, e, handle, pool_entry, metrics)
        except Exception as e:
            logger.exception(f"[spawn:{session_id}] unexpected error: {e}")
            return await self._abort(session_id, stage(str(e)), handle, pool_entry, metrics)
        finally:
            if client is not None:
                await client.close()

        self.sessions.record_metrics(session_id, {"spawn": metrics.to_dict()})
        self.sessions.append_logs(session_id, ["🚀 Task dispatched"])
        logger.info(
            f"[spawn:{session_id}] ✅ dispatched in {metrics.total_ms:.0f}ms "
            f"(pool={metrics.from_pool}, steps={metrics.durations_ms})"
        )
        return SpawnResult(
            session_id=session_id,
            status="dispatched",
            sandbox_id=handle.id,
            remote_session_id=remote.id,
            from_pool=metrics.from_pool,
            metrics=metrics.to_dict(),
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _obtain_environment(
        self,
        session_id: str,
        scope_id: str,
        template_id: str,
        token: Optional[str],
    ) -> tuple[EnvironmentHandle, Optional[PoolEntry]]:
        """Claimed pool environment if one is usable, else a fresh one, within the provisioning bound."""
        deadline = time.monotonic() + self.config.provision_timeout_s

        entry = self.pool.claim(template_id, claimant=session_id)
        if entry is not None and entry.sandbox_id:
            try:
                handle = await asyncio.wait_for(
                    self._connect_claimed(entry.sandbox_id),
                    timeout=max(deadline - time.monotonic(), 0.1),
                )
                return handle, entry
            except Exception as e:
                logger.warning(f"[spawn:{session_id}] pooled environment {entry.sandbox_id} unusable: {e}")
                self.pool.discard(entry.id)
                await safe_kill(self.provisioner, entry.sandbox_id)
        elif entry is not None:
            self.pool.discard(entry.id)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ProvisioningFailure(
                f"no environment within {self.config.provision_timeout_s:.0f}s"
            )
        envs = environment_vars(
            self.config, session_id=session_id, scope_id=scope_id, sandbox_token=token
        )
        try:
            handle = await asyncio.wait_for(
                self.provisioner.create(template_id, envs=envs, timeout_s=self.config.sandbox_timeout_s),
                timeout=remaining,
            )
        except asyncio.TimeoutError as e:
            raise ProvisioningFailure(
                f"no environment within {self.config.provision_timeout_s:.0f}s"
            ) from e
        except Exception as e:
            raise ProvisioningFailure(str(e)) from e
        return handle, None

    async def _connect_claimed(self, sandbox_id: str) -> EnvironmentHandle:
        """Connect to a claimed environment and restart its provider lifetime from now."""
        handle = await self.provisioner.connect(sandbox_id)
        await self.provisioner.set_timeout(sandbox_id, self.config.sandbox_timeout_s)
        return handle

    async def _restore(
        self,
        session_id: str,
        request: SessionRequest,
        handle: EnvironmentHandle,
        metrics: SpawnMetrics,
    ) -> None:
        if not request.prior_scope_id:
            return
        with metrics.measure("restore"):
            result = await self.continuity.restore(request.prior_scope_id, handle)
        metrics.restored_files = result.files_written
        metrics.restore_failures = result.files_failed
        if result.files_written or result.state_written:
            self.sessions.append_logs(
                session_id,
                [f"📂 Restored {result.files_written} files from {request.prior_scope_id}"],
            )
        if result.files_failed:
            self.sessions.append_logs(
                session_id, [f"⚠️ {result.files_failed} files could not be restored"]
            )

    async def _configure(self, client: AgentServerClient) -> RemoteSession:
        """Set provider credentials and create the remote session concurrently."""

        async def configure_auth() -> None:
            if not self.config.llm_api_key:
                logger.warning("No LLM API key configured; agent server keeps its own credentials")
                return
            try:
                await client.set_auth(self.config.llm_provider, self.config.llm_api_key)
            except AgentServerError as e:
                raise AuthConfigFailure(e.message, detail={"status_code": e.status_code}) from e

        async def create_remote_session() -> RemoteSession:
            try:
                return await client.create_session(REMOTE_SESSION_TITLE)
            except AgentServerError as e:
                raise SessionCreationFailure(e.message, detail={"status_code": e.status_code}) from e

        auth_result, session_result = await asyncio.gather(
            configure_auth(), create_remote_session(), return_exceptions=True
        )
        for outcome in (auth_result, session_result):
            if isinstance(outcome, BaseException):
                raise outcome
        return session_result

    async def _dispatch(self, client: AgentServerClient, remote_session_id: str, request: SessionRequest) -> None:
        body = build_prompt_body(request, self.config)
        prompt_chars = len(body["parts"][0]["text"])
        logger.info(f"[Prompt] {prompt_chars} chars, ~{round(prompt_chars / 4)} tokens estimated")
        try:
            await client.prompt_async(remote_session_id, body)
        except AgentServerError as e:
            raise PromptDispatchFailure(e.message, detail={"status_code": e.status_code}) from e

    async def _start_forwarder(
        self,
        handle: EnvironmentHandle,
        session_id: str,
        scope_id: str,
        remote_session_id: str,
        token: Optional[str],
    ) -> None:
        """Start the push channel; started after dispatch so it never sees a pre-task idle."""
        command = self.config.forwarder_command.format(
            home=self.config.agent_home,
            remote_session_id=remote_session_id,
            session_id=session_id,
        )
        envs = environment_vars(self.config, session_id=session_id, scope_id=scope_id, sandbox_token=token)
        envs["SANDBOX_ID"] = handle.id
        envs["REMOTE_SESSION_ID"] = remote_session_id
        try:
            await handle.run_background(command, envs=envs)
        except Exception as e:
            logger.warning(f"[spawn:{session_id}] event forwarder failed to start: {e}")
            self.sessions.append_logs(
                session_id, ["⚠️ Event forwarder failed to start; relying on polling"]
            )
            return
        logger.info(f"[spawn:{session_id}] started event forwarder for {remote_session_id}")

    def _schedule_channels(self, session_id: str, sandbox_id: str) -> None:
        started_at = utcnow_iso()
        self.scheduler.run_after(
            self.config.watchdog_timeout_s,
            WATCHDOG_JOB,
            {"session_id": session_id, "sandbox_id": sandbox_id, "started_at": started_at},
        )
        self.scheduler.run_after(
            self.config.poll_interval_s,
            POLL_JOB,
            {
                "session_id": session_id,
                "poll_count": 1,
                "last_parts_count": 0,
                "transport_failures": 0,
                "started_at": started_at,
            },
        )

    # ------------------------------------------------------------------
    # Failure paths
    # ------------------------------------------------------------------

    async def _release(self, handle: Optional[EnvironmentHandle], pool_entry: Optional[PoolEntry]) -> None:
        await safe_kill(self.provisioner, handle)
        if pool_entry is not None:
            self.pool.discard(pool_entry.id)

    async def _abort(
        self,
        session_id: str,
        error: SandboxError,
        handle: Optional[EnvironmentHandle],
        pool_entry: Optional[PoolEntry],
        metrics: SpawnMetrics,
    ) -> SpawnResult:
        message = str(error)
        logger.error(f"[spawn:{session_id}] ❌ {message}")
        failed = self.sessions.fail(session_id, message)
        if failed:
            self.sessions.append_logs(session_id, [f"❌ {message}"])
        await self._release(handle, pool_entry)
        self.sessions.record_metrics(session_id, {"spawn": metrics.to_dict()})

        status = "failed"
        if not failed and self.sessions.get_status(session_id) == SessionStatus.CANCELLED:
            status = "cancelled"
        return SpawnResult(
            session_id=session_id,
            status=status,
            sandbox_id=handle.id if handle else None,
            from_pool=metrics.from_pool,
            error=message,
            metrics=metrics.to_dict(),
        )

    async def _abandon(
        self,
        session_id: str,
        handle: EnvironmentHandle,
        pool_entry: Optional[PoolEntry],
        metrics: SpawnMetrics,
    ) -> SpawnResult:
        """The session was cancelled while spawning; drop the environment."""
        logger.info(f"[spawn:{session_id}] session cancelled during spawn, killing {handle.id}")
        await self._release(handle, pool_entry)
        self.sessions.record_metrics(session_id, {"spawn": metrics.to_dict()})
        return SpawnResult(
            session_id=session_id,
            status="cancelled",
            sandbox_id=handle.id,
            from_pool=metrics.from_pool,
            metrics=metrics.to_dict(),
        )


_spawn_controller: Optional[SpawnController] = None


def get_spawn_controller() -> SpawnController:
    global _spawn_controller
    if _spawn_controller is None:
        from .pool_manager import get_pool_manager
        from .scheduler import get_scheduler
        from .session_store import get_session_store
        from .sandbox_tokens import get_token_service
        from .state_continuity import get_continuity_manager

        _spawn_controller = SpawnController(
            session_store=get_session_store(),
            pool_manager=get_pool_manager(),
            scheduler=get_scheduler(),
            continuity=get_continuity_manager(),
            token_service=get_token_service(),
        )
    return _spawn_controller


__all__ = [
    "SpawnController",
    "build_prompt_body",
    "build_prompt_text",
    "get_spawn_controller",
]
