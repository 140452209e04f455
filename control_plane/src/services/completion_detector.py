"""Completion channels for running sessions.

Three channels may finish a session: the push callback from the in-environment
event forwarder, the scheduled poll job, and the watchdog job. Each one reads
the session first and returns early if it is already terminal, and every
status change goes through the store's guarded transitions, so only one
channel can ever win. The winner schedules ``session.finalize`` which
captures produced files (completed sessions only) and kills the environment.
Kills are idempotent and may happen more than once.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..models.agent_server import ErrorStatus, IdleStatus, Message
from ..models.session import (
    AgentSession,
    CallbackAck,
    CompletionCallback,
    EventsCallback,
    ForwarderEvent,
    SessionOutput,
    SessionStatus,
)
from .agent_server_client import AgentServerClient, ClientFactory, default_client_factory
from .config import AppConfig, get_config
from .errors import (
    AgentReportedError,
    PollTransportFailure,
    PromptDispatchFailure,
    SandboxError,
    SessionNotFoundError,
    WatchdogTimeout,
)
from .pool_manager import PoolManager
from .provisioner import EnvironmentHandle, EnvironmentProvisioner, get_provisioner, safe_kill
from .result_collector import (
    collect_result,
    flatten_parts,
    format_log_lines,
    humanize_tool_name,
)
from .scheduler import JobScheduler
from .session_store import SessionStore
from .state_continuity import StateContinuityManager

logger = logging.getLogger(__name__)

POLL_JOB = "session.poll"
WATCHDOG_JOB = "session.watchdog"
FINALIZE_JOB = "session.finalize"

POLL_RETRY_DELAY_S = 1.0
EVENT_TEXT_LIMIT = 200

T = TypeVar("T")


def format_event(event: ForwarderEvent) -> Optional[str]:
    """Log line for one streamed forwarder event."""
    if event.type == "tool" and event.tool:
        name = humanize_tool_name(event.tool)
        if event.status == "completed":
            return f"✅ {name}"
        if event.status == "error":
            return f"❌ {name} failed"
        return f"🔧 {name}..."
    if event.type == "reasoning" and event.text:
        return f"💭 {event.text[:EVENT_TEXT_LIMIT]}"
    if event.type == "text" and event.text:
        return event.text[:EVENT_TEXT_LIMIT]
    if event.type == "status" and event.status:
        return f"📡 Agent {event.status}"
    return None


class CompletionDetector:
    """Push, poll and watchdog handling plus post-completion cleanup."""

    def __init__(
        self,
        session_store: Optional[SessionStore] = None,
        provisioner: Optional[EnvironmentProvisioner] = None,
        scheduler: Optional[JobScheduler] = None,
        continuity: Optional[StateContinuityManager] = None,
        pool_manager: Optional[PoolManager] = None,
        config: Optional[AppConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or get_config()
        self.sessions = session_store or SessionStore()
        self._provisioner = provisioner
        self.scheduler = scheduler or JobScheduler()
        self.continuity = continuity or StateContinuityManager(config=self.config)
        self.pool = pool_manager
        self.client_factory = client_factory or default_client_factory
        self._sleep = sleep

    @property
    def provisioner(self) -> EnvironmentProvisioner:
        if self._provisioner is None:
            self._provisioner = get_provisioner(self.config)
        return self._provisioner

    def register_jobs(self, scheduler: Optional[JobScheduler] = None) -> None:
        target = scheduler or self.scheduler
        target.register(POLL_JOB, self.poll)
        target.register(WATCHDOG_JOB, self.watchdog)
        target.register(FINALIZE_JOB, self.finalize_job)

    # ------------------------------------------------------------------
    # Shared transitions
    # ------------------------------------------------------------------

    def _schedule_finalize(self, session_id: str, capture: bool) -> None:
        self.scheduler.run_after(0, FINALIZE_JOB, {"session_id": session_id, "capture": capture})

    def _complete(self, session_id: str, output: SessionOutput) -> bool:
        won = self.sessions.complete(session_id, output.model_dump())
        if won:
            self._schedule_finalize(session_id, capture=True)
        return won

    def _fail(
        self,
        session_id: str,
        error: SandboxError,
        output: Optional[SessionOutput] = None,
    ) -> bool:
        won = self.sessions.fail(
            session_id, str(error), output.model_dump() if output is not None else None
        )
        if won:
            self.sessions.append_logs(session_id, [f"❌ {error}"])
            self._schedule_finalize(session_id, capture=False)
        return won

    # ------------------------------------------------------------------
    # Push channel
    # ------------------------------------------------------------------

    async def handle_push_completion(self, payload: CompletionCallback) -> CallbackAck:
        """Finish a session from the forwarder's final report."""
        session = self.sessions.get(payload.session_id)
        if session is None:
            raise SessionNotFoundError(payload.session_id)
        if session.is_terminal:
            logger.info(f"[push:{session.id}] ignored: session already {session.status.value}")
            return CallbackAck(success=True, already_complete=True, session_id=session.id)
        if payload.sandbox_id and session.sandbox_id and payload.sandbox_id != session.sandbox_id:
            logger.warning(
                f"[push:{session.id}] sandbox mismatch: got {payload.sandbox_id}, "
                f"expected {session.sandbox_id}"
            )

        output = SessionOutput(
            response=payload.output,
            tool_calls=payload.tool_calls,
            todos=payload.todos,
            changed_files=await self._changed_files(session),
            source="push",
        )
        if payload.error:
            won = self._fail(session.id, AgentReportedError(payload.error), output)
        else:
            won = self._complete(session.id, output)
            if won:
                self.sessions.append_logs(
                    session.id,
                    [
                        f"✅ Completed via event forwarder ({payload.messages_count} messages, "
                        f"{len(payload.tool_calls)} tools)"
                    ],
                )
        if won:
            logger.info(f"[push:{session.id}] session finished by event forwarder")
        return CallbackAck(success=True, already_complete=not won, session_id=session.id)

    async def handle_push_events(self, payload: EventsCallback) -> int:
        """Append streamed progress events to the session log. Returns lines written."""
        session = self.sessions.get(payload.session_id)
        if session is None:
            raise SessionNotFoundError(payload.session_id)
        if session.is_terminal:
            return 0
        lines = [line for line in map(format_event, payload.events) if line]
        written = self.sessions.append_logs(session.id, lines)
        self.sessions.touch_heartbeat(session.id)
        return written

    async def _changed_files(self, session: AgentSession) -> list[str]:
        if not (session.sandbox_endpoint and session.remote_session_id):
            return []
        client = self.client_factory(session.sandbox_endpoint)
        try:
            diffs = await client.get_diffs(session.remote_session_id)
        except PollTransportFailure as e:
            logger.warning(f"[{session.id}] could not fetch changed files: {e}")
            return []
        finally:
            await client.close()
        return list(dict.fromkeys(diff.path for diff in diffs))

    # ------------------------------------------------------------------
    # Poll channel
    # ------------------------------------------------------------------

    async def _with_retries(self, fetch: Callable[[], Awaitable[T]]) -> T:
        """Retry transport failures within one poll cycle."""
        attempts = self.config.poll_fetch_retries
        for attempt in range(1, attempts):
            try:
                return await fetch()
            except PollTransportFailure as e:
                logger.debug(f"Poll fetch failed (attempt {attempt}/{attempts}): {e}")
                await self._sleep(POLL_RETRY_DELAY_S * attempt)
        return await fetch()

    def _reschedule(self, args: dict[str, Any], **changes: Any) -> str:
        next_args = {**args, **changes, "poll_count": int(args.get("poll_count", 1)) + 1}
        return self.scheduler.run_after(self.config.poll_interval_s, POLL_JOB, next_args)

    async def poll(self, args: dict[str, Any]) -> None:
        """Scheduler job: one status check of a running session."""
        session_id = args["session_id"]
        poll_count = int(args.get("poll_count", 1))
        last_parts_count = int(args.get("last_parts_count", 0))
        transport_failures = int(args.get("transport_failures", 0))

        session = self.sessions.get(session_id)
        if session is None:
            logger.warning(f"[Poll {poll_count}] session {session_id} no longer exists")
            return
        if session.is_terminal:
            logger.info(f"[Poll {poll_count}] session {session_id} already {session.status.value}, stopping")
            return
        if session.status != SessionStatus.RUNNING or not (
            session.sandbox_endpoint and session.remote_session_id
        ):
            logger.warning(f"[Poll {poll_count}] session {session_id} is not running yet, stopping")
            return

        remote_id = session.remote_session_id
        client = self.client_factory(session.sandbox_endpoint)
        try:
            try:
                status_map = await self._with_retries(client.get_status)
                messages = await self._with_retries(lambda: client.get_messages(remote_id))
            except PollTransportFailure as e:
                transport_failures += 1
                logger.warning(
                    f"[Poll {poll_count}] transport failure {transport_failures}/"
                    f"{self.config.max_poll_transport_failures} for {session_id}: {e}"
                )
                if transport_failures >= self.config.max_poll_transport_failures:
                    self._fail(session_id, e)
                elif poll_count >= self.config.max_polls:
                    self._fail(session_id, WatchdogTimeout(f"no completion after {poll_count} polls"))
                else:
                    self._reschedule(args, transport_failures=transport_failures)
                return

            parts = flatten_parts(messages)
            if len(parts) > last_parts_count:
                lines = format_log_lines(parts[last_parts_count:])
                if lines:
                    logger.debug(f"[Poll {poll_count}] streaming {len(lines)} new log entries")
                    self.sessions.append_logs(session_id, lines)
                last_parts_count = len(parts)
            self.sessions.touch_heartbeat(session_id)

            remote_status = status_map.get(remote_id)
            if remote_status is None:
                # Absent from the status map: finished and removed, or never registered
                if messages:
                    logger.info(
                        f"[Poll {poll_count}] ✅ session completed "
                        f"(removed from status list, has {len(messages)} messages)"
                    )
                    await self._collect_and_complete(session, client, messages, args)
                elif poll_count < self.config.empty_message_poll_limit:
                    self._reschedule(args, last_parts_count=last_parts_count, transport_failures=0)
                else:
                    self._fail(
                        session_id,
                        PromptDispatchFailure(
                            f"remote session {remote_id} has no status and no messages "
                            f"after {poll_count} polls"
                        ),
                    )
            elif isinstance(remote_status, IdleStatus):
                logger.info(f"[Poll {poll_count}] ✅ remote session idle")
                await self._collect_and_complete(session, client, messages, args)
            elif isinstance(remote_status, ErrorStatus):
                message = remote_status.message or str(remote_status.error or "unknown error")
                partial = collect_result(messages, system_prompt=session.config.get("system_prompt"))
                self._fail(session_id, AgentReportedError(message), partial.to_output("poll"))
            elif poll_count >= self.config.max_polls:
                partial = collect_result(messages, system_prompt=session.config.get("system_prompt"))
                self._fail(
                    session_id,
                    WatchdogTimeout(f"still busy after {poll_count} polls"),
                    partial.to_output("poll"),
                )
            else:
                self._reschedule(args, last_parts_count=last_parts_count, transport_failures=0)
        finally:
            await client.close()

    async def _optional_fetch(self, fetch: Callable[[], Awaitable[list[T]]], what: str) -> list[T]:
        try:
            return await self._with_retries(fetch)
        except PollTransportFailure as e:
            logger.warning(f"Could not fetch {what}: {e}")
            return []

    async def _collect_and_complete(
        self,
        session: AgentSession,
        client: AgentServerClient,
        messages: list[Message],
        args: dict[str, Any],
    ) -> bool:
        remote_id = session.remote_session_id
        todos = await self._optional_fetch(lambda: client.get_todos(remote_id), "todos")
        diffs = await self._optional_fetch(lambda: client.get_diffs(remote_id), "diffs")
        result = collect_result(
            messages, todos, diffs, system_prompt=session.config.get("system_prompt")
        )
        if not self._complete(session.id, result.to_output("poll")):
            logger.info(f"[{session.id}] completion already recorded by another channel")
            return False

        poll_count = int(args.get("poll_count", 1))
        elapsed_s = self._elapsed_s(args.get("started_at"))
        self.sessions.append_logs(
            session.id,
            [f"⏱️ EXECUTION: {elapsed_s:.0f}s ({poll_count} polls, {len(result.tool_calls)} tools)"],
        )
        self.sessions.record_metrics(
            session.id,
            {
                "execution": {
                    "agent_execution_ms": round(elapsed_s * 1000),
                    "poll_count": poll_count,
                    "messages_count": len(messages),
                    "tool_calls": len(result.tool_calls),
                }
            },
        )
        return True

    @staticmethod
    def _elapsed_s(started_at: Optional[str]) -> float:
        if not started_at:
            return 0.0
        started = datetime.fromisoformat(started_at)
        return max((datetime.now(timezone.utc) - started).total_seconds(), 0.0)

    # ------------------------------------------------------------------
    # Watchdog channel
    # ------------------------------------------------------------------

    async def watchdog(self, args: dict[str, Any]) -> None:
        """Scheduler job: fail a session that outlived its ceiling, always kill."""
        session_id = args["session_id"]
        session = self.sessions.get(session_id)
        if session is None:
            await safe_kill(self.provisioner, args.get("sandbox_id"))
            return
        if session.is_terminal:
            logger.info(f"[watchdog:{session_id}] session already {session.status.value}, cleanup only")
            await safe_kill(self.provisioner, args.get("sandbox_id") or session.sandbox_id)
            return

        error = WatchdogTimeout(f"no completion after {self.config.watchdog_timeout_s:.0f}s")
        if self.sessions.fail(session_id, str(error)):
            logger.warning(f"[watchdog:{session_id}] ⏰ {error}")
            self.sessions.append_logs(session_id, [f"⏰ {error}"])
        await self.finalize(session_id, capture=False, sandbox_id=args.get("sandbox_id"))

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def finalize_job(self, args: dict[str, Any]) -> None:
        await self.finalize(args["session_id"], capture=bool(args.get("capture", True)))

    async def finalize(
        self,
        session_id: str,
        capture: bool = True,
        sandbox_id: Optional[str] = None,
    ) -> None:
        """Capture produced files of a completed session, then kill its environment."""
        session = self.sessions.get(session_id)
        target: Optional[str] = sandbox_id or (session.sandbox_id if session else None)
        handle: Optional[EnvironmentHandle] = None
        try:
            if capture and session is not None and session.status == SessionStatus.COMPLETED and target:
                changed = (session.output or {}).get("changed_files") or []
                if changed:
                    handle = await self._connect(target)
                if handle is not None:
                    result = await self.continuity.capture(
                        session.scope_id, handle, changed, run_id=session.id
                    )
                    if result.captured:
                        self.sessions.append_logs(
                            session_id, [f"📦 Captured {len(result.captured)} files"]
                        )
        finally:
            await safe_kill(self.provisioner, handle or target)
            if self.pool is not None:
                self.pool.release_claimed_by(session_id)

    async def _connect(self, sandbox_id: str) -> Optional[EnvironmentHandle]:
        try:
            return await self.provisioner.connect(sandbox_id)
        except Exception as e:
            logger.warning(f"Cannot reconnect to {sandbox_id} for capture: {e}")
            return None


_detector: Optional[CompletionDetector] = None


def get_completion_detector() -> CompletionDetector:
    global _detector
    if _detector is None:
        from .pool_manager import get_pool_manager
        from .scheduler import get_scheduler
        from .session_store import get_session_store
        from .state_continuity import get_continuity_manager

        _detector = CompletionDetector(
            session_store=get_session_store(),
            scheduler=get_scheduler(),
            continuity=get_continuity_manager(),
            pool_manager=get_pool_manager(),
        )
    return _detector


__all__ = [
    "CompletionDetector",
    "get_completion_detector",
    "format_event",
    "POLL_JOB",
    "WATCHDOG_JOB",
    "FINALIZE_JOB",
]
