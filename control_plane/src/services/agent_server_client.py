"""HTTP client for the agent server running inside an environment.

Read endpoints used by the completion channels (status, messages, todos,
diffs) raise ``PollTransportFailure`` on transport errors, non-2xx answers
and payloads that do not match ``models.agent_server``. Write endpoints used
during spawn raise ``AgentServerError`` and the caller maps it to the
spawn-step failure.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import TypeAdapter, ValidationError

from ..models.agent_server import (
    DiffList,
    FileDiff,
    Message,
    MessageList,
    RemoteSession,
    RemoteSessionStatus,
    StatusMap,
    Todo,
    TodoList,
)
from .config import AppConfig
from .errors import PollTransportFailure, ServerStartupTimeout
from .provisioner import EnvironmentHandle

logger = logging.getLogger(__name__)

HEALTH_PATH = "/global/health"

# Health polling: start fast, back off to a fixed coarse interval
HEALTH_INITIAL_INTERVAL_S = 0.05
HEALTH_MAX_INTERVAL_S = 0.5
HEALTH_REQUEST_TIMEOUT_S = 0.5


class AgentServerError(Exception):
    """Non-2xx answer or transport failure from the agent server."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class AgentServerClient:
    """Typed wrapper around the agent server's REST API."""

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_s, connect=5.0),
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "AgentServerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Any] = None,
        timeout_s: Optional[float] = None,
    ) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(
                method,
                path,
                json=json,
                timeout=timeout_s if timeout_s is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.HTTPError as e:
            raise AgentServerError(f"{method} {path} failed: {e}") from e
        if response.status_code >= 400:
            body = response.text[:200]
            raise AgentServerError(
                f"{method} {path} returned {response.status_code}: {body}",
                status_code=response.status_code,
                body=body,
            )
        return response

    async def _get_validated(self, path: str, adapter: TypeAdapter) -> Any:
        try:
            response = await self._request("GET", path)
        except AgentServerError as e:
            raise PollTransportFailure(e.message, detail={"status_code": e.status_code}) from e
        text = response.text
        if not text.strip():
            raise PollTransportFailure(f"GET {path} returned an empty body")
        try:
            return adapter.validate_json(text)
        except ValidationError as e:
            raise PollTransportFailure(
                f"GET {path} returned an unexpected shape",
                detail=e.errors(include_url=False)[:5],
            ) from e

    # ------------------------------------------------------------------
    # Spawn-time endpoints
    # ------------------------------------------------------------------

    async def is_healthy(self, timeout_s: float = HEALTH_REQUEST_TIMEOUT_S) -> bool:
        try:
            await self._request("GET", HEALTH_PATH, timeout_s=timeout_s)
        except AgentServerError:
            return False
        return True

    async def set_auth(self, provider: str, api_key: str) -> None:
        await self._request("PUT", f"/auth/{provider}", json={"type": "api", "key": api_key})

    async def create_session(self, title: str = "Agent Task") -> RemoteSession:
        response = await self._request("POST", "/session", json={"title": title})
        try:
            return RemoteSession.model_validate_json(response.text)
        except ValidationError as e:
            raise AgentServerError(f"POST /session returned an unexpected shape: {e}") from e

    async def prompt_async(self, remote_session_id: str, body: dict[str, Any]) -> None:
        """Queue a prompt; the server acknowledges before the agent starts working."""
        await self._request("POST", f"/session/{remote_session_id}/prompt_async", json=body)

    # ------------------------------------------------------------------
    # Completion-time endpoints
    # ------------------------------------------------------------------

    async def get_status(self) -> dict[str, RemoteSessionStatus]:
        return await self._get_validated("/session/status", StatusMap)

    async def get_messages(self, remote_session_id: str) -> list[Message]:
        return await self._get_validated(f"/session/{remote_session_id}/message", MessageList)

    async def get_todos(self, remote_session_id: str) -> list[Todo]:
        return await self._get_validated(f"/session/{remote_session_id}/todo", TodoList)

    async def get_diffs(self, remote_session_id: str) -> list[FileDiff]:
        return await self._get_validated(f"/session/{remote_session_id}/diff", DiffList)


ClientFactory = Callable[[str], AgentServerClient]


def default_client_factory(base_url: str) -> AgentServerClient:
    return AgentServerClient(base_url)


async def launch_agent_server(
    handle: EnvironmentHandle,
    config: AppConfig,
    envs: Optional[dict[str, str]] = None,
) -> None:
    """Start the agent server in the background; returns immediately.

    ``envs`` carries the session-scoped variables (sandbox JWT, session and
    scope ids), which a pooled environment did not have when it was created.
    """
    command = config.agent_server_command.format(home=config.agent_home, port=handle.port)
    await handle.run_background(command, envs=envs)
    logger.debug(f"[{handle.id}] agent server launch issued")


async def wait_until_healthy(
    client: AgentServerClient,
    timeout_s: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """Poll the health endpoint until it answers. Returns the number of checks made.

    Raises:
        ServerStartupTimeout: the server did not answer within ``timeout_s``.
    """
    deadline = clock() + timeout_s
    interval = HEALTH_INITIAL_INTERVAL_S
    attempts = 0
    while True:
        attempts += 1
        if await client.is_healthy():
            logger.debug(f"Agent server at {client.base_url} healthy after {attempts} checks")
            return attempts
        if clock() >= deadline:
            raise ServerStartupTimeout(
                f"agent server at {client.base_url} not healthy after {timeout_s:.0f}s "
                f"({attempts} checks)"
            )
        await sleep(interval)
        interval = min(interval * 2, HEALTH_MAX_INTERVAL_S)


__all__ = [
    "AgentServerClient",
    "AgentServerError",
    "ClientFactory",
    "default_client_factory",
    "launch_agent_server",
    "wait_until_healthy",
    "HEALTH_PATH",
]
