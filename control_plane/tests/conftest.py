"""Shared fixtures: temp database, fake environments and a fake agent server."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import json
from types import SimpleNamespace
from typing import Any, Optional, Union
from unittest.mock import AsyncMock

import httpx
import pytest

from control_plane.src.services import config as config_module
from control_plane.src.services.agent_server_client import AgentServerClient
from control_plane.src.services.completion_detector import CompletionDetector
from control_plane.src.services.config import AppConfig
from control_plane.src.services.database import DatabaseService
from control_plane.src.services.pool_manager import PoolManager
from control_plane.src.services.provisioner import (
    CommandResult,
    EnvironmentHandle,
    EnvironmentProvisioner,
    ProvisionerError,
)
from control_plane.src.services.sandbox_tokens import SandboxTokenService
from control_plane.src.services.scheduler import JobScheduler
from control_plane.src.services.session_orchestrator import SessionOrchestrator
from control_plane.src.services.session_store import SessionStore
from control_plane.src.services.spawn_controller import SpawnController
from control_plane.src.services.state_continuity import StateContinuityManager
from control_plane.src.services.state_store import StateStore

REMOTE_SESSION_ID = "ses_remote"


# ---------------------------------------------------------------------------
# Fake environments
# ---------------------------------------------------------------------------


class FakeEnvironment(EnvironmentHandle):
    """In-memory environment recording every file and command."""

    def __init__(self, sandbox_id: str, port: int = 4096, envs: Optional[dict[str, str]] = None):
        super().__init__(sandbox_id, f"http://{sandbox_id}.sandbox.test:{port}", port)
        self.envs = dict(envs or {})
        self.files: dict[str, bytes] = {}
        self.dirs: set[str] = set()
        self.background: list[tuple[str, dict[str, str]]] = []
        self.unreadable: set[str] = set()
        self.events: list[str] = []

    async def run_background(self, command: str, envs: Optional[dict[str, str]] = None) -> None:
        self.background.append((command, dict(envs or {})))
        self.events.append(f"background:{command}")

    async def run(self, command: str, timeout_s: float = 30.0, envs=None) -> CommandResult:
        return CommandResult(exit_code=0)

    async def read_file(self, path: str) -> bytes:
        if path in self.unreadable or path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    async def write_file(self, path: str, data: Union[str, bytes]) -> None:
        self.files[path] = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        self.events.append(f"write:{path}")

    async def make_dir(self, path: str) -> None:
        self.dirs.add(path)


class FakeProvisioner(EnvironmentProvisioner):
    name = "fake"

    def __init__(self):
        self.environments: dict[str, FakeEnvironment] = {}
        self.killed: list[str] = []
        self.created = 0
        self.create_error: Optional[Exception] = None
        self.connect_error: Optional[Exception] = None
        self.set_timeout_error: Optional[Exception] = None
        self.timeouts: dict[str, list[int]] = {}
        self.create_delay_s = 0.0

    def add(self, sandbox_id: str) -> FakeEnvironment:
        environment = FakeEnvironment(sandbox_id)
        self.environments[sandbox_id] = environment
        return environment

    async def create(self, template_id: str, envs=None, timeout_s=None) -> EnvironmentHandle:
        if self.create_delay_s:
            await asyncio.sleep(self.create_delay_s)
        if self.create_error is not None:
            raise self.create_error
        self.created += 1
        environment = FakeEnvironment(f"sbx-{self.created}", envs=envs)
        self.environments[environment.id] = environment
        self.timeouts[environment.id] = [timeout_s]
        return environment

    async def connect(self, sandbox_id: str) -> EnvironmentHandle:
        if self.connect_error is not None:
            raise self.connect_error
        environment = self.environments.get(sandbox_id)
        if environment is None:
            raise ProvisionerError(f"unknown sandbox {sandbox_id}")
        return environment

    async def set_timeout(self, sandbox_id: str, timeout_s: int) -> None:
        if self.set_timeout_error is not None:
            raise self.set_timeout_error
        if sandbox_id not in self.environments:
            raise ProvisionerError(f"unknown sandbox {sandbox_id}")
        self.timeouts.setdefault(sandbox_id, []).append(timeout_s)

    async def kill(self, sandbox_id: str) -> bool:
        self.killed.append(sandbox_id)
        return self.environments.pop(sandbox_id, None) is not None


# ---------------------------------------------------------------------------
# Fake agent server
# ---------------------------------------------------------------------------


def text_part(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def reasoning_part(text: str) -> dict[str, Any]:
    return {"type": "reasoning", "text": text}


def tool_part(
    tool: str,
    status: str = "completed",
    input: Optional[dict[str, Any]] = None,
    output: Any = None,
    error: Optional[str] = None,
) -> dict[str, Any]:
    state: dict[str, Any] = {"status": status, "input": input or {}}
    if output is not None:
        state["output"] = output
    if error is not None:
        state["error"] = error
    return {"type": "tool", "tool": tool, "callID": f"call_{tool}", "state": state}


def message(role: str, *parts: dict[str, Any], message_id: Optional[str] = None) -> dict[str, Any]:
    return {
        "info": {"id": message_id or f"msg_{role}", "role": role, "sessionID": REMOTE_SESSION_ID},
        "parts": list(parts),
    }


class FakeAgentServer:
    """Scriptable agent server served through ``httpx.MockTransport``."""

    def __init__(self):
        self.healthy = True
        self.auth_status = 200
        self.session_status = 200
        self.prompt_status = 204
        self.remote_session_id = REMOTE_SESSION_ID
        self.status_map: dict[str, Any] = {REMOTE_SESSION_ID: {"type": "busy"}}
        self.messages: list[dict[str, Any]] = []
        self.todos: list[dict[str, Any]] = []
        self.diffs: list[dict[str, Any]] = []
        self.read_failures = 0
        self.requests: list[httpx.Request] = []
        self.prompt_bodies: list[dict[str, Any]] = []
        self.auth_bodies: list[dict[str, Any]] = []
        self.on_prompt = None
        self.on_request = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.on_request is not None:
            self.on_request(request)
        path = request.url.path
        method = request.method

        if path == "/global/health":
            return httpx.Response(200 if self.healthy else 503, json={"healthy": self.healthy})
        if method == "PUT" and path.startswith("/auth/"):
            self.auth_bodies.append(json.loads(request.content))
            return httpx.Response(self.auth_status, json=self.auth_status < 400)
        if method == "POST" and path == "/session":
            return httpx.Response(
                self.session_status, json={"id": self.remote_session_id, "title": "Agent Task"}
            )
        if method == "POST" and path.endswith("/prompt_async"):
            self.prompt_bodies.append(json.loads(request.content))
            if self.on_prompt is not None:
                self.on_prompt()
            return httpx.Response(self.prompt_status)

        if method == "GET":
            if self.read_failures > 0:
                self.read_failures -= 1
                return httpx.Response(502, text="bad gateway")
            if path == "/session/status":
                return httpx.Response(200, json=self.status_map)
            if path.endswith("/message"):
                return httpx.Response(200, json=self.messages)
            if path.endswith("/todo"):
                return httpx.Response(200, json=self.todos)
            if path.endswith("/diff"):
                return httpx.Response(200, json=self.diffs)
        return httpx.Response(404, text="not found")

    def client_factory(self, base_url: str) -> AgentServerClient:
        return AgentServerClient(base_url, transport=httpx.MockTransport(self.handler))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def restore_config_cache():
    """Restore config cache after each test."""
    config_module.get_config.cache_clear()
    yield
    config_module.get_config.cache_clear()


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return AppConfig(
        database_path=tmp_path / "control_plane.db",
        sandbox_backend="local",
        local_sandbox_root=tmp_path / "sandboxes",
        llm_api_key="sk-test-key",
        sandbox_jwt_secret="test-secret-key-at-least-16-chars",
        server_startup_timeout_s=0.2,
        poll_fetch_retries=2,
        max_poll_transport_failures=3,
        pool_target_size=0,
    )


@pytest.fixture
def temp_db(app_config) -> DatabaseService:
    """Create a temporary database with required schema."""
    db = DatabaseService(app_config.database_path)
    db.initialize()
    return db


@pytest.fixture
def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def agent_server() -> FakeAgentServer:
    return FakeAgentServer()


@pytest.fixture
def stack(app_config, temp_db, provisioner, agent_server) -> SimpleNamespace:
    """Fully wired services sharing one temp database and the fakes."""
    scheduler = JobScheduler(db_service=temp_db, tick_s=0.01)
    sessions = SessionStore(temp_db)
    state_store = StateStore(temp_db, app_config)
    continuity = StateContinuityManager(state_store, app_config)
    pool = PoolManager(temp_db, provisioner, app_config, scheduler)
    tokens = SandboxTokenService(app_config)
    detector = CompletionDetector(
        session_store=sessions,
        provisioner=provisioner,
        scheduler=scheduler,
        continuity=continuity,
        pool_manager=pool,
        config=app_config,
        client_factory=agent_server.client_factory,
        sleep=AsyncMock(),
    )
    spawner = SpawnController(
        session_store=sessions,
        pool_manager=pool,
        provisioner=provisioner,
        scheduler=scheduler,
        continuity=continuity,
        token_service=tokens,
        config=app_config,
        client_factory=agent_server.client_factory,
    )
    orchestrator = SessionOrchestrator(
        session_store=sessions,
        spawn_controller=spawner,
        detector=detector,
        pool_manager=pool,
        scheduler=scheduler,
        provisioner=provisioner,
        config=app_config,
    )
    orchestrator.register_jobs()
    return SimpleNamespace(
        config=app_config,
        db=temp_db,
        scheduler=scheduler,
        sessions=sessions,
        state_store=state_store,
        continuity=continuity,
        pool=pool,
        tokens=tokens,
        detector=detector,
        spawner=spawner,
        orchestrator=orchestrator,
        provisioner=provisioner,
        agent_server=agent_server,
    )


def _later(seconds: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


@pytest.fixture
def later():
    """Returns a function giving the moment ``seconds`` from now, for running jobs early."""
    return _later


@pytest.fixture
def parts() -> SimpleNamespace:
    """Builders for agent server message payloads."""
    return SimpleNamespace(
        text=text_part,
        reasoning=reasoning_part,
        tool=tool_part,
        message=message,
    )
