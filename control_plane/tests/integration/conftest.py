"""API test client wired to the shared test stack."""

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from control_plane.src.api.main import app
from control_plane.src.services import config as config_module
from control_plane.src.services.completion_detector import get_completion_detector
from control_plane.src.services.pool_manager import get_pool_manager
from control_plane.src.services.sandbox_tokens import get_token_service
from control_plane.src.services.session_orchestrator import get_orchestrator
from control_plane.src.services.session_store import get_session_store
from control_plane.src.services.state_store import get_state_store


@pytest.fixture
def api_env(monkeypatch, tmp_path: Path):
    """Keep operator routes open and the loaded config inside the temp dir."""
    monkeypatch.setenv("CONTROL_PLANE_DB_PATH", str(tmp_path / "api.db"))
    monkeypatch.delenv("CONTROL_PLANE_SERVICE_TOKEN", raising=False)
    config_module.reload_config()
    return monkeypatch


@pytest.fixture
def client(api_env, stack):
    """Test client without the startup hook; every service comes from ``stack``."""
    app.dependency_overrides.update(
        {
            get_orchestrator: lambda: stack.orchestrator,
            get_session_store: lambda: stack.sessions,
            get_completion_detector: lambda: stack.detector,
            get_state_store: lambda: stack.state_store,
            get_pool_manager: lambda: stack.pool,
            get_token_service: lambda: stack.tokens,
        }
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def sandbox_auth(stack):
    """Authorization header carrying a sandbox token for ``session_id``/``scope_id``."""

    def headers(session_id: str, scope_id: str = "card-1") -> dict[str, str]:
        return {"Authorization": f"Bearer {stack.tokens.mint(session_id, scope_id)}"}

    return headers


@pytest.fixture
def start_session(client):
    """Start a session through the API and return its id."""

    def start(scope_id: str = "card-1", prompt: str = "Write a report") -> str:
        response = client.post("/api/sessions", json={"scope_id": scope_id, "prompt": prompt})
        assert response.status_code == 202
        return response.json()["session_id"]

    return start
