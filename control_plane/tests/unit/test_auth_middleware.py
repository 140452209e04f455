"""Tests for authentication middleware dependencies."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi import HTTPException

from control_plane.src.api.middleware.auth_middleware import (
    OperatorContext,
    SandboxContext,
    require_operator,
    require_sandbox_context,
)
from control_plane.src.services import config as config_module
from control_plane.src.services.sandbox_tokens import SandboxTokenService


@pytest.fixture
def env(monkeypatch, tmp_path: Path):
    """Keep the loaded config inside the temp dir."""
    monkeypatch.setenv("CONTROL_PLANE_DB_PATH", str(tmp_path / "cp.db"))
    monkeypatch.delenv("CONTROL_PLANE_SERVICE_TOKEN", raising=False)
    return monkeypatch


@pytest.fixture
def token_service(app_config) -> SandboxTokenService:
    return SandboxTokenService(app_config)


@pytest.fixture
def valid_token(token_service: SandboxTokenService):
    """Generate a valid sandbox token for testing."""
    return token_service.mint("session-1", "card-1")


@pytest.fixture
def expired_token(token_service: SandboxTokenService):
    """Generate a sandbox token that expired an hour ago."""
    return token_service.mint("session-1", "card-1", now=datetime.now(timezone.utc) - timedelta(hours=2))


class TestRequireOperator:
    """Tests for require_operator (static service token)."""

    def test_open_without_service_token(self, env):
        config_module.reload_config()

        context = require_operator(authorization=None)

        assert context == OperatorContext(authenticated=False)

    def test_valid_service_token(self, env):
        env.setenv("CONTROL_PLANE_SERVICE_TOKEN", "operator-token")
        config_module.reload_config()

        context = require_operator(authorization="Bearer operator-token")

        assert context.authenticated is True

    def test_missing_header_raises_401(self, env):
        env.setenv("CONTROL_PLANE_SERVICE_TOKEN", "operator-token")
        config_module.reload_config()

        with pytest.raises(HTTPException) as exc_info:
            require_operator(authorization=None)

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["error"] == "unauthorized"
        assert "required" in exc_info.value.detail["message"].lower()

    def test_wrong_token_raises_401(self, env):
        env.setenv("CONTROL_PLANE_SERVICE_TOKEN", "operator-token")
        config_module.reload_config()

        with pytest.raises(HTTPException) as exc_info:
            require_operator(authorization="Bearer guess")

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["error"] == "invalid_token"

    def test_invalid_header_format_raises_401(self, env):
        """Header without the 'Bearer' scheme is rejected."""
        env.setenv("CONTROL_PLANE_SERVICE_TOKEN", "operator-token")
        config_module.reload_config()

        with pytest.raises(HTTPException) as exc_info:
            require_operator(authorization="operator-token")

        assert exc_info.value.status_code == 401
        assert "format" in exc_info.value.detail["message"].lower()


class TestRequireSandboxContext:
    """Tests for require_sandbox_context (per-session JWT)."""

    def test_valid_token_returns_claims(self, token_service, valid_token: str):
        context = require_sandbox_context(authorization=f"Bearer {valid_token}", token_service=token_service)

        assert isinstance(context, SandboxContext)
        assert context.token == valid_token
        assert context.claims.session_id == "session-1"
        assert context.claims.scope_id == "card-1"

    def test_expired_token_raises_401(self, token_service, expired_token: str):
        with pytest.raises(HTTPException) as exc_info:
            require_sandbox_context(authorization=f"Bearer {expired_token}", token_service=token_service)

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["error"] == "token_expired"
        assert "expired" in exc_info.value.detail["message"].lower()

    def test_missing_header_raises_401(self, token_service):
        with pytest.raises(HTTPException) as exc_info:
            require_sandbox_context(authorization=None, token_service=token_service)

        assert exc_info.value.status_code == 401

    def test_disabled_tokens_accept_anonymous_callbacks(self, app_config):
        service = SandboxTokenService(app_config.model_copy(update={"sandbox_jwt_secret": None}))

        context = require_sandbox_context(authorization=None, token_service=service)

        assert context.claims is None
        context.ensure_session("any-session")

    def test_token_for_other_session_is_forbidden(self, token_service, valid_token: str):
        context = require_sandbox_context(authorization=f"Bearer {valid_token}", token_service=token_service)

        context.ensure_session("session-1")
        with pytest.raises(HTTPException) as exc_info:
            context.ensure_session("session-2")

        assert exc_info.value.status_code == 403
        assert exc_info.value.detail["error"] == "session_mismatch"
