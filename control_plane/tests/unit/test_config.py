"""Tests for environment-driven configuration."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from control_plane.src.services import config as config_module
from control_plane.src.services.config import AppConfig


@pytest.fixture
def env(monkeypatch, tmp_path: Path):
    """Point the database at a temp dir so loading config has no side effects."""
    monkeypatch.setenv("CONTROL_PLANE_DB_PATH", str(tmp_path / "data" / "cp.db"))
    monkeypatch.setenv("LOCAL_SANDBOX_ROOT", str(tmp_path / "sandboxes"))
    for key in ("SANDBOX_JWT_SECRET", "LLM_API_KEY", "OPENROUTER_API_KEY", "CONTROL_PLANE_SERVICE_TOKEN"):
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


class TestGetConfig:
    def test_defaults(self, env, tmp_path: Path):
        cfg = config_module.reload_config()

        assert cfg.database_path == (tmp_path / "data" / "cp.db").resolve()
        assert cfg.database_path.parent.exists()
        assert cfg.sandbox_backend == "e2b"
        assert cfg.poll_interval_s == 30.0
        assert cfg.max_polls == 20
        assert cfg.watchdog_timeout_s == 600.0
        assert cfg.pool_target_size == 0
        assert cfg.sandbox_jwt_secret is None
        assert cfg.agent_fallback_models == ("anthropic/claude-3.5-sonnet",)

    def test_reads_overrides(self, env):
        env.setenv("SANDBOX_BACKEND", "LOCAL")
        env.setenv("POLL_INTERVAL_SECONDS", "5")
        env.setenv("MAX_POLLS", "7")
        env.setenv("POOL_TARGET_SIZE", "2")
        env.setenv("AGENT_FALLBACK_MODELS", "a/one, b/two,,")
        env.setenv("CONTROL_PLANE_PUBLIC_URL", "https://cp.example.com/")

        cfg = config_module.reload_config()

        assert cfg.sandbox_backend == "local"
        assert cfg.poll_interval_s == 5.0
        assert cfg.max_polls == 7
        assert cfg.pool_target_size == 2
        assert cfg.agent_fallback_models == ("a/one", "b/two")
        assert cfg.public_base_url == "https://cp.example.com"

    def test_malformed_numbers_fall_back_to_defaults(self, env):
        env.setenv("MAX_POLLS", "many")
        env.setenv("POLL_INTERVAL_SECONDS", "soon")

        cfg = config_module.reload_config()

        assert cfg.max_polls == 20
        assert cfg.poll_interval_s == 30.0

    def test_openrouter_key_is_an_alias(self, env):
        env.setenv("OPENROUTER_API_KEY", "sk-or-legacy")

        assert config_module.reload_config().llm_api_key == "sk-or-legacy"

    def test_config_is_cached(self, env):
        first = config_module.reload_config()

        assert config_module.get_config() is first


class TestValidation:
    def test_unknown_backend_rejected(self, tmp_path: Path):
        with pytest.raises(ValidationError):
            AppConfig(database_path=tmp_path / "db", sandbox_backend="docker")

    def test_short_jwt_secret_rejected(self, tmp_path: Path):
        with pytest.raises(ValidationError):
            AppConfig(database_path=tmp_path / "db", sandbox_jwt_secret="short")

    def test_blank_jwt_secret_rejected(self, tmp_path: Path):
        with pytest.raises(ValidationError):
            AppConfig(database_path=tmp_path / "db", sandbox_jwt_secret="   ")

    def test_empty_database_path_rejected(self):
        with pytest.raises(ValidationError):
            AppConfig(database_path="")

    def test_config_is_frozen(self, tmp_path: Path):
        cfg = AppConfig(database_path=tmp_path / "db")

        with pytest.raises(ValidationError):
            cfg.max_polls = 3
