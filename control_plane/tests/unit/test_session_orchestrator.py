"""Tests for starting and cancelling sessions."""

import pytest

from control_plane.src.models.session import SessionRequest, SessionStatus
from control_plane.src.services.errors import SessionNotFoundError


class TestStartSession:
    @pytest.mark.asyncio
    async def test_start_dispatches_and_stores_config(self, stack):
        result = await stack.orchestrator.start_session(
            SessionRequest(scope_id="card-1", prompt="Write a report", system_prompt="Be brief.")
        )

        assert result.status == "dispatched"
        session = stack.sessions.require(result.session_id)
        assert session.status == SessionStatus.RUNNING
        assert session.config["prompt"] == "Write a report"
        assert session.config["system_prompt"] == "Be brief."
        assert "model" not in session.config

    @pytest.mark.asyncio
    async def test_new_request_supersedes_active_session(self, stack):
        first = await stack.orchestrator.start_session(SessionRequest(scope_id="card-1", prompt="one"))

        second = await stack.orchestrator.start_session(SessionRequest(scope_id="card-1", prompt="two"))

        old = stack.sessions.require(first.session_id)
        assert old.status == SessionStatus.CANCELLED
        assert old.error == "Cancelled: Superseded by a new session"
        assert stack.provisioner.killed == [first.sandbox_id]
        assert second.status == "dispatched"
        assert stack.sessions.get_active_for_scope("card-1").id == second.session_id

    @pytest.mark.asyncio
    async def test_other_scopes_are_untouched(self, stack):
        first = await stack.orchestrator.start_session(SessionRequest(scope_id="card-1", prompt="one"))

        await stack.orchestrator.start_session(SessionRequest(scope_id="card-2", prompt="two"))

        assert stack.sessions.get_status(first.session_id) == SessionStatus.RUNNING
        assert stack.provisioner.killed == []


class TestCancelSession:
    @pytest.mark.asyncio
    async def test_cancel_kills_environment_and_logs(self, stack):
        started = await stack.orchestrator.start_session(SessionRequest(scope_id="card-1", prompt="go"))

        session = await stack.orchestrator.cancel_session(started.session_id)

        assert session.status == SessionStatus.CANCELLED
        assert session.error == "Cancelled: Cancelled by user"
        assert stack.provisioner.killed == ["sbx-1"]
        logs = [entry.message for entry in stack.sessions.get_logs(started.session_id)]
        assert logs[-1] == "🛑 Cancelled by user"

    @pytest.mark.asyncio
    async def test_cancel_releases_pool_claim(self, stack):
        environment = stack.provisioner.add("sbx-pool")
        entry_id = stack.pool.begin_warming(stack.config.sandbox_template)
        stack.pool.mark_ready(entry_id, "sbx-pool", environment.endpoint)
        started = await stack.orchestrator.start_session(SessionRequest(scope_id="card-1", prompt="go"))
        assert started.from_pool is True

        await stack.orchestrator.cancel_session(started.session_id, reason="Card archived")

        assert stack.pool.get(entry_id) is None
        assert stack.provisioner.killed == ["sbx-pool"]

    @pytest.mark.asyncio
    async def test_cancel_of_finished_session_changes_nothing(self, stack):
        started = await stack.orchestrator.start_session(SessionRequest(scope_id="card-1", prompt="go"))
        stack.sessions.complete(started.session_id, {"response": "done"})

        session = await stack.orchestrator.cancel_session(started.session_id)

        assert session.status == SessionStatus.COMPLETED
        assert stack.provisioner.killed == []

    @pytest.mark.asyncio
    async def test_unknown_session(self, stack):
        with pytest.raises(SessionNotFoundError):
            await stack.orchestrator.cancel_session("missing")
