"""HTTP API routes for agent sessions."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from ...models.session import (
    AgentSession,
    SessionDetail,
    SessionList,
    SessionRequest,
    SpawnResult,
)
from ...services.errors import ActiveSessionExistsError, SessionNotFoundError
from ...services.session_orchestrator import SessionOrchestrator, get_orchestrator
from ...services.session_store import SessionStore, get_session_store
from ..middleware.auth_middleware import OperatorContext, require_operator

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _not_found(session_id: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"error": "not_found", "message": f"Session not found: {session_id}"},
    )


@router.post("", response_model=SpawnResult, status_code=202)
async def start_session(
    request: SessionRequest,
    operator: OperatorContext = Depends(require_operator),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """Start a session for a scope; an active session of the same scope is cancelled first."""
    try:
        return await orchestrator.start_session(request)
    except ActiveSessionExistsError as e:
        raise HTTPException(
            status_code=409,
            detail={
                "error": "active_session_exists",
                "message": str(e),
                "session_id": e.session_id,
            },
        )


@router.get("", response_model=SessionList)
async def list_sessions(
    scope_id: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
    operator: OperatorContext = Depends(require_operator),
    store: SessionStore = Depends(get_session_store),
):
    """List sessions of a scope, newest first."""
    sessions = store.list_for_scope(scope_id, limit=limit)
    return SessionList(sessions=sessions, total=len(sessions))


@router.get("/{session_id}", response_model=SessionDetail)
async def get_session(
    session_id: str,
    log_limit: int = Query(200, ge=1, le=5000),
    operator: OperatorContext = Depends(require_operator),
    store: SessionStore = Depends(get_session_store),
):
    """Session with its most recent log lines in insertion order."""
    session = store.get(session_id)
    if session is None:
        raise _not_found(session_id)
    return SessionDetail(session=session, logs=store.get_logs(session_id, limit=log_limit))


@router.post("/{session_id}/cancel", response_model=AgentSession)
async def cancel_session(
    session_id: str,
    operator: OperatorContext = Depends(require_operator),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """Cancel a pending or running session. Terminal sessions are returned unchanged."""
    try:
        return await orchestrator.cancel_session(session_id)
    except SessionNotFoundError:
        raise _not_found(session_id)

