"""Callbacks posted by the event forwarder running inside an environment."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from ...models.session import CallbackAck, CompletionCallback, EventsCallback
from ...services.completion_detector import CompletionDetector, get_completion_detector
from ...services.errors import SessionNotFoundError
from ..middleware.auth_middleware import SandboxContext, require_sandbox_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sandbox/callbacks", tags=["callbacks"])


@router.post("/complete", response_model=CallbackAck)
async def complete(
    payload: CompletionCallback,
    sandbox: SandboxContext = Depends(require_sandbox_context),
    detector: CompletionDetector = Depends(get_completion_detector),
):
    """Final report from the forwarder; a no-op when the session already finished."""
    sandbox.ensure_session(payload.session_id)
    try:
        return await detector.handle_push_completion(payload)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": str(e)})


@router.post("/events", response_model=CallbackAck)
async def events(
    payload: EventsCallback,
    sandbox: SandboxContext = Depends(require_sandbox_context),
    detector: CompletionDetector = Depends(get_completion_detector),
):
    """Streamed progress events; appended to the session log."""
    sandbox.ensure_session(payload.session_id)
    try:
        written = await detector.handle_push_events(payload)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": str(e)})
    logger.debug(f"Appended {written} forwarder events for session {payload.session_id}")
    return CallbackAck(success=True, session_id=payload.session_id)
