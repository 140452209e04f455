"""HTTP API routes for per-scope CRDT state."""

from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ...models.state import (
    CompactResult,
    FullStateOut,
    PushUpdateRequest,
    StateUpdateOut,
    UpdateList,
)
from ...services.crdt import CRDTDecodeError
from ...services.state_store import StateStore, get_state_store
from ..middleware.auth_middleware import SandboxContext, require_sandbox_context

router = APIRouter(prefix="/api/state", tags=["state"])


def _bad_update(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": "invalid_update", "message": message})


def _ensure_scope(sandbox: SandboxContext, scope_id: str) -> None:
    if sandbox.claims is not None and sandbox.claims.scope_id != scope_id:
        raise HTTPException(
            status_code=403,
            detail={"error": "scope_mismatch", "message": "Token does not belong to this scope"},
        )


@router.post("/{scope_id}/updates", response_model=StateUpdateOut, status_code=201)
async def push_update(
    scope_id: str,
    data: PushUpdateRequest,
    sandbox: SandboxContext = Depends(require_sandbox_context),
    store: StateStore = Depends(get_state_store),
):
    """Append one base64-encoded CRDT update to the scope's log."""
    _ensure_scope(sandbox, scope_id)
    try:
        raw = base64.b64decode(data.update, validate=True)
    except (binascii.Error, ValueError):
        raise _bad_update("update is not valid base64")
    try:
        update = store.push_update(scope_id, raw, data.client_id)
    except CRDTDecodeError as e:
        raise _bad_update(str(e))
    return StateUpdateOut(
        id=update.id,
        client_id=update.client_id,
        created_at=update.created_at,
        update=data.update,
    )


@router.get("/{scope_id}/updates", response_model=UpdateList)
async def get_updates(
    scope_id: str,
    since: Optional[datetime] = Query(None, description="Only updates strictly after this time"),
    sandbox: SandboxContext = Depends(require_sandbox_context),
    store: StateStore = Depends(get_state_store),
):
    """Updates after ``since`` in timestamp order."""
    _ensure_scope(sandbox, scope_id)
    updates = store.get_updates_since(scope_id, since)
    return UpdateList(
        scope_id=scope_id,
        updates=[
            StateUpdateOut(
                id=update.id,
                client_id=update.client_id,
                created_at=update.created_at,
                update=base64.b64encode(update.update_bytes).decode("ascii"),
            )
            for update in updates
        ],
    )


@router.get("/{scope_id}", response_model=FullStateOut)
async def get_full_state(
    scope_id: str,
    sandbox: SandboxContext = Depends(require_sandbox_context),
    store: StateStore = Depends(get_state_store),
):
    """Latest snapshot merged with every later update."""
    _ensure_scope(sandbox, scope_id)
    full = store.get_full_state(scope_id)
    return FullStateOut(
        scope_id=scope_id,
        state=base64.b64encode(full.state.encode()).decode("ascii"),
        state_hash=full.state_hash,
        values=full.state.to_dict(),
        snapshot_id=full.snapshot_id,
        updates_applied=full.updates_applied,
    )


@router.post("/{scope_id}/compact", response_model=CompactResult)
async def compact(
    scope_id: str,
    sandbox: SandboxContext = Depends(require_sandbox_context),
    store: StateStore = Depends(get_state_store),
):
    """Fold the full state into a new snapshot and prune old updates."""
    _ensure_scope(sandbox, scope_id)
    return store.compact(scope_id)
