"""HTTP API routes for the warm environment pool."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ...models.pool import MaintainResult, PoolEntry, PoolStats, PoolStatus
from ...services.pool_manager import PoolManager, get_pool_manager
from ..middleware.auth_middleware import OperatorContext, require_operator

router = APIRouter(prefix="/api/pool", tags=["pool"])


@router.get("", response_model=PoolStats)
async def pool_stats(
    template_id: Optional[str] = Query(None),
    operator: OperatorContext = Depends(require_operator),
    pool: PoolManager = Depends(get_pool_manager),
):
    """Entry counts per status for a template."""
    return pool.stats(template_id)


@router.get("/entries", response_model=List[PoolEntry])
async def pool_entries(
    template_id: Optional[str] = Query(None),
    status: Optional[PoolStatus] = Query(None),
    operator: OperatorContext = Depends(require_operator),
    pool: PoolManager = Depends(get_pool_manager),
):
    return pool.list_entries(template_id=template_id, status=status)


@router.post("/maintain", response_model=MaintainResult)
async def maintain_pool(
    template_id: Optional[str] = Query(None),
    operator: OperatorContext = Depends(require_operator),
    pool: PoolManager = Depends(get_pool_manager),
):
    """Run one sweep and replenish pass immediately."""
    return await pool.maintain(template_id)
