"""Warm environment pool models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


class PoolStatus(str, Enum):
    WARMING = "warming"
    READY = "ready"
    CLAIMED = "claimed"
    EXPIRED = "expired"


class PoolEntry(BaseModel):
    """A pre-provisioned environment with its agent server already running."""

    id: str
    template_id: str
    sandbox_id: Optional[str] = None
    endpoint: Optional[str] = None
    status: PoolStatus = PoolStatus.WARMING
    created_at: datetime
    ready_at: Optional[datetime] = None
    expires_at: datetime
    claimed_at: Optional[datetime] = None
    claimed_by: Optional[str] = Field(None, description="Session id of the claimant")
    expired_at: Optional[datetime] = None


class SweepResult(BaseModel):
    expired: int = 0
    removed: int = 0
    killed: int = 0


class MaintainResult(BaseModel):
    sweep: SweepResult = Field(default_factory=SweepResult)
    warmed: int = 0
    warm_failures: int = 0


class PoolStats(BaseModel):
    template_id: str
    target_size: int
    counts: Dict[str, int] = Field(default_factory=dict)


__all__ = ["PoolStatus", "PoolEntry", "SweepResult", "MaintainResult", "PoolStats"]
