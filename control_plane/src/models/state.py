"""State continuity models: snapshots, updates and captured files."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

FileType = Literal["code", "markdown", "json", "html", "csv", "text", "pdf", "image", "binary"]
BINARY_FILE_TYPES = frozenset({"pdf", "image", "binary"})
TEXT_FILE_TYPES = frozenset({"code", "markdown", "json", "html", "csv", "text"})


class ManifestEntry(BaseModel):
    """One output file referenced by a snapshot; persisted as ``{path, storageKey, size, type}``."""

    model_config = ConfigDict(populate_by_name=True)

    path: str
    storage_key: str = Field(..., alias="storageKey")
    size: int = Field(0, ge=0)
    type: FileType = "text"


@dataclass
class StateSnapshot:
    id: str
    scope_id: str
    state_blob: bytes
    manifest: List[ManifestEntry]
    created_at: str
    run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "scope_id": self.scope_id,
            "run_id": self.run_id,
            "created_at": self.created_at,
            "state_size": len(self.state_blob),
            "manifest": [entry.model_dump(by_alias=True) for entry in self.manifest],
        }


@dataclass
class StateUpdate:
    id: str
    scope_id: str
    update_bytes: bytes
    client_id: str
    created_at: str


@dataclass
class StoredFile:
    """File content behind a manifest ``storageKey``; binary content is base64."""

    scope_id: str
    path: str
    content: str
    type: str
    size: int = 0
    name: str = ""
    storage_key: str = ""
    updated_at: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.path.rstrip("/").rsplit("/", 1)[-1] or "file"


@dataclass
class CaptureResult:
    snapshot_id: Optional[str] = None
    captured: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "captured": list(self.captured),
            "skipped": list(self.skipped),
        }


@dataclass
class RestoreResult:
    files_written: int = 0
    files_failed: int = 0
    state_written: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files_written": self.files_written,
            "files_failed": self.files_failed,
            "state_written": self.state_written,
            "errors": list(self.errors),
        }


# ---------------------------------------------------------------------------
# HTTP payloads
# ---------------------------------------------------------------------------


class PushUpdateRequest(BaseModel):
    update: str = Field(..., description="Base64-encoded CRDT update")
    client_id: str = Field(..., min_length=1, max_length=200)


class StateUpdateOut(BaseModel):
    id: str
    client_id: str
    created_at: datetime
    update: str = Field(..., description="Base64-encoded CRDT update")


class UpdateList(BaseModel):
    scope_id: str
    updates: List[StateUpdateOut]


class FullStateOut(BaseModel):
    scope_id: str
    state: str = Field(..., description="Base64-encoded merged CRDT state")
    state_hash: str
    values: Dict[str, Any] = Field(default_factory=dict)
    snapshot_id: Optional[str] = None
    updates_applied: int = 0


class CompactResult(BaseModel):
    scope_id: str
    snapshot_id: str
    created_at: datetime
    state_hash: str
    updates_deleted: int = 0


__all__ = [
    "FileType",
    "BINARY_FILE_TYPES",
    "TEXT_FILE_TYPES",
    "ManifestEntry",
    "StateSnapshot",
    "StateUpdate",
    "StoredFile",
    "CaptureResult",
    "RestoreResult",
    "PushUpdateRequest",
    "StateUpdateOut",
    "UpdateList",
    "FullStateOut",
    "CompactResult",
]
