"""Pydantic models for data validation and serialization."""

from .pool import MaintainResult, PoolEntry, PoolStats, PoolStatus, SweepResult
from .session import (
    AgentSession,
    CallbackAck,
    CompletionCallback,
    EventsCallback,
    ForwarderEvent,
    SessionDetail,
    SessionList,
    SessionLogEntry,
    SessionOutput,
    SessionRequest,
    SessionStatus,
    SpawnResult,
    TodoItem,
    ToolCallRecord,
)
from .state import (
    CompactResult,
    FullStateOut,
    ManifestEntry,
    PushUpdateRequest,
    StateUpdateOut,
    UpdateList,
)

__all__ = [
    "AgentSession",
    "SessionStatus",
    "SessionRequest",
    "SessionOutput",
    "SessionDetail",
    "SessionList",
    "SessionLogEntry",
    "SpawnResult",
    "ToolCallRecord",
    "TodoItem",
    "CompletionCallback",
    "EventsCallback",
    "ForwarderEvent",
    "CallbackAck",
    "PoolEntry",
    "PoolStatus",
    "PoolStats",
    "SweepResult",
    "MaintainResult",
    "ManifestEntry",
    "PushUpdateRequest",
    "StateUpdateOut",
    "UpdateList",
    "FullStateOut",
    "CompactResult",
]
