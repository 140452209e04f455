"""Agent session models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class SessionStatus(str, Enum):
    """Lifecycle states of an agent session."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({SessionStatus.PENDING, SessionStatus.RUNNING})
TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)


class ToolCallRecord(BaseModel):
    """Audit record of one tool invocation made by the agent."""

    name: str
    status: Optional[str] = None
    args: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[str] = Field(None, description="Tool output, truncated")


class TodoItem(BaseModel):
    id: Optional[str] = None
    content: str = ""
    status: Optional[str] = None
    priority: Optional[str] = None


class SessionOutput(BaseModel):
    """Structured output stored on a finished session."""

    response: str = Field("", description="User-visible final answer")
    thinking: List[str] = Field(default_factory=list)
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    todos: List[TodoItem] = Field(default_factory=list)
    changed_files: List[str] = Field(default_factory=list)
    source: Literal["push", "poll"] = Field("poll", description="Channel that finished the session")


class AgentSession(BaseModel):
    """One agent run inside an ephemeral environment."""

    id: str = Field(..., description="Session UUID")
    scope_id: str = Field(..., description="Card, thread or pipeline the session belongs to")
    status: SessionStatus = SessionStatus.PENDING
    sandbox_id: Optional[str] = Field(None, description="Environment handle id")
    sandbox_endpoint: Optional[str] = Field(None, description="Agent server base URL")
    remote_session_id: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)
    last_heartbeat_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SessionLogEntry(BaseModel):
    id: int
    session_id: str
    message: str
    created_at: datetime


class SessionRequest(BaseModel):
    """Payload to start a new agent session."""

    scope_id: str = Field(..., min_length=1, max_length=200)
    prompt: str = Field(..., min_length=1)
    system_prompt: Optional[str] = Field(
        None, description="Prepended instructions; echoes of it are dropped from results"
    )
    prior_scope_id: Optional[str] = Field(
        None, description="Scope whose captured files and state are restored before start"
    )
    template_id: Optional[str] = None
    model: Optional[str] = None
    fallback_models: Optional[List[str]] = None
    provider_preferences: Optional[Dict[str, Any]] = None
    max_tokens: Optional[int] = Field(None, ge=1)
    allowed_tools: Optional[List[str]] = Field(
        None, description="When set, appended to the prompt as the only tools the agent may use"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SpawnResult(BaseModel):
    """What ``spawn`` returns; never waits for the agent to finish."""

    session_id: str
    status: Literal["dispatched", "failed", "cancelled"]
    sandbox_id: Optional[str] = None
    remote_session_id: Optional[str] = None
    from_pool: bool = False
    error: Optional[str] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)


class SessionDetail(BaseModel):
    session: AgentSession
    logs: List[SessionLogEntry] = Field(default_factory=list)


class SessionList(BaseModel):
    sessions: List[AgentSession]
    total: int


class CompletionCallback(BaseModel):
    """Final report posted by the in-environment event forwarder."""

    session_id: str
    sandbox_id: Optional[str] = None
    output: str = ""
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    todos: List[TodoItem] = Field(default_factory=list)
    messages_count: int = Field(0, ge=0)
    error: Optional[str] = Field(None, description="Set when the forwarder saw the agent fail")


class ForwarderEvent(BaseModel):
    """A streamed progress event from the forwarder."""

    type: Literal["text", "reasoning", "tool", "status"]
    text: Optional[str] = None
    tool: Optional[str] = None
    status: Optional[str] = None


class EventsCallback(BaseModel):
    session_id: str
    events: List[ForwarderEvent] = Field(default_factory=list)


class CallbackAck(BaseModel):
    success: bool
    already_complete: bool = False
    session_id: Optional[str] = None


__all__ = [
    "SessionStatus",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "ToolCallRecord",
    "TodoItem",
    "SessionOutput",
    "AgentSession",
    "SessionLogEntry",
    "SessionRequest",
    "SpawnResult",
    "SessionDetail",
    "SessionList",
    "CompletionCallback",
    "ForwarderEvent",
    "EventsCallback",
    "CallbackAck",
]
