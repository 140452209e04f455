"""Response shapes of the in-environment agent server.

Every payload the control plane reads from the agent server is validated
against these models at the client boundary. Message parts and session
statuses are tagged unions keyed on ``type``; an unknown tag is a validation
error rather than a silently defaulted field.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter


class TextPart(BaseModel):
    type: Literal["text"]
    id: Optional[str] = None
    text: str = ""
    synthetic: Optional[bool] = None


class ReasoningPart(BaseModel):
    type: Literal["reasoning"]
    id: Optional[str] = None
    text: str = ""


class ToolState(BaseModel):
    """Execution state of one tool call."""

    status: Literal["pending", "running", "completed", "error"]
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Any] = None
    error: Optional[str] = None
    title: Optional[str] = None


class ToolPart(BaseModel):
    type: Literal["tool"]
    id: Optional[str] = None
    tool: str
    call_id: Optional[str] = Field(None, validation_alias=AliasChoices("callID", "call_id"))
    state: ToolState


class StructuralPart(BaseModel):
    """Bookkeeping parts the orchestrator does not interpret."""

    model_config = ConfigDict(extra="allow")

    type: Literal[
        "step-start",
        "step-finish",
        "patch",
        "snapshot",
        "file",
        "agent",
        "subtask",
        "retry",
        "compaction",
    ]
    id: Optional[str] = None


MessagePart = Annotated[
    Union[TextPart, ReasoningPart, ToolPart, StructuralPart],
    Field(discriminator="type"),
]


class MessageInfo(BaseModel):
    id: str
    role: Literal["user", "assistant"]
    session_id: Optional[str] = Field(None, validation_alias=AliasChoices("sessionID", "session_id"))
    error: Optional[Dict[str, Any]] = None


class Message(BaseModel):
    info: MessageInfo
    parts: List[MessagePart] = Field(default_factory=list)

    @property
    def role(self) -> str:
        return self.info.role


class BusyStatus(BaseModel):
    type: Literal["busy"]


class IdleStatus(BaseModel):
    type: Literal["idle"]


class RetryStatus(BaseModel):
    """Provider-side retry in progress; treated like busy."""

    type: Literal["retry"]
    attempt: int = 0
    message: Optional[str] = None


class ErrorStatus(BaseModel):
    type: Literal["error"]
    message: Optional[str] = None
    error: Optional[Any] = None


RemoteSessionStatus = Annotated[
    Union[BusyStatus, IdleStatus, RetryStatus, ErrorStatus],
    Field(discriminator="type"),
]


class RemoteSession(BaseModel):
    id: str
    title: Optional[str] = None


class Todo(BaseModel):
    id: Optional[str] = None
    content: str
    status: str
    priority: Optional[str] = None


class FileDiff(BaseModel):
    path: str = Field(validation_alias=AliasChoices("path", "file"))
    additions: int = 0
    deletions: int = 0


MessageList = TypeAdapter(List[Message])
StatusMap = TypeAdapter(Dict[str, RemoteSessionStatus])
TodoList = TypeAdapter(List[Todo])
DiffList = TypeAdapter(List[FileDiff])


__all__ = [
    "TextPart",
    "ReasoningPart",
    "ToolState",
    "ToolPart",
    "StructuralPart",
    "MessagePart",
    "MessageInfo",
    "Message",
    "BusyStatus",
    "IdleStatus",
    "RetryStatus",
    "ErrorStatus",
    "RemoteSessionStatus",
    "RemoteSession",
    "Todo",
    "FileDiff",
    "MessageList",
    "StatusMap",
    "TodoList",
    "DiffList",
]
