"""Error taxonomy for sandbox sessions.

Every failure that can end a session maps to one ``ErrorKind``. The session
row stores ``str(error)``, which renders as ``"<Kind>: <message>"`` so the
operator view stays human readable while remaining machine-sortable.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Categories of session failure."""

    PROVISIONING_FAILURE = "ProvisioningFailure"
    SERVER_STARTUP_TIMEOUT = "ServerStartupTimeout"
    AUTH_CONFIG_FAILURE = "AuthConfigFailure"
    SESSION_CREATION_FAILURE = "SessionCreationFailure"
    PROMPT_DISPATCH_FAILURE = "PromptDispatchFailure"
    POLL_TRANSPORT_FAILURE = "PollTransportFailure"
    AGENT_REPORTED_ERROR = "AgentReportedError"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"  # reporting only, never raised


class SandboxError(Exception):
    """Base error for anything that can terminate a sandbox session."""

    kind: ErrorKind = ErrorKind.PROVISIONING_FAILURE

    def __init__(self, message: str, detail: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        return format_error(self.kind, self.message)


class ProvisioningFailure(SandboxError):
    """No environment could be claimed or created in time."""

    kind = ErrorKind.PROVISIONING_FAILURE


class ServerStartupTimeout(SandboxError):
    """The agent server never answered its health check."""

    kind = ErrorKind.SERVER_STARTUP_TIMEOUT


class AuthConfigFailure(SandboxError):
    kind = ErrorKind.AUTH_CONFIG_FAILURE


class SessionCreationFailure(SandboxError):
    kind = ErrorKind.SESSION_CREATION_FAILURE


class PromptDispatchFailure(SandboxError):
    kind = ErrorKind.PROMPT_DISPATCH_FAILURE


class PollTransportFailure(SandboxError):
    """Agent server unreachable or answered with an unexpected shape."""

    kind = ErrorKind.POLL_TRANSPORT_FAILURE


class AgentReportedError(SandboxError):
    """The remote agent session itself reported an error."""

    kind = ErrorKind.AGENT_REPORTED_ERROR


class WatchdogTimeout(SandboxError):
    """The watchdog ceiling elapsed before any channel finished the session."""

    kind = ErrorKind.TIMEOUT


class SessionNotFoundError(LookupError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class ActiveSessionExistsError(RuntimeError):
    """Raised when a scope already has a pending or running session."""

    def __init__(self, scope_id: str, session_id: Optional[str] = None):
        super().__init__(f"Scope {scope_id} already has an active session")
        self.scope_id = scope_id
        self.session_id = session_id


def format_error(kind: ErrorKind, message: str) -> str:
    """Render the persisted ``"<Kind>: <message>"`` error string."""
    return f"{kind.value}: {message}"


__all__ = [
    "ErrorKind",
    "SandboxError",
    "ProvisioningFailure",
    "ServerStartupTimeout",
    "AuthConfigFailure",
    "SessionCreationFailure",
    "PromptDispatchFailure",
    "PollTransportFailure",
    "AgentReportedError",
    "WatchdogTimeout",
    "SessionNotFoundError",
    "ActiveSessionExistsError",
    "format_error",
]
