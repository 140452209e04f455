"""Authentication dependency helpers."""

from __future__ import annotations

from dataclasses import dataclass
import hmac
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, status

from ...services.config import get_config
from ...services.sandbox_tokens import (
    SandboxClaims,
    SandboxTokenError,
    SandboxTokenService,
    get_token_service,
)


def _unauthorized(message: str, error: str = "unauthorized") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": error, "message": message},
    )


def _forbidden(message: str, error: str = "forbidden") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"error": error, "message": message},
    )


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise _unauthorized("Authorization header required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _unauthorized("Authorization header must be in format: Bearer <token>")
    return token


@dataclass
class OperatorContext:
    """Caller of the operator API. ``authenticated`` is False when no service token is configured."""

    authenticated: bool


def require_operator(
    authorization: Annotated[Optional[str], Header(alias="Authorization")] = None,
) -> OperatorContext:
    """
    Guard operator routes with the static service token.

    When CONTROL_PLANE_SERVICE_TOKEN is unset the routes are open, which is
    only meant for local development.
    """
    expected = get_config().service_token
    if not expected:
        return OperatorContext(authenticated=False)
    token = _bearer_token(authorization)
    if not hmac.compare_digest(token, expected):
        raise _unauthorized("Invalid service token", error="invalid_token")
    return OperatorContext(authenticated=True)


@dataclass
class SandboxContext:
    """Environment calling back into the control plane."""

    token: Optional[str]
    claims: Optional[SandboxClaims]

    def ensure_session(self, session_id: str) -> None:
        """Reject a token minted for another session."""
        if self.claims is not None and self.claims.session_id != session_id:
            raise _forbidden("Token does not belong to this session", error="session_mismatch")


def require_sandbox_context(
    authorization: Annotated[Optional[str], Header(alias="Authorization")] = None,
    token_service: SandboxTokenService = Depends(get_token_service),
) -> SandboxContext:
    """
    Validate the per-session sandbox JWT sent by the event forwarder.

    Without SANDBOX_JWT_SECRET no tokens are minted, so callbacks are accepted
    unauthenticated.
    """
    if not token_service.enabled:
        return SandboxContext(token=None, claims=None)
    token = _bearer_token(authorization)
    try:
        claims = token_service.verify(token)
    except SandboxTokenError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail={"error": exc.error, "message": exc.message, "detail": exc.detail},
        ) from exc
    return SandboxContext(token=token, claims=claims)


__all__ = [
    "OperatorContext",
    "SandboxContext",
    "require_operator",
    "require_sandbox_context",
]
