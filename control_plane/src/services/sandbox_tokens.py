"""Short-lived credentials that let an environment call back into the control plane."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Optional

import jwt

from .config import AppConfig, get_config

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


class SandboxTokenError(Exception):
    """Raised when a sandbox credential is missing, expired or forged."""

    def __init__(self, error: str, message: str, status_code: int = 401, detail: Optional[dict] = None):
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.detail = detail or {}


@dataclass
class SandboxClaims:
    session_id: str
    scope_id: str
    expires_at: datetime


class SandboxTokenService:
    """Mint and verify HS256 tokens bound to one session and scope."""

    def __init__(self, config: Optional[AppConfig] = None):
        self.config = config or get_config()

    @property
    def enabled(self) -> bool:
        return bool(self.config.sandbox_jwt_secret)

    def mint(self, session_id: str, scope_id: str, now: Optional[datetime] = None) -> Optional[str]:
        """Token for the environment of ``session_id``; None when no secret is configured."""
        if not self.enabled:
            return None
        issued = now or datetime.now(timezone.utc)
        payload: dict[str, Any] = {
            "sessionId": session_id,
            "scopeId": scope_id,
            "iat": issued,
            "exp": issued + timedelta(seconds=self.config.sandbox_jwt_ttl_s),
        }
        return jwt.encode(payload, self.config.sandbox_jwt_secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> SandboxClaims:
        if not self.enabled:
            raise SandboxTokenError("not_configured", "Sandbox callbacks are not configured", 503)
        try:
            payload = jwt.decode(
                token,
                self.config.sandbox_jwt_secret,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "sessionId", "scopeId"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise SandboxTokenError("token_expired", "Sandbox token expired") from e
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected sandbox token: {e}")
            raise SandboxTokenError("invalid_token", f"Invalid sandbox token: {e}") from e
        return SandboxClaims(
            session_id=str(payload["sessionId"]),
            scope_id=str(payload["scopeId"]),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )


_token_service: Optional[SandboxTokenService] = None


def get_token_service() -> SandboxTokenService:
    global _token_service
    if _token_service is None:
        _token_service = SandboxTokenService()
    return _token_service


__all__ = ["SandboxClaims", "SandboxTokenError", "SandboxTokenService", "get_token_service"]
