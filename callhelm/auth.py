"""
Authentication module: JWT session tokens.

Tokens are read from the ``session_token`` cookie, or from an
``Authorization: Bearer`` header for API clients.
"""

from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import jwt, JWTError
from fastapi import Request, Response

from callhelm.errors import AuthenticationError

log = structlog.get_logger(__name__)

JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = 30
COOKIE_NAME = "session_token"


class AuthManager:
    """JWT session management."""

    def __init__(self, jwt_secret: str, expire_days: int = JWT_EXPIRE_DAYS):
        self.jwt_secret = jwt_secret
        self.expire_days = expire_days

    def create_session_token(self, user_id: str, email: str = "") -> str:
        """Create a JWT session token."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "email": email,
            "iat": now,
            "exp": now + timedelta(days=self.expire_days),
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=JWT_ALGORITHM)

    def verify_session_token(self, token: str) -> Optional[dict]:
        """Verify and decode JWT. Returns payload or None."""
        try:
            return jwt.decode(token, self.jwt_secret, algorithms=[JWT_ALGORITHM])
        except JWTError as e:
            log.debug("session_token_rejected", error=str(e))
            return None

    def clear_session_cookie(self, response: Response) -> None:
        response.delete_cookie(key=COOKIE_NAME, path="/")

    @staticmethod
    def _token_from(request: Request) -> Optional[str]:
        token = request.cookies.get(COOKIE_NAME)
        if token:
            return token
        header = request.headers.get("authorization", "")
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value:
            return value.strip()
        return None

    def get_current_user_id(self, request: Request) -> Optional[str]:
        """User id from the session token, or None if not authenticated."""
        token = self._token_from(request)
        if not token:
            return None
        payload = self.verify_session_token(token)
        if not payload:
            return None
        return payload.get("sub") or None

    def require_auth(self, request: Request) -> str:
        """Extract user ID or raise 401."""
        user_id = self.get_current_user_id(request)
        if user_id is None:
            raise AuthenticationError("Unauthorized")
        return user_id
