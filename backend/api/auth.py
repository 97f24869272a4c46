# api/auth.py
# ============================================================================
# BEAN CHECKOUT BACKEND — BEARER AUTHENTICATION
# ============================================================================
# HS256 JWTs; the "sub" claim is the caller's identity. Handlers receive the
# identity as a plain string and pass it explicitly to every store call.
# ============================================================================

import time
from typing import Optional

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from errors import AuthenticationError

logger = structlog.get_logger(component="auth")

bearer_scheme = HTTPBearer(auto_error=False)


class TokenAuthenticator:
    """Validates bearer tokens against a shared secret"""

    algorithms = ["HS256"]

    def __init__(self, secret: str, audience: Optional[str] = None):
        if not secret:
            logger.warning("jwt_secret_missing")
        self._secret = secret
        self.audience = audience

    def user_id(self, token: str) -> str:
        if not self._secret:
            raise AuthenticationError("Authentication not configured")
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=self.algorithms,
                audience=self.audience,
                options={"verify_aud": self.audience is not None, "require": ["sub"]},
            )
        except jwt.PyJWTError as e:
            logger.info("token_rejected", error_type=type(e).__name__)
            raise AuthenticationError() from e

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AuthenticationError("Invalid user ID in token")
        return subject


async def current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """FastAPI dependency: the authenticated caller's identity"""
    if credentials is None:
        raise AuthenticationError("Authorization header required")
    authenticator: TokenAuthenticator = request.app.state.authenticator
    return authenticator.user_id(credentials.credentials)


def issue_token(user_id: str, secret: str, expires_in: int = 3600, **claims) -> str:
    """Mint an HS256 token for user_id. Used by tests and local tooling."""
    now = int(time.time())
    payload = {"sub": user_id, "iat": now, "exp": now + expires_in, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")
